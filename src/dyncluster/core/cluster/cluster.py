"""Cluster interface and operations for dyncluster clusters."""

from __future__ import annotations

from typing import TYPE_CHECKING

from dyncluster.core.cluster.bootstrap import ClusterBootstrapper
from dyncluster.core.cluster.ops import ClusterOperations
from dyncluster.core.cluster.planner import TopologyPlanner
from dyncluster.core.cluster.provisioner import NodeProvisioner
from dyncluster.core.cluster.reconciler import RebalanceReconciler
from dyncluster.core.cluster.resource import ClusterResourceManager
from dyncluster.core.wiring import AncillaryWiring

if TYPE_CHECKING:
    from dyncluster.core.context import DynClusterContext


class Cluster:
    """Exposes various cluster operations.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object with user input and
        context.

    Attributes
    ----------
    ops : ClusterOperations
        Lifecycle operations (create, modify, remove).
    resource : ClusterResourceManager
        Read-only view of live clusters.
    planner : TopologyPlanner
        Expands topology requests into node jobs.
    provisioner : NodeProvisioner
        Creates and destroys runtime nodes.
    bootstrapper : ClusterBootstrapper
        Forms a cluster from freshly provisioned nodes.
    reconciler : RebalanceReconciler
        Drives rebalances until membership converges.
    wiring : AncillaryWiring
        Keeps DNS records and the load balancer in step with members.
    """

    def __init__(self, ctx: DynClusterContext):
        self._ctx = ctx
        self.resource = ClusterResourceManager(ctx)
        self.planner = TopologyPlanner(ctx)
        self.provisioner = NodeProvisioner(ctx)
        self.bootstrapper = ClusterBootstrapper(ctx)
        self.reconciler = RebalanceReconciler(ctx)
        self.wiring = AncillaryWiring(ctx.runtime, ctx.logger, ctx.dns_provider)
        self.ops = ClusterOperations(ctx, self)
