"""Cluster views derived from live runtime and admin API state.

Nothing here is cached: every call lists runtime nodes afresh, since the
runtime labels are the only source of truth for cluster membership.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from dyncluster import settings
from dyncluster.core.adminapi.client import AdminClient
from dyncluster.core.cluster.reconciler import validate_rebalance
from dyncluster.core.errors import ResourceNotFoundError
from dyncluster.core.models import (
    ClusterMemberEx,
    ClusterState,
    ClusterView,
    ClusterViewEx,
    NodeStatus,
    ProvisionedNode,
)
from dyncluster.core.runtime.base import Capability

if TYPE_CHECKING:
    from dyncluster.core.context import DynClusterContext


class ClusterResourceManager:
    """
    Expose cluster views.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object with user input and
        context.

    Methods
    -------
    list_clusters()
        Every cluster with at least one live node.
    get_cluster(cluster_id)
        One cluster's nodes.
    get_cluster_ex(cluster_id)
        One cluster's nodes enriched with each member's admin API status.
    load_expiry(view)
        Read the expiry of a cluster's members.
    running_tasks(view_ex)
        Background tasks a cluster reports as running.
    cluster_state(cluster_id)
        Derived lifecycle state.
    """

    def __init__(self, ctx: DynClusterContext):
        self._ctx = ctx

    def list_nodes(self, cluster_id: Optional[str] = None) -> list[ProvisionedNode]:
        """List live nodes from the runtime backend."""
        return self._ctx.runtime.list_nodes(cluster_id)

    def list_clusters(self) -> list[ClusterView]:
        """
        Group every live node by cluster.

        Returns
        -------
        list[ClusterView]
            One view per cluster, ordered by cluster ID.
        """
        grouped: dict[str, list[ProvisionedNode]] = {}
        for node in self.list_nodes():
            grouped.setdefault(node.cluster_id, []).append(node)
        return [ClusterView(cid, nodes) for cid, nodes in sorted(grouped.items())]

    def get_cluster(self, cluster_id: str) -> ClusterView:
        """
        Fetch a fresh view of one cluster.

        Raises
        ------
        ResourceNotFoundError
            If the cluster has no live nodes.
        """
        nodes = self.list_nodes(cluster_id)
        if not nodes:
            raise ResourceNotFoundError(f"failed to find cluster {cluster_id}")
        return ClusterView(cluster_id, nodes)

    def node_status(self, node: ProvisionedNode) -> NodeStatus:
        """
        Fetch one member's live status without retrying.

        A node that does not answer yields an empty status with `error`
        set, never an exception.
        """
        client = AdminClient(
            node.admin_endpoint, token=self._ctx.cancel_token, retries=0
        )
        try:
            return client.get_local_status()
        except Exception as e:
            self._ctx.logger.debug(
                f"Failed to fetch status of node {node.node_id}: {e}"
            )
            return NodeStatus(error=str(e))

    def get_cluster_ex(self, cluster_id: str) -> ClusterViewEx:
        """
        Fetch a fresh view of one cluster with each member's live status.

        Members are queried concurrently. Members that fail to answer
        are included with an empty status.
        """
        view = self.get_cluster(cluster_id)
        members = view.members
        if not members:
            return ClusterViewEx(view)
        workers = min(len(members), settings.MAX_PROVISION_WORKERS)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            statuses = list(pool.map(self.node_status, members))
        return ClusterViewEx(
            view, [ClusterMemberEx(n, s) for n, s in zip(members, statuses)]
        )

    def load_expiry(self, view: ClusterView) -> Optional[datetime]:
        """
        Fill in the expiry of every member of `view` from the runtime.

        Listing nodes leaves expiry unset since reading it costs one
        round trip per node. Members that already carry an expiry are
        not read again.

        Returns
        -------
        datetime or None
            The cluster expiry, None if no member has one or the runtime
            keeps no node files.
        """
        runtime = self._ctx.runtime
        if not runtime.supports(Capability.NODE_FILES):
            return None
        for node in view.members:
            if node.expiry is None:
                node.expiry = runtime.read_expiry(node.resource_id)
        return view.expiry

    def running_tasks(self, view_ex: ClusterViewEx) -> list[str]:
        """
        List the types of background tasks the cluster reports as running.

        The task list is cluster-wide, so the first member that answers
        is enough. A cluster where no member answers has no running
        tasks as far as anyone can tell.
        """
        for member in view_ex.known_members:
            client = AdminClient(
                member.node.admin_endpoint, token=self._ctx.cancel_token, retries=0
            )
            try:
                tasks = client.get_tasks()
            except Exception as e:
                self._ctx.logger.debug(
                    f"Failed to fetch tasks from node {member.node.node_id}: {e}"
                )
                continue
            return [
                t.get("type", "task")
                for t in tasks
                if t.get("status") not in settings.INACTIVE_TASK_STATES
            ]
        return []

    def cluster_state(self, cluster_id: str) -> ClusterState:
        """
        Derive a cluster's lifecycle state from live observation.

        Nothing is read from process memory, so any process pointed at
        the same runtime derives the same state.

        Returns
        -------
        ClusterState
            `REMOVED` when no node exists, `PROVISIONING` before any
            member reports an identity, `RECONCILING` while the cluster
            reports a running task such as a rebalance, `DEGRADED` while
            a member needs a rebalance or is unhealthy, else `READY`.
        """
        try:
            view_ex = self.get_cluster_ex(cluster_id)
        except ResourceNotFoundError:
            return ClusterState.REMOVED

        if not view_ex.known_members:
            return ClusterState.PROVISIONING
        if self.running_tasks(view_ex):
            return ClusterState.RECONCILING
        if validate_rebalance(view_ex, view_ex.otp_nodes, []):
            return ClusterState.DEGRADED
        return ClusterState.READY
