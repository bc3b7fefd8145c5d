"""Cluster lifecycle operations."""

from __future__ import annotations

import contextlib
import functools
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterator, Optional

from dyncluster import settings
from dyncluster.core import certs
from dyncluster.core.adminapi.node import NodeManager
from dyncluster.core.cancel import CancelToken
from dyncluster.core.cluster.planner import COLUMNAR_SERVICES, NodeJob
from dyncluster.core.cluster.provisioner import ProvisionOptions
from dyncluster.core.errors import DynClusterError, InvalidVersionFormat, UserError
from dyncluster.core.models import (
    ClusterView,
    ClusterViewEx,
    ProvisionedNode,
    RebalancePlan,
)
from dyncluster.core.runtime.base import Capability
from dyncluster.core.topology import NodeGroupSpec, TopologyRequest, compare_services
from dyncluster.core.versions import identify

if TYPE_CHECKING:
    from dyncluster.core.cluster.cluster import Cluster
    from dyncluster.core.context import DynClusterContext


def node_version_spec(node: ProvisionedNode) -> str:
    """Canonical version specifier of a node, falling back to its bare version."""
    spec = node.version_spec or node.initial_version
    try:
        return str(identify(spec))
    except InvalidVersionFormat:
        return spec


class ClusterLockRegistry:
    """One lock per cluster ID, created on demand.

    An entry lives only while some caller holds or waits for its lock,
    so the registry stays as small as the set of busy clusters.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # cluster ID -> [lock, holders and waiters]
        self._locks: dict[str, list] = {}

    def _acquire_entry(self, cluster_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.setdefault(cluster_id, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _release_entry(self, cluster_id: str) -> None:
        with self._guard:
            entry = self._locks[cluster_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[cluster_id]

    @contextlib.contextmanager
    def hold(self, cluster_id: str) -> Iterator[None]:
        """Hold the lock of `cluster_id` for the duration of the block."""
        lock = self._acquire_entry(cluster_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(cluster_id)

    def locked(self, cluster_id: str) -> bool:
        """Whether an operation currently holds the lock of `cluster_id`."""
        with self._guard:
            entry = self._locks.get(cluster_id)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ClusterOperations:
    """
    Cluster lifecycle operations.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object with user input and
        context.
    cluster : Cluster
        An instantiated `Cluster` object.

    Methods
    -------
    create_cluster(request, token=None, leave_nodes_after_return=False)
        Provision and bootstrap a new cluster.
    modify_cluster(cluster_id, request, force_new=False, token=None)
        Converge a running cluster onto a new topology.
    add_node(cluster_id, group, token=None)
        Add one member to a running cluster.
    remove_node(cluster_id, node_id, token=None)
        Eject and destroy one member of a running cluster.
    remove_cluster(cluster_id)
        Destroy every node of a cluster and its DNS records.
    remove_all()
        Remove every cluster.
    cleanup_expired(now=None)
        Remove every cluster whose expiry has passed.

    Notes
    -----
    Mutations of one cluster are serialised through `locks`. Creation
    does not need the lock since nobody else knows the new cluster ID.
    """

    def __init__(self, ctx: DynClusterContext, cluster: Cluster):
        self._ctx = ctx
        self._cluster = cluster
        self.locks = ClusterLockRegistry()

    @property
    def _runtime(self):
        return self._ctx.runtime

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    def provision_jobs(
        self,
        jobs: list[NodeJob],
        options: ProvisionOptions,
        token: CancelToken,
        created: list[ProvisionedNode],
    ) -> None:
        """
        Provision every job in parallel.

        Successfully provisioned nodes are appended to `created` as they
        finish, including those that finish after another job failed, so
        the caller can clean them all up.

        Raises
        ------
        DynClusterError
            The first failure, after every in-flight job has finished.
        """
        if not jobs:
            return
        group_token = token.child()
        workers = min(len(jobs), settings.MAX_PROVISION_WORKERS)
        first_error: Optional[BaseException] = None

        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(
                        self._cluster.provisioner.provision_node,
                        job,
                        options,
                        group_token,
                    ): job
                    for job in jobs
                }
                for future in as_completed(futures):
                    job = futures[future]
                    try:
                        job.node = future.result()
                    except Exception as e:
                        if first_error is None:
                            first_error = e
                            group_token.cancel(f"node job {job.index} failed")
                            self._ctx.logger.debug(
                                f"Node job {job.index} failed, draining remaining jobs: {e}"
                            )
                        continue
                    created.append(job.node)
        finally:
            group_token.close()

        if first_error is not None:
            raise DynClusterError("failed to deploy node") from first_error

    def _rollback(self, nodes: list[ProvisionedNode]) -> None:
        if not nodes:
            return
        self._ctx.logger.warn(
            f"Cleaning up {len(nodes)} nodes after a failed operation..."
        )
        workers = min(len(nodes), settings.MAX_PROVISION_WORKERS)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            list(executor.map(self._cluster.provisioner.destroy, nodes))

    def _install_certificates(
        self, nodes: list[ProvisionedNode], cluster_ca: certs.CertAuthority
    ) -> None:
        root_pem = certs.RootCertAuthority.get_or_init().cert_pem
        provisioner = self._cluster.provisioner
        for node in nodes:
            try:
                provisioner.install_certificates(node, cluster_ca, root_pem)
            except DynClusterError as e:
                raise DynClusterError(
                    f"failed to setup certificates for node {node.node_id[:8]}"
                ) from e

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def _dns_suffix(self, cluster_id: str, enable_dns: bool) -> str:
        if not enable_dns:
            return ""
        if self._ctx.dns_provider is None:
            raise UserError(
                "cannot use dns, dns not configured",
                "Configure a DNS provider on the context to enable DNS.",
            )
        date = datetime.now(timezone.utc).strftime("%Y%m%d")
        return f"{cluster_id[:8]}-{date}.{self._ctx.dns_provider.get_hostname()}"

    def _default_expiry(self, expiry: Optional[timedelta]) -> Optional[timedelta]:
        if expiry is not None:
            return expiry
        seconds = self._ctx.env.get_int("DYNCLUSTER_EXPIRY", 0)
        return timedelta(seconds=seconds) if seconds > 0 else None

    def create_cluster(
        self,
        request: TopologyRequest,
        token: Optional[CancelToken] = None,
        leave_nodes_after_return: bool = False,
    ) -> ClusterView:
        """
        Provision and bootstrap a new cluster.

        Parameters
        ----------
        request : TopologyRequest
            Requested topology.
        token : CancelToken, optional
            Cancellation token for the whole operation.
        leave_nodes_after_return : bool, optional
            Keep the nodes of a failed creation for inspection instead of
            removing them.

        Returns
        -------
        ClusterView
            A fresh view of the new cluster.

        Raises
        ------
        DynClusterError
            If any step fails. Nodes created so far are removed first
            unless `leave_nodes_after_return` is set.
        """
        token = token or self._ctx.cancel_token
        planner = self._cluster.planner
        planner.validate(request)

        if not self._runtime.supports(Capability.NODE_LIFECYCLE):
            self._runtime.require(Capability.MANAGED_CLUSTERS, "create cluster")
            cluster_id = self._runtime.create_managed_cluster(request, token)
            return ClusterView(cluster_id)
        use_dino_certs = request.use_dino_certs or self._ctx.env.get_bool(
            "ENABLE_DINO_CERTS"
        )
        if use_dino_certs:
            self._runtime.require(Capability.CERTIFICATES, "create cluster")
        if request.columnar:
            self._runtime.require(Capability.COLUMNAR, "create cluster")

        cluster_id = str(uuid.uuid4())
        options = ProvisionOptions(
            cluster_id=cluster_id,
            dns_suffix=self._dns_suffix(cluster_id, request.enable_dns),
            purpose=request.purpose,
            expiry=self._default_expiry(request.expiry),
            use_dino_certs=use_dino_certs,
            columnar=request.columnar,
        )
        self._ctx.logger.info(
            f"Creating cluster {cluster_id} with {request.node_count} nodes..."
        )

        created: list[ProvisionedNode] = []
        succeeded = False
        try:
            images = planner.resolve_images(request)
            jobs = planner.expand(request, images)
            cluster_ca = None
            if use_dino_certs:
                cluster_ca = certs.cluster_ca(cluster_id)

            provisioner = self._cluster.provisioner
            blob_storage = None
            if request.columnar or request.blob_store_mock:
                blob_node = provisioner.deploy_blob_store_mock(options, token)
                created.append(blob_node)
                blob_storage = provisioner.blob_storage_for(blob_node)
            if request.enable_load_balancer:
                created.append(
                    provisioner.deploy_load_balancer(options, cluster_ca, token)
                )

            self.provision_jobs(jobs, options, token, created)
            if cluster_ca is not None:
                self._install_certificates([j.node for j in jobs], cluster_ca)

            ordered = planner.order_for_bootstrap(jobs)
            try:
                self._cluster.bootstrapper.bootstrap(
                    ordered,
                    request.memory_quota_overrides,
                    token,
                    blob_storage=blob_storage,
                )
            except DynClusterError as e:
                raise DynClusterError("failed to setup cluster") from e

            view = self._cluster.resource.get_cluster(cluster_id)
            self._cluster.wiring.refresh(view, new_cluster=True)
            succeeded = True
        finally:
            if not succeeded:
                if leave_nodes_after_return:
                    self._ctx.logger.warn(
                        f"Leaving {len(created)} nodes of failed cluster {cluster_id} "
                        f"for inspection."
                    )
                else:
                    self._rollback(created)

        self._ctx.logger.info(f"Cluster {cluster_id} is ready.")
        return view

    # ------------------------------------------------------------------
    # Modify
    # ------------------------------------------------------------------
    def compute_plan(
        self,
        view_ex: ClusterViewEx,
        request: TopologyRequest,
        force_new: bool = False,
    ) -> RebalancePlan:
        """
        Compute the delta between a running cluster and a request.

        Every requested node is matched against an unmatched existing
        member with the same full version specifier (version, build and
        edition) and service set. Unmatched requested
        nodes are added, unmatched members are removed. Load balancer and
        blob store nodes are never part of the plan.

        Parameters
        ----------
        view_ex : ClusterViewEx
            A fresh view of the running cluster.
        request : TopologyRequest
            The desired topology.
        force_new : bool, optional
            Replace every member instead of matching.
        """
        unmatched = list(view_ex.members)
        plan = RebalancePlan()
        columnar = request.columnar or view_ex.view.columnar

        for group in request.individualized():
            spec = str(identify(group.version))
            services = COLUMNAR_SERVICES if columnar else group.effective_services
            match = None
            if not force_new:
                match = next(
                    (
                        m
                        for m in unmatched
                        if node_version_spec(m.node) == spec
                        and compare_services(m.status.services, services) == 0
                    ),
                    None,
                )
            if match is not None:
                unmatched.remove(match)
            else:
                plan.node_groups_to_add.append(group)

        plan.nodes_to_remove = [m.node for m in unmatched]
        return plan

    def apply_plan(
        self,
        cluster_id: str,
        plan: RebalancePlan,
        token: Optional[CancelToken] = None,
        columnar: bool = False,
    ) -> ClusterView:
        """
        Provision, register and rebalance the changes in `plan`.

        Must be called with the cluster lock held.
        """
        token = token or self._ctx.cancel_token
        self._runtime.require(Capability.MODIFY_CLUSTER, "modify cluster")
        view_ex = self._cluster.resource.get_cluster_ex(cluster_id)
        view = view_ex.view

        if plan.empty:
            self._ctx.logger.info(
                f"Cluster {cluster_id[:8]} already matches, nothing to do."
            )
            return view

        added: list[ProvisionedNode] = []
        if plan.node_groups_to_add:
            columnar = columnar or view.columnar
            request = TopologyRequest(
                groups=tuple(plan.node_groups_to_add), columnar=columnar
            )
            options = ProvisionOptions(
                cluster_id=cluster_id,
                dns_suffix=view.dns_name,
                purpose=view.purpose,
                expiry=None,
                use_dino_certs=view.using_dino_certs,
                columnar=columnar,
            )
            registered = False
            try:
                planner = self._cluster.planner
                jobs = planner.expand(request, planner.resolve_images(request))
                self.provision_jobs(jobs, options, token, added)
                expiry = self._cluster.resource.load_expiry(view)
                if expiry is not None:
                    for node in added:
                        self._cluster.provisioner.write_expiry(node, expiry)
                if view.using_dino_certs:
                    self._install_certificates(added, certs.cluster_ca(cluster_id))
                self._register(view_ex, jobs, plan.nodes_to_remove, token)
                registered = True
            finally:
                if not registered:
                    self._rollback(added)

        return self._cluster.reconciler.reconcile(
            cluster_id, plan.nodes_to_remove, token
        )

    def _register(
        self,
        view_ex: ClusterViewEx,
        jobs: list[NodeJob],
        removing: list[ProvisionedNode],
        token: CancelToken,
    ) -> None:
        removing_ids = {n.node_id for n in removing}
        candidates = [
            m for m in view_ex.known_members if m.node.node_id not in removing_ids
        ]
        control = candidates[0] if candidates else None
        if control is None:
            raise DynClusterError("failed to find a member to register new nodes with")
        manager = NodeManager(control.node.admin_endpoint, self._ctx.logger, token)
        for job in jobs:
            self._ctx.logger.info(f"Registering node {job.node.ip_address}...")
            try:
                manager.add_node(job.node.ip_address, job.services, job.server_group)
            except DynClusterError as e:
                raise DynClusterError("failed to register node") from e

    def modify_cluster(
        self,
        cluster_id: str,
        request: TopologyRequest,
        force_new: bool = False,
        token: Optional[CancelToken] = None,
    ) -> ClusterView:
        """
        Converge a running cluster onto `request`.

        Returns
        -------
        ClusterView
            A fresh view of the converged cluster.
        """
        self._runtime.require(Capability.MODIFY_CLUSTER, "modify cluster")
        with self.locks.hold(cluster_id):
            view_ex = self._cluster.resource.get_cluster_ex(cluster_id)
            plan = self.compute_plan(view_ex, request, force_new)
            self._ctx.logger.info(
                f"Modifying cluster {cluster_id[:8]}: adding "
                f"{len(plan.node_groups_to_add)} nodes, removing "
                f"{len(plan.nodes_to_remove)} nodes."
            )
            return self.apply_plan(cluster_id, plan, token, request.columnar)

    def add_node(
        self,
        cluster_id: str,
        group: NodeGroupSpec,
        token: Optional[CancelToken] = None,
    ) -> ClusterView:
        """Add `group.count` members described by `group`."""
        groups = [group.single() for _ in range(max(group.count, 1))]
        with self.locks.hold(cluster_id):
            plan = RebalancePlan(node_groups_to_add=groups)
            return self.apply_plan(cluster_id, plan, token)

    def remove_node(
        self,
        cluster_id: str,
        node_id: str,
        token: Optional[CancelToken] = None,
    ) -> ClusterView:
        """Eject and destroy one member."""
        with self.locks.hold(cluster_id):
            view = self._cluster.resource.get_cluster(cluster_id)
            node = view.node(node_id)
            if node is None or not node.is_cluster_member:
                raise UserError(f"Cluster {cluster_id} has no member {node_id}.")
            plan = RebalancePlan(nodes_to_remove=[node])
            return self.apply_plan(cluster_id, plan, token)

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------
    def remove_cluster(
        self, cluster_id: str, token: Optional[CancelToken] = None
    ) -> None:
        """
        Destroy every node of a cluster, then its DNS records.

        DNS removal failures only warn.
        """
        if not self._runtime.supports(Capability.NODE_LIFECYCLE):
            self._runtime.require(Capability.MANAGED_CLUSTERS, "remove cluster")
            self._runtime.remove_managed_cluster(cluster_id, token)
            return

        with self.locks.hold(cluster_id):
            view = self._cluster.resource.get_cluster(cluster_id)
            self._ctx.logger.info(
                f"Removing cluster {cluster_id} ({len(view.nodes)} nodes)..."
            )
            remove = functools.partial(self._remove_runtime_node, cluster_id)
            errors = []
            workers = max(1, min(len(view.nodes), settings.MAX_PROVISION_WORKERS))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(remove, n) for n in view.nodes]
                for future in as_completed(futures):
                    try:
                        future.result()
                    except DynClusterError as e:
                        errors.append(e)
            if errors:
                raise DynClusterError(
                    f"failed to remove cluster {cluster_id}"
                ) from errors[0]
            self._cluster.wiring.remove(view.nodes)

    def _remove_runtime_node(self, cluster_id: str, node: ProvisionedNode) -> None:
        try:
            self._runtime.remove_node(node.resource_id)
        except DynClusterError as e:
            raise DynClusterError(
                f"failed to remove node {node.node_id[:8]} of cluster {cluster_id[:8]}"
            ) from e

    def remove_all(self) -> list[str]:
        """Remove every cluster and return their IDs."""
        removed = []
        for view in self._cluster.resource.list_clusters():
            self.remove_cluster(view.cluster_id)
            removed.append(view.cluster_id)
        return removed

    def cleanup_expired(self, now: Optional[datetime] = None) -> list[str]:
        """
        Remove every cluster whose expiry has passed.

        Clusters without an expiry are kept.

        Returns
        -------
        list[str]
            IDs of removed clusters.
        """
        now = now or datetime.now(timezone.utc)
        removed = []
        for view in self._cluster.resource.list_clusters():
            expiry = self._cluster.resource.load_expiry(view)
            if expiry is None or expiry > now:
                continue
            self._ctx.logger.info(
                f"Cluster {view.cluster_id} expired at {expiry}, removing..."
            )
            self.remove_cluster(view.cluster_id)
            removed.append(view.cluster_id)
        return removed
