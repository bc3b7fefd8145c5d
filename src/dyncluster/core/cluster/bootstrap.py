"""Initialises a new cluster from freshly provisioned nodes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

from dyncluster import settings
from dyncluster.core.adminapi.node import NodeManager
from dyncluster.core.cancel import CancelToken
from dyncluster.core.errors import DynClusterError
from dyncluster.core.models import BlobStorageSettings

if TYPE_CHECKING:
    from dyncluster.core.cluster.planner import NodeJob
    from dyncluster.core.context import DynClusterContext
    from dyncluster.core.logging.logger import DynClusterLogger


def compute_memory_quotas(
    services: Iterable[str],
    overrides: Optional[dict[str, int]] = None,
    logger: Optional[DynClusterLogger] = None,
) -> dict[str, int]:
    """
    Compute per-service memory quotas for a cluster.

    Parameters
    ----------
    services : Iterable[str]
        Union of the services of every member.
    overrides : dict[str, int], optional
        User overrides in MB. Non-positive values are ignored.
    logger : DynClusterLogger, optional
        Receives a warning for every quota raised to its minimum.

    Returns
    -------
    dict[str, int]
        Quota per quota key. Services absent from the cluster get 0.

    Examples
    --------
    >>> compute_memory_quotas(["kv", "index"], {"kv": 100})
    {'kv': 256, 'index': 256, 'fts': 0, 'cbas': 0, 'eventing': 0}
    """
    present = set(services)
    overrides = overrides or {}
    quotas: dict[str, int] = {}
    for key, default in settings.DEFAULT_MEMORY_QUOTAS.items():
        if settings.QUOTA_SERVICES[key] not in present:
            quotas[key] = 0
            continue
        quota = overrides.get(key, 0) if overrides.get(key, 0) > 0 else default
        minimum = settings.MIN_MEMORY_QUOTAS[key]
        if quota < minimum:
            if logger:
                logger.warn(
                    f"{key} memory must be at least {minimum}, adjusting it..."
                )
            quota = minimum
        quotas[key] = quota
    return quotas


class ClusterBootstrapper:
    """
    Drives provisioned nodes through cluster initialisation.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object with user input and
        context.
    """

    def __init__(self, ctx: DynClusterContext):
        self._ctx = ctx

    def _manager(self, job: NodeJob, token: Optional[CancelToken]) -> NodeManager:
        return NodeManager(job.node.admin_endpoint, self._ctx.logger, token)

    def bootstrap(
        self,
        jobs: list[NodeJob],
        memory_quotas: Optional[dict[str, int]] = None,
        token: Optional[CancelToken] = None,
        blob_storage: Optional[BlobStorageSettings] = None,
    ) -> None:
        """
        Initialise a cluster.

        The first job's node is set up as a one-node cluster, every other
        node is added to it, then one rebalance runs to completion.

        Parameters
        ----------
        jobs : list[NodeJob]
            Provisioned jobs in bring-up order.
        memory_quotas : dict[str, int], optional
            Memory quota overrides.
        token : CancelToken, optional
            Cancellation token for the rebalance wait.
        blob_storage : BlobStorageSettings, optional
            Object storage backing analytics, configured on the first
            node before its services start.

        Raises
        ------
        DynClusterError
            Naming the step that failed. Nodes are not cleaned up here.
        """
        if not jobs:
            raise DynClusterError("cannot bootstrap a cluster without nodes")
        token = token or self._ctx.cancel_token
        first, others = jobs[0], jobs[1:]
        services = {s for job in jobs for s in job.services}
        quotas = compute_memory_quotas(services, memory_quotas, self._ctx.logger)
        leader = self._manager(first, token)

        self._ctx.logger.info(
            f"Initializing cluster on node {first.node.ip_address}..."
        )
        try:
            leader.setup_one_node_cluster(
                first.services,
                quotas,
                first.server_group,
                blob_storage=blob_storage,
            )
        except DynClusterError as e:
            raise DynClusterError("failed to configure the first node") from e

        if not others:
            self._ctx.logger.info(
                "Only a single node in the cluster, skipping add+rebalance."
            )
            return

        for job in others:
            self._ctx.logger.info(
                f"Adding node {job.node.ip_address} to the cluster..."
            )
            try:
                leader.add_node(job.node.ip_address, job.services, job.server_group)
            except DynClusterError as e:
                raise DynClusterError("failed to configure additional node") from e

        self._ctx.logger.info("Rebalancing the cluster...")
        try:
            leader.rebalance()
        except DynClusterError as e:
            raise DynClusterError("failed to start rebalance") from e
        try:
            leader.wait_for_no_running_tasks(token)
        except DynClusterError as e:
            raise DynClusterError("failed to wait for tasks to complete") from e
