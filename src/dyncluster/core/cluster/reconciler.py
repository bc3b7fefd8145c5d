"""Applies topology changes to a running cluster until they stick."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from dyncluster import settings
from dyncluster.core.adminapi.node import NodeManager
from dyncluster.core.cancel import CancelToken
from dyncluster.core.errors import (
    DynClusterError,
    NoControlNodeAvailable,
    OperationCancelled,
    RebalanceReconciliationExhausted,
    TerminalError,
)
from dyncluster.core.models import (
    ClusterMemberEx,
    ClusterView,
    ClusterViewEx,
    ProvisionedNode,
)

if TYPE_CHECKING:
    from dyncluster.core.context import DynClusterContext


def select_control_node(
    view_ex: ClusterViewEx, removal_otps: list[str]
) -> ClusterMemberEx:
    """
    Pick a member to drive a rebalance.

    Raises
    ------
    NoControlNodeAvailable
        If every member is unknown or scheduled for removal.
    """
    for member in view_ex.known_members:
        if member.status.otp_node not in removal_otps:
            return member
    raise NoControlNodeAvailable(
        f"no cluster member outside the removal set can drive a rebalance "
        f"(removals: {removal_otps or 'none'})"
    )


def validate_rebalance(
    view_ex: ClusterViewEx,
    cluster_otps: list[str],
    removal_otps: list[str],
    accept_empty_status: bool = settings.ACCEPT_EMPTY_NODE_STATUS,
) -> list[str]:
    """
    Check the post-rebalance state of a cluster.

    Parameters
    ----------
    view_ex : ClusterViewEx
        A view fetched after the rebalance finished.
    cluster_otps : list[str]
        Identities the cluster itself still lists as members.
    removal_otps : list[str]
        Identities that were meant to be removed.
    accept_empty_status : bool, optional
        Whether a member reporting no status at all passes. Defaults to
        `ACCEPT_EMPTY_NODE_STATUS`.

    Returns
    -------
    list[str]
        Problems found. Empty means the rebalance took effect.
    """
    problems = []
    for member in view_ex.known_members:
        otp, status = member.status.otp_node, member.status.status
        if otp in removal_otps:
            continue
        if member.status.needs_rebalance:
            problems.append(f"{otp} still needs a rebalance")
        if status == "" and accept_empty_status:
            continue
        if status != settings.HEALTHY_NODE_STATUS:
            problems.append(f"{otp} is not healthy (status: '{status}')")
    for otp in removal_otps:
        if otp in cluster_otps:
            problems.append(f"{otp} was not removed")
    return problems


def shrink_removals(removal_otps: list[str], cluster_otps: list[str]) -> list[str]:
    """Keep only the removals the cluster still lists as members."""
    return [otp for otp in removal_otps if otp in cluster_otps]


class RebalanceReconciler:
    """
    Rebalances a cluster, validating the outcome and retrying with a
    narrowed removal set until the cluster converges.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object with user input and
        context.

    Notes
    -----
    Every attempt works from a freshly fetched `ClusterViewEx`; nothing
    observed in one attempt is trusted in the next. The number of
    attempts comes from `REBALANCE_ATTEMPTS` and the delay before
    re-validating a failed attempt from `REBALANCE_SETTLE_SECONDS`.
    """

    def __init__(self, ctx: DynClusterContext):
        self._ctx = ctx

    @property
    def attempts(self) -> int:
        attempts = self._ctx.env.get_int(
            "REBALANCE_ATTEMPTS", settings.REBALANCE_ATTEMPTS
        )
        return max(1, attempts)

    @property
    def settle_seconds(self) -> float:
        return self._ctx.env.get_float(
            "REBALANCE_SETTLE_SECONDS", settings.REBALANCE_SETTLE_SECONDS
        )

    def _fetch(self, cluster_id: str) -> ClusterViewEx:
        return self._ctx.cluster.resource.get_cluster_ex(cluster_id)

    def _validate(
        self,
        cluster_id: str,
        manager: NodeManager,
        removal_otps: list[str],
    ) -> tuple[list[str], list[str]]:
        """Return `(problems, cluster_otps)` from fresh observation."""
        view_ex = self._fetch(cluster_id)
        try:
            cluster_otps = manager.otp_nodes()
        except DynClusterError as e:
            return [f"failed to list cluster members: {e}"], list(removal_otps)
        return validate_rebalance(view_ex, cluster_otps, removal_otps), cluster_otps

    def _attempt(
        self,
        cluster_id: str,
        removal_otps: list[str],
        token: CancelToken,
    ) -> tuple[list[str], list[str]]:
        view_ex = self._fetch(cluster_id)
        control = select_control_node(view_ex, removal_otps)
        manager = NodeManager(control.node.admin_endpoint, self._ctx.logger, token)
        self._ctx.logger.debug(
            f"Rebalancing via {control.status.otp_node}, "
            f"ejecting {removal_otps or 'none'}"
        )

        try:
            manager.rebalance(removal_otps)
            manager.wait_for_no_running_tasks(token)
        except (TerminalError, OperationCancelled):
            raise
        except DynClusterError as e:
            token.check("context finished while rebalancing")
            self._ctx.logger.warn(f"Rebalance attempt failed: {e}")

        problems, cluster_otps = self._validate(cluster_id, manager, removal_otps)
        if problems and self.settle_seconds > 0:
            self._ctx.logger.debug(
                f"Rebalance not converged yet ({'; '.join(problems)}), "
                f"re-checking in {self.settle_seconds}s"
            )
            token.sleep(
                self.settle_seconds, "context finished while waiting for rebalance"
            )
            problems, cluster_otps = self._validate(cluster_id, manager, removal_otps)
        return problems, cluster_otps

    def removal_otps_for(
        self, view_ex: ClusterViewEx, nodes: list[ProvisionedNode]
    ) -> list[str]:
        """Map nodes to the internal identities the cluster knows them by."""
        wanted = {n.node_id for n in nodes}
        otps = []
        for member in view_ex.members:
            if member.node.node_id not in wanted:
                continue
            if member.status.known:
                otps.append(member.status.otp_node)
            else:
                self._ctx.logger.warn(
                    f"Node {member.node.node_id[:8]} has no known identity, "
                    f"it will be destroyed without being ejected."
                )
        return otps

    def reconcile(
        self,
        cluster_id: str,
        remove_nodes: Optional[list[ProvisionedNode]] = None,
        token: Optional[CancelToken] = None,
    ) -> ClusterView:
        """
        Rebalance `cluster_id`, ejecting `remove_nodes`, until it converges.

        Parameters
        ----------
        cluster_id : str
            Cluster to reconcile.
        remove_nodes : list[ProvisionedNode], optional
            Members to eject. Their runtime resources are destroyed once
            the cluster has converged.
        token : CancelToken, optional
            Cancellation token.

        Returns
        -------
        ClusterView
            A fresh view of the converged cluster.

        Raises
        ------
        NoControlNodeAvailable
            If no member can drive the rebalance.
        RebalanceReconciliationExhausted
            If no attempt converged.
        """
        token = token or self._ctx.cancel_token
        remove_nodes = list(remove_nodes or [])
        removal_otps = self.removal_otps_for(self._fetch(cluster_id), remove_nodes)

        budget = self.attempts
        problems: list[str] = []
        for attempt in range(1, budget + 1):
            token.check("context finished while reconciling")
            self._ctx.logger.info(
                f"Rebalancing cluster {cluster_id[:8]} (attempt {attempt}/{budget})..."
            )
            problems, cluster_otps = self._attempt(cluster_id, removal_otps, token)
            if not problems:
                break
            self._ctx.logger.warn(
                f"Rebalance attempt {attempt} did not converge: {'; '.join(problems)}"
            )
            removal_otps = shrink_removals(removal_otps, cluster_otps)
        else:
            raise RebalanceReconciliationExhausted(budget, removal_otps)

        for node in remove_nodes:
            self._ctx.logger.info(
                f"Destroying node {node.node_id[:8]} ({node.short_id})..."
            )
            try:
                self._ctx.runtime.remove_node(node.resource_id)
            except DynClusterError as e:
                raise DynClusterError(
                    f"failed to remove node {node.node_id[:8]}"
                ) from e
        self._ctx.cluster.wiring.remove(remove_nodes, node_names_only=True)

        view = self._ctx.cluster.resource.get_cluster(cluster_id)
        self._ctx.cluster.wiring.refresh(view)
        self._ctx.logger.info(
            f"Cluster {cluster_id[:8]} converged with {len(view.members)} members."
        )
        return view
