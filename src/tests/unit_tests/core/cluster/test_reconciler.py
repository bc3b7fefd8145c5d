"""Unit tests for rebalance reconciliation."""

from unittest.mock import patch

import pytest

from dyncluster.core.cluster.reconciler import (
    RebalanceReconciler,
    select_control_node,
    shrink_removals,
    validate_rebalance,
)
from dyncluster.core.errors import (
    DynClusterError,
    NoControlNodeAvailable,
    OperationCancelled,
    RebalanceReconciliationExhausted,
)
from dyncluster.core.models import NodeStatus
from tests.unit_tests.fixtures import CLUSTER_ID, make_node, make_view, make_view_ex

NODES = [make_node(1), make_node(2), make_node(3)]
OTPS = [f"ns_1@{n.ip_address}" for n in NODES]


def _status(otp, status="healthy", needs_rebalance=False):
    return NodeStatus(
        otp_node=otp, status=status, services=["kv"], needs_rebalance=needs_rebalance
    )


def _view_ex(**statuses):
    """Build a view of NODES, overriding statuses by node index."""
    return make_view_ex(
        NODES, {NODES[int(i[1:]) - 1].node_id: s for i, s in statuses.items()}
    )


@pytest.fixture
def env_values():
    """Reconcile with three attempts and no settle delay."""
    return {"REBALANCE_ATTEMPTS": "3", "REBALANCE_SETTLE_SECONDS": "0"}


@pytest.fixture
def manager():
    """Patch the node manager driving rebalances."""
    with patch("dyncluster.core.cluster.reconciler.NodeManager") as manager_cls:
        yield manager_cls.return_value


@pytest.fixture
def resource(mock_ctx):
    """Serve a healthy view of NODES, and the first two nodes afterwards."""
    resource = mock_ctx.cluster.resource
    resource.get_cluster_ex.return_value = _view_ex()
    resource.get_cluster.return_value = make_view(NODES[:2])
    return resource


class TestSelectControlNode:
    """Test suite for select_control_node()."""

    def test_skips_removals(self):
        """Test that members being removed are never picked."""
        member = select_control_node(_view_ex(), [OTPS[0]])
        assert member.node is NODES[1]

    def test_skips_unknown_members(self):
        """Test that members without an identity are never picked."""
        member = select_control_node(_view_ex(n1=NodeStatus(error="timeout")), [])
        assert member.node is NODES[1]

    def test_no_candidate(self):
        """Test that a cluster without a usable member is rejected."""
        with pytest.raises(NoControlNodeAvailable):
            select_control_node(_view_ex(), OTPS)


class TestValidateRebalance:
    """Test suite for validate_rebalance()."""

    def test_converged(self):
        """Test that a healthy cluster without the removals passes."""
        assert validate_rebalance(_view_ex(), OTPS[:2], [OTPS[2]]) == []

    def test_removal_still_member(self):
        """Test that a removal the cluster still lists is reported."""
        problems = validate_rebalance(_view_ex(), OTPS, [OTPS[2]])
        assert problems == [f"{OTPS[2]} was not removed"]

    def test_needs_rebalance(self):
        """Test that members still needing a rebalance are reported."""
        view_ex = _view_ex(n2=_status(OTPS[1], needs_rebalance=True))
        problems = validate_rebalance(view_ex, OTPS, [])
        assert problems == [f"{OTPS[1]} still needs a rebalance"]

    def test_unhealthy(self):
        """Test that unhealthy members are reported."""
        view_ex = _view_ex(n1=_status(OTPS[0], status="warmup"))
        problems = validate_rebalance(view_ex, OTPS, [])
        assert problems == [f"{OTPS[0]} is not healthy (status: 'warmup')"]

    def test_empty_status(self):
        """Test that an empty status passes only when accepted."""
        view_ex = _view_ex(n1=_status(OTPS[0], status=""))
        assert validate_rebalance(view_ex, OTPS, [], accept_empty_status=True) == []
        assert validate_rebalance(view_ex, OTPS, [], accept_empty_status=False)

    def test_removals_are_not_validated(self):
        """Test that the health of members being removed is ignored."""
        view_ex = _view_ex(n3=_status(OTPS[2], status="unhealthy"))
        assert validate_rebalance(view_ex, OTPS[:2], [OTPS[2]]) == []


class TestShrinkRemovals:
    """Test suite for shrink_removals()."""

    def test_drops_departed(self):
        """Test that removals the cluster no longer lists are dropped."""
        assert shrink_removals(OTPS[1:], OTPS[:2]) == [OTPS[1]]


class TestReconcile:
    """Test suite for RebalanceReconciler.reconcile()."""

    def test_converges_first_attempt(self, mock_ctx, mock_runtime, manager, resource):
        """Test that a converged removal destroys the node and refreshes wiring."""
        manager.otp_nodes.return_value = OTPS[:2]

        view = RebalanceReconciler(mock_ctx).reconcile(CLUSTER_ID, [NODES[2]])

        manager.rebalance.assert_called_once_with([OTPS[2]])
        mock_runtime.remove_node.assert_called_once_with(NODES[2].resource_id)
        wiring = mock_ctx.cluster.wiring
        wiring.remove.assert_called_once_with([NODES[2]], node_names_only=True)
        wiring.refresh.assert_called_once_with(view)
        assert view is resource.get_cluster.return_value

    def test_retries_until_converged(self, mock_ctx, mock_runtime, manager, resource):
        """Test that a failed validation triggers another attempt."""
        manager.otp_nodes.side_effect = [OTPS, OTPS[:2]]

        RebalanceReconciler(mock_ctx).reconcile(CLUSTER_ID, [NODES[2]])

        assert manager.rebalance.call_count == 2
        mock_runtime.remove_node.assert_called_once_with(NODES[2].resource_id)

    def test_departed_removals_shrink(self, mock_ctx, manager, resource):
        """Test that a removal that took effect is not retried."""
        manager.rebalance.side_effect = [DynClusterError("rebalance failed"), None]
        manager.otp_nodes.return_value = OTPS[:2]
        lagging = _view_ex(n1=_status(OTPS[0], needs_rebalance=True))
        resource.get_cluster_ex.side_effect = [
            _view_ex(),
            _view_ex(),
            lagging,
            _view_ex(),
            _view_ex(),
        ]

        RebalanceReconciler(mock_ctx).reconcile(CLUSTER_ID, [NODES[2]])

        ejected = [c.args[0] for c in manager.rebalance.call_args_list]
        assert ejected == [[OTPS[2]], []]

    def test_exhausted(self, mock_ctx, mock_runtime, manager, resource):
        """Test that a cluster that never converges raises after the budget."""
        manager.otp_nodes.return_value = OTPS

        with pytest.raises(RebalanceReconciliationExhausted) as exc:
            RebalanceReconciler(mock_ctx).reconcile(CLUSTER_ID, [NODES[2]])

        assert exc.value.attempts == 3
        assert exc.value.pending_removals == [OTPS[2]]
        assert manager.rebalance.call_count == 3
        mock_runtime.remove_node.assert_not_called()

    def test_cancelled(self, mock_ctx, manager, resource, token):
        """Test that a cancelled token stops reconciliation."""
        token.cancel("shutting down")

        with pytest.raises(OperationCancelled):
            RebalanceReconciler(mock_ctx).reconcile(CLUSTER_ID, [NODES[2]], token)
        manager.rebalance.assert_not_called()

    def test_unknown_removal_is_not_ejected(
        self, mock_ctx, mock_runtime, manager, resource
    ):
        """Test that a member without identity is destroyed without ejection."""
        resource.get_cluster_ex.return_value = _view_ex(
            n3=NodeStatus(error="timeout")
        )
        manager.otp_nodes.return_value = OTPS[:2]

        RebalanceReconciler(mock_ctx).reconcile(CLUSTER_ID, [NODES[2]])

        manager.rebalance.assert_called_once_with([])
        mock_ctx.logger.warn.assert_called_once()
        mock_runtime.remove_node.assert_called_once_with(NODES[2].resource_id)


class TestSettleDelay:
    """Test suite for the settle re-check after a failed validation."""

    @pytest.fixture
    def env_values(self):
        """Reconcile with a single attempt and a settle delay."""
        return {"REBALANCE_ATTEMPTS": "1", "REBALANCE_SETTLE_SECONDS": "5"}

    def test_recheck_after_settle(self, mock_ctx, manager, resource, no_sleep):
        """Test that a lagging cluster converges on the re-check."""
        manager.otp_nodes.side_effect = [OTPS, OTPS[:2]]

        RebalanceReconciler(mock_ctx).reconcile(CLUSTER_ID, [NODES[2]])

        manager.rebalance.assert_called_once()
        assert manager.otp_nodes.call_count == 2
