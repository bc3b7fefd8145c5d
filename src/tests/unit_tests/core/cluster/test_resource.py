"""Unit tests for cluster views."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from dyncluster.core.cluster.cluster import Cluster
from dyncluster.core.cluster.resource import ClusterResourceManager
from dyncluster.core.errors import ResourceNotFoundError, TransientError
from dyncluster.core.models import ClusterState, NodeRole, NodeStatus
from tests.unit_tests.fixtures import CLUSTER_ID, make_node, make_view

OTHER_ID = "0a0b0c0d-0000-4000-8000-000000000002"


@pytest.fixture
def resource(mock_ctx):
    """Provide a resource manager over the mock context."""
    return ClusterResourceManager(mock_ctx)


@pytest.fixture
def admin_client():
    """Patch the admin client used for status queries."""
    with patch("dyncluster.core.cluster.resource.AdminClient") as client_cls:
        yield client_cls.return_value


class TestListClusters:
    """Test suite for ClusterResourceManager.list_clusters()."""

    def test_groups_by_cluster(self, resource, mock_runtime):
        """Test that nodes are grouped per cluster, ordered by ID."""
        mock_runtime.list_nodes.return_value = [
            make_node(1),
            make_node(2, cluster_id=OTHER_ID),
            make_node(3),
        ]

        views = resource.list_clusters()

        assert [v.cluster_id for v in views] == [OTHER_ID, CLUSTER_ID]
        assert [n.node_id for n in views[1].nodes] == [
            make_node(1).node_id,
            make_node(3).node_id,
        ]

    def test_no_nodes(self, resource, mock_runtime):
        """Test that no nodes means no clusters."""
        mock_runtime.list_nodes.return_value = []
        assert resource.list_clusters() == []


class TestGetCluster:
    """Test suite for get_cluster() and get_cluster_ex()."""

    def test_not_found(self, resource, mock_runtime):
        """Test that a cluster without nodes is not found."""
        mock_runtime.list_nodes.return_value = []

        with pytest.raises(ResourceNotFoundError):
            resource.get_cluster(CLUSTER_ID)
        mock_runtime.list_nodes.assert_called_once_with(CLUSTER_ID)

    def test_enriches_members_only(self, resource, mock_runtime, admin_client):
        """Test that only members are queried for status."""
        mock_runtime.list_nodes.return_value = [
            make_node(1),
            make_node(9, role=NodeRole.LOAD_BALANCER),
        ]
        admin_client.get_local_status.return_value = NodeStatus(
            otp_node="ns_1@172.17.0.2", status="healthy"
        )

        view_ex = resource.get_cluster_ex(CLUSTER_ID)

        assert len(view_ex.view.nodes) == 2
        assert [m.node.node_id for m in view_ex.members] == [make_node(1).node_id]
        assert view_ex.otp_nodes == ["ns_1@172.17.0.2"]

    def test_unreachable_member(self, resource, mock_runtime, admin_client):
        """Test that unreachable members get an empty status."""
        mock_runtime.list_nodes.return_value = [make_node(1)]
        admin_client.get_local_status.side_effect = TransientError("refused")

        view_ex = resource.get_cluster_ex(CLUSTER_ID)

        status = view_ex.members[0].status
        assert not status.known
        assert "refused" in status.error

    def test_no_members(self, resource, mock_runtime, admin_client):
        """Test that a cluster of utility nodes has no enriched members."""
        mock_runtime.list_nodes.return_value = [
            make_node(9, role=NodeRole.LOAD_BALANCER)
        ]

        view_ex = resource.get_cluster_ex(CLUSTER_ID)

        assert view_ex.members == []
        admin_client.get_local_status.assert_not_called()


class TestLoadExpiry:
    """Test suite for ClusterResourceManager.load_expiry()."""

    def test_reads_members_only(self, resource, mock_runtime):
        """Test that members are read and the latest expiry wins."""
        early = datetime(2030, 1, 1, tzinfo=timezone.utc)
        late = datetime(2030, 6, 1, tzinfo=timezone.utc)
        nodes = [make_node(1), make_node(2), make_node(9, role=NodeRole.LOAD_BALANCER)]
        mock_runtime.read_expiry.side_effect = [early, late]

        assert resource.load_expiry(make_view(nodes)) == late
        read = [c.args[0] for c in mock_runtime.read_expiry.call_args_list]
        assert read == [nodes[0].resource_id, nodes[1].resource_id]

    def test_known_expiry_is_not_read_again(self, resource, mock_runtime):
        """Test that members with an expiry skip the runtime."""
        expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)

        assert resource.load_expiry(make_view([make_node(1, expiry=expiry)])) == expiry
        mock_runtime.read_expiry.assert_not_called()

    def test_runtime_without_files(self, resource, mock_runtime):
        """Test that runtimes without node files report no expiry."""
        mock_runtime.supports.return_value = False

        assert resource.load_expiry(make_view([make_node(1)])) is None
        mock_runtime.read_expiry.assert_not_called()


class TestClusterState:
    """Test suite for ClusterResourceManager.cluster_state()."""

    @pytest.fixture(autouse=True)
    def live(self, mock_runtime, admin_client):
        """Serve one healthy member with no running tasks."""
        mock_runtime.list_nodes.return_value = [make_node(1)]
        admin_client.get_local_status.return_value = NodeStatus(
            otp_node="ns_1@172.17.0.2", status="healthy"
        )
        admin_client.get_tasks.return_value = [
            {"type": "rebalance", "status": "notRunning"}
        ]

    def test_ready(self, resource):
        """Test that a healthy cluster is ready."""
        assert resource.cluster_state(CLUSTER_ID) == ClusterState.READY

    def test_removed(self, resource, mock_runtime):
        """Test that a cluster without nodes is removed."""
        mock_runtime.list_nodes.return_value = []
        assert resource.cluster_state(CLUSTER_ID) == ClusterState.REMOVED

    def test_running_rebalance(self, resource, admin_client):
        """Test that a running rebalance reports reconciling, even when degraded."""
        admin_client.get_tasks.return_value = [
            {"type": "rebalance", "status": "running"}
        ]
        admin_client.get_local_status.return_value = NodeStatus(
            otp_node="ns_1@172.17.0.2", status="healthy", needs_rebalance=True
        )
        assert resource.cluster_state(CLUSTER_ID) == ClusterState.RECONCILING

    def test_tasks_unavailable(self, resource, admin_client, mock_ctx):
        """Test that a failing task query does not block the state."""
        admin_client.get_tasks.side_effect = TransientError("refused")

        assert resource.cluster_state(CLUSTER_ID) == ClusterState.READY
        mock_ctx.logger.debug.assert_called()

    def test_unhealthy_member(self, resource, admin_client):
        """Test that a member reporting an unhealthy status is degraded."""
        admin_client.get_local_status.return_value = NodeStatus(
            otp_node="ns_1@172.17.0.2", status="warmup"
        )
        assert resource.cluster_state(CLUSTER_ID) == ClusterState.DEGRADED

    def test_state_survives_new_process(self, mock_ctx, admin_client):
        """Test that a fresh cluster facade derives the same degraded state."""
        admin_client.get_local_status.return_value = NodeStatus(
            otp_node="ns_1@172.17.0.2", status="healthy", needs_rebalance=True
        )
        before = Cluster(mock_ctx).resource.cluster_state(CLUSTER_ID)

        restarted = Cluster(mock_ctx)

        assert before == ClusterState.DEGRADED
        assert restarted.ops.locks.locked(CLUSTER_ID) is False
        assert restarted.resource.cluster_state(CLUSTER_ID) == ClusterState.DEGRADED

    def test_provisioning(self, resource, admin_client):
        """Test that a cluster without known members is provisioning."""
        admin_client.get_local_status.return_value = NodeStatus()
        assert resource.cluster_state(CLUSTER_ID) == ClusterState.PROVISIONING

    def test_pending_rebalance(self, resource, admin_client):
        """Test that a member needing a rebalance reports degraded."""
        admin_client.get_local_status.return_value = NodeStatus(
            otp_node="ns_1@172.17.0.2", status="healthy", needs_rebalance=True
        )
        assert resource.cluster_state(CLUSTER_ID) == ClusterState.DEGRADED
