"""Unit tests for the managed cloud runtime backend."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from dyncluster.core.errors import DynClusterError, ResourceNotFoundError
from dyncluster.core.runtime.cloud import CloudRuntime
from dyncluster.core.topology import NodeGroupSpec, TopologyRequest


@pytest.fixture
def client():
    """Provide a mock control plane client."""
    return Mock()


@pytest.fixture
def cloud(client):
    """Provide a CloudRuntime with instant polling."""
    runtime = CloudRuntime(client, Mock())
    original = runtime.wait_for_cluster_state

    def _fast(cluster_id, desired, token=None, interval=0):
        return original(cluster_id, desired, token, interval=0)

    runtime.wait_for_cluster_state = _fast
    return runtime


class TestCloudRuntime:
    """Test suite for CloudRuntime."""

    def test_create_waits_for_healthy(self, cloud, client):
        """Test creation sends the node groups and waits until healthy."""
        client.create_cluster.return_value = "cl-1"
        client.get_cluster.side_effect = [
            {"state": "deploying"},
            {"state": "healthy"},
        ]
        request = TopologyRequest(
            groups=(NodeGroupSpec(count=3, version="7.6.0"),),
            purpose="ci",
            expiry=timedelta(hours=2),
        )

        assert cloud.create_managed_cluster(request) == "cl-1"

        payload = client.create_cluster.call_args[0][0]
        assert payload["nodeGroups"][0]["count"] == 3
        assert payload["expirySeconds"] == 7200
        assert client.get_cluster.call_count == 2

    def test_create_failure(self, cloud, client):
        """Test control plane failures are wrapped."""
        client.create_cluster.side_effect = RuntimeError("quota exceeded")

        with pytest.raises(DynClusterError, match="failed to create managed cluster"):
            cloud.create_managed_cluster(
                TopologyRequest(groups=(NodeGroupSpec(version="7.6.0"),))
            )

    def test_remove_waits_for_absence(self, cloud, client):
        """Test removal polls until the cluster is gone."""
        client.get_cluster.side_effect = [
            {"state": "destroying"},
            ResourceNotFoundError("gone"),
        ]

        cloud.remove_managed_cluster("cl-1")

        client.delete_cluster.assert_called_once_with("cl-1")
        assert client.get_cluster.call_count == 2

    def test_remove_already_gone(self, cloud, client):
        """Test removing an unknown cluster succeeds without polling."""
        client.delete_cluster.side_effect = ResourceNotFoundError("gone")

        cloud.remove_managed_cluster("cl-1")

        client.get_cluster.assert_not_called()

    def test_no_individual_nodes(self, cloud):
        """Test managed clusters expose no nodes."""
        assert cloud.list_nodes() == []
