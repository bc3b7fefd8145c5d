"""Unit tests for the Docker runtime backend."""

import io
import json
import tarfile
from unittest.mock import MagicMock, Mock

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from dyncluster import settings
from dyncluster.core.errors import DynClusterError, UnsupportedCapabilityError
from dyncluster.core.models import NodeRole
from dyncluster.core.runtime.base import Capability, NodeSpec
from dyncluster.core.runtime.cloud import CloudRuntime
from dyncluster.core.runtime.docker import DockerRuntime
from tests.unit_tests.fixtures import CLUSTER_ID


def _container(
    container_id="c" * 64,
    node_id="node-1",
    ip="172.17.0.2",
    role="server-node",
    status="exited",
    **labels,
):
    container = Mock()
    container.id = container_id
    container.name = f"cbdynnode-{node_id}"
    container.status = status
    container.labels = {
        settings.CLUSTER_ID_LABEL: CLUSTER_ID,
        settings.NODE_ID_LABEL: node_id,
        settings.TYPE_LABEL: role,
        settings.INITIAL_VERSION_LABEL: "7.6.0",
        **labels,
    }
    container.attrs = {"NetworkSettings": {"Networks": {"bridge": {"IPAddress": ip}}}}
    return container


def _tar(files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def docker_client():
    """Provide a mock Docker client."""
    return MagicMock()


@pytest.fixture
def runtime(mock_ctx, docker_client):
    """Provide a DockerRuntime over the mock client."""
    mock_ctx.docker_client = docker_client
    return DockerRuntime(mock_ctx)


class TestListNodes:
    """Test suite for DockerRuntime.list_nodes()."""

    def test_parses_labels(self, runtime, docker_client):
        """Test containers are parsed from their labels."""
        docker_client.containers.list.return_value = [
            _container(
                **{
                    settings.DNS_NAME_LABEL: "abc123.c1.example.com",
                    settings.DINO_CERTS_LABEL: "true",
                    settings.PURPOSE_LABEL: "ci",
                }
            ),
            _container("d" * 64, "node-0", "172.17.0.3", role="nginx"),
        ]

        nodes = runtime.list_nodes(CLUSTER_ID)

        docker_client.containers.list.assert_called_once_with(
            all=True, filters={"label": f"{settings.CLUSTER_ID_LABEL}={CLUSTER_ID}"}
        )
        assert [n.node_id for n in nodes] == ["node-0", "node-1"]
        lb, member = nodes
        assert lb.role == NodeRole.LOAD_BALANCER
        assert member.ip_address == "172.17.0.2"
        assert member.using_dino_certs
        assert member.dns_suffix == "c1.example.com"
        assert member.purpose == "ci"

    def test_skips_unlabelled(self, runtime, docker_client):
        """Test containers without a cluster ID are ignored."""
        stray = _container()
        stray.labels = {}
        docker_client.containers.list.return_value = [stray]

        assert runtime.list_nodes() == []

    def test_listing_skips_state_files(self, runtime, docker_client):
        """Test listing reads labels only, leaving expiry unset."""
        docker_client.containers.list.return_value = [
            _container(status="running"),
            _container("d" * 64, "node-0", "172.17.0.3", status="running"),
        ]

        nodes = runtime.list_nodes()

        assert [n.expiry for n in nodes] == [None, None]
        docker_client.containers.get.assert_not_called()

    def test_list_failure(self, runtime, docker_client):
        """Test API failures are wrapped."""
        docker_client.containers.list.side_effect = APIError("boom")

        with pytest.raises(DynClusterError, match="failed to list containers"):
            runtime.list_nodes()


class TestReadExpiry:
    """Test suite for DockerRuntime.read_expiry()."""

    def test_reads_state_file(self, runtime, docker_client):
        """Test the expiry is parsed from the state file."""
        state = json.dumps({"expiry": "2030-01-01T00:00:00+00:00"}).encode()
        docker_client.containers.get.return_value.get_archive.return_value = (
            [_tar({"dyncluster/state": state})],
            {},
        )

        assert runtime.read_expiry("c" * 64).year == 2030
        docker_client.containers.get.assert_called_once_with("c" * 64)

    def test_unreadable_state(self, runtime, docker_client):
        """Test a node whose state cannot be read has no expiry."""
        docker_client.containers.get.return_value.get_archive.side_effect = (
            APIError("no such path")
        )

        assert runtime.read_expiry("c" * 64) is None

    def test_malformed_state(self, runtime, docker_client, mock_ctx):
        """Test malformed state is ignored with a debug message."""
        docker_client.containers.get.return_value.get_archive.return_value = (
            [_tar({"dyncluster/state": b"{not json"})],
            {},
        )

        assert runtime.read_expiry("c" * 64) is None
        mock_ctx.logger.debug.assert_called_once()


class TestCreateNode:
    """Test suite for DockerRuntime.create_node()."""

    def _spec(self):
        return NodeSpec(
            node_id="node-1",
            cluster_id=CLUSTER_ID,
            image="couchbase:enterprise-7.6.0",
            labels={settings.PURPOSE_LABEL: "ci"},
            env={"A": "1"},
        )

    def test_creates_labelled_container(self, runtime, docker_client):
        """Test the container carries the full label set."""
        created = _container()
        docker_client.containers.create.return_value = created
        docker_client.containers.list.return_value = [created]

        node = runtime.create_node(self._spec())

        args, kwargs = docker_client.containers.create.call_args
        assert args == ("couchbase:enterprise-7.6.0",)
        assert kwargs["name"] == "cbdynnode-node-1"
        assert kwargs["labels"][settings.CLUSTER_ID_LABEL] == CLUSTER_ID
        assert kwargs["labels"][settings.TYPE_LABEL] == "server-node"
        assert kwargs["labels"][settings.PURPOSE_LABEL] == "ci"
        assert kwargs["environment"] == {"A": "1"}
        created.start.assert_called_once()
        assert node.ip_address == "172.17.0.2"

    def test_start_failure_removes_container(self, runtime, docker_client):
        """Test a container that fails to start is removed."""
        created = _container()
        created.start.side_effect = APIError("port in use")
        docker_client.containers.create.return_value = created

        with pytest.raises(DynClusterError, match="failed to start container"):
            runtime.create_node(self._spec())

        docker_client.api.remove_container.assert_called_once_with(
            created.id, force=True
        )


class TestRemoveNode:
    """Test suite for DockerRuntime.remove_node()."""

    def test_stops_removes_and_waits(self, runtime, docker_client):
        """Test removal waits until the container is no longer listed."""
        container = _container()
        docker_client.containers.get.return_value = container
        docker_client.containers.list.return_value = []

        runtime.remove_node(container.id)

        container.stop.assert_called_once_with(timeout=0)
        docker_client.api.remove_container.assert_called_once_with(
            container.id, force=True
        )

    def test_already_gone(self, runtime, docker_client):
        """Test removing a missing container is a no-op."""
        docker_client.containers.get.side_effect = NotFound("gone")

        runtime.remove_node("c" * 64)

        docker_client.api.remove_container.assert_not_called()


class TestFilesAndImages:
    """Test suite for file transfer, exec and image helpers."""

    def test_write_expiry(self, runtime, docker_client):
        """Test the expiry is written as a JSON state file."""
        container = docker_client.containers.get.return_value

        runtime.write_expiry("c" * 64, None)

        path, data = container.put_archive.call_args[0]
        assert path == "/var/"
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            member = tar.extractfile("dyncluster/state")
            assert json.loads(member.read()) == {"expiry": None}

    def test_exec_failure(self, runtime, docker_client):
        """Test a non-zero exit code raises."""
        docker_client.containers.get.return_value.exec_run.return_value = (1, b"nope")

        with pytest.raises(DynClusterError, match="exited with 1"):
            runtime.exec_in_node("c" * 64, ["nginx", "-s", "reload"])

    def test_image_exists(self, runtime, docker_client):
        """Test a missing image is reported as absent."""
        docker_client.images.get.side_effect = ImageNotFound("missing")

        assert runtime.image_exists("couchbase:enterprise-7.6.0") is False


class TestCapabilities:
    """Test suite for capability checks."""

    def test_docker_has_no_managed_clusters(self, runtime):
        """Test the Docker backend only runs individual nodes."""
        assert runtime.supports(Capability.NODE_LIFECYCLE)
        assert not runtime.supports(Capability.MANAGED_CLUSTERS)
        with pytest.raises(UnsupportedCapabilityError):
            runtime.require(Capability.MANAGED_CLUSTERS, "create cluster")

    def test_cloud_rejects_node_operations(self):
        """Test node-level calls on the cloud backend raise typed errors."""
        cloud = CloudRuntime(Mock(), Mock())

        with pytest.raises(UnsupportedCapabilityError) as exc_info:
            cloud.write_expiry("x", None)

        assert exc_info.value.backend == "cloud"
        assert exc_info.value.operation == "write node expiry"
