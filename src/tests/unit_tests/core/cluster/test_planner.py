"""Unit tests for topology planning."""

from unittest.mock import Mock

import pytest

from dyncluster.core.cluster.planner import (
    NodeJob,
    TopologyPlanner,
    compare_for_bootstrap,
)
from dyncluster.core.errors import DynClusterError, UserError
from dyncluster.core.topology import NodeGroupSpec, TopologyRequest
from tests.unit_tests.fixtures import make_image, make_node


@pytest.fixture
def planner(mock_ctx):
    """Provide a planner with a mock image provider."""
    mock_ctx.image_provider = Mock()
    mock_ctx.image_provider.get_image.side_effect = lambda d: make_image(
        d.version, d.build
    )
    return TopologyPlanner(mock_ctx)


class TestValidate:
    """Test suite for TopologyPlanner.validate()."""

    def test_empty_request(self, planner):
        """Test that a request without nodes is rejected."""
        with pytest.raises(UserError, match="no nodes"):
            planner.validate(TopologyRequest(groups=(NodeGroupSpec(count=0),)))

    def test_columnar_with_services(self, planner):
        """Test that columnar groups cannot name services."""
        request = TopologyRequest(
            groups=(NodeGroupSpec(count=1, version="7.6.0", services=("kv",)),),
            columnar=True,
        )
        with pytest.raises(UserError, match="cannot specify services"):
            planner.validate(request)

    def test_valid_request(self, planner):
        """Test that a plain request passes."""
        planner.validate(TopologyRequest(groups=(NodeGroupSpec(3, "7.6.0"),)))


class TestResolveImages:
    """Test suite for TopologyPlanner.resolve_images()."""

    def test_equal_definitions_resolve_once(self, planner, mock_ctx):
        """Test that groups with equal image definitions share one image."""
        request = TopologyRequest(
            groups=(
                NodeGroupSpec(1, "7.6.0"),
                NodeGroupSpec(2, "7.6.0", services=("kv",)),
                NodeGroupSpec(1, "7.2.4"),
            )
        )

        images = planner.resolve_images(request)

        assert [i.version for i in images] == ["7.6.0", "7.6.0", "7.2.4"]
        assert images[0] is images[1]
        assert mock_ctx.image_provider.get_image.call_count == 2

    def test_different_builds_resolve_separately(self, planner, mock_ctx):
        """Test that a build number makes a distinct definition."""
        request = TopologyRequest(
            groups=(NodeGroupSpec(1, "7.6.0"), NodeGroupSpec(1, "7.6.0-1234"))
        )

        images = planner.resolve_images(request)

        assert [i.build for i in images] == [0, 1234]
        assert mock_ctx.image_provider.get_image.call_count == 2

    def test_provider_failure(self, planner, mock_ctx):
        """Test that resolution failures name the version."""
        mock_ctx.image_provider.get_image.side_effect = DynClusterError("no such tag")
        request = TopologyRequest(groups=(NodeGroupSpec(1, "7.6.0"),))

        with pytest.raises(DynClusterError, match="version 7.6.0"):
            planner.resolve_images(request)


class TestExpand:
    """Test suite for TopologyPlanner.expand()."""

    def test_one_job_per_node(self, planner):
        """Test that every group is expanded into single-node jobs."""
        request = TopologyRequest(
            groups=(
                NodeGroupSpec(2, "7.6.0", server_group="group-a"),
                NodeGroupSpec(1, "7.2.4", services=("kv", "index")),
            )
        )
        images = [make_image("7.6.0"), make_image("7.2.4")]

        jobs = planner.expand(request, images)

        assert [j.index for j in jobs] == [0, 1, 2]
        assert all(j.group.count == 1 for j in jobs)
        assert [j.image.version for j in jobs] == ["7.6.0", "7.6.0", "7.2.4"]
        assert jobs[0].server_group == "group-a"
        assert jobs[0].services == ["kv", "n1ql", "index", "fts"]
        assert jobs[2].services == ["kv", "index"]

    def test_columnar_services(self, planner):
        """Test that columnar nodes always run kv and cbas."""
        request = TopologyRequest(groups=(NodeGroupSpec(2, "7.6.0"),), columnar=True)

        jobs = planner.expand(request)

        assert [j.services for j in jobs] == [["kv", "cbas"], ["kv", "cbas"]]
        assert all(j.image is None for j in jobs)


class TestOrderForBootstrap:
    """Test suite for bring-up ordering."""

    def _job(self, index, version, ip):
        job = NodeJob(index, NodeGroupSpec(1, version), ["kv"])
        job.node = make_node(index + 1, version=version, ip_address=ip)
        return job

    def test_oldest_version_first(self, planner):
        """Test that older versions initialise before newer ones."""
        jobs = [
            self._job(0, "7.6.0", "10.0.0.1"),
            self._job(1, "7.2.4", "10.0.0.9"),
            self._job(2, "7.2.4", "10.0.0.2"),
        ]

        ordered = planner.order_for_bootstrap(jobs)

        assert [j.index for j in ordered] == [2, 1, 0]

    def test_addresses_compare_numerically(self):
        """Test that address ties are broken numerically, not lexically."""
        a = make_node(1, ip_address="10.0.0.9")
        b = make_node(2, ip_address="10.0.0.10")

        assert compare_for_bootstrap(a, b) == -1
        assert compare_for_bootstrap(b, a) == 1
        assert compare_for_bootstrap(a, a) == 0

    def test_unprovisioned_job(self, planner):
        """Test that every job needs a node before ordering."""
        jobs = [self._job(0, "7.6.0", "10.0.0.1"), NodeJob(1, NodeGroupSpec(), [])]

        with pytest.raises(DynClusterError, match=r"\[1\]"):
            planner.order_for_bootstrap(jobs)
