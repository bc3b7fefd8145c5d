"""Shared pytest fixtures for dyncluster unit tests.

This module provides reusable fixtures and factories for testing the
orchestrator. Most components only need a context exposing a logger, an
environment, a runtime and a cluster facade, so the context fixture is a
`Mock` with real `EnvironmentVariables` behind it.
"""

from unittest.mock import MagicMock, Mock, patch

import pytest

from dyncluster.core.cancel import CancelToken
from dyncluster.core.envvars import EnvironmentVariables
from dyncluster.core.images import ResolvedImage
from dyncluster.core.models import (
    ClusterMemberEx,
    ClusterView,
    ClusterViewEx,
    NodeRole,
    NodeStatus,
    ProvisionedNode,
)
from dyncluster.core.runtime.base import Capability

CLUSTER_ID = "4f1c2d3e-0000-4000-8000-000000000001"


# =============================================================================
# Factories
# =============================================================================


def make_node(
    index: int = 1,
    cluster_id: str = CLUSTER_ID,
    role: NodeRole = NodeRole.CLUSTER_MEMBER,
    version: str = "7.6.0",
    **kwargs,
) -> ProvisionedNode:
    """Build a `ProvisionedNode` with predictable identifiers."""
    defaults = {
        "node_id": f"node{index:04d}-0000-4000-8000-{index:012d}",
        "resource_id": f"container{index:04d}{'0' * 52}",
        "ip_address": f"172.17.0.{index + 1}",
        "role": role,
        "initial_version": version if role == NodeRole.CLUSTER_MEMBER else "",
        "cluster_id": cluster_id,
        "name": f"cbdynnode-{index}",
        "creator": "tester",
    }
    defaults.update(kwargs)
    return ProvisionedNode(**defaults)


def make_view(nodes, cluster_id: str = CLUSTER_ID) -> ClusterView:
    """Build a `ClusterView` over `nodes`."""
    return ClusterView(cluster_id, list(nodes))


def make_view_ex(nodes, statuses=None, cluster_id: str = CLUSTER_ID) -> ClusterViewEx:
    """
    Build a `ClusterViewEx`.

    Members without an explicit status report a healthy status with an
    OTP identity derived from their address.
    """
    statuses = statuses or {}
    view = make_view(nodes, cluster_id)
    members = []
    for node in view.members:
        status = statuses.get(
            node.node_id,
            NodeStatus(
                otp_node=f"ns_1@{node.ip_address}",
                status="healthy",
                services=["fts", "index", "kv", "n1ql"],
            ),
        )
        members.append(ClusterMemberEx(node, status))
    return ClusterViewEx(view, members)


def make_image(version: str = "7.6.0", build: int = 0) -> ResolvedImage:
    """Build a resolved enterprise image."""
    return ResolvedImage(
        artifact_path=f"couchbase:enterprise-{version}",
        version=version,
        build=build,
        edition="enterprise",
        variant="",
    )


# =============================================================================
# Context Fixtures
# =============================================================================


@pytest.fixture
def env_values():
    """Values the context environment is seeded with."""
    return {}


@pytest.fixture
def mock_runtime():
    """Provide a runtime mock supporting every capability."""
    runtime = MagicMock()
    runtime.name = "mock"
    runtime.supports.return_value = True
    runtime.capabilities = frozenset(Capability)
    return runtime


@pytest.fixture
def mock_ctx(tmp_path, env_values, mock_runtime):
    """
    Provide a mock DynClusterContext.

    The environment is a real `EnvironmentVariables` built from
    `env_values` only, with the OS environment and config file isolated.
    """
    ctx = Mock()
    ctx.logger = Mock()
    ctx._user_env_args = [f"{k}={v}" for k, v in env_values.items()]
    ctx.config_file = str(tmp_path / "dyncluster.cfg")
    with patch.dict("os.environ", {}, clear=True):
        ctx.env = EnvironmentVariables(ctx)
    ctx.runtime = mock_runtime
    ctx.dns_provider = None
    ctx.creator = "tester"
    ctx.cancel_token = CancelToken()
    ctx.cluster = Mock()
    return ctx


@pytest.fixture
def token():
    """Provide a fresh cancellation token."""
    return CancelToken()


@pytest.fixture
def no_sleep():
    """Make `CancelToken.sleep` return immediately unless cancelled."""

    def _sleep(self, seconds, msg="operation cancelled"):
        self.check(msg)

    with patch.object(CancelToken, "sleep", _sleep):
        yield


# =============================================================================
# HTTP Fixtures
# =============================================================================


def make_response(status_code: int = 200, payload=None, text: str = ""):
    """Build a `requests.Response`-like mock."""
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.text = text
    response.content = b"{}" if payload is not None else text.encode()
    response.json.return_value = payload
    return response


@pytest.fixture
def mock_session():
    """Provide a mock `requests.Session` answering 200 with no body."""
    session = MagicMock()
    session.request.return_value = make_response(200, None, "")
    return session
