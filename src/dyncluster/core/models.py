"""Data model shared across the orchestrator."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from dyncluster import settings


class NodeRole(Enum):
    """Role of a runtime node, stored in the type label."""

    CLUSTER_MEMBER = "server-node"
    LOAD_BALANCER = "nginx"
    BLOB_STORE_MOCK = "s3mock"

    @classmethod
    def from_label(cls, value: str) -> NodeRole:
        """Return the role for a label value. Unlabelled nodes are members."""
        if not value:
            return cls.CLUSTER_MEMBER
        return cls(value)


class ClusterState(Enum):
    """Lifecycle state derived from live observation, never stored."""

    PROVISIONING = "provisioning"
    READY = "ready"
    RECONCILING = "reconciling"
    DEGRADED = "degraded"
    REMOVED = "removed"


@dataclass
class ProvisionedNode:
    """A runtime node owned by the orchestrator.

    Attributes
    ----------
    node_id : str
        Identity assigned at creation, never reused.
    resource_id : str
        Runtime handle (container ID, cloud resource ID).
    ip_address : str
        Network address.
    role : NodeRole
        What the node is for.
    initial_version : str
        Server version the node was created with.
    version_spec : str
        Canonical form of the full specifier the node was requested
        with, build and edition included. Empty for nodes created
        before it was recorded.
    dns_name : str
        Per-node DNS name, empty when DNS is not used.
    """

    node_id: str
    resource_id: str
    ip_address: str = ""
    role: NodeRole = NodeRole.CLUSTER_MEMBER
    initial_version: str = ""
    version_spec: str = ""
    dns_name: str = ""
    cluster_id: str = ""
    name: str = ""
    creator: str = ""
    purpose: str = ""
    using_dino_certs: bool = False
    columnar: bool = False
    expiry: Optional[datetime] = None

    @property
    def is_cluster_member(self) -> bool:
        """Whether this node is a database cluster member."""
        return self.role == NodeRole.CLUSTER_MEMBER

    @property
    def dns_suffix(self) -> str:
        """The cluster DNS name this node's DNS name lives under."""
        if "." not in self.dns_name:
            return ""
        return self.dns_name.split(".", 1)[1]

    @property
    def admin_endpoint(self) -> str:
        """Base URL of the node's admin API."""
        return f"http://{self.ip_address}:{settings.ADMIN_PORT}"

    @property
    def short_id(self) -> str:
        """Shortened runtime handle for log output."""
        return self.resource_id[:12]


@dataclass
class ClusterView:
    """Live nodes of one cluster as of `fetched_at`.

    A view is a snapshot. Anything that mutates the cluster must fetch a
    new one before its next step.
    """

    cluster_id: str
    nodes: list[ProvisionedNode] = field(default_factory=list)
    fetched_at: float = field(default_factory=time.monotonic)

    @property
    def members(self) -> list[ProvisionedNode]:
        """Database cluster members."""
        return [n for n in self.nodes if n.is_cluster_member]

    @property
    def load_balancer(self) -> Optional[ProvisionedNode]:
        """The load-balancer node, if the cluster has one."""
        return next((n for n in self.nodes if n.role == NodeRole.LOAD_BALANCER), None)

    @property
    def blob_store_mock(self) -> Optional[ProvisionedNode]:
        """The blob store mock node, if the cluster has one."""
        return next(
            (n for n in self.nodes if n.role == NodeRole.BLOB_STORE_MOCK), None
        )

    def _from_members(self, attr: str, default=""):
        for node in self.members:
            value = getattr(node, attr)
            if value:
                return value
        return default

    @property
    def dns_name(self) -> str:
        """DNS name of the cluster, empty when DNS is not used."""
        return self._from_members("dns_suffix")

    @property
    def creator(self) -> str:
        """Who created the cluster."""
        return self._from_members("creator")

    @property
    def purpose(self) -> str:
        """Free-form purpose recorded at creation."""
        return self._from_members("purpose")

    @property
    def using_dino_certs(self) -> bool:
        """Whether members carry certificates from the per-cluster CA."""
        return any(n.using_dino_certs for n in self.members)

    @property
    def columnar(self) -> bool:
        """Whether this is a columnar cluster."""
        return any(n.columnar for n in self.members)

    @property
    def expiry(self) -> Optional[datetime]:
        """Latest expiry of any member."""
        expiries = [n.expiry for n in self.members if n.expiry]
        return max(expiries) if expiries else None

    def node(self, node_id: str) -> Optional[ProvisionedNode]:
        """Return the node with `node_id`, if present."""
        return next((n for n in self.nodes if n.node_id == node_id), None)


@dataclass
class NodeStatus:
    """Live admin API status of one member. Empty when unknown."""

    otp_node: str = ""
    status: str = ""
    services: list[str] = field(default_factory=list)
    needs_rebalance: bool = False
    error: str = ""

    @property
    def known(self) -> bool:
        """Whether the node reported its internal identity."""
        return bool(self.otp_node)


@dataclass
class ClusterMemberEx:
    """A member node paired with its live status."""

    node: ProvisionedNode
    status: NodeStatus = field(default_factory=NodeStatus)


@dataclass
class ClusterViewEx:
    """A `ClusterView` enriched with each member's live status.

    Enrichment is best-effort: members that did not answer carry an
    empty `NodeStatus` with `error` set.
    """

    view: ClusterView
    members: list[ClusterMemberEx] = field(default_factory=list)

    @property
    def cluster_id(self) -> str:
        """ID of the cluster."""
        return self.view.cluster_id

    @property
    def known_members(self) -> list[ClusterMemberEx]:
        """Members whose internal identity is known."""
        return [m for m in self.members if m.status.known]

    @property
    def otp_nodes(self) -> list[str]:
        """Internal identities of every member that reported one."""
        return [m.status.otp_node for m in self.known_members]

    def member_for_otp(self, otp_node: str) -> Optional[ClusterMemberEx]:
        """Return the member with internal identity `otp_node`."""
        return next((m for m in self.members if m.status.otp_node == otp_node), None)


@dataclass
class RebalancePlan:
    """The topology delta applied in one reconciliation pass.

    Attributes
    ----------
    node_groups_to_add : list
        Individualised node groups (count 1) to provision and join.
    nodes_to_remove : list[ProvisionedNode]
        Existing members to evict and destroy.
    """

    node_groups_to_add: list = field(default_factory=list)
    nodes_to_remove: list[ProvisionedNode] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        """Whether the plan changes nothing."""
        return not self.node_groups_to_add and not self.nodes_to_remove


@dataclass(frozen=True)
class BlobStorageSettings:
    """Where analytics nodes keep their data when backed by object storage.

    Attributes
    ----------
    endpoint : str
        Base URL of the S3-compatible service.
    bucket : str
        Bucket holding the analytics data.
    region, scheme, prefix : str
        Passed to the server as given.
    anonymous_auth : bool
        Whether requests to the store are unauthenticated.
    force_path_style : bool
        Address the bucket by path rather than by virtual host.
    """

    endpoint: str
    bucket: str = "columnar"
    region: str = "local"
    scheme: str = "s3"
    prefix: str = ""
    anonymous_auth: bool = True
    force_path_style: bool = True

    def to_form(self) -> dict[str, str]:
        """Render as the form fields of the analytics settings endpoint."""
        form = {
            "blobStorageRegion": self.region,
            "blobStorageBucket": self.bucket,
            "blobStorageScheme": self.scheme,
            "blobStorageEndpoint": self.endpoint,
            "blobStorageAnonymousAuth": str(self.anonymous_auth).lower(),
            "blobStorageForcePathStyle": str(self.force_path_style).lower(),
        }
        if self.prefix:
            form["blobStoragePrefix"] = self.prefix
        return form
