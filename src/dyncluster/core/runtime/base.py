"""Capability-checked runtime backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from dyncluster.core.errors import UnsupportedCapabilityError
from dyncluster.core.models import NodeRole, ProvisionedNode


class Capability(Enum):
    """Things a runtime backend may or may not be able to do."""

    NODE_LIFECYCLE = "node lifecycle (create/remove individual nodes)"
    NODE_FILES = "copying files to and from nodes"
    NODE_EXEC = "executing commands on nodes"
    IMAGES = "pulling and building node images"
    MODIFY_CLUSTER = "adding and removing nodes of a running cluster"
    CERTIFICATES = "per-cluster certificate authorities"
    LOAD_BALANCER = "load-balancer nodes"
    BLOB_STORE_MOCK = "blob store mock nodes"
    MANAGED_CLUSTERS = "managed cluster creation"
    COLUMNAR = "columnar clusters"


@dataclass
class NodeSpec:
    """Everything a backend needs to create one node.

    Attributes
    ----------
    node_id : str
        Identity assigned by the caller.
    cluster_id : str
        Cluster the node belongs to.
    image : str
        Artifact path to run.
    role : NodeRole
        Role label for the node.
    name : str
        Runtime resource name.
    labels : dict[str, str]
        Extra labels to attach.
    env : dict[str, str]
        Environment variables for the node.
    """

    node_id: str
    cluster_id: str
    image: str
    role: NodeRole = NodeRole.CLUSTER_MEMBER
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)


class RuntimeBackend(ABC):
    """A place nodes run: local containers, a cloud control plane, ...

    Subclasses declare their `capabilities`. Callers check `supports()`
    before optional work, or call `require()` to fail with a typed
    `UnsupportedCapabilityError` instead of invoking something the
    backend does not implement.
    """

    name = "runtime"
    capabilities: frozenset[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        """Whether this backend supports `capability`."""
        return capability in self.capabilities

    def require(self, capability: Capability, operation: str = "") -> None:
        """Raise `UnsupportedCapabilityError` unless `capability` is supported."""
        if not self.supports(capability):
            raise UnsupportedCapabilityError(self.name, capability.value, operation)

    @abstractmethod
    def list_nodes(self, cluster_id: Optional[str] = None) -> list[ProvisionedNode]:
        """List live nodes, optionally filtered to one cluster."""

    def create_node(self, spec: NodeSpec) -> ProvisionedNode:
        """Create and start a node."""
        self.require(Capability.NODE_LIFECYCLE, "create node")
        raise NotImplementedError

    def remove_node(self, resource_id: str) -> None:
        """Destroy a node and wait until it is gone."""
        self.require(Capability.NODE_LIFECYCLE, "remove node")
        raise NotImplementedError

    def copy_to_node(
        self, resource_id: str, path: str, files: dict[str, bytes]
    ) -> None:
        """Write `files` (relative name to content) under `path` on a node."""
        self.require(Capability.NODE_FILES, "copy to node")
        raise NotImplementedError

    def copy_from_node(self, resource_id: str, path: str) -> dict[str, bytes]:
        """Read the files under `path` from a node."""
        self.require(Capability.NODE_FILES, "copy from node")
        raise NotImplementedError

    def exec_in_node(self, resource_id: str, cmd: list[str]) -> str:
        """Run `cmd` on a node and return its output."""
        self.require(Capability.NODE_EXEC, "exec in node")
        raise NotImplementedError

    def pull_image(self, path: str, auth_config: Optional[dict] = None) -> None:
        """Make `path` available locally."""
        self.require(Capability.IMAGES, "pull image")
        raise NotImplementedError

    def image_exists(self, tag: str) -> bool:
        """Whether an image tagged `tag` exists locally."""
        self.require(Capability.IMAGES, "inspect image")
        raise NotImplementedError

    def build_image(
        self,
        dockerfile: str,
        tag: str,
        build_args: Optional[dict[str, str]] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Build an image from a Dockerfile and tag it."""
        self.require(Capability.IMAGES, "build image")
        raise NotImplementedError

    def list_images(self, reference: str) -> list[str]:
        """Return local image tags matching `reference`."""
        self.require(Capability.IMAGES, "list images")
        raise NotImplementedError

    def write_expiry(self, resource_id: str, expiry: Optional[datetime]) -> None:
        """Record when a node should be cleaned up."""
        self.require(Capability.NODE_FILES, "write node expiry")
        raise NotImplementedError

    def read_expiry(self, resource_id: str) -> Optional[datetime]:
        """Return the recorded expiry of a node, if any."""
        self.require(Capability.NODE_FILES, "read node expiry")
        raise NotImplementedError
