from dyncluster.core.runtime.base import Capability, NodeSpec, RuntimeBackend
from dyncluster.core.runtime.cloud import CloudRuntime, ControlPlaneClient
from dyncluster.core.runtime.docker import DockerRuntime

__all__ = [
    "Capability",
    "CloudRuntime",
    "ControlPlaneClient",
    "DockerRuntime",
    "NodeSpec",
    "RuntimeBackend",
]
