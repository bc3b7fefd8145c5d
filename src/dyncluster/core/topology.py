"""Declarative topology requests."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Optional, Sequence

from dyncluster import settings, utils
from dyncluster.core.errors import UserError


@dataclass(frozen=True)
class NodeGroupSpec:
    """A specification for `count` interchangeable cluster members.

    Attributes
    ----------
    count : int
        Number of members in the group.
    version : str
        Version specifier, see `dyncluster.core.versions.identify`.
    services : tuple[str, ...]
        Services to enable. Empty means the default service set.
    server_group : str
        Server group to place members in. Empty means the default group.
    env : tuple[tuple[str, str], ...]
        Extra environment variables for the node runtime.
    """

    count: int = 1
    version: str = ""
    services: tuple[str, ...] = ()
    server_group: str = ""
    env: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if self.count < 0:
            raise UserError(f"Node group count must not be negative, got {self.count}.")
        for service in self.services:
            utils.closest_match_or_error(service, settings.SERVICES, "service")

    @property
    def effective_services(self) -> list[str]:
        """Services to enable, falling back to the default set."""
        return list(self.services) if self.services else list(settings.DEFAULT_SERVICES)

    @property
    def env_dict(self) -> dict[str, str]:
        """Environment overrides as a dict."""
        return dict(self.env)

    def single(self) -> NodeGroupSpec:
        """Return a copy of this group with a count of one."""
        return replace(self, count=1)


@dataclass(frozen=True)
class TopologyRequest:
    """Immutable input to a deployment.

    Attributes
    ----------
    groups : tuple[NodeGroupSpec, ...]
        Node groups in request order.
    purpose : str
        Free-form purpose, recorded on every node.
    expiry : timedelta, optional
        How long the cluster should live. None means no expiry.
    use_dino_certs : bool
        Issue node certificates from a per-cluster CA.
    enable_dns : bool
        Publish A/SRV records for the cluster.
    enable_load_balancer : bool
        Deploy a load-balancer node in front of the members.
    blob_store_mock : bool
        Deploy a mock blob store next to the members.
    columnar : bool
        Request a columnar cluster.
    memory_quotas : tuple[tuple[str, int], ...]
        Per-service memory quota overrides in MB.
    """

    groups: tuple[NodeGroupSpec, ...] = ()
    purpose: str = ""
    expiry: Optional[timedelta] = None
    use_dino_certs: bool = False
    enable_dns: bool = False
    enable_load_balancer: bool = False
    blob_store_mock: bool = False
    columnar: bool = False
    memory_quotas: tuple[tuple[str, int], ...] = ()

    @property
    def memory_quota_overrides(self) -> dict[str, int]:
        """Memory quota overrides as a dict."""
        return dict(self.memory_quotas)

    @property
    def node_count(self) -> int:
        """Total number of members requested."""
        return sum(g.count for g in self.groups)

    def individualized(self) -> list[NodeGroupSpec]:
        """Expand every group into `count` single-node groups, in order."""
        return [g.single() for g in self.groups for _ in range(g.count)]


def compare_services(a: Sequence[str], b: Sequence[str]) -> int:
    """Order-insensitive comparison of two service sets.

    Shorter sets sort first; sets of equal length compare by their
    sorted contents.
    """
    if len(a) != len(b):
        return -1 if len(a) < len(b) else 1
    sa, sb = sorted(a), sorted(b)
    return (sa > sb) - (sa < sb)


def from_short_string(short: str, **kwargs) -> TopologyRequest:
    """
    Build a request from a short topology string such as `simple:7.6.0`.

    Parameters
    ----------
    short : str
        `<name>:<version>` where name is one of `simple`, `single`,
        `high-mem`, `columnar` or `columnar-single`.
    **kwargs
        Extra `TopologyRequest` fields (purpose, expiry, ...).

    Returns
    -------
    TopologyRequest
        The expanded request.

    Raises
    ------
    UserError
        For a malformed string or an unknown name.
    """
    parts = short.split(":")
    if len(parts) != 2:
        raise UserError(
            f"unexpected short string format '{short}'", "Use <name>:<version>."
        )
    name, version = parts
    template = settings.SHORT_TOPOLOGIES.get(name)
    if template is None:
        raise UserError(
            f"unknown short string name `{name}`",
            f"Valid names: {', '.join(settings.SHORT_TOPOLOGIES)}",
        )

    columnar = bool(template.get("columnar"))
    services: tuple[str, ...] = () if columnar else tuple(settings.DEFAULT_SERVICES)
    group = NodeGroupSpec(count=template["count"], version=version, services=services)
    quotas = tuple(template.get("quotas", {}).items())
    return TopologyRequest(
        groups=(group,), columnar=columnar, memory_quotas=quotas, **kwargs
    )
