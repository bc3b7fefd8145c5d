"""DNS provider interface and record computation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from dyncluster.core.models import ProvisionedNode

RECORD_A = "A"
RECORD_SRV = "SRV"
SRV_PREFIX = "_couchbase._tcp.srv."
SECURE_SRV_PREFIX = "_couchbases._tcp.srv."
KV_PORT = 11210
KV_TLS_PORT = 11207


@dataclass
class DnsRecord:
    """One DNS record set, upserted by name."""

    record_type: str
    name: str
    values: list[str] = field(default_factory=list)


class DnsProvider(ABC):
    """A DNS zone the orchestrator publishes cluster records into."""

    @abstractmethod
    def get_hostname(self) -> str:
        """Return the zone cluster DNS names are created under."""

    @abstractmethod
    def update_records(
        self,
        records: list[DnsRecord],
        no_wait: bool = False,
        no_wait_for_propagation: bool = False,
    ) -> None:
        """Upsert `records` by name."""

    @abstractmethod
    def remove_records(
        self,
        names: list[str],
        no_wait: bool = False,
        no_wait_for_propagation: bool = False,
    ) -> None:
        """Remove every record set with one of `names`."""


def cluster_records(
    dns_name: str,
    members: list[ProvisionedNode],
    load_balancer_ip: str = "",
    columnar: bool = False,
) -> list[DnsRecord]:
    """
    Compute the full record set for a cluster from its live members.

    Parameters
    ----------
    dns_name : str
        The cluster DNS name.
    members : list[ProvisionedNode]
        Current cluster members. Other roles are ignored.
    load_balancer_ip : str, optional
        Address of the load balancer. Columnar clusters with a load
        balancer point their A record at it instead of the members.
    columnar : bool, optional
        Columnar clusters publish no SRV records.

    Returns
    -------
    list[DnsRecord]
        The A record followed by the SRV records, if any.
    """
    addrs = [m.ip_address for m in members if m.is_cluster_member]

    if columnar and load_balancer_ip:
        records = [DnsRecord(RECORD_A, dns_name, [load_balancer_ip])]
    else:
        records = [DnsRecord(RECORD_A, dns_name, addrs)]

    if not columnar:
        records.append(
            DnsRecord(
                RECORD_SRV,
                SRV_PREFIX + dns_name,
                [f"0 0 {KV_PORT} {a}" for a in addrs],
            )
        )
        records.append(
            DnsRecord(
                RECORD_SRV,
                SECURE_SRV_PREFIX + dns_name,
                [f"0 0 {KV_TLS_PORT} {a}" for a in addrs],
            )
        )
    return records


def node_record_names(nodes: list[ProvisionedNode]) -> list[str]:
    """
    Every record name associated with any of `nodes`, without duplicates.
    """
    names: list[str] = []

    def _add(name: str) -> None:
        if name and name not in names:
            names.append(name)

    for node in nodes:
        _add(node.dns_name)
        suffix = node.dns_suffix
        if suffix:
            _add(suffix)
            _add(SRV_PREFIX + suffix)
            _add(SECURE_SRV_PREFIX + suffix)
    return names
