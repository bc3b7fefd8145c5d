"""Keeps DNS and the load balancer in line with cluster membership."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from dyncluster.core.dns import DnsProvider, cluster_records, node_record_names
from dyncluster.core.errors import DynClusterError
from dyncluster.core.loadbalancer import NginxLoadBalancer
from dyncluster.core.models import ClusterView, ProvisionedNode
from dyncluster.core.runtime.base import Capability

if TYPE_CHECKING:
    from dyncluster.core.logging.logger import DynClusterLogger
    from dyncluster.core.runtime.base import RuntimeBackend


class AncillaryWiring:
    """
    Publishes DNS records and load-balancer backends for a cluster.

    Parameters
    ----------
    runtime : RuntimeBackend
        Backend running the cluster.
    logger : DynClusterLogger
        Logger for progress output.
    dns_provider : DnsProvider, optional
        DNS zone to publish into. DNS work is skipped without one.

    Notes
    -----
    Both updates are computed from the member list of the view they are
    given and always replace the full record or backend set. Callers
    pass a view fetched after the topology settled.
    """

    def __init__(
        self,
        runtime: RuntimeBackend,
        logger: DynClusterLogger,
        dns_provider: Optional[DnsProvider] = None,
    ) -> None:
        self.runtime = runtime
        self.logger = logger
        self.dns_provider = dns_provider

    def load_balancer_for(self, node: ProvisionedNode) -> NginxLoadBalancer:
        """Return a controller for the load-balancer `node`."""
        return NginxLoadBalancer(self.runtime, node.resource_id, self.logger)

    def update_dns(self, view: ClusterView, new_cluster: bool = False) -> None:
        """Upsert the cluster's A and SRV records."""
        if not view.dns_name:
            return
        if self.dns_provider is None:
            raise DynClusterError("cannot use dns, dns not configured")

        lb = view.load_balancer
        if view.columnar and lb and not new_cluster:
            # The A record already points at the load balancer
            records = [
                r
                for r in cluster_records(
                    view.dns_name, view.members, lb.ip_address, True
                )
                if r.name != view.dns_name
            ]
        else:
            records = cluster_records(
                view.dns_name,
                view.members,
                lb.ip_address if lb else "",
                view.columnar,
            )
        if not records:
            return

        self.logger.info(f"Updating DNS records for {view.dns_name}...")
        self.logger.debug(f"DNS records: {records}")
        try:
            self.dns_provider.update_records(records, no_wait=new_cluster)
        except Exception as e:
            raise DynClusterError(f"failed to upsert {len(records)} records") from e

    def update_load_balancer(self, view: ClusterView) -> None:
        """Replace the load balancer's backends with the current members."""
        lb = view.load_balancer
        if lb is None:
            return
        self.runtime.require(Capability.LOAD_BALANCER, "update load balancer")
        self.logger.info(f"Updating load balancer for cluster {view.cluster_id}...")
        self.load_balancer_for(lb).update_config(
            [m.ip_address for m in view.members],
            tls_enabled=view.using_dino_certs,
            columnar=view.columnar,
        )

    def refresh(self, view: ClusterView, new_cluster: bool = False) -> None:
        """
        Bring DNS, then the load balancer, in line with `view`.

        Parameters
        ----------
        view : ClusterView
            A view fetched after the topology settled.
        new_cluster : bool, optional
            The cluster is being created, so DNS changes are not awaited.
        """
        try:
            self.update_dns(view, new_cluster)
        except DynClusterError as e:
            raise DynClusterError("failed to update dns records") from e
        try:
            self.update_load_balancer(view)
        except DynClusterError as e:
            raise DynClusterError("failed to update load balancer") from e

    def remove(
        self, nodes: list[ProvisionedNode], node_names_only: bool = False
    ) -> None:
        """
        Remove every DNS record associated with `nodes`.

        Parameters
        ----------
        nodes : list[ProvisionedNode]
            Nodes whose records to remove.
        node_names_only : bool, optional
            Only remove the per-node names, keeping the cluster-wide
            records. Used when nodes leave a cluster that lives on.

        Notes
        -----
        Failures are logged as warnings; they never fail the caller.
        """
        if node_names_only:
            names = list(dict.fromkeys(n.dns_name for n in nodes if n.dns_name))
        else:
            names = node_record_names(nodes)
        if not names:
            return
        if self.dns_provider is None:
            self.logger.warn(
                "Could not remove associated DNS names due to no DNS configuration."
            )
            return
        self.logger.info(f"Removing DNS names: {', '.join(names)}")
        try:
            self.dns_provider.remove_records(
                names, no_wait=True, no_wait_for_propagation=True
            )
        except Exception as e:
            self.logger.warn(f"Failed to remove DNS names: {e}")
