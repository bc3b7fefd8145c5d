"""Managed cloud runtime backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from dyncluster.core.errors import DynClusterError, ResourceNotFoundError
from dyncluster.core.models import ProvisionedNode
from dyncluster.core.poller import ABSENT, wait_for_state
from dyncluster.core.runtime.base import Capability, RuntimeBackend

if TYPE_CHECKING:
    from dyncluster.core.cancel import CancelToken
    from dyncluster.core.logging.logger import DynClusterLogger
    from dyncluster.core.topology import TopologyRequest

CLUSTER_STATE_HEALTHY = "healthy"
CLUSTER_STATE_POLL_INTERVAL = 10.0


class ControlPlaneClient(ABC):
    """Narrow interface to a cloud provider's managed-cluster API."""

    @abstractmethod
    def create_cluster(self, payload: dict[str, Any]) -> str:
        """Request a new cluster and return its ID."""

    @abstractmethod
    def get_cluster(self, cluster_id: str) -> dict[str, Any]:
        """Return the cluster record. Raises `ResourceNotFoundError`."""

    @abstractmethod
    def delete_cluster(self, cluster_id: str) -> None:
        """Request deletion of a cluster."""

    @abstractmethod
    def list_clusters(self) -> list[dict[str, Any]]:
        """Return every cluster record visible to the caller."""


class CloudRuntime(RuntimeBackend):
    """
    Runtime backend for clusters hosted by a managed control plane.

    Parameters
    ----------
    client : ControlPlaneClient
        Control plane API client.
    logger : DynClusterLogger
        Logger for progress output.

    Notes
    -----
    The control plane owns node placement, so only whole-cluster
    operations are available. Node-level calls raise
    `UnsupportedCapabilityError`.
    """

    name = "cloud"
    capabilities = frozenset({Capability.MANAGED_CLUSTERS, Capability.COLUMNAR})

    def __init__(self, client: ControlPlaneClient, logger: DynClusterLogger) -> None:
        self.client = client
        self.logger = logger

    def list_nodes(self, cluster_id: Optional[str] = None) -> list[ProvisionedNode]:
        """Managed clusters expose no individual nodes."""
        return []

    def list_clusters(self) -> list[dict[str, Any]]:
        """Return every managed cluster record."""
        return self.client.list_clusters()

    def cluster_state(self, cluster_id: str) -> str:
        """Return the control plane's state string for `cluster_id`.

        Raises
        ------
        ResourceNotFoundError
            If the cluster does not exist.
        """
        return str(self.client.get_cluster(cluster_id).get("state", ""))

    def wait_for_cluster_state(
        self,
        cluster_id: str,
        desired: str,
        token: Optional[CancelToken] = None,
        interval: float = CLUSTER_STATE_POLL_INTERVAL,
    ) -> str:
        """
        Poll a managed cluster until it reaches `desired`.

        Parameters
        ----------
        cluster_id : str
            Cluster to watch.
        desired : str
            Target state. `ABSENT` waits for the cluster to be deleted.
        token : CancelToken, optional
            Cancellation token.
        interval : float, optional
            Seconds between polls.

        Returns
        -------
        str
            The final observed state.
        """
        what = f"cluster {cluster_id} to be {desired or 'deleted'}"
        return wait_for_state(
            lambda: self.cluster_state(cluster_id),
            desired,
            interval=interval,
            token=token,
            what=what,
            logger=self.logger,
        )

    def create_managed_cluster(
        self, request: TopologyRequest, token: Optional[CancelToken] = None
    ) -> str:
        """
        Create a managed cluster and wait until it is healthy.

        Returns
        -------
        str
            ID of the new cluster.
        """
        self.require(Capability.MANAGED_CLUSTERS, "create managed cluster")
        if request.columnar:
            self.require(Capability.COLUMNAR, "create managed cluster")

        payload = {
            "purpose": request.purpose,
            "columnar": request.columnar,
            "nodeGroups": [
                {
                    "count": g.count,
                    "version": g.version,
                    "services": [] if request.columnar else g.effective_services,
                    "serverGroup": g.server_group,
                }
                for g in request.groups
            ],
        }
        if request.expiry is not None:
            payload["expirySeconds"] = int(request.expiry.total_seconds())

        try:
            cluster_id = self.client.create_cluster(payload)
        except Exception as e:
            raise DynClusterError("failed to create managed cluster") from e
        self.logger.info(
            f"Waiting for managed cluster {cluster_id} to become healthy..."
        )
        self.wait_for_cluster_state(cluster_id, CLUSTER_STATE_HEALTHY, token)
        return cluster_id

    def remove_managed_cluster(
        self, cluster_id: str, token: Optional[CancelToken] = None
    ) -> None:
        """Delete a managed cluster and wait until it is gone."""
        self.require(Capability.MANAGED_CLUSTERS, "remove managed cluster")
        try:
            self.client.delete_cluster(cluster_id)
        except ResourceNotFoundError:
            self.logger.debug(f"Managed cluster {cluster_id} already deleted")
            return
        except Exception as e:
            raise DynClusterError(
                f"failed to delete managed cluster {cluster_id}"
            ) from e
        self.wait_for_cluster_state(cluster_id, ABSENT, token)
