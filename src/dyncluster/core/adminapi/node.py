"""Multi-step admin API workflows against one node."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from dyncluster import settings
from dyncluster.core.adminapi.client import DEFAULT_GROUP_URI, AdminClient
from dyncluster.core.cancel import CancelToken
from dyncluster.core.errors import DynClusterError
from dyncluster.core.models import BlobStorageSettings, NodeStatus
from dyncluster.core.poller import wait_for

if TYPE_CHECKING:
    from dyncluster.core.logging.logger import DynClusterLogger


class NodeManager:
    """
    Drives one node through setup, membership and rebalance workflows.

    Parameters
    ----------
    endpoint : str
        Admin API base URL of the node.
    logger : DynClusterLogger
        Logger for progress output.
    token : CancelToken, optional
        Cancellation token for every wait.
    client : AdminClient, optional
        Client to use. Built from `endpoint` if omitted.
    """

    def __init__(
        self,
        endpoint: str,
        logger: DynClusterLogger,
        token: Optional[CancelToken] = None,
        client: Optional[AdminClient] = None,
    ) -> None:
        self.endpoint = endpoint
        self.logger = logger
        self.token = token or CancelToken()
        self.client = client or AdminClient(endpoint, token=self.token, logger=logger)

    def wait_for_online(self, token: Optional[CancelToken] = None) -> None:
        """Ping the node every second until it answers. Cancellable only."""
        wait_for(
            self.client.ping,
            lambda _: True,
            desired="online",
            interval=settings.POLL_INTERVAL,
            token=token or self.token,
            what="node to start",
            logger=self.logger,
        )

    def setup_one_node_cluster(
        self,
        services: list[str],
        memory_quotas: dict[str, int],
        server_group: str = "",
        username: str = settings.ADMIN_USER,
        password: str = settings.ADMIN_PASSWORD,
        blob_storage: Optional[BlobStorageSettings] = None,
    ) -> None:
        """
        Initialise this node as the first member of a new cluster.

        Parameters
        ----------
        services : list[str]
            Services to enable on the node.
        memory_quotas : dict[str, int]
            Final per-service quotas in MB. Zero quotas are not sent.
        server_group : str, optional
            Name for the default server group.
        username, password : str, optional
            Administrative credentials to configure.
        blob_storage : BlobStorageSettings, optional
            Object storage for analytics, set before services start.

        Raises
        ------
        DynClusterError
            Naming the step that failed, with the API error chained.
        """
        c = self.client
        steps = [
            ("failed to initialize node", c.node_init),
            (
                "failed to configure memory quotas",
                lambda: c.set_memory_quotas(memory_quotas),
            ),
        ]
        if blob_storage is not None:
            steps.append(
                (
                    "failed to configure analytics settings",
                    lambda: c.set_analytics_settings(blob_storage.to_form()),
                )
            )
        steps += [
            ("failed to setup services", lambda: c.setup_services(services)),
            ("failed to enable external listener", c.enable_external_listener),
            ("failed to setup net config", c.setup_net_config),
            (
                "failed to disable unused external listeners",
                c.disable_unused_external_listeners,
            ),
        ]
        for msg, step in steps:
            try:
                step()
            except DynClusterError as e:
                raise DynClusterError(msg) from e

        if "index" in services:
            self._set_index_storage_mode()

        try:
            c.set_credentials(username, password)
        except DynClusterError as e:
            raise DynClusterError("failed to configure credentials") from e

        if server_group and server_group != settings.DEFAULT_SERVER_GROUP:
            try:
                c.rename_server_group(server_group)
            except DynClusterError as e:
                raise DynClusterError("failed to rename default server group") from e

    def _set_index_storage_mode(self) -> None:
        try:
            self.client.set_index_storage_mode("plasma")
        except DynClusterError as e:
            # Community editions only ship forestdb
            self.logger.warn(
                f"Failed to set plasma index storage, trying forestdb: {e}"
            )
            try:
                self.client.set_index_storage_mode("forestdb")
            except DynClusterError as e2:
                raise DynClusterError("failed to configure index storage mode") from e2

    def ensure_server_group(self, name: str) -> str:
        """
        Return the add-node URI of server group `name`, creating it if needed.
        """
        if not name:
            return f"{DEFAULT_GROUP_URI}/addNode"

        def _find() -> str:
            for group in self.client.get_server_groups():
                if group.get("name") == name:
                    return group.get("addNodeURI", "")
            return ""

        uri = _find()
        if uri:
            return uri

        self.logger.debug(f"Creating server group '{name}'")
        try:
            self.client.create_server_group(name)
        except DynClusterError as e:
            raise DynClusterError(f"failed to create server group '{name}'") from e
        return wait_for(
            _find,
            bool,
            desired=name,
            interval=settings.POLL_INTERVAL,
            token=self.token,
            what=f"server group '{name}' to appear",
            logger=self.logger,
        )

    def add_node(
        self, address: str, services: list[str], server_group: str = ""
    ) -> None:
        """Register the node at `address` with this node's cluster."""
        uri = self.ensure_server_group(server_group)
        try:
            self.client.add_node(address, services, uri)
        except DynClusterError as e:
            raise DynClusterError(f"failed to add node {address}") from e

    def otp_nodes(self) -> list[str]:
        """Internal identities of every member this node knows about."""
        return self.client.list_node_otps()

    def local_status(self) -> NodeStatus:
        """This node's live status."""
        return self.client.get_local_status()

    def rebalance(self, eject_otps: Optional[list[str]] = None) -> None:
        """
        Start a rebalance over every known node, ejecting `eject_otps`.

        The known node set is read from the live pool right before the
        call.
        """
        try:
            known = self.otp_nodes()
        except DynClusterError as e:
            raise DynClusterError("failed to list node otps") from e
        try:
            self.client.rebalance(known, list(eject_otps or []))
        except DynClusterError as e:
            raise DynClusterError("failed to start rebalance") from e

    def wait_for_no_running_tasks(self, token: Optional[CancelToken] = None) -> None:
        """Poll the task list until nothing is running."""

        def _running() -> list[str]:
            return [
                t.get("type", "task")
                for t in self.client.get_tasks()
                if t.get("status") not in settings.INACTIVE_TASK_STATES
            ]

        wait_for(
            _running,
            lambda running: not running,
            desired=[],
            interval=settings.TASK_POLL_INTERVAL,
            token=token or self.token,
            what="running tasks to complete",
            logger=self.logger,
        )
