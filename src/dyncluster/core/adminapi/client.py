"""HTTP client for a node's administrative REST API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

import requests

from dyncluster import settings
from dyncluster.core.cancel import CancelToken
from dyncluster.core.errors import AdminApiError, DynClusterError, TransientError
from dyncluster.core.models import NodeStatus

if TYPE_CHECKING:
    from dyncluster.core.logging.logger import DynClusterLogger

# Form field for each memory quota key.
QUOTA_FIELDS = {
    "kv": "memoryQuota",
    "index": "indexMemoryQuota",
    "fts": "ftsMemoryQuota",
    "cbas": "cbasMemoryQuota",
    "eventing": "eventingMemoryQuota",
}

DEFAULT_GROUP_URI = "/pools/default/serverGroups/0"


class AdminClient:
    """
    Form-encoded client for one node's admin API.

    Parameters
    ----------
    endpoint : str
        Base URL, e.g. `http://172.17.0.2:8091`.
    username : str, optional
        Administrative user. Defaults to the fixed deployment credentials.
    password : str, optional
        Administrative password.
    token : CancelToken, optional
        Cancellation token observed between retries.
    logger : DynClusterLogger, optional
        Logger for retry output.
    retries : int, optional
        Retries for retriable calls. Defaults to `ADMIN_API_RETRIES`.
    session : requests.Session, optional
        Session to use. A new one is created if omitted.

    Notes
    -----
    Every call except `ping()` is retried on transport errors and
    non-2xx responses, one second apart. Non-2xx responses surface as
    `AdminApiError` carrying the status code and body.
    """

    def __init__(
        self,
        endpoint: str,
        username: str = settings.ADMIN_USER,
        password: str = settings.ADMIN_PASSWORD,
        token: Optional[CancelToken] = None,
        logger: Optional[DynClusterLogger] = None,
        retries: int = settings.ADMIN_API_RETRIES,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.username = username
        self.password = password
        self.token = token or CancelToken()
        self.logger = logger
        self.retries = retries
        self.session = session or requests.Session()
        self.session.auth = (username, password)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _do_request(self, method: str, path: str, data: Optional[dict] = None) -> Any:
        try:
            resp = self.session.request(
                method,
                self.endpoint + path,
                data=data,
                timeout=settings.ADMIN_API_TIMEOUT,
            )
        except requests.RequestException as e:
            raise TransientError(f"failed to execute {method} {path}") from e

        if not 200 <= resp.status_code < 300:
            raise AdminApiError(method, path, resp.status_code, resp.text)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    def request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        retries: Optional[int] = None,
    ) -> Any:
        """
        Issue a request, retrying failures.

        Parameters
        ----------
        method : str
            HTTP method.
        path : str
            Path below the endpoint.
        data : dict, optional
            Form fields.
        retries : int, optional
            Override the client's retry count. 0 disables retries.

        Returns
        -------
        Any
            Decoded JSON body, or None for an empty body.

        Raises
        ------
        OperationCancelled
            If the token is cancelled between retries.
        DynClusterError
            If the last attempt failed. The failure is chained.
        """
        max_retries = self.retries if retries is None else retries
        attempt = 0
        while True:
            self.token.check(f"context finished while requesting {method} {path}")
            try:
                return self._do_request(method, path, data)
            except (TransientError, AdminApiError) as e:
                if max_retries == 0:
                    raise
                if attempt >= max_retries:
                    raise DynClusterError(f"failed after {max_retries} retries") from e
                attempt += 1
                if self.logger:
                    self.logger.debug(
                        f"{method} {self.endpoint}{path} failed (retry {attempt}/"
                        f"{max_retries}): {e}"
                    )
                self.token.sleep(
                    settings.ADMIN_API_RETRY_INTERVAL,
                    f"context finished while retrying {method} {path}",
                )

    def get(self, path: str, retries: Optional[int] = None) -> Any:
        """GET `path`."""
        return self.request("GET", path, retries=retries)

    def post(self, path: str, data: Optional[dict] = None) -> Any:
        """Form-POST `data` to `path`."""
        return self.request("POST", path, data=data or {})

    # ------------------------------------------------------------------
    # Node
    # ------------------------------------------------------------------
    def ping(self) -> None:
        """Check the node answers. Never retried."""
        self.get("/pools", retries=0)

    def node_init(self, hostname: str = "127.0.0.1", afamily: str = "ipv4") -> None:
        self.post("/nodeInit", {"hostname": hostname, "afamily": afamily})

    def get_pool(self) -> dict:
        """Return the default pool document."""
        return self.get("/pools/default") or {}

    def get_node_services(self) -> list[dict]:
        """Return the per-node service map of the cluster."""
        return (self.get("/pools/default/nodeServices") or {}).get("nodesExt", [])

    def get_local_status(self) -> NodeStatus:
        """Return this node's identity, health and rebalance flag."""
        pool = self.get_pool()
        status = NodeStatus(needs_rebalance=not pool.get("balanced", True))
        for node in pool.get("nodes", []):
            if node.get("thisNode"):
                status.otp_node = node.get("otpNode", "")
                status.status = node.get("status", "")
                status.services = list(node.get("services", []))
                break
        return status

    def list_node_otps(self) -> list[str]:
        """Return the internal identity of every node in the pool."""
        return [n.get("otpNode", "") for n in self.get_pool().get("nodes", [])]

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def set_memory_quotas(
        self, quotas: dict[str, int], cluster_name: str = settings.DEFAULT_CLUSTER_NAME
    ) -> None:
        """Set the cluster name and every positive memory quota."""
        form = {}
        if cluster_name:
            form["clusterName"] = cluster_name
        for key, field_name in QUOTA_FIELDS.items():
            if quotas.get(key, 0) > 0:
                form[field_name] = str(quotas[key])
        self.post("/pools/default", form)

    def set_analytics_settings(self, form: dict[str, str]) -> None:
        self.post("/settings/analytics", form)

    def setup_services(self, services: list[str]) -> None:
        form = {"services": ",".join(services)} if services else {}
        self.post("/node/controller/setupServices", form)

    def enable_external_listener(
        self, afamily: str = "ipv4", node_encryption: str = "off"
    ) -> None:
        self.post(
            "/node/controller/enableExternalListener",
            {"afamily": afamily, "nodeEncryption": node_encryption},
        )

    def setup_net_config(
        self, afamily: str = "ipv4", node_encryption: str = "off"
    ) -> None:
        self.post(
            "/node/controller/setupNetConfig",
            {"afamily": afamily, "nodeEncryption": node_encryption},
        )

    def disable_unused_external_listeners(self) -> None:
        self.post("/node/controller/disableUnusedExternalListeners")

    def set_index_storage_mode(self, storage_mode: str) -> None:
        self.post("/settings/indexes", {"storageMode": storage_mode})

    def set_credentials(self, username: str, password: str) -> None:
        self.post(
            "/settings/web",
            {"username": username, "password": password, "port": "SAME"},
        )

    # ------------------------------------------------------------------
    # Server groups and membership
    # ------------------------------------------------------------------
    def get_server_groups(self) -> list[dict]:
        """Return server groups as `{name, addNodeURI, ...}` dicts."""
        return (self.get("/pools/default/serverGroups") or {}).get("groups", [])

    def create_server_group(self, name: str) -> None:
        self.post("/pools/default/serverGroups", {"name": name})

    def rename_server_group(
        self, name: str, group_uri: str = DEFAULT_GROUP_URI
    ) -> None:
        self.request("PUT", group_uri, data={"name": name})

    def add_node(
        self,
        address: str,
        services: list[str],
        add_node_uri: str = "",
    ) -> None:
        """Register `address` as a new member with `services`."""
        form = {
            "hostname": address,
            "services": ",".join(services),
            "user": self.username,
            "password": self.password,
        }
        self.post(add_node_uri or f"{DEFAULT_GROUP_URI}/addNode", form)

    def rebalance(self, known_otps: list[str], ejected_otps: list[str]) -> None:
        self.post(
            "/controller/rebalance",
            {
                "knownNodes": ",".join(known_otps),
                "ejectedNodes": ",".join(ejected_otps),
            },
        )

    def get_tasks(self) -> list[dict]:
        """Return background tasks as `{type, status, ...}` dicts."""
        return self.get("/pools/default/tasks") or []

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------
    def load_trusted_cas(self) -> None:
        self.post("/node/controller/loadTrustedCAs")

    def reload_certificate(self) -> None:
        self.post("/node/controller/reloadCertificate")

    def delete_trusted_ca(self, ca_id: int = 0) -> None:
        self.request("DELETE", f"/pools/default/trustedCAs/{ca_id}")
