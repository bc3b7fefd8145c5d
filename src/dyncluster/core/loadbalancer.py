"""Load balancer controllers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from dyncluster import settings
from dyncluster.core.errors import DynClusterError

if TYPE_CHECKING:
    from dyncluster.core.logging.logger import DynClusterLogger
    from dyncluster.core.runtime.base import RuntimeBackend

NGINX_SSL_DIR = "/etc/nginx/ssl/"
NGINX_CERT_FILE = "cert.pem"
NGINX_KEY_FILE = "key.pem"

# Ports whose upstreams pin clients to one backend.
STICKY_PORTS = frozenset({8091, 18091})


def render_upstream(port: int, addrs: list[str], tls: bool) -> str:
    """Render the upstream and server blocks forwarding one port."""
    lines = [f"upstream backend{port} {{"]
    if port in STICKY_PORTS:
        lines.append("    ip_hash;")
    lines.extend(f"    server {addr}:{port};" for addr in addrs)
    lines.append("}")
    lines.append("server {")
    if tls:
        lines.append(f"    listen {port} ssl;")
        lines.append(f"    ssl_certificate {NGINX_SSL_DIR}{NGINX_CERT_FILE};")
        lines.append(f"    ssl_certificate_key {NGINX_SSL_DIR}{NGINX_KEY_FILE};")
    else:
        lines.append(f"    listen {port};")
    lines.append("    location / {")
    lines.append(f"        proxy_pass {'https' if tls else 'http'}://backend{port};")
    lines.append("        proxy_set_header Host $http_host;")
    lines.append("        proxy_set_header X-Real-IP $remote_addr;")
    lines.append("        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;")
    lines.append("    }")
    lines.append("}")
    return "\n".join(lines) + "\n"


def render_config(addrs: list[str], tls_enabled: bool) -> str:
    """
    Render a complete nginx configuration for `addrs`.

    Parameters
    ----------
    addrs : list[str]
        Backend member addresses.
    tls_enabled : bool
        Also forward the TLS admin ports.

    Returns
    -------
    str
        The configuration. Empty when there are no backends.
    """
    if not addrs:
        return ""
    ports = [(p, False) for p in settings.LB_PORTS]
    if tls_enabled:
        ports.extend((p, True) for p in settings.LB_TLS_PORTS)
    return "".join(render_upstream(port, addrs, tls) for port, tls in ports)


class LoadBalancerController(ABC):
    """A load balancer whose backends track the cluster members."""

    @abstractmethod
    def update_config(
        self, targets: list[str], tls_enabled: bool, columnar: bool
    ) -> None:
        """Replace the whole backend configuration with `targets`."""


class NginxLoadBalancer(LoadBalancerController):
    """
    An nginx node configured through the runtime backend.

    Parameters
    ----------
    runtime : RuntimeBackend
        Backend running the nginx node.
    resource_id : str
        Runtime handle of the nginx node.
    logger : DynClusterLogger
        Logger for progress output.
    """

    def __init__(
        self, runtime: RuntimeBackend, resource_id: str, logger: DynClusterLogger
    ):
        self.runtime = runtime
        self.resource_id = resource_id
        self.logger = logger

    def update_config(
        self, targets: list[str], tls_enabled: bool, columnar: bool
    ) -> None:
        """
        Upload a fresh configuration and reload nginx.

        Columnar and operational clusters are forwarded identically.
        """
        self.logger.debug(
            f"Writing nginx config for {len(targets)} backends "
            f"(tls: {tls_enabled}, columnar: {columnar})"
        )
        conf = render_config(targets, tls_enabled)
        directory, filename = settings.NGINX_CONFIG_PATH.rsplit("/", 1)
        try:
            self.runtime.copy_to_node(
                self.resource_id, directory + "/", {filename: conf.encode("utf-8")}
            )
        except DynClusterError as e:
            raise DynClusterError("failed to write nginx config") from e
        try:
            self.runtime.exec_in_node(self.resource_id, ["nginx", "-s", "reload"])
        except DynClusterError as e:
            raise DynClusterError("failed to reload nginx config") from e

    def upload_certificates(self, cert_pem: bytes, key_pem: bytes) -> None:
        """Install the TLS certificate nginx serves."""
        try:
            self.runtime.exec_in_node(self.resource_id, ["mkdir", "-p", NGINX_SSL_DIR])
        except DynClusterError as e:
            raise DynClusterError("failed to mkdir nginx ssl folder") from e
        try:
            self.runtime.copy_to_node(
                self.resource_id,
                NGINX_SSL_DIR,
                {NGINX_CERT_FILE: cert_pem, NGINX_KEY_FILE: key_pem},
            )
        except DynClusterError as e:
            raise DynClusterError("failed to write certificates") from e
