"""Core context and controls for dyncluster."""

from __future__ import annotations

import getpass
import os
from typing import Optional

import docker
from docker.errors import DockerException

from dyncluster import settings
from dyncluster.core.cancel import CancelToken, shutdown_token
from dyncluster.core.cluster.cluster import Cluster
from dyncluster.core.dns import DnsProvider
from dyncluster.core.envvars import EnvironmentVariables
from dyncluster.core.errors import DynClusterError
from dyncluster.core.images import ImageProvider, default_image_provider
from dyncluster.core.logging.levels import LogLevel
from dyncluster.core.logging.logger import DynClusterLogger
from dyncluster.core.logging.utils import configure_logging
from dyncluster.core.runtime.base import RuntimeBackend
from dyncluster.core.runtime.docker import DockerRuntime


class DynClusterContext:
    """Expose context and core controls to callers.

    Attributes
    ----------
    cluster : Cluster
        Cluster interface.
    logger : DynClusterLogger
        Logs orchestrator activity.
    env : EnvironmentVariables
        Environment variables from user input, the shell and the config
        file.
    runtime : RuntimeBackend
        Backend nodes are provisioned on.
    dns_provider : DnsProvider, optional
        Provider for cluster DNS records. DNS is unavailable when unset.
    cancel_token : CancelToken
        Token cancelled on shutdown. Operations default to it.
    config_file : str
        Path to the user's dyncluster.cfg file.

    Methods
    -------
    initialize(log_level=None, runtime=None, dns_provider=None, user_env=None)
        Hydrate the context with user-provided inputs.

    Notes
    -----
    The Docker client and the image provider are created on first use,
    so a context backed by a non-Docker runtime never touches Docker.
    """

    cluster: Cluster
    logger: DynClusterLogger
    env: EnvironmentVariables
    runtime: RuntimeBackend
    dns_provider: Optional[DnsProvider]
    cancel_token: CancelToken
    config_file: str

    def __init__(self):
        # ------------------------------
        # ---- User-provided inputs ----
        self._user_env_args: list[str] = []
        # ------------------------------

        self.logger = configure_logging()
        self.env = None
        self.runtime = None
        self.cluster = None
        self.dns_provider = None
        self.cancel_token = shutdown_token.child()
        self.config_file = settings.CONFIG_FILE

        self._docker_client: Optional[docker.DockerClient] = None
        self._image_provider: Optional[ImageProvider] = None
        self._initialized = False

    def initialize(
        self,
        log_level: Optional[LogLevel] = None,
        runtime: Optional[RuntimeBackend] = None,
        dns_provider: Optional[DnsProvider] = None,
        user_env: Optional[list[str]] = None,
    ) -> None:
        """Initialize core context attributes.

        Parameters
        ----------
        log_level : LogLevel, optional
            The log level to set for the logger.
        runtime : RuntimeBackend, optional
            Backend to provision on. Defaults to the local Docker engine.
        dns_provider : DnsProvider, optional
            Provider for cluster DNS records.
        user_env : list[str], optional
            `KEY=VALUE` pairs taking precedence over every other source.
        """
        if self._initialized:
            raise DynClusterError("Context has already been initialized.")
        if log_level:
            self.logger.set_level(log_level)
        self._user_env_args = list(user_env or [])
        self.env = EnvironmentVariables(self)
        self.env._log_env_vars()
        self.runtime = runtime or DockerRuntime(self)
        self.dns_provider = dns_provider
        self.cluster = Cluster(self)
        self._initialized = True
        self.logger.debug(
            f"Context initialized with runtime {type(self.runtime).__name__}."
        )

    @property
    def docker_client(self) -> docker.DockerClient:
        """Docker client, created on first use.

        Raises
        ------
        DynClusterError
            If the Docker daemon cannot be reached.
        """
        if self._docker_client is None:
            host = self.env.get("DOCKER_HOST") if self.env else ""
            self.logger.debug(f"Connecting to Docker at {host or 'default socket'}")
            try:
                if host:
                    self._docker_client = docker.DockerClient(base_url=host)
                else:
                    self._docker_client = docker.from_env()
            except DockerException as e:
                raise DynClusterError("failed to connect to docker") from e
        return self._docker_client

    @docker_client.setter
    def docker_client(self, client: docker.DockerClient) -> None:
        self._docker_client = client

    @property
    def image_provider(self) -> ImageProvider:
        """Provider chain used to resolve versions to images."""
        if self._image_provider is None:
            self._image_provider = default_image_provider(
                self.runtime,
                self.logger,
                ghcr_user=self.env.get("GHCR_USER"),
                ghcr_token=self.env.get("GHCR_TOKEN"),
            )
        return self._image_provider

    @image_provider.setter
    def image_provider(self, provider: ImageProvider) -> None:
        self._image_provider = provider

    @property
    def creator(self) -> str:
        """Who new clusters are recorded as created by."""
        creator = self.env.get("DYNCLUSTER_CREATOR") if self.env else ""
        if creator:
            return creator
        try:
            return getpass.getuser()
        except (KeyError, OSError):
            return os.environ.get("USER", "unknown")
