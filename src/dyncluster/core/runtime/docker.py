"""Docker runtime backend."""

from __future__ import annotations

import io
import json
import tarfile
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

import docker
from docker.errors import APIError, ImageNotFound, NotFound
from docker.models.containers import Container

from dyncluster import settings, utils
from dyncluster.core.cancel import CancelToken
from dyncluster.core.errors import DynClusterError
from dyncluster.core.models import NodeRole, ProvisionedNode
from dyncluster.core.poller import wait_for
from dyncluster.core.runtime.base import Capability, NodeSpec, RuntimeBackend

if TYPE_CHECKING:
    from dyncluster.core.context import DynClusterContext

# Removal runs on its own token so cleanup completes after cancellation.
REMOVE_MAX_WAIT = 60.0


class DockerRuntime(RuntimeBackend):
    """
    Runs cluster nodes as local Docker containers.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object with user input and
        context.

    Notes
    -----
    Containers are the source of truth: every node carries the
    `com.couchbase.dyncluster.*` label set, and cluster membership is
    recomputed from those labels on every `list_nodes()` call. Expiry is
    stored in a small JSON state file inside each container and is only
    read on request through `read_expiry()`.
    """

    name = "docker"
    capabilities = frozenset(
        {
            Capability.NODE_LIFECYCLE,
            Capability.NODE_FILES,
            Capability.NODE_EXEC,
            Capability.IMAGES,
            Capability.MODIFY_CLUSTER,
            Capability.CERTIFICATES,
            Capability.LOAD_BALANCER,
            Capability.BLOB_STORE_MOCK,
            Capability.COLUMNAR,
        }
    )

    def __init__(self, ctx: DynClusterContext) -> None:
        self._ctx = ctx

    @property
    def _client(self) -> docker.DockerClient:
        return self._ctx.docker_client

    @property
    def network(self) -> str:
        """Docker network nodes are attached to (empty for the default)."""
        return self._ctx.env.get("DYNCLUSTER_NETWORK")

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    def list_nodes(self, cluster_id: Optional[str] = None) -> list[ProvisionedNode]:
        """
        List dyncluster containers.

        Parameters
        ----------
        cluster_id : str, optional
            Only return nodes of this cluster.

        Returns
        -------
        list[ProvisionedNode]
            Nodes sorted by name.
        """
        label = settings.CLUSTER_ID_LABEL
        if cluster_id:
            label = f"{label}={cluster_id}"
        try:
            containers = self._client.containers.list(
                all=True, filters={"label": label}
            )
        except APIError as e:
            raise DynClusterError("failed to list containers") from e

        nodes = [self._parse_container(c) for c in containers]
        return sorted((n for n in nodes if n is not None), key=lambda n: n.name)

    def create_node(self, spec: NodeSpec) -> ProvisionedNode:
        """
        Create and start a container for `spec`.

        Returns
        -------
        ProvisionedNode
            The node as observed after it started, with its address.

        Raises
        ------
        DynClusterError
            If the container cannot be created or started. A container
            that was created but failed to start is removed first.
        """
        labels = {
            settings.CLUSTER_ID_LABEL: spec.cluster_id,
            settings.TYPE_LABEL: spec.role.value,
            settings.NODE_ID_LABEL: spec.node_id,
        }
        labels.update(spec.labels)
        name = spec.name or f"{settings.NODE_CONTAINER_PREFIX}{spec.node_id}"
        identifier = utils.generate_identifier({"node": spec.node_id, "name": name})

        self._ctx.logger.debug(f"Creating container {identifier} from {spec.image}")
        try:
            container = self._client.containers.create(
                spec.image,
                name=name,
                labels=labels,
                environment=spec.env or None,
                detach=True,
                network=self.network or None,
                cap_add=["NET_ADMIN"],
                ulimits=[docker.types.Ulimit(name="nofile", soft=200000, hard=200000)],
                volumes=["/etc/localtime:/etc/localtime:ro"],
                auto_remove=True,
            )
        except APIError as e:
            raise DynClusterError(f"failed to create container {identifier}") from e

        try:
            container.start()
        except APIError as e:
            self._force_remove(container.id)
            raise DynClusterError(f"failed to start container {identifier}") from e

        node = self._find_node(container.id)
        if node is None:
            raise DynClusterError(
                f"failed to find newly created container {identifier}"
            )
        self._ctx.logger.debug(f"Started container {identifier} at {node.ip_address}")
        return node

    def remove_node(self, resource_id: str) -> None:
        """
        Stop and remove a container, then wait until it is no longer listed.

        Parameters
        ----------
        resource_id : str
            Container ID.
        """
        try:
            container = self._client.containers.get(resource_id)
        except NotFound:
            self._ctx.logger.debug(f"Container {resource_id[:12]} already removed")
            return
        try:
            container.stop(timeout=0)
        except NotFound:
            return
        except APIError as e:
            raise DynClusterError(f"failed to stop container {resource_id[:12]}") from e
        self._force_remove(resource_id)

        wait_for(
            lambda: any(n.resource_id == resource_id for n in self.list_nodes()),
            lambda present: not present,
            desired=False,
            interval=settings.NODE_REMOVE_POLL_INTERVAL,
            token=CancelToken(),
            what=f"container {resource_id[:12]} to disappear",
            max_wait=REMOVE_MAX_WAIT,
            logger=self._ctx.logger,
        )

    def write_expiry(self, resource_id: str, expiry: Optional[datetime]) -> None:
        """Store the node's expiry in its state file."""
        state = {"expiry": expiry.isoformat() if expiry else None}
        relative = f"{settings.STATE_DIR.rsplit('/', 1)[1]}/{settings.STATE_FILE}"
        self.copy_to_node(
            resource_id,
            settings.STATE_DIR.rsplit("/", 1)[0] + "/",
            {relative: json.dumps(state).encode("utf-8")},
        )

    # ------------------------------------------------------------------
    # Files and commands
    # ------------------------------------------------------------------
    def copy_to_node(
        self, resource_id: str, path: str, files: dict[str, bytes]
    ) -> None:
        """Upload `files` into `path` as a tar archive."""
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            for name, data in files.items():
                info = tarfile.TarInfo(name=name)
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
        try:
            container = self._client.containers.get(resource_id)
            container.put_archive(path, buf.getvalue())
        except APIError as e:
            raise DynClusterError(
                f"failed to copy {sorted(files)} to {resource_id[:12]}:{path}"
            ) from e

    def copy_from_node(self, resource_id: str, path: str) -> dict[str, bytes]:
        """Download `path` from a container.

        Returns
        -------
        dict[str, bytes]
            Regular files in the archive, keyed by archive member name.
        """
        try:
            container = self._client.containers.get(resource_id)
            bits, _ = container.get_archive(path)
        except APIError as e:
            raise DynClusterError(
                f"failed to copy {resource_id[:12]}:{path} from container"
            ) from e

        files = {}
        with tarfile.open(fileobj=io.BytesIO(b"".join(bits)), mode="r") as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                extracted = tar.extractfile(member)
                if extracted is not None:
                    files[member.name] = extracted.read()
        return files

    def exec_in_node(self, resource_id: str, cmd: list[str]) -> str:
        """Run `cmd` in a container.

        Raises
        ------
        DynClusterError
            If the command exits non-zero.
        """
        try:
            container = self._client.containers.get(resource_id)
            exit_code, output = container.exec_run(cmd)
        except APIError as e:
            raise DynClusterError(f"failed to exec {cmd} in {resource_id[:12]}") from e
        text = output.decode("utf-8", errors="replace") if output else ""
        if exit_code != 0:
            raise DynClusterError(
                f"command {cmd} exited with {exit_code} in {resource_id[:12]}: {text}"
            )
        return text

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def pull_image(self, path: str, auth_config: Optional[dict] = None) -> None:
        """Pull `path` from its registry."""
        self._ctx.logger.debug(f"Pulling image {path}")
        self._client.images.pull(path, auth_config=auth_config)

    def image_exists(self, tag: str) -> bool:
        """Whether `tag` exists in the local image store."""
        try:
            self._client.images.get(tag)
        except ImageNotFound:
            return False
        return True

    def build_image(
        self,
        dockerfile: str,
        tag: str,
        build_args: Optional[dict[str, str]] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Build `dockerfile` (no extra context) and tag it."""
        self._ctx.logger.debug(f"Building image {tag}")
        self._client.images.build(
            fileobj=io.BytesIO(dockerfile.encode("utf-8")),
            tag=tag,
            buildargs=build_args or {},
            labels=labels or {},
            rm=True,
        )

    def list_images(self, reference: str) -> list[str]:
        """Return local tags for images named `reference`."""
        tags: list[str] = []
        for image in self._client.images.list(name=reference):
            tags.extend(image.tags)
        return tags

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _find_node(self, container_id: str) -> Optional[ProvisionedNode]:
        for node in self.list_nodes():
            if node.resource_id == container_id:
                return node
        return None

    def _force_remove(self, container_id: str) -> None:
        try:
            self._client.api.remove_container(container_id, force=True)
        except NotFound:
            pass
        except APIError as e:
            # Auto-removed containers race with the explicit removal
            if e.response is None or e.response.status_code != 409:
                raise DynClusterError(
                    f"failed to remove container {container_id[:12]}"
                ) from e

    def _parse_container(self, container: Container) -> Optional[ProvisionedNode]:
        labels: dict[str, Any] = container.labels or {}
        cluster_id = labels.get(settings.CLUSTER_ID_LABEL, "")
        if not cluster_id:
            return None

        ip_address = ""
        networks = container.attrs.get("NetworkSettings", {}).get("Networks") or {}
        for network in networks.values():
            ip_address = network.get("IPAddress", "") or ip_address

        return ProvisionedNode(
            node_id=labels.get(settings.NODE_ID_LABEL, ""),
            resource_id=container.id,
            ip_address=ip_address,
            role=NodeRole.from_label(labels.get(settings.TYPE_LABEL, "")),
            initial_version=labels.get(settings.INITIAL_VERSION_LABEL, ""),
            version_spec=labels.get(settings.VERSION_SPEC_LABEL, ""),
            dns_name=labels.get(settings.DNS_NAME_LABEL, ""),
            cluster_id=cluster_id,
            name=labels.get(settings.NODE_NAME_LABEL, "") or container.name,
            creator=labels.get(settings.CREATOR_LABEL, ""),
            purpose=labels.get(settings.PURPOSE_LABEL, ""),
            using_dino_certs=bool(labels.get(settings.DINO_CERTS_LABEL, "")),
            columnar=bool(labels.get(settings.COLUMNAR_LABEL, "")),
        )

    def read_expiry(self, resource_id: str) -> Optional[datetime]:
        """Best-effort read of the expiry state file.

        A node without a readable state file has no expiry.
        """
        try:
            files = self.copy_from_node(resource_id, settings.STATE_DIR)
        except DynClusterError:
            return None
        for name, data in files.items():
            if not name.endswith(settings.STATE_FILE):
                continue
            try:
                raw = json.loads(data.decode("utf-8")).get("expiry")
                return datetime.fromisoformat(raw) if raw else None
            except ValueError:
                self._ctx.logger.debug(
                    f"Ignoring malformed state in {resource_id[:12]}"
                )
        return None
