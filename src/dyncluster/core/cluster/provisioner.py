"""Creates runtime nodes and brings them online."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

import requests

from dyncluster import settings, utils
from dyncluster.core.adminapi.client import AdminClient
from dyncluster.core.adminapi.node import NodeManager
from dyncluster.core.cancel import CancelToken
from dyncluster.core.errors import DynClusterError, TransientError
from dyncluster.core.loadbalancer import NginxLoadBalancer
from dyncluster.core.models import BlobStorageSettings, NodeRole, ProvisionedNode
from dyncluster.core.poller import wait_for
from dyncluster.core.runtime.base import Capability, NodeSpec
from dyncluster.core.versions import identify

if TYPE_CHECKING:
    from dyncluster.core.certs import CertAuthority
    from dyncluster.core.cluster.planner import NodeJob
    from dyncluster.core.context import DynClusterContext

BLOB_STORE_PORT = 9090
BLOB_STORE_BUCKET = "columnar"
UTILITY_POLL_INTERVAL = 0.1


@dataclass
class ProvisionOptions:
    """Cluster-wide settings applied to every node of one operation.

    Attributes
    ----------
    cluster_id : str
        Cluster the nodes belong to.
    dns_suffix : str
        Cluster DNS name, empty when DNS is not used.
    purpose : str
        Free-form purpose label.
    expiry : timedelta, optional
        Lifetime of the nodes from now.
    use_dino_certs : bool
        Nodes get certificates from the cluster CA.
    columnar : bool
        Nodes belong to a columnar cluster.
    """

    cluster_id: str
    dns_suffix: str = ""
    purpose: str = ""
    expiry: Optional[timedelta] = None
    use_dino_certs: bool = False
    columnar: bool = False

    @property
    def expiry_time(self) -> Optional[datetime]:
        """Absolute expiry, computed now."""
        if not self.expiry:
            return None
        return datetime.now(timezone.utc) + self.expiry


class NodeProvisioner:
    """
    Creates one runtime node at a time and waits until it is usable.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object with user input and
        context.

    Notes
    -----
    A node that fails after its runtime resource was created is removed
    before the error propagates, so callers only ever need to clean up
    nodes that were returned to them.
    """

    def __init__(self, ctx: DynClusterContext):
        self._ctx = ctx

    @property
    def _runtime(self):
        return self._ctx.runtime

    def provision_node(
        self,
        job: NodeJob,
        options: ProvisionOptions,
        token: Optional[CancelToken] = None,
    ) -> ProvisionedNode:
        """
        Create a cluster member for `job` and wait for its admin API.

        Parameters
        ----------
        job : NodeJob
            The job to provision. Its image must be resolved.
        options : ProvisionOptions
            Cluster-wide settings.
        token : CancelToken, optional
            Cancellation token for the readiness wait.

        Returns
        -------
        ProvisionedNode
            The node, answering on its admin API.
        """
        if job.image is None:
            raise DynClusterError(f"no image resolved for node job {job.index}")
        self._runtime.require(Capability.NODE_LIFECYCLE, "provision node")

        node_id = str(uuid.uuid4())
        dns_name = f"{node_id[:6]}.{options.dns_suffix}" if options.dns_suffix else ""
        labels = {
            settings.DNS_NAME_LABEL: dns_name,
            settings.PURPOSE_LABEL: options.purpose,
            settings.INITIAL_VERSION_LABEL: job.image.version,
            settings.VERSION_SPEC_LABEL: str(identify(job.group.version)),
            settings.CREATOR_LABEL: self._ctx.creator,
            settings.DINO_CERTS_LABEL: "true" if options.use_dino_certs else "",
            settings.COLUMNAR_LABEL: "true" if options.columnar else "",
        }
        spec = NodeSpec(
            node_id=node_id,
            cluster_id=options.cluster_id,
            image=job.image.artifact_path,
            role=NodeRole.CLUSTER_MEMBER,
            labels=labels,
            env=job.group.env_dict,
        )
        identifier = utils.generate_identifier(
            {"cluster": options.cluster_id[:8], "node": node_id[:8]}
        )

        self._ctx.logger.debug(
            f"{identifier} Deploying node from {job.image.artifact_path}"
        )
        try:
            node = self._runtime.create_node(spec)
        except DynClusterError as e:
            raise DynClusterError("failed to create node") from e

        try:
            self.write_expiry(node, options.expiry_time)
            self._ctx.logger.debug(
                f"{identifier} Node started at {node.ip_address}, "
                f"waiting for it to come online"
            )
            manager = NodeManager(node.admin_endpoint, self._ctx.logger, token)
            manager.wait_for_online(token)
        except Exception:
            self.destroy(node)
            raise

        self._ctx.logger.info(f"Node {node.node_id[:8]} is online at {node.ip_address}")
        return node

    def write_expiry(self, node: ProvisionedNode, expiry: Optional[datetime]) -> None:
        """Record the node's expiry in the runtime."""
        try:
            self._runtime.write_expiry(node.resource_id, expiry)
        except DynClusterError as e:
            raise DynClusterError("failed to write node state") from e
        node.expiry = expiry

    def destroy(self, node: ProvisionedNode) -> None:
        """Remove a node's runtime resource, logging instead of raising."""
        self._ctx.logger.debug(f"Removing node {node.node_id[:8]} ({node.short_id})")
        try:
            self._runtime.remove_node(node.resource_id)
        except DynClusterError as e:
            self._ctx.logger.warn(f"Failed to remove node {node.short_id}: {e}")

    def install_certificates(
        self, node: ProvisionedNode, cluster_ca: CertAuthority, root_ca_pem: bytes
    ) -> None:
        """
        Issue a server certificate for `node` and make the node use it.

        The certificate covers the node's address and DNS names and is
        chained to `cluster_ca`. After upload the node reloads its trust
        store and certificate, then drops its self-signed trust anchor.

        Raises
        ------
        DynClusterError
            Naming the certificate step that failed.
        """
        self._runtime.require(Capability.CERTIFICATES, "install certificates")
        dns_names = [n for n in (node.dns_name, node.dns_suffix) if n]
        self._ctx.logger.debug(
            f"Generating certificate for node {node.node_id[:8]} "
            f"(ip: {node.ip_address}, dns names: {dns_names})"
        )
        try:
            cert_pem, key_pem = cluster_ca.make_server_certificate(
                f"node-{node.node_id[:8]}", [node.ip_address], dns_names
            )
        except ValueError as e:
            raise DynClusterError("failed to create server certificate") from e

        try:
            self.upload_certificates(
                node, cert_pem + cluster_ca.cert_pem, key_pem, root_ca_pem
            )
        except DynClusterError as e:
            raise DynClusterError("failed to upload certificates") from e

        client = AdminClient(
            node.admin_endpoint, token=self._ctx.cancel_token, logger=self._ctx.logger
        )
        steps = [
            ("failed to load trusted CAs", client.load_trusted_cas),
            ("failed to refresh certificates", client.reload_certificate),
            (
                "failed to delete default certificate",
                lambda: client.delete_trusted_ca(0),
            ),
        ]
        for msg, step in steps:
            try:
                step()
            except DynClusterError as e:
                raise DynClusterError(msg) from e

    def upload_certificates(
        self,
        node: ProvisionedNode,
        chain_pem: bytes,
        key_pem: bytes,
        ca_pem: bytes,
    ) -> None:
        """Copy certificate material into the node's inbox."""
        inbox = settings.CERT_INBOX_DIR
        self._runtime.exec_in_node(node.resource_id, ["mkdir", "-p", inbox + "/"])
        self._runtime.copy_to_node(
            node.resource_id,
            inbox + "/",
            {
                settings.CERT_CHAIN_FILE: chain_pem,
                settings.CERT_KEY_FILE: key_pem,
                f"{settings.CERT_CA_DIR}/{settings.CERT_CA_FILE}": ca_pem,
            },
        )
        self._runtime.exec_in_node(
            node.resource_id, ["chown", "-R", settings.CERT_OWNER, inbox]
        )
        self._runtime.exec_in_node(node.resource_id, ["chmod", "-R", "0700", inbox])

    # ------------------------------------------------------------------
    # Utility nodes
    # ------------------------------------------------------------------
    def _deploy_utility_node(
        self,
        role: NodeRole,
        image: str,
        name: str,
        purpose: str,
        ready_url_port: int,
        options: ProvisionOptions,
        token: Optional[CancelToken],
    ) -> ProvisionedNode:
        self._ctx.logger.debug(f"Pulling {image}:latest")
        try:
            self._runtime.pull_image(f"{image}:latest")
        except Exception as e:
            raise DynClusterError(f"failed to pull {role.value} image") from e

        spec = NodeSpec(
            node_id=role.value,
            cluster_id=options.cluster_id,
            image=image,
            role=role,
            name=name,
            labels={settings.PURPOSE_LABEL: purpose},
        )
        try:
            node = self._runtime.create_node(spec)
        except DynClusterError as e:
            raise DynClusterError(f"failed to create {role.value} node") from e

        try:
            self.write_expiry(node, options.expiry_time)
            url = f"http://{node.ip_address}:{ready_url_port}"
            self.wait_for_http_ok(url, f"{role.value} node to get ready", token)
        except Exception:
            self.destroy(node)
            raise
        return node

    def wait_for_http_ok(
        self, url: str, what: str, token: Optional[CancelToken]
    ) -> None:
        """Poll `url` until it answers 200."""

        def _status() -> int:
            try:
                return requests.get(url, timeout=settings.ADMIN_API_TIMEOUT).status_code
            except requests.RequestException as e:
                raise TransientError(f"GET {url} failed") from e

        wait_for(
            _status,
            lambda code: code == 200,
            desired=200,
            interval=UTILITY_POLL_INTERVAL,
            token=token or self._ctx.cancel_token,
            what=what,
            logger=self._ctx.logger,
        )

    def deploy_load_balancer(
        self,
        options: ProvisionOptions,
        cluster_ca: Optional[CertAuthority] = None,
        token: Optional[CancelToken] = None,
    ) -> ProvisionedNode:
        """
        Deploy the nginx node of a cluster.

        With a cluster CA, nginx also gets a certificate for its address
        and the cluster DNS name.
        """
        self._runtime.require(Capability.LOAD_BALANCER, "deploy load balancer")
        node = self._deploy_utility_node(
            NodeRole.LOAD_BALANCER,
            settings.NGINX_IMAGE,
            f"{settings.NODE_CONTAINER_PREFIX}nginx-{options.cluster_id}",
            "nginx backing for cluster",
            80,
            options,
            token,
        )
        if cluster_ca is None:
            return node

        try:
            dns_names = [options.dns_suffix] if options.dns_suffix else []
            cert_pem, key_pem = cluster_ca.make_server_certificate(
                f"nginx-{options.cluster_id[:8]}", [node.ip_address], dns_names
            )
            lb = NginxLoadBalancer(self._runtime, node.resource_id, self._ctx.logger)
            lb.upload_certificates(cert_pem + cluster_ca.cert_pem, key_pem)
        except Exception as e:
            self.destroy(node)
            raise DynClusterError("failed to setup nginx certificates") from e
        return node

    @staticmethod
    def blob_storage_for(node: ProvisionedNode) -> BlobStorageSettings:
        """Analytics blob storage settings pointing at an S3 mock node."""
        return BlobStorageSettings(
            endpoint=f"http://{node.ip_address}:{BLOB_STORE_PORT}",
            bucket=BLOB_STORE_BUCKET,
        )

    def deploy_blob_store_mock(
        self, options: ProvisionOptions, token: Optional[CancelToken] = None
    ) -> ProvisionedNode:
        """Deploy an S3 mock node and create the columnar bucket on it."""
        self._runtime.require(Capability.BLOB_STORE_MOCK, "deploy blob store mock")
        node = self._deploy_utility_node(
            NodeRole.BLOB_STORE_MOCK,
            settings.S3MOCK_IMAGE,
            f"{settings.NODE_CONTAINER_PREFIX}s3-{options.cluster_id}",
            "s3mock backing for columnar",
            BLOB_STORE_PORT,
            options,
            token,
        )
        url = f"http://{node.ip_address}:{BLOB_STORE_PORT}/{BLOB_STORE_BUCKET}/"
        try:
            resp = requests.put(url, timeout=settings.ADMIN_API_TIMEOUT)
            if resp.status_code != 200:
                raise DynClusterError(
                    f"unexpected status {resp.status_code}: {resp.text}"
                )
        except (requests.RequestException, DynClusterError) as e:
            self.destroy(node)
            raise DynClusterError("failed to create columnar bucket") from e
        return node
