"""Expands topology requests into node-provisioning jobs."""

from __future__ import annotations

import functools
import ipaddress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from dyncluster.core.errors import DynClusterError, UserError
from dyncluster.core.images import ImageDef, ResolvedImage, compare_image_defs
from dyncluster.core.models import ProvisionedNode
from dyncluster.core.topology import NodeGroupSpec, TopologyRequest
from dyncluster.core.versions import compare_versions, identify

if TYPE_CHECKING:
    from dyncluster.core.context import DynClusterContext

COLUMNAR_SERVICES = ["kv", "cbas"]


@dataclass
class NodeJob:
    """One node to provision.

    Attributes
    ----------
    index : int
        Position of the job in the expanded request.
    group : NodeGroupSpec
        The single-node group the job was expanded from.
    services : list[str]
        Services the node runs once joined.
    image : ResolvedImage, optional
        Artifact to run. Set once images are resolved.
    node : ProvisionedNode, optional
        The node, once provisioned.
    """

    index: int
    group: NodeGroupSpec
    services: list[str]
    image: Optional[ResolvedImage] = None
    node: Optional[ProvisionedNode] = None

    @property
    def server_group(self) -> str:
        """Server group the node joins."""
        return self.group.server_group


def _address_key(ip: str):
    try:
        return (0, ipaddress.ip_address(ip))
    except ValueError:
        return (1, ip)


def compare_for_bootstrap(a: ProvisionedNode, b: ProvisionedNode) -> int:
    """Order nodes by initial version, then by address."""
    cmp = compare_versions(a.initial_version, b.initial_version)
    if cmp:
        return cmp
    ka, kb = _address_key(a.ip_address), _address_key(b.ip_address)
    if ka[0] != kb[0]:
        return -1 if ka[0] < kb[0] else 1
    return (ka[1] > kb[1]) - (ka[1] < kb[1])


class TopologyPlanner:
    """
    Turns a `TopologyRequest` into ordered provisioning jobs.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object with user input and
        context.
    """

    def __init__(self, ctx: DynClusterContext):
        self._ctx = ctx

    def validate(self, request: TopologyRequest) -> None:
        """
        Reject requests that cannot be deployed.

        Raises
        ------
        UserError
            For an empty request, or a columnar request naming services.
        """
        if request.node_count == 0:
            raise UserError("Topology request contains no nodes.")
        if request.columnar:
            for group in request.groups:
                if group.services:
                    raise UserError("columnar clusters cannot specify services")

    def resolve_images(self, request: TopologyRequest) -> list[ResolvedImage]:
        """
        Resolve one image per node group.

        A group whose image definition compares equal to an earlier
        group's reuses that group's image instead of resolving it again.

        Returns
        -------
        list[ResolvedImage]
            Images, index-aligned with `request.groups`.
        """
        resolved: list[ResolvedImage] = []
        for group in request.groups:
            image_def = ImageDef.from_ident(identify(group.version))
            reused = next(
                (r for r in resolved if compare_image_defs(r, image_def) == 0), None
            )
            if reused is not None:
                self._ctx.logger.debug(
                    f"Reusing image {reused.artifact_path} for version {group.version}"
                )
                resolved.append(reused)
                continue
            try:
                image = self._ctx.image_provider.get_image(image_def)
            except DynClusterError as e:
                raise DynClusterError(
                    f"failed to resolve image for version {group.version}"
                ) from e
            self._ctx.logger.info(
                f"Resolved version {group.version} to image {image.artifact_path}"
            )
            resolved.append(image)
        return resolved

    def expand(
        self,
        request: TopologyRequest,
        images: Optional[list[ResolvedImage]] = None,
    ) -> list[NodeJob]:
        """
        Expand every group into `count` single-node jobs.

        Parameters
        ----------
        request : TopologyRequest
            The request to expand.
        images : list[ResolvedImage], optional
            Per-group images from `resolve_images()`.

        Returns
        -------
        list[NodeJob]
            Jobs in request order.
        """
        jobs: list[NodeJob] = []
        for group_idx, group in enumerate(request.groups):
            if request.columnar:
                services = list(COLUMNAR_SERVICES)
            else:
                services = group.effective_services
            image = images[group_idx] if images else None
            for _ in range(group.count):
                jobs.append(NodeJob(len(jobs), group.single(), list(services), image))
        return jobs

    def order_for_bootstrap(self, jobs: list[NodeJob]) -> list[NodeJob]:
        """
        Sort provisioned jobs for bring-up.

        Oldest version first, ties broken by address. A newer node must
        never initialise before an older one, since older nodes cannot
        join a cluster that has already moved to a newer version.
        """
        missing = [j.index for j in jobs if j.node is None]
        if missing:
            raise DynClusterError(f"jobs {missing} have not been provisioned")
        key = functools.cmp_to_key(compare_for_bootstrap)
        return sorted(jobs, key=lambda j: key(j.node))
