"""Image resolution through an ordered chain of providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from dyncluster import settings
from dyncluster.core.errors import ImageUnavailableError
from dyncluster.core.versions import (
    EDITION_COMMUNITY,
    EDITION_ENTERPRISE,
    VersionIdent,
    compare_versions,
)

if TYPE_CHECKING:
    from dyncluster.core.logging.logger import DynClusterLogger
    from dyncluster.core.runtime.base import RuntimeBackend

VARIANT_DEFAULT = ""
VARIANT_SERVERLESS = "serverless"

_EDITION_ORDER = {EDITION_COMMUNITY: 0, EDITION_ENTERPRISE: 1}
_VARIANT_ORDER = {VARIANT_DEFAULT: 0, VARIANT_SERVERLESS: 1}

SERVERLESS_DOCKERFILE = """\
ARG BASE_IMAGE
FROM ${BASE_IMAGE}
RUN mkdir -p /etc/couchbase.d && echo serverless > /etc/couchbase.d/config_profile
"""


@dataclass(frozen=True)
class ImageDef:
    """What a node group asks for, before an artifact is chosen."""

    version: str
    build: int = 0
    edition: str = EDITION_ENTERPRISE
    variant: str = VARIANT_DEFAULT

    @classmethod
    def from_ident(cls, ident: VersionIdent) -> ImageDef:
        """Build an image definition from a parsed version specifier."""
        return cls(
            version=ident.version,
            build=ident.build,
            edition=ident.edition,
            variant=VARIANT_SERVERLESS if ident.serverless else VARIANT_DEFAULT,
        )

    @property
    def community(self) -> bool:
        """Whether the community edition is requested."""
        return self.edition == EDITION_COMMUNITY

    @property
    def serverless(self) -> bool:
        """Whether the serverless variant is requested."""
        return self.variant == VARIANT_SERVERLESS

    @property
    def server_version(self) -> str:
        """Version with the build suffix, e.g. `7.6.0-1234`."""
        if self.build > 0:
            return f"{self.version}-{self.build}"
        return self.version


@dataclass(frozen=True)
class ResolvedImage:
    """A concrete deployable artifact chosen for an `ImageDef`."""

    artifact_path: str
    version: str
    build: int
    edition: str
    variant: str

    @classmethod
    def for_def(cls, image_def: ImageDef, artifact_path: str) -> ResolvedImage:
        """Return the resolved image for `image_def` at `artifact_path`."""
        return cls(
            artifact_path=artifact_path,
            version=image_def.version,
            build=image_def.build,
            edition=image_def.edition,
            variant=image_def.variant,
        )

    @property
    def image_def(self) -> ImageDef:
        """The definition this image satisfies."""
        return ImageDef(self.version, self.build, self.edition, self.variant)


def compare_image_defs(a: ImageDef | ResolvedImage, b: ImageDef | ResolvedImage) -> int:
    """
    Total order over image definitions.

    Ordered by version (numeric), then build number, then edition
    (community before enterprise), then variant (default before
    serverless). Artifact paths are ignored.

    Returns
    -------
    int
        -1, 0 or 1.
    """
    cmp = compare_versions(a.version, b.version)
    if cmp:
        return cmp
    if a.build != b.build:
        return -1 if a.build < b.build else 1
    ea, eb = _EDITION_ORDER.get(a.edition, 2), _EDITION_ORDER.get(b.edition, 2)
    if ea != eb:
        return -1 if ea < eb else 1
    va, vb = _VARIANT_ORDER.get(a.variant, 2), _VARIANT_ORDER.get(b.variant, 2)
    if va != vb:
        return -1 if va < vb else 1
    return 0


class ImageProvider(ABC):
    """Maps an `ImageDef` to a local artifact, fetching it if needed.

    Parameters
    ----------
    runtime : RuntimeBackend
        Backend used to pull, build and list images.
    logger : DynClusterLogger
        Logger for provider output.
    """

    name = "base"

    def __init__(self, runtime: RuntimeBackend, logger: DynClusterLogger) -> None:
        self._runtime = runtime
        self._logger = logger

    @abstractmethod
    def get_image(self, image_def: ImageDef) -> ResolvedImage:
        """Return a resolved image or raise `ImageUnavailableError`."""

    def list_images(self) -> list[str]:
        """Return artifact paths this provider has available locally."""
        return []


class DockerHubImageProvider(ImageProvider):
    """Released builds from the public registry."""

    name = "dockerhub"

    def get_image(self, image_def: ImageDef) -> ResolvedImage:
        if image_def.build != 0:
            raise ImageUnavailableError("cannot use dockerhub for non-ga releases")
        if image_def.serverless:
            raise ImageUnavailableError("cannot use dockerhub for serverless releases")

        tag = f"{image_def.edition}-{image_def.version}"
        path = f"{settings.DOCKERHUB_REPOSITORY}:{tag}"
        self._logger.debug(f"Identified dockerhub image to pull: {path}")
        try:
            self._runtime.pull_image(path)
        except Exception as e:
            raise ImageUnavailableError(f"failed to pull {path}") from e
        return ResolvedImage.for_def(image_def, path)

    def list_images(self) -> list[str]:
        return self._runtime.list_images(settings.DOCKERHUB_REPOSITORY)


class GhcrImageProvider(ImageProvider):
    """Unreleased builds from the authenticated build registry.

    Parameters
    ----------
    username : str
        Registry user name.
    password : str
        Registry token.
    """

    name = "ghcr"

    def __init__(
        self,
        runtime: RuntimeBackend,
        logger: DynClusterLogger,
        username: str = "",
        password: str = "",
    ) -> None:
        super().__init__(runtime, logger)
        self._username = username
        self._password = password

    def auth_config(self) -> dict[str, str]:
        """Return the registry auth config for pulls."""
        return {"username": self._username, "password": self._password}

    def get_image(self, image_def: ImageDef) -> ResolvedImage:
        if not self._username and not self._password:
            raise ImageUnavailableError("cannot use ghcr without credentials")
        if image_def.build == 0:
            raise ImageUnavailableError("cannot use ghcr for ga releases")
        if image_def.serverless:
            raise ImageUnavailableError("cannot use ghcr for serverless releases")

        tag = f"{image_def.version}-{image_def.build}"
        if image_def.community:
            tag = f"community-{tag}"
        path = f"{settings.GHCR_REPOSITORY}:{tag}"
        self._logger.debug(f"Pulling image from ghcr: {path}")
        try:
            self._runtime.pull_image(path, auth_config=self.auth_config())
        except Exception as e:
            raise ImageUnavailableError("failed to pull from ghcr registry") from e
        return ResolvedImage.for_def(image_def, path)


class ServerlessImageProvider(ImageProvider):
    """Builds the serverless variant on top of a base provider's image.

    Parameters
    ----------
    base_provider : ImageProvider
        Provider for the non-serverless base image.
    base_tag : str
        Short name of the base provider used in the built tag.
    """

    name = "serverless"

    def __init__(
        self,
        runtime: RuntimeBackend,
        logger: DynClusterLogger,
        base_provider: ImageProvider,
        base_tag: str,
    ) -> None:
        super().__init__(runtime, logger)
        self._base_provider = base_provider
        self._base_tag = base_tag
        self.name = f"{base_tag}-serverless"

    def tag_for(self, image_def: ImageDef) -> str:
        """Return the local tag the built image is stored under."""
        repo = "-".join([settings.SERVERLESS_IMAGE_PREFIX, self._base_tag, "server"])
        return f"{repo}:{image_def.edition}-{image_def.server_version}"

    def get_image(self, image_def: ImageDef) -> ResolvedImage:
        if not image_def.serverless:
            raise ImageUnavailableError(
                "cannot use serverless provider for non-serverless"
            )

        tag = self.tag_for(image_def)
        if self._runtime.image_exists(tag):
            self._logger.debug(f"Found existing serverless image: {tag}")
            return ResolvedImage.for_def(image_def, tag)

        base_def = ImageDef(
            image_def.version, image_def.build, image_def.edition, VARIANT_DEFAULT
        )
        try:
            base = self._base_provider.get_image(base_def)
        except ImageUnavailableError as e:
            raise ImageUnavailableError("failed to get base image") from e

        self._logger.debug(f"Building serverless image {tag} from {base.artifact_path}")
        try:
            self._runtime.build_image(
                SERVERLESS_DOCKERFILE,
                tag,
                build_args={"BASE_IMAGE": base.artifact_path},
                labels={settings.LABEL_PREFIX + "built": "true"},
            )
        except Exception as e:
            raise ImageUnavailableError("failed to build image") from e
        return ResolvedImage.for_def(image_def, tag)


class ChainImageProvider(ImageProvider):
    """Tries providers in priority order; the first success wins.

    Parameters
    ----------
    providers : list[ImageProvider]
        Providers in priority order.
    """

    name = "chain"

    def __init__(
        self,
        runtime: RuntimeBackend,
        logger: DynClusterLogger,
        providers: list[ImageProvider],
    ) -> None:
        super().__init__(runtime, logger)
        self.providers = providers

    def get_image(self, image_def: ImageDef) -> ResolvedImage:
        for provider in self.providers:
            try:
                image = provider.get_image(image_def)
            except ImageUnavailableError as e:
                self._logger.debug(f"Image provider '{provider.name}' failed: {e}")
                continue
            self._logger.debug(
                f"Image provider '{provider.name}' resolved {image.artifact_path}"
            )
            return image
        raise ImageUnavailableError("all providers failed to provide the image")

    def list_images(self) -> list[str]:
        images: list[str] = []
        for provider in self.providers:
            images.extend(p for p in provider.list_images() if p not in images)
        return images


def default_image_provider(
    runtime: RuntimeBackend,
    logger: DynClusterLogger,
    ghcr_user: str = "",
    ghcr_token: str = "",
    extra: Optional[list[ImageProvider]] = None,
) -> ChainImageProvider:
    """
    Build the default provider chain.

    Order: public registry, build registry, serverless builds on top of
    each of them.
    """
    dockerhub = DockerHubImageProvider(runtime, logger)
    ghcr = GhcrImageProvider(runtime, logger, ghcr_user, ghcr_token)
    providers: list[ImageProvider] = [
        dockerhub,
        ghcr,
        ServerlessImageProvider(runtime, logger, dockerhub, "dh"),
        ServerlessImageProvider(runtime, logger, ghcr, "ghcr"),
    ]
    providers.extend(extra or [])
    return ChainImageProvider(runtime, logger, providers)
