"""Version specifier parsing and comparison."""

from __future__ import annotations

import re
from dataclasses import dataclass

from dyncluster.core.errors import InvalidVersionFormat

EDITION_COMMUNITY = "community"
EDITION_ENTERPRISE = "enterprise"
EDITIONS = (EDITION_COMMUNITY, EDITION_ENTERPRISE)
SERVERLESS_SUFFIX = "serverless"


@dataclass(frozen=True)
class VersionIdent:
    """A parsed version specifier.

    Attributes
    ----------
    version : str
        Dotted version, at least `major.minor`.
    build : int
        Build number, 0 for released builds.
    edition : str
        `community` or `enterprise`.
    serverless : bool
        Whether the serverless variant was requested.
    owner : str
        Optional leading owner segment.
    """

    version: str
    build: int = 0
    edition: str = EDITION_ENTERPRISE
    serverless: bool = False
    owner: str = ""

    @property
    def community(self) -> bool:
        """Whether this is a community edition specifier."""
        return self.edition == EDITION_COMMUNITY

    def __str__(self) -> str:
        parts = [self.owner] if self.owner else []
        parts += [self.edition, self.version]
        if self.build:
            parts.append(str(self.build))
        if self.serverless:
            parts.append(SERVERLESS_SUFFIX)
        return "-".join(parts)


def identify(spec: str) -> VersionIdent:
    """
    Parse a free-form version specifier.

    Parameters
    ----------
    spec : str
        A specifier of the form `[owner-][edition-]version[-build][-serverless]`.

    Returns
    -------
    VersionIdent
        The parsed specifier.

    Raises
    ------
    InvalidVersionFormat
        If the specifier is empty, the edition is unknown, the version
        lacks a minor component, the build number is not a plain run of
        digits, or there are too many segments.

    Notes
    -----
    With two segments the first one is treated as the version when it
    contains a `.` (`7.2.0-14`), and as the edition otherwise
    (`community-7.2.0`).

    Examples
    --------
    >>> identify("community-7.2.0-14-serverless")
    VersionIdent(version='7.2.0', build=14, edition='community', serverless=True, owner='')
    """
    parts = spec.strip().split("-")
    serverless = False
    if parts[-1] == SERVERLESS_SUFFIX:
        parts = parts[:-1]
        serverless = True
    if not parts or parts == [""]:
        raise InvalidVersionFormat(spec, "empty version")

    owner = ""
    edition = EDITION_ENTERPRISE
    build_part = "0"
    if len(parts) == 1:
        (version,) = parts
    elif len(parts) == 2:
        if "." in parts[0]:
            version, build_part = parts
        else:
            edition, version = parts
    elif len(parts) == 3:
        edition, version, build_part = parts
    elif len(parts) == 4:
        owner, edition, version, build_part = parts
    else:
        raise InvalidVersionFormat(spec, "too many segments")

    if edition not in EDITIONS:
        raise InvalidVersionFormat(spec, f"invalid version edition '{edition}'")
    if len(version.split(".")) < 2:
        raise InvalidVersionFormat(spec, "version number must be at least major.minor")
    # Builds are plain ASCII digits, no sign, padding or underscores
    if not (build_part.isascii() and build_part.isdigit()):
        raise InvalidVersionFormat(
            spec, f"failed to parse build number '{build_part}'"
        )
    build = int(build_part)

    return VersionIdent(
        version=version,
        build=build,
        edition=edition,
        serverless=serverless,
        owner=owner,
    )


def _version_key(version: str) -> tuple:
    key = []
    for part in version.split("."):
        match = re.match(r"(\d+)(.*)", part)
        if match:
            key.append((int(match.group(1)), match.group(2)))
        else:
            key.append((-1, part))
    return tuple(key)


def compare_versions(a: str, b: str) -> int:
    """Compare two dotted versions numerically.

    Missing trailing components count as zero, so `7.2` equals `7.2.0`.

    Returns
    -------
    int
        -1, 0 or 1.
    """
    ka, kb = list(_version_key(a)), list(_version_key(b))
    width = max(len(ka), len(kb))
    ka += [(0, "")] * (width - len(ka))
    kb += [(0, "")] * (width - len(kb))
    return (ka > kb) - (ka < kb)
