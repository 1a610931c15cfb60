"""
Version resolution for the launcher and the game
"""

import logging
import os
import re
from typing import Optional

from launchpad_dl import utils
from launchpad_dl.models import VersionIdentifier, VersionComparison

logger = logging.getLogger("launchpad_dl.version")

# major.minor[.patch[.revision]]; the revision component is accepted and ignored
_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?(?:\.(\d+))?$")


def parse_version(text: Optional[str]) -> VersionIdentifier:
    """
    Parse a version string.

    Args:
        text: Raw version text, e.g. "1.2.0"

    Returns:
        Parsed VersionIdentifier, or VersionIdentifier.UNKNOWN if unparseable
    """
    if text is None:
        return VersionIdentifier.UNKNOWN

    match = _VERSION_RE.match(text.strip().lstrip("\ufeff"))
    if not match:
        return VersionIdentifier.UNKNOWN

    major, minor, patch, _revision = match.groups()
    return VersionIdentifier(int(major), int(minor), int(patch or 0))


def compare_versions(local: Optional[VersionIdentifier],
                     remote: Optional[VersionIdentifier]) -> VersionComparison:
    """
    Compare a local version against the remote one.

    Args:
        local: Installed version (None when nothing is installed)
        remote: Version published by the backend

    Returns:
        VersionComparison; UNKNOWN whenever either side is unknown
    """
    if local is None or remote is None or local.is_unknown or remote.is_unknown:
        return VersionComparison.UNKNOWN
    if local == remote:
        return VersionComparison.UP_TO_DATE
    if local < remote:
        return VersionComparison.UPDATE_AVAILABLE
    return VersionComparison.LOCAL_NEWER


def read_local_version(path: str) -> Optional[VersionIdentifier]:
    """
    Read a local version marker file.

    A marker that exists but cannot be parsed reads as 0.0.0, so the
    installation is always considered older than any published release.

    Args:
        path: Path to the version marker

    Returns:
        Parsed version, or None when the marker is missing or unreadable
    """
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        logger.warning(f"Could not read local version from {path}: {e}")
        return None

    version = parse_version(raw)
    if version.is_unknown:
        logger.warning(f"Could not parse local version. Contents: {raw!r}")
        return VersionIdentifier(0, 0, 0)
    return version


def write_local_version(path: str, version: VersionIdentifier) -> None:
    """Write a version marker atomically."""
    utils.write_text_atomic(path, f"{version}\n")
    logger.debug(f"Wrote version {version} to {path}")
