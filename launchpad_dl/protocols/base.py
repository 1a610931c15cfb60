"""
Protocol backend interface and registry

A backend knows how to reach one kind of patch server. It never retries:
retry policy lives in the download coordinator only.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Type, TYPE_CHECKING

from launchpad_dl import constants, utils
from launchpad_dl.errors import ConfigurationError
from launchpad_dl.models import ArtifactKind, Manifest, VersionIdentifier
from launchpad_dl.version import parse_version

if TYPE_CHECKING:
    from launchpad_dl.config import LauncherConfig


class FileStream:
    """
    Byte stream for one remote file.

    Attributes:
        offset: Offset the transport actually resumed from (0 when the
            resume request was ignored)
        total_size: Full size of the remote file, when known
    """

    def __init__(self, chunks: Iterable[bytes], offset: int = 0,
                 total_size: Optional[int] = None,
                 on_close: Optional[Callable[[], None]] = None):
        self._chunks = chunks
        self.offset = offset
        self.total_size = total_size
        self._on_close = on_close
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._chunks:
            if chunk:
                yield chunk

    def read_all(self) -> bytes:
        """Read the whole remaining stream into memory."""
        return b"".join(self)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close:
            self._on_close()

    def __enter__(self) -> "FileStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class PatchProtocol(ABC):
    """
    Capability set every transport implements.

    Subclasses implement `_read_text` and `open_file_stream`; version and
    manifest resolution are built on top of them here.
    """

    name = ""
    supports_resume = False

    def __init__(self, config: "LauncherConfig"):
        """
        Initialize the backend.

        Args:
            config: Launcher configuration snapshot
        """
        self.config = config
        self.logger = logging.getLogger(f"launchpad_dl.protocols.{self.name.lower() or 'base'}")

    # ========== Remote layout ==========

    def remote_path(self, kind: ArtifactKind, relative_path: str = "") -> str:
        """
        Path of a file inside the remote bin directory of an artifact.

        Args:
            kind: Launcher or game
            relative_path: Manifest path of the file

        Returns:
            Path relative to the backend base URL
        """
        if kind == ArtifactKind.LAUNCHER:
            base = constants.REMOTE_LAUNCHER_BIN_DIR
        else:
            base = constants.REMOTE_GAME_BIN_DIR.format(platform=self.config.platform)
        if not relative_path:
            return base
        return f"{base}/{utils.validate_relative_path(relative_path)}"

    def version_path(self, kind: ArtifactKind) -> str:
        if kind == ArtifactKind.LAUNCHER:
            return constants.REMOTE_LAUNCHER_VERSION
        return constants.REMOTE_GAME_VERSION.format(platform=self.config.platform)

    def manifest_path(self, kind: ArtifactKind) -> str:
        if kind == ArtifactKind.LAUNCHER:
            return constants.REMOTE_LAUNCHER_MANIFEST
        return constants.REMOTE_GAME_MANIFEST.format(platform=self.config.platform)

    # ========== Capabilities ==========

    @abstractmethod
    def _read_text(self, remote_path: str) -> str:
        """Fetch a small text file from the server."""
        raise NotImplementedError

    @abstractmethod
    def open_file_stream(self, path: str, offset: int = 0,
                         kind: ArtifactKind = ArtifactKind.GAME) -> FileStream:
        """
        Open a byte stream for a file listed in a manifest.

        Args:
            path: Manifest path of the file
            offset: Byte offset to resume from, honoured when the transport allows it
            kind: Launcher or game

        Returns:
            FileStream positioned at `FileStream.offset`
        """
        raise NotImplementedError

    def resolve_remote_version(self, kind: ArtifactKind = ArtifactKind.GAME) -> VersionIdentifier:
        """
        Get the version currently published for an artifact.

        An unparseable version file yields VersionIdentifier.UNKNOWN, which
        compares as needing an update.

        Raises:
            UnreachableError, NotFoundError
        """
        raw = self._read_text(self.version_path(kind))
        version = parse_version(raw)
        if version.is_unknown:
            self.logger.warning(f"Unparseable remote {kind.value} version: {raw.strip()!r}")
            return version
        self.logger.debug(f"Remote {kind.value} version: {version}")
        return version

    def fetch_remote_manifest(self, kind: ArtifactKind = ArtifactKind.GAME) -> Manifest:
        """
        Download and parse the manifest of the published release.

        Raises:
            UnreachableError, MalformedError
        """
        raw = self._read_text(self.manifest_path(kind))
        manifest = Manifest.from_text(raw, kind)
        self.logger.info(f"Remote {kind.value} manifest: {len(manifest)} files, "
                         f"{utils.format_size(manifest.total_size)}")
        return manifest

    def close(self) -> None:
        """Release connections held by the backend."""
        pass

    def __enter__(self) -> "PatchProtocol":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ========== Registry ==========

_REGISTRY: Dict[str, Type[PatchProtocol]] = {}


def register_protocol(name: str):
    """
    Class decorator registering a backend under a configuration name.

    Example:
        >>> @register_protocol("HTTP")
        ... class HTTPProtocol(PatchProtocol):
        ...     ...
    """
    def decorator(cls: Type[PatchProtocol]) -> Type[PatchProtocol]:
        cls.name = name
        _REGISTRY[name.lower()] = cls
        return cls
    return decorator


def unregister_protocol(name: str) -> None:
    _REGISTRY.pop(name.lower(), None)


def available_protocols() -> List[str]:
    return sorted(cls.name for cls in _REGISTRY.values())


def get_protocol(name: str, config: "LauncherConfig") -> PatchProtocol:
    """
    Instantiate the backend registered under `name`.

    Args:
        name: Protocol name from the configuration (case-insensitive)
        config: Launcher configuration snapshot

    Returns:
        Backend instance

    Raises:
        ConfigurationError: if no backend is registered under that name
    """
    cls = _REGISTRY.get((name or "").lower())
    if cls is None:
        raise ConfigurationError(
            f"Protocol \"{name}\" was not recognized. Available: {', '.join(available_protocols())}"
        )
    return cls(config)
