"""
In-memory patch server used by the tests
"""

import threading
from typing import Dict, Iterable, List, Optional, Tuple, Union

from launchpad_dl import utils
from launchpad_dl.config import LauncherConfig
from launchpad_dl.errors import NotFoundError, UnreachableError
from launchpad_dl.models import ArtifactKind, Manifest, ManifestEntry
from launchpad_dl.protocols.base import FileStream, PatchProtocol, register_protocol


class Interrupt:
    """Failure script entry: serve `after` bytes, then drop the connection."""

    def __init__(self, after: int):
        self.after = after


Failure = Union[Exception, bytes, Interrupt]


def make_config(root: str, **overrides) -> LauncherConfig:
    values = dict(
        install_root=root,
        protocol="Fake",
        http_url="http://patches.invalid/game",
        platform="Linux",
        game_name="TestGame",
        launcher_version="1.0.0",
        backoff_base=0,
        backoff_max=0,
    )
    values.update(overrides)
    return LauncherConfig(**values)


def build_manifest(files: Dict[str, bytes], required: Iterable[str] = (),
                   kind: ArtifactKind = ArtifactKind.GAME, algorithm: str = "md5") -> Manifest:
    required = set(required)
    return Manifest(
        [ManifestEntry(path, utils.hash_bytes(data, algorithm), len(data), path in required)
         for path, data in files.items()],
        kind=kind
    )


@register_protocol("Fake")
class FakeProtocol(PatchProtocol):
    """
    Dictionary-backed backend.

    `files` maps remote paths (e.g. "game/Linux/bin/a.bin") to contents.
    `failures` maps manifest paths to a queue of scripted failures consumed
    one per `open_file_stream` call.
    """

    supports_resume = True

    def __init__(self, config, chunk_size: int = 4):
        super().__init__(config)
        self.chunk_size = chunk_size
        self.files: Dict[str, bytes] = {}
        self.failures: Dict[str, List[Failure]] = {}
        self.opened: List[Tuple[str, int]] = []
        self.closed = False
        self._lock = threading.Lock()

    def publish(self, version: str, files: Dict[str, bytes], required: Iterable[str] = (),
                kind: ArtifactKind = ArtifactKind.GAME, algorithm: str = "md5") -> Manifest:
        """Replace the published release of an artifact."""
        prefix = self.remote_path(kind) + "/"
        self.files = {k: v for k, v in self.files.items() if not k.startswith(prefix)}
        manifest = build_manifest(files, required, kind, algorithm)
        self.files[self.version_path(kind)] = f"{version}\n".encode("utf-8")
        self.files[self.manifest_path(kind)] = manifest.to_text().encode("utf-8")
        for path, data in files.items():
            self.files[self.remote_path(kind, path)] = data
        return manifest

    def fail(self, path: str, *failures: Failure) -> None:
        self.failures.setdefault(path, []).extend(failures)

    def _read_text(self, remote_path: str) -> str:
        if remote_path not in self.files:
            raise NotFoundError(f"Not found: {remote_path}", remote_path)
        return self.files[remote_path].decode("utf-8")

    def open_file_stream(self, path: str, offset: int = 0,
                         kind: ArtifactKind = ArtifactKind.GAME) -> FileStream:
        with self._lock:
            self.opened.append((path, offset))
            queue = self.failures.get(path)
            failure: Optional[Failure] = queue.pop(0) if queue else None

        if isinstance(failure, Exception):
            raise failure

        remote_path = self.remote_path(kind, path)
        if remote_path not in self.files:
            raise NotFoundError(f"Not found: {remote_path}", remote_path)
        data = failure if isinstance(failure, bytes) else self.files[remote_path]
        if offset > len(data):
            offset = 0

        def chunks():
            body = data[offset:]
            for start in range(0, len(body), self.chunk_size):
                if isinstance(failure, Interrupt) and start >= failure.after:
                    raise UnreachableError(f"Connection reset: {path}", path)
                yield body[start:start + self.chunk_size]

        return FileStream(chunks(), offset=offset, total_size=len(data))

    def close(self) -> None:
        self.closed = True
