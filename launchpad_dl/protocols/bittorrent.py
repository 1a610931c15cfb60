"""
BitTorrent patch backend

The release is published as one torrent mirroring the remote layout
(launcher/..., game/<platform>/...). Only the pieces of the requested file
are selected; once the file is complete it is streamed from the torrent's
save directory.
"""

import os
import tempfile
import threading
import time
from typing import Dict, Optional, Tuple

from launchpad_dl import constants
from launchpad_dl.errors import ConfigurationError, MalformedError, NotFoundError, UnreachableError
from launchpad_dl.models import ArtifactKind
from launchpad_dl.protocols.base import FileStream, PatchProtocol, register_protocol

# libtorrent file priorities
PRIORITY_SKIP = 0
PRIORITY_DEFAULT = 4


@register_protocol(constants.PROTOCOL_BITTORRENT)
class BitTorrentProtocol(PatchProtocol):
    """
    Patch backend downloading from a swarm.

    Requires the optional `libtorrent` bindings. Resuming is handled by
    piece selection: pieces already on disk are never fetched again.
    """

    supports_resume = True

    def __init__(self, config, save_path: Optional[str] = None):
        super().__init__(config)
        self.magnet = config.base_url_for(constants.PROTOCOL_BITTORRENT)
        if not self.magnet.startswith("magnet:"):
            raise ConfigurationError(f"Invalid BitTorrent magnet link: {self.magnet!r}")
        self.save_path = save_path or os.path.join(tempfile.gettempdir(), "launchpad", "swarm")
        self.metadata_timeout = constants.TORRENT_METADATA_TIMEOUT
        self.stall_timeout = constants.TORRENT_STALL_TIMEOUT

        self._lock = threading.Lock()
        self._lt = None
        self._session = None
        self._handle = None
        self._files: Dict[str, Tuple[int, int]] = {}  # remote path -> (file index, size)

    def _ensure_handle(self):
        """Start the session and wait for the torrent metadata (once)."""
        with self._lock:
            if self._handle is not None:
                return self._handle

            try:
                import libtorrent as lt
            except ImportError:
                raise ConfigurationError(
                    "BitTorrent support requires libtorrent (pip install launchpad-dl[bittorrent])"
                )

            os.makedirs(self.save_path, exist_ok=True)
            self._lt = lt
            self._session = lt.session({"listen_interfaces": "0.0.0.0:6881,[::]:6881"})

            try:
                params = lt.parse_magnet_uri(self.magnet)
            except RuntimeError as e:
                raise ConfigurationError(f"Invalid magnet link: {e}")
            params.save_path = self.save_path
            handle = self._session.add_torrent(params)

            self.logger.info("Waiting for torrent metadata...")
            deadline = time.monotonic() + self.metadata_timeout
            while not handle.status().has_metadata:
                if time.monotonic() > deadline:
                    raise UnreachableError("Timed out waiting for torrent metadata from the swarm")
                time.sleep(constants.TORRENT_POLL_INTERVAL)

            info = handle.torrent_file()
            storage = info.files()
            root_prefix = info.name() + "/"
            for index in range(storage.num_files()):
                path = storage.file_path(index).replace(os.sep, "/")
                if path.startswith(root_prefix):
                    path = path[len(root_prefix):]
                self._files[path] = (index, storage.file_size(index))

            # Nothing is downloaded until a file is requested
            handle.prioritize_files([PRIORITY_SKIP] * storage.num_files())
            self._handle = handle
            self.logger.info(f"Torrent metadata received: {len(self._files)} files")
            return handle

    def _fetch(self, remote_path: str) -> str:
        """
        Download one file of the torrent and return its local path.

        Raises:
            NotFoundError: if the torrent does not contain the file
            UnreachableError: if the swarm stops making progress
        """
        handle = self._ensure_handle()
        if remote_path not in self._files:
            raise NotFoundError(f"File not in torrent: {remote_path}", remote_path)

        index, size = self._files[remote_path]
        handle.file_priority(index, PRIORITY_DEFAULT)

        last_progress = -1
        last_change = time.monotonic()
        while True:
            done = handle.file_progress()[index]
            if done >= size:
                break
            if done != last_progress:
                last_progress = done
                last_change = time.monotonic()
            elif time.monotonic() - last_change > self.stall_timeout:
                raise UnreachableError(f"Swarm stalled while fetching {remote_path}", remote_path)
            time.sleep(constants.TORRENT_POLL_INTERVAL)

        info = handle.torrent_file()
        return os.path.join(self.save_path, info.files().file_path(index))

    def _read_text(self, remote_path: str) -> str:
        local_path = self._fetch(remote_path)
        try:
            with open(local_path, "r", encoding="utf-8-sig") as f:
                return f.read()
        except UnicodeDecodeError as e:
            raise MalformedError(f"{remote_path} is not valid UTF-8: {e}", remote_path)
        except OSError as e:
            raise UnreachableError(f"Failed to read {remote_path} from the swarm: {e}", remote_path)

    def open_file_stream(self, path: str, offset: int = 0,
                         kind: ArtifactKind = ArtifactKind.GAME) -> FileStream:
        remote_path = self.remote_path(kind, path)
        local_path = self._fetch(remote_path)
        f = open(local_path, "rb")
        total_size = os.fstat(f.fileno()).st_size
        if offset > total_size:
            offset = 0
        f.seek(offset)
        return FileStream(
            iter(lambda: f.read(constants.CHUNK_READ_SIZE), b""),
            offset=offset,
            total_size=total_size,
            on_close=f.close
        )

    def close(self) -> None:
        with self._lock:
            if self._session is not None and self._handle is not None:
                self._session.remove_torrent(self._handle)
            self._handle = None
            self._session = None
