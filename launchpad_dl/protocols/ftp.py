"""
FTP patch backend
One control connection per transfer, binary mode, REST for resumed downloads
"""

import ftplib
import io
import socket
from typing import Iterator
from urllib.parse import urlparse

from launchpad_dl import constants
from launchpad_dl.errors import (
    ConfigurationError, MalformedError, NotFoundError, PatchError, PermissionDeniedError,
    UnreachableError,
)
from launchpad_dl.models import ArtifactKind
from launchpad_dl.protocols.base import FileStream, PatchProtocol, register_protocol


def _translate(exc: Exception, remote_path: str) -> PatchError:
    """Map an ftplib failure to the patch error taxonomy."""
    message = str(exc)
    if isinstance(exc, ftplib.error_perm):
        if message.startswith("550"):
            return NotFoundError(f"Not found on FTP server: {remote_path} ({message})", remote_path)
        if message.startswith("530") or message.startswith("553"):
            return PermissionDeniedError(f"FTP access denied: {remote_path} ({message})", remote_path)
        return UnreachableError(f"FTP command failed for {remote_path}: {message}", remote_path)
    return UnreachableError(f"FTP transfer failed for {remote_path}: {message}", remote_path)


@register_protocol(constants.PROTOCOL_FTP)
class FTPProtocol(PatchProtocol):
    """
    Patch backend for FTP servers.

    A fresh connection is opened for every stream so worker threads never
    share a control channel. Keep the coordinator concurrency low for servers
    that limit connections per client.
    """

    supports_resume = True

    def __init__(self, config):
        super().__init__(config)
        parsed = urlparse(config.base_url_for(constants.PROTOCOL_FTP))
        if parsed.scheme != "ftp" or not parsed.hostname:
            raise ConfigurationError(f"Invalid FTP URL: {config.ftp_url!r}")
        self.host = parsed.hostname
        self.port = parsed.port or 21
        self.root = parsed.path.rstrip("/")
        self.username = parsed.username or config.username or constants.DEFAULT_USERNAME
        self.password = parsed.password or config.password or constants.DEFAULT_PASSWORD
        self.timeout = config.timeout

    def _full_path(self, remote_path: str) -> str:
        return f"{self.root}/{remote_path}"

    def _connect(self, remote_path: str) -> ftplib.FTP:
        ftp = ftplib.FTP(timeout=self.timeout)
        try:
            ftp.connect(self.host, self.port)
            ftp.login(self.username, self.password)
            ftp.voidcmd("TYPE I")
        except ftplib.all_errors as e:
            self._quietly_close(ftp)
            if isinstance(e, ftplib.error_perm):
                raise PermissionDeniedError(f"FTP login refused by {self.host}: {e}", remote_path)
            raise UnreachableError(f"Failed to connect to {self.host}:{self.port}: {e}", remote_path)
        return ftp

    @staticmethod
    def _quietly_close(ftp: ftplib.FTP) -> None:
        try:
            ftp.quit()
        except ftplib.all_errors:
            ftp.close()

    def _read_text(self, remote_path: str) -> str:
        buffer = io.BytesIO()
        ftp = self._connect(remote_path)
        try:
            ftp.retrbinary(f"RETR {self._full_path(remote_path)}", buffer.write)
        except ftplib.all_errors as e:
            raise _translate(e, remote_path)
        finally:
            self._quietly_close(ftp)
        try:
            return buffer.getvalue().decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise MalformedError(f"{remote_path} is not valid UTF-8: {e}", remote_path)

    def open_file_stream(self, path: str, offset: int = 0,
                         kind: ArtifactKind = ArtifactKind.GAME) -> FileStream:
        remote_path = self.remote_path(kind, path)
        full_path = self._full_path(remote_path)
        ftp = self._connect(remote_path)

        total_size = None
        try:
            total_size = ftp.size(full_path)
        except ftplib.error_perm as e:
            # Missing files fail here already on most servers
            if str(e).startswith("550"):
                self._quietly_close(ftp)
                raise _translate(e, remote_path)
        except ftplib.all_errors:
            total_size = None

        try:
            conn = ftp.transfercmd(f"RETR {full_path}", rest=offset or None)
        except ftplib.all_errors as e:
            self._quietly_close(ftp)
            raise _translate(e, remote_path)

        def close():
            try:
                conn.close()
                ftp.voidresp()
            except ftplib.all_errors as e:
                self.logger.debug(f"FTP transfer close for {remote_path}: {e}")
            finally:
                self._quietly_close(ftp)

        return FileStream(
            self._iter_socket(conn, remote_path),
            offset=offset,
            total_size=total_size,
            on_close=close
        )

    @staticmethod
    def _iter_socket(conn: socket.socket, remote_path: str) -> Iterator[bytes]:
        while True:
            try:
                chunk = conn.recv(constants.CHUNK_READ_SIZE)
            except OSError as e:
                raise UnreachableError(f"FTP data connection lost for {remote_path}: {e}", remote_path)
            if not chunk:
                break
            yield chunk
