"""
HTTP patch backend
Streams files with requests and resumes with open-ended Range requests
"""

from typing import Dict, Optional

import requests

from launchpad_dl import __version__, constants, utils
from launchpad_dl.errors import NotFoundError, PermissionDeniedError, UnreachableError
from launchpad_dl.models import ArtifactKind
from launchpad_dl.protocols.base import FileStream, PatchProtocol, register_protocol


@register_protocol(constants.PROTOCOL_HTTP)
class HTTPProtocol(PatchProtocol):
    """
    Patch backend for plain HTTP(S) servers.

    The server exposes the remote layout as static files under `http_url`.
    """

    supports_resume = True

    def __init__(self, config):
        super().__init__(config)
        self.base_url = config.base_url_for(constants.PROTOCOL_HTTP)
        self.timeout = config.timeout

        # Create a session for downloads; no retry adapter, retries belong to the coordinator
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": constants.USER_AGENT.format(version=__version__)
        })
        if config.has_credentials:
            self.session.auth = (config.username, config.password)

    def _url(self, remote_path: str) -> str:
        return utils.join_url(self.base_url, remote_path)

    def _get(self, remote_path: str, stream: bool = False,
             headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """
        Issue a GET and translate failures into patch errors.

        Raises:
            UnreachableError, NotFoundError, PermissionDeniedError
        """
        url = self._url(remote_path)
        try:
            response = self.session.get(url, stream=stream, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise UnreachableError(f"Failed to reach {url}: {e}", remote_path)

        if response.status_code in (404, 410):
            response.close()
            raise NotFoundError(f"Not found: {url}", remote_path)
        if response.status_code in (401, 403):
            response.close()
            raise PermissionDeniedError(f"Access denied ({response.status_code}): {url}", remote_path)
        if not response.ok:
            response.close()
            raise UnreachableError(f"Server returned {response.status_code} for {url}", remote_path)
        return response

    def _read_text(self, remote_path: str) -> str:
        response = self._get(remote_path)
        try:
            response.encoding = response.encoding or "utf-8"
            return response.text
        except requests.RequestException as e:
            raise UnreachableError(f"Failed to read {remote_path}: {e}", remote_path)
        finally:
            response.close()

    def open_file_stream(self, path: str, offset: int = 0,
                         kind: ArtifactKind = ArtifactKind.GAME) -> FileStream:
        remote_path = self.remote_path(kind, path)
        headers = {"Range": utils.get_resume_header(offset)} if offset > 0 else None
        response = self._get(remote_path, stream=True, headers=headers)

        # 206 honours the range; a plain 200 means the server sent the whole file
        actual_offset = offset if offset > 0 and response.status_code == 206 else 0
        if offset > 0 and actual_offset == 0:
            self.logger.debug(f"Server ignored resume request for {path}, restarting")

        total_size = None
        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit():
            total_size = actual_offset + int(content_length)

        return FileStream(
            self._iter_response(response, remote_path),
            offset=actual_offset,
            total_size=total_size,
            on_close=response.close
        )

    @staticmethod
    def _iter_response(response: requests.Response, remote_path: str):
        try:
            for chunk in response.iter_content(chunk_size=constants.CHUNK_READ_SIZE):
                yield chunk
        except requests.RequestException as e:
            raise UnreachableError(f"Connection lost while reading {remote_path}: {e}", remote_path)

    def close(self) -> None:
        self.session.close()
