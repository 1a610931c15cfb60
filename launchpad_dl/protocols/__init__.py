"""
Patch protocol backends

Importing this package registers the built-in transports (FTP, HTTP,
BitTorrent) so they can be selected by name from the configuration.
"""

from launchpad_dl.protocols.base import (
    FileStream,
    PatchProtocol,
    available_protocols,
    get_protocol,
    register_protocol,
    unregister_protocol,
)
from launchpad_dl.protocols.bittorrent import BitTorrentProtocol
from launchpad_dl.protocols.ftp import FTPProtocol
from launchpad_dl.protocols.http import HTTPProtocol

__all__ = [
    "FileStream",
    "PatchProtocol",
    "available_protocols",
    "get_protocol",
    "register_protocol",
    "unregister_protocol",
    "BitTorrentProtocol",
    "FTPProtocol",
    "HTTPProtocol",
]
