"""
Launchpad DL - patch core for game launchers

Decides whether a game (or the launcher itself) needs updating, computes the
file operations that bring an installation in sync with a published release,
and downloads, verifies and installs them over FTP, HTTP or BitTorrent.

Interrupted sessions are detected on the next start and repaired.
"""

__version__ = "0.1.0"
__author__ = "launchpad-dl Contributors"
__license__ = "MIT"

from launchpad_dl.config import LauncherConfig
from launchpad_dl.downloader import PatchDownloader
from launchpad_dl.models import Manifest, ManifestEntry, PatchEvent, PatchState
from launchpad_dl.patcher import Patcher
from launchpad_dl.protocols import get_protocol, register_protocol

__all__ = [
    "LauncherConfig",
    "PatchDownloader",
    "Manifest",
    "ManifestEntry",
    "PatchEvent",
    "PatchState",
    "Patcher",
    "get_protocol",
    "register_protocol",
]
