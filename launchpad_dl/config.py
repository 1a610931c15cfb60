"""
Launcher configuration snapshot

The configuration is read once and handed to the patcher explicitly;
nothing in the core reads it behind the caller's back.
"""

import json
import logging
import os
import platform
import sys
import uuid
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from launchpad_dl import __version__, constants, utils
from launchpad_dl.errors import ConfigurationError

logger = logging.getLogger("launchpad_dl.config")


def get_current_platform() -> str:
    """
    Get the platform target the launcher is running on.

    Returns:
        One of Win32, Win64, Linux, Mac or Unknown
    """
    if sys.platform.startswith("win"):
        return constants.PLATFORM_WIN64 if platform.machine().endswith("64") else constants.PLATFORM_WIN32
    if sys.platform == "darwin":
        return constants.PLATFORM_MAC
    if sys.platform.startswith("linux"):
        return constants.PLATFORM_LINUX
    return constants.PLATFORM_UNKNOWN


def default_config_path() -> Path:
    return Path.home() / ".config" / "launchpad_dl" / "config.json"


@dataclass
class LauncherConfig:
    """
    Everything the patch core needs to know about an installation.

    Attributes:
        install_root: Directory holding the launcher state and the Game/ folder
        protocol: Backend name (FTP, HTTP or BitTorrent)
        ftp_url: Base URL of the FTP server
        http_url: Base URL of the HTTP server
        bittorrent_magnet: Magnet link of the release torrent
        username: Server username ("anonymous" disables authentication)
        password: Server password
        retry_budget: Failed attempts allowed per file
        concurrency: Parallel transfers
        platform: Platform target the game files are fetched for
        game_name: Game identity; seeds the game GUID
        launcher_version: Version of the running launcher
        timeout: Network timeout in seconds
        backoff_base: First retry delay in seconds
        backoff_max: Longest retry delay in seconds
        changelog_url: Page the launcher shows next to the progress bar
    """
    install_root: str = "."
    protocol: str = constants.PROTOCOL_HTTP
    ftp_url: str = ""
    http_url: str = ""
    bittorrent_magnet: str = ""
    username: str = constants.DEFAULT_USERNAME
    password: str = constants.DEFAULT_PASSWORD
    retry_budget: int = constants.DEFAULT_RETRIES
    concurrency: int = constants.DEFAULT_CONCURRENCY
    platform: str = field(default_factory=get_current_platform)
    game_name: str = constants.DEFAULT_GAME_NAME
    launcher_version: str = __version__
    timeout: float = constants.DEFAULT_TIMEOUT
    backoff_base: float = constants.DEFAULT_BACKOFF_BASE
    backoff_max: float = constants.DEFAULT_BACKOFF_MAX
    changelog_url: str = ""

    # ========== Loading & Saving ==========

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LauncherConfig":
        """Create a config from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")
        config = cls(**{k: v for k, v in data.items() if k in known})
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "LauncherConfig":
        """
        Load the configuration file, creating it with defaults if missing.

        Args:
            config_path: Path to the JSON file (default: ~/.config/launchpad_dl/config.json)

        Returns:
            LauncherConfig

        Raises:
            ConfigurationError: if the file exists but cannot be parsed
        """
        path = Path(config_path) if config_path else default_config_path()
        if not path.exists():
            config = cls()
            config.save(str(path))
            logger.info(f"Created default configuration at {path}")
            return config

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigurationError(f"Failed to load configuration from {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration in {path} is not a JSON object")

        logger.debug(f"Loaded configuration from {path}")
        return cls.from_dict(data)

    def save(self, config_path: Optional[str] = None) -> None:
        """Save the configuration as JSON."""
        path = Path(config_path) if config_path else default_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        utils.write_text_atomic(str(path), json.dumps(self.to_dict(), indent=2) + "\n")
        logger.debug(f"Saved configuration to {path}")

    def validate(self) -> None:
        """
        Check values that would make every session fail.

        Raises:
            ConfigurationError: on an empty protocol, invalid retry budget or concurrency
        """
        if not self.protocol:
            raise ConfigurationError("No protocol configured")
        if not isinstance(self.retry_budget, int) or self.retry_budget < 0:
            raise ConfigurationError(f"retry_budget must be a non-negative integer, got {self.retry_budget!r}")
        if not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ConfigurationError(f"concurrency must be at least 1, got {self.concurrency!r}")

    # ========== Derived values ==========

    def base_url_for(self, protocol: str) -> str:
        """
        Get the configured base URL for a protocol.

        Raises:
            ConfigurationError: if no URL is configured for it
        """
        urls = {
            constants.PROTOCOL_FTP.lower(): self.ftp_url,
            constants.PROTOCOL_HTTP.lower(): self.http_url,
            constants.PROTOCOL_BITTORRENT.lower(): self.bittorrent_magnet,
        }
        url = urls.get(protocol.lower(), "")
        if not url:
            raise ConfigurationError(f"No base URL configured for protocol {protocol}")
        return url

    @property
    def base_url(self) -> str:
        return self.base_url_for(self.protocol)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and self.username != constants.DEFAULT_USERNAME

    @property
    def game_guid(self) -> uuid.UUID:
        """Stable identifier of the game, derived from its name."""
        return utils.deterministic_id(self.game_name)

    @property
    def game_path(self) -> str:
        """Directory holding the game files: <root>/Game/<platform>."""
        return os.path.join(self.install_root, constants.LOCAL_GAME_DIR, self.platform)

    @property
    def game_version_path(self) -> str:
        return os.path.join(self.game_path, constants.GAME_VERSION_FILE)

    @property
    def game_manifest_path(self) -> str:
        return os.path.join(self.install_root, constants.GAME_MANIFEST_FILE)

    @property
    def launcher_manifest_path(self) -> str:
        return os.path.join(self.install_root, constants.LAUNCHER_MANIFEST_FILE)
