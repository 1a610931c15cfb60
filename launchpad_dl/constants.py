"""
Constants for the launcher patch core
Remote layout, local marker files and tunable defaults
"""

# Protocol names (as written in the launcher configuration)
PROTOCOL_FTP = "FTP"
PROTOCOL_HTTP = "HTTP"
PROTOCOL_BITTORRENT = "BitTorrent"

PROTOCOLS = [PROTOCOL_FTP, PROTOCOL_HTTP, PROTOCOL_BITTORRENT]

# Platform targets
PLATFORM_WIN32 = "Win32"
PLATFORM_WIN64 = "Win64"
PLATFORM_LINUX = "Linux"
PLATFORM_MAC = "Mac"
PLATFORM_UNKNOWN = "Unknown"

PLATFORMS = [PLATFORM_WIN32, PLATFORM_WIN64, PLATFORM_LINUX, PLATFORM_MAC, PLATFORM_UNKNOWN]

# Remote layout, relative to the protocol base URL
REMOTE_LAUNCHER_DIR = "launcher"
REMOTE_LAUNCHER_BIN_DIR = "launcher/bin"
REMOTE_LAUNCHER_VERSION = "launcher/LauncherVersion.txt"
REMOTE_LAUNCHER_MANIFEST = "launcher/LauncherManifest.txt"
REMOTE_GAME_DIR = "game/{platform}"
REMOTE_GAME_BIN_DIR = "game/{platform}/bin"
REMOTE_GAME_VERSION = "game/{platform}/bin/GameVersion.txt"
REMOTE_GAME_MANIFEST = "game/{platform}/GameManifest.txt"

# Local layout, relative to the installation root
LOCAL_GAME_DIR = "Game"
GAME_VERSION_FILE = "GameVersion.txt"
GAME_MANIFEST_FILE = "GameManifest.txt"
LAUNCHER_MANIFEST_FILE = "LauncherManifest.txt"
SESSION_FILE = ".session"
SESSION_LOCK_FILE = ".session.lock"
INSTALL_COOKIE = ".install"
UPDATE_COOKIE = ".update"

# Suffix for files still being downloaded
TEMP_SUFFIX = ".part"

# Default values
DEFAULT_TIMEOUT = 10
DEFAULT_RETRIES = 2
DEFAULT_CONCURRENCY = 3
DEFAULT_BACKOFF_BASE = 0.5
DEFAULT_BACKOFF_MAX = 8.0
DEFAULT_GAME_NAME = "LaunchpadExample"
DEFAULT_USERNAME = "anonymous"
DEFAULT_PASSWORD = "anonymous"

# Stream read size (16KB)
CHUNK_READ_SIZE = 16 * 1024

# Hex digest lengths accepted in manifests
MD5_HEX_LENGTH = 32
SHA256_HEX_LENGTH = 64

# Manifest entry flags
FLAG_REQUIRED = "required"

# BitTorrent tuning
TORRENT_METADATA_TIMEOUT = 60
TORRENT_STALL_TIMEOUT = 120
TORRENT_POLL_INTERVAL = 0.5

# User agent
USER_AGENT = "launchpad-dl/{version} (Python)"
