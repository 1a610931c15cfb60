"""
Utility functions for the patch core
Hashing, deterministic ids, path safety and formatting helpers
"""

import hashlib
import os
import sys
import uuid
from pathlib import Path
from typing import Optional, Tuple, Callable

from launchpad_dl import constants
from launchpad_dl.errors import MalformedError

# Console symbols (set by setup_symbols)
SYMBOL_CHECK = '[OK]'
SYMBOL_ERROR = '[ERROR]'
SYMBOL_WARNING = '[WARNING]'
SYMBOL_ARROW = '->'


def detect_unicode_support(force_ascii=False):
    """
    Detect if the terminal supports Unicode output.

    Args:
        force_ascii: If True, force ASCII mode regardless of terminal support

    Returns:
        True if Unicode is supported, False otherwise
    """
    if force_ascii:
        return False

    if os.environ.get('FORCE_ASCII', '').lower() in ('1', 'true', 'yes'):
        return False

    try:
        encoding = sys.stdout.encoding or ''
        if encoding.lower() in ('utf-8', 'utf8'):
            return True
        '✓✗⚠→'.encode(encoding)
        return True
    except (UnicodeEncodeError, AttributeError, LookupError):
        return False


def setup_symbols(force_ascii=False):
    """
    Set up symbol variables based on Unicode support.

    Args:
        force_ascii: If True, force ASCII mode
    """
    global SYMBOL_CHECK, SYMBOL_ERROR, SYMBOL_WARNING, SYMBOL_ARROW

    if detect_unicode_support(force_ascii):
        SYMBOL_CHECK = '✓'
        SYMBOL_ERROR = '✗'
        SYMBOL_WARNING = '⚠'
        SYMBOL_ARROW = '→'
    else:
        SYMBOL_CHECK = '[OK]'
        SYMBOL_ERROR = '[ERROR]'
        SYMBOL_WARNING = '[WARNING]'
        SYMBOL_ARROW = '->'


def algorithm_for_hash(expected_hash: str) -> str:
    """
    Pick the digest algorithm matching a manifest hash.

    Manifests carry MD5 digests (a plain integrity check, not a security
    control); SHA-256 digests are accepted as a drop-in replacement.

    Args:
        expected_hash: Hex digest from a manifest

    Returns:
        "md5" or "sha256"
    """
    length = len(expected_hash)
    if length == constants.MD5_HEX_LENGTH:
        return "md5"
    if length == constants.SHA256_HEX_LENGTH:
        return "sha256"
    raise ValueError(f"Unsupported digest length {length}: {expected_hash!r}")


def _new_hasher(algorithm: str):
    if algorithm == "md5":
        return hashlib.md5()
    elif algorithm == "sha256":
        return hashlib.sha256()
    raise ValueError(f"Unsupported hash algorithm: {algorithm}")


def hash_bytes(data: bytes, algorithm: str = "md5") -> str:
    """Return the hex digest of a byte string."""
    hasher = _new_hasher(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


def calculate_hash(file_path: str, algorithm: str = "md5",
                   chunk_size: int = constants.CHUNK_READ_SIZE,
                   progress_callback: Optional[Callable[[int], None]] = None) -> str:
    """
    Calculate hash of a file.

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm ("md5" or "sha256")
        chunk_size: Size of chunks to read
        progress_callback: Optional callback function called with bytes read

    Returns:
        Hex digest of the hash
    """
    hasher = _new_hasher(algorithm)

    with open(file_path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
            if progress_callback:
                progress_callback(len(chunk))

    return hasher.hexdigest()


def verify_hash(data: bytes, expected_hash: str) -> bool:
    """
    Verify the digest of in-memory data.

    Args:
        data: Bytes to check
        expected_hash: Expected hex digest (MD5 or SHA-256)

    Returns:
        True if hash matches
    """
    try:
        algorithm = algorithm_for_hash(expected_hash)
    except ValueError:
        return False
    return hash_bytes(data, algorithm) == expected_hash.lower()


def verify_file_hash(file_path: str, expected_hash: str) -> bool:
    """Verify the digest of a file on disk; a missing file never matches."""
    try:
        algorithm = algorithm_for_hash(expected_hash)
    except ValueError:
        return False
    if not os.path.isfile(file_path):
        return False
    return calculate_hash(file_path, algorithm) == expected_hash.lower()


def deterministic_id(seed: str) -> uuid.UUID:
    """
    Derive a stable 128-bit identifier from a seed string.

    The MD5 of the seed is laid out as a little-endian GUID, matching the
    identifiers launchers have historically stored for a game name. Not meant to
    be unguessable, only unique per seed.

    Args:
        seed: Seed string, typically the game name

    Returns:
        UUID derived from the seed
    """
    digest = hashlib.md5(seed.encode("utf-8")).digest()
    return uuid.UUID(bytes_le=digest)


def get_readable_size(size_bytes: int) -> Tuple[float, str]:
    """
    Convert bytes to human-readable size.

    Args:
        size_bytes: Size in bytes

    Returns:
        Tuple of (size value, unit string)
    """
    power = 1024
    n = 0
    labels = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}

    size = float(size_bytes)
    while size > power and n < 4:
        size /= power
        n += 1

    return round(size, 2), labels[n]


def format_size(size_bytes: int) -> str:
    """Format bytes as human-readable string (e.g. "1.5 GB")."""
    size, unit = get_readable_size(size_bytes)
    return f"{size} {unit}"


def ensure_directory(path: str) -> None:
    """Ensure directory exists, creating it if necessary."""
    Path(path).mkdir(parents=True, exist_ok=True)


def get_resume_header(offset: int) -> str:
    """
    Create an open-ended HTTP Range header value.

    Args:
        offset: First byte wanted

    Returns:
        Range header value (e.g., "bytes=1024-")
    """
    return f"bytes={offset}-"


def join_url(base: str, *parts: str) -> str:
    """Join a base URL and relative path parts with single slashes."""
    url = base.rstrip("/")
    for part in parts:
        part = part.strip("/")
        if part:
            url = f"{url}/{part}"
    return url


def normalize_path(path: str) -> str:
    """
    Normalize a manifest path to forward slashes without a leading separator.

    Args:
        path: Path to normalize

    Returns:
        Normalized path
    """
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def validate_relative_path(path: str) -> str:
    """
    Validate that a manifest path stays inside the installation root.

    Colons are refused as well: they cannot appear in a relative path on
    Windows, and the manifest format uses them as the field separator.

    Args:
        path: Relative path from a manifest or operation

    Returns:
        The normalized POSIX path

    Raises:
        MalformedError: if the path is absolute or escapes the root
    """
    normalized = normalize_path(path)
    if not normalized or normalized.startswith("/"):
        raise MalformedError(f"Path is not relative: {path!r}", path)
    if "\x00" in normalized or ":" in normalized:
        raise MalformedError(f"Path contains an illegal character: {path!r}", path)

    for part in normalized.split("/"):
        if part in ("..", "."):
            raise MalformedError(f"Path escapes the installation root: {path!r}", path)
    if normalized.endswith("/") or "//" in normalized:
        raise MalformedError(f"Path has an empty segment: {path!r}", path)

    return normalized


def safe_join(root: str, relative_path: str) -> str:
    """
    Join a validated relative path to a root and check the result stays inside it.

    Args:
        root: Installation root
        relative_path: Relative manifest path

    Returns:
        Absolute native path
    """
    normalized = validate_relative_path(relative_path)
    root_abs = os.path.abspath(root)
    target = os.path.abspath(os.path.join(root_abs, *normalized.split("/")))
    if os.path.commonpath([root_abs, target]) != root_abs:
        raise MalformedError(f"Path escapes the installation root: {relative_path!r}", relative_path)
    return target


def write_text_atomic(path: str, text: str) -> None:
    """Write a small text file through a temp file and an atomic replace."""
    parent = os.path.dirname(path)
    if parent:
        ensure_directory(parent)
    temp_path = path + constants.TEMP_SUFFIX
    with open(temp_path, "w", encoding="utf-8", newline="\n") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(temp_path, path)
