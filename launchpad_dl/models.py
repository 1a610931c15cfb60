"""
Data models for manifests, file operations, versions and patch sessions
"""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import total_ordering
from typing import List, Optional, Dict, Any, Iterable, Iterator, Set

from launchpad_dl import constants, utils
from launchpad_dl.errors import LocalStorageError, MalformedError


class ArtifactKind(Enum):
    """Which artifact set a manifest or version describes."""
    LAUNCHER = "launcher"
    GAME = "game"


# ========== Manifest Model ==========

@dataclass(frozen=True)
class ManifestEntry:
    """
    One file of a manifest.

    Attributes:
        path: Relative POSIX path inside the installation
        hash: Hex digest of the file contents (MD5, or SHA-256)
        size: File size in bytes
        required: Whether the game cannot run without this file
    """
    path: str
    hash: str
    size: int
    required: bool = False

    def __post_init__(self):
        object.__setattr__(self, "path", utils.validate_relative_path(self.path))
        digest = self.hash.strip().lower()
        try:
            utils.algorithm_for_hash(digest)
            int(digest, 16)
        except ValueError:
            raise MalformedError(f"Invalid digest for {self.path}: {self.hash!r}", self.path)
        object.__setattr__(self, "hash", digest)
        if isinstance(self.size, bool) or not isinstance(self.size, int) or self.size < 0:
            raise MalformedError(f"Invalid size for {self.path}: {self.size!r}", self.path)

    @classmethod
    def from_line(cls, line: str) -> "ManifestEntry":
        """
        Parse a manifest line: ``hash:size:path[:flags]``.

        Args:
            line: One non-empty manifest line

        Returns:
            Parsed ManifestEntry
        """
        fields = line.strip().split(":")
        if len(fields) not in (3, 4):
            raise MalformedError(f"Expected 'hash:size:path[:flags]', got {line!r}")

        digest, raw_size, path = fields[0], fields[1], fields[2]
        flags = fields[3].split(",") if len(fields) == 4 else []
        try:
            size = int(raw_size)
        except ValueError:
            raise MalformedError(f"Invalid size in manifest line {line!r}")

        unknown = [f for f in flags if f.strip() and f.strip() != constants.FLAG_REQUIRED]
        if unknown:
            raise MalformedError(f"Unknown manifest flags {unknown} in line {line!r}")

        required = constants.FLAG_REQUIRED in (f.strip() for f in flags)
        return cls(path=path, hash=digest, size=size, required=required)

    def to_line(self) -> str:
        """Serialize this entry as a manifest line."""
        line = f"{self.hash}:{self.size}:{self.path}"
        if self.required:
            line += f":{constants.FLAG_REQUIRED}"
        return line

    def matches(self, other: "ManifestEntry") -> bool:
        """True when both entries describe identical contents."""
        return self.hash == other.hash and self.size == other.size


class Manifest:
    """
    Ordered listing of files with content hashes.

    Describes either the local installation or a remote release snapshot.
    A manifest never holds two entries with the same path.
    """

    def __init__(self, entries: Optional[Iterable[ManifestEntry]] = None,
                 kind: ArtifactKind = ArtifactKind.GAME):
        self.kind = kind
        self._entries: Dict[str, ManifestEntry] = {}
        for entry in entries or []:
            self.add(entry)

    def add(self, entry: ManifestEntry) -> None:
        """Append an entry, rejecting duplicate paths."""
        if entry.path in self._entries:
            raise MalformedError(f"Duplicate manifest path: {entry.path}", entry.path)
        self._entries[entry.path] = entry

    def get(self, path: str) -> Optional[ManifestEntry]:
        return self._entries.get(utils.normalize_path(path))

    @property
    def entries(self) -> List[ManifestEntry]:
        return list(self._entries.values())

    @property
    def paths(self) -> List[str]:
        return list(self._entries.keys())

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self._entries.values())

    @property
    def required_paths(self) -> List[str]:
        return [entry.path for entry in self._entries.values() if entry.required]

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and utils.normalize_path(path) in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Manifest):
            return NotImplemented
        return self.entries == other.entries

    def __repr__(self) -> str:
        return f"Manifest(kind={self.kind.value}, entries={len(self)}, size={self.total_size})"

    @classmethod
    def from_text(cls, text: str, kind: ArtifactKind = ArtifactKind.GAME) -> "Manifest":
        """
        Parse a textual manifest, one entry per line.

        Blank lines and lines starting with '#' are ignored.

        Args:
            text: Manifest contents
            kind: Artifact set described by the manifest

        Returns:
            Parsed Manifest

        Raises:
            MalformedError: on an unparseable line, unsafe path or duplicate path
        """
        manifest = cls(kind=kind)
        for line_number, line in enumerate(text.splitlines(), 1):
            stripped = line.strip().lstrip("\ufeff")
            if not stripped or stripped.startswith("#"):
                continue
            try:
                manifest.add(ManifestEntry.from_line(stripped))
            except MalformedError as e:
                raise MalformedError(f"Line {line_number}: {e}", e.path)
        return manifest

    def to_text(self) -> str:
        """Serialize the manifest to its textual form."""
        return "".join(entry.to_line() + "\n" for entry in self._entries.values())

    @classmethod
    def from_file(cls, file_path: str, kind: ArtifactKind = ArtifactKind.GAME) -> "Manifest":
        """
        Load a manifest file; a missing file yields an empty manifest.

        Raises:
            MalformedError: if the file is not valid UTF-8 or has a bad line
        """
        if not os.path.exists(file_path):
            return cls(kind=kind)
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                text = f.read()
        except UnicodeDecodeError as e:
            raise MalformedError(f"Manifest {file_path} is not valid UTF-8: {e}", file_path)
        return cls.from_text(text, kind)

    def save(self, file_path: str) -> None:
        """Write the manifest atomically."""
        utils.write_text_atomic(file_path, self.to_text())

    @classmethod
    def from_directory(cls, root: str, paths: Optional[Iterable[str]] = None,
                       required: Iterable[str] = (), algorithm: str = "md5",
                       kind: ArtifactKind = ArtifactKind.GAME,
                       reference: Optional["Manifest"] = None) -> "Manifest":
        """
        Build a manifest by hashing files on disk.

        Args:
            root: Directory to scan
            paths: Only consider these relative paths (missing ones are skipped);
                when None every regular file under root is listed
            required: Relative paths to flag as required
            algorithm: Digest algorithm for the entries
            kind: Artifact set described by the manifest
            reference: Manifest to compare against later; a path it lists is
                hashed with the algorithm of its entry there, so the digests
                are comparable

        Returns:
            Manifest describing what is actually on disk
        """
        required_set = {utils.normalize_path(p) for p in required}

        if paths is None:
            candidates = []
            for dir_path, dir_names, file_names in os.walk(root):
                dir_names.sort()
                for file_name in sorted(file_names):
                    if file_name.endswith(constants.TEMP_SUFFIX):
                        continue
                    full_path = os.path.join(dir_path, file_name)
                    candidates.append(os.path.relpath(full_path, root).replace(os.sep, "/"))
        else:
            candidates = [utils.normalize_path(p) for p in paths]

        manifest = cls(kind=kind)
        for relative_path in candidates:
            if relative_path in manifest:
                continue
            full_path = utils.safe_join(root, relative_path)
            if not os.path.isfile(full_path):
                continue
            expected = reference.get(relative_path) if reference is not None else None
            entry_algorithm = utils.algorithm_for_hash(expected.hash) if expected else algorithm
            manifest.add(ManifestEntry(
                path=relative_path,
                hash=utils.calculate_hash(full_path, entry_algorithm),
                size=os.path.getsize(full_path),
                required=relative_path in required_set
            ))
        return manifest


# ========== File Operations ==========

class OperationKind(Enum):
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"


@dataclass(frozen=True)
class FileOperation:
    """
    One change needed to reconcile a local manifest with a remote one.

    Attributes:
        kind: Add, Update or Remove
        path: Relative path of the target file
        entry: Remote manifest entry to fetch (None for Remove)
    """
    kind: OperationKind
    path: str
    entry: Optional[ManifestEntry] = None

    def __post_init__(self):
        object.__setattr__(self, "path", utils.validate_relative_path(self.path))
        if self.kind != OperationKind.REMOVE and self.entry is None:
            raise ValueError(f"{self.kind.value} operation for {self.path} needs a manifest entry")

    @classmethod
    def add(cls, entry: ManifestEntry) -> "FileOperation":
        return cls(OperationKind.ADD, entry.path, entry)

    @classmethod
    def update(cls, entry: ManifestEntry) -> "FileOperation":
        return cls(OperationKind.UPDATE, entry.path, entry)

    @classmethod
    def remove(cls, path: str) -> "FileOperation":
        return cls(OperationKind.REMOVE, path)

    @property
    def needs_transfer(self) -> bool:
        return self.kind != OperationKind.REMOVE

    @property
    def required(self) -> bool:
        return bool(self.entry and self.entry.required)

    @property
    def size(self) -> int:
        return self.entry.size if self.entry else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "path": self.path,
            "entry": self.entry.to_line() if self.entry else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileOperation":
        entry = ManifestEntry.from_line(data["entry"]) if data.get("entry") else None
        return cls(OperationKind(data["kind"]), data["path"], entry)

    def __str__(self) -> str:
        return f"{self.kind.value.capitalize()}({self.path})"


class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class OperationOutcome:
    """
    Terminal result of one file operation.

    Attributes:
        operation: The operation that finished
        status: Succeeded, Failed or Cancelled
        attempts: Number of attempts made
        bytes_transferred: Bytes received over the transport
        error: Last error seen, if any
    """
    operation: FileOperation
    status: OutcomeStatus
    attempts: int = 0
    bytes_transferred: int = 0
    error: Optional[Exception] = None

    @property
    def path(self) -> str:
        return self.operation.path

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    @property
    def fatal(self) -> bool:
        """Whether the failure makes the whole installation unusable."""
        return isinstance(self.error, LocalStorageError)

    @property
    def error_detail(self) -> Optional[str]:
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"


# ========== Versions ==========

@total_ordering
@dataclass(frozen=True)
class VersionIdentifier:
    """
    Semantic version triple.

    VersionIdentifier.UNKNOWN is the sentinel for an unparseable version;
    it sorts below every real version.
    """
    major: int
    minor: int
    patch: int

    @property
    def is_unknown(self) -> bool:
        return self.major < 0

    def _key(self):
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: "VersionIdentifier") -> bool:
        if not isinstance(other, VersionIdentifier):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        if self.is_unknown:
            return "unknown"
        return f"{self.major}.{self.minor}.{self.patch}"


VersionIdentifier.UNKNOWN = VersionIdentifier(-1, -1, -1)


class VersionComparison(Enum):
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    LOCAL_NEWER = "local_newer"
    UNKNOWN = "unknown"

    @property
    def needs_update(self) -> bool:
        """Unknown versions are treated as stale."""
        return self in (VersionComparison.UPDATE_AVAILABLE, VersionComparison.UNKNOWN)


# ========== Patch State & Sessions ==========

class PatchState(Enum):
    IDLE = "idle"
    CHECKING_FOR_UPDATES = "checking_for_updates"
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    INSTALLING = "installing"
    REPAIRING = "repairing"
    ERROR = "error"


@dataclass
class PatchSession:
    """
    One run of the update or repair cycle.

    Attributes:
        session_id: Fresh identifier created when downloading starts
        protocol: Name of the backend in use
        kind: Artifact set being patched
        operations: Ordered operations computed by the diff
        retries_used: Failed attempts per path (never above the retry budget)
        status: Current patch state
        completed: Paths whose operation succeeded
        failed: Paths whose operation failed terminally
        repair: Whether the session was started as a repair
        created_at: ISO timestamp of creation
    """
    protocol: str
    kind: ArtifactKind = ArtifactKind.GAME
    operations: List[FileOperation] = field(default_factory=list)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    retries_used: Dict[str, int] = field(default_factory=dict)
    status: PatchState = PatchState.DOWNLOADING
    completed: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)
    repair: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def pending(self) -> List[FileOperation]:
        return [op for op in self.operations if op.path not in self.completed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "protocol": self.protocol,
            "kind": self.kind.value,
            "operations": [op.to_dict() for op in self.operations],
            "retries_used": dict(self.retries_used),
            "status": self.status.value,
            "completed": sorted(self.completed),
            "failed": sorted(self.failed),
            "repair": self.repair,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatchSession":
        return cls(
            session_id=data["session_id"],
            protocol=data.get("protocol", ""),
            kind=ArtifactKind(data.get("kind", ArtifactKind.GAME.value)),
            operations=[FileOperation.from_dict(op) for op in data.get("operations", [])],
            retries_used={k: int(v) for k, v in data.get("retries_used", {}).items()},
            status=PatchState(data.get("status", PatchState.DOWNLOADING.value)),
            completed=set(data.get("completed", [])),
            failed=set(data.get("failed", [])),
            repair=bool(data.get("repair", False)),
            created_at=data.get("created_at", ""),
        )


@dataclass
class PatchEvent:
    """
    Status/progress notification sent to the caller.

    Attributes:
        state: Current patch state
        current_operation: Path being worked on, if any
        bytes_done: Bytes transferred so far in this session
        bytes_total: Bytes the session has to transfer
        error_detail: Human-readable failure description
        failed_optional: Optional files that could not be installed
        failed_required: Required files that could not be installed
    """
    state: PatchState
    current_operation: Optional[str] = None
    bytes_done: int = 0
    bytes_total: int = 0
    error_detail: Optional[str] = None
    failed_optional: List[str] = field(default_factory=list)
    failed_required: List[str] = field(default_factory=list)

    @property
    def game_runnable(self) -> bool:
        """False when a required file is missing and a repair is needed."""
        return self.state != PatchState.ERROR and not self.failed_required

    @property
    def fraction(self) -> float:
        if self.bytes_total <= 0:
            return 0.0
        return min(1.0, self.bytes_done / self.bytes_total)
