"""
Manifest diff utilities for reconciling an installation with a release
"""

from dataclasses import dataclass, field
from typing import List

from launchpad_dl.models import FileOperation, Manifest, ManifestEntry


@dataclass
class ManifestDiff:
    """
    Represents the difference between a local and a remote manifest.

    Attributes:
        added: Remote entries missing locally
        updated: Remote entries whose local copy differs in hash or size
        removed: Local paths no longer present remotely
    """
    added: List[ManifestEntry] = field(default_factory=list)
    updated: List[ManifestEntry] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def operations(self) -> List[FileOperation]:
        """
        Ordered file operations: updates, then additions, then removals.

        Removals come last so nothing is deleted before every new file has
        been fetched and verified.
        """
        operations = [FileOperation.update(entry) for entry in self.updated]
        operations.extend(FileOperation.add(entry) for entry in self.added)
        operations.extend(FileOperation.remove(path) for path in self.removed)
        return operations

    @property
    def transfer_size(self) -> int:
        return sum(entry.size for entry in self.added) + sum(entry.size for entry in self.updated)

    def __bool__(self) -> bool:
        return bool(self.added or self.updated or self.removed)

    def __str__(self) -> str:
        """Human-readable summary of diff."""
        parts = []
        if self.added:
            parts.append(f"{len(self.added)} added")
        if self.updated:
            parts.append(f"{len(self.updated)} updated")
        if self.removed:
            parts.append(f"{len(self.removed)} removed")

        return "ManifestDiff: " + ", ".join(parts) if parts else "ManifestDiff: no changes"


def diff_manifests(local: Manifest, remote: Manifest) -> ManifestDiff:
    """
    Compare two manifests to determine what has to change locally.

    Deterministic: local entries are visited in local order, then remote
    entries in remote order. An entry with the same hash but a different
    size is a corrupt listing and is still treated as changed.

    Args:
        local: What is installed (empty manifest for a fresh install)
        remote: What the release contains

    Returns:
        ManifestDiff describing the changes
    """
    diff = ManifestDiff()

    for local_entry in local:
        remote_entry = remote.get(local_entry.path)
        if remote_entry is None:
            diff.removed.append(local_entry.path)
        elif not local_entry.matches(remote_entry):
            diff.updated.append(remote_entry)

    for remote_entry in remote:
        if remote_entry.path not in local:
            diff.added.append(remote_entry)

    return diff


def compute_operations(local: Manifest, remote: Manifest) -> List[FileOperation]:
    """Ordered file operations turning `local` into `remote`."""
    return diff_manifests(local, remote).operations
