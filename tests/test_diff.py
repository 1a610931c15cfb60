import random
import unittest

from launchpad_dl.diff import compute_operations, diff_manifests
from launchpad_dl.models import FileOperation, Manifest, ManifestEntry, OperationKind

H1 = "1" * 32
H2 = "2" * 32
H3 = "3" * 32
H4 = "4" * 32


def entry(path: str, digest: str, size: int = 10) -> ManifestEntry:
    return ManifestEntry(path, digest, size)


def apply(files: dict, operations) -> dict:
    """Apply operations to a path -> (hash, size) mapping."""
    result = dict(files)
    for op in operations:
        if op.kind == OperationKind.REMOVE:
            result.pop(op.path, None)
        else:
            result[op.path] = (op.entry.hash, op.entry.size)
    return result


def as_files(manifest: Manifest) -> dict:
    return {e.path: (e.hash, e.size) for e in manifest}


def random_manifest(rng: random.Random) -> Manifest:
    paths = rng.sample([f"dir{i % 3}/file{i}.bin" for i in range(12)], rng.randint(0, 8))
    digests = [H1, H2, H3, H4]
    return Manifest([entry(p, rng.choice(digests), rng.choice([1, 10])) for p in paths])


class DiffTests(unittest.TestCase):
    def test_update_then_add(self) -> None:
        local = Manifest([entry("a.bin", H1), entry("b.bin", H2)])
        remote = Manifest([entry("a.bin", H1), entry("b.bin", H3), entry("c.bin", H4)])
        self.assertEqual(
            compute_operations(local, remote),
            [FileOperation.update(entry("b.bin", H3)), FileOperation.add(entry("c.bin", H4))]
        )

    def test_removals_come_last(self) -> None:
        local = Manifest([entry("old.bin", H1), entry("b.bin", H2)])
        remote = Manifest([entry("new.bin", H3), entry("b.bin", H4)])
        ops = compute_operations(local, remote)
        self.assertEqual([(op.kind, op.path) for op in ops], [
            (OperationKind.UPDATE, "b.bin"),
            (OperationKind.ADD, "new.bin"),
            (OperationKind.REMOVE, "old.bin"),
        ])

    def test_same_hash_different_size_is_update(self) -> None:
        local = Manifest([entry("a.bin", H1, 10)])
        remote = Manifest([entry("a.bin", H1, 11)])
        ops = compute_operations(local, remote)
        self.assertEqual(len(ops), 1)
        self.assertEqual(ops[0].kind, OperationKind.UPDATE)
        self.assertEqual(ops[0].size, 11)

    def test_fresh_install_adds_everything(self) -> None:
        remote = Manifest([entry("a.bin", H1), entry("b.bin", H2)])
        diff = diff_manifests(Manifest(), remote)
        self.assertEqual([e.path for e in diff.added], ["a.bin", "b.bin"])
        self.assertEqual(diff.transfer_size, 20)
        self.assertEqual(str(diff), "ManifestDiff: 2 added")

    def test_identical_manifests_have_no_diff(self) -> None:
        rng = random.Random(7)
        for _ in range(50):
            manifest = random_manifest(rng)
            self.assertEqual(compute_operations(manifest, manifest), [])
            self.assertFalse(diff_manifests(manifest, manifest))

    def test_applying_diff_reaches_remote(self) -> None:
        rng = random.Random(42)
        for _ in range(200):
            local, remote = random_manifest(rng), random_manifest(rng)
            ops = compute_operations(local, remote)
            self.assertEqual(apply(as_files(local), ops), as_files(remote))

    def test_deterministic(self) -> None:
        rng = random.Random(3)
        local, remote = random_manifest(rng), random_manifest(rng)
        self.assertEqual(compute_operations(local, remote), compute_operations(local, remote))


if __name__ == "__main__":
    unittest.main()
