import os
import tempfile
import unittest

from launchpad_dl.errors import MalformedError
from launchpad_dl.models import (
    ArtifactKind, FileOperation, Manifest, ManifestEntry, OperationKind, PatchEvent,
    PatchSession, PatchState, VersionIdentifier,
)

MD5_A = "0cc175b9c0f1b6a831c399e269772661"
MD5_B = "92eb5ffee6ae2fec3ad71c777531578f"
SHA256_A = "ca978112ca1bbdcafac231b39a23dc4da786eff8147c4e72b9807785afee48bb"


class ManifestEntryTests(unittest.TestCase):
    def test_parse_line(self) -> None:
        entry = ManifestEntry.from_line(f"{MD5_A}:1:bin/a.bin")
        self.assertEqual(entry.path, "bin/a.bin")
        self.assertEqual(entry.hash, MD5_A)
        self.assertEqual(entry.size, 1)
        self.assertFalse(entry.required)

    def test_required_flag_roundtrip(self) -> None:
        line = f"{MD5_A}:1:Game.exe:required"
        entry = ManifestEntry.from_line(line)
        self.assertTrue(entry.required)
        self.assertEqual(entry.to_line(), line)

    def test_sha256_digest_accepted(self) -> None:
        entry = ManifestEntry.from_line(f"{SHA256_A.upper()}:1:a")
        self.assertEqual(entry.hash, SHA256_A)

    def test_backslashes_normalized(self) -> None:
        entry = ManifestEntry("data\\maps\\one.map", MD5_A, 1)
        self.assertEqual(entry.path, "data/maps/one.map")

    def test_rejects_unsafe_paths(self) -> None:
        for path in ("../evil", "/etc/passwd", "a/../../b", "C:/Windows/x", "a//b", ""):
            with self.subTest(path=path):
                with self.assertRaises(MalformedError):
                    ManifestEntry(path, MD5_A, 1)

    def test_rejects_bad_fields(self) -> None:
        bad_lines = [
            "nothex:1:a",
            f"{MD5_A[:-1]}:1:a",
            f"{MD5_A}:-1:a",
            f"{MD5_A}:one:a",
            f"{MD5_A}:1",
            f"{MD5_A}:1:a:optional",
        ]
        for line in bad_lines:
            with self.subTest(line=line):
                with self.assertRaises(MalformedError):
                    ManifestEntry.from_line(line)


class ManifestTests(unittest.TestCase):
    def test_from_text_skips_comments_and_blank_lines(self) -> None:
        text = f"\ufeff# release 1.2.0\n\n{MD5_A}:1:a.bin\n  {MD5_B}:1:b.bin:required  \n"
        manifest = Manifest.from_text(text)
        self.assertEqual(manifest.paths, ["a.bin", "b.bin"])
        self.assertEqual(manifest.required_paths, ["b.bin"])
        self.assertEqual(manifest.total_size, 2)

    def test_duplicate_paths_rejected(self) -> None:
        text = f"{MD5_A}:1:a.bin\n{MD5_B}:1:a.bin\n"
        with self.assertRaises(MalformedError) as ctx:
            Manifest.from_text(text)
        self.assertIn("Line 2", str(ctx.exception))

    def test_text_roundtrip_keeps_order(self) -> None:
        manifest = Manifest([
            ManifestEntry("z.bin", MD5_A, 1),
            ManifestEntry("a.bin", MD5_B, 1, required=True),
        ])
        self.assertEqual(Manifest.from_text(manifest.to_text()), manifest)

    def test_lookup(self) -> None:
        manifest = Manifest([ManifestEntry("dir/a.bin", MD5_A, 1)])
        self.assertIn("dir/a.bin", manifest)
        self.assertIn("dir\\a.bin", manifest)
        self.assertNotIn("a.bin", manifest)
        self.assertIsNone(manifest.get("missing"))

    def test_missing_file_is_empty_manifest(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            manifest = Manifest.from_file(os.path.join(td, "GameManifest.txt"))
            self.assertEqual(len(manifest), 0)

    def test_from_directory(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            os.makedirs(os.path.join(td, "sub"))
            with open(os.path.join(td, "a"), "wb") as f:
                f.write(b"a")
            with open(os.path.join(td, "sub", "b"), "wb") as f:
                f.write(b"b")
            with open(os.path.join(td, "sub", "c.part"), "wb") as f:
                f.write(b"partial")

            manifest = Manifest.from_directory(td, required=["a"])
            self.assertEqual(manifest.paths, ["a", "sub/b"])
            self.assertEqual(manifest.get("a").hash, MD5_A)
            self.assertTrue(manifest.get("a").required)

            only = Manifest.from_directory(td, paths=["sub/b", "missing"])
            self.assertEqual(only.paths, ["sub/b"])
            self.assertEqual(only.get("sub/b").hash, MD5_B)

    def test_from_directory_follows_reference_algorithm(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            for name in ("a", "b"):
                with open(os.path.join(td, name), "wb") as f:
                    f.write(b"a")
            reference = Manifest([ManifestEntry("a", SHA256_A, 1)])

            manifest = Manifest.from_directory(td, reference=reference)
            self.assertEqual(manifest.get("a").hash, SHA256_A)
            self.assertEqual(manifest.get("b").hash, MD5_A)

    def test_undecodable_file_is_malformed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "GameManifest.txt")
            with open(path, "wb") as f:
                f.write(b"\xff\xfe\xfa")
            with self.assertRaises(MalformedError):
                Manifest.from_file(path)


class FileOperationTests(unittest.TestCase):
    def test_remove_needs_no_transfer(self) -> None:
        op = FileOperation.remove("old.bin")
        self.assertFalse(op.needs_transfer)
        self.assertEqual(op.size, 0)
        self.assertFalse(op.required)

    def test_add_requires_entry(self) -> None:
        with self.assertRaises(ValueError):
            FileOperation(OperationKind.ADD, "a.bin")

    def test_dict_roundtrip(self) -> None:
        op = FileOperation.update(ManifestEntry("a.bin", MD5_A, 1, required=True))
        restored = FileOperation.from_dict(op.to_dict())
        self.assertEqual(restored, op)
        self.assertTrue(restored.required)


class VersionIdentifierTests(unittest.TestCase):
    def test_ordering(self) -> None:
        self.assertLess(VersionIdentifier(1, 2, 0), VersionIdentifier(1, 10, 0))
        self.assertLess(VersionIdentifier.UNKNOWN, VersionIdentifier(0, 0, 0))
        self.assertEqual(str(VersionIdentifier(1, 2, 3)), "1.2.3")
        self.assertEqual(str(VersionIdentifier.UNKNOWN), "unknown")


class PatchSessionTests(unittest.TestCase):
    def test_dict_roundtrip(self) -> None:
        ops = [
            FileOperation.add(ManifestEntry("a.bin", MD5_A, 1)),
            FileOperation.remove("old.bin"),
        ]
        session = PatchSession(protocol="HTTP", operations=ops, retries_used={"a.bin": 1},
                               completed={"old.bin"}, status=PatchState.ERROR, repair=True)
        restored = PatchSession.from_dict(session.to_dict())
        self.assertEqual(restored.session_id, session.session_id)
        self.assertEqual(restored.operations, ops)
        self.assertEqual(restored.retries_used, {"a.bin": 1})
        self.assertEqual(restored.status, PatchState.ERROR)
        self.assertEqual(restored.kind, ArtifactKind.GAME)
        self.assertTrue(restored.repair)
        self.assertEqual([op.path for op in restored.pending], ["a.bin"])

    def test_fresh_ids(self) -> None:
        self.assertNotEqual(PatchSession(protocol="HTTP").session_id,
                            PatchSession(protocol="HTTP").session_id)


class PatchEventTests(unittest.TestCase):
    def test_runnable_distinguishes_required_failures(self) -> None:
        optional = PatchEvent(PatchState.IDLE, failed_optional=["music.ogg"])
        required = PatchEvent(PatchState.ERROR, failed_required=["Game.exe"])
        self.assertTrue(optional.game_runnable)
        self.assertFalse(required.game_runnable)

    def test_fraction(self) -> None:
        self.assertEqual(PatchEvent(PatchState.DOWNLOADING).fraction, 0.0)
        self.assertEqual(PatchEvent(PatchState.DOWNLOADING, bytes_done=5, bytes_total=10).fraction, 0.5)
        self.assertEqual(PatchEvent(PatchState.DOWNLOADING, bytes_done=15, bytes_total=10).fraction, 1.0)


if __name__ == "__main__":
    unittest.main()
