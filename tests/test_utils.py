import errno
import hashlib
import os
import tempfile
import unittest
import uuid
from unittest import mock

from launchpad_dl import utils
from launchpad_dl.errors import (
    DiskFullError, LocalStorageError, MalformedError, PermissionDeniedError, storage_error,
)


class ChecksumTests(unittest.TestCase):
    def test_verify_hash(self) -> None:
        data = b"launcher"
        self.assertTrue(utils.verify_hash(data, hashlib.md5(data).hexdigest()))
        self.assertTrue(utils.verify_hash(data, hashlib.sha256(data).hexdigest().upper()))
        self.assertFalse(utils.verify_hash(data, hashlib.md5(b"other").hexdigest()))
        self.assertFalse(utils.verify_hash(data, "abc"))

    def test_verify_file_hash(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "a.bin")
            with open(path, "wb") as f:
                f.write(b"x" * 40000)
            digest = hashlib.md5(b"x" * 40000).hexdigest()
            self.assertEqual(utils.calculate_hash(path), digest)
            self.assertTrue(utils.verify_file_hash(path, digest))
            self.assertFalse(utils.verify_file_hash(os.path.join(td, "missing"), digest))

    def test_algorithm_by_length(self) -> None:
        self.assertEqual(utils.algorithm_for_hash("0" * 32), "md5")
        self.assertEqual(utils.algorithm_for_hash("0" * 64), "sha256")
        with self.assertRaises(ValueError):
            utils.algorithm_for_hash("0" * 40)


class DeterministicIdTests(unittest.TestCase):
    def test_stable(self) -> None:
        self.assertEqual(utils.deterministic_id("LaunchpadExample"), utils.deterministic_id("LaunchpadExample"))

    def test_md5_laid_out_little_endian(self) -> None:
        expected = uuid.UUID(bytes_le=hashlib.md5("Spëll".encode("utf-8")).digest())
        self.assertEqual(utils.deterministic_id("Spëll"), expected)

    def test_distinct_seeds(self) -> None:
        ids = {utils.deterministic_id(f"game-{i}") for i in range(500)}
        self.assertEqual(len(ids), 500)


class PathTests(unittest.TestCase):
    def test_validate_relative_path(self) -> None:
        self.assertEqual(utils.validate_relative_path("./bin\\game.exe"), "bin/game.exe")
        for bad in ("..", "a/../b", "/abs", "a/./b", "a/", "a:b", "a\x00b"):
            with self.subTest(path=bad):
                with self.assertRaises(MalformedError):
                    utils.validate_relative_path(bad)

    def test_safe_join_stays_inside_root(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            joined = utils.safe_join(td, "sub/file.bin")
            self.assertEqual(joined, os.path.join(os.path.abspath(td), "sub", "file.bin"))
            with self.assertRaises(MalformedError):
                utils.safe_join(td, "../outside")

    def test_join_url(self) -> None:
        self.assertEqual(utils.join_url("http://host/base/", "/game/Linux", "bin/a"),
                         "http://host/base/game/Linux/bin/a")
        self.assertEqual(utils.get_resume_header(1024), "bytes=1024-")

    def test_write_text_atomic(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "nested", "file.txt")
            utils.write_text_atomic(path, "one")
            utils.write_text_atomic(path, "two")
            with open(path) as f:
                self.assertEqual(f.read(), "two")
            self.assertFalse(os.path.exists(path + ".part"))

    def test_format_size(self) -> None:
        self.assertEqual(utils.format_size(512), "512.0 B")
        self.assertEqual(utils.format_size(1536), "1.5 KB")


class StorageErrorTests(unittest.TestCase):
    def test_errno_mapping(self) -> None:
        self.assertIsInstance(storage_error(OSError(errno.ENOSPC, "No space left"), "/x"), DiskFullError)
        self.assertIsInstance(storage_error(PermissionError(errno.EACCES, "Denied"), "/x"), PermissionDeniedError)
        generic = storage_error(OSError(errno.EIO, "I/O error"), "/x")
        self.assertIs(type(generic), LocalStorageError)
        self.assertEqual(generic.path, "/x")


class SymbolTests(unittest.TestCase):
    def tearDown(self) -> None:
        utils.setup_symbols(force_ascii=True)

    def test_ascii_fallback(self) -> None:
        utils.setup_symbols(force_ascii=True)
        self.assertEqual(utils.SYMBOL_CHECK, "[OK]")
        self.assertEqual(utils.SYMBOL_ERROR, "[ERROR]")
        self.assertEqual(utils.SYMBOL_ARROW, "->")

    def test_unicode_console(self) -> None:
        with mock.patch.dict(os.environ, {"FORCE_ASCII": ""}), \
                mock.patch.object(utils.sys, "stdout", mock.Mock(encoding="utf-8")):
            utils.setup_symbols()
        self.assertEqual(utils.SYMBOL_CHECK, "✓")

    def test_unencodable_console(self) -> None:
        with mock.patch.dict(os.environ, {"FORCE_ASCII": ""}), \
                mock.patch.object(utils.sys, "stdout", mock.Mock(encoding="ascii")):
            self.assertFalse(utils.detect_unicode_support())

    def test_force_ascii_environment(self) -> None:
        with mock.patch.dict(os.environ, {"FORCE_ASCII": "1"}):
            self.assertFalse(utils.detect_unicode_support())


if __name__ == "__main__":
    unittest.main()
