import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout

from launchpad_dl import cli, utils
from launchpad_dl.config import LauncherConfig
from launchpad_dl.errors import ConfigurationError
from launchpad_dl.models import Manifest


class LauncherConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = os.path.join(self._tmp.name, "nested", "config.json")

    def test_missing_file_is_created_with_defaults(self) -> None:
        config = LauncherConfig.load(self.path)

        self.assertTrue(os.path.isfile(self.path))
        self.assertEqual(config.protocol, "HTTP")
        self.assertEqual(config.retry_budget, 2)
        with open(self.path, encoding="utf-8") as f:
            self.assertEqual(json.load(f)["game_name"], "LaunchpadExample")

    def test_save_and_load(self) -> None:
        LauncherConfig(install_root="/games/demo", protocol="FTP", ftp_url="ftp://files.example.com",
                       retry_budget=5, platform="Win64").save(self.path)

        config = LauncherConfig.load(self.path)
        self.assertEqual(config.protocol, "FTP")
        self.assertEqual(config.retry_budget, 5)
        self.assertEqual(config.base_url, "ftp://files.example.com")

    def test_invalid_json(self) -> None:
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertRaises(ConfigurationError):
            LauncherConfig.load(self.path)

    def test_unknown_keys_are_ignored_with_warning(self) -> None:
        with self.assertLogs("launchpad_dl.config", level="WARNING") as logs:
            config = LauncherConfig.from_dict({"protocol": "HTTP", "theme": "dark"})
        self.assertEqual(config.protocol, "HTTP")
        self.assertIn("theme", logs.output[0])

    def test_validation(self) -> None:
        for values in ({"protocol": ""}, {"retry_budget": -1}, {"retry_budget": "3"}, {"concurrency": 0}):
            with self.subTest(values=values):
                with self.assertRaises(ConfigurationError):
                    LauncherConfig.from_dict(values)

    def test_missing_protocol_url(self) -> None:
        with self.assertRaises(ConfigurationError):
            LauncherConfig(protocol="HTTP").base_url_for("HTTP")

    def test_derived_paths(self) -> None:
        config = LauncherConfig(install_root="/games/demo", platform="Linux", game_name="Demo")
        self.assertEqual(config.game_path, os.path.join("/games/demo", "Game", "Linux"))
        self.assertEqual(config.game_version_path, os.path.join("/games/demo", "Game", "Linux", "GameVersion.txt"))
        self.assertEqual(config.game_manifest_path, os.path.join("/games/demo", "GameManifest.txt"))
        self.assertEqual(config.game_guid, utils.deterministic_id("Demo"))

    def test_credentials(self) -> None:
        self.assertFalse(LauncherConfig().has_credentials)
        self.assertTrue(LauncherConfig(username="patcher", password="pw").has_credentials)


class CommandLineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = self._tmp.name

    def run_cli(self, *argv: str):
        out = io.StringIO()
        with redirect_stdout(out):
            code = cli.main(list(argv))
        return code, out.getvalue()

    def test_guid(self) -> None:
        code, output = self.run_cli("guid", "LaunchpadExample")
        self.assertEqual(code, cli.EXIT_OK)
        self.assertEqual(output.strip(), str(utils.deterministic_id("LaunchpadExample")))

    def test_manifest_generation(self) -> None:
        release = os.path.join(self.root, "release")
        os.makedirs(os.path.join(release, "data"))
        with open(os.path.join(release, "Game.exe"), "wb") as f:
            f.write(b"game")
        with open(os.path.join(release, "data", "level1.pak"), "wb") as f:
            f.write(b"level")

        target = os.path.join(self.root, "GameManifest.txt")
        code, _ = self.run_cli("manifest", release, "--required", "Game.exe", "-o", target)

        self.assertEqual(code, cli.EXIT_OK)
        manifest = Manifest.from_file(target)
        self.assertEqual(sorted(manifest.paths), ["Game.exe", "data/level1.pak"])
        self.assertEqual(manifest.required_paths, ["Game.exe"])
        self.assertEqual(manifest.get("data/level1.pak").hash, utils.hash_bytes(b"level"))

    def test_init_config_refuses_to_overwrite(self) -> None:
        path = os.path.join(self.root, "config.json")
        code, _ = self.run_cli("--config", path, "init-config", "--protocol", "FTP",
                               "--url", "ftp://files.example.com")
        self.assertEqual(code, cli.EXIT_OK)
        self.assertEqual(LauncherConfig.load(path).ftp_url, "ftp://files.example.com")

        code, output = self.run_cli("--config", path, "init-config")
        self.assertEqual(code, cli.EXIT_ERROR)
        self.assertIn("already exists", output)

    def test_ascii_symbols(self) -> None:
        release = os.path.join(self.root, "release")
        os.makedirs(release)
        with open(os.path.join(release, "Game.exe"), "wb") as f:
            f.write(b"game")

        code, output = self.run_cli("--ascii", "manifest", release, "-o", os.path.join(self.root, "m.txt"))
        self.assertEqual(code, cli.EXIT_OK)
        self.assertTrue(output.startswith("[OK] Wrote 1 entries"))

    def test_status_with_unreadable_manifest(self) -> None:
        config = LauncherConfig(install_root=self.root, changelog_url="https://example.com/news")
        path = os.path.join(self.root, "config.json")
        config.save(path)
        with open(config.game_manifest_path, "wb") as f:
            f.write(b"\xff\xfe\xfa")

        code, output = self.run_cli("--config", path, "status")
        self.assertEqual(code, cli.EXIT_OK)
        self.assertIn("manifest unreadable", output)
        self.assertIn("https://example.com/news", output)

    def test_no_command_prints_help(self) -> None:
        code, output = self.run_cli()
        self.assertEqual(code, cli.EXIT_ERROR)
        self.assertIn("usage", output)


if __name__ == "__main__":
    unittest.main()
