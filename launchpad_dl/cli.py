#!/usr/bin/env python3
"""
Command-line interface for launchpad_dl

Runs update and repair cycles for the configured installation, stages
launcher updates and generates manifests for publishing a release.
"""

import argparse
import logging
import os
import sys

from launchpad_dl import __version__, constants, utils
from launchpad_dl.config import LauncherConfig, default_config_path
from launchpad_dl.errors import MalformedError, PatchError, SessionAlreadyActiveError
from launchpad_dl.models import ArtifactKind, Manifest, PatchEvent, PatchState
from launchpad_dl.patcher import Patcher
from launchpad_dl.version import read_local_version

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SESSION_ACTIVE = 2
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def load_config(args) -> LauncherConfig:
    config = LauncherConfig.load(args.config)
    if args.root:
        config.install_root = args.root
    return config


class EventPrinter:
    """Prints state changes, and progress in coarse steps."""

    def __init__(self, step: float = 0.1):
        self.step = step
        self._last_state = None
        self._next_fraction = step

    def __call__(self, event: PatchEvent):
        if event.state != self._last_state:
            self._last_state = event.state
            self._next_fraction = self.step
            print(f"[{event.state.value}]" + (f" {event.error_detail}" if event.error_detail else ""))
        elif event.state == PatchState.DOWNLOADING and event.bytes_total:
            if event.fraction >= self._next_fraction:
                self._next_fraction = event.fraction + self.step
                print(f"  {event.fraction:.0%} ({utils.format_size(event.bytes_done)}"
                      f" / {utils.format_size(event.bytes_total)})")


def _report(patcher: Patcher, state: PatchState) -> int:
    if state == PatchState.UP_TO_DATE:
        print(f"{utils.SYMBOL_CHECK} Game is up to date ({patcher.local_version})")
        return EXIT_OK
    if state == PatchState.IDLE:
        if patcher.failed_optional:
            print(f"{utils.SYMBOL_CHECK} Game installed; optional files failed: {', '.join(patcher.failed_optional)}")
            print("  The game is runnable. Run 'launchpad-dl repair' to retry them.")
        else:
            print(f"{utils.SYMBOL_CHECK} Game installed")
        return EXIT_OK

    print(f"{utils.SYMBOL_ERROR} Patching failed: {patcher.last_error}")
    if patcher.failed_required:
        print(f"  Required files missing: {', '.join(patcher.failed_required)}")
        print("  Run 'launchpad-dl repair' to try again.")
    return EXIT_ERROR


def cmd_check(args):
    """Handle check command: version comparison only."""
    config = load_config(args)
    with Patcher(config) as patcher:
        try:
            state = patcher.check_for_updates()
        except PatchError as e:
            print(f"{utils.SYMBOL_ERROR} Could not check for updates: {e}")
            return EXIT_ERROR

        print(f"Local version:  {patcher.local_version or 'not installed'}")
        print(f"Remote version: {patcher.remote_version}")
        if state == PatchState.UPDATE_AVAILABLE:
            print(f"{utils.SYMBOL_ARROW} Update available. Run 'launchpad-dl update' to install it.")
            if config.changelog_url:
                print(f"  What's new: {config.changelog_url}")
        else:
            print(f"{utils.SYMBOL_CHECK} Game is up to date")
        if patcher.is_interrupted():
            print(f"{utils.SYMBOL_WARNING} The last patch session did not finish; the next update will repair.")
    return EXIT_OK


def cmd_update(args):
    """Handle update command."""
    config = load_config(args)
    with Patcher(config, event_callback=EventPrinter()) as patcher:
        try:
            state = patcher.run_update()
        except KeyboardInterrupt:
            patcher.cancel()
            raise
        return _report(patcher, state)


def cmd_repair(args):
    """Handle repair command."""
    config = load_config(args)
    with Patcher(config, event_callback=EventPrinter()) as patcher:
        try:
            state = patcher.run_repair()
        except KeyboardInterrupt:
            patcher.cancel()
            raise
        return _report(patcher, state)


def cmd_status(args):
    """Handle status command: show local installation state."""
    config = load_config(args)
    patcher = Patcher(config)
    local_version = read_local_version(config.game_version_path)
    try:
        local_manifest = Manifest.from_file(config.game_manifest_path, ArtifactKind.GAME)
        installed_files = f"{len(local_manifest)} ({utils.format_size(local_manifest.total_size)})"
    except MalformedError as e:
        installed_files = f"unknown, manifest unreadable ({e}); run 'launchpad-dl repair'"

    print(f"Installation root:  {config.install_root}")
    print(f"Game:               {config.game_name} ({config.game_guid})")
    print(f"Platform:           {config.platform}")
    print(f"Protocol:           {config.protocol}")
    print(f"Installed version:  {local_version or 'not installed'}")
    print(f"Installed files:    {installed_files}")
    if config.changelog_url:
        print(f"Changelog:          {config.changelog_url}")
    print(f"First run:          {'yes' if patcher.is_first_run() else 'no'}")
    print(f"Update pending:     {'yes' if patcher.store.has_update_cookie() else 'no'}")
    print(f"Interrupted:        {'yes' if patcher.is_interrupted() else 'no'}")
    if patcher.store.is_locked():
        print(f"{utils.SYMBOL_WARNING} A patch session currently holds the installation lock")
    return EXIT_OK


def cmd_launcher(args):
    """Handle launcher command: check for (and stage) a launcher update."""
    config = load_config(args)
    with Patcher(config) as patcher:
        try:
            comparison = patcher.check_launcher_update()
            if not comparison.needs_update:
                print(f"{utils.SYMBOL_CHECK} Launcher is up to date ({config.launcher_version})")
                return EXIT_OK

            print(f"{utils.SYMBOL_ARROW} Launcher update available (running {config.launcher_version})")
            if not args.download:
                print("  Run 'launchpad-dl launcher --download' to stage it.")
                return EXIT_OK

            target = patcher.download_launcher_update(args.target)
        except PatchError as e:
            print(f"{utils.SYMBOL_ERROR} Launcher update failed: {e}")
            return EXIT_ERROR

    print(f"{utils.SYMBOL_CHECK} Launcher update staged in {target}")
    return EXIT_OK


def cmd_manifest(args):
    """Handle manifest command: hash a directory into manifest text."""
    try:
        manifest = Manifest.from_directory(
            args.directory,
            required=args.required or (),
            algorithm=args.algorithm
        )
    except PatchError as e:
        print(f"{utils.SYMBOL_ERROR} {e}")
        return EXIT_ERROR

    if args.output:
        manifest.save(args.output)
        print(f"{utils.SYMBOL_CHECK} Wrote {len(manifest)} entries ({utils.format_size(manifest.total_size)}) to {args.output}")
    else:
        sys.stdout.write(manifest.to_text())
    return EXIT_OK


def cmd_guid(args):
    """Handle guid command: print the deterministic game identifier."""
    if args.name:
        print(utils.deterministic_id(args.name))
    else:
        print(load_config(args).game_guid)
    return EXIT_OK


def cmd_init_config(args):
    """Handle init-config command."""
    path = args.config or str(default_config_path())
    config = LauncherConfig(install_root=args.root or ".")
    if args.protocol:
        config.protocol = args.protocol
    if args.url:
        if config.protocol.lower() == constants.PROTOCOL_FTP.lower():
            config.ftp_url = args.url
        elif config.protocol.lower() == constants.PROTOCOL_BITTORRENT.lower():
            config.bittorrent_magnet = args.url
        else:
            config.http_url = args.url

    if os.path.exists(path) and not args.force:
        print(f"{utils.SYMBOL_ERROR} {path} already exists (use --force to overwrite)")
        return EXIT_ERROR

    config.save(path)
    print(f"{utils.SYMBOL_CHECK} Configuration written to {path}")
    return EXIT_OK


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Launchpad DL - game launcher patch core\n\n"
                    "Keeps a game installation in sync with a published release\n"
                    "over FTP, HTTP or BitTorrent.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  launchpad-dl init-config --protocol HTTP --url https://cdn.example.com/mygame\n"
               "  launchpad-dl check                 # Compare installed and published versions\n"
               "  launchpad-dl update                # Install the published release\n"
               "  launchpad-dl repair                # Rehash the installation and fix it\n"
               "  launchpad-dl manifest build/ --required Game.exe > GameManifest.txt"
    )

    parser.add_argument(
        "--config",
        default=None,
        help="Path to config file (default: ~/.config/launchpad_dl/config.json)"
    )

    parser.add_argument(
        "--root",
        default=None,
        help="Installation root (overrides the configured install_root)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    parser.add_argument(
        "--ascii",
        action="store_true",
        help="Use ASCII symbols instead of Unicode (for consoles that cannot print them)"
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    check_parser = subparsers.add_parser("check", help="Check whether a game update is available")
    check_parser.set_defaults(func=cmd_check)

    update_parser = subparsers.add_parser("update", help="Check for and install a game update")
    update_parser.set_defaults(func=cmd_update)

    repair_parser = subparsers.add_parser("repair", help="Verify the installation and fix damaged files")
    repair_parser.set_defaults(func=cmd_repair)

    status_parser = subparsers.add_parser("status", help="Show the local installation state")
    status_parser.set_defaults(func=cmd_status)

    launcher_parser = subparsers.add_parser("launcher", help="Check for a launcher update")
    launcher_parser.add_argument(
        "--download",
        action="store_true",
        help="Stage the launcher update files"
    )
    launcher_parser.add_argument(
        "--target",
        default=None,
        help="Staging directory (default: <tempdir>/launchpad/launcher)"
    )
    launcher_parser.set_defaults(func=cmd_launcher)

    manifest_parser = subparsers.add_parser("manifest", help="Generate a manifest for a directory")
    manifest_parser.add_argument("directory", help="Directory holding the release files")
    manifest_parser.add_argument(
        "--required",
        nargs="*",
        metavar="PATH",
        help="Relative paths the game cannot run without"
    )
    manifest_parser.add_argument(
        "--algorithm",
        default="md5",
        choices=["md5", "sha256"],
        help="Digest algorithm (default: md5)"
    )
    manifest_parser.add_argument("--output", "-o", default=None, help="Write to a file instead of stdout")
    manifest_parser.set_defaults(func=cmd_manifest)

    guid_parser = subparsers.add_parser("guid", help="Print the deterministic game identifier")
    guid_parser.add_argument("name", nargs="?", help="Game name (default: configured game_name)")
    guid_parser.set_defaults(func=cmd_guid)

    init_parser = subparsers.add_parser("init-config", help="Write a configuration file")
    init_parser.add_argument(
        "--protocol",
        default=None,
        choices=constants.PROTOCOLS,
        help="Patch protocol (default: HTTP)"
    )
    init_parser.add_argument("--url", default=None, help="Base URL (or magnet link) for the protocol")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")
    init_parser.set_defaults(func=cmd_init_config)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    setup_logging(args.verbose)
    utils.setup_symbols(args.ascii)

    try:
        return args.func(args)
    except SessionAlreadyActiveError as e:
        print(f"{utils.SYMBOL_ERROR} {e}")
        return EXIT_SESSION_ACTIVE
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return EXIT_INTERRUPTED
    except PatchError as e:
        print(f"\n{utils.SYMBOL_ERROR} Error: {e}")
        return EXIT_ERROR
    except Exception as e:
        logging.exception("Unexpected error")
        print(f"\n{utils.SYMBOL_ERROR} Error: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
