"""
Patch state machine

Sequences version check, diff, download, verification and install for the
game, and stages launcher self-updates. Progress and state changes are
reported to the caller as PatchEvent objects.
"""

import logging
import os
import tempfile
import threading
from typing import Callable, Dict, List, Optional, Tuple

from launchpad_dl import utils
from launchpad_dl.config import LauncherConfig
from launchpad_dl.diff import compute_operations
from launchpad_dl.downloader import PatchDownloader
from launchpad_dl.errors import (
    ChecksumMismatchError, InvalidTransitionError, MalformedError, PatchCancelledError, PatchError,
    storage_error,
)
from launchpad_dl.models import (
    ArtifactKind, FileOperation, Manifest, OperationOutcome, OutcomeStatus, PatchEvent,
    PatchSession, PatchState, VersionComparison, VersionIdentifier,
)
from launchpad_dl.protocols import PatchProtocol, get_protocol
from launchpad_dl.session import SessionStore
from launchpad_dl.version import compare_versions, parse_version, read_local_version, write_local_version

EventCallback = Callable[[PatchEvent], None]

# Allowed moves; ERROR is reachable from every state
_TRANSITIONS: Dict[PatchState, Tuple[PatchState, ...]] = {
    PatchState.IDLE: (PatchState.CHECKING_FOR_UPDATES, PatchState.REPAIRING),
    PatchState.CHECKING_FOR_UPDATES: (PatchState.UP_TO_DATE, PatchState.UPDATE_AVAILABLE),
    PatchState.UP_TO_DATE: (PatchState.IDLE,),
    PatchState.UPDATE_AVAILABLE: (PatchState.DOWNLOADING, PatchState.IDLE),
    PatchState.DOWNLOADING: (PatchState.VERIFYING,),
    PatchState.VERIFYING: (PatchState.INSTALLING,),
    PatchState.INSTALLING: (PatchState.IDLE, PatchState.REPAIRING),
    PatchState.REPAIRING: (PatchState.DOWNLOADING,),
    PatchState.ERROR: (PatchState.IDLE,),
}


class Patcher:
    """
    Top-level controller for one installation root.

    Example:
        >>> config = LauncherConfig.load()
        >>> with Patcher(config, event_callback=print) as patcher:
        ...     final_state = patcher.run_update()

    `run_update` and `run_repair` are the two entry points; both take the
    installation's session lock and raise SessionAlreadyActiveError when
    another session holds it. Every other failure ends the cycle in
    PatchState.ERROR with the cause in `last_error` and in the last event.

    Events are delivered on the calling thread for state changes and on
    download worker threads for byte progress.
    """

    def __init__(self, config: LauncherConfig, protocol: Optional[PatchProtocol] = None,
                 event_callback: Optional[EventCallback] = None):
        """
        Initialize the patcher.

        Args:
            config: Configuration snapshot; not re-read during a session
            protocol: Backend to use (default: the one named in the config)
            event_callback: Optional callback receiving every PatchEvent
        """
        self.config = config
        self.event_callback = event_callback
        self.store = SessionStore(config.install_root)
        self.logger = logging.getLogger("launchpad_dl.patcher")

        self._protocol = protocol
        self._owns_protocol = protocol is None

        self._state = PatchState.IDLE
        self._state_lock = threading.Lock()
        self._progress_lock = threading.Lock()
        self._bytes_done = 0
        self._bytes_total = 0

        self._cancel_event = threading.Event()
        self._downloader: Optional[PatchDownloader] = None
        self._auto_repair_used = False

        self.session: Optional[PatchSession] = None
        self.last_error: Optional[Exception] = None
        self.local_version: Optional[VersionIdentifier] = None
        self.remote_version: Optional[VersionIdentifier] = None
        self.failed_optional: List[str] = []
        self.failed_required: List[str] = []

    @property
    def protocol(self) -> PatchProtocol:
        if self._protocol is None:
            self._protocol = get_protocol(self.config.protocol, self.config)
        return self._protocol

    @property
    def state(self) -> PatchState:
        return self._state

    def is_interrupted(self) -> bool:
        """True when the last session did not finish (crash, cancel or error)."""
        return self.store.has_interrupted_session()

    def is_first_run(self) -> bool:
        """True until a first install has completed in this installation root."""
        return not self.store.has_install_cookie()

    def close(self) -> None:
        if self._owns_protocol and self._protocol is not None:
            self._protocol.close()
            self._protocol = None

    def __enter__(self) -> "Patcher":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ========== State & Events ==========

    def _transition(self, new_state: PatchState, error_detail: Optional[str] = None,
                    current_operation: Optional[str] = None) -> None:
        with self._state_lock:
            if new_state != PatchState.ERROR and new_state not in _TRANSITIONS[self._state]:
                raise InvalidTransitionError(
                    f"Cannot move from {self._state.value} to {new_state.value}"
                )
            self.logger.debug(f"State: {self._state.value} -> {new_state.value}")
            self._state = new_state

        if self.session is not None:
            self.session.status = new_state
        self._emit(current_operation=current_operation, error_detail=error_detail)

    def _emit(self, current_operation: Optional[str] = None,
              error_detail: Optional[str] = None) -> None:
        if not self.event_callback:
            return
        with self._progress_lock:
            bytes_done, bytes_total = self._bytes_done, self._bytes_total
        self.event_callback(PatchEvent(
            state=self._state,
            current_operation=current_operation,
            bytes_done=bytes_done,
            bytes_total=bytes_total,
            error_detail=error_detail,
            failed_optional=list(self.failed_optional),
            failed_required=list(self.failed_required),
        ))

    def _on_progress(self, path: str, delta: int) -> None:
        with self._progress_lock:
            self._bytes_done += delta
        self._emit(current_operation=path)

    def _begin_cycle(self) -> None:
        """Return to IDLE from a finished run and clear per-run state."""
        if self._state in (PatchState.UP_TO_DATE, PatchState.UPDATE_AVAILABLE, PatchState.ERROR):
            self._transition(PatchState.IDLE)
        if self._state != PatchState.IDLE:
            raise InvalidTransitionError(f"A patch cycle is already running ({self._state.value})")

        self._cancel_event.clear()
        self._auto_repair_used = False
        self.session = None
        self.last_error = None
        self.failed_optional = []
        self.failed_required = []

    def _enter_error(self, error: Exception) -> PatchState:
        """Move to ERROR and keep the session so the next start repairs."""
        self.last_error = error
        detail = f"{type(error).__name__}: {error}"
        self.logger.error(f"Patch session failed: {detail}")

        if self.session is not None:
            self.session.status = PatchState.ERROR
            try:
                self.store.save(self.session)
            except PatchError as e:
                self.logger.warning(f"Could not persist the failed session: {e}")

        if self._state != PatchState.ERROR:
            self._transition(PatchState.ERROR, error_detail=detail)
        return self._state

    def reset(self) -> None:
        """Acknowledge an ERROR (or a finished check) and return to IDLE."""
        if self._state != PatchState.IDLE:
            self._transition(PatchState.IDLE)

    def cancel(self) -> None:
        """Request cancellation of the running session; it ends in ERROR."""
        self._cancel_event.set()
        downloader = self._downloader
        if downloader is not None:
            downloader.cancel()

    # ========== Entry points ==========

    def check_for_updates(self) -> PatchState:
        """
        Compare the installed game version with the published one.

        Does not touch any game file and does not take the session lock.

        Returns:
            PatchState.UP_TO_DATE or PatchState.UPDATE_AVAILABLE

        Raises:
            PatchError: if the version could not be resolved (state is ERROR)
        """
        self._begin_cycle()
        try:
            return self._check()
        except PatchError as e:
            self._enter_error(e)
            raise

    def run_update(self) -> PatchState:
        """
        Run a full check-for-update cycle.

        An interrupted previous session turns the cycle into a repair.

        Returns:
            Final state: UP_TO_DATE, IDLE (installed, possibly with optional
            failures listed in `failed_optional`) or ERROR

        Raises:
            SessionAlreadyActiveError: if another session owns the installation
        """
        with self.store.lock():
            self._begin_cycle()
            try:
                if self.store.has_interrupted_session():
                    self.logger.warning("Previous patch session did not finish; repairing")
                    self._transition(PatchState.REPAIRING)
                    return self._repair()

                if self._check() == PatchState.UP_TO_DATE:
                    return self._state

                remote = self.protocol.fetch_remote_manifest(ArtifactKind.GAME)
                try:
                    local = self._load_local_manifest()
                except MalformedError as e:
                    # Fall back to what is actually on disk
                    self.logger.warning(f"Local manifest is unreadable, verifying the installation: {e}")
                    local = self._scan_installation(remote, Manifest(kind=ArtifactKind.GAME))
                    return self._patch(local, remote, compute_operations(local, remote), repair=True)
                return self._patch(local, remote, compute_operations(local, remote), repair=False)
            except PatchError as e:
                return self._enter_error(e)
            except Exception as e:
                self._enter_error(e)
                raise

    def run_repair(self) -> PatchState:
        """
        Run a repair cycle: rehash the installation and fetch whatever differs.

        Returns:
            Final state: IDLE or ERROR

        Raises:
            SessionAlreadyActiveError: if another session owns the installation
        """
        with self.store.lock():
            self._begin_cycle()
            try:
                self._transition(PatchState.REPAIRING)
                return self._repair()
            except PatchError as e:
                return self._enter_error(e)
            except Exception as e:
                # Unexpected failures still end the cycle before propagating
                self._enter_error(e)
                raise

    # ========== Cycle steps ==========

    def _check(self) -> PatchState:
        self._transition(PatchState.CHECKING_FOR_UPDATES)
        self.local_version = read_local_version(self.config.game_version_path)
        self.remote_version = self.protocol.resolve_remote_version(ArtifactKind.GAME)
        comparison = compare_versions(self.local_version, self.remote_version)
        self.logger.info(f"Game version: local {self.local_version or 'not installed'}, "
                         f"remote {self.remote_version} ({comparison.value})")

        if comparison.needs_update:
            self._transition(PatchState.UPDATE_AVAILABLE)
        elif self.store.has_update_cookie():
            self.logger.info("Previous update left files behind; updating again")
            self._transition(PatchState.UPDATE_AVAILABLE)
        else:
            self._transition(PatchState.UP_TO_DATE)
        return self._state

    def _load_local_manifest(self) -> Manifest:
        try:
            return Manifest.from_file(self.config.game_manifest_path, ArtifactKind.GAME)
        except OSError as e:
            raise storage_error(e, self.config.game_manifest_path)

    def _load_recorded_manifest(self) -> Manifest:
        """The local manifest, or an empty one when it cannot be parsed."""
        try:
            return self._load_local_manifest()
        except MalformedError as e:
            self.logger.warning(f"Ignoring unreadable local manifest: {e}")
            return Manifest(kind=ArtifactKind.GAME)

    def _scan_installation(self, remote: Manifest, recorded: Manifest) -> Manifest:
        """Hash the files the release or a previous install owns; user files stay untouched."""
        candidates = remote.paths + [p for p in recorded.paths if p not in remote]
        self.logger.info(f"Verifying {len(candidates)} installed files...")
        try:
            return Manifest.from_directory(self.config.game_path, paths=candidates,
                                           kind=ArtifactKind.GAME, reference=remote)
        except OSError as e:
            raise storage_error(e, self.config.game_path)

    def _repair(self) -> PatchState:
        """Diff the files actually on disk against the remote manifest."""
        self.remote_version = self.protocol.resolve_remote_version(ArtifactKind.GAME)
        remote = self.protocol.fetch_remote_manifest(ArtifactKind.GAME)
        local = self._scan_installation(remote, self._load_recorded_manifest())
        return self._patch(local, remote, compute_operations(local, remote), repair=True)

    def _patch(self, local: Manifest, remote: Manifest,
               operations: List[FileOperation], repair: bool) -> PatchState:
        """DOWNLOADING -> VERIFYING -> INSTALLING, then IDLE, REPAIRING or ERROR."""
        self._transition(PatchState.DOWNLOADING)
        self.session = PatchSession(
            protocol=self.protocol.name,
            kind=ArtifactKind.GAME,
            operations=operations,
            status=PatchState.DOWNLOADING,
            repair=repair,
        )
        with self._progress_lock:
            self._bytes_done = 0
            self._bytes_total = sum(op.size for op in operations if op.needs_transfer)
        self.store.save(self.session)
        self.store.create_update_cookie()
        self.logger.info(f"Session {self.session.session_id}: {len(operations)} operations, "
                         f"{utils.format_size(self._bytes_total)} to download")

        outcomes = self._download(operations)

        self._transition(PatchState.VERIFYING)
        self.failed_required, self.failed_optional = self._verify(operations, outcomes)

        self._transition(PatchState.INSTALLING)
        self._install(local, remote, outcomes)

        if self.failed_required:
            if not self._auto_repair_used:
                self._auto_repair_used = True
                self.logger.warning(f"Required files failed ({', '.join(self.failed_required)}); "
                                    f"starting a repair pass")
                self._transition(PatchState.REPAIRING)
                return self._repair()
            first = self.failed_required[0]
            cause = outcomes[first].error
            error_type = type(cause) if isinstance(cause, PatchError) else ChecksumMismatchError
            raise error_type(
                f"Required files could not be installed: {', '.join(self.failed_required)}"
                + (f" (last error: {cause})" if cause else ""),
                first
            )

        if self.failed_optional:
            self.logger.warning(f"Optional files could not be installed: {', '.join(self.failed_optional)}")
        self._transition(PatchState.IDLE)
        return self._state

    def _download(self, operations: List[FileOperation]) -> Dict[str, OperationOutcome]:
        downloader = PatchDownloader(
            self.protocol,
            self.config.game_path,
            retry_budget=self.config.retry_budget,
            max_workers=self.config.concurrency,
            kind=ArtifactKind.GAME,
            backoff_base=self.config.backoff_base,
            backoff_max=self.config.backoff_max,
        )
        self._downloader = downloader
        if self._cancel_event.is_set():
            downloader.cancel()

        outcomes: Dict[str, OperationOutcome] = {}
        try:
            for outcome in downloader.execute(operations, self.session, self._on_progress):
                outcomes[outcome.path] = outcome
                if outcome.succeeded:
                    self.session.completed.add(outcome.path)
                elif outcome.status == OutcomeStatus.FAILED:
                    self.session.failed.add(outcome.path)
                self.store.save(self.session)
                self._emit(current_operation=outcome.path, error_detail=outcome.error_detail)
        finally:
            self._downloader = None

        fatal = [o for o in outcomes.values() if o.fatal]
        if fatal:
            raise fatal[0].error
        if downloader.cancelled:
            raise PatchCancelledError("Patch session cancelled")
        return outcomes

    def _verify(self, operations: List[FileOperation],
                outcomes: Dict[str, OperationOutcome]) -> Tuple[List[str], List[str]]:
        """
        Check installed transfers and classify failures.

        Returns:
            (failed required paths, failed optional paths)
        """
        failed_required: List[str] = []
        failed_optional: List[str] = []

        for op in operations:
            outcome = outcomes.get(op.path)
            ok = outcome is not None and outcome.succeeded
            if ok and op.needs_transfer:
                target = utils.safe_join(self.config.game_path, op.path)
                if not os.path.isfile(target) or os.path.getsize(target) != op.size:
                    self.logger.error(f"Installed file missing or truncated: {op.path}")
                    outcome.status = OutcomeStatus.FAILED
                    outcome.error = ChecksumMismatchError(f"Installed file does not match: {op.path}", op.path)
                    self.session.completed.discard(op.path)
                    self.session.failed.add(op.path)
                    ok = False
            if not ok:
                (failed_required if op.required else failed_optional).append(op.path)

        return failed_required, failed_optional

    def _install(self, local: Manifest, remote: Manifest,
                 outcomes: Dict[str, OperationOutcome]) -> None:
        """Record what is now on disk, and the version when nothing failed."""
        failed = {path for path, outcome in outcomes.items() if not outcome.succeeded}

        installed = Manifest(kind=ArtifactKind.GAME)
        for entry in remote:
            if entry.path not in failed:
                installed.add(entry)
            elif entry.path in local:
                # The previous copy is still on disk
                installed.add(local.get(entry.path))
        for entry in local:
            if entry.path not in remote and entry.path in failed:
                installed.add(entry)

        try:
            installed.save(self.config.game_manifest_path)
            if not failed and self.remote_version is not None and not self.remote_version.is_unknown:
                write_local_version(self.config.game_version_path, self.remote_version)
            self.store.create_install_cookie()
            if not failed:
                self.store.remove_update_cookie()
            self.store.clear()
        except OSError as e:
            raise storage_error(e, self.config.install_root)

        self.logger.info(f"Installed {len(installed)} files"
                         + (f", {len(failed)} failed" if failed else ""))

    # ========== Launcher self-update ==========

    def check_launcher_update(self) -> VersionComparison:
        """
        Compare the running launcher version with the published one.

        Raises:
            UnreachableError, NotFoundError
        """
        local = parse_version(self.config.launcher_version)
        remote = self.protocol.resolve_remote_version(ArtifactKind.LAUNCHER)
        comparison = compare_versions(local, remote)
        self.logger.info(f"Launcher version: local {local}, remote {remote} ({comparison.value})")
        return comparison

    def download_launcher_update(self, target: Optional[str] = None) -> str:
        """
        Stage the published launcher files in a directory.

        Files already staged with the right digest are not fetched again.

        Args:
            target: Staging directory (default: <tempdir>/launchpad/launcher)

        Returns:
            Path to the staging directory

        Raises:
            PatchError: if the manifest cannot be fetched or any file failed
        """
        target = target or os.path.join(tempfile.gettempdir(), "launchpad", "launcher")
        remote = self.protocol.fetch_remote_manifest(ArtifactKind.LAUNCHER)
        try:
            utils.ensure_directory(target)
            staged = Manifest.from_directory(target, paths=remote.paths, kind=ArtifactKind.LAUNCHER,
                                             reference=remote)
        except OSError as e:
            raise storage_error(e, target)

        operations = compute_operations(staged, remote)
        self.logger.info(f"Staging launcher update in {target}: {len(operations)} files to fetch")

        downloader = PatchDownloader(
            self.protocol,
            target,
            retry_budget=self.config.retry_budget,
            max_workers=self.config.concurrency,
            kind=ArtifactKind.LAUNCHER,
            backoff_base=self.config.backoff_base,
            backoff_max=self.config.backoff_max,
        )
        failures = [o for o in downloader.execute(operations) if not o.succeeded]
        if failures:
            first = failures[0]
            if isinstance(first.error, PatchError):
                raise first.error
            raise PatchCancelledError(f"Launcher update incomplete: {first.path}", first.path)

        try:
            remote.save(self.config.launcher_manifest_path)
        except OSError as e:
            raise storage_error(e, self.config.launcher_manifest_path)
        return target
