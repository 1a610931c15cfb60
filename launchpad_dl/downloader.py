"""
Download coordinator
Executes file operations through a protocol backend with a bounded worker
pool, per-file retry budgets, integrity checks and atomic installs
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, Iterator, List, Optional

from launchpad_dl import constants, utils
from launchpad_dl.errors import (
    ChecksumMismatchError, LocalStorageError, PatchCancelledError, PatchError,
    UnreachableError, storage_error,
)
from launchpad_dl.models import (
    ArtifactKind, FileOperation, OperationOutcome, OutcomeStatus, PatchSession,
)
from launchpad_dl.protocols.base import PatchProtocol

ProgressCallback = Callable[[str, int], None]


class PatchDownloader:
    """
    Runs the operations of a patch session against one installation directory.

    Transfers run in parallel on a ThreadPoolExecutor; removals run once every
    transfer has finished. Each operation yields exactly one OperationOutcome.

    Files are written to `<target>.part` first and only moved over the target
    after the size and digest match the manifest entry.
    """

    def __init__(self, protocol: PatchProtocol, install_root: str,
                 retry_budget: int = constants.DEFAULT_RETRIES,
                 max_workers: int = constants.DEFAULT_CONCURRENCY,
                 kind: ArtifactKind = ArtifactKind.GAME,
                 backoff_base: float = constants.DEFAULT_BACKOFF_BASE,
                 backoff_max: float = constants.DEFAULT_BACKOFF_MAX):
        """
        Initialize the coordinator.

        Args:
            protocol: Backend the files are fetched from
            install_root: Directory the manifest paths are relative to
            retry_budget: Failed attempts allowed per file (clamped to at least 1)
            max_workers: Maximum number of concurrent transfers
            kind: Artifact set being patched (selects the remote directory)
            backoff_base: Delay before the first retry, in seconds
            backoff_max: Upper bound of the retry delay, in seconds
        """
        self.protocol = protocol
        self.install_root = install_root
        self.retry_budget = max(1, int(retry_budget))
        self.max_workers = max(1, int(max_workers))
        self.kind = kind
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.logger = logging.getLogger("launchpad_dl.downloader")

        self._cancel_event = threading.Event()
        self._abort_event = threading.Event()
        self._retry_lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def aborted(self) -> bool:
        """True once a local storage failure stopped the remaining work."""
        return self._abort_event.is_set()

    def cancel(self) -> None:
        """
        Stop the running execution.

        Workers stop at the next chunk and discard their partial files;
        operations that have not started yet finish as CANCELLED.
        """
        self.logger.info("Cancellation requested")
        self._cancel_event.set()

    def _should_stop(self) -> bool:
        return self._cancel_event.is_set() or self._abort_event.is_set()

    def execute(self, operations: Iterable[FileOperation],
                session: Optional[PatchSession] = None,
                progress_callback: Optional[ProgressCallback] = None) -> Iterator[OperationOutcome]:
        """
        Execute file operations and yield their outcomes as they finish.

        Operations whose path is already in `session.completed` are skipped.

        Args:
            operations: Ordered operations from the diff
            session: Session holding the retry counters (created if omitted)
            progress_callback: Optional callback(path, delta_bytes), called from
                worker threads

        Yields:
            One OperationOutcome per executed operation, in completion order
        """
        operations = list(operations)
        if session is None:
            session = PatchSession(protocol=self.protocol.name, kind=self.kind, operations=operations)

        pending = [op for op in operations if op.path not in session.completed]
        transfers = [op for op in pending if op.needs_transfer]
        removals = [op for op in pending if not op.needs_transfer]

        skipped = len(operations) - len(pending)
        if skipped:
            self.logger.info(f"Skipping {skipped} operations completed by a previous run")
        self.logger.info(f"Executing {len(transfers)} transfers and {len(removals)} removals "
                         f"with {self.max_workers} workers")

        if transfers:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                future_to_op = {
                    executor.submit(self._run_transfer, op, session, progress_callback): op
                    for op in transfers
                }
                for future in as_completed(future_to_op):
                    yield future.result()

        # Nothing is deleted before every transfer reached a terminal outcome
        for op in removals:
            yield self._run_remove(op)

    # ========== Transfers ==========

    def _record_failure(self, session: PatchSession, path: str) -> int:
        with self._retry_lock:
            used = session.retries_used.get(path, 0) + 1
            session.retries_used[path] = used
            return used

    def _retries_used(self, session: PatchSession, path: str) -> int:
        with self._retry_lock:
            return session.retries_used.get(path, 0)

    def _backoff_delay(self, failures: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** (failures - 1)))

    def _run_transfer(self, op: FileOperation, session: PatchSession,
                      progress_callback: Optional[ProgressCallback]) -> OperationOutcome:
        """Run one Add/Update until it succeeds or its retry budget is spent."""
        attempts = 0
        transferred = 0
        last_error: Optional[Exception] = None

        while True:
            if self._should_stop():
                return self._stopped_outcome(op, attempts, transferred)

            if self._retries_used(session, op.path) >= self.retry_budget:
                self.logger.error(f"Giving up on {op.path} after {attempts} attempts: {last_error}")
                return OperationOutcome(op, OutcomeStatus.FAILED, attempts, transferred, last_error)

            attempts += 1
            received = [0]
            try:
                self._transfer(op, progress_callback, received)
                transferred += received[0]
                self.logger.debug(f"Installed {op.path} ({op.size:,} bytes)")
                return OperationOutcome(op, OutcomeStatus.SUCCEEDED, attempts, transferred)

            except PatchCancelledError:
                transferred += received[0]
                return self._stopped_outcome(op, attempts, transferred)

            except LocalStorageError as e:
                # The installation itself is unusable; stop everything
                transferred += received[0]
                self._record_failure(session, op.path)
                self._abort_event.set()
                self.logger.error(f"Local storage failure on {op.path}: {e}")
                return OperationOutcome(op, OutcomeStatus.FAILED, attempts, transferred, e)

            except PatchError as e:
                transferred += received[0]
                last_error = e

            except Exception as e:
                # Backends are expected to translate their errors; treat leaks as transport failures
                transferred += received[0]
                last_error = UnreachableError(f"Unexpected transfer error for {op.path}: {e}", op.path)

            failures = self._record_failure(session, op.path)
            if not getattr(last_error, "retryable", False):
                self.logger.error(f"Failed {op.path}: {last_error}")
                return OperationOutcome(op, OutcomeStatus.FAILED, attempts, transferred, last_error)

            if failures >= self.retry_budget:
                self.logger.error(f"Giving up on {op.path} after {attempts} attempts: {last_error}")
                return OperationOutcome(op, OutcomeStatus.FAILED, attempts, transferred, last_error)

            delay = self._backoff_delay(failures)
            self.logger.warning(f"Attempt {attempts} for {op.path} failed ({last_error}), "
                                f"retrying in {delay:.1f}s")
            if self._cancel_event.wait(delay):
                return self._stopped_outcome(op, attempts, transferred)

    def _stopped_outcome(self, op: FileOperation, attempts: int, transferred: int) -> OperationOutcome:
        if self._abort_event.is_set() and not self._cancel_event.is_set():
            error = PatchCancelledError("Aborted after a local storage failure", op.path)
        else:
            error = PatchCancelledError("Cancelled", op.path)
        return OperationOutcome(op, OutcomeStatus.CANCELLED, attempts, transferred, error)

    def _transfer(self, op: FileOperation, progress_callback: Optional[ProgressCallback],
                  received: List[int]) -> None:
        """
        One attempt: stream into the temp file, verify, then move into place.

        Raises:
            PatchError subclasses; PatchCancelledError when stopped mid-stream
        """
        entry = op.entry
        target = utils.safe_join(self.install_root, op.path)
        temp_path = target + constants.TEMP_SUFFIX

        try:
            utils.ensure_directory(os.path.dirname(target))
        except OSError as e:
            raise storage_error(e, target)

        offset = self._resume_offset(temp_path)
        if offset == entry.size and utils.verify_file_hash(temp_path, entry.hash):
            # A previous run finished the download but did not install it
            self.logger.debug(f"Reusing completed partial download of {op.path}")
            if progress_callback:
                progress_callback(op.path, offset)
            self._install(temp_path, target)
            return
        if offset >= entry.size:
            self._discard(temp_path)
            offset = 0

        with self.protocol.open_file_stream(op.path, offset, self.kind) as stream:
            if stream.total_size is not None and stream.total_size != entry.size:
                # The server is publishing a different file than the manifest describes
                self._discard(temp_path)
                raise ChecksumMismatchError(
                    f"Size mismatch for {op.path}: manifest says {entry.size}, "
                    f"server reports {stream.total_size}", op.path
                )
            offset = stream.offset
            if offset:
                self.logger.debug(f"Resuming {op.path} at {offset:,} bytes")
                if progress_callback:
                    progress_callback(op.path, offset)

            try:
                handle = open(temp_path, "ab" if offset else "wb")
            except OSError as e:
                raise storage_error(e, temp_path)

            with handle:
                for chunk in stream:
                    if self._should_stop():
                        handle.close()
                        self._discard(temp_path)
                        raise PatchCancelledError("Cancelled", op.path)
                    try:
                        handle.write(chunk)
                    except OSError as e:
                        raise storage_error(e, temp_path)
                    received[0] += len(chunk)
                    if progress_callback:
                        progress_callback(op.path, len(chunk))

        actual_size = os.path.getsize(temp_path)
        if actual_size != entry.size:
            self._discard(temp_path)
            raise ChecksumMismatchError(
                f"Size mismatch for {op.path}: expected {entry.size}, got {actual_size}", op.path
            )

        actual_hash = utils.calculate_hash(temp_path, utils.algorithm_for_hash(entry.hash))
        if actual_hash != entry.hash:
            self._discard(temp_path)
            raise ChecksumMismatchError(
                f"Hash mismatch for {op.path}: expected {entry.hash}, got {actual_hash}", op.path
            )

        self._install(temp_path, target)

    def _resume_offset(self, temp_path: str) -> int:
        if not self.protocol.supports_resume:
            return 0
        try:
            return os.path.getsize(temp_path)
        except OSError:
            return 0

    @staticmethod
    def _install(temp_path: str, target: str) -> None:
        try:
            os.replace(temp_path, target)
        except OSError as e:
            raise storage_error(e, target)

    def _discard(self, temp_path: str) -> None:
        try:
            os.remove(temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove partial download {temp_path}: {e}")

    # ========== Removals ==========

    def _run_remove(self, op: FileOperation) -> OperationOutcome:
        """Delete a file that is no longer part of the release. Missing files are fine."""
        if self._should_stop():
            return self._stopped_outcome(op, 0, 0)

        try:
            target = utils.safe_join(self.install_root, op.path)
            for path in (target, target + constants.TEMP_SUFFIX):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    raise storage_error(e, path)
            self._prune_empty_dirs(os.path.dirname(target))
        except PatchError as e:
            if isinstance(e, LocalStorageError):
                self._abort_event.set()
            self.logger.error(f"Failed to remove {op.path}: {e}")
            return OperationOutcome(op, OutcomeStatus.FAILED, 1, 0, e)

        self.logger.debug(f"Removed {op.path}")
        return OperationOutcome(op, OutcomeStatus.SUCCEEDED, 1, 0)

    def _prune_empty_dirs(self, directory: str) -> None:
        root = os.path.abspath(self.install_root)
        directory = os.path.abspath(directory)
        while directory != root and directory.startswith(root + os.sep):
            try:
                os.rmdir(directory)
            except OSError:
                break
            directory = os.path.dirname(directory)
