"""
Patch session persistence

Keeps the resumable-session marker, the per-installation session lock and
the install/update cookies in the installation root.
"""

import json
import logging
import os
import time
from typing import Optional

import psutil

from launchpad_dl import constants, utils
from launchpad_dl.errors import SessionAlreadyActiveError, storage_error
from launchpad_dl.models import PatchSession

logger = logging.getLogger("launchpad_dl.session")


class SessionLock:
    """
    Exclusive lock on an installation root.

    The lock file holds the owner's PID; a lock left behind by a process
    that no longer exists is reclaimed.
    """

    def __init__(self, lock_path: str):
        self.path = lock_path
        self._acquired = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    def acquire(self) -> "SessionLock":
        """
        Take the lock.

        Raises:
            SessionAlreadyActiveError: if a live session holds the lock
        """
        parent = os.path.dirname(self.path)
        try:
            if parent:
                utils.ensure_directory(parent)
            # Exclusive create: exactly one concurrent caller wins
            with open(self.path, "x", encoding="utf-8") as f:
                f.write(f"{os.getpid()}\n{time.time()}\n")
        except FileExistsError:
            if self._is_stale():
                logger.warning(f"Reclaiming stale session lock {self.path}")
                self._remove()
                return self.acquire()
            raise SessionAlreadyActiveError(
                f"Another patch session is active for this installation ({self.path})"
            )
        except OSError as e:
            raise storage_error(e, self.path)

        self._acquired = True
        return self

    def release(self) -> None:
        if not self._acquired:
            return
        self._acquired = False
        self._remove()

    def _remove(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Session lock cleanup error (non-critical): {e}")

    def _is_stale(self) -> bool:
        """Check if the lock file belongs to a dead process."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                first_line = f.readline().strip()
        except FileNotFoundError:
            return True
        except OSError:
            return False

        try:
            pid = int(first_line)
        except ValueError:
            # Being written right now by another acquirer
            return False

        if pid == os.getpid():
            return False
        return not psutil.pid_exists(pid)

    def __enter__(self) -> "SessionLock":
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class SessionStore:
    """
    Files that describe patch progress for one installation root.

    Attributes:
        root: Installation root
        session_path: Resumable-session marker (JSON PatchSession)
        lock_path: Live session lock
        install_cookie_path: Present once a first install completed
        update_cookie_path: Present while an update is in progress
    """

    def __init__(self, root: str):
        self.root = root
        self.session_path = os.path.join(root, constants.SESSION_FILE)
        self.lock_path = os.path.join(root, constants.SESSION_LOCK_FILE)
        self.install_cookie_path = os.path.join(root, constants.INSTALL_COOKIE)
        self.update_cookie_path = os.path.join(root, constants.UPDATE_COOKIE)

    def lock(self) -> SessionLock:
        return SessionLock(self.lock_path)

    def is_locked(self) -> bool:
        return os.path.exists(self.lock_path)

    # ========== Session marker ==========

    def save(self, session: PatchSession) -> None:
        """Persist the session so an interrupted run can be detected."""
        try:
            utils.write_text_atomic(self.session_path, json.dumps(session.to_dict(), indent=2))
        except OSError as e:
            raise storage_error(e, self.session_path)

    def load(self) -> Optional[PatchSession]:
        """
        Load the persisted session.

        Returns:
            The interrupted session, or None when there is none or it is unreadable
        """
        if not os.path.exists(self.session_path):
            return None
        try:
            with open(self.session_path, "r", encoding="utf-8") as f:
                return PatchSession.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            # An unreadable marker still means the last run did not finish
            logger.warning(f"Session marker {self.session_path} is unreadable: {e}")
            return None

    def has_interrupted_session(self) -> bool:
        return os.path.exists(self.session_path)

    def clear(self) -> None:
        for path in (self.session_path, self.session_path + constants.TEMP_SUFFIX):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise storage_error(e, path)

    # ========== Cookies ==========

    def _touch(self, path: str) -> str:
        try:
            utils.ensure_directory(self.root)
            with open(path, "a", encoding="utf-8"):
                pass
        except OSError as e:
            raise storage_error(e, path)
        return path

    def _remove_cookie(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise storage_error(e, path)

    def has_install_cookie(self) -> bool:
        """False on the very first run against this installation root."""
        return os.path.exists(self.install_cookie_path)

    def create_install_cookie(self) -> str:
        return self._touch(self.install_cookie_path)

    def has_update_cookie(self) -> bool:
        return os.path.exists(self.update_cookie_path)

    def create_update_cookie(self) -> str:
        return self._touch(self.update_cookie_path)

    def remove_update_cookie(self) -> None:
        self._remove_cookie(self.update_cookie_path)
