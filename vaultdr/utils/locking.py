"""Exclusive run lock shared by backup and restore runs."""

import fcntl
import logging
import os
from datetime import datetime
from typing import Optional

from .errors import LockError, create_error_suggestions

logger = logging.getLogger(__name__)


class RunLock:
    """Non-blocking exclusive flock held for the duration of a run.

    The lock file records the holder's pid and operation so a refused caller
    can report who is running.
    """

    def __init__(self, path: str, operation: str):
        self.path = path
        self.operation = operation
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> "RunLock":
        """
        Take the lock or fail fast.

        Raises:
            LockError: If another run already holds the lock
        """
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.seek(0)
            holder = handle.read().strip() or "unknown process"
            handle.close()
            raise LockError(
                f"Another vaultdr run is already running ({holder})",
                details=f"Lock file: {self.path}",
                suggestions=create_error_suggestions("already_running"),
            )

        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()} operation={self.operation} since={datetime.now().isoformat()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Acquired run lock %s for %s", self.path, self.operation)
        return self

    def release(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            handle.seek(0)
            handle.truncate()
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
        logger.debug("Released run lock %s", self.path)

    def __enter__(self) -> "RunLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.release()
        return None
