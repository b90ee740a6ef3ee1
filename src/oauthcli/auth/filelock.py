"""Advisory cross-process lock for the token file.

A sibling file ``<token file>.lock`` acts as the mutex: whoever manages to
create it with ``O_CREAT | O_EXCL`` holds the lock, and releasing means
deleting it. The holder's PID is written into the file for humans only; it
is never checked.

This only coordinates cooperating oauthcli processes. Any other program can
still write the token file directly.

Staleness is judged by the lock file's modification time. A lock older than
:data:`STALE_AFTER` seconds is presumed abandoned by a crashed holder and is
removed. This is a clock-based heuristic, not a liveness check: clock skew or
a legitimate holder stalled for longer than the threshold can both lead to
two processes inside the critical section.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Optional, Union

from oauthcli.exceptions import LockTimeoutError, StorageError

logger = logging.getLogger(__name__)

STALE_AFTER = 30.0
"""Seconds after which an existing lock file is treated as abandoned."""

RETRY_DELAY = 0.1
"""Seconds to sleep between acquisition attempts while the lock is held."""

MAX_ATTEMPTS = 50
"""Acquisition attempts before giving up with :class:`LockTimeoutError`."""


class FileLock:
    """Exclusive advisory lock guarding *target_path*.

    Args:
        target_path: The file being protected. The lock lives at
            ``<target_path>.lock``.
        stale_after: Age in seconds after which a lock is reclaimed.
        retry_delay: Sleep between attempts while the lock is busy.
        max_attempts: Attempts before :class:`LockTimeoutError`.

    Example::

        with FileLock("tokens.json"):
            ...  # read-modify-write tokens.json
    """

    def __init__(
        self,
        target_path: Union[str, Path],
        stale_after: float = STALE_AFTER,
        retry_delay: float = RETRY_DELAY,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self._lock_path = Path(f"{target_path}.lock")
        self._stale_after = stale_after
        self._retry_delay = retry_delay
        self._max_attempts = max_attempts
        self._fd: Optional[int] = None

    @property
    def path(self) -> Path:
        """The lock file's path."""
        return self._lock_path

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Block until the lock is held, reclaiming stale locks along the way.

        Raises:
            LockTimeoutError: If the lock is still busy after all attempts.
            StorageError: If the lock file cannot be created for any reason
                other than already existing, or a stale lock cannot be removed.
        """
        if self._fd is not None:
            raise StorageError(f"Lock {self._lock_path} is already held by this process")

        for _ in range(self._max_attempts):
            try:
                fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if self._is_stale():
                    logger.warning("Removing stale lock file %s", self._lock_path)
                    try:
                        os.remove(self._lock_path)
                    except FileNotFoundError:
                        pass
                    except OSError as exc:
                        raise StorageError(
                            f"Failed to remove stale lock file {self._lock_path}: {exc}"
                        ) from exc
                    continue
                logger.debug("Lock %s busy, retrying in %ss", self._lock_path, self._retry_delay)
                time.sleep(self._retry_delay)
                continue
            except OSError as exc:
                raise StorageError(f"Failed to acquire file lock {self._lock_path}: {exc}") from exc

            os.write(fd, str(os.getpid()).encode("ascii"))
            self._fd = fd
            return

        raise LockTimeoutError(
            f"Timeout waiting for file lock {self._lock_path} after "
            f"{self._max_attempts * self._retry_delay:.1f}s"
        )

    def release(self) -> None:
        """Close and delete the lock file. Safe to call when not held."""
        if self._fd is None:
            return
        os.close(self._fd)
        self._fd = None
        try:
            os.remove(self._lock_path)
        except FileNotFoundError:
            # Reclaimed by another process that judged us stale.
            logger.warning("Lock file %s vanished before release", self._lock_path)

    def _is_stale(self) -> bool:
        try:
            mtime = self._lock_path.stat().st_mtime
        except FileNotFoundError:
            # Released between our open() and stat(); just retry.
            return False
        return time.time() - mtime > self._stale_after

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()
