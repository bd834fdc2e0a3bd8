"""
Exclusive lock over an installation root.

Only one transaction may modify an installation root at a time. The lock is an
OS-level advisory lock on a file in the root, so it is released automatically
if the process dies.
"""

import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator

from workload_py.errors import InstallationLockError
from workload_py.platform import lock_file_name

logger = logging.getLogger("workload.lock")


def _try_lock(handle: IO[str]) -> bool:
    if sys.platform == "win32":
        import msvcrt

        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock(handle: IO[str]) -> None:
    if sys.platform == "win32":
        import msvcrt

        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def installation_lock(
    root: Path, timeout: float = 30.0, poll_interval: float = 0.2
) -> Iterator[Path]:
    """
    Hold the exclusive lock for *root* for the duration of the ``with`` block.

    Args:
        root: Installation root to lock
        timeout: Seconds to wait for another holder before giving up
        poll_interval: Seconds between attempts

    Raises:
        InstallationLockError: the lock could not be acquired within *timeout*
    """
    root.mkdir(parents=True, exist_ok=True)
    lock_path = root / lock_file_name()
    handle = open(lock_path, "a+")
    acquired = False
    try:
        deadline = time.monotonic() + timeout
        while True:
            if _try_lock(handle):
                acquired = True
                break
            if time.monotonic() >= deadline:
                raise InstallationLockError(
                    f"Another workload operation holds {lock_path}",
                    f"gave up after {timeout:g}s",
                )
            logger.debug(f"Waiting for installation lock {lock_path}")
            time.sleep(poll_interval)

        logger.debug(f"Acquired installation lock {lock_path}")
        yield lock_path
    finally:
        if acquired:
            _unlock(handle)
            logger.debug(f"Released installation lock {lock_path}")
        handle.close()
