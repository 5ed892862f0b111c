"""Inter-process operation lock under ``<home>/.lock``."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from typing import Optional

from devnet import paths
from devnet.errors import IOFailure, Timeout
from devnet.fileio import read_json

logger = logging.getLogger(__name__)

LOCK_FILE = "lock.json"
RETRY_INTERVAL_S = 0.1


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class FileLock:
    """
    Exclusive lock backed by a JSON file created with O_EXCL.

    The file records the holder's pid, hostname, purpose and acquisition time.
    A lock left behind by a dead process on this host is treated as stale and
    removed. The lock is re-entrant within one process so that nested
    operations (destroy -> stop) do not deadlock.
    """

    def __init__(self, home_dir: os.PathLike, timeout_s: float = 30.0) -> None:
        self.path = paths.lock_dir(home_dir) / LOCK_FILE
        self.timeout_s = timeout_s
        self._local = threading.RLock()
        self._depth = 0

    def _try_create(self, purpose: str) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({
                "pid": os.getpid(),
                "hostname": socket.gethostname(),
                "purpose": purpose,
                "acquired_at": time.time(),
            }, f)
        return True

    def _clear_if_stale(self) -> None:
        try:
            info = read_json(self.path)
        except FileNotFoundError:
            return
        except (OSError, ValueError):
            # half-written by a holder that is still starting up
            return
        if info.get("hostname") != socket.gethostname():
            return
        pid = int(info.get("pid", 0))
        if not _pid_alive(pid):
            logger.warning(f"Removing stale lock held by dead pid {pid} ({info.get('purpose')})")
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass

    def acquire(self, purpose: str = "operation", timeout_s: Optional[float] = None) -> None:
        if not self._local.acquire(timeout=self.timeout_s if timeout_s is None else timeout_s):
            raise Timeout(f"timed out waiting for devnet lock ({purpose})")
        if self._depth > 0:
            self._depth += 1
            return
        deadline = time.monotonic() + (self.timeout_s if timeout_s is None else timeout_s)
        try:
            while True:
                try:
                    if self._try_create(purpose):
                        break
                except OSError as e:
                    raise IOFailure(f"failed to create lock file {self.path}: {e}") from e
                self._clear_if_stale()
                if time.monotonic() >= deadline:
                    holder = self.holder()
                    raise Timeout(f"timed out waiting for devnet lock held by {holder}")
                time.sleep(RETRY_INTERVAL_S)
        except BaseException:
            self._local.release()
            raise
        self._depth = 1
        logger.debug(f"Acquired devnet lock for {purpose}")

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                logger.warning(f"Lock file {self.path} disappeared before release")
        self._local.release()

    def holder(self) -> Optional[dict]:
        try:
            return read_json(self.path)
        except (OSError, ValueError):
            return None

    def held(self, purpose: str = "operation") -> "_Held":
        return _Held(self, purpose)


class _Held:
    def __init__(self, lock: FileLock, purpose: str) -> None:
        self._lock = lock
        self._purpose = purpose

    def __enter__(self) -> FileLock:
        self._lock.acquire(self._purpose)
        return self._lock

    def __exit__(self, *exc) -> None:
        self._lock.release()
