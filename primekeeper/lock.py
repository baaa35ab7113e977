"""Single-writer lock for a progress store.

Two sweepers writing the same store could both see a key as unseen and both
submit the action, so the writer holds an exclusive flock for the whole run.
"""
from __future__ import annotations

import fcntl
import logging
import os
import sys
import time
from typing import Dict, Optional

from .errors import ProgressStoreError, StoreLocked

logger = logging.getLogger(__name__)


class InstanceLock:
    def __init__(self, lock_file: str, timeout: float = 0.0):
        self.lock_file = lock_file
        self.timeout = timeout
        self.lock_fd = None
        self.locked = False

    def acquire(self):
        try:
            os.makedirs(os.path.dirname(self.lock_file) or ".", exist_ok=True)
            fd = open(self.lock_file, "a+")
        except OSError as e:
            raise ProgressStoreError(f"cannot open lock file {self.lock_file}: {e}") from e
        deadline = time.time() + self.timeout
        while True:
            try:
                fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError:
                if time.time() >= deadline:
                    holder = self.holder_info()
                    fd.close()
                    who = f" (held by pid {holder.get('PID')})" if holder and holder.get("PID") else ""
                    raise StoreLocked(f"{self.lock_file} is locked by another keeper{who}")
                time.sleep(0.1)

        fd.seek(0)
        fd.truncate()
        fd.write(f"PID: {os.getpid()}\n")
        fd.write(f"START: {int(time.time())}\n")
        fd.write(f"HOST: {os.uname().nodename}\n")
        fd.write(f"CMD: {' '.join(sys.argv)}\n")
        fd.flush()
        self.lock_fd = fd
        self.locked = True
        logger.debug(f"[lock] acquired {self.lock_file} (pid {os.getpid()})")
        return self

    def release(self):
        if not self.locked or self.lock_fd is None:
            return
        try:
            self.lock_fd.seek(0)
            self.lock_fd.truncate()
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
        finally:
            self.lock_fd.close()
            self.lock_fd = None
            self.locked = False
        logger.debug(f"[lock] released {self.lock_file}")

    def holder_info(self) -> Optional[Dict[str, str]]:
        if not os.path.exists(self.lock_file):
            return None
        info = {}
        with open(self.lock_file, "r") as f:
            for line in f:
                if ":" in line:
                    k, v = line.split(":", 1)
                    info[k.strip()] = v.strip()
        return info

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
