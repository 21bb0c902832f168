"""Per-instance restore lock, so two runs never restore onto the same server at once."""

import fcntl
import json
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


def lockfile_for_instance(lock_dir, instance_name: str) -> Path:
    """Lock file path for an instance; server names may contain \\ , : and ,"""
    safe_name = re.sub(r'[^A-Za-z0-9_.-]+', '_', instance_name)
    return Path(lock_dir) / f'restore-{safe_name}.lock'


class InstanceLock:
    """
    Exclusive flock on an instance's lock file, held for the whole run.

    The holder writes its PID, the instance name and its start time into the
    file. A second run reads them back and names the holder in its error.
    The file is opened without truncation so a blocked run never erases them.
    """

    def __init__(self, lockfile_path, instance_name: str):
        self.lockfile_path = Path(lockfile_path)
        self.instance_name = instance_name
        self._fd: Optional[int] = None

    def holder(self) -> Optional[Dict[str, Any]]:
        """Details written by the current holder, or None when unreadable."""
        try:
            return json.loads(self.lockfile_path.read_text(encoding='utf-8'))
        except (OSError, ValueError):
            return None

    def __enter__(self):
        try:
            fd = os.open(self.lockfile_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise RuntimeError(f"Failed to acquire lock for {self.instance_name}: {e}")

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise RuntimeError(self._busy_message())
        except OSError as e:
            os.close(fd)
            raise RuntimeError(f"Failed to acquire lock for {self.instance_name}: {e}")

        record = json.dumps({
            'pid': os.getpid(),
            'instance': self.instance_name,
            'started': datetime.now().isoformat(timespec='seconds'),
        })
        os.ftruncate(fd, 0)
        os.write(fd, record.encode('utf-8'))
        os.fsync(fd)
        self._fd = fd
        return self

    def _busy_message(self) -> str:
        holder = self.holder()
        if not holder:
            return f"Another restore is already running against {self.instance_name} ({self.lockfile_path})"
        return (
            f"Another restore is already running against {holder.get('instance', self.instance_name)} "
            f"(pid {holder.get('pid', 'unknown')}, started {holder.get('started', 'unknown')})"
        )

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._fd is None:
            return
        # Unlink while still holding the lock so a waiting run cannot lock a doomed file
        try:
            self.lockfile_path.unlink()
        except OSError:
            pass
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
