# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Single-writer run lock.

The lock is a file created with O_CREAT | O_EXCL that records its holder:

    {"pid": 4242, "hostname": "fw1", "token": "...", "acquired_at": "..."}

acquire() never waits. If the file exists the holder is inspected: a holder
whose process is gone, or a record older than the staleness threshold, is
force-cleared and acquisition is retried once. Otherwise the caller gets None
and is expected to skip this cycle.
"""

import json
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .exceptions import LockError
from .models import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger("macbind.lock")


@dataclass(frozen=True)
class LockHolder:
    """Identity recorded in the lock file"""
    pid: int
    hostname: str
    token: str
    acquired_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "token": self.token,
            "acquired_at": format_timestamp(self.acquired_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockHolder":
        acquired_at = parse_timestamp(str(data.get("acquired_at", "")))
        if acquired_at is None:
            raise ValueError("lock record has no acquired_at")
        return cls(
            pid=int(data["pid"]),
            hostname=str(data.get("hostname", "")),
            token=str(data.get("token", "")),
            acquired_at=acquired_at,
        )


@dataclass(frozen=True)
class LockHandle:
    """Proof of lock ownership, passed back to release()"""
    path: Path
    holder: LockHolder


def pid_alive(pid: int) -> bool:
    """Check whether a process with this PID exists on this host"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


class LockManager:
    """Non-blocking exclusive lock guarding one reconciliation run"""

    def __init__(
        self,
        path: Path,
        stale_after_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
        is_alive: Callable[[int], bool] = pid_alive,
    ):
        self.path = Path(path)
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock
        self._is_alive = is_alive
        self._hostname = socket.gethostname()

    def acquire(self) -> Optional[LockHandle]:
        """
        Try to take the lock.

        Returns:
            LockHandle on success, None if another live run holds it

        Raises:
            LockError: If the lock file cannot be created at all
        """
        handle = self._try_create()
        if handle is not None:
            return handle

        if not self._clear_if_stale():
            return None

        # One retry; losing this race to another run is a normal busy result
        return self._try_create()

    def release(self, handle: LockHandle) -> None:
        """Release the lock if it is still ours"""
        current = self.holder()
        if current is not None and current.token != handle.holder.token:
            logger.warning(
                f"Lock {self.path} now belongs to pid {current.pid}, not releasing"
            )
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock {self.path} vanished before release")
        except OSError as e:
            logger.error(f"Cannot remove lock {self.path}: {e}")

    def holder(self) -> Optional[LockHolder]:
        """Return the recorded holder, or None if unlocked or unreadable"""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug(f"Cannot read lock {self.path}: {e}")
            return None
        try:
            return LockHolder.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            return None

    def self_test(self) -> bool:
        """Acquire and immediately release; False if busy"""
        handle = self.acquire()
        if handle is None:
            return False
        self.release(handle)
        return True

    # =========================================================================
    # Internals
    # =========================================================================

    def _try_create(self) -> Optional[LockHandle]:
        holder = LockHolder(
            pid=os.getpid(),
            hostname=self._hostname,
            token=uuid.uuid4().hex,
            acquired_at=self._clock(),
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockError(
                f"Cannot create lock directory: {e}", path=str(self.path), cause=e
            )
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        except OSError as e:
            raise LockError(
                f"Cannot create lock file: {e}", path=str(self.path), cause=e
            )

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(holder.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())

        logger.debug(f"Acquired lock {self.path} (pid {holder.pid})")
        return LockHandle(path=self.path, holder=holder)

    def _clear_if_stale(self) -> bool:
        """Remove the lock file if its holder is dead or too old"""
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            # Released between our create attempt and now
            return True
        except OSError as e:
            raise LockError(f"Cannot inspect lock: {e}", path=str(self.path), cause=e)

        holder = self.holder()
        now = self._clock()

        if holder is None:
            # Unreadable or half-written record: trust only its age
            age = now - datetime.fromtimestamp(stat.st_mtime, tz=now.tzinfo)
            if age < self.stale_after:
                return False
            reason = f"unreadable record, age {int(age.total_seconds())}s"
        elif holder.hostname == self._hostname and not self._is_alive(holder.pid):
            reason = f"holder pid {holder.pid} is not running"
        elif now - holder.acquired_at >= self.stale_after:
            reason = (
                f"held by pid {holder.pid} since "
                f"{format_timestamp(holder.acquired_at)}"
            )
        else:
            logger.debug(f"Lock {self.path} held by live pid {holder.pid}")
            return False

        return self._clear(holder, stat, reason)

    def _clear(self, judged: Optional[LockHolder], judged_stat: os.stat_result, reason: str) -> bool:
        """
        Move the judged record aside and delete it only if it is still the
        record that was judged stale. A lock retaken in the meantime by
        another run is put back.
        """
        aside = self.path.with_name(f"{self.path.name}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            # Cleared by another run; the create retry decides who wins
            return True
        except OSError as e:
            raise LockError(
                f"Cannot clear stale lock: {e}", path=str(self.path), cause=e
            )

        if self._same_record(aside, judged, judged_stat):
            logger.warning(f"Force-clearing stale lock {self.path}: {reason}")
            self._discard(aside)
            return True

        logger.info(f"Lock {self.path} was retaken during stale check, backing off")
        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.warning(
                f"Lock {self.path} recreated by a third run, "
                f"dropping displaced record {aside.name}"
            )
        except OSError as e:
            raise LockError(
                f"Cannot restore lock record: {e}", path=str(self.path), cause=e
            )
        finally:
            self._discard(aside)
        return False

    def _same_record(
        self, path: Path, judged: Optional[LockHolder], judged_stat: os.stat_result
    ) -> bool:
        if judged is not None:
            current = LockManager(path).holder()
            return current is not None and current.token == judged.token
        try:
            stat = path.stat()
        except OSError:
            return False
        return (stat.st_ino, stat.st_mtime_ns) == (judged_stat.st_ino, judged_stat.st_mtime_ns)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Cannot remove {path}: {e}")
