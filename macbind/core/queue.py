# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Grant event queue.

The portal hook appends one CSV line per successful voucher login; the sync
run drains a bounded batch and later commits (truncates) the lines it
consumed. Locking on the file:

- append: exclusive flock for the single write
- drain:  shared, non-blocking flock; a busy queue skips this cycle
- commit: exclusive flock while the unconsumed tail is rewritten
"""

import fcntl
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

from .exceptions import QueueError
from .models import DecodeResult, GrantEvent, SkipReason, decode_grant_line

logger = logging.getLogger("macbind.queue")


def is_record_line(line: bytes) -> bool:
    """Blank lines and # comments are not queue records"""
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith(b"#")


def decode_queue_record(raw: bytes) -> DecodeResult:
    """Decode one raw queue line; bytes that are not UTF-8 skip the line"""
    try:
        line = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        return DecodeResult(
            raw.decode("utf-8", errors="replace"),
            skip=SkipReason.INVALID_ENCODING,
            detail=f"byte {e.start}",
        )
    return decode_grant_line(line)


@dataclass
class DrainResult:
    """One bounded batch taken from the queue"""
    events: List[GrantEvent] = field(default_factory=list)
    skipped: List[DecodeResult] = field(default_factory=list)
    lines_read: int = 0
    total_pending: int = 0
    busy: bool = False

    @property
    def remaining(self) -> int:
        """Records left behind for the next run"""
        return max(0, self.total_pending - self.lines_read)


class EventQueue(ABC):
    """Capability interface the engine depends on"""

    @abstractmethod
    def append(self, event: GrantEvent) -> None:
        """Add one event (safe under concurrent producers)"""

    @abstractmethod
    def append_many(self, events: List[GrantEvent]) -> None:
        """Add a batch of events in one locked write"""

    @abstractmethod
    def drain(self, max_n: int) -> DrainResult:
        """Read up to max_n records without removing them"""

    @abstractmethod
    def commit(self, n_consumed: int) -> None:
        """Remove the first n_consumed records"""

    @abstractmethod
    def pending_count(self) -> int:
        """Number of records currently queued"""


class FileEventQueue(EventQueue):
    """CSV queue file shared with the portal hook"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(self, event: GrantEvent) -> None:
        self.append_lines([event.to_line()])

    def append_many(self, events: List[GrantEvent]) -> None:
        self.append_lines([event.to_line() for event in events])

    def append_lines(self, lines: List[str]) -> None:
        """Append pre-encoded records in one locked write"""
        payload = "".join(line if line.endswith("\n") else line + "\n" for line in lines)
        if not payload:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    f.write(payload)
                    f.flush()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise QueueError(f"Cannot append to queue: {e}", path=str(self.path), cause=e)

    def drain(self, max_n: int) -> DrainResult:
        result = DrainResult()
        if not self.path.exists():
            return result

        try:
            records, busy = self._read_records_shared()
        except OSError as e:
            raise QueueError(f"Cannot read queue: {e}", path=str(self.path), cause=e)

        if busy:
            logger.debug("Queue file busy (writer active), will retry next cycle")
            result.busy = True
            return result

        result.total_pending = len(records)
        batch = records[:max(0, max_n)]
        result.lines_read = len(batch)

        for raw in batch:
            decoded = decode_queue_record(raw)
            if decoded.ok:
                result.events.append(decoded.event)
            else:
                result.skipped.append(decoded)
                logger.warning(
                    f"Skipping queue line ({decoded.skip.value}"
                    f"{': ' + decoded.detail if decoded.detail else ''}): {decoded.line}"
                )

        if result.remaining:
            logger.info(
                f"Queue backlog: {result.remaining} line(s) left for the next run"
            )
        return result

    def commit(self, n_consumed: int) -> None:
        if n_consumed <= 0 or not self.path.exists():
            return

        try:
            with open(self.path, "r+b") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    remaining, dropped = self._split_after(f.readlines(), n_consumed)
                    f.seek(0)
                    f.truncate()
                    f.write(b"".join(remaining))
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise QueueError(f"Cannot truncate queue: {e}", path=str(self.path), cause=e)

        logger.debug(f"Committed {dropped} queue record(s), {len(remaining)} left")

    def pending_count(self) -> int:
        if not self.path.exists():
            return 0
        with open(self.path, "rb") as f:
            return sum(1 for line in f if is_record_line(line))

    # =========================================================================
    # Internals
    # =========================================================================

    def _read_records_shared(self) -> Tuple[List[bytes], bool]:
        with open(self.path, "rb") as f:
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
            except BlockingIOError:
                return [], True
            try:
                return [line.strip() for line in f if is_record_line(line)], False
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    @staticmethod
    def _split_after(lines: List[bytes], n_consumed: int) -> Tuple[List[bytes], int]:
        """Drop the first n_consumed records, keep every later record line"""
        kept: List[bytes] = []
        seen = 0
        for line in lines:
            if not is_record_line(line):
                continue
            seen += 1
            if seen > n_consumed:
                kept.append(line if line.endswith(b"\n") else line + b"\n")
        return kept, min(seen, n_consumed)
