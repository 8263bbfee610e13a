# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Reconciliation Engine

One run, strictly in this order:

    lock -> disable flag -> control plane reachable -> drain queue
         -> load store -> merge -> adopt companions -> evict
         -> external sync -> save store -> commit queue -> unlock

The store is saved before the queue is committed, so a crash between the
two replays already-merged events on the next run (merging is idempotent).
A fatal error aborts before either is written.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .exceptions import ControlPlaneError, LockError, QueueError, StoreWriteError
from .lock import LockManager
from .models import normalize_mac, normalize_zone, utcnow
from .queue import DrainResult, EventQueue
from .store import BindingStore, Bindings, evict_expired, merge_events
from .sync import ExternalSync, SyncResult

logger = logging.getLogger("macbind.engine")


class RunStatus:
    COMPLETED = "completed"
    BUSY = "busy"
    DISABLED = "disabled"
    FAILED = "failed"


@dataclass
class RunSummary:
    """Counters of one engine run, printed as key=value lines"""
    operation: str = "sync"
    status: str = RunStatus.COMPLETED
    dry_run: bool = False
    events_processed: int = 0
    events_skipped: int = 0
    events_discarded: int = 0
    inserted: int = 0
    extended: int = 0
    adopted: int = 0
    evicted: int = 0
    active_count: int = 0
    added: int = 0
    removed: int = 0
    errors: int = 0
    queue_backlog: int = 0
    duration_ms: float = 0.0
    error_messages: List[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.errors else 0

    def fail(self, message: str) -> None:
        self.status = RunStatus.FAILED
        self.errors += 1
        self.error_messages.append(message)

    def to_lines(self) -> List[str]:
        data = asdict(self)
        data.pop("error_messages")
        return [f"{key}={value}" for key, value in data.items()]

    def log_line(self) -> str:
        return " ".join(self.to_lines())


class ReconciliationEngine:
    """Runs reconciliation, manual removal and purge under the run lock"""

    def __init__(
        self,
        lock: LockManager,
        queue: EventQueue,
        store: BindingStore,
        sync: ExternalSync,
        disable_flag: Optional[Path] = None,
        batch_size: int = 2000,
        adopt_companions: bool = True,
        companion_duration_minutes: int = 43200,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lock = lock
        self.queue = queue
        self.store = store
        self.sync = sync
        self.disable_flag = Path(disable_flag) if disable_flag else None
        self.batch_size = batch_size
        self.adopt_companions = adopt_companions
        self.companion_duration_minutes = companion_duration_minutes
        self._clock = clock

    # =========================================================================
    # Public operations
    # =========================================================================

    def run(self, dry_run: bool = False) -> RunSummary:
        """Full reconciliation: drain, merge, evict, sync, persist"""
        return self._locked("sync", dry_run, self._reconcile)

    def remove(
        self, mac: str, zone: Optional[str] = None, dry_run: bool = False
    ) -> RunSummary:
        """
        Drop the bindings of a MAC (optionally in one zone) and remove their
        pass-through entries.

        Raises:
            ValueError: If mac is not a valid MAC address
        """
        normalized = normalize_mac(mac)
        if not normalized:
            raise ValueError(f"Invalid MAC address: {mac!r}")
        zone_name = normalize_zone(zone) if zone else None

        def select(bindings: Bindings, now: datetime) -> Bindings:
            return {
                key: b
                for key, b in bindings.items()
                if b.mac == normalized and (zone_name is None or b.zone == zone_name)
            }

        return self._locked(
            "remove", dry_run, lambda s, d: self._remove_selected(s, d, select)
        )

    def purge(self, dry_run: bool = False) -> RunSummary:
        """Evict expired bindings without touching the queue"""
        return self._locked(
            "purge",
            dry_run,
            lambda s, d: self._remove_selected(
                s, d, lambda bindings, now: {k: b for k, b in bindings.items() if b.is_expired(now)}
            ),
        )

    # =========================================================================
    # Run scaffolding
    # =========================================================================

    def _locked(self, operation: str, dry_run: bool, body) -> RunSummary:
        summary = RunSummary(operation=operation, dry_run=dry_run)
        started = time.monotonic()

        try:
            handle = self.lock.acquire()
        except LockError as e:
            logger.error(f"Cannot take run lock: {e}")
            summary.fail(str(e))
            return self._finish(summary, started)

        if handle is None:
            holder = self.lock.holder()
            who = f" by pid {holder.pid}" if holder else ""
            logger.info(f"Another run holds the lock{who}, skipping")
            summary.status = RunStatus.BUSY
            return self._finish(summary, started)

        try:
            if self.disable_flag is not None and self.disable_flag.exists():
                logger.info(f"Sync disabled via flag file {self.disable_flag}, exiting")
                summary.status = RunStatus.DISABLED
            else:
                body(summary, dry_run)
        except (ControlPlaneError, StoreWriteError) as e:
            logger.error(f"{operation} aborted: {e}")
            summary.fail(str(e))
        finally:
            self.lock.release(handle)

        return self._finish(summary, started)

    def _finish(self, summary: RunSummary, started: float) -> RunSummary:
        summary.duration_ms = round((time.monotonic() - started) * 1000, 2)
        prefix = "[DRY-RUN] " if summary.dry_run else ""
        if summary.status == RunStatus.FAILED:
            logger.error(f"{prefix}Run failed: {summary.log_line()}")
        else:
            logger.info(f"{prefix}Run complete: {summary.log_line()}")
        return summary

    # =========================================================================
    # Operations under the lock
    # =========================================================================

    def _check_control_plane(self) -> None:
        """Raises ControlPlaneError if the zone list cannot be read"""
        zones = self.sync.control_plane.list_zones()
        logger.debug(f"Control plane reachable, zones: {', '.join(zones) or 'none'}")

    def _drain(self, summary: RunSummary) -> DrainResult:
        try:
            drained = self.queue.drain(self.batch_size)
        except QueueError as e:
            logger.error(f"Queue unreadable, continuing without new events: {e}")
            summary.errors += 1
            summary.error_messages.append(str(e))
            return DrainResult()

        if drained.busy:
            logger.info("Queue busy, no events consumed this cycle")
        summary.events_processed = drained.lines_read
        summary.events_skipped = len(drained.skipped)
        summary.queue_backlog = drained.remaining
        return drained

    def _reconcile(self, summary: RunSummary, dry_run: bool) -> None:
        self._check_control_plane()
        drained = self._drain(summary)

        now = self._clock()
        bindings = self.store.load()

        merged = merge_events(bindings, drained.events, now)
        summary.inserted = merged.inserted
        summary.extended = merged.extended
        summary.events_discarded = merged.discarded_expired

        if self.adopt_companions:
            summary.adopted = self.sync.adopt_companions(
                bindings, now, self.companion_duration_minutes
            )

        evicted = evict_expired(bindings, now)
        summary.evicted = len(evicted)

        result = self.sync.reconcile(bindings, evicted, dry_run=dry_run)
        self._apply_sync_result(summary, bindings, result)

        if dry_run:
            return

        self.store.save(bindings, now)
        if drained.lines_read:
            try:
                self.queue.commit(drained.lines_read)
            except QueueError as e:
                # Store already holds these events; replaying them is harmless
                logger.error(f"Cannot commit consumed queue lines: {e}")
                summary.errors += 1
                summary.error_messages.append(str(e))

    def _remove_selected(
        self,
        summary: RunSummary,
        dry_run: bool,
        select: Callable[[Bindings, datetime], Bindings],
    ) -> None:
        self._check_control_plane()
        now = self._clock()
        bindings = self.store.load()

        selected = select(bindings, now)
        for key in selected:
            bindings.pop(key)
            logger.info(f"{'[DRY-RUN] Would remove' if dry_run else 'Removing'} binding {key}")
        summary.evicted = len(selected)

        if not selected:
            logger.info(f"{summary.operation}: no matching bindings")

        result = self.sync.reconcile(bindings, selected, dry_run=dry_run)
        self._apply_sync_result(summary, bindings, result)

        if not dry_run:
            self.store.save(bindings, now)

    def _apply_sync_result(
        self, summary: RunSummary, bindings: Bindings, result: SyncResult
    ) -> None:
        # Retry failed removals next run
        for key, binding in result.failed_removals.items():
            bindings[key] = binding
            logger.warning(f"Keeping {key} in store, external removal failed")

        summary.added = result.added
        summary.removed = result.removed
        summary.errors += result.errors
        summary.active_count = len(bindings)
