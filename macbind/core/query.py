# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Read-only views of the active binding store.

These never take the run lock; they read whatever complete snapshot the
store file holds at the time.
"""

import csv
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from .models import Binding, format_timestamp, normalize_mac, normalize_zone, utcnow
from .queue import EventQueue
from .store import BindingStore

EXPORT_COLUMNS = ["zone", "mac", "expires_at", "voucher_hash", "src_ip", "last_seen"]


def format_duration(delta: timedelta) -> str:
    """Compact human duration, negative values shown as "expired" """
    seconds = int(delta.total_seconds())
    if seconds < 0:
        return "expired"
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


@dataclass
class BindingStats:
    total: int = 0
    expired_pending: int = 0
    expiring_within_1h: int = 0
    expiring_within_24h: int = 0
    by_zone: Dict[str, int] = field(default_factory=dict)
    queue_backlog: int = 0
    last_update: Optional[datetime] = None


class BindingQuery:
    """list / search / stats / export over the binding store"""

    def __init__(self, store: BindingStore, queue: Optional[EventQueue] = None):
        self.store = store
        self.queue = queue

    def list_bindings(self, zone: Optional[str] = None) -> List[Binding]:
        """Bindings sorted by zone then MAC, optionally for one zone"""
        zone_name = normalize_zone(zone) if zone else None
        bindings = [
            b for b in self.store.load().values()
            if zone_name is None or b.zone == zone_name
        ]
        return sorted(bindings, key=lambda b: (b.zone, b.mac))

    def search(self, term: str, zone: Optional[str] = None) -> List[Binding]:
        """Match a full MAC, a MAC fragment, or an exact source IP"""
        term = (term or "").strip()
        if not term:
            return []
        full_mac = normalize_mac(term)
        fragment = term.lower()

        found = []
        for binding in self.list_bindings(zone):
            if full_mac and binding.mac == full_mac:
                found.append(binding)
            elif fragment in binding.mac:
                found.append(binding)
            elif binding.src_ip and binding.src_ip == term:
                found.append(binding)
        return found

    def statistics(self, now: Optional[datetime] = None) -> BindingStats:
        now = now or utcnow()
        stats = BindingStats()
        for binding in self.list_bindings():
            stats.total += 1
            stats.by_zone[binding.zone] = stats.by_zone.get(binding.zone, 0) + 1

            remaining = binding.remaining(now)
            if remaining <= timedelta(0):
                stats.expired_pending += 1
            elif remaining < timedelta(hours=1):
                stats.expiring_within_1h += 1
            elif remaining < timedelta(hours=24):
                stats.expiring_within_24h += 1

        stats.last_update = self.store.updated_at
        if self.queue is not None:
            stats.queue_backlog = self.queue.pending_count()
        return stats

    def export_csv(self, path: Path) -> int:
        """
        Write every binding to a CSV file.

        Returns:
            Number of bindings written
        """
        bindings = self.list_bindings()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f, lineterminator="\n")
            writer.writerow(EXPORT_COLUMNS)
            for b in bindings:
                writer.writerow([
                    b.zone,
                    b.mac,
                    format_timestamp(b.expires_at),
                    b.voucher_hash,
                    b.src_ip,
                    format_timestamp(b.last_seen),
                ])
        return len(bindings)
