# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Active Binding Store

JSON document holding every live (zone, mac) grant:

    {"version": 1, "updated_at": "...", "bindings": {"zone|mac": {...}}}

Reads fail open (a missing or corrupt file is an empty store), writes fail
safe (temp file, fsync, os.replace; an error leaves the previous snapshot in
place and raises StoreWriteError).
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

from .exceptions import StoreWriteError
from .models import Binding, GrantEvent, format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger("macbind.store")

STORE_VERSION = 1

Bindings = Dict[str, Binding]


class BindingStore:
    """Durable map of key -> Binding"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.updated_at: Optional[datetime] = None

    def load(self) -> Bindings:
        """Load bindings; never raises"""
        self.updated_at = None
        if not self.path.exists():
            return {}

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Cannot read active DB {self.path}: {e}")
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Active DB {self.path} malformed ({e}), resetting")
            return {}

        if not isinstance(data, dict) or not isinstance(data.get("bindings"), dict):
            logger.warning(f"Active DB {self.path} has no bindings map, resetting")
            return {}

        self.updated_at = parse_timestamp(str(data.get("updated_at", "")))

        bindings: Bindings = {}
        for key, record in data["bindings"].items():
            try:
                binding = Binding.from_dict(record)
            except ValueError as e:
                logger.warning(f"Dropping malformed binding {key!r}: {e}")
                continue
            bindings[binding.key] = binding
        return bindings

    def save(self, bindings: Bindings, now: Optional[datetime] = None) -> None:
        """
        Atomically replace the store with these bindings.

        Raises:
            StoreWriteError: If the new snapshot could not be written
        """
        now = now or utcnow()
        document = {
            "version": STORE_VERSION,
            "updated_at": format_timestamp(now),
            "bindings": {
                key: bindings[key].to_dict() for key in sorted(bindings)
            },
        }

        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise StoreWriteError(
                f"Failed to persist active DB: {e}", path=str(self.path), cause=e
            )
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

        self.updated_at = now


# =============================================================================
# Merge / Evict
# =============================================================================


@dataclass
class MergeReport:
    inserted: int = 0
    extended: int = 0
    refreshed: int = 0
    discarded_expired: int = 0


def merge_events(
    bindings: Bindings, events: Iterable[GrantEvent], now: datetime
) -> MergeReport:
    """
    Fold grant events into bindings in place.

    Stale events (already expired) are discarded. An existing binding keeps
    the later of the two expiries, so a shorter re-authentication never
    shortens access; its last_seen, src_ip and voucher_hash are refreshed.
    """
    report = MergeReport()

    for event in events:
        if event.expires_at <= now:
            report.discarded_expired += 1
            logger.debug(f"Discarding expired event for {event.key}")
            continue

        existing = bindings.get(event.key)
        if existing is None:
            bindings[event.key] = Binding.from_event(event)
            report.inserted += 1
            logger.info(
                f"New binding {event.key} until {format_timestamp(event.expires_at)}"
            )
            continue

        if event.expires_at > existing.expires_at:
            existing.expires_at = event.expires_at
            report.extended += 1
            logger.info(
                f"Extended binding {event.key} to {format_timestamp(event.expires_at)}"
            )
        else:
            report.refreshed += 1

        existing.last_seen = max(existing.last_seen, event.submitted_at)
        existing.src_ip = event.src_ip
        existing.voucher_hash = event.voucher_hash

    return report


def evict_expired(bindings: Bindings, now: datetime) -> Bindings:
    """Remove and return every binding whose expiry is at or before now"""
    evicted: Bindings = {}
    for key in [k for k, b in bindings.items() if b.is_expired(now)]:
        evicted[key] = bindings.pop(key)
        logger.info(
            f"Binding {key} expired at {format_timestamp(evicted[key].expires_at)}"
        )
    return evicted
