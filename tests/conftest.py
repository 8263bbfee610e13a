# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Shared fixtures: an in-memory control plane and a fully wired engine"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from macbind.adapters.base import ControlPlane, PassthruEntry
from macbind.core.backup import BackupManager
from macbind.core.engine import ReconciliationEngine
from macbind.core.exceptions import (
    CapabilityUnavailableError,
    ControlPlaneError,
    ControlPlaneUnavailableError,
)
from macbind.core.lock import LockManager
from macbind.core.models import GrantEvent, hash_voucher
from macbind.core.queue import FileEventQueue
from macbind.core.store import BindingStore
from macbind.core.sync import ExternalSync

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeControlPlane(ControlPlane):
    """In-memory pass-through lists with failure injection"""

    def __init__(self, zones: Optional[List[str]] = None):
        super().__init__("fake")
        self.entries: Dict[str, List[PassthruEntry]] = {z: [] for z in (zones or ["guest"])}
        self.calls: List[Tuple[str, ...]] = []
        self.unreachable = False
        self.disconnect_supported = True
        self.fail_add: Set[str] = set()
        self.fail_remove: Set[str] = set()
        self.fail_disconnect: Set[str] = set()
        self.fail_flush: Set[str] = set()
        self.fail_list: Set[str] = set()
        self.fail_reload: Set[str] = set()
        self.fail_snapshot = False

    # Helpers for tests

    def seed(self, zone: str, mac: str, descr: str = "", logintype: str = "") -> PassthruEntry:
        entry = PassthruEntry(mac=mac, descr=descr, logintype=logintype)
        self.entries.setdefault(zone, []).append(entry)
        return entry

    def macs(self, zone: str) -> List[str]:
        return sorted(e.mac for e in self.entries.get(zone, []))

    def entry_for(self, zone: str, mac: str) -> Optional[PassthruEntry]:
        for entry in self.entries.get(zone, []):
            if entry.mac == mac:
                return entry
        return None

    def calls_named(self, name: str) -> List[Tuple[str, ...]]:
        return [c for c in self.calls if c[0] == name]

    def mutating_calls(self) -> List[Tuple[str, ...]]:
        names = {"add_entry", "remove_entry", "disconnect", "flush", "reload"}
        return [c for c in self.calls if c[0] in names]

    # ControlPlane

    def _check(self):
        if self.unreachable:
            raise ControlPlaneUnavailableError("control plane down")

    def list_zones(self) -> List[str]:
        self._check()
        self.calls.append(("list_zones",))
        return list(self.entries)

    def list_entries(self, zone: str) -> List[PassthruEntry]:
        self._check()
        self.calls.append(("list_entries", zone))
        if zone in self.fail_list:
            raise ControlPlaneError("list failed", zone=zone, operation="list_entries")
        return list(self.entries.get(zone, []))

    def add_entry(self, zone: str, entry: PassthruEntry) -> None:
        self._check()
        self.calls.append(("add_entry", zone, entry.mac))
        if entry.mac in self.fail_add:
            raise ControlPlaneError("add failed", zone=zone, operation="add_entry")
        self.entries.setdefault(zone, []).append(entry)

    def remove_entry(self, zone: str, entry: PassthruEntry) -> None:
        self._check()
        self.calls.append(("remove_entry", zone, entry.mac))
        if entry.mac in self.fail_remove:
            raise ControlPlaneError("remove failed", zone=zone, operation="remove_entry")
        self.entries[zone] = [e for e in self.entries.get(zone, []) if e != entry]

    def disconnect(self, zone: str, entry: PassthruEntry) -> None:
        self._check()
        self.calls.append(("disconnect", zone, entry.mac))
        if not self.disconnect_supported:
            raise CapabilityUnavailableError("no disconnect", zone=zone, operation="disconnect")
        if entry.mac in self.fail_disconnect:
            raise ControlPlaneError("disconnect failed", zone=zone, operation="disconnect")

    def flush(self, zone: str, entry: PassthruEntry) -> None:
        self._check()
        self.calls.append(("flush", zone, entry.mac))
        if entry.mac in self.fail_flush:
            raise ControlPlaneError("flush failed", zone=zone, operation="flush")

    def reload(self, zone: str) -> None:
        self._check()
        self.calls.append(("reload", zone))
        if zone in self.fail_reload:
            raise ControlPlaneError("reload failed", zone=zone, operation="reload")

    def backup_snapshot(self) -> Dict[str, Any]:
        self._check()
        self.calls.append(("backup_snapshot",))
        if self.fail_snapshot:
            raise ControlPlaneError("snapshot failed", operation="backup_snapshot")
        return {z: [e.to_dict() for e in entries] for z, entries in self.entries.items()}


class Clock:
    """Settable clock for engine, lock and backup"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def grant(
    mac: str,
    zone: str = "guest",
    minutes: int = 60,
    at: datetime = T0,
    voucher: str = "V1",
    src_ip: str = "10.0.0.5",
) -> GrantEvent:
    return GrantEvent(
        submitted_at=at,
        zone=zone,
        mac=mac,
        expires_at=at + timedelta(minutes=minutes),
        voucher_hash=hash_voucher(voucher),
        src_ip=src_ip,
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def control_plane():
    return FakeControlPlane()


@pytest.fixture
def paths(tmp_path: Path) -> Dict[str, Path]:
    return {
        "queue": tmp_path / "queue.csv",
        "store": tmp_path / "active.json",
        "lock": tmp_path / "sync.lock",
        "backups": tmp_path / "backups",
        "disable": tmp_path / "disabled",
    }


class Stack:
    """Everything an engine run touches, wired like the CLI does"""

    def __init__(self, paths: Dict[str, Path], control_plane: FakeControlPlane, clock: Clock):
        self.paths = paths
        self.control_plane = control_plane
        self.clock = clock
        self.lock = LockManager(paths["lock"], clock=clock)
        self.queue = FileEventQueue(paths["queue"])
        self.store = BindingStore(paths["store"])
        self.backup = BackupManager(control_plane, paths["backups"], clock=clock)
        self.sync = ExternalSync(control_plane, backup=self.backup)
        self.engine = ReconciliationEngine(
            lock=self.lock,
            queue=self.queue,
            store=self.store,
            sync=self.sync,
            disable_flag=paths["disable"],
            clock=clock,
        )

    def enqueue(self, *events: GrantEvent) -> None:
        for event in events:
            self.queue.append(event)


@pytest.fixture
def stack(paths, control_plane, clock) -> Stack:
    return Stack(paths, control_plane, clock)
