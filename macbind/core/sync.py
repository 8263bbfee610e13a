# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
External Sync Adapter

Converges the captive portal's pass-through MAC list with the active
bindings. Per zone:

1. list entries and classify their provenance
2. add desired MACs that have neither a SELF nor a COMPANION entry
3. remove SELF entries that are no longer desired, and COMPANION entries of
   evicted bindings, each followed by live-state teardown
4. leave FOREIGN entries (and untracked COMPANION entries) alone
5. reload each mutated zone once

A backup is taken before the first mutating call of a run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from macbind.adapters.base import ControlPlane, PassthruEntry, Provenance, ProvenanceRules

from .backup import BackupManager
from .exceptions import CapabilityUnavailableError, ControlPlaneError
from .models import Binding, BindingOrigin, binding_key, hash_voucher, normalize_mac
from .store import Bindings

logger = logging.getLogger("macbind.sync")


@dataclass
class SyncResult:
    """Outcome of one reconcile() call (planned changes when dry_run)"""
    added: int = 0
    removed: int = 0
    errors: int = 0
    disconnect_failures: int = 0
    zones_reloaded: List[str] = field(default_factory=list)
    unknown_zones: List[str] = field(default_factory=list)
    failed_removals: Dict[str, Binding] = field(default_factory=dict)
    backup_failed: bool = False
    dry_run: bool = False


@dataclass
class _ZonePlan:
    to_add: List[Binding] = field(default_factory=list)
    to_remove: List[PassthruEntry] = field(default_factory=list)
    untracked: List[PassthruEntry] = field(default_factory=list)


class ExternalSync:
    """Diff-and-apply between the binding store and the control plane"""

    def __init__(
        self,
        control_plane: ControlPlane,
        rules: Optional[ProvenanceRules] = None,
        backup: Optional[BackupManager] = None,
    ):
        self.control_plane = control_plane
        self.rules = rules or ProvenanceRules()
        self.backup = backup

    # =========================================================================
    # Companion adoption
    # =========================================================================

    def adopt_companions(
        self, bindings: Bindings, now: datetime, duration_minutes: int = 43200
    ) -> int:
        """
        Track portal auto-added entries that the store does not know about.

        Adopted bindings expire duration_minutes from now. Their proof token
        is the hash of the voucher named in the description, or of
        "imported_<mac>" when none is given.

        Returns:
            Number of bindings adopted
        """
        adopted = 0
        for zone in self.control_plane.list_zones():
            try:
                entries = self.control_plane.list_entries(zone)
            except ControlPlaneError as e:
                logger.warning(f"Cannot list entries of zone {zone} for adoption: {e.message}")
                continue

            for entry in entries:
                if self.rules.classify(entry) is not Provenance.COMPANION:
                    continue
                mac = normalize_mac(entry.mac)
                if not mac:
                    logger.warning(f"Ignoring auto-added entry with invalid MAC {entry.mac!r}")
                    continue
                key = binding_key(zone, mac)
                if key in bindings:
                    continue

                voucher = self.rules.companion_voucher(entry) or f"imported_{mac}"
                bindings[key] = Binding(
                    zone=zone,
                    mac=mac,
                    expires_at=now + timedelta(minutes=duration_minutes),
                    voucher_hash=hash_voucher(voucher),
                    first_seen=now,
                    last_seen=now,
                    origin=BindingOrigin.ADOPTED,
                )
                adopted += 1
                logger.info(f"Adopted auto-added entry {key}")
        return adopted

    # =========================================================================
    # Reconcile
    # =========================================================================

    def reconcile(
        self, active: Bindings, evicted: Bindings, dry_run: bool = False
    ) -> SyncResult:
        """
        Apply the diff between bindings and the pass-through lists.

        Raises:
            ControlPlaneError: If the zone list cannot be read
        """
        result = SyncResult(dry_run=dry_run)
        zones = self.control_plane.list_zones()
        known = set(zones)

        for zone in sorted({b.zone for b in active.values()} - known):
            result.unknown_zones.append(zone)
            logger.warning(f"Zone {zone} has bindings but no captive portal")
        for key, binding in evicted.items():
            if binding.zone not in known:
                logger.info(f"Evicted {key} belongs to unknown zone, nothing to remove")

        if self.backup is not None:
            self.backup.reset()

        for zone in zones:
            desired = {b.mac: b for b in active.values() if b.zone == zone}
            expired = {b.mac: b for b in evicted.values() if b.zone == zone}

            try:
                entries = self.control_plane.list_entries(zone)
            except ControlPlaneError as e:
                result.errors += 1
                logger.error(f"Cannot list pass-through entries of zone {zone}: {e.message}")
                for binding in expired.values():
                    result.failed_removals[binding.key] = binding
                continue

            plan = self._plan_zone(entries, desired, expired)
            for entry in plan.untracked:
                self._log_untracked(zone, entry, desired, expired)

            if dry_run:
                for binding in plan.to_add:
                    logger.info(f"[DRY-RUN] Would add {binding.key}")
                for entry in plan.to_remove:
                    logger.info(f"[DRY-RUN] Would remove {zone}|{entry.mac}")
                result.added += len(plan.to_add)
                result.removed += len(plan.to_remove)
                continue

            if self._apply_zone(zone, plan, expired, result):
                try:
                    self.control_plane.reload(zone)
                    result.zones_reloaded.append(zone)
                except ControlPlaneError as e:
                    result.errors += 1
                    logger.error(f"Reload of zone {zone} failed: {e.message}")

        return result

    def _plan_zone(
        self,
        entries: List[PassthruEntry],
        desired: Dict[str, Binding],
        expired: Dict[str, Binding],
    ) -> _ZonePlan:
        plan = _ZonePlan()
        covered = set()

        for entry in entries:
            mac = normalize_mac(entry.mac) or entry.mac
            provenance = self.rules.classify(entry)

            if provenance is Provenance.SELF:
                covered.add(mac)
                if mac not in desired:
                    plan.to_remove.append(entry)
            elif provenance is Provenance.COMPANION:
                covered.add(mac)
                if mac in expired and mac not in desired:
                    plan.to_remove.append(entry)
                elif mac not in desired:
                    plan.untracked.append(entry)
            else:
                plan.untracked.append(entry)

        plan.to_add = [b for mac, b in sorted(desired.items()) if mac not in covered]
        return plan

    def _log_untracked(
        self,
        zone: str,
        entry: PassthruEntry,
        desired: Dict[str, Binding],
        expired: Dict[str, Binding],
    ) -> None:
        provenance = self.rules.classify(entry)
        mac = normalize_mac(entry.mac) or entry.mac
        message = f"Leaving {provenance.value} entry {zone}|{entry.mac} for manual review"
        # Foreign entries unrelated to the store log at debug
        if provenance is Provenance.COMPANION or mac in desired or mac in expired:
            logger.info(message)
        else:
            logger.debug(message)

    def _apply_zone(
        self,
        zone: str,
        plan: _ZonePlan,
        expired: Dict[str, Binding],
        result: SyncResult,
    ) -> bool:
        """Apply one zone's plan; True if anything changed"""
        mutated = False
        if (plan.to_add or plan.to_remove) and self.backup is not None:
            if not self.backup.backup_if_needed() and not result.backup_failed:
                result.backup_failed = True
                result.errors += 1

        for binding in plan.to_add:
            entry = PassthruEntry(
                mac=binding.mac, descr=self.rules.tag(binding.voucher_hash), action="pass"
            )
            try:
                self.control_plane.add_entry(zone, entry)
            except ControlPlaneError as e:
                result.errors += 1
                logger.error(f"Failed to add {binding.key}: {e.message}")
                continue
            result.added += 1
            mutated = True
            logger.info(f"Added pass-through MAC {binding.key}")

        for entry in plan.to_remove:
            mac = normalize_mac(entry.mac) or entry.mac
            try:
                self.control_plane.remove_entry(zone, entry)
            except ControlPlaneError as e:
                result.errors += 1
                logger.error(f"Failed to remove {zone}|{mac}: {e.message}")
                if mac in expired:
                    result.failed_removals[expired[mac].key] = expired[mac]
                continue
            result.removed += 1
            mutated = True
            logger.info(f"Removed pass-through MAC {zone}|{mac}")
            self._teardown(zone, entry, result)

        return mutated

    def _teardown(self, zone: str, entry: PassthruEntry, result: SyncResult) -> None:
        """Drop live state for a removed MAC; failures are warnings only"""
        try:
            self.control_plane.disconnect(zone, entry)
            return
        except CapabilityUnavailableError:
            logger.debug(f"Disconnect unavailable for zone {zone}, flushing instead")
        except ControlPlaneError as e:
            result.disconnect_failures += 1
            logger.warning(f"Disconnect of {zone}|{entry.mac} failed: {e.message}")
            return

        try:
            self.control_plane.flush(zone, entry)
        except ControlPlaneError as e:
            result.disconnect_failures += 1
            logger.warning(f"Flush of {zone}|{entry.mac} failed: {e.message}")
