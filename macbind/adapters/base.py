# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Control Plane Capability Interface

The captive portal's pass-through MAC list is reached only through the
ControlPlane interface, so the sync adapter can run against the real
appliance (HttpControlPlane) or an in-memory fake in tests.

Provides:
- PassthruEntry: one row of a zone's pass-through MAC list
- Provenance / ProvenanceRules: who created an entry
- ControlPlane: the abstract capability set
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from macbind.core.models import normalize_mac

DEFAULT_TAG_PREFIX = "AUTO_BIND:"
DEFAULT_COMPANION_MARKER = "Auto-added for voucher"


# =============================================================================
# Entries and provenance
# =============================================================================


@dataclass(frozen=True)
class PassthruEntry:
    """One pass-through MAC entry of a captive portal zone"""
    mac: str
    descr: str = ""
    action: str = "pass"
    logintype: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {"mac": self.mac, "action": self.action, "descr": self.descr}
        if self.logintype:
            data["logintype"] = self.logintype
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PassthruEntry":
        return cls(
            mac=normalize_mac(str(data.get("mac", ""))) or str(data.get("mac", "")),
            descr=str(data.get("descr", "") or ""),
            action=str(data.get("action", "pass") or "pass"),
            logintype=str(data.get("logintype", "") or ""),
        )


class Provenance(Enum):
    SELF = "self"
    COMPANION = "companion"
    FOREIGN = "foreign"


class ProvenanceRules:
    """Classify entries by description tag and login type"""

    def __init__(
        self,
        tag_prefix: str = DEFAULT_TAG_PREFIX,
        companion_marker: str = DEFAULT_COMPANION_MARKER,
    ):
        self.tag_prefix = tag_prefix
        self.companion_marker = companion_marker
        self._voucher_pattern = re.compile(re.escape(companion_marker) + r"\s+(\S+)")

    def classify(self, entry: PassthruEntry) -> Provenance:
        if entry.descr.startswith(self.tag_prefix):
            return Provenance.SELF
        if self.companion_marker in entry.descr or entry.logintype == "voucher":
            return Provenance.COMPANION
        return Provenance.FOREIGN

    def tag(self, voucher_hash: str) -> str:
        """Description written on entries this tool creates"""
        return f"{self.tag_prefix}{voucher_hash}"

    def companion_voucher(self, entry: PassthruEntry) -> Optional[str]:
        """Voucher code named in a portal auto-added description, if any"""
        match = self._voucher_pattern.search(entry.descr)
        return match.group(1) if match else None


# =============================================================================
# Capability interface
# =============================================================================


class ControlPlane(ABC):
    """
    Operations the sync adapter needs from the captive portal.

    Every method raises ControlPlaneError on failure;
    ControlPlaneUnavailableError means the control plane could not be reached
    at all. disconnect() raises CapabilityUnavailableError when the portal
    has no way to drop a live session, in which case callers fall back to
    flush().
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"macbind.adapters.{name}")

    @abstractmethod
    def list_zones(self) -> List[str]:
        """Names of all configured captive portal zones"""

    @abstractmethod
    def list_entries(self, zone: str) -> List[PassthruEntry]:
        """Current pass-through MAC list of a zone"""

    @abstractmethod
    def add_entry(self, zone: str, entry: PassthruEntry) -> None:
        """Add one pass-through entry"""

    @abstractmethod
    def remove_entry(self, zone: str, entry: PassthruEntry) -> None:
        """Remove the pass-through entry for entry.mac"""

    @abstractmethod
    def disconnect(self, zone: str, entry: PassthruEntry) -> None:
        """Drop live firewall state and sessions for the MAC"""

    @abstractmethod
    def flush(self, zone: str, entry: PassthruEntry) -> None:
        """Flush the MAC's pass-through firewall table entry"""

    @abstractmethod
    def reload(self, zone: str) -> None:
        """Apply configuration changes to a zone"""

    @abstractmethod
    def backup_snapshot(self) -> Dict[str, Any]:
        """Raw pass-through configuration of every zone, for backups"""

    def log_call(self, operation: str, zone: Optional[str] = None, detail: str = ""):
        where = f" [{zone}]" if zone else ""
        self.logger.debug(f"{self.name}.{operation}{where} {detail}".rstrip())


__all__ = [
    "ControlPlane",
    "PassthruEntry",
    "Provenance",
    "ProvenanceRules",
]
