# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Grant events and bindings.

A GrantEvent is one line of the queue file written by the portal hook:

    ts_iso,zone,mac,expires_at_iso,voucher_hash,src_ip

A Binding is the current pass-through grant for one (zone, mac) pair,
keyed "zone|mac" in the active store.
"""

import csv
import hashlib
import io
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

GRANT_FIELD_COUNT = 6
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_NON_HEX = re.compile(r"[^0-9a-fA-F]")


# =============================================================================
# Field helpers
# =============================================================================


def normalize_mac(mac: str) -> str:
    """Return lower-case colon-separated MAC, or "" if it is not 12 hex digits"""
    hex_digits = _NON_HEX.sub("", mac or "").lower()
    if len(hex_digits) != 12:
        return ""
    return ":".join(hex_digits[i:i + 2] for i in range(0, 12, 2))


def normalize_zone(zone: str) -> str:
    return (zone or "").strip().lower()


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime"""
    value = (value or "").strip()
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def hash_voucher(voucher_code: str) -> str:
    """One-way proof token for a voucher; the code itself is never stored"""
    return hashlib.sha256(voucher_code.encode("utf-8")).hexdigest()


def binding_key(zone: str, mac: str) -> str:
    return f"{zone}|{mac}"


# =============================================================================
# Grant events
# =============================================================================


class SkipReason(Enum):
    """Why a queue line did not produce a GrantEvent"""
    WRONG_FIELD_COUNT = "wrong_field_count"
    INVALID_MAC = "invalid_mac"
    INVALID_SUBMITTED_AT = "invalid_submitted_at"
    INVALID_EXPIRES_AT = "invalid_expires_at"
    EMPTY_ZONE = "empty_zone"
    INVALID_ENCODING = "invalid_encoding"


@dataclass(frozen=True)
class GrantEvent:
    """One successful voucher authentication"""
    submitted_at: datetime
    zone: str
    mac: str
    expires_at: datetime
    voucher_hash: str
    src_ip: str = ""

    @property
    def key(self) -> str:
        return binding_key(self.zone, self.mac)

    @classmethod
    def issue(
        cls,
        zone: str,
        mac: str,
        voucher_code: str,
        duration_minutes: int,
        src_ip: str = "",
        now: Optional[datetime] = None,
        default_duration_minutes: int = 1440,
    ) -> "GrantEvent":
        """
        Build the event the portal hook writes after a successful login.

        Args:
            zone: Captive portal zone name
            mac: Client MAC in any common notation
            voucher_code: The validated voucher (hashed, never stored)
            duration_minutes: Voucher validity; <= 0 falls back to the default
            src_ip: Client IP address
            now: Authentication time (defaults to current UTC time)
            default_duration_minutes: Fallback voucher validity

        Raises:
            ValueError: If the MAC, zone or voucher is unusable
        """
        normalized = normalize_mac(mac)
        if not normalized:
            raise ValueError(f"Invalid MAC address: {mac!r}")
        zone_name = normalize_zone(zone)
        if not zone_name:
            raise ValueError("Zone must not be empty")
        if not voucher_code:
            raise ValueError("Voucher code must not be empty")

        now = now or utcnow()
        if duration_minutes <= 0:
            duration_minutes = default_duration_minutes

        return cls(
            submitted_at=now,
            zone=zone_name,
            mac=normalized,
            expires_at=now + timedelta(minutes=duration_minutes),
            voucher_hash=hash_voucher(voucher_code),
            src_ip=(src_ip or "").strip(),
        )

    def to_line(self) -> str:
        """Encode as one CSV queue record (with trailing newline)"""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow([
            format_timestamp(self.submitted_at),
            self.zone,
            self.mac,
            format_timestamp(self.expires_at),
            self.voucher_hash,
            self.src_ip,
        ])
        return buffer.getvalue()


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding one queue line: exactly one of event/skip is set"""
    line: str
    event: Optional[GrantEvent] = None
    skip: Optional[SkipReason] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.event is not None


def decode_grant_line(line: str) -> DecodeResult:
    """Decode one queue record into a GrantEvent or a SkipReason"""
    raw = line.strip()
    try:
        parts = next(csv.reader([raw]))
    except (csv.Error, StopIteration):
        parts = []

    if len(parts) != GRANT_FIELD_COUNT:
        return DecodeResult(raw, skip=SkipReason.WRONG_FIELD_COUNT,
                            detail=f"{len(parts)} fields")

    ts_raw, zone_raw, mac_raw, expires_raw, voucher_hash, src_ip = parts

    zone = normalize_zone(zone_raw)
    if not zone:
        return DecodeResult(raw, skip=SkipReason.EMPTY_ZONE)

    mac = normalize_mac(mac_raw)
    if not mac:
        return DecodeResult(raw, skip=SkipReason.INVALID_MAC, detail=mac_raw)

    submitted_at = parse_timestamp(ts_raw)
    if submitted_at is None:
        return DecodeResult(raw, skip=SkipReason.INVALID_SUBMITTED_AT, detail=ts_raw)

    expires_at = parse_timestamp(expires_raw)
    if expires_at is None:
        return DecodeResult(raw, skip=SkipReason.INVALID_EXPIRES_AT, detail=expires_raw)

    return DecodeResult(raw, event=GrantEvent(
        submitted_at=submitted_at,
        zone=zone,
        mac=mac,
        expires_at=expires_at,
        voucher_hash=voucher_hash.strip(),
        src_ip=src_ip.strip(),
    ))


# =============================================================================
# Bindings
# =============================================================================


class BindingOrigin(Enum):
    QUEUE = "queue"
    ADOPTED = "adopted"


@dataclass
class Binding:
    """Current pass-through grant for one (zone, mac) pair"""
    zone: str
    mac: str
    expires_at: datetime
    voucher_hash: str
    first_seen: datetime
    last_seen: datetime
    src_ip: str = ""
    origin: BindingOrigin = field(default=BindingOrigin.QUEUE)

    @property
    def key(self) -> str:
        return binding_key(self.zone, self.mac)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    @classmethod
    def from_event(cls, event: GrantEvent) -> "Binding":
        return cls(
            zone=event.zone,
            mac=event.mac,
            expires_at=event.expires_at,
            voucher_hash=event.voucher_hash,
            first_seen=event.submitted_at,
            last_seen=event.submitted_at,
            src_ip=event.src_ip,
        )

    def copy(self) -> "Binding":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zone": self.zone,
            "mac": self.mac,
            "expires_at": format_timestamp(self.expires_at),
            "voucher_hash": self.voucher_hash,
            "first_seen": format_timestamp(self.first_seen),
            "last_seen": format_timestamp(self.last_seen),
            "src_ip": self.src_ip,
            "origin": self.origin.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Binding":
        """
        Rebuild a binding from its stored form.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise ValueError("binding record is not an object")

        zone = normalize_zone(str(data.get("zone", "")))
        mac = normalize_mac(str(data.get("mac", "")))
        expires_at = parse_timestamp(str(data.get("expires_at", "")))
        if not zone or not mac or expires_at is None:
            raise ValueError("binding record lacks a valid zone, mac or expires_at")

        last_seen = parse_timestamp(str(data.get("last_seen", ""))) or expires_at
        first_seen = parse_timestamp(str(data.get("first_seen", ""))) or last_seen

        try:
            origin = BindingOrigin(data.get("origin", BindingOrigin.QUEUE.value))
        except ValueError:
            origin = BindingOrigin.QUEUE

        return cls(
            zone=zone,
            mac=mac,
            expires_at=expires_at,
            voucher_hash=str(data.get("voucher_hash", "")),
            first_seen=first_seen,
            last_seen=last_seen,
            src_ip=str(data.get("src_ip", "") or ""),
            origin=origin,
        )
