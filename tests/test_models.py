# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

from datetime import timedelta, timezone

import pytest

from conftest import T0, grant
from macbind.core.models import (
    Binding,
    BindingOrigin,
    GrantEvent,
    SkipReason,
    decode_grant_line,
    hash_voucher,
    normalize_mac,
    parse_timestamp,
)


@pytest.mark.parametrize(
    "raw",
    ["AA:BB:CC:DD:EE:FF", "aa-bb-cc-dd-ee-ff", "aabb.ccdd.eeff", "AABBCCDDEEFF"],
)
def test_normalize_mac_accepts_common_notations(raw):
    assert normalize_mac(raw) == "aa:bb:cc:dd:ee:ff"


@pytest.mark.parametrize("raw", ["", "aa:bb:cc", "zz:bb:cc:dd:ee:ff", "aa:bb:cc:dd:ee:ff:00"])
def test_normalize_mac_rejects_invalid(raw):
    assert normalize_mac(raw) == ""


def test_parse_timestamp_handles_zulu_and_naive():
    assert parse_timestamp("2026-03-01T12:00:00Z") == T0
    assert parse_timestamp("2026-03-01T12:00:00") == T0
    assert parse_timestamp("2026-03-01T14:00:00+02:00") == T0
    assert parse_timestamp("yesterday") is None


def test_issue_hashes_voucher_and_computes_expiry():
    """The raw voucher never leaves issue()"""
    event = GrantEvent.issue("Guest", "AA-BB-CC-DD-EE-FF", "SECRET", 90, src_ip=" 10.0.0.9 ", now=T0)

    assert event.zone == "guest"
    assert event.mac == "aa:bb:cc:dd:ee:ff"
    assert event.expires_at == T0 + timedelta(minutes=90)
    assert event.voucher_hash == hash_voucher("SECRET")
    assert "SECRET" not in event.to_line()
    assert event.src_ip == "10.0.0.9"


def test_issue_falls_back_to_default_duration():
    event = GrantEvent.issue("guest", "aa:bb:cc:dd:ee:ff", "V", 0, now=T0)
    assert event.expires_at == T0 + timedelta(minutes=1440)


@pytest.mark.parametrize(
    "zone, mac, voucher",
    [("guest", "bogus", "V"), ("", "aa:bb:cc:dd:ee:ff", "V"), ("guest", "aa:bb:cc:dd:ee:ff", "")],
)
def test_issue_rejects_unusable_input(zone, mac, voucher):
    with pytest.raises(ValueError):
        GrantEvent.issue(zone, mac, voucher, 60, now=T0)


def test_to_line_decodes_back_to_same_event():
    event = grant("aa:bb:cc:dd:ee:ff")
    decoded = decode_grant_line(event.to_line())
    assert decoded.ok
    assert decoded.event == event


def test_decode_normalizes_fields():
    line = "2026-03-01T12:00:00Z,GUEST,AA-BB-CC-DD-EE-FF,2026-03-01T13:00:00Z,abc, 10.0.0.1"
    decoded = decode_grant_line(line)
    assert decoded.ok
    assert decoded.event.zone == "guest"
    assert decoded.event.mac == "aa:bb:cc:dd:ee:ff"
    assert decoded.event.src_ip == "10.0.0.1"
    assert decoded.event.expires_at.tzinfo == timezone.utc


@pytest.mark.parametrize(
    "line, reason",
    [
        ("2026-03-01T12:00:00Z,guest,aa:bb:cc:dd:ee:ff", SkipReason.WRONG_FIELD_COUNT),
        ("2026-03-01T12:00:00Z,,aa:bb:cc:dd:ee:ff,2026-03-01T13:00:00Z,h,ip", SkipReason.EMPTY_ZONE),
        ("2026-03-01T12:00:00Z,guest,nope,2026-03-01T13:00:00Z,h,ip", SkipReason.INVALID_MAC),
        ("noon,guest,aa:bb:cc:dd:ee:ff,2026-03-01T13:00:00Z,h,ip", SkipReason.INVALID_SUBMITTED_AT),
        ("2026-03-01T12:00:00Z,guest,aa:bb:cc:dd:ee:ff,later,h,ip", SkipReason.INVALID_EXPIRES_AT),
    ],
)
def test_decode_reports_skip_reason(line, reason):
    decoded = decode_grant_line(line)
    assert not decoded.ok
    assert decoded.skip is reason


def test_binding_dict_roundtrip_keeps_origin():
    binding = Binding.from_event(grant("aa:bb:cc:dd:ee:ff"))
    binding.origin = BindingOrigin.ADOPTED

    restored = Binding.from_dict(binding.to_dict())
    assert restored == binding
    assert restored.key == "guest|aa:bb:cc:dd:ee:ff"


def test_binding_from_dict_rejects_missing_expiry():
    with pytest.raises(ValueError):
        Binding.from_dict({"zone": "guest", "mac": "aa:bb:cc:dd:ee:ff"})


def test_binding_expiry_boundary_is_inclusive():
    binding = Binding.from_event(grant("aa:bb:cc:dd:ee:ff", minutes=60))
    assert not binding.is_expired(T0 + timedelta(minutes=59, seconds=59))
    assert binding.is_expired(T0 + timedelta(minutes=60))
