# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

import json
from datetime import timedelta

import pytest

from conftest import T0, grant
from macbind.core.exceptions import StoreWriteError
from macbind.core.models import Binding, hash_voucher
from macbind.core.store import BindingStore, evict_expired, merge_events

MAC = "aa:bb:cc:dd:ee:ff"


def test_missing_store_loads_empty(tmp_path):
    assert BindingStore(tmp_path / "active.json").load() == {}


def test_save_and_load(tmp_path):
    store = BindingStore(tmp_path / "active.json")
    binding = Binding.from_event(grant(MAC))
    store.save({binding.key: binding}, now=T0)

    data = json.loads((tmp_path / "active.json").read_text())
    assert data["version"] == 1
    assert data["updated_at"] == "2026-03-01T12:00:00Z"

    fresh = BindingStore(tmp_path / "active.json")
    assert fresh.load() == {binding.key: binding}
    assert fresh.updated_at == T0


def test_corrupt_store_resets_to_empty(tmp_path, caplog):
    path = tmp_path / "active.json"
    path.write_text("{not json")
    assert BindingStore(path).load() == {}
    assert "malformed" in caplog.text


def test_malformed_binding_record_is_dropped(tmp_path):
    path = tmp_path / "active.json"
    good = Binding.from_event(grant(MAC))
    path.write_text(json.dumps({
        "version": 1,
        "bindings": {good.key: good.to_dict(), "guest|junk": {"zone": "guest"}},
    }))
    assert list(BindingStore(path).load()) == [good.key]


def test_failed_save_keeps_previous_snapshot(tmp_path):
    path = tmp_path / "active.json"
    store = BindingStore(path)
    binding = Binding.from_event(grant(MAC))
    store.save({binding.key: binding}, now=T0)
    before = path.read_text()

    blocked = BindingStore(tmp_path / "missing-parent-is-a-file" / "active.json")
    (tmp_path / "missing-parent-is-a-file").write_text("")
    with pytest.raises(StoreWriteError):
        blocked.save({}, now=T0)

    assert path.read_text() == before
    assert not list(tmp_path.glob(".active.json.*.tmp"))


def test_merge_inserts_new_binding():
    bindings = {}
    report = merge_events(bindings, [grant(MAC)], T0)

    assert report.inserted == 1
    binding = bindings[f"guest|{MAC}"]
    assert binding.first_seen == binding.last_seen == T0
    assert binding.expires_at == T0 + timedelta(minutes=60)


def test_merge_never_shortens_expiry():
    """60 minute grant followed by a 5 minute grant keeps the 60 minutes"""
    bindings = {}
    merge_events(bindings, [grant(MAC, minutes=60)], T0)
    later = T0 + timedelta(minutes=1)
    report = merge_events(
        bindings, [grant(MAC, minutes=5, at=later, voucher="V2", src_ip="10.0.0.6")], later
    )

    binding = bindings[f"guest|{MAC}"]
    assert report.refreshed == 1
    assert binding.expires_at == T0 + timedelta(minutes=60)
    assert binding.last_seen == later
    assert binding.first_seen == T0
    assert binding.src_ip == "10.0.0.6"
    assert binding.voucher_hash == hash_voucher("V2")


def test_merge_extends_expiry():
    bindings = {}
    merge_events(bindings, [grant(MAC, minutes=60)], T0)
    report = merge_events(bindings, [grant(MAC, minutes=120)], T0)

    assert report.extended == 1
    assert bindings[f"guest|{MAC}"].expires_at == T0 + timedelta(minutes=120)


def test_merge_discards_already_expired_events():
    bindings = {}
    report = merge_events(bindings, [grant(MAC, minutes=60)], T0 + timedelta(minutes=60))
    assert report.discarded_expired == 1
    assert bindings == {}


def test_merge_out_of_order_events_keep_latest_last_seen():
    bindings = {}
    newer = grant(MAC, minutes=60, at=T0 + timedelta(minutes=10))
    older = grant(MAC, minutes=30, at=T0)
    merge_events(bindings, [newer, older], T0 + timedelta(minutes=11))
    assert bindings[f"guest|{MAC}"].last_seen == T0 + timedelta(minutes=10)


def test_evict_only_expired():
    bindings = {}
    merge_events(bindings, [grant(MAC, minutes=60), grant("aa:bb:cc:dd:ee:01", minutes=5)], T0)

    assert evict_expired(bindings, T0 + timedelta(minutes=4)) == {}

    evicted = evict_expired(bindings, T0 + timedelta(minutes=5))
    assert list(evicted) == ["guest|aa:bb:cc:dd:ee:01"]
    assert list(bindings) == [f"guest|{MAC}"]
