"""Tests for LocalMeasurementStore and LocalStateStore."""

from __future__ import annotations

from glycosync.core.storage.models import Measurement
from glycosync.core.storage.state import LAST_SYNC_KEY, SYNC_ENABLED_KEY


def _m(id: str, timestamp: int, value: float = 100.0, notes: str | None = None) -> Measurement:
    return Measurement(id=id, value=value, type="fasting", timestamp=timestamp, notes=notes)


class TestMeasurementRoundTrip:
    def test_add_then_get_is_identical(self, local_store):
        m = Measurement(id="m1", value=95.0, type="fasting", timestamp=1_700_000_000_000, notes="before run")
        local_store.add(m)
        assert local_store.get("m1") == m

    def test_notes_none_survives(self, local_store):
        local_store.add(_m("m1", 1))
        assert local_store.get("m1").notes is None

    def test_add_same_id_updates_in_place(self, local_store):
        local_store.add(_m("m1", 1, value=90.0))
        local_store.add(_m("m1", 2, value=110.0))
        assert local_store.count() == 1
        assert local_store.get("m1").value == 110.0

    def test_get_unknown_returns_none(self, local_store):
        assert local_store.get("nope") is None


class TestOrdering:
    def test_newest_first(self, local_store):
        local_store.add(_m("old", 1_000))
        local_store.add(_m("new", 3_000))
        local_store.add(_m("mid", 2_000))
        ids = [m.id for m in local_store.list_measurements()]
        assert ids == ["new", "mid", "old"]

    def test_limit(self, local_store):
        for i in range(5):
            local_store.add(_m(f"m{i}", i))
        assert len(local_store.list_measurements(limit=2)) == 2


class TestDeleteAndReplace:
    def test_delete_existing(self, local_store):
        local_store.add(_m("m1", 1))
        assert local_store.delete("m1") is True
        assert local_store.count() == 0

    def test_delete_absent_is_not_an_error(self, local_store):
        assert local_store.delete("ghost") is False

    def test_replace_all_overwrites_cache(self, local_store):
        local_store.add(_m("a", 1))
        local_store.add(_m("b", 2))
        stored = local_store.replace_all([_m("c", 3)])
        assert stored == 1
        assert [m.id for m in local_store.list_measurements()] == ["c"]

    def test_clear(self, local_store):
        local_store.add(_m("a", 1))
        assert local_store.clear() == 1
        assert local_store.count() == 0


class TestLocalState:
    def test_default_when_missing(self, state_store):
        assert state_store.get(SYNC_ENABLED_KEY, False) is False

    def test_set_and_get_json_values(self, state_store):
        state_store.set(SYNC_ENABLED_KEY, True)
        state_store.set("nested", {"a": [1, 2]})
        assert state_store.get(SYNC_ENABLED_KEY) is True
        assert state_store.get("nested") == {"a": [1, 2]}

    def test_set_many_writes_all_keys(self, state_store):
        state_store.set_many({SYNC_ENABLED_KEY: True, LAST_SYNC_KEY: 123})
        assert state_store.get(SYNC_ENABLED_KEY) is True
        assert state_store.get(LAST_SYNC_KEY) == 123

    def test_unreadable_value_falls_back_to_default(self, state_store, sync_db):
        sync_db.connection.execute(
            "INSERT INTO local_state (key, value_json) VALUES ('broken', '{not json')"
        )
        sync_db.connection.commit()
        assert state_store.get("broken", "fallback") == "fallback"

    def test_delete(self, state_store):
        state_store.set("k", 1)
        state_store.delete("k")
        assert state_store.get("k") is None
