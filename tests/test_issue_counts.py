import pytest

from proof_gate.issue_counts import RecurringIssueCounts
from proof_gate.state import KEY_ISSUE_COUNTS, JsonFileStateStore, MemoryStateStore


def test_counts_persist_across_runs():
    state = MemoryStateStore()
    first = RecurringIssueCounts(state)
    first.load()
    first.increment("orphan_route")
    first.save()

    second = RecurringIssueCounts(state)
    assert second.load() == {"orphan_route": 1}
    second.increment("orphan_route")
    second.increment_all(["missing_route", "orphan_route"])
    second.save()

    assert state.get(KEY_ISSUE_COUNTS) == {"orphan_route": 3, "missing_route": 1}
    assert second.recurring() == ["orphan_route"]


def test_malformed_stored_values_are_dropped():
    state = MemoryStateStore({KEY_ISSUE_COUNTS: {"a": "2", "b": "x", "c": 0, "d": -1, "e": None}})
    counts = RecurringIssueCounts(state)
    assert counts.load() == {"a": 2}


def test_non_dict_state_loads_empty():
    counts = RecurringIssueCounts(MemoryStateStore({KEY_ISSUE_COUNTS: ["nope"]}))
    assert counts.load() == {}


def test_increment_must_be_positive():
    counts = RecurringIssueCounts(MemoryStateStore())
    with pytest.raises(ValueError):
        counts.increment("x", by=0)


def test_reset_clears_persisted_counts(tmp_path):
    state = JsonFileStateStore(str(tmp_path / "state"))
    counts = RecurringIssueCounts(state)
    counts.increment("proof_contradiction")
    counts.save()
    assert (tmp_path / "state" / f"{KEY_ISSUE_COUNTS}.json").exists()

    counts.reset()
    assert counts.snapshot() == {}
    assert state.get(KEY_ISSUE_COUNTS) is None
    assert RecurringIssueCounts(state).load() == {}


def test_snapshot_is_a_copy():
    counts = RecurringIssueCounts(MemoryStateStore())
    counts.increment("x")
    snap = counts.snapshot()
    snap["x"] = 99
    assert counts.snapshot() == {"x": 1}


class TestJsonFileStateStore:
    def test_round_trip_and_delete(self, tmp_path):
        state = JsonFileStateStore(str(tmp_path))
        state.set("build_output", {"text": "ok"})
        assert state.get("build_output") == {"text": "ok"}
        state.delete("build_output")
        state.delete("build_output")
        assert state.get("build_output", "default") == "default"

    def test_unreadable_file_is_treated_as_absent(self, tmp_path):
        state = JsonFileStateStore(str(tmp_path))
        (tmp_path / "claim_log.json").write_text("{not json", encoding="utf-8")
        assert state.get("claim_log") is None

    def test_rejects_path_like_keys(self, tmp_path):
        state = JsonFileStateStore(str(tmp_path))
        with pytest.raises(ValueError):
            state.get("../escape")
