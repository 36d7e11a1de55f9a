"""Tests for the VersionStore diff / patch / chain logic."""

from __future__ import annotations

import copy
import logging

import pytest

from memoryforge.config import VersionSettings
from memoryforge.errors import PatchApplyError, VersionOutOfRange
from memoryforge.versioning import (
    MISSING,
    Patch,
    VersionStore,
    encoded_size,
    make_pointer,
    parse_pointer,
)


def _msg(i: int, **extra) -> dict:
    return {"id": f"m{i}", "role": "user", "content": f"message number {i}", **extra}


@pytest.fixture()
def store() -> VersionStore:
    return VersionStore()


class TestPointers:
    def test_escaping_round_trip(self):
        pointer = make_pointer("nodes", "a/b", "x~y")
        assert pointer == "/nodes/a~1b/x~0y"
        assert parse_pointer(pointer) == ["nodes", "a/b", "x~y"]

    def test_non_pointer_rejected(self):
        with pytest.raises(ValueError):
            parse_pointer("nodes/a")


class TestDiff:
    def test_appended_message_scenario(self, store: VersionStore):
        m1, m2, m3 = _msg(1), _msg(2), _msg(3)
        diff = store.diff({"messages": [m1, m2]}, {"messages": [m1, m2, m3]})
        assert diff.added_nodes == [m3]
        assert diff.modified == []
        assert diff.deleted == []

        patch = store.to_patch(diff)
        assert patch.operations == [{"op": "add", "path": "/messages/m3", "value": m3}]

    def test_modified_field_carries_before_and_after(self, store: VersionStore):
        old = {"nodes": {"a": {"content": "x", "importance": 0.5}}}
        new = {"nodes": {"a": {"content": "x", "importance": 0.7}}}
        diff = store.diff(old, new)
        assert len(diff.modified) == 1
        change = diff.modified[0].changes[0]
        assert (change.field, change.old, change.new) == ("importance", 0.5, 0.7)

    def test_missing_field_distinguished_from_none(self, store: VersionStore):
        diff = store.diff({"nodes": {"a": {"x": None}}}, {"nodes": {"a": {}}})
        change = diff.modified[0].changes[0]
        assert change.old is None
        assert change.new is MISSING

    def test_deleted_node(self, store: VersionStore):
        diff = store.diff({"nodes": {"a": {}, "b": {}}}, {"nodes": {"a": {}}})
        assert [(d.collection, d.id) for d in diff.deleted] == [("nodes", "b")]

    def test_document_fields(self, store: VersionStore):
        diff = store.diff({"path": ["root", "a"], "n": 1}, {"path": ["root", "b"], "extra": True})
        assert {m.id for m in diff.modified} == {"path"}
        assert [a.id for a in diff.added] == ["extra"]
        assert [d.id for d in diff.deleted] == ["n"]

    def test_reorder_detected(self, store: VersionStore):
        m1, m2 = _msg(1), _msg(2)
        diff = store.diff({"messages": [m1, m2]}, {"messages": [m2, m1]})
        assert diff.reordered == {"messages": [m2, m1]}

    def test_identical_states_produce_empty_diff(self, store: VersionStore):
        state = {"messages": [_msg(1)], "meta": {"count": 1}}
        assert store.diff(state, copy.deepcopy(state)).is_empty


ROUND_TRIP_CASES = [
    ({}, {"messages": [_msg(1)]}),
    ({"messages": [_msg(1), _msg(2)]}, {"messages": [_msg(2)]}),
    ({"messages": [_msg(1), _msg(2)]}, {"messages": [_msg(2), _msg(1), _msg(3)]}),
    ({"messages": [_msg(1)]}, {"messages": [_msg(1, content="edited", tag=None)]}),
    ({"nodes": {"a/b": {"x": 1}}}, {"nodes": {"a/b": {"x": 2}, "c~d": {"y": [1, 2]}}}),
    ({"nodes": {"a": {"x": 1}}}, {"nodes": [{"id": "a", "x": 1}]}),
    ({"path": ["root"], "meta": {"n": 1}}, {"path": ["root", "a"], "meta": {"n": 2}}),
    ({"messages": [_msg(1)], "gone": 3}, {}),
    ({"": 1, "messages": [_msg(1)]}, {"": 2, "messages": []}),
    ({}, {"": {"a": 1}}),
]


class TestPatchRoundTrip:
    @pytest.mark.parametrize("old,new", ROUND_TRIP_CASES)
    def test_reconstruct_reproduces_target(self, store: VersionStore, old, new):
        patch = store.to_patch(store.diff(old, new))
        assert store.reconstruct(old, [patch]) == new

    def test_apply_does_not_mutate_base(self, store: VersionStore):
        base = {"messages": [_msg(1)]}
        snapshot = copy.deepcopy(base)
        store.apply_patch(base, store.to_patch(store.diff(base, {"messages": []})))
        assert base == snapshot

    def test_apply_accepts_serialized_patch(self, store: VersionStore):
        old, new = {"messages": [_msg(1)]}, {"messages": [_msg(1), _msg(2)]}
        patch = store.to_patch(store.diff(old, new)).to_dict()
        assert store.apply_patch(old, patch) == new


class TestApplyErrors:
    def test_missing_path_is_skipped_and_reported(self, store: VersionStore, caplog):
        patch = Patch(
            version=2,
            base_version=1,
            timestamp=0.0,
            operations=[
                {"op": "replace", "path": "/nodes/ghost/x", "value": 1},
                {"op": "add", "path": "/nodes/b", "value": {"x": 2}},
            ],
        )
        errors: list[PatchApplyError] = []
        with caplog.at_level(logging.WARNING, logger="memoryforge.versioning"):
            result = store.apply_patch({"nodes": {"a": {"x": 1}}}, patch, errors)

        assert result == {"nodes": {"a": {"x": 1}, "b": {"x": 2}}}
        assert len(errors) == 1
        assert errors[0].operation["path"] == "/nodes/ghost/x"
        assert "Skipping patch operation" in caplog.text

    def test_remove_missing_key_is_an_error(self, store: VersionStore):
        patch = Patch(1, 0, 0.0, [{"op": "remove", "path": "/a"}])
        errors: list[PatchApplyError] = []
        assert store.apply_patch({}, patch, errors) == {}
        assert len(errors) == 1

    def test_unknown_op_is_an_error(self, store: VersionStore):
        patch = Patch(1, 0, 0.0, [{"op": "move", "path": "/a", "value": 1}])
        errors: list[PatchApplyError] = []
        store.apply_patch({"a": 0}, patch, errors)
        assert "unknown operation" in str(errors[0])

    def test_empty_path_targets_document_root(self, store: VersionStore):
        patch = Patch(1, 0, 0.0, [{"op": "replace", "path": "", "value": {}}])
        errors: list[PatchApplyError] = []
        assert store.apply_patch({"a": 0}, patch, errors) == {"a": 0}
        assert "document root" in str(errors[0])

    def test_slash_path_targets_empty_key(self, store: VersionStore):
        patch = Patch(1, 0, 0.0, [{"op": "replace", "path": "/", "value": 2}])
        errors: list[PatchApplyError] = []
        assert store.apply_patch({"": 1, "a": 0}, patch, errors) == {"": 2, "a": 0}
        assert errors == []


class TestDecideStrategy:
    def test_first_save_is_full(self, store: VersionStore):
        decision = store.decide_strategy(None, {"a": 1})
        assert decision.type == "full"
        assert decision.size == encoded_size({"a": 1})

    def test_small_change_is_delta(self, store: VersionStore):
        old = {"messages": [_msg(i) for i in range(50)]}
        new = {"messages": [_msg(i) for i in range(51)]}
        decision = store.decide_strategy(old, new)
        assert decision.type == "delta"
        assert decision.compression_ratio < store.settings.compression_threshold

    def test_large_change_is_full(self, store: VersionStore):
        decision = store.decide_strategy({"messages": [_msg(1)]}, {"messages": [_msg(2)]})
        assert decision.type == "full"


class TestChain:
    def _grow(self, store: VersionStore, count: int, start: int = 0) -> list[dict]:
        states = []
        messages = [_msg(i) for i in range(40)]
        for i in range(start, start + count):
            messages = messages + [_msg(100 + i)]
            state = {"messages": messages, "meta": {"n": i}}
            store.snapshot(state)
            states.append(copy.deepcopy(state))
        return states

    def test_versions_are_sequential(self, store: VersionStore):
        first = store.snapshot({"a": 1})
        second = store.snapshot({"a": 2})
        assert (first.version, second.version) == (1, 2)
        assert store.current_version == 2

    def test_load_every_version(self, store: VersionStore):
        states = self._grow(store, 5)
        assert store.stats()["delta_patches"] > 0
        for version, state in enumerate(states, start=1):
            assert store.load_version(version) == state

    def test_out_of_range(self, store: VersionStore):
        with pytest.raises(VersionOutOfRange):
            store.load_version(1)
        store.snapshot({"a": 1})
        with pytest.raises(VersionOutOfRange):
            store.load_version(0)
        with pytest.raises(VersionOutOfRange):
            store.load_version(2)

    def test_chain_collapses_past_limit(self):
        store = VersionStore(VersionSettings(max_patch_chain_length=3))
        states = self._grow(store, 8)
        assert store.chain_length <= 3
        assert store.stats()["collapses"] >= 1
        assert store.load_version(store.current_version) == states[-1]

    def test_compacted_versions_are_out_of_range(self):
        store = VersionStore(VersionSettings(max_patch_chain_length=2))
        self._grow(store, 6)
        assert store.base_version > 1
        with pytest.raises(VersionOutOfRange):
            store.load_version(1)

    def test_collapse_matches_replay(self, store: VersionStore):
        self._grow(store, 4)
        before = store.load_version(store.current_version)
        store.collapse()
        assert store.chain_length == 0
        assert store.load_version(store.current_version) == before

    def test_size_mismatch_logs_warning(self, store: VersionStore, caplog):
        self._grow(store, 2)
        store._sizes[2] += 1
        with caplog.at_level(logging.WARNING, logger="memoryforge.versioning"):
            store.load_version(2)
        assert "expected" in caplog.text

    def test_snapshot_copies_input(self, store: VersionStore):
        state = {"messages": [_msg(1)]}
        store.snapshot(state)
        state["messages"].append(_msg(2))
        assert store.load_version(1) == {"messages": [_msg(1)]}


class TestSerialization:
    def test_round_trip(self, store: VersionStore):
        states = self._states(store)
        restored = VersionStore.deserialize(store.serialize())
        assert restored.current_version == store.current_version
        assert restored.load_version(len(states)) == states[-1]
        assert restored.latest() == states[-1]

    def test_restored_store_continues_chain(self, store: VersionStore):
        states = self._states(store)
        restored = VersionStore.deserialize(store.serialize())
        nxt = {"messages": states[-1]["messages"] + [_msg(999)]}
        decision = restored.snapshot(nxt)
        assert decision.version == len(states) + 1
        assert restored.load_version(decision.version) == nxt

    @staticmethod
    def _states(store: VersionStore) -> list[dict]:
        states = []
        messages = [_msg(i) for i in range(30)]
        for i in range(3):
            messages = messages + [_msg(200 + i)]
            states.append({"messages": list(messages)})
            store.snapshot(states[-1])
        return states
