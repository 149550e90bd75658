"""
Tests for checkpoint persistence and the resumable batch cursor.
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intelgraph.util.checkpoint import CheckpointStore, ResumableCursor


@pytest.fixture
def checkpoints(tmp_path):
    return CheckpointStore(str(tmp_path / "ckpt"))


class TestCheckpointStore:

    def test_get_missing_returns_default(self, checkpoints):
        assert checkpoints.get("nothing") is None
        assert checkpoints.get("nothing", -1) == -1

    def test_set_then_get(self, checkpoints):
        checkpoints.set("normalization_last_processed_index", 49)
        assert checkpoints.get("normalization_last_processed_index") == 49

    def test_value_survives_new_instance(self, checkpoints):
        checkpoints.set("slot", {"index": 3, "last_key": "comp_x"})
        again = CheckpointStore(str(checkpoints.checkpoint_dir))
        assert again.get("slot") == {"index": 3, "last_key": "comp_x"}

    def test_file_is_plain_json(self, checkpoints):
        checkpoints.set("slot", 7)
        path = checkpoints.checkpoint_dir / "slot.json"
        with open(path) as f:
            assert json.load(f) == {"key": "slot", "value": 7}
        assert not list(checkpoints.checkpoint_dir.glob("*.tmp"))

    def test_delete(self, checkpoints):
        checkpoints.set("slot", 1)
        assert checkpoints.delete("slot") is True
        assert checkpoints.delete("slot") is False
        assert checkpoints.get("slot") is None


class TestResumableCursor:

    def test_walks_backlog_in_batches_then_clears(self, checkpoints):
        items = list(range(7))
        cursor = ResumableCursor(checkpoints, "walk")

        first = cursor.next_batch(items, 3)
        assert first == [0, 1, 2]
        cursor.advance(first)
        assert cursor.last_index == 2

        second = cursor.next_batch(items, 3)
        assert second == [3, 4, 5]
        cursor.advance(second)

        third = cursor.next_batch(items, 3)
        assert third == [6]
        cursor.advance(third)
        assert checkpoints.get("walk") is not None

        assert cursor.next_batch(items, 3) == []
        assert checkpoints.get("walk") is None
        assert cursor.next_batch(items, 3) == [0, 1, 2]

    def test_interrupted_run_resumes_at_next_batch(self, checkpoints):
        items = [f"item_{i:02d}" for i in range(10)]
        cursor = ResumableCursor(checkpoints, "resume")
        cursor.advance(cursor.next_batch(items, 4))
        # crash before advancing the second batch
        cursor.next_batch(items, 4)

        restarted = ResumableCursor(checkpoints, "resume")
        assert restarted.next_batch(items, 4) == ["item_04", "item_05", "item_06", "item_07"]
        assert restarted.batch_start == 4

    def test_key_resume_survives_shrinking_backlog(self, checkpoints):
        backlog = [{"entity_id": f"comp_{c}"} for c in "abcdefgh"]
        cursor = ResumableCursor(checkpoints, "shrink", key=lambda e: e["entity_id"])
        batch = cursor.next_batch(backlog, 3)
        cursor.advance(batch)
        assert checkpoints.get("shrink") == {"index": 2, "last_key": "comp_c"}

        # processed items left the backlog; an index-only resume would skip d, e, f
        remaining = backlog[3:]
        restarted = ResumableCursor(checkpoints, "shrink", key=lambda e: e["entity_id"])
        assert [e["entity_id"] for e in restarted.next_batch(remaining, 3)] == ["comp_d", "comp_e", "comp_f"]

    def test_legacy_integer_slot_is_read_as_index(self, checkpoints):
        checkpoints.set("legacy", 1)
        cursor = ResumableCursor(checkpoints, "legacy")
        assert cursor.next_batch(list("abcde"), 2) == ["c", "d"]

    def test_corrupt_slot_restarts(self, checkpoints):
        checkpoints.set("corrupt", "not-a-number")
        cursor = ResumableCursor(checkpoints, "corrupt")
        assert cursor.last_index == -1
        assert cursor.next_batch([1, 2], 5) == [1, 2]

    def test_advance_with_empty_batch_is_noop(self, checkpoints):
        cursor = ResumableCursor(checkpoints, "noop")
        assert cursor.advance([]) == -1
        assert checkpoints.get("noop") is None
