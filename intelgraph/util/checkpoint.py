"""
Checkpoint management for resumable batch sweeps.

A CheckpointStore is a tiny durable key/value store kept on local disk, outside
the main datastore, so a sweep killed mid-run resumes where it stopped. Each key
is one JSON file under the checkpoint directory.

A ResumableCursor walks a backlog sorted by a stable key in fixed-size batches:

    cursor = ResumableCursor(store, "normalization_last_processed_index", key=lambda e: e["entity_id"])
    batch = cursor.next_batch(backlog, batch_size=50)
    ...process and write batch...
    cursor.advance(batch)

The slot holds the index of the last processed item (-1 = nothing yet) and that
item's key. Items leave the backlog once processed, so on resume the key is
authoritative: the sweep continues after the last processed key. When the
backlog is exhausted the slot is deleted and the next sweep restarts.
"""

import bisect
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHECKPOINTS_DIR = Path("checkpoints")

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class CheckpointStore:
    """Durable scalar KV slots, one JSON file per key."""

    def __init__(self, checkpoint_dir: Optional[str] = None):
        self.checkpoint_dir = Path(checkpoint_dir) if checkpoint_dir else CHECKPOINTS_DIR

    def _path(self, key: str) -> Path:
        return self.checkpoint_dir / f"{_SAFE_KEY.sub('_', key)}.json"

    def _ensure_dir(self):
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        with open(path) as f:
            return json.load(f).get("value", default)

    def set(self, key: str, value: Any) -> None:
        """Write atomically (temp file + rename) so a crash never leaves half a file."""
        self._ensure_dir()
        fd, tmp = tempfile.mkstemp(dir=self.checkpoint_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"key": key, "value": value}, f)
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if path.exists():
            path.unlink()
            return True
        return False


class ResumableCursor:
    """Batch cursor over a stable-ordered backlog, persisted in a CheckpointStore."""

    def __init__(self, store: CheckpointStore, name: str, key: Optional[Callable[[Any], str]] = None):
        self.store = store
        self.name = name
        self.key = key
        self._batch_start: Optional[int] = None

    def _state(self) -> dict:
        value = self.store.get(self.name)
        if value is None:
            return {"index": -1, "last_key": None}
        if isinstance(value, dict):
            return {"index": int(value.get("index", -1)), "last_key": value.get("last_key")}
        try:
            return {"index": int(value), "last_key": None}
        except (TypeError, ValueError):
            logger.warning(f"Corrupt checkpoint '{self.name}'={value!r}, restarting from the beginning")
            return {"index": -1, "last_key": None}

    @property
    def last_index(self) -> int:
        return self._state()["index"]

    def _resume_position(self, items: Sequence[T]) -> int:
        state = self._state()
        if self.key is not None and state["last_key"] is not None:
            keys = [self.key(item) for item in items]
            return bisect.bisect_right(keys, state["last_key"])
        return state["index"] + 1

    def next_batch(self, items: Sequence[T], batch_size: int) -> List[T]:
        """
        Return the next unprocessed slice of items.

        An empty result means the backlog is exhausted; the slot is cleared so
        the following sweep starts over.
        """
        start = self._resume_position(items)
        if start >= len(items):
            if self.store.get(self.name) is not None:
                logger.info(f"Checkpoint '{self.name}': backlog exhausted, clearing")
            self.clear()
            self._batch_start = None
            return []
        batch = list(items[start:start + batch_size])
        self._batch_start = start
        logger.info(f"Checkpoint '{self.name}': items {start}..{start + len(batch) - 1} of {len(items)}")
        return batch

    @property
    def batch_start(self) -> Optional[int]:
        return self._batch_start

    def advance(self, batch: Sequence[T]) -> int:
        """Persist progress once the batch returned by next_batch has been written."""
        if not batch:
            return self.last_index
        start = self._batch_start if self._batch_start is not None else self.last_index + 1
        new_index = start + len(batch) - 1
        self.store.set(self.name, {
            "index": new_index,
            "last_key": self.key(batch[-1]) if self.key else None,
        })
        self._batch_start = None
        return new_index

    def clear(self) -> None:
        self.store.delete(self.name)
