"""
MODULE: Entity Dictionary
DESCRIPTION: Run-scoped lookup table of every live entity in the registry.

Built once at the start of a run from REG_ENTITIES:

    type -> { lowercased primary_name | alias -> entity_id }

Merged entities are skipped so every alias resolves to a live entity. The
dictionary is the only shared mutable structure in a run; writers take the
per-type lock (lock_for) around lookup-then-register so two concurrent
resolutions of the same name cannot create two entities.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Iterable, Optional

from intelgraph.schemas.records import ENTITY_TYPES, OTHER_ENTITY_TYPE, REG_ENTITIES, MonitoringStatus
from intelgraph.util.document_store import DocumentStore
from intelgraph.util.errors import DatastoreUnavailableError

logger = logging.getLogger(__name__)


def _normalize_type(entity_type: Optional[str]) -> str:
    return entity_type if entity_type in ENTITY_TYPES else OTHER_ENTITY_TYPE


def _key(name: str) -> str:
    return (name or "").strip().lower()


class EntityDictionary:
    """Owner of the run's name -> entity_id index."""

    def __init__(self):
        self._by_type: Dict[str, Dict[str, str]] = defaultdict(dict)
        self._names: Dict[str, str] = {}
        self._types: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # merged entity_id -> surviving entity_id
        self._redirects: Dict[str, str] = {}

    @classmethod
    def build(cls, store: DocumentStore) -> "EntityDictionary":
        """Load every live entity. Failure here is fatal for the run."""
        try:
            docs = store.query(REG_ENTITIES)
        except Exception as e:
            raise DatastoreUnavailableError(f"Could not load entity registry: {e}") from e

        dictionary = cls()
        skipped = 0
        for doc in docs:
            if doc.get("monitoring_status") == MonitoringStatus.MERGED_INTO.value:
                if doc.get("entity_id") and doc.get("merged_into_id"):
                    dictionary._redirects[doc["entity_id"]] = doc["merged_into_id"]
                skipped += 1
                continue
            entity_id = doc.get("entity_id")
            name = doc.get("primary_name")
            if not entity_id or not name:
                continue
            dictionary._index(entity_id, doc.get("entity_type"), name, doc.get("aliases") or [])

        logger.info(f"Entity dictionary: {len(dictionary)} entities loaded ({skipped} merged skipped)")
        return dictionary

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._names

    def _index(self, entity_id: str, entity_type: Optional[str], primary_name: str, aliases: Iterable[str]):
        bucket = self._by_type[_normalize_type(entity_type)]
        for name in [primary_name, *aliases]:
            key = _key(name)
            # First writer wins; an alias never steals a name already taken
            if key and key not in bucket:
                bucket[key] = entity_id
        self._names[entity_id] = primary_name
        self._types[entity_id] = _normalize_type(entity_type)

    def lock_for(self, entity_type: str) -> asyncio.Lock:
        entity_type = _normalize_type(entity_type)
        if entity_type not in self._locks:
            self._locks[entity_type] = asyncio.Lock()
        return self._locks[entity_type]

    def lookup(self, entity_type: str, name: str) -> Optional[str]:
        return self._by_type.get(_normalize_type(entity_type), {}).get(_key(name))

    def lookup_any(self, entity_type: str, names: Iterable[str]) -> Optional[str]:
        """First hit among names, in order."""
        for name in names:
            hit = self.lookup(entity_type, name)
            if hit:
                return hit
        return None

    def register(self, entity_id: str, entity_type: str, primary_name: str, aliases: Iterable[str] = ()) -> None:
        """Make a new (or re-canonicalized) entity visible to the rest of the run."""
        self._index(entity_id, entity_type, primary_name, aliases)

    def unregister(self, entity_id: str, merged_into: Optional[str] = None) -> None:
        """Drop an entity that was merged away; its names stay free for re-pointing."""
        if merged_into:
            self._redirects[entity_id] = merged_into
        entity_type = self._types.pop(entity_id, None)
        self._names.pop(entity_id, None)
        if entity_type is None:
            return
        bucket = self._by_type[entity_type]
        for key in [k for k, v in bucket.items() if v == entity_id]:
            del bucket[key]

    def repoint(self, entity_type: str, names: Iterable[str], entity_id: str) -> None:
        """Force names to resolve to entity_id (used after a merge)."""
        bucket = self._by_type[_normalize_type(entity_type)]
        for name in names:
            key = _key(name)
            if key:
                bucket[key] = entity_id

    def canonical_id(self, entity_id: str) -> str:
        """Follow merge redirects to the live entity."""
        seen = set()
        while entity_id in self._redirects and entity_id not in seen:
            seen.add(entity_id)
            entity_id = self._redirects[entity_id]
        return entity_id

    def name_of(self, entity_id: str) -> Optional[str]:
        return self._names.get(entity_id)
