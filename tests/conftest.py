"""
Shared test fixtures for the intelgraph test suite.
"""

import copy
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from unittest.mock import MagicMock

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intelgraph.util.config import PipelineConfig
from intelgraph.util.document_store import Filter, Op, OrderBy


# =============================================================================
# In-memory datastore
# =============================================================================

def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class InMemoryDocumentStore:
    """
    Dict-backed implementation of the DocumentStore contract.

    Mirrors the Neo4j store: upserts merge into existing documents and a None
    value removes the field.
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}
        self.key_fields: Dict[str, str] = {}
        self.fail_collections: set = set()

    def _check(self, collection: str):
        if collection in self.fail_collections:
            raise ConnectionError(f"{collection} unavailable")

    def upsert(self, collection: str, docs: Sequence[dict], key_field: str = "id") -> int:
        self._check(collection)
        self.key_fields[collection] = key_field
        bucket = self.collections.setdefault(collection, {})
        count = 0
        for doc in docs:
            key = doc.get(key_field)
            if not key:
                continue
            current = bucket.setdefault(key, {})
            for field, value in copy.deepcopy(doc).items():
                value = _plain(value)
                if value is None:
                    current.pop(field, None)
                else:
                    current[field] = value
            count += 1
        return count

    def get(self, collection: str, key: str, key_field: str = "id") -> Optional[dict]:
        self._check(collection)
        for doc in self.collections.get(collection, {}).values():
            if doc.get(key_field) == key:
                return copy.deepcopy(doc)
        return None

    def query(self, collection: str, filters: Sequence[Filter] = (), order_by: Optional[OrderBy] = None,
              limit: Optional[int] = None) -> List[dict]:
        self._check(collection)
        docs = [d for d in self.collections.get(collection, {}).values() if all(self._match(d, f) for f in filters)]
        if order_by:
            present = [d for d in docs if d.get(order_by.field) is not None]
            missing = [d for d in docs if d.get(order_by.field) is None]
            present.sort(key=lambda d: d[order_by.field], reverse=order_by.descending)
            docs = missing + present if order_by.descending else present + missing
        if limit is not None:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    @staticmethod
    def _match(doc: dict, flt: Filter) -> bool:
        value = doc.get(flt.field)
        target = _plain(flt.value)
        if flt.op == Op.EQ:
            return value == target
        if flt.op == Op.GTE:
            return value is not None and value >= target
        if flt.op == Op.LTE:
            return value is not None and value <= target
        if flt.op == Op.IS_NULL:
            return value is None
        if flt.op == Op.ARRAY_CONTAINS_ANY:
            return any(item in (target or []) for item in (value or []))
        raise ValueError(flt.op)

    def delete(self, collection: str, keys: Sequence[str], key_field: str = "id") -> int:
        self._check(collection)
        bucket = self.collections.get(collection, {})
        keys = [k for k in keys if k]
        for key in keys:
            bucket.pop(key, None)
        return len(keys)

    def ensure_indexes(self, key_fields: Dict[str, str]) -> None:
        self.key_fields.update(key_fields)

    # helpers for assertions
    def all(self, collection: str) -> List[dict]:
        return list(copy.deepcopy(self.collections.get(collection, {})).values())


# =============================================================================
# Fake chat model
# =============================================================================

def make_llm(responder):
    """
    Chat-model stand-in for with_structured_output(schema, include_raw=True).

    responder(schema, messages) returns the parsed object, or an Exception
    instance to simulate a failed call. Every call is recorded on llm.calls.
    """
    llm = MagicMock()
    llm.calls = []

    def with_structured_output(schema, include_raw=False):
        runnable = MagicMock()

        def invoke(messages):
            llm.calls.append((schema, messages))
            result = responder(schema, messages)
            if isinstance(result, Exception):
                raise result
            return {"raw": MagicMock(), "parsed": result, "parsing_error": None}

        runnable.invoke.side_effect = invoke
        return runnable

    llm.with_structured_output.side_effect = with_structured_output
    return llm


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(checkpoint_dir=str(tmp_path / "checkpoints"), llm_timeout_seconds=5.0)


@pytest.fixture
def mock_embeddings_client():
    """Create a mock embeddings client."""
    mock = MagicMock()
    mock.embed_documents.side_effect = lambda texts: [[0.1] * 8 for _ in texts]
    return mock


@pytest.fixture
def now():
    return datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


def make_task(task_id: str, task_type: str = "TECH_NEWS", title: str = "Title", summary: str = "Summary",
              url: Optional[str] = None, created: Optional[datetime] = None, **payload) -> dict:
    """Raw queue row as a harvester would write it."""
    return {
        "id": task_id,
        "task_type": task_type,
        "payload": {
            "title": title,
            "summary": summary,
            "url": url if url is not None else f"https://example.com/{task_id}",
            "publication_date": "2025-03-10T08:00:00Z",
            **payload,
        },
        "created_timestamp": created or datetime(2025, 3, 14, 10, 0, tzinfo=timezone.utc),
    }


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "requires_llm: marks tests that require actual LLM calls"
    )
    config.addinivalue_line(
        "markers", "requires_neo4j: marks tests that require Neo4j connection"
    )
