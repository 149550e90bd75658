"""
Tests for the Neo4j-backed document store.

The Neo4j client is mocked; these tests check document encoding and the
Cypher the store sends, not a live database.
"""

import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intelgraph.schemas.records import FindingStatus
from intelgraph.util.document_store import (
    Filter,
    Neo4jDocumentStore,
    Op,
    OrderBy,
    decode_document,
    encode_document,
)
from intelgraph.util.errors import DatastoreUnavailableError
from intelgraph.util.neo4j_client import Neo4jClient


@pytest.fixture
def neo4j():
    client = MagicMock()
    client.query.return_value = []
    return client


@pytest.fixture
def doc_store(neo4j):
    return Neo4jDocumentStore(neo4j=neo4j, batch_size=2)


class TestEncoding:

    def test_nested_values_become_json_properties(self):
        doc = {
            "id": "evd_pap_1",
            "evidence_chain": [{"evidence_id": "evd_pap_1", "relation": "primary_source"}],
            "meta": {"a": 1},
            "linked_entity_ids": ["comp_a", "comp_b"],
            "status": FindingStatus.SIGNAL_IDENTIFIED,
        }
        props = encode_document(doc)
        assert "evidence_chain" not in props
        assert "evidence_chain__json" in props
        assert props["meta__json"] == '{"a": 1}'
        assert props["linked_entity_ids"] == ["comp_a", "comp_b"]
        assert props["status"] == "SIGNAL_IDENTIFIED"

    def test_decode_reverses_json_properties(self):
        props = encode_document({"id": "x", "chain": [{"k": "v"}], "score": 7})
        assert decode_document(props) == {"id": "x", "chain": [{"k": "v"}], "score": 7}

    def test_decode_converts_driver_temporals(self):
        ts = datetime(2025, 3, 14, tzinfo=timezone.utc)
        temporal = MagicMock()
        temporal.to_native.return_value = ts
        assert decode_document({"created_timestamp": temporal}) == {"created_timestamp": ts}

    def test_invalid_field_name_rejected(self):
        with pytest.raises(ValueError):
            encode_document({"bad-field": 1})


class TestNeo4jDocumentStore:

    def test_upsert_merges_by_key_in_batches(self, doc_store, neo4j):
        docs = [{"id": f"t{i}", "title": "x"} for i in range(5)]
        assert doc_store.upsert("QUEUE_TASKS", docs) == 5
        assert neo4j.query.call_count == 3
        cypher, params = neo4j.query.call_args_list[0].args
        assert "MERGE (n:`QUEUE_TASKS` {`id`: row.key})" in cypher
        assert "SET n += row.props" in cypher
        assert params["rows"][0] == {"key": "t0", "props": {"title": "x"}}

    def test_upsert_skips_documents_without_key(self, doc_store, neo4j):
        assert doc_store.upsert("REG_ENTITIES", [{"name": "no key"}], key_field="entity_id") == 0
        neo4j.query.assert_not_called()

    def test_get_decodes_document(self, doc_store, neo4j):
        neo4j.query.return_value = [{"doc": {"id": "a", "chain__json": "[1, 2]"}}]
        assert doc_store.get("FND_MASTER", "a") == {"id": "a", "chain": [1, 2]}

    def test_get_missing_returns_none(self, doc_store):
        assert doc_store.get("FND_MASTER", "missing") is None

    def test_query_builds_where_order_and_limit(self, doc_store, neo4j):
        doc_store.query(
            "REG_ENTITIES",
            [
                Filter("entity_type", Op.EQ, "Technology"),
                Filter("parent_id", Op.IS_NULL),
                Filter("linked_entity_ids", Op.ARRAY_CONTAINS_ANY, ("a", "b")),
                Filter("created_timestamp", Op.GTE, 1),
            ],
            order_by=OrderBy("entity_id", descending=True),
            limit=10,
        )
        cypher, params = neo4j.query.call_args.args
        assert cypher.startswith("MATCH (n:`REG_ENTITIES`) WHERE ")
        assert "n.`entity_type` = $p0" in cypher
        assert "n.`parent_id` IS NULL" in cypher
        assert "any(x IN coalesce(n.`linked_entity_ids`, []) WHERE x IN $p2)" in cypher
        assert "n.`created_timestamp` >= $p3" in cypher
        assert cypher.endswith("ORDER BY n.`entity_id` DESC LIMIT $limit")
        assert params == {"p0": "Technology", "p2": ["a", "b"], "p3": 1, "limit": 10}

    def test_query_enum_values_are_unwrapped(self, doc_store, neo4j):
        doc_store.query("FND_MASTER", [Filter("status", Op.EQ, FindingStatus.SIGNAL_IDENTIFIED)])
        _, params = neo4j.query.call_args.args
        assert params == {"p0": "SIGNAL_IDENTIFIED"}

    def test_query_rejects_injected_label(self, doc_store):
        with pytest.raises(ValueError):
            doc_store.query("FND_MASTER) DETACH DELETE (m")

    def test_delete_batches_keys(self, doc_store, neo4j):
        assert doc_store.delete("QUEUE_TASKS", ["a", "b", "c", None]) == 3
        assert neo4j.query.call_count == 2
        assert neo4j.query.call_args_list[1].args[1] == {"keys": ["c"]}

    def test_ensure_indexes_creates_constraints(self, doc_store, neo4j):
        doc_store.ensure_indexes({"REG_ENTITIES": "entity_id"})
        cypher = neo4j.query.call_args.args[0]
        assert "CREATE CONSTRAINT reg_entities_entity_id_unique IF NOT EXISTS" in cypher
        assert "REQUIRE n.`entity_id` IS UNIQUE" in cypher


class TestNeo4jClientWarmup:

    @pytest.fixture
    def driver(self):
        with patch("intelgraph.util.neo4j_client.GraphDatabase") as graph_database:
            driver = MagicMock()
            graph_database.driver.return_value = driver
            yield driver

    @pytest.fixture
    def client(self, driver):
        return Neo4jClient(uri="neo4j+s://example", username="neo4j", password="secret")

    def test_waits_for_sleeping_instance(self, client, driver):
        from neo4j.exceptions import ServiceUnavailable

        driver.verify_connectivity.side_effect = [ServiceUnavailable("asleep"), ServiceUnavailable("asleep"), None]
        with patch("intelgraph.util.neo4j_client.time.sleep") as sleep:
            assert client.warmup(max_attempts=5, wait_seconds=1.0) is True
        assert driver.verify_connectivity.call_count == 3
        assert sleep.call_count == 2

    def test_gives_up_with_datastore_error(self, client, driver):
        from neo4j.exceptions import ServiceUnavailable

        driver.verify_connectivity.side_effect = ServiceUnavailable("gone")
        with patch("intelgraph.util.neo4j_client.time.sleep"):
            with pytest.raises(DatastoreUnavailableError):
                client.warmup(max_attempts=2, wait_seconds=0)
        assert driver.verify_connectivity.call_count == 2
