"""
Tests for the job entry points used by the CLI.
"""

import os
import sys
import threading
from datetime import date, datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intelgraph import jobs
from intelgraph.agents.entity_normalizer import CHECKPOINT_KEY
from intelgraph.schemas.records import ANL_DAILY_SNAPSHOTS, COLLECTION_KEYS, FND_MASTER, QUEUE_TASKS, REG_ENTITIES
from intelgraph.util.checkpoint import CheckpointStore
from tests.conftest import InMemoryDocumentStore, make_llm, make_task


class TestCheckpointReset:

    def test_reset_default_key(self, config):
        CheckpointStore(config.checkpoint_dir).set(CHECKPOINT_KEY, {"index": 4, "last_key": "x"})
        assert jobs.reset_checkpoint(config) == {"key": CHECKPOINT_KEY, "deleted": True}
        assert jobs.reset_checkpoint(config) == {"key": CHECKPOINT_KEY, "deleted": False}

    def test_reset_named_key(self, config):
        CheckpointStore(config.checkpoint_dir).set("other", 1)
        assert jobs.reset_checkpoint(config, "other")["deleted"] is True


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_valid_rows_are_queued(self, store):
        rows = [make_task("t1"), make_task("t2", "PATENT"), {"id": "t3", "task_type": "BOGUS", "payload": {}}]
        rows[1].pop("created_timestamp")

        result = await jobs.enqueue_tasks(store, rows)

        assert result == {"enqueued": 2, "invalid": 1}
        queued = store.get(QUEUE_TASKS, "t2")
        assert queued["task_type"] == "PATENT"
        assert queued["created_timestamp"] is not None
        assert queued["retry_count"] == 0


class TestInitDb:

    def test_constraints_for_every_collection(self, store):
        assert jobs.init_db(store) == {"constraints": len(COLLECTION_KEYS)}
        assert store.key_fields[REG_ENTITIES] == "entity_id"
        assert store.key_fields[FND_MASTER] == "id"


class TestJobRunners:

    @pytest.mark.asyncio
    async def test_snapshot_job(self, store):
        store.upsert(FND_MASTER, [{
            "id": "f1", "primary_evidence_id": "evd_news_1", "linked_entity_ids": ["comp_acme"],
            "signal_strength_score": 6, "created_timestamp": datetime(2025, 3, 14, 8, 0, tzinfo=timezone.utc),
        }])
        summary = await jobs.run_snapshot_job(store, date(2025, 3, 14))
        assert summary.snapshots_written == 1
        assert store.get(ANL_DAILY_SNAPSHOTS, "comp_acme_2025-03-14") is not None

    @pytest.mark.asyncio
    async def test_normalization_job_uses_configured_checkpoint_dir(self, store, config):
        store.upsert(REG_ENTITIES, [
            {"entity_id": "comp_solo", "entity_type": "Company", "primary_name": "Solo", "monitoring_status": "pending_review"},
        ], key_field="entity_id")

        summary = await jobs.run_normalization_job(store, llm=make_llm(lambda schema, messages: None), config=config)

        assert summary.normalized == 1
        saved = CheckpointStore(config.checkpoint_dir).get(CHECKPOINT_KEY)
        assert saved["last_key"] == "comp_solo"

    @pytest.mark.asyncio
    async def test_relationship_and_hierarchy_jobs_with_nothing_to_do(self, store, config):
        llm = make_llm(lambda schema, messages: None)
        relationships = await jobs.run_relationship_job(store, llm=llm, config=config)
        hierarchy = await jobs.run_hierarchy_job(store, llm=llm, config=config)
        enrichment = await jobs.run_enrichment_job(store, llm=llm, config=config)
        assert relationships.processed == 0
        assert hierarchy.processed == 0
        assert enrichment.processed == 0
        assert llm.calls == []


class ThreadRecordingStore(InMemoryDocumentStore):
    """Remembers which thread every datastore call ran on."""

    def __init__(self):
        super().__init__()
        self.threads = []

    def query(self, *args, **kwargs):
        self.threads.append(threading.get_ident())
        return super().query(*args, **kwargs)

    def get(self, *args, **kwargs):
        self.threads.append(threading.get_ident())
        return super().get(*args, **kwargs)

    def upsert(self, *args, **kwargs):
        self.threads.append(threading.get_ident())
        return super().upsert(*args, **kwargs)


def _failing(schema, messages):
    return RuntimeError("model unavailable")


class TestJobsStayOffTheEventLoop:

    @pytest.fixture
    def recording_store(self):
        store = ThreadRecordingStore()
        store.upsert(REG_ENTITIES, [
            {"entity_id": "comp_acme", "entity_type": "Company", "primary_name": "Acme",
             "monitoring_status": "pending_review"},
            {"entity_id": "comp_acme_inc", "entity_type": "Company", "primary_name": "Acme Inc",
             "monitoring_status": "normalized"},
            {"entity_id": "tech_ai", "entity_type": "Technology", "primary_name": "Artificial Intelligence",
             "parent_id": "tech_root", "monitoring_status": "active"},
            {"entity_id": "tech_llm", "entity_type": "Technology", "primary_name": "LLM",
             "monitoring_status": "active"},
        ], key_field="entity_id")
        store.upsert(FND_MASTER, [{
            "id": "f1", "finding_status": "SIGNAL_IDENTIFIED", "title": "Acme ships an LLM",
            "linked_entity_ids": ["comp_acme_inc", "tech_llm"],
            "created_timestamp": datetime(2025, 3, 14, 8, 0, tzinfo=timezone.utc),
        }])
        store.threads = []
        return store

    @pytest.mark.asyncio
    async def test_datastore_calls_run_in_worker_threads(self, recording_store, config):
        loop_thread = threading.get_ident()
        llm = make_llm(_failing)

        await jobs.run_relationship_job(recording_store, llm=llm, config=config)
        await jobs.run_hierarchy_job(recording_store, llm=llm, config=config)
        await jobs.run_normalization_job(recording_store, llm=llm, config=config)
        await jobs.run_enrichment_job(recording_store, llm=llm, config=config)
        await jobs.run_snapshot_job(recording_store, date(2025, 3, 14))
        calls = list(recording_store.threads)

        assert recording_store.get(FND_MASTER, "f1")["finding_status"] == "ANALYSIS_FAILED"
        assert "ai_hierarchy_error" in recording_store.get(REG_ENTITIES, "tech_llm", key_field="entity_id")
        assert calls
        assert loop_thread not in calls
