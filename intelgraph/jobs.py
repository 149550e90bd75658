"""
MODULE: Jobs
DESCRIPTION: Entry points for the second-stage jobs that run independently of ingestion.

Each job is triggered externally (CLI / cron), works on the Finding and Entity
state left by ingestion, and returns a summary model.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from pydantic import ValidationError

from intelgraph.agents.entity_enricher import EntityEnricher
from intelgraph.agents.entity_normalizer import CHECKPOINT_KEY, EntityNormalizer
from intelgraph.agents.hierarchy_classifier import HierarchyClassifier
from intelgraph.agents.relationship_extractor import RelationshipExtractor
from intelgraph.agents.snapshot_generator import SnapshotGenerator
from intelgraph.agents.task_queue import TaskQueue
from intelgraph.schemas.records import COLLECTION_KEYS
from intelgraph.schemas.summaries import (
    EnrichmentRunSummary,
    HierarchyRunSummary,
    NormalizationRunSummary,
    RelationshipRunSummary,
    SnapshotRunSummary,
)
from intelgraph.schemas.tasks import Task
from intelgraph.util.checkpoint import CheckpointStore
from intelgraph.util.config import PipelineConfig
from intelgraph.util.document_store import DocumentStore

logger = logging.getLogger(__name__)


async def run_relationship_job(store: DocumentStore, llm=None,
                               config: Optional[PipelineConfig] = None) -> RelationshipRunSummary:
    logger.info("--- RELATIONSHIP EXTRACTION ---")
    extractor = RelationshipExtractor(store, llm=llm, config=config or PipelineConfig.from_env())
    return await extractor.run()


async def run_hierarchy_job(store: DocumentStore, llm=None,
                            config: Optional[PipelineConfig] = None) -> HierarchyRunSummary:
    logger.info("--- HIERARCHY CLASSIFICATION ---")
    classifier = HierarchyClassifier(store, llm=llm, config=config or PipelineConfig.from_env())
    return await classifier.run()


async def run_snapshot_job(store: DocumentStore, day: Optional[date] = None) -> SnapshotRunSummary:
    logger.info("--- DAILY SNAPSHOT ---")
    return await asyncio.to_thread(SnapshotGenerator(store).run, day)


async def run_normalization_job(store: DocumentStore, llm=None, config: Optional[PipelineConfig] = None,
                                checkpoints: Optional[CheckpointStore] = None) -> NormalizationRunSummary:
    logger.info("--- ENTITY NORMALIZATION ---")
    config = config or PipelineConfig.from_env()
    checkpoints = checkpoints or CheckpointStore(config.checkpoint_dir)
    normalizer = EntityNormalizer(store, checkpoints, llm=llm, config=config)
    return await normalizer.run()


async def run_enrichment_job(store: DocumentStore, llm=None,
                             config: Optional[PipelineConfig] = None) -> EnrichmentRunSummary:
    logger.info("--- ENTITY ENRICHMENT ---")
    enricher = EntityEnricher(store, llm=llm, config=config or PipelineConfig.from_env())
    return await enricher.run()


def reset_checkpoint(config: PipelineConfig, key: Optional[str] = None) -> Dict[str, object]:
    key = key or CHECKPOINT_KEY
    deleted = CheckpointStore(config.checkpoint_dir).delete(key)
    logger.info(f"Checkpoint '{key}' {'deleted' if deleted else 'was not set'}")
    return {"key": key, "deleted": deleted}


async def enqueue_tasks(store: DocumentStore, rows: List[dict]) -> Dict[str, int]:
    """Validate raw task rows and write the valid ones to the queue."""
    tasks, invalid = [], 0
    now = datetime.now(timezone.utc)
    for row in rows:
        try:
            task = Task.model_validate(row)
        except ValidationError as e:
            invalid += 1
            logger.warning(f"Skipping invalid task {row.get('id')}: {e.error_count()} errors")
            continue
        if task.created_timestamp is None:
            task = task.model_copy(update={"created_timestamp": now})
        tasks.append(task)
    written = await asyncio.to_thread(TaskQueue(store).enqueue, tasks)
    return {"enqueued": written, "invalid": invalid}


def init_db(store: DocumentStore) -> Dict[str, int]:
    store.ensure_indexes(COLLECTION_KEYS)
    return {"constraints": len(COLLECTION_KEYS)}
