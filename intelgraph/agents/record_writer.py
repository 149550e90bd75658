"""
MODULE: Record Writer
DESCRIPTION: Builds Evidence and Finding records for accepted tasks and persists them.

Write order is entities -> evidence -> findings, so a Finding never points at
records that do not exist. Every write is an upsert on a deterministic key; a
run killed half-way leaves nothing that the next run would duplicate.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from intelgraph.schemas.llm import TaskAnalysis
from intelgraph.schemas.records import (
    FND_MASTER,
    REG_ENTITIES,
    Entity,
    Evidence,
    EvidenceLink,
    Finding,
    FindingStatus,
)
from intelgraph.schemas.tasks import Task
from intelgraph.util.document_store import DocumentStore
from intelgraph.util.ids import make_finding_id

logger = logging.getLogger(__name__)


def build_evidence(
    task: Task,
    analysis: TaskAnalysis,
    evidence_id: str,
    duplicate_check_hash: str,
    linked_entity_ids: Sequence[str],
    embedding: Optional[List[float]],
    evidence_chain: Sequence[EvidenceLink],
    now: Optional[datetime] = None,
) -> Evidence:
    now = now or datetime.now(timezone.utc)
    linked = list(linked_entity_ids)
    trigger = task.payload.trigger_entity_id
    if trigger and trigger not in linked:
        linked.insert(0, trigger)
    return Evidence(
        id=evidence_id,
        task_id=task.id,
        task_type=task.task_type,
        source_id=task.payload.source_id,
        title=task.payload.title,
        url=task.payload.url,
        ai_summary=analysis.ai_summary,
        ai_keywords=list(analysis.ai_keywords),
        ai_value_score=analysis.value_score,
        embedding_vector=embedding,
        has_embedding=embedding is not None,
        linked_entity_ids=linked,
        evidence_chain=list(evidence_chain),
        trigger_entity_id=trigger,
        # undated items count as published when ingested
        publication_timestamp=task.payload.publication_date or now,
        duplicate_check_hash=duplicate_check_hash,
        created_timestamp=now,
    )


def build_finding(evidence: Evidence, now: Optional[datetime] = None) -> Finding:
    now = now or datetime.now(timezone.utc)
    return Finding(
        id=make_finding_id(evidence.id),
        finding_status=FindingStatus.SIGNAL_IDENTIFIED,
        task_type=evidence.task_type,
        title=evidence.title,
        summary=evidence.ai_summary,
        url=evidence.url,
        keywords=list(evidence.ai_keywords),
        signal_strength_score=evidence.ai_value_score,
        linked_entity_ids=list(evidence.linked_entity_ids),
        primary_evidence_id=evidence.id,
        evidence_chain=list(evidence.evidence_chain),
        publication_timestamp=evidence.publication_timestamp,
        created_timestamp=now,
        updated_timestamp=now,
    )


class RecordWriter:
    def __init__(self, store: DocumentStore):
        self.store = store

    def evidence_exists(self, collection: str, evidence_id: str) -> bool:
        return self.store.get(collection, evidence_id) is not None

    def write_entities(self, entities: Sequence[Entity]) -> int:
        if not entities:
            return 0
        count = self.store.upsert(REG_ENTITIES, [e.to_document() for e in entities], key_field="entity_id")
        logger.info(f"Wrote {count} new entities")
        return count

    def write_records(self, records: Sequence[tuple]) -> int:
        """records: (collection, Evidence, Finding) triples."""
        if not records:
            return 0
        by_collection: Dict[str, List[dict]] = defaultdict(list)
        for collection, evidence, _ in records:
            by_collection[collection].append(evidence.to_document())
        for collection, docs in by_collection.items():
            self.store.upsert(collection, docs)
            logger.debug(f"Wrote {len(docs)} evidence records to {collection}")

        findings = [finding.to_document() for _, _, finding in records]
        self.store.upsert(FND_MASTER, findings)
        logger.info(f"Wrote {len(records)} evidence records and findings")
        return len(records)
