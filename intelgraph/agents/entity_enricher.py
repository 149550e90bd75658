"""
MODULE: Entity Enricher
DESCRIPTION: Fills descriptive fields on registry entities with one type-specific LLM call each.

Candidates, oldest created first:
- normalized entities
- active entities never enriched
- active entities last enriched more than enrichment_interval_days ago

A failed or empty answer still stamps last_ai_processed_timestamp (plus
ai_processing_error) so one bad entity cannot monopolize every run.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from intelgraph.agents.entity_dictionary import EntityDictionary
from intelgraph.schemas.llm import ENRICHMENT_MODELS, EnrichmentBase
from intelgraph.schemas.records import REG_ENTITIES, MonitoringStatus
from intelgraph.schemas.summaries import EnrichmentRunSummary
from intelgraph.util.config import PipelineConfig
from intelgraph.util.document_store import DocumentStore, Filter, Op, OrderBy
from intelgraph.util.llm_client import ainvoke_structured, structured

logger = logging.getLogger(__name__)


# ============================================================================
# PROMPTS
# ============================================================================

ENRICHMENT_ROLES = {
    "Company": "a corporate research analyst",
    "Technology": "a technology taxonomist and expert in emerging technologies",
    "Person": "a professional profiler",
    "Product": "a product analyst and technical writer",
    "Financial_Concept": "a financial analyst specializing in technology markets",
    "Organization_List": "a data management expert on organizational indices and rankings",
    "Business_Event": "a technology industry event analyst",
    "Research_Firm": "a market research industry expert",
    "Publishing_Platform": "a media and publishing industry expert",
}

ENRICHMENT_SYSTEM_PROMPT = """You are {role}.

Provide accurate, factual information about the {entity_type} named by the user.
Fill every field you can determine; return null (not an empty string) for anything
you do not know. Descriptions are at most 3-4 sentences. Scores are integers 1-10."""


def _is_due(entity: dict, cutoff: datetime) -> bool:
    last = entity.get("last_ai_processed_timestamp")
    return last is None or last <= cutoff


class EntityEnricher:
    def __init__(self, store: DocumentStore, llm=None, config: Optional[PipelineConfig] = None,
                 dictionary: Optional[EntityDictionary] = None, semaphore: Optional[asyncio.Semaphore] = None):
        if llm is None:
            from intelgraph.util.services import get_services
            llm = get_services().llm
        self.store = store
        self.llm = llm
        self.config = config or PipelineConfig()
        self.dictionary = dictionary
        self.semaphore = semaphore or asyncio.Semaphore(self.config.llm_concurrency)
        self._runnables = {}

    def _runnable(self, entity_type: str):
        if entity_type not in self._runnables:
            self._runnables[entity_type] = structured(self.llm, ENRICHMENT_MODELS.get(entity_type, EnrichmentBase))
        return self._runnables[entity_type]

    def candidates(self, now: Optional[datetime] = None) -> List[dict]:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.config.enrichment_interval_days)

        normalized = self.store.query(REG_ENTITIES, filters=[
            Filter("monitoring_status", Op.EQ, MonitoringStatus.NORMALIZED.value),
        ])
        never = self.store.query(REG_ENTITIES, filters=[
            Filter("monitoring_status", Op.EQ, MonitoringStatus.ACTIVE.value),
            Filter("last_ai_processed_timestamp", Op.IS_NULL),
        ])
        stale = self.store.query(REG_ENTITIES, filters=[
            Filter("monitoring_status", Op.EQ, MonitoringStatus.ACTIVE.value),
            Filter("last_ai_processed_timestamp", Op.LTE, cutoff),
        ])

        by_id: Dict[str, dict] = {}
        for entity in [*normalized, *never, *stale]:
            by_id.setdefault(entity["entity_id"], entity)
        due = [e for e in by_id.values() if e.get("monitoring_status") == MonitoringStatus.NORMALIZED.value
               or _is_due(e, cutoff)]

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        due.sort(key=lambda e: (e.get("created_timestamp") or oldest, e["entity_id"]))
        return due[:self.config.enrichment_batch_size]

    async def run(self) -> EnrichmentRunSummary:
        summary = EnrichmentRunSummary()
        entities = await asyncio.to_thread(self.candidates)
        if not entities:
            logger.info("Enrichment: nothing due")
            return summary
        if self.dictionary is None:
            self.dictionary = await asyncio.to_thread(EntityDictionary.build, self.store)

        logger.info(f"Enrichment: {len(entities)} entities")
        updates = await asyncio.gather(*(self._enrich(e) for e in entities))
        for update in updates:
            summary.processed += 1
            if update.get("ai_processing_error"):
                summary.errors += 1
            else:
                summary.enriched += 1
        await asyncio.to_thread(self.store.upsert, REG_ENTITIES, list(updates), key_field="entity_id")

        logger.info(f"Enrichment done: {summary.enriched} enriched, {summary.errors} errors")
        return summary

    async def _enrich(self, entity: dict) -> dict:
        entity_id = entity["entity_id"]
        entity_type = entity.get("entity_type") or "Other"
        now = datetime.now(timezone.utc)
        update = {"entity_id": entity_id, "last_ai_processed_timestamp": now, "updated_timestamp": now}

        messages = [
            ("system", ENRICHMENT_SYSTEM_PROMPT.format(
                role=ENRICHMENT_ROLES.get(entity_type, "a technology intelligence analyst"),
                entity_type=entity_type.replace("_", " ").lower(),
            )),
            ("human", json.dumps({"name": entity.get("primary_name"), "aliases": entity.get("aliases") or []},
                                 ensure_ascii=False)),
        ]
        try:
            async with self.semaphore:
                result: EnrichmentBase = await ainvoke_structured(
                    self._runnable(entity_type), messages, self.config.llm_timeout_seconds
                )
        except Exception as e:
            logger.warning(f"Enrichment failed for {entity_id}: {e}")
            update["ai_processing_error"] = str(e)
            return update

        if result.is_empty():
            logger.warning(f"Enrichment for {entity_id} came back empty")
            update["ai_processing_error"] = "empty enrichment response"
            return update

        fields = {k: v for k, v in result.to_fields().items() if v is not None}
        if not fields.get("description") and fields.get("definition"):
            fields["description"] = fields["definition"]
        if entity_type == "Product" and fields.get("manufacturer_name"):
            manufacturer_id = self.dictionary.lookup("Company", fields["manufacturer_name"])
            if manufacturer_id:
                fields["manufacturer_id"] = manufacturer_id

        update.update(fields)
        update["ai_processing_error"] = None
        status = entity.get("monitoring_status")
        if status in (MonitoringStatus.NORMALIZED.value, MonitoringStatus.PENDING_REVIEW.value):
            update["monitoring_status"] = MonitoringStatus.ENRICHED.value
        return update
