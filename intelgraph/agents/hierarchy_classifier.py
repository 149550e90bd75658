"""
MODULE: Hierarchy Classifier
DESCRIPTION: Attaches orphan Technology entities to a parent in the existing technology tree.

Orphans are Technology entities with no parent_id that have not been visited
yet. Candidate parents are Technology entities that already sit in the tree
(have a parent_id). The model picks one candidate id or null; anything not in
the candidate list counts as a miss. Every visited orphan is stamped with
ai_hierarchy_checked_timestamp so misses are not retried forever.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from intelgraph.schemas.llm import HierarchyDecision
from intelgraph.schemas.records import REG_ENTITIES, MonitoringStatus
from intelgraph.schemas.summaries import HierarchyRunSummary
from intelgraph.util.config import PipelineConfig
from intelgraph.util.document_store import DocumentStore, Filter, Op, OrderBy
from intelgraph.util.llm_client import ainvoke_structured, structured

logger = logging.getLogger(__name__)

TECHNOLOGY = "Technology"


HIERARCHY_SYSTEM_PROMPT = """You are a technology taxonomist maintaining a hierarchy of technologies.

Given one technology and a list of candidate parent categories ({id, name, summary}),
choose the single candidate that is the most specific correct parent (the broader
field this technology belongs to). If no candidate is a genuine parent, return null.

Return {"parent_id": <candidate id or null>, "confidence_score": <0..1>}."""


class HierarchyClassifier:
    def __init__(self, store: DocumentStore, llm=None, config: Optional[PipelineConfig] = None,
                 semaphore: Optional[asyncio.Semaphore] = None):
        if llm is None:
            from intelgraph.util.services import get_services
            llm = get_services().llm
        self.store = store
        self.config = config or PipelineConfig()
        self.runnable = structured(llm, HierarchyDecision)
        self.semaphore = semaphore or asyncio.Semaphore(self.config.llm_concurrency)

    def _orphans(self) -> List[dict]:
        rows = self.store.query(
            REG_ENTITIES,
            filters=[
                Filter("entity_type", Op.EQ, TECHNOLOGY),
                Filter("parent_id", Op.IS_NULL),
                Filter("ai_hierarchy_checked_timestamp", Op.IS_NULL),
            ],
            order_by=OrderBy("entity_id"),
        )
        live = [r for r in rows if r.get("monitoring_status") != MonitoringStatus.MERGED_INTO.value]
        return live[:self.config.hierarchy_batch_size]

    def _candidates(self) -> List[Dict[str, Optional[str]]]:
        rows = self.store.query(REG_ENTITIES, filters=[Filter("entity_type", Op.EQ, TECHNOLOGY)])
        return [
            {"id": r["entity_id"], "name": r.get("primary_name"), "summary": r.get("description")}
            for r in rows
            if r.get("parent_id") and r.get("monitoring_status") != MonitoringStatus.MERGED_INTO.value
        ]

    async def run(self) -> HierarchyRunSummary:
        summary = HierarchyRunSummary()
        orphans = await asyncio.to_thread(self._orphans)
        if not orphans:
            logger.info("Hierarchy: no unvisited orphan technologies")
            return summary

        candidates = await asyncio.to_thread(self._candidates)
        logger.info(f"Hierarchy: {len(orphans)} orphans, {len(candidates)} candidate parents")

        results = await asyncio.gather(*(self._classify(o, candidates) for o in orphans))

        now = datetime.now(timezone.utc)
        updates = []
        for orphan, (parent_id, error) in zip(orphans, results):
            summary.processed += 1
            update = {
                "entity_id": orphan["entity_id"],
                "updated_timestamp": now,
                "ai_hierarchy_checked_timestamp": now,
            }
            if parent_id:
                update["parent_id"] = parent_id
                update["ai_hierarchy_error"] = None
                summary.classified += 1
            else:
                update["ai_hierarchy_error"] = error
                if error and error.startswith("no parent"):
                    summary.misses += 1
                else:
                    summary.errors += 1
            updates.append(update)

        await asyncio.to_thread(self.store.upsert, REG_ENTITIES, updates, key_field="entity_id")
        logger.info(
            f"Hierarchy done: {summary.classified} classified, {summary.misses} misses, {summary.errors} errors"
        )
        return summary

    async def _classify(self, orphan: dict, candidates: List[dict]) -> tuple:
        """Returns (parent_id, None) on success, (None, reason) otherwise."""
        candidate_ids = {c["id"] for c in candidates if c["id"] != orphan["entity_id"]}
        if not candidate_ids:
            return None, "no parent: no candidate parents"

        messages = [
            ("system", HIERARCHY_SYSTEM_PROMPT),
            ("human", json.dumps({
                "technology": {
                    "id": orphan["entity_id"],
                    "name": orphan.get("primary_name"),
                    "summary": orphan.get("description"),
                },
                "candidates": [c for c in candidates if c["id"] in candidate_ids],
            }, ensure_ascii=False)),
        ]
        try:
            async with self.semaphore:
                decision: HierarchyDecision = await ainvoke_structured(
                    self.runnable, messages, self.config.llm_timeout_seconds
                )
        except Exception as e:
            logger.warning(f"Hierarchy classification failed for {orphan['entity_id']}: {e}")
            return None, f"error: {e}"

        if decision.parent_id and decision.parent_id in candidate_ids:
            return decision.parent_id, None
        if decision.parent_id:
            logger.debug(f"{orphan['entity_id']}: model chose non-candidate parent {decision.parent_id}")
            return None, f"no parent: {decision.parent_id} is not a candidate"
        return None, "no parent: model found no match"
