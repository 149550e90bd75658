"""
MODULE: Entity Normalizer
DESCRIPTION: Checkpointed sweep that merges duplicate pending_review entities.

Each run takes the next batch of pending_review entities (ordered by entity_id)
from a ResumableCursor and, per entity type, asks the LLM to cluster their
names. For every group:

- canonical = live entity outside the batch matching a group name, else the
  batch entity named like the group primary (else the first one matching)
- other batch entities in the group -> monitoring_status merged_into (+ merged_into_id)
- canonical gets the group's primary name, the union of aliases and, if it was
  pending_review, monitoring_status normalized

The cursor only advances after the batch is written, so a killed run redoes
the same batch next time.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from intelgraph.agents.entity_dictionary import EntityDictionary
from intelgraph.agents.entity_resolver import cluster_names, dedupe_names
from intelgraph.schemas.llm import NormalizationResponse, NormalizedGroup
from intelgraph.schemas.records import REG_ENTITIES, MonitoringStatus
from intelgraph.schemas.summaries import NormalizationRunSummary
from intelgraph.util.checkpoint import CheckpointStore, ResumableCursor
from intelgraph.util.config import PipelineConfig
from intelgraph.util.document_store import DocumentStore, Filter, Op, OrderBy
from intelgraph.util.errors import IntelGraphError
from intelgraph.util.llm_client import structured

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "normalization_last_processed_index"


class EntityNormalizer:
    def __init__(self, store: DocumentStore, checkpoints: CheckpointStore, llm=None,
                 config: Optional[PipelineConfig] = None, dictionary: Optional[EntityDictionary] = None,
                 semaphore: Optional[asyncio.Semaphore] = None):
        if llm is None:
            from intelgraph.util.services import get_services
            llm = get_services().llm
        self.store = store
        self.config = config or PipelineConfig()
        self.dictionary = dictionary
        self.runnable = structured(llm, NormalizationResponse)
        self.semaphore = semaphore or asyncio.Semaphore(self.config.llm_concurrency)
        self.cursor = ResumableCursor(checkpoints, CHECKPOINT_KEY, key=lambda e: e["entity_id"])

    def backlog(self) -> List[dict]:
        return self.store.query(
            REG_ENTITIES,
            filters=[Filter("monitoring_status", Op.EQ, MonitoringStatus.PENDING_REVIEW.value)],
            order_by=OrderBy("entity_id"),
        )

    async def run(self) -> NormalizationRunSummary:
        backlog = await asyncio.to_thread(self.backlog)
        batch = self.cursor.next_batch(backlog, self.config.normalization_batch_size)
        summary = NormalizationRunSummary()
        if not batch:
            summary.exhausted = True
            logger.info("Normalization: backlog exhausted")
            return summary

        summary.batch_start = self.cursor.batch_start
        summary.batch_size = len(batch)
        if self.dictionary is None:
            self.dictionary = await asyncio.to_thread(EntityDictionary.build, self.store)

        by_type: Dict[str, List[dict]] = defaultdict(list)
        for entity in batch:
            by_type[entity.get("entity_type") or "Other"].append(entity)

        groups_per_type = await asyncio.gather(
            *(self._cluster(entity_type, entities) for entity_type, entities in by_type.items())
        )

        updates: Dict[str, dict] = {}
        for (entity_type, entities), groups in zip(by_type.items(), groups_per_type):
            for group in groups:
                await asyncio.to_thread(self._apply_group, entity_type, entities, group, updates, summary)

        if updates:
            await asyncio.to_thread(self.store.upsert, REG_ENTITIES, list(updates.values()), key_field="entity_id")
        await asyncio.to_thread(self.cursor.advance, batch)

        logger.info(
            f"Normalization batch @{summary.batch_start}: {summary.batch_size} entities, "
            f"{summary.normalized} normalized, {summary.merged} merged"
        )
        return summary

    async def _cluster(self, entity_type: str, entities: List[dict]) -> List[NormalizedGroup]:
        names = dedupe_names([e.get("primary_name") or "" for e in entities])
        if len(names) <= 1:
            return [NormalizedGroup(primary_name=n, aliases=[]) for n in names]
        try:
            async with self.semaphore:
                return await cluster_names(self.runnable, entity_type, names, self.config.llm_timeout_seconds)
        except IntelGraphError as e:
            logger.warning(f"Normalization clustering failed for {entity_type}: {e}")
            return []

    def _apply_group(self, entity_type: str, batch_entities: List[dict], group: NormalizedGroup,
                     updates: Dict[str, dict], summary: NormalizationRunSummary):
        primary = group.primary_name.strip()
        group_names = dedupe_names([primary, *group.aliases])
        lowered = {n.lower() for n in group_names}

        batch_ids = {e["entity_id"] for e in batch_entities}
        members = [
            e for e in batch_entities
            if (e.get("primary_name") or "").strip().lower() in lowered
            and e["entity_id"] not in _merged_ids(updates)
        ]

        hits = [self.dictionary.lookup(entity_type, n) for n in group_names]
        hits = [h for h in hits if h]
        outside = [h for h in hits if h not in batch_ids]
        if outside:
            canonical_id = outside[0]
            canonical = self.store.get(REG_ENTITIES, canonical_id, key_field="entity_id")
        elif members:
            canonical = next(
                (m for m in members if (m.get("primary_name") or "").strip().lower() == primary.lower()),
                members[0],
            )
            canonical_id = canonical["entity_id"]
        else:
            logger.debug(f"No entity matches group '{primary}' ({entity_type}), skipping")
            return
        if canonical is None:
            return

        now = datetime.now(timezone.utc)
        absorbed = [m for m in members if m["entity_id"] != canonical_id]

        aliases = list((updates.get(canonical_id) or canonical).get("aliases") or [])
        for name in [canonical.get("primary_name") or "", *group_names]:
            aliases.append(name)
        for entity in absorbed:
            aliases.extend([entity.get("primary_name") or "", *(entity.get("aliases") or [])])
        aliases = [a for a in dedupe_names(aliases) if a.lower() != primary.lower()]

        status = (updates.get(canonical_id) or canonical).get("monitoring_status")
        if status in (None, MonitoringStatus.PENDING_REVIEW.value):
            status = MonitoringStatus.NORMALIZED.value
            summary.normalized += 1

        updates[canonical_id] = {
            "entity_id": canonical_id,
            "primary_name": primary,
            "aliases": aliases,
            "monitoring_status": status,
            "updated_timestamp": now,
        }
        for entity in absorbed:
            updates[entity["entity_id"]] = {
                "entity_id": entity["entity_id"],
                "monitoring_status": MonitoringStatus.MERGED_INTO.value,
                "merged_into_id": canonical_id,
                "updated_timestamp": now,
            }
            self.dictionary.unregister(entity["entity_id"], merged_into=canonical_id)
            summary.merged += 1

        self.dictionary.register(canonical_id, entity_type, primary, aliases)
        self.dictionary.repoint(entity_type, [primary, *aliases], canonical_id)


def _merged_ids(updates: Dict[str, dict]) -> set:
    return {
        entity_id for entity_id, update in updates.items()
        if update.get("monitoring_status") == MonitoringStatus.MERGED_INTO.value
    }
