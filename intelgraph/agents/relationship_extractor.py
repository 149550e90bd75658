"""
MODULE: Relationship Extractor
DESCRIPTION: Second-stage job that turns co-mentioned entities in Findings into weighted edges.

For each SIGNAL_IDENTIFIED Finding with at least two distinct linked entities,
the LLM is shown the entities ({id, name}) and the finding text and returns
typed relationships with a strength in (0, 1]. Valid relationships are folded
into KG_EDGES:

    id             = rel_<min(a,b)>_<type>_<max(a,b)>
    strength_score = running mean of every observation
    occurrence_count += 1, supporting finding appended once

Findings are processed in chunks of relationship_write_chunk_size: LLM calls in a
chunk run concurrently, merges are applied in finding order, then edges and
status updates for the chunk are flushed together.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from intelgraph.agents.entity_dictionary import EntityDictionary
from intelgraph.schemas.llm import ExtractedRelationship, RelationshipExtractionResponse
from intelgraph.schemas.records import (
    FND_MASTER,
    KG_EDGES,
    REG_ENTITIES,
    FindingStatus,
    Relationship,
    can_transition,
)
from intelgraph.schemas.summaries import RelationshipRunSummary
from intelgraph.util.config import PipelineConfig
from intelgraph.util.document_store import DocumentStore, Filter, Op, OrderBy
from intelgraph.util.ids import make_relationship_id
from intelgraph.util.llm_client import ainvoke_structured, structured

logger = logging.getLogger(__name__)


# ============================================================================
# PROMPTS
# ============================================================================

RELATIONSHIP_SYSTEM_PROMPT = """You are a technology industry analyst building a knowledge graph.

You receive a finding (title and summary) and the list of entities linked to it.
Identify the relationships between these entities that the finding states or clearly implies.

Rules:
- source_id and target_id MUST be ids from the entity list
- type is a short snake_case verb phrase (partners_with, competes_with, invests_in,
  acquires, develops, uses_technology, supplies_to, employs, researches)
- strength is a number in (0, 1]: how strongly the finding supports the relationship
- description is one sentence of evidence from the finding
- do not relate an entity to itself; return an empty list when nothing is supported

Return {"extracted_relationships": [{"source_id", "target_id", "type", "strength", "description"}]}."""


def normalize_relationship_type(value: Optional[str]) -> str:
    return "_".join((value or "").strip().lower().replace("-", " ").split())


@dataclass
class _FindingResult:
    finding_id: str
    relationships: List[ExtractedRelationship]
    status: FindingStatus


class RelationshipExtractor:
    def __init__(self, store: DocumentStore, dictionary: Optional[EntityDictionary] = None, llm=None,
                 config: Optional[PipelineConfig] = None, semaphore: Optional[asyncio.Semaphore] = None):
        if llm is None:
            from intelgraph.util.services import get_services
            llm = get_services().llm
        self.store = store
        self.dictionary = dictionary
        self.config = config or PipelineConfig()
        self.runnable = structured(llm, RelationshipExtractionResponse)
        self.semaphore = semaphore or asyncio.Semaphore(self.config.llm_concurrency)

        self._edge_buffer: Dict[str, Relationship] = {}
        self._status_buffer: List[dict] = []

    async def run(self) -> RelationshipRunSummary:
        if self.dictionary is None:
            self.dictionary = await asyncio.to_thread(EntityDictionary.build, self.store)
        findings = await asyncio.to_thread(
            self.store.query,
            FND_MASTER,
            filters=[Filter("finding_status", Op.EQ, FindingStatus.SIGNAL_IDENTIFIED.value)],
            order_by=OrderBy("created_timestamp"),
            limit=self.config.relationship_batch_size,
        )
        summary = RelationshipRunSummary()
        logger.info(f"Relationship extraction: {len(findings)} findings to analyze")

        chunk_size = self.config.relationship_write_chunk_size
        for start in range(0, len(findings), chunk_size):
            chunk = findings[start:start + chunk_size]
            results = await asyncio.gather(*(self._analyze_finding(f) for f in chunk))
            for finding, result in zip(chunk, results):
                summary.processed += 1
                if result.status == FindingStatus.ANALYSIS_FAILED:
                    summary.failed += 1
                else:
                    summary.analyzed += 1
                    if not result.relationships and len(self._distinct_entities(finding)) < 2:
                        summary.skipped_few_entities += 1
                    for rel in result.relationships:
                        created = await asyncio.to_thread(self._merge, rel, result.finding_id)
                        if created:
                            summary.edges_created += 1
                        else:
                            summary.edges_updated += 1
                self._queue_status(finding, result.status)
            await asyncio.to_thread(self.flush)

        logger.info(
            f"Relationship extraction done: {summary.analyzed} analyzed, {summary.failed} failed, "
            f"{summary.edges_created} edges created, {summary.edges_updated} updated"
        )
        return summary

    def _distinct_entities(self, finding: dict) -> List[str]:
        seen = []
        for entity_id in finding.get("linked_entity_ids") or []:
            if entity_id and entity_id not in seen:
                seen.append(entity_id)
        return seen

    def _entity_name(self, entity_id: str) -> Optional[str]:
        name = self.dictionary.name_of(entity_id)
        if name:
            return name
        doc = self.store.get(REG_ENTITIES, entity_id, key_field="entity_id")
        return doc.get("primary_name") if doc else None

    async def _analyze_finding(self, finding: dict) -> _FindingResult:
        finding_id = finding["id"]
        entity_ids = self._distinct_entities(finding)
        if len(entity_ids) < 2:
            return _FindingResult(finding_id, [], FindingStatus.ANALYZED)

        try:
            entities = []
            for entity_id in entity_ids:
                name = await asyncio.to_thread(self._entity_name, entity_id)
                # every allowed endpoint is listed, by id when its name is unknown
                entities.append({"id": entity_id, "name": name or entity_id})

            text = f"{finding.get('title') or ''}\n{finding.get('summary') or ''}".strip()
            messages = [
                ("system", RELATIONSHIP_SYSTEM_PROMPT),
                ("human", json.dumps({"finding": text, "entities": entities}, ensure_ascii=False)),
            ]
            async with self.semaphore:
                response = await ainvoke_structured(self.runnable, messages, self.config.llm_timeout_seconds)
        except Exception as e:
            logger.warning(f"Relationship extraction failed for finding {finding_id}: {e}")
            return _FindingResult(finding_id, [], FindingStatus.ANALYSIS_FAILED)

        valid = [r for r in response.extracted_relationships if self._is_valid(r, set(entity_ids))]
        dropped = len(response.extracted_relationships) - len(valid)
        if dropped:
            logger.debug(f"Finding {finding_id}: dropped {dropped} invalid relationships")
        return _FindingResult(finding_id, valid, FindingStatus.ANALYZED)

    @staticmethod
    def _is_valid(rel: ExtractedRelationship, entity_ids: set) -> bool:
        if not rel.source_id or not rel.target_id or rel.source_id == rel.target_id:
            return False
        if rel.source_id not in entity_ids or rel.target_id not in entity_ids:
            return False
        if not normalize_relationship_type(rel.type):
            return False
        return rel.strength is not None and 0 < rel.strength <= 1

    def _lookup_edge(self, edge_id: str) -> Optional[Relationship]:
        if edge_id in self._edge_buffer:
            return self._edge_buffer[edge_id]
        doc = self.store.get(KG_EDGES, edge_id)
        return Relationship.model_validate(doc) if doc else None

    def _merge(self, rel: ExtractedRelationship, finding_id: str) -> bool:
        """Fold one observation into its edge. Returns True when the edge is new."""
        rel_type = normalize_relationship_type(rel.type)
        edge_id = make_relationship_id(rel.source_id, rel.target_id, rel_type)
        now = datetime.now(timezone.utc)

        edge = self._lookup_edge(edge_id)
        if edge is not None:
            edge.observe(rel.strength, finding_id, now, rel.description)
            self._edge_buffer[edge_id] = edge
            return False

        source, target = sorted([rel.source_id, rel.target_id])
        self._edge_buffer[edge_id] = Relationship(
            id=edge_id,
            source_entity_id=source,
            target_entity_id=target,
            relationship_type=rel_type,
            strength_score=rel.strength,
            description=rel.description,
            supporting_finding_ids=[finding_id],
            occurrence_count=1,
            first_seen_timestamp=now,
            last_seen_timestamp=now,
        )
        return True

    def _queue_status(self, finding: dict, status: FindingStatus):
        if not can_transition(finding.get("finding_status"), status):
            logger.warning(f"Refusing {finding.get('finding_status')} -> {status.value} for {finding['id']}")
            return
        self._status_buffer.append({
            "id": finding["id"],
            "finding_status": status.value,
            "updated_timestamp": datetime.now(timezone.utc),
        })

    def flush(self) -> None:
        if self._edge_buffer:
            self.store.upsert(KG_EDGES, [edge.to_document() for edge in self._edge_buffer.values()])
        if self._status_buffer:
            self.store.upsert(FND_MASTER, self._status_buffer)
        logger.debug(f"Flushed {len(self._edge_buffer)} edges, {len(self._status_buffer)} finding updates")
        self._edge_buffer = {}
        self._status_buffer = []
