"""
MODULE: Entity Resolver
DESCRIPTION: Turns free-text candidate names into canonical registry entity IDs.

Per accepted task and per entity type:
1. De-duplicate the candidate names (case-insensitive)
2. Ask the LLM to cluster them into {primary_name, aliases} groups
3. Look up the primary name, then each alias, in the run dictionary
4. No hit -> deterministic entity_id, new pending_review Entity, registered
   immediately so later tasks in the same run reuse it
5. Trivial names (<= 2 chars) are skipped

LLM calls for different tasks and types run concurrently; the lookup-then-create
step holds the dictionary's lock for that entity type.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from intelgraph.agents.batch_analyzer import AnalysisOutcome
from intelgraph.agents.entity_dictionary import EntityDictionary
from intelgraph.schemas.llm import NormalizationResponse, NormalizedGroup
from intelgraph.schemas.records import Entity, MonitoringStatus
from intelgraph.schemas.tasks import Task
from intelgraph.util.config import PipelineConfig
from intelgraph.util.errors import IntelGraphError
from intelgraph.util.ids import make_entity_id
from intelgraph.util.llm_client import ainvoke_structured, structured

logger = logging.getLogger(__name__)

MIN_NEW_ENTITY_NAME_LENGTH = 3


# ============================================================================
# PROMPTS
# ============================================================================

NORMALIZE_SYSTEM_PROMPT = """You are maintaining an entity registry for a technology intelligence knowledge graph.

Given a list of names of type {entity_type}, group the names that refer to the SAME real-world entity.

MERGE (same entity, different spelling):
- "OpenAI" = "Open AI" = "OpenAI Inc."
- "Large Language Models" = "LLMs" = "LLM"

DO NOT MERGE (related but distinct):
- a subsidiary and its parent ("AWS" is not "Amazon")
- a product and its maker ("GPT-4" is not "OpenAI")

For every group return the most complete official name as primary_name and the
other input names as aliases. Every input name must appear in exactly one group.
Return {{"normalized_groups": [{{"primary_name": ..., "aliases": [...]}}]}}."""


def dedupe_names(names: Sequence[str]) -> List[str]:
    seen = set()
    unique = []
    for name in names:
        key = (name or "").strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(name.strip())
    return unique


async def cluster_names(runnable, entity_type: str, names: Sequence[str], timeout: float) -> List[NormalizedGroup]:
    """One LLM call grouping names that denote the same entity."""
    messages = [
        ("system", NORMALIZE_SYSTEM_PROMPT.format(entity_type=entity_type)),
        ("human", json.dumps({"entity_type": entity_type, "names": list(names)}, ensure_ascii=False)),
    ]
    response: NormalizationResponse = await ainvoke_structured(runnable, messages, timeout)
    return response.normalized_groups


@dataclass
class ResolutionResult:
    linked_ids: Dict[str, List[str]] = field(default_factory=dict)
    new_entities: List[Entity] = field(default_factory=list)


class EntityResolver:
    def __init__(self, dictionary: EntityDictionary, llm=None, config: Optional[PipelineConfig] = None,
                 semaphore: Optional[asyncio.Semaphore] = None):
        if llm is None:
            from intelgraph.util.services import get_services
            llm = get_services().llm
        self.dictionary = dictionary
        self.config = config or PipelineConfig()
        self.runnable = structured(llm, NormalizationResponse)
        self.semaphore = semaphore or asyncio.Semaphore(self.config.llm_concurrency)

    async def resolve(self, tasks: Sequence[Task], outcomes: Dict[str, AnalysisOutcome]) -> ResolutionResult:
        result = ResolutionResult()
        jobs = []
        for task in tasks:
            result.linked_ids[task.id] = []
            analysis = outcomes[task.id].analysis
            for entity_type, names in analysis.candidates_by_type().items():
                names = dedupe_names(names)
                if names:
                    jobs.append((task.id, self._resolve_type(task.id, entity_type, names, result)))

        if jobs:
            per_job = await asyncio.gather(*(coro for _, coro in jobs))
            for (task_id, _), ids in zip(jobs, per_job):
                linked = result.linked_ids[task_id]
                for entity_id in ids:
                    if entity_id not in linked:
                        linked.append(entity_id)

        logger.info(
            f"Resolved entities for {len(tasks)} tasks: {len(result.new_entities)} new entities"
        )
        return result

    async def _cluster(self, task_id: str, entity_type: str, names: List[str]) -> List[NormalizedGroup]:
        if len(names) == 1:
            return [NormalizedGroup(primary_name=names[0], aliases=[])]
        try:
            async with self.semaphore:
                return await cluster_names(self.runnable, entity_type, names, self.config.llm_timeout_seconds)
        except IntelGraphError as e:
            logger.warning(f"Normalization failed for task {task_id} ({entity_type}): {e}")
            return []

    async def _resolve_type(self, task_id: str, entity_type: str, names: List[str],
                            result: ResolutionResult) -> List[str]:
        groups = await self._cluster(task_id, entity_type, names)
        if not groups:
            return []

        resolved = []
        async with self.dictionary.lock_for(entity_type):
            for group in groups:
                entity_id = self._resolve_group(entity_type, group, result)
                if entity_id and entity_id not in resolved:
                    resolved.append(entity_id)
        return resolved

    def _resolve_group(self, entity_type: str, group: NormalizedGroup, result: ResolutionResult) -> Optional[str]:
        primary = group.primary_name.strip()
        aliases = [
            a.strip() for a in dedupe_names(group.aliases)
            if a.strip().lower() != primary.lower()
        ]

        hit = self.dictionary.lookup_any(entity_type, [primary, *aliases])
        if hit:
            return hit

        if len(primary) < MIN_NEW_ENTITY_NAME_LENGTH:
            logger.debug(f"Skipping trivial {entity_type} name '{primary}'")
            return None

        entity_id = self.dictionary.canonical_id(make_entity_id(entity_type, primary))
        if entity_id in self.dictionary:
            # Same slug as a live entity ("Acme, Inc." vs "Acme Inc")
            self.dictionary.register(entity_id, entity_type, self.dictionary.name_of(entity_id), [primary, *aliases])
            return entity_id

        now = datetime.now(timezone.utc)
        entity = Entity(
            entity_id=entity_id,
            primary_name=primary,
            entity_type=entity_type,
            aliases=aliases,
            monitoring_status=MonitoringStatus.PENDING_REVIEW,
            created_timestamp=now,
            updated_timestamp=now,
        )
        self.dictionary.register(entity_id, entity_type, primary, aliases)
        result.new_entities.append(entity)
        logger.debug(f"New {entity_type} entity {entity_id} ('{primary}')")
        return entity_id
