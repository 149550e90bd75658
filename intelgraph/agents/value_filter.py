"""
MODULE: Value Filter
DESCRIPTION: Keeps analyzed tasks whose value_score clears the ingestion threshold.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from intelgraph.agents.batch_analyzer import AnalysisOutcome
from intelgraph.schemas.tasks import Task

logger = logging.getLogger(__name__)


@dataclass
class FilterResult:
    accepted: List[Task] = field(default_factory=list)
    rejected: List[Task] = field(default_factory=list)
    failed: List[Task] = field(default_factory=list)


def apply_value_filter(tasks: Sequence[Task], outcomes: Dict[str, AnalysisOutcome], threshold: int = 4) -> FilterResult:
    result = FilterResult()
    for task in tasks:
        outcome = outcomes.get(task.id)
        if outcome is None or not outcome.ok:
            result.failed.append(task)
        elif outcome.analysis.value_score >= threshold:
            result.accepted.append(task)
        else:
            result.rejected.append(task)

    logger.info(
        f"Value filter (threshold {threshold}): {len(result.accepted)} accepted, "
        f"{len(result.rejected)} rejected, {len(result.failed)} failed"
    )
    return result
