"""
MODULE: Snapshot Generator
DESCRIPTION: Daily per-entity activity metrics computed from the Findings created that day.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from intelgraph.schemas.records import (
    ANL_DAILY_SNAPSHOTS,
    FND_MASTER,
    DailySnapshot,
    task_type_from_evidence_id,
)
from intelgraph.schemas.summaries import SnapshotRunSummary
from intelgraph.schemas.tasks import TaskType
from intelgraph.util.document_store import DocumentStore, Filter, Op
from intelgraph.util.ids import make_snapshot_id

logger = logging.getLogger(__name__)

DEFAULT_SIGNAL_STRENGTH = 5
SCORE_CAP = 100
INNOVATION_TYPES = {TaskType.ACADEMIC_PAPER, TaskType.PATENT, TaskType.OPENSOURCE}
TALENT_WEIGHT = 10


def finding_source_type(finding: dict) -> Optional[TaskType]:
    """Primary evidence id prefix, then first chain entry, then the finding's own task_type."""
    inferred = task_type_from_evidence_id(finding.get("primary_evidence_id"))
    if inferred:
        return inferred
    chain = finding.get("evidence_chain") or []
    if chain and isinstance(chain[0], dict):
        inferred = task_type_from_evidence_id(chain[0].get("evidence_id"))
        if inferred:
            return inferred
    try:
        return TaskType(finding.get("task_type"))
    except ValueError:
        return None


@dataclass
class _EntityTally:
    attention: float = 0
    innovation: float = 0
    talent_posts: int = 0
    finding_ids: List[str] = field(default_factory=list)


def _cap(value: float) -> int:
    return min(int(round(value)), SCORE_CAP)


def compute_snapshots(findings: Iterable[dict], snapshot_date: str,
                      now: Optional[datetime] = None) -> List[DailySnapshot]:
    tallies: Dict[str, _EntityTally] = defaultdict(_EntityTally)
    for finding in findings:
        strength = finding.get("signal_strength_score")
        strength = DEFAULT_SIGNAL_STRENGTH if strength is None else strength
        source_type = finding_source_type(finding)
        for entity_id in set(finding.get("linked_entity_ids") or []):
            tally = tallies[entity_id]
            tally.attention += strength
            if source_type in INNOVATION_TYPES:
                tally.innovation += strength
            if source_type == TaskType.TALENT_FLOW:
                tally.talent_posts += 1
            tally.finding_ids.append(finding.get("id"))

    now = now or datetime.now(timezone.utc)
    snapshots = []
    for entity_id, tally in sorted(tallies.items()):
        talent = tally.talent_posts * TALENT_WEIGHT
        influence = 0.5 * tally.attention + 0.4 * tally.innovation + 0.1 * talent
        snapshots.append(DailySnapshot(
            id=make_snapshot_id(entity_id, snapshot_date),
            entity_id=entity_id,
            snapshot_date=snapshot_date,
            influence_score=_cap(influence),
            market_attention_score=_cap(tally.attention),
            innovation_activity_score=_cap(tally.innovation),
            talent_demand_score=_cap(talent),
            related_findings_count=len(tally.finding_ids),
            created_timestamp=now,
        ))
    return snapshots


class SnapshotGenerator:
    def __init__(self, store: DocumentStore):
        self.store = store

    def run(self, day: Optional[date] = None) -> SnapshotRunSummary:
        day = day or datetime.now(timezone.utc).date()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1) - timedelta(microseconds=1)

        findings = self.store.query(FND_MASTER, filters=[
            Filter("created_timestamp", Op.GTE, start),
            Filter("created_timestamp", Op.LTE, end),
        ])
        snapshot_date = day.isoformat()
        snapshots = compute_snapshots(findings, snapshot_date)
        if snapshots:
            self.store.upsert(ANL_DAILY_SNAPSHOTS, [s.to_document() for s in snapshots])

        logger.info(f"Snapshots for {snapshot_date}: {len(findings)} findings -> {len(snapshots)} entities")
        return SnapshotRunSummary(
            snapshot_date=snapshot_date,
            findings=len(findings),
            snapshots_written=len(snapshots),
        )
