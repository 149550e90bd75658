"""Run summaries returned by every job and printed by the CLI."""

from typing import List, Optional

from pydantic import BaseModel, Field


class IngestionSummary(BaseModel):
    fetched: int = 0
    unparseable: int = 0
    analysis_failed: int = 0
    accepted: int = 0
    rejected: int = 0
    duplicates: int = 0
    written: int = 0
    entities_created: int = 0
    embeddings_missing: int = 0
    deleted_from_queue: int = 0
    requeued: int = 0
    errors: List[str] = Field(default_factory=list)


class RelationshipRunSummary(BaseModel):
    processed: int = 0
    analyzed: int = 0
    skipped_few_entities: int = 0
    failed: int = 0
    edges_created: int = 0
    edges_updated: int = 0


class HierarchyRunSummary(BaseModel):
    processed: int = 0
    classified: int = 0
    misses: int = 0
    errors: int = 0


class SnapshotRunSummary(BaseModel):
    snapshot_date: str
    findings: int = 0
    snapshots_written: int = 0


class NormalizationRunSummary(BaseModel):
    batch_start: Optional[int] = None
    batch_size: int = 0
    normalized: int = 0
    merged: int = 0
    exhausted: bool = False


class EnrichmentRunSummary(BaseModel):
    processed: int = 0
    enriched: int = 0
    errors: int = 0
