"""
MODULE: Config
DESCRIPTION: Environment-driven settings for every pipeline job.

All values come from the process environment (optionally a local .env file).
Jobs receive a PipelineConfig instead of reading os.environ themselves so tests
can construct one directly.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet

from dotenv import load_dotenv

load_dotenv()


# Generic or unwanted candidate terms the LLM likes to return as "entities".
DEFAULT_CANDIDATE_DENYLIST = frozenset({
    "a", "an", "the", "and", "or", "of", "for", "with", "new", "none", "null", "n/a",
    "unknown", "other", "others", "various", "company", "companies", "firm",
    "technology", "technologies", "tech", "system", "systems", "model", "models",
    "method", "approach", "data", "analysis", "research", "study", "paper",
    "results", "market", "industry", "platform", "solution", "solutions",
    "product", "products", "service", "services", "internet", "web", "news",
    "report", "article", "author", "authors", "et al", "inc", "ltd", "llc",
})


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class PipelineConfig:
    """Tunables for ingestion and the independent analysis jobs."""

    # Ingestion
    task_batch_size: int = 20
    ingestion_threshold: int = 4
    max_analysis_attempts: int = 1

    # External calls
    llm_concurrency: int = 8
    llm_timeout_seconds: float = 120.0

    # Evidence chains
    evidence_window_days: int = 90
    evidence_chain_max: int = 5
    evidence_entity_query_limit: int = 10

    # Second-stage jobs
    relationship_batch_size: int = 50
    relationship_write_chunk_size: int = 25
    hierarchy_batch_size: int = 10
    normalization_batch_size: int = 50
    enrichment_batch_size: int = 30
    enrichment_interval_days: int = 30

    # Sanitizer
    candidate_min_length: int = 2
    candidate_max_length: int = 80
    candidate_denylist: FrozenSet[str] = field(default_factory=lambda: DEFAULT_CANDIDATE_DENYLIST)

    checkpoint_dir: str = "checkpoints"
    verbose: bool = False

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        extra_terms = {
            t.strip().lower()
            for t in os.getenv("CANDIDATE_DENYLIST", "").split(",")
            if t.strip()
        }
        return cls(
            task_batch_size=_env_int("TASK_BATCH_SIZE", 20),
            ingestion_threshold=_env_int("INGESTION_THRESHOLD", 4),
            max_analysis_attempts=max(_env_int("MAX_ANALYSIS_ATTEMPTS", 1), 1),
            llm_concurrency=max(_env_int("LLM_CONCURRENCY", 8), 1),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 120.0),
            evidence_window_days=_env_int("EVIDENCE_WINDOW_DAYS", 90),
            evidence_chain_max=_env_int("EVIDENCE_CHAIN_MAX", 5),
            relationship_batch_size=_env_int("RELATIONSHIP_BATCH_SIZE", 50),
            relationship_write_chunk_size=max(_env_int("RELATIONSHIP_WRITE_CHUNK_SIZE", 25), 1),
            hierarchy_batch_size=_env_int("HIERARCHY_BATCH_SIZE", 10),
            normalization_batch_size=max(_env_int("NORMALIZATION_BATCH_SIZE", 50), 1),
            enrichment_batch_size=_env_int("ENRICHMENT_BATCH_SIZE", 30),
            enrichment_interval_days=_env_int("ENRICHMENT_INTERVAL_DAYS", 30),
            candidate_denylist=DEFAULT_CANDIDATE_DENYLIST | frozenset(extra_terms),
            checkpoint_dir=os.getenv("CHECKPOINT_DIR", "checkpoints"),
            verbose=_env_bool("VERBOSE"),
        )
