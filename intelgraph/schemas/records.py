"""
Stored record schemas and collection layout.

Evidence is immutable once written; Findings, Entities and Relationships are
updated in place by the second-stage jobs. Every record serializes to a plain
document with to_document() and is read back with model_validate().
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from intelgraph.schemas.tasks import TaskType


# =============================================================================
# Collections
# =============================================================================

QUEUE_TASKS = "QUEUE_TASKS"
REG_ENTITIES = "REG_ENTITIES"
FND_MASTER = "FND_MASTER"
KG_EDGES = "KG_EDGES"
ANL_DAILY_SNAPSHOTS = "ANL_DAILY_SNAPSHOTS"

EVD_NEWS = "EVD_NEWS"
EVD_DYNAMICS = "EVD_DYNAMICS"
EVD_PAPERS = "EVD_PAPERS"
EVD_PATENTS = "EVD_PATENTS"
EVD_JOBS = "EVD_JOBS"
EVD_REPORTS = "EVD_REPORTS"
EVD_FILINGS = "EVD_FILINGS"
EVD_OPENSOURCE = "EVD_OPENSOURCE"

EVIDENCE_COLLECTION_BY_TASK_TYPE = {
    TaskType.TECH_NEWS: EVD_NEWS,
    TaskType.INDUSTRY_DYNAMICS: EVD_DYNAMICS,
    TaskType.ACADEMIC_PAPER: EVD_PAPERS,
    TaskType.ACADEMIC_CONFERENCE: EVD_PAPERS,
    TaskType.PATENT: EVD_PATENTS,
    TaskType.TALENT_FLOW: EVD_JOBS,
    TaskType.ANALYST_REPORT: EVD_REPORTS,
    TaskType.CORPORATE_FILING: EVD_FILINGS,
    TaskType.OPENSOURCE: EVD_OPENSOURCE,
}

EVIDENCE_COLLECTIONS = [
    EVD_PAPERS, EVD_PATENTS, EVD_OPENSOURCE, EVD_NEWS,
    EVD_DYNAMICS, EVD_JOBS, EVD_REPORTS, EVD_FILINGS,
]

EVIDENCE_ID_PREFIX = {
    EVD_NEWS: "news",
    EVD_DYNAMICS: "dyn",
    EVD_PAPERS: "pap",
    EVD_PATENTS: "pat",
    EVD_JOBS: "job",
    EVD_REPORTS: "rep",
    EVD_FILINGS: "fil",
    EVD_OPENSOURCE: "ops",
}

# Source type implied by an evidence-id prefix (papers/conferences share a collection)
TASK_TYPE_BY_EVIDENCE_PREFIX = {
    "news": TaskType.TECH_NEWS,
    "dyn": TaskType.INDUSTRY_DYNAMICS,
    "pap": TaskType.ACADEMIC_PAPER,
    "pat": TaskType.PATENT,
    "job": TaskType.TALENT_FLOW,
    "rep": TaskType.ANALYST_REPORT,
    "fil": TaskType.CORPORATE_FILING,
    "ops": TaskType.OPENSOURCE,
}

# Key property per collection, used for uniqueness constraints
COLLECTION_KEYS = {
    QUEUE_TASKS: "id",
    REG_ENTITIES: "entity_id",
    FND_MASTER: "id",
    KG_EDGES: "id",
    ANL_DAILY_SNAPSHOTS: "id",
    **{name: "id" for name in EVIDENCE_COLLECTIONS},
}


def evidence_collection_for(task_type: TaskType) -> str:
    return EVIDENCE_COLLECTION_BY_TASK_TYPE.get(TaskType(task_type), EVD_NEWS)


def task_type_from_evidence_id(evidence_id: Optional[str]) -> Optional[TaskType]:
    """'evd_pap_3f2a...' -> ACADEMIC_PAPER"""
    if not evidence_id or not evidence_id.startswith("evd_"):
        return None
    prefix = evidence_id.split("_", 2)[1] if evidence_id.count("_") >= 2 else ""
    return TASK_TYPE_BY_EVIDENCE_PREFIX.get(prefix)


# =============================================================================
# Entity types
# =============================================================================

ENTITY_TYPES = [
    "Company", "Technology", "Person", "Product", "Financial_Concept",
    "Organization_List", "Business_Event", "Research_Firm", "Publishing_Platform",
]
OTHER_ENTITY_TYPE = "Other"

CANDIDATE_FIELD_TO_TYPE = {
    "candidate_companies": "Company",
    "candidate_techs": "Technology",
    "candidate_persons": "Person",
    "candidate_products": "Product",
    "candidate_financial_concepts": "Financial_Concept",
    "candidate_organization_lists": "Organization_List",
    "candidate_business_events": "Business_Event",
    "candidate_research_firms": "Research_Firm",
    "candidate_publishing_platforms": "Publishing_Platform",
}


# =============================================================================
# Enums
# =============================================================================

class FindingStatus(str, Enum):
    SIGNAL_IDENTIFIED = "SIGNAL_IDENTIFIED"
    ANALYZED = "ANALYZED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"


FINDING_TRANSITIONS = {
    FindingStatus.SIGNAL_IDENTIFIED: {FindingStatus.ANALYZED, FindingStatus.ANALYSIS_FAILED},
    FindingStatus.ANALYZED: set(),
    FindingStatus.ANALYSIS_FAILED: set(),
}


def can_transition(current: Optional[str], target: FindingStatus) -> bool:
    try:
        current_status = FindingStatus(current)
    except ValueError:
        return False
    return target in FINDING_TRANSITIONS[current_status]


class MonitoringStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    NORMALIZED = "normalized"
    ENRICHED = "enriched"
    ACTIVE = "active"
    MERGED_INTO = "merged_into"


class EvidenceRelation(str, Enum):
    PRIMARY_SOURCE = "primary_source"
    RELATED_EVIDENCE = "related_evidence"


# =============================================================================
# Records
# =============================================================================

class _Record(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump()


class EvidenceLink(_Record):
    evidence_id: str
    collection_key: str
    relation_type: EvidenceRelation


class Evidence(_Record):
    id: str
    task_id: str
    task_type: TaskType
    source_id: Optional[str] = None
    title: str = ""
    url: Optional[str] = None
    ai_summary: str = ""
    ai_keywords: List[str] = Field(default_factory=list)
    ai_value_score: int = 0
    embedding_vector: Optional[List[float]] = None
    has_embedding: bool = False
    linked_entity_ids: List[str] = Field(default_factory=list)
    evidence_chain: List[EvidenceLink] = Field(default_factory=list)
    trigger_entity_id: Optional[str] = None
    publication_timestamp: Optional[datetime] = None
    duplicate_check_hash: str
    created_timestamp: datetime


class Finding(_Record):
    id: str
    finding_status: FindingStatus = FindingStatus.SIGNAL_IDENTIFIED
    task_type: Optional[TaskType] = None
    title: str = ""
    summary: str = ""
    url: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    signal_strength_score: Optional[int] = None
    linked_entity_ids: List[str] = Field(default_factory=list)
    primary_evidence_id: Optional[str] = None
    evidence_chain: List[EvidenceLink] = Field(default_factory=list)
    publication_timestamp: Optional[datetime] = None
    created_timestamp: datetime
    updated_timestamp: datetime


class Entity(_Record):
    """Registry entity; enrichment adds free-form descriptive fields."""
    model_config = ConfigDict(use_enum_values=True, extra="allow")

    entity_id: str
    primary_name: str
    entity_type: str
    aliases: List[str] = Field(default_factory=list)
    parent_id: Optional[str] = None
    monitoring_status: MonitoringStatus = MonitoringStatus.PENDING_REVIEW
    merged_into_id: Optional[str] = None
    description: Optional[str] = None
    last_ai_processed_timestamp: Optional[datetime] = None
    created_timestamp: Optional[datetime] = None
    updated_timestamp: Optional[datetime] = None


class Relationship(_Record):
    id: str
    source_entity_id: str
    target_entity_id: str
    relationship_type: str
    strength_score: float
    description: Optional[str] = None
    supporting_finding_ids: List[str] = Field(default_factory=list)
    occurrence_count: int = 1
    first_seen_timestamp: datetime
    last_seen_timestamp: datetime

    def observe(self, strength: float, finding_id: str, seen_at: datetime,
                description: Optional[str] = None) -> None:
        """Fold one more observation into the running mean."""
        count = max(self.occurrence_count, 0)
        self.strength_score = (self.strength_score * count + strength) / (count + 1)
        self.occurrence_count = count + 1
        if finding_id not in self.supporting_finding_ids:
            self.supporting_finding_ids.append(finding_id)
        self.last_seen_timestamp = seen_at
        if description and not self.description:
            self.description = description


class DailySnapshot(_Record):
    id: str
    entity_id: str
    snapshot_date: str
    influence_score: int
    market_attention_score: int
    innovation_activity_score: int
    talent_demand_score: int
    related_findings_count: int
    created_timestamp: datetime
