"""
Queue task schemas.

A Task is the envelope a harvester drops into QUEUE_TASKS. Its payload shape
depends on task_type, so the payload is a discriminated union: the envelope
copies task_type into the payload before validation and pydantic picks the
matching model.
"""

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


class TaskType(str, Enum):
    TECH_NEWS = "TECH_NEWS"
    INDUSTRY_DYNAMICS = "INDUSTRY_DYNAMICS"
    ACADEMIC_PAPER = "ACADEMIC_PAPER"
    ACADEMIC_CONFERENCE = "ACADEMIC_CONFERENCE"
    PATENT = "PATENT"
    OPENSOURCE = "OPENSOURCE"
    TALENT_FLOW = "TALENT_FLOW"
    ANALYST_REPORT = "ANALYST_REPORT"
    CORPORATE_FILING = "CORPORATE_FILING"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_publication_date(raw: str) -> Optional[datetime]:
    """
    ISO-8601 first, then RFC-2822 (RSS feeds: "Mon, 10 Mar 2025 08:00:00 GMT").
    An unreadable date is dropped rather than failing the whole task.
    """
    text = raw.strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text[:-1] + "+00:00" if text[-1] in "zZ" else text)
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        logger.warning(f"Unreadable publication_date '{raw}', ignoring it")
        return None


# =============================================================================
# Payloads
# =============================================================================

class BasePayload(BaseModel):
    """Fields every harvester provides."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    title: str = ""
    summary: str = Field(default="", validation_alias=AliasChoices("summary", "description"))
    url: Optional[str] = None
    publication_date: Optional[datetime] = None
    trigger_entity_id: Optional[str] = None
    source_id: Optional[str] = None

    @field_validator("title", "summary", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v

    @field_validator("url", "trigger_entity_id", "source_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("publication_date", mode="before")
    @classmethod
    def _parse_date(cls, v):
        if v in (None, ""):
            return None
        if isinstance(v, str):
            return parse_publication_date(v)
        return v

    @field_validator("publication_date")
    @classmethod
    def _to_utc(cls, v):
        return ensure_utc(v)


class NewsPayload(BasePayload):
    task_type: Literal["TECH_NEWS", "INDUSTRY_DYNAMICS"]
    source_name: Optional[str] = None


class PaperPayload(BasePayload):
    task_type: Literal["ACADEMIC_PAPER", "ACADEMIC_CONFERENCE"]
    authors: List[str] = Field(default_factory=list)
    venue: Optional[str] = None


class PatentPayload(BasePayload):
    task_type: Literal["PATENT"]
    patent_number: Optional[str] = None
    assignee: Optional[str] = None


class RepositoryPayload(BasePayload):
    task_type: Literal["OPENSOURCE"]
    repo_full_name: Optional[str] = None
    stars: Optional[int] = None
    language: Optional[str] = None


class JobPayload(BasePayload):
    task_type: Literal["TALENT_FLOW"]
    company_name: Optional[str] = None
    location: Optional[str] = None


class ReportPayload(BasePayload):
    task_type: Literal["ANALYST_REPORT", "CORPORATE_FILING"]
    publisher: Optional[str] = None


TaskPayload = Annotated[
    Union[NewsPayload, PaperPayload, PatentPayload, RepositoryPayload, JobPayload, ReportPayload],
    Field(discriminator="task_type"),
]


# =============================================================================
# Envelope
# =============================================================================

class Task(BaseModel):
    """One harvested item waiting in QUEUE_TASKS."""
    model_config = ConfigDict(extra="ignore")

    id: str
    task_type: TaskType
    payload: TaskPayload
    created_timestamp: Optional[datetime] = None
    retry_count: int = 0
    last_error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_payload(cls, data: Any):
        if isinstance(data, dict):
            payload = data.get("payload")
            task_type = data.get("task_type")
            if isinstance(task_type, Enum):
                task_type = task_type.value
            if isinstance(payload, dict) and task_type:
                data = {**data, "payload": {**payload, "task_type": task_type}}
        return data

    @field_validator("created_timestamp")
    @classmethod
    def _to_utc(cls, v):
        return ensure_utc(v)

    @property
    def text_for_ai(self) -> str:
        return f"Title: {self.payload.title}\nSummary: {self.payload.summary}"
