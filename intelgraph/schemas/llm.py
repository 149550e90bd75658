"""
Structured-output schemas for every LLM call.

Models answer loosely: arrays come back as strings or null, scores as "7/10".
The "before" validators coerce what they can so a single sloppy field does not
throw away a whole batch; anything still unusable is dropped downstream.
"""

import re
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field, field_validator

from intelgraph.schemas.records import CANDIDATE_FIELD_TO_TYPE


def _coerce_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
    return []


def _coerce_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.search(r"-?\d+(\.\d+)?", value)
        return float(match.group()) if match else None
    return None


# =============================================================================
# Batch analysis
# =============================================================================

class TaskAnalysis(BaseModel):
    """AI scoring and candidate extraction for one task."""
    value_score: int = Field(
        default=0,
        description="Integer 0-10: strategic value of the item for technology intelligence"
    )
    ai_summary: str = Field(default="", description="2-3 sentence factual summary")
    ai_keywords: List[str] = Field(default_factory=list, description="Up to 5 keywords")

    candidate_companies: List[str] = Field(default_factory=list, description="Company names mentioned")
    candidate_techs: List[str] = Field(default_factory=list, description="Technologies, methods, tools")
    candidate_persons: List[str] = Field(default_factory=list, description="Named people")
    candidate_products: List[str] = Field(default_factory=list, description="Commercial products")
    candidate_financial_concepts: List[str] = Field(default_factory=list, description="Financial concepts and metrics")
    candidate_organization_lists: List[str] = Field(default_factory=list, description="Indices or rankings of organizations")
    candidate_business_events: List[str] = Field(default_factory=list, description="Named conferences, launches, deals")
    candidate_research_firms: List[str] = Field(default_factory=list, description="Market research or analyst firms")
    candidate_publishing_platforms: List[str] = Field(default_factory=list, description="Journals, outlets, platforms")

    @field_validator("value_score", mode="before")
    @classmethod
    def _score(cls, v):
        number = _coerce_number(v)
        if number is None:
            return 0
        return int(round(min(max(number, 0), 10)))

    @field_validator("ai_summary", mode="before")
    @classmethod
    def _summary(cls, v):
        return v if isinstance(v, str) else ""

    @field_validator("ai_keywords", *CANDIDATE_FIELD_TO_TYPE.keys(), mode="before")
    @classmethod
    def _lists(cls, v):
        return _coerce_str_list(v)

    def candidates_by_type(self) -> Dict[str, List[str]]:
        return {
            entity_type: list(getattr(self, field))
            for field, entity_type in CANDIDATE_FIELD_TO_TYPE.items()
        }


class AnalysisResult(BaseModel):
    id: str = Field(..., description="The task id this analysis belongs to")
    analysis: Optional[TaskAnalysis] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v):
        return str(v) if v is not None else v


class BatchAnalysisResponse(BaseModel):
    results: List[AnalysisResult] = Field(default_factory=list)

    @field_validator("results", mode="before")
    @classmethod
    def _drop_malformed(cls, v):
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict) and item.get("id") is not None]


# =============================================================================
# Normalization
# =============================================================================

class NormalizedGroup(BaseModel):
    primary_name: str = Field(..., description="The canonical, most complete name")
    aliases: List[str] = Field(default_factory=list, description="Other names in the input referring to the same thing")

    @field_validator("aliases", mode="before")
    @classmethod
    def _aliases(cls, v):
        return _coerce_str_list(v)


class NormalizationResponse(BaseModel):
    normalized_groups: List[NormalizedGroup] = Field(default_factory=list)

    @field_validator("normalized_groups", mode="before")
    @classmethod
    def _drop_malformed(cls, v):
        if not isinstance(v, list):
            return []
        return [g for g in v if isinstance(g, dict) and isinstance(g.get("primary_name"), str) and g["primary_name"].strip()]


# =============================================================================
# Relationships
# =============================================================================

class ExtractedRelationship(BaseModel):
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    type: Optional[str] = Field(default=None, description="snake_case relation, e.g. partners_with, competes_with")
    strength: Optional[float] = Field(default=None, description="Confidence/strength in (0, 1]")
    description: Optional[str] = None

    @field_validator("strength", mode="before")
    @classmethod
    def _strength(cls, v):
        return _coerce_number(v)


class RelationshipExtractionResponse(BaseModel):
    extracted_relationships: List[ExtractedRelationship] = Field(default_factory=list)

    @field_validator("extracted_relationships", mode="before")
    @classmethod
    def _drop_malformed(cls, v):
        if not isinstance(v, list):
            return []
        return [r for r in v if isinstance(r, dict)]


# =============================================================================
# Hierarchy
# =============================================================================

class HierarchyDecision(BaseModel):
    parent_id: Optional[str] = Field(default=None, description="ID of the best parent from the candidate list, or null")
    confidence_score: Optional[float] = None

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _confidence(cls, v):
        return _coerce_number(v)


# =============================================================================
# Enrichment (one model per entity type)
# =============================================================================

class EnrichmentBase(BaseModel):
    description: Optional[str] = None
    search_keywords: List[str] = Field(default_factory=list)
    relevance_score: Optional[int] = None

    @field_validator("search_keywords", mode="before")
    @classmethod
    def _keywords(cls, v):
        return _coerce_str_list(v)

    @field_validator("relevance_score", mode="before")
    @classmethod
    def _relevance(cls, v):
        number = _coerce_number(v)
        return None if number is None else int(round(number))

    def to_fields(self) -> Dict[str, Any]:
        """Non-empty fields only; empty strings and lists become None."""
        fields = {}
        for key, value in self.model_dump().items():
            if isinstance(value, str) and not value.strip():
                value = None
            elif isinstance(value, (list, dict)) and not value:
                value = None
            fields[key] = value
        return fields

    def is_empty(self) -> bool:
        return all(v is None for v in self.to_fields().values())


class CompanyEnrichment(EnrichmentBase):
    image_url: Optional[str] = None
    category: Optional[str] = None
    sub_type: Optional[str] = None
    website: Optional[str] = None
    headquarters: Optional[str] = None
    founding_year: Optional[int] = None
    stock_symbol: Optional[str] = None
    competitors: List[str] = Field(default_factory=list)

    @field_validator("founding_year", mode="before")
    @classmethod
    def _year(cls, v):
        number = _coerce_number(v)
        return None if number is None else int(number)

    @field_validator("competitors", mode="before")
    @classmethod
    def _competitors(cls, v):
        return _coerce_str_list(v)


class TechnologyEnrichment(EnrichmentBase):
    category: Optional[str] = None
    sub_type: Optional[str] = None
    primary_use_cases: List[str] = Field(default_factory=list)
    maturity_stage: Optional[str] = None
    impact_score: Optional[int] = None

    @field_validator("primary_use_cases", mode="before")
    @classmethod
    def _use_cases(cls, v):
        return _coerce_str_list(v)

    @field_validator("impact_score", mode="before")
    @classmethod
    def _impact(cls, v):
        number = _coerce_number(v)
        return None if number is None else int(round(number))


class PersonEnrichment(EnrichmentBase):
    image_url: Optional[str] = None
    expertise_areas: List[str] = Field(default_factory=list)
    current_affiliation: Optional[str] = None
    notable_contributions: List[str] = Field(default_factory=list)

    @field_validator("expertise_areas", "notable_contributions", mode="before")
    @classmethod
    def _lists(cls, v):
        return _coerce_str_list(v)


class ProductEnrichment(EnrichmentBase):
    product_category: Optional[str] = None
    manufacturer_name: Optional[str] = None
    key_features: List[str] = Field(default_factory=list)
    key_specifications: Dict[str, str] = Field(default_factory=dict)

    @field_validator("key_features", mode="before")
    @classmethod
    def _features(cls, v):
        return _coerce_str_list(v)

    @field_validator("key_specifications", mode="before")
    @classmethod
    def _specs(cls, v):
        if not isinstance(v, dict):
            return {}
        return {str(k): str(val) for k, val in v.items() if val is not None}


class FinancialConceptEnrichment(EnrichmentBase):
    definition: Optional[str] = None
    relevance_to_tech_finance: Optional[str] = None
    related_metrics: List[str] = Field(default_factory=list)

    @field_validator("related_metrics", mode="before")
    @classmethod
    def _metrics(cls, v):
        return _coerce_str_list(v)


class OrganizationListEnrichment(EnrichmentBase):
    purpose: Optional[str] = None
    criteria: Optional[str] = None
    notable_members_example: List[str] = Field(default_factory=list)

    @field_validator("notable_members_example", mode="before")
    @classmethod
    def _members(cls, v):
        return _coerce_str_list(v)


class BusinessEventEnrichment(EnrichmentBase):
    event_type: Optional[str] = Field(default=None, description="Conference, Trade Show, Product Launch, ...")
    organizer: Optional[str] = None
    frequency: Optional[str] = None
    key_themes: List[str] = Field(default_factory=list)
    target_audience: Optional[str] = None

    @field_validator("key_themes", mode="before")
    @classmethod
    def _themes(cls, v):
        return _coerce_str_list(v)


class ResearchFirmEnrichment(EnrichmentBase):
    expertise_areas: List[str] = Field(default_factory=list)
    notable_publications_example: List[str] = Field(default_factory=list)
    client_base_example: Optional[str] = None

    @field_validator("expertise_areas", "notable_publications_example", mode="before")
    @classmethod
    def _lists(cls, v):
        return _coerce_str_list(v)


class PublishingPlatformEnrichment(EnrichmentBase):
    platform_type: Optional[str] = Field(default=None, description="News Outlet, Academic Journal, Industry Blog, ...")
    key_topics: List[str] = Field(default_factory=list)
    audience: Optional[str] = None
    notable_features_example: List[str] = Field(default_factory=list)

    @field_validator("key_topics", "notable_features_example", mode="before")
    @classmethod
    def _lists(cls, v):
        return _coerce_str_list(v)


ENRICHMENT_MODELS: Dict[str, Type[EnrichmentBase]] = {
    "Company": CompanyEnrichment,
    "Technology": TechnologyEnrichment,
    "Person": PersonEnrichment,
    "Product": ProductEnrichment,
    "Financial_Concept": FinancialConceptEnrichment,
    "Organization_List": OrganizationListEnrichment,
    "Business_Event": BusinessEventEnrichment,
    "Research_Firm": ResearchFirmEnrichment,
    "Publishing_Platform": PublishingPlatformEnrichment,
}
