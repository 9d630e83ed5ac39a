"""Pydantic view model for a publish eligibility assessment."""

from pydantic import BaseModel, Field

from visibility_core.analysis.types import Tier
from visibility_core.schemas.records import Claim


class TopReference(BaseModel):
    title: str
    url: str
    source: str
    trust_score: float = Field(ge=0, le=100)


class PublishAssessment(BaseModel):
    is_notable: bool
    confidence: float = Field(ge=0, le=1)
    reasons: list[str] = Field(default_factory=list)
    serious_reference_count: int = Field(default=0, ge=0)
    top_references: list[TopReference] = Field(default_factory=list)
    can_publish: bool
    recommendation: str
    tier: Tier
    enrichment_level: int | None = None
    allowed_property_ids: list[str] = Field(default_factory=list)
    properties: list[Claim] = Field(default_factory=list)
