"""Upstream record schemas: what collaborators hand to the core.

Every record carries an explicit ``kind`` tag stamped by the orchestrator.
Parsing goes through a discriminated union on that tag; the core never infers
a record's origin from which fields happen to be present.

Validators default missing or malformed fields instead of raising: missing
dates become None, missing lists become [], missing scores become 0.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationInfo, field_validator

from visibility_core.analysis.utils import clamp
from visibility_core.core.exceptions import RecordKindError

logger = logging.getLogger(__name__)


def _parse_datetime(value: Any) -> datetime | None:
    """Best-effort datetime coercion; unparsable input becomes None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparsable timestamp %r treated as unknown", value)
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _zero_if_none(value: Any) -> Any:
    return 0 if value is None else value


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Nested value objects
# ---------------------------------------------------------------------------


class ModelObservation(_Record):
    """One model's answer within a visibility analysis."""

    model: str = "unknown"
    prompt_category: str = ""
    mentioned: bool = False
    sentiment: str = "neutral"
    confidence: float = Field(default=0.0, validation_alias=AliasChoices("confidence", "accuracy"))
    rank_position: int | None = None
    raw_response: str | None = None
    token_count: int = 0

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_in_range(cls, v: Any) -> float:
        if v is None:
            return 0.0
        return clamp(float(v), 0.0, 1.0)

    @field_validator("token_count", mode="before")
    @classmethod
    def _tokens_default(cls, v: Any) -> Any:
        return _zero_if_none(v)

    @field_validator("model", "sentiment", "prompt_category", mode="before")
    @classmethod
    def _text_default(cls, v: Any, info: ValidationInfo) -> str:
        if v is None:
            return cls.model_fields[info.field_name].default
        return str(v)


class CompetitorObservation(_Record):
    name: str = ""
    mention_count: int = 0
    avg_position: float | None = None
    appears_with_target: int = 0

    @field_validator("mention_count", "appears_with_target", mode="before")
    @classmethod
    def _non_negative(cls, v: Any) -> int:
        return max(0, int(_zero_if_none(v)))


class TargetObservation(_Record):
    name: str = ""
    rank: int | None = None
    mention_count: int = 0
    avg_position: float | None = None

    @field_validator("mention_count", mode="before")
    @classmethod
    def _non_negative(cls, v: Any) -> int:
        return max(0, int(_zero_if_none(v)))


class LeaderboardInput(_Record):
    """Raw, possibly-duplicated competitor observations for one analysis run."""

    target: TargetObservation = Field(default_factory=TargetObservation)
    competitors: list[CompetitorObservation] = Field(default_factory=list)
    total_queries: int = 0

    @field_validator("competitors", mode="before")
    @classmethod
    def _competitor_list(cls, v: Any) -> list:
        return v if isinstance(v, list) else []

    @field_validator("total_queries", mode="before")
    @classmethod
    def _non_negative(cls, v: Any) -> int:
        return max(0, int(_zero_if_none(v)))


class Reference(_Record):
    """A source backing a notability decision or a published claim."""

    url: str = ""
    title: str = ""
    source: str = ""
    source_type: str = "other"  # government | news | academic | database | directory | review | company | other
    trust_score: float = 0.0  # 0–100
    is_serious: bool = True


class Claim(_Record):
    """A candidate structured property/value pair destined for publication."""

    property_id: str
    value: Any = None
    references: list[Reference] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tagged top-level records
# ---------------------------------------------------------------------------


class TrackedEntityRecord(_Record):
    kind: Literal["tracked_entity"] = "tracked_entity"
    id: int
    name: str
    url: str = ""
    category: str | None = None
    location: dict | None = None
    status: str = "pending"
    automation_enabled: bool = False
    next_run_at: datetime | None = None
    tier: str = "basic"
    enrichment_level: int | None = None
    published_record_id: str | None = None
    published_at: datetime | None = None


class ExtractionJobRecord(_Record):
    kind: Literal["extraction_job"] = "extraction_job"
    id: int
    entity_id: int
    status: str = "queued"
    progress: float = 0.0
    pages_discovered: int = 0
    pages_processed: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    @field_validator("progress", mode="before")
    @classmethod
    def _progress_in_range(cls, v: Any) -> float:
        return clamp(float(_zero_if_none(v)), 0.0, 100.0)

    @field_validator("pages_discovered", "pages_processed", mode="before")
    @classmethod
    def _pages_default(cls, v: Any) -> Any:
        return _zero_if_none(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status_lower(cls, v: Any) -> str:
        if isinstance(v, Enum):
            v = v.value
        return str(v or "").strip().lower()

    @field_validator("started_at", "completed_at", mode="before")
    @classmethod
    def _lenient_dates(cls, v: Any) -> datetime | None:
        return _parse_datetime(v)


class VisibilityAnalysisRecord(_Record):
    kind: Literal["visibility_analysis"] = "visibility_analysis"
    id: int | None = None
    entity_id: int
    entity_name: str = ""
    visibility_score: float = 0.0
    mention_rate: float = 0.0
    sentiment_score: float | None = None
    accuracy_score: float | None = None
    avg_rank_position: float | None = None
    observations: list[ModelObservation] = Field(
        default_factory=list,
        validation_alias=AliasChoices("observations", "llm_results"),
    )
    leaderboard_input: LeaderboardInput | None = None
    generated_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("generated_at", "created_at"),
    )

    @field_validator("visibility_score", "mention_rate", mode="before")
    @classmethod
    def _scores_in_range(cls, v: Any) -> float:
        return clamp(float(_zero_if_none(v)), 0.0, 100.0)

    @field_validator("observations", mode="before")
    @classmethod
    def _observation_list(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, (dict, ModelObservation))]

    @field_validator("generated_at", mode="before")
    @classmethod
    def _lenient_date(cls, v: Any) -> datetime | None:
        return _parse_datetime(v)


class NotabilityRecord(_Record):
    kind: Literal["notability"] = "notability"
    is_notable: bool = False
    confidence: float = 0.0
    reasons: list[str] = Field(default_factory=list)
    serious_reference_count: int = 0
    references: list[Reference] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)  # improvement suggestions, best first

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_in_range(cls, v: Any) -> float:
        return clamp(float(_zero_if_none(v)), 0.0, 1.0)


UpstreamRecord = Annotated[
    Union[TrackedEntityRecord, ExtractionJobRecord, VisibilityAnalysisRecord, NotabilityRecord],
    Field(discriminator="kind"),
]

_UPSTREAM_ADAPTER: TypeAdapter = TypeAdapter(UpstreamRecord)


def parse_upstream_record(payload: dict) -> BaseModel:
    """Validate a kind-stamped payload into its record type.

    Raises pydantic.ValidationError when ``kind`` is missing or unknown.
    """
    return _UPSTREAM_ADAPTER.validate_python(payload)


def stamp(kind: str, payload: dict) -> dict:
    """Return a copy of ``payload`` tagged with ``kind``."""
    return {**payload, "kind": kind}


def expect_kind(record: BaseModel, record_type: type[BaseModel]) -> BaseModel:
    """Ensure a parsed record is of the expected type, raising RecordKindError otherwise."""
    if not isinstance(record, record_type):
        actual = getattr(record, "kind", type(record).__name__)
        raise RecordKindError(f"Expected {record_type.__name__}, got record of kind '{actual}'")
    return record
