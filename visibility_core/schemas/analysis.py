"""Pydantic view models for a single visibility analysis."""

from pydantic import BaseModel, Field

from visibility_core.analysis.types import SentimentLabel, Trend
from visibility_core.schemas.leaderboard import LeaderboardView


class ObservationView(BaseModel):
    model: str  # display name, e.g. "GPT 4 Turbo"
    prompt_category: str = ""
    mentioned: bool
    sentiment: str
    confidence: int = Field(ge=0, le=100)
    rank_position: int | None = None
    token_count: int = 0
    likely_error: bool = False  # empty response + not mentioned: probably an API failure


class AnalysisSummary(BaseModel):
    mention_rate: int = Field(ge=0)
    sentiment: SentimentLabel
    top_models: list[str] = Field(default_factory=list)
    average_rank: float | None = None


class AnalysisView(BaseModel):
    analysis_id: int | None = None
    entity_id: int
    visibility_score: int = Field(ge=0)
    trend: Trend
    summary: AnalysisSummary
    results: list[ObservationView]
    competitive_leaderboard: LeaderboardView | None = None
    created_at: str  # ISO-8601 or "Unknown"
