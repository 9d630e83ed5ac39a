"""Pydantic view models for the competitive leaderboard."""

from pydantic import BaseModel, Field

from visibility_core.analysis.types import MarketPosition


class TargetSummary(BaseModel):
    name: str
    rank: int | None = None
    mention_count: int = Field(ge=0)
    mention_rate: int = Field(ge=0, description="Share of queries mentioning the target (%), whole number")


class RankedCompetitor(BaseModel):
    rank: int = Field(ge=1)
    name: str
    mention_count: int = Field(ge=0)
    avg_position: float | None = None
    appears_with_target: int = Field(default=0, ge=0)
    market_share: float = Field(ge=0, le=100, description="Share of all mentions (%)")
    badge: str | None = None  # "top" for rank 1


class LeaderboardInsights(BaseModel):
    market_position: MarketPosition
    top_competitor: str | None = None
    competitive_gap: int | None = None
    recommendation: str


class LeaderboardView(BaseModel):
    target: TargetSummary
    competitors: list[RankedCompetitor]
    total_queries: int = Field(ge=0)
    insights: LeaderboardInsights
