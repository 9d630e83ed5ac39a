"""Leaderboard Engine: ranks the target against deduplicated competitors.

Computes, for one analysis run:
  - mention_rate   = target mentions / total queries × 100
  - market_share   = competitor mentions / (target + Σ competitor mentions) × 100
  - market_position: unknown | leading | competitive | emerging
  - competitive_gap = top competitor mentions − target mentions (positive only)
"""

from __future__ import annotations

import logging

from visibility_core.analysis.names import deduplicate_competitors
from visibility_core.analysis.types import MarketPosition
from visibility_core.analysis.utils import round_half_up, round_whole
from visibility_core.schemas.leaderboard import (
    LeaderboardInsights,
    LeaderboardView,
    RankedCompetitor,
    TargetSummary,
)
from visibility_core.schemas.records import CompetitorObservation, LeaderboardInput

logger = logging.getLogger(__name__)

LEADING_MENTION_RATE = 60.0
COMPETITIVE_MENTION_RATE = 30.0
TOP_BADGE = "top"

_RECOMMENDATIONS = {
    MarketPosition.LEADING: (
        "Excellent! Your business has strong visibility across AI models. "
        "Focus on maintaining quality and expanding content."
    ),
    MarketPosition.COMPETITIVE: (
        "You have good visibility. Publishing a structured record and creating "
        "quality content can boost your ranking."
    ),
    MarketPosition.EMERGING: (
        "Limited visibility detected. Publishing a structured record and building "
        "online presence will significantly improve discoverability."
    ),
    MarketPosition.UNKNOWN: (
        "Insufficient data. Run an analysis with recommendation prompts "
        "to assess competitive position."
    ),
}


def calculate_mention_rate(mention_count: int, total_queries: int) -> float:
    if total_queries <= 0:
        return 0.0
    return mention_count / total_queries * 100


def classify_market_position(
    mention_rate: float,
    target_mentions: int,
    top_competitor: CompetitorObservation | None,
    total_queries: int,
) -> MarketPosition:
    """Classify the target's position; first matching rule wins."""
    if total_queries <= 0:
        return MarketPosition.UNKNOWN
    if (
        mention_rate >= LEADING_MENTION_RATE
        or top_competitor is None
        or target_mentions > top_competitor.mention_count
    ):
        return MarketPosition.LEADING
    if mention_rate >= COMPETITIVE_MENTION_RATE:
        return MarketPosition.COMPETITIVE
    if mention_rate > 0:
        return MarketPosition.EMERGING
    return MarketPosition.UNKNOWN


def build_recommendation(
    position: MarketPosition,
    competitive_gap: int | None = None,
    top_competitor_name: str | None = None,
) -> str:
    if position == MarketPosition.COMPETITIVE and competitive_gap and top_competitor_name:
        return (
            f"You're competitive with {top_competitor_name}. Publishing a structured record "
            f"could close the gap of {competitive_gap} mentions."
        )
    return _RECOMMENDATIONS[position]


def compute_leaderboard(data: LeaderboardInput, current_display_name: str | None = None) -> LeaderboardView:
    """Build the competitive leaderboard for one analysis run.

    Args:
        data: Raw, possibly-duplicated observations from the analysis collaborator.
        current_display_name: The entity's current name; overrides the stored
            target name when non-blank.

    Returns:
        LeaderboardView with ranked competitors and insights.
    """
    target = data.target
    total_queries = data.total_queries
    mention_rate = calculate_mention_rate(target.mention_count, total_queries)

    # Stable sort keeps first-seen order on ties
    competitors = sorted(
        deduplicate_competitors(data.competitors),
        key=lambda c: c.mention_count,
        reverse=True,
    )

    total_mentions = target.mention_count + sum(c.mention_count for c in competitors)

    ranked = [
        RankedCompetitor(
            rank=idx + 1,
            name=comp.name,
            mention_count=comp.mention_count,
            avg_position=round_half_up(comp.avg_position, 1) if comp.avg_position is not None else None,
            appears_with_target=comp.appears_with_target,
            market_share=(
                round_half_up(comp.mention_count / total_mentions * 100, 2) if total_mentions > 0 else 0.0
            ),
            badge=TOP_BADGE if idx == 0 else None,
        )
        for idx, comp in enumerate(competitors)
    ]

    top_competitor = competitors[0] if competitors else None
    position = classify_market_position(mention_rate, target.mention_count, top_competitor, total_queries)

    competitive_gap = None
    if top_competitor is not None and top_competitor.mention_count > target.mention_count:
        competitive_gap = top_competitor.mention_count - target.mention_count

    name = current_display_name.strip() if current_display_name and current_display_name.strip() else target.name

    logger.debug(
        "Leaderboard: target=%s, mentions=%d/%d, rate=%.1f, competitors=%d, position=%s",
        name,
        target.mention_count,
        total_queries,
        mention_rate,
        len(ranked),
        position.value,
    )

    return LeaderboardView(
        target=TargetSummary(
            name=name,
            rank=target.rank,
            mention_count=target.mention_count,
            mention_rate=round_whole(mention_rate),
        ),
        competitors=ranked,
        total_queries=total_queries,
        insights=LeaderboardInsights(
            market_position=position,
            top_competitor=top_competitor.name if top_competitor else None,
            competitive_gap=competitive_gap,
            recommendation=build_recommendation(
                position,
                competitive_gap,
                top_competitor.name if top_competitor else None,
            ),
        ),
    )
