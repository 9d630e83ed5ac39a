"""Analysis Aggregator: shapes one visibility analysis for display."""

from __future__ import annotations

import logging
from collections import Counter

from visibility_core.analysis.leaderboard import compute_leaderboard
from visibility_core.analysis.types import SentimentLabel, Trend
from visibility_core.analysis.utils import round_whole
from visibility_core.schemas.analysis import AnalysisSummary, AnalysisView, ObservationView
from visibility_core.schemas.records import ModelObservation, VisibilityAnalysisRecord

logger = logging.getLogger(__name__)

TREND_THRESHOLD = 5.0
POSITIVE_SENTIMENT = 0.7
NEGATIVE_SENTIMENT = 0.4
TOP_MODELS_LIMIT = 3
UNKNOWN_DATE = "Unknown"


def calculate_trend(current: float, previous: float | None) -> Trend:
    """Compare two visibility scores; a change of more than 5 points is significant."""
    if previous is None:
        return Trend.NEUTRAL
    diff = current - previous
    if diff > TREND_THRESHOLD:
        return Trend.UP
    if diff < -TREND_THRESHOLD:
        return Trend.DOWN
    return Trend.NEUTRAL


def sentiment_bucket(score: float | None) -> SentimentLabel:
    if score is None:
        return SentimentLabel.NEUTRAL
    if score > POSITIVE_SENTIMENT:
        return SentimentLabel.POSITIVE
    if score < NEGATIVE_SENTIMENT:
        return SentimentLabel.NEGATIVE
    return SentimentLabel.NEUTRAL


def format_model_name(model: str) -> str:
    """Format a provider-qualified model id for display.

    openai/gpt-4-turbo      → GPT 4 Turbo
    anthropic/claude-3-opus → Claude 3 Opus
    Anything not of the form ``provider/name`` is returned unchanged.
    """
    parts = model.split("/")
    if len(parts) != 2:
        return model

    words = parts[1].replace("-", " ").split(" ")
    formatted = " ".join(word[:1].upper() + word[1:] for word in words)

    if formatted.startswith("Gpt"):
        return formatted.replace("Gpt", "GPT", 1)
    return formatted


def top_models(observations: list[ModelObservation], limit: int = TOP_MODELS_LIMIT) -> list[str]:
    """Models ordered by how often they mentioned the entity, best first.

    Models that never mentioned the entity still count (with zero) so a run
    with no mentions lists its models in first-seen order.
    """
    counts: Counter[str] = Counter()
    for obs in observations:
        counts[obs.model] += 1 if obs.mentioned else 0

    # Counter preserves insertion order; sorted() is stable on ties
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [format_model_name(model) for model, _ in ranked[:limit]]


def shape_observation(obs: ModelObservation) -> ObservationView:
    raw = (obs.raw_response or "").strip()
    return ObservationView(
        model=format_model_name(obs.model),
        prompt_category=obs.prompt_category,
        mentioned=obs.mentioned,
        sentiment=obs.sentiment,
        confidence=round_whole(obs.confidence * 100),
        rank_position=obs.rank_position,
        token_count=obs.token_count,
        likely_error=not raw and not obs.mentioned,
    )


def compute_analysis_view(
    analysis: VisibilityAnalysisRecord,
    previous_analysis: VisibilityAnalysisRecord | None = None,
) -> AnalysisView:
    """Build the display view for one analysis, with trend against the previous run."""
    trend = calculate_trend(
        analysis.visibility_score,
        previous_analysis.visibility_score if previous_analysis is not None else None,
    )

    results = [shape_observation(obs) for obs in analysis.observations]
    likely_errors = sum(1 for r in results if r.likely_error)
    if likely_errors:
        logger.info(
            "Analysis %s for entity %d has %d observation(s) that look like API failures",
            analysis.id,
            analysis.entity_id,
            likely_errors,
        )

    leaderboard = None
    if analysis.leaderboard_input is not None:
        leaderboard = compute_leaderboard(analysis.leaderboard_input, analysis.entity_name)

    return AnalysisView(
        analysis_id=analysis.id,
        entity_id=analysis.entity_id,
        visibility_score=round_whole(analysis.visibility_score),
        trend=trend,
        summary=AnalysisSummary(
            mention_rate=round_whole(analysis.mention_rate),
            sentiment=sentiment_bucket(analysis.sentiment_score),
            top_models=top_models(analysis.observations),
            average_rank=analysis.avg_rank_position,
        ),
        results=results,
        competitive_leaderboard=leaderboard,
        created_at=analysis.generated_at.isoformat() if analysis.generated_at else UNKNOWN_DATE,
    )
