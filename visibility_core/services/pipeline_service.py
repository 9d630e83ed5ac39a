"""Read models for the pipeline: status, analysis, leaderboard and publish views.

Thin async fetch layer over a PipelineStore; all computation happens in the
pure functions of visibility_core.analysis. History is capped here, at the
persistence boundary, never inside the aggregators.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from visibility_core.analysis.aggregator import compute_analysis_view
from visibility_core.analysis.leaderboard import compute_leaderboard
from visibility_core.analysis.publish_gate import DEFAULT_POLICY, PublishPolicy, assess_publish_eligibility
from visibility_core.analysis.status import compute_status
from visibility_core.core.config import settings
from visibility_core.core.exceptions import NotFoundError
from visibility_core.schemas.analysis import AnalysisView
from visibility_core.schemas.leaderboard import LeaderboardView
from visibility_core.schemas.publish import PublishAssessment
from visibility_core.schemas.records import Claim, NotabilityRecord, TrackedEntityRecord
from visibility_core.schemas.status import StatusView
from visibility_core.services.pipeline_store import PipelineStore

logger = logging.getLogger(__name__)


async def _require_entity(store: PipelineStore, entity_id: int) -> TrackedEntityRecord:
    entity = await store.get_entity(entity_id)
    if entity is None:
        raise NotFoundError(f"Tracked entity {entity_id} not found")
    return entity


async def get_status_view(
    store: PipelineStore,
    entity_id: int,
    *,
    now: datetime | None = None,
) -> StatusView:
    entity = await _require_entity(store, entity_id)
    latest_job = await store.get_latest_job(entity_id)
    analyses = await store.get_analyses(entity_id, limit=1)
    return compute_status(
        entity,
        latest_job,
        analyses[0] if analyses else None,
        crawl_weight=settings.crawl_weight,
        now=now,
    )


async def get_analysis_view(store: PipelineStore, entity_id: int) -> AnalysisView | None:
    """Latest analysis with its trend against the one before. None if never analyzed."""
    await _require_entity(store, entity_id)
    analyses = await store.get_analyses(entity_id, limit=2)
    if not analyses:
        return None
    previous = analyses[1] if len(analyses) > 1 else None
    return compute_analysis_view(analyses[0], previous)


async def get_analysis_history(
    store: PipelineStore,
    entity_id: int,
    limit: int | None = None,
) -> list[AnalysisView]:
    """Most recent analyses, newest first, each trended against its predecessor.

    One extra row is fetched so the oldest returned analysis still has a
    predecessor to compare with.
    """
    await _require_entity(store, entity_id)
    limit = min(limit or settings.analysis_history_limit, settings.analysis_history_limit)
    analyses = await store.get_analyses(entity_id, limit=limit + 1)

    views = []
    for idx, analysis in enumerate(analyses[:limit]):
        previous = analyses[idx + 1] if idx + 1 < len(analyses) else None
        views.append(compute_analysis_view(analysis, previous))
    return views


async def get_leaderboard_view(store: PipelineStore, entity_id: int) -> LeaderboardView | None:
    """Leaderboard of the latest analysis, using the entity's current name."""
    entity = await _require_entity(store, entity_id)
    analyses = await store.get_analyses(entity_id, limit=1)
    if not analyses or analyses[0].leaderboard_input is None:
        return None
    return compute_leaderboard(analyses[0].leaderboard_input, entity.name)


async def get_publish_assessment(
    store: PipelineStore,
    entity_id: int,
    notability: NotabilityRecord,
    candidate_claims: Iterable[Claim] = (),
    *,
    policy: PublishPolicy = DEFAULT_POLICY,
    sandbox_mode: bool | None = None,
) -> PublishAssessment:
    entity = await _require_entity(store, entity_id)
    return assess_publish_eligibility(
        notability,
        entity.tier,
        entity.enrichment_level,
        candidate_claims=candidate_claims,
        policy=policy,
        sandbox_mode=settings.sandbox_mode if sandbox_mode is None else sandbox_mode,
    )
