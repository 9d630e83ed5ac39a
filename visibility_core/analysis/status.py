"""Pipeline Status Aggregator: derives one status snapshot from the latest records.

State machine (checked in order, first match wins):
  no job                       → pending     (0)
  job failed | error           → error       (0)
  job queued | running         → processing  (job progress × crawl weight)
  job completed, no analysis   → extracted   (50)
  job completed, with analysis → analyzed    (100)
  anything else                → error       (0, "unrecognized status")

The entity's stored lifecycle status is never consulted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from visibility_core.analysis.types import (
    FAILED_JOB_STATUSES,
    IN_FLIGHT_JOB_STATUSES,
    JobStatus,
    PipelineStatus,
)
from visibility_core.analysis.utils import clamp, round_whole
from visibility_core.schemas.records import ExtractionJobRecord, TrackedEntityRecord, VisibilityAnalysisRecord
from visibility_core.schemas.status import AnalysisSnapshot, ExtractionSummary, StatusView

logger = logging.getLogger(__name__)

CRAWL_WEIGHT = 0.5
EXTRACTED_PROGRESS = 50
ANALYZED_PROGRESS = 100
DEFAULT_FAILURE_MESSAGE = "Extraction failed"


def estimate_completion(
    started_at: datetime | None,
    progress: float,
    now: datetime | None = None,
) -> datetime | None:
    """Linear projection to 100%: started_at + elapsed / progress × 100."""
    if started_at is None or progress <= 0:
        return None
    now = now or datetime.now(timezone.utc)
    elapsed = (now - started_at).total_seconds()
    if elapsed < 0:
        return None
    try:
        return started_at + timedelta(seconds=elapsed / progress * 100)
    except OverflowError:
        # projection past datetime.max
        return None


def _extraction_summary(job: ExtractionJobRecord) -> ExtractionSummary:
    return ExtractionSummary(
        job_id=job.id,
        status=job.status,
        progress=job.progress,
        pages_discovered=job.pages_discovered,
        pages_processed=job.pages_processed,
        started_at=job.started_at,
        completed_at=job.completed_at,
        error_message=job.error_message,
    )


def _analysis_snapshot(analysis: VisibilityAnalysisRecord) -> AnalysisSnapshot:
    return AnalysisSnapshot(
        analysis_id=analysis.id,
        visibility_score=analysis.visibility_score,
        mention_rate=analysis.mention_rate,
        sentiment_score=analysis.sentiment_score,
        accuracy_score=analysis.accuracy_score,
        avg_rank_position=analysis.avg_rank_position,
        generated_at=analysis.generated_at,
    )


def compute_status(
    entity: TrackedEntityRecord,
    latest_job: ExtractionJobRecord | None,
    latest_analysis: VisibilityAnalysisRecord | None,
    *,
    crawl_weight: float = CRAWL_WEIGHT,
    now: datetime | None = None,
) -> StatusView:
    """Derive the processing-status snapshot for one entity.

    Total over every (entity, job, analysis) combination; never mutates its inputs.
    ``now`` is injectable for the completion estimate.
    """
    base = dict(
        entity_id=entity.id,
        entity_name=entity.name,
        entity_url=entity.url,
        analysis=_analysis_snapshot(latest_analysis) if latest_analysis is not None else None,
    )

    if latest_job is None:
        return StatusView(**base, status=PipelineStatus.PENDING, progress=0)

    extraction = _extraction_summary(latest_job)
    base.update(
        extraction=extraction,
        has_multi_page_data=latest_job.pages_processed > 1,
    )
    job_status = latest_job.status

    if job_status in FAILED_JOB_STATUSES:
        return StatusView(
            **base,
            status=PipelineStatus.ERROR,
            progress=0,
            error_message=latest_job.error_message or DEFAULT_FAILURE_MESSAGE,
        )

    if job_status in IN_FLIGHT_JOB_STATUSES:
        job_progress = clamp(latest_job.progress, 0.0, 100.0)
        return StatusView(
            **base,
            status=PipelineStatus.PROCESSING,
            progress=round_whole(job_progress * crawl_weight),
            is_parallel_processing=True,
            estimated_completion=estimate_completion(latest_job.started_at, job_progress, now),
        )

    if job_status == JobStatus.COMPLETED.value:
        if latest_analysis is None:
            return StatusView(**base, status=PipelineStatus.EXTRACTED, progress=EXTRACTED_PROGRESS)
        return StatusView(**base, status=PipelineStatus.ANALYZED, progress=ANALYZED_PROGRESS)

    logger.warning("Entity %d: extraction job %d has unrecognized status %r", entity.id, latest_job.id, job_status)
    return StatusView(
        **base,
        status=PipelineStatus.ERROR,
        progress=0,
        error_message=f"Extraction job has unrecognized status '{job_status}'",
    )
