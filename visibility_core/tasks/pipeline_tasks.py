"""Celery tasks for pipeline runs and the automation dispatcher."""

import asyncio
import logging
from datetime import datetime, timezone

from visibility_core.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time; engines are created per task
    (see db.postgres.make_session_factory) so nothing is shared across loops.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _build_orchestrator(db):
    from visibility_core.core.config import settings
    from visibility_core.services.collaborators import (
        AnalysisCollaborator,
        ExtractionCollaborator,
        NotabilityCollaborator,
        PublishCollaborator,
        load_collaborator,
    )
    from visibility_core.services.orchestrator import PipelineOrchestrator
    from visibility_core.services.pipeline_store import SqlPipelineStore

    return PipelineOrchestrator(
        store=SqlPipelineStore(db),
        extractor=load_collaborator(settings.extraction_collaborator, ExtractionCollaborator),
        analyzer=load_collaborator(settings.analysis_collaborator, AnalysisCollaborator),
        notability=load_collaborator(settings.notability_collaborator, NotabilityCollaborator),
        publisher=load_collaborator(settings.publish_collaborator, PublishCollaborator),
        settings=settings,
    )


# ---------------------------------------------------------------------------
#  Single run
# ---------------------------------------------------------------------------


async def _run_pipeline_async(entity_id: int, job_id: int) -> dict:
    from visibility_core.db.postgres import make_session_factory

    session_factory = make_session_factory()
    async with session_factory() as db:
        orchestrator = _build_orchestrator(db)
        result = await orchestrator.execute_run(entity_id, job_id)
        return {
            "entity_id": result.entity_id,
            "job_id": result.job_id,
            "status": result.status,
            "analysis_id": result.analysis_id,
            "published_record_id": result.published_record_id,
            "errors": result.errors,
        }


@celery_app.task(name="run_pipeline")
def run_pipeline_task(entity_id: int, job_id: int):
    """Execute one queued pipeline run. Safe to redeliver: terminal jobs are skipped."""
    from visibility_core.core.exceptions import NotFoundError

    try:
        return _run_async(_run_pipeline_async(entity_id, job_id))
    except NotFoundError as e:
        logger.warning("Pipeline run %d for entity %d dropped: %s", job_id, entity_id, e.detail)
        return {"entity_id": entity_id, "job_id": job_id, "status": "not_found", "error": e.detail}


# ---------------------------------------------------------------------------
#  Dispatcher: runs hourly via Celery Beat.
#  Finds automated entities whose next_run_at has passed and that have no
#  in-flight job, enqueues a job for each and fires run_pipeline.
# ---------------------------------------------------------------------------


async def _enqueue_due_runs(now: datetime) -> list[tuple[int, int]]:
    """Return (entity_id, job_id) pairs enqueued for due entities."""
    from visibility_core.db.postgres import make_session_factory

    session_factory = make_session_factory()
    async with session_factory() as db:
        orchestrator = _build_orchestrator(db)
        entity_ids = await orchestrator.find_due_entities(now)

        enqueued = []
        for entity_id in entity_ids:
            job = await orchestrator.enqueue_run(entity_id)
            enqueued.append((entity_id, job.id))
        return enqueued


@celery_app.task(name="dispatch_due_pipelines")
def dispatch_due_pipelines_task():
    """Beat dispatcher: enqueue and fire runs for entities whose automation is due."""
    now = datetime.now(timezone.utc)
    runs = _run_async(_enqueue_due_runs(now))
    if not runs:
        return {"dispatched": 0}

    for entity_id, job_id in runs:
        run_pipeline_task.delay(entity_id, job_id)
        logger.info("Dispatched pipeline run %d for entity %d", job_id, entity_id)

    return {"dispatched": len(runs), "entity_ids": [entity_id for entity_id, _ in runs]}


# ---------------------------------------------------------------------------
#  Manual trigger (onboarding, recrawl)
# ---------------------------------------------------------------------------


async def _enqueue_run_async(entity_id: int) -> tuple[int, str]:
    from visibility_core.db.postgres import make_session_factory

    session_factory = make_session_factory()
    async with session_factory() as db:
        job = await _build_orchestrator(db).enqueue_run(entity_id)
        return job.id, job.status


@celery_app.task(name="trigger_pipeline")
def trigger_pipeline_task(entity_id: int):
    """Enqueue a run for one entity (reusing an in-flight job) and fire it."""
    job_id, status = _run_async(_enqueue_run_async(entity_id))
    if status != "queued":
        logger.info("Entity %d already has %s run %d, not firing again", entity_id, status, job_id)
        return {"entity_id": entity_id, "job_id": job_id, "fired": False}

    run_pipeline_task.delay(entity_id, job_id)
    logger.info("Triggered pipeline run %d for entity %d", job_id, entity_id)
    return {"entity_id": entity_id, "job_id": job_id, "fired": True}
