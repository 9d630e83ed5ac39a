"""Pipeline Orchestrator: drives one run of extraction → analysis → publication.

Run lifecycle for a single entity:
  1. enqueue_run       at most one queued/running job per entity; a job running
                       longer than stale_run_after is failed and replaced
  2. execute_run       extraction and analysis concurrently, each bounded by a timeout;
                       a terminal job is a no-op, and a run that raises never
                       leaves its job running
  3. publish_if_eligible  notability → gate → publisher, only after both stages succeed
  4. next_run_at       completion + automation interval, for automated entities

Collaborator calls retry retryable CollaboratorErrors with exponential backoff:
  delay = min(base * 2^attempt + jitter, max_delay),  jitter = random(0, base * 0.5)
Timeouts are not retried.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from visibility_core.analysis.publish_gate import PublishPolicy, assess_publish_eligibility
from visibility_core.analysis.types import (
    FAILED_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    EntityStatus,
    JobStatus,
    RecordKind,
)
from visibility_core.core.config import Settings
from visibility_core.core.config import settings as default_settings
from visibility_core.core.exceptions import CollaboratorError, CollaboratorTimeoutError, NotFoundError
from visibility_core.core.metrics import COLLABORATOR_RETRIES, PIPELINE_RUNS, STAGE_DURATION, STAGE_RESULTS
from visibility_core.schemas.publish import PublishAssessment
from visibility_core.schemas.records import (
    ExtractionJobRecord,
    NotabilityRecord,
    TrackedEntityRecord,
    VisibilityAnalysisRecord,
    expect_kind,
    parse_upstream_record,
    stamp,
)
from visibility_core.services.collaborators import (
    AnalysisCollaborator,
    ExtractionCollaborator,
    NotabilityCollaborator,
    PublishCollaborator,
)
from visibility_core.services.pipeline_store import PipelineStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R", bound=BaseModel)


@dataclass
class PublishOutcome:
    assessment: PublishAssessment
    record_id: str | None = None


@dataclass
class PipelineRunResult:
    """Result of a single execute_run call."""

    entity_id: int
    job_id: int
    status: str  # completed | failed | skipped
    analysis_id: int | None = None
    published_record_id: str | None = None
    can_publish: bool | None = None
    errors: list[str] = field(default_factory=list)
    skip_reason: str = ""

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


def calculate_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """min(base * 2^attempt + jitter, max_delay) with jitter in [0, base * 0.5]."""
    exponential = base_delay * (2**attempt)
    jitter = random.uniform(0, base_delay * 0.5)
    return min(exponential + jitter, max_delay)


class PipelineOrchestrator:
    def __init__(
        self,
        store: PipelineStore,
        extractor: ExtractionCollaborator,
        analyzer: AnalysisCollaborator,
        notability: NotabilityCollaborator,
        publisher: PublishCollaborator,
        settings: Settings | None = None,
    ):
        self.store = store
        self.extractor = extractor
        self.analyzer = analyzer
        self.notability = notability
        self.publisher = publisher
        self.settings = settings or default_settings
        self.policy = PublishPolicy(
            notable_confidence=self.settings.publish_notable_confidence,
            reference_confidence=self.settings.publish_reference_confidence,
            review_confidence=self.settings.publish_review_confidence,
        )

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def _require_entity(self, entity_id: int) -> TrackedEntityRecord:
        entity = await self.store.get_entity(entity_id)
        if entity is None:
            raise NotFoundError(f"Tracked entity {entity_id} not found")
        return entity

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def enqueue_run(self, entity_id: int) -> ExtractionJobRecord:
        """Return the entity's in-flight job, or create a new queued one."""
        await self._require_entity(entity_id)

        existing = await self.store.get_in_flight_job(entity_id)
        if existing is not None and self._is_stale(existing):
            await self._fail_stale_job(existing)
            existing = None
        if existing is not None:
            logger.info(
                "Entity %d already has %s job %d, not enqueuing another",
                entity_id,
                existing.status,
                existing.id,
                extra={"entity_id": entity_id, "job_id": existing.id},
            )
            return existing

        job = await self.store.create_job(entity_id)
        logger.info(
            "Enqueued extraction job %d for entity %d",
            job.id,
            entity_id,
            extra={"entity_id": entity_id, "job_id": job.id},
        )
        return job

    async def find_due_entities(self, now: datetime | None = None) -> list[int]:
        """Automated entities whose next run is due and that have nothing in flight.

        Stale running jobs are failed first so they stop blocking their entity.
        """
        now = now or self._now()
        message = self._stale_message()
        for job in await self.store.fail_stale_jobs(now - self.stale_run_after, message):
            logger.warning(
                "Failed stale job %d for entity %d",
                job.id,
                job.entity_id,
                extra={"entity_id": job.entity_id, "job_id": job.id},
            )
            try:
                await self.store.update_entity(job.entity_id, status=EntityStatus.ERROR, last_error=message)
            except NotFoundError:
                continue
        return await self.store.find_due_entity_ids(now, self.settings.dispatch_batch_size)

    # ------------------------------------------------------------------
    # Stale runs
    # ------------------------------------------------------------------

    @property
    def stale_run_after(self) -> timedelta:
        """How long a job may stay running before it counts as abandoned.

        Both stage timeouts combined, for every attempt, plus the longest backoffs.
        """
        s = self.settings
        attempts = s.collaborator_max_retries + 1
        seconds = (s.extraction_timeout_seconds + s.analysis_timeout_seconds) * attempts
        seconds += s.retry_max_delay_seconds * s.collaborator_max_retries
        return timedelta(seconds=seconds)

    def _stale_message(self) -> str:
        return f"Run abandoned: still running after {int(self.stale_run_after.total_seconds())}s"

    def _is_stale(self, job: ExtractionJobRecord) -> bool:
        return (
            job.status == JobStatus.RUNNING.value
            and job.started_at is not None
            and job.started_at < self._now() - self.stale_run_after
        )

    async def _fail_stale_job(self, job: ExtractionJobRecord) -> None:
        message = self._stale_message()
        await self.store.update_job(job.id, status=JobStatus.FAILED, error_message=message, completed_at=self._now())
        await self.store.update_entity(job.entity_id, status=EntityStatus.ERROR, last_error=message)
        logger.warning(
            "Failed stale job %d for entity %d",
            job.id,
            job.entity_id,
            extra={"entity_id": job.entity_id, "job_id": job.id},
        )

    # ------------------------------------------------------------------
    # Collaborator calls
    # ------------------------------------------------------------------

    async def _call_with_retry(
        self,
        stage: str,
        call: Callable[[], Awaitable[T]],
        timeout_seconds: float | None = None,
    ) -> T:
        """Invoke a collaborator with a timeout and backoff on retryable failures."""
        max_retries = self.settings.collaborator_max_retries

        for attempt in range(max_retries + 1):
            start = time.monotonic()
            try:
                if timeout_seconds is None:
                    result = await call()
                else:
                    result = await asyncio.wait_for(call(), timeout=timeout_seconds)
            except asyncio.TimeoutError:
                STAGE_RESULTS.labels(stage=stage, status="timeout").inc()
                raise CollaboratorTimeoutError(stage, timeout_seconds) from None
            except CollaboratorError as e:
                if not e.retryable or attempt >= max_retries:
                    STAGE_RESULTS.labels(stage=stage, status="failed").inc()
                    raise

                delay = calculate_backoff(
                    attempt,
                    self.settings.retry_base_delay_seconds,
                    self.settings.retry_max_delay_seconds,
                )
                COLLABORATOR_RETRIES.labels(stage=stage).inc()
                logger.info(
                    "Retrying %s (attempt %d/%d) in %.1fs: %s",
                    stage,
                    attempt + 1,
                    max_retries,
                    delay,
                    e.detail,
                )
                await asyncio.sleep(delay)
                continue
            finally:
                STAGE_DURATION.labels(stage=stage).observe(time.monotonic() - start)

            STAGE_RESULTS.labels(stage=stage, status="success").inc()
            return result

        raise AssertionError("unreachable")  # loop always returns or raises

    @staticmethod
    def _parse(kind: RecordKind, payload: Any, record_type: type[R]) -> R:
        """Stamp a collaborator payload with its kind and validate it."""
        if not isinstance(payload, dict):
            raise CollaboratorError(f"{kind.value} payload must be a mapping, got {type(payload).__name__}")
        try:
            record = parse_upstream_record(stamp(kind.value, payload))
        except ValidationError as e:
            raise CollaboratorError(f"Malformed {kind.value} payload: {e.error_count()} validation error(s)") from e
        return expect_kind(record, record_type)

    async def _run_extraction(self, entity: TrackedEntityRecord, job_id: int) -> ExtractionJobRecord:
        payload = await self._call_with_retry(
            "extraction",
            lambda: self.extractor.extract(entity, job_id),
            self.settings.extraction_timeout_seconds,
        )
        return self._parse(
            RecordKind.EXTRACTION_JOB,
            {**payload, "id": job_id, "entity_id": entity.id} if isinstance(payload, dict) else payload,
            ExtractionJobRecord,
        )

    async def _run_analysis(self, entity: TrackedEntityRecord) -> VisibilityAnalysisRecord:
        payload = await self._call_with_retry(
            "analysis",
            lambda: self.analyzer.analyze(entity),
            self.settings.analysis_timeout_seconds,
        )
        if isinstance(payload, dict):
            defaults: dict[str, Any] = {"entity_name": entity.name, "generated_at": self._now()}
            payload = {**defaults, **payload, "entity_id": entity.id}
        return self._parse(RecordKind.VISIBILITY_ANALYSIS, payload, VisibilityAnalysisRecord)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute_run(self, entity_id: int, job_id: int) -> PipelineRunResult:
        """Run extraction and analysis for a queued job, then try to publish.

        Re-invoking on a completed or failed job does nothing.
        """
        log_extra = {"entity_id": entity_id, "job_id": job_id}
        entity = await self._require_entity(entity_id)

        job = await self.store.get_job(job_id)
        if job is None or job.entity_id != entity_id:
            raise NotFoundError(f"Extraction job {job_id} not found for entity {entity_id}")

        if job.status in TERMINAL_JOB_STATUSES:
            logger.info("Job %d already %s, skipping", job_id, job.status, extra=log_extra)
            PIPELINE_RUNS.labels(outcome="skipped").inc()
            return PipelineRunResult(
                entity_id=entity_id,
                job_id=job_id,
                status="skipped",
                skip_reason=f"job already {job.status}",
            )

        await self.store.update_job(job_id, status=JobStatus.RUNNING, started_at=job.started_at or self._now())
        try:
            await self.store.update_entity(entity_id, status=EntityStatus.CRAWLING, last_error=None)
            return await self._finish_run(entity, job_id)
        except BaseException as e:
            await self._fail_interrupted_run(entity_id, job_id, e)
            raise

    async def _finish_run(self, entity: TrackedEntityRecord, job_id: int) -> PipelineRunResult:
        entity_id = entity.id
        log_extra = {"entity_id": entity_id, "job_id": job_id}

        extraction, analysis = await asyncio.gather(
            self._run_extraction(entity, job_id),
            self._run_analysis(entity),
            return_exceptions=True,
        )

        errors: list[str] = []
        unexpected: BaseException | None = None
        for stage, outcome in (("Extraction", extraction), ("Analysis", analysis)):
            if isinstance(outcome, CollaboratorError):
                errors.append(f"{stage} failed: {outcome.detail}")
            elif isinstance(outcome, BaseException):
                errors.append(f"{stage} failed: {outcome}")
                unexpected = unexpected or outcome

        if isinstance(extraction, ExtractionJobRecord) and extraction.status in FAILED_JOB_STATUSES:
            errors.append(f"Extraction failed: {extraction.error_message or 'no details'}")

        result = PipelineRunResult(entity_id=entity_id, job_id=job_id, status="completed", errors=errors)

        # Analyses are append-only history, kept even when extraction failed
        if isinstance(analysis, VisibilityAnalysisRecord):
            stored = await self.store.add_analysis(analysis)
            result.analysis_id = stored.id

        completed_at = self._now()
        extraction_fields: dict[str, Any] = {}
        if isinstance(extraction, ExtractionJobRecord):
            extraction_fields = {
                "pages_discovered": extraction.pages_discovered,
                "pages_processed": extraction.pages_processed,
            }

        if errors:
            message = "; ".join(errors)
            await self.store.update_job(
                job_id,
                status=JobStatus.FAILED,
                error_message=message,
                completed_at=completed_at,
                **extraction_fields,
            )
            await self.store.update_entity(entity_id, status=EntityStatus.ERROR, last_error=message)
            PIPELINE_RUNS.labels(outcome="failed").inc()
            logger.warning("Pipeline run failed for entity %d: %s", entity_id, message, extra=log_extra)

            if unexpected is not None:
                raise unexpected
            result.status = "failed"
            return result

        await self.store.update_job(
            job_id,
            status=JobStatus.COMPLETED,
            progress=100.0,
            completed_at=completed_at,
            **extraction_fields,
        )

        entity_fields: dict[str, Any] = {
            "status": EntityStatus.ANALYZED,
            "last_run_completed_at": completed_at,
        }
        if entity.automation_enabled:
            entity_fields["next_run_at"] = completed_at + timedelta(days=self.settings.automation_interval_days)
        entity = await self.store.update_entity(entity_id, **entity_fields)

        PIPELINE_RUNS.labels(outcome="succeeded").inc()
        logger.info(
            "Pipeline run completed for entity %d (analysis %s)",
            entity_id,
            result.analysis_id,
            extra=log_extra,
        )

        try:
            outcome = await self.publish_if_eligible(entity)
        except CollaboratorError as e:
            logger.warning("Publication failed for entity %d: %s", entity_id, e.detail, extra=log_extra)
            result.errors.append(f"Publication failed: {e.detail}")
        else:
            result.can_publish = outcome.assessment.can_publish
            result.published_record_id = outcome.record_id

        return result

    async def _fail_interrupted_run(self, entity_id: int, job_id: int, error: BaseException) -> None:
        """Mark a job left running by an exception as failed. Never raises."""
        log_extra = {"entity_id": entity_id, "job_id": job_id}
        message = f"Run interrupted: {error}" if str(error) else f"Run interrupted: {type(error).__name__}"
        try:
            job = await self.store.get_job(job_id)
            if job is None or job.status in TERMINAL_JOB_STATUSES:
                return
            await self.store.update_job(job_id, status=JobStatus.FAILED, error_message=message, completed_at=self._now())
            await self.store.update_entity(entity_id, status=EntityStatus.ERROR, last_error=message)
        except Exception:
            logger.exception("Could not mark interrupted job %d as failed", job_id, extra=log_extra)
            return
        PIPELINE_RUNS.labels(outcome="failed").inc()
        logger.error("Pipeline run for entity %d interrupted: %s", entity_id, message, extra=log_extra)

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    async def publish_if_eligible(self, entity: TrackedEntityRecord) -> PublishOutcome:
        """Assess notability and publish the tier-filtered claims when allowed."""
        payload = await self._call_with_retry(
            "notability",
            lambda: self.notability.assess(entity),
            self.settings.analysis_timeout_seconds,
        )
        notability = self._parse(RecordKind.NOTABILITY, payload, NotabilityRecord)
        claims = await self._call_with_retry("claims", lambda: self.publisher.build_claims(entity))

        assessment = assess_publish_eligibility(
            notability,
            entity.tier,
            entity.enrichment_level,
            candidate_claims=claims,
            policy=self.policy,
            sandbox_mode=self.settings.sandbox_mode,
        )

        if not assessment.can_publish:
            logger.info(
                "Entity %d not published: %s",
                entity.id,
                assessment.recommendation,
                extra={"entity_id": entity.id},
            )
            STAGE_RESULTS.labels(stage="publish", status="ineligible").inc()
            return PublishOutcome(assessment=assessment)

        record_id = await self._call_with_retry(
            "publish",
            lambda: self.publisher.publish(
                entity,
                assessment.properties,
                existing_record_id=entity.published_record_id,
            ),
        )
        await self.store.update_entity(
            entity.id,
            status=EntityStatus.PUBLISHED,
            published_record_id=record_id,
            published_at=self._now(),
        )
        logger.info(
            "%s entity %d as %s (%d properties)",
            "Updated published" if entity.published_record_id else "Published",
            entity.id,
            record_id,
            len(assessment.properties),
            extra={"entity_id": entity.id},
        )
        return PublishOutcome(assessment=assessment, record_id=record_id)
