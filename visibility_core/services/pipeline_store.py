"""Persistence boundary for the pipeline.

``PipelineStore`` is what the orchestrator and read services depend on;
``SqlPipelineStore`` implements it over an AsyncSession. All reads return
validated upstream records, never ORM rows.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import and_, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from visibility_core.analysis.types import IN_FLIGHT_JOB_STATUSES, JobStatus, RecordKind
from visibility_core.core.exceptions import NotFoundError
from visibility_core.models.extraction_job import ExtractionJob
from visibility_core.models.tracked_entity import TrackedEntity
from visibility_core.models.visibility_analysis import VisibilityAnalysis
from visibility_core.schemas.records import (
    ExtractionJobRecord,
    TrackedEntityRecord,
    VisibilityAnalysisRecord,
)

logger = logging.getLogger(__name__)

_ENTITY_FIELDS = frozenset(
    {
        "status",
        "next_run_at",
        "last_run_completed_at",
        "published_record_id",
        "published_at",
        "last_error",
        "enrichment_level",
    }
)
_JOB_FIELDS = frozenset(
    {
        "status",
        "progress",
        "pages_discovered",
        "pages_processed",
        "started_at",
        "completed_at",
        "error_message",
    }
)


class PipelineStore(ABC):
    """Storage operations used by the orchestrator and the read services."""

    @abstractmethod
    async def get_entity(self, entity_id: int) -> TrackedEntityRecord | None:
        """Non-deleted entity, or None."""
        ...

    @abstractmethod
    async def update_entity(self, entity_id: int, **fields: Any) -> TrackedEntityRecord: ...

    @abstractmethod
    async def get_job(self, job_id: int) -> ExtractionJobRecord | None: ...

    @abstractmethod
    async def get_latest_job(self, entity_id: int) -> ExtractionJobRecord | None:
        """Most recent job by (created_at, id)."""
        ...

    @abstractmethod
    async def get_in_flight_job(self, entity_id: int) -> ExtractionJobRecord | None:
        """Latest queued or running job, if any."""
        ...

    @abstractmethod
    async def create_job(self, entity_id: int) -> ExtractionJobRecord:
        """New queued job, or the existing in-flight one if another writer got there first."""
        ...

    @abstractmethod
    async def update_job(self, job_id: int, **fields: Any) -> ExtractionJobRecord: ...

    @abstractmethod
    async def add_analysis(self, record: VisibilityAnalysisRecord) -> VisibilityAnalysisRecord:
        """Append an analysis. Returns it with its assigned id."""
        ...

    @abstractmethod
    async def get_analyses(self, entity_id: int, limit: int) -> list[VisibilityAnalysisRecord]:
        """Up to ``limit`` analyses, newest generated_at first."""
        ...

    @abstractmethod
    async def fail_stale_jobs(self, started_before: datetime, message: str) -> list[ExtractionJobRecord]:
        """Mark running jobs started before the cutoff as failed. Returns the jobs changed."""
        ...

    @abstractmethod
    async def find_due_entity_ids(self, now: datetime, limit: int) -> list[int]:
        """Automation-enabled, non-deleted entities due at ``now`` with no in-flight job."""
        ...


def _check_fields(fields: dict, allowed: frozenset[str], target: str) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update {target} field(s): {', '.join(sorted(unknown))}")


class SqlPipelineStore(PipelineStore):
    """PipelineStore over a SQLAlchemy AsyncSession. Commits after each write."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -- entities -----------------------------------------------------------

    async def _load_entity(self, entity_id: int) -> TrackedEntity | None:
        entity = await self.db.get(TrackedEntity, entity_id)
        if entity is None or entity.deleted_at is not None:
            return None
        return entity

    async def get_entity(self, entity_id: int) -> TrackedEntityRecord | None:
        entity = await self._load_entity(entity_id)
        return entity.to_record() if entity else None

    async def update_entity(self, entity_id: int, **fields: Any) -> TrackedEntityRecord:
        _check_fields(fields, _ENTITY_FIELDS, "entity")
        entity = await self._load_entity(entity_id)
        if entity is None:
            raise NotFoundError(f"Tracked entity {entity_id} not found")
        for key, value in fields.items():
            setattr(entity, key, value.value if isinstance(value, Enum) else value)
        await self.db.commit()
        await self.db.refresh(entity)
        return entity.to_record()

    # -- jobs ---------------------------------------------------------------

    async def get_job(self, job_id: int) -> ExtractionJobRecord | None:
        job = await self.db.get(ExtractionJob, job_id)
        return job.to_record() if job else None

    async def get_latest_job(self, entity_id: int) -> ExtractionJobRecord | None:
        stmt = (
            select(ExtractionJob)
            .where(ExtractionJob.entity_id == entity_id)
            .order_by(ExtractionJob.created_at.desc(), ExtractionJob.id.desc())
            .limit(1)
        )
        job = (await self.db.execute(stmt)).scalar_one_or_none()
        return job.to_record() if job else None

    async def get_in_flight_job(self, entity_id: int) -> ExtractionJobRecord | None:
        stmt = (
            select(ExtractionJob)
            .where(
                ExtractionJob.entity_id == entity_id,
                ExtractionJob.status.in_(IN_FLIGHT_JOB_STATUSES),
            )
            .order_by(ExtractionJob.created_at.desc(), ExtractionJob.id.desc())
            .limit(1)
        )
        job = (await self.db.execute(stmt)).scalar_one_or_none()
        return job.to_record() if job else None

    async def create_job(self, entity_id: int) -> ExtractionJobRecord:
        job = ExtractionJob(entity_id=entity_id, status=JobStatus.QUEUED.value, progress=0.0)
        self.db.add(job)
        try:
            await self.db.commit()
        except IntegrityError:
            # uq_extraction_jobs_entity_in_flight: a concurrent enqueue won
            await self.db.rollback()
            existing = await self.get_in_flight_job(entity_id)
            if existing is None:
                raise
            logger.info("Entity %d already has in-flight job %d", entity_id, existing.id)
            return existing
        await self.db.refresh(job)
        return job.to_record()

    async def update_job(self, job_id: int, **fields: Any) -> ExtractionJobRecord:
        _check_fields(fields, _JOB_FIELDS, "job")
        job = await self.db.get(ExtractionJob, job_id)
        if job is None:
            raise NotFoundError(f"Extraction job {job_id} not found")
        for key, value in fields.items():
            setattr(job, key, value.value if isinstance(value, Enum) else value)
        await self.db.commit()
        await self.db.refresh(job)
        return job.to_record()

    async def fail_stale_jobs(self, started_before: datetime, message: str) -> list[ExtractionJobRecord]:
        stmt = (
            select(ExtractionJob)
            .where(
                ExtractionJob.status == JobStatus.RUNNING.value,
                ExtractionJob.started_at.is_not(None),
                ExtractionJob.started_at < started_before,
            )
            .with_for_update(skip_locked=True)
        )
        jobs = (await self.db.execute(stmt)).scalars().all()
        if not jobs:
            return []
        completed_at = datetime.now(timezone.utc)
        for job in jobs:
            job.status = JobStatus.FAILED.value
            job.error_message = message
            job.completed_at = completed_at
        await self.db.commit()
        return [job.to_record() for job in jobs]

    # -- analyses -----------------------------------------------------------

    async def add_analysis(self, record: VisibilityAnalysisRecord) -> VisibilityAnalysisRecord:
        if record.kind != RecordKind.VISIBILITY_ANALYSIS.value:
            raise ValueError(f"Expected visibility analysis record, got kind '{record.kind}'")
        row = VisibilityAnalysis(
            entity_id=record.entity_id,
            entity_name=record.entity_name,
            visibility_score=record.visibility_score,
            mention_rate=record.mention_rate,
            sentiment_score=record.sentiment_score,
            accuracy_score=record.accuracy_score,
            avg_rank_position=record.avg_rank_position,
            observations=[obs.model_dump() for obs in record.observations],
            leaderboard_input=record.leaderboard_input.model_dump() if record.leaderboard_input else None,
            generated_at=record.generated_at or datetime.now(timezone.utc),
        )
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        return row.to_record()

    async def get_analyses(self, entity_id: int, limit: int) -> list[VisibilityAnalysisRecord]:
        stmt = (
            select(VisibilityAnalysis)
            .where(VisibilityAnalysis.entity_id == entity_id)
            .order_by(VisibilityAnalysis.generated_at.desc(), VisibilityAnalysis.id.desc())
            .limit(limit)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        return [row.to_record() for row in rows]

    # -- automation ---------------------------------------------------------

    async def find_due_entity_ids(self, now: datetime, limit: int) -> list[int]:
        in_flight = exists().where(
            and_(
                ExtractionJob.entity_id == TrackedEntity.id,
                ExtractionJob.status.in_(IN_FLIGHT_JOB_STATUSES),
            )
        )
        stmt = (
            select(TrackedEntity.id)
            .where(
                TrackedEntity.automation_enabled == True,  # noqa: E712
                TrackedEntity.deleted_at.is_(None),
                TrackedEntity.next_run_at.is_not(None),
                TrackedEntity.next_run_at <= now,
                ~in_flight,
            )
            .order_by(TrackedEntity.next_run_at)
            .limit(limit)
        )
        rows = await self.db.execute(stmt)
        return [row[0] for row in rows.all()]
