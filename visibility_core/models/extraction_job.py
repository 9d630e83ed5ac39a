from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from visibility_core.db.base import Base
from visibility_core.schemas.records import ExtractionJobRecord


class ExtractionJob(Base):
    """One extraction run for a tracked entity. Latest by (created_at, id) drives status."""

    __tablename__ = "extraction_jobs"
    __table_args__ = (
        Index("ix_extraction_jobs_entity_created", "entity_id", "created_at"),
        # at most one queued or running job per entity
        Index(
            "uq_extraction_jobs_entity_in_flight",
            "entity_id",
            unique=True,
            postgresql_where=text("status IN ('queued', 'running')"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_entities.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="queued", index=True)  # queued | running | completed | failed
    progress: Mapped[float] = mapped_column(Float, default=0.0)  # 0–100
    pages_discovered: Mapped[int] = mapped_column(Integer, default=0)
    pages_processed: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    entity: Mapped["TrackedEntity"] = relationship("TrackedEntity", back_populates="extraction_jobs")  # noqa: F821

    def to_record(self) -> ExtractionJobRecord:
        return ExtractionJobRecord(
            id=self.id,
            entity_id=self.entity_id,
            status=self.status,
            progress=self.progress,
            pages_discovered=self.pages_discovered,
            pages_processed=self.pages_processed,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error_message=self.error_message,
        )
