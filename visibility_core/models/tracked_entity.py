from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from visibility_core.db.base import Base
from visibility_core.schemas.records import TrackedEntityRecord


class TrackedEntity(Base):
    """A business whose visibility is monitored. Soft-deleted only."""

    __tablename__ = "tracked_entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False, default="")
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    location: Mapped[dict | None] = mapped_column(JSONB, nullable=True)  # {"city": ..., "country": ..., "lat": ..., "lng": ...}
    status: Mapped[str] = mapped_column(
        String(20), default="pending", index=True
    )  # pending | crawling | crawled | analyzed | published | error

    # Automation
    automation_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_run_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Publishing
    tier: Mapped[str] = mapped_column(String(20), default="basic")  # basic | standard | premium
    enrichment_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    published_record_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    extraction_jobs: Mapped[list["ExtractionJob"]] = relationship(  # noqa: F821
        "ExtractionJob", back_populates="entity"
    )
    analyses: Mapped[list["VisibilityAnalysis"]] = relationship(  # noqa: F821
        "VisibilityAnalysis", back_populates="entity"
    )

    def to_record(self) -> TrackedEntityRecord:
        return TrackedEntityRecord(
            id=self.id,
            name=self.name,
            url=self.url or "",
            category=self.category,
            location=self.location,
            status=self.status,
            automation_enabled=bool(self.automation_enabled),
            next_run_at=self.next_run_at,
            tier=self.tier or "basic",
            enrichment_level=self.enrichment_level,
            published_record_id=self.published_record_id,
            published_at=self.published_at,
        )
