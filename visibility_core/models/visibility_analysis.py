from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from visibility_core.db.base import Base
from visibility_core.schemas.records import VisibilityAnalysisRecord


class VisibilityAnalysis(Base):
    """One analysis run. Append-only: rows are never updated after insert."""

    __tablename__ = "visibility_analyses"
    __table_args__ = (Index("ix_visibility_analyses_entity_generated", "entity_id", "generated_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_entities.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    entity_name: Mapped[str] = mapped_column(String(255), default="")  # name at generation time
    visibility_score: Mapped[float] = mapped_column(Float, default=0.0)  # 0–100
    mention_rate: Mapped[float] = mapped_column(Float, default=0.0)  # 0–100
    sentiment_score: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0–1
    accuracy_score: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0–1
    avg_rank_position: Mapped[float | None] = mapped_column(Float, nullable=True)

    # [{"model": "openai/gpt-4-turbo", "mentioned": true, "confidence": 0.9, ...}]
    observations: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    # {"target": {...}, "competitors": [...], "total_queries": 10}
    leaderboard_input: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    entity: Mapped["TrackedEntity"] = relationship("TrackedEntity", back_populates="analyses")  # noqa: F821

    def to_record(self) -> VisibilityAnalysisRecord:
        return VisibilityAnalysisRecord.model_validate(
            {
                "id": self.id,
                "entity_id": self.entity_id,
                "entity_name": self.entity_name or "",
                "visibility_score": self.visibility_score,
                "mention_rate": self.mention_rate,
                "sentiment_score": self.sentiment_score,
                "accuracy_score": self.accuracy_score,
                "avg_rank_position": self.avg_rank_position,
                "observations": self.observations,
                "leaderboard_input": self.leaderboard_input,
                "generated_at": self.generated_at,
            }
        )
