"""Pydantic view model for the processing-status snapshot."""

from datetime import datetime

from pydantic import BaseModel, Field

from visibility_core.analysis.types import PipelineStatus


class ExtractionSummary(BaseModel):
    job_id: int
    status: str
    progress: float = Field(ge=0, le=100)
    pages_discovered: int = 0
    pages_processed: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None


class AnalysisSnapshot(BaseModel):
    analysis_id: int | None = None
    visibility_score: float = 0.0
    mention_rate: float = 0.0
    sentiment_score: float | None = None
    accuracy_score: float | None = None
    avg_rank_position: float | None = None
    generated_at: datetime | None = None


class StatusView(BaseModel):
    entity_id: int
    entity_name: str
    entity_url: str = ""
    status: PipelineStatus
    progress: int = Field(ge=0, le=100)
    error_message: str | None = None
    extraction: ExtractionSummary | None = None
    analysis: AnalysisSnapshot | None = None
    is_parallel_processing: bool = False
    has_multi_page_data: bool = False
    estimated_completion: datetime | None = None
