"""Core enums shared by the view computations, schemas and persistence layer."""

from __future__ import annotations

from enum import Enum


# ---------------------------------------------------------------------------
# Upstream record kinds
# ---------------------------------------------------------------------------


class RecordKind(str, Enum):
    """Explicit tag stamped on every record handed to the core."""

    TRACKED_ENTITY = "tracked_entity"
    EXTRACTION_JOB = "extraction_job"
    VISIBILITY_ANALYSIS = "visibility_analysis"
    NOTABILITY = "notability"


# ---------------------------------------------------------------------------
# Lifecycle / status
# ---------------------------------------------------------------------------


class JobStatus(str, Enum):
    """Extraction job status as written by the extraction collaborator."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"  # legacy alias of FAILED, accepted on read


IN_FLIGHT_JOB_STATUSES = frozenset({JobStatus.QUEUED.value, JobStatus.RUNNING.value})
FAILED_JOB_STATUSES = frozenset({JobStatus.FAILED.value, JobStatus.ERROR.value})
TERMINAL_JOB_STATUSES = FAILED_JOB_STATUSES | {JobStatus.COMPLETED.value}


class PipelineStatus(str, Enum):
    """Derived processing status reported to pollers."""

    PENDING = "pending"
    PROCESSING = "processing"
    EXTRACTED = "extracted"
    ANALYZED = "analyzed"
    ERROR = "error"


class EntityStatus(str, Enum):
    """Lifecycle status stored on the tracked entity by the orchestrator."""

    PENDING = "pending"
    CRAWLING = "crawling"
    CRAWLED = "crawled"
    ANALYZED = "analyzed"
    PUBLISHED = "published"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Analysis / leaderboard labels
# ---------------------------------------------------------------------------


class MarketPosition(str, Enum):
    LEADING = "leading"
    COMPETITIVE = "competitive"
    EMERGING = "emerging"
    UNKNOWN = "unknown"


class Trend(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class SentimentLabel(str, Enum):
    """Coarse sentiment bucket."""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class Tier(str, Enum):
    """Subscription tier controlling which properties may be published."""

    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"
