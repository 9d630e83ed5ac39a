"""Prometheus metrics for pipeline execution."""

from prometheus_client import Counter, Histogram, Info

APP_INFO = Info("visibility_core", "Visibility pipeline core info")
APP_INFO.info({"version": "1.0.0", "name": "visibility_core"})

PIPELINE_RUNS = Counter(
    "pipeline_runs_total",
    "Pipeline run outcomes",
    ["outcome"],  # succeeded | failed | skipped
)

STAGE_RESULTS = Counter(
    "pipeline_stage_results_total",
    "Per-stage outcomes",
    ["stage", "status"],  # stage: extraction | analysis | publish
)

STAGE_DURATION = Histogram(
    "pipeline_stage_duration_seconds",
    "Collaborator call duration in seconds",
    ["stage"],
    buckets=[0.5, 1, 5, 15, 30, 60, 120, 300, 600],
)

COLLABORATOR_RETRIES = Counter(
    "collaborator_retries_total",
    "Retries of retryable collaborator failures",
    ["stage"],
)
