"""Tests for the Pipeline Orchestrator, run against the in-memory store."""

import asyncio
from datetime import timedelta

import pytest

from tests.fakes import T0, FakeAnalyzer, FakeExtractor, FakeNotability, FakePublisher, FakeStore
from visibility_core.analysis.types import JobStatus
from visibility_core.core.exceptions import CollaboratorError, NotFoundError
from visibility_core.services.collaborators import AnalysisCollaborator, ExtractionCollaborator
from visibility_core.services.orchestrator import PipelineOrchestrator, calculate_backoff


def _orchestrator(store, collaborators, settings, **overrides) -> PipelineOrchestrator:
    deps = {**collaborators, **overrides}
    orch = PipelineOrchestrator(store=store, settings=settings, **deps)
    orch._now = lambda: T0
    return orch


class _YieldingStore(FakeStore):
    """Suspends inside the in-flight lookup so two enqueues interleave."""

    async def get_in_flight_job(self, entity_id):
        await asyncio.sleep(0)
        return await super().get_in_flight_job(entity_id)


class _BrokenAnalysisStore(FakeStore):
    def __init__(self):
        super().__init__()
        self.fail_job_updates = False

    async def add_analysis(self, record):
        raise ConnectionError("database went away")

    async def update_job(self, job_id, **fields):
        if self.fail_job_updates and fields.get("status") == JobStatus.FAILED:
            raise ConnectionError("still down")
        return await super().update_job(job_id, **fields)


# ===================================================================
# Backoff
# ===================================================================


class TestBackoff:
    def test_grows_exponentially_with_bounded_jitter(self):
        for attempt, floor in [(0, 1.0), (1, 2.0), (2, 4.0)]:
            delay = calculate_backoff(attempt, 1.0, 60.0)
            assert floor <= delay <= floor + 0.5

    def test_capped(self):
        assert calculate_backoff(10, 1.0, 30.0) == 30.0

    def test_zero_base(self):
        assert calculate_backoff(3, 0.0, 0.0) == 0.0


# ===================================================================
# Enqueue
# ===================================================================


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_creates_queued_job(self, store, collaborators, test_settings):
        entity = store.add_entity()
        job = await _orchestrator(store, collaborators, test_settings).enqueue_run(entity.id)
        assert job.status == "queued"
        assert job.entity_id == entity.id

    @pytest.mark.asyncio
    async def test_idempotent_while_in_flight(self, store, collaborators, test_settings):
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings)
        first = await orch.enqueue_run(entity.id)
        second = await orch.enqueue_run(entity.id)
        assert second.id == first.id
        assert len(store.jobs) == 1

    @pytest.mark.asyncio
    async def test_returns_running_job(self, store, collaborators, test_settings):
        entity = store.add_entity()
        running = store.add_job(entity.id, status="running")
        job = await _orchestrator(store, collaborators, test_settings).enqueue_run(entity.id)
        assert job.id == running.id

    @pytest.mark.asyncio
    async def test_new_job_after_terminal(self, store, collaborators, test_settings):
        entity = store.add_entity()
        done = store.add_job(entity.id, status="completed")
        job = await _orchestrator(store, collaborators, test_settings).enqueue_run(entity.id)
        assert job.id != done.id

    @pytest.mark.asyncio
    async def test_concurrent_enqueues_create_one_job(self, collaborators, test_settings):
        store = _YieldingStore()
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings)

        first, second = await asyncio.gather(orch.enqueue_run(entity.id), orch.enqueue_run(entity.id))

        assert first.id == second.id
        in_flight = [job for job in store.jobs.values() if job["status"] in ("queued", "running")]
        assert len(in_flight) == 1

    @pytest.mark.asyncio
    async def test_stale_running_job_is_failed_and_replaced(self, store, collaborators, test_settings):
        entity = store.add_entity()
        stale = store.add_job(entity.id, status="running", started_at=T0 - timedelta(hours=1))
        orch = _orchestrator(store, collaborators, test_settings)

        job = await orch.enqueue_run(entity.id)

        assert job.id != stale.id
        assert job.status == "queued"
        assert store.jobs[stale.id]["status"] == "failed"
        assert store.jobs[stale.id]["error_message"].startswith("Run abandoned")
        assert store.entity_row(entity.id)["status"] == "error"

    @pytest.mark.asyncio
    async def test_recent_running_job_is_kept(self, store, collaborators, test_settings):
        entity = store.add_entity()
        running = store.add_job(entity.id, status="running", started_at=T0 - timedelta(seconds=1))
        job = await _orchestrator(store, collaborators, test_settings).enqueue_run(entity.id)
        assert job.id == running.id
        assert store.jobs[running.id]["status"] == "running"

    def test_stale_threshold_covers_both_stages_and_retries(self, store, collaborators, test_settings):
        orch = _orchestrator(store, collaborators, test_settings)
        # (0.5 + 0.5) per attempt, three attempts, no backoff
        assert orch.stale_run_after == timedelta(seconds=3)

    @pytest.mark.asyncio
    async def test_missing_entity(self, store, collaborators, test_settings):
        with pytest.raises(NotFoundError):
            await _orchestrator(store, collaborators, test_settings).enqueue_run(999)

    @pytest.mark.asyncio
    async def test_soft_deleted_entity(self, store, collaborators, test_settings):
        entity = store.add_entity(deleted_at=T0)
        with pytest.raises(NotFoundError):
            await _orchestrator(store, collaborators, test_settings).enqueue_run(entity.id)


# ===================================================================
# Successful run
# ===================================================================


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_full_run_publishes(self, store, collaborators, test_settings):
        entity = store.add_entity(automation_enabled=True)
        orch = _orchestrator(store, collaborators, test_settings)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "completed"
        assert result.errors == []
        assert result.analysis_id is not None
        assert result.can_publish is True
        assert result.published_record_id == "Q4242"

        row = store.entity_row(entity.id)
        assert row["status"] == "published"
        assert row["published_record_id"] == "Q4242"
        assert row["published_at"] == T0
        assert row["last_run_completed_at"] == T0
        assert row["next_run_at"] == T0 + timedelta(days=30)

        job_row = store.jobs[job.id]
        assert job_row["status"] == "completed"
        assert job_row["progress"] == 100.0
        assert job_row["pages_processed"] == 3
        assert job_row["started_at"] == T0

    @pytest.mark.asyncio
    async def test_claims_filtered_by_tier(self, store, collaborators, test_settings):
        entity = store.add_entity(tier="basic")
        orch = _orchestrator(store, collaborators, test_settings)
        job = await orch.enqueue_run(entity.id)

        await orch.execute_run(entity.id, job.id)

        published = collaborators["publisher"].published
        assert [[c.property_id for c in claims] for claims in published] == [["P31", "P856"]]

    @pytest.mark.asyncio
    async def test_analysis_stored_with_entity_name(self, store, collaborators, test_settings):
        entity = store.add_entity(name="Acme Plumbing")
        orch = _orchestrator(store, collaborators, test_settings)
        job = await orch.enqueue_run(entity.id)

        await orch.execute_run(entity.id, job.id)

        assert len(store.analyses) == 1
        stored = store.analyses[0]
        assert stored.entity_id == entity.id
        assert stored.entity_name == "Acme Plumbing"
        assert stored.generated_at == T0
        assert stored.observations[0].confidence == 0.9

    @pytest.mark.asyncio
    async def test_manual_entity_not_rescheduled(self, store, collaborators, test_settings):
        entity = store.add_entity(automation_enabled=False)
        orch = _orchestrator(store, collaborators, test_settings)
        job = await orch.enqueue_run(entity.id)

        await orch.execute_run(entity.id, job.id)

        assert store.entity_row(entity.id)["next_run_at"] is None

    @pytest.mark.asyncio
    async def test_custom_interval(self, store, collaborators, test_settings):
        entity = store.add_entity(automation_enabled=True)
        orch = _orchestrator(store, collaborators, test_settings.model_copy(update={"automation_interval_days": 7}))
        job = await orch.enqueue_run(entity.id)

        await orch.execute_run(entity.id, job.id)

        assert store.entity_row(entity.id)["next_run_at"] == T0 + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_stages_run_concurrently(self, store, collaborators, test_settings):
        analysis_started = asyncio.Event()

        class WaitingExtractor(ExtractionCollaborator):
            async def extract(self, entity, job_id):
                await asyncio.wait_for(analysis_started.wait(), timeout=0.4)
                return {"status": "completed", "pages_processed": 1}

        class SignallingAnalyzer(AnalysisCollaborator):
            async def analyze(self, entity):
                analysis_started.set()
                return {"visibility_score": 50}

        entity = store.add_entity()
        orch = _orchestrator(
            store,
            collaborators,
            test_settings,
            extractor=WaitingExtractor(),
            analyzer=SignallingAnalyzer(),
        )
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "completed"


# ===================================================================
# Idempotency
# ===================================================================


class TestTerminalJobs:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["completed", "failed"])
    async def test_terminal_job_is_noop(self, store, collaborators, test_settings, status):
        entity = store.add_entity()
        job = store.add_job(entity.id, status=status)
        orch = _orchestrator(store, collaborators, test_settings)

        result = await orch.execute_run(entity.id, job.id)

        assert result.skipped
        assert collaborators["extractor"].calls == 0
        assert collaborators["analyzer"].calls == 0
        assert store.analyses == []

    @pytest.mark.asyncio
    async def test_second_execute_does_nothing(self, store, collaborators, test_settings):
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings)
        job = await orch.enqueue_run(entity.id)

        await orch.execute_run(entity.id, job.id)
        again = await orch.execute_run(entity.id, job.id)

        assert again.skipped
        assert len(store.analyses) == 1
        assert len(collaborators["publisher"].published) == 1

    @pytest.mark.asyncio
    async def test_job_of_other_entity(self, store, collaborators, test_settings):
        first = store.add_entity()
        second = store.add_entity()
        job = store.add_job(first.id)
        with pytest.raises(NotFoundError):
            await _orchestrator(store, collaborators, test_settings).execute_run(second.id, job.id)

    @pytest.mark.asyncio
    async def test_missing_job(self, store, collaborators, test_settings):
        entity = store.add_entity()
        with pytest.raises(NotFoundError):
            await _orchestrator(store, collaborators, test_settings).execute_run(entity.id, 404)


# ===================================================================
# Retries & timeouts
# ===================================================================


class TestRetries:
    @pytest.mark.asyncio
    async def test_retryable_error_then_success(self, store, collaborators, test_settings):
        extractor = FakeExtractor(errors=[CollaboratorError("503 from crawler", retryable=True)])
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, extractor=extractor)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "completed"
        assert extractor.calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, store, collaborators, test_settings):
        extractor = FakeExtractor(errors=[CollaboratorError("invalid url")])
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, extractor=extractor)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "failed"
        assert extractor.calls == 1
        assert "Extraction failed: invalid url" in result.errors

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, collaborators, test_settings):
        errors = [CollaboratorError("rate limited", retryable=True) for _ in range(5)]
        analyzer = FakeAnalyzer(errors=errors)
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, analyzer=analyzer)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "failed"
        assert analyzer.calls == 3  # first attempt + collaborator_max_retries
        assert result.errors == ["Analysis failed: rate limited"]

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self, store, collaborators, test_settings):
        extractor = FakeExtractor(delay=0.2)
        entity = store.add_entity()
        fast_timeout = test_settings.model_copy(update={"extraction_timeout_seconds": 0.05})
        orch = _orchestrator(store, collaborators, fast_timeout, extractor=extractor)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "failed"
        assert extractor.calls == 1
        assert "timed out" in result.errors[0]
        assert store.jobs[job.id]["status"] == "failed"


# ===================================================================
# Failures
# ===================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_extraction_reports_failed_status(self, store, collaborators, test_settings):
        extractor = FakeExtractor({"status": "failed", "error_message": "robots.txt disallows crawling"})
        entity = store.add_entity(automation_enabled=True, next_run_at=T0 - timedelta(hours=1))
        orch = _orchestrator(store, collaborators, test_settings, extractor=extractor)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "failed"
        job_row = store.jobs[job.id]
        assert job_row["status"] == "failed"
        assert "robots.txt disallows crawling" in job_row["error_message"]
        row = store.entity_row(entity.id)
        assert row["status"] == "error"
        assert row["last_error"] == job_row["error_message"]
        # failed runs stay due so the dispatcher picks them up again
        assert row["next_run_at"] == T0 - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_analysis_kept_when_extraction_fails(self, store, collaborators, test_settings):
        extractor = FakeExtractor(errors=[CollaboratorError("DNS failure")])
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, extractor=extractor)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "failed"
        assert result.analysis_id is not None
        assert len(store.analyses) == 1
        assert collaborators["publisher"].published == []

    @pytest.mark.asyncio
    async def test_both_stages_fail(self, store, collaborators, test_settings):
        orch = _orchestrator(
            store,
            collaborators,
            test_settings,
            extractor=FakeExtractor(errors=[CollaboratorError("crawler down")]),
            analyzer=FakeAnalyzer(errors=[CollaboratorError("model down")]),
        )
        entity = store.add_entity()
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert store.jobs[job.id]["error_message"] == "Extraction failed: crawler down; Analysis failed: model down"
        assert result.analysis_id is None

    @pytest.mark.asyncio
    async def test_malformed_payload(self, store, collaborators, test_settings):
        analyzer = FakeAnalyzer(["not", "a", "mapping"])
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, analyzer=analyzer)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "failed"
        assert result.errors[0].startswith("Analysis failed: visibility_analysis payload must be a mapping")

    @pytest.mark.asyncio
    async def test_invalid_field_types(self, store, collaborators, test_settings):
        extractor = FakeExtractor({"status": "completed", "pages_processed": "many"})
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, extractor=extractor)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "failed"
        assert "Malformed extraction_job payload" in result.errors[0]

    @pytest.mark.asyncio
    async def test_unexpected_exception_marks_failed_and_propagates(self, store, collaborators, test_settings):
        extractor = FakeExtractor(errors=[RuntimeError("boom")])
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, extractor=extractor)
        job = await orch.enqueue_run(entity.id)

        with pytest.raises(RuntimeError, match="boom"):
            await orch.execute_run(entity.id, job.id)

        assert store.jobs[job.id]["status"] == "failed"
        assert store.entity_row(entity.id)["status"] == "error"

    @pytest.mark.asyncio
    async def test_store_failure_after_start_does_not_leave_job_running(self, collaborators, test_settings):
        store = _BrokenAnalysisStore()
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings)
        job = await orch.enqueue_run(entity.id)

        with pytest.raises(ConnectionError):
            await orch.execute_run(entity.id, job.id)

        job_row = store.jobs[job.id]
        assert job_row["status"] == "failed"
        assert "database went away" in job_row["error_message"]
        assert job_row["completed_at"] == T0
        assert store.entity_row(entity.id)["status"] == "error"
        assert "database went away" in store.entity_row(entity.id)["last_error"]

    @pytest.mark.asyncio
    async def test_cancelled_run_does_not_leave_job_running(self, store, collaborators, test_settings):
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, analyzer=FakeAnalyzer(delay=0.4))
        job = await orch.enqueue_run(entity.id)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(orch.execute_run(entity.id, job.id), timeout=0.05)

        assert store.jobs[job.id]["status"] == "failed"
        assert store.jobs[job.id]["error_message"] == "Run interrupted: CancelledError"

    @pytest.mark.asyncio
    async def test_failure_while_marking_failed_keeps_original_error(self, collaborators, test_settings):
        store = _BrokenAnalysisStore()
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings)
        job = await orch.enqueue_run(entity.id)
        store.fail_job_updates = True

        with pytest.raises(ConnectionError, match="database went away"):
            await orch.execute_run(entity.id, job.id)


# ===================================================================
# Publication
# ===================================================================


class TestPublication:
    @pytest.mark.asyncio
    async def test_not_eligible_is_not_published(self, store, collaborators, test_settings):
        notability = FakeNotability({"is_notable": False, "confidence": 0.1, "references": []})
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, notability=notability)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "completed"
        assert result.can_publish is False
        assert result.published_record_id is None
        assert collaborators["publisher"].published == []
        assert store.entity_row(entity.id)["status"] == "analyzed"

    @pytest.mark.asyncio
    async def test_sandbox_publishes_anyway(self, store, collaborators, test_settings):
        notability = FakeNotability({"is_notable": False, "confidence": 0.0})
        entity = store.add_entity()
        sandbox = test_settings.model_copy(update={"sandbox_mode": True})
        orch = _orchestrator(store, collaborators, sandbox, notability=notability)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.can_publish is True
        assert result.published_record_id == "Q4242"

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_run_completed(self, store, collaborators, test_settings):
        publisher = FakePublisher(errors=[CollaboratorError("edit conflict")])
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings, publisher=publisher)
        job = await orch.enqueue_run(entity.id)

        result = await orch.execute_run(entity.id, job.id)

        assert result.status == "completed"
        assert result.errors == ["Publication failed: edit conflict"]
        assert store.jobs[job.id]["status"] == "completed"
        assert store.entity_row(entity.id)["status"] == "analyzed"

    @pytest.mark.asyncio
    async def test_second_run_updates_published_record(self, store, collaborators, test_settings):
        entity = store.add_entity()
        orch = _orchestrator(store, collaborators, test_settings)
        publisher = collaborators["publisher"]

        first = await orch.enqueue_run(entity.id)
        await orch.execute_run(entity.id, first.id)
        second = await orch.enqueue_run(entity.id)
        result = await orch.execute_run(entity.id, second.id)

        assert second.id != first.id
        assert publisher.existing_record_ids == [None, "Q4242"]
        assert result.published_record_id == "Q4242"
        assert store.entity_row(entity.id)["published_record_id"] == "Q4242"

    @pytest.mark.asyncio
    async def test_publish_if_eligible_directly(self, store, collaborators, test_settings):
        entity = store.add_entity(tier="premium", enrichment_level=3)
        orch = _orchestrator(store, collaborators, test_settings)

        outcome = await orch.publish_if_eligible(entity)

        assert outcome.record_id == "Q4242"
        assert outcome.assessment.tier == "premium"
        assert [c.property_id for c in outcome.assessment.properties] == ["P31", "P856", "P2004"]


# ===================================================================
# Due entities
# ===================================================================


class TestFindDue:
    @pytest.mark.asyncio
    async def test_only_due_automated_idle_entities(self, store, collaborators, test_settings):
        due = store.add_entity(automation_enabled=True, next_run_at=T0 - timedelta(minutes=5))
        store.add_entity(automation_enabled=True, next_run_at=T0 + timedelta(days=1))
        store.add_entity(automation_enabled=False, next_run_at=T0 - timedelta(days=1))
        store.add_entity(automation_enabled=True, next_run_at=None)
        busy = store.add_entity(automation_enabled=True, next_run_at=T0 - timedelta(days=2))
        store.add_job(busy.id, status="running")
        store.add_entity(automation_enabled=True, next_run_at=T0 - timedelta(days=3), deleted_at=T0)

        orch = _orchestrator(store, collaborators, test_settings)

        assert await orch.find_due_entities(T0) == [due.id]

    @pytest.mark.asyncio
    async def test_batch_size(self, store, collaborators, test_settings):
        for hours in (3, 1, 2):
            store.add_entity(automation_enabled=True, next_run_at=T0 - timedelta(hours=hours))
        orch = _orchestrator(store, collaborators, test_settings.model_copy(update={"dispatch_batch_size": 2}))

        assert await orch.find_due_entities(T0) == [1, 3]

    @pytest.mark.asyncio
    async def test_stale_running_job_no_longer_blocks(self, store, collaborators, test_settings):
        stuck = store.add_entity(automation_enabled=True, next_run_at=T0 - timedelta(days=1))
        stale = store.add_job(stuck.id, status="running", started_at=T0 - timedelta(hours=2))
        busy = store.add_entity(automation_enabled=True, next_run_at=T0 - timedelta(days=2))
        store.add_job(busy.id, status="running", started_at=T0 - timedelta(seconds=1))

        orch = _orchestrator(store, collaborators, test_settings)

        assert await orch.find_due_entities(T0) == [stuck.id]
        assert store.jobs[stale.id]["status"] == "failed"
        assert store.entity_row(stuck.id)["status"] == "error"
        assert store.entity_row(busy.id)["status"] == "pending"
