"""Tests for batch coordination."""

import random

import pytest

from app.parse_service.errors import ErrorCode, ServiceError
from app.parse_service.models import ParseOptions
from app.parse_service.models_db import BatchStatus, JobStatus
from app.parse_service.services.batches import BatchCoordinator
from app.parse_service.services.fetcher import SourceFetcher
from app.parse_service.services.scheduler import JobSource, ParseJobScheduler

from conftest import SAMPLE_PDF, FakeEngine, RecordingDispatcher, make_settings, pdf_url_transport, wait_until

HOOK = "https://hooks.example.com/batches"


def _coordinator(job_store, engine=None, unreachable=None, clock=None, **overrides):
    settings = make_settings(**overrides)
    dispatcher = RecordingDispatcher()
    fetcher = SourceFetcher(
        max_bytes=settings.max_file_size_bytes,
        timeout=1.0,
        transport=pdf_url_transport(unreachable),
    )
    scheduler = ParseJobScheduler(
        job_store, engine or FakeEngine(), settings, fetcher=fetcher, dispatcher=dispatcher
    )
    kwargs = {"clock": clock} if clock is not None else {}
    coordinator = BatchCoordinator(job_store, scheduler, settings, dispatcher=dispatcher, **kwargs)
    return coordinator, scheduler, dispatcher


def _urls(count: int) -> list[str]:
    return [f"https://docs.example.com/{index}.pdf" for index in range(count)]


class TestBatchSubmission:
    """Tests for batch validation and creation."""

    @pytest.mark.asyncio
    async def test_members_created_in_order(self, job_store):
        """Test that members are pending and keep submission order."""
        coordinator, _, _ = _coordinator(job_store)
        urls = _urls(3)
        batch, jobs = await coordinator.submit_batch(
            [JobSource(url=url) for url in urls], ParseOptions(), webhook_url=HOOK
        )
        assert batch.status == BatchStatus.PROCESSING
        assert [job.source_url for job in jobs] == urls
        assert all(job.status == JobStatus.PENDING for job in jobs)
        assert all(job.webhook_url is None for job in jobs)

        _, counts, members = coordinator.get_batch(batch.id)
        assert counts.total == 3
        assert counts.pending == 3
        assert [m.id for m in members] == [job.id for job in jobs]

    @pytest.mark.asyncio
    async def test_invalid_member_rejects_whole_batch(self, job_store):
        """Test that one invalid source rejects the batch and persists nothing."""
        coordinator, scheduler, _ = _coordinator(job_store)
        sources = [
            JobSource(url="https://docs.example.com/ok.pdf"),
            JobSource(content=b"plain text, not a pdf"),
            JobSource(content=SAMPLE_PDF),
        ]
        with pytest.raises(ServiceError) as exc_info:
            await coordinator.submit_batch(sources, ParseOptions())
        assert exc_info.value.code == ErrorCode.INVALID_FILE_FORMAT
        assert exc_info.value.details["index"] == 1
        assert job_store.list_batches(BatchStatus.PROCESSING) == []
        assert job_store.list_jobs(JobStatus.PENDING) == []
        assert scheduler.queue_depth == 0

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, job_store):
        """Test that a batch needs at least one document."""
        coordinator, _, _ = _coordinator(job_store)
        with pytest.raises(ServiceError) as exc_info:
            await coordinator.submit_batch([], ParseOptions())
        assert exc_info.value.code == ErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_batch_size_limit(self, job_store):
        """Test that batches over the size limit are rejected."""
        coordinator, _, _ = _coordinator(job_store, max_batch_size=2)
        with pytest.raises(ServiceError) as exc_info:
            await coordinator.submit_batch([JobSource(url=url) for url in _urls(3)], ParseOptions())
        assert exc_info.value.code == ErrorCode.INVALID_REQUEST
        assert exc_info.value.details["max_batch_size"] == 2

    @pytest.mark.asyncio
    async def test_batch_needs_capacity_for_every_member(self, job_store):
        """Test that a batch that does not fit the queue is refused as a whole."""
        coordinator, scheduler, _ = _coordinator(job_store, max_queue_depth=3)
        with pytest.raises(ServiceError) as exc_info:
            await coordinator.submit_batch([JobSource(url=url) for url in _urls(4)], ParseOptions())
        assert exc_info.value.code == ErrorCode.SERVICE_UNAVAILABLE
        assert job_store.list_jobs(JobStatus.PENDING) == []
        assert scheduler.queue_depth == 0

    @pytest.mark.asyncio
    async def test_get_batch_checks_owner(self, job_store):
        """Test not_found and forbidden lookups."""
        coordinator, _, _ = _coordinator(job_store)
        batch, _ = await coordinator.submit_batch(
            [JobSource(content=SAMPLE_PDF)], ParseOptions(), api_key="owner"
        )
        with pytest.raises(ServiceError) as exc_info:
            coordinator.get_batch(batch.id, api_key="intruder")
        assert exc_info.value.code == ErrorCode.FORBIDDEN
        with pytest.raises(ServiceError) as exc_info:
            coordinator.get_batch("batch_missing")
        assert exc_info.value.code == ErrorCode.NOT_FOUND


class TestBatchAggregation:
    """Tests for progress and completion events."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, job_store):
        """Test a batch where some URLs cannot be fetched."""
        urls = _urls(5)
        unreachable = {urls[1], urls[3]}
        coordinator, scheduler, dispatcher = _coordinator(job_store, unreachable=unreachable)

        await scheduler.start()
        try:
            batch, jobs = await coordinator.submit_batch(
                [JobSource(url=url) for url in urls], ParseOptions(), webhook_url=HOOK
            )
            await wait_until(lambda: len(dispatcher.of("batch.completed")) == 1)
        finally:
            await scheduler.stop()

        stored, counts, members = coordinator.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert stored.completed_at is not None
        assert (counts.total, counts.succeeded, counts.failed) == (5, 3, 2)
        assert [m.source_url for m in members] == urls
        for member in members:
            if member.source_url in unreachable:
                assert member.status == JobStatus.FAILED
                assert member.error_code == ErrorCode.INVALID_URL.value
            else:
                assert member.status == JobStatus.COMPLETED

        (completed,) = dispatcher.of("batch.completed")
        assert completed["batch_id"] == batch.id
        assert completed["status"] == "completed"
        assert (completed["succeeded"], completed["failed"]) == (3, 2)
        assert [doc["source_url"] for doc in completed["documents"]] == urls

        progress = dispatcher.of("batch.progress")
        assert len(progress) == 5
        assert progress[-1]["completed"] == 5
        assert progress[-1]["pending"] == 0
        assert dispatcher.of("document.completed") == []
        assert dispatcher.of("document.failed") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [7, 1234, random.randrange(2**32)])
    async def test_progress_is_monotonic_under_random_completion(self, job_store, seed):
        """Test that progress never goes backwards whatever order members finish in.

        The last seed is drawn per run and shows up in the test id.
        """
        rng = random.Random(seed)
        engine = FakeEngine(delay=lambda _document: rng.uniform(0.0, 0.03))
        coordinator, scheduler, dispatcher = _coordinator(
            job_store, engine=engine, max_concurrent_extractions=4
        )

        await scheduler.start()
        try:
            await coordinator.submit_batch(
                [JobSource(content=SAMPLE_PDF) for _ in range(12)], ParseOptions(), webhook_url=HOOK
            )
            await wait_until(lambda: len(dispatcher.of("batch.completed")) == 1)
        finally:
            await scheduler.stop()

        progress = dispatcher.of("batch.progress")
        completed_counts = [event["completed"] for event in progress]
        assert completed_counts == sorted(completed_counts)
        assert completed_counts[-1] == 12
        for event in progress:
            assert event["succeeded"] + event["failed"] == event["completed"]
            assert event["completed"] + event["pending"] == event["total"]
        assert len(dispatcher.of("batch.completed")) == 1

    @pytest.mark.asyncio
    async def test_progress_throttle(self, job_store):
        """Test that throttled progress still reports the final state."""
        coordinator, scheduler, dispatcher = _coordinator(
            job_store,
            clock=lambda: 100.0,
            batch_progress_min_interval_seconds=10,
            max_concurrent_extractions=1,
        )
        await scheduler.start()
        try:
            await coordinator.submit_batch(
                [JobSource(content=SAMPLE_PDF) for _ in range(3)], ParseOptions(), webhook_url=HOOK
            )
            await wait_until(lambda: len(dispatcher.of("batch.completed")) == 1)
        finally:
            await scheduler.stop()

        progress = dispatcher.of("batch.progress")
        assert [event["completed"] for event in progress] == [1, 3]

    @pytest.mark.asyncio
    async def test_batch_without_webhook(self, job_store):
        """Test that a batch without a webhook completes silently."""
        coordinator, scheduler, dispatcher = _coordinator(job_store)
        await scheduler.start()
        try:
            batch, _ = await coordinator.submit_batch(
                [JobSource(content=SAMPLE_PDF) for _ in range(2)], ParseOptions()
            )
            await wait_until(
                lambda: job_store.get_batch(batch.id).status == BatchStatus.COMPLETED
            )
        finally:
            await scheduler.stop()
        assert dispatcher.events == []

    @pytest.mark.asyncio
    async def test_recover_completes_finished_batches(self, job_store):
        """Test that a batch whose members all finished is completed on startup."""
        coordinator, _, dispatcher = _coordinator(job_store)
        batch, jobs = await coordinator.submit_batch(
            [JobSource(content=SAMPLE_PDF) for _ in range(2)], ParseOptions(), webhook_url=HOOK
        )
        for job in jobs:
            job_store.mark_processing(job.id)
            job_store.complete(job.id, {})

        await coordinator.recover()
        await coordinator.recover()

        assert job_store.get_batch(batch.id).status == BatchStatus.COMPLETED
        assert len(dispatcher.of("batch.completed")) == 1
