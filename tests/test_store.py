"""Tests for job, batch and delivery persistence."""

from app.parse_service.errors import ErrorCode, FailureReason
from app.parse_service.models_db import (
    AttemptOutcome,
    Batch,
    DeliveryStatus,
    DocumentJob,
    JobStatus,
    SourceKind,
    WebhookDelivery,
    new_id,
    utcnow,
)


def _job(**values) -> DocumentJob:
    defaults = dict(
        id=new_id("doc"),
        source_kind=SourceKind.UPLOAD,
        file_content=b"%PDF-1.4",
        filename="a.pdf",
        options={},
    )
    defaults.update(values)
    return DocumentJob(**defaults)


class TestJobTransitions:
    """Tests for compare-and-set status transitions."""

    def test_create_job_is_pending(self, job_store):
        """Test that new jobs start pending with a creation time."""
        job = job_store.create_job(_job())
        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.created_at is not None
        assert stored.completed_at is None

    def test_full_success_sequence(self, job_store):
        """Test pending -> processing -> completed."""
        job = job_store.create_job(_job())
        assert job_store.mark_processing(job.id)
        assert job_store.get_job(job.id).started_at is not None
        assert job_store.complete(job.id, {"raw_text": "x"})

        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == {"raw_text": "x"}
        assert stored.error_code is None
        assert stored.completed_at is not None
        assert stored.file_content is None

    def test_mark_processing_only_once(self, job_store):
        """Test that a second claim of the same job fails."""
        job = job_store.create_job(_job())
        assert job_store.mark_processing(job.id)
        assert not job_store.mark_processing(job.id)

    def test_single_terminal_transition(self, job_store):
        """Test that a terminal job cannot transition again."""
        job = job_store.create_job(_job())
        job_store.mark_processing(job.id)
        assert job_store.fail(job.id, ErrorCode.TIMEOUT, "too slow")
        assert not job_store.complete(job.id, {"raw_text": "late"})
        assert not job_store.fail(job.id, ErrorCode.PROCESSING_FAILED, "again")

        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_code == "timeout"
        assert stored.result is None

    def test_complete_requires_processing(self, job_store):
        """Test that a pending job cannot be completed directly."""
        job = job_store.create_job(_job())
        assert not job_store.complete(job.id, {})
        assert job_store.get_job(job.id).status == JobStatus.PENDING

    def test_cancel_pending(self, job_store):
        """Test that cancelling a pending job fails it with reason cancelled."""
        job = job_store.create_job(_job())
        assert job_store.cancel_pending(job.id)
        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_code == ErrorCode.PROCESSING_FAILED.value
        assert stored.error_reason == FailureReason.CANCELLED.value

    def test_cancel_pending_loses_to_processing(self, job_store):
        """Test that a job already claimed by a worker is not cancelled."""
        job = job_store.create_job(_job())
        job_store.mark_processing(job.id)
        assert not job_store.cancel_pending(job.id)
        assert job_store.request_cancel(job.id)
        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.cancel_requested is True

    def test_list_jobs_by_status(self, job_store):
        """Test listing jobs by status, oldest first."""
        first = job_store.create_job(_job())
        second = job_store.create_job(_job())
        job_store.mark_processing(second.id)
        assert [j.id for j in job_store.list_jobs(JobStatus.PENDING)] == [first.id]
        assert [j.id for j in job_store.list_jobs(JobStatus.PROCESSING)] == [second.id]


class TestBatches:
    """Tests for batch persistence and derived counts."""

    def test_create_batch_preserves_order(self, job_store):
        """Test that members keep submission order."""
        jobs = [_job(filename=f"{i}.pdf") for i in range(4)]
        batch, created = job_store.create_batch(Batch(id=new_id("batch"), options={}), jobs)
        members = job_store.list_batch_jobs(batch.id)
        assert [m.filename for m in members] == ["0.pdf", "1.pdf", "2.pdf", "3.pdf"]
        assert all(m.status == JobStatus.PENDING for m in members)

    def test_counts_are_derived(self, job_store):
        """Test that counts follow member statuses."""
        jobs = [_job() for _ in range(4)]
        batch, _ = job_store.create_batch(Batch(id=new_id("batch"), options={}), jobs)
        job_store.mark_processing(jobs[0].id)
        job_store.complete(jobs[0].id, {})
        job_store.mark_processing(jobs[1].id)
        job_store.fail(jobs[1].id, ErrorCode.INVALID_URL, "404")
        job_store.mark_processing(jobs[2].id)

        counts = job_store.batch_counts(batch.id)
        assert (counts.total, counts.succeeded, counts.failed) == (4, 1, 1)
        assert (counts.pending, counts.processing) == (1, 1)
        assert counts.completed == 2
        assert not counts.is_finished

    def test_complete_batch_once(self, job_store):
        """Test that a batch completes exactly once."""
        batch, _ = job_store.create_batch(Batch(id=new_id("batch"), options={}), [_job()])
        assert job_store.complete_batch(batch.id)
        assert not job_store.complete_batch(batch.id)
        assert job_store.get_batch(batch.id).completed_at is not None


class TestDeliveryStore:
    """Tests for webhook delivery persistence."""

    def _delivery(self) -> WebhookDelivery:
        now = utcnow()
        return WebhookDelivery(
            id=new_id("whd"),
            event="document.completed",
            target_url="https://example.com/hook",
            payload="{}",
            signature="sha256=abc",
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            next_attempt_at=now,
            created_at=now,
        )

    def test_record_attempts(self, delivery_store):
        """Test that attempts are stored and the delivery updated."""
        delivery = delivery_store.create(self._delivery())
        delivery_store.record_attempt(
            delivery.id, 1, delivery.created_at, AttemptOutcome.ERROR, status_code=500, error="HTTP 500",
            next_attempt_at=utcnow(),
        )
        updated = delivery_store.record_attempt(
            delivery.id, 2, utcnow(), AttemptOutcome.SUCCESS, status_code=200,
            final_status=DeliveryStatus.SUCCEEDED,
        )
        assert updated.status == DeliveryStatus.SUCCEEDED
        assert updated.attempt_count == 2
        assert updated.completed_at is not None
        attempts = delivery_store.attempts(delivery.id)
        assert [a.attempt_number for a in attempts] == [1, 2]
        assert attempts[0].status_code == 500

    def test_filter_by_status(self, delivery_store):
        """Test listing and counting deliveries by status."""
        pending = delivery_store.create(self._delivery())
        failed = delivery_store.create(self._delivery())
        delivery_store.record_attempt(
            failed.id, 1, utcnow(), AttemptOutcome.TIMEOUT, error="timeout",
            final_status=DeliveryStatus.FAILED,
        )
        assert [d.id for d in delivery_store.list_deliveries(DeliveryStatus.FAILED)] == [failed.id]
        assert [d.id for d in delivery_store.list_deliveries(DeliveryStatus.PENDING)] == [pending.id]
        assert delivery_store.count_deliveries() == 2

    def test_filter_by_owner(self, delivery_store):
        """Test that listing and counting can be restricted to one API key."""
        mine = self._delivery()
        mine.api_key = "acme"
        delivery_store.create(mine)
        delivery_store.create(self._delivery())
        assert [d.id for d in delivery_store.list_deliveries(api_key="acme")] == [mine.id]
        assert delivery_store.count_deliveries(api_key="acme") == 1
        assert delivery_store.count_deliveries() == 2

    def test_mark_failed_only_touches_pending(self, delivery_store):
        """Test that giving up on a delivery does not reopen finished ones."""
        pending = delivery_store.create(self._delivery())
        done = delivery_store.create(self._delivery())
        delivery_store.record_attempt(
            done.id, 1, utcnow(), AttemptOutcome.SUCCESS, status_code=200,
            final_status=DeliveryStatus.SUCCEEDED,
        )

        failed = delivery_store.mark_failed(pending.id, "RuntimeError: boom")
        assert failed.status == DeliveryStatus.FAILED
        assert failed.last_error == "RuntimeError: boom"
        assert failed.next_attempt_at is None
        assert delivery_store.mark_failed(done.id, "late").status == DeliveryStatus.SUCCEEDED
        assert delivery_store.mark_failed("whd_missing", "x") is None
