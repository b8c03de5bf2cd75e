"""
Persistence for parse jobs, batches and webhook deliveries.

Every status change is a compare-and-set: an UPDATE guarded by the
expected current status, so each job and batch reaches a terminal state
exactly once no matter how many callers race for it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import sessionmaker

from ..errors import ErrorCode, FailureReason
from ..models_db import (
    AttemptOutcome,
    Batch,
    BatchStatus,
    DeliveryStatus,
    DocumentJob,
    JobStatus,
    WebhookAttempt,
    WebhookDelivery,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchCounts:
    """Member counts derived from job rows."""

    total: int
    succeeded: int
    failed: int
    pending: int
    processing: int

    @property
    def completed(self) -> int:
        """Members in a terminal state."""
        return self.succeeded + self.failed

    @property
    def is_finished(self) -> bool:
        return self.total > 0 and self.completed == self.total


class JobStore:
    """Source of truth for document jobs and batches."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_job(self, job: DocumentJob) -> DocumentJob:
        """Persist a new job in pending."""
        job.status = JobStatus.PENDING
        with self._session_factory() as db:
            db.add(job)
            db.commit()
            db.refresh(job)
        logger.info("Created job %s (%s)", job.id, job.source_kind.value)
        return job

    def create_batch(self, batch: Batch, jobs: list[DocumentJob]) -> tuple[Batch, list[DocumentJob]]:
        """Persist a batch and all of its members in one transaction."""
        with self._session_factory() as db:
            db.add(batch)
            db.flush()
            for position, job in enumerate(jobs):
                job.status = JobStatus.PENDING
                job.batch_id = batch.id
                job.batch_position = position
                db.add(job)
            db.commit()
            db.refresh(batch)
            for job in jobs:
                db.refresh(job)
        logger.info("Created batch %s with %d documents", batch.id, len(jobs))
        return batch, jobs

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_job(self, job_id: str) -> DocumentJob | None:
        with self._session_factory() as db:
            return db.get(DocumentJob, job_id)

    def list_jobs(self, status: JobStatus) -> list[DocumentJob]:
        """Jobs in a status, oldest first."""
        with self._session_factory() as db:
            stmt = (
                select(DocumentJob)
                .where(DocumentJob.status == status)
                .order_by(DocumentJob.created_at, DocumentJob.id)
            )
            return list(db.scalars(stmt).all())

    def get_batch(self, batch_id: str) -> Batch | None:
        with self._session_factory() as db:
            return db.get(Batch, batch_id)

    def list_batches(self, status: BatchStatus) -> list[Batch]:
        with self._session_factory() as db:
            stmt = select(Batch).where(Batch.status == status).order_by(Batch.created_at)
            return list(db.scalars(stmt).all())

    def list_batch_jobs(self, batch_id: str) -> list[DocumentJob]:
        """Members of a batch in submission order."""
        with self._session_factory() as db:
            stmt = (
                select(DocumentJob)
                .where(DocumentJob.batch_id == batch_id)
                .order_by(DocumentJob.batch_position)
            )
            return list(db.scalars(stmt).all())

    def batch_counts(self, batch_id: str) -> BatchCounts:
        """Aggregate member statuses in a single query."""

        def count_status(status: JobStatus):
            return func.coalesce(func.sum(case((DocumentJob.status == status, 1), else_=0)), 0)

        stmt = select(
            func.count(DocumentJob.id),
            count_status(JobStatus.COMPLETED),
            count_status(JobStatus.FAILED),
            count_status(JobStatus.PENDING),
            count_status(JobStatus.PROCESSING),
        ).where(DocumentJob.batch_id == batch_id)
        with self._session_factory() as db:
            total, succeeded, failed, pending, processing = db.execute(stmt).one()
        return BatchCounts(
            total=int(total),
            succeeded=int(succeeded),
            failed=int(failed),
            pending=int(pending),
            processing=int(processing),
        )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _transition(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        values: dict[str, Any],
    ) -> bool:
        stmt = (
            update(DocumentJob)
            .where(DocumentJob.id == job_id, DocumentJob.status.in_(list(expected)))
            .values(**values)
        )
        with self._session_factory() as db:
            result = db.execute(stmt)
            db.commit()
        return result.rowcount == 1

    def mark_processing(self, job_id: str) -> bool:
        """pending -> processing. False when the job was cancelled meanwhile."""
        return self._transition(
            job_id,
            [JobStatus.PENDING],
            {"status": JobStatus.PROCESSING, "started_at": utcnow()},
        )

    def complete(self, job_id: str, result: dict[str, Any]) -> bool:
        """processing -> completed, storing the result."""
        return self._transition(
            job_id,
            [JobStatus.PROCESSING],
            {
                "status": JobStatus.COMPLETED,
                "result": result,
                "completed_at": utcnow(),
                "file_content": None,
            },
        )

    def fail(
        self,
        job_id: str,
        code: ErrorCode,
        message: str,
        reason: FailureReason | None = None,
        expected: Iterable[JobStatus] = (JobStatus.PROCESSING,),
    ) -> bool:
        """Move a job to failed with a taxonomy code."""
        return self._transition(
            job_id,
            expected,
            {
                "status": JobStatus.FAILED,
                "error_code": code.value,
                "error_reason": reason.value if reason else None,
                "error_message": message,
                "completed_at": utcnow(),
                "file_content": None,
            },
        )

    def cancel_pending(self, job_id: str) -> bool:
        """pending -> failed with the cancelled reason."""
        return self.fail(
            job_id,
            ErrorCode.PROCESSING_FAILED,
            "Job was cancelled before processing started",
            reason=FailureReason.CANCELLED,
            expected=[JobStatus.PENDING],
        )

    def request_cancel(self, job_id: str) -> bool:
        """Flag an in-flight job; the running extraction is not interrupted."""
        stmt = (
            update(DocumentJob)
            .where(DocumentJob.id == job_id, DocumentJob.status == JobStatus.PROCESSING)
            .values(cancel_requested=True)
        )
        with self._session_factory() as db:
            result = db.execute(stmt)
            db.commit()
        return result.rowcount == 1

    def complete_batch(self, batch_id: str) -> bool:
        """processing -> completed for a batch, exactly once."""
        stmt = (
            update(Batch)
            .where(Batch.id == batch_id, Batch.status == BatchStatus.PROCESSING)
            .values(status=BatchStatus.COMPLETED, completed_at=utcnow())
        )
        with self._session_factory() as db:
            result = db.execute(stmt)
            db.commit()
        return result.rowcount == 1


class DeliveryStore:
    """Persistence for webhook deliveries and their attempts."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        with self._session_factory() as db:
            db.add(delivery)
            db.commit()
            db.refresh(delivery)
        return delivery

    def get(self, delivery_id: str) -> WebhookDelivery | None:
        with self._session_factory() as db:
            return db.get(WebhookDelivery, delivery_id)

    def list_deliveries(
        self,
        status: DeliveryStatus | None = None,
        limit: int | None = 100,
        api_key: str | None = None,
    ) -> list[WebhookDelivery]:
        """Newest first; limit=None returns all. api_key restricts to one owner."""
        with self._session_factory() as db:
            stmt = select(WebhookDelivery).order_by(WebhookDelivery.created_at.desc())
            if status is not None:
                stmt = stmt.where(WebhookDelivery.status == status)
            if api_key is not None:
                stmt = stmt.where(WebhookDelivery.api_key == api_key)
            if limit is not None:
                stmt = stmt.limit(limit)
            return list(db.scalars(stmt).all())

    def count_deliveries(
        self,
        status: DeliveryStatus | None = None,
        api_key: str | None = None,
    ) -> int:
        with self._session_factory() as db:
            stmt = select(func.count(WebhookDelivery.id))
            if status is not None:
                stmt = stmt.where(WebhookDelivery.status == status)
            if api_key is not None:
                stmt = stmt.where(WebhookDelivery.api_key == api_key)
            return int(db.execute(stmt).scalar_one())

    def attempts(self, delivery_id: str) -> list[WebhookAttempt]:
        with self._session_factory() as db:
            stmt = (
                select(WebhookAttempt)
                .where(WebhookAttempt.delivery_id == delivery_id)
                .order_by(WebhookAttempt.attempt_number)
            )
            return list(db.scalars(stmt).all())

    def record_attempt(
        self,
        delivery_id: str,
        attempt_number: int,
        scheduled_at: datetime,
        outcome: AttemptOutcome,
        status_code: int | None = None,
        error: str | None = None,
        next_attempt_at: datetime | None = None,
        final_status: DeliveryStatus | None = None,
    ) -> WebhookDelivery:
        """
        Store one attempt and update the delivery in the same transaction.

        final_status marks the delivery succeeded or permanently failed;
        otherwise it stays pending with next_attempt_at set.
        """
        with self._session_factory() as db:
            delivery = db.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise LookupError(f"Webhook delivery {delivery_id} not found")
            db.add(
                WebhookAttempt(
                    delivery_id=delivery_id,
                    attempt_number=attempt_number,
                    scheduled_at=scheduled_at,
                    attempted_at=utcnow(),
                    outcome=outcome,
                    status_code=status_code,
                    error=error,
                )
            )
            delivery.attempt_count = attempt_number
            delivery.last_error = error
            delivery.next_attempt_at = next_attempt_at
            if final_status is not None:
                delivery.status = final_status
                delivery.completed_at = utcnow()
            db.commit()
            db.refresh(delivery)
            return delivery

    def mark_failed(self, delivery_id: str, error: str) -> WebhookDelivery | None:
        """Give up on a pending delivery without recording another attempt."""
        with self._session_factory() as db:
            delivery = db.get(WebhookDelivery, delivery_id)
            if delivery is None or delivery.status != DeliveryStatus.PENDING:
                return delivery
            delivery.status = DeliveryStatus.FAILED
            delivery.last_error = error
            delivery.next_attempt_at = None
            delivery.completed_at = utcnow()
            db.commit()
            db.refresh(delivery)
            return delivery
