"""
Batch coordination.

A batch fans out into one job per source. Member completions are
aggregated under a lock from counts derived in the store, so progress
events and the single batch.completed event do not depend on the order
in which members finish.
"""

import asyncio
import logging
import time
from typing import Callable

from ..config import Settings
from ..errors import ErrorCode, ServiceError
from ..models import BatchProgress, BatchResponse, ParseOptions, WebhookEvent
from ..models_db import Batch, BatchStatus, DocumentJob, JobMode, new_id
from .scheduler import JobSource, ParseJobScheduler, validate_source, validate_webhook_url
from .store import BatchCounts, JobStore
from .webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


class BatchCoordinator:
    """Creates batches and aggregates their members' outcomes."""

    def __init__(
        self,
        store: JobStore,
        scheduler: ParseJobScheduler,
        settings: Settings,
        dispatcher: WebhookDispatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.scheduler = scheduler
        self.settings = settings
        self.dispatcher = dispatcher
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_progress_at: dict[str, float] = {}
        scheduler.add_terminal_listener(self._on_job_terminal)

    async def submit_batch(
        self,
        sources: list[JobSource],
        options: ParseOptions,
        webhook_url: str | None = None,
        api_key: str | None = None,
    ) -> tuple[Batch, list[DocumentJob]]:
        """
        Validate every source, then create the batch and its members.

        Args:
            sources: Documents in submission order.
            options: Parse options shared by every member.
            webhook_url: Target for batch.progress and batch.completed.
            api_key: Owner of the batch.

        Returns:
            The batch and its pending members, in submission order.

        Raises:
            ServiceError: When any source is invalid, the batch is empty or
                too large, or the queue cannot take every member. Nothing
                is persisted in that case.
        """
        if not sources:
            raise ServiceError(ErrorCode.INVALID_REQUEST, "A batch needs at least one document")
        if len(sources) > self.settings.max_batch_size:
            raise ServiceError(
                ErrorCode.INVALID_REQUEST,
                f"A batch may contain at most {self.settings.max_batch_size} documents",
                details={"max_batch_size": self.settings.max_batch_size, "received": len(sources)},
            )

        validated: list[JobSource] = []
        for index, source in enumerate(sources):
            try:
                validated.append(validate_source(source, self.settings.max_file_size_bytes))
            except ServiceError as e:
                e.details = {**e.details, "index": index}
                raise
        webhook_url = validate_webhook_url(webhook_url)

        self.scheduler.reserve(len(validated))
        try:
            batch = Batch(
                id=new_id("batch"),
                status=BatchStatus.PROCESSING,
                options=options.to_record(),
                webhook_url=webhook_url,
                api_key=api_key,
            )
            jobs = [
                self.scheduler.build_job(source, options, api_key=api_key, mode=JobMode.ASYNC)
                for source in validated
            ]
            batch, jobs = self.store.create_batch(batch, jobs)
        except Exception:
            self.scheduler.release(len(validated))
            raise

        await self.scheduler.enqueue_reserved([job.id for job in jobs])
        return batch, jobs

    def get_batch(
        self,
        batch_id: str,
        api_key: str | None = None,
    ) -> tuple[Batch, BatchCounts, list[DocumentJob]]:
        """
        Batch snapshot with derived counts and members in submission order.

        Raises:
            ServiceError: not_found, or forbidden for another key's batch.
        """
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise ServiceError(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found")
        if api_key is not None and batch.api_key is not None and batch.api_key != api_key:
            raise ServiceError(ErrorCode.FORBIDDEN, "This batch belongs to another API key")
        return batch, self.store.batch_counts(batch_id), self.store.list_batch_jobs(batch_id)

    async def recover(self) -> None:
        """Complete batches whose members all finished before a restart."""
        for batch in self.store.list_batches(BatchStatus.PROCESSING):
            async with self._lock:
                counts = self.store.batch_counts(batch.id)
                if counts.is_finished:
                    self._complete(batch.id, counts)

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    async def _on_job_terminal(self, job: DocumentJob) -> None:
        if job.batch_id is None:
            return

        async with self._lock:
            batch = self.store.get_batch(job.batch_id)
            if batch is None or batch.status != BatchStatus.PROCESSING:
                return
            counts = self.store.batch_counts(batch.id)
            logger.info(
                "Batch %s progress: %d/%d (succeeded=%d, failed=%d)",
                batch.id,
                counts.completed,
                counts.total,
                counts.succeeded,
                counts.failed,
            )
            self._emit_progress(batch, counts)
            if counts.is_finished:
                self._complete(batch.id, counts)

    def _emit_progress(self, batch: Batch, counts: BatchCounts) -> None:
        if not batch.webhook_url or self.dispatcher is None:
            return

        interval = self.settings.batch_progress_min_interval_seconds
        now = self._clock()
        last = self._last_progress_at.get(batch.id)
        if interval > 0 and last is not None and now - last < interval and not counts.is_finished:
            return
        self._last_progress_at[batch.id] = now

        progress = BatchProgress(
            batch_id=batch.id,
            total=counts.total,
            completed=counts.completed,
            pending=counts.pending + counts.processing,
            succeeded=counts.succeeded,
            failed=counts.failed,
        )
        self.dispatcher.enqueue(
            WebhookEvent.BATCH_PROGRESS,
            batch.webhook_url,
            progress.model_dump(mode="json"),
            api_key=batch.api_key,
        )

    def _complete(self, batch_id: str, counts: BatchCounts) -> None:
        if not self.store.complete_batch(batch_id):
            return
        self._last_progress_at.pop(batch_id, None)

        batch = self.store.get_batch(batch_id)
        logger.info(
            "Batch %s completed: %d succeeded, %d failed",
            batch_id,
            counts.succeeded,
            counts.failed,
        )
        if batch.webhook_url and self.dispatcher is not None:
            record = BatchResponse.from_records(batch, counts, self.store.list_batch_jobs(batch_id))
            self.dispatcher.enqueue(
                WebhookEvent.BATCH_COMPLETED,
                batch.webhook_url,
                record.model_dump(mode="json"),
                api_key=batch.api_key,
            )
