"""
Parse job scheduler.

Accepts documents, persists them as pending jobs, and runs them through
the extraction engine on a fixed pool of asyncio workers draining a FIFO
queue. Handles sync waiting, cancellation, startup recovery, and the
terminal notifications that drive webhooks and batch aggregation.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..config import Settings
from ..errors import ErrorCode, ExtractionFailure, FailureReason, ServiceError
from ..models import JobResponse, ParseOptions, WebhookEvent
from ..models_db import DocumentJob, JobMode, JobStatus, SourceKind, new_id
from .engine import ExtractionEngine
from .fetcher import SourceFetcher, validate_source_url
from .pdf_service import PDF_MAGIC
from .store import JobStore
from .webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

TerminalListener = Callable[[DocumentJob], Awaitable[None]]


@dataclass
class JobSource:
    """Where a document comes from: inline bytes or a URL, never both."""

    content: bytes | None = None
    url: str | None = None
    filename: str | None = None

    @property
    def kind(self) -> SourceKind:
        return SourceKind.URL if self.url is not None else SourceKind.UPLOAD


def validate_source(source: JobSource, max_file_size_bytes: int) -> JobSource:
    """
    Check a source before anything is persisted.

    Raises:
        ServiceError: invalid_request when zero or two sources are given or
            the upload is empty, file_too_large, invalid_file_format for
            bytes that are not a PDF, invalid_url for a malformed URL.
    """
    has_content = source.content is not None
    has_url = source.url is not None and source.url != ""
    if has_content == has_url:
        raise ServiceError(
            ErrorCode.INVALID_REQUEST,
            "Provide exactly one document source: a file or a url",
        )

    if has_url:
        return JobSource(url=validate_source_url(source.url), filename=source.filename)

    if not source.content:
        raise ServiceError(ErrorCode.INVALID_REQUEST, "Empty file provided")
    if len(source.content) > max_file_size_bytes:
        raise ServiceError(
            ErrorCode.FILE_TOO_LARGE,
            f"File exceeds the maximum size of {max_file_size_bytes} bytes",
            details={"max_bytes": max_file_size_bytes, "size_bytes": len(source.content)},
        )
    if not source.content.startswith(PDF_MAGIC):
        raise ServiceError(
            ErrorCode.INVALID_FILE_FORMAT,
            "Only PDF files are accepted",
            details={"supported_formats": ["application/pdf"]},
        )
    return source


def validate_webhook_url(url: str | None) -> str | None:
    if url is None or url == "":
        return None
    try:
        return validate_source_url(url)
    except ServiceError as e:
        raise ServiceError(
            ErrorCode.INVALID_REQUEST,
            "webhook_url must be an absolute http or https URL",
            details={"webhook_url": url},
        ) from e


class ParseJobScheduler:
    """
    Owns the job queue and the worker pool.

    Queue depth counts queued jobs plus capacity reserved by callers that
    are about to enqueue (batches reserve for all members up front).
    """

    def __init__(
        self,
        store: JobStore,
        engine: ExtractionEngine,
        settings: Settings,
        fetcher: SourceFetcher | None = None,
        dispatcher: WebhookDispatcher | None = None,
    ):
        self.store = store
        self.engine = engine
        self.settings = settings
        self.fetcher = fetcher or SourceFetcher(
            max_bytes=settings.max_file_size_bytes,
            timeout=settings.fetch_timeout_seconds,
        )
        self.dispatcher = dispatcher

        self._queue: deque[str] = deque()
        self._condition = asyncio.Condition()
        self._reserved = 0
        self._waiters: dict[str, asyncio.Event] = {}
        self._listeners: list[TerminalListener] = []
        self._workers: list[asyncio.Task] = []

    # -------------------------------------------------------------------------
    # Capacity
    # -------------------------------------------------------------------------

    @property
    def queue_depth(self) -> int:
        return len(self._queue) + self._reserved

    def reserve(self, count: int = 1) -> None:
        """
        Claim queue capacity for count jobs.

        Raises:
            ServiceError: service_unavailable when the queue cannot take them.
        """
        if self.queue_depth + count > self.settings.max_queue_depth:
            logger.warning(
                "Queue full: depth=%d, requested=%d, max=%d",
                self.queue_depth,
                count,
                self.settings.max_queue_depth,
            )
            raise ServiceError(
                ErrorCode.SERVICE_UNAVAILABLE,
                "The processing queue is full, retry later",
                details={"retry_after": 30, "queue_depth": self.queue_depth},
            )
        self._reserved += count

    def release(self, count: int = 1) -> None:
        self._reserved = max(0, self._reserved - count)

    async def enqueue_reserved(self, job_ids: list[str]) -> None:
        """Move reserved capacity into the queue, keeping the given order."""
        async with self._condition:
            self.release(len(job_ids))
            self._queue.extend(job_ids)
            self._condition.notify(len(job_ids))

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def build_job(
        self,
        source: JobSource,
        options: ParseOptions,
        webhook_url: str | None = None,
        api_key: str | None = None,
        mode: JobMode = JobMode.ASYNC,
    ) -> DocumentJob:
        """Build an unsaved pending job from an already validated source."""
        return DocumentJob(
            id=new_id("doc"),
            status=JobStatus.PENDING,
            mode=mode,
            source_kind=source.kind,
            source_url=source.url,
            filename=source.filename,
            file_size_bytes=len(source.content) if source.content is not None else None,
            file_content=source.content,
            options=options.to_record(),
            webhook_url=webhook_url,
            api_key=api_key,
        )

    async def submit(
        self,
        source: JobSource,
        options: ParseOptions,
        webhook_url: str | None = None,
        api_key: str | None = None,
        mode: JobMode = JobMode.ASYNC,
    ) -> DocumentJob:
        """
        Validate a document, persist it as a pending job and queue it.

        Args:
            source: Inline bytes or URL.
            options: Parse options.
            webhook_url: Optional target for document.completed/failed.
            api_key: Owner of the job.
            mode: sync or async, selects the extraction timeout.

        Returns:
            The pending job.

        Raises:
            ServiceError: On invalid input or a full queue. Nothing is
                persisted in that case.
        """
        source = validate_source(source, self.settings.max_file_size_bytes)
        webhook_url = validate_webhook_url(webhook_url)

        self.reserve(1)
        try:
            job = self.store.create_job(
                self.build_job(source, options, webhook_url=webhook_url, api_key=api_key, mode=mode)
            )
        except Exception:
            self.release(1)
            raise
        await self.enqueue_reserved([job.id])
        return job

    # -------------------------------------------------------------------------
    # Queries and control
    # -------------------------------------------------------------------------

    def get(self, job_id: str, api_key: str | None = None) -> DocumentJob:
        """
        Fetch a job snapshot.

        Raises:
            ServiceError: not_found, or forbidden when the job belongs to
                another API key.
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise ServiceError(ErrorCode.NOT_FOUND, f"Document {job_id} not found")
        if api_key is not None and job.api_key is not None and job.api_key != api_key:
            raise ServiceError(ErrorCode.FORBIDDEN, "This document belongs to another API key")
        return job

    async def cancel(self, job_id: str, api_key: str | None = None) -> DocumentJob:
        """
        Cancel a job.

        A pending job fails immediately with reason cancelled. A job that is
        already processing is only flagged; the running extraction is not
        interrupted and its outcome is recorded. Terminal jobs are returned
        unchanged.
        """
        job = self.get(job_id, api_key)
        if job.is_terminal:
            return job

        if self.store.cancel_pending(job_id):
            if job_id in self._queue:
                self._queue.remove(job_id)
            logger.info("Cancelled pending job %s", job_id)
            await self._finish(job_id)
        elif self.store.request_cancel(job_id):
            logger.info("Cancellation requested for in-flight job %s", job_id)
        return self.store.get_job(job_id)

    async def wait_for_terminal(self, job_id: str, timeout: float) -> DocumentJob:
        """
        Wait until the job is completed or failed.

        Returns the latest snapshot, which is still pending or processing
        when the timeout expires first.
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise ServiceError(ErrorCode.NOT_FOUND, f"Document {job_id} not found")
        if job.is_terminal:
            return job

        event = self._waiters.setdefault(job_id, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Gave up waiting for job %s after %.1fs", job_id, timeout)
        return self.store.get_job(job_id)

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Register a coroutine called once with each job that turns terminal."""
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Recover jobs left over by a previous process, then start workers."""
        if self._workers:
            return
        await self._recover()
        for index in range(self.settings.max_concurrent_extractions):
            self._workers.append(
                asyncio.create_task(self._worker(index), name=f"parse-worker-{index}")
            )
        logger.info("Started %d extraction worker(s)", len(self._workers))

    async def stop(self) -> None:
        """Cancel the workers. Jobs they were running stay processing until recovery."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Extraction workers stopped")

    async def _recover(self) -> None:
        interrupted = self.store.list_jobs(JobStatus.PROCESSING)
        for job in interrupted:
            if self.store.fail(
                job.id,
                ErrorCode.PROCESSING_FAILED,
                "Processing was interrupted by a service restart",
                reason=FailureReason.INTERNAL_ERROR,
            ):
                await self._finish(job.id)

        pending = [job for job in self.store.list_jobs(JobStatus.PENDING) if job.id not in self._queue]
        if pending:
            async with self._condition:
                self._queue.extend(job.id for job in pending)
                self._condition.notify(len(pending))

        if interrupted or pending:
            logger.warning(
                "Recovered jobs: %d interrupted marked failed, %d pending re-queued",
                len(interrupted),
                len(pending),
            )

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        while True:
            async with self._condition:
                await self._condition.wait_for(lambda: len(self._queue) > 0)
                job_id = self._queue.popleft()
            try:
                await self._run_job(job_id)
            except Exception:
                logger.exception("Worker %d could not run job %s", index, job_id)

    async def _run_job(self, job_id: str) -> None:
        if not self.store.mark_processing(job_id):
            logger.info("Skipping job %s, no longer pending", job_id)
            return

        job = self.store.get_job(job_id)
        timeout = (
            self.settings.sync_timeout_seconds
            if job.mode == JobMode.SYNC
            else self.settings.async_timeout_seconds
        )
        logger.info("Processing job %s (%s, timeout=%.0fs)", job_id, job.source_kind.value, timeout)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            document = job.file_content
            if job.source_kind == SourceKind.URL:
                # The fetch and the extraction share one deadline
                document = await asyncio.wait_for(self.fetcher.fetch(job.source_url), timeout=timeout)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            options = ParseOptions.model_validate(job.options or {})
            result = await asyncio.wait_for(
                asyncio.to_thread(self.engine.extract, document, options, job.filename),
                timeout=remaining,
            )
        except ServiceError as e:
            logger.warning("Job %s failed: %s", job_id, e.message)
            finished = self.store.fail(job_id, e.code, e.message)
        except ExtractionFailure as e:
            logger.warning("Job %s failed (%s): %s", job_id, e.reason.value, e.message)
            finished = self.store.fail(job_id, ErrorCode.PROCESSING_FAILED, e.message, reason=e.reason)
        except asyncio.TimeoutError:
            logger.warning("Job %s timed out after %.0fs", job_id, timeout)
            finished = self.store.fail(
                job_id,
                ErrorCode.TIMEOUT,
                f"Processing did not finish within {timeout:.0f} seconds",
            )
        except Exception:
            logger.exception("Unexpected error processing job %s", job_id)
            finished = self.store.fail(
                job_id,
                ErrorCode.PROCESSING_FAILED,
                "Internal error while processing the document",
                reason=FailureReason.INTERNAL_ERROR,
            )
        else:
            finished = self.store.complete(job_id, result.model_dump(mode="json"))
            logger.info("Job %s completed", job_id)

        if finished:
            await self._finish(job_id)

    async def _finish(self, job_id: str) -> None:
        """Fan out a terminal transition. Called once per job."""
        job = self.store.get_job(job_id)

        event = self._waiters.pop(job_id, None)
        if event is not None:
            event.set()

        for listener in self._listeners:
            try:
                await listener(job)
            except Exception:
                logger.exception("Terminal listener failed for job %s", job_id)

        if job.webhook_url and self.dispatcher is not None:
            webhook_event = (
                WebhookEvent.DOCUMENT_COMPLETED
                if job.status == JobStatus.COMPLETED
                else WebhookEvent.DOCUMENT_FAILED
            )
            try:
                self.dispatcher.enqueue(
                    webhook_event,
                    job.webhook_url,
                    JobResponse.from_record(job).to_payload(),
                    api_key=job.api_key,
                )
            except Exception:
                logger.exception("Could not queue %s webhook for job %s", webhook_event.value, job_id)
