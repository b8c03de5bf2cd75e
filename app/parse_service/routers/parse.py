"""
Router for document submission endpoints.

Handles:
- Synchronous parsing (waits for the outcome)
- Asynchronous parsing (returns the pending job)
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, status

from ..config import Settings
from ..models import AsyncJobResponse, JobResponse, isoformat
from ..models_db import JobMode
from ..services.scheduler import ParseJobScheduler
from .deps import ERROR_RESPONSES, admit_request, get_app_settings, get_scheduler
from .submission import read_parse_submission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["parse"], responses=ERROR_RESPONSES)


@router.post("/parse")
async def parse_document(
    request: Request,
    api_key: str = Depends(admit_request),
    scheduler: ParseJobScheduler = Depends(get_scheduler),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """
    Parse a document and wait for the result.

    Returns the full job record once it is completed or failed. When the
    sync timeout expires first, the record is returned as it stands
    (pending or processing) and can be polled via GET /v1/documents/{id}.
    """
    submission = await read_parse_submission(request)
    job = await scheduler.submit(
        submission.source,
        submission.options,
        webhook_url=submission.webhook_url,
        api_key=api_key,
        mode=JobMode.SYNC,
    )
    job = await scheduler.wait_for_terminal(job.id, timeout=settings.sync_timeout_seconds)
    if not job.is_terminal:
        logger.info("Returning partial record for job %s (%s)", job.id, job.status.value)
    return JobResponse.from_record(job).to_payload()


@router.post(
    "/parse/async",
    response_model=AsyncJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def parse_document_async(
    request: Request,
    api_key: str = Depends(admit_request),
    scheduler: ParseJobScheduler = Depends(get_scheduler),
) -> AsyncJobResponse:
    """Queue a document and return immediately with its pending job."""
    submission = await read_parse_submission(request)
    job = await scheduler.submit(
        submission.source,
        submission.options,
        webhook_url=submission.webhook_url,
        api_key=api_key,
        mode=JobMode.ASYNC,
    )
    return AsyncJobResponse(
        id=job.id,
        status=job.status.value,
        created_at=isoformat(job.created_at),
    )
