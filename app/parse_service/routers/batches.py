"""
Router for batch endpoints.

Handles:
- Batch submission (JSON urls or multipart files)
- Batch status with per-document summaries
"""

import logging

from fastapi import APIRouter, Depends, Request, status

from ..models import BatchDocumentSummary, BatchResponse, BatchSubmitResponse
from ..services.batches import BatchCoordinator
from .deps import ERROR_RESPONSES, admit_request, get_batch_coordinator
from .submission import read_batch_submission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/batch", tags=["batches"], responses=ERROR_RESPONSES)


@router.post(
    "",
    response_model=BatchSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_batch(
    request: Request,
    api_key: str = Depends(admit_request),
    coordinator: BatchCoordinator = Depends(get_batch_coordinator),
) -> BatchSubmitResponse:
    """
    Submit several documents as one batch.

    Every source is validated before anything is created; one invalid
    source rejects the whole batch.
    """
    submission = await read_batch_submission(request)
    batch, jobs = await coordinator.submit_batch(
        submission.sources,
        submission.options,
        webhook_url=submission.webhook_url,
        api_key=api_key,
    )
    logger.info("Accepted batch %s with %d document(s)", batch.id, len(jobs))
    return BatchSubmitResponse(
        batch_id=batch.id,
        status=batch.status.value,
        total=len(jobs),
        documents=[BatchDocumentSummary.from_record(job) for job in jobs],
    )


@router.get("/{batch_id}", response_model=BatchResponse)
async def get_batch(
    batch_id: str,
    api_key: str = Depends(admit_request),
    coordinator: BatchCoordinator = Depends(get_batch_coordinator),
) -> BatchResponse:
    """Get batch status, derived counts, and members in submission order."""
    batch, counts, members = coordinator.get_batch(batch_id, api_key=api_key)
    return BatchResponse.from_records(batch, counts, members)
