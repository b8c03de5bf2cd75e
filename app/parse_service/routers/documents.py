"""
Router for document job endpoints.

Handles:
- Job status and result retrieval
- Cancellation
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends

from ..models import JobResponse
from ..services.scheduler import ParseJobScheduler
from .deps import ERROR_RESPONSES, admit_request, get_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/documents", tags=["documents"], responses=ERROR_RESPONSES)


@router.get("/{document_id}")
async def get_document(
    document_id: str,
    api_key: str = Depends(admit_request),
    scheduler: ParseJobScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    """Get a document job with its result or error."""
    job = scheduler.get(document_id, api_key=api_key)
    return JobResponse.from_record(job).to_payload()


@router.post("/{document_id}/cancel")
async def cancel_document(
    document_id: str,
    api_key: str = Depends(admit_request),
    scheduler: ParseJobScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    """
    Cancel a document job.

    Pending jobs fail with reason cancelled. A job already processing is
    flagged but runs to completion; terminal jobs are returned unchanged.
    """
    job = await scheduler.cancel(document_id, api_key=api_key)
    return JobResponse.from_record(job).to_payload()
