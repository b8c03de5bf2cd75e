"""
Router for webhook delivery inspection.

Lets callers find deliveries that failed permanently and see every
attempt made for them. Each API key only sees the deliveries raised by
its own jobs and batches.
"""

from fastapi import APIRouter, Depends, Query

from ..errors import ErrorCode, ServiceError
from ..models import WebhookDeliveryListResponse, WebhookDeliveryResponse
from ..models_db import DeliveryStatus
from ..services.store import DeliveryStore
from .deps import ERROR_RESPONSES, admit_request, get_delivery_store

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"], responses=ERROR_RESPONSES)


@router.get("/deliveries", response_model=WebhookDeliveryListResponse)
async def list_deliveries(
    status: DeliveryStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    api_key: str = Depends(admit_request),
    store: DeliveryStore = Depends(get_delivery_store),
) -> WebhookDeliveryListResponse:
    """List the caller's deliveries, newest first, optionally filtered by status."""
    deliveries = store.list_deliveries(status=status, limit=limit, api_key=api_key)
    return WebhookDeliveryListResponse(
        deliveries=[WebhookDeliveryResponse.from_record(d) for d in deliveries],
        total=store.count_deliveries(status=status, api_key=api_key),
    )


@router.get("/deliveries/{delivery_id}", response_model=WebhookDeliveryResponse)
async def get_delivery(
    delivery_id: str,
    api_key: str = Depends(admit_request),
    store: DeliveryStore = Depends(get_delivery_store),
) -> WebhookDeliveryResponse:
    """Get one delivery with all of its attempts."""
    delivery = store.get(delivery_id)
    if delivery is None:
        raise ServiceError(ErrorCode.NOT_FOUND, f"Webhook delivery {delivery_id} not found")
    if delivery.api_key is not None and delivery.api_key != api_key:
        raise ServiceError(ErrorCode.FORBIDDEN, "This delivery belongs to another API key")
    return WebhookDeliveryResponse.from_record(delivery, store.attempts(delivery_id))
