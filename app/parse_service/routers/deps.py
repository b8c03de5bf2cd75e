"""
Shared FastAPI dependencies: service lookup and admission control.
"""

from fastapi import Request, Response

from ..config import Settings
from ..models import ErrorResponse
from ..services.batches import BatchCoordinator
from ..services.rate_limiter import FixedWindowRateLimiter
from ..services.scheduler import ParseJobScheduler
from ..services.store import DeliveryStore

ERROR_RESPONSES: dict[int | str, dict] = {
    "4XX": {"model": ErrorResponse, "description": "Request rejected"},
    "5XX": {"model": ErrorResponse, "description": "Service failure"},
}


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_scheduler(request: Request) -> ParseJobScheduler:
    return request.app.state.scheduler


def get_batch_coordinator(request: Request) -> BatchCoordinator:
    return request.app.state.batches


def get_delivery_store(request: Request) -> DeliveryStore:
    return request.app.state.delivery_store


def get_rate_limiter(request: Request) -> FixedWindowRateLimiter:
    return request.app.state.rate_limiter


def extract_api_key(x_api_key: str | None, authorization: str | None) -> str | None:
    """API key from X-API-Key, or from an Authorization: Bearer header."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def admit_request(request: Request, response: Response) -> str:
    """
    Authenticate and rate limit a request before any work is done.

    Sets the X-RateLimit-* headers on the response.

    Returns:
        The caller's API key.

    Raises:
        ServiceError: authentication_failed or rate_limit_exceeded.
    """
    api_key = extract_api_key(
        request.headers.get("X-API-Key"),
        request.headers.get("Authorization"),
    )
    decision = get_rate_limiter(request).check(api_key)
    for name, value in decision.headers().items():
        response.headers[name] = value
    return api_key
