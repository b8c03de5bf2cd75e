"""
Signed webhook delivery with a fixed retry schedule.

Each delivery is serialised and signed once, persisted, and then driven
by its own asyncio task: at most one attempt in flight per delivery, no
ordering across deliveries. Failed attempts are retried after the
configured delays; once they are used up the delivery is marked failed
and logged for operators.
"""

import asyncio
import hashlib
import hmac
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable

import httpx

from .. import __version__
from ..config import Settings
from ..models import WebhookEnvelope, WebhookEvent, isoformat
from ..models_db import (
    AttemptOutcome,
    DeliveryStatus,
    WebhookDelivery,
    new_id,
    utcnow,
)
from .store import DeliveryStore

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
USER_AGENT = f"parse-service-webhooks/{__version__}"


def sign_payload(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 of the raw payload bytes, as sent in X-Webhook-Signature."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: bytes, secret: str, signature_header: str | None) -> bool:
    """
    Check a received X-Webhook-Signature header against the payload.

    Receivers must verify the exact bytes they received, before parsing.
    """
    if not signature_header:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature_header.strip())


class WebhookDispatcher:
    """Persists and delivers webhook events."""

    def __init__(
        self,
        store: DeliveryStore,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            store: Delivery persistence.
            settings: Secrets, timeout and retry delays.
            transport: Optional httpx transport (tests use MockTransport).
            sleep: Coroutine used to wait between attempts.
        """
        self.store = store
        self.settings = settings
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=settings.webhook_timeout_seconds,
            follow_redirects=False,
        )
        self._tasks: dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        event: WebhookEvent,
        target_url: str,
        data: dict[str, Any],
        api_key: str | None = None,
    ) -> WebhookDelivery:
        """
        Record a delivery and start sending it.

        The envelope is serialised once; every attempt sends the same bytes
        with the same signature and delivery id.
        """
        now = utcnow()
        envelope = WebhookEnvelope(event=event, timestamp=isoformat(now), data=data)
        payload = envelope.model_dump_json()
        delivery = self.store.create(
            WebhookDelivery(
                id=new_id("whd"),
                event=event.value,
                target_url=target_url,
                payload=payload,
                signature=sign_payload(payload.encode("utf-8"), self.settings.webhook_secret_for(api_key)),
                api_key=api_key,
                status=DeliveryStatus.PENDING,
                attempt_count=0,
                next_attempt_at=now,
                created_at=now,
            )
        )
        logger.info("Queued webhook %s (%s) to %s", delivery.id, event.value, target_url)
        self._schedule(delivery)
        return delivery

    async def resume_pending(self) -> int:
        """Restart delivery tasks for deliveries left pending by a previous process."""
        resumed = 0
        for delivery in self.store.list_deliveries(DeliveryStatus.PENDING, limit=None):
            if delivery.id in self._tasks:
                continue
            delay = 0.0
            if delivery.next_attempt_at is not None:
                delay = max(0.0, (delivery.next_attempt_at - utcnow()).total_seconds())
            self._schedule(delivery, initial_delay=delay)
            resumed += 1
        if resumed:
            logger.info("Resumed %d pending webhook deliveries", resumed)
        return resumed

    async def drain(self) -> None:
        """Wait until every running delivery task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop delivery tasks and close the HTTP client."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _schedule(self, delivery: WebhookDelivery, initial_delay: float = 0.0) -> None:
        task = asyncio.create_task(
            self._deliver(delivery, initial_delay),
            name=f"webhook-{delivery.id}",
        )
        self._tasks[delivery.id] = task
        task.add_done_callback(lambda _t, delivery_id=delivery.id: self._tasks.pop(delivery_id, None))

    async def _deliver(self, delivery: WebhookDelivery, initial_delay: float = 0.0) -> None:
        try:
            await self._deliver_with_retries(delivery, initial_delay)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(
                "Webhook %s (%s) to %s failed permanently on an unexpected error",
                delivery.id,
                delivery.event,
                delivery.target_url,
            )
            self.store.mark_failed(delivery.id, f"{type(e).__name__}: {e}")

    async def _deliver_with_retries(self, delivery: WebhookDelivery, initial_delay: float) -> None:
        max_attempts = self.settings.webhook_max_attempts
        delays = self.settings.webhook_retry_delays
        attempt_number = delivery.attempt_count + 1
        scheduled_at = delivery.next_attempt_at or utcnow()
        delay = initial_delay

        while attempt_number <= max_attempts:
            if delay > 0:
                await self._sleep(delay)

            outcome, status_code, error = await self._attempt(delivery, attempt_number)

            if outcome == AttemptOutcome.SUCCESS:
                self.store.record_attempt(
                    delivery.id,
                    attempt_number,
                    scheduled_at,
                    outcome,
                    status_code=status_code,
                    final_status=DeliveryStatus.SUCCEEDED,
                )
                logger.info(
                    "Webhook %s delivered on attempt %d (HTTP %s)",
                    delivery.id,
                    attempt_number,
                    status_code,
                )
                return

            if attempt_number >= max_attempts:
                self.store.record_attempt(
                    delivery.id,
                    attempt_number,
                    scheduled_at,
                    outcome,
                    status_code=status_code,
                    error=error,
                    final_status=DeliveryStatus.FAILED,
                )
                logger.error(
                    "Webhook %s (%s) to %s failed permanently after %d attempts: %s",
                    delivery.id,
                    delivery.event,
                    delivery.target_url,
                    attempt_number,
                    error,
                )
                return

            delay = delays[attempt_number - 1]
            next_attempt_at = utcnow() + timedelta(seconds=delay)
            self.store.record_attempt(
                delivery.id,
                attempt_number,
                scheduled_at,
                outcome,
                status_code=status_code,
                error=error,
                next_attempt_at=next_attempt_at,
            )
            logger.warning(
                "Webhook %s attempt %d/%d failed (%s), retrying in %.0fs",
                delivery.id,
                attempt_number,
                max_attempts,
                error,
                delay,
            )
            scheduled_at = next_attempt_at
            attempt_number += 1

    async def _attempt(
        self,
        delivery: WebhookDelivery,
        attempt_number: int,
    ) -> tuple[AttemptOutcome, int | None, str | None]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Signature": delivery.signature,
            "X-Webhook-Event": delivery.event,
            "X-Webhook-Delivery-Id": delivery.id,
            "X-Webhook-Timestamp": isoformat(delivery.created_at),
        }
        try:
            response = await self._client.post(
                delivery.target_url,
                content=delivery.payload.encode("utf-8"),
                headers=headers,
            )
        except httpx.TimeoutException:
            return (
                AttemptOutcome.TIMEOUT,
                None,
                f"Timed out after {self.settings.webhook_timeout_seconds:.0f}s",
            )
        except Exception as e:
            return AttemptOutcome.ERROR, None, f"{type(e).__name__}: {e}"

        if 200 <= response.status_code < 300:
            return AttemptOutcome.SUCCESS, response.status_code, None
        return AttemptOutcome.ERROR, response.status_code, f"HTTP {response.status_code}"
