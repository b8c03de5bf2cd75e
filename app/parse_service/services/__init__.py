"""
Services package for the parse service.

Contains:
- store: Job, batch and webhook delivery persistence
- scheduler: Parse job queue and worker pool
- batches: Batch creation and aggregation
- webhooks: Signed webhook delivery with retries
- rate_limiter: API key admission control
- engine: Extraction engine (pdf_service + ai)
"""

from .ai import AIService
from .batches import BatchCoordinator
from .engine import DocumentExtractionEngine, ExtractionEngine
from .pdf_service import PDFService
from .rate_limiter import FixedWindowRateLimiter, RateLimitDecision
from .scheduler import JobSource, ParseJobScheduler
from .store import BatchCounts, DeliveryStore, JobStore
from .webhooks import WebhookDispatcher, sign_payload, verify_signature

__all__ = [
    "AIService",
    "BatchCoordinator",
    "BatchCounts",
    "DeliveryStore",
    "DocumentExtractionEngine",
    "ExtractionEngine",
    "FixedWindowRateLimiter",
    "JobSource",
    "JobStore",
    "PDFService",
    "ParseJobScheduler",
    "RateLimitDecision",
    "WebhookDispatcher",
    "sign_payload",
    "verify_signature",
]
