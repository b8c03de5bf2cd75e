"""
Routers package for FastAPI endpoints.

Organized by domain:
- parse: Sync and async document submission
- documents: Job status and cancellation
- batches: Batch submission and status
- webhooks: Webhook delivery inspection
"""

from . import batches, documents, parse, webhooks

__all__ = ["batches", "documents", "parse", "webhooks"]
