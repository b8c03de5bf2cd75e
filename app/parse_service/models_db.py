"""
SQLAlchemy database models for the parse service.

This module defines the ORM models for persisting parse jobs, batches
and webhook deliveries.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id(prefix: str) -> str:
    """Generate an opaque identifier such as doc_3f2a..."""
    return f"{prefix}_{uuid.uuid4().hex}"


class JobStatus(enum.Enum):
    """Status of a document in the extraction pipeline."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobMode(enum.Enum):
    """How the submitter waits for the outcome."""

    SYNC = "sync"
    ASYNC = "async"


class SourceKind(enum.Enum):
    UPLOAD = "upload"
    URL = "url"


class BatchStatus(enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"


class DeliveryStatus(enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AttemptOutcome(enum.Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"


class Batch(Base):
    """
    A batch of documents submitted together.

    Counts are never stored here; they are derived from the member jobs.
    """

    __tablename__ = "batches"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("batch"),
    )
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus),
        default=BatchStatus.PROCESSING,
        nullable=False,
        index=True,
    )
    options: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Shared ParseOptions for every member",
    )
    webhook_url: Mapped[str | None] = mapped_column(
        String(2048),
        nullable=True,
    )
    api_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Batch(id={self.id}, status={self.status.value})>"


class DocumentJob(Base):
    """
    A single document's extraction request and its lifecycle state.

    Exactly one of file_content / source_url is set. result is only
    present when completed and the error columns only when failed.
    """

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("doc"),
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus),
        default=JobStatus.PENDING,
        nullable=False,
        index=True,
    )
    mode: Mapped[JobMode] = mapped_column(
        Enum(JobMode),
        default=JobMode.ASYNC,
        nullable=False,
    )
    source_kind: Mapped[SourceKind] = mapped_column(
        Enum(SourceKind),
        nullable=False,
    )
    source_url: Mapped[str | None] = mapped_column(
        String(2048),
        nullable=True,
    )
    filename: Mapped[str | None] = mapped_column(
        String(512),
        nullable=True,
    )
    file_size_bytes: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    file_content: Mapped[bytes | None] = mapped_column(
        LargeBinary,
        nullable=True,
        comment="Uploaded PDF bytes, kept until the job is processed",
    )
    options: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    result: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    error_code: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    error_reason: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    webhook_url: Mapped[str | None] = mapped_column(
        String(2048),
        nullable=True,
    )
    api_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    batch_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    batch_position: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def __repr__(self) -> str:
        return f"<DocumentJob(id={self.id}, status={self.status.value})>"


class WebhookDelivery(Base):
    """
    One event notification pushed to a client URL.

    The id is sent as X-Webhook-Delivery-Id so receivers can deduplicate.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("whd"),
    )
    event: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    target_url: Mapped[str] = mapped_column(
        String(2048),
        nullable=False,
    )
    payload: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Exact JSON body sent on every attempt",
    )
    signature: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    api_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Owner of the job or batch that raised the event",
    )
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus),
        default=DeliveryStatus.PENDING,
        nullable=False,
        index=True,
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<WebhookDelivery(id={self.id}, event='{self.event}', status={self.status.value})>"


class WebhookAttempt(Base):
    """A single POST of a webhook delivery."""

    __tablename__ = "webhook_attempts"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    delivery_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("webhook_deliveries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )
    outcome: Mapped[AttemptOutcome] = mapped_column(
        Enum(AttemptOutcome),
        nullable=False,
    )
    status_code: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<WebhookAttempt(delivery={self.delivery_id}, n={self.attempt_number}, outcome={self.outcome.value})>"
