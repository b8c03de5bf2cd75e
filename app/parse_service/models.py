"""
Pydantic models for the parse service.

Defines strict types for extraction schemas, parse options, extraction
results, and the request/response bodies of the HTTP API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .models_db import Batch, DocumentJob, WebhookAttempt, WebhookDelivery

MAX_SCHEMA_DEPTH = 10


def isoformat(value: datetime | None) -> str | None:
    """Render a stored naive UTC timestamp."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


# =============================================================================
# Extraction Schema Models
# =============================================================================


class FieldType(str, Enum):
    """Semantic types a schema field can declare."""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class FormatHint(str, Enum):
    """Optional format hints for string fields."""

    DATE = "date"
    TIME = "time"
    DATE_TIME = "date-time"
    EMAIL = "email"
    PHONE = "phone"


def normalize_field_name(name: str) -> str:
    """Ensure a field name is a valid identifier and normalise it to snake case."""
    if not name or len(name) > 100:
        raise ValueError("Field names must be between 1 and 100 characters")
    if not name.replace("_", "").replace("-", "").isalnum():
        raise ValueError(
            f"Field name '{name}' must contain only alphanumeric characters, underscores, or hyphens"
        )
    return name.lower().replace("-", "_")


def normalize_properties(properties: dict[str, Any]) -> dict[str, Any]:
    """Normalise property names, rejecting names that collide afterwards."""
    normalized: dict[str, Any] = {}
    for name, spec in properties.items():
        key = normalize_field_name(name)
        if key in normalized:
            raise ValueError(f"Duplicate field name '{key}' within one schema level")
        normalized[key] = spec
    return normalized


class ScalarField(BaseModel):
    """A leaf value: string, number, integer or boolean."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["string", "number", "integer", "boolean"]
    format: FormatHint | None = Field(
        default=None,
        description="Format hint for string values",
    )
    description: str | None = Field(
        default=None,
        max_length=500,
        description="Description to steer extraction",
    )
    required: bool = False

    @model_validator(mode="after")
    def check_format_applies(self) -> "ScalarField":
        if self.format is not None and self.type != "string":
            raise ValueError("Format hints only apply to string fields")
        return self


class ArrayField(BaseModel):
    """A list whose items all follow one descriptor."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["array"]
    items: "FieldSpec"
    description: str | None = Field(default=None, max_length=500)
    required: bool = False


class ObjectField(BaseModel):
    """A nested object with its own ordered properties."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["object"]
    properties: dict[str, "FieldSpec"] = Field(default_factory=dict)
    description: str | None = Field(default=None, max_length=500)
    required: bool = False

    @field_validator("properties", mode="before")
    @classmethod
    def validate_property_names(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return normalize_properties(v)
        return v


FieldSpec = Annotated[
    Union[ScalarField, ArrayField, ObjectField],
    Field(discriminator="type"),
]

ArrayField.model_rebuild()
ObjectField.model_rebuild()


def ensure_finite_tree(
    properties: dict[str, Any],
    _ancestors: frozenset[int] | None = None,
    _depth: int = 1,
) -> None:
    """
    Verify that a schema is a finite tree.

    Raises:
        ValueError: if a descriptor appears inside itself or nesting
            exceeds MAX_SCHEMA_DEPTH.
    """
    if _ancestors is None:
        _ancestors = frozenset()
    if _depth > MAX_SCHEMA_DEPTH:
        raise ValueError(f"Schema nesting exceeds {MAX_SCHEMA_DEPTH} levels")

    for name, spec in properties.items():
        if id(spec) in _ancestors:
            raise ValueError(f"Schema cycle detected at field '{name}'")
        if isinstance(spec, ObjectField):
            children = spec.properties
        elif isinstance(spec, ArrayField):
            children = {f"{name}[]": spec.items}
        else:
            continue
        ensure_finite_tree(children, _ancestors | {id(spec)}, _depth + 1)


class ExtractionSchema(BaseModel):
    """
    Client-declared tree of the fields to extract.

    Accepts either {"type": "object", "properties": {...}} or a bare
    mapping of field name to descriptor.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["object"] = "object"
    properties: dict[str, FieldSpec] = Field(..., min_length=1)
    description: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="before")
    @classmethod
    def accept_bare_mapping(cls, data: Any) -> Any:
        if isinstance(data, dict) and "properties" not in data:
            return {"properties": data}
        return data

    @field_validator("properties", mode="before")
    @classmethod
    def validate_property_names(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return normalize_properties(v)
        return v

    @model_validator(mode="after")
    def check_finite_tree(self) -> "ExtractionSchema":
        ensure_finite_tree(self.properties)
        return self


# =============================================================================
# Parse Options
# =============================================================================


class OutputFormat(str, Enum):
    STRUCTURED = "structured"
    RAW = "raw"
    MARKDOWN = "markdown"


class ParseOptions(BaseModel):
    """Extraction configuration shared by single jobs and batches."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    extract_tables: bool = True
    extract_images: bool = False
    ocr_enabled: bool = True
    language: str = Field(default="en", min_length=2, max_length=16)
    output_format: OutputFormat = OutputFormat.STRUCTURED
    extraction_schema: ExtractionSchema | None = Field(
        default=None,
        alias="schema",
        description="Optional extraction schema; omitted means free-form extraction",
    )

    def to_record(self) -> dict[str, Any]:
        """Serialise for storage on a job row."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Extraction Result Models
# =============================================================================


class ExtractedField(BaseModel):
    """A single extracted value with its confidence and provenance."""

    value: Any = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    page: int | None = Field(
        default=None,
        ge=1,
        description="First page the value was found on",
    )

    @field_validator("confidence")
    @classmethod
    def round_confidence(cls, v: float) -> float:
        """Round confidence to 3 decimal places."""
        return round(v, 3)


class ExtractedTable(BaseModel):
    page: int = Field(..., ge=1)
    headers: list[str] = Field(default_factory=list)
    rows: list[list[str | None]] = Field(default_factory=list)


class ExtractedImage(BaseModel):
    page: int = Field(..., ge=1)
    bbox: list[float] = Field(
        ...,
        min_length=4,
        max_length=4,
        description="x0, top, x1, bottom in PDF points",
    )


class ParseResult(BaseModel):
    """Complete result of one document extraction."""

    fields: dict[str, ExtractedField] = Field(default_factory=dict)
    tables: list[ExtractedTable] = Field(default_factory=list)
    images: list[ExtractedImage] = Field(default_factory=list)
    raw_text: str = ""
    markdown: str | None = None
    page_count: int = Field(default=0, ge=0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    warnings: list[str] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def round_confidence(cls, v: float) -> float:
        """Round confidence to 3 decimal places."""
        return round(v, 3)


# =============================================================================
# Request Models
# =============================================================================


class ParseRequest(BaseModel):
    """JSON body for URL based parse requests."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    options: ParseOptions = Field(default_factory=ParseOptions)
    webhook_url: str | None = None


class BatchRequest(BaseModel):
    """JSON body for URL based batch requests."""

    model_config = ConfigDict(extra="forbid")

    urls: list[str] = Field(..., min_length=1)
    options: ParseOptions = Field(default_factory=ParseOptions)
    webhook_url: str | None = None


# =============================================================================
# Response Models
# =============================================================================


class JobError(BaseModel):
    code: str
    message: str
    reason: str | None = None


class JobResponse(BaseModel):
    """Full document job record."""

    id: str
    status: str
    created_at: str
    completed_at: str | None = None
    filename: str | None = None
    source_url: str | None = None
    batch_id: str | None = None
    result: ParseResult | None = None
    error: JobError | None = None

    @classmethod
    def from_record(cls, job: DocumentJob) -> "JobResponse":
        error = None
        if job.error_code:
            error = JobError(
                code=job.error_code,
                message=job.error_message or "",
                reason=job.error_reason,
            )
        return cls(
            id=job.id,
            status=job.status.value,
            created_at=isoformat(job.created_at),
            completed_at=isoformat(job.completed_at),
            filename=job.filename,
            source_url=job.source_url,
            batch_id=job.batch_id,
            result=ParseResult.model_validate(job.result) if job.result else None,
            error=error,
        )

    def to_payload(self) -> dict[str, Any]:
        """
        JSON body for responses and webhooks.

        result and error are omitted unless present; completed_at stays
        null until the job is terminal.
        """
        payload = self.model_dump(mode="json")
        for key in ("result", "error", "filename", "source_url", "batch_id"):
            if payload.get(key) is None:
                payload.pop(key, None)
        return payload


class AsyncJobResponse(BaseModel):
    id: str
    status: str
    created_at: str


class BatchDocumentSummary(BaseModel):
    id: str
    status: str
    filename: str | None = None
    source_url: str | None = None
    error: JobError | None = None

    @classmethod
    def from_record(cls, job: DocumentJob) -> "BatchDocumentSummary":
        error = None
        if job.error_code:
            error = JobError(
                code=job.error_code,
                message=job.error_message or "",
                reason=job.error_reason,
            )
        return cls(
            id=job.id,
            status=job.status.value,
            filename=job.filename,
            source_url=job.source_url,
            error=error,
        )


class BatchSubmitResponse(BaseModel):
    batch_id: str
    status: str
    total: int = Field(..., ge=0)
    documents: list[BatchDocumentSummary] = Field(default_factory=list)


class BatchResponse(BaseModel):
    """Batch record with derived counts and members in submission order."""

    batch_id: str
    status: str
    created_at: str
    completed_at: str | None = None
    total: int = Field(..., ge=0)
    succeeded: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    processing: int = Field(..., ge=0)
    documents: list[BatchDocumentSummary] = Field(default_factory=list)

    @classmethod
    def from_records(
        cls,
        batch: Batch,
        counts: Any,
        members: list[DocumentJob],
    ) -> "BatchResponse":
        return cls(
            batch_id=batch.id,
            status=batch.status.value,
            created_at=isoformat(batch.created_at),
            completed_at=isoformat(batch.completed_at),
            total=counts.total,
            succeeded=counts.succeeded,
            failed=counts.failed,
            pending=counts.pending,
            processing=counts.processing,
            documents=[BatchDocumentSummary.from_record(job) for job in members],
        )


class BatchProgress(BaseModel):
    """Data of a batch.progress event."""

    batch_id: str
    total: int
    completed: int
    pending: int
    succeeded: int
    failed: int


class WebhookEvent(str, Enum):
    DOCUMENT_COMPLETED = "document.completed"
    DOCUMENT_FAILED = "document.failed"
    BATCH_COMPLETED = "batch.completed"
    BATCH_PROGRESS = "batch.progress"


class WebhookEnvelope(BaseModel):
    event: WebhookEvent
    timestamp: str
    data: dict[str, Any]


class WebhookAttemptResponse(BaseModel):
    attempt_number: int
    scheduled_at: str
    attempted_at: str
    outcome: str
    status_code: int | None = None
    error: str | None = None

    @classmethod
    def from_record(cls, attempt: WebhookAttempt) -> "WebhookAttemptResponse":
        return cls(
            attempt_number=attempt.attempt_number,
            scheduled_at=isoformat(attempt.scheduled_at),
            attempted_at=isoformat(attempt.attempted_at),
            outcome=attempt.outcome.value,
            status_code=attempt.status_code,
            error=attempt.error,
        )


class WebhookDeliveryResponse(BaseModel):
    id: str
    event: str
    target_url: str
    status: str
    attempt_count: int
    next_attempt_at: str | None = None
    last_error: str | None = None
    created_at: str
    completed_at: str | None = None
    attempts: list[WebhookAttemptResponse] = Field(default_factory=list)

    @classmethod
    def from_record(
        cls,
        delivery: WebhookDelivery,
        attempts: list[WebhookAttempt] | None = None,
    ) -> "WebhookDeliveryResponse":
        return cls(
            id=delivery.id,
            event=delivery.event,
            target_url=delivery.target_url,
            status=delivery.status.value,
            attempt_count=delivery.attempt_count,
            next_attempt_at=isoformat(delivery.next_attempt_at),
            last_error=delivery.last_error,
            created_at=isoformat(delivery.created_at),
            completed_at=isoformat(delivery.completed_at),
            attempts=[WebhookAttemptResponse.from_record(a) for a in attempts or []],
        )


class WebhookDeliveryListResponse(BaseModel):
    deliveries: list[WebhookDeliveryResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(default="healthy")
    message: str = Field(default="")
    version: str = Field(default="1.0.0")


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Uniform error envelope."""

    error: ErrorBody
