"""
Request body parsing for parse and batch submissions.

A submission arrives as raw application/pdf bytes (options in the query
string), as multipart/form-data, or as JSON with URLs. Every variant is
reduced to JobSource objects plus ParseOptions.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from fastapi import Request
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from ..errors import ErrorCode, ServiceError
from ..models import BatchRequest, ParseOptions, ParseRequest
from ..services.scheduler import JobSource

logger = logging.getLogger(__name__)

OPTION_FIELDS = (
    "extract_tables",
    "extract_images",
    "ocr_enabled",
    "language",
    "output_format",
)
RAW_CONTENT_TYPES = ("application/pdf", "application/octet-stream")
SUPPORTED_CONTENT_TYPES = [*RAW_CONTENT_TYPES, "multipart/form-data", "application/json"]


@dataclass
class ParseSubmission:
    source: JobSource
    options: ParseOptions
    webhook_url: str | None = None


@dataclass
class BatchSubmission:
    sources: list[JobSource]
    options: ParseOptions
    webhook_url: str | None = None


def validation_details(exc: ValidationError) -> dict[str, Any]:
    """Client-safe summary of a pydantic validation error."""
    return {
        "errors": [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
    }


def _validate_model(model: Any, payload: Any, what: str) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ServiceError(
            ErrorCode.INVALID_REQUEST,
            f"Invalid {what}",
            details=validation_details(e),
        ) from e


def options_from_fields(values: Mapping[str, Any]) -> ParseOptions:
    """
    Build options from flat form fields or query parameters.

    schema, and a whole options object, may be passed as JSON strings.
    """
    raw: dict[str, Any] = {}
    packed = values.get("options")
    if packed:
        raw.update(_load_json(packed, "options"))
    for name in OPTION_FIELDS:
        value = values.get(name)
        if value not in (None, ""):
            raw[name] = value
    schema = values.get("schema")
    if schema:
        raw["schema"] = _load_json(schema, "schema")
    return _validate_model(ParseOptions, raw, "options")


def _load_json(value: Any, field: str) -> Any:
    if not isinstance(value, str):
        raise ServiceError(ErrorCode.INVALID_REQUEST, f"'{field}' must be a JSON string")
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ServiceError(
            ErrorCode.INVALID_REQUEST,
            f"'{field}' is not valid JSON: {e.msg}",
            details={"field": field},
        ) from e


def _content_type(request: Request) -> str:
    return request.headers.get("content-type", "").split(";")[0].strip().lower()


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise ServiceError(ErrorCode.INVALID_REQUEST, "Request body is not valid JSON") from e


def _unsupported(content_type: str) -> ServiceError:
    return ServiceError(
        ErrorCode.INVALID_REQUEST,
        f"Unsupported content type '{content_type or 'none'}'",
        details={"supported_content_types": SUPPORTED_CONTENT_TYPES},
    )


async def _read_upload(upload: UploadFile) -> JobSource:
    try:
        content = await upload.read()
    finally:
        await upload.close()
    return JobSource(content=content, filename=upload.filename)


async def read_parse_submission(request: Request) -> ParseSubmission:
    """Parse a single document submission."""
    content_type = _content_type(request)

    if content_type in RAW_CONTENT_TYPES:
        body = await request.body()
        params = request.query_params
        return ParseSubmission(
            source=JobSource(content=body, filename=params.get("filename")),
            options=options_from_fields(params),
            webhook_url=params.get("webhook_url"),
        )

    if content_type == "multipart/form-data":
        form = await request.form()
        upload = form.get("file")
        url = form.get("url") or None
        source = JobSource(url=url if isinstance(url, str) else None)
        if isinstance(upload, UploadFile):
            uploaded = await _read_upload(upload)
            source.content = uploaded.content
            source.filename = uploaded.filename
        return ParseSubmission(
            source=source,
            options=options_from_fields(form),
            webhook_url=form.get("webhook_url") or None,
        )

    if content_type in ("application/json", ""):
        body = _validate_model(ParseRequest, await _read_json(request), "request body")
        return ParseSubmission(
            source=JobSource(url=body.url),
            options=body.options,
            webhook_url=body.webhook_url,
        )

    raise _unsupported(content_type)


async def read_batch_submission(request: Request) -> BatchSubmission:
    """Parse a batch submission: JSON urls or multipart files (and urls)."""
    content_type = _content_type(request)

    if content_type == "multipart/form-data":
        form = await request.form()
        sources: list[JobSource] = []
        for upload in form.getlist("files"):
            if isinstance(upload, UploadFile):
                sources.append(await _read_upload(upload))
        for url in form.getlist("urls"):
            if isinstance(url, str) and url:
                sources.append(JobSource(url=url))
        logger.info("Batch submission with %d document(s)", len(sources))
        return BatchSubmission(
            sources=sources,
            options=options_from_fields(form),
            webhook_url=form.get("webhook_url") or None,
        )

    if content_type in ("application/json", ""):
        body = _validate_model(BatchRequest, await _read_json(request), "request body")
        return BatchSubmission(
            sources=[JobSource(url=url) for url in body.urls],
            options=body.options,
            webhook_url=body.webhook_url,
        )

    raise _unsupported(content_type)
