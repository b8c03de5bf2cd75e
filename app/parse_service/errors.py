"""
Error taxonomy for the parse service.

Every failure the service reports carries a stable machine-readable code
from ErrorCode. Extraction-time failures additionally carry a
FailureReason that is recorded on the failed job.
"""

from enum import Enum
from typing import Any

from fastapi import status


class ErrorCode(str, Enum):
    """Stable error codes exposed to clients."""

    INVALID_REQUEST = "invalid_request"
    INVALID_FILE_FORMAT = "invalid_file_format"
    FILE_TOO_LARGE = "file_too_large"
    INVALID_URL = "invalid_url"
    AUTHENTICATION_FAILED = "authentication_failed"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    PROCESSING_FAILED = "processing_failed"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"


class FailureReason(str, Enum):
    """Sub-reasons for processing_failed."""

    CORRUPT_FILE = "corrupt_file"
    PASSWORD_PROTECTED = "password_protected"
    NO_TEXT_CONTENT = "no_text_content"
    UNSUPPORTED_ENCODING = "unsupported_encoding"
    INTERNAL_ERROR = "internal_error"
    CANCELLED = "cancelled"


HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_FILE_FORMAT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.FILE_TOO_LARGE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_URL: status.HTTP_400_BAD_REQUEST,
    ErrorCode.AUTHENTICATION_FAILED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.PROCESSING_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCode.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ServiceError(Exception):
    """
    Raised for any failure reported to a client.

    Attributes:
        code: Taxonomy code, drives the HTTP status.
        message: Human readable description.
        details: Structured context (retry hints, limits). Never internals.
        headers: Extra response headers (rate limit state).
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        self.headers = headers or {}

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_CODE[self.code]

    def to_envelope(self) -> dict[str, Any]:
        """Render the uniform error envelope."""
        body: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}

    def __repr__(self) -> str:
        return f"<ServiceError(code={self.code.value}, message='{self.message}')>"


class ExtractionFailure(Exception):
    """Raised by the extraction engine when a document cannot be processed."""

    def __init__(self, reason: FailureReason, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message
