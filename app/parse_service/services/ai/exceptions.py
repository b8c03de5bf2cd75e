"""
Shared exceptions for AI service modules.
"""

from ...errors import FailureReason


class AIServiceError(Exception):
    """Raised when a model call fails or returns unusable output."""

    def __init__(self, message: str, reason: FailureReason = FailureReason.INTERNAL_ERROR):
        super().__init__(message)
        self.reason = reason
