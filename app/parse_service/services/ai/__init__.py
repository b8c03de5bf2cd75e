"""
AI service package for schema-guided field extraction.

This package provides modular AI functionality split into:
- extraction: Field extraction with confidence scoring, page transcription
- validation: Schema conformance and data normalization

The AIService class owns the OpenAI client and the mock mode used when no
API key is configured.
"""

import logging
from typing import Any

from PIL import Image

from ...models import ArrayField, ExtractionSchema, FormatHint, ObjectField
from .exceptions import AIServiceError
from .extraction import (
    FieldExtraction,
    calculate_confidence_from_logprobs,
    extract_fields as _extract_fields,
    finalize_extraction,
    transcribe_pages as _transcribe_pages,
)
from .validation import (
    ValidationResult,
    conform_to_schema,
    parse_currency,
    parse_date,
    validate_extracted_data,
)

logger = logging.getLogger(__name__)

MOCK_WARNING = "DEVELOPMENT MODE: Using mock data. Set OPENAI_API_KEY for real extraction."

__all__ = [
    "AIService",
    "AIServiceError",
    "FieldExtraction",
    "ValidationResult",
    "calculate_confidence_from_logprobs",
    "conform_to_schema",
    "parse_currency",
    "parse_date",
    "validate_extracted_data",
]


class AIService:
    """
    Service for AI-powered field extraction.

    Uses OpenAI's GPT-4.1 model for:
    - Extracting schema fields from page text with confidence scoring
    - Transcribing scanned pages (vision) when OCR is enabled
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4.1",
        use_mock: bool = False,
    ):
        """
        Initialize the AI service.

        Args:
            api_key: OpenAI API key. Mock mode is used when it is empty.
            model: OpenAI model to use (must support vision for OCR).
            use_mock: If True, return mock data instead of calling OpenAI.
        """
        self.api_key = api_key
        self.model = model
        self.use_mock = use_mock or not self.api_key
        self._client = None

        if self.use_mock:
            logger.warning(
                "AI Service running in MOCK MODE. Set OPENAI_API_KEY in .env for real extraction."
            )

    @property
    def client(self):
        """Lazy-load the OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise AIServiceError(
                    "OpenAI API key not provided. Set OPENAI_API_KEY environment variable."
                )
            from openai import OpenAI

            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def extract_fields(
        self,
        pages: list[str],
        schema: ExtractionSchema | None,
        language: str = "en",
    ) -> FieldExtraction:
        """
        Extract fields from page texts.

        Args:
            pages: Text of each page, in page order.
            schema: Fields to extract, or None for free-form extraction.
            language: Document language hint.

        Returns:
            FieldExtraction with validated data and per-field confidences.
        """
        if self.use_mock:
            logger.info("Extracting fields (MOCK MODE) from %d page(s)", len(pages))
            return self._get_mock_extraction(schema)
        return _extract_fields(pages, schema, client=self.client, model=self.model, language=language)

    def transcribe_pages(self, images: list[Image.Image], language: str = "en") -> list[str]:
        """
        Transcribe rendered pages.

        Args:
            images: One PIL Image per page to transcribe.
            language: Document language hint.

        Returns:
            The text of each page, in order.
        """
        if self.use_mock:
            logger.info("Transcribing %d page(s) (MOCK MODE)", len(images))
            return [f"MOCK OCR TEXT {index}" for index in range(1, len(images) + 1)]
        return _transcribe_pages(images, client=self.client, model=self.model, language=language)

    def _mock_value(self, name: str, spec: Any) -> Any:
        if isinstance(spec, ObjectField):
            return {child: self._mock_value(child, s) for child, s in spec.properties.items()}
        if isinstance(spec, ArrayField):
            return [self._mock_value(name, spec.items)]
        if spec.type == "number":
            return "$1,234.56"
        if spec.type == "integer":
            return 42
        if spec.type == "boolean":
            return True
        if spec.format == FormatHint.DATE:
            return "2024-01-15"
        if spec.format == FormatHint.TIME:
            return "09:30:00"
        if spec.format == FormatHint.DATE_TIME:
            return "2024-01-15T09:30:00"
        if spec.format == FormatHint.EMAIL:
            return "mock@example.com"
        if spec.format == FormatHint.PHONE:
            return "+1-555-123-4567"
        return f"MOCK-{name.upper()}-001"

    def _get_mock_extraction(self, schema: ExtractionSchema | None) -> FieldExtraction:
        """Return mock extraction data for development."""
        if schema is None:
            data: dict[str, Any] = {"document_type": "MOCK-DOCUMENT-001"}
        else:
            data = {name: self._mock_value(name, spec) for name, spec in schema.properties.items()}

        mock = FieldExtraction(
            data=data,
            field_confidences={name: 0.85 for name in data},
            confidence=0.85,
            warnings=[MOCK_WARNING],
        )
        return finalize_extraction(mock, schema)
