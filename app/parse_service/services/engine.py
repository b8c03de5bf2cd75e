"""
Extraction engine: turns PDF bytes and parse options into a ParseResult.

The scheduler only depends on ExtractionEngine.extract(); the default
DocumentExtractionEngine combines PDFService (text layer, tables, images,
page rendering) with AIService (field extraction and OCR).
"""

import logging
from typing import Any

from ..errors import ExtractionFailure, FailureReason
from ..models import (
    ExtractedField,
    ExtractedImage,
    ExtractedTable,
    OutputFormat,
    ParseOptions,
    ParseResult,
)
from .ai import AIService, AIServiceError
from .pdf_service import PageContent, PDFConversionError, PDFService

logger = logging.getLogger(__name__)

# Confidence given to text obtained by transcription instead of a text layer
OCR_PAGE_CONFIDENCE = 0.8


class ExtractionEngine:
    """
    Interface of the extraction engine.

    extract() is synchronous and is run in a worker thread by the
    scheduler. It raises ExtractionFailure for documents that cannot be
    processed; any other exception is treated as an internal error.
    """

    def extract(
        self,
        document: bytes,
        options: ParseOptions,
        filename: str | None = None,
    ) -> ParseResult:
        raise NotImplementedError


def find_value_page(value: Any, pages: list[PageContent]) -> int | None:
    """First page whose text contains the value, for scalar values."""
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    needles = {str(value).strip().lower()}
    if isinstance(value, float):
        needles.add(f"{value:,.2f}".lower())
        needles.add(f"{value:.2f}")
        if value.is_integer():
            needles.add(str(int(value)))
    needles.discard("")
    for page in pages:
        haystack = page.text.lower()
        if any(needle in haystack for needle in needles):
            return page.number
    return None


def _table_to_model(page_number: int, table: list[list[str | None]]) -> ExtractedTable:
    header_row, *body = table
    headers = [(cell or "").strip() for cell in header_row]
    rows = [[cell.strip() if isinstance(cell, str) else cell for cell in row] for row in body]
    return ExtractedTable(page=page_number, headers=headers, rows=rows)


def _escape_cell(value: str | None) -> str:
    return (value or "").replace("|", "\\|").replace("\n", " ")


def render_markdown(pages: list[PageContent], tables: list[ExtractedTable]) -> str:
    """Render page text and detected tables as Markdown."""
    sections: list[str] = []
    for page in pages:
        parts = [f"## Page {page.number}", "", page.text.strip()]
        for table in (t for t in tables if t.page == page.number):
            if not table.headers:
                continue
            parts.append("")
            parts.append("| " + " | ".join(_escape_cell(h) for h in table.headers) + " |")
            parts.append("|" + "---|" * len(table.headers))
            for row in table.rows:
                parts.append("| " + " | ".join(_escape_cell(c) for c in row) + " |")
        sections.append("\n".join(parts).strip())
    return "\n\n".join(sections) + "\n"


class DocumentExtractionEngine(ExtractionEngine):
    """Default engine built on pdfplumber, pdf2image and OpenAI."""

    def __init__(self, pdf_service: PDFService, ai_service: AIService):
        self.pdf_service = pdf_service
        self.ai_service = ai_service

    def extract(
        self,
        document: bytes,
        options: ParseOptions,
        filename: str | None = None,
    ) -> ParseResult:
        """
        Run the pipeline on one document.

        Args:
            document: PDF bytes.
            options: Parse options of the job.
            filename: Original filename, for logging only.

        Returns:
            ParseResult for the document.

        Raises:
            ExtractionFailure: corrupt_file, password_protected,
                unsupported_encoding, no_text_content or internal_error.
        """
        label = filename or "document"
        pages = self.pdf_service.read_pages(
            document,
            extract_tables=options.extract_tables,
            extract_images=options.extract_images,
        )
        warnings: list[str] = []

        if options.ocr_enabled:
            self._ocr_blank_pages(document, pages, options.language, warnings)

        if not any(page.text.strip() for page in pages):
            raise ExtractionFailure(
                FailureReason.NO_TEXT_CONTENT,
                "No text could be extracted from any page"
                + ("" if options.ocr_enabled else " (OCR disabled)"),
            )

        tables = [
            _table_to_model(page.number, table)
            for page in pages
            for table in page.tables
        ]
        images = [
            ExtractedImage(page=page.number, bbox=list(box))
            for page in pages
            for box in page.image_boxes
        ]

        fields: dict[str, ExtractedField] = {}
        if options.output_format != OutputFormat.RAW:
            fields = self._extract_fields(pages, options, warnings)

        if fields:
            confidence = sum(f.confidence for f in fields.values()) / len(fields)
        else:
            text_pages = [p for p in pages if p.text.strip()]
            confidence = sum(OCR_PAGE_CONFIDENCE if p.ocr else 1.0 for p in text_pages) / len(text_pages)

        markdown = None
        if options.output_format == OutputFormat.MARKDOWN:
            markdown = render_markdown(pages, tables)

        logger.info(
            "Extracted '%s': %d page(s), %d field(s), %d table(s), confidence=%.3f",
            label,
            len(pages),
            len(fields),
            len(tables),
            confidence,
        )
        return ParseResult(
            fields=fields,
            tables=tables,
            images=images,
            raw_text="\n\n".join(page.text for page in pages).strip(),
            markdown=markdown,
            page_count=len(pages),
            confidence=confidence,
            warnings=warnings,
        )

    def _ocr_blank_pages(
        self,
        document: bytes,
        pages: list[PageContent],
        language: str,
        warnings: list[str],
    ) -> None:
        blank = [page for page in pages if not page.text.strip()]
        if not blank:
            return

        logger.info("Running OCR on %d page(s) without a text layer", len(blank))
        for page in blank:
            try:
                images = self.pdf_service.convert_pdf_to_images(
                    document, first_page=page.number, last_page=page.number
                )
            except PDFConversionError as e:
                warnings.append(f"OCR skipped for page {page.number}: {e}")
                continue
            try:
                texts = self.ai_service.transcribe_pages(images, language=language)
            except AIServiceError as e:
                raise ExtractionFailure(e.reason, str(e)) from e
            page.text = "\n".join(texts).strip()
            page.ocr = bool(page.text)

    def _extract_fields(
        self,
        pages: list[PageContent],
        options: ParseOptions,
        warnings: list[str],
    ) -> dict[str, ExtractedField]:
        try:
            extraction = self.ai_service.extract_fields(
                [page.text for page in pages],
                options.extraction_schema,
                language=options.language,
            )
        except AIServiceError as e:
            raise ExtractionFailure(e.reason, str(e)) from e

        warnings.extend(extraction.warnings)
        fields: dict[str, ExtractedField] = {}
        for name, value in extraction.data.items():
            confidence = extraction.field_confidences.get(name, extraction.confidence)
            if value is None:
                confidence = 0.0
            fields[name] = ExtractedField(
                value=value,
                confidence=max(0.0, min(1.0, confidence)),
                page=find_value_page(value, pages),
            )
        return fields
