"""
PDF reading service.

Uses pdfplumber for the text layer, tables and image boxes, and
pdf2image (poppler) to render pages for OCR.
"""

import io
import logging
from dataclasses import dataclass, field

import pdfplumber
from pdfminer.pdfdocument import PDFEncryptionError, PDFPasswordIncorrect
from PIL import Image

from ..errors import ExtractionFailure, FailureReason

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"


class PDFConversionError(Exception):
    """Raised when PDF conversion fails."""

    pass


@dataclass
class PageContent:
    """What one page yielded."""

    number: int
    text: str = ""
    tables: list[list[list[str | None]]] = field(default_factory=list)
    image_boxes: list[tuple[float, float, float, float]] = field(default_factory=list)
    ocr: bool = False


def classify_pdf_error(exc: BaseException) -> FailureReason:
    """
    Map a pdfplumber/pdfminer failure onto a failure reason.

    pdfplumber wraps pdfminer errors, so the original is looked for in the
    exception's args and chain as well.
    """
    candidates: list[BaseException] = [exc]
    candidates.extend(a for a in exc.args if isinstance(a, BaseException))
    if exc.__cause__ is not None:
        candidates.append(exc.__cause__)
    if exc.__context__ is not None:
        candidates.append(exc.__context__)

    for candidate in candidates:
        if isinstance(candidate, (PDFPasswordIncorrect, PDFEncryptionError)):
            return FailureReason.PASSWORD_PROTECTED
        if isinstance(candidate, UnicodeDecodeError):
            return FailureReason.UNSUPPORTED_ENCODING
    return FailureReason.CORRUPT_FILE


class PDFService:
    """
    Service for PDF processing operations.

    Uses pdfplumber to read pages and pdf2image (backed by poppler) to
    convert pages to images.
    """

    def __init__(self, dpi: int = 200, image_format: str = "PNG"):
        """
        Initialize the PDF service.

        Args:
            dpi: Resolution for PDF to image conversion. Higher = better quality but slower.
            image_format: Output image format (PNG recommended for quality).
        """
        self.dpi = dpi
        self.image_format = image_format

    def read_pages(
        self,
        pdf_bytes: bytes,
        extract_tables: bool = True,
        extract_images: bool = False,
    ) -> list[PageContent]:
        """
        Read the text layer (and optionally tables and image boxes) of every page.

        Args:
            pdf_bytes: PDF file content.
            extract_tables: Run table detection on each page.
            extract_images: Collect image bounding boxes.

        Returns:
            One PageContent per page, in page order.

        Raises:
            ExtractionFailure: corrupt_file, password_protected or
                unsupported_encoding.
        """
        if not pdf_bytes:
            raise ExtractionFailure(FailureReason.CORRUPT_FILE, "Empty PDF file provided")
        if not pdf_bytes.startswith(PDF_MAGIC):
            raise ExtractionFailure(
                FailureReason.CORRUPT_FILE,
                "Invalid PDF file: does not start with PDF header",
            )

        pages: list[PageContent] = []
        try:
            with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
                for index, page in enumerate(pdf.pages, start=1):
                    content = PageContent(number=index, text=page.extract_text() or "")
                    if extract_tables:
                        content.tables = [t for t in page.extract_tables() if t]
                    if extract_images:
                        content.image_boxes = [
                            (
                                float(img["x0"]),
                                float(img["top"]),
                                float(img["x1"]),
                                float(img["bottom"]),
                            )
                            for img in page.images
                        ]
                    pages.append(content)
        except Exception as e:
            reason = classify_pdf_error(e)
            logger.warning("Could not read PDF (%s): %s", reason.value, e)
            raise ExtractionFailure(reason, f"Could not read PDF: {e}") from e

        if not pages:
            raise ExtractionFailure(FailureReason.CORRUPT_FILE, "PDF contains no pages")

        logger.info(
            "Read %d page(s), %d table(s)",
            len(pages),
            sum(len(p.tables) for p in pages),
        )
        return pages

    def convert_pdf_to_images(
        self,
        pdf_bytes: bytes,
        first_page: int | None = None,
        last_page: int | None = None,
    ) -> list[Image.Image]:
        """
        Convert PDF pages to PIL Images.

        Args:
            pdf_bytes: PDF file content.
            first_page: First page to convert (1-indexed, inclusive). None for first page.
            last_page: Last page to convert (1-indexed, inclusive). None for last page.

        Returns:
            List of PIL Image objects, one per page.

        Raises:
            PDFConversionError: If conversion fails for any reason.
        """
        from pdf2image import convert_from_bytes
        from pdf2image.exceptions import (
            PDFInfoNotInstalledError,
            PDFPageCountError,
            PDFSyntaxError,
        )

        if not pdf_bytes:
            raise PDFConversionError("Empty PDF file provided")

        # Validate PDF magic bytes
        if not pdf_bytes.startswith(PDF_MAGIC):
            raise PDFConversionError(
                "Invalid PDF file: does not start with PDF header"
            )

        try:
            logger.info(
                "Converting PDF to images (dpi=%d, pages=%s-%s)",
                self.dpi,
                first_page or "first",
                last_page or "last",
            )

            images = convert_from_bytes(
                pdf_bytes,
                dpi=self.dpi,
                fmt=self.image_format.lower(),
                first_page=first_page,
                last_page=last_page,
                thread_count=2,  # Parallel processing for multi-page PDFs
            )

            logger.info("Successfully converted %d page(s)", len(images))
            return images

        except PDFInfoNotInstalledError as e:
            logger.error("Poppler not installed: %s", e)
            raise PDFConversionError(
                "Poppler not installed. Install poppler-utils: "
                "brew install poppler (macOS) or apt-get install poppler-utils (Linux)"
            ) from e

        except PDFPageCountError as e:
            logger.error("Could not get PDF page count: %s", e)
            raise PDFConversionError(
                f"Could not determine PDF page count: {e}"
            ) from e

        except PDFSyntaxError as e:
            logger.error("PDF syntax error: %s", e)
            raise PDFConversionError(f"Invalid or corrupted PDF file: {e}") from e

        except Exception as e:
            logger.exception("Unexpected error during PDF conversion")
            raise PDFConversionError(f"PDF conversion failed: {e}") from e
