"""
Field extraction from document text with per-field confidence scoring.

Uses OpenAI GPT-4.1 on the page text layer, chunked processing for large
documents, and vision transcription for pages that have no text layer.
"""

import base64
import io
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from PIL import Image

from ...models import ArrayField, ExtractionSchema, ObjectField, ScalarField
from .exceptions import AIServiceError
from .validation import _clean_null_from_arrays, validate_extracted_data

logger = logging.getLogger(__name__)

SINGLE_REQUEST_MAX_PAGES = 10
CHUNK_SIZE = 5


@dataclass
class FieldExtraction:
    """Values and confidences produced for one document."""

    data: dict[str, Any] = field(default_factory=dict)
    field_confidences: dict[str, float] = field(default_factory=dict)
    confidence: float = 0.0
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Prompts
# =============================================================================

EXTRACTION_SYSTEM_PROMPT = """You are a precise Data Entry Clerk with exceptional attention to detail.
Your task is to extract specific data fields from the text of a document AND estimate your confidence for each field.

## Extraction Rules:

1. **Strict Adherence**: Only extract the fields specified. Do not add extra fields.
2. **Accuracy Over Guessing**: If a value is unclear or not present, return null. DO NOT HALLUCINATE.
3. **Preserve Original Format**: Keep dates, currencies, and numbers as they appear in the document.
4. **No Assumptions**: Do not infer or calculate values unless explicitly stated in the document.

## Critical: Headers and Footers
Pay special attention to the first and last lines of each page for:
- Organization Names
- Addresses
- Contact Information (phone, email, etc.)

## Confidence Scoring:
For EVERY top-level field you extract, provide a confidence score (0.0 to 1.0):
- 1.0: Perfectly clear, no ambiguity
- 0.8-0.99: Very confident, minor formatting uncertainty
- 0.5-0.79: Somewhat confident, value partially legible or slightly unclear
- 0.1-0.49: Low confidence, significant uncertainty or guessing
- 0.0: Field not found, returning null

## Important Guidelines:
- For currency fields: Include the currency symbol if visible (e.g., "$1,234.56")
- For dates: Transcribe as shown, the system will normalize
- For empty/missing fields: Return null with confidence 0.0
- For nested objects and lists: follow the declared structure exactly

Return data in the EXACT JSON format specified in the user prompt."""

FREEFORM_SYSTEM_PROMPT = """You are a precise Data Entry Clerk.
Read the text of a document and extract its key facts as flat name/value pairs
(identifiers, parties, dates, amounts, totals). Use lower snake_case names.
Only report values that appear in the text. Provide a confidence score
(0.0 to 1.0) for every value. Return JSON in the format given in the user prompt."""

TRANSCRIPTION_SYSTEM_PROMPT = """You are an OCR engine.
Transcribe all text visible in the page image exactly as written, preserving
line breaks and reading order. Do not summarize, translate or comment.
If the page contains no text, return an empty string."""

RESPONSE_FORMAT_TEXT = """## Response Format (MUST follow this exact structure):
Return a JSON object with TWO keys:
1. `extracted_data`: Object with the field values
2. `field_confidences`: Object with confidence scores (0.0-1.0) for each top-level field"""


# =============================================================================
# Helper Functions
# =============================================================================


def _image_to_base64(image: Image.Image) -> str:
    """Convert PIL Image to base64 string for API."""
    buffer = io.BytesIO()
    # Resize if too large (max 2048px on longest side for efficiency)
    max_size = 2048
    if max(image.size) > max_size:
        ratio = max_size / max(image.size)
        new_size = (int(image.size[0] * ratio), int(image.size[1] * ratio))
        image = image.resize(new_size, Image.Resampling.LANCZOS)

    image.save(buffer, format="PNG", optimize=True)
    buffer.seek(0)
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def calculate_confidence_from_logprobs(logprobs_data: list[Any] | None) -> float:
    """
    Calculate confidence score from logprobs using geometric mean.

    The geometric mean of probabilities gives a balanced measure of
    overall extraction confidence.

    Args:
        logprobs_data: List of token logprob objects from OpenAI.

    Returns:
        Confidence score between 0.0 and 1.0.
    """
    if not logprobs_data:
        return 0.75  # Default confidence if no logprobs

    log_probs = []
    for token_data in logprobs_data:
        if hasattr(token_data, "logprob") and token_data.logprob is not None:
            log_probs.append(token_data.logprob)

    if not log_probs:
        return 0.75

    # Geometric mean = exp(mean(logprob))
    avg_logprob = sum(log_probs) / len(log_probs)

    # Clamp to avoid underflow
    avg_logprob = max(avg_logprob, -10)

    confidence = math.exp(avg_logprob)
    return max(0.0, min(1.0, confidence))


def _describe_field(name: str, spec: Any, indent: int = 0) -> list[str]:
    """Render one descriptor, and its children, as prompt lines."""
    pad = "  " * indent
    required_marker = " (REQUIRED)" if spec.required else " (optional)"
    description = f": {spec.description}" if spec.description else ""

    if isinstance(spec, ScalarField):
        type_label = spec.type
        if spec.format is not None:
            type_label = f"{spec.type}, format {spec.format.value}"
        return [f"{pad}- **{name}** ({type_label}){required_marker}{description}"]

    if isinstance(spec, ObjectField):
        lines = [f"{pad}- **{name}** (object){required_marker}{description}"]
        for child_name, child in spec.properties.items():
            lines.extend(_describe_field(child_name, child, indent + 1))
        return lines

    if isinstance(spec, ArrayField):
        lines = [f"{pad}- **{name}** (array, list EVERY entry){required_marker}{description}"]
        lines.extend(_describe_field("each item", spec.items, indent + 1))
        return lines

    raise AIServiceError(f"Unsupported field descriptor for '{name}'")


def _build_extraction_prompt(schema: ExtractionSchema, document_text: str, language: str = "en") -> str:
    """Build the extraction prompt from the schema and the document text."""
    field_lines: list[str] = []
    array_fields: list[str] = []
    for name, spec in schema.properties.items():
        field_lines.extend(_describe_field(name, spec))
        if isinstance(spec, ArrayField):
            array_fields.append(name)

    array_instructions = ""
    if array_fields:
        array_instructions = f"""

## CRITICAL: Array Field Extraction
The following fields are ARRAY types (tables/lists): {', '.join(array_fields)}
- You MUST extract EVERY row in the table/list, not just the first one
- Return a JSON array where each element follows the declared item structure"""

    field_names = list(schema.properties)
    context = f"\n## Schema Context:\n{schema.description}\n" if schema.description else ""

    return f"""Extract the following fields from the document text below.
The document language is '{language}'.
{context}
## Fields to Extract:
{chr(10).join(field_lines)}{array_instructions}

{RESPONSE_FORMAT_TEXT}

For any field that cannot be found or is unclear, set its value to null with confidence 0.0.
Do not add any fields that are not in the list above.

Field names to extract: {json.dumps(field_names)}

## Document Text:
{document_text}"""


def _build_freeform_prompt(document_text: str, language: str = "en") -> str:
    return f"""Extract the key facts of the document text below.
The document language is '{language}'.

{RESPONSE_FORMAT_TEXT}

## Document Text:
{document_text}"""


def _join_pages(pages: list[str], first_page: int) -> str:
    return "\n\n".join(
        f"--- Page {number} ---\n{text}"
        for number, text in enumerate(pages, start=first_page)
    )


# =============================================================================
# Extraction
# =============================================================================


def _extract_from_text(
    document_text: str,
    schema: ExtractionSchema | None,
    client: Any,  # OpenAI client
    model: str,
    language: str,
) -> FieldExtraction:
    """Run one extraction request. The returned data is not yet validated."""
    if schema is not None:
        system_prompt = EXTRACTION_SYSTEM_PROMPT
        user_prompt = _build_extraction_prompt(schema, document_text, language)
    else:
        system_prompt = FREEFORM_SYSTEM_PROMPT
        user_prompt = _build_freeform_prompt(document_text, language)

    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            logprobs=True,
            top_logprobs=1,
        )

        content = response.choices[0].message.content
        if not content:
            raise AIServiceError("Empty response from OpenAI")

        try:
            response_data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse extraction response: %s", content[:500])
            raise AIServiceError(f"Invalid JSON in extraction response: {e}") from e

        if "extracted_data" in response_data:
            extracted_data = response_data.get("extracted_data") or {}
            raw_confidences = response_data.get("field_confidences") or {}
        else:
            # Model answered with the bare data object
            extracted_data = response_data
            raw_confidences = {}

        field_confidences = {
            str(k).strip().lower(): max(0.0, min(1.0, float(v)))
            for k, v in raw_confidences.items()
            if isinstance(v, (int, float)) and not isinstance(v, bool)
        }

        if field_confidences:
            confidence = round(sum(field_confidences.values()) / len(field_confidences), 3)
        else:
            logprobs_data = None
            if response.choices[0].logprobs and response.choices[0].logprobs.content:
                logprobs_data = response.choices[0].logprobs.content
            confidence = calculate_confidence_from_logprobs(logprobs_data)
            logger.warning("Field confidences not available, using logprobs-based confidence")

        return FieldExtraction(
            data=_clean_null_from_arrays(extracted_data) if isinstance(extracted_data, dict) else {},
            field_confidences=field_confidences,
            confidence=confidence,
        )

    except AIServiceError:
        raise
    except Exception as e:
        logger.exception("Field extraction failed")
        raise AIServiceError(f"Field extraction failed: {e}") from e


def _merge_extractions(
    results: list[FieldExtraction],
    schema: ExtractionSchema | None,
) -> FieldExtraction:
    """Merge chunk results: arrays are appended, the first non-null scalar wins."""
    if not results:
        raise AIServiceError("No results to merge")
    if len(results) == 1:
        return results[0]

    array_fields = set()
    if schema is not None:
        array_fields = {
            name for name, spec in schema.properties.items() if isinstance(spec, ArrayField)
        }

    merged_data: dict[str, Any] = {}
    merged_confidences: dict[str, list[float]] = {}
    for result in results:
        for name, conf in result.field_confidences.items():
            merged_confidences.setdefault(name, []).append(conf)

        for name, value in result.data.items():
            key = str(name).strip().lower()
            if key in array_fields or isinstance(value, list):
                items = value if isinstance(value, list) else [value]
                existing = merged_data.get(key)
                if isinstance(existing, list):
                    existing.extend(items)
                elif existing in (None, ""):
                    merged_data[key] = list(items)
                else:
                    merged_data[key] = [existing] + list(items)
            elif value is not None and value != "":
                if merged_data.get(key) in (None, ""):
                    merged_data[key] = value

    field_confidences = {
        name: sum(values) / len(values) for name, values in merged_confidences.items() if values
    }
    confidence = round(sum(r.confidence for r in results) / len(results), 3)

    logger.info(
        "Merged %d extraction results: %d fields, confidence=%.3f",
        len(results),
        len(merged_data),
        confidence,
    )
    return FieldExtraction(
        data=_clean_null_from_arrays(merged_data),
        field_confidences=field_confidences,
        confidence=confidence,
    )


def finalize_extraction(
    extraction: FieldExtraction,
    schema: ExtractionSchema | None,
) -> FieldExtraction:
    """
    Validate merged data once against the schema.

    Field confidences are narrowed to the declared fields; a declared field
    without a reported confidence gets 0.0 when it is null.
    """
    if schema is None:
        return extraction

    validation = validate_extracted_data(extraction.data, schema)
    field_confidences: dict[str, float] = {}
    for name in schema.properties:
        value = validation.validated_data.get(name)
        if name in extraction.field_confidences:
            field_confidences[name] = extraction.field_confidences[name]
        else:
            field_confidences[name] = 0.0 if value is None else extraction.confidence

    return FieldExtraction(
        data=validation.validated_data,
        field_confidences=field_confidences,
        confidence=extraction.confidence,
        warnings=extraction.warnings + validation.warnings,
    )


def extract_fields(
    pages: list[str],
    schema: ExtractionSchema | None,
    client: Any,  # OpenAI client
    model: str = "gpt-4.1",
    language: str = "en",
) -> FieldExtraction:
    """
    Extract fields from page texts according to a schema.

    Without a schema the model reports the document's key facts free-form.
    Documents over 10 pages are processed in chunks of 5 and merged before
    validation.

    Args:
        pages: Text of each page, in page order.
        schema: Fields to extract, or None for free-form extraction.
        client: OpenAI client instance.
        model: Model name to use.
        language: Document language hint.

    Returns:
        FieldExtraction with validated data and per-field confidences.

    Raises:
        AIServiceError: If the model call fails or returns unusable output.
    """
    total_pages = len(pages)
    logger.info(
        "Extracting %s from %d page(s)",
        f"{len(schema.properties)} field(s)" if schema else "free-form fields",
        total_pages,
    )

    if total_pages <= SINGLE_REQUEST_MAX_PAGES:
        raw = _extract_from_text(_join_pages(pages, 1), schema, client, model, language)
        return finalize_extraction(raw, schema)

    logger.info("Large document (%d pages): processing in chunks of %d", total_pages, CHUNK_SIZE)
    results: list[FieldExtraction] = []
    total_chunks = (total_pages + CHUNK_SIZE - 1) // CHUNK_SIZE
    for i in range(0, total_pages, CHUNK_SIZE):
        chunk = pages[i:i + CHUNK_SIZE]
        logger.info("Processing chunk %d/%d (%d pages)", i // CHUNK_SIZE + 1, total_chunks, len(chunk))
        results.append(
            _extract_from_text(_join_pages(chunk, i + 1), schema, client, model, language)
        )
    return finalize_extraction(_merge_extractions(results, schema), schema)


def transcribe_pages(
    images: list[Image.Image],
    client: Any,  # OpenAI client
    model: str = "gpt-4.1",
    language: str = "en",
) -> list[str]:
    """
    Transcribe the text of rendered pages with the vision model.

    Returns one string per image, in order.
    """
    texts: list[str] = []
    for index, image in enumerate(images, start=1):
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": TRANSCRIPTION_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": f"Transcribe this page. Language hint: '{language}'."},
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": f"data:image/png;base64,{_image_to_base64(image)}",
                                    "detail": "high",
                                },
                            },
                        ],
                    },
                ],
            )
        except Exception as e:
            logger.exception("Page transcription failed")
            raise AIServiceError(f"Page transcription failed: {e}") from e

        text = response.choices[0].message.content or ""
        logger.info("Transcribed image %d (%d chars)", index, len(text))
        texts.append(text.strip())
    return texts
