"""
Validation and data normalization utilities for extracted data.

Handles:
- Shape conformance to the extraction schema (missing fields become null)
- Type coercion (numbers, integers, booleans, dates, emails, phones)
- Data cleaning (null removal from arrays)
"""

import logging
import re
from datetime import datetime
from typing import Any

from dateutil import parser as date_parser
from price_parser import Price

from ...models import (
    ArrayField,
    ExtractionSchema,
    FormatHint,
    ObjectField,
    ScalarField,
)

logger = logging.getLogger(__name__)

_TRUE_STRINGS = ("true", "yes", "y", "1", "on", "checked", "x")
_FALSE_STRINGS = ("false", "no", "n", "0", "off", "unchecked")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ValidationResult:
    """Result of data validation."""

    def __init__(self):
        self.validated_data: dict[str, Any] = {}
        self.warnings: list[str] = []


def parse_currency(value: Any) -> float | None:
    """
    Parse a currency or number string to float using price-parser.

    Handles all international formats automatically:
    - "$1,234.56", "€1.234,56", "1000 USD", "£500.00"
    - "1.000,00 €" (European), "¥1,234" (Japanese)
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    value = value.strip()
    if not value:
        return None

    try:
        price = Price.fromstring(value)
        if price.amount_float is not None:
            return price.amount_float

        # Fallback: try parsing as plain number if price-parser fails
        cleaned = re.sub(r"[^\d.,\-]", "", value)
        if cleaned:
            # Handle European format
            if "," in cleaned and "." in cleaned:
                if cleaned.rfind(",") > cleaned.rfind("."):
                    cleaned = cleaned.replace(".", "").replace(",", ".")
                else:
                    cleaned = cleaned.replace(",", "")
            elif "," in cleaned:
                parts = cleaned.split(",")
                if len(parts) == 2 and len(parts[1]) == 2:
                    cleaned = cleaned.replace(",", ".")
                else:
                    cleaned = cleaned.replace(",", "")
            return float(cleaned)
        return None

    except (ValueError, AttributeError):
        return None


def parse_date(value: Any) -> str | None:
    """
    Parse various date formats to YYYY-MM-DD.

    Returns None if parsing fails.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)

    value = value.strip()
    if not value:
        return None

    # Try ISO format first (YYYY-MM-DD)
    if re.match(r"^\d{4}-\d{2}-\d{2}$", value):
        return value

    # Slash dates: US (MM/DD/YYYY) first, then European (DD/MM/YYYY)
    match = re.match(r"^(\d{1,2})/(\d{1,2})/(\d{4})$", value)
    if match:
        first, second, year = (int(part) for part in match.groups())
        for month, day in ((first, second), (second, first)):
            try:
                return datetime(year, month, day).strftime("%Y-%m-%d")
            except ValueError:
                continue
        return None

    # Try written formats
    try:
        return date_parser.parse(value).strftime("%Y-%m-%d")
    except (ValueError, OverflowError):
        return None


def _parse_datetime(value: Any, fmt: FormatHint) -> str | None:
    try:
        parsed = date_parser.parse(str(value).strip())
    except (ValueError, OverflowError):
        return None
    if fmt == FormatHint.TIME:
        return parsed.strftime("%H:%M:%S")
    return parsed.isoformat()


def _clean_null_from_arrays(
    data: dict[str, Any] | list[Any] | Any,
) -> dict[str, Any] | list[Any] | Any:
    """
    Recursively remove None/null values from arrays in the data structure.

    This fixes the "List Stutter" bug where arrays contain null values.
    """
    if isinstance(data, dict):
        return {k: _clean_null_from_arrays(v) for k, v in data.items()}
    elif isinstance(data, list):
        filtered = [x for x in data if x is not None]
        return [_clean_null_from_arrays(item) for item in filtered]
    else:
        return data


def _coerce_scalar(value: Any, spec: ScalarField, path: str, warnings: set[str]) -> Any:
    if spec.type == "number":
        parsed = parse_currency(value)
        if parsed is None:
            warnings.add(f"Field '{path}' has invalid number format: '{value}'")
        return parsed

    if spec.type == "integer":
        parsed = parse_currency(value)
        if parsed is None or not float(parsed).is_integer():
            warnings.add(f"Field '{path}' expected integer, got: '{value}'")
            return None
        return int(parsed)

    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        lower = str(value).lower().strip()
        if lower in _TRUE_STRINGS:
            return True
        if lower in _FALSE_STRINGS:
            return False
        warnings.add(f"Field '{path}' has ambiguous boolean value: '{value}'")
        return None

    # string
    if isinstance(value, (dict, list)):
        warnings.add(f"Field '{path}' expected string, got: {type(value).__name__}")
        return None
    text = str(value).strip()

    if spec.format == FormatHint.DATE:
        parsed = parse_date(text)
        if parsed is None:
            warnings.add(f"Field '{path}' has invalid date format: '{text}'")
        return parsed
    if spec.format in (FormatHint.TIME, FormatHint.DATE_TIME):
        parsed = _parse_datetime(text, spec.format)
        if parsed is None:
            warnings.add(f"Field '{path}' has invalid {spec.format.value} format: '{text}'")
        return parsed
    if spec.format == FormatHint.EMAIL:
        if not _EMAIL_RE.match(text):
            warnings.add(f"Field '{path}' appears to be invalid email: '{text}'")
            return None
        return text.lower()
    if spec.format == FormatHint.PHONE:
        digits = re.sub(r"[^\d+]", "", text)
        if len(digits.lstrip("+")) < 5:
            warnings.add(f"Field '{path}' appears to be invalid phone: '{text}'")
            return None
        return digits
    return text


def conform_to_schema(value: Any, spec: Any, path: str, warnings: set[str]) -> Any:
    """
    Shape one extracted value after its descriptor.

    Objects always carry every declared property, arrays are lists of
    conformed items, and anything that cannot be coerced becomes None
    with a warning. Never raises on bad model output.
    """
    if value is None or value == "":
        if spec.required:
            warnings.add(f"Required field '{path}' has empty value")
        if isinstance(spec, ObjectField):
            return {
                name: conform_to_schema(None, child, f"{path}.{name}", warnings)
                for name, child in spec.properties.items()
            }
        return None

    if isinstance(spec, ObjectField):
        if not isinstance(value, dict):
            warnings.add(f"Field '{path}' expected object, got: {type(value).__name__}")
            value = {}
        lookup = {str(k).strip().lower(): v for k, v in value.items()}
        return {
            name: conform_to_schema(lookup.get(name), child, f"{path}.{name}", warnings)
            for name, child in spec.properties.items()
        }

    if isinstance(spec, ArrayField):
        if not isinstance(value, list):
            warnings.add(f"Field '{path}' expected array/list, got: {type(value).__name__}")
            value = [value]
        return [
            conform_to_schema(item, spec.items, f"{path}[{index}]", warnings)
            for index, item in enumerate(value)
            if item is not None
        ]

    return _coerce_scalar(value, spec, path, warnings)


def validate_extracted_data(
    data: dict[str, Any], schema: ExtractionSchema
) -> ValidationResult:
    """
    Validate extracted data against a schema.

    Every top-level field of the schema is present in validated_data;
    keys the model added on its own are dropped.

    Args:
        data: The extracted data dictionary.
        schema: The schema to validate against.

    Returns:
        ValidationResult with validated_data and warnings.
    """
    result = ValidationResult()

    # Case-insensitive matching, first key wins on collisions
    normalized_data: dict[str, Any] = {}
    for k, v in (data or {}).items():
        norm_key = str(k).strip().lower()
        if norm_key not in normalized_data:
            normalized_data[norm_key] = v

    warnings_set: set[str] = set()
    for name, spec in schema.properties.items():
        value = normalized_data.get(name)
        result.validated_data[name] = conform_to_schema(value, spec, name, warnings_set)

    dropped = set(normalized_data) - set(schema.properties)
    if dropped:
        logger.debug("Dropped fields not declared in schema: %s", sorted(dropped))

    result.warnings = sorted(warnings_set)
    return result
