"""Tests for Pydantic models."""

import pytest
from pydantic import ValidationError

from app.parse_service.models import (
    ArrayField,
    ExtractedField,
    ExtractionSchema,
    JobResponse,
    ObjectField,
    OutputFormat,
    ParseOptions,
    ScalarField,
    ensure_finite_tree,
)
from app.parse_service.models_db import DocumentJob, JobStatus, SourceKind, utcnow


INVOICE_SCHEMA = {
    "type": "object",
    "properties": {
        "invoice_number": {"type": "string", "required": True},
        "invoice_date": {"type": "string", "format": "date"},
        "total": {"type": "number", "description": "Grand total"},
        "vendor": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "email": {"type": "string", "format": "email"},
            },
        },
        "line_items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "description": {"type": "string"},
                    "quantity": {"type": "integer"},
                },
            },
        },
    },
}


class TestExtractionSchema:
    """Tests for the recursive extraction schema."""

    def test_nested_schema_parses_into_variants(self):
        """Test that each descriptor becomes the variant named by its type."""
        schema = ExtractionSchema.model_validate(INVOICE_SCHEMA)
        assert isinstance(schema.properties["total"], ScalarField)
        assert isinstance(schema.properties["vendor"], ObjectField)
        line_items = schema.properties["line_items"]
        assert isinstance(line_items, ArrayField)
        assert isinstance(line_items.items, ObjectField)
        assert list(line_items.items.properties) == ["description", "quantity"]

    def test_property_order_is_preserved(self):
        """Test that field order survives parsing and dumping."""
        schema = ExtractionSchema.model_validate(INVOICE_SCHEMA)
        assert list(schema.properties) == [
            "invoice_number",
            "invoice_date",
            "total",
            "vendor",
            "line_items",
        ]
        dumped = schema.model_dump(mode="json", exclude_none=True)
        assert list(dumped["properties"]) == list(schema.properties)

    def test_bare_mapping_is_accepted(self):
        """Test that a plain {name: descriptor} mapping is a valid schema."""
        schema = ExtractionSchema.model_validate({"total": {"type": "number"}})
        assert schema.type == "object"
        assert list(schema.properties) == ["total"]

    def test_field_names_are_normalized(self):
        """Test that names are lowercased and hyphens become underscores."""
        schema = ExtractionSchema.model_validate({"Invoice-Number": {"type": "string"}})
        assert list(schema.properties) == ["invoice_number"]

    def test_duplicate_names_after_normalization_rejected(self):
        """Test that names colliding after normalization are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            ExtractionSchema.model_validate(
                {"Total": {"type": "number"}, "total": {"type": "number"}}
            )
        assert "Duplicate" in str(exc_info.value)

    def test_invalid_field_name_rejected(self):
        """Test that names with spaces or symbols are rejected."""
        with pytest.raises(ValidationError):
            ExtractionSchema.model_validate({"total amount": {"type": "number"}})

    def test_unknown_type_rejected(self):
        """Test that an unknown type tag is rejected."""
        with pytest.raises(ValidationError):
            ExtractionSchema.model_validate({"total": {"type": "currency"}})

    def test_format_only_on_strings(self):
        """Test that format hints on non-string scalars are rejected."""
        with pytest.raises(ValidationError):
            ExtractionSchema.model_validate({"total": {"type": "number", "format": "date"}})

    def test_empty_schema_rejected(self):
        """Test that a schema needs at least one field."""
        with pytest.raises(ValidationError):
            ExtractionSchema.model_validate({"type": "object", "properties": {}})

    def test_excessive_depth_rejected(self):
        """Test that nesting deeper than the limit is rejected."""
        descriptor: dict = {"type": "string"}
        for _ in range(11):
            descriptor = {"type": "object", "properties": {"child": descriptor}}
        with pytest.raises(ValidationError) as exc_info:
            ExtractionSchema.model_validate({"root": descriptor})
        assert "nesting" in str(exc_info.value)

    def test_cycle_detected(self):
        """Test that a descriptor containing itself is rejected."""
        node = ObjectField.model_construct(type="object", properties={}, required=False)
        node.properties["self"] = node
        with pytest.raises(ValueError) as exc_info:
            ensure_finite_tree({"root": node})
        assert "cycle" in str(exc_info.value)


class TestParseOptions:
    """Tests for ParseOptions."""

    def test_defaults(self):
        """Test documented defaults."""
        options = ParseOptions()
        assert options.extract_tables is True
        assert options.extract_images is False
        assert options.ocr_enabled is True
        assert options.language == "en"
        assert options.output_format == OutputFormat.STRUCTURED
        assert options.extraction_schema is None

    def test_schema_alias(self):
        """Test that the schema is accepted under the 'schema' key."""
        options = ParseOptions.model_validate({"schema": {"total": {"type": "number"}}})
        assert options.extraction_schema is not None
        record = options.to_record()
        assert "schema" in record
        assert ParseOptions.model_validate(record) == options

    def test_unknown_option_rejected(self):
        """Test that unrecognised options are rejected."""
        with pytest.raises(ValidationError):
            ParseOptions.model_validate({"extract_everything": True})

    def test_invalid_output_format_rejected(self):
        """Test that output_format is limited to the enum values."""
        with pytest.raises(ValidationError):
            ParseOptions.model_validate({"output_format": "pdf"})


class TestExtractedField:
    """Tests for ExtractedField."""

    def test_confidence_rounded(self):
        """Test that confidence is rounded to 3 decimals."""
        assert ExtractedField(value=1, confidence=0.123456).confidence == 0.123

    def test_confidence_bounds(self):
        """Test that confidence must be within [0, 1]."""
        with pytest.raises(ValidationError):
            ExtractedField(value=1, confidence=1.5)
        with pytest.raises(ValidationError):
            ExtractedField(value=1, confidence=-0.1)


class TestJobResponse:
    """Tests for the job record rendering."""

    def _job(self, **values) -> DocumentJob:
        defaults = dict(
            id="doc_1",
            status=JobStatus.PENDING,
            source_kind=SourceKind.UPLOAD,
            filename="invoice.pdf",
            created_at=utcnow(),
        )
        defaults.update(values)
        return DocumentJob(**defaults)

    def test_pending_job_has_no_result_or_error(self):
        """Test that neither result nor error is rendered before completion."""
        payload = JobResponse.from_record(self._job()).to_payload()
        assert payload["status"] == "pending"
        assert "result" not in payload
        assert "error" not in payload
        assert payload["completed_at"] is None

    def test_failed_job_renders_error(self):
        """Test that a failed job carries code, message and reason."""
        job = self._job(
            status=JobStatus.FAILED,
            error_code="processing_failed",
            error_reason="password_protected",
            error_message="Encrypted",
            completed_at=utcnow(),
        )
        payload = JobResponse.from_record(job).to_payload()
        assert payload["error"] == {
            "code": "processing_failed",
            "message": "Encrypted",
            "reason": "password_protected",
        }
        assert "result" not in payload
        assert payload["created_at"].endswith("+00:00")
