"""Unit tests for parsed data payloads and stage schemas."""

import pytest
from pydantic import ValidationError

from docflow.database.enums import DocumentType
from docflow.schemas.api import AuditEntryResponse
from docflow.schemas.documents import InvoiceData, ReceiptData, dump_parsed_data, parse_parsed_data
from docflow.schemas.pipeline import ClassificationPayload, CorrectionPayload, ValidationPayload
from docflow.utils.exceptions import MalformedOutputError
from docflow.utils.json_parser import parse_json_safely


class TestParsedData:
    """Tests for the document-type tagged union."""

    def test_variant_follows_document_type(self, sample_invoice):
        parsed = parse_parsed_data(DocumentType.INVOICE, sample_invoice)
        assert isinstance(parsed, InvoiceData)
        assert parsed.total == 120.0

    def test_wrapped_values_are_unwrapped(self):
        parsed = parse_parsed_data(
            DocumentType.RECEIPT,
            {"merchant": {"value": "Cafe", "confidence": 0.9}, "total": {"value": "12.50", "confidence": 0.8}},
        )
        assert isinstance(parsed, ReceiptData)
        assert parsed.merchant == "Cafe"
        assert parsed.total == 12.5

    def test_extra_fields_are_kept(self):
        dumped = dump_parsed_data(parse_parsed_data(DocumentType.INVOICE, {"po_number": "PO-7"}))
        assert dumped == {"document_type": "INVOICE", "po_number": "PO-7"}

    def test_payload_type_cannot_override_document_type(self):
        parsed = parse_parsed_data(DocumentType.RECEIPT, {"document_type": "INVOICE", "total": 5})
        assert parsed.document_type == "RECEIPT"

    def test_bad_amount_is_malformed(self):
        with pytest.raises(MalformedOutputError, match="INVOICE"):
            parse_parsed_data(DocumentType.INVOICE, {"total": "a lot"})

    def test_non_object_is_malformed(self):
        with pytest.raises(MalformedOutputError):
            parse_parsed_data(DocumentType.INVOICE, ["not", "a", "dict"])


class TestStagePayloads:
    """Tests for provider answer schemas."""

    def test_classification_accepts_aliases(self):
        assert ClassificationPayload.model_validate({"type": "PAYSLIP"}).document_type == DocumentType.PAYSLIP

    def test_classification_rejects_unknown_type(self):
        with pytest.raises(ValidationError):
            ClassificationPayload.model_validate({"document_type": "MENU"})

    def test_validation_issue_defaults(self):
        payload = ValidationPayload.model_validate({"isValid": False, "issues": [{"field": "total", "issue": "x"}]})
        assert payload.is_valid is False
        assert payload.issues[0].severity == "warning"

    def test_validation_rejects_unknown_severity(self):
        with pytest.raises(ValidationError):
            ValidationPayload.model_validate({"is_valid": True, "issues": [{"field": "a", "issue": "b", "severity": "fatal"}]})

    def test_correction_requires_corrected_data(self):
        with pytest.raises(ValidationError):
            CorrectionPayload.model_validate({"changes": []})


class TestJsonParser:
    """Tests for lenient JSON parsing of model output."""

    @pytest.mark.parametrize(
        "text",
        [
            '{"a": 1}',
            '```json\n{"a": 1}\n```',
            'Here you go:\n```\n{"a": 1}\n```\nThanks',
            'Sure! {"a": 1} hope that helps',
        ],
    )
    def test_recovers_object(self, text):
        assert parse_json_safely(text) == {"a": 1}

    @pytest.mark.parametrize("text", ["", "no json here", "{broken"])
    def test_gives_up(self, text):
        assert parse_json_safely(text) is None


class TestAuditEntryRedaction:
    """Tests for redacting sensitive audit rows."""

    def _entry(self, sensitive):
        return AuditEntryResponse.model_validate(
            {
                "id": "00000000-0000-0000-0000-000000000001",
                "stage": "EXTRACTION",
                "llm_provider": "openai",
                "llm_model": "gpt-4o-mini",
                "prompt_used": "Extract ...",
                "raw_response": '{"iban": "NL00"}',
                "extracted_data": {"iban": "NL00"},
                "confidence": 0.9,
                "attempt_id": "a-1",
                "sensitive": sensitive,
                "created_at": "2024-03-01T10:00:00Z",
            }
        )

    def test_sensitive_rows_lose_their_text(self):
        redacted = self._entry(True).redacted()
        assert redacted.prompt_used == "[redacted]"
        assert redacted.raw_response == "[redacted]"
        assert redacted.extracted_data is None
        assert redacted.confidence == 0.9

    def test_other_rows_are_untouched(self):
        entry = self._entry(False)
        assert entry.redacted() is entry
