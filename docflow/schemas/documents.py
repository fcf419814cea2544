"""Per-document-type payloads for parsed data.

``ParsedData`` is a tagged union discriminated on ``document_type``. Values
that providers return wrapped as ``{"value": ..., "confidence": ...}`` are
unwrapped before validation, so the stored payload always holds plain values.
Unknown fields are kept (``extra="allow"``) because providers routinely return
more than the core fields.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError

from docflow.database.enums import DocumentType
from docflow.utils.exceptions import MalformedOutputError


def unwrap_value(value: Any) -> Any:
    """Return ``value["value"]`` for ``{value, confidence}`` wrappers."""
    if isinstance(value, dict) and "value" in value and set(value) <= {"value", "confidence", "type", "name"}:
        return value["value"]
    return value


Plain = BeforeValidator(unwrap_value)
Text = Annotated[Optional[str], Plain]
Amount = Annotated[Optional[float], Plain]
Anything = Annotated[Optional[Any], Plain]


class _ParsedBase(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    currency: Text = None


class InvoiceData(_ParsedBase):
    document_type: Literal["INVOICE"] = "INVOICE"
    invoice_number: Text = None
    date: Text = None
    due_date: Text = None
    vendor: Anything = None
    customer: Anything = None
    subtotal: Amount = None
    tax: Amount = None
    total: Amount = None
    line_items: Annotated[Optional[List[Any]], Plain] = None


class ReceiptData(_ParsedBase):
    document_type: Literal["RECEIPT"] = "RECEIPT"
    merchant: Anything = None
    date: Text = None
    total: Amount = None
    tax: Amount = None
    tip: Amount = None
    payment_method: Text = None
    items: Annotated[Optional[List[Any]], Plain] = None


class PayslipData(_ParsedBase):
    document_type: Literal["PAYSLIP"] = "PAYSLIP"
    employee_name: Text = None
    employer: Anything = None
    period: Anything = None
    gross_salary: Amount = None
    net_salary: Amount = None
    deductions: Anything = None


class BankStatementData(_ParsedBase):
    document_type: Literal["BANK_STATEMENT"] = "BANK_STATEMENT"
    account_number: Text = None
    account_holder: Text = None
    bank_name: Text = None
    period_start: Text = None
    period_end: Text = None
    opening_balance: Amount = None
    closing_balance: Amount = None
    transactions: Annotated[Optional[List[Any]], Plain] = None


class TaxFormData(_ParsedBase):
    document_type: Literal["TAX_FORM"] = "TAX_FORM"
    form_type: Text = None
    tax_year: Annotated[Optional[int], Plain] = None
    taxpayer_name: Text = None
    taxpayer_id: Text = None
    total_income: Amount = None
    total_tax: Amount = None


class ContractData(_ParsedBase):
    document_type: Literal["CONTRACT"] = "CONTRACT"
    contract_type: Text = None
    parties: Anything = None
    effective_date: Text = None
    expiration_date: Text = None
    value: Amount = None


class OtherData(_ParsedBase):
    document_type: Literal["OTHER"] = "OTHER"


ParsedData = Annotated[
    Union[
        InvoiceData,
        ReceiptData,
        PayslipData,
        BankStatementData,
        TaxFormData,
        ContractData,
        OtherData,
    ],
    Field(discriminator="document_type"),
]

_PARSED_ADAPTER: TypeAdapter = TypeAdapter(ParsedData)


def parse_parsed_data(document_type: DocumentType, data: Dict[str, Any]) -> ParsedData:
    """Validate a raw payload as the parsed data for ``document_type``.

    Raises:
        MalformedOutputError: If the payload does not fit the type's schema
    """
    if not isinstance(data, dict):
        raise MalformedOutputError(f"Expected an object for {document_type.value} data, got {type(data).__name__}")

    payload = {**data, "document_type": DocumentType(document_type).value}
    try:
        return _PARSED_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise MalformedOutputError(
            f"Invalid {document_type.value} data: {e.error_count()} validation error(s)",
            original_error=e,
        ) from e


def dump_parsed_data(parsed: ParsedData) -> Dict[str, Any]:
    """JSON-ready dict of a parsed payload, dropping empty fields."""
    return parsed.model_dump(mode="json", exclude_none=True)
