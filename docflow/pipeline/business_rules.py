"""Deterministic business rules per document type.

These run alongside the LLM validation round. Their issues are merged into
the round's verdict and also lower its confidence (see
``confidence.adjust_for_business_rules``).
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from docflow.database.enums import DocumentType
from docflow.schemas.documents import unwrap_value
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

AMOUNT_TOLERANCE = 0.02
PAYMENT_METHODS = ("cash", "card", "credit", "debit", "mobile", "online", "check", "other")
_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d.%m.%Y", "%Y/%m/%d", "%B %d, %Y", "%d %B %Y")

Check = Callable[[Dict[str, Any], date], bool]


@dataclass(frozen=True)
class BusinessRule:
    field: str
    check: Check
    message: str
    severity: str = "error"


@dataclass(frozen=True)
class RuleSet:
    required_fields: tuple
    rules: tuple


def _string(value: Any) -> str:
    value = unwrap_value(value)
    return "" if value is None else str(value)


def _number(value: Any) -> Optional[float]:
    value = unwrap_value(value)
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", ""))
    except ValueError:
        return None


def _amount(value: Any) -> float:
    number = _number(value)
    return 0.0 if number is None else number


def parse_date(value: Any) -> Optional[date]:
    text = _string(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _not_future(field: str) -> Check:
    def check(data: Dict[str, Any], today: date) -> bool:
        parsed = parse_date(data.get(field))
        return parsed is not None and parsed <= today

    return check


def _not_before(later: str, earlier: str) -> Check:
    """``later`` is optional; when present it must parse and not precede ``earlier``."""

    def check(data: Dict[str, Any], today: date) -> bool:
        if not _string(data.get(later)):
            return True
        end, start = parse_date(data.get(later)), parse_date(data.get(earlier))
        return end is not None and start is not None and end >= start

    return check


def _positive(field: str) -> Check:
    return lambda data, today: _amount(data.get(field)) > 0


def _invoice_totals(data: Dict[str, Any], today: date) -> bool:
    subtotal, tax = _amount(data.get("subtotal")), _amount(data.get("tax"))
    if subtotal > 0 and tax >= 0:
        return abs(subtotal + tax - _amount(data.get("total"))) <= AMOUNT_TOLERANCE
    return True


def _length_between(field: str, upper: int) -> Check:
    return lambda data, today: 0 < len(_string(data.get(field))) < upper


def _merchant_present(data: Dict[str, Any], today: date) -> bool:
    merchant = data.get("merchant")
    if isinstance(merchant, dict) and "name" in merchant:
        return bool(_string(merchant.get("name")))
    return bool(_string(merchant))


def _payment_method(data: Dict[str, Any], today: date) -> bool:
    method = _string(data.get("payment_method")).lower()
    return not method or any(known in method for known in PAYMENT_METHODS)


def _tax_tip_reasonable(data: Dict[str, Any], today: date) -> bool:
    total = _amount(data.get("total"))
    tax, tip = _amount(data.get("tax")), _amount(data.get("tip"))
    return not (tax > 0 and tax >= total) and not (tip > 0 and tip >= total)


def _deductions_total(value: Any) -> float:
    value = unwrap_value(value)
    if isinstance(value, list):
        return sum(_amount(item.get("amount") if isinstance(item, dict) else item) for item in value)
    if isinstance(value, dict):
        return sum(_amount(item) for item in value.values())
    return _amount(value)


def _net_salary(data: Dict[str, Any], today: date) -> bool:
    gross, net = _amount(data.get("gross_salary")), _amount(data.get("net_salary"))
    if net <= 0 or net > gross:
        return False
    deductions = _deductions_total(data.get("deductions"))
    if deductions > 0:
        return abs(gross - deductions - net) <= AMOUNT_TOLERANCE
    return True


def _period_order(data: Dict[str, Any], today: date) -> bool:
    start, end = parse_date(data.get("period_start")), parse_date(data.get("period_end"))
    return start is not None and end is not None and end >= start


def _closing_balance(data: Dict[str, Any], today: date) -> bool:
    opening, closing = _number(data.get("opening_balance")), _number(data.get("closing_balance"))
    transactions = unwrap_value(data.get("transactions"))
    if opening is None or closing is None or not isinstance(transactions, list) or not transactions:
        return True
    movement = sum(_amount(tx.get("amount") if isinstance(tx, dict) else tx) for tx in transactions)
    return abs(opening + movement - closing) <= AMOUNT_TOLERANCE


def _tax_year(data: Dict[str, Any], today: date) -> bool:
    year = _number(data.get("tax_year"))
    return year is not None and today.year - 10 <= int(year) <= today.year + 1


def _total_tax(data: Dict[str, Any], today: date) -> bool:
    total_tax = _number(data.get("total_tax"))
    return total_tax is None or total_tax >= 0


def _valid_date(field: str) -> Check:
    return lambda data, today: parse_date(data.get(field)) is not None


RULES: Dict[DocumentType, RuleSet] = {
    DocumentType.INVOICE: RuleSet(
        required_fields=("invoice_number", "date", "total", "currency"),
        rules=(
            BusinessRule("total", _positive("total"), "Invoice total must be greater than zero"),
            BusinessRule("date", _not_future("date"), "Invoice date cannot be in the future"),
            BusinessRule(
                "total",
                _invoice_totals,
                "Total does not match subtotal + tax (expected: subtotal + tax = total)",
            ),
            BusinessRule(
                "due_date", _not_before("due_date", "date"), "Due date must be on or after invoice date", "warning"
            ),
            BusinessRule(
                "invoice_number",
                _length_between("invoice_number", 100),
                "Invoice number must be between 1 and 100 characters",
            ),
        ),
    ),
    DocumentType.RECEIPT: RuleSet(
        required_fields=("merchant", "total", "date", "currency"),
        rules=(
            BusinessRule("total", _positive("total"), "Receipt total must be greater than zero"),
            BusinessRule("merchant", _merchant_present, "Merchant name is required"),
            BusinessRule("date", _not_future("date"), "Receipt date cannot be in the future"),
            BusinessRule(
                "payment_method",
                _payment_method,
                "Payment method should be one of: cash, card, credit, debit, mobile, online, check",
                "info",
            ),
            BusinessRule(
                "total", _tax_tip_reasonable, "Tax or tip amount seems unreasonably high (>= total)", "warning"
            ),
        ),
    ),
    DocumentType.PAYSLIP: RuleSet(
        required_fields=("employee_name", "period", "gross_salary", "net_salary", "currency"),
        rules=(
            BusinessRule(
                "net_salary",
                _net_salary,
                "Net salary calculation incorrect (expected: gross_salary - deductions = net_salary)",
            ),
            BusinessRule("gross_salary", _positive("gross_salary"), "Gross salary must be greater than zero"),
            BusinessRule("period", lambda data, today: bool(_string(data.get("period"))), "Pay period is required"),
            BusinessRule(
                "employee_name",
                _length_between("employee_name", 200),
                "Employee name must be between 1 and 200 characters",
            ),
        ),
    ),
    DocumentType.BANK_STATEMENT: RuleSet(
        required_fields=("account_number", "period_start", "period_end", "currency"),
        rules=(
            BusinessRule(
                "period_end", _period_order, "Statement period end date must be after or equal to start date"
            ),
            BusinessRule(
                "account_number",
                lambda data, today: bool(_string(data.get("account_number"))),
                "Account number is required",
            ),
            BusinessRule(
                "closing_balance",
                _closing_balance,
                "Closing balance does not match opening balance + transaction sum",
                "warning",
            ),
            BusinessRule(
                "period_start", _not_future("period_start"), "Statement period start date cannot be in the future"
            ),
        ),
    ),
    DocumentType.TAX_FORM: RuleSet(
        required_fields=("tax_year", "taxpayer_name"),
        rules=(
            BusinessRule(
                "tax_year",
                _tax_year,
                "Tax year should be within reasonable range (last 10 years or next year)",
                "warning",
            ),
            BusinessRule("total_tax", _total_tax, "Total tax cannot be negative"),
        ),
    ),
    DocumentType.CONTRACT: RuleSet(
        required_fields=("parties", "effective_date"),
        rules=(
            BusinessRule("effective_date", _valid_date("effective_date"), "Effective date must be a valid date"),
            BusinessRule(
                "expiration_date",
                _not_before("expiration_date", "effective_date"),
                "Expiration date must be after or equal to effective date",
                "warning",
            ),
        ),
    ),
    DocumentType.OTHER: RuleSet(required_fields=(), rules=()),
}


def _is_missing(value: Any) -> bool:
    value = unwrap_value(value)
    return value is None or value == "" or value == [] or value == {}


def validate_business_rules(
    document_type: Optional[DocumentType],
    data: Dict[str, Any],
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """Issues (``field``, ``issue``, ``severity``, ``suggested_fix``) for the data."""
    rule_set = RULES.get(document_type or DocumentType.OTHER, RULES[DocumentType.OTHER])
    today = today or date.today()
    issues: List[Dict[str, Any]] = []

    for field in rule_set.required_fields:
        if _is_missing(data.get(field)):
            issues.append(
                {
                    "field": field,
                    "issue": f"Required field '{field}' is missing",
                    "severity": "error",
                    "suggested_fix": f"Please extract the {field} from the document",
                }
            )

    for rule in rule_set.rules:
        try:
            passed = rule.check(data, today)
        except (TypeError, ValueError, AttributeError) as e:
            LOGGER.warning(f"Business rule check for '{rule.field}' raised: {e}")
            issues.append(
                {"field": rule.field, "issue": f"Unable to validate: {rule.message}", "severity": "warning"}
            )
            continue
        if not passed:
            issues.append({"field": rule.field, "issue": rule.message, "severity": rule.severity})

    LOGGER.info(
        "Business rules validation completed",
        extra={
            "document_type": getattr(document_type, "value", None),
            "issues": len(issues),
            "errors": sum(1 for i in issues if i["severity"] == "error"),
        },
    )
    return issues


def describe_business_rules(document_type: Optional[DocumentType]) -> str:
    """Human-readable rule summary injected into validation prompts."""
    doc_type = document_type or DocumentType.OTHER
    rule_set = RULES.get(doc_type, RULES[DocumentType.OTHER])
    required = ", ".join(rule_set.required_fields) or "None"
    rules = "\n".join(f"- {rule.message}" for rule in rule_set.rules) or "None"
    return f"Business Rules for {doc_type.value}:\n\nRequired Fields: {required}\n\nValidation Rules:\n{rules}"
