"""
Catalog check evaluators for e-invoice compliance.

This module holds the check-id dispatched evaluation logic, organized by category:
- Presence rules: required header, line and party fields
- Format rules: patterns, code lists and allowed-value enumerations
- Currency rules: tax accounting currency and FX rate consistency
- Arithmetic rules: header totals, line nets, VAT and header/line reconciliation
- Structural rules: line existence, tax breakdown, cross-file references
- Generic fallback: parameter-driven Presence and CodeList handling

Each evaluator is a plain function registered against one or more check ids.
It iterates the relevant record collection in input order and returns the
exceptions it found. A misconfigured check logs a warning and returns an
empty list; it never aborts the run.
"""

import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .config import (
    AMOUNT_TOLERANCE,
    BASE_CURRENCY,
    DATE_FORMATS,
    TRN_PATTERN,
    get_codelist,
    is_code_in_codelist,
    logger,
)
from .context import DataContext, Record, get_field_value, is_empty, require_context
from .schemas import CatalogCheck, CheckScope, ComplianceException, RuleType
from .similarity import normalize_invoice_number, normalize_trn

# Evaluators take the check, the data context, the check's parameters and the
# effective numeric tolerance, and return the exceptions they raised.
CheckEvaluator = Callable[[CatalogCheck, DataContext, dict, float], list[ComplianceException]]

CHECK_EVALUATORS: dict[str, CheckEvaluator] = {}

FIELD_ALIASES: dict[str, str] = {
    "seller_endpoint": "seller_electronic_address",
    "buyer_endpoint": "buyer_electronic_address",
    "seller_street": "seller_address",
}

CREDIT_NOTE_TYPES = frozenset({"CREDIT_NOTE", "381"})

_TRN_REGEX = re.compile(TRN_PATTERN)


@dataclass
class RegisteredCheck:
    """
    A check id bound to its evaluator.

    Attributes:
        check_id: Catalog identifier the evaluator answers to
        evaluator: Function that performs the evaluation
    """
    check_id: str
    evaluator: CheckEvaluator


def register_check(*check_ids: str) -> Callable[[CheckEvaluator], CheckEvaluator]:
    """Register an evaluator for one or more catalog check ids."""
    def decorator(fn: CheckEvaluator) -> CheckEvaluator:
        for check_id in check_ids:
            CHECK_EVALUATORS[check_id] = fn
        return fn
    return decorator


def get_registered_checks() -> list[RegisteredCheck]:
    """List every check id that has a bespoke evaluator."""
    return [RegisteredCheck(check_id=k, evaluator=v) for k, v in CHECK_EVALUATORS.items()]


# ============================================================================
# Helpers
# ============================================================================

def resolve_field_alias(field_name: str) -> str:
    """Map legacy or alternate field names to their canonical name."""
    return FIELD_ALIASES.get(field_name, field_name)


def dataset_for_field(field_name: str, scope: Any, data: DataContext) -> list[Record]:
    """
    Pick the record collection a field lives in.

    The field-name prefix decides first (buyer_* -> parties; line_*,
    quantity, unit_of_measure -> lines; seller_*, invoice_*, currency ->
    headers). When the prefix says nothing, the check's declared scope
    decides, with headers as the final default.
    """
    name = resolve_field_alias(field_name)
    if name.startswith("buyer_"):
        return data.buyers
    if name.startswith("line_") or name in ("quantity", "unit_of_measure"):
        return data.lines
    if name.startswith("seller_") or name.startswith("invoice_") or name == "currency":
        return data.headers
    scope_value = scope.value if isinstance(scope, CheckScope) else scope
    if scope_value == CheckScope.LINES.value:
        return data.lines
    if scope_value == CheckScope.PARTY.value:
        return data.buyers
    return data.headers


def collection_name(rows: list[Record], data: DataContext) -> str:
    """Name the context collection `rows` is, by identity; headers when it is neither lines nor buyers."""
    if rows is data.lines:
        return "lines"
    if rows is data.buyers:
        return "buyers"
    return "headers"


def to_number(value: Any) -> Optional[float]:
    """Coerce a record value to float; None when blank, non-numeric or not finite."""
    if value is None or isinstance(value, bool):
        return None
    raw = value if isinstance(value, (int, float)) else str(value).strip()
    if raw == "":
        return None
    try:
        number = float(raw)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def count_decimals(value: Any) -> Optional[int]:
    """
    Count the digits after the decimal point of a value's written form.

    Strings are read as written; numbers use their shortest repr. Trailing
    zeros are ignored ("100.50" has one decimal) and integral values have
    none. Returns None when the value is not a number.
    """
    if value is None or isinstance(value, bool):
        return None
    text = repr(float(value)) if isinstance(value, float) else str(value).strip()
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    exponent = number.normalize().as_tuple().exponent
    return max(0, -exponent)


def parse_date(value: Any) -> Optional[date]:
    """Parse a date-like record value using the configured formats."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if is_empty(value):
        return None
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def format_amount(value: Any) -> str:
    """Render an amount the way it appears in the record (100.0 -> "100")."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _label(header: Optional[Record], fallback: Any = None) -> str:
    if header is None:
        return str(fallback) if fallback is not None else "(unknown)"
    number = header.get("invoice_number")
    if not is_empty(number):
        return str(number)
    return str(header.get("invoice_id", fallback))


def _first(*values: Any) -> Any:
    for value in values:
        if not is_empty(value):
            return value
    return None


def make_exception(
    check: CatalogCheck,
    *,
    field_name: Optional[str],
    observed: Optional[str],
    expected: Optional[str],
    message: str,
    record: Optional[Record] = None,
    header: Optional[Record] = None,
    buyer_id: Any = None,
    source: str = "headers",
) -> ComplianceException:
    """
    Build an exception for a check failure on one record.

    Invoice linkage (invoice id/number, seller TRN, buyer id) is taken from
    the record first and the owning header second. The line id is only
    taken from the record itself. `source` names the collection the record
    came from (headers, lines or buyers) and decides the output class.
    """
    row = record or {}
    owner = header or {}
    exc = ComplianceException(
        check_id=check.check_id,
        check_name=check.check_name,
        severity=check.severity,
        scope=check.scope.value,
        rule_type=check.rule_type.value,
        use_case=check.use_case,
        reference_terms=list(check.reference_terms),
        invoice_id=_first(row.get("invoice_id"), owner.get("invoice_id")),
        invoice_number=_first(row.get("invoice_number"), owner.get("invoice_number")),
        seller_trn=_first(row.get("seller_trn"), owner.get("seller_trn")),
        buyer_id=_first(buyer_id, row.get("buyer_id"), owner.get("buyer_id")),
        line_id=_first(row.get("line_id")),
        field_name=field_name,
        observed_value=observed,
        expected_value=expected,
        message=message,
        suggested_fix=check.suggested_fix,
        owner_team=check.owner_team_default,
        sla_target_hours=check.sla_target_hours,
    )
    exc._record_source = source
    return exc


def _require_param(check: CatalogCheck, params: dict, *names: str) -> bool:
    missing = [name for name in names if params.get(name) in (None, "", [])]
    if missing:
        logger.warning(f"Check {check.check_id} skipped: missing parameter(s) {', '.join(missing)}")
        return False
    return True


def _tolerance(params: dict, tolerance: float) -> float:
    value = to_number(params.get("tolerance"))
    return value if value is not None else tolerance


def _int_param(check: CatalogCheck, params: dict, name: str) -> Optional[int]:
    try:
        return int(params[name])
    except (TypeError, ValueError):
        logger.warning(f"Check {check.check_id} skipped: parameter {name} must be an integer, got {params[name]!r}")
        return None


# ============================================================================
# Presence Rules
# ============================================================================

@register_check("UAE-UC1-CHK-001", "UAE-UC1-CHK-002", "UAE-UC1-CHK-004", "UAE-UC1-CHK-005")
def check_header_field_present(check, data, params, tolerance):
    """A single header field named by the `field` parameter must be present."""
    if not _require_param(check, params, "field"):
        return []
    field_name = resolve_field_alias(params["field"])
    exceptions = []
    for header in data.headers:
        if is_empty(get_field_value(header, field_name)):
            exceptions.append(make_exception(
                check,
                record=header,
                field_name=field_name,
                observed="(empty)",
                expected="Required value",
                message=f'Invoice {_label(header)}: Missing required field "{field_name}"',
            ))
    return exceptions


def _missing_fields(check, records, fields, label_fn, source="headers"):
    exceptions = []
    for record in records:
        for field_name in fields:
            if is_empty(get_field_value(record, field_name)):
                exceptions.append(make_exception(
                    check,
                    record=record,
                    field_name=field_name,
                    observed="(empty)",
                    expected="Required value",
                    source=source,
                    message=f'{label_fn(record)}: Missing field "{field_name}"',
                ))
    return exceptions


@register_check("UAE-UC1-CHK-015")
def check_seller_address(check, data, params, tolerance):
    """Seller address lines, city and country must all be present."""
    fields = params.get("fields") or ["seller_address", "seller_city", "seller_country"]
    return _missing_fields(
        check,
        data.headers,
        [resolve_field_alias(f) for f in fields],
        lambda header: f"Invoice {_label(header)}",
    )


@register_check("UAE-UC1-CHK-017")
def check_buyer_name(check, data, params, tolerance):
    exceptions = []
    for buyer in data.buyers:
        if is_empty(buyer.get("buyer_name")):
            exceptions.append(make_exception(
                check,
                record=buyer,
                source="buyers",
                field_name="buyer_name",
                observed="(empty)",
                expected="Required value",
                message=f'Buyer ID "{buyer.get("buyer_id")}": Missing buyer name',
            ))
    return exceptions


@register_check("UAE-UC1-CHK-020")
def check_buyer_address(check, data, params, tolerance):
    fields = params.get("fields") or ["buyer_address", "buyer_country"]
    return _missing_fields(
        check,
        data.buyers,
        [resolve_field_alias(f) for f in fields],
        lambda buyer: f"Buyer {buyer.get('buyer_id')}",
        source="buyers",
    )


@register_check("UAE-UC1-CHK-031")
def check_line_identifier(check, data, params, tolerance):
    exceptions = []
    for line in data.lines:
        if is_empty(line.get("line_number")):
            header = data.header_for(line)
            exceptions.append(make_exception(
                check,
                record=line,
                source="lines",
                header=header,
                field_name="line_number",
                observed="(empty)",
                expected="Unique line identifier",
                message=f"Invoice {_label(header, line.get('invoice_id'))}, Line: Missing line identifier",
            ))
    return exceptions


@register_check("UAE-UC1-CHK-032")
def check_line_quantity(check, data, params, tolerance):
    exceptions = []
    for line in data.lines:
        if is_empty(line.get("quantity")):
            header = data.header_for(line)
            exceptions.append(make_exception(
                check,
                record=line,
                source="lines",
                header=header,
                field_name="quantity",
                observed="(empty)",
                expected="Numeric quantity",
                message=(
                    f"Invoice {_label(header, line.get('invoice_id'))}, "
                    f"Line {line.get('line_number')}: Missing quantity"
                ),
            ))
    return exceptions


@register_check("buyer_trn_missing")
def check_buyer_trn_missing(check, data, params, tolerance):
    exceptions = []
    for buyer in data.buyers:
        if is_empty(buyer.get("buyer_trn")):
            exceptions.append(make_exception(
                check,
                record=buyer,
                source="buyers",
                field_name="buyer_trn",
                observed="(empty)",
                expected="15-digit TRN",
                message=f'Buyer "{buyer.get("buyer_name")}" (ID: {buyer.get("buyer_id")}) is missing TRN',
            ))
    return exceptions


@register_check("missing_mandatory_fields")
def check_missing_mandatory_fields(check, data, params, tolerance):
    """Every header must carry its identifying fields."""
    fields = params.get("fields") or ["invoice_id", "invoice_number", "issue_date", "seller_trn", "currency"]
    exceptions = []
    for header in data.headers:
        for field_name in fields:
            if is_empty(get_field_value(header, field_name)):
                exceptions.append(make_exception(
                    check,
                    record=header,
                    field_name=field_name,
                    observed="(empty)",
                    expected="non-empty value",
                    message=f'Invoice {_label(header)}: missing mandatory field "{field_name}"',
                ))
    return exceptions


# ============================================================================
# Format Rules
# ============================================================================

@register_check("UAE-UC1-CHK-003", "UAE-UC1-CHK-010")
def check_header_field_pattern(check, data, params, tolerance):
    """A header field must match the `pattern` parameter; empty values are left to presence rules."""
    if not _require_param(check, params, "field", "pattern"):
        return []
    try:
        regex = re.compile(params["pattern"])
    except (re.error, TypeError) as e:
        logger.warning(f"Check {check.check_id} skipped: invalid pattern {params['pattern']!r} ({e})")
        return []
    field_name = resolve_field_alias(params["field"])
    exceptions = []
    for header in data.headers:
        value = get_field_value(header, field_name)
        if not is_empty(value) and not regex.search(str(value)):
            exceptions.append(make_exception(
                check,
                record=header,
                field_name=field_name,
                observed=str(value),
                expected=f"Match pattern: {params['pattern']}",
                message=(
                    f'Invoice {_label(header)}: Field "{field_name}" format invalid. '
                    f"Expected pattern: {params['pattern']}"
                ),
            ))
    return exceptions


@register_check("UAE-UC1-CHK-006")
def check_currency_codelist(check, data, params, tolerance):
    field_name = resolve_field_alias(params.get("field") or "currency")
    exceptions = []
    for header in data.headers:
        value = get_field_value(header, field_name)
        if not is_empty(value) and not is_code_in_codelist("ISO4217", str(value)):
            exceptions.append(make_exception(
                check,
                record=header,
                field_name=field_name,
                observed=str(value),
                expected="Valid ISO4217 code",
                message=f'Invoice {_label(header)}: Currency "{value}" is not in the ISO4217 code list',
            ))
    return exceptions


def _allowed_values(check, data, params, default_field, noun):
    field_name = resolve_field_alias(params.get("field") or default_field)
    allowed = [str(v) for v in params.get("allowed_values") or []]
    if not allowed:
        logger.warning(f"Check {check.check_id} skipped: no allowed_values configured")
        return []
    exceptions = []
    for header in data.headers:
        value = get_field_value(header, field_name)
        # Absent values are tolerated; the field may be derived downstream
        if not is_empty(value) and str(value) not in allowed:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name=field_name,
                observed=str(value),
                expected=", ".join(allowed),
                message=f'Invoice {_label(header)}: Invalid {noun} "{value}"',
            ))
    return exceptions


@register_check("UAE-UC1-CHK-011")
def check_business_process(check, data, params, tolerance):
    return _allowed_values(check, data, params, "business_process", "business process type")


@register_check("UAE-UC1-CHK-016")
def check_seller_subdivision(check, data, params, tolerance):
    return _allowed_values(check, data, params, "seller_subdivision", "UAE subdivision")


@register_check("UAE-UC1-CHK-013")
def check_seller_trn_format(check, data, params, tolerance):
    exceptions = []
    for header in data.headers:
        trn = header.get("seller_trn")
        if not is_empty(trn) and not _TRN_REGEX.match(str(trn)):
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="seller_trn",
                observed=str(trn),
                expected="15-digit number",
                message=f'Invoice {_label(header)}: Seller TRN "{trn}" does not match UAE 15-digit format',
            ))
    return exceptions


@register_check("UAE-UC1-CHK-018", "buyer_trn_invalid_format")
def check_buyer_trn_format(check, data, params, tolerance):
    """Buyer TRN may be empty, but when given it must be 15 digits."""
    exceptions = []
    for buyer in data.buyers:
        trn = buyer.get("buyer_trn")
        if not is_empty(trn) and not _TRN_REGEX.match(str(trn)):
            exceptions.append(make_exception(
                check,
                record=buyer,
                source="buyers",
                field_name="buyer_trn",
                observed=str(trn),
                expected="15-digit number (or empty)",
                message=f'Buyer "{buyer.get("buyer_name")}": TRN "{trn}" does not match UAE 15-digit format',
            ))
    return exceptions


@register_check("UAE-UC1-CHK-022", "UAE-UC1-CHK-023", "UAE-UC1-CHK-024", "UAE-UC1-CHK-026")
def check_decimal_precision(check, data, params, tolerance):
    """Amount fields must not carry more than `max_decimals` decimal places."""
    if not _require_param(check, params, "field", "max_decimals"):
        return []
    field_name = resolve_field_alias(params["field"])
    max_decimals = _int_param(check, params, "max_decimals")
    if max_decimals is None:
        return []
    exceptions = []
    rows = dataset_for_field(field_name, check.scope, data)
    source = collection_name(rows, data)
    for record in rows:
        value = get_field_value(record, field_name)
        if is_empty(value):
            continue
        decimals = count_decimals(value)
        if decimals is None:
            logger.debug(f"Check {check.check_id}: non-numeric {field_name}={value!r} skipped")
            continue
        if decimals > max_decimals:
            header = data.header_for(record)
            exceptions.append(make_exception(
                check,
                record=record,
                header=header,
                source=source,
                field_name=field_name,
                observed=f"{value} ({decimals} decimals)",
                expected=f"Max {max_decimals} decimals",
                message=(
                    f'Invoice {_label(header or record)}: Field "{field_name}" has {decimals} '
                    f"decimal places, maximum allowed is {max_decimals}"
                ),
            ))
    return exceptions


# ============================================================================
# Currency Rules
# ============================================================================

@register_check("UAE-UC1-CHK-007")
def check_tax_currency(check, data, params, tolerance):
    """Foreign-currency invoices must state the tax accounting currency, and it must be the base currency."""
    base = str(params.get("tax_currency") or BASE_CURRENCY).upper()
    exceptions = []
    for header in data.headers:
        currency = str(header.get("currency") or "").strip().upper()
        tax_currency = str(header.get("tax_currency") or "").strip().upper()
        if currency and currency != base and not tax_currency:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="tax_currency",
                observed="(empty)",
                expected=base,
                message=(
                    f"Invoice {_label(header)}: Tax accounting currency must be {base} "
                    f"when invoice currency is {currency}"
                ),
            ))
        elif tax_currency and tax_currency != base:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="tax_currency",
                observed=tax_currency,
                expected=base,
                message=f'Invoice {_label(header)}: Tax accounting currency "{tax_currency}" must be {base}',
            ))
    return exceptions


@register_check("UAE-UC1-CHK-008")
def check_fx_rate(check, data, params, tolerance):
    currency_field = resolve_field_alias(params.get("currency_field") or "currency")
    fx_field = resolve_field_alias(params.get("fx_field") or "fx_rate")
    base = str(params.get("base_currency") or BASE_CURRENCY).upper()
    exceptions = []
    for header in data.headers:
        currency = str(get_field_value(header, currency_field) or "").strip().upper()
        if not currency or currency == base:
            continue
        raw_rate = get_field_value(header, fx_field)
        rate = to_number(raw_rate)
        if rate is None or rate <= 0:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name=fx_field,
                observed="(empty)" if is_empty(raw_rate) else str(raw_rate),
                expected="Positive FX rate",
                message=f"Invoice {_label(header)}: FX rate is required when currency is {currency} (base {base})",
            ))
    return exceptions


# ============================================================================
# Dates
# ============================================================================

@register_check("UAE-UC1-CHK-009")
def check_payment_due_date(check, data, params, tolerance):
    """
    A due date is required when an amount is due, and it cannot precede
    the issue date. Unparseable dates are left to the format rules.
    """
    exceptions = []
    for header in data.headers:
        amount_due = to_number(header.get("amount_due")) or 0.0
        due_raw = header.get("payment_due_date")
        if amount_due > 0 and is_empty(due_raw):
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="payment_due_date",
                observed="(empty)",
                expected="Required when amount_due > 0",
                message=(
                    f"Invoice {_label(header)}: Payment due date is required because amount due "
                    f"is {format_amount(amount_due)}"
                ),
            ))
        issue = parse_date(header.get("issue_date"))
        due = parse_date(due_raw)
        if issue is not None and due is not None and due < issue:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="payment_due_date",
                observed=str(due_raw),
                expected=f"On or after issue date {header.get('issue_date')}",
                message=(
                    f"Invoice {_label(header)}: Payment due date ({due_raw}) cannot be earlier "
                    f"than issue date ({header.get('issue_date')})"
                ),
            ))
    return exceptions


# ============================================================================
# Arithmetic Rules
# ============================================================================

@register_check("UAE-UC1-CHK-025", "header_totals_mismatch")
def check_header_totals(check, data, params, tolerance):
    """total_incl_vat must equal total_excl_vat + vat_total within tolerance."""
    tol = _tolerance(params, tolerance)
    exceptions = []
    for header in data.headers:
        incl = to_number(header.get("total_incl_vat"))
        excl = to_number(header.get("total_excl_vat"))
        vat = to_number(header.get("vat_total"))
        if incl is None or excl is None or vat is None:
            continue
        expected = excl + vat
        if abs(incl - expected) > tol:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="total_incl_vat",
                observed=format_amount(header.get("total_incl_vat")),
                expected=f"{expected:.2f}",
                message=(
                    f"Invoice {_label(header)}: Total with VAT ({format_amount(header.get('total_incl_vat'))}) "
                    f"!= Excl VAT ({format_amount(header.get('total_excl_vat'))}) + "
                    f"VAT ({format_amount(header.get('vat_total'))})"
                ),
            ))
    return exceptions


@register_check("UAE-UC1-CHK-021")
def check_line_sum_matches_header(check, data, params, tolerance):
    """The header net total must equal the sum of its lines' net amounts."""
    tol = _tolerance(params, tolerance)
    exceptions = []
    for header in data.headers:
        lines = data.lines_for(header.get("invoice_id"))
        line_sum = sum(to_number(line.get("line_total_excl_vat")) or 0.0 for line in lines)
        header_total = to_number(header.get("total_excl_vat")) or 0.0
        if abs(line_sum - header_total) > tol:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="total_excl_vat",
                observed=format_amount(header_total),
                expected=f"Sum of lines: {line_sum:.2f}",
                message=(
                    f"Invoice {_label(header)}: Header total ({format_amount(header_total)}) "
                    f"does not match sum of lines ({line_sum:.2f})"
                ),
            ))
    return exceptions


@register_check("UAE-UC1-CHK-029")
def check_vat_total_matches_lines(check, data, params, tolerance):
    tol = _tolerance(params, tolerance)
    exceptions = []
    for header in data.headers:
        lines = data.lines_for(header.get("invoice_id"))
        vat_sum = sum(to_number(line.get("vat_amount")) or 0.0 for line in lines)
        header_vat = to_number(header.get("vat_total")) or 0.0
        if abs(vat_sum - header_vat) > tol:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="vat_total",
                observed=format_amount(header_vat),
                expected=f"Sum of line VAT: {vat_sum:.2f}",
                message=(
                    f"Invoice {_label(header)}: VAT total ({format_amount(header_vat)}) does not "
                    f"match sum of line VAT amounts ({vat_sum:.2f})"
                ),
            ))
    return exceptions


@register_check("UAE-UC1-CHK-034", "line_totals_mismatch")
def check_line_net_amount(check, data, params, tolerance):
    """line_total_excl_vat must equal quantity * unit_price - line_discount."""
    tol = _tolerance(params, tolerance)
    exceptions = []
    for line in data.lines:
        quantity = to_number(line.get("quantity"))
        price = to_number(line.get("unit_price"))
        net = to_number(line.get("line_total_excl_vat"))
        if quantity is None or price is None or net is None:
            continue
        discount = to_number(line.get("line_discount")) or 0.0
        expected = quantity * price - discount
        if abs(net - expected) > tol:
            header = data.header_for(line)
            exceptions.append(make_exception(
                check,
                record=line,
                source="lines",
                header=header,
                field_name="line_total_excl_vat",
                observed=format_amount(line.get("line_total_excl_vat")),
                expected=(
                    f"({format_amount(line.get('quantity'))} x {format_amount(line.get('unit_price'))}) "
                    f"- {format_amount(discount)} = {expected:.2f}"
                ),
                message=(
                    f"Invoice {_label(header, line.get('invoice_id'))}, Line {line.get('line_number')}: "
                    f"Net amount ({format_amount(line.get('line_total_excl_vat'))}) != "
                    f"(Qty x Price) - Discount ({expected:.2f})"
                ),
            ))
    return exceptions


@register_check("UAE-UC1-CHK-028", "vat_calc_mismatch")
def check_line_vat(check, data, params, tolerance):
    """Line VAT must equal the line net times the VAT rate percentage."""
    tol = _tolerance(params, tolerance)
    exceptions = []
    for line in data.lines:
        base = to_number(line.get("line_total_excl_vat"))
        rate = to_number(line.get("vat_rate"))
        vat = to_number(line.get("vat_amount"))
        if base is None or rate is None or vat is None:
            continue
        expected = base * (rate / 100)
        if abs(vat - expected) > tol:
            header = data.header_for(line)
            exceptions.append(make_exception(
                check,
                record=line,
                source="lines",
                header=header,
                field_name="vat_amount",
                observed=format_amount(line.get("vat_amount")),
                expected=(
                    f"{format_amount(line.get('line_total_excl_vat'))} x "
                    f"({format_amount(line.get('vat_rate'))}/100) = {expected:.2f}"
                ),
                message=(
                    f"Invoice {_label(header, line.get('invoice_id'))}, Line {line.get('line_number')}: "
                    f"VAT amount ({format_amount(line.get('vat_amount'))}) != Base x Rate/100 ({expected:.2f})"
                ),
            ))
    return exceptions


@register_check("negative_without_credit_note")
def check_negative_without_credit_note(check, data, params, tolerance):
    """Negative line amounts are only allowed on credit notes."""
    exceptions = []
    for line in data.lines:
        net = to_number(line.get("line_total_excl_vat"))
        if net is None or net >= 0:
            continue
        header = data.header_for(line)
        if header is None:
            continue
        invoice_type = str(header.get("invoice_type") or "").strip()
        if invoice_type.upper() in CREDIT_NOTE_TYPES:
            continue
        exceptions.append(make_exception(
            check,
            record=line,
            source="lines",
            header=header,
            field_name="line_total_excl_vat",
            observed=invoice_type or "not specified",
            expected="Credit note invoice type",
            message=(
                f"Line {line.get('line_number')} has negative total ({format_amount(line.get('line_total_excl_vat'))}) "
                f'but invoice type is "{invoice_type or "not specified"}"'
            ),
        ))
    return exceptions


@register_check("mixed_vat_rates_no_total")
def check_mixed_vat_rates(check, data, params, tolerance):
    exceptions = []
    for header in data.headers:
        lines = data.lines_for(header.get("invoice_id"))
        rates = {to_number(line.get("vat_rate")) for line in lines}
        has_taxable_base = any((to_number(line.get("line_total_excl_vat")) or 0) > 0 for line in lines)
        vat_total = to_number(header.get("vat_total")) or 0.0
        if len(rates) > 1 and has_taxable_base and vat_total == 0:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="vat_total",
                observed=format_amount(vat_total),
                expected="non-zero when multiple VAT rates exist",
                message=(
                    f"Invoice {_label(header)} has {len(rates)} different VAT rates but vat_total "
                    f"is {format_amount(vat_total)}"
                ),
            ))
    return exceptions


# ============================================================================
# Structural & Cross-file Rules
# ============================================================================

@register_check("UAE-UC1-CHK-030")
def check_invoice_has_lines(check, data, params, tolerance):
    exceptions = []
    for header in data.headers:
        if not data.lines_for(header.get("invoice_id")):
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="lines",
                observed="0 lines",
                expected="≥1 line",
                message=f"Invoice {_label(header)}: No line items found. At least one line is required.",
            ))
    return exceptions


@register_check("UAE-UC1-CHK-027")
def check_tax_breakdown(check, data, params, tolerance):
    """Taxable invoices need a tax category and rate on the header or on at least one line."""
    exceptions = []
    for header in data.headers:
        lines = data.lines_for(header.get("invoice_id"))
        has_header_breakdown = (
            not is_empty(header.get("tax_category_code"))
            and header.get("tax_category_rate") is not None
        )
        has_line_breakdown = any(
            not is_empty(line.get("tax_category_code")) and line.get("vat_rate") is not None
            for line in lines
        )
        has_taxable_amount = (to_number(header.get("total_excl_vat")) or 0) > 0 or any(
            (to_number(line.get("line_total_excl_vat")) or 0) > 0 for line in lines
        )
        if has_taxable_amount and not has_header_breakdown and not has_line_breakdown:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="tax_breakdown",
                observed="missing",
                expected="At least one tax category breakdown",
                message=f"Invoice {_label(header)}: Missing tax breakdown details (category/rate)",
            ))
    return exceptions


@register_check("duplicate_invoice_number")
def check_duplicate_invoice_number(check, data, params, tolerance):
    """
    Invoice numbers must be unique per seller TRN.

    Both parts of the key are normalized, so "INV-001" and "inv 001" from
    the same seller collide. Every member of a colliding group is reported.
    """
    groups: dict[tuple[str, str], list[Record]] = {}
    for header in data.headers:
        number = normalize_invoice_number(header.get("invoice_number"))
        if not number:
            continue
        key = (normalize_trn(header.get("seller_trn")), number)
        groups.setdefault(key, []).append(header)

    exceptions = []
    for members in groups.values():
        if len(members) < 2:
            continue
        for header in members:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="invoice_number",
                observed=f"{len(members)} occurrences",
                expected="Unique per seller TRN",
                message=(
                    f'Duplicate invoice number "{header.get("invoice_number")}" for seller '
                    f"{header.get('seller_trn')}"
                ),
            ))
    return exceptions


@register_check("buyer_not_found")
def check_buyer_reference(check, data, params, tolerance):
    """Each header must reference a buyer present in the party records."""
    exceptions = []
    for header in data.headers:
        buyer_id = header.get("buyer_id")
        if is_empty(buyer_id):
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="buyer_id",
                observed="(empty)",
                expected="Buyer id present in buyers",
                message=f"Invoice {_label(header)}: buyer_id is missing",
            ))
        elif str(buyer_id) not in data.buyer_map:
            exceptions.append(make_exception(
                check,
                record=header,
                field_name="buyer_id",
                observed=str(buyer_id),
                expected="Buyer id present in buyers",
                message=f'Invoice {_label(header)}: buyer_id "{buyer_id}" not found in buyers file',
            ))
    return exceptions


@register_check("line_invoice_not_found")
def check_line_invoice_reference(check, data, params, tolerance):
    """Every line must resolve to a header through its invoice_id."""
    exceptions = []
    for line in data.lines:
        invoice_id = line.get("invoice_id")
        if is_empty(invoice_id) or data.header_for(line) is None:
            exceptions.append(make_exception(
                check,
                record=line,
                source="lines",
                field_name="invoice_id",
                observed="(empty)" if is_empty(invoice_id) else str(invoice_id),
                expected="Invoice id present in headers",
                message=f"Line {line.get('line_id') or line.get('line_number')}: invoice \"{invoice_id}\" not found in headers",
            ))
    return exceptions


# ============================================================================
# Generic Fallback
# ============================================================================

def _generic_presence(check, data, params):
    field_name = resolve_field_alias(params["field"])
    exceptions = []
    rows = dataset_for_field(field_name, check.scope, data)
    source = collection_name(rows, data)
    for record in rows:
        if is_empty(get_field_value(record, field_name)):
            exceptions.append(make_exception(
                check,
                record=record,
                header=data.header_for(record),
                source=source,
                field_name=field_name,
                observed="(empty)",
                expected="Required value",
                message=check.message_template or f'Missing required field "{field_name}" - {check.check_name}',
            ))
    return exceptions


def _generic_codelist(check, data, params):
    codelist = str(params["codelist"])
    codes = get_codelist(codelist)
    if codes is None:
        logger.warning(f"Check {check.check_id} skipped: unknown code list {codelist!r}")
        return []
    field_name = resolve_field_alias(params["field"])
    exceptions = []
    rows = dataset_for_field(field_name, check.scope, data)
    source = collection_name(rows, data)
    for record in rows:
        value = get_field_value(record, field_name)
        if not is_empty(value) and str(value).strip().upper() not in codes:
            exceptions.append(make_exception(
                check,
                record=record,
                header=data.header_for(record),
                source=source,
                field_name=field_name,
                observed=str(value),
                expected=f"Value from codelist: {codelist}",
                message=f'Field "{field_name}" has invalid value "{value}" for codelist {codelist}',
            ))
    return exceptions


def run_generic_check(check: CatalogCheck, data: DataContext) -> list[ComplianceException]:
    """Parameter-driven evaluation for Presence and CodeList checks without a bespoke evaluator."""
    params = check.parameters or {}
    if check.rule_type == RuleType.CODELIST:
        if _require_param(check, params, "field", "codelist"):
            return _generic_codelist(check, data, params)
        return []
    if check.rule_type == RuleType.PRESENCE:
        if _require_param(check, params, "field"):
            return _generic_presence(check, data, params)
        return []
    logger.warning(f"Check {check.check_id} skipped: no evaluator for rule type {check.rule_type.value}")
    return []


# ============================================================================
# Entry Points
# ============================================================================

def run_check(
    check: CatalogCheck,
    data: DataContext,
    tolerance: Optional[float] = None,
) -> list[ComplianceException]:
    """
    Run one catalog check against the data context.

    Args:
        check: Catalog check definition
        data: Data context with headers, lines and buyers
        tolerance: Numeric tolerance for amount comparisons; a `tolerance`
            parameter on the check wins over this value

    Returns:
        Exceptions in record order
    """
    data = require_context(data)
    effective = AMOUNT_TOLERANCE if tolerance is None else tolerance
    evaluator = CHECK_EVALUATORS.get(check.check_id)
    try:
        if evaluator is None:
            return run_generic_check(check, data)
        return evaluator(check, data, dict(check.parameters or {}), effective)
    except (TypeError, ValueError) as e:
        logger.warning(f"Check {check.check_id} skipped: unusable parameters ({e})")
        return []


_RECORD_CLASS_ORDER = {"headers": 0, "lines": 1, "buyers": 2}


def _record_class(exc: ComplianceException) -> int:
    return _RECORD_CLASS_ORDER.get(exc._record_source, 0)


def run_all_checks(
    checks: list[CatalogCheck],
    data: DataContext,
    tolerance: Optional[float] = None,
) -> list[ComplianceException]:
    """
    Run every enabled check and collect their exceptions.

    Output is ordered invoice-level first, then line-level, then
    party-level; within each class check order and record order are kept.
    """
    data = require_context(data)
    enabled = [check for check in checks if check.is_enabled]
    exceptions: list[ComplianceException] = []
    for check in enabled:
        exceptions.extend(run_check(check, data, tolerance))

    exceptions.sort(key=_record_class)
    logger.info(f"Ran {len(enabled)} catalog checks: {len(exceptions)} exceptions")
    return exceptions
