"""
Custom (tenant-authored) check engine.

Validation kinds (missing, duplicate, math, regex, custom_formula) emit
ComplianceExceptions. Search kinds (fuzzy_duplicate, invoice_number_variant,
trn_format_similarity) compare header records pairwise and emit
InvestigationFlags instead; they only run for inbound (AP) datasets.

Pairwise search is blocked before comparison: records are grouped by a
cheap key (amount bucket, identifier length) and only records in the same
or neighbouring groups are compared.
"""

import math
import re
from collections.abc import Iterable, Iterator
from typing import Any, Optional

from .config import AMOUNT_TOLERANCE, MAX_PAIRWISE_RECORDS, SEARCH_CHECK_DIRECTIONS, SLA_HOURS_BY_SEVERITY, logger
from .context import DataContext, EngineInputError, Record, get_field_value, is_empty, require_context
from .expressions import ExpressionError, evaluate_condition, evaluate_formula, evaluate_numeric
from .rules import parse_date, to_number
from .schemas import (
    ComplianceException,
    CustomCheck,
    CustomRuleType,
    DatasetScope,
    DatasetType,
    InvestigationFlag,
)
from .similarity import (
    edit_distance,
    normalize_invoice_number,
    normalize_key_part,
    normalize_trn,
    normalize_vendor_name,
    similarity,
)

_PLACEHOLDER = re.compile(r"\{([^}]+)\}")

# Accepted spellings of the math operators
_MATH_OPERATORS = {
    "=": "=", "==": "=",
    "!=": "!=", "≠": "!=",
    ">": ">", "<": "<",
    ">=": ">=", "≥": ">=",
    "<=": "<=", "≤": "<=",
}

DEFAULT_VENDOR_SIMILARITY = 0.9
DEFAULT_INVOICE_NUMBER_SIMILARITY = 0.85
DEFAULT_TRN_DISTANCE = 1
DEFAULT_DATE_WINDOW_DAYS = 3


# ============================================================================
# Helpers
# ============================================================================

def display_value(value: Any) -> str:
    """Render a value for messages; integral floats print without a fraction."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_message(template: str, record: Record, extra: Optional[dict[str, Any]] = None) -> str:
    """
    Fill {field} placeholders in a message template.

    Values come from `extra` first, then from the record; unresolved
    placeholders render as "(undefined)".
    """
    extra = extra or {}

    def replace(match: re.Match) -> str:
        name = match.group(1).strip()
        if extra.get(name) is not None:
            return display_value(extra[name])
        value = get_field_value(record, name)
        return display_value(value) if value is not None else "(undefined)"

    return _PLACEHOLDER.sub(replace, template)


def parse_dataset_type(value: Any) -> DatasetType:
    """Accept a DatasetType or its name in any case; anything else is an input error."""
    if isinstance(value, DatasetType):
        return value
    try:
        return DatasetType(str(value).strip().upper())
    except ValueError:
        raise EngineInputError(f"Unknown dataset type {value!r}; expected AP or AR") from None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _dataset(check: CustomCheck, data: DataContext) -> list[Record]:
    if check.dataset_scope == DatasetScope.BUYERS:
        return data.buyers
    if check.dataset_scope == DatasetScope.LINES:
        return data.lines
    return data.headers


def _make_exception(
    check: CustomCheck,
    data: DataContext,
    record: Record,
    message: str,
    field_name: Optional[str] = None,
    observed: Optional[str] = None,
    expected: Optional[str] = None,
) -> ComplianceException:
    header = data.header_for(record) or {}

    def pick(name: str) -> Any:
        value = header.get(name)
        return value if not is_empty(value) else record.get(name)

    return ComplianceException(
        check_id=check.id or "custom",
        check_name=check.name,
        severity=check.severity,
        scope=check.dataset_scope.value,
        rule_type=check.rule_type.value,
        invoice_id=record.get("invoice_id"),
        invoice_number=pick("invoice_number"),
        seller_trn=pick("seller_trn"),
        buyer_id=pick("buyer_id"),
        line_id=record.get("line_id"),
        field_name=field_name,
        observed_value=observed,
        expected_value=expected,
        message=message,
        sla_target_hours=SLA_HOURS_BY_SEVERITY[check.severity.value],
    )


def _message(check: CustomCheck, record: Record, extra: Optional[dict[str, Any]] = None) -> str:
    if check.message_template:
        return format_message(check.message_template, record, extra)
    return f"{check.name} failed"


def _missing_parameters(check: CustomCheck, *names: str) -> bool:
    params = check.parameters
    missing = [name for name in names if getattr(params, name, None) in (None, "", [])]
    if missing:
        logger.warning(f"Custom check {check.id or check.name} skipped: missing parameter(s) {', '.join(missing)}")
        return True
    return False


# ============================================================================
# Validation Kinds
# ============================================================================

def _run_missing(check, data, records):
    if _missing_parameters(check, "field"):
        return []
    params = check.parameters
    exceptions = []
    for record in records:
        if not evaluate_condition(params.condition, record):
            continue
        if is_empty(get_field_value(record, params.field)):
            exceptions.append(_make_exception(
                check, data, record, _message(check, record),
                field_name=params.field, observed="(empty)", expected="Required value",
            ))
    return exceptions


def _run_duplicate(check, data, records):
    """Group records by a normalized composite key; every member of a group of two or more is reported."""
    if _missing_parameters(check, "fields"):
        return []
    params = check.parameters
    groups: dict[tuple[str, ...], list[Record]] = {}
    for record in records:
        if not evaluate_condition(params.condition, record):
            continue
        key = tuple(normalize_key_part(f, get_field_value(record, f)) for f in params.fields)
        # An all-empty key is missing data, not a duplicate
        if not any(key):
            continue
        groups.setdefault(key, []).append(record)

    exceptions = []
    for members in groups.values():
        if len(members) < 2:
            continue
        for record in members:
            exceptions.append(_make_exception(
                check, data, record, _message(check, record, {"count": len(members)}),
                field_name=", ".join(params.fields),
                observed=f"{len(members)} duplicates",
                expected="Unique key",
            ))
    return exceptions


def compare_values(left: float, operator: str, right: float, tolerance: float) -> bool:
    """Apply a math operator; equality operators honour the tolerance."""
    if operator == "=":
        return abs(left - right) <= tolerance
    if operator == "!=":
        return abs(left - right) > tolerance
    if operator == ">":
        return left > right
    if operator == "<":
        return left < right
    if operator == ">=":
        return left >= right
    return left <= right


def _run_math(check, data, records):
    if _missing_parameters(check, "left_expression", "operator", "right_expression"):
        return []
    params = check.parameters
    operator = _MATH_OPERATORS.get(params.operator.strip())
    if operator is None:
        logger.warning(f"Custom check {check.id or check.name} skipped: unknown operator {params.operator!r}")
        return []
    tolerance = params.tolerance if params.tolerance is not None else AMOUNT_TOLERANCE

    exceptions = []
    for record in records:
        if not evaluate_condition(params.condition, record):
            continue
        left = evaluate_numeric(params.left_expression, record)
        right = evaluate_numeric(params.right_expression, record)
        if left is None or right is None:
            logger.debug(f"Custom check {check.id or check.name}: record skipped, expression not evaluable")
            continue
        if not compare_values(left, operator, right, tolerance):
            exceptions.append(_make_exception(
                check, data, record, _message(check, record, {"left": left, "right": right}),
                field_name=params.left_expression,
                observed=display_value(left),
                expected=f"{params.operator} {display_value(right)}",
            ))
    return exceptions


def _run_regex(check, data, records):
    if _missing_parameters(check, "field", "pattern"):
        return []
    params = check.parameters
    try:
        regex = re.compile(params.pattern)
    except re.error as e:
        logger.warning(f"Custom check {check.id or check.name} skipped: invalid pattern {params.pattern!r} ({e})")
        return []
    exceptions = []
    for record in records:
        if not evaluate_condition(params.condition, record):
            continue
        value = get_field_value(record, params.field)
        if is_empty(value):
            continue
        if not regex.search(str(value)):
            exceptions.append(_make_exception(
                check, data, record, _message(check, record),
                field_name=params.field,
                observed=display_value(value),
                expected=f"matches {params.pattern}",
            ))
    return exceptions


def _run_custom_formula(check, data, records):
    if _missing_parameters(check, "formula"):
        return []
    params = check.parameters
    exceptions = []
    for record in records:
        if not evaluate_condition(params.condition, record):
            continue
        try:
            result = evaluate_formula(params.formula, record)
        except ExpressionError as e:
            logger.debug(f"Custom check {check.id or check.name}: formula failed ({e})")
            exceptions.append(_make_exception(
                check, data, record,
                f"{check.name}: formula could not be evaluated ({e})",
                observed="evaluation error",
                expected=params.formula,
            ))
            continue
        if not result:
            exceptions.append(_make_exception(check, data, record, _message(check, record)))
    return exceptions


_VALIDATORS = {
    CustomRuleType.MISSING: _run_missing,
    CustomRuleType.DUPLICATE: _run_duplicate,
    CustomRuleType.MATH: _run_math,
    CustomRuleType.REGEX: _run_regex,
    CustomRuleType.CUSTOM_FORMULA: _run_custom_formula,
}


def run_custom_check(check: CustomCheck, data: DataContext) -> list[ComplianceException]:
    """
    Run one validation-kind custom check against its dataset scope.

    Search kinds return no exceptions here; use run_search_check.
    """
    data = require_context(data)
    if check.is_search:
        logger.debug(f"Custom check {check.id or check.name} is a search check; no exceptions produced")
        return []
    return _VALIDATORS[check.rule_type](check, data, _dataset(check, data))


def run_custom_checks(checks: Iterable[CustomCheck], data: DataContext) -> list[ComplianceException]:
    """Run every active validation-kind custom check, in the given order."""
    data = require_context(data)
    exceptions: list[ComplianceException] = []
    count = 0
    for check in checks:
        if not check.is_active or check.is_search:
            continue
        count += 1
        exceptions.extend(run_custom_check(check, data))
    logger.info(f"Ran {count} custom checks: {len(exceptions)} exceptions")
    return exceptions


# ============================================================================
# Search Kinds: Blocking
# ============================================================================

def _pairs_within(blocks: dict[int, list[int]], reach: int) -> Iterator[tuple[int, int]]:
    """
    Yield index pairs from blocks whose keys differ by at most `reach`.

    Pairs come out as (lower index, higher index); a pair may be yielded
    more than once when records share several neighbouring blocks.
    """
    for key in sorted(blocks):
        members = blocks[key]
        for position, a in enumerate(members):
            for b in members[position + 1:]:
                yield (min(a, b), max(a, b))
        for offset in range(1, reach + 1):
            for a in members:
                for b in blocks.get(key + offset, []):
                    yield (min(a, b), max(a, b))


def _amount_blocks(amounts: dict[int, float], tolerance: float) -> dict[int, list[int]]:
    width = tolerance if tolerance > 0 else 0.01
    blocks: dict[int, list[int]] = {}
    for index, amount in amounts.items():
        bucket = amount / width
        if math.isfinite(bucket):
            blocks.setdefault(math.floor(bucket), []).append(index)
    return blocks


def _length_blocks(values: dict[int, str]) -> dict[int, list[int]]:
    blocks: dict[int, list[int]] = {}
    for index, value in values.items():
        blocks.setdefault(len(value), []).append(index)
    return blocks


# ============================================================================
# Search Kinds: Pair Evaluation
# ============================================================================

def _fuzzy_duplicate_pairs(check, headers):
    params = check.parameters
    threshold = params.vendor_similarity_threshold
    if threshold is None:
        threshold = DEFAULT_VENDOR_SIMILARITY
    tolerance = params.amount_tolerance if params.amount_tolerance is not None else AMOUNT_TOLERANCE
    window = params.date_window_days if params.date_window_days is not None else DEFAULT_DATE_WINDOW_DAYS
    amount_field = getattr(params, "amount_field", None) or "total_incl_vat"

    vendors, amounts, dates = {}, {}, {}
    for index, header in enumerate(headers):
        vendor = normalize_vendor_name(header.get("seller_name"))
        amount = to_number(get_field_value(header, amount_field))
        issued = parse_date(header.get("issue_date"))
        if vendor and amount is not None and issued is not None:
            vendors[index], amounts[index], dates[index] = vendor, amount, issued

    for i, j in _pairs_within(_amount_blocks(amounts, tolerance), reach=1):
        if abs(amounts[i] - amounts[j]) > tolerance:
            continue
        if abs((dates[i] - dates[j]).days) > window:
            continue
        score = similarity(vendors[i], vendors[j])
        if score < threshold:
            continue
        confidence = min(100, _round_half_up((score * 100 + 100) / 2))
        yield i, j, confidence, {"similarity": round(score, 2)}


def _invoice_number_variant_pairs(check, headers):
    params = check.parameters
    threshold = params.invoice_number_similarity_threshold
    if threshold is None:
        threshold = DEFAULT_INVOICE_NUMBER_SIMILARITY

    numbers = {}
    for index, header in enumerate(headers):
        normalized = normalize_invoice_number(header.get("invoice_number"))
        if normalized:
            numbers[index] = normalized

    blocks = _length_blocks(numbers)
    lengths = sorted(blocks)
    for a, short in enumerate(lengths):
        for long in lengths[a:]:
            # similarity can never reach the threshold across this length gap
            if short < threshold * long:
                break
            for i in blocks[short]:
                for j in blocks[long]:
                    if i == j:
                        continue
                    i2, j2 = min(i, j), max(i, j)
                    left, right = headers[i2], headers[j2]
                    if str(left.get("invoice_number")) == str(right.get("invoice_number")):
                        continue
                    trn_left = normalize_trn(left.get("seller_trn"))
                    trn_right = normalize_trn(right.get("seller_trn"))
                    if trn_left and trn_right and trn_left != trn_right:
                        continue
                    score = similarity(numbers[i2], numbers[j2])
                    if score < threshold:
                        continue
                    yield i2, j2, _round_half_up(score * 100), {"similarity": round(score, 2)}


def _trn_format_similarity_pairs(check, headers):
    params = check.parameters
    max_distance = params.trn_distance_threshold if params.trn_distance_threshold is not None else DEFAULT_TRN_DISTANCE

    trns = {}
    for index, header in enumerate(headers):
        normalized = normalize_trn(header.get("seller_trn"))
        if normalized:
            trns[index] = normalized

    for i, j in _pairs_within(_length_blocks(trns), reach=max_distance):
        if str(headers[i].get("seller_trn")).strip() == str(headers[j].get("seller_trn")).strip():
            continue
        distance = edit_distance(trns[i], trns[j])
        if distance > max_distance:
            continue
        confidence = max(50, min(95, 95 - 15 * distance))
        yield i, j, confidence, {"distance": distance}


_SEARCHERS = {
    CustomRuleType.FUZZY_DUPLICATE: _fuzzy_duplicate_pairs,
    CustomRuleType.INVOICE_NUMBER_VARIANT: _invoice_number_variant_pairs,
    CustomRuleType.TRN_FORMAT_SIMILARITY: _trn_format_similarity_pairs,
}

_DEFAULT_FLAG_MESSAGES = {
    CustomRuleType.FUZZY_DUPLICATE: "Possible duplicate of invoice {matched_invoice_number} (vendor similarity {similarity})",
    CustomRuleType.INVOICE_NUMBER_VARIANT: "Invoice number resembles {matched_invoice_number} (similarity {similarity})",
    CustomRuleType.TRN_FORMAT_SIMILARITY: "Seller TRN {seller_trn} differs from {matched_seller_trn} by formatting or {distance} digit(s)",
}


def _flag(check, dataset_type, record, matched, confidence, details):
    extra = {
        "matched_invoice_id": matched.get("invoice_id"),
        "matched_invoice_number": matched.get("invoice_number"),
        "matched_seller_trn": matched.get("seller_trn"),
        "confidence": confidence,
        **details,
    }
    template = check.message_template or _DEFAULT_FLAG_MESSAGES[check.rule_type]
    return InvestigationFlag(
        check_id=check.id or "custom",
        check_name=check.name,
        rule_type=check.rule_type,
        dataset_type=dataset_type,
        invoice_id=record.get("invoice_id"),
        invoice_number=record.get("invoice_number"),
        counterparty_name=record.get("seller_name"),
        matched_invoice_id=matched.get("invoice_id"),
        matched_invoice_number=matched.get("invoice_number"),
        confidence_score=confidence,
        message=format_message(template, record, extra),
    )


def run_search_check(
    check: CustomCheck,
    data: DataContext,
    dataset_type: Any,
) -> list[InvestigationFlag]:
    """
    Run one pairwise search check over the header records.

    Args:
        check: A search-kind custom check
        data: Data context; only headers are compared
        dataset_type: AP or AR; other directions than the configured
            search directions produce no flags

    Returns:
        Two flags per matching pair (one from each record's side), in the
        order the pairs were found
    """
    data = require_context(data)
    direction = parse_dataset_type(dataset_type)
    if direction.value not in SEARCH_CHECK_DIRECTIONS or not check.is_search:
        return []
    searcher = _SEARCHERS.get(check.rule_type)
    if searcher is None:
        logger.warning(f"Search check {check.id or check.name} skipped: rule type {check.rule_type.value} is not a search kind")
        return []

    headers = data.headers
    if len(headers) > MAX_PAIRWISE_RECORDS:
        logger.warning(
            f"Search check {check.id or check.name} over {len(headers)} records exceeds the soft bound "
            f"of {MAX_PAIRWISE_RECORDS}"
        )

    seen: set[tuple[int, int]] = set()
    flags: list[InvestigationFlag] = []
    for i, j, confidence, details in searcher(check, headers):
        pair = (min(i, j), max(i, j))
        if pair in seen:
            continue
        seen.add(pair)
        left, right = headers[pair[0]], headers[pair[1]]
        flags.append(_flag(check, direction, left, right, confidence, details))
        flags.append(_flag(check, direction, right, left, confidence, details))
    return flags


def run_search_checks(
    checks: Iterable[CustomCheck],
    data: DataContext,
    dataset_type: Any,
) -> list[InvestigationFlag]:
    """Run every active search check and concatenate their flags."""
    flags: list[InvestigationFlag] = []
    count = 0
    for check in checks:
        if not check.is_active or not check.is_search:
            continue
        count += 1
        flags.extend(run_search_check(check, data, dataset_type))
    logger.info(f"Ran {count} search checks: {len(flags)} investigation flags")
    return flags
