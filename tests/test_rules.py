"""
Tests for the catalog check evaluators and the seeded check pack.
"""

import pytest

from einvoice_qc.catalog import baseline_checks, default_check_pack, get_catalog_check, uae_uc1_check_pack
from einvoice_qc.context import DataContext, EngineInputError
from einvoice_qc.rules import (
    CHECK_EVALUATORS,
    count_decimals,
    dataset_for_field,
    get_registered_checks,
    resolve_field_alias,
    run_all_checks,
    run_check,
)
from einvoice_qc.schemas import CatalogCheck, CheckScope, RuleType, Severity


def _check(check_id: str) -> CatalogCheck:
    check = get_catalog_check(check_id)
    assert check is not None
    return check


def _fingerprint(exceptions):
    return [
        (e.check_id, e.invoice_id, e.line_id, e.buyer_id, e.field_name, e.observed_value, e.expected_value, e.message)
        for e in exceptions
    ]


# ============================================================================
# Catalog
# ============================================================================

class TestCatalog:

    def test_uc1_pack_ids(self):
        ids = [check.check_id for check in uae_uc1_check_pack()]
        assert len(ids) == 34
        assert len(set(ids)) == 34
        assert ids[0] == "UAE-UC1-CHK-001"
        assert ids[-1] == "UAE-UC1-CHK-034"

    def test_default_pack_baseline_opt_in(self):
        assert len(default_check_pack()) == 34
        assert len(default_check_pack(include_baseline=True)) == 34 + len(baseline_checks())

    def test_pack_copies_are_independent(self):
        first = uae_uc1_check_pack()
        first[0].is_enabled = False
        assert uae_uc1_check_pack()[0].is_enabled is True

    def test_lookup(self):
        check = get_catalog_check("UAE-UC1-CHK-025")
        assert check.severity == Severity.CRITICAL
        assert check.reference_terms == ["IBT-109", "IBT-110", "IBT-112"]
        assert get_catalog_check("duplicate_invoice_number") is not None
        assert get_catalog_check("nope") is None

    def test_bespoke_checks_registered(self):
        for check_id in ("UAE-UC1-CHK-021", "UAE-UC1-CHK-025", "duplicate_invoice_number"):
            assert check_id in CHECK_EVALUATORS

    def test_registered_ids_belong_to_seeded_checks(self):
        seeded = {check.check_id for check in default_check_pack(include_baseline=True)}
        registered = {entry.check_id for entry in get_registered_checks()}
        assert registered <= seeded
        assert "UAE-UC1-CHK-006" in registered


# ============================================================================
# Helpers
# ============================================================================

class TestHelpers:

    def test_field_alias(self):
        assert resolve_field_alias("seller_endpoint") == "seller_electronic_address"
        assert resolve_field_alias("currency") == "currency"

    def test_dataset_for_field_prefix_wins(self, clean_context):
        assert dataset_for_field("buyer_name", CheckScope.HEADER, clean_context) is clean_context.buyers
        assert dataset_for_field("line_total_excl_vat", CheckScope.HEADER, clean_context) is clean_context.lines
        assert dataset_for_field("unit_of_measure", CheckScope.HEADER, clean_context) is clean_context.lines
        assert dataset_for_field("seller_name", CheckScope.LINES, clean_context) is clean_context.headers

    def test_dataset_for_field_scope_fallback(self, clean_context):
        assert dataset_for_field("vat_rate", CheckScope.LINES, clean_context) is clean_context.lines
        assert dataset_for_field("vat_rate", "Party", clean_context) is clean_context.buyers
        assert dataset_for_field("vat_rate", CheckScope.CROSS, clean_context) is clean_context.headers

    @pytest.mark.parametrize("value, expected", [
        ("100.50", 1),
        ("100.123", 3),
        (0.1, 1),
        (100.0, 0),
        (300, 0),
        ("abc", None),
        (None, None),
    ])
    def test_count_decimals(self, value, expected):
        assert count_decimals(value) == expected


# ============================================================================
# Entry Points
# ============================================================================

class TestRunChecks:

    def test_clean_dataset_passes_everything(self, clean_context):
        checks = default_check_pack(include_baseline=True)
        assert run_all_checks(checks, clean_context) == []

    def test_rejects_missing_context(self):
        with pytest.raises(EngineInputError):
            run_check(_check("UAE-UC1-CHK-001"), None)

    def test_rejects_wrong_type(self):
        with pytest.raises(EngineInputError):
            run_all_checks(default_check_pack(), {"headers": []})

    def test_empty_context_yields_nothing(self):
        assert run_all_checks(default_check_pack(include_baseline=True), DataContext.build()) == []

    def test_disabled_checks_skipped(self, clean_header, clean_lines, clean_buyer):
        clean_header["invoice_number"] = ""
        data = DataContext.build([clean_header], clean_lines, [clean_buyer])
        check = _check("UAE-UC1-CHK-001")
        assert len(run_all_checks([check], data)) == 1
        check.is_enabled = False
        assert run_all_checks([check], data) == []

    def test_idempotent(self, clean_header, clean_lines, clean_buyer):
        clean_header["total_incl_vat"] = 320
        clean_lines[1]["vat_amount"] = 11
        clean_buyer["buyer_trn"] = "ABC"
        data = DataContext.build([clean_header], clean_lines, [clean_buyer])
        checks = default_check_pack(include_baseline=True)
        first = run_all_checks(checks, data)
        second = run_all_checks(checks, data)
        assert first
        assert _fingerprint(first) == _fingerprint(second)

    def test_ordering_by_record_class(self, clean_header, clean_lines, clean_buyer):
        clean_buyer["buyer_name"] = ""
        clean_lines[0]["quantity"] = None
        clean_header["seller_name"] = ""
        data = DataContext.build([clean_header], clean_lines, [clean_buyer])
        exceptions = run_all_checks(uae_uc1_check_pack(), data)
        classes = [1 if e.line_id else (0 if e.invoice_id else 2) for e in exceptions]
        assert classes == sorted(classes)
        assert set(classes) == {0, 1, 2}

    def test_line_without_line_id_sorts_as_line_level(self, clean_header, clean_lines, clean_buyer):
        for line in clean_lines:
            del line["line_id"]
        clean_lines[0]["quantity"] = None
        clean_buyer["buyer_name"] = ""
        clean_header["seller_name"] = ""
        data = DataContext.build([clean_header], clean_lines, [clean_buyer])
        checks = [_check("UAE-UC1-CHK-017"), _check("UAE-UC1-CHK-032"), _check("UAE-UC1-CHK-012")]
        exceptions = run_all_checks(checks, data)
        assert [e.check_id for e in exceptions] == ["UAE-UC1-CHK-012", "UAE-UC1-CHK-032", "UAE-UC1-CHK-017"]
        assert exceptions[1].line_id is None
        assert exceptions[1].invoice_id == "h1"

    def test_misconfigured_check_does_not_abort_run(self, clean_header):
        clean_header["invoice_number"] = ""
        data = DataContext.build([clean_header])
        checks = [
            _check("UAE-UC1-CHK-022").model_copy(update={"parameters": {"field": "total_excl_vat", "max_decimals": "two"}}),
            _check("UAE-UC1-CHK-003").model_copy(update={"parameters": {"field": "issue_date", "pattern": 15}}),
            _check("UAE-UC1-CHK-016").model_copy(update={"parameters": {"allowed_values": 5}}),
            _check("UAE-UC1-CHK-001"),
        ]
        [exc] = run_all_checks(checks, data)
        assert exc.check_id == "UAE-UC1-CHK-001"
        assert exc.field_name == "invoice_number"

    def test_sla_and_linkage(self, clean_header, clean_lines, clean_buyer):
        clean_lines[1]["line_total_excl_vat"] = 210
        data = DataContext.build([clean_header], clean_lines, [clean_buyer])
        [exc] = run_check(_check("UAE-UC1-CHK-034"), data)
        assert exc.line_id == "l2"
        assert exc.invoice_id == "h1"
        assert exc.invoice_number == "INV-001"
        assert exc.seller_trn == "100000000000003"
        assert exc.sla_target_hours == 24
        assert exc.reference_terms == ["IBT-131", "IBT-146"]


# ============================================================================
# Arithmetic Rules
# ============================================================================

class TestArithmeticRules:

    def test_line_sum_matches_header(self, clean_context):
        assert run_check(_check("UAE-UC1-CHK-021"), clean_context) == []

    def test_line_sum_mismatch_single_header_exception(self, clean_header, clean_lines):
        clean_header["total_excl_vat"] = 199
        data = DataContext.build([clean_header], clean_lines, [])
        exceptions = run_check(_check("UAE-UC1-CHK-021"), data)
        assert len(exceptions) == 1
        exc = exceptions[0]
        assert exc.invoice_id == "h1"
        assert exc.line_id is None
        assert exc.observed_value == "199"
        assert exc.expected_value == "Sum of lines: 300.00"

    def test_line_side_mismatch_single_header_exception(self, clean_header, clean_lines):
        clean_lines[1]["line_total_excl_vat"] = 199
        data = DataContext.build([clean_header], clean_lines, [])
        [exc] = run_check(_check("UAE-UC1-CHK-021"), data)
        assert exc.invoice_id == "h1"
        assert exc.line_id is None
        assert exc.field_name == "total_excl_vat"
        assert exc.observed_value == "300"
        assert exc.expected_value == "Sum of lines: 299.00"

    @pytest.mark.parametrize("value", ["NaN", float("nan"), "inf", float("-inf"), "1e400"])
    def test_non_finite_totals_treated_as_missing(self, clean_header, value):
        clean_header["total_incl_vat"] = value
        assert run_check(_check("UAE-UC1-CHK-025"), DataContext.build([clean_header])) == []

    @pytest.mark.parametrize("value", ["NaN", float("inf"), "1e400"])
    def test_non_finite_line_amount_reported(self, clean_header, clean_lines, value):
        clean_lines[0]["line_total_excl_vat"] = value
        data = DataContext.build([clean_header], clean_lines)
        [exc] = run_check(_check("UAE-UC1-CHK-021"), data)
        assert exc.expected_value == "Sum of lines: 200.00"

    def test_header_totals(self, clean_header):
        clean_header["total_incl_vat"] = 320
        data = DataContext.build([clean_header])
        [exc] = run_check(_check("UAE-UC1-CHK-025"), data)
        assert exc.observed_value == "320"
        # Expected value is re-derivable from the record
        assert exc.expected_value == f"{clean_header['total_excl_vat'] + clean_header['vat_total']:.2f}"

    def test_header_totals_skip_missing_operand(self, clean_header):
        clean_header["total_incl_vat"] = 999
        del clean_header["vat_total"]
        assert run_check(_check("UAE-UC1-CHK-025"), DataContext.build([clean_header])) == []

    def test_header_totals_within_tolerance(self, clean_header):
        clean_header["total_incl_vat"] = 315.005
        assert run_check(_check("UAE-UC1-CHK-025"), DataContext.build([clean_header])) == []

    def test_caller_tolerance_used_without_check_parameter(self, clean_header):
        clean_header["total_incl_vat"] = 315.5
        check = _check("header_totals_mismatch")
        data = DataContext.build([clean_header])
        assert len(run_check(check, data)) == 1
        assert run_check(check, data, tolerance=1.0) == []

    def test_line_net_amount(self, clean_header, clean_lines):
        clean_lines[1]["line_total_excl_vat"] = 210
        data = DataContext.build([clean_header], clean_lines)
        [exc] = run_check(_check("UAE-UC1-CHK-034"), data)
        assert exc.expected_value == "(2 x 100) - 0 = 200.00"
        assert exc.observed_value == "210"

    def test_line_net_amount_with_discount(self, clean_header, clean_lines):
        clean_lines[1]["line_discount"] = 20
        clean_lines[1]["line_total_excl_vat"] = 180
        data = DataContext.build([clean_header], clean_lines)
        assert run_check(_check("UAE-UC1-CHK-034"), data) == []

    def test_line_vat(self, clean_header, clean_lines):
        clean_lines[0]["vat_amount"] = 6
        data = DataContext.build([clean_header], clean_lines)
        [exc] = run_check(_check("UAE-UC1-CHK-028"), data)
        assert exc.line_id == "l1"
        assert exc.expected_value == "100 x (5/100) = 5.00"

    def test_vat_total_matches_lines(self, clean_header, clean_lines):
        clean_header["vat_total"] = 20
        data = DataContext.build([clean_header], clean_lines)
        [exc] = run_check(_check("UAE-UC1-CHK-029"), data)
        assert exc.expected_value == "Sum of line VAT: 15.00"

    def test_negative_without_credit_note(self, clean_header, clean_lines):
        clean_lines[0]["line_total_excl_vat"] = -100
        data = DataContext.build([clean_header], clean_lines)
        [exc] = run_check(_check("negative_without_credit_note"), data)
        assert exc.observed_value == "380"

        clean_header["invoice_type"] = "381"
        data = DataContext.build([clean_header], clean_lines)
        assert run_check(_check("negative_without_credit_note"), data) == []

    def test_mixed_vat_rates_without_total(self, clean_header, clean_lines):
        clean_lines[1]["vat_rate"] = 0
        clean_header["vat_total"] = 0
        data = DataContext.build([clean_header], clean_lines)
        [exc] = run_check(_check("mixed_vat_rates_no_total"), data)
        assert exc.field_name == "vat_total"


# ============================================================================
# Presence & Format Rules
# ============================================================================

class TestPresenceAndFormatRules:

    def test_header_presence(self, clean_header):
        clean_header["issue_date"] = "  "
        [exc] = run_check(_check("UAE-UC1-CHK-002"), DataContext.build([clean_header]))
        assert exc.field_name == "issue_date"
        assert exc.observed_value == "(empty)"

    def test_missing_parameter_skips_check(self, clean_header):
        check = _check("UAE-UC1-CHK-001")
        check.parameters = {}
        clean_header["invoice_number"] = None
        assert run_check(check, DataContext.build([clean_header])) == []

    def test_date_format(self, clean_header):
        clean_header["issue_date"] = "15/01/2025"
        [exc] = run_check(_check("UAE-UC1-CHK-003"), DataContext.build([clean_header]))
        assert exc.observed_value == "15/01/2025"

    def test_invalid_regex_skips_check(self, clean_header):
        check = _check("UAE-UC1-CHK-003")
        check.parameters = {"field": "issue_date", "pattern": "("}
        assert run_check(check, DataContext.build([clean_header])) == []

    def test_currency_codelist(self, clean_header):
        clean_header["currency"] = "XYZ"
        [exc] = run_check(_check("UAE-UC1-CHK-006"), DataContext.build([clean_header]))
        assert exc.expected_value == "Valid ISO4217 code"

    def test_tax_currency_required_for_foreign_currency(self, clean_header):
        clean_header["currency"] = "USD"
        [exc] = run_check(_check("UAE-UC1-CHK-007"), DataContext.build([clean_header]))
        assert exc.expected_value == "AED"

        clean_header["tax_currency"] = "AED"
        assert run_check(_check("UAE-UC1-CHK-007"), DataContext.build([clean_header])) == []

    def test_fx_rate(self, clean_header):
        clean_header["currency"] = "USD"
        [exc] = run_check(_check("UAE-UC1-CHK-008"), DataContext.build([clean_header]))
        assert exc.observed_value == "(empty)"

        clean_header["fx_rate"] = 3.6725
        assert run_check(_check("UAE-UC1-CHK-008"), DataContext.build([clean_header])) == []

    def test_payment_due_date(self, clean_header):
        clean_header["payment_due_date"] = "2025-01-01"
        [exc] = run_check(_check("UAE-UC1-CHK-009"), DataContext.build([clean_header]))
        assert exc.observed_value == "2025-01-01"

        del clean_header["payment_due_date"]
        [exc] = run_check(_check("UAE-UC1-CHK-009"), DataContext.build([clean_header]))
        assert exc.observed_value == "(empty)"

    def test_allowed_values(self, clean_header):
        clean_header["seller_subdivision"] = "AE-XX"
        [exc] = run_check(_check("UAE-UC1-CHK-016"), DataContext.build([clean_header]))
        assert "AE-DU" in exc.expected_value

    def test_seller_trn_format(self, clean_header):
        clean_header["seller_trn"] = "12345"
        [exc] = run_check(_check("UAE-UC1-CHK-013"), DataContext.build([clean_header]))
        assert exc.observed_value == "12345"

    def test_buyer_trn_format_and_missing(self, clean_buyer):
        clean_buyer["buyer_trn"] = "ABC"
        data = DataContext.build(buyers=[clean_buyer])
        [exc] = run_check(_check("UAE-UC1-CHK-018"), data)
        assert exc.buyer_id == "b1"
        assert exc.invoice_id is None

        clean_buyer["buyer_trn"] = ""
        data = DataContext.build(buyers=[clean_buyer])
        assert run_check(_check("UAE-UC1-CHK-018"), data) == []
        assert len(run_check(_check("buyer_trn_missing"), data)) == 1

    def test_decimal_precision(self, clean_header):
        clean_header["total_excl_vat"] = "300.123"
        [exc] = run_check(_check("UAE-UC1-CHK-022"), DataContext.build([clean_header]))
        assert exc.observed_value == "300.123 (3 decimals)"
        assert exc.expected_value == "Max 2 decimals"

    def test_seller_address_alias(self, clean_header):
        del clean_header["seller_address"]
        [exc] = run_check(_check("UAE-UC1-CHK-015"), DataContext.build([clean_header]))
        assert exc.field_name == "seller_address"

    def test_line_presence(self, clean_header, clean_lines):
        clean_lines[0]["line_number"] = None
        clean_lines[1]["quantity"] = ""
        data = DataContext.build([clean_header], clean_lines)
        assert [e.line_id for e in run_check(_check("UAE-UC1-CHK-031"), data)] == ["l1"]
        assert [e.line_id for e in run_check(_check("UAE-UC1-CHK-032"), data)] == ["l2"]


# ============================================================================
# Generic Fallback
# ============================================================================

class TestGenericFallback:

    def test_generic_presence_uses_alias(self, clean_header):
        del clean_header["seller_electronic_address"]
        [exc] = run_check(_check("UAE-UC1-CHK-014"), DataContext.build([clean_header]))
        assert exc.field_name == "seller_electronic_address"
        assert exc.message == 'Missing required field "seller_electronic_address" - Seller Electronic Address Present'

    def test_generic_presence_on_parties(self, clean_buyer):
        del clean_buyer["buyer_electronic_address"]
        [exc] = run_check(_check("UAE-UC1-CHK-019"), DataContext.build(buyers=[clean_buyer]))
        assert exc.buyer_id == "b1"

    def test_generic_codelist_on_lines(self, clean_header, clean_lines):
        clean_lines[1]["unit_of_measure"] = "BOX"
        data = DataContext.build([clean_header], clean_lines)
        [exc] = run_check(_check("UAE-UC1-CHK-033"), data)
        assert exc.line_id == "l2"
        assert exc.invoice_number == "INV-001"
        assert exc.expected_value == "Value from codelist: UNECERec20"

    def test_unknown_codelist_skips(self, clean_lines):
        check = CatalogCheck(
            check_id="T-1", check_name="Unit code", scope=CheckScope.LINES, rule_type=RuleType.CODELIST,
            severity=Severity.LOW, parameters={"field": "unit_of_measure", "codelist": "NOPE"},
        )
        assert run_check(check, DataContext.build(lines=clean_lines)) == []

    def test_unsupported_rule_type_skips(self, clean_header):
        check = CatalogCheck(
            check_id="T-2", check_name="Something", rule_type=RuleType.MATH, severity=Severity.LOW,
        )
        assert run_check(check, DataContext.build([clean_header])) == []

    def test_message_template(self, clean_header):
        check = CatalogCheck(
            check_id="T-3", check_name="Has PO", rule_type=RuleType.PRESENCE, severity=Severity.LOW,
            message_template="Purchase order reference is missing", parameters={"field": "po_reference"},
        )
        [exc] = run_check(check, DataContext.build([clean_header]))
        assert exc.message == "Purchase order reference is missing"


# ============================================================================
# Structural & Cross-file Rules
# ============================================================================

class TestStructuralRules:

    def test_invoice_without_lines(self, clean_header):
        data = DataContext.build([clean_header])
        [exc] = run_check(_check("UAE-UC1-CHK-030"), data)
        assert exc.observed_value == "0 lines"

    def test_tax_breakdown(self, clean_header, clean_lines):
        del clean_header["tax_category_code"]
        for line in clean_lines:
            del line["tax_category_code"]
        data = DataContext.build([clean_header], clean_lines)
        assert len(run_check(_check("UAE-UC1-CHK-027"), data)) == 1

    def test_duplicate_invoice_numbers_normalized(self, clean_header):
        a = dict(clean_header, invoice_id="h1", invoice_number="INV-001")
        b = dict(clean_header, invoice_id="h2", invoice_number="inv 001")
        c = dict(clean_header, invoice_id="h3", invoice_number="INV-002")
        data = DataContext.build([a, b, c])
        exceptions = run_check(_check("duplicate_invoice_number"), data)
        assert [e.invoice_id for e in exceptions] == ["h1", "h2"]
        assert all(e.observed_value == "2 occurrences" for e in exceptions)

    def test_same_number_other_seller_is_not_duplicate(self, clean_header):
        a = dict(clean_header, invoice_id="h1")
        b = dict(clean_header, invoice_id="h2", seller_trn="100000000000099")
        assert run_check(_check("duplicate_invoice_number"), DataContext.build([a, b])) == []

    def test_buyer_not_found(self, clean_header, clean_buyer):
        clean_header["buyer_id"] = "b9"
        [exc] = run_check(_check("buyer_not_found"), DataContext.build([clean_header], buyers=[clean_buyer]))
        assert exc.observed_value == "b9"

    def test_orphan_line(self, clean_header, clean_lines):
        clean_lines[1]["invoice_id"] = "h9"
        data = DataContext.build([clean_header], clean_lines)
        [exc] = run_check(_check("line_invoice_not_found"), data)
        assert exc.line_id == "l2"
        assert exc.observed_value == "h9"
