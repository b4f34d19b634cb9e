"""
Tests for the run orchestration module.

These tests verify complete check runs, the run summary and client
risk scoring.
"""

import pytest

from einvoice_qc.catalog import get_catalog_check
from einvoice_qc.context import DataContext, EngineInputError
from einvoice_qc.schemas import ComplianceException, CustomCheck, DatasetType, Severity
from einvoice_qc.validator import (
    calculate_health_score,
    calculate_risk_score,
    format_summary_text,
    get_top_failing_checks,
    run_compliance_checks,
    score_clients,
    summarize_run,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def totals_check():
    return get_catalog_check("UAE-UC1-CHK-025")


@pytest.fixture
def two_invoices(clean_header) -> DataContext:
    """Two invoices from the same seller; the second has a wrong gross total."""
    second = dict(clean_header, invoice_id="h2", invoice_number="INV-002", total_incl_vat=999)
    return DataContext.build(headers=[clean_header, second])


@pytest.fixture
def fuzzy_check() -> CustomCheck:
    return CustomCheck.model_validate({
        "id": "cust-fuzzy",
        "name": "Fuzzy duplicate",
        "rule_type": "fuzzy_duplicate",
        "parameters": {"vendor_similarity_threshold": 0.8},
    })


@pytest.fixture
def near_duplicates(clean_header) -> DataContext:
    first = dict(clean_header, seller_name="Acme Trading LLC")
    second = dict(clean_header, invoice_id="h2", invoice_number="INV-002", seller_name="Acme Trading L.L.C.",
                  issue_date="2025-01-16")
    return DataContext.build(headers=[first, second])


def _exception(check_id: str, severity: Severity = Severity.HIGH, **fields) -> ComplianceException:
    return ComplianceException(
        check_id=check_id,
        check_name=check_id.title(),
        severity=severity,
        message="failed",
        sla_target_hours=24,
        **fields,
    )


# ============================================================================
# Check Runs
# ============================================================================

class TestRunComplianceChecks:
    """Tests for complete check runs."""

    def test_clean_dataset(self, clean_context):
        result = run_compliance_checks(clean_context)
        assert result.exceptions == []
        assert result.flags == []
        assert result.summary.pass_rate_percent == 100.0
        assert result.summary.total_invoices_tested == 1
        [client] = result.summary.top_clients_by_risk
        assert client.health_score == 100

    def test_failing_invoice(self, two_invoices, totals_check):
        result = run_compliance_checks(two_invoices, catalog_checks=[totals_check])
        [exc] = result.exceptions
        assert exc.invoice_id == "h2"
        assert exc.dataset_type is None
        summary = result.summary
        assert summary.pass_rate_percent == 50.0
        assert summary.exceptions_by_severity == {"Critical": 1, "High": 0, "Medium": 0, "Low": 0}
        assert summary.top_failing_checks[0].check_id == "UAE-UC1-CHK-025"

    def test_direction_stamped_on_exceptions(self, two_invoices, totals_check):
        result = run_compliance_checks(two_invoices, catalog_checks=[totals_check], dataset_type="ap")
        assert [exc.dataset_type for exc in result.exceptions] == [DatasetType.AP]

    def test_search_checks_need_inbound_direction(self, near_duplicates, fuzzy_check):
        undirected = run_compliance_checks(near_duplicates, catalog_checks=[], custom_checks=[fuzzy_check])
        assert undirected.flags == []

        outbound = run_compliance_checks(
            near_duplicates, catalog_checks=[], custom_checks=[fuzzy_check], dataset_type=DatasetType.AR,
        )
        assert outbound.flags == []

        inbound = run_compliance_checks(
            near_duplicates, catalog_checks=[], custom_checks=[fuzzy_check], dataset_type=DatasetType.AP,
        )
        assert len(inbound.flags) == 2
        assert inbound.exceptions == []
        assert inbound.summary.investigation_flags == 2
        assert inbound.summary.pass_rate_percent == 100.0

    def test_unknown_direction_rejected(self, clean_context):
        with pytest.raises(EngineInputError):
            run_compliance_checks(clean_context, dataset_type="XX")

    def test_missing_context_rejected(self):
        with pytest.raises(EngineInputError):
            run_compliance_checks(None)

    def test_run_is_repeatable(self, two_invoices, totals_check):
        first = run_compliance_checks(two_invoices, catalog_checks=[totals_check])
        second = run_compliance_checks(two_invoices, catalog_checks=[totals_check])
        assert [e.expected_value for e in first.exceptions] == [e.expected_value for e in second.exceptions]
        assert first.summary.pass_rate_percent == second.summary.pass_rate_percent


# ============================================================================
# Scoring
# ============================================================================

class TestScoring:
    """Tests for risk and health scores."""

    def test_risk_weights(self):
        assert calculate_risk_score(1, 1, 1, 1) == 20
        assert calculate_risk_score(0, 0, 0, 0) == 0

    @pytest.mark.parametrize("risk, invoices, expected", [
        (0, 0, 100),
        (50, 0, 100),
        (10, 1, 80),
        (100, 1, 0),
        (5, 4, 98),
        (0, 10, 100),
    ])
    def test_health_score(self, risk, invoices, expected):
        assert calculate_health_score(risk, invoices) == expected

    def test_client_scores(self, two_invoices, totals_check):
        result = run_compliance_checks(two_invoices, catalog_checks=[totals_check])
        [client] = result.summary.top_clients_by_risk
        assert client.seller_trn == "100000000000003"
        assert client.client_name == "Acme Trading LLC"
        assert client.total_invoices == 2
        assert client.critical_count == 1
        assert client.risk_score == 10
        assert client.health_score == 90

    def test_exceptions_for_unknown_sellers_ignored(self, clean_context):
        exceptions = [_exception("X", Severity.CRITICAL, seller_trn="999999999999999")]
        [client] = score_clients(clean_context, exceptions)
        assert client.risk_score == 0

    def test_headers_without_seller_skipped(self):
        data = DataContext.build(headers=[{"invoice_id": "h1"}])
        assert score_clients(data, []) == []


# ============================================================================
# Summary
# ============================================================================

class TestSummary:
    """Tests for run summary aggregation."""

    def test_empty_dataset(self):
        summary = summarize_run(DataContext.build(), [])
        assert summary.pass_rate_percent == 100.0
        assert summary.total_invoices_tested == 0
        assert summary.exceptions_by_severity == {"Critical": 0, "High": 0, "Medium": 0, "Low": 0}

    def test_failures_counted_per_invoice(self, two_invoices):
        exceptions = [
            _exception("A", invoice_id="h2"),
            _exception("B", invoice_id="h2"),
            _exception("C", invoice_id="unknown"),
            _exception("D"),
        ]
        summary = summarize_run(two_invoices, exceptions)
        assert summary.pass_rate_percent == 50.0
        assert summary.total_exceptions == 4

    def test_pass_rate_rounded(self, clean_header):
        headers = [dict(clean_header, invoice_id=f"h{i}") for i in range(3)]
        summary = summarize_run(DataContext.build(headers), [_exception("A", invoice_id="h0")])
        assert summary.pass_rate_percent == 66.67

    def test_top_failing_checks(self):
        exceptions = [_exception("A"), _exception("B"), _exception("B"), _exception("C")]
        top = get_top_failing_checks(exceptions)
        assert [(c.check_id, c.count) for c in top] == [("B", 2), ("A", 1), ("C", 1)]
        assert len(get_top_failing_checks(exceptions, n=1)) == 1


class TestFormatSummary:
    """Tests for summary text formatting."""

    def test_format_summary_text(self, two_invoices, totals_check):
        result = run_compliance_checks(two_invoices, catalog_checks=[totals_check])
        text = format_summary_text(result.summary)
        assert "COMPLIANCE RUN SUMMARY" in text
        assert "Pass rate:                50.00%" in text
        assert "Critical: 1" in text
        assert "UAE-UC1-CHK-025" in text
        assert "risk 10, health 90" in text

    def test_clean_summary_omits_sections(self, clean_context):
        text = format_summary_text(run_compliance_checks(clean_context).summary)
        assert "By Severity" not in text
        assert "Investigation flags" not in text
        assert "Clients by Risk" not in text
