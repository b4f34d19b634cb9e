"""
Run orchestration for the compliance engine.

This module runs catalog checks, custom validation checks and pairwise
search checks over one data context, and produces the run summary and
per-client risk scores that accompany the findings.
"""

import math
from collections import Counter
from typing import Any, Iterable, Optional

from .catalog import default_check_pack
from .config import AMOUNT_TOLERANCE, RISK_WEIGHTS, logger
from .context import DataContext, require_context
from .custom_checks import parse_dataset_type, run_custom_checks, run_search_checks
from .rules import run_all_checks
from .schemas import (
    CatalogCheck,
    CheckRunResult,
    ClientRiskScore,
    ComplianceException,
    CustomCheck,
    FailingCheck,
    InvestigationFlag,
    RunSummary,
    Severity,
)

TOP_N = 10


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def run_compliance_checks(
    data: DataContext,
    catalog_checks: Optional[list[CatalogCheck]] = None,
    custom_checks: Optional[list[CustomCheck]] = None,
    dataset_type: Any = None,
    tolerance: Optional[float] = None,
) -> CheckRunResult:
    """
    Run one complete check pass over a data context.

    Args:
        data: Data context with headers, lines and buyers
        catalog_checks: Catalog checks to run (defaults to the UC1 pack)
        custom_checks: Tenant-authored checks; validation kinds raise
            exceptions, search kinds raise investigation flags
        dataset_type: AR or AP; stamped onto every exception and required
            for search checks to run
        tolerance: Amount tolerance for catalog checks

    Returns:
        CheckRunResult with exceptions, flags and the run summary
    """
    data = require_context(data)
    direction = parse_dataset_type(dataset_type) if dataset_type is not None else None
    catalog_checks = catalog_checks if catalog_checks is not None else default_check_pack()
    custom_checks = custom_checks or []

    logger.info(
        f"Starting check run: {len(data.headers)} invoices, {len(data.lines)} lines, "
        f"{len(data.buyers)} buyers"
    )

    exceptions = run_all_checks(catalog_checks, data, AMOUNT_TOLERANCE if tolerance is None else tolerance)
    exceptions.extend(run_custom_checks(custom_checks, data))
    if direction is not None:
        exceptions = [exc.model_copy(update={"dataset_type": direction}) for exc in exceptions]

    flags: list[InvestigationFlag] = []
    if direction is not None:
        flags = run_search_checks(custom_checks, data, direction)

    summary = summarize_run(data, exceptions, flags)
    logger.info(
        f"Check run complete: {summary.total_exceptions} exceptions, "
        f"{len(flags)} flags, pass rate {summary.pass_rate_percent}%"
    )
    return CheckRunResult(exceptions=exceptions, flags=flags, summary=summary)


# ============================================================================
# Client Risk Scoring
# ============================================================================

def calculate_risk_score(critical: int, high: int, medium: int, low: int) -> int:
    return (
        critical * RISK_WEIGHTS["Critical"]
        + high * RISK_WEIGHTS["High"]
        + medium * RISK_WEIGHTS["Medium"]
        + low * RISK_WEIGHTS["Low"]
    )


def calculate_health_score(risk_score: int, total_invoices: int) -> int:
    """Map a risk score to 0-100; each risk point per invoice costs two points."""
    if total_invoices == 0:
        return 100
    return max(0, min(100, _round_half_up(100 - (risk_score / total_invoices) * 2)))


def score_clients(data: DataContext, exceptions: Iterable[ComplianceException]) -> list[ClientRiskScore]:
    """
    Score every seller present in the headers.

    Exceptions are attributed by seller_trn; exceptions for sellers with no
    header are ignored.
    """
    data = require_context(data)
    sellers: dict[str, dict[str, Any]] = {}
    for header in data.headers:
        seller_trn = header.get("seller_trn")
        if seller_trn is None:
            continue
        entry = sellers.setdefault(str(seller_trn), {
            "name": header.get("seller_name"),
            "invoices": set(),
            "counts": Counter(),
        })
        entry["invoices"].add(str(header.get("invoice_id")))

    for exc in exceptions:
        if exc.seller_trn and exc.seller_trn in sellers:
            sellers[exc.seller_trn]["counts"][exc.severity] += 1

    scores = []
    for seller_trn, entry in sellers.items():
        counts = entry["counts"]
        critical = counts[Severity.CRITICAL]
        high = counts[Severity.HIGH]
        medium = counts[Severity.MEDIUM]
        low = counts[Severity.LOW]
        risk = calculate_risk_score(critical, high, medium, low)
        scores.append(ClientRiskScore(
            seller_trn=seller_trn,
            client_name=str(entry["name"]) if entry["name"] is not None else None,
            risk_score=risk,
            health_score=calculate_health_score(risk, len(entry["invoices"])),
            critical_count=critical,
            high_count=high,
            medium_count=medium,
            low_count=low,
            total_exceptions=critical + high + medium + low,
            total_invoices=len(entry["invoices"]),
        ))
    return scores


# ============================================================================
# Run Summary
# ============================================================================

def get_top_failing_checks(exceptions: Iterable[ComplianceException], n: int = TOP_N) -> list[FailingCheck]:
    """Most frequent failing checks, ties kept in first-seen order."""
    counts: dict[str, FailingCheck] = {}
    for exc in exceptions:
        entry = counts.get(exc.check_id)
        if entry is None:
            counts[exc.check_id] = FailingCheck(check_id=exc.check_id, check_name=exc.check_name, count=1)
        else:
            entry.count += 1
    return sorted(counts.values(), key=lambda c: -c.count)[:n]


def summarize_run(
    data: DataContext,
    exceptions: list[ComplianceException],
    flags: Optional[list[InvestigationFlag]] = None,
) -> RunSummary:
    """
    Aggregate a run's findings.

    The pass rate is the share of tested invoices with no exception linked
    to them, rounded to two decimals; 100 when nothing was tested.
    """
    data = require_context(data)
    invoice_ids = {str(h.get("invoice_id")) for h in data.headers if h.get("invoice_id") is not None}
    total_invoices = len(data.headers)

    failed_ids = {exc.invoice_id for exc in exceptions if exc.invoice_id is not None} & invoice_ids
    if total_invoices > 0:
        pass_rate = round((total_invoices - len(failed_ids)) / total_invoices * 100, 2)
    else:
        pass_rate = 100.0

    by_severity = {severity.value: 0 for severity in Severity}
    for exc in exceptions:
        by_severity[exc.severity.value] += 1

    clients = sorted(score_clients(data, exceptions), key=lambda c: -c.risk_score)

    return RunSummary(
        total_invoices_tested=total_invoices,
        total_exceptions=len(exceptions),
        pass_rate_percent=max(0.0, min(100.0, pass_rate)),
        exceptions_by_severity=by_severity,
        top_failing_checks=get_top_failing_checks(exceptions),
        top_clients_by_risk=clients[:TOP_N],
        investigation_flags=len(flags or []),
    )


def format_summary_text(summary: RunSummary) -> str:
    """
    Format a RunSummary as human-readable text for CLI output.

    Args:
        summary: RunSummary to format

    Returns:
        Formatted string for display
    """
    lines = [
        "=" * 50,
        "COMPLIANCE RUN SUMMARY",
        "=" * 50,
        f"Invoices tested:          {summary.total_invoices_tested}",
        f"Exceptions raised:        {summary.total_exceptions}",
        f"Pass rate:                {summary.pass_rate_percent:.2f}%",
        "",
    ]

    if summary.investigation_flags > 0:
        lines.append(f"Investigation flags:      {summary.investigation_flags}")
        lines.append("")

    if summary.total_exceptions:
        lines.append("By Severity:")
        lines.append("-" * 40)
        for severity, count in summary.exceptions_by_severity.items():
            if count:
                lines.append(f"  {severity}: {count}")
        lines.append("")

    if summary.top_failing_checks:
        lines.append("Top Failing Checks:")
        lines.append("-" * 40)
        for check in summary.top_failing_checks:
            lines.append(f"  {check.check_id} ({check.check_name}): {check.count}")
        lines.append("")

    risky = [client for client in summary.top_clients_by_risk if client.risk_score > 0]
    if risky:
        lines.append("Clients by Risk:")
        lines.append("-" * 40)
        for client in risky:
            name = f" {client.client_name}" if client.client_name else ""
            lines.append(f"  {client.seller_trn}{name}: risk {client.risk_score}, health {client.health_score}")
        lines.append("")

    lines.append("=" * 50)

    return "\n".join(lines)
