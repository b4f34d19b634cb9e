"""
Coverage and traceability matrix.

Reconciles the requirement registry against column population, rule
traceability and control linkage. Every build recomputes all rows from
its inputs; nothing is cached between builds.
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any, Optional

from .config import (
    MANDATORY_MAPPING_COVERAGE_THRESHOLD,
    MANDATORY_POPULATION_THRESHOLD,
    POPULATION_WARNING_THRESHOLD,
    SPEC_VERSION_LABEL,
    logger,
)
from .context import DataContext
from .registry import (
    build_controls_registry,
    build_rule_traceability,
    controls_for_requirement,
    default_requirement_registry,
    is_requirement_ingestible,
    rules_for_requirement,
)
from .schemas import (
    ColumnPopulation,
    ComplianceException,
    ConformanceResult,
    ControlEntry,
    CoverageStatus,
    DatasetPopulation,
    GapsSummary,
    ReadinessReason,
    ReadinessResult,
    RequirementEntry,
    RuleTraceEntry,
    TraceabilityRow,
)

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")

DATASETS = ("buyers", "headers", "lines")


# ============================================================================
# Population
# ============================================================================

def is_populated(value: Any, data_type: Optional[str] = None) -> bool:
    """
    Decide whether a cell counts as populated.

    Blank cells never count. Number-typed columns must parse as a number
    and date-typed columns must start with YYYY-MM-DD.
    """
    if value is None:
        return False
    text = str(value).strip()
    if not text:
        return False
    kind = (data_type or "").lower()
    if "number" in kind or "decimal" in kind:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return True
        try:
            float(text)
        except ValueError:
            return False
        return True
    if "date" in kind:
        return bool(_DATE_PREFIX.match(text))
    return True


def compute_column_population(
    rows: list[Mapping[str, Any]],
    columns: Iterable[str],
    column_types: Optional[Mapping[str, str]] = None,
) -> list[ColumnPopulation]:
    """Population statistics for each column; an empty row set counts as fully populated."""
    column_types = column_types or {}
    result = []
    for column in columns:
        if not rows:
            result.append(ColumnPopulation(column=column, total_rows=0, populated_count=0, population_pct=100.0))
            continue
        populated = sum(1 for row in rows if is_populated(row.get(column), column_types.get(column)))
        result.append(ColumnPopulation(
            column=column,
            total_rows=len(rows),
            populated_count=populated,
            population_pct=populated / len(rows) * 100,
        ))
    return result


def _column_types(registry: Iterable[RequirementEntry]) -> dict[str, dict[str, str]]:
    types: dict[str, dict[str, str]] = {name: {} for name in DATASETS}
    for entry in registry:
        if entry.dataset in types:
            for column in entry.column_names:
                types[entry.dataset].setdefault(column, entry.data_type)
    return types


def compute_dataset_populations(
    data: Any,
    registry: Optional[list[RequirementEntry]] = None,
) -> list[DatasetPopulation]:
    """
    Population statistics for every non-empty dataset.

    Accepts a DataContext or a mapping of dataset name to rows. Columns are
    the union of keys across rows, in first-seen order; column data types
    come from the requirement registry.
    """
    if isinstance(data, DataContext):
        datasets = {"buyers": data.buyers, "headers": data.headers, "lines": data.lines}
    else:
        datasets = {name: data.get(name) or [] for name in DATASETS}
    types = _column_types(registry if registry is not None else default_requirement_registry())

    result = []
    for name in DATASETS:
        rows = datasets.get(name) or []
        if not rows:
            continue
        columns: list[str] = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)
        result.append(DatasetPopulation(
            dataset=name,
            columns=compute_column_population(rows, columns, types[name]),
        ))
    return result


def column_population_pct(populations: Iterable[DatasetPopulation], dataset: str, column: str) -> Optional[float]:
    for population in populations:
        if population.dataset == dataset:
            return population.column_pct(column)
    return None


# ============================================================================
# Coverage Classification
# ============================================================================

def compute_coverage_status(in_template: bool, rule_count: int, control_count: int) -> CoverageStatus:
    """NOT_IN_TEMPLATE, then NO_RULE, then NO_CONTROL; COVERED only when all three gates pass."""
    if not in_template:
        return CoverageStatus.NOT_IN_TEMPLATE
    if rule_count == 0:
        return CoverageStatus.NO_RULE
    if control_count == 0:
        return CoverageStatus.NO_CONTROL
    return CoverageStatus.COVERED


def requirement_run_stats(
    exceptions: Iterable[ComplianceException],
    total_records: int,
) -> dict[str, dict[str, int]]:
    """
    Per-requirement pass/fail counts from one run.

    A record fails a requirement when any exception tracing to that
    requirement names it. Returns {requirement_id: {"pass", "fail", "exceptions"}}.
    """
    failing: dict[str, set[str]] = {}
    counts: dict[str, int] = {}
    for exc in exceptions:
        record_key = exc.invoice_id or exc.buyer_id or exc.line_id or exc.id
        for requirement_id in exc.reference_terms:
            failing.setdefault(requirement_id, set()).add(record_key)
            counts[requirement_id] = counts.get(requirement_id, 0) + 1
    return {
        requirement_id: {
            "pass": max(total_records - len(records), 0),
            "fail": len(records),
            "exceptions": counts[requirement_id],
        }
        for requirement_id, records in failing.items()
    }


# ============================================================================
# Traceability Matrix
# ============================================================================

def _average_population(entry: RequirementEntry, populations: list[DatasetPopulation]) -> Optional[float]:
    if not entry.dataset or not entry.column_names or not populations:
        return None
    pcts = [
        pct for pct in (column_population_pct(populations, entry.dataset, c) for c in entry.column_names)
        if pct is not None
    ]
    if not pcts:
        return None
    return sum(pcts) / len(pcts)


def build_traceability_matrix(
    populations: Optional[list[DatasetPopulation]] = None,
    exception_counts: Optional[Mapping[str, Mapping[str, int]]] = None,
    requirements: Optional[list[RequirementEntry]] = None,
    rules: Optional[list[RuleTraceEntry]] = None,
    controls: Optional[list[ControlEntry]] = None,
) -> ConformanceResult:
    """
    Build one traceability row per requirement plus the gaps summary.

    Args:
        populations: Column population per dataset; None when no data is loaded
        exception_counts: Optional {requirement_id: {"pass", "fail"[, "exceptions"]}}
        requirements: Requirement registry (seeded registry when omitted)
        rules: Rule traceability (derived from the default pack when omitted)
        controls: Controls registry (seeded controls derived against `rules` when omitted)

    Returns:
        ConformanceResult with rows in registry order
    """
    requirements = requirements if requirements is not None else default_requirement_registry()
    rules = rules if rules is not None else build_rule_traceability()
    controls = controls if controls is not None else build_controls_registry(rules=rules)
    populations = populations or []

    rows: list[TraceabilityRow] = []
    gaps = GapsSummary(population_threshold=POPULATION_WARNING_THRESHOLD)

    for entry in requirements:
        linked_rules = rules_for_requirement(entry.requirement_id, rules)
        linked_controls = controls_for_requirement(entry.requirement_id, controls)
        in_template = bool(entry.column_names)
        ingestible = is_requirement_ingestible(entry)
        population_pct = _average_population(entry, populations) if in_template else None

        pass_rate: Optional[float] = None
        exception_count = 0
        counts = (exception_counts or {}).get(entry.requirement_id)
        if counts:
            total = counts.get("pass", 0) + counts.get("fail", 0)
            pass_rate = counts.get("pass", 0) / total * 100 if total > 0 else 100.0
            exception_count = counts.get("exceptions", counts.get("fail", 0))

        status = compute_coverage_status(in_template, len(linked_rules), len(linked_controls))
        rows.append(TraceabilityRow(
            requirement_id=entry.requirement_id,
            business_term=entry.business_term,
            mandatory=entry.mandatory,
            vat_law_status=entry.vat_law_status,
            is_new_in_spec=entry.is_new_in_spec,
            dataset=entry.dataset,
            column_names=list(entry.column_names),
            in_template=in_template,
            ingestible=ingestible,
            population_pct=population_pct,
            rule_ids=[rule.rule_id for rule in linked_rules],
            rule_names=[rule.rule_name for rule in linked_rules],
            control_ids=[control.control_id for control in linked_controls],
            control_names=[control.control_name for control in linked_controls],
            coverage_status=status,
            category=entry.category,
            data_responsibility=entry.data_responsibility,
            last_run_pass_rate=pass_rate,
            exception_count=exception_count,
        ))

        gaps.total_requirements += 1
        if status == CoverageStatus.NOT_IN_TEMPLATE:
            gaps.not_in_template += 1
        elif status == CoverageStatus.NO_RULE:
            gaps.no_rule += 1
        elif status == CoverageStatus.NO_CONTROL:
            gaps.no_control += 1
        else:
            gaps.covered += 1
        if not linked_rules:
            gaps.requirements_without_rules += 1
        if not linked_controls:
            gaps.requirements_without_controls += 1

        if entry.mandatory:
            gaps.mandatory_requirements += 1
            if not in_template:
                gaps.mandatory_not_in_template += 1
            elif not ingestible:
                gaps.mandatory_not_ingestible += 1
            if not linked_rules:
                gaps.mandatory_no_rule += 1
            if not linked_controls:
                gaps.mandatory_no_control += 1
            if population_pct is not None and population_pct < POPULATION_WARNING_THRESHOLD:
                gaps.mandatory_low_population += 1

    logger.info(
        f"Traceability matrix: {gaps.total_requirements} requirements, {gaps.covered} covered, "
        f"{gaps.mandatory_not_in_template} mandatory not in template"
    )
    return ConformanceResult(rows=rows, gaps=gaps, spec_version=SPEC_VERSION_LABEL)


# ============================================================================
# Run Readiness
# ============================================================================

def mandatory_mapping_coverage(rows: Iterable[TraceabilityRow]) -> float:
    """Percentage of customer-supplied mandatory requirements that are mapped to a column."""
    mandatory = [row for row in rows if row.mandatory and row.data_responsibility != "ASP"]
    if not mandatory:
        return 100.0
    return sum(1 for row in mandatory if row.in_template) / len(mandatory) * 100


def mandatory_population_pct(rows: Iterable[TraceabilityRow]) -> Optional[float]:
    """Average population of mandatory requirements; None when no data is loaded."""
    pcts = [row.population_pct for row in rows if row.mandatory and row.population_pct is not None]
    if not pcts:
        return None
    return sum(pcts) / len(pcts)


def check_run_readiness(
    has_mapping_profile: bool,
    mandatory_mapping_coverage_pct: float,
    mandatory_population: Optional[float],
) -> ReadinessResult:
    """Gate a check run on mapping presence, mandatory mapping coverage and mandatory population."""
    reasons: list[ReadinessReason] = []
    if not has_mapping_profile:
        reasons.append(ReadinessReason(
            message="No active mapping profile found.",
            action="Create a mapping profile",
        ))
    if mandatory_mapping_coverage_pct < MANDATORY_MAPPING_COVERAGE_THRESHOLD:
        reasons.append(ReadinessReason(
            message=(
                f"Mandatory requirement mapping coverage is {mandatory_mapping_coverage_pct:.0f}% "
                f"(required: {MANDATORY_MAPPING_COVERAGE_THRESHOLD:.0f}%)."
            ),
            action="Fix the mapping",
        ))
    if mandatory_population is not None and mandatory_population < MANDATORY_POPULATION_THRESHOLD:
        reasons.append(ReadinessReason(
            message=(
                f"Mandatory requirement population is {mandatory_population:.0f}% "
                f"(required: {MANDATORY_POPULATION_THRESHOLD:.0f}%)."
            ),
            action="Re-upload the data",
        ))
    return ReadinessResult(can_run=not reasons, reasons=reasons)


def readiness_from_matrix(result: ConformanceResult, has_mapping_profile: bool = True) -> ReadinessResult:
    """Readiness derived from a built matrix."""
    return check_run_readiness(
        has_mapping_profile,
        mandatory_mapping_coverage(result.rows),
        mandatory_population_pct(result.rows),
    )
