"""
Referential-integrity checks across the requirement registry, rule
traceability and controls registry. Run before any export: an error-level
issue blocks it, warnings do not.
"""

from typing import Optional

from .config import logger
from .registry import build_controls_registry, build_rule_traceability, default_requirement_registry
from .schemas import ConsistencyIssue, ConsistencyReport, ControlEntry, RequirementEntry, RuleTraceEntry

# Group, meta and derived terms that checks may reference although they are
# not customer requirements in the registry
NON_BLOCKING_REFERENCES = frozenset({
    "IBG-23",
    "IBG-25",
    "IBT-006",
    "IBT-007",
    "BTUAE-001",
    "BTUAE-002",
    "BTUAE-003",
    "BTUAE-004",
    "BTUAE-005",
})


def run_consistency_checks(
    requirements: Optional[list[RequirementEntry]] = None,
    rules: Optional[list[RuleTraceEntry]] = None,
    controls: Optional[list[ControlEntry]] = None,
) -> ConsistencyReport:
    """
    Cross-check the three catalogs and report every integrity problem found.

    Checks, in order:
    1. The registry defines at least one mandatory requirement
    2. Rules reference known requirement ids (meta terms only warn)
    3. Template column mappings belong to known requirement ids
    4. Mapped requirements with rules also have a control (warning)
    5. Controls reference known rule ids
    6. Mandatory requirements have at least one rule (warning)
    """
    requirements = requirements if requirements is not None else default_requirement_registry()
    rules = rules if rules is not None else build_rule_traceability()
    controls = controls if controls is not None else build_controls_registry(rules=rules)

    issues: list[ConsistencyIssue] = []
    passed = failed = 0

    requirement_ids = {entry.requirement_id for entry in requirements}
    mandatory = [entry for entry in requirements if entry.mandatory]

    # 1. Mandatory requirements present
    if mandatory:
        passed += 1
    else:
        issues.append(ConsistencyIssue(
            level="error",
            category="Registry Integrity",
            message="Requirement registry defines no mandatory requirements",
        ))
        failed += 1

    # 2. Rule -> requirement references
    invalid, non_blocking = [], []
    for rule in rules:
        for requirement_id in rule.requirement_ids:
            if requirement_id in requirement_ids:
                continue
            trace = f"{rule.rule_id} -> {requirement_id}"
            (non_blocking if requirement_id in NON_BLOCKING_REFERENCES else invalid).append(trace)
    if non_blocking:
        issues.append(ConsistencyIssue(
            level="warning",
            category="Rule-Requirement Integrity",
            message=f"{len(non_blocking)} rule reference(s) are outside the requirement registry (meta or derived terms)",
            affected_ids=non_blocking,
        ))
    if invalid:
        issues.append(ConsistencyIssue(
            level="error",
            category="Rule-Requirement Integrity",
            message=f"{len(invalid)} rule reference(s) point to requirement ids not in the registry",
            affected_ids=invalid,
        ))
    if invalid or non_blocking:
        failed += 1
    else:
        passed += 1

    # 3. Template columns -> requirements
    seen_ids: set[str] = set()
    orphans = []
    for entry in requirements:
        if not entry.column_names:
            continue
        if not entry.requirement_id.strip() or entry.requirement_id in seen_ids or not entry.dataset:
            orphans.append(entry.requirement_id or "(blank)")
        seen_ids.add(entry.requirement_id)
    if orphans:
        issues.append(ConsistencyIssue(
            level="error",
            category="Template-Requirement Integrity",
            message=f"{len(orphans)} template column mapping(s) reference invalid requirement ids",
            affected_ids=orphans,
        ))
        failed += 1
    else:
        passed += 1

    # 4. Rules without controls
    ruled = {rid for rule in rules for rid in rule.requirement_ids}
    controlled = {rid for control in controls for rid in control.covered_requirement_ids}
    uncontrolled = [
        entry.requirement_id
        for entry in requirements
        if entry.column_names and entry.requirement_id in ruled and entry.requirement_id not in controlled
    ]
    if uncontrolled:
        issues.append(ConsistencyIssue(
            level="warning",
            category="Coverage Integrity",
            message=f"{len(uncontrolled)} requirement(s) have rules but no control linked",
            affected_ids=uncontrolled,
        ))
        failed += 1
    else:
        passed += 1

    # 5. Control -> rule references
    rule_ids = {rule.rule_id for rule in rules}
    bad_controls = [
        f"{control.control_id} -> {rule_id}"
        for control in controls
        for rule_id in control.covered_rule_ids
        if rule_id not in rule_ids
    ]
    if bad_controls:
        issues.append(ConsistencyIssue(
            level="error",
            category="Control-Rule Integrity",
            message=f"{len(bad_controls)} control reference(s) point to rule ids not in the check pack",
            affected_ids=bad_controls,
        ))
        failed += 1
    else:
        passed += 1

    # 6. Mandatory requirements without rules
    unruled = [entry.requirement_id for entry in mandatory if entry.requirement_id not in ruled]
    if unruled:
        issues.append(ConsistencyIssue(
            level="warning",
            category="Mandatory Coverage",
            message=f"{len(unruled)} mandatory requirement(s) have no validation rule",
            affected_ids=unruled,
        ))
        failed += 1
    else:
        passed += 1

    report = ConsistencyReport(issues=issues, passed=passed, failed=failed)
    errors = sum(1 for issue in issues if issue.level == "error")
    if errors:
        logger.warning(f"Consistency check found {errors} blocking issue(s)")
    logger.info(f"Consistency check: {passed} passed, {failed} failed, {len(issues)} issue(s)")
    return report
