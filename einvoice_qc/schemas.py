"""
Pydantic models for check definitions, findings and traceability results.

This module defines the core data structures used throughout the engine:
- Enumerations shared by checks and findings (severity, scope, rule type...)
- CatalogCheck and CustomCheck, the two check definition variants
- ComplianceException and InvestigationFlag, the engine's findings
- Registry, traceability and consistency models used for coverage reporting
- Run-level summary models
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from .config import SLA_HOURS_BY_SEVERITY


def _new_id() -> str:
    return uuid4().hex


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# Enumerations
# ============================================================================

class Severity(str, Enum):
    """Severity of a check and of the exceptions it raises."""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class CheckScope(str, Enum):
    """Record collection a catalog check is declared against."""
    HEADER = "Header"
    LINES = "Lines"
    PARTY = "Party"
    CROSS = "Cross"


class RuleType(str, Enum):
    """Evaluation family of a catalog check."""
    PRESENCE = "Presence"
    FORMAT = "Format"
    CODELIST = "CodeList"
    MATH = "Math"
    DEPENDENCY = "Dependency"
    CROSS_CHECK = "CrossCheck"


class OwnerTeam(str, Enum):
    ASP_OPS = "ASP Ops"
    CLIENT_FINANCE = "Client Finance"
    CLIENT_IT = "Client IT"
    BUYER_SIDE = "Buyer-side"


class CaseStatus(str, Enum):
    """Case-workflow status of an exception."""
    OPEN = "Open"
    IN_REVIEW = "In Review"
    RESOLVED = "Resolved"
    WAIVED = "Waived"


class DatasetType(str, Enum):
    """Direction of a dataset: outbound (AR) or inbound (AP)."""
    AR = "AR"
    AP = "AP"


class CheckType(str, Enum):
    VALIDATION = "VALIDATION"
    SEARCH_CHECK = "SEARCH_CHECK"


class CustomRuleType(str, Enum):
    """Rule kinds of tenant-authored checks."""
    MISSING = "missing"
    DUPLICATE = "duplicate"
    MATH = "math"
    REGEX = "regex"
    CUSTOM_FORMULA = "custom_formula"
    FUZZY_DUPLICATE = "fuzzy_duplicate"
    INVOICE_NUMBER_VARIANT = "invoice_number_variant"
    TRN_FORMAT_SIMILARITY = "trn_format_similarity"


SEARCH_RULE_TYPES: frozenset[CustomRuleType] = frozenset({
    CustomRuleType.FUZZY_DUPLICATE,
    CustomRuleType.INVOICE_NUMBER_VARIANT,
    CustomRuleType.TRN_FORMAT_SIMILARITY,
})


class DatasetScope(str, Enum):
    """Dataset a custom check runs against."""
    HEADER = "header"
    LINES = "lines"
    BUYERS = "buyers"
    CROSS_FILE = "cross-file"


class CoverageStatus(str, Enum):
    """How completely a requirement is mapped, validated and controlled."""
    NOT_IN_TEMPLATE = "NOT_IN_TEMPLATE"
    NO_RULE = "NO_RULE"
    NO_CONTROL = "NO_CONTROL"
    COVERED = "COVERED"


# ============================================================================
# Check Definitions
# ============================================================================

class CatalogCheck(BaseModel):
    """
    A check from the jurisdiction catalog.

    The check_id selects the evaluation logic; checks without a bespoke
    evaluator fall back to generic Presence / CodeList handling driven by
    their parameters.
    """
    check_id: str = Field(..., min_length=1, description="Catalog identifier, e.g. UAE-UC1-CHK-001")
    check_name: str = Field(..., description="Human-readable check name")
    description: Optional[str] = Field(None, description="What the check verifies")
    scope: CheckScope = Field(CheckScope.HEADER, description="Declared record scope")
    rule_type: RuleType = Field(RuleType.PRESENCE, description="Evaluation family")
    severity: Severity = Field(..., description="Severity of raised exceptions")
    use_case: Optional[str] = Field(None, description="Use case the check applies to")
    reference_terms: list[str] = Field(
        default_factory=list,
        description="Requirement (DR) ids this check traces to",
    )
    owner_team_default: OwnerTeam = Field(OwnerTeam.CLIENT_FINANCE, description="Default owning team")
    sla_hours_by_severity: dict[Severity, int] = Field(
        default_factory=lambda: {Severity(k): v for k, v in SLA_HOURS_BY_SEVERITY.items()},
        description="SLA target hours per severity",
    )
    suggested_fix: Optional[str] = Field(None, description="Remediation hint copied onto exceptions")
    message_template: Optional[str] = Field(None, description="Message used by generic evaluators")
    is_enabled: bool = Field(True, description="Operator toggle")
    parameters: dict[str, Any] = Field(default_factory=dict, description="Rule-type specific parameters")

    @property
    def sla_target_hours(self) -> int:
        return self.sla_hours_by_severity.get(
            self.severity, SLA_HOURS_BY_SEVERITY[self.severity.value]
        )


class CustomCheckParameters(BaseModel):
    """Parameter bag of a custom check; which keys matter depends on rule_type."""
    # missing / regex
    field: Optional[str] = None
    # duplicate
    fields: Optional[list[str]] = None
    # math
    left_expression: Optional[str] = None
    operator: Optional[str] = None
    right_expression: Optional[str] = None
    tolerance: Optional[float] = None
    # regex
    pattern: Optional[str] = None
    # custom_formula
    formula: Optional[str] = None
    # conditional filter for all validation kinds
    condition: Optional[str] = None
    # search checks
    vendor_similarity_threshold: Optional[float] = None
    invoice_number_similarity_threshold: Optional[float] = None
    trn_distance_threshold: Optional[int] = None
    date_window_days: Optional[int] = None
    amount_tolerance: Optional[float] = None

    model_config = {"extra": "allow"}


class CustomCheck(BaseModel):
    """A tenant-authored, parameterized check."""
    id: Optional[str] = Field(None, description="Check identifier")
    name: str = Field(..., description="Check name")
    description: Optional[str] = None
    severity: Severity = Field(Severity.MEDIUM, description="Severity of raised exceptions")
    check_type: CheckType = Field(CheckType.VALIDATION, description="Validation or pairwise search")
    dataset_scope: DatasetScope = Field(DatasetScope.HEADER, description="Dataset to evaluate")
    rule_type: CustomRuleType = Field(..., description="Rule kind")
    parameters: CustomCheckParameters = Field(default_factory=CustomCheckParameters)
    message_template: str = Field("", description="Message with {field} placeholders")
    is_active: bool = Field(True, description="Operator toggle")

    @property
    def is_search(self) -> bool:
        return self.check_type == CheckType.SEARCH_CHECK or self.rule_type in SEARCH_RULE_TYPES

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "cust-001",
                    "name": "Net + VAT = Gross",
                    "severity": "High",
                    "dataset_scope": "header",
                    "rule_type": "math",
                    "parameters": {
                        "left_expression": "{total_excl_vat} + {vat_total}",
                        "operator": "=",
                        "right_expression": "{total_incl_vat}",
                        "tolerance": 0.01,
                    },
                    "message_template": "Invoice {invoice_number}: {left} != {right}",
                    "is_active": True,
                }
            ]
        }
    }


# ============================================================================
# Findings
# ============================================================================

class ComplianceException(BaseModel):
    """
    A hard validation failure tied to one record and one check.

    Observed and expected values are display strings. The SLA target is
    frozen from the severity at creation; only the case fields change later.
    """
    id: str = Field(default_factory=_new_id)
    timestamp: str = Field(default_factory=_utc_now)
    check_id: str
    check_name: str
    severity: Severity
    scope: Optional[str] = None
    rule_type: Optional[str] = None
    use_case: Optional[str] = None
    dataset_type: Optional[DatasetType] = None
    reference_terms: list[str] = Field(default_factory=list)
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    seller_trn: Optional[str] = None
    buyer_id: Optional[str] = None
    line_id: Optional[str] = None
    field_name: Optional[str] = None
    observed_value: Optional[str] = None
    expected_value: Optional[str] = None
    message: str
    suggested_fix: Optional[str] = None
    root_cause_category: str = "Unclassified"
    owner_team: Optional[OwnerTeam] = None
    sla_target_hours: int
    case_status: CaseStatus = CaseStatus.OPEN
    reason_code: Optional[str] = None

    # Collection the failing record came from: headers, lines or buyers
    _record_source: str = PrivateAttr(default="headers")

    @field_validator("invoice_id", "invoice_number", "seller_trn", "buyer_id", "line_id", mode="before")
    @classmethod
    def stringify_identifiers(cls, v: Any) -> Optional[str]:
        """Identifiers arrive from untyped records; keep them as strings."""
        if v is None:
            return None
        return str(v)


class InvestigationFlag(BaseModel):
    """A soft, confidence-scored lead produced by a pairwise search check."""
    id: str = Field(default_factory=_new_id)
    created_at: str = Field(default_factory=_utc_now)
    check_id: str
    check_name: str
    rule_type: CustomRuleType
    dataset_type: DatasetType
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    counterparty_name: Optional[str] = None
    matched_invoice_id: Optional[str] = None
    matched_invoice_number: Optional[str] = None
    confidence_score: int = Field(..., ge=0, le=100)
    message: str

    @field_validator("invoice_id", "invoice_number", "matched_invoice_id", "matched_invoice_number", mode="before")
    @classmethod
    def stringify_identifiers(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(v)


# ============================================================================
# Registries & Traceability
# ============================================================================

class RequirementEntry(BaseModel):
    """One data requirement (DR) from the business-term registry."""
    requirement_id: str
    business_term: str
    dataset: Optional[str] = Field(None, description="buyers, headers or lines; None when not placed")
    column_names: list[str] = Field(default_factory=list, description="Mapped template columns")
    mandatory: bool = False
    data_type: str = "Text"
    category: str = ""
    vat_law_status: str = ""
    data_responsibility: str = ""
    code_list: Optional[str] = None
    asp_derived: bool = False

    @property
    def is_new_in_spec(self) -> bool:
        return self.vat_law_status.strip().lower() == "new"


class RuleTraceEntry(BaseModel):
    """Link between an executable rule and the requirements it validates."""
    rule_id: str
    rule_name: str
    requirement_ids: list[str] = Field(default_factory=list)
    severity: str = ""
    scope: str = ""
    applies_when: Optional[str] = None


class ControlEntry(BaseModel):
    """An organizational safeguard covering one or more rules."""
    control_id: str
    control_name: str
    control_type: str = Field("detective", description="preventive or detective")
    description: str = ""
    covered_rule_ids: list[str] = Field(default_factory=list)
    covered_requirement_ids: list[str] = Field(
        default_factory=list,
        description="Derived from the covered rules' requirement ids",
    )


class ColumnPopulation(BaseModel):
    column: str
    total_rows: int = Field(..., ge=0)
    populated_count: int = Field(..., ge=0)
    population_pct: float = Field(..., ge=0, le=100)


class DatasetPopulation(BaseModel):
    dataset: str
    columns: list[ColumnPopulation] = Field(default_factory=list)

    def column_pct(self, column: str) -> Optional[float]:
        for col in self.columns:
            if col.column == column:
                return col.population_pct
        return None


class TraceabilityRow(BaseModel):
    """Per-requirement coverage row of the traceability matrix."""
    requirement_id: str
    business_term: str
    mandatory: bool
    vat_law_status: str = ""
    is_new_in_spec: bool = False
    dataset: Optional[str] = None
    column_names: list[str] = Field(default_factory=list)
    in_template: bool
    ingestible: bool
    population_pct: Optional[float] = None
    rule_ids: list[str] = Field(default_factory=list)
    rule_names: list[str] = Field(default_factory=list)
    control_ids: list[str] = Field(default_factory=list)
    control_names: list[str] = Field(default_factory=list)
    coverage_status: CoverageStatus
    category: str = ""
    data_responsibility: str = ""
    last_run_pass_rate: Optional[float] = None
    exception_count: int = 0

    @property
    def rule_count(self) -> int:
        return len(self.rule_ids)

    @property
    def control_count(self) -> int:
        return len(self.control_ids)


class GapsSummary(BaseModel):
    """Aggregate counts over all traceability rows."""
    total_requirements: int = 0
    mandatory_requirements: int = 0
    not_in_template: int = 0
    no_rule: int = 0
    no_control: int = 0
    covered: int = 0
    requirements_without_rules: int = 0
    requirements_without_controls: int = 0
    mandatory_not_in_template: int = 0
    mandatory_not_ingestible: int = 0
    mandatory_no_rule: int = 0
    mandatory_no_control: int = 0
    mandatory_low_population: int = 0
    population_threshold: float = 0.0


class ConformanceResult(BaseModel):
    rows: list[TraceabilityRow] = Field(default_factory=list)
    gaps: GapsSummary
    spec_version: str


class ReadinessReason(BaseModel):
    message: str
    action: str


class ReadinessResult(BaseModel):
    can_run: bool
    reasons: list[ReadinessReason] = Field(default_factory=list)


class ConsistencyIssue(BaseModel):
    level: str = Field(..., description="error, warning or info")
    category: str
    message: str
    affected_ids: list[str] = Field(default_factory=list)


class ConsistencyReport(BaseModel):
    issues: list[ConsistencyIssue] = Field(default_factory=list)
    passed: int = 0
    failed: int = 0
    timestamp: str = Field(default_factory=_utc_now)

    @property
    def blocks_export(self) -> bool:
        return any(issue.level == "error" for issue in self.issues)


# ============================================================================
# Run Results
# ============================================================================

class FailingCheck(BaseModel):
    check_id: str
    check_name: str
    count: int


class ClientRiskScore(BaseModel):
    seller_trn: str
    client_name: Optional[str] = None
    risk_score: int = 0
    health_score: int = 100
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    total_exceptions: int = 0
    total_invoices: int = 0


class RunSummary(BaseModel):
    """Aggregated statistics for one check run."""
    total_invoices_tested: int = Field(..., ge=0)
    total_exceptions: int = Field(..., ge=0)
    pass_rate_percent: float = Field(..., ge=0, le=100)
    exceptions_by_severity: dict[str, int] = Field(default_factory=dict)
    top_failing_checks: list[FailingCheck] = Field(default_factory=list)
    top_clients_by_risk: list[ClientRiskScore] = Field(default_factory=list)
    investigation_flags: int = 0


class CheckRunResult(BaseModel):
    """Complete output of a run: findings plus summary."""
    exceptions: list[ComplianceException] = Field(default_factory=list)
    flags: list[InvestigationFlag] = Field(default_factory=list)
    summary: RunSummary
