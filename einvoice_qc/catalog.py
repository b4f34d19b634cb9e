"""
Seeded check catalog.

The UAE PINT-AE UC1 pack (UAE-UC1-CHK-001 ... 034) plus the baseline
dataset checks that predate it. Definitions are data only; the evaluation
logic lives in rules.py and is selected by check_id.
"""

from typing import Any, Optional

from .config import CODELISTS, DATE_PATTERN, SPEC_ID_PATTERN
from .schemas import CatalogCheck, CheckScope, OwnerTeam, RuleType, Severity

UC1_USE_CASE = "UAE B2B Standard Invoice"
BASELINE_USE_CASE = "Dataset Baseline"


def _check(
    check_id: str,
    check_name: str,
    scope: CheckScope,
    rule_type: RuleType,
    severity: Severity,
    reference_terms: list[str],
    owner: OwnerTeam,
    suggested_fix: str,
    description: Optional[str] = None,
    use_case: str = UC1_USE_CASE,
    **parameters: Any,
) -> CatalogCheck:
    return CatalogCheck(
        check_id=check_id,
        check_name=check_name,
        description=description or check_name,
        scope=scope,
        rule_type=rule_type,
        severity=severity,
        use_case=use_case,
        reference_terms=reference_terms,
        owner_team_default=owner,
        suggested_fix=suggested_fix,
        parameters=parameters,
    )


H, L, P, X = CheckScope.HEADER, CheckScope.LINES, CheckScope.PARTY, CheckScope.CROSS
CRITICAL, HIGH, MEDIUM, LOW = Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW
FINANCE, IT, ASP, BUYER = OwnerTeam.CLIENT_FINANCE, OwnerTeam.CLIENT_IT, OwnerTeam.ASP_OPS, OwnerTeam.BUYER_SIDE


# ============================================================================
# UAE PINT-AE UC1 Pack
# ============================================================================

def uae_uc1_check_pack() -> list[CatalogCheck]:
    """Fresh copies of the UC1 checks, safe for callers to toggle."""
    return [
        # Header presence
        _check("UAE-UC1-CHK-001", "Invoice Number Present", H, RuleType.PRESENCE, CRITICAL,
               ["IBT-001"], IT, "Populate invoice_number for every invoice", field="invoice_number"),
        _check("UAE-UC1-CHK-002", "Issue Date Present", H, RuleType.PRESENCE, CRITICAL,
               ["IBT-002"], IT, "Populate issue_date for every invoice", field="issue_date"),
        _check("UAE-UC1-CHK-003", "Issue Date Format YYYY-MM-DD", H, RuleType.FORMAT, HIGH,
               ["IBT-002"], IT, "Export dates as ISO 8601 (YYYY-MM-DD)",
               field="issue_date", pattern=DATE_PATTERN),
        _check("UAE-UC1-CHK-004", "Invoice Type Code Present", H, RuleType.PRESENCE, CRITICAL,
               ["IBT-003"], IT, "Populate invoice_type with a UNTDID 1001 code", field="invoice_type"),
        _check("UAE-UC1-CHK-005", "Invoice Currency Present", H, RuleType.PRESENCE, CRITICAL,
               ["IBT-005"], IT, "Populate the invoice currency code", field="currency"),

        # Currency
        _check("UAE-UC1-CHK-006", "Invoice Currency ISO 4217", H, RuleType.CODELIST, HIGH,
               ["IBT-005"], IT, "Use a three-letter ISO 4217 currency code",
               field="currency", codelist="ISO4217"),
        _check("UAE-UC1-CHK-007", "Tax Accounting Currency Is AED", H, RuleType.DEPENDENCY, HIGH,
               ["IBT-006"], FINANCE, "Set tax_currency to AED on foreign-currency invoices",
               tax_currency="AED"),
        _check("UAE-UC1-CHK-008", "FX Rate Required For Foreign Currency", H, RuleType.DEPENDENCY, HIGH,
               ["IBT-007"], FINANCE, "Provide a positive fx_rate when currency is not AED",
               currency_field="currency", fx_field="fx_rate", base_currency="AED"),
        _check("UAE-UC1-CHK-009", "Payment Due Date Consistency", H, RuleType.DEPENDENCY, MEDIUM,
               ["IBT-009", "IBT-115"], FINANCE,
               "Provide a payment due date on or after the issue date when an amount is due"),

        # ASP metadata
        _check("UAE-UC1-CHK-010", "Specification Identifier", H, RuleType.FORMAT, MEDIUM,
               ["IBT-024"], ASP, "Set spec_id to the PINT-AE billing specification identifier",
               field="spec_id", pattern=SPEC_ID_PATTERN),
        _check("UAE-UC1-CHK-011", "Business Process Type", H, RuleType.CODELIST, MEDIUM,
               ["IBT-023"], ASP, "Use the PINT-AE billing business process identifier",
               field="business_process", allowed_values=["urn:peppol:bis:billing"]),

        # Seller
        _check("UAE-UC1-CHK-012", "Seller Name Present", H, RuleType.PRESENCE, CRITICAL,
               ["IBT-027"], IT, "Populate seller_name", field="seller_name"),
        _check("UAE-UC1-CHK-013", "Seller TRN Format", H, RuleType.FORMAT, CRITICAL,
               ["IBT-031"], FINANCE, "Seller TRN must be exactly 15 digits"),
        _check("UAE-UC1-CHK-014", "Seller Electronic Address Present", H, RuleType.PRESENCE, HIGH,
               ["IBT-034"], IT, "Populate the seller Peppol endpoint", field="seller_endpoint"),
        _check("UAE-UC1-CHK-015", "Seller Address Complete", H, RuleType.PRESENCE, HIGH,
               ["IBT-035", "IBT-037", "IBT-040"], IT, "Populate seller address, city and country",
               fields=["seller_street", "seller_city", "seller_country"]),
        _check("UAE-UC1-CHK-016", "Seller Subdivision Code", H, RuleType.CODELIST, MEDIUM,
               ["IBT-039"], IT, "Use a UAE emirate subdivision code (e.g. AE-DU)",
               field="seller_subdivision", allowed_values=sorted(CODELISTS["UAE_SUBDIVISIONS"])),

        # Buyer
        _check("UAE-UC1-CHK-017", "Buyer Name Present", P, RuleType.PRESENCE, CRITICAL,
               ["IBT-044"], BUYER, "Populate buyer_name in the buyers file"),
        _check("UAE-UC1-CHK-018", "Buyer TRN Format", P, RuleType.FORMAT, HIGH,
               ["IBT-048"], BUYER, "Buyer TRN, when present, must be exactly 15 digits"),
        _check("UAE-UC1-CHK-019", "Buyer Electronic Address Present", P, RuleType.PRESENCE, HIGH,
               ["IBT-049"], BUYER, "Populate the buyer Peppol endpoint", field="buyer_endpoint"),
        _check("UAE-UC1-CHK-020", "Buyer Address Complete", P, RuleType.PRESENCE, MEDIUM,
               ["IBT-050", "IBT-055"], BUYER, "Populate buyer address and country",
               fields=["buyer_address", "buyer_country"]),

        # Totals
        _check("UAE-UC1-CHK-021", "Sum Of Line Net Amounts Matches Header", X, RuleType.MATH, CRITICAL,
               ["IBT-106", "IBT-109", "IBT-131"], FINANCE,
               "Reconcile header total_excl_vat with the sum of line net amounts", tolerance=0.01),
        _check("UAE-UC1-CHK-022", "Total Excl VAT Decimal Precision", H, RuleType.FORMAT, LOW,
               ["IBT-109"], IT, "Round monetary amounts to 2 decimals",
               field="total_excl_vat", max_decimals=2),
        _check("UAE-UC1-CHK-023", "VAT Total Decimal Precision", H, RuleType.FORMAT, LOW,
               ["IBT-110"], IT, "Round monetary amounts to 2 decimals",
               field="vat_total", max_decimals=2),
        _check("UAE-UC1-CHK-024", "Total Incl VAT Decimal Precision", H, RuleType.FORMAT, LOW,
               ["IBT-112"], IT, "Round monetary amounts to 2 decimals",
               field="total_incl_vat", max_decimals=2),
        _check("UAE-UC1-CHK-025", "Total With VAT Equals Net Plus VAT", H, RuleType.MATH, CRITICAL,
               ["IBT-109", "IBT-110", "IBT-112"], FINANCE,
               "Recompute total_incl_vat as total_excl_vat + vat_total", tolerance=0.01),
        _check("UAE-UC1-CHK-026", "Amount Due Decimal Precision", H, RuleType.FORMAT, LOW,
               ["IBT-115"], IT, "Round monetary amounts to 2 decimals",
               field="amount_due", max_decimals=2),
        _check("UAE-UC1-CHK-027", "Tax Breakdown Present", X, RuleType.DEPENDENCY, HIGH,
               ["IBT-116", "IBT-117", "IBT-118", "IBT-119"], FINANCE,
               "Provide a tax category code and rate on the header or the lines"),
        _check("UAE-UC1-CHK-028", "Line VAT Calculation", L, RuleType.MATH, HIGH,
               ["IBT-152", "BTUAE-08"], FINANCE, "Recompute line VAT as net amount x rate / 100",
               tolerance=0.01),
        _check("UAE-UC1-CHK-029", "VAT Total Equals Sum Of Line VAT", X, RuleType.MATH, HIGH,
               ["IBT-110", "BTUAE-08"], FINANCE, "Reconcile header vat_total with the line VAT amounts",
               tolerance=0.01),

        # Lines
        _check("UAE-UC1-CHK-030", "Invoice Has At Least One Line", X, RuleType.CROSS_CHECK, CRITICAL,
               ["IBG-25"], IT, "Include the invoice lines in the lines file"),
        _check("UAE-UC1-CHK-031", "Line Identifier Present", L, RuleType.PRESENCE, HIGH,
               ["IBT-126"], IT, "Populate line_number on every line"),
        _check("UAE-UC1-CHK-032", "Invoiced Quantity Present", L, RuleType.PRESENCE, HIGH,
               ["IBT-129"], IT, "Populate quantity on every line"),
        _check("UAE-UC1-CHK-033", "Unit Of Measure Code", L, RuleType.CODELIST, MEDIUM,
               ["IBT-130"], IT, "Use a UN/ECE Recommendation 20 unit code",
               field="unit_of_measure", codelist="UNECERec20"),
        _check("UAE-UC1-CHK-034", "Line Net Amount Formula", L, RuleType.MATH, HIGH,
               ["IBT-131", "IBT-146"], FINANCE,
               "Recompute line net as quantity x unit price - discount", tolerance=0.01),
    ]


# ============================================================================
# Baseline Dataset Checks
# ============================================================================

def baseline_checks() -> list[CatalogCheck]:
    """Dataset-integrity checks that run independently of any jurisdiction pack."""
    return [
        _check("buyer_trn_missing", "Buyer TRN Missing", P, RuleType.PRESENCE, CRITICAL,
               ["IBT-048"], BUYER, "Capture the buyer TRN in the buyers file",
               use_case=BASELINE_USE_CASE),
        _check("buyer_trn_invalid_format", "Buyer TRN Invalid Format", P, RuleType.FORMAT, HIGH,
               ["IBT-048"], BUYER, "Buyer TRN must be exactly 15 digits",
               use_case=BASELINE_USE_CASE),
        _check("duplicate_invoice_number", "Duplicate Invoice Number", H, RuleType.CROSS_CHECK, CRITICAL,
               ["IBT-001", "IBT-031"], FINANCE, "Invoice numbers must be unique per seller",
               use_case=BASELINE_USE_CASE),
        _check("header_totals_mismatch", "Header Totals Mismatch", H, RuleType.MATH, CRITICAL,
               ["IBT-112"], FINANCE, "Recompute total_incl_vat as total_excl_vat + vat_total",
               use_case=BASELINE_USE_CASE),
        _check("line_totals_mismatch", "Line Totals Mismatch", L, RuleType.MATH, HIGH,
               ["IBT-131"], FINANCE, "Recompute line net as quantity x unit price - discount",
               use_case=BASELINE_USE_CASE),
        _check("vat_calc_mismatch", "VAT Calculation Mismatch", L, RuleType.MATH, HIGH,
               ["BTUAE-08"], FINANCE, "Recompute line VAT as net amount x rate / 100",
               use_case=BASELINE_USE_CASE),
        _check("negative_without_credit_note", "Negative Value Without Credit Note", L,
               RuleType.DEPENDENCY, CRITICAL, ["IBT-003", "IBT-131"], FINANCE,
               "Issue negative amounts on a credit note (type 381)", use_case=BASELINE_USE_CASE),
        _check("buyer_not_found", "Buyer ID Missing Or Not Found", X, RuleType.CROSS_CHECK, CRITICAL,
               ["IBT-044"], IT, "Reference a buyer_id that exists in the buyers file",
               use_case=BASELINE_USE_CASE),
        _check("missing_mandatory_fields", "Missing Mandatory Header Fields", H, RuleType.PRESENCE, CRITICAL,
               ["IBT-001", "IBT-002", "IBT-005", "IBT-031"], IT,
               "Populate invoice_id, invoice_number, issue_date, seller_trn and currency",
               use_case=BASELINE_USE_CASE),
        _check("mixed_vat_rates_no_total", "Mixed VAT Rates Without VAT Total", X, RuleType.MATH, MEDIUM,
               ["IBT-110", "IBT-152"], FINANCE, "Populate vat_total when lines carry several VAT rates",
               use_case=BASELINE_USE_CASE),
        _check("line_invoice_not_found", "Line Invoice Not Found", X, RuleType.CROSS_CHECK, HIGH,
               ["IBG-25"], IT, "Every line must reference an invoice_id present in the headers file",
               use_case=BASELINE_USE_CASE),
    ]


def default_check_pack(include_baseline: bool = False) -> list[CatalogCheck]:
    """The default catalog: the UC1 pack, optionally followed by the baseline checks."""
    checks = uae_uc1_check_pack()
    if include_baseline:
        checks.extend(baseline_checks())
    return checks


def get_catalog_check(check_id: str) -> Optional[CatalogCheck]:
    """Look up a seeded check by id across the UC1 pack and the baseline checks."""
    for check in uae_uc1_check_pack() + baseline_checks():
        if check.check_id == check_id:
            return check
    return None
