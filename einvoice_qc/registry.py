"""
Requirement (DR) registry, rule traceability and controls registry.

The requirement registry maps each data requirement to the dataset and
template columns that carry it. Rule traceability is derived from the
catalog checks' reference terms, and each control's requirement coverage
is derived from the rules it covers.
"""

from collections.abc import Iterable
from typing import Optional

from .catalog import default_check_pack
from .schemas import CatalogCheck, ControlEntry, RequirementEntry, RuleTraceEntry

# (requirement_id, business_term, dataset, columns, mandatory, data_type,
#  category, vat_law_status, code_list)
_REQUIREMENTS: list[tuple] = [
    # Buyer
    ("IBT-044", "Buyer name", "buyers", ["buyer_name"], True, "Text", "Buyer", "Existing", None),
    ("IBT-048", "Buyer tax registration identifier", "buyers", ["buyer_trn"], False, "Text", "Buyer", "Existing", None),
    ("IBT-049", "Buyer electronic address", "buyers", ["buyer_electronic_address"], True, "Text", "Buyer", "New", "CEF EAS"),
    ("IBT-050", "Buyer address line 1", "buyers", ["buyer_address"], True, "Text", "Buyer", "Existing", None),
    ("IBT-052", "Buyer city", "buyers", ["buyer_city"], True, "Text", "Buyer", "Existing", None),
    ("IBT-054", "Buyer country subdivision", "buyers", ["buyer_subdivision"], True, "Code", "Buyer", "New", "UAE Emirates"),
    ("IBT-055", "Buyer country code", "buyers", ["buyer_country"], True, "Code", "Buyer", "Existing", "ISO 3166-1"),

    # Invoice header
    ("IBT-001", "Invoice number", "headers", ["invoice_number"], True, "Text", "Invoice", "Existing", None),
    ("IBT-002", "Invoice issue date", "headers", ["issue_date"], True, "Date", "Invoice", "Existing", "ISO 8601"),
    ("IBT-003", "Invoice type code", "headers", ["invoice_type"], True, "Code", "Invoice", "Existing", "UN/CEFACT 1001"),
    ("IBT-005", "Invoice currency code", "headers", ["currency"], True, "Code", "Invoice", "Existing", "ISO 4217"),
    ("IBT-007", "Invoice currency exchange rate", "headers", ["fx_rate"], False, "Decimal", "Invoice", "New", None),
    ("IBT-009", "Payment due date", "headers", ["payment_due_date"], False, "Date", "Payment", "Existing", "ISO 8601"),
    ("IBT-013", "Purchase order reference", None, [], False, "Text", "Invoice", "Existing", None),

    # Seller
    ("IBT-027", "Seller name", "headers", ["seller_name"], True, "Text", "Seller", "Existing", None),
    ("IBT-030", "Seller legal registration identifier", "headers", ["seller_legal_reg_id"], True, "Text", "Seller", "New", None),
    ("IBT-031", "Seller tax registration identifier", "headers", ["seller_trn"], True, "Text", "Seller", "Existing", None),
    ("IBT-034", "Seller electronic address", "headers", ["seller_electronic_address"], True, "Text", "Seller", "New", "CEF EAS"),
    ("IBT-035", "Seller address line 1", "headers", ["seller_address"], True, "Text", "Seller", "Existing", None),
    ("IBT-037", "Seller city", "headers", ["seller_city"], True, "Text", "Seller", "Existing", None),
    ("IBT-039", "Seller country subdivision", "headers", ["seller_subdivision"], True, "Code", "Seller", "New", "UAE Emirates"),
    ("IBT-040", "Seller country code", "headers", ["seller_country"], True, "Code", "Seller", "Existing", "ISO 3166-1"),
    ("BTUAE-15", "Seller legal registration identifier type", "headers", ["seller_legal_reg_id_type"], True, "Code", "Seller", "New", "BTUAE-15 ID Types"),

    # Payment & totals
    ("IBT-081", "Payment means type code", "headers", ["payment_means_code"], False, "Code", "Payment", "Existing", "UNTDID 4461"),
    ("IBT-106", "Sum of invoice line net amount", "headers", ["total_excl_vat"], True, "Decimal", "Totals", "Existing", None),
    ("IBT-109", "Invoice total amount without VAT", "headers", ["total_excl_vat"], True, "Decimal", "Totals", "Existing", None),
    ("IBT-110", "Invoice total VAT amount", "headers", ["vat_total"], True, "Decimal", "Totals", "Existing", None),
    ("IBT-112", "Invoice total amount with VAT", "headers", ["total_incl_vat"], True, "Decimal", "Totals", "Existing", None),
    ("IBT-115", "Amount due for payment", "headers", ["amount_due"], True, "Decimal", "Totals", "Existing", None),
    ("IBT-116", "VAT category taxable amount", "headers", ["total_excl_vat"], True, "Decimal", "Tax breakdown", "Existing", None),
    ("IBT-117", "VAT category tax amount", "headers", ["vat_total"], True, "Decimal", "Tax breakdown", "Existing", None),
    ("IBT-118", "VAT category code", "headers", ["tax_category_code"], True, "Code", "Tax breakdown", "Existing", "PINT-AE Tax Category"),
    ("IBT-119", "VAT category rate", "headers", ["tax_category_rate"], False, "Decimal", "Tax breakdown", "Existing", None),
    ("BTUAE-02", "Transaction type code", "headers", ["transaction_type_code"], True, "Code", "Invoice", "New", None),

    # Lines
    ("IBT-126", "Invoice line identifier", "lines", ["line_id", "line_number"], True, "Text", "Line", "Existing", None),
    ("IBT-129", "Invoiced quantity", "lines", ["quantity"], True, "Decimal", "Line", "Existing", None),
    ("IBT-130", "Invoiced quantity unit of measure code", "lines", ["unit_of_measure"], True, "Code", "Line", "Existing", "UN/ECE Rec 20"),
    ("IBT-131", "Invoice line net amount", "lines", ["line_total_excl_vat"], True, "Decimal", "Line", "Existing", None),
    ("IBT-146", "Item net price", "lines", ["unit_price"], True, "Decimal", "Line", "Existing", None),
    ("IBT-148", "Item gross price", "lines", ["unit_price"], False, "Decimal", "Line", "Existing", None),
    ("IBT-151", "Invoiced item VAT category code", "lines", ["tax_category_code"], True, "Code", "Line", "Existing", "PINT-AE Tax Category"),
    ("IBT-152", "Invoiced item VAT rate", "lines", ["vat_rate"], False, "Decimal", "Line", "Existing", None),
    ("IBT-153", "Item name", "lines", ["description"], True, "Text", "Line", "Existing", None),
    ("IBT-154", "Item description", "lines", ["item_name"], False, "Text", "Line", "Existing", None),
    ("BTUAE-08", "VAT line amount in AED", "lines", ["vat_amount"], True, "Decimal", "Line", "New", None),

    # Provided by the access point, never by the customer template
    ("IBT-023", "Business process type", "headers", [], True, "Text", "Metadata", "New", None),
    ("IBT-024", "Specification identifier", "headers", [], True, "Text", "Metadata", "New", None),
    ("IBT-031-1", "Seller TRN scheme identifier", "headers", [], True, "Code", "Seller", "New", None),
    ("IBT-034-1", "Seller electronic address scheme", "headers", [], True, "Code", "Seller", "New", "CEF EAS"),
    ("IBT-048-1", "Buyer TRN scheme identifier", "buyers", [], False, "Code", "Buyer", "New", None),
    ("IBT-049-1", "Buyer electronic address scheme", "buyers", [], True, "Code", "Buyer", "New", "CEF EAS"),
    ("IBT-149", "Item price base quantity", "lines", [], False, "Decimal", "Line", "Existing", None),
]

ASP_DERIVED_IDS = frozenset({"IBT-023", "IBT-024", "IBT-031-1", "IBT-034-1", "IBT-048-1", "IBT-049-1", "IBT-149"})

# Columns the upstream parser actually understands, per dataset
PARSER_KNOWN_COLUMNS: dict[str, frozenset[str]] = {
    "buyers": frozenset({
        "buyer_id", "buyer_name", "buyer_trn", "buyer_address", "buyer_country",
        "buyer_city", "buyer_postcode", "buyer_subdivision", "buyer_electronic_address",
    }),
    "headers": frozenset({
        "invoice_id", "invoice_number", "issue_date", "seller_trn", "buyer_id",
        "currency", "invoice_type", "total_excl_vat", "vat_total", "total_incl_vat",
        "seller_name", "seller_address", "seller_city", "seller_country",
        "seller_subdivision", "seller_electronic_address", "seller_legal_reg_id",
        "seller_legal_reg_id_type", "transaction_type_code", "payment_due_date",
        "payment_means_code", "fx_rate", "amount_due", "tax_category_code",
        "tax_category_rate", "note", "supply_date", "tax_currency",
        "document_level_allowance_total", "document_level_charge_total",
        "rounding_amount", "spec_id", "business_process",
    }),
    "lines": frozenset({
        "line_id", "invoice_id", "line_number", "description", "quantity",
        "unit_price", "line_discount", "line_total_excl_vat", "vat_rate", "vat_amount",
        "unit_of_measure", "tax_category_code", "item_name",
        "line_allowance_amount", "line_charge_amount",
    }),
}

JOIN_KEYS: dict[str, list[str]] = {
    "buyers": ["buyer_id"],
    "headers": ["invoice_id", "buyer_id"],
    "lines": ["line_id", "invoice_id"],
}


# ============================================================================
# Requirement Registry
# ============================================================================

def default_requirement_registry() -> list[RequirementEntry]:
    """Build the seeded requirement registry (a fresh list on every call)."""
    entries = []
    for req_id, term, dataset, columns, mandatory, data_type, category, status, code_list in _REQUIREMENTS:
        asp_derived = req_id in ASP_DERIVED_IDS
        entries.append(RequirementEntry(
            requirement_id=req_id,
            business_term=term,
            dataset=dataset,
            column_names=list(columns),
            mandatory=mandatory,
            data_type=data_type,
            category=category,
            vat_law_status=status,
            data_responsibility="ASP" if asp_derived else "Client",
            code_list=code_list,
            asp_derived=asp_derived,
        ))
    return entries


def get_requirement(requirement_id: str, registry: Optional[list[RequirementEntry]] = None) -> Optional[RequirementEntry]:
    for entry in registry if registry is not None else default_requirement_registry():
        if entry.requirement_id == requirement_id:
            return entry
    return None


def is_requirement_ingestible(entry: RequirementEntry) -> bool:
    """True when the requirement is placed and every mapped column is known to the parser."""
    if not entry.dataset or not entry.column_names:
        return False
    known = PARSER_KNOWN_COLUMNS.get(entry.dataset, frozenset())
    return all(column in known for column in entry.column_names)


def mandatory_columns_for_dataset(
    dataset: str,
    registry: Optional[list[RequirementEntry]] = None,
) -> list[str]:
    """
    Mandatory, parser-known columns of one dataset, plus its join keys.

    Columns keep registry order; join keys are appended when not already listed.
    """
    entries = registry if registry is not None else default_requirement_registry()
    known = PARSER_KNOWN_COLUMNS.get(dataset, frozenset())
    columns: list[str] = []
    for entry in entries:
        if entry.dataset != dataset or not entry.mandatory:
            continue
        for column in entry.column_names:
            if column in known and column not in columns:
                columns.append(column)
    for key in JOIN_KEYS.get(dataset, []):
        if key not in columns:
            columns.append(key)
    return columns


# ============================================================================
# Rule Traceability
# ============================================================================

def build_rule_traceability(checks: Optional[Iterable[CatalogCheck]] = None) -> list[RuleTraceEntry]:
    """Derive rule -> requirement links from the catalog checks' reference terms."""
    source = checks if checks is not None else default_check_pack()
    return [
        RuleTraceEntry(
            rule_id=check.check_id,
            rule_name=check.check_name,
            requirement_ids=list(check.reference_terms),
            severity=check.severity.value,
            scope=check.scope.value,
            applies_when=check.use_case,
        )
        for check in source
    ]


def rules_for_requirement(requirement_id: str, rules: Iterable[RuleTraceEntry]) -> list[RuleTraceEntry]:
    return [rule for rule in rules if requirement_id in rule.requirement_ids]


# ============================================================================
# Controls Registry
# ============================================================================

_CONTROLS: list[tuple[str, str, str, str, list[str]]] = [
    # Preventive
    ("CTRL-001", "Header Mandatory Fields Gate", "preventive",
     "Blocks submission when mandatory header identifiers are missing",
     ["UAE-UC1-CHK-001", "UAE-UC1-CHK-002", "UAE-UC1-CHK-004", "UAE-UC1-CHK-005"]),
    ("CTRL-002", "Date Format Enforcement", "preventive",
     "Ensures dates conform to YYYY-MM-DD before processing",
     ["UAE-UC1-CHK-003"]),
    ("CTRL-003", "Currency Code Validation", "preventive",
     "Validates currency codes against ISO 4217 and enforces AED tax accounting",
     ["UAE-UC1-CHK-006", "UAE-UC1-CHK-007", "UAE-UC1-CHK-008"]),
    ("CTRL-004", "Seller Identity Verification", "preventive",
     "Ensures seller name, TRN, electronic address and address are complete and valid",
     ["UAE-UC1-CHK-012", "UAE-UC1-CHK-013", "UAE-UC1-CHK-014", "UAE-UC1-CHK-015"]),
    ("CTRL-005", "Buyer Identity Verification", "preventive",
     "Ensures buyer name, TRN format, electronic address and address are valid",
     ["UAE-UC1-CHK-017", "UAE-UC1-CHK-018", "UAE-UC1-CHK-019", "UAE-UC1-CHK-020"]),
    ("CTRL-006", "UAE Subdivision Code Gate", "preventive",
     "Validates emirate codes against the UAE code list",
     ["UAE-UC1-CHK-016"]),
    ("CTRL-007", "ASP Metadata Enforcement", "preventive",
     "Validates access-point fields: specification identifier and business process type",
     ["UAE-UC1-CHK-010", "UAE-UC1-CHK-011"]),
    ("CTRL-008", "Transaction Type Code Validation", "preventive",
     "Validates invoice and transaction type codes are present",
     ["UAE-UC1-CHK-004"]),

    # Detective
    ("CTRL-009", "Invoice Totals Reconciliation", "detective",
     "Detects mismatches between line sums and header totals",
     ["UAE-UC1-CHK-021", "UAE-UC1-CHK-025", "UAE-UC1-CHK-029"]),
    ("CTRL-010", "Decimal Precision Audit", "detective",
     "Detects monetary amounts exceeding 2 decimal places",
     ["UAE-UC1-CHK-022", "UAE-UC1-CHK-023", "UAE-UC1-CHK-024", "UAE-UC1-CHK-026"]),
    ("CTRL-011", "Tax Calculation Verification", "detective",
     "Verifies tax amounts match taxable base x rate",
     ["UAE-UC1-CHK-027", "UAE-UC1-CHK-028"]),
    ("CTRL-012", "Line Item Completeness Check", "detective",
     "Ensures every invoice has lines and each line has identifiers and quantities",
     ["UAE-UC1-CHK-030", "UAE-UC1-CHK-031", "UAE-UC1-CHK-032", "UAE-UC1-CHK-033"]),
    ("CTRL-013", "Line Net Amount Reconciliation", "detective",
     "Validates line net amount = quantity x unit price - discount",
     ["UAE-UC1-CHK-034"]),
    ("CTRL-014", "Payment Terms Consistency", "detective",
     "Ensures a due date is present when an amount is due and is not before the issue date",
     ["UAE-UC1-CHK-009"]),
]


def default_control_definitions() -> list[ControlEntry]:
    """Seeded controls with their covered rules; requirement coverage is not yet derived."""
    return [
        ControlEntry(
            control_id=control_id,
            control_name=name,
            control_type=control_type,
            description=description,
            covered_rule_ids=list(rule_ids),
        )
        for control_id, name, control_type, description, rule_ids in _CONTROLS
    ]


def build_controls_registry(
    definitions: Optional[Iterable[ControlEntry]] = None,
    rules: Optional[Iterable[RuleTraceEntry]] = None,
) -> list[ControlEntry]:
    """
    Derive each control's covered requirement ids from the rules it covers.

    Rule ids that do not resolve contribute nothing here; the consistency
    validator reports them.
    """
    source = definitions if definitions is not None else default_control_definitions()
    rule_map = {rule.rule_id: rule for rule in (rules if rules is not None else build_rule_traceability())}

    controls = []
    for control in source:
        requirement_ids: list[str] = []
        for rule_id in control.covered_rule_ids:
            rule = rule_map.get(rule_id)
            if rule is None:
                continue
            for requirement_id in rule.requirement_ids:
                if requirement_id not in requirement_ids:
                    requirement_ids.append(requirement_id)
        controls.append(control.model_copy(update={"covered_requirement_ids": requirement_ids}))
    return controls


def controls_for_requirement(requirement_id: str, controls: Iterable[ControlEntry]) -> list[ControlEntry]:
    return [control for control in controls if requirement_id in control.covered_requirement_ids]
