"""
Configuration constants and code lists for the e-invoice compliance engine.
"""

import logging
import os
from typing import Final, Optional

# ============================================================================
# Validation Tolerances
# ============================================================================

# Tolerance for floating-point amount comparisons (e.g., excl + VAT ≈ incl)
AMOUNT_TOLERANCE: Final[float] = float(os.getenv("AMOUNT_TOLERANCE", "0.01"))

# Base (tax accounting) currency of the jurisdiction
BASE_CURRENCY: Final[str] = os.getenv("BASE_CURRENCY", "AED")

# ============================================================================
# Severity Policy
# ============================================================================

# Hours allowed to resolve an exception, frozen onto the exception at creation
SLA_HOURS_BY_SEVERITY: Final[dict[str, int]] = {
    "Critical": 4,
    "High": 24,
    "Medium": 72,
    "Low": 168,
}

# Weights used when scoring client (seller) risk
RISK_WEIGHTS: Final[dict[str, int]] = {
    "Critical": 10,
    "High": 6,
    "Medium": 3,
    "Low": 1,
}

# ============================================================================
# Patterns & Date Formats
# ============================================================================

TRN_PATTERN: Final[str] = r"^\d{15}$"
DATE_PATTERN: Final[str] = r"^\d{4}-\d{2}-\d{2}$"
SPEC_ID_PATTERN: Final[str] = r"^urn:peppol:pint:billing-1@ae-1$"

# Date formats to try when comparing invoice dates
DATE_FORMATS: Final[list[str]] = [
    "%Y-%m-%d",      # ISO format: 2024-01-15
    "%Y-%m-%dT%H:%M:%S",
    "%d/%m/%Y",      # European: 15/01/2024
    "%d-%m-%Y",      # European with dashes: 15-01-2024
    "%d.%m.%Y",      # European with dots: 15.01.2024
]

# ============================================================================
# Fuzzy Search
# ============================================================================

# Minimum composite score per strictness profile
STRICTNESS_MIN_SCORE: Final[dict[str, float]] = {
    "strict": 0.86,
    "balanced": 0.72,
    "loose": 0.58,
}

# Pairwise search checks only run for these dataset directions
SEARCH_CHECK_DIRECTIONS: Final[frozenset[str]] = frozenset({"AP"})

# Soft bounds; exceeding them logs a warning but does not stop the run
MAX_PAIRWISE_RECORDS: Final[int] = int(os.getenv("MAX_PAIRWISE_RECORDS", "5000"))
MAX_RANK_CANDIDATES: Final[int] = int(os.getenv("MAX_RANK_CANDIDATES", "20000"))

# ============================================================================
# Coverage & Readiness
# ============================================================================

SPEC_VERSION_LABEL: Final[str] = "PINT-AE 2025-Q2 - UAE DR v1.0.1"
POPULATION_WARNING_THRESHOLD: Final[float] = 99.0
MANDATORY_MAPPING_COVERAGE_THRESHOLD: Final[float] = 100.0
MANDATORY_POPULATION_THRESHOLD: Final[float] = 99.0

# ============================================================================
# Code Lists
# ============================================================================

CODELISTS: Final[dict[str, frozenset[str]]] = {
    "ISO4217": frozenset({
        "AED", "AUD", "BHD", "CAD", "CHF", "CNY", "DKK", "EGP", "EUR", "GBP",
        "HKD", "INR", "JOD", "JPY", "KRW", "KWD", "LKR", "MYR", "NOK", "NZD",
        "OMR", "PHP", "PKR", "QAR", "SAR", "SEK", "SGD", "THB", "TRY", "USD",
        "ZAR",
    }),
    "ISO3166": frozenset({
        "AE", "AU", "BH", "CA", "CH", "CN", "DE", "EG", "ES", "FR", "GB",
        "HK", "IN", "IT", "JO", "JP", "KR", "KW", "LK", "MY", "NL", "OM",
        "PH", "PK", "QA", "SA", "SE", "SG", "TH", "TR", "US", "ZA",
    }),
    # UNTDID 1001 invoice type codes allowed for UC1
    "UNCL1001": frozenset({"380", "381", "383", "384", "386", "389"}),
    # UNTDID 4461 payment means subset
    "UNCL4461": frozenset({
        "1", "10", "20", "30", "31", "42", "48", "49", "54", "55", "57",
        "58", "59", "ZZZ",
    }),
    # Tax category codes
    "UNCL5305": frozenset({"S", "Z", "E", "O", "AE", "RC"}),
    "UNECERec20": frozenset({
        "C62", "H87", "EA", "KGM", "GRM", "LTR", "MTR", "MTK", "HUR", "DAY",
        "MON", "ANN", "SET", "PR", "BX", "XPK",
    }),
    "UAE_SUBDIVISIONS": frozenset({
        "AE-AZ", "AE-AJ", "AE-FU", "AE-SH", "AE-DU", "AE-RK", "AE-UQ",
    }),
    "UAE_EMIRATES": frozenset({"AUH", "DXB", "SHJ", "AJM", "UAQ", "RAK", "FUJ"}),
    "BTUAE15_ID_TYPES": frozenset({"TL", "EID", "PAS", "CD"}),
}


def get_codelist(name: str) -> Optional[frozenset[str]]:
    """Return the named code list, or None if it is not configured."""
    return CODELISTS.get(name)


def is_code_in_codelist(name: str, value: str) -> bool:
    """Check a value against a named code list (case-insensitive)."""
    codes = CODELISTS.get(name)
    if codes is None:
        return False
    return value.strip().upper() in codes


# ============================================================================
# API Configuration
# ============================================================================

API_HOST: Final[str] = os.getenv("API_HOST", "0.0.0.0")
API_PORT: Final[int] = int(os.getenv("API_PORT", "8000"))

# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")

def setup_logging() -> logging.Logger:
    """Configure and return the application logger."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("einvoice_qc")


logger = setup_logging()
