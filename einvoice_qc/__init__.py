"""
E-Invoice Compliance Engine

A rule-evaluation engine for e-invoicing compliance datasets: catalog and
custom checks over invoice headers, lines and parties, confidence-scored
search checks, and requirement traceability reporting.
"""

__version__ = "0.1.0"
__author__ = "E-Invoice QC Team"

from .context import DataContext, EngineInputError
from .schemas import CatalogCheck, CustomCheck, ComplianceException, InvestigationFlag
from .rules import run_check, run_all_checks
from .custom_checks import run_custom_checks, run_search_checks
from .coverage import build_traceability_matrix
from .validator import run_compliance_checks

__all__ = [
    "DataContext",
    "EngineInputError",
    "CatalogCheck",
    "CustomCheck",
    "ComplianceException",
    "InvestigationFlag",
    "run_check",
    "run_all_checks",
    "run_custom_checks",
    "run_search_checks",
    "build_traceability_matrix",
    "run_compliance_checks",
]
