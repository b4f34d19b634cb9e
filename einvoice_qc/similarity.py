"""
String similarity primitives and identifier normalizers.

The normalizers are pure and idempotent. Apply them before any
duplicate-key or similarity comparison so that formatting noise
(spacing, separators, case) does not hide a match.
"""

import re
from typing import Any, Optional

_INVOICE_SEPARATORS = re.compile(r"[\s\-_/.\\]")
_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"\D")


def edit_distance(a: str, b: str) -> int:
    """
    Levenshtein distance using a full dynamic-programming matrix.

    O(len(a) * len(b)) time and space, which is fine at invoice-field
    lengths (typically under 100 characters).
    """
    m, n = len(a), len(b)
    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(m + 1):
        dp[i][0] = i
    for j in range(n + 1):
        dp[0][j] = j

    for i in range(1, m + 1):
        for j in range(1, n + 1):
            if a[i - 1] == b[j - 1]:
                dp[i][j] = dp[i - 1][j - 1]
            else:
                dp[i][j] = min(dp[i - 1][j], dp[i][j - 1], dp[i - 1][j - 1]) + 1

    return dp[m][n]


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Normalized similarity in [0, 1] after case-folding.

    1.0 when both strings are empty, 0.0 when exactly one is empty,
    otherwise (max_len - edit_distance) / max_len.
    """
    a = (a or "").casefold()
    b = (b or "").casefold()
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    return max(0.0, (longest - edit_distance(a, b)) / longest)


# ============================================================================
# Field Normalizers
# ============================================================================

def normalize_invoice_number(value: Any) -> str:
    """Strip whitespace, hyphen, underscore, slash, dot and backslash separators; lower-case."""
    if value is None:
        return ""
    return _INVOICE_SEPARATORS.sub("", str(value)).casefold()


def normalize_vendor_name(value: Any) -> str:
    """Collapse internal whitespace, trim and case-fold."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip().casefold()


def normalize_trn(value: Any) -> str:
    """Keep only the digits of a tax registration number."""
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def normalize_key_part(field_name: str, value: Any) -> str:
    """
    Normalize one component of a duplicate-detection key.

    The normalizer is picked from the field name: TRN-like fields keep
    digits only, invoice/document numbers drop separators, names collapse
    whitespace. Anything else is trimmed.
    """
    if value is None:
        return ""
    name = field_name.rsplit(".", 1)[-1].lower()
    if "trn" in name:
        return normalize_trn(value)
    if name.endswith("_number") or name.endswith("_no"):
        return normalize_invoice_number(value)
    if name.endswith("name"):
        return normalize_vendor_name(value)
    return str(value).strip()
