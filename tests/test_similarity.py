"""
Tests for the string similarity primitives and identifier normalizers.
"""

import pytest

from einvoice_qc.similarity import (
    edit_distance,
    normalize_invoice_number,
    normalize_key_part,
    normalize_trn,
    normalize_vendor_name,
    similarity,
)


class TestEditDistance:
    """Tests for the Levenshtein distance."""

    def test_identical(self):
        assert edit_distance("INV-001", "INV-001") == 0

    def test_empty_strings(self):
        assert edit_distance("", "") == 0
        assert edit_distance("abc", "") == 3
        assert edit_distance("", "abcd") == 4

    def test_single_substitution(self):
        assert edit_distance("100000000000003", "100000000000004") == 1

    def test_classic_example(self):
        assert edit_distance("kitten", "sitting") == 3

    def test_symmetric(self):
        assert edit_distance("flaw", "lawn") == edit_distance("lawn", "flaw")


class TestSimilarity:
    """Tests for normalized similarity."""

    def test_case_insensitive(self):
        assert similarity("ABC Trading LLC", "ABC TRADING LLC") == 1.0

    def test_both_empty(self):
        assert similarity("", "") == 1.0
        assert similarity(None, None) == 1.0

    def test_one_empty(self):
        assert similarity("ABC", "") == 0.0
        assert similarity(None, "ABC") == 0.0

    def test_dotted_suffix(self):
        # Three inserted dots over 19 characters
        assert similarity("Acme Trading LLC", "Acme Trading L.L.C.") == pytest.approx(16 / 19)

    def test_bounds(self):
        score = similarity("abc", "xyz")
        assert 0.0 <= score <= 1.0
        assert score == 0.0


class TestNormalizers:
    """Tests for the field normalizers."""

    def test_invoice_number_strips_separators(self):
        assert normalize_invoice_number("INV-001") == "inv001"
        assert normalize_invoice_number(" inv/001 ") == "inv001"
        assert normalize_invoice_number("INV_00.1") == "inv001"

    def test_invoice_number_none(self):
        assert normalize_invoice_number(None) == ""

    def test_vendor_name_collapses_whitespace(self):
        assert normalize_vendor_name("  Acme   Trading\tLLC ") == "acme trading llc"

    def test_trn_keeps_digits(self):
        assert normalize_trn("100-000 000.000003") == "100000000000003"
        assert normalize_trn(100000000000003) == "100000000000003"

    @pytest.mark.parametrize("normalizer, value", [
        (normalize_invoice_number, " INV - 00/1 "),
        (normalize_vendor_name, "  ACME  Trading "),
        (normalize_trn, "TRN 1000-0000"),
    ])
    def test_idempotent(self, normalizer, value):
        once = normalizer(value)
        assert normalizer(once) == once

    def test_key_part_by_field_name(self):
        assert normalize_key_part("seller_trn", "100 000") == "100000"
        assert normalize_key_part("invoice_number", "INV-1") == "inv1"
        assert normalize_key_part("seller_name", " Acme  LLC ") == "acme llc"
        assert normalize_key_part("currency_code", " AED ") == "AED"
        assert normalize_key_part("currency_code", None) == ""
