"""
Tests for the fuzzy candidate ranker.
"""

import pytest

from einvoice_qc.fuzzy import (
    FuzzyCandidate,
    FuzzyStrictness,
    candidates_from_headers,
    field_score,
    find_similar_candidates,
    rank_candidates,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def candidates() -> list[FuzzyCandidate]:
    return [
        FuzzyCandidate(id="1", vendor_name="Acme Trading LLC", invoice_number="INV-001"),
        FuzzyCandidate(id="2", vendor_name="Zeta Supplies", invoice_number="ZS/7781"),
        FuzzyCandidate(id="3", vendor_name="Acme Trading L.L.C.", invoice_number="INV 001"),
    ]


# ============================================================================
# Tests
# ============================================================================

class TestStrictness:

    def test_thresholds(self):
        assert FuzzyStrictness.STRICT.min_score == 0.86
        assert FuzzyStrictness.BALANCED.min_score == 0.72
        assert FuzzyStrictness.LOOSE.min_score == 0.58

    def test_unknown_profile_rejected(self, candidates):
        with pytest.raises(ValueError):
            rank_candidates("acme", candidates, strictness="fuzzy")


class TestFieldScore:

    def test_exact(self):
        assert field_score("inv001", "inv001") == 1.0

    def test_containment_boost(self):
        assert field_score("acme", "acme trading llc") == 0.9

    def test_empty_side(self):
        assert field_score("", "acme") == 0.0


class TestRankCandidates:

    def test_empty_query_returns_all(self, candidates):
        ranked = rank_candidates("   ", candidates)
        assert [entry.item.id for entry in ranked] == ["1", "2", "3"]
        assert all(entry.score == 1.0 for entry in ranked)

    def test_invoice_number_match_ignores_separators(self, candidates):
        ranked = rank_candidates("inv001", candidates)
        ids = [entry.item.id for entry in ranked]
        assert ids == ["1", "3"]
        assert ranked[0].score == 1.0

    def test_results_sorted_and_above_threshold(self, candidates):
        ranked = rank_candidates("Acme Trading", candidates, strictness="loose")
        scores = [entry.score for entry in ranked]
        assert scores == sorted(scores, reverse=True)
        assert all(score >= FuzzyStrictness.LOOSE.min_score for score in scores)
        assert "2" not in [entry.item.id for entry in ranked]

    def test_accepts_mappings(self):
        rows = [{"vendor_name": "Acme Trading LLC"}, {"vendor_name": "Other"}]
        ranked = rank_candidates("acme trading llc", rows, strictness=FuzzyStrictness.STRICT)
        assert [entry.item for entry in ranked] == [rows[0]]


class TestFindSimilarCandidates:

    def test_excludes_seed(self, candidates):
        ranked = find_similar_candidates(candidates[0], candidates)
        ids = [entry.item.id for entry in ranked]
        assert "1" not in ids
        assert ids == ["3"]

    def test_no_shared_fields_skipped(self):
        seed = FuzzyCandidate(id="a", vendor_name="Acme")
        other = FuzzyCandidate(id="b", invoice_number="INV-1")
        assert find_similar_candidates(seed, [seed, other]) == []


class TestCandidatesFromHeaders:

    def test_projection(self):
        headers = [
            {"invoice_id": "h1", "seller_name": "Acme", "invoice_number": "INV-1", "seller_trn": "100000000000003", "buyer_name": "Beta"},
            {"seller_name": "NoId"},
        ]
        result = candidates_from_headers(headers)
        assert result[0].id == "h1"
        assert result[0].vendor_name == "Acme"
        assert result[0].trn == "100000000000003"
        assert result[0].reference == "Beta"
        assert result[0].payload is headers[0]
        assert result[1].id == "row-1"
