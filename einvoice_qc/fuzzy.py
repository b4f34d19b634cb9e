"""
Fuzzy candidate ranking for free-text search and near-duplicate lookup.

Every candidate is scored against the query field by field; the
composite score is the best weighted field score. Ranking is a linear
scan (no index), so it is meant for interactive datasets of a few
thousand records.
"""

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from .config import MAX_RANK_CANDIDATES, STRICTNESS_MIN_SCORE, logger
from .similarity import (
    normalize_invoice_number,
    normalize_trn,
    normalize_vendor_name,
    similarity,
)

T = TypeVar("T")


class FuzzyStrictness(str, Enum):
    STRICT = "strict"
    BALANCED = "balanced"
    LOOSE = "loose"

    @property
    def min_score(self) -> float:
        return STRICTNESS_MIN_SCORE[self.value]


@dataclass
class FuzzyCandidate:
    """A searchable record exposing the fields the ranker knows about."""
    id: str
    vendor_name: Optional[str] = None
    invoice_number: Optional[str] = None
    trn: Optional[str] = None
    reference: Optional[str] = None
    payload: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class SearchField:
    """One scored field: where to read it, how to normalize it, how much it counts."""
    name: str
    normalizer: Callable[[Any], str]
    weight: float = 1.0


DEFAULT_SEARCH_FIELDS: tuple[SearchField, ...] = (
    SearchField("vendor_name", normalize_vendor_name),
    SearchField("invoice_number", normalize_invoice_number),
    SearchField("trn", normalize_trn),
    SearchField("reference", normalize_vendor_name),
)


@dataclass
class RankedCandidate(Generic[T]):
    item: T
    score: float


def _read(candidate: Any, name: str) -> Any:
    if isinstance(candidate, Mapping):
        return candidate.get(name)
    return getattr(candidate, name, None)


def field_score(query: str, value: str) -> float:
    """
    Score one normalized field value against a normalized query.

    Containment of one string in the other scores 0.9 unless the plain
    similarity is already higher.
    """
    if not query or not value:
        return similarity(query, value)
    if query == value:
        return 1.0
    score = similarity(query, value)
    if query in value or value in query:
        score = max(score, 0.9)
    return score


def _resolve_strictness(strictness: Any) -> FuzzyStrictness:
    if isinstance(strictness, FuzzyStrictness):
        return strictness
    return FuzzyStrictness(str(strictness).lower())


def rank_candidates(
    query: str,
    candidates: Sequence[T],
    strictness: Any = FuzzyStrictness.BALANCED,
    fields: Sequence[SearchField] = DEFAULT_SEARCH_FIELDS,
) -> list[RankedCandidate[T]]:
    """
    Rank candidates against a free-text query.

    Args:
        query: Free-text search string
        candidates: Records exposing the named search fields (mappings or objects)
        strictness: strict / balanced / loose minimum score profile
        fields: Fields to score, each with its normalizer and weight

    Returns:
        Candidates at or above the strictness threshold, best first. Ties
        keep their input order.
    """
    profile = _resolve_strictness(strictness)
    if len(candidates) > MAX_RANK_CANDIDATES:
        logger.warning(
            f"Ranking {len(candidates)} candidates exceeds the soft bound of "
            f"{MAX_RANK_CANDIDATES}; consider narrowing the search"
        )

    if not query or not query.strip():
        return [RankedCandidate(item=item, score=1.0) for item in candidates]

    normalized_query = {spec.name: spec.normalizer(query) for spec in fields}
    ranked: list[RankedCandidate[T]] = []
    for item in candidates:
        score = 0.0
        for spec in fields:
            q = normalized_query[spec.name]
            if not q:
                continue
            value = spec.normalizer(_read(item, spec.name))
            score = max(score, spec.weight * field_score(q, value))
        if score >= profile.min_score:
            ranked.append(RankedCandidate(item=item, score=score))

    ranked.sort(key=lambda entry: entry.score, reverse=True)
    return ranked


def find_similar_candidates(
    seed: T,
    candidates: Sequence[T],
    strictness: Any = FuzzyStrictness.BALANCED,
    fields: Sequence[SearchField] = DEFAULT_SEARCH_FIELDS,
) -> list[RankedCandidate[T]]:
    """
    Find near-duplicates of a seed record, excluding the seed itself.

    Fields are compared pairwise (seed field vs. candidate field) and the
    composite is the weighted mean over fields populated on both sides.
    """
    profile = _resolve_strictness(strictness)
    seed_id = _read(seed, "id")
    seed_values = {spec.name: spec.normalizer(_read(seed, spec.name)) for spec in fields}

    ranked: list[RankedCandidate[T]] = []
    for item in candidates:
        if item is seed or (seed_id is not None and _read(item, "id") == seed_id):
            continue
        total_weight = 0.0
        weighted = 0.0
        for spec in fields:
            left = seed_values[spec.name]
            right = spec.normalizer(_read(item, spec.name))
            if not left or not right:
                continue
            weighted += spec.weight * similarity(left, right)
            total_weight += spec.weight
        if total_weight == 0:
            continue
        score = weighted / total_weight
        if score >= profile.min_score:
            ranked.append(RankedCandidate(item=item, score=score))

    ranked.sort(key=lambda entry: entry.score, reverse=True)
    return ranked


def candidates_from_headers(headers: Iterable[Mapping[str, Any]]) -> list[FuzzyCandidate]:
    """Project invoice header records onto searchable candidates."""
    candidates = []
    for index, header in enumerate(headers):
        invoice_id = header.get("invoice_id")
        candidates.append(
            FuzzyCandidate(
                id=str(invoice_id) if invoice_id is not None else f"row-{index}",
                vendor_name=header.get("seller_name"),
                invoice_number=header.get("invoice_number"),
                trn=header.get("seller_trn"),
                reference=header.get("buyer_name") or header.get("buyer_id"),
                payload=header,
            )
        )
    return candidates
