"""Confidence model and ambiguity rule.

Everything here is pure: same inputs, same ranking, same verdict.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Optional, Sequence

from common.schemas import Candidate, Location, ScoredCandidate

NEUTRAL = 0.5
OPENING_FORMULA = Location(chapter=1, verse=1)
_EPS = 1e-9


@dataclass(frozen=True)
class ConfidenceWeights:
    raw: float = 0.40
    sequence: float = 0.25
    duration_fit: float = 0.15
    reciter_consistency: float = 0.10
    audio_quality: float = 0.10


DEFAULT_WEIGHTS = ConfidenceWeights()


class Resolution(str, Enum):
    empty = "empty"
    resolved = "resolved"
    uncertain = "uncertain"
    ambiguous = "ambiguous"


def _unit(value: Optional[float]) -> float:
    if value is None:
        return NEUTRAL
    return min(1.0, max(0.0, value))


def combined_score(
    raw: float,
    sequence: Optional[float] = None,
    duration_fit: Optional[float] = None,
    reciter_consistency: Optional[float] = None,
    audio_quality: Optional[float] = None,
    weights: ConfidenceWeights = DEFAULT_WEIGHTS,
) -> float:
    """Weighted blend of the five normalized signals, clamped to [0, 1]."""
    total = (
        weights.raw * _unit(raw)
        + weights.sequence * _unit(sequence)
        + weights.duration_fit * _unit(duration_fit)
        + weights.reciter_consistency * _unit(reciter_consistency)
        + weights.audio_quality * _unit(audio_quality)
    )
    return min(1.0, max(0.0, total))


def score_candidate(
    candidate: Candidate,
    sequence_score: float = NEUTRAL,
    audio_quality: Optional[float] = None,
    weights: ConfidenceWeights = DEFAULT_WEIGHTS,
) -> ScoredCandidate:
    combined = combined_score(
        candidate.raw_score,
        sequence=sequence_score,
        duration_fit=candidate.duration_fit,
        reciter_consistency=candidate.reciter_consistency,
        audio_quality=audio_quality,
        weights=weights,
    )
    return ScoredCandidate(
        location=candidate.location,
        raw_score=candidate.raw_score,
        is_known_repeated=candidate.is_known_repeated,
        duration_fit=candidate.duration_fit,
        reciter_consistency=candidate.reciter_consistency,
        sequence_score=sequence_score,
        combined_score=round(combined, 6),
    )


def rank(candidates: Iterable[ScoredCandidate]) -> list[ScoredCandidate]:
    """combined desc, then raw desc, then lowest location."""
    return sorted(
        candidates,
        key=lambda c: (-c.combined_score, -c.raw_score, c.location.chapter, c.location.verse),
    )


def score_candidates(
    candidates: Iterable[Candidate],
    audio_quality: Optional[float] = None,
    sequence_scores: Optional[Mapping[tuple[int, int], float]] = None,
    top_k: int = 10,
    weights: ConfidenceWeights = DEFAULT_WEIGHTS,
) -> list[ScoredCandidate]:
    sequence_scores = sequence_scores or {}
    scored = [
        score_candidate(
            c,
            sequence_score=sequence_scores.get(c.location.key, NEUTRAL),
            audio_quality=audio_quality,
            weights=weights,
        )
        for c in candidates
    ]
    return rank(scored)[:top_k]


def tied_with_top(candidates: Sequence[ScoredCandidate], margin: float = 0.05) -> list[ScoredCandidate]:
    """Candidates whose combined score is within `margin` of the top one, top included."""
    ranked = rank(candidates)
    if not ranked:
        return []
    top = ranked[0].combined_score
    return [c for c in ranked if top - c.combined_score <= margin + _EPS]


def classify_resolution(
    candidates: Sequence[ScoredCandidate],
    ambiguity_margin: float = 0.05,
    resolved_margin: float = 0.10,
    opening_formula: Optional[Location] = OPENING_FORMULA,
) -> Resolution:
    ranked = rank(candidates)
    if not ranked:
        return Resolution.empty
    # The opening formula heads 113 chapters; it never settles on its own
    if opening_formula is not None and ranked[0].location == opening_formula:
        return Resolution.ambiguous
    if len(ranked) == 1:
        return Resolution.resolved
    if len(tied_with_top(ranked, ambiguity_margin)) >= 2:
        return Resolution.ambiguous
    if ranked[0].combined_score - ranked[1].combined_score >= resolved_margin - _EPS:
        return Resolution.resolved
    return Resolution.uncertain


def is_ambiguous(
    candidates: Sequence[ScoredCandidate],
    ambiguity_margin: float = 0.05,
    opening_formula: Optional[Location] = OPENING_FORMULA,
) -> bool:
    return classify_resolution(candidates, ambiguity_margin, opening_formula=opening_formula) == Resolution.ambiguous
