"""Sequence context resolver.

Breaks near-ties between textually identical candidates by checking the
audio around the segment boundary against what each candidate's
neighbourhood should sound like: pauses before/after, and the opening of
the verse that should follow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from rapidfuzz import fuzz

from common.config import RecognitionSettings
from common.schemas import AdjacencyExpectation, AudioSegment, BoundaryFeatures, Candidate, ScoredCandidate
from recognition.knowledge import AdjacencyKnowledgeBase, ChapterOpening, normalize_arabic
from recognition.scoring import (
    DEFAULT_WEIGHTS,
    NEUTRAL,
    ConfidenceWeights,
    Resolution,
    classify_resolution,
    rank,
    score_candidate,
    tied_with_top,
)

logger = logging.getLogger(__name__)

PAUSE_BONUS = 0.15
ONSET_BONUS = 0.25


@dataclass
class DisambiguationContext:
    candidates: list[ScoredCandidate]
    segment: AudioSegment
    features: Optional[BoundaryFeatures] = None
    audio_quality: Optional[float] = None


@dataclass
class SequenceResolution:
    resolution: Resolution
    candidates: list[ScoredCandidate]
    applied: bool = False
    needs_more_audio: bool = False
    opening: Optional[ChapterOpening] = None
    rescored: list[str] = field(default_factory=list)

    @property
    def top(self) -> Optional[ScoredCandidate]:
        return self.candidates[0] if self.candidates else None


class SequenceContextResolver:
    def __init__(
        self,
        knowledge: AdjacencyKnowledgeBase,
        settings: RecognitionSettings | None = None,
        weights: ConfidenceWeights = DEFAULT_WEIGHTS,
    ) -> None:
        self.knowledge = knowledge
        self.settings = settings or RecognitionSettings()
        self.weights = weights

    def onset_matches(self, expected: str, observed: Optional[str]) -> bool:
        """Compare the leading words of two onset signatures.

        Only the overlapping prefix is compared, so a short observed onset
        can match several expectations.
        """
        if not observed or not expected:
            return False
        expected_words = normalize_arabic(expected).split()
        observed_words = normalize_arabic(observed).split()
        n = min(len(expected_words), len(observed_words))
        if n == 0:
            return False
        score = fuzz.ratio(" ".join(expected_words[:n]), " ".join(observed_words[:n]))
        return score >= self.settings.onset_match_threshold

    def sequence_score(self, expectation: AdjacencyExpectation, features: BoundaryFeatures) -> float:
        score = NEUTRAL
        if (
            features.pause_before == expectation.expects_pause_before
            and features.pause_after == expectation.expects_pause_after
        ):
            score += PAUSE_BONUS
        if self.onset_matches(expectation.next_verse_onset_signature, features.trailing_onset_signature):
            score += ONSET_BONUS
        return min(1.0, score)

    def match_chapter_openings(self, observed: Optional[str]) -> list[ChapterOpening]:
        return [o for o in self.knowledge.chapter_openings if self.onset_matches(o.signature, observed)]

    def resolve(self, context: DisambiguationContext) -> SequenceResolution:
        ranked = rank(context.candidates)
        if not ranked:
            return SequenceResolution(Resolution.empty, [])

        if self.knowledge.is_opening_formula(ranked[0].location):
            return self._resolve_opening_formula(context, ranked)

        if context.features is None:
            return SequenceResolution(self.classify(ranked), ranked)

        # Both ties and uncertain gaps are contenders for re-scoring
        contenders = tied_with_top(ranked, self.settings.resolved_margin)
        known = [c for c in contenders if self.knowledge.is_known_repeated(c.location)]
        if not known:
            logger.debug("No adjacency entries among %d contenders, skipping sequence context", len(contenders))
            return SequenceResolution(self.classify(ranked), ranked)

        known_keys = {c.location.key for c in known}
        rescored: list[ScoredCandidate] = []
        for candidate in ranked:
            expectation = self.knowledge.expectations_for(candidate.location)
            if candidate.location.key in known_keys and expectation is not None:
                seq = self.sequence_score(expectation, context.features)
            else:
                seq = candidate.sequence_score
            rescored.append(score_candidate(candidate, seq, context.audio_quality, self.weights))

        reranked = rank(rescored)
        verdict = self.classify(reranked)
        logger.info(
            "Sequence context: %s -> %s (top %s %.3f)",
            ranked[0].location,
            verdict.value,
            reranked[0].location,
            reranked[0].combined_score,
        )
        return SequenceResolution(
            verdict,
            reranked,
            applied=True,
            rescored=[str(c.location) for c in known],
        )

    def _resolve_opening_formula(
        self, context: DisambiguationContext, ranked: list[ScoredCandidate]
    ) -> SequenceResolution:
        observed = context.features.trailing_onset_signature if context.features else None
        matches = self.match_chapter_openings(observed)
        if len(matches) != 1:
            logger.info(
                "Opening formula with %s continuation (%d chapter matches), more audio needed",
                "no" if not observed else "inconclusive",
                len(matches),
            )
            return SequenceResolution(Resolution.ambiguous, ranked, needs_more_audio=True)

        opening = matches[0]
        formula = ranked[0]
        expectation = AdjacencyExpectation(
            expects_pause_before=True,
            expects_pause_after=True,
            next_verse_onset_signature=opening.signature,
        )
        seq = self.sequence_score(expectation, context.features)
        resolved = score_candidate(
            Candidate(location=opening.location, raw_score=formula.raw_score, is_known_repeated=True),
            seq,
            context.audio_quality,
            self.weights,
        )
        others = [c for c in ranked[1:] if c.location != opening.location]
        logger.info("Opening formula continues into chapter %d", opening.chapter)
        # The formula case is settled by the continuation, not by the score gap
        return SequenceResolution(
            Resolution.resolved,
            [resolved] + others,
            applied=True,
            opening=opening,
        )

    def classify(self, ranked: list[ScoredCandidate]) -> Resolution:
        return classify_resolution(
            ranked,
            self.settings.ambiguity_margin,
            self.settings.resolved_margin,
            self.knowledge.opening_formula,
        )
