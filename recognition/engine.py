"""Disambiguation engine: classify, then sequence context, then listen longer.

Each layer runs only when the one before it leaves a near-tie.
"""

from __future__ import annotations

import asyncio
import logging
import wave
from typing import TYPE_CHECKING, Awaitable, Optional, TypeVar

from capture.storage import SegmentStore
from common.config import RecognitionSettings
from common.errors import RecognitionError, RecognitionTimeout
from common.schemas import AudioSegment, BoundaryFeatures, FailedOutcome, PartialMatch, ResolvedOutcome
from recognition.adaptive import USER_CHOICES, AdaptiveListeningController, needs_user_selection
from recognition.scoring import DEFAULT_WEIGHTS, ConfidenceWeights, Resolution, score_candidates
from recognition.sequence import DisambiguationContext, SequenceContextResolver, SequenceResolution
from recognition.sources import CandidateSource, FeatureExtractor

if TYPE_CHECKING:
    from recognition.scheduler import RecognitionSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DisambiguationEngine:
    def __init__(
        self,
        source: CandidateSource,
        resolver: SequenceContextResolver,
        extractor: Optional[FeatureExtractor] = None,
        adaptive: Optional[AdaptiveListeningController] = None,
        store: Optional[SegmentStore] = None,
        settings: RecognitionSettings | None = None,
        weights: ConfidenceWeights = DEFAULT_WEIGHTS,
    ) -> None:
        self.source = source
        self.resolver = resolver
        self.extractor = extractor
        self.adaptive = adaptive
        self.store = store
        self.settings = settings or RecognitionSettings()
        self.weights = weights

    async def resolve(self, segment: AudioSegment, session: Optional[RecognitionSession] = None):
        """Produce an outcome for one segment.

        Returns a terminal outcome, or a PartialMatch when the segment is
        still ambiguous and the session has already spent its escalation.
        """
        result = await self.identify(segment)
        if result.resolution == Resolution.empty:
            return FailedOutcome(reason="no_match", detail=f"segment {segment.sequence_index}")

        top = result.top
        if result.resolution in (Resolution.resolved, Resolution.uncertain):
            return ResolvedOutcome(location=top.location, confidence=top.combined_score, candidates=result.candidates)

        if self.adaptive is None:
            return needs_user_selection(result.candidates)

        if session is not None and not session.claim_escalation():
            logger.debug("Escalation already taken, segment %d reports progress", segment.sequence_index)
            return PartialMatch(
                location=top.location,
                confidence=top.combined_score,
                sequence_index=segment.sequence_index,
                candidates=result.candidates[:USER_CHOICES],
            )

        if session is not None:
            session.escalation_choices = result.candidates[:USER_CHOICES]
        captured = session.audio_until(segment.sequence_index) if session is not None else [segment]
        logger.info("Segment %d ambiguous after sequence context, listening longer", segment.sequence_index)
        return await self.adaptive.resolve(result.candidates, captured, self.identify)

    async def identify(self, segment: AudioSegment) -> SequenceResolution:
        """Layers 1 and 2 on a single piece of audio."""
        candidates = await self._call(self.source.classify(segment.handle), "classify")
        if not candidates:
            logger.info("No candidates for segment %d", segment.sequence_index)
            return SequenceResolution(Resolution.empty, [])

        quality = self._quality(segment)
        scored = score_candidates(candidates, quality, top_k=self.settings.top_k, weights=self.weights)
        verdict = self.resolver.classify(scored)
        if verdict == Resolution.resolved:
            return SequenceResolution(verdict, scored)

        features = await self._features(segment)
        return self.resolver.resolve(DisambiguationContext(scored, segment, features, quality))

    async def _features(self, segment: AudioSegment) -> Optional[BoundaryFeatures]:
        if self.extractor is None:
            return None
        try:
            return await self._call(
                self.extractor.extract_boundary_features(segment.handle),
                "extract_boundary_features",
            )
        except RecognitionError as exc:
            logger.warning("Boundary features unavailable for segment %d: %s", segment.sequence_index, exc)
            return None

    def _quality(self, segment: AudioSegment) -> Optional[float]:
        if self.store is None:
            return None
        try:
            return self.store.quality(segment.handle)
        except (OSError, wave.Error, EOFError):
            logger.warning("Could not measure quality of %s", segment.handle, exc_info=True)
            return None

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.request_timeout_s)
        except asyncio.TimeoutError as exc:
            raise RecognitionTimeout(operation, self.settings.request_timeout_s) from exc
