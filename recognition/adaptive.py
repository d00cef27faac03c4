"""Adaptive listening (Layer 3).

When neither the scores nor the sequence context can separate the
candidates, ask the capture side for a few more seconds, glue them to what
was already heard and run the first two layers once more.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from capture.storage import SegmentStore
from common.config import RecognitionSettings
from common.errors import RecognitionError, RecognitionTimeout
from common.schemas import AmbiguousOutcome, AudioSegment, ResolvedOutcome, ScoredCandidate
from recognition.scoring import Resolution
from recognition.sequence import SequenceResolution
from recognition.sources import AudioExtensionSource

logger = logging.getLogger(__name__)

USER_CHOICES = 3

Rerun = Callable[[AudioSegment], Awaitable[SequenceResolution]]


def needs_user_selection(candidates: list[ScoredCandidate]) -> AmbiguousOutcome:
    return AmbiguousOutcome(candidates=list(candidates[:USER_CHOICES]))


class AdaptiveListeningController:
    def __init__(
        self,
        source: AudioExtensionSource,
        store: SegmentStore,
        settings: RecognitionSettings | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.settings = settings or RecognitionSettings()

    def budget_ms(self, captured_ms: int) -> int:
        return max(0, self.settings.max_session_ms - captured_ms)

    async def extend(self, captured: list[AudioSegment]) -> Optional[AudioSegment]:
        """Return captured audio plus an extension as one new segment.

        None when the session budget leaves no room for the minimum
        extension or the source had nothing more to give.
        """
        captured_ms = sum(s.duration_ms for s in captured)
        budget = self.budget_ms(captured_ms)
        if budget < self.settings.extension_min_ms:
            logger.info("Extension budget %dms below minimum %dms", budget, self.settings.extension_min_ms)
            return None

        max_ms = min(self.settings.extension_max_ms, budget)
        wait_s = max_ms / 1000 + self.settings.request_timeout_s
        try:
            extra = await asyncio.wait_for(
                self.source.listen_more(self.settings.extension_min_ms, max_ms),
                timeout=wait_s,
            )
        except asyncio.TimeoutError as exc:
            raise RecognitionTimeout("listen_more", wait_s) from exc

        seen = {s.sequence_index for s in captured}
        fresh = [s for s in extra if s.sequence_index not in seen]
        if not fresh:
            logger.info("No extension audio arrived")
            return None

        combined = self.store.concat(captured + fresh, limit_ms=captured_ms + max_ms)
        logger.info(
            "Extended %dms of audio by %d segment(s) to %dms",
            captured_ms,
            len(fresh),
            combined.duration_ms,
        )
        return combined

    async def resolve(
        self,
        ranked: list[ScoredCandidate],
        captured: list[AudioSegment],
        rerun: Rerun,
    ):
        """Run the single escalation and always come back with a terminal outcome."""
        try:
            combined = await self.extend(captured)
        except RecognitionError as exc:
            logger.warning("Audio extension failed: %s", exc)
            return needs_user_selection(ranked)
        if combined is None:
            return needs_user_selection(ranked)

        try:
            result = await rerun(combined)
        except RecognitionError as exc:
            logger.warning("Re-run on extended audio failed: %s", exc)
            return needs_user_selection(ranked)
        finally:
            self.store.release(combined)

        if result.top is None:
            return needs_user_selection(ranked)
        if result.resolution in (Resolution.resolved, Resolution.uncertain):
            top = result.top
            logger.info("Extended audio resolved to %s (%.3f)", top.location, top.combined_score)
            return ResolvedOutcome(
                location=top.location,
                confidence=top.combined_score,
                candidates=result.candidates,
            )
        logger.info("Still ambiguous after extension, %d candidates", len(result.candidates))
        return needs_user_selection(result.candidates)
