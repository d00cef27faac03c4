"""Recognition scheduler: owns the session and bounds in-flight work.

Segments are dispatched to the engine as they arrive, at most
`max_concurrent_requests` at a time; anything beyond that is dropped from
dispatch. The first terminal outcome closes the session and everything that
arrives afterwards is late.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from capture.feed import SegmentFeed
from capture.storage import SegmentStore
from common.config import RecognitionSettings
from common.errors import AlreadyRecording, RecognitionError, RecognitionTimeout
from common.schemas import (
    AmbiguousOutcome,
    AudioSegment,
    FailedOutcome,
    PartialMatch,
    RecognitionOutcome,
    ResolvedOutcome,
    ScoredCandidate,
)
from recognition.adaptive import USER_CHOICES, needs_user_selection
from recognition.engine import DisambiguationEngine

logger = logging.getLogger(__name__)

OnOutcome = Callable[[RecognitionOutcome], Any]
OnProgress = Callable[[PartialMatch], Any]
OnLateOutcome = Callable[[str, Any], Any]

MAX_ESCALATIONS = 1
KEPT_PARTIALS = 3


class SessionStatus(str, Enum):
    idle = "idle"
    matching = "matching"
    resolved = "resolved"
    failed = "failed"


@dataclass
class RecognitionSession:
    session_id: str
    status: SessionStatus = SessionStatus.idle
    segments_emitted: int = 0
    pending_request_ids: set[int] = field(default_factory=set)
    best_outcome: Optional[RecognitionOutcome] = None
    best_partial: Optional[PartialMatch] = None
    partials: list[PartialMatch] = field(default_factory=list)
    accumulated_audio: list[AudioSegment] = field(default_factory=list)
    escalations: int = 0
    escalation_choices: list[ScoredCandidate] = field(default_factory=list)

    @property
    def is_matching(self) -> bool:
        return self.status == SessionStatus.matching

    def claim_escalation(self) -> bool:
        if self.escalations >= MAX_ESCALATIONS:
            return False
        self.escalations += 1
        return True

    def has_segment(self, sequence_index: int) -> bool:
        return any(s.sequence_index == sequence_index for s in self.accumulated_audio)

    def audio_until(self, sequence_index: int) -> list[AudioSegment]:
        return [s for s in self.accumulated_audio if s.sequence_index <= sequence_index]

    def add_audio(self, segment: AudioSegment) -> None:
        self.accumulated_audio.append(segment)
        self.accumulated_audio.sort(key=lambda s: s.sequence_index)
        self.segments_emitted += 1


class RecognitionScheduler:
    def __init__(
        self,
        engine: DisambiguationEngine,
        store: Optional[SegmentStore] = None,
        settings: RecognitionSettings | None = None,
        feed: Optional[SegmentFeed] = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.settings = settings or RecognitionSettings()
        self.feed = feed
        self.session: Optional[RecognitionSession] = None
        self.on_late_outcome: Optional[OnLateOutcome] = None
        self._on_outcome: Optional[OnOutcome] = None
        self._on_progress: Optional[OnProgress] = None
        self._deadline: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    def start_session(
        self,
        on_outcome: OnOutcome,
        on_progress: Optional[OnProgress] = None,
        session_id: Optional[str] = None,
    ) -> RecognitionSession:
        if self.session is not None and self.session.is_matching:
            raise AlreadyRecording(f"Session {self.session.session_id} is still matching")

        session = RecognitionSession(session_id=session_id or uuid.uuid4().hex[:12])
        session.status = SessionStatus.matching
        self.session = session
        self._on_outcome = on_outcome
        self._on_progress = on_progress
        if self.feed is not None:
            self.feed.open()
        loop = asyncio.get_running_loop()
        self._deadline = loop.call_later(self.settings.max_session_ms / 1000, self._on_deadline, session)
        logger.info("Session %s started (hard cap %dms)", session.session_id, self.settings.max_session_ms)
        return session

    def submit(self, segment: AudioSegment) -> bool:
        """Dispatch a segment if the session can take it. Returns whether it was dispatched."""
        session = self.session
        if session is None or not session.is_matching:
            logger.debug("Segment %d submitted outside a matching session, discarded", segment.sequence_index)
            self._release([segment])
            return False

        if session.has_segment(segment.sequence_index):
            logger.warning("Segment %d already submitted, duplicate discarded", segment.sequence_index)
            self._release([segment])
            return False

        session.add_audio(segment)
        if self.feed is not None:
            self.feed.publish(segment)

        if len(session.pending_request_ids) >= self.settings.max_concurrent_requests:
            logger.info(
                "Backpressure: %d requests in flight, segment %d not dispatched",
                len(session.pending_request_ids),
                segment.sequence_index,
            )
            return False

        session.pending_request_ids.add(segment.sequence_index)
        task = asyncio.create_task(self._dispatch(session, segment))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def end_session(self) -> None:
        """Cooperative cancellation: in-flight requests finish and are discarded."""
        session = self.session
        if session is None:
            return
        if session.status != SessionStatus.resolved:
            session.status = SessionStatus.failed
        logger.info("Session %s ended (%s)", session.session_id, session.status.value)
        self._close(session)

    def fail_session(self, cause: BaseException) -> None:
        """Terminate on a fatal capture error, delivering Failed once."""
        session = self.session
        if session is None or not session.is_matching:
            return
        reason = cause.code if isinstance(cause, RecognitionError) else "capture_failed"
        logger.error("Session %s failed: %s", session.session_id, cause)
        self._finish(session, SessionStatus.failed, FailedOutcome(reason=reason, detail=str(cause)))

    def conclude(self) -> None:
        """Force the terminal outcome the hard cap would give, right now."""
        session = self.session
        if session is None or not session.is_matching:
            return
        self._conclude(session)

    async def drain(self) -> None:
        """Wait for every dispatched request to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- internals ---

    async def _dispatch(self, session: RecognitionSession, segment: AudioSegment) -> None:
        try:
            outcome = await self.engine.resolve(segment, session)
        except RecognitionTimeout as exc:
            logger.warning("Segment %d timed out: %s", segment.sequence_index, exc)
            return
        except RecognitionError as exc:
            logger.warning("Segment %d dropped: %s", segment.sequence_index, exc)
            return
        except Exception:
            logger.exception("Unexpected error recognizing segment %d", segment.sequence_index)
            return
        finally:
            session.pending_request_ids.discard(segment.sequence_index)
            if not session.is_matching and not session.pending_request_ids:
                self._release(session.accumulated_audio)

        self._handle_outcome(session, segment, outcome)

    def _handle_outcome(self, session: RecognitionSession, segment: AudioSegment, outcome: Any) -> None:
        if session is not self.session or not session.is_matching:
            logger.debug("Late outcome for segment %d discarded", segment.sequence_index)
            if self.on_late_outcome is not None:
                self.on_late_outcome(session.session_id, outcome)
            return

        if isinstance(outcome, ResolvedOutcome):
            if outcome.confidence >= self.settings.confidence_threshold:
                self._finish(session, SessionStatus.resolved, outcome)
                return
            outcome = PartialMatch(
                location=outcome.location,
                confidence=outcome.confidence,
                sequence_index=segment.sequence_index,
                candidates=outcome.candidates[:USER_CHOICES],
            )

        if isinstance(outcome, PartialMatch):
            self._progress(session, outcome)
        elif isinstance(outcome, AmbiguousOutcome):
            self._finish(session, SessionStatus.failed, outcome)
        elif isinstance(outcome, FailedOutcome):
            logger.info("Segment %d: %s, session keeps matching", segment.sequence_index, outcome.reason)

    def _progress(self, session: RecognitionSession, partial: PartialMatch) -> None:
        if session.best_partial is None or partial.confidence > session.best_partial.confidence:
            session.best_partial = partial
        if partial.confidence < self.settings.min_confidence_to_show:
            return
        session.partials.append(partial)
        del session.partials[:-KEPT_PARTIALS]
        if self._on_progress is None:
            return
        try:
            self._on_progress(partial)
        except Exception:
            logger.exception("on_progress callback failed")

    def _on_deadline(self, session: RecognitionSession) -> None:
        if session is not self.session or not session.is_matching:
            return
        logger.info("Session %s hit the %dms hard cap", session.session_id, self.settings.max_session_ms)
        self._conclude(session)

    def _conclude(self, session: RecognitionSession) -> None:
        best = session.best_partial
        if best is not None and best.candidates:
            self._finish(session, SessionStatus.failed, needs_user_selection(best.candidates))
        elif session.escalation_choices:
            # Hard cap reached while Layer 3 was still listening
            self._finish(session, SessionStatus.failed, needs_user_selection(session.escalation_choices))
        else:
            outcome = FailedOutcome(reason="no_match", detail=f"No match within {self.settings.max_session_ms}ms")
            self._finish(session, SessionStatus.failed, outcome)

    def _finish(self, session: RecognitionSession, status: SessionStatus, outcome: RecognitionOutcome) -> None:
        session.status = status
        session.best_outcome = outcome
        self._close(session)
        logger.info("Session %s terminal outcome: %s", session.session_id, outcome.kind)
        if self._on_outcome is None:
            return
        try:
            self._on_outcome(outcome)
        except Exception:
            logger.exception("on_outcome callback failed")

    def _close(self, session: RecognitionSession) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
        if self.feed is not None:
            self.feed.close()
        if not session.pending_request_ids:
            self._release(session.accumulated_audio)

    def _release(self, segments: list[AudioSegment]) -> None:
        if self.store is None:
            return
        for segment in segments:
            self.store.release(segment)
