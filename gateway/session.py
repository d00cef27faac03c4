from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import WebSocket

from capture.feed import SegmentFeed
from capture.storage import SegmentStore
from common.config import CaptureSettings, RecognitionSettings
from common.schemas import AudioFormat, AudioSegment
from recognition.knowledge import AdjacencyKnowledgeBase
from recognition.pipeline import build_scheduler
from recognition.scheduler import RecognitionScheduler

logger = logging.getLogger(__name__)


@dataclass
class Session:
    session_id: str
    client_ws: Optional[WebSocket]
    store: SegmentStore
    feed: SegmentFeed
    scheduler: RecognitionScheduler
    format: AudioFormat = AudioFormat.wav
    sample_rate: int = 16000
    next_index: int = 0
    offset_ms: int = 0

    def accept(self, data: bytes) -> AudioSegment:
        """Store one uploaded segment and hand it to the scheduler."""
        segment = self.store.write_bytes(
            data,
            sequence_index=self.next_index,
            start_offset_ms=self.offset_ms,
            encoding=self.format,
            sample_rate=self.sample_rate,
        )
        self.next_index += 1
        self.offset_ms += segment.duration_ms
        self.scheduler.submit(segment)
        return segment

    async def finish(self) -> None:
        """Client stopped: let in-flight work settle, then force a verdict."""
        self.feed.close()
        await self.scheduler.drain()
        self.scheduler.conclude()

    def close(self) -> None:
        self.scheduler.end_session()
        self.store.cleanup()


class SessionManager:
    def __init__(
        self,
        max_sessions: int = 10,
        knowledge: Optional[AdjacencyKnowledgeBase] = None,
        settings: Optional[RecognitionSettings] = None,
        capture_settings: Optional[CaptureSettings] = None,
    ) -> None:
        self._max = max_sessions
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self.settings = settings or RecognitionSettings()
        self.capture_settings = capture_settings or CaptureSettings()
        self.knowledge = knowledge or AdjacencyKnowledgeBase.from_file(self.settings.adjacency_path)

    async def create(
        self,
        session_id: str,
        client_ws: Optional[WebSocket],
        format: AudioFormat = AudioFormat.wav,
        sample_rate: int = 16000,
    ) -> Session:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Max sessions ({self._max}) reached")
            if session_id in self._sessions:
                raise RuntimeError(f"Session {session_id} already exists")
            store = SegmentStore(self.capture_settings.storage_dir or None, self.capture_settings.sample_rate)
            feed = SegmentFeed()
            session = Session(
                session_id=session_id,
                client_ws=client_ws,
                store=store,
                feed=feed,
                scheduler=build_scheduler(store, self.knowledge, self.settings, feed=feed),
                format=format,
                sample_rate=sample_rate,
            )
            self._sessions[session_id] = session
            logger.info("Session created: %s (%d active)", session_id, len(self._sessions))
            return session

    async def remove(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                session.close()
            logger.info("Session removed: %s (%d active)", session_id, len(self._sessions))

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
