"""Capture/chunking controller.

Turns a live microphone into a deterministic sequence of AudioSegments.
A single timer fires once per segment; on fire the hardware recording is
stopped, the elapsed audio is packaged and handed to `on_segment`, and in
continuous mode a new recording starts immediately unless a stop was
requested in the meantime.

All hardware transitions happen under one asyncio lock so that the timer
emission and `stop()` never both package the same recording.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from capture.feed import SegmentFeed
from capture.recorder import RecordedAudio, Recorder
from capture.storage import SegmentStore
from common.config import CaptureSettings
from common.errors import (
    AlreadyRecording,
    CaptureHardwareError,
    ConfigurationError,
    DurationOutOfBounds,
    PermissionDenied,
    RecognitionError,
    SegmentTooLong,
    SegmentTooShort,
)
from common.schemas import AudioSegment

logger = logging.getLogger(__name__)

OnSegment = Callable[[AudioSegment], None]
OnError = Callable[[RecognitionError], None]


class CaptureState(str, Enum):
    idle = "idle"
    recording = "recording"
    stopped = "stopped"
    error = "error"


class CaptureMode(str, Enum):
    single_shot = "single_shot"
    continuous = "continuous"


class CaptureController:
    def __init__(
        self,
        recorder: Recorder,
        store: SegmentStore,
        settings: CaptureSettings | None = None,
        mode: CaptureMode = CaptureMode.continuous,
    ) -> None:
        self.settings = settings or CaptureSettings()
        self.mode = mode
        self.on_auto_stop: Optional[Callable[[], None]] = None
        self._recorder = recorder
        self._store = store
        self._state = CaptureState.idle
        self._interval_ms = self.settings.chunk_interval_ms
        self._on_segment: Optional[OnSegment] = None
        self._on_error: Optional[OnError] = None
        self._chunking_enabled = False
        self._stopping = False
        self._emitting = False
        self._timer: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._next_index = 0
        self._total_ms = 0
        self._feed = SegmentFeed()

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def total_duration_ms(self) -> int:
        return self._total_ms

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    # --- configuration ---

    def enable_chunking(self, interval_ms: int, on_segment: OnSegment, on_error: Optional[OnError] = None) -> None:
        if interval_ms <= 0:
            raise ConfigurationError(f"interval_ms must be positive, got {interval_ms}")
        if self._state == CaptureState.recording:
            logger.warning("enable_chunking ignored while recording; keeping interval=%dms", self._interval_ms)
            return
        self._interval_ms = interval_ms
        self._on_segment = on_segment
        self._on_error = on_error
        self._chunking_enabled = True

    def disable_chunking(self) -> None:
        """Stop emitting segments; a running recording continues until stop()."""
        self._chunking_enabled = False
        self._on_segment = None
        self._cancel_timer()

    # --- lifecycle ---

    async def start(self) -> None:
        if self._state == CaptureState.recording:
            raise AlreadyRecording()
        if not self._chunking_enabled or self._on_segment is None:
            raise ConfigurationError("Chunking not enabled. Call enable_chunking() first.")

        async with self._lock:
            # A concurrent start() may have won the lock first
            if self._state == CaptureState.recording:
                raise AlreadyRecording()
            if not await self._recorder.has_permission():
                self._state = CaptureState.error
                raise PermissionDenied()

            self._stopping = False
            self._feed.open()
            self._next_index = 0
            self._total_ms = 0
            await self._open_recording()
        logger.info("Capture started: mode=%s interval=%dms", self.mode.value, self._interval_ms)

    async def stop(self) -> Optional[AudioSegment]:
        """Stop capture and return the final in-flight segment, if any.

        The stopping flag is set before the first suspension point, so a
        concurrent second call returns None without touching the hardware.
        """
        if self._stopping:
            return None
        self._stopping = True
        self._cancel_timer()

        async with self._lock:
            # An emission that held the lock may have re-armed the timer
            self._cancel_timer()
            self._feed.close()
            if not self._recorder.is_recording:
                if self._state == CaptureState.recording:
                    self._state = CaptureState.stopped
                logger.info("Capture already stopped, no final chunk")
                return None

            try:
                recorded = await self._recorder.close()
            except CaptureHardwareError:
                self._state = CaptureState.error
                raise
            self._state = CaptureState.stopped

            if len(recorded.samples) == 0:
                return None
            segment = self._package(recorded)
            logger.info("Capture stopped: final segment %d (%dms)", segment.sequence_index, segment.duration_ms)

            bound_error = self._check_bounds(segment)
            if bound_error is not None:
                raise bound_error
            return segment

    async def listen_more(self, min_ms: int, max_ms: int) -> list[AudioSegment]:
        """Collect at least `min_ms` of fresh audio for an escalation.

        While recording continuously the next emitted segments are collected;
        when the hardware is idle a one-shot extension is recorded directly.
        Returns an empty list when capture was stopped in the meantime.
        """
        if self._stopping or self._state == CaptureState.error:
            return []
        if self.mode == CaptureMode.continuous and self._chunking_enabled:
            return await self._feed.listen_more(min_ms, max_ms)

        length_ms = max(min_ms, min(max_ms, self._interval_ms))
        async with self._lock:
            if self._recorder.is_recording:
                raise CaptureHardwareError("Recorder busy with a single-shot segment")
            try:
                await self._recorder.open()
            except CaptureHardwareError:
                self._state = CaptureState.error
                raise
            self._state = CaptureState.recording
        logger.info("Recording %dms extension", length_ms)

        await asyncio.sleep(length_ms / 1000)

        async with self._lock:
            if not self._recorder.is_recording:
                return []
            try:
                recorded = await self._recorder.close()
            except CaptureHardwareError:
                self._state = CaptureState.error
                raise
            self._state = CaptureState.stopped
            if len(recorded.samples) == 0:
                return []
            return [self._package(recorded)]

    # --- internals ---

    async def _open_recording(self) -> None:
        try:
            await self._recorder.open()
        except CaptureHardwareError:
            self._state = CaptureState.error
            raise
        self._state = CaptureState.recording
        if self._chunking_enabled:
            self._timer = asyncio.create_task(self._tick(self._interval_ms))

    def _cancel_timer(self) -> None:
        # An emission already past its sleep must run to completion
        if self._timer is not None and not self._emitting:
            self._timer.cancel()
        self._timer = None

    async def _tick(self, interval_ms: int) -> None:
        await asyncio.sleep(interval_ms / 1000)
        self._emitting = True
        try:
            await self._emit()
        finally:
            self._emitting = False

    async def _emit(self) -> None:
        async with self._lock:
            if self._stopping or not self._recorder.is_recording:
                return
            try:
                recorded = await self._recorder.close()
            except CaptureHardwareError as exc:
                self._state = CaptureState.error
                logger.error("Capture failed during emission: %s", exc)
                self._report(exc)
                return
            self._state = CaptureState.stopped

            segment = self._package(recorded)
            bound_error = self._check_bounds(segment)
            if bound_error is not None:
                logger.warning("Segment %d out of bounds: %s", segment.sequence_index, bound_error)
                self._report(bound_error)
            else:
                self._deliver(segment)

            if self.mode != CaptureMode.continuous or self._stopping or not self._chunking_enabled:
                return

            if self._total_ms >= self.settings.max_capture_ms:
                logger.info("Max capture duration reached (%dms), auto-stopping", self._total_ms)
                self._stopping = True
                self._feed.close()
                if self.on_auto_stop is not None:
                    self.on_auto_stop()
                return

            try:
                await self._open_recording()
            except CaptureHardwareError as exc:
                logger.error("Could not restart recording: %s", exc)
                self._report(exc)

    def _package(self, recorded: RecordedAudio) -> AudioSegment:
        segment = self._store.write(recorded.samples, self._next_index, self._total_ms)
        self._next_index += 1
        self._total_ms += segment.duration_ms
        return segment

    def _check_bounds(self, segment: AudioSegment) -> Optional[DurationOutOfBounds]:
        if segment.duration_ms < self.settings.min_segment_ms:
            return SegmentTooShort(segment, self.settings.min_segment_ms)
        limit = self.settings.max_segment_ms + self.settings.duration_tolerance_ms
        if segment.duration_ms > limit:
            return SegmentTooLong(segment, limit)
        return None

    def _deliver(self, segment: AudioSegment) -> None:
        self._feed.publish(segment)
        if self._on_segment is None:
            return
        try:
            self._on_segment(segment)
        except Exception:
            logger.exception("on_segment callback failed for segment %d", segment.sequence_index)

    def _report(self, error: RecognitionError) -> None:
        if self._on_error is None:
            if isinstance(error, DurationOutOfBounds):
                self._store.release(error.segment)
            return
        try:
            self._on_error(error)
        except Exception:
            logger.exception("on_error callback failed")
