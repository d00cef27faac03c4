"""Shared test doubles and audio builders."""

from __future__ import annotations

import asyncio
import io
import wave
from typing import Callable, Optional

import numpy as np

from capture.audio_utils import float_to_pcm16
from capture.recorder import RecordedAudio
from common.errors import CaptureHardwareError
from common.schemas import AudioSegment, BoundaryFeatures, Candidate, Location


def cand(location: str, raw: float, repeated: bool = False) -> Candidate:
    return Candidate(location=Location.parse(location), raw_score=raw, is_known_repeated=repeated)


def tone(ms: int, amplitude: float = 0.1, sample_rate: int = 16000) -> np.ndarray:
    t = np.arange(ms * sample_rate // 1000, dtype=np.float32) / sample_rate
    return (amplitude * np.sin(2 * np.pi * 220 * t)).astype(np.float32)


def wav_bytes(samples: np.ndarray, rate: int = 16000) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(rate)
        wf.writeframes(float_to_pcm16(samples))
    return buf.getvalue()


class FakeRecorder:
    """Recorder returning `clip_ms` of tone on every close."""

    def __init__(self, clip_ms: int = 3000, permission: bool = True):
        self.clip_ms = clip_ms
        self.permission = permission
        self.fail_open = False
        self.fail_close = False
        self.opens = 0
        self.closes = 0
        self._open = False

    @property
    def is_recording(self) -> bool:
        return self._open

    async def has_permission(self) -> bool:
        return self.permission

    async def open(self) -> None:
        if self.fail_open:
            raise CaptureHardwareError("device busy")
        if self._open:
            raise CaptureHardwareError("Recorder is already open")
        self._open = True
        self.opens += 1

    async def close(self) -> RecordedAudio:
        if not self._open:
            raise CaptureHardwareError("Recorder is not open")
        self._open = False
        self.closes += 1
        if self.fail_close:
            raise CaptureHardwareError("codec failure")
        samples = tone(self.clip_ms)
        return RecordedAudio(samples=samples, duration_ms=self.clip_ms)


class FakeSource:
    """Candidate source answering from a function of the call number and handle."""

    def __init__(self, answer: Callable[[int, str], list[Candidate]], delay: float = 0.0):
        self.answer = answer
        self.delay = delay
        self.calls: list[str] = []

    async def classify(self, handle: str) -> list[Candidate]:
        self.calls.append(handle)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.answer(len(self.calls), handle)


class FakeExtractor:
    def __init__(self, features: Optional[BoundaryFeatures] = None):
        self.features = features or BoundaryFeatures()
        self.calls = 0

    async def extract_boundary_features(self, handle: str) -> BoundaryFeatures:
        self.calls += 1
        return self.features


class FakeExtension:
    def __init__(self, segments: Optional[list[AudioSegment]] = None):
        self.segments = segments or []
        self.requests: list[tuple[int, int]] = []

    async def listen_more(self, min_ms: int, max_ms: int) -> list[AudioSegment]:
        self.requests.append((min_ms, max_ms))
        return list(self.segments)
