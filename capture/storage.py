from __future__ import annotations

import io
import logging
import shutil
import tempfile
import uuid
import wave
from pathlib import Path
from typing import Iterable, Optional

import numpy as np

from capture.audio_utils import (
    TARGET_SAMPLE_RATE,
    duration_ms,
    estimate_quality,
    float_to_pcm16,
    normalize_audio,
    pcm16_to_float,
)
from common.schemas import AudioFormat, AudioSegment

logger = logging.getLogger(__name__)


class SegmentStore:
    """Owns the on-disk WAV files behind AudioSegment handles."""

    def __init__(self, directory: str | Path | None = None, sample_rate: int = TARGET_SAMPLE_RATE):
        if directory:
            self.directory = Path(directory)
            self.directory.mkdir(parents=True, exist_ok=True)
            self._owned = False
        else:
            self.directory = Path(tempfile.mkdtemp(prefix="ayahfind-"))
            self._owned = True
        self.sample_rate = sample_rate

    def write(self, samples: np.ndarray, sequence_index: int, start_offset_ms: int = 0) -> AudioSegment:
        """Persist float32 mono samples and return the segment describing them."""
        path = self.directory / f"seg-{sequence_index:04d}-{uuid.uuid4().hex[:8]}.wav"
        with wave.open(str(path), "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(self.sample_rate)
            wf.writeframes(float_to_pcm16(samples))
        return AudioSegment(
            handle=str(path),
            duration_ms=duration_ms(samples, self.sample_rate),
            sequence_index=sequence_index,
            start_offset_ms=start_offset_ms,
            format=AudioFormat.wav,
        )

    def write_bytes(
        self,
        data: bytes,
        sequence_index: int,
        start_offset_ms: int = 0,
        encoding: AudioFormat = AudioFormat.wav,
        sample_rate: int = TARGET_SAMPLE_RATE,
    ) -> AudioSegment:
        """Store an uploaded blob, converting it to 16kHz mono WAV."""
        if encoding == AudioFormat.wav:
            samples = self._decode_wav(data)
        else:
            pcm = normalize_audio(data, input_sample_rate=sample_rate, input_encoding=encoding.value)
            samples = pcm16_to_float(pcm)
        return self.write(samples, sequence_index, start_offset_ms)

    def read(self, handle: str) -> np.ndarray:
        with wave.open(handle, "rb") as wf:
            return pcm16_to_float(wf.readframes(wf.getnframes()))

    def concat(
        self,
        segments: Iterable[AudioSegment],
        sequence_index: Optional[int] = None,
        limit_ms: Optional[int] = None,
    ) -> AudioSegment:
        """Join segments in sequence order into one new segment.

        With `limit_ms` the result is cut to at most that many milliseconds.
        """
        ordered = sorted(segments, key=lambda s: s.sequence_index)
        if not ordered:
            raise ValueError("Nothing to concatenate")
        samples = np.concatenate([self.read(s.handle) for s in ordered])
        if limit_ms is not None:
            samples = samples[: limit_ms * self.sample_rate // 1000]
        index = ordered[-1].sequence_index if sequence_index is None else sequence_index
        return self.write(samples, index, ordered[0].start_offset_ms)

    def quality(self, handle: str) -> float:
        return estimate_quality(self.read(handle))

    def release(self, segment: AudioSegment | str) -> None:
        handle = segment.handle if isinstance(segment, AudioSegment) else segment
        try:
            Path(handle).unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Could not release segment %s", handle, exc_info=True)

    def _decode_wav(self, data: bytes) -> np.ndarray:
        with wave.open(io.BytesIO(data), "rb") as wf:
            channels = wf.getnchannels()
            rate = wf.getframerate()
            width = wf.getsampwidth()
            frames = wf.readframes(wf.getnframes())
        if channels == 1 and rate == self.sample_rate and width == 2:
            return pcm16_to_float(frames)
        return pcm16_to_float(normalize_audio(data, input_encoding="wav"))

    def cleanup(self) -> None:
        """Drop the temporary directory this store created, if it created one."""
        if self._owned:
            shutil.rmtree(self.directory, ignore_errors=True)
