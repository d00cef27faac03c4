from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Optional

import numpy as np
import sounddevice as sd

from capture.audio_utils import duration_ms
from capture.recorder import RecordedAudio
from common.errors import CaptureHardwareError

logger = logging.getLogger(__name__)


class SoundDeviceRecorder:
    """Microphone recorder backed by a sounddevice InputStream.

    The stream callback runs on the PortAudio thread and only copies the
    block into a list; packaging happens in close().
    """

    def __init__(self, sample_rate: int = 16000, channels: int = 1, device: Optional[int | str] = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self._stream: sd.InputStream | None = None
        self._blocks: list[np.ndarray] = []
        self._lock = threading.Lock()

    @property
    def is_recording(self) -> bool:
        return self._stream is not None

    async def has_permission(self) -> bool:
        try:
            await asyncio.to_thread(sd.query_devices, self.device, "input")
        except (sd.PortAudioError, ValueError):
            logger.warning("No usable input device", exc_info=True)
            return False
        return True

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.warning("Audio input status: %s", status)
        with self._lock:
            self._blocks.append(indata[:, 0].astype(np.float32).copy())

    async def open(self) -> None:
        if self._stream is not None:
            raise CaptureHardwareError("Recorder is already open")
        with self._lock:
            self._blocks = []
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                device=self.device,
                dtype="float32",
                callback=self._callback,
            )
            await asyncio.to_thread(stream.start)
        except sd.PortAudioError as exc:
            raise CaptureHardwareError(f"Could not open input stream: {exc}") from exc
        self._stream = stream

    async def close(self) -> RecordedAudio:
        stream = self._stream
        if stream is None:
            raise CaptureHardwareError("Recorder is not open")
        self._stream = None
        try:
            await asyncio.to_thread(stream.stop)
            await asyncio.to_thread(stream.close)
        except sd.PortAudioError as exc:
            raise CaptureHardwareError(f"Could not close input stream: {exc}") from exc
        with self._lock:
            blocks, self._blocks = self._blocks, []
        samples = np.concatenate(blocks) if blocks else np.array([], dtype=np.float32)
        return RecordedAudio(samples=samples, duration_ms=duration_ms(samples, self.sample_rate))
