"""Boundary features: pauses at either edge and the onset of trailing speech."""

from __future__ import annotations

import io
import wave

import numpy as np

from capture.audio_utils import TARGET_SAMPLE_RATE, frame_energy_db, normalize_audio, pcm16_to_float
from common.config import ClassifierSettings
from recognition.knowledge import normalize_arabic

FRAME_MS = 20


def decode_upload(data: bytes) -> np.ndarray:
    """Decode an uploaded WAV (or anything ffmpeg can probe) to 16kHz mono float32."""
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            shape = (wf.getnchannels(), wf.getframerate(), wf.getsampwidth())
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError):
        shape = None
    if shape == (1, TARGET_SAMPLE_RATE, 2):
        return pcm16_to_float(frames)
    return pcm16_to_float(normalize_audio(data, input_encoding="wav"))


def is_silent(samples: np.ndarray, threshold_db: float) -> bool:
    energy = frame_energy_db(samples, TARGET_SAMPLE_RATE, FRAME_MS)
    if len(energy) == 0:
        return True
    return bool(np.median(energy) < threshold_db)


def detect_pauses(samples: np.ndarray, settings: ClassifierSettings | None = None) -> tuple[bool, bool]:
    """Whether the first and last `pause_window_ms` of the audio are silent."""
    settings = settings or ClassifierSettings()
    window = int(TARGET_SAMPLE_RATE * settings.pause_window_ms / 1000)
    if len(samples) < 2 * window:
        return False, False
    before = is_silent(samples[:window], settings.pause_threshold_db)
    after = is_silent(samples[-window:], settings.pause_threshold_db)
    return before, after


def trailing_speech(samples: np.ndarray, settings: ClassifierSettings | None = None) -> np.ndarray:
    """Audio of the last utterance started after a pause, cut to `onset_window_ms`.

    Trailing silence is ignored. Without any inner pause the last window of
    the audio is returned.
    """
    settings = settings or ClassifierSettings()
    window = int(TARGET_SAMPLE_RATE * settings.onset_window_ms / 1000)
    frame = int(TARGET_SAMPLE_RATE * FRAME_MS / 1000)
    silent = frame_energy_db(samples, TARGET_SAMPLE_RATE, FRAME_MS) < settings.pause_threshold_db

    end = len(silent)
    while end > 0 and silent[end - 1]:
        end -= 1
    if end == 0:
        return samples[:0]

    # A pause is a run of at least pause_window_ms of silent frames
    min_run = max(1, settings.pause_window_ms // FRAME_MS)
    run = 0
    for i in range(end - 1, -1, -1):
        run = run + 1 if silent[i] else 0
        if run >= min_run:
            start = (i + run) * frame
            break
    else:
        return samples[max(0, end * frame - window) : end * frame]
    return samples[start : min(end * frame, start + window)]


def onset_signature(text: str, words: int = 4) -> str | None:
    """First `words` words of the normalized transcription, or None if nothing was said."""
    tokens = normalize_arabic(text).split()
    if not tokens:
        return None
    return " ".join(tokens[:words])
