from __future__ import annotations

import subprocess
from typing import Optional

import numpy as np

TARGET_SAMPLE_RATE = 16000


def normalize_audio(
    data: bytes,
    input_sample_rate: int = TARGET_SAMPLE_RATE,
    input_channels: int = 1,
    input_encoding: str = "pcm_s16le",
) -> bytes:
    """Convert incoming audio to 16kHz mono 16-bit PCM.

    If the audio is already in the target format, return as-is.
    Otherwise shell out to ffmpeg for conversion.
    """
    if input_sample_rate == TARGET_SAMPLE_RATE and input_channels == 1 and input_encoding == "pcm_s16le":
        return data

    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error"]
    fmt = _ffmpeg_format(input_encoding)
    if fmt is not None:
        # Raw PCM has no header, ffmpeg needs to be told its shape
        cmd += ["-f", fmt, "-ar", str(input_sample_rate), "-ac", str(input_channels)]
    cmd += [
        "-i", "pipe:0",
        "-f", "s16le",
        "-ar", str(TARGET_SAMPLE_RATE),
        "-ac", "1",
        "pipe:1",
    ]
    result = subprocess.run(cmd, input=data, capture_output=True, check=True)
    return result.stdout


def _ffmpeg_format(encoding: str) -> Optional[str]:
    mapping = {
        "pcm_s16le": "s16le",
        "pcm_f32le": "f32le",
    }
    # Container formats (wav, m4a, ogg, mp3) are probed by ffmpeg itself
    return mapping.get(encoding)


def pcm16_to_float(pcm: bytes) -> np.ndarray:
    return np.frombuffer(pcm, dtype=np.int16).astype(np.float32) / 32768.0


def float_to_pcm16(samples: np.ndarray) -> bytes:
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767.0).astype(np.int16).tobytes()


def duration_ms(samples: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE) -> int:
    return int(round(len(samples) * 1000 / sample_rate))


def frame_energy_db(samples: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE, frame_ms: int = 20) -> np.ndarray:
    """Per-frame RMS level in dBFS."""
    frame = max(1, int(sample_rate * frame_ms / 1000))
    count = len(samples) // frame
    if count == 0:
        return np.array([], dtype=np.float32)
    frames = samples[: count * frame].reshape(count, frame)
    rms = np.sqrt(np.mean(frames ** 2, axis=1))
    return 20.0 * np.log10(np.maximum(rms, 1e-10))


def estimate_quality(samples: np.ndarray) -> float:
    """Rough 0..1 audio quality: penalizes near-silence and clipping."""
    if len(samples) == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(samples ** 2)))
    level_db = 20.0 * np.log10(max(rms, 1e-10))
    # -50 dBFS or quieter is unusable, -20 dBFS and louder is a healthy level
    level_score = float(np.clip((level_db + 50.0) / 30.0, 0.0, 1.0))
    clipped_ratio = float(np.mean(np.abs(samples) >= 0.999))
    clip_score = float(np.clip(1.0 - clipped_ratio * 20.0, 0.0, 1.0))
    return round(level_score * clip_score, 4)
