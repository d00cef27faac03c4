from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from faster_whisper import WhisperModel

from common.config import ClassifierSettings

logger = logging.getLogger(__name__)

_model: WhisperModel | None = None


@dataclass
class Transcription:
    text: str
    avg_logprob: float = 0.0


def get_model(settings: ClassifierSettings | None = None) -> WhisperModel:
    global _model
    if _model is None:
        settings = settings or ClassifierSettings()
        logger.info("Loading faster-whisper model: %s", settings.model_size)
        _model = WhisperModel(
            settings.model_size,
            device=settings.device,
            compute_type=settings.compute_type,
        )
        logger.info("Model loaded")
    return _model


def transcribe(audio: np.ndarray, vad: bool = True) -> Transcription:
    """Transcribe 16kHz float32 recitation audio as Arabic text."""
    if len(audio) == 0:
        return Transcription(text="")
    model = get_model()
    segments, _info = model.transcribe(
        audio,
        language="ar",
        vad_filter=vad,
        vad_parameters={"min_silence_duration_ms": 300},
        beam_size=5,
    )
    texts: list[str] = []
    logprobs: list[float] = []
    for seg in segments:
        texts.append(seg.text.strip())
        if seg.avg_logprob:
            logprobs.append(seg.avg_logprob)
    return Transcription(
        text=" ".join(t for t in texts if t),
        avg_logprob=round(float(np.mean(logprobs)), 4) if logprobs else 0.0,
    )
