from __future__ import annotations

import asyncio
import json
import logging
import subprocess
import time

import httpx
from fastapi import FastAPI, File, HTTPException, UploadFile

from classifier_service.features import decode_upload, detect_pauses, onset_signature, trailing_speech
from classifier_service.matcher import match_verses
from classifier_service.transcriber import get_model, transcribe
from common.config import ClassifierSettings
from common.schemas import BoundaryFeatures, ClassifyResponse

logger = logging.getLogger(__name__)

settings = ClassifierSettings()
app = FastAPI(title="Ayah Classifier Service")


@app.on_event("startup")
async def startup():
    get_model(settings)


@app.get("/health")
async def health():
    return {"status": "ok", "model": settings.model_size, "matcher": settings.model_name}


async def _read_audio(audio: UploadFile):
    data = await audio.read()
    try:
        return decode_upload(data)
    except subprocess.CalledProcessError as exc:
        logger.warning("Could not decode upload %s: %s", audio.filename, exc)
        raise HTTPException(status_code=400, detail="Unsupported or corrupt audio")


@app.post("/classify", response_model=ClassifyResponse)
async def classify(audio: UploadFile = File(...)):
    started = time.monotonic()
    samples = await _read_audio(audio)
    transcription = await asyncio.to_thread(transcribe, samples)
    logger.info("Transcribed %s: %r", audio.filename, transcription.text)

    try:
        candidates = await match_verses(transcription.text, settings)
    except json.JSONDecodeError:
        logger.error("Matcher returned invalid JSON for %r", transcription.text)
        raise HTTPException(status_code=502, detail="Matcher returned invalid JSON")
    except (httpx.HTTPError, KeyError):
        logger.exception("Matcher call failed")
        raise HTTPException(status_code=502, detail="Matcher unavailable")

    return ClassifyResponse(
        candidates=candidates,
        transcription=transcription.text,
        processing_time_ms=int((time.monotonic() - started) * 1000),
    )


@app.post("/features", response_model=BoundaryFeatures)
async def features(audio: UploadFile = File(...)):
    samples = await _read_audio(audio)
    pause_before, pause_after = detect_pauses(samples, settings)

    onset = trailing_speech(samples, settings)
    signature = None
    if len(onset):
        transcription = await asyncio.to_thread(transcribe, onset, False)
        signature = onset_signature(transcription.text, settings.onset_words)

    logger.info(
        "Features for %s: pause_before=%s pause_after=%s onset=%r",
        audio.filename,
        pause_before,
        pause_after,
        signature,
    )
    return BoundaryFeatures(
        pause_before=pause_before,
        pause_after=pause_after,
        trailing_onset_signature=signature,
    )


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=settings.host, port=settings.port)
