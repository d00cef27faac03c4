"""Verse matching through an Ollama chat model."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from classifier_service.prompts import SYSTEM_PROMPT, build_user_prompt
from common.config import ClassifierSettings
from common.schemas import Candidate, Location

logger = logging.getLogger(__name__)


async def chat_completion(
    messages: list[dict[str, str]],
    settings: ClassifierSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Call Ollama /api/chat and return the assistant message content."""
    settings = settings or ClassifierSettings()
    url = f"{settings.ollama_url}/api/chat"

    payload = {
        "model": settings.model_name,
        "messages": messages,
        "stream": False,
        "options": {
            "temperature": settings.temperature,
            "num_predict": settings.max_tokens,
        },
        "format": "json",
    }

    async with httpx.AsyncClient(timeout=120.0, transport=transport) as client:
        resp = await client.post(url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        return data["message"]["content"]


def parse_candidates(raw: str, top_k: int = 10) -> list[Candidate]:
    """Turn the model's JSON answer into candidates, skipping unusable entries.

    Raises json.JSONDecodeError when the answer is not JSON at all.
    """
    result = json.loads(raw)
    entries: list[Any] = result.get("candidates", []) if isinstance(result, dict) else []
    candidates: list[Candidate] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            candidates.append(
                Candidate(
                    location=Location(chapter=int(entry["chapter"]), verse=int(entry["verse"])),
                    raw_score=min(1.0, max(0.0, float(entry.get("score", 0.0)))),
                    is_known_repeated=bool(entry.get("repeated", False)),
                )
            )
        except (KeyError, TypeError, ValueError, ValidationError):
            logger.debug("Skipping malformed candidate: %s", entry)
    candidates.sort(key=lambda c: (-c.raw_score, c.location.chapter, c.location.verse))
    return candidates[:top_k]


async def match_verses(
    transcription: str,
    settings: ClassifierSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[Candidate]:
    settings = settings or ClassifierSettings()
    if not transcription.strip():
        return []
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_user_prompt(transcription, settings.top_k)},
    ]
    raw = await chat_completion(messages, settings, transport)
    return parse_candidates(raw, settings.top_k)
