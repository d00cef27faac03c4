"""Collaborator contracts consumed by the engine, plus HTTP adapters.

Responses are validated here, at the boundary, so nothing downstream ever
sees a loosely shaped payload.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError

from common.errors import ClassificationUnavailable, RecognitionTimeout
from common.schemas import AudioSegment, BoundaryFeatures, Candidate, ClassifyResponse

logger = logging.getLogger(__name__)


class CandidateSource(Protocol):
    async def classify(self, handle: str) -> list[Candidate]: ...


class FeatureExtractor(Protocol):
    async def extract_boundary_features(self, handle: str) -> BoundaryFeatures: ...


class AudioExtensionSource(Protocol):
    async def listen_more(self, min_ms: int, max_ms: int) -> list[AudioSegment]: ...


def validate_candidates(payload: Any, top_k: int = 10) -> list[Candidate]:
    """Parse a classifier payload into a ranked, de-duplicated top-K list."""
    try:
        response = ClassifyResponse.model_validate(payload)
    except ValidationError as exc:
        raise ClassificationUnavailable("malformed classifier response", exc) from exc

    best: dict[tuple[int, int], Candidate] = {}
    for candidate in response.candidates:
        current = best.get(candidate.location.key)
        if current is None or candidate.raw_score > current.raw_score:
            best[candidate.location.key] = candidate
    ranked = sorted(best.values(), key=lambda c: (-c.raw_score, c.location.chapter, c.location.verse))
    return ranked[:top_k]


class _HttpCollaborator:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _post_audio(self, path: str, handle: str, operation: str) -> Any:
        audio = Path(handle)
        try:
            files = {"audio": (audio.name, audio.read_bytes(), "audio/wav")}
        except OSError as exc:
            raise ClassificationUnavailable(f"{operation}: audio {handle} unreadable", exc) from exc
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}{path}", files=files)
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException as exc:
            raise RecognitionTimeout(operation, self.timeout) from exc
        except httpx.HTTPError as exc:
            raise ClassificationUnavailable(f"{operation} failed: {exc}", exc) from exc
        except ValueError as exc:
            raise ClassificationUnavailable(f"{operation} returned invalid JSON", exc) from exc


class HttpCandidateSource(_HttpCollaborator):
    """Candidate source backed by the classifier service's /classify endpoint."""

    def __init__(self, base_url: str, timeout: float = 10.0, top_k: int = 10, transport=None) -> None:
        super().__init__(base_url, timeout, transport)
        self.top_k = top_k

    async def classify(self, handle: str) -> list[Candidate]:
        payload = await self._post_audio("/classify", handle, "classify")
        candidates = validate_candidates(payload, self.top_k)
        logger.debug("Classifier returned %d candidates for %s", len(candidates), handle)
        return candidates


class HttpFeatureExtractor(_HttpCollaborator):
    async def extract_boundary_features(self, handle: str) -> BoundaryFeatures:
        payload = await self._post_audio("/features", handle, "extract_boundary_features")
        try:
            return BoundaryFeatures.model_validate(payload)
        except ValidationError as exc:
            raise ClassificationUnavailable("malformed features response", exc) from exc
