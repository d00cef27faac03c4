from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# --- Audio ---

class AudioFormat(str, Enum):
    wav = "wav"
    m4a = "m4a"
    pcm_s16le = "pcm_s16le"


class AudioSegment(BaseModel):
    """A bounded span of captured audio; `handle` is owned by a SegmentStore."""

    model_config = ConfigDict(frozen=True)

    handle: str
    duration_ms: int = Field(ge=0)
    sequence_index: int = Field(ge=0)
    start_offset_ms: int = Field(default=0, ge=0)
    format: AudioFormat = AudioFormat.wav


# --- Matching ---

class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    chapter: int = Field(ge=1, le=114)
    verse: int = Field(ge=1)

    @classmethod
    def parse(cls, value: str) -> Location:
        chapter, verse = value.split(":", 1)
        return cls(chapter=int(chapter), verse=int(verse))

    @property
    def key(self) -> tuple[int, int]:
        return (self.chapter, self.verse)

    def __str__(self) -> str:
        return f"{self.chapter}:{self.verse}"


class Candidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    location: Location
    raw_score: float = Field(ge=0.0, le=1.0)
    is_known_repeated: bool = False
    # Optional producer-side signals; None means neutral
    duration_fit: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    reciter_consistency: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ScoredCandidate(Candidate):
    sequence_score: float = 0.5
    combined_score: float = 0.0


class BoundaryFeatures(BaseModel):
    pause_before: bool = False
    pause_after: bool = False
    trailing_onset_signature: Optional[str] = None


class AdjacencyExpectation(BaseModel):
    expects_pause_before: bool = True
    expects_pause_after: bool = True
    next_verse_onset_signature: str = ""


# --- Outcomes ---

class ResolvedOutcome(BaseModel):
    kind: Literal["resolved"] = "resolved"
    location: Location
    confidence: float
    candidates: list[ScoredCandidate] = []


class AmbiguousOutcome(BaseModel):
    kind: Literal["ambiguous_needs_user_selection"] = "ambiguous_needs_user_selection"
    candidates: list[ScoredCandidate]


class FailedOutcome(BaseModel):
    kind: Literal["failed"] = "failed"
    reason: str
    detail: Optional[str] = None


class PartialMatch(BaseModel):
    """Non-terminal progress value; never delivered as a final outcome."""

    kind: Literal["partial"] = "partial"
    location: Location
    confidence: float
    sequence_index: int = 0
    candidates: list[ScoredCandidate] = []


RecognitionOutcome = Annotated[
    Union[ResolvedOutcome, AmbiguousOutcome, FailedOutcome],
    Field(discriminator="kind"),
]
EngineOutcome = Union[ResolvedOutcome, AmbiguousOutcome, FailedOutcome, PartialMatch]

outcome_adapter: TypeAdapter = TypeAdapter(RecognitionOutcome)


# --- Classifier service request / response ---

class ClassifyResponse(BaseModel):
    candidates: list[Candidate]
    transcription: str = ""
    processing_time_ms: int = 0


# --- WebSocket messages: client <-> gateway ---

class ClientMessageType(str, Enum):
    start = "start"
    stop = "stop"


class StartMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.start
    session_id: str
    format: AudioFormat = AudioFormat.wav
    sample_rate: int = 16000


class StopMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.stop
    session_id: str


class ServerMessageType(str, Enum):
    session_started = "session_started"
    progress = "progress"
    outcome = "outcome"
    error = "error"


class SessionStartedMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.session_started
    session_id: str


class ProgressMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.progress
    session_id: str
    partial: PartialMatch


class OutcomeMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.outcome
    session_id: str
    outcome: RecognitionOutcome


class ErrorMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.error
    session_id: str
    code: str = "unknown"
    detail: str
