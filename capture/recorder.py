from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import numpy as np


@dataclass
class RecordedAudio:
    samples: np.ndarray
    duration_ms: int


class Recorder(Protocol):
    """Exclusive handle on the microphone; one open recording at a time."""

    @property
    def is_recording(self) -> bool: ...

    async def has_permission(self) -> bool: ...

    async def open(self) -> None: ...

    async def close(self) -> RecordedAudio: ...
