from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from common.schemas import AudioSegment

logger = logging.getLogger(__name__)


@dataclass
class _Waiter:
    min_ms: int
    future: asyncio.Future
    segments: list[AudioSegment] = field(default_factory=list)

    @property
    def collected_ms(self) -> int:
        return sum(s.duration_ms for s in self.segments)


class SegmentFeed:
    """Hands freshly emitted segments to whoever is waiting for more audio."""

    def __init__(self) -> None:
        self._waiters: list[_Waiter] = []
        self._closed = False

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        self._closed = False

    def publish(self, segment: AudioSegment) -> None:
        for waiter in self._waiters:
            if waiter.future.done():
                continue
            waiter.segments.append(segment)
            if waiter.collected_ms >= waiter.min_ms:
                waiter.future.set_result(list(waiter.segments))

    async def listen_more(self, min_ms: int, max_ms: int) -> list[AudioSegment]:
        """Wait for at least `min_ms` of audio published after this call.

        `max_ms` is advisory: segments arrive whole, so the collected span
        can overshoot it by up to one segment. A closed feed answers with
        an empty list straight away.
        """
        if self._closed:
            logger.debug("Feed closed, no more audio")
            return []
        waiter = _Waiter(min_ms=min_ms, future=asyncio.get_running_loop().create_future())
        self._waiters.append(waiter)
        try:
            return await waiter.future
        finally:
            self._waiters.remove(waiter)

    def close(self) -> None:
        """Release every waiter with whatever it has collected so far."""
        self._closed = True
        for waiter in self._waiters:
            if not waiter.future.done():
                waiter.future.set_result(list(waiter.segments))
