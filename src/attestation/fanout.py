"""
Live stream fanout: survey address -> set of subscriber queues.

Delivery is best-effort and at-most-once. A subscriber whose queue is full
misses that message; a reconnecting client re-fetches the aggregate.

Every registry change completes without awaiting, so the event loop
serializes them and no per-survey lock is kept.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Set

from src.utils.logger import logger


class LiveStreamHub:
    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    async def subscribe(self, survey: str) -> asyncio.Queue:
        survey = survey.lower()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        subscribers = self._subscribers.setdefault(survey, set())
        subscribers.add(queue)
        logger.info("Stream: subscriber joined %s (%d connected)", survey, len(subscribers))
        return queue

    async def unsubscribe(self, survey: str, queue: asyncio.Queue) -> None:
        survey = survey.lower()
        subscribers = self._subscribers.get(survey)
        if subscribers is not None:
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[survey]
        logger.info("Stream: subscriber left %s", survey)

    async def broadcast(self, survey: str, payload: Dict[str, Any]) -> int:
        """Queue ``payload`` for every current subscriber; returns how many got it."""
        subscribers = self._subscribers.get(survey.lower())
        if not subscribers:
            return 0
        delivered = 0
        for queue in list(subscribers):
            try:
                queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Stream: subscriber queue full on %s, dropping delta", survey)
        return delivered

    def subscriber_count(self, survey: str) -> int:
        return len(self._subscribers.get(survey.lower(), ()))

    def survey_count(self) -> int:
        return len(self._subscribers)
