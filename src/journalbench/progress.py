# Copyright (c) Syntropy Systems
"""Ordered, multi-consumer progress channels for runs and batches."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from typing import Optional

from journalbench.models.experiment import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressChannel:
    """A bounded, append-only event log that many consumers can read.

    Publishing never blocks. Each event gets the next sequence number, so
    every subscriber sees events in publish order. Only the newest
    ``capacity`` events are kept; a subscriber that falls further behind
    skips ahead to the oldest retained event.
    """

    def __init__(self, key: str, capacity: int = 1000) -> None:
        self.key = key
        self.capacity = capacity
        self._events: deque[ProgressEvent] = deque(maxlen=capacity)
        self._next_sequence = 0
        self._cond = threading.Condition()
        self._closed = False
        self._subscribers = 0
        self.closed_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._cond:
            return self._subscribers

    def publish(self, event: ProgressEvent) -> ProgressEvent:
        """Append an event and wake subscribers. Returns the sequenced event."""
        with self._cond:
            if self._closed:
                logger.warning("Dropping %s event on closed channel %s", event.type.value, self.key)
                return event
            event = event.model_copy(update={"sequence": self._next_sequence})
            self._next_sequence += 1
            self._events.append(event)
            self._cond.notify_all()
            return event

    def close(self, now: Optional[float] = None) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self.closed_at = time.monotonic() if now is None else now
            self._cond.notify_all()

    def events(self) -> list[ProgressEvent]:
        """Snapshot of retained events."""
        with self._cond:
            return list(self._events)

    def subscribe(
        self,
        from_sequence: int = 0,
        timeout: Optional[float] = None,
    ) -> Iterator[ProgressEvent]:
        """Yield events from ``from_sequence`` on until the channel closes.

        ``timeout`` bounds each wait for a new event; when it expires the
        iterator ends even if the channel is still open.
        """
        with self._cond:
            self._subscribers += 1
        try:
            next_sequence = from_sequence
            while True:
                with self._cond:
                    pending = self._pending(next_sequence)
                    if not pending:
                        if self._closed:
                            return
                        if not self._cond.wait(timeout):
                            return
                        pending = self._pending(next_sequence)
                for event in pending:
                    next_sequence = event.sequence + 1
                    yield event
        finally:
            with self._cond:
                self._subscribers -= 1

    def _pending(self, next_sequence: int) -> list[ProgressEvent]:
        if not self._events:
            return []
        oldest = self._events[0].sequence
        if next_sequence < oldest:
            logger.warning(
                "Subscriber on %s fell behind; skipped events %d-%d",
                self.key, next_sequence, oldest - 1,
            )
            next_sequence = oldest
        return [e for e in self._events if e.sequence >= next_sequence]


class ChannelRegistry:
    """Process-wide map from run/batch keys to their progress channels.

    A channel lives from ``create`` until it is closed, has no subscribers
    left and ``grace_period`` seconds have passed since it closed. Expired
    channels are collected lazily whenever the registry is used.
    """

    def __init__(
        self,
        capacity: int = 1000,
        grace_period: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.grace_period = grace_period
        self._clock = clock
        self._channels: dict[str, ProgressChannel] = {}
        self._lock = threading.Lock()

    @staticmethod
    def batch_key(batch_id: str) -> str:
        return f"batch:{batch_id}"

    @staticmethod
    def run_key(run_id: int) -> str:
        return f"run:{run_id}"

    def create(self, key: str) -> ProgressChannel:
        with self._lock:
            self._collect()
            channel = ProgressChannel(key, self.capacity)
            self._channels[key] = channel
            return channel

    def get(self, key: str) -> Optional[ProgressChannel]:
        with self._lock:
            self._collect()
            return self._channels.get(key)

    def close(self, key: str) -> None:
        with self._lock:
            channel = self._channels.get(key)
        if channel is not None:
            channel.close(self._clock())

    def keys(self) -> list[str]:
        with self._lock:
            self._collect()
            return list(self._channels)

    def collect(self) -> int:
        """Drop expired channels now. Returns how many were dropped."""
        with self._lock:
            return self._collect()

    def _collect(self) -> int:
        now = self._clock()
        expired = [
            key
            for key, channel in self._channels.items()
            if channel.closed
            and channel.subscriber_count == 0
            and channel.closed_at is not None
            and now - channel.closed_at >= self.grace_period
        ]
        for key in expired:
            del self._channels[key]
        if expired:
            logger.debug("Collected %d progress channels", len(expired))
        return len(expired)
