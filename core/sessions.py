"""
Gatekeeper Tracking Sessions

Token-keyed arena of telemetry collectors for remote clients. Each session
gets its own EventDispatcher (the input event source) and TelemetryCollector;
streamed client events are replayed through the dispatcher.

The arena is bounded: when full, the least recently used session is closed
and evicted, which discards its in-flight snapshot.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Optional

from core.models.bot_score import BotScoreModel
from core.processors.telemetry import Clock, EventDispatcher, TelemetryCollector
from core.schemas.inputs import InteractionEvent
from core.schemas.outputs import ScoringOutcome


logger = logging.getLogger(__name__)


class NoActiveSessionError(LookupError):
    """Raised when events arrive for a token with no tracking session."""
    pass


@dataclass
class TrackingSession:
    token: str
    dispatcher: EventDispatcher
    collector: TelemetryCollector


class TrackingSessionRegistry:
    """Thread-safe, bounded map of session token -> tracking session."""

    MAX_SESSIONS: int = 10000

    def __init__(
        self,
        model: Optional[BotScoreModel] = None,
        clock: Optional[Clock] = None,
        max_sessions: int = MAX_SESSIONS
    ) -> None:
        self.model = model or BotScoreModel()
        self.clock = clock
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, TrackingSession]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def start(self, token: str, now: Optional[float] = None) -> TrackingSession:
        """Start tracking for a token; an already-tracking session is left as is."""
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                dispatcher = EventDispatcher()
                session = TrackingSession(
                    token=token,
                    dispatcher=dispatcher,
                    collector=TelemetryCollector(dispatcher, model=self.model, clock=self.clock)
                )
                self._sessions[token] = session
                self._evict_overflow()
            self._sessions.move_to_end(token)

        session.collector.start(now)
        return session

    def dispatch(self, token: str, events: Iterable[InteractionEvent]) -> int:
        """
        Replay client events into a session.

        Raises:
            NoActiveSessionError: the token is unknown or not tracking.
        """
        session = self._touch(token)
        if session is None or not session.collector.is_tracking:
            raise NoActiveSessionError(f"No active tracking session for {token}")

        delivered = 0
        for event in events:
            delivered += session.dispatcher.dispatch(event)
        return delivered

    def peek(self, token: str, now: Optional[float] = None) -> Optional[ScoringOutcome]:
        session = self._touch(token)
        if session is None:
            return None
        return session.collector.peek(now)

    def stop(self, token: str, now: Optional[float] = None) -> Optional[ScoringOutcome]:
        """Finalize and forget a session; None if it was not tracking."""
        with self._lock:
            session = self._sessions.pop(token, None)
        if session is None:
            return None
        return session.collector.stop(now)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.collector.close()
        if sessions:
            logger.info(f"Closed {len(sessions)} tracking sessions")

    def _touch(self, token: str) -> Optional[TrackingSession]:
        with self._lock:
            session = self._sessions.get(token)
            if session is not None:
                self._sessions.move_to_end(token)
            return session

    def _evict_overflow(self) -> None:
        while len(self._sessions) > self.max_sessions:
            token, evicted = self._sessions.popitem(last=False)
            evicted.collector.close()
            logger.warning(f"Tracking session {token} evicted (arena full)")
