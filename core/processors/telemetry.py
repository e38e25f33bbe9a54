"""
Gatekeeper Telemetry Collector

Stateful accumulation of interaction signals for one bounded session.
Subscribes to pointer-move, key-down, paste and click events on an input
event source, keeps fixed-capacity sliding windows of timing samples and
hands a SignalSnapshot to the BotScoreModel on peek/stop.

Lifecycle:
    collector.start()      # reset snapshot, subscribe
    ... events dispatched ...
    collector.peek()       # score without finalizing (pre-submit gating)
    collector.stop()       # finalize duration, unsubscribe, score

Listener removal is guaranteed by stop(), close() and the tracking()
context manager, so observers never leak across sessions.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Iterator, List, Optional, Protocol, Tuple

from core.models.bot_score import BotScoreModel
from core.schemas.inputs import (
    INTERACTION_GAP_WINDOW,
    TYPING_INTERVAL_WINDOW,
    VELOCITY_WINDOW,
    InteractionEvent,
    InteractionType,
    SignalSnapshot,
)
from core.schemas.outputs import ScoringOutcome


logger = logging.getLogger(__name__)


Clock = Callable[[], float]
EventHandler = Callable[[InteractionEvent], None]


def wall_clock_ms() -> float:
    """Current time in milliseconds since the epoch."""
    return time.time() * 1000.0


# =============================================================================
# Input Event Source
# =============================================================================

class InputEventSource(Protocol):
    """Capability to observe input events scoped to one document/session."""

    def subscribe(self, event_type: InteractionType, handler: EventHandler) -> None:
        ...

    def unsubscribe(self, event_type: InteractionType, handler: EventHandler) -> None:
        ...


class EventDispatcher:
    """
    In-process input event source.

    Used by the HTTP layer to replay client-streamed events into a collector.
    """

    def __init__(self) -> None:
        self._handlers: Dict[InteractionType, List[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: InteractionType, handler: EventHandler) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: InteractionType, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def listener_count(self, event_type: Optional[InteractionType] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values())

    def dispatch(self, event: InteractionEvent) -> int:
        """Deliver one event; returns the number of handlers invoked."""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
        for handler in handlers:
            handler(event)
        return len(handlers)


# =============================================================================
# Telemetry Collector
# =============================================================================

class TelemetryCollector:
    """
    Accumulates interaction telemetry for a single logical flow.

    Concurrency:
        Handlers and start/stop/peek are serialized by one lock. Starting an
        already-tracking collector is a no-op; concurrent starts from
        different flows are caller error.

    Windows:
        velocity (50), typing interval (30), interaction gap (20) are ring
        buffers that evict the oldest sample. Paste and click counts grow
        for the session's lifetime.
    """

    TRACKED_EVENTS: Tuple[InteractionType, ...] = (
        InteractionType.POINTER_MOVE,
        InteractionType.KEY_DOWN,
        InteractionType.PASTE,
        InteractionType.CLICK,
    )

    def __init__(
        self,
        source: InputEventSource,
        model: Optional[BotScoreModel] = None,
        clock: Optional[Clock] = None
    ) -> None:
        self.source = source
        self.model = model or BotScoreModel()
        self.clock = clock or wall_clock_ms

        self._lock = threading.Lock()
        self._tracking = False
        self._handlers: Dict[InteractionType, EventHandler] = {
            InteractionType.POINTER_MOVE: self._on_pointer_move,
            InteractionType.KEY_DOWN: self._on_key_down,
            InteractionType.PASTE: self._on_paste,
            InteractionType.CLICK: self._on_click,
        }
        self._reset(0.0)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    def start(self, now: Optional[float] = None) -> None:
        """Reset the snapshot and begin observing input events."""
        with self._lock:
            if self._tracking:
                logger.debug("start() while tracking ignored")
                return

            started_at = self.clock() if now is None else now
            self._reset(started_at)
            for event_type in self.TRACKED_EVENTS:
                self.source.subscribe(event_type, self._handlers[event_type])
            self._tracking = True

    def stop(self, now: Optional[float] = None) -> Optional[ScoringOutcome]:
        """
        Finalize elapsed duration, stop observing and score the session.

        Returns:
            ScoringOutcome, or None when no session is active.
        """
        with self._lock:
            if not self._tracking:
                return None

            self._elapsed_ms = self._elapsed_since_start(now)
            self._detach()
            snapshot = self._build_snapshot()

        return self.model.score(snapshot)

    def peek(self, now: Optional[float] = None) -> Optional[ScoringOutcome]:
        """Score the session so far without finalizing it."""
        with self._lock:
            if not self._tracking:
                return None

            self._elapsed_ms = self._elapsed_since_start(now)
            snapshot = self._build_snapshot()

        return self.model.score(snapshot)

    def close(self) -> None:
        """Abnormal teardown: drop the in-flight snapshot and unsubscribe."""
        with self._lock:
            if self._tracking:
                logger.debug("Collector closed while tracking, snapshot discarded")
                self._detach()

    @contextmanager
    def tracking(self, now: Optional[float] = None) -> Iterator[TelemetryCollector]:
        """Scope a session; listeners are removed even if the body raises."""
        self.start(now)
        try:
            yield self
        finally:
            self.close()

    def snapshot(self) -> SignalSnapshot:
        """Copy of the current telemetry (elapsed as of the last peek/stop)."""
        with self._lock:
            return self._build_snapshot()

    # -------------------------------------------------------------------------
    # Event Handlers
    # -------------------------------------------------------------------------

    def _on_pointer_move(self, event: InteractionEvent) -> None:
        with self._lock:
            if not self._tracking:
                return
            now = self._event_time(event)

            if self._last_move is None:
                self._movement_count += 1
            else:
                last_ts, last_x, last_y = self._last_move
                time_diff = now - last_ts
                if time_diff > 0:
                    distance = math.hypot(event.x - last_x, event.y - last_y)
                    self._movement_count += 1
                    self._velocities.append(distance / time_diff)

            self._last_move = (now, event.x, event.y)
            self._last_interaction_ts = now

    def _on_key_down(self, event: InteractionEvent) -> None:
        with self._lock:
            if not self._tracking:
                return
            now = self._event_time(event)

            if self._last_key_ts is not None:
                self._intervals.append(now - self._last_key_ts)
            self._keystroke_count += 1
            self._last_key_ts = now

            self._gaps.append(now - self._last_interaction_ts)
            self._last_interaction_ts = now

    def _on_paste(self, event: InteractionEvent) -> None:
        with self._lock:
            if not self._tracking:
                return
            self._paste_count += 1

    def _on_click(self, event: InteractionEvent) -> None:
        with self._lock:
            if not self._tracking:
                return
            now = self._event_time(event)

            self._click_count += 1
            self._gaps.append(now - self._last_interaction_ts)
            self._last_interaction_ts = now

    # -------------------------------------------------------------------------
    # Internals (callers hold self._lock)
    # -------------------------------------------------------------------------

    def _reset(self, started_at: float) -> None:
        self._started_at = started_at
        self._elapsed_ms = 0.0
        self._movement_count = 0
        self._velocities: Deque[float] = deque(maxlen=VELOCITY_WINDOW)
        self._keystroke_count = 0
        self._intervals: Deque[float] = deque(maxlen=TYPING_INTERVAL_WINDOW)
        self._paste_count = 0
        self._click_count = 0
        self._gaps: Deque[float] = deque(maxlen=INTERACTION_GAP_WINDOW)
        self._last_move: Optional[Tuple[float, float, float]] = None
        self._last_key_ts: Optional[float] = None
        self._last_interaction_ts = started_at

    def _detach(self) -> None:
        for event_type in self.TRACKED_EVENTS:
            self.source.unsubscribe(event_type, self._handlers[event_type])
        self._tracking = False

    def _event_time(self, event: InteractionEvent) -> float:
        return self.clock() if event.timestamp is None else event.timestamp

    def _elapsed_since_start(self, now: Optional[float]) -> float:
        current = self.clock() if now is None else now
        return max(0.0, current - self._started_at)

    def _build_snapshot(self) -> SignalSnapshot:
        return SignalSnapshot(
            movement_count=self._movement_count,
            velocity_samples=list(self._velocities),
            keystroke_count=self._keystroke_count,
            interval_samples=list(self._intervals),
            paste_count=self._paste_count,
            click_count=self._click_count,
            gap_samples=list(self._gaps),
            elapsed_ms=self._elapsed_ms
        )
