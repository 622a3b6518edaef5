"""
Published server state, the event stream and its observers.
"""

import datetime
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, List, Optional

logger = logging.getLogger("webrtc_server")


class ServerPhase(Enum):
    """Lifecycle phases of the server."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


@dataclass(frozen=True)
class ServerState:
    """Immutable snapshot of the server state."""

    phase: ServerPhase
    url: Optional[str] = None  # Only set while running
    reason: Optional[str] = None  # Only set when failed

    @classmethod
    def stopped(cls) -> "ServerState":
        return cls(ServerPhase.STOPPED)

    @classmethod
    def starting(cls) -> "ServerState":
        return cls(ServerPhase.STARTING)

    @classmethod
    def running(cls, url: str) -> "ServerState":
        return cls(ServerPhase.RUNNING, url=url)

    @classmethod
    def failed(cls, reason: str) -> "ServerState":
        return cls(ServerPhase.FAILED, reason=reason)

    @property
    def is_running(self) -> bool:
        return self.phase is ServerPhase.RUNNING


class EventKind(Enum):
    """Event categories understood by the presentation layer."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CONNECTION = "connection"


LOG_LEVELS = {
    EventKind.INFO: logging.INFO,
    EventKind.SUCCESS: logging.INFO,
    EventKind.CONNECTION: logging.INFO,
    EventKind.WARNING: logging.WARNING,
    EventKind.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class ServerEvent:
    """A timestamped message emitted by the server core."""

    kind: EventKind
    message: str
    timestamp: datetime.datetime = field(default_factory=datetime.datetime.now)

    def format(self) -> str:
        return f"[{self.timestamp:%H:%M:%S}] {self.message}"


StateCallback = Callable[[ServerState], None]
EventCallback = Callable[[ServerEvent], None]


class _Subscribers:
    """Thread-safe callback list; a failing callback never reaches the emitter."""

    def __init__(self, label: str):
        self._label = label
        self._lock = threading.Lock()
        self._callbacks: List[Callable] = []

    def add(self, callback: Callable) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def notify(self, value):
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(value)
            except Exception:
                logger.exception(f"{self._label} subscriber {callback!r} raised")


class EventHub:
    """Fan-out point for state snapshots and events.

    Every event is also written to the ``webrtc_server`` logger.
    """

    def __init__(self):
        self._state_subscribers = _Subscribers("State")
        self._event_subscribers = _Subscribers("Event")

    def subscribe_state(self, callback: StateCallback) -> Callable[[], None]:
        return self._state_subscribers.add(callback)

    def subscribe_events(self, callback: EventCallback) -> Callable[[], None]:
        return self._event_subscribers.add(callback)

    def publish_state(self, state: ServerState):
        self._state_subscribers.notify(state)

    def emit(self, kind: EventKind, message: str) -> ServerEvent:
        event = ServerEvent(kind, message)
        logger.log(LOG_LEVELS[kind], message)
        self._event_subscribers.notify(event)
        return event

    def info(self, message: str):
        self.emit(EventKind.INFO, message)

    def success(self, message: str):
        self.emit(EventKind.SUCCESS, message)

    def warning(self, message: str):
        self.emit(EventKind.WARNING, message)

    def error(self, message: str):
        self.emit(EventKind.ERROR, message)

    def connection(self, message: str):
        self.emit(EventKind.CONNECTION, message)


class EventLog:
    """Most recent events, oldest evicted first.

    Subscribe ``EventLog.append`` to a hub to keep a rolling log for display.
    """

    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self._entries: Deque[ServerEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, event: ServerEvent):
        with self._lock:
            self._entries.append(event)

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._entries.append(ServerEvent(EventKind.INFO, "🗑️ Logs cleared"))

    @property
    def entries(self) -> List[ServerEvent]:
        with self._lock:
            return list(self._entries)

    def lines(self) -> List[str]:
        return [entry.format() for entry in self.entries]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
