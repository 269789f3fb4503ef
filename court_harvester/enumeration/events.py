"""
Progress events emitted by the crawler.
Listeners are observers only; they cannot change crawl behaviour.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from court_harvester.logging_config import get_logger

logger = get_logger("enumeration.events")


@dataclass(frozen=True)
class ProgressEvent:
    """Position inside the current phase."""
    phase: str
    current: int
    total: int
    message: str


ProgressListener = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Fans progress events out to registered listeners."""

    def __init__(self, listeners: Optional[Iterable[ProgressListener]] = None):
        self._listeners: List[ProgressListener] = list(listeners or [])

    def subscribe(self, listener: ProgressListener):
        self._listeners.append(listener)

    def emit(self, phase: str, current: int, total: int, message: str):
        event = ProgressEvent(phase=phase, current=current, total=total, message=message)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed", extra={"phase": phase})


class LoggingProgressListener:
    """Logs every Nth event, plus the last one of a phase."""

    def __init__(self, every: int = 100, log: Optional[logging.Logger] = None):
        self.every = max(1, every)
        self.log = log or get_logger("progress")
        self._seen = 0

    def __call__(self, event: ProgressEvent):
        self._seen += 1
        if self._seen % self.every == 0 or event.current == event.total:
            self.log.info(
                f"[{event.current}/{event.total}] {event.message}",
                extra={"phase": event.phase}
            )
