"""
Progress events and the reporter that fans them out to subscribers.

The orchestrator is given a ProgressReporter and calls emit(); it does not
know who is listening. Delivery is at-least-once: a subscriber may see the
same logical update twice (e.g. the final EntityProgress and a page event
with identical counts) and must tolerate duplicates.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class SyncStarted:
    sync_id: str
    kind: str
    entity_count: int


@dataclass
class EntityProgress:
    sync_id: str
    entity: str
    fetched: int
    total: int


@dataclass
class SyncCompleted:
    sync_id: str
    duration_ms: int
    progress: Dict[str, Any]


@dataclass
class SyncFailed:
    sync_id: str
    error: str
    progress: Dict[str, Any]


@dataclass
class SyncCancelled:
    sync_id: str


ProgressEvent = Union[SyncStarted, EntityProgress, SyncCompleted, SyncFailed, SyncCancelled]
Subscriber = Callable[[ProgressEvent], None]


def event_name(event: ProgressEvent) -> str:
    """camelCase wire name, e.g. "entityProgress"."""
    name = type(event).__name__
    return name[0].lower() + name[1:]


def event_to_dict(event: ProgressEvent) -> Dict[str, Any]:
    return {"event": event_name(event), **asdict(event)}


class ProgressReporter:
    """Synchronous fan-out of progress events to subscribers."""

    def __init__(self, subscribers: Optional[List[Subscriber]] = None):
        self._subscribers: List[Subscriber] = list(subscribers or [])

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a callable that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: ProgressEvent) -> None:
        """Deliver `event` to every subscriber; a failing subscriber is logged and skipped."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Progress subscriber failed on %s", event_name(event))


class QueueSubscriber:
    """Subscriber that forwards events onto an asyncio.Queue for async consumers."""

    def __init__(self, queue: Optional[asyncio.Queue] = None):
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    def __call__(self, event: ProgressEvent) -> None:
        self.queue.put_nowait(event)


class LoggingSubscriber:
    """Subscriber that writes each event to the log (used by the CLI)."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def __call__(self, event: ProgressEvent) -> None:
        if isinstance(event, EntityProgress):
            self._log.info("%s: %s %d/%d", event.sync_id, event.entity, event.fetched, event.total)
        elif isinstance(event, SyncFailed):
            self._log.error("%s failed: %s", event.sync_id, event.error)
        else:
            self._log.info("%s %s", event_name(event), event.sync_id)
