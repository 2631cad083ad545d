"""
Progress/Event Channel - publish/subscribe surface between the batch
controller and any number of UI views.

The controller is the sole producer and never waits on consumers: subscriber
callbacks are invoked inline with their exceptions isolated, and the latest
event of each kind is kept so late subscribers can sample current values
instead of replaying a queue.
"""

import enum
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    PHASE_CHANGE = "phaseChange"
    ERROR = "error"
    CANCELLED = "cancelled"


class Phase(enum.Enum):
    RENDERING = "rendering"
    PACKAGING = "packaging-for-share"
    IDLE = "idle"


@dataclass
class ProgressEvent:
    current_product_index: int     # 1-based, strictly increasing within a run
    total_products: int
    percentage: int
    units_done: int
    total_units: int
    product_id: str = ""
    type: EventType = field(default=EventType.PROGRESS, init=False)


@dataclass
class CompleteEvent:
    status: str                    # "success" | "completed_with_skips"
    rendered: int
    skipped: int
    disabled: int
    message: str
    skipped_units: List[str] = field(default_factory=list)
    type: EventType = field(default=EventType.COMPLETE, init=False)

    @property
    def fully_successful(self) -> bool:
        return self.skipped == 0


@dataclass
class PhaseChangeEvent:
    phase: Phase
    type: EventType = field(default=EventType.PHASE_CHANGE, init=False)


@dataclass
class ErrorEvent:
    reason: str
    message: str
    guidance: str = ""
    type: EventType = field(default=EventType.ERROR, init=False)


@dataclass
class CancelledEvent:
    units_done: int
    total_units: int
    message: str = "Rendering paused; it will resume from where it stopped."
    type: EventType = field(default=EventType.CANCELLED, init=False)


Event = Union[ProgressEvent, CompleteEvent, PhaseChangeEvent, ErrorEvent, CancelledEvent]
Subscriber = Callable[[Event], None]


class ProgressChannel:
    """Fire-and-subscribe channel. Publishing never depends on a subscriber."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: Dict[int, tuple] = {}
        self._latest: Dict[EventType, Event] = {}

    def subscribe(self, callback: Subscriber,
                  event_type: Optional[EventType] = None) -> Callable[[], None]:
        """Register callback for one event type (or all). Returns unsubscribe."""
        with self._lock:
            sub_id = next(self._ids)
            self._subscribers[sub_id] = (event_type, callback)

        def _unsubscribe():
            with self._lock:
                self._subscribers.pop(sub_id, None)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            self._latest[event.type] = event
            targets = [cb for et, cb in self._subscribers.values()
                       if et is None or et == event.type]
        for callback in targets:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"[EVENT] subscriber failed on {event.type.value}: {e}")

    def latest(self, event_type: EventType) -> Optional[Event]:
        with self._lock:
            return self._latest.get(event_type)

    def reset(self) -> None:
        """Forget sampled values (new run)."""
        with self._lock:
            self._latest.clear()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
