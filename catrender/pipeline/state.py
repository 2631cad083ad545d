"""
Batch State Machine - lifecycle of the batch render controller.

States:
    IDLE      : Nothing has run yet in this process.
    RUNNING   : A job is being rendered; start() is rejected.
    COMPLETED : Every unit was processed; checkpoint cleared.
    FAILED    : A batch-level error aborted the run; checkpoint kept.
    CANCELLED : Stopped between units on request; checkpoint kept.

Transitions:
    IDLE | COMPLETED | FAILED | CANCELLED -> RUNNING : start()
    RUNNING -> COMPLETED | FAILED | CANCELLED        : run ends
"""

import enum
import logging
import threading
from typing import Callable, Dict, Optional

from catrender.errors import BatchAlreadyRunning

logger = logging.getLogger(__name__)


class BatchState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchState.COMPLETED, BatchState.FAILED, BatchState.CANCELLED)


_ALLOWED = {
    BatchState.IDLE: {BatchState.RUNNING},
    BatchState.RUNNING: {BatchState.COMPLETED, BatchState.FAILED, BatchState.CANCELLED},
    BatchState.COMPLETED: {BatchState.RUNNING},
    BatchState.FAILED: {BatchState.RUNNING},
    BatchState.CANCELLED: {BatchState.RUNNING},
}


class BatchStateMachine:
    """Thread-safe Idle/Running/terminal state holder.

    Args:
        on_transition: optional callbacks keyed by the state being entered.
    """

    def __init__(self, on_transition: Optional[Dict[BatchState, Callable]] = None):
        self._state = BatchState.IDLE
        self._lock = threading.Lock()
        self._on_transition = on_transition or {}

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def state_name(self) -> str:
        return self._state.value

    def begin(self) -> None:
        """Enter RUNNING, or raise BatchAlreadyRunning."""
        with self._lock:
            if self._state == BatchState.RUNNING:
                raise BatchAlreadyRunning("A batch render is already running")
            old = self._state
            self._state = BatchState.RUNNING
        logger.info(f"Batch state: {old.value} -> running")
        self._fire_callback(BatchState.RUNNING)

    def finish(self, new_state: BatchState) -> None:
        with self._lock:
            if new_state not in _ALLOWED[self._state]:
                raise ValueError(f"Illegal transition {self._state.value} -> {new_state.value}")
            old = self._state
            self._state = new_state
        logger.info(f"Batch state: {old.value} -> {new_state.value}")
        self._fire_callback(new_state)

    def _fire_callback(self, state: BatchState):
        callback = self._on_transition.get(state)
        if callback is None:
            return
        try:
            callback()
        except Exception as e:
            logger.warning(f"State callback for {state.value} failed: {e}")
