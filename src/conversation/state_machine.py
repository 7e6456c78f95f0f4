"""
Finite state machine for a conversation's message-buffer lifecycle.

Three states and explicit transitions with triggers. The debouncer moves
each conversation through this graph so every burst follows a
deterministic Idle -> Buffering -> Flushing -> Idle path, and anything
else is rejected loudly.

Usage:
    sm = BufferStateMachine()
    sm.transition(BufferTrigger.MESSAGE_RECEIVED)
    assert sm.current_state == BufferState.BUFFERING
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

MAX_HISTORY = 50


class BufferState(str, Enum):
    """Lifecycle states of one conversation's buffer."""
    IDLE = "idle"
    BUFFERING = "buffering"
    FLUSHING = "flushing"


class BufferTrigger(str, Enum):
    """Events that cause state transitions."""
    MESSAGE_RECEIVED = "message_received"
    TIMER_FIRED = "timer_fired"
    STALE_TIMER = "stale_timer"
    FLUSH_COMPLETED = "flush_completed"
    FLUSH_SUPERSEDED = "flush_superseded"
    CANCELLED = "cancelled"


@dataclass
class Transition:
    """A single valid state transition."""
    from_state: BufferState
    to_state: BufferState
    trigger: BufferTrigger


@dataclass
class StateEntry:
    """Recorded history entry for a state visit."""
    state: BufferState
    entered_at: datetime
    trigger: Optional[BufferTrigger] = None


class InvalidTransitionError(Exception):
    """Raised when a transition is not valid from the current state."""


class BufferStateMachine:
    """
    Deterministic lifecycle for one conversation's burst.

    A message arriving during FLUSHING opens a new burst (BUFFERING) while
    the in-flight flush keeps running; when that older flush finishes it
    reports FLUSH_SUPERSEDED and the newer burst keeps its state.
    """

    TRANSITIONS: list[Transition] = [
        # --- Burst start / extension ---
        Transition(BufferState.IDLE, BufferState.BUFFERING, BufferTrigger.MESSAGE_RECEIVED),
        Transition(BufferState.BUFFERING, BufferState.BUFFERING, BufferTrigger.MESSAGE_RECEIVED),
        Transition(BufferState.FLUSHING, BufferState.BUFFERING, BufferTrigger.MESSAGE_RECEIVED),

        # --- Quiet period over ---
        Transition(BufferState.BUFFERING, BufferState.FLUSHING, BufferTrigger.TIMER_FIRED),

        # --- Stale timers change nothing ---
        Transition(BufferState.IDLE, BufferState.IDLE, BufferTrigger.STALE_TIMER),
        Transition(BufferState.BUFFERING, BufferState.BUFFERING, BufferTrigger.STALE_TIMER),
        Transition(BufferState.FLUSHING, BufferState.FLUSHING, BufferTrigger.STALE_TIMER),

        # --- Flush result ---
        Transition(BufferState.FLUSHING, BufferState.IDLE, BufferTrigger.FLUSH_COMPLETED),
        Transition(BufferState.IDLE, BufferState.IDLE, BufferTrigger.FLUSH_SUPERSEDED),
        Transition(BufferState.BUFFERING, BufferState.BUFFERING, BufferTrigger.FLUSH_SUPERSEDED),
        Transition(BufferState.FLUSHING, BufferState.FLUSHING, BufferTrigger.FLUSH_SUPERSEDED),

        # --- Cancellation ---
        Transition(BufferState.BUFFERING, BufferState.IDLE, BufferTrigger.CANCELLED),
        Transition(BufferState.FLUSHING, BufferState.IDLE, BufferTrigger.CANCELLED),
        Transition(BufferState.IDLE, BufferState.IDLE, BufferTrigger.CANCELLED),
    ]

    def __init__(self) -> None:
        self._current_state = BufferState.IDLE
        self._history: list[StateEntry] = [
            StateEntry(state=BufferState.IDLE, entered_at=datetime.now(timezone.utc))
        ]

    @property
    def current_state(self) -> BufferState:
        return self._current_state

    def transition(self, trigger: BufferTrigger) -> BufferState:
        """
        Execute a state transition.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        for t in self.TRANSITIONS:
            if t.from_state == self._current_state and t.trigger == trigger:
                old_state = self._current_state
                self._current_state = t.to_state

                self._history.append(StateEntry(
                    state=self._current_state,
                    entered_at=datetime.now(timezone.utc),
                    trigger=trigger,
                ))
                if len(self._history) > MAX_HISTORY:
                    del self._history[0]

                logger.debug(
                    "Buffer transition: %s -> %s (trigger: %s)",
                    old_state.value, self._current_state.value, trigger.value,
                )
                return self._current_state

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_state.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def get_valid_triggers(self) -> list[BufferTrigger]:
        """Return all triggers valid from the current state."""
        return [t.trigger for t in self.TRANSITIONS if t.from_state == self._current_state]

    def get_history(self) -> list[StateEntry]:
        return list(self._history)

    def get_state_trace(self) -> list[str]:
        """Return ordered list of state names visited."""
        return [entry.state.value for entry in self._history]

    def is_idle(self) -> bool:
        return self._current_state == BufferState.IDLE
