"""
hashhello - Session state machine.

This module implements the per-peer session lifecycle as a finite state
machine. ``transition`` is a pure function mapping a state and an event to
the next state plus the effects the session runtime must carry out, so the
handshake, teardown and reconnection rules can be tested without a
transport. ``SessionStateMachine`` wraps it with the current state and a
bounded transition history.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session states."""

    CONNECTING = auto()  # Transport connecting, or connected and waiting for syn
    SYN_SENT = auto()  # Initiator sent syn, waiting for ack
    SYN_RECEIVED = auto()  # Responder got syn, verifying
    SECURE = auto()  # Shared secret installed
    DISCONNECTED = auto()  # Transport closed or failed
    OFFLINE = auto()  # Transport reported the peer unreachable


class SessionEvent(Enum):
    """Events that drive state transitions."""

    OPENED = auto()  # Transport opened (initiator side)
    SYN_RECEIVED = auto()  # handshake-syn frame arrived
    ACK_RECEIVED = auto()  # handshake-ack frame arrived
    MSG_RECEIVED = auto()  # msg frame arrived
    HANDSHAKE_COMPLETE = auto()
    HANDSHAKE_FAILED = auto()
    CLOSED = auto()  # Transport closed
    ERROR = auto()  # Transport error
    UNREACHABLE = auto()  # Transport reported peer unreachable
    RECONNECT = auto()  # Reconnect attempt started
    REPLACED = auto()  # Transport handle swapped for another connection


class Effect(Enum):
    """Work the session runtime performs after a transition."""

    SEND_SYN = auto()
    PROCESS_HANDSHAKE = auto()
    DECRYPT_MESSAGE = auto()
    CLOSE_TRANSPORT = auto()
    CLEAR_SECRET = auto()
    NOTIFY = auto()


LIVE_STATES = frozenset(
    {SessionState.CONNECTING, SessionState.SYN_SENT, SessionState.SYN_RECEIVED, SessionState.SECURE}
)
DEAD_STATES = frozenset({SessionState.DISCONNECTED, SessionState.OFFLINE})

_HANDSHAKE = (Effect.PROCESS_HANDSHAKE,)
_TEARDOWN = (Effect.CLEAR_SECRET, Effect.NOTIFY)
_ABORT = (Effect.CLOSE_TRANSPORT, Effect.CLEAR_SECRET, Effect.NOTIFY)

# Transport loss is handled the same way in every live state
_LOSS: Dict[SessionEvent, Tuple[SessionState, Tuple[Effect, ...]]] = {
    SessionEvent.CLOSED: (SessionState.DISCONNECTED, _TEARDOWN),
    SessionEvent.ERROR: (SessionState.DISCONNECTED, _ABORT),
    SessionEvent.UNREACHABLE: (SessionState.OFFLINE, _ABORT),
}

_RECONNECT = {SessionEvent.RECONNECT: (SessionState.CONNECTING, (Effect.NOTIFY,))}

# A new handle restarts the handshake; a secure session never swaps its handle
_REPLACE = {SessionEvent.REPLACED: (SessionState.CONNECTING, (Effect.CLEAR_SECRET,))}

TRANSITIONS: Dict[SessionState, Dict[SessionEvent, Tuple[SessionState, Tuple[Effect, ...]]]] = {
    SessionState.CONNECTING: {
        SessionEvent.OPENED: (SessionState.SYN_SENT, (Effect.SEND_SYN,)),
        SessionEvent.SYN_RECEIVED: (SessionState.SYN_RECEIVED, _HANDSHAKE),
        SessionEvent.HANDSHAKE_FAILED: (SessionState.DISCONNECTED, _ABORT),
        **_REPLACE,
        **_LOSS,
    },
    SessionState.SYN_SENT: {
        SessionEvent.ACK_RECEIVED: (SessionState.SYN_SENT, _HANDSHAKE),
        SessionEvent.SYN_RECEIVED: (SessionState.SYN_SENT, _HANDSHAKE),
        SessionEvent.HANDSHAKE_COMPLETE: (SessionState.SECURE, (Effect.NOTIFY,)),
        SessionEvent.HANDSHAKE_FAILED: (SessionState.DISCONNECTED, _ABORT),
        **_REPLACE,
        **_LOSS,
    },
    SessionState.SYN_RECEIVED: {
        SessionEvent.SYN_RECEIVED: (SessionState.SYN_RECEIVED, _HANDSHAKE),
        SessionEvent.ACK_RECEIVED: (SessionState.SYN_RECEIVED, _HANDSHAKE),
        SessionEvent.HANDSHAKE_COMPLETE: (SessionState.SECURE, (Effect.NOTIFY,)),
        SessionEvent.HANDSHAKE_FAILED: (SessionState.DISCONNECTED, _ABORT),
        **_REPLACE,
        **_LOSS,
    },
    SessionState.SECURE: {
        SessionEvent.MSG_RECEIVED: (SessionState.SECURE, (Effect.DECRYPT_MESSAGE,)),
        **_LOSS,
    },
    SessionState.DISCONNECTED: dict(_RECONNECT),
    SessionState.OFFLINE: dict(_RECONNECT),
}


def transition(state: SessionState, event: SessionEvent) -> Tuple[SessionState, List[Effect]]:
    """
    Compute the next state and effects for an event.

    An event with no transition from ``state`` leaves the state unchanged
    and produces no effects. A ``msg`` frame before the session is secure
    is one such event.
    """
    target = TRANSITIONS.get(state, {}).get(event)
    if target is None:
        logger.debug(f"Ignoring {event.name} in state {state.name}")
        return state, []
    new_state, effects = target
    return new_state, list(effects)


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


class SessionStateMachine:
    """
    Finite state machine for one peer session.

    Tracks the current state and recent history; the transition rules
    themselves live in :func:`transition`.
    """

    def __init__(self, initial_state: SessionState = SessionState.CONNECTING):
        self.current_state = initial_state
        self.previous_state: Optional[SessionState] = None
        self.state_entry_time = time.time()
        self.transition_history: List[StateTransition] = []
        self.max_history = 100

        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None

    def transition(self, event: SessionEvent) -> List[Effect]:
        """
        Apply an event.

        Returns:
            Effects to perform, empty if the event was ignored
        """
        old_state = self.current_state
        new_state, effects = transition(old_state, event)
        if not effects and new_state == old_state:
            return effects

        if new_state != old_state:
            self.previous_state = old_state
            self.current_state = new_state
            self.state_entry_time = time.time()
            logger.debug(f"State transition: {old_state.name} -> {new_state.name} (event: {event.name})")

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        if new_state != old_state and self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        return effects

    def get_state(self) -> SessionState:
        return self.current_state

    def get_time_in_state(self) -> float:
        """Get time spent in current state (seconds)."""
        return time.time() - self.state_entry_time

    def is_secure(self) -> bool:
        return self.current_state == SessionState.SECURE

    def is_live(self) -> bool:
        """Whether a transport connection is in progress or established."""
        return self.current_state in LIVE_STATES

    def get_history(self, count: int = 10) -> List[StateTransition]:
        """Get the most recent transitions."""
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        event_counts: Dict[str, int] = {}
        for item in self.transition_history:
            event_counts[item.event.name] = event_counts.get(item.event.name, 0) + 1

        return {
            "current_state": self.current_state.name,
            "previous_state": self.previous_state.name if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "total_transitions": len(self.transition_history),
            "event_counts": event_counts,
        }

    def __repr__(self) -> str:
        return (
            f"SessionStateMachine(state={self.current_state.name}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )
