"""
Session State Machine - Transition rules for the session lifecycle.

States only move forward; terminal states accept no transition at all.
"""

from __future__ import annotations

from datetime import datetime
from typing import Final, Optional

from core.exceptions import InvalidTransition
from domain.session import FailureReason, Session, SessionState
from loggers import logger


# =============================================================================
# Transition Table
# =============================================================================


TRANSITIONS: Final[dict[SessionState, frozenset[SessionState]]] = {
    SessionState.CREATED: frozenset({
        SessionState.AWAITING_PAYMENT,
        SessionState.ACTIVE,
        SessionState.FAILED,
    }),
    SessionState.AWAITING_PAYMENT: frozenset({
        SessionState.ACTIVE,
        SessionState.FAILED,
    }),
    SessionState.ACTIVE: frozenset({
        SessionState.COMPLETED,
        SessionState.TERMINATED,
        SessionState.FAILED,
    }),
    SessionState.COMPLETED: frozenset(),
    SessionState.TERMINATED: frozenset(),
    SessionState.FAILED: frozenset(),
}


# =============================================================================
# Session State Machine
# =============================================================================


class SessionStateMachine:
    """
    Applies state transitions to sessions.

    Sets the timestamps that belong to each transition: ``activated_at`` on
    entering ``active`` and ``completed_at`` on entering a terminal state.
    Callers are expected to hold the session's lock.
    """

    @staticmethod
    def can_transition(current: SessionState, target: SessionState) -> bool:
        return target in TRANSITIONS[current]

    def transition(
        self,
        session: Session,
        target: SessionState,
        now: datetime,
        reason: Optional[FailureReason] = None,
    ) -> Session:
        """
        Move a session to a new state.

        Args:
            session: Session to mutate.
            target: Desired state.
            now: Transition time.
            reason: Failure reason, required when ``target`` is ``failed``.

        Returns:
            The same session, mutated.

        Raises:
            InvalidTransition: If the move is not allowed from the current state.
        """
        current = session.state
        if not self.can_transition(current, target):
            raise InvalidTransition(
                f"Cannot move session {session.id} from {current.value} to {target.value}",
                current_state=current.value,
                target_state=target.value,
            )
        if target is SessionState.FAILED and reason is None:
            raise ValueError("A failure reason is required to fail a session")

        session.state = target
        if target is SessionState.ACTIVE:
            session.activated_at = now
        if target.is_terminal:
            session.completed_at = now
        if target is SessionState.FAILED:
            session.failure_reason = reason

        logger.info(
            f"Session {session.id}: {current.value} -> {target.value}"
            + (f" ({reason.value})" if reason else "")
        )
        return session
