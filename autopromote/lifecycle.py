"""Promotion lifecycle — the states an operation moves through and who may move it.

    candidate ──gate approved──▶ approved ──dry run passed──▶ promoted
        ▲                          │                            │
        └──────dry run failed──────┘                          drift
        ▲                                                       ▼
        └────────────────re-entry─────────────────────────── demoted
"""

from __future__ import annotations

from enum import StrEnum

import structlog

from autopromote.errors import InvalidTransitionError

logger = structlog.get_logger()


class OperationState(StrEnum):
    CANDIDATE = "candidate"
    APPROVED = "approved"
    PROMOTED = "promoted"
    DEMOTED = "demoted"


ALLOWED_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    OperationState.CANDIDATE: frozenset({OperationState.APPROVED}),
    OperationState.APPROVED: frozenset({OperationState.PROMOTED, OperationState.CANDIDATE}),
    OperationState.PROMOTED: frozenset({OperationState.DEMOTED}),
    OperationState.DEMOTED: frozenset({OperationState.CANDIDATE}),
}


class PromotionLifecycle:
    """Registry of operation states. Unknown operations are candidates."""

    def __init__(self) -> None:
        self._states: dict[str, OperationState] = {}

    def state(self, operation_id: str) -> OperationState:
        return self._states.get(operation_id, OperationState.CANDIDATE)

    def can_transition(self, operation_id: str, target: OperationState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.state(operation_id)]

    def transition(self, operation_id: str, target: OperationState) -> OperationState:
        """Move an operation to ``target``.

        Raises:
            InvalidTransitionError: If the move is not allowed from the current state.
        """
        current = self.state(operation_id)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(operation_id, current.value, target.value)
        self._states[operation_id] = target
        logger.info(
            "lifecycle.transition",
            operation_id=operation_id,
            from_state=current.value,
            to_state=target.value,
        )
        return target

    def in_state(self, state: OperationState) -> list[str]:
        """Known operations currently in ``state``, in registration order."""
        return [op for op, s in self._states.items() if s == state]
