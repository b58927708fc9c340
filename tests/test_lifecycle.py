"""Tests for autopromote.lifecycle — operation state transitions."""

from __future__ import annotations

import pytest

from autopromote.errors import InvalidTransitionError
from autopromote.lifecycle import OperationState, PromotionLifecycle

OP = "Read:abc"


class TestPromotionLifecycle:
    def test_unknown_operation_is_candidate(self) -> None:
        assert PromotionLifecycle().state(OP) == OperationState.CANDIDATE

    def test_full_loop(self) -> None:
        lifecycle = PromotionLifecycle()
        for target in (
            OperationState.APPROVED,
            OperationState.PROMOTED,
            OperationState.DEMOTED,
            OperationState.CANDIDATE,
        ):
            lifecycle.transition(OP, target)
        assert lifecycle.state(OP) == OperationState.CANDIDATE

    def test_failed_dry_run_returns_to_candidate(self) -> None:
        lifecycle = PromotionLifecycle()
        lifecycle.transition(OP, OperationState.APPROVED)
        lifecycle.transition(OP, OperationState.CANDIDATE)
        assert lifecycle.state(OP) == OperationState.CANDIDATE

    @pytest.mark.parametrize(
        "target", [OperationState.PROMOTED, OperationState.DEMOTED, OperationState.CANDIDATE]
    )
    def test_illegal_from_candidate(self, target: OperationState) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            PromotionLifecycle().transition(OP, target)
        assert exc_info.value.current == "candidate"
        assert exc_info.value.target == target.value

    def test_cannot_skip_demotion(self) -> None:
        lifecycle = PromotionLifecycle()
        lifecycle.transition(OP, OperationState.APPROVED)
        lifecycle.transition(OP, OperationState.PROMOTED)
        assert not lifecycle.can_transition(OP, OperationState.CANDIDATE)
        with pytest.raises(InvalidTransitionError):
            lifecycle.transition(OP, OperationState.CANDIDATE)

    def test_in_state(self) -> None:
        lifecycle = PromotionLifecycle()
        lifecycle.transition("a", OperationState.APPROVED)
        lifecycle.transition("b", OperationState.APPROVED)
        lifecycle.transition("b", OperationState.PROMOTED)
        assert lifecycle.in_state(OperationState.APPROVED) == ["a"]
        assert lifecycle.in_state(OperationState.PROMOTED) == ["b"]
