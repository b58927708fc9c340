"""Exceptions raised by the promotion pipeline.

Gate rejections, insufficient evidence, failed dry runs and drift demotions
are ordinary return values. The classes here cover caller bugs and the one
fatal data-integrity fault: a lineage entry naming an input that was never
recorded.
"""

from __future__ import annotations


class PromotionError(Exception):
    """Base class for all promotion pipeline errors."""


class LineageIntegrityError(PromotionError):
    """Raised when a lineage entry references input artifacts that do not exist."""

    def __init__(self, artifact_id: str, missing_inputs: list[str]) -> None:
        self.artifact_id = artifact_id
        self.missing_inputs = missing_inputs
        super().__init__(
            f"Lineage entry {artifact_id!r} references unknown inputs: "
            f"{', '.join(missing_inputs)}"
        )


class PromotionNotApprovedError(PromotionError):
    """Raised when a script is requested for a candidate without an approved decision."""

    def __init__(self, operation_id: str) -> None:
        self.operation_id = operation_id
        super().__init__(
            f"Operation {operation_id!r} has no approved gatekeeper decision"
        )


class InvalidTransitionError(PromotionError):
    """Raised when an operation is moved between lifecycle states illegally."""

    def __init__(self, operation_id: str, current: str, target: str) -> None:
        self.operation_id = operation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Operation {operation_id!r} cannot move from {current!r} to {target!r}"
        )
