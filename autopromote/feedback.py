"""Feedback recording for live executions of promoted scripts."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from autopromote.identity import hash_output
from autopromote.models import ExecutionFeedback, FeedbackStatus, SandboxResult
from autopromote.store import FEEDBACK, ExecutionStore

logger = structlog.get_logger()


def feedback_status(result: SandboxResult) -> FeedbackStatus:
    if result.timed_out:
        return "timeout"
    if result.exit_code == 0:
        return "success"
    if result.exit_code < 0:
        return "error"
    return "failure"


class FeedbackRecorder:
    """Appends one ExecutionFeedback per live run to the ``feedback`` category."""

    def __init__(self, store: ExecutionStore) -> None:
        self._store = store

    def record(self, operation_id: str, result: SandboxResult) -> ExecutionFeedback:
        status = feedback_status(result)
        error: str | None = None
        if status != "success":
            error = result.stderr.strip() or f"exit code {result.exit_code}"

        feedback = ExecutionFeedback(
            operation_id=operation_id,
            status=status,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            stdout_hash=hash_output(result.stdout),
            timestamp=datetime.now(UTC).isoformat(),
            error=error,
        )
        self._store.append(FEEDBACK, feedback.to_dict())
        logger.info(
            "feedback.recorded",
            operation_id=operation_id,
            status=status,
            duration_ms=result.duration_ms,
        )
        return feedback

    def history(self, operation_id: str) -> list[ExecutionFeedback]:
        """Every feedback record stored for the operation, oldest first."""
        records: list[ExecutionFeedback] = []
        for entry in self._store.read_all(FEEDBACK):
            data = entry.data
            if data.get("operation_id") != operation_id:
                continue
            records.append(
                ExecutionFeedback(
                    operation_id=data["operation_id"],
                    status=data["status"],
                    exit_code=data["exit_code"],
                    duration_ms=data["duration_ms"],
                    stdout_hash=data["stdout_hash"],
                    timestamp=data["timestamp"],
                    error=data.get("error"),
                )
            )
        return records
