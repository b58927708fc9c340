"""Tests for autopromote.feedback — live execution records."""

from __future__ import annotations

import pytest

from autopromote.feedback import FeedbackRecorder, feedback_status
from autopromote.identity import hash_output
from autopromote.models import SandboxResult
from autopromote.store import FEEDBACK, InMemoryStore


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (SandboxResult(stdout="", exit_code=0, duration_ms=1), "success"),
        (SandboxResult(stdout="", exit_code=1, duration_ms=1), "failure"),
        (SandboxResult(stdout="", exit_code=-1, duration_ms=1), "error"),
        (SandboxResult(stdout="", exit_code=-1, duration_ms=1, timed_out=True), "timeout"),
    ],
)
def test_feedback_status(result: SandboxResult, expected: str) -> None:
    assert feedback_status(result) == expected


class TestFeedbackRecorder:
    def test_records_success(self, store: InMemoryStore) -> None:
        feedback = FeedbackRecorder(store).record(
            "Bash:abc", SandboxResult(stdout="hi\n", exit_code=0, duration_ms=12)
        )
        assert feedback.status == "success"
        assert feedback.stdout_hash == hash_output("hi\n")
        assert feedback.error is None

        [entry] = store.read_all(FEEDBACK)
        assert entry.data["operation_id"] == "Bash:abc"
        assert "error" not in entry.data

    def test_failure_carries_error(self, store: InMemoryStore) -> None:
        feedback = FeedbackRecorder(store).record(
            "Bash:abc", SandboxResult(stdout="", exit_code=2, duration_ms=5, stderr="nope\n")
        )
        assert feedback.status == "failure"
        assert feedback.error == "nope"

    def test_history_filters_by_operation(self, store: InMemoryStore) -> None:
        recorder = FeedbackRecorder(store)
        recorder.record("Bash:a", SandboxResult(stdout="", exit_code=0, duration_ms=1))
        recorder.record("Bash:b", SandboxResult(stdout="", exit_code=1, duration_ms=1))
        recorder.record("Bash:a", SandboxResult(stdout="", exit_code=1, duration_ms=1))

        history = recorder.history("Bash:a")
        assert [f.status for f in history] == ["success", "failure"]
