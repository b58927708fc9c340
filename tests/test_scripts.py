"""Tests for autopromote.scripts — script generation and dry runs."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from autopromote.detector import PromotionDetector
from autopromote.errors import PromotionNotApprovedError
from autopromote.gatekeeper import PromotionGatekeeper
from autopromote.identity import hash_output, operation_key, script_id
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ArtifactType,
    GatekeeperDecision,
    PromotionCandidate,
    SandboxResult,
    ScriptOperation,
)
from autopromote.scripts import (
    ScriptGenerator,
    ScriptValidator,
    render_script_body,
)
from autopromote.store import InMemoryStore


class FakeSandbox:
    """Records operations and returns a canned result."""

    def __init__(
        self,
        stdout: str = "",
        exit_code: int = 0,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.stdout = stdout
        self.exit_code = exit_code
        self.delay = delay
        self.error = error
        self.calls: list[ScriptOperation] = []

    async def run(self, operation: ScriptOperation) -> SandboxResult:
        self.calls.append(operation)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SandboxResult(stdout=self.stdout, exit_code=self.exit_code, duration_ms=3)


def _approved(
    store: InMemoryStore,
    seed_operation: Callable[..., None],
    tool_name: str,
    tool_input: dict[str, Any],
    outputs: list[str],
) -> GatekeeperDecision:
    seed_operation(tool_name, tool_input, outputs)
    [candidate] = PromotionDetector(store).detect()
    return _force_decision(candidate, approved=True)


def _force_decision(candidate: PromotionCandidate, approved: bool) -> GatekeeperDecision:
    decision = PromotionGatekeeper().evaluate(candidate)
    return GatekeeperDecision(
        approved=approved,
        reasoning=decision.reasoning,
        evidence=decision.evidence,
        candidate=candidate,
        timestamp=decision.timestamp,
    )


class TestRenderScriptBody:
    def test_read(self) -> None:
        assert render_script_body("Read", {"file_path": "/a.ts"}) == ('cat "/a.ts"', True)

    def test_bash(self) -> None:
        assert render_script_body("Bash", {"command": "echo hello"}) == ("echo hello", True)

    def test_write_heredoc(self) -> None:
        body, supported = render_script_body("Write", {"file_path": "/b.ts", "content": "data"})
        assert supported is True
        assert body == "cat << 'SCRIPT_EOF' > \"/b.ts\"\ndata\nSCRIPT_EOF"

    def test_glob_strips_recursive_prefix(self) -> None:
        body, _ = render_script_body("Glob", {"pattern": "**/*.ts", "path": "src"})
        assert body == 'find "src" -name "*.ts" -type f | sort'

    def test_glob_defaults(self) -> None:
        body, _ = render_script_body("Glob", {})
        assert body == 'find "." -name "*" -type f | sort'

    def test_grep(self) -> None:
        body, _ = render_script_body("Grep", {"pattern": "TODO", "path": "src"})
        assert body == 'grep -r "TODO" "src"'

    def test_quotes_are_escaped(self) -> None:
        body, _ = render_script_body("Read", {"file_path": '/a "b" $HOME'})
        assert body == 'cat "/a \\"b\\" \\$HOME"'

    def test_unsupported_tool(self) -> None:
        body, supported = render_script_body("WebFetch", {"url": "https://x"})
        assert supported is False
        assert "exit 1" in body
        assert body.startswith("# ERROR")


class TestScriptGenerator:
    def test_refuses_unapproved(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Read", {"file_path": "/a"}, ["x"] * 3)
        rejected = _force_decision(decision.candidate, approved=False)
        with pytest.raises(PromotionNotApprovedError) as exc_info:
            ScriptGenerator(store).generate(rejected)
        assert exc_info.value.operation_id == decision.candidate.operation_id

    def test_generates_valid_read_script(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Read", {"file_path": "/a.ts"}, ["x"] * 3)
        script = ScriptGenerator(store).generate(decision)
        assert script.is_valid is True
        assert script.operation.id == decision.candidate.operation_id
        assert script.operation.script_type == "bash"
        assert script.operation.timeout_ms == 30_000
        assert 'cat "/a.ts"' in script.script_content

    def test_header_metadata(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Bash", {"command": "ls"}, ["a\n"] * 4)
        content = ScriptGenerator(store).generate(decision).script_content
        assert content.startswith("#!/bin/bash\n")
        assert f"# Source pattern: {decision.candidate.operation_id}" in content
        assert "# Confidence: " in content
        assert "# Sessions: 4" in content
        assert "# Observations: 4" in content
        assert "# Generated: " in content

    def test_unsupported_tool_is_invalid(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Edit", {"file_path": "/a"}, ["ok"] * 3)
        script = ScriptGenerator(store).generate(decision)
        assert script.is_valid is False
        assert "exit 1" in script.script_content

    def test_lineage_id_names_the_approving_decision(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Read", {"file_path": "/a"}, ["x"] * 3)
        lineage = LineageGraph()
        ScriptGenerator(store, lineage=lineage).generate(decision)

        [entry] = lineage.get_by_artifact_type(ArtifactType.SCRIPT)
        op_id = decision.candidate.operation_id
        assert entry.artifact_id == script_id(op_id, decision.timestamp)


class TestDryRun:
    @pytest.mark.asyncio
    async def test_passes_on_matching_output(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Bash", {"command": "echo hi"}, ["hi\n"] * 3)
        script = ScriptGenerator(store).generate(decision)
        sandbox = FakeSandbox(stdout="hi\n")

        result = await ScriptValidator(store, sandbox).dry_run(script)

        assert result.passed is True
        assert result.failure_reason is None
        assert result.actual_output_hash == result.expected_output_hash == hash_output("hi\n")
        assert len(sandbox.calls) == 1

    @pytest.mark.asyncio
    async def test_hash_mismatch(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Bash", {"command": "echo hi"}, ["hi\n"] * 3)
        script = ScriptGenerator(store).generate(decision)

        result = await ScriptValidator(store, FakeSandbox(stdout="bye\n")).dry_run(script)

        assert result.passed is False
        assert result.failure_reason is not None
        assert result.failure_reason.startswith("Output hash mismatch: expected ")

    @pytest.mark.asyncio
    async def test_non_zero_exit(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Bash", {"command": "echo hi"}, ["hi\n"] * 3)
        script = ScriptGenerator(store).generate(decision)

        result = await ScriptValidator(store, FakeSandbox(stdout="hi\n", exit_code=2)).dry_run(
            script
        )

        assert result.passed is False
        assert result.exit_code == 2
        assert result.failure_reason == "Non-zero exit code: 2"

    @pytest.mark.asyncio
    async def test_invalid_script_never_runs(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Edit", {"file_path": "/a"}, ["ok"] * 3)
        script = ScriptGenerator(store).generate(decision)
        sandbox = FakeSandbox()

        result = await ScriptValidator(store, sandbox).dry_run(script)

        assert result.passed is False
        assert result.exit_code == -1
        assert result.failure_reason == "Script is invalid or generated for unsupported tool"
        assert sandbox.calls == []

    @pytest.mark.asyncio
    async def test_no_history(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Bash", {"command": "echo hi"}, ["hi\n"] * 3)
        script = ScriptGenerator(store).generate(decision)

        result = await ScriptValidator(InMemoryStore(), FakeSandbox()).dry_run(script)

        assert result.passed is False
        assert result.failure_reason == "No stored execution data found for output comparison"

    @pytest.mark.asyncio
    async def test_timeout(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Bash", {"command": "echo hi"}, ["hi\n"] * 3)
        script = ScriptGenerator(store).generate(decision)
        sandbox = FakeSandbox(stdout="hi\n", delay=1.0)

        result = await ScriptValidator(store, sandbox, timeout_seconds=0.01).dry_run(script)

        assert result.passed is False
        assert result.failure_reason is not None
        assert "timed out" in result.failure_reason

    @pytest.mark.asyncio
    async def test_sandbox_exception_absorbed(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        decision = _approved(store, seed_operation, "Bash", {"command": "echo hi"}, ["hi\n"] * 3)
        script = ScriptGenerator(store).generate(decision)
        sandbox = FakeSandbox(error=RuntimeError("docker unavailable"))

        result = await ScriptValidator(store, sandbox).dry_run(script)

        assert result.passed is False
        assert result.failure_reason == "Sandbox error: docker unavailable"

    def test_expected_hash_is_most_frequent(
        self, store: InMemoryStore, seed_operation: Callable[..., None]
    ) -> None:
        seed_operation("Bash", {"command": "echo hi"}, ["odd\n", "hi\n", "hi\n"])
        validator = ScriptValidator(store, FakeSandbox())
        key = operation_key("Bash", {"command": "echo hi"})
        assert validator.expected_output_hash(key) == hash_output("hi\n")
