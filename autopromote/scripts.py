"""
Script generation and dry-run validation for approved operations.

``ScriptGenerator`` renders a bash script replicating one stored tool
operation. Only a decision the gatekeeper approved can be turned into a
script. Rendering per tool:

  Read  → cat "<file_path>"
  Bash  → the command itself
  Write → heredoc into "<file_path>"
  Glob  → find "<path>" -name "<pattern>" -type f | sort
  Grep  → grep -r "<pattern>" "<path>"

Any other tool produces an ``exit 1`` stub and an invalid script.

``ScriptValidator`` replays a script in a sandbox and compares the SHA-256
of its stdout with the output hash most frequently observed for the
operation. A dry run is a single attempt; there are no retries.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from autopromote import metrics
from autopromote.config import ScriptGeneratorConfig
from autopromote.determinism import collect_observations, most_common_output_hash
from autopromote.errors import PromotionNotApprovedError
from autopromote.identity import decision_id, hash_output, script_id
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ArtifactType,
    DryRunResult,
    GatekeeperDecision,
    GeneratedScript,
    LineageEntry,
    OperationKey,
    PipelineStage,
    PromotionCandidate,
    ScriptOperation,
    ToolExecutionPair,
)
from autopromote.sandbox import SandboxExecutor
from autopromote.store import ExecutionStore

logger = structlog.get_logger()

SUPPORTED_SCRIPT_TOOLS: frozenset[str] = frozenset({"Read", "Bash", "Write", "Glob", "Grep"})

HEREDOC_MARKER = "SCRIPT_EOF"


def _dq(value: Any) -> str:
    """Escape a value for use inside a double-quoted bash string."""
    text = "" if value is None else str(value)
    for ch in ("\\", '"', "$", "`"):
        text = text.replace(ch, "\\" + ch)
    return text


def _glob_to_find_pattern(pattern: str) -> str:
    """``find -name`` matches basenames only, so drop a leading ``**/``."""
    return pattern.removeprefix("**/")


def render_script_body(tool_name: str, tool_input: Mapping[str, Any]) -> tuple[str, bool]:
    """Return (bash body, supported) for one tool invocation."""
    if tool_name not in SUPPORTED_SCRIPT_TOOLS:
        return (
            f"# ERROR: Tool '{tool_name}' is not supported for script generation\nexit 1",
            False,
        )

    match tool_name:
        case "Read":
            return f'cat "{_dq(tool_input.get("file_path"))}"', True
        case "Bash":
            return str(tool_input.get("command", "")), True
        case "Write":
            path = _dq(tool_input.get("file_path"))
            content = str(tool_input.get("content", ""))
            return (
                f"cat << '{HEREDOC_MARKER}' > \"{path}\"\n{content}\n{HEREDOC_MARKER}",
                True,
            )
        case "Glob":
            path = _dq(tool_input.get("path") or ".")
            pattern = _dq(_glob_to_find_pattern(str(tool_input.get("pattern") or "*")))
            return f'find "{path}" -name "{pattern}" -type f | sort', True
        case _:
            path = _dq(tool_input.get("path") or ".")
            return f'grep -r "{_dq(tool_input.get("pattern"))}" "{path}"', True


def render_header(candidate: PromotionCandidate, generated_at: str) -> str:
    return "\n".join(
        [
            "#!/bin/bash",
            "# ============================================================",
            "# Auto-generated by the autopromote promotion pipeline",
            f"# Source pattern: {candidate.operation_id}",
            f"# Confidence: {candidate.composite_score:.4f}",
            f"# Sessions: {len(candidate.operation.score.session_ids)}",
            f"# Observations: {candidate.frequency}",
            f"# Generated: {generated_at}",
            "# ============================================================",
        ]
    )


def find_representative_pair(
    store: ExecutionStore, key: OperationKey
) -> ToolExecutionPair | None:
    """First complete stored pair for the operation, or None."""
    observations = collect_observations(store).get(key)
    return observations[0].pair if observations else None


class ScriptGenerator:
    """Turns approved gatekeeper decisions into bash script operations.

    Args:
        store:   Record store holding the operation's execution history.
        config:  Timeout and working directory stamped onto every script.
        lineage: Optional lineage graph for ``script`` entries.
    """

    def __init__(
        self,
        store: ExecutionStore,
        config: ScriptGeneratorConfig | None = None,
        lineage: LineageGraph | None = None,
    ) -> None:
        self._store = store
        self._config = config or ScriptGeneratorConfig()
        self._lineage = lineage

    def generate(self, decision: GatekeeperDecision) -> GeneratedScript:
        """Render the script for an approved decision.

        Raises:
            PromotionNotApprovedError: If the decision was not approved.
        """
        candidate = decision.candidate
        if not decision.approved:
            raise PromotionNotApprovedError(candidate.operation_id)

        pair = find_representative_pair(self._store, candidate.key)
        tool_input = pair.input if pair is not None else {}
        body, supported = render_script_body(candidate.tool_name, tool_input)
        header = render_header(candidate, datetime.now(UTC).isoformat())
        content = f"{header}\n{body}\n"

        data = {
            "id": candidate.operation_id,
            "script": content,
            "script_type": "bash",
            "working_dir": self._config.default_working_dir,
            "timeout_ms": self._config.default_timeout_ms,
            "env": {},
            "label": f"Auto-promoted {candidate.tool_name} operation",
        }
        try:
            operation = ScriptOperation.model_validate(data)
            schema_valid = True
        except ValidationError as exc:
            logger.warning(
                "scripts.schema_invalid",
                operation_id=candidate.operation_id,
                errors=exc.error_count(),
            )
            operation = ScriptOperation.model_construct(**data)
            schema_valid = False

        script = GeneratedScript(
            operation=operation,
            source_candidate=candidate,
            script_content=content,
            is_valid=schema_valid and supported,
        )
        logger.info(
            "scripts.generated",
            operation_id=candidate.operation_id,
            tool_name=candidate.tool_name,
            is_valid=script.is_valid,
        )

        if self._lineage is not None:
            source = decision_id(candidate.operation_id, decision.timestamp)
            self._lineage.record(
                LineageEntry(
                    artifact_id=script_id(candidate.operation_id, decision.timestamp),
                    artifact_type=ArtifactType.SCRIPT,
                    stage=PipelineStage.GENERATION,
                    inputs=(source,) if source in self._lineage else (),
                    metadata={
                        "tool_name": candidate.tool_name,
                        "is_valid": script.is_valid,
                        "supported": supported,
                    },
                )
            )
        return script


class ScriptValidator:
    """Dry-runs generated scripts against their recorded output history.

    Args:
        store:           Record store holding the operation's execution history.
        sandbox:         Executor the script is run in.
        timeout_seconds: Upper bound on one dry run; defaults to the
                         operation's own ``timeout_ms``.
    """

    def __init__(
        self,
        store: ExecutionStore,
        sandbox: SandboxExecutor,
        timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._sandbox = sandbox
        self._timeout = timeout_seconds

    def expected_output_hash(self, key: OperationKey) -> str | None:
        """Most frequently observed output hash for the operation."""
        observations = collect_observations(self._store).get(key, [])
        return most_common_output_hash(observations)

    async def dry_run(self, script: GeneratedScript) -> DryRunResult:
        log = logger.bind(operation_id=script.operation_id)

        if not script.is_valid:
            return self._failed(script, "Script is invalid or generated for unsupported tool")

        expected = self.expected_output_hash(script.source_candidate.key)
        if expected is None:
            return self._failed(script, "No stored execution data found for output comparison")

        timeout = self._timeout or script.operation.timeout_ms / 1000
        try:
            result = await asyncio.wait_for(
                self._sandbox.run(script.operation), timeout=timeout
            )
        except TimeoutError:
            log.warning("scripts.dry_run_timeout", timeout=timeout)
            return self._failed(
                script, f"Dry run timed out after {timeout:g}s", expected=expected
            )
        except Exception as exc:
            log.exception("scripts.dry_run_error")
            return self._failed(script, f"Sandbox error: {exc}", expected=expected)

        actual = hash_output(result.stdout)
        reason: str | None = None
        if result.timed_out:
            reason = "Sandbox reported a timeout"
        elif result.exit_code != 0:
            reason = f"Non-zero exit code: {result.exit_code}"
        elif actual != expected:
            reason = (
                f"Output hash mismatch: expected {expected[:12]}..., got {actual[:12]}..."
            )

        passed = reason is None
        metrics.DRY_RUNS_TOTAL.labels(passed=str(passed).lower()).inc()
        log.info(
            "scripts.dry_run",
            passed=passed,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )
        return DryRunResult(
            generated_script=script,
            passed=passed,
            actual_output_hash=actual,
            expected_output_hash=expected,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            failure_reason=reason,
        )

    def _failed(self, script: GeneratedScript, reason: str, *, expected: str = "") -> DryRunResult:
        metrics.DRY_RUNS_TOTAL.labels(passed="false").inc()
        logger.info(
            "scripts.dry_run", operation_id=script.operation_id, passed=False, reason=reason
        )
        return DryRunResult(
            generated_script=script,
            passed=False,
            actual_output_hash="",
            expected_output_hash=expected,
            exit_code=-1,
            duration_ms=0,
            failure_reason=reason,
        )
