"""
Promotion pipeline — wires capture, analysis, gating, validation and drift.

Architecture:
  1. capture() pairs a session's tool calls and appends them to the store.
  2. run_detection() classifies stored operations and ranks candidates.
  3. promote() gates a candidate, generates its script, dry-runs it and,
     on success, hands it to the drift monitor.
  4. observe() checks a live output of a promoted operation and demotes
     it after sustained drift.

Every stage shares one store and one lineage graph, so each artifact can be
traced back to the observations that produced it.

Usage:
  python -m autopromote.pipeline
  autopromote-detect                             # after pip install -e .
  python scripts/run_detection.py                # convenience wrapper
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

import structlog

from autopromote.capture import ExecutionCapture
from autopromote.config import PipelineConfig
from autopromote.detector import PromotionDetector
from autopromote.determinism import DeterminismAnalyzer
from autopromote.drift import DriftMonitor
from autopromote.errors import InvalidTransitionError
from autopromote.feedback import FeedbackRecorder
from autopromote.gatekeeper import PromotionGatekeeper
from autopromote.identity import script_id
from autopromote.lifecycle import OperationState, PromotionLifecycle
from autopromote.lineage import LineageGraph
from autopromote.models import (
    CalibrationReport,
    DemotionDecision,
    DryRunResult,
    ExecutionContext,
    GatekeeperDecision,
    GeneratedScript,
    PromotionCandidate,
    SandboxResult,
    StoredExecutionBatch,
    TranscriptEntry,
)
from autopromote.sandbox import SandboxExecutor, SubprocessSandbox
from autopromote.scripts import ScriptGenerator, ScriptValidator
from autopromote.store import ExecutionStore, JsonlStore

logger = structlog.get_logger(__name__)


def _configure_logging() -> None:
    """Configure structlog. Reads env vars at call time, not import time."""
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    log_pretty = os.getenv("LOG_PRETTY", "false").lower() == "true"

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if log_pretty
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


@dataclass(frozen=True)
class PromotionOutcome:
    """Everything ``promote()`` produced for one candidate.

    ``script`` and ``dry_run`` are None when the gatekeeper rejected it.
    """

    decision: GatekeeperDecision
    script: GeneratedScript | None
    dry_run: DryRunResult | None
    state: OperationState

    @property
    def promoted(self) -> bool:
        return self.state == OperationState.PROMOTED


class PromotionPipeline:
    """End-to-end promotion pipeline over one store.

    Args:
        config:  Stage configuration; defaults to ``PipelineConfig()``.
        store:   Record store; a JsonlStore under ``config.store_dir`` if omitted.
        sandbox: Script executor; a SubprocessSandbox if omitted.
        lineage: Lineage graph; one persisting to ``store`` if omitted.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        store: ExecutionStore | None = None,
        sandbox: SandboxExecutor | None = None,
        lineage: LineageGraph | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.store = store if store is not None else JsonlStore(self.config.store_dir)
        self.lineage = lineage if lineage is not None else LineageGraph(self.store)
        self.lifecycle = PromotionLifecycle()

        self.capturer = ExecutionCapture(self.store, self.lineage)
        self.analyzer = DeterminismAnalyzer(self.store, self.config.determinism, self.lineage)
        self.detector = PromotionDetector(
            self.store, self.analyzer, self.config.detector, self.lineage
        )
        self.gatekeeper = PromotionGatekeeper(self.config.gatekeeper, self.store, self.lineage)
        self.generator = ScriptGenerator(self.store, self.config.scripts, self.lineage)
        self.validator = ScriptValidator(
            self.store,
            sandbox if sandbox is not None else SubprocessSandbox(self.config.sandbox),
            self.config.sandbox.timeout_seconds,
        )
        self.drift = DriftMonitor(
            self.config.drift, self.store, self.lineage, on_demotion=self._handle_demotion
        )
        self.feedback = FeedbackRecorder(self.store)

    # ── Stages ───────────────────────────────────────────────────────────────
    def capture(
        self, entries: list[TranscriptEntry], context: ExecutionContext
    ) -> StoredExecutionBatch:
        return self.capturer.capture_session(entries, context)

    def capture_file(self, path: str | Path, context: ExecutionContext) -> StoredExecutionBatch:
        return self.capturer.capture_file(path, context)

    def run_detection(self) -> list[PromotionCandidate]:
        return self.detector.detect()

    async def promote(
        self,
        candidate: PromotionCandidate,
        calibration: CalibrationReport | None = None,
    ) -> PromotionOutcome:
        """Gate, generate, dry-run and start monitoring one candidate.

        A demoted operation re-enters the candidate pool first.
        If script generation or the dry run raises, the operation is returned
        to the candidate pool before the error propagates.

        Raises:
            InvalidTransitionError: If the operation is already approved or promoted.
        """
        op_id = candidate.operation_id
        log = logger.bind(operation_id=op_id)

        if self.lifecycle.state(op_id) == OperationState.DEMOTED:
            self.lifecycle.transition(op_id, OperationState.CANDIDATE)
        current = self.lifecycle.state(op_id)
        if current != OperationState.CANDIDATE:
            raise InvalidTransitionError(op_id, current.value, OperationState.APPROVED.value)

        decision = self.gatekeeper.evaluate(candidate, calibration)
        if not decision.approved:
            log.info("pipeline.rejected", reasoning=list(decision.reasoning))
            return PromotionOutcome(decision, None, None, self.lifecycle.state(op_id))

        self.lifecycle.transition(op_id, OperationState.APPROVED)
        try:
            script = self.generator.generate(decision)
            dry_run = await self.validator.dry_run(script)
        except Exception:
            self.lifecycle.transition(op_id, OperationState.CANDIDATE)
            log.exception("pipeline.promotion_failed")
            raise

        if not dry_run.passed:
            state = self.lifecycle.transition(op_id, OperationState.CANDIDATE)
            log.info("pipeline.dry_run_failed", reason=dry_run.failure_reason)
            return PromotionOutcome(decision, script, dry_run, state)

        state = self.lifecycle.transition(op_id, OperationState.PROMOTED)
        self.drift.track(
            op_id, dry_run.expected_output_hash, script_id(op_id, decision.timestamp)
        )
        log.info("pipeline.promoted")
        return PromotionOutcome(decision, script, dry_run, state)

    def observe(self, operation_id: str, actual_output: str) -> DemotionDecision:
        """Drift-check one live output of a promoted operation.

        Outputs for an operation that is not promoted, such as a run still in
        flight when its script was demoted, are ignored and never demote.
        """
        if self.lifecycle.state(operation_id) != OperationState.PROMOTED:
            return self._not_promoted(operation_id)
        decision = self.drift.check(operation_id, actual_output)
        if decision.demoted:
            self._handle_demotion(decision)
        return decision

    def record_execution(self, operation_id: str, result: SandboxResult) -> DemotionDecision:
        """Record feedback for a live run, then drift-check its stdout.

        Nothing is recorded for an operation that is not promoted.
        """
        if self.lifecycle.state(operation_id) != OperationState.PROMOTED:
            return self._not_promoted(operation_id)
        self.feedback.record(operation_id, result)
        return self.observe(operation_id, result.stdout)

    def _not_promoted(self, operation_id: str) -> DemotionDecision:
        state = self.lifecycle.state(operation_id)
        logger.info("pipeline.observe_skipped", operation_id=operation_id, state=state.value)
        return DemotionDecision(
            operation_id=operation_id,
            demoted=False,
            reason="Operation not promoted",
            consecutive_mismatches=self.drift.consecutive_mismatches(operation_id),
        )

    def _handle_demotion(self, decision: DemotionDecision) -> None:
        op_id = decision.operation_id
        if self.lifecycle.state(op_id) != OperationState.PROMOTED:
            return
        self.lifecycle.transition(op_id, OperationState.DEMOTED)
        self.drift.untrack(op_id)
        logger.warning("pipeline.demoted", operation_id=op_id, reason=decision.reason)


# ── Nightly job ────────────────────────────────────────────────────────────────
async def run_detection_job() -> int:
    """
    Batch entry point. Scores the stored history and gates the top candidates.

    1. Load the lineage graph persisted under AUTOPROMOTE_STORE_DIR
    2. Classify operations and rank promotion candidates
    3. Record a gatekeeper decision for every candidate meeting confidence
    4. Log summary

    Scripts are not generated or executed here; promotion needs a sandbox
    and is left to the host.

    Returns 0 on success, 1 on error.
    """
    log = logger.bind(job="promotion_detection")
    try:
        config = PipelineConfig.from_env()
    except ValueError as exc:
        log.error("detection_job.config_invalid", error=str(exc))
        return 1

    log.info("detection_job.starting", store_dir=config.store_dir)
    try:
        pipeline = PromotionPipeline(config)
        loaded = pipeline.lineage.load()
        candidates = pipeline.run_detection()
        approved = 0
        for candidate in candidates:
            if not candidate.meets_confidence:
                continue
            decision = pipeline.gatekeeper.evaluate(candidate)
            approved += int(decision.approved)
    except OSError as exc:
        log.error("detection_job.store_failed", error=str(exc))
        return 1

    log.info(
        "detection_job.complete",
        lineage_entries=loaded,
        candidates=len(candidates),
        approved=approved,
    )
    return 0


def main() -> None:
    """Entry point for CLI."""
    _configure_logging()
    exit_code = asyncio.run(run_detection_job())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
