"""
Drift monitor for promoted operations.

Each promoted operation is tracked with the output hash it is expected to
produce. Every live output is compared against it; consecutive mismatches
are counted and a match resets the count. When the count reaches
``sensitivity`` the operation is demoted and the count starts over, so a
re-promoted operation begins with a clean slate.

Checks are synchronous. ``start()`` / ``stop()`` additionally run a
background consumer so hosts can ``submit()`` outputs without blocking the
executing path; the consumer invokes ``on_demotion`` for every demotion.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

from autopromote import metrics
from autopromote.config import DriftMonitorConfig
from autopromote.identity import demotion_id, execution_id, hash_output
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ArtifactType,
    DemotionDecision,
    DriftEvent,
    LineageEntry,
    PipelineStage,
)
from autopromote.store import DRIFT, ExecutionStore

logger = structlog.get_logger()

DemotionCallback = Callable[[DemotionDecision], Awaitable[None] | None]


class DriftMonitor:
    """Tracks promoted operations and demotes them on sustained drift.

    Args:
        config:      Sensitivity and on/off switch.
        store:       Optional store; events are appended to ``drift``.
        lineage:     Optional lineage graph for ``exec`` and ``demote`` entries.
        on_demotion: Called by the background consumer for each demotion.
                     May be a plain function or a coroutine function.
    """

    def __init__(
        self,
        config: DriftMonitorConfig | None = None,
        store: ExecutionStore | None = None,
        lineage: LineageGraph | None = None,
        on_demotion: DemotionCallback | None = None,
    ) -> None:
        self._config = config or DriftMonitorConfig()
        self._store = store
        self._lineage = lineage
        self._on_demotion = on_demotion
        self._expected: dict[str, str] = {}
        self._script_ids: dict[str, str] = {}
        self._consecutive: dict[str, int] = {}
        self._events: dict[str, list[DriftEvent]] = {}
        self._queue: asyncio.Queue[tuple[str, str]] | None = None
        self._bg_task: asyncio.Task[None] | None = None

    # ── Registration ─────────────────────────────────────────────────────────
    def track(
        self,
        operation_id: str,
        expected_hash: str,
        script_artifact_id: str | None = None,
    ) -> None:
        """Start monitoring an operation. Re-tracking resets its mismatch count.

        ``script_artifact_id`` is the lineage id of the promoted script; live
        executions are linked to it until the operation is untracked.
        """
        self._expected[operation_id] = expected_hash
        if script_artifact_id is not None:
            self._script_ids[operation_id] = script_artifact_id
        else:
            self._script_ids.pop(operation_id, None)
        self._consecutive[operation_id] = 0
        logger.info("drift.tracked", operation_id=operation_id)

    def untrack(self, operation_id: str) -> None:
        """Stop monitoring an operation. Its event history is kept."""
        self._expected.pop(operation_id, None)
        self._script_ids.pop(operation_id, None)
        self._consecutive.pop(operation_id, None)

    def is_tracked(self, operation_id: str) -> bool:
        return operation_id in self._expected

    def expected_hash(self, operation_id: str) -> str | None:
        return self._expected.get(operation_id)

    def consecutive_mismatches(self, operation_id: str) -> int:
        return self._consecutive.get(operation_id, 0)

    def history(self, operation_id: str) -> list[DriftEvent]:
        return list(self._events.get(operation_id, []))

    # ── Checking ─────────────────────────────────────────────────────────────
    def check(self, operation_id: str, actual_output: str) -> DemotionDecision:
        """Compare one live output against the expected hash.

        Raises:
            KeyError: If the operation is not tracked.
        """
        expected = self._expected[operation_id]

        if not self._config.enabled:
            return DemotionDecision(
                operation_id=operation_id,
                demoted=False,
                reason="Drift monitoring disabled",
                consecutive_mismatches=self._consecutive.get(operation_id, 0),
            )

        actual = hash_output(actual_output)
        matched = actual == expected
        count = 0 if matched else self._consecutive.get(operation_id, 0) + 1
        timestamp = datetime.now(UTC).isoformat()

        event = DriftEvent(
            operation_id=operation_id,
            timestamp=timestamp,
            matched=matched,
            actual_hash=actual,
            expected_hash=expected,
            consecutive_mismatches=count,
        )
        events = self._events.setdefault(operation_id, [])
        events.append(event)
        metrics.DRIFT_CHECKS_TOTAL.labels(matched=str(matched).lower()).inc()
        if self._store is not None:
            self._store.append(DRIFT, event.to_dict())
        if self._lineage is not None:
            self._record_execution(event)

        demoted = count >= self._config.sensitivity
        if demoted:
            reason = (
                f"{count} consecutive output mismatches reached sensitivity "
                f"{self._config.sensitivity}"
            )
            self._consecutive[operation_id] = 0
            metrics.DEMOTIONS_TOTAL.inc()
            logger.warning(
                "drift.demoted",
                operation_id=operation_id,
                consecutive_mismatches=count,
            )
            recent = tuple(events[-count:])
            if self._lineage is not None:
                self._record_demotion(operation_id, timestamp, recent, reason)
            return DemotionDecision(
                operation_id=operation_id,
                demoted=True,
                reason=reason,
                consecutive_mismatches=count,
                events=recent,
            )

        self._consecutive[operation_id] = count
        if matched:
            reason = "Output matches expected hash"
        else:
            reason = (
                f"Output mismatch {count}/{self._config.sensitivity}, below demotion threshold"
            )
            logger.info("drift.mismatch", operation_id=operation_id, consecutive_mismatches=count)
        return DemotionDecision(
            operation_id=operation_id,
            demoted=False,
            reason=reason,
            consecutive_mismatches=count,
        )

    # ── Background consumer ──────────────────────────────────────────────────
    async def start(self) -> None:
        """Start consuming submitted outputs as a background asyncio task."""
        if self._bg_task is not None and not self._bg_task.done():
            logger.warning("drift.already_running")
            return
        self._queue = asyncio.Queue()
        self._bg_task = asyncio.create_task(self._run_loop())
        logger.info("drift.started")

    async def stop(self) -> None:
        """Drain pending submissions, then stop the consumer."""
        if self._queue is not None and self.is_running:
            await self._queue.join()
        if self._bg_task is not None and not self._bg_task.done():
            self._bg_task.cancel()
            try:
                await self._bg_task
            except asyncio.CancelledError:
                pass
        self._bg_task = None
        self._queue = None
        logger.info("drift.stopped")

    @property
    def is_running(self) -> bool:
        return self._bg_task is not None and not self._bg_task.done()

    def submit(self, operation_id: str, actual_output: str) -> None:
        """Enqueue an output for checking without waiting for the result.

        Raises:
            RuntimeError: If the consumer is not running.
        """
        if self._queue is None or not self.is_running:
            msg = "Drift monitor is not running"
            raise RuntimeError(msg)
        self._queue.put_nowait((operation_id, actual_output))

    async def _run_loop(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            operation_id, output = await queue.get()
            try:
                decision = self.check(operation_id, output)
                if decision.demoted and self._on_demotion is not None:
                    pending = self._on_demotion(decision)
                    if asyncio.iscoroutine(pending):
                        await pending
            except Exception:
                logger.exception("drift.check_error", operation_id=operation_id)
            finally:
                queue.task_done()

    # ── Lineage ──────────────────────────────────────────────────────────────
    def _record_execution(self, event: DriftEvent) -> None:
        assert self._lineage is not None
        source = self._script_ids.get(event.operation_id)
        self._lineage.record(
            LineageEntry(
                artifact_id=execution_id(event.operation_id, event.timestamp),
                artifact_type=ArtifactType.EXECUTION,
                stage=PipelineStage.FEEDBACK,
                inputs=(source,) if source is not None and source in self._lineage else (),
                metadata={
                    "matched": event.matched,
                    "actual_hash": event.actual_hash,
                    "expected_hash": event.expected_hash,
                    "consecutive_mismatches": event.consecutive_mismatches,
                },
                timestamp=event.timestamp,
            )
        )

    def _record_demotion(
        self,
        operation_id: str,
        timestamp: str,
        events: tuple[DriftEvent, ...],
        reason: str,
    ) -> None:
        assert self._lineage is not None
        inputs = tuple(
            dict.fromkeys(
                eid
                for eid in (execution_id(operation_id, e.timestamp) for e in events)
                if eid in self._lineage
            )
        )
        self._lineage.record(
            LineageEntry(
                artifact_id=demotion_id(operation_id, timestamp),
                artifact_type=ArtifactType.DEMOTION,
                stage=PipelineStage.FEEDBACK,
                inputs=inputs,
                metadata={"reason": reason, "consecutive_mismatches": len(events)},
                timestamp=timestamp,
            )
        )
