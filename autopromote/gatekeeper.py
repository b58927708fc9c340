"""
Promotion gatekeeper — approve or reject a candidate against explicit thresholds.

Three checks always run (determinism, composite score as confidence, and
observation count). Calibration checks (F1, accuracy, MCC) run only when
their threshold is configured AND the calibration report carries the value;
otherwise they are skipped, never silently passed. Every check contributes
one human-readable reasoning line ending in ``passed`` or ``failed``.

Rejection is a normal outcome and is returned, not raised.
"""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from autopromote import metrics
from autopromote.config import GatekeeperConfig
from autopromote.identity import candidate_id, decision_id
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ArtifactType,
    CalibrationReport,
    GatekeeperDecision,
    GatekeeperEvidence,
    LineageEntry,
    PipelineStage,
    PromotionCandidate,
)
from autopromote.store import DECISIONS, ExecutionStore

logger = structlog.get_logger()


def _check(label: str, actual: float, threshold: float, fmt: str = ".3f") -> tuple[bool, str]:
    """Compare actual >= threshold and render one reasoning line."""
    ok = actual >= threshold
    op, verdict = (">=", "passed") if ok else ("<", "failed")
    return ok, f"{label} {actual:{fmt}} {op} {threshold:{fmt}}: {verdict}"


class PromotionGatekeeper:
    """Evaluates candidates and records every decision it makes.

    Args:
        config:  Required and optional thresholds.
        store:   Optional store; each decision is appended to ``decisions``.
        lineage: Optional lineage graph for ``decision`` entries.
    """

    def __init__(
        self,
        config: GatekeeperConfig | None = None,
        store: ExecutionStore | None = None,
        lineage: LineageGraph | None = None,
    ) -> None:
        self._config = config or GatekeeperConfig()
        self._store = store
        self._lineage = lineage

    @property
    def config(self) -> GatekeeperConfig:
        return self._config

    def evaluate(
        self,
        candidate: PromotionCandidate,
        calibration: CalibrationReport | None = None,
    ) -> GatekeeperDecision:
        cfg = self._config
        determinism = candidate.operation.determinism
        confidence = candidate.composite_score
        observations = candidate.operation.score.observation_count

        checks: list[tuple[bool, str]] = [
            _check("Determinism", determinism, cfg.min_determinism),
            _check("Confidence", confidence, cfg.min_confidence),
            _check("Observation count", observations, cfg.min_observations, "d"),
        ]

        report = calibration or CalibrationReport()
        optional = (
            ("F1 score", report.f1_score, cfg.min_f1),
            ("Accuracy", report.accuracy, cfg.min_accuracy),
            ("MCC", report.mcc, cfg.min_mcc),
        )
        for label, actual, threshold in optional:
            if actual is None or threshold is None:
                continue
            checks.append(_check(label, actual, threshold))

        approved = all(ok for ok, _ in checks)
        evidence = GatekeeperEvidence(
            determinism=determinism,
            composite_score=confidence,
            observation_count=observations,
            threshold_determinism=cfg.min_determinism,
            threshold_confidence=cfg.min_confidence,
            threshold_min_observations=cfg.min_observations,
            f1_score=report.f1_score,
            threshold_f1=cfg.min_f1,
            accuracy=report.accuracy,
            threshold_accuracy=cfg.min_accuracy,
            mcc=report.mcc,
            threshold_mcc=cfg.min_mcc,
        )
        decision = GatekeeperDecision(
            approved=approved,
            reasoning=tuple(line for _, line in checks),
            evidence=evidence,
            candidate=candidate,
            timestamp=datetime.now(UTC).isoformat(),
        )

        metrics.GATE_DECISIONS_TOTAL.labels(approved=str(approved).lower()).inc()
        logger.info(
            "gatekeeper.decision",
            operation_id=candidate.operation_id,
            approved=approved,
            failed_checks=sum(1 for ok, _ in checks if not ok),
        )

        if self._store is not None:
            self._store.append(DECISIONS, decision.to_dict())
        if self._lineage is not None:
            self._record_decision(decision)
        return decision

    def _record_decision(self, decision: GatekeeperDecision) -> None:
        assert self._lineage is not None
        source = candidate_id(decision.candidate.key)
        self._lineage.record(
            LineageEntry(
                artifact_id=decision_id(decision.candidate.operation_id, decision.timestamp),
                artifact_type=ArtifactType.DECISION,
                stage=PipelineStage.GATEKEEPING,
                inputs=(source,) if source in self._lineage else (),
                metadata={
                    "approved": decision.approved,
                    "reasoning": list(decision.reasoning),
                    "evidence": decision.evidence.to_dict(),
                },
                timestamp=decision.timestamp,
            )
        )
