"""
Promotion detection — which deterministic operations are worth automating?

Filters classified operations down to those with high determinism on a
recognized tool, estimates how many tokens replacing them would save, and
ranks them by a composite score:

  composite = 0.4·determinism + 0.35·min(frequency/20, 1) + 0.25·min(savings/500, 1)

Frequency saturates at 20 observations and savings at 500 tokens, so the
score always stays within [0, 1].
"""

from __future__ import annotations

import structlog

from autopromote import metrics
from autopromote.config import PromotionDetectorConfig
from autopromote.determinism import DeterminismAnalyzer, collect_observations
from autopromote.identity import candidate_id, canonical_json, pattern_id
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ArtifactType,
    ClassifiedOperation,
    LineageEntry,
    PipelineStage,
    PromotionCandidate,
    ToolExecutionPair,
)
from autopromote.store import ExecutionStore

logger = structlog.get_logger()

PROMOTABLE_TOOL_NAMES: frozenset[str] = frozenset(
    {"Read", "Write", "Bash", "Glob", "Grep", "Edit", "WebFetch"}
)

DETERMINISM_WEIGHT = 0.4
FREQUENCY_WEIGHT = 0.35
SAVINGS_WEIGHT = 0.25
FREQUENCY_CAP = 20
SAVINGS_CAP = 500


def composite_score(determinism: float, frequency: int, token_savings: int) -> float:
    """Weighted ranking score in [0, 1]; non-decreasing in every argument."""
    return (
        DETERMINISM_WEIGHT * determinism
        + FREQUENCY_WEIGHT * min(frequency / FREQUENCY_CAP, 1.0)
        + SAVINGS_WEIGHT * min(token_savings / SAVINGS_CAP, 1.0)
    )


def estimate_token_savings(pairs: list[ToolExecutionPair], chars_per_token: int) -> int:
    """Average input+output size of the pairs, in tokens.

    Input size is the length of the compact canonical JSON of the input;
    pairs without output are ignored.
    """
    sized = [p for p in pairs if p.output is not None]
    if not sized:
        return 0
    total = sum(len(canonical_json(p.input)) + len(p.output or "") for p in sized)
    return round(total / len(sized) / chars_per_token)


class PromotionDetector:
    """Ranks deterministic, promotable operations as PromotionCandidates.

    Args:
        store:    Record store holding ``executions`` batches.
        analyzer: Determinism analyzer to use; one over ``store`` is built
                  when omitted.
        config:   Filter thresholds and token estimate ratio.
        lineage:  Optional lineage graph for ``candidate`` entries.
    """

    def __init__(
        self,
        store: ExecutionStore,
        analyzer: DeterminismAnalyzer | None = None,
        config: PromotionDetectorConfig | None = None,
        lineage: LineageGraph | None = None,
    ) -> None:
        self._store = store
        self._analyzer = analyzer or DeterminismAnalyzer(store)
        self._config = config or PromotionDetectorConfig()
        self._lineage = lineage

    def detect(self) -> list[PromotionCandidate]:
        """Return candidates sorted by composite score, highest first."""
        classified = self._analyzer.classify()
        observations = collect_observations(self._store)

        candidates: list[PromotionCandidate] = []
        for op in classified:
            if not self._eligible(op):
                continue
            pairs = [o.pair for o in observations.get(op.operation, [])]
            savings = estimate_token_savings(pairs, self._config.chars_per_token)
            frequency = op.score.observation_count
            score = composite_score(op.determinism, frequency, savings)
            candidates.append(
                PromotionCandidate(
                    operation=op,
                    tool_name=op.operation.tool_name,
                    frequency=frequency,
                    estimated_token_savings=savings,
                    composite_score=score,
                    meets_confidence=score >= self._config.min_confidence,
                )
            )

        # sorted() is stable, so equal scores keep the analyzer's order.
        candidates = sorted(candidates, key=lambda c: c.composite_score, reverse=True)
        metrics.CANDIDATES_DETECTED_TOTAL.inc(len(candidates))
        logger.info(
            "detector.candidates",
            analyzed=len(classified),
            candidates=len(candidates),
        )

        if self._lineage is not None:
            for candidate in candidates:
                self._record_candidate(candidate)
        return candidates

    def _eligible(self, op: ClassifiedOperation) -> bool:
        return (
            op.determinism >= self._config.min_determinism
            and op.operation.tool_name in PROMOTABLE_TOOL_NAMES
        )

    def _record_candidate(self, candidate: PromotionCandidate) -> None:
        assert self._lineage is not None
        source = pattern_id(candidate.key)
        self._lineage.record_if_changed(
            LineageEntry(
                artifact_id=candidate_id(candidate.key),
                artifact_type=ArtifactType.CANDIDATE,
                stage=PipelineStage.DETECTION,
                inputs=(source,) if source in self._lineage else (),
                metadata={
                    "composite_score": candidate.composite_score,
                    "frequency": candidate.frequency,
                    "estimated_token_savings": candidate.estimated_token_savings,
                    "meets_confidence": candidate.meets_confidence,
                    "classification": candidate.operation.classification.value,
                },
            )
        )
