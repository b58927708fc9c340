"""
Determinism analysis — how reliably does an operation produce the same output?

Reads every stored execution batch, groups complete pairs by OperationKey
(tool name + canonical input hash), and scores output variance per key.
Partial pairs never count. The store is the only data source; transcripts
are never touched here.

Variance curve:
  n ≤ 1           → 0.0
  n > 1           → (unique_outputs − 1) / (n − 1)

So 0.0 means every observation agreed, 1.0 means every observation
differed, and for a fixed sample size the score rises strictly with the
number of distinct outputs. ``determinism = 1 − variance``.

Operations with fewer than ``min_sample_size`` observations are left out
of the results: "not enough data yet" is a normal state, not an error.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

import structlog

from autopromote import metrics
from autopromote.config import DeterminismConfig
from autopromote.identity import observation_id, operation_key, pattern_id
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ArtifactType,
    ClassifiedOperation,
    DeterminismClassification,
    DeterminismScore,
    LineageEntry,
    OperationKey,
    PipelineStage,
    StoredExecutionBatch,
    ToolExecutionPair,
)
from autopromote.store import EXECUTIONS, ExecutionStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Observation:
    """One complete pair attributed to the session it came from."""

    session_id: str
    pair: ToolExecutionPair


def load_batches(store: ExecutionStore) -> list[StoredExecutionBatch]:
    """Read all execution batches, skipping records that do not parse."""
    batches: list[StoredExecutionBatch] = []
    for entry in store.read_all(EXECUTIONS):
        try:
            batches.append(StoredExecutionBatch.from_dict(entry.data))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("determinism.batch_parse_error", error=str(exc))
    return batches


def collect_observations(store: ExecutionStore) -> dict[OperationKey, list[Observation]]:
    """Group every complete pair in the store by its operation key, in store order."""
    grouped: dict[OperationKey, list[Observation]] = {}
    for batch in load_batches(store):
        for pair in batch.pairs:
            if not pair.is_complete:
                continue
            key = operation_key(pair.tool_name, pair.input)
            grouped.setdefault(key, []).append(
                Observation(session_id=batch.session_id, pair=pair)
            )
    return grouped


def variance_score(observation_count: int, unique_outputs: int) -> float:
    """Map (sample size, distinct outputs) onto [0, 1]."""
    if observation_count <= 1:
        return 0.0
    return (unique_outputs - 1) / (observation_count - 1)


def classify_determinism(
    determinism: float, config: DeterminismConfig
) -> DeterminismClassification:
    if determinism >= config.deterministic_threshold:
        return DeterminismClassification.DETERMINISTIC
    if determinism >= config.semi_deterministic_threshold:
        return DeterminismClassification.SEMI_DETERMINISTIC
    return DeterminismClassification.NON_DETERMINISTIC


def most_common_output_hash(observations: list[Observation]) -> str | None:
    """The output hash seen most often; ties go to the one seen first."""
    counts = Counter(o.pair.output_hash for o in observations if o.pair.output_hash)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


class DeterminismAnalyzer:
    """Scores and classifies output variance for every stored operation.

    Idempotent: running it repeatedly over the same store yields the same
    results, and nothing is exposed until a full pass completes.

    Args:
        store:   Record store holding ``executions`` batches.
        config:  Sample size and classification thresholds.
        lineage: Optional lineage graph; ``classify()`` records one pattern
                 entry per scored operation.
    """

    def __init__(
        self,
        store: ExecutionStore,
        config: DeterminismConfig | None = None,
        lineage: LineageGraph | None = None,
    ) -> None:
        self._store = store
        self._config = config or DeterminismConfig()
        self._lineage = lineage

    @property
    def config(self) -> DeterminismConfig:
        return self._config

    def analyze(self) -> list[DeterminismScore]:
        """One DeterminismScore per operation with enough observations."""
        scores: list[DeterminismScore] = []
        for key, observations in collect_observations(self._store).items():
            count = len(observations)
            if count < self._config.min_sample_size:
                continue
            unique = len({o.pair.output_hash for o in observations})
            sessions = tuple(dict.fromkeys(o.session_id for o in observations))
            scores.append(
                DeterminismScore(
                    operation=key,
                    variance_score=variance_score(count, unique),
                    observation_count=count,
                    unique_outputs=unique,
                    session_ids=sessions,
                )
            )
        logger.info("determinism.analyzed", operations=len(scores))
        return scores

    def classify(self) -> list[ClassifiedOperation]:
        """Classify every scored operation, most deterministic first."""
        classified: list[ClassifiedOperation] = []
        for score in self.analyze():
            determinism = 1.0 - score.variance_score
            classification = classify_determinism(determinism, self._config)
            classified.append(
                ClassifiedOperation(
                    score=score,
                    classification=classification,
                    determinism=determinism,
                )
            )
            metrics.OPERATIONS_CLASSIFIED_TOTAL.labels(
                classification=classification.value
            ).inc()

        classified.sort(key=lambda c: c.determinism, reverse=True)

        if self._lineage is not None:
            for op in classified:
                self._record_pattern(op)
        return classified

    def _record_pattern(self, op: ClassifiedOperation) -> None:
        assert self._lineage is not None
        key = op.score.operation
        inputs = tuple(
            obs_id
            for obs_id in (observation_id(s, key) for s in op.score.session_ids)
            if obs_id in self._lineage
        )
        self._lineage.record_if_changed(
            LineageEntry(
                artifact_id=pattern_id(key),
                artifact_type=ArtifactType.PATTERN,
                stage=PipelineStage.ANALYSIS,
                inputs=inputs,
                metadata={
                    "variance_score": op.score.variance_score,
                    "determinism": op.determinism,
                    "classification": op.classification.value,
                    "observation_count": op.score.observation_count,
                    "unique_outputs": op.score.unique_outputs,
                },
            )
        )
