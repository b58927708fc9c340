"""
Domain types for the promotion pipeline.

Value records are frozen dataclasses, immutable after construction. Each
stage produces new records rather than mutating the ones it received. The
only mutable state in the pipeline lives in the drift monitor and the
lifecycle registry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class PairStatus(StrEnum):
    """Whether a tool call had a matching result."""

    COMPLETE = "complete"
    PARTIAL = "partial"


class DeterminismClassification(StrEnum):
    """Determinism tiers, most certain first."""

    DETERMINISTIC = "deterministic"
    SEMI_DETERMINISTIC = "semi-deterministic"
    NON_DETERMINISTIC = "non-deterministic"


# Ordered from most to least certain; the lineage graph reduces chains by
# taking the highest index seen.
CLASSIFICATION_ORDER: tuple[DeterminismClassification, ...] = (
    DeterminismClassification.DETERMINISTIC,
    DeterminismClassification.SEMI_DETERMINISTIC,
    DeterminismClassification.NON_DETERMINISTIC,
)


class ArtifactType(StrEnum):
    """Kinds of artifact recorded in the lineage graph."""

    OBSERVATION = "observation"
    PATTERN = "pattern"
    CANDIDATE = "candidate"
    DECISION = "decision"
    SCRIPT = "script"
    EXECUTION = "execution"
    DEMOTION = "demotion"


class PipelineStage(StrEnum):
    """Pipeline stages that produce lineage entries."""

    CAPTURE = "capture"
    ANALYSIS = "analysis"
    DETECTION = "detection"
    GATEKEEPING = "gatekeeping"
    GENERATION = "generation"
    FEEDBACK = "feedback"


# ── Capture ────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class TranscriptEntry:
    """One line of an agent session transcript.

    Only ``tool_use`` and ``tool_result`` entries matter to capture; other
    types (user, assistant, system) are carried through and skipped.
    """

    uuid: str
    type: str
    session_id: str = ""
    timestamp: str = ""
    parent_uuid: str | None = None
    is_sidechain: bool = False
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    tool_output: Any = None


@dataclass(frozen=True)
class ExecutionContext:
    """Metadata attached to every pair captured from one session."""

    session_id: str
    phase: str | None = None
    active_skill: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"session_id": self.session_id}
        if self.phase is not None:
            data["phase"] = self.phase
        if self.active_skill is not None:
            data["active_skill"] = self.active_skill
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionContext:
        return cls(
            session_id=data["session_id"],
            phase=data.get("phase"),
            active_skill=data.get("active_skill"),
        )


@dataclass(frozen=True)
class ToolExecutionPair:
    """A tool_use paired with its tool_result.

    Attributes:
        id:          The tool_use uuid.
        tool_name:   Tool name, ``"unknown"`` when the transcript omitted it.
        input:       Tool input parameters.
        output:      Output text, None for partial pairs.
        output_hash: SHA-256 of the output, None for partial pairs.
        status:      COMPLETE when a result was found, PARTIAL otherwise.
        timestamp:   Timestamp of the tool_use entry.
        context:     Session context the pair was captured under.
    """

    id: str
    tool_name: str
    input: dict[str, Any]
    output: str | None
    output_hash: str | None
    status: PairStatus
    timestamp: str
    context: ExecutionContext

    @property
    def is_complete(self) -> bool:
        return self.status == PairStatus.COMPLETE and self.output_hash is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "input": self.input,
            "output": self.output,
            "output_hash": self.output_hash,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "context": self.context.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolExecutionPair:
        return cls(
            id=data["id"],
            tool_name=data["tool_name"],
            input=data.get("input") or {},
            output=data.get("output"),
            output_hash=data.get("output_hash"),
            status=PairStatus(data["status"]),
            timestamp=data.get("timestamp", ""),
            context=ExecutionContext.from_dict(data["context"]),
        )


@dataclass(frozen=True)
class StoredExecutionBatch:
    """Storage envelope for all pairs captured from one session."""

    session_id: str
    context: ExecutionContext
    pairs: tuple[ToolExecutionPair, ...]
    complete_count: int
    partial_count: int
    captured_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "context": self.context.to_dict(),
            "pairs": [p.to_dict() for p in self.pairs],
            "complete_count": self.complete_count,
            "partial_count": self.partial_count,
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredExecutionBatch:
        return cls(
            session_id=data["session_id"],
            context=ExecutionContext.from_dict(data["context"]),
            pairs=tuple(ToolExecutionPair.from_dict(p) for p in data["pairs"]),
            complete_count=data["complete_count"],
            partial_count=data["partial_count"],
            captured_at=data["captured_at"],
        )


# ── Determinism ────────────────────────────────────────────────────────────────
@dataclass(frozen=True, order=True)
class OperationKey:
    """Identity of a repeatable operation: tool name plus canonical input hash."""

    tool_name: str
    input_hash: str

    @property
    def operation_id(self) -> str:
        return f"{self.tool_name}:{self.input_hash}"


@dataclass(frozen=True)
class DeterminismScore:
    """Output-variance statistics for one operation.

    ``variance_score`` is 0.0 when every observation produced the same output
    and 1.0 when every observation differed.
    """

    operation: OperationKey
    variance_score: float
    observation_count: int
    unique_outputs: int
    session_ids: tuple[str, ...]


@dataclass(frozen=True)
class ClassifiedOperation:
    """A DeterminismScore with its tier attached."""

    score: DeterminismScore
    classification: DeterminismClassification
    determinism: float

    @property
    def operation(self) -> OperationKey:
        return self.score.operation


# ── Detection ──────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class PromotionCandidate:
    """A classified operation proposed for automation."""

    operation: ClassifiedOperation
    tool_name: str
    frequency: int
    estimated_token_savings: int
    composite_score: float
    meets_confidence: bool

    @property
    def key(self) -> OperationKey:
        return self.operation.score.operation

    @property
    def operation_id(self) -> str:
        return self.key.operation_id


# ── Gatekeeping ────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class CalibrationReport:
    """Optional benchmark metrics. A missing field skips its gate check."""

    f1_score: float | None = None
    accuracy: float | None = None
    mcc: float | None = None


@dataclass(frozen=True)
class GatekeeperEvidence:
    """Actual values next to the thresholds they were judged against."""

    determinism: float
    composite_score: float
    observation_count: int
    threshold_determinism: float
    threshold_confidence: float
    threshold_min_observations: int
    f1_score: float | None = None
    threshold_f1: float | None = None
    accuracy: float | None = None
    threshold_accuracy: float | None = None
    mcc: float | None = None
    threshold_mcc: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "determinism": self.determinism,
            "composite_score": self.composite_score,
            "observation_count": self.observation_count,
            "threshold_determinism": self.threshold_determinism,
            "threshold_confidence": self.threshold_confidence,
            "threshold_min_observations": self.threshold_min_observations,
            "f1_score": self.f1_score,
            "threshold_f1": self.threshold_f1,
            "accuracy": self.accuracy,
            "threshold_accuracy": self.threshold_accuracy,
            "mcc": self.mcc,
            "threshold_mcc": self.threshold_mcc,
        }


@dataclass(frozen=True)
class GatekeeperDecision:
    """Approve/reject verdict for one candidate at one point in time."""

    approved: bool
    reasoning: tuple[str, ...]
    evidence: GatekeeperEvidence
    candidate: PromotionCandidate
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.candidate.operation_id,
            "approved": self.approved,
            "reasoning": list(self.reasoning),
            "evidence": self.evidence.to_dict(),
            "timestamp": self.timestamp,
        }


# ── Validation ─────────────────────────────────────────────────────────────────
class ScriptOperation(BaseModel):
    """Schema for an executable unit handed to the sandbox.

    Validated at construction; an operation that fails validation is never
    marked valid for a dry run.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, pattern=r"^[^:\s]+:[0-9a-f]+$")
    script: str = Field(min_length=1)
    script_type: Literal["bash"] = "bash"
    working_dir: str = Field(default=".", min_length=1)
    timeout_ms: int = Field(default=30_000, gt=0)
    env: dict[str, str] = Field(default_factory=dict)
    label: str = ""


@dataclass(frozen=True)
class GeneratedScript:
    """A script materialized for an approved candidate.

    Attributes:
        operation:        The executable unit (validated when ``is_valid``).
        source_candidate: The candidate the script was generated from.
        script_content:   Full script text, header included.
        is_valid:         Schema-valid AND generated for a supported tool.
    """

    operation: ScriptOperation
    source_candidate: PromotionCandidate
    script_content: str
    is_valid: bool

    @property
    def operation_id(self) -> str:
        return self.source_candidate.operation_id


@dataclass(frozen=True)
class SandboxResult:
    """What the sandbox reports after running a script."""

    stdout: str
    exit_code: int
    duration_ms: int
    stderr: str = ""
    timed_out: bool = False


@dataclass(frozen=True)
class DryRunResult:
    """Outcome of replaying a generated script against its history.

    ``failure_reason`` is None exactly when ``passed`` is True.
    """

    generated_script: GeneratedScript
    passed: bool
    actual_output_hash: str
    expected_output_hash: str
    exit_code: int
    duration_ms: int
    failure_reason: str | None


FeedbackStatus = Literal["success", "failure", "timeout", "error"]


@dataclass(frozen=True)
class ExecutionFeedback:
    """One live execution of a promoted script."""

    operation_id: str
    status: FeedbackStatus
    exit_code: int
    duration_ms: int
    stdout_hash: str
    timestamp: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "operation_id": self.operation_id,
            "status": self.status,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "stdout_hash": self.stdout_hash,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


# ── Drift ──────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class DriftEvent:
    """One live-vs-expected output comparison for a promoted operation."""

    operation_id: str
    timestamp: str
    matched: bool
    actual_hash: str
    expected_hash: str
    consecutive_mismatches: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "timestamp": self.timestamp,
            "matched": self.matched,
            "actual_hash": self.actual_hash,
            "expected_hash": self.expected_hash,
            "consecutive_mismatches": self.consecutive_mismatches,
        }


@dataclass(frozen=True)
class DemotionDecision:
    """Result of a drift check; ``demoted`` is True once sensitivity is reached."""

    operation_id: str
    demoted: bool
    reason: str
    consecutive_mismatches: int
    events: tuple[DriftEvent, ...] = ()


# ── Lineage ────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class LineageEntry:
    """One stage's record of an artifact and the artifacts around it.

    Attributes:
        artifact_id:   Namespaced id (``obs:``, ``pat:``, ``cand:``, ``gate:``,
                       ``script:``, ``exec:``, ``demote:``).
        artifact_type: The kind of artifact.
        stage:         The stage that produced it.
        inputs:        Upstream artifact ids consumed.
        outputs:       Downstream artifact ids produced, when known at record
                       time. Pipeline stages leave it empty.
        metadata:      Stage-specific scores, thresholds, reasoning.
        timestamp:     ISO-8601 time of recording.
    """

    artifact_id: str
    artifact_type: ArtifactType
    stage: PipelineStage
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "artifact_type": self.artifact_type.value,
            "stage": self.stage.value,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineageEntry:
        return cls(
            artifact_id=data["artifact_id"],
            artifact_type=ArtifactType(data["artifact_type"]),
            stage=PipelineStage(data["stage"]),
            inputs=tuple(data.get("inputs", ())),
            outputs=tuple(data.get("outputs", ())),
            metadata=dict(data.get("metadata", {})),
            timestamp=data.get("timestamp", ""),
        )


@dataclass(frozen=True)
class LineageChain:
    """An artifact with everything upstream and downstream of it."""

    artifact: LineageEntry
    upstream: list[LineageEntry]
    downstream: list[LineageEntry]
