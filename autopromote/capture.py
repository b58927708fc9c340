"""Execution capture — pair a session's tool calls and append them as one batch."""

from __future__ import annotations

import time
from pathlib import Path

import structlog

from autopromote.identity import observation_id, operation_key
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ArtifactType,
    ExecutionContext,
    LineageEntry,
    PairStatus,
    PipelineStage,
    StoredExecutionBatch,
    TranscriptEntry,
)
from autopromote.store import EXECUTIONS, ExecutionStore
from autopromote.transcript import load_transcript, pair_tool_executions

logger = structlog.get_logger()


class ExecutionCapture:
    """Turns transcript entries into a StoredExecutionBatch in the store.

    Args:
        store:   Append-only store receiving batches in its ``executions`` category.
        lineage: Optional lineage graph; one observation entry is recorded per
                 distinct complete operation in the session.
    """

    def __init__(self, store: ExecutionStore, lineage: LineageGraph | None = None) -> None:
        self._store = store
        self._lineage = lineage

    def capture_session(
        self,
        entries: list[TranscriptEntry],
        context: ExecutionContext,
    ) -> StoredExecutionBatch:
        """Pair the entries, append the batch, and return it."""
        log = logger.bind(session_id=context.session_id)
        pairs = pair_tool_executions(entries, context)
        complete = sum(1 for p in pairs if p.status == PairStatus.COMPLETE)

        batch = StoredExecutionBatch(
            session_id=context.session_id,
            context=context,
            pairs=tuple(pairs),
            complete_count=complete,
            partial_count=len(pairs) - complete,
            captured_at=time.time(),
        )
        self._store.append(EXECUTIONS, batch.to_dict())
        log.info(
            "capture.batch_stored",
            pairs=len(pairs),
            complete=batch.complete_count,
            partial=batch.partial_count,
        )

        if self._lineage is not None:
            self._record_observations(batch)
        return batch

    def capture_file(self, path: str | Path, context: ExecutionContext) -> StoredExecutionBatch:
        """Load a transcript file and capture it as one session."""
        return self.capture_session(load_transcript(path), context)

    def _record_observations(self, batch: StoredExecutionBatch) -> None:
        assert self._lineage is not None
        seen: set[str] = set()
        for pair in batch.pairs:
            if not pair.is_complete:
                continue
            key = operation_key(pair.tool_name, pair.input)
            artifact_id = observation_id(batch.session_id, key)
            if artifact_id in seen or artifact_id in self._lineage:
                continue
            seen.add(artifact_id)
            self._lineage.record(
                LineageEntry(
                    artifact_id=artifact_id,
                    artifact_type=ArtifactType.OBSERVATION,
                    stage=PipelineStage.CAPTURE,
                    metadata={
                        "session_id": batch.session_id,
                        "tool_name": key.tool_name,
                        "input_hash": key.input_hash,
                        "output_hash": pair.output_hash,
                    },
                )
            )
