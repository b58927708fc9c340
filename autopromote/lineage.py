"""Lineage graph — append-only provenance for every pipeline artifact.

Every stage records one entry per artifact it produces, naming the upstream
artifacts it consumed (``inputs``). The graph is append-only, so a stage cannot
go back and name the artifacts its output later fed; pipeline stages leave
``outputs`` empty and downstream queries find consumers through the
``inputs`` of later entries. ``outputs`` is honoured for callers that do know
a forward reference when they record.

Entries are kept in memory for fast queries and, when a store is configured,
appended to its ``lineage`` category. Stages that re-derive the same artifact
on every run (patterns, candidates) use ``record_if_changed`` so an unchanged
artifact is not appended again.

The graph is logically a DAG but traversal never relies on that: upstream
and downstream walks are depth-first with a visited set, so they terminate
and return each artifact at most once even over cyclic data.

A strict graph refuses an entry whose inputs were never recorded and raises
``LineageIntegrityError``. That is the one fatal error class in the pipeline;
accepting the entry would corrupt every later provenance query.
"""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from autopromote.errors import LineageIntegrityError
from autopromote.models import (
    CLASSIFICATION_ORDER,
    ArtifactType,
    DeterminismClassification,
    LineageChain,
    LineageEntry,
)
from autopromote.store import LINEAGE, ExecutionStore

logger = structlog.get_logger()


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class LineageGraph:
    """Append-only lineage graph with cycle-safe provenance queries.

    Args:
        store:  Optional record store; entries are appended to its
                ``lineage`` category as they are recorded.
        strict: Reject entries that reference unrecorded input artifacts.
    """

    def __init__(self, store: ExecutionStore | None = None, *, strict: bool = True) -> None:
        self._store = store
        self._strict = strict
        self._entries: list[LineageEntry] = []
        self._by_id: dict[str, list[LineageEntry]] = {}

    @property
    def entries(self) -> list[LineageEntry]:
        return list(self._entries)

    def __contains__(self, artifact_id: object) -> bool:
        return artifact_id in self._by_id

    def __len__(self) -> int:
        return len(self._entries)

    def load(self) -> int:
        """Load previously persisted entries from the store into memory.

        Loading does not re-check integrity; call ``verify()`` for that.

        Returns:
            Number of entries loaded.

        Raises:
            ValueError: If no store is configured.
        """
        if self._store is None:
            msg = "No store configured"
            raise ValueError(msg)

        count = 0
        for stored in self._store.read_all(LINEAGE):
            try:
                entry = LineageEntry.from_dict(stored.data)
            except (KeyError, ValueError):
                logger.warning("lineage.load.skip_entry")
                continue
            self._index(entry)
            count += 1
        return count

    def record(self, entry: LineageEntry) -> LineageEntry:
        """Append an entry. Fills in the timestamp when the caller left it empty."""
        if not entry.timestamp:
            entry = LineageEntry(
                artifact_id=entry.artifact_id,
                artifact_type=entry.artifact_type,
                stage=entry.stage,
                inputs=entry.inputs,
                outputs=entry.outputs,
                metadata=entry.metadata,
                timestamp=utc_now_iso(),
            )

        if self._strict:
            missing = [
                i for i in entry.inputs if i not in self._by_id and i != entry.artifact_id
            ]
            if missing:
                logger.error(
                    "lineage.integrity_violation",
                    artifact_id=entry.artifact_id,
                    missing_inputs=missing,
                )
                raise LineageIntegrityError(entry.artifact_id, missing)

        self._index(entry)
        if self._store is not None:
            self._store.append(LINEAGE, entry.to_dict())
        logger.debug(
            "lineage.recorded",
            artifact_id=entry.artifact_id,
            artifact_type=entry.artifact_type.value,
            stage=entry.stage.value,
        )
        return entry

    def record_if_changed(self, entry: LineageEntry) -> LineageEntry:
        """Record ``entry`` unless the latest entry under its id already says the same.

        Timestamps are ignored when comparing. Returns the entry now current
        for the artifact id.
        """
        latest = self.get(entry.artifact_id)
        if latest is not None and _same_content(latest, entry):
            return latest
        return self.record(entry)

    def verify(self) -> None:
        """Raise LineageIntegrityError for the first entry with unknown inputs."""
        for entry in self._entries:
            missing = [i for i in entry.inputs if i not in self._by_id]
            if missing:
                raise LineageIntegrityError(entry.artifact_id, missing)

    def get(self, artifact_id: str) -> LineageEntry | None:
        """Return the latest entry recorded for an artifact id."""
        entries = self._by_id.get(artifact_id)
        return entries[-1] if entries else None

    def get_by_artifact_type(self, artifact_type: ArtifactType) -> list[LineageEntry]:
        return [e for e in self._entries if e.artifact_type == artifact_type]

    def get_upstream(self, artifact_id: str) -> list[LineageEntry]:
        """Everything that (transitively) produced the artifact."""
        return self._walk(artifact_id, upstream=True)

    def get_downstream(self, artifact_id: str) -> list[LineageEntry]:
        """Everything the artifact (transitively) fed into."""
        return self._walk(artifact_id, upstream=False)

    def get_chain(self, artifact_id: str) -> LineageChain:
        """Return the artifact with its full upstream and downstream traces.

        Raises:
            KeyError: If the artifact was never recorded.
        """
        artifact = self.get(artifact_id)
        if artifact is None:
            raise KeyError(artifact_id)
        return LineageChain(
            artifact=artifact,
            upstream=self.get_upstream(artifact_id),
            downstream=self.get_downstream(artifact_id),
        )

    def least_certain_classification(self, artifact_id: str) -> DeterminismClassification:
        """Worst determinism tier among the artifact and all of its ancestors.

        Defaults to ``non-deterministic`` when the artifact is unknown or no
        entry in its chain carries a classification.
        """
        artifact = self.get(artifact_id)
        if artifact is None:
            return DeterminismClassification.NON_DETERMINISTIC

        worst = -1
        for entry in [artifact, *self.get_upstream(artifact_id)]:
            raw = entry.metadata.get("classification")
            if raw is None:
                continue
            try:
                rank = CLASSIFICATION_ORDER.index(DeterminismClassification(raw))
            except ValueError:
                rank = len(CLASSIFICATION_ORDER) - 1
            worst = max(worst, rank)

        if worst < 0:
            return DeterminismClassification.NON_DETERMINISTIC
        return CLASSIFICATION_ORDER[worst]

    # ── internals ─────────────────────────────────────────────────────────────
    def _index(self, entry: LineageEntry) -> None:
        self._entries.append(entry)
        self._by_id.setdefault(entry.artifact_id, []).append(entry)

    def _neighbours(self, entry: LineageEntry, *, upstream: bool) -> list[LineageEntry]:
        """Entries directly before (upstream) or after (downstream) ``entry``."""
        linked_ids = entry.inputs if upstream else entry.outputs
        found: list[LineageEntry] = []
        for linked_id in linked_ids:
            found.extend(self._by_id.get(linked_id, []))
        for other in self._entries:
            refs = other.outputs if upstream else other.inputs
            if entry.artifact_id in refs:
                found.append(other)
        return found

    def _walk(self, artifact_id: str, *, upstream: bool) -> list[LineageEntry]:
        roots = self._by_id.get(artifact_id)
        if not roots:
            return []

        visited: set[str] = {artifact_id}
        result: list[LineageEntry] = []
        stack: list[LineageEntry] = list(reversed(roots))
        while stack:
            current = stack.pop()
            for neighbour in reversed(self._neighbours(current, upstream=upstream)):
                if neighbour.artifact_id in visited:
                    continue
                visited.add(neighbour.artifact_id)
                result.append(neighbour)
                stack.extend(reversed(self._by_id[neighbour.artifact_id]))
        return result


def _same_content(a: LineageEntry, b: LineageEntry) -> bool:
    return (
        a.artifact_type == b.artifact_type
        and a.stage == b.stage
        and tuple(a.inputs) == tuple(b.inputs)
        and tuple(a.outputs) == tuple(b.outputs)
        and a.metadata == b.metadata
    )
