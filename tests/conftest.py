"""
Shared pytest fixtures for autopromote tests.

Provides:
- In-memory and JSONL-backed stores
- A strict lineage graph over the in-memory store
- Factories for execution pairs and stored batches
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from autopromote.identity import hash_output
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ExecutionContext,
    PairStatus,
    StoredExecutionBatch,
    ToolExecutionPair,
)
from autopromote.store import EXECUTIONS, InMemoryStore, JsonlStore

PairFactory = Callable[..., ToolExecutionPair]
BatchFactory = Callable[[str, list[ToolExecutionPair]], StoredExecutionBatch]


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def jsonl_store(tmp_path: Path) -> JsonlStore:
    return JsonlStore(tmp_path / "store")


@pytest.fixture()
def lineage(store: InMemoryStore) -> LineageGraph:
    return LineageGraph(store)


@pytest.fixture()
def make_pair() -> PairFactory:
    """Factory for complete (or partial) ToolExecutionPairs."""

    counter = iter(range(1_000_000))

    def _make(
        tool_name: str,
        tool_input: dict[str, Any],
        output: str | None,
        session_id: str = "sess-1",
    ) -> ToolExecutionPair:
        return ToolExecutionPair(
            id=f"pair-{next(counter)}",
            tool_name=tool_name,
            input=tool_input,
            output=output,
            output_hash=hash_output(output) if output is not None else None,
            status=PairStatus.COMPLETE if output is not None else PairStatus.PARTIAL,
            timestamp="2026-02-13T00:00:00Z",
            context=ExecutionContext(session_id=session_id),
        )

    return _make


@pytest.fixture()
def store_batch(store: InMemoryStore) -> BatchFactory:
    """Append one StoredExecutionBatch to the in-memory store."""

    def _store(session_id: str, pairs: list[ToolExecutionPair]) -> StoredExecutionBatch:
        complete = sum(1 for p in pairs if p.is_complete)
        batch = StoredExecutionBatch(
            session_id=session_id,
            context=ExecutionContext(session_id=session_id),
            pairs=tuple(pairs),
            complete_count=complete,
            partial_count=len(pairs) - complete,
            captured_at=time.time(),
        )
        store.append(EXECUTIONS, batch.to_dict())
        return batch

    return _store


@pytest.fixture()
def seed_operation(make_pair: PairFactory, store_batch: BatchFactory) -> Callable[..., None]:
    """Store one observation per output, each in its own session."""

    def _seed(tool_name: str, tool_input: dict[str, Any], outputs: list[str]) -> None:
        for i, output in enumerate(outputs):
            session_id = f"sess-{tool_name}-{i}"
            store_batch(session_id, [make_pair(tool_name, tool_input, output, session_id)])

    return _seed
