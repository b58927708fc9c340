"""Tests for autopromote.lineage — provenance recording and traversal."""

from __future__ import annotations

import pytest

from autopromote.errors import LineageIntegrityError
from autopromote.lineage import LineageGraph
from autopromote.models import (
    ArtifactType,
    DeterminismClassification,
    LineageEntry,
    PipelineStage,
)
from autopromote.store import LINEAGE, InMemoryStore, JsonlStore


def _make_entry(
    artifact_id: str,
    artifact_type: ArtifactType = ArtifactType.PATTERN,
    inputs: tuple[str, ...] = (),
    outputs: tuple[str, ...] = (),
    classification: str | None = None,
) -> LineageEntry:
    metadata = {"classification": classification} if classification else {}
    return LineageEntry(
        artifact_id=artifact_id,
        artifact_type=artifact_type,
        stage=PipelineStage.ANALYSIS,
        inputs=inputs,
        outputs=outputs,
        metadata=metadata,
    )


def _full_pipeline(graph: LineageGraph) -> None:
    """obs×2 → pat → cand → gate → script → exec → demote."""
    graph.record(_make_entry("obs:s1:op", ArtifactType.OBSERVATION))
    graph.record(_make_entry("obs:s2:op", ArtifactType.OBSERVATION))
    graph.record(
        _make_entry("pat:op", ArtifactType.PATTERN, inputs=("obs:s1:op", "obs:s2:op"),
                    classification="deterministic")
    )
    graph.record(_make_entry("cand:op", ArtifactType.CANDIDATE, inputs=("pat:op",)))
    graph.record(_make_entry("gate:op:t", ArtifactType.DECISION, inputs=("cand:op",)))
    graph.record(_make_entry("script:op", ArtifactType.SCRIPT, inputs=("gate:op:t",)))
    graph.record(_make_entry("exec:op:t", ArtifactType.EXECUTION, inputs=("script:op",)))
    graph.record(_make_entry("demote:op:t", ArtifactType.DEMOTION, inputs=("exec:op:t",)))


class TestRecord:
    def test_fills_timestamp(self) -> None:
        entry = LineageGraph().record(_make_entry("a"))
        assert entry.timestamp

    def test_strict_rejects_unknown_inputs(self) -> None:
        graph = LineageGraph()
        with pytest.raises(LineageIntegrityError) as exc_info:
            graph.record(_make_entry("b", inputs=("missing",)))
        assert exc_info.value.missing_inputs == ["missing"]
        assert "b" not in graph
        assert len(graph) == 0

    def test_rejected_entry_not_persisted(self, store: InMemoryStore) -> None:
        graph = LineageGraph(store)
        with pytest.raises(LineageIntegrityError):
            graph.record(_make_entry("b", inputs=("missing",)))
        assert store.read_all(LINEAGE) == []

    def test_lenient_accepts_unknown_inputs(self) -> None:
        graph = LineageGraph(strict=False)
        graph.record(_make_entry("b", inputs=("missing",)))
        assert "b" in graph
        with pytest.raises(LineageIntegrityError):
            graph.verify()

    def test_self_reference_allowed(self) -> None:
        graph = LineageGraph()
        graph.record(_make_entry("a", inputs=("a",)))
        assert graph.get_upstream("a") == []


class TestRecordIfChanged:
    def test_unchanged_entry_not_appended(self, store: InMemoryStore) -> None:
        graph = LineageGraph(store)
        first = graph.record_if_changed(_make_entry("p", classification="deterministic"))
        again = graph.record_if_changed(_make_entry("p", classification="deterministic"))

        assert again is first
        assert len(graph) == 1
        assert len(store.read_all(LINEAGE)) == 1

    def test_changed_metadata_appends_new_version(self) -> None:
        graph = LineageGraph()
        graph.record_if_changed(_make_entry("p", classification="deterministic"))
        graph.record_if_changed(_make_entry("p", classification="semi-deterministic"))

        assert len(graph) == 2
        current = graph.get("p")
        assert current is not None
        assert current.metadata["classification"] == "semi-deterministic"

    def test_changed_inputs_appends_new_version(self) -> None:
        graph = LineageGraph()
        graph.record(_make_entry("o1"))
        graph.record(_make_entry("o2"))
        graph.record_if_changed(_make_entry("p", inputs=("o1",)))
        graph.record_if_changed(_make_entry("p", inputs=("o1", "o2")))
        assert len(graph) == 4

    def test_compares_against_reloaded_entries(self, tmp_path) -> None:
        LineageGraph(JsonlStore(tmp_path)).record(
            _make_entry("p", classification="deterministic")
        )

        reloaded = LineageGraph(JsonlStore(tmp_path))
        reloaded.load()
        reloaded.record_if_changed(_make_entry("p", classification="deterministic"))

        assert len(JsonlStore(tmp_path).read_all(LINEAGE)) == 1


class TestTraversal:
    def test_upstream_of_candidate(self) -> None:
        graph = LineageGraph()
        _full_pipeline(graph)
        ids = {e.artifact_id for e in graph.get_upstream("cand:op")}
        assert ids == {"pat:op", "obs:s1:op", "obs:s2:op"}

    def test_upstream_of_execution(self) -> None:
        graph = LineageGraph()
        _full_pipeline(graph)
        upstream = graph.get_upstream("exec:op:t")
        assert len(upstream) == 6
        assert "exec:op:t" not in {e.artifact_id for e in upstream}

    def test_downstream_of_pattern(self) -> None:
        graph = LineageGraph()
        _full_pipeline(graph)
        ids = [e.artifact_id for e in graph.get_downstream("pat:op")]
        assert ids == ["cand:op", "gate:op:t", "script:op", "exec:op:t", "demote:op:t"]

    def test_outputs_link_downstream(self) -> None:
        graph = LineageGraph()
        graph.record(_make_entry("a", outputs=("b",)))
        graph.record(_make_entry("b"))
        assert [e.artifact_id for e in graph.get_downstream("a")] == ["b"]
        assert [e.artifact_id for e in graph.get_upstream("b")] == ["a"]

    def test_cycle_terminates(self) -> None:
        graph = LineageGraph(strict=False)
        graph.record(_make_entry("a", inputs=("b",)))
        graph.record(_make_entry("b", inputs=("a",)))
        assert [e.artifact_id for e in graph.get_upstream("a")] == ["b"]
        assert [e.artifact_id for e in graph.get_downstream("a")] == ["b"]

    def test_no_duplicates_in_diamond(self) -> None:
        graph = LineageGraph()
        graph.record(_make_entry("root"))
        graph.record(_make_entry("left", inputs=("root",)))
        graph.record(_make_entry("right", inputs=("root",)))
        graph.record(_make_entry("tip", inputs=("left", "right")))
        ids = [e.artifact_id for e in graph.get_upstream("tip")]
        assert sorted(ids) == ["left", "right", "root"]

    def test_unknown_artifact(self) -> None:
        graph = LineageGraph()
        assert graph.get_upstream("nope") == []
        with pytest.raises(KeyError):
            graph.get_chain("nope")

    def test_chain(self) -> None:
        graph = LineageGraph()
        _full_pipeline(graph)
        chain = graph.get_chain("gate:op:t")
        assert chain.artifact.artifact_id == "gate:op:t"
        assert len(chain.upstream) == 4
        assert len(chain.downstream) == 3

    def test_by_artifact_type(self) -> None:
        graph = LineageGraph()
        _full_pipeline(graph)
        assert len(graph.get_by_artifact_type(ArtifactType.OBSERVATION)) == 2


class TestLeastCertain:
    def test_worst_in_chain(self) -> None:
        graph = LineageGraph()
        graph.record(_make_entry("p1", classification="semi-deterministic"))
        graph.record(_make_entry("p2", inputs=("p1",), classification="deterministic"))
        assert (
            graph.least_certain_classification("p2")
            == DeterminismClassification.SEMI_DETERMINISTIC
        )

    def test_deterministic_chain(self) -> None:
        graph = LineageGraph()
        _full_pipeline(graph)
        assert (
            graph.least_certain_classification("script:op")
            == DeterminismClassification.DETERMINISTIC
        )

    def test_unknown_defaults_to_non_deterministic(self) -> None:
        assert (
            LineageGraph().least_certain_classification("nope")
            == DeterminismClassification.NON_DETERMINISTIC
        )

    def test_no_classification_defaults_to_non_deterministic(self) -> None:
        graph = LineageGraph()
        graph.record(_make_entry("a"))
        assert (
            graph.least_certain_classification("a")
            == DeterminismClassification.NON_DETERMINISTIC
        )


class TestPersistence:
    def test_reload_from_store(self, tmp_path) -> None:
        _full_pipeline(LineageGraph(JsonlStore(tmp_path)))

        reloaded = LineageGraph(JsonlStore(tmp_path))
        assert reloaded.load() == 8
        reloaded.verify()
        assert len(reloaded.get_upstream("demote:op:t")) == 7

    def test_load_requires_store(self) -> None:
        with pytest.raises(ValueError):
            LineageGraph().load()
