"""Tests for phase ordering and failure containment."""

from unittest.mock import MagicMock

import pytest

from splingest.ingestion.correlation_graph import CorrelationGraph, DiscoveredUnit
from splingest.pipeline.context import CancellationToken, IngestionContext
from splingest.pipeline.phases import Phase, PhaseOrchestrator
from splingest.pipeline.results import IngestionResult
from splingest.storage.bulk_writer import DeduplicatingBulkWriter
from splingest.storage.schemas import EntityKind
from splingest.utils.errors import IngestionCancelled, PersistenceError


def resolved_graph(count: int = 3) -> CorrelationGraph:
    graph = CorrelationGraph("doc")
    for i in range(count):
        key = f"g{i}"
        graph.add_unit(DiscoveredUnit(correlation_key=key, nesting_level=0, ordinal=i))
        graph.record_server_id(key, f"section-{i}")
    return graph


def index_handler(ctx, unit):
    return [ctx.new_record(EntityKind.SECTION_INDEX, depth=unit.nesting_level)]


def media_handler(ctx, unit):
    return [ctx.new_record(EntityKind.OBSERVATION_MEDIA, media_id=f"MM-{unit.ordinal}")]


@pytest.fixture
def graph() -> CorrelationGraph:
    return resolved_graph()


@pytest.fixture
def ctx(graph) -> IngestionContext:
    return IngestionContext(graph, "doc")


@pytest.fixture
def writer(memory_store) -> DeduplicatingBulkWriter:
    return DeduplicatingBulkWriter(memory_store)


def test_phases_run_in_order_over_one_group(ctx, graph, writer, memory_store):
    order = []

    def tracking(name, handler):
        def wrapped(c, u):
            order.append((name, u.correlation_key, c.current_phase))
            return handler(c, u)

        return wrapped

    phases = [
        Phase("media", tracking("media", media_handler)),
        Phase("indexing", tracking("indexing", index_handler)),
    ]
    result = IngestionResult()

    reports = PhaseOrchestrator(writer, phases).run(ctx, [graph.units], result)

    assert [r.name for r in reports] == ["media", "indexing"]
    assert [o[0] for o in order] == ["media"] * 3 + ["indexing"] * 3
    assert all(name == phase for name, _, phase in order)
    assert result.created_counts == {"observation_media": 3, "section_index": 3}
    # One query and one insert per kind
    assert memory_store.round_trips == 4
    assert ctx.current_phase is None


def test_unit_failure_is_contained(ctx, graph, writer):
    def flaky(c, u):
        if u.correlation_key == "g1":
            raise ValueError("malformed media element")
        return media_handler(c, u)

    phases = [Phase("media", flaky), Phase("indexing", index_handler)]
    result = IngestionResult()

    reports = PhaseOrchestrator(writer, phases).run(ctx, [graph.units], result)

    assert reports[0].unit_errors == 1
    assert reports[0].units_processed == 2
    assert reports[1].units_processed == 3
    assert result.success is True
    assert any("g1" in e and "malformed" in e for e in result.errors)
    assert ctx.current_unit is None


def test_predicate_limits_units(ctx, graph, writer):
    phase = Phase("media", media_handler, predicate=lambda c, u: u.ordinal == 2)
    result = IngestionResult()

    report = PhaseOrchestrator(writer, [phase]).run_phase(ctx, phase, [graph.units], result)

    assert report.units_processed == 1
    assert report.units_skipped == 2
    assert result.created_counts == {"observation_media": 1}


def test_predicate_error_is_recorded(ctx, graph, writer):
    def broken(c, u):
        raise KeyError("code")

    phase = Phase("media", media_handler, predicate=broken)
    result = IngestionResult()

    report = PhaseOrchestrator(writer, [phase]).run_phase(ctx, phase, [graph.units], result)

    assert report.unit_errors == 3
    assert report.units_processed == 0
    assert result.success is True


def test_unresolved_units_are_skipped(writer):
    graph = resolved_graph(2)
    graph.add_unit(DiscoveredUnit(correlation_key="unmapped", nesting_level=0, ordinal=2))
    ctx = IngestionContext(graph, "doc")
    phase = Phase("indexing", index_handler)
    result = IngestionResult()

    report = PhaseOrchestrator(writer, [phase]).run_phase(ctx, phase, [graph.units], result)

    assert report.units_processed == 2
    assert report.units_skipped == 1


def failing_writer(fail_kind: EntityKind, memory_store) -> MagicMock:
    real = DeduplicatingBulkWriter(memory_store)

    def write(kind, scope, candidates):
        if kind is fail_kind:
            raise PersistenceError("disk full", kind=kind.value)
        return real.write(kind, scope, candidates)

    writer = MagicMock(spec=DeduplicatingBulkWriter)
    writer.write.side_effect = write
    return writer


def test_flush_failure_fails_result_but_later_phases_run(ctx, graph, memory_store):
    writer = failing_writer(EntityKind.OBSERVATION_MEDIA, memory_store)
    phases = [Phase("media", media_handler), Phase("indexing", index_handler)]
    result = IngestionResult()

    reports = PhaseOrchestrator(writer, phases).run(ctx, [graph.units], result)

    assert reports[0].failed is True
    assert reports[1].failed is False
    assert result.success is False
    assert "disk full" in result.error
    assert result.created_counts == {"section_index": 3}


def test_failed_prerequisite_skips_later_phases(ctx, graph, memory_store):
    writer = failing_writer(EntityKind.OBSERVATION_MEDIA, memory_store)
    phases = [
        Phase("media", media_handler, prerequisite=True),
        Phase("content", index_handler),
        Phase("indexing", index_handler),
    ]
    result = IngestionResult()

    reports = PhaseOrchestrator(writer, phases).run(ctx, [graph.units], result)

    assert [(r.name, r.failed, r.skipped) for r in reports] == [
        ("media", True, False),
        ("content", False, True),
        ("indexing", False, True),
    ]
    assert result.created_counts == {}
    assert any("skipped 2 later phases" in w for w in result.warnings)


def test_failure_in_one_group_keeps_earlier_groups(ctx, graph, memory_store):
    calls = {"n": 0}
    real = DeduplicatingBulkWriter(memory_store)

    def write(kind, scope, candidates):
        calls["n"] += 1
        if calls["n"] == 2:
            raise PersistenceError("timeout", kind=kind.value)
        return real.write(kind, scope, candidates)

    writer = MagicMock(spec=DeduplicatingBulkWriter)
    writer.write.side_effect = write
    phase = Phase("indexing", index_handler)
    result = IngestionResult()

    report = PhaseOrchestrator(writer, [phase]).run_phase(
        ctx, phase, [[u] for u in graph.units], result
    )

    assert report.failed is True
    assert report.units_processed == 2
    assert memory_store.count(EntityKind.SECTION_INDEX) == 1


def test_reference_key_registers_written_records(ctx, graph, writer):
    phase = Phase(
        "media", media_handler, reference_key=lambda record: record.properties.get("media_id")
    )

    PhaseOrchestrator(writer, [phase]).run(ctx, [graph.units], IngestionResult())

    assert graph.reference_id("observation_media", "MM-1") is not None
    assert graph.reference_id("observation_media", "MM-9") is None


def test_progress_reported_at_interval(graph, writer):
    messages = []
    ctx = IngestionContext(graph, "doc", progress=messages.append)
    phase = Phase("indexing", index_handler)

    PhaseOrchestrator(writer, [phase], progress_interval=2).run_phase(
        ctx, phase, [graph.units], IngestionResult()
    )

    assert "Phase indexing: 2/3 sections" in messages
    assert messages[0].startswith("Phase indexing: starting")
    assert messages[-1].startswith("Phase indexing: done")


def test_cancellation_propagates(graph, writer):
    token = CancellationToken()
    ctx = IngestionContext(graph, "doc", cancel_token=token)

    def cancelling(c, u):
        token.cancel("stop")
        return index_handler(c, u)

    phases = [Phase("indexing", cancelling), Phase("media", media_handler)]
    result = IngestionResult()

    with pytest.raises(IngestionCancelled):
        PhaseOrchestrator(writer, phases).run(ctx, [graph.units], result)

    assert ctx.current_phase is None
    assert ctx.current_unit is None
