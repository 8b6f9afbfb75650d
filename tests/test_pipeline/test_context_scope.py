"""Tests for scoped context fields and cancellation."""

import time

import pytest

from splingest.ingestion.correlation_graph import CorrelationGraph, DiscoveredUnit
from splingest.pipeline.context import CancellationToken, IngestionContext
from splingest.storage.schemas import EntityKind
from splingest.utils.errors import IngestionCancelled, IngestionError


@pytest.fixture
def ctx() -> IngestionContext:
    return IngestionContext(CorrelationGraph("doc"), "doc")


def unit(key: str, server_id: str | None = None) -> DiscoveredUnit:
    return DiscoveredUnit(correlation_key=key, nesting_level=0, ordinal=0, server_id=server_id)


def test_scoped_sets_and_restores(ctx):
    with ctx.scoped("current_phase", "media") as value:
        assert value == "media"
        assert ctx.current_phase == "media"

    assert ctx.current_phase is None


def test_scoped_restores_after_exception(ctx):
    ctx.current_product_code = "outer"

    with pytest.raises(RuntimeError):
        with ctx.scoped("current_product_code", "inner"):
            raise RuntimeError("handler failed")

    assert ctx.current_product_code == "outer"


def test_nested_scopes_restore_in_order(ctx):
    with ctx.scoped("current_unit", unit("a")):
        with ctx.scoped("current_unit", unit("b")):
            assert ctx.current_unit.correlation_key == "b"
        assert ctx.current_unit.correlation_key == "a"
    assert ctx.current_unit is None


def test_unknown_field_is_rejected(ctx):
    with pytest.raises(AttributeError, match="not a scoped"):
        with ctx.scoped("scope", "other"):
            pass

    assert ctx.scope == "doc"


def test_run_scoped_returns_body_result(ctx):
    assert ctx.run_scoped("current_phase", "content", lambda: ctx.current_phase) == "content"
    assert ctx.current_phase is None


def test_new_record_defaults_to_current_unit(ctx):
    with ctx.scoped("current_unit", unit("g1", server_id="section-7")):
        record = ctx.new_record(EntityKind.SECTION_INDEX, depth=0)

    assert record.scope == "doc"
    assert record.properties == {"depth": 0, "section_id": "section-7", "section_guid": "g1"}


def test_new_record_requires_resolved_unit(ctx):
    with pytest.raises(IngestionError):
        ctx.new_record(EntityKind.SECTION_INDEX)

    with ctx.scoped("current_unit", unit("g1")):
        with pytest.raises(IngestionError, match="resolved unit"):
            ctx.new_record(EntityKind.SECTION_INDEX)


def test_report_forwards_to_progress_callback():
    messages = []
    ctx = IngestionContext(CorrelationGraph(), "doc", progress=messages.append)

    ctx.report("Phase media: 50/100 sections")

    assert messages == ["Phase media: 50/100 sections"]


def test_failing_progress_callback_is_logged_not_raised():
    def broken(message):
        raise RuntimeError("display closed")

    ctx = IngestionContext(CorrelationGraph(), "doc", progress=broken)

    ctx.report("Phase media: 50/100 sections")


def test_cancellation_token():
    token = CancellationToken()
    assert token.is_cancelled() is False

    token.cancel("user pressed stop")
    token.cancel("second reason ignored")

    assert token.is_cancelled() is True
    assert token.reason == "user pressed stop"
    with pytest.raises(IngestionCancelled, match="user pressed stop"):
        token.raise_if_cancelled()

    token.reset()
    assert token.is_cancelled() is False


def test_cancellation_deadline():
    token = CancellationToken(timeout_seconds=0.01)
    time.sleep(0.02)

    assert token.is_cancelled() is True
    assert token.reason == "deadline exceeded"


def test_context_check_cancelled():
    token = CancellationToken()
    ctx = IngestionContext(CorrelationGraph(), "doc", cancel_token=token)
    ctx.check_cancelled()

    token.cancel()

    with pytest.raises(IngestionCancelled):
        ctx.check_cancelled()
