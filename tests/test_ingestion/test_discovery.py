"""Tests for single-pass section discovery."""

import xml.etree.ElementTree as ET

import pytest
from loguru import logger
from pydantic import ValidationError

from splingest.ingestion.discovery import DiscoveryTraversal, discover
from splingest.ingestion.section_fields import extract_section_attributes


@pytest.fixture
def captured_warnings():
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)


def test_discovers_units_and_edges_in_document_order(hierarchy_document, make_guid):
    graph = discover(hierarchy_document)

    assert len(graph) == 7
    assert len(graph.edges) == 6
    assert [u.ordinal for u in graph.units] == list(range(7))

    root = graph.units[0]
    assert root.correlation_key == make_guid(1)
    assert root.nesting_level == 0
    assert root.parent_key is None
    assert root.attributes.title == "Root"

    children = graph.children_of(root.correlation_key)
    assert [c.attributes.title for c in children] == ["Child 0", "Child 1"]
    assert [c.sequence_number for c in children] == [1, 2]
    assert all(c.nesting_level == 1 for c in children)

    grandchildren = graph.children_of(children[1].correlation_key)
    assert [g.attributes.title for g in grandchildren] == ["Grandchild 1.0", "Grandchild 1.1"]
    assert all(g.nesting_level == 2 for g in grandchildren)


def test_edges_carry_sibling_sequence(hierarchy_document):
    graph = discover(hierarchy_document)

    for edge in graph.edges:
        child = graph.get(edge.child_key)
        assert child.parent_key == edge.parent_key
        assert child.sequence_number == edge.sequence_number


def test_discovery_is_repeatable(hierarchy_document):
    first = discover(hierarchy_document)
    second = discover(hierarchy_document)

    assert [u.correlation_key for u in first] == [u.correlation_key for u in second]
    assert first.edges == second.edges


def test_units_keep_source_node_but_do_not_serialize_it(hierarchy_document):
    unit = discover(hierarchy_document).units[0]

    assert unit.source_node is not None
    assert "source_node" not in unit.model_dump()


def test_correlation_key_is_immutable(hierarchy_document):
    unit = discover(hierarchy_document).units[0]

    with pytest.raises(ValidationError):
        unit.correlation_key = "other"


def test_missing_key_is_skipped_and_children_detached(
    make_document, make_section, make_guid, captured_warnings
):
    orphan = make_section(make_guid(3), title="Orphan")
    broken = make_section(None, title="No id", children=[orphan])
    root = make_section(make_guid(1), title="Root", children=[broken])

    graph = discover(make_document(root))

    assert [u.attributes.title for u in graph] == ["Root", "Orphan"]
    assert graph.edges == []
    assert graph.get(make_guid(3)).parent_key is None
    assert graph.get(make_guid(3)).nesting_level == 2
    assert len(graph.defects) == 1
    assert "missing correlation key" in graph.defects[0].reason
    assert any("Skipping section" in m for m in captured_warnings)
    assert any("Dropping hierarchy edge" in m for m in captured_warnings)


def test_duplicate_key_keeps_first_occurrence(make_document, make_section, make_guid):
    first = make_section(make_guid(2), title="First")
    repeat = make_section(make_guid(2), title="Repeat")

    graph = discover(make_document(first, repeat))

    assert len(graph) == 1
    assert graph.get(make_guid(2)).attributes.title == "First"
    assert graph.defects[0].reason == "duplicate correlation key"
    assert graph.defects[0].correlation_key == make_guid(2)


def test_extraction_failure_is_a_defect_not_an_abort(make_document, make_section, make_guid):
    calls = {"n": 0}

    def flaky(section):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ValueError("bad effectiveTime")
        return extract_section_attributes(section)

    doc = make_document(make_section(make_guid(1)), make_section(make_guid(2)))
    graph = DiscoveryTraversal(extract=flaky).discover(doc)

    assert [u.correlation_key for u in graph] == [make_guid(2)]
    assert "attribute extraction failed" in graph.defects[0].reason


def test_unexpected_extractor_error_is_a_defect(make_document, make_section, make_guid):
    def strict(section):
        attributes = extract_section_attributes(section)
        if attributes.section_guid == make_guid(1):
            raise KeyError("codeSystem")
        return attributes

    doc = make_document(make_section(make_guid(1)), make_section(make_guid(2)))
    graph = DiscoveryTraversal(extract=strict).discover(doc)

    assert [u.correlation_key for u in graph] == [make_guid(2)]
    assert len(graph.defects) == 1
    assert "codeSystem" in graph.defects[0].reason


def test_repeated_link_id_falls_back_to_guid(make_document, make_section, make_guid, captured_warnings):
    child = make_section(make_guid(2), title="Child", link_id="s1")
    root = make_section(make_guid(1), title="Root", link_id="s1", children=[child])

    graph = discover(make_document(root))

    assert len(graph) == 2
    assert graph.get(make_guid(1)).attributes.link_id == "s1"
    assert graph.get(make_guid(2)).attributes.link_id is None
    assert graph.unit_by_link_id("s1").correlation_key == make_guid(1)
    assert len(graph.edges) == 1
    assert graph.warnings and "repeats ID s1" in graph.warnings[0]
    assert any("repeats ID s1" in m for m in captured_warnings)


def test_missing_structured_body_yields_empty_graph():
    graph = discover(ET.fromstring('<document xmlns="urn:hl7-org:v3"/>'))

    assert len(graph) == 0
    assert graph.edges == []


def test_accepts_structured_body_directly(hierarchy_document):
    body = next(e for e in hierarchy_document.iter() if e.tag.endswith("structuredBody"))

    assert len(discover(body)) == 7


def test_sibling_groups_are_level_ordered(hierarchy_document):
    graph = discover(hierarchy_document)
    groups = graph.sibling_groups()

    assert [len(g) for g in groups] == [1, 2, 2, 2]
    levels = [g[0].nesting_level for g in groups]
    assert levels == sorted(levels)


def test_ancestors_root_first(hierarchy_document):
    graph = discover(hierarchy_document)
    leaf = graph.units[-1]

    assert [a.attributes.title for a in graph.ancestors(leaf.correlation_key)] == ["Root", "Child 1"]
