"""Shared SPL fixtures.

Builders return XML text so tests can read the document they ingest.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Callable, Iterable, Optional

import pytest

from splingest.storage.record_store import InMemoryRecordStore
from splingest.utils.config import Config, DatabaseConfig

DOCUMENT_GUID = "5d4c3b2a-0000-4000-8000-00000000d0c1"
SET_GUID = "5d4c3b2a-0000-4000-8000-00000000se71"


def build_section(
    guid: Optional[str],
    *,
    title: Optional[str] = None,
    code: Optional[str] = None,
    link_id: Optional[str] = None,
    text: str = "",
    body: str = "",
    children: Iterable[str] = (),
) -> str:
    """Return ``<component><section>...</section></component>`` markup."""
    parts = []
    if guid is not None:
        parts.append(f'<id root="{guid}"/>')
    if code is not None:
        parts.append(
            f'<code code="{code}" codeSystem="2.16.840.1.113883.6.1" displayName="{title or code}"/>'
        )
    if title is not None:
        parts.append(f"<title>{title}</title>")
    if text:
        parts.append(f"<text>{text}</text>")
    parts.append('<effectiveTime value="20240101"/>')
    parts.append(body)
    parts.extend(children)
    id_attr = f' ID="{link_id}"' if link_id else ""
    return f"<component><section{id_attr}>{''.join(parts)}</section></component>"


def build_document(
    *sections: str,
    document_guid: Optional[str] = DOCUMENT_GUID,
    set_guid: str = SET_GUID,
    version: int = 1,
) -> ET.Element:
    """Return a parsed SPL ``document`` root holding ``sections``."""
    doc_id = f'<id root="{document_guid}"/>' if document_guid else ""
    xml = (
        '<document xmlns="urn:hl7-org:v3" '
        'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">'
        f"{doc_id}"
        '<code code="34391-3" displayName="HUMAN PRESCRIPTION DRUG LABEL"/>'
        "<title>Example Label</title>"
        '<effectiveTime value="20240101"/>'
        f'<setId root="{set_guid}"/>'
        f'<versionNumber value="{version}"/>'
        f"<component><structuredBody>{''.join(sections)}</structuredBody></component>"
        "</document>"
    )
    return ET.fromstring(xml)


def guid(n: int) -> str:
    return f"00000000-0000-4000-8000-{n:012d}"


def build_hierarchy_document(fanout: int = 2, grandchildren: int = 2) -> ET.Element:
    """One root with ``fanout`` children, each with ``grandchildren`` children."""
    counter = iter(range(1, 10_000))
    kids = []
    for c in range(fanout):
        grand = [
            build_section(
                guid(next(counter) + 100),
                title=f"Grandchild {c}.{g}",
                text=f"<paragraph>Grandchild {c}.{g} text.</paragraph>",
            )
            for g in range(grandchildren)
        ]
        kids.append(
            build_section(
                guid(next(counter) + 100),
                title=f"Child {c}",
                text=f"<paragraph>Child {c} text.</paragraph>",
                children=grand,
            )
        )
    root = build_section(
        guid(1), title="Root", code="34066-1", text="<paragraph>Root text.</paragraph>", children=kids
    )
    return build_document(root)


@pytest.fixture
def hierarchy_document() -> ET.Element:
    """1 root, 2 children, 4 grandchildren."""
    return build_hierarchy_document()


@pytest.fixture
def make_section() -> Callable[..., str]:
    return build_section


@pytest.fixture
def make_document() -> Callable[..., ET.Element]:
    return build_document


@pytest.fixture
def make_guid() -> Callable[[int], str]:
    return guid


@pytest.fixture
def make_hierarchy_document() -> Callable[..., ET.Element]:
    return build_hierarchy_document


@pytest.fixture
def rich_document() -> ET.Element:
    """A document exercising every phase."""
    media_section = build_section(
        guid(10),
        title="Description",
        code="34089-3",
        link_id="S-DESC",
        text=(
            "<paragraph>See <linkHtml href=\"#S-DOSE\">Dosage</linkHtml> and "
            "<linkHtml href=\"#MISSING\">nowhere</linkHtml>.</paragraph>"
            '<renderMultimedia referencedObject="MM1"/>'
            "<list><item>one</item><item>two</item></list>"
            "<table><tbody><tr><td>a</td></tr><tr><td>b</td></tr></tbody></table>"
            '<paragraph>Inline <renderMultimedia referencedObject="MM2"/> and '
            '<renderMultimedia referencedObject="NOPE"/></paragraph>'
        ),
        body=(
            '<component><observationMedia ID="MM1"><text>Structure</text>'
            '<value xsi:type="ED" mediaType="image/jpeg"><reference value="structure.jpg"/></value>'
            "</observationMedia></component>"
            '<component><observationMedia ID="MM2"><text>Chart</text>'
            '<value xsi:type="ED" mediaType="image/png"><reference value="chart.png"/></value>'
            "</observationMedia></component>"
            "<component><observationMedia><text>No id</text></observationMedia></component>"
        ),
    )
    dosage_section = build_section(
        guid(11),
        title="Dosage",
        code="34068-7",
        link_id="S-DOSE",
        text="<paragraph>Take once daily.</paragraph>",
        body=(
            "<subject2><substanceAdministration><componentOf><protocol>"
            '<id root="2.16.840.1.113883.3.1077" extension="NCT01234567"/>'
            '<id root="2.16.840.1.113883.3.1077" extension="BAD123"/>'
            "</protocol></componentOf></substanceAdministration></subject2>"
        ),
    )
    tolerance_section = build_section(
        guid(12),
        title="Tolerances",
        code="60684-2",
        body=(
            "<subject><identifiedSubstance><identifiedSubstance>"
            '<code code="ABC123"/></identifiedSubstance>'
            "<subjectOf><substanceSpecification>"
            '<code code="40-CFR-180.123" codeSystem="2.16.840.1.113883.6.275.1"/>'
            "<component><observation>"
            '<code code="M1" displayName="HPLC"/>'
            "<analyte/><analyte/>"
            "</observation></component>"
            "</substanceSpecification></subjectOf>"
            "<subjectOf><substanceSpecification>"
            '<code code="OTHER-1"/>'
            "</substanceSpecification></subjectOf>"
            "</identifiedSubstance></subject>"
        ),
    )
    certification_section = build_section(
        guid(13),
        title="Blanket No Changes Certification",
        code="BNCC",
        body=(
            "<subject><manufacturedProduct><manufacturedProduct>"
            '<code code="12345-678" codeSystem="2.16.840.1.113883.6.69"/><name>Widget</name>'
            "</manufacturedProduct></manufacturedProduct></subject>"
            "<subject><manufacturedProduct><manufacturedProduct>"
            '<code code="12345-999" codeSystem="2.16.840.1.113883.6.69"/><name>Gadget</name>'
            "</manufacturedProduct></manufacturedProduct></subject>"
        ),
    )
    rems_section = build_section(
        guid(14),
        title="REMS",
        code="82346-2",
        body=(
            "<subject2><substanceAdministration><componentOf><protocol>"
            '<code code="C128899" codeSystem="2.16.840.1.113883.3.26.1.1" displayName="REMS"/>'
            "<component><requirement/></component>"
            "<component><monitoringObservation/></component>"
            "</protocol></componentOf>"
            "<subjectOf><approval><code code=\"C128899\"/>"
            '<effectiveTime><low value="20200101"/></effectiveTime></approval></subjectOf>'
            "</substanceAdministration></subject2>"
            "<subject><manufacturedProduct><subjectOf><document>"
            '<id root="AAAAAAAA-0000-4000-8000-000000000001"/><title>Patient Guide</title>'
            '<text mediaType="application/pdf"><reference value="guide.pdf"/></text>'
            "</document></subjectOf></manufacturedProduct></subject>"
        ),
    )
    return build_document(
        media_section, dosage_section, tolerance_section, certification_section, rems_section
    )


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def memory_config() -> Config:
    return Config(database=DatabaseConfig(backend="memory"))
