"""Record-staging handlers for the phases that follow the section write.

Every handler takes the ingestion context and one resolved unit and returns
the records to write for it. Handlers only read the unit's source element and
the correlation graph; writing is left to the orchestrator.

Order matters:

- ``media`` registers observation media so ``content`` can resolve
  ``renderMultimedia`` references to them.
- ``indexing`` needs the whole hierarchy mapped, so it follows the edge write.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from typing import Iterable, List, Sequence

from loguru import logger

from splingest.ingestion.correlation_graph import DiscoveredUnit
from splingest.ingestion.spl_xml import (
    attr,
    child,
    children,
    exists,
    find,
    find_all,
    iter_descendants,
    local_name,
    path_attr,
    path_text,
    text_of,
)
from splingest.pipeline.context import IngestionContext
from splingest.pipeline.phases import Phase
from splingest.storage.schemas import EntityKind, Record

NCT_NUMBER_RE = re.compile(r"^NCT\d{8}$")

SUBSTANCE_SPECIFICATION_PATH = "subject/identifiedSubstance/subjectOf/substanceSpecification"
PROTOCOL_PATH = "subject2/substanceAdministration/componentOf/protocol"
REMS_MATERIAL_PATH = "subject/manufacturedProduct/subjectOf/document"

# Text blocks whose children are described by counts instead of flattened text
_CONTAINER_BLOCKS = {"List", "Table"}


def _section(unit: DiscoveredUnit) -> ET.Element:
    if unit.source_node is None:
        raise ValueError("section element is not available")
    return unit.source_node


# -- cross references ---------------------------------------------------------


def stage_cross_references(ctx: IngestionContext, unit: DiscoveredUnit) -> List[Record]:
    """Stage in-document section links and clinical trial registry references.

    ``linkHtml href="#ID"`` is resolved against the ``ID`` attribute of the
    sections discovered in this document; anything else is dropped.
    """
    section = _section(unit)
    records: List[Record] = []

    text = child(section, "text")
    if text is not None:
        for link in iter_descendants(text, "linkHtml"):
            href = attr(link, "href")
            if not href or not href.startswith("#"):
                continue
            target = ctx.graph.unit_by_link_id(href[1:])
            if target is None or target.server_id is None:
                logger.warning(
                    "Dropping unresolved link {} in section {}", href, unit.correlation_key
                )
                continue
            records.append(
                ctx.new_record(
                    EntityKind.SECTION_LINK,
                    href=href,
                    target_section_id=target.server_id,
                    target_section_guid=target.correlation_key,
                    link_text=text_of(link),
                )
            )

    for id_el in find_all(section, f"{PROTOCOL_PATH}/id"):
        number = attr(id_el, "extension")
        root = attr(id_el, "root")
        if not number or root != ctx.settings.nct_root_oid:
            logger.warning(
                "Skipping non-NCT protocol id in section {} (root={})", unit.correlation_key, root
            )
            continue
        if not NCT_NUMBER_RE.match(number):
            logger.warning(
                "Skipping malformed NCT number {!r} in section {}", number, unit.correlation_key
            )
            continue
        records.append(
            ctx.new_record(
                EntityKind.DOCUMENT_REFERENCE,
                reference_system="NCT",
                reference_id=number,
                reference_root=root,
            )
        )

    return records


# -- media --------------------------------------------------------------------


def stage_observation_media(ctx: IngestionContext, unit: DiscoveredUnit) -> List[Record]:
    """Stage ``component/observationMedia`` entries of the section."""
    records: List[Record] = []
    for media_el in find_all(_section(unit), "component/observationMedia"):
        media_id = attr(media_el, "ID")
        if not media_id:
            logger.warning("Skipping observationMedia without ID in section {}", unit.correlation_key)
            continue
        value = child(media_el, "value")
        records.append(
            ctx.new_record(
                EntityKind.OBSERVATION_MEDIA,
                media_id=media_id,
                description_text=path_text(media_el, "text"),
                media_type=attr(value, "mediaType"),
                xsi_type=attr(value, "type"),
                file_name=path_attr(media_el, "value/reference/@value"),
            )
        )
    return records


def media_reference(record: Record) -> str | None:
    return record.properties.get("media_id")


# -- content ------------------------------------------------------------------


def _content_type(block: ET.Element) -> str:
    name = local_name(block)
    return name[:1].upper() + name[1:]


def stage_text_content(ctx: IngestionContext, unit: DiscoveredUnit) -> List[Record]:
    """Stage one record per top-level block of the section text.

    Rendered media inside a block is linked to the observation media written
    by the media phase; references that did not resolve are dropped.
    """
    text = child(_section(unit), "text")
    if text is None:
        return []

    records: List[Record] = []
    sequence = 0
    for block in children(text):
        name = local_name(block)
        # Highlights belong to excerpts and are not content blocks
        if not name or name == "highlight":
            continue
        sequence += 1
        content_type = _content_type(block)

        props = {
            "content_type": content_type,
            "sequence_number": sequence,
            "style_code": attr(block, "styleCode"),
        }
        if content_type == "List":
            props["item_count"] = len(children(block, "item"))
        elif content_type == "Table":
            props["row_count"] = sum(1 for _ in iter_descendants(block, "tr"))
        if content_type not in _CONTAINER_BLOCKS:
            props["content_text"] = text_of(block)
        records.append(ctx.new_record(EntityKind.TEXT_CONTENT, **props))

        rendered = [block] if name == "renderMultimedia" else list(
            iter_descendants(block, "renderMultimedia")
        )
        for element in rendered:
            records.extend(_rendered_media(ctx, unit, element, sequence, inline=element is not block))

    return records


def _rendered_media(
    ctx: IngestionContext,
    unit: DiscoveredUnit,
    element: ET.Element,
    sequence: int,
    *,
    inline: bool,
) -> Iterable[Record]:
    referenced = attr(element, "referencedObject")
    media_record_id = ctx.graph.reference_id(EntityKind.OBSERVATION_MEDIA.value, referenced)
    if media_record_id is None:
        logger.warning(
            "Dropping renderMultimedia {!r} in section {}: no matching observationMedia",
            referenced,
            unit.correlation_key,
        )
        return []
    return [
        ctx.new_record(
            EntityKind.RENDERED_MEDIA,
            content_sequence=sequence,
            referenced_object=referenced,
            observation_media_id=media_record_id,
            is_inline=inline,
        )
    ]


# -- indexing -----------------------------------------------------------------


def stage_section_index(ctx: IngestionContext, unit: DiscoveredUnit) -> List[Record]:
    """Stage the hierarchy index entry (root, parent, depth, paths) of a section."""
    ancestors = ctx.graph.ancestors(unit.correlation_key)
    lineage = ancestors + [unit]
    parent = ancestors[-1] if ancestors else None
    titles = [u.attributes.title for u in lineage if u.attributes.title]

    return [
        ctx.new_record(
            EntityKind.SECTION_INDEX,
            root_section_id=lineage[0].server_id,
            parent_section_id=parent.server_id if parent else None,
            depth=len(ancestors),
            sequence_number=unit.sequence_number,
            section_code=unit.attributes.code,
            key_path=[u.correlation_key for u in lineage],
            title_path=" > ".join(titles) if titles else None,
            child_count=len(ctx.graph.children_of(unit.correlation_key)),
        )
    ]


# -- conditional phases -------------------------------------------------------


def has_tolerance_specification(ctx: IngestionContext, unit: DiscoveredUnit) -> bool:
    prefix = ctx.settings.tolerance_code_prefix.lower()
    return any(
        (path_attr(spec, "code/@code") or "").lower().startswith(prefix)
        for spec in find_all(_section(unit), SUBSTANCE_SPECIFICATION_PATH)
    )


def stage_tolerance_specifications(ctx: IngestionContext, unit: DiscoveredUnit) -> List[Record]:
    """Stage pesticide tolerance specifications (40 CFR substance specs)."""
    section = _section(unit)
    prefix = ctx.settings.tolerance_code_prefix.lower()
    substance_code = path_attr(section, "subject/identifiedSubstance/identifiedSubstance/code/@code")

    records: List[Record] = []
    for spec in find_all(section, SUBSTANCE_SPECIFICATION_PATH):
        code = path_attr(spec, "code/@code")
        if not code or not code.lower().startswith(prefix):
            continue
        observation = find(spec, "component/observation")
        records.append(
            ctx.new_record(
                EntityKind.TOLERANCE_SPECIFICATION,
                specification_code=code,
                specification_code_system=path_attr(spec, "code/@codeSystem"),
                substance_code=substance_code,
                enforcement_method_code=(
                    path_attr(observation, "code/@code") if observation is not None else None
                ),
                enforcement_method_display_name=(
                    path_attr(observation, "code/@displayName") if observation is not None else None
                ),
                analyte_count=(
                    len(children(observation, "analyte")) if observation is not None else 0
                ),
            )
        )
    return records


def is_certification_section(ctx: IngestionContext, unit: DiscoveredUnit) -> bool:
    return unit.attributes.code == ctx.settings.certification_section_code


def _product_elements(section: ET.Element) -> Sequence[ET.Element]:
    return find_all(section, "subject/manufacturedProduct/manufacturedProduct") + find_all(
        section, "subject/manufacturedProduct/manufacturedMedicine"
    )


def stage_certification_links(ctx: IngestionContext, unit: DiscoveredUnit) -> List[Record]:
    """Link a certification section to each product it certifies."""
    records: List[Record] = []
    for product in _product_elements(_section(unit)):
        code = path_attr(product, "code/@code")
        if not code:
            logger.warning("Skipping certified product without code in section {}", unit.correlation_key)
            continue
        with ctx.scoped("current_product_code", code):
            records.append(_certification_link(ctx, product))
    return records


def _certification_link(ctx: IngestionContext, product: ET.Element) -> Record:
    return ctx.new_record(
        EntityKind.CERTIFICATION_LINK,
        product_code=ctx.current_product_code,
        product_code_system=path_attr(product, "code/@codeSystem"),
        product_name=path_text(product, "name"),
        certification_code=ctx.current_unit.attributes.code,
        document_key=ctx.graph.document_key,
    )


def has_rems_content(ctx: IngestionContext, unit: DiscoveredUnit) -> bool:
    section = _section(unit)
    return exists(section, PROTOCOL_PATH) or exists(section, REMS_MATERIAL_PATH)


def stage_rems(ctx: IngestionContext, unit: DiscoveredUnit) -> List[Record]:
    """Stage REMS protocols and REMS material documents."""
    section = _section(unit)
    records: List[Record] = []

    for administration in find_all(section, "subject2/substanceAdministration"):
        protocol = find(administration, "componentOf/protocol")
        if protocol is None:
            continue
        code = path_attr(protocol, "code/@code")
        if not code:
            logger.warning("Skipping REMS protocol without code in section {}", unit.correlation_key)
            continue
        components = children(protocol, "component")
        records.append(
            ctx.new_record(
                EntityKind.REMS_PROTOCOL,
                protocol_code=code,
                protocol_code_system=path_attr(protocol, "code/@codeSystem"),
                protocol_display_name=path_attr(protocol, "code/@displayName"),
                requirement_count=sum(1 for c in components if child(c, "requirement") is not None),
                monitoring_observation_count=sum(
                    1 for c in components if child(c, "monitoringObservation") is not None
                ),
                approval_code=path_attr(administration, "subjectOf/approval/code/@code"),
                approval_date=path_attr(administration, "subjectOf/approval/effectiveTime/low/@value"),
            )
        )

    for document in find_all(section, REMS_MATERIAL_PATH):
        guid = path_attr(document, "id/@root")
        if not guid:
            logger.warning("Skipping REMS material without id in section {}", unit.correlation_key)
            continue
        records.append(
            ctx.new_record(
                EntityKind.REMS_MATERIAL,
                material_guid=guid.lower(),
                title=path_text(document, "title"),
                media_type=path_attr(document, "text/@mediaType"),
                file_name=path_attr(document, "text/reference/@value"),
            )
        )

    return records


DEFAULT_PHASES: List[Phase] = [
    Phase("cross_references", stage_cross_references, description="section links, NCT references"),
    Phase(
        "media",
        stage_observation_media,
        reference_key=media_reference,
        description="observation media (must precede content)",
    ),
    Phase("content", stage_text_content, description="text blocks and rendered media"),
    Phase("indexing", stage_section_index, description="hierarchy index"),
    Phase(
        "tolerance_specifications",
        stage_tolerance_specifications,
        predicate=has_tolerance_specification,
    ),
    Phase("certification_links", stage_certification_links, predicate=is_certification_section),
    Phase("rems_protocols", stage_rems, predicate=has_rems_content),
]


def build_phase_table(enabled: Sequence[str] | None = None) -> List[Phase]:
    """Return the default phases, filtered to ``enabled`` names, in table order.

    Raises:
        ValueError: If ``enabled`` names an unknown phase
    """
    if enabled is None:
        return list(DEFAULT_PHASES)
    known = {phase.name for phase in DEFAULT_PHASES}
    unknown = [name for name in enabled if name not in known]
    if unknown:
        raise ValueError(f"Unknown phases: {', '.join(unknown)}")
    wanted = set(enabled)
    return [phase for phase in DEFAULT_PHASES if phase.name in wanted]
