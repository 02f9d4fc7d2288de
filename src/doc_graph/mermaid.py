from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Tuple
import logging
import re

from .schemas import EntityType, RawGraph

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 30
FALLBACK_NODE_LIMIT = 10
_RESERVED_IDS = {"end", "graph", "subgraph", "flowchart", "style", "classdef", "class", "click"}

CLASS_DEFS = {
    EntityType.PERSON: "fill:#e1f5fe,stroke:#01579b,stroke-width:2px",
    EntityType.ORGANIZATION: "fill:#f3e5f5,stroke:#4a148c,stroke-width:2px",
    EntityType.LOCATION: "fill:#e8f5e8,stroke:#1b5e20,stroke-width:2px",
    EntityType.CONCEPT: "fill:#fff3e0,stroke:#e65100,stroke-width:2px",
    EntityType.EVENT: "fill:#fce4ec,stroke:#880e4f,stroke-width:2px",
    EntityType.OTHER: "fill:#f5f5f5,stroke:#424242,stroke-width:2px",
}


@dataclass
class MermaidConfig:
    max_nodes: int = 50
    max_edges: int = 100
    theme: str = "default"  # default | dark | forest | neutral


def render_mermaid(graph: RawGraph, config: MermaidConfig | None = None) -> str:
    """
    Render `graph` as a Mermaid flowchart limited to the most important nodes.
    Never raises: on any error a simplified diagram is returned instead.
    """
    config = config or MermaidConfig()
    try:
        return _render(graph, config)
    except Exception as e:
        logger.warning(f"Error generating Mermaid code, using fallback diagram: {e}")
        return render_fallback_mermaid(graph)


def _render(graph: RawGraph, config: MermaidConfig) -> str:
    entities = sorted(graph.entities, key=lambda e: e.importance, reverse=True)
    entities = entities[: max(0, config.max_nodes)]
    node_ids = _assign_node_ids([e.id for e in entities])

    relationships = [
        r for r in graph.relationships if r.source in node_ids and r.target in node_ids
    ]
    relationships.sort(key=lambda r: r.weight, reverse=True)
    relationships = relationships[: max(0, config.max_edges)]

    lines: List[str] = []
    if config.theme and config.theme != "default":
        lines.append(f"%%{{init: {{'theme': '{config.theme}'}}}}%%")
    lines.append("flowchart TD")

    for entity in entities:
        style = EntityType.coerce(entity.type).value
        lines.append(f'    {node_ids[entity.id]}["{sanitize_label(entity.label)}"]:::{style}')

    for rel in relationships:
        arrow = arrow_for_weight(rel.weight)
        lines.append(
            f'    {node_ids[rel.source]} {arrow}|"{sanitize_label(rel.type)}"| {node_ids[rel.target]}'
        )

    lines.append("")
    lines.append("    %% Styling")
    for entity_type, style in CLASS_DEFS.items():
        lines.append(f"    classDef {entity_type.value} {style}")
    return "\n".join(lines)


def _assign_node_ids(entity_ids: List[str]) -> Dict[str, str]:
    """Map entity ids to unique Mermaid-safe identifiers."""
    assigned: Dict[str, str] = {}
    used = set()
    for entity_id in entity_ids:
        if entity_id in assigned:
            continue
        base = sanitize_id(entity_id)
        candidate = base
        suffix = 1
        while candidate in used or candidate.lower() in _RESERVED_IDS:
            candidate = f"{base}_{suffix}"
            suffix += 1
        used.add(candidate)
        assigned[entity_id] = candidate
    return assigned


def sanitize_id(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_]", "_", str(value))
    return cleaned or "node"


def sanitize_label(label: str) -> str:
    cleaned = re.sub(r"[\"'`]", "", str(label if label is not None else ""))
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if len(cleaned) > MAX_LABEL_LENGTH:
        return cleaned[:MAX_LABEL_LENGTH] + "..."
    return cleaned


def arrow_for_weight(weight: float) -> str:
    if weight >= 0.8:
        return "==>"   # strong
    if weight >= 0.5:
        return "-->"   # medium
    return "-.->"      # weak


def render_fallback_mermaid(graph: RawGraph) -> str:
    """Simplified diagram: first entities only, with two illustrative edges."""
    entities = list(getattr(graph, "entities", ()) or ())[:FALLBACK_NODE_LIMIT]
    lines = [
        "flowchart TD",
        "    %% Simplified Knowledge Graph",
        "",
    ]
    for index, entity in enumerate(entities):
        label = sanitize_label(getattr(entity, "label", "") or f"Entity {index}")
        lines.append(f'    E{index}["{label}"]')

    if len(entities) > 1:
        lines.append("")
        lines.append("    E0 --> E1")
        if len(entities) > 2:
            lines.append("    E1 --> E2")
    return "\n".join(lines)


def validate_mermaid_syntax(code: str) -> Tuple[bool, str | None]:
    if not code or not code.strip():
        return False, "Empty Mermaid code"
    if "flowchart" not in code:
        return False, "Missing flowchart declaration"
    if code.count("[") != code.count("]"):
        return False, "Unbalanced brackets in node definitions"
    return True, None
