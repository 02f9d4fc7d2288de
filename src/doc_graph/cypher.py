from __future__ import annotations
from typing import List, Tuple
import json
import logging
import re

from .config import settings
from .errors import CompilationError
from .llm import CompletionEngine, CompletionOptions
from .parsing import CYPHER_KEYWORDS, Parsed, parse_response
from .prompts import AnalysisTask, build_prompt
from .schemas import CompiledScript, RawGraph

logger = logging.getLogger(__name__)


def _debug(msg: str) -> None:
    logger.debug(f"[CYPHER] {msg}")


def build_cypher_payload(graph: RawGraph) -> str:
    """Entities and resolvable relationships, formatted for the compilation prompt."""
    entities = [e.to_dict() for e in graph.entities]
    relationships = [r.to_dict() for r in graph.resolvable_relationships()]
    return (
        "ENTITIES:\n"
        + json.dumps(entities, ensure_ascii=False, indent=2)
        + "\n\nRELATIONSHIPS:\n"
        + json.dumps(relationships, ensure_ascii=False, indent=2)
    )


async def compile_query_script(
    graph: RawGraph,
    engine: CompletionEngine | None,
    max_tokens: int | None = None,
) -> CompiledScript:
    """
    Compile `graph` into a Neo4j load script.
    The model is asked first; any failure falls through to the deterministic generator.
    """
    if engine is not None and engine.is_available():
        try:
            prompt_spec = build_prompt(AnalysisTask.CYPHER_COMPILE, build_cypher_payload(graph))
            response = await engine.complete(
                prompt_spec.prompt_text,
                CompletionOptions(
                    max_tokens=max_tokens or settings.cypher_max_tokens,
                    temperature=0.1,
                ),
            )
            outcome = parse_response(response, prompt_spec.expected_shape)
            if isinstance(outcome, Parsed):
                script = outcome.data["script"]
                valid, error = validate_cypher_syntax(script)
                return CompiledScript(script=script, source="model", valid=valid, error=error)
            logger.warning(f"Model Cypher rejected ({outcome.reason}); using manual generation")
        except Exception as e:
            logger.warning(f"Cypher generation error, falling back to manual generation: {e}")

    try:
        script = generate_fallback_cypher(graph)
    except Exception as e:
        raise CompilationError(f"Failed to generate Cypher code: {e}") from e
    valid, error = validate_cypher_syntax(script)
    return CompiledScript(script=script, source="fallback", valid=valid, error=error)


def generate_fallback_cypher(graph: RawGraph) -> str:
    """Deterministic, idempotent load script. No model call."""
    lines: List[str] = [
        "// Generated Cypher code for Knowledge Graph",
        "// Created by doc_graph",
        "",
    ]

    entity_types: List[str] = []
    for entity in graph.entities:
        label_name = node_label(entity.type)
        if label_name not in entity_types:
            entity_types.append(label_name)

    lines.append("// Create constraints for entity types")
    for label_name in entity_types:
        lines.append(
            f"CREATE CONSTRAINT IF NOT EXISTS FOR (n:{label_name}) REQUIRE n.id IS UNIQUE;"
        )
    lines.append("")

    lines.append("// Create entity nodes")
    for entity in graph.entities:
        lines.append(f'MERGE (n:{node_label(entity.type)} {{id: "{escape_string(entity.id)}"}})')
        lines.append(f'SET n.label = "{escape_string(entity.label)}",')
        lines.append(f'    n.description = "{escape_string(entity.description)}",')
        lines.append(f"    n.importance = {_number(entity.importance)};")
        lines.append("")

    relationships = graph.resolvable_relationships()
    if relationships:
        lines.append("// Create relationships")
        for rel in relationships:
            lines.append(
                f'MATCH (source {{id: "{escape_string(rel.source)}"}}), '
                f'(target {{id: "{escape_string(rel.target)}"}})'
            )
            lines.append(f"MERGE (source)-[r:{relationship_type(rel.type)}]->(target)")
            lines.append(f"SET r.weight = {_number(rel.weight)},")
            lines.append(f'    r.description = "{escape_string(rel.description)}";')
            lines.append("")

    lines.append("// Create indexes for better performance")
    for label_name in entity_types:
        lines.append(f"CREATE INDEX IF NOT EXISTS FOR (n:{label_name}) ON (n.label);")

    _debug(
        f"Manual script: {len(graph.entities)} nodes, {len(relationships)} relationships, "
        f"{len(entity_types)} labels"
    )
    return "\n".join(lines)


def node_label(entity_type) -> str:
    value = getattr(entity_type, "value", entity_type)
    value = re.sub(r"[^A-Za-z0-9_]", "", str(value or ""))
    if not value or value[0].isdigit():
        return "Entity"
    return value[0].upper() + value[1:].lower()


def escape_string(value) -> str:
    if value is None:
        return ""
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return re.sub(r"[\r\n]+", " ", text).strip()


def relationship_type(value: str) -> str:
    token = re.sub(r"[^A-Z0-9_]", "_", str(value or "").upper())
    token = re.sub(r"_+", "_", token).strip("_")
    if not token:
        return "RELATED_TO"
    if token[0].isdigit():
        return f"REL_{token}"
    return token


def _number(value: float) -> str:
    return repr(float(value))


def validate_cypher_syntax(code: str) -> Tuple[bool, str | None]:
    if not code or not code.strip():
        return False, "Empty Cypher code"
    structural = _strip_literals(code)
    if not CYPHER_KEYWORDS.search(structural):
        return False, "No valid Cypher keywords found"
    if structural.count("(") != structural.count(")"):
        return False, "Unbalanced parentheses in Cypher code"
    if structural.count("{") != structural.count("}"):
        return False, "Unbalanced braces in Cypher code"
    return True, None


def _strip_literals(code: str) -> str:
    """Drop string literals and // comments so brackets inside them are not counted."""
    out: List[str] = []
    quote = None
    i = 0
    while i < len(code):
        ch = code[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
        elif code.startswith("//", i):
            newline = code.find("\n", i)
            i = len(code) if newline == -1 else newline
            continue
        else:
            out.append(ch)
        i += 1
    return "".join(out)

