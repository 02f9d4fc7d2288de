from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Set, Union
import json
import logging
import math
import re
import uuid

from .prompts import AnalysisTask, ExpectedShape, FieldKind
from .schemas import EntityType, RawGraph

logger = logging.getLogger(__name__)

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_CODE_FENCE = re.compile(r"```[A-Za-z]*[ \t]*\n?")
_STATEMENT_START = re.compile(r"^[ \t]*(?://|(?:CREATE|MERGE|MATCH|WITH|UNWIND)\b)", re.M)
CYPHER_KEYWORDS = re.compile(r"\b(CREATE|MERGE|MATCH|SET|RETURN)\b", re.I)

_MAX_SPAN_ATTEMPTS = 25


def _debug(msg: str) -> None:
    logger.debug(f"[PARSER] {msg}")


@dataclass(frozen=True)
class Parsed:
    task: AnalysisTask
    data: Dict[str, Any]

    @property
    def is_fallback(self) -> bool:
        return False


@dataclass(frozen=True)
class Fallback:
    task: AnalysisTask
    data: Dict[str, Any]
    reason: str

    @property
    def is_fallback(self) -> bool:
        return True


ParseOutcome = Union[Parsed, Fallback]


def fallback_for(task: AnalysisTask, raw: str) -> Dict[str, Any]:
    """Typed stand-in returned when a task's response cannot be decoded."""
    if task == AnalysisTask.SUMMARIZE:
        return {"summary": raw, "keyPoints": [], "wordCount": len(raw.split())}
    if task == AnalysisTask.EXTRACT_ENTITIES:
        return {"entities": []}
    if task == AnalysisTask.ANALYZE_SENTIMENT:
        return {"sentiment": 0, "label": "neutral", "confidence": 0.5, "keyPhrases": []}
    if task == AnalysisTask.GENERATE_KEYWORDS:
        return {"keywords": []}
    if task == AnalysisTask.EXTRACT_RELATIONSHIPS:
        return {"relationships": []}
    if task == AnalysisTask.KNOWLEDGE_GRAPH:
        return {"entities": [], "relationships": [], "summary": "", "themes": []}
    if task == AnalysisTask.CYPHER_COMPILE:
        return {"script": ""}
    return {"answer": raw, "references": []}


def parse_response(raw_text: str, shape: ExpectedShape) -> ParseOutcome:
    """Decode a model response against `shape`. Never raises."""
    raw_text = raw_text if isinstance(raw_text, str) else str(raw_text or "")
    try:
        if shape.format == "cypher":
            return _parse_cypher(raw_text, shape)
        return _parse_json(raw_text, shape)
    except Exception as e:
        logger.warning(f"Unexpected error while parsing {shape.task.value} response: {e}")
        return Fallback(shape.task, fallback_for(shape.task, raw_text), f"parser error: {e}")


def graph_from_result(result: ParseOutcome) -> RawGraph:
    return RawGraph.from_dict(result.data)


# JSON responses

def _parse_json(raw_text: str, shape: ExpectedShape) -> ParseOutcome:
    task = shape.task
    list_fields = [k for k, kind in shape.required.items() if kind == FieldKind.LIST]
    accepts_bare_array = len(shape.required) == 1 and bool(list_fields)

    first_reason: Optional[str] = None
    bare_array: Optional[List[Any]] = None
    for payload in _decodable_spans(raw_text):
        if isinstance(payload, list):
            # a bare array only counts when no later object fits, e.g. "[1]" citations
            if accepts_bare_array and bare_array is None:
                bare_array = payload
            first_reason = first_reason or "response is a bare array"
            continue
        if not isinstance(payload, dict):
            continue
        reason = _shape_mismatch(payload, shape)
        if reason is None:
            return _accept(task, payload)
        first_reason = first_reason or reason

    if bare_array is not None:
        return _accept(task, {list_fields[0]: bare_array})
    if first_reason is None:
        _debug(f"No structured span found for {task.value}")
        return Fallback(task, fallback_for(task, raw_text), "no JSON document found in response")
    return Fallback(task, fallback_for(task, raw_text), first_reason)


def _accept(task: AnalysisTask, payload: Dict[str, Any]) -> Parsed:
    if task == AnalysisTask.KNOWLEDGE_GRAPH:
        payload = normalize_graph_payload(payload)
    return Parsed(task, payload)


def _shape_mismatch(payload: Dict[str, Any], shape: ExpectedShape) -> Optional[str]:
    for name, kind in shape.required.items():
        if name not in payload:
            return f"missing field '{name}'"
        if not _has_kind(payload[name], kind):
            return f"field '{name}' is not a {kind.value}"
    return None


def _decodable_spans(text: str) -> Iterator[Any]:
    for attempt, span in enumerate(_bracketed_spans(text)):
        if attempt >= _MAX_SPAN_ATTEMPTS:
            break
        try:
            payload = json.loads(span)
        except json.JSONDecodeError:
            try:
                payload = json.loads(_TRAILING_COMMA.sub(r"\1", span))
            except json.JSONDecodeError:
                _debug(f"Discarding undecodable span at attempt {attempt}")
                continue
        yield payload


def _bracketed_spans(text: str) -> Iterator[str]:
    """Yield balanced {...}/[...] spans, in order of their opening bracket."""
    for start, ch in enumerate(text):
        if ch not in "{[":
            continue
        span = _balanced_from(text, start)
        if span is not None:
            yield span


def _balanced_from(text: str, start: int) -> Optional[str]:
    closers = {"{": "}", "[": "]"}
    stack: List[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in closers:
            stack.append(closers[ch])
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None


def _has_kind(value: Any, kind: FieldKind) -> bool:
    if kind == FieldKind.STRING:
        return isinstance(value, str)
    if kind == FieldKind.LIST:
        return isinstance(value, list)
    if kind == FieldKind.OBJECT:
        return isinstance(value, dict)
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(value)
        return True
    except (TypeError, ValueError):
        return False


# Knowledge graph normalization

def normalize_graph_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bring a decoded graph into canonical form: unique ids, known entity types,
    scores clamped to [0, 1]. Dangling relationships are kept.
    """
    entities: List[Dict[str, Any]] = []
    entity_ids: Set[str] = set()
    label_index: Dict[str, str] = {}

    for item in payload.get("entities") or []:
        if isinstance(item, str) and item.strip():
            item = {"label": item.strip()}
        if not isinstance(item, dict):
            continue
        entity_id = _clean_id(item.get("id"))
        if not entity_id or entity_id in entity_ids:
            entity_id = _new_id("entity", entity_ids)
        entity_ids.add(entity_id)

        properties = item.get("properties")
        properties = dict(properties) if isinstance(properties, dict) else {}
        label = str(item.get("label") or item.get("name") or "Unknown").strip() or "Unknown"
        label_index.setdefault(label.lower(), entity_id)

        entity = {
            "id": entity_id,
            "label": label,
            "type": EntityType.coerce(item.get("type") or "other").value,
            "properties": properties,
            "importance": _unit_float(item.get("importance")),
        }
        description = item.get("description") or properties.get("description")
        if description is not None:
            entity["description"] = str(description)
        entities.append(entity)

    relationships: List[Dict[str, Any]] = []
    rel_ids: Set[str] = set()
    for item in payload.get("relationships") or []:
        if not isinstance(item, dict):
            continue
        rel_id = _clean_id(item.get("id"))
        if not rel_id or rel_id in rel_ids:
            rel_id = _new_id("rel", rel_ids)
        rel_ids.add(rel_id)

        properties = item.get("properties")
        properties = dict(properties) if isinstance(properties, dict) else {}
        relationship = {
            "id": rel_id,
            "source": _resolve_endpoint(item.get("source"), entity_ids, label_index),
            "target": _resolve_endpoint(item.get("target"), entity_ids, label_index),
            "type": str(item.get("type") or item.get("relationship") or "related_to"),
            "properties": properties,
            "weight": _unit_float(item.get("weight")),
        }
        description = item.get("description") or properties.get("description")
        if description is not None:
            relationship["description"] = str(description)
        relationships.append(relationship)

    themes = payload.get("themes") or []
    if isinstance(themes, str):
        themes = [themes]
    summary = payload.get("summary")

    _debug(f"Normalized graph: {len(entities)} entities, {len(relationships)} relationships")
    return {
        "entities": entities,
        "relationships": relationships,
        "summary": summary if isinstance(summary, str) else "",
        "themes": [str(t) for t in themes if t is not None] if isinstance(themes, list) else [],
    }


def _clean_id(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _new_id(prefix: str, taken: Set[str]) -> str:
    while True:
        candidate = f"{prefix}_{uuid.uuid4().hex[:10]}"
        if candidate not in taken:
            return candidate


def _resolve_endpoint(value: Any, ids: Set[str], label_index: Dict[str, str]) -> str:
    # models sometimes reference entities by label instead of id
    if isinstance(value, dict):
        value = value.get("id") or value.get("label") or value.get("name")
    endpoint = _clean_id(value)
    if endpoint in ids:
        return endpoint
    return label_index.get(endpoint.lower(), endpoint)


def _unit_float(value: Any, default: float = 0.5) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return min(1.0, max(0.0, number))


# Cypher responses

def _parse_cypher(raw_text: str, shape: ExpectedShape) -> ParseOutcome:
    cleaned = _CODE_FENCE.sub("", raw_text)
    start = _STATEMENT_START.search(cleaned)
    if start:
        cleaned = cleaned[start.start():]
    cleaned = cleaned.strip()
    if not CYPHER_KEYWORDS.search(cleaned):
        return Fallback(shape.task, fallback_for(shape.task, raw_text), "no Cypher keywords found")
    return Parsed(shape.task, {"script": cleaned})
