from __future__ import annotations
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Chunk:
    content: str
    index: int
    estimated_tokens: int
    section: Optional[str] = None
    line_range: Optional[Tuple[int, int]] = None
    # leading sentences repeated from the previous chunk
    overlap_sentences: int = 0


class EntityType(str, Enum):
    PERSON = "person"
    ORGANIZATION = "organization"
    LOCATION = "location"
    CONCEPT = "concept"
    EVENT = "event"
    OTHER = "other"

    @classmethod
    def coerce(cls, value: Any) -> "EntityType":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class Entity:
    id: str
    label: str
    type: EntityType = EntityType.OTHER
    properties: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    importance: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "type": self.type.value,
            "properties": dict(self.properties),
            "importance": self.importance,
        }
        if self.description is not None:
            out["description"] = self.description
        return out


@dataclass(frozen=True)
class Relationship:
    id: str
    source: str      # entity id
    target: str      # entity id
    type: str = "related_to"
    properties: Dict[str, Any] = field(default_factory=dict)
    weight: float = 0.5
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "properties": dict(self.properties),
            "weight": self.weight,
        }
        if self.description is not None:
            out["description"] = self.description
        return out


@dataclass(frozen=True)
class RawGraph:
    """
    Canonical extraction artifact.
    Relationships may reference ids that are not in `entities`; renderers and
    compilers use `resolvable_relationships()` to skip those.
    """

    entities: Tuple[Entity, ...] = ()
    relationships: Tuple[Relationship, ...] = ()
    summary: Optional[str] = None
    themes: Tuple[str, ...] = ()

    def entity_ids(self) -> set:
        return {e.id for e in self.entities}

    def resolvable_relationships(self) -> List[Relationship]:
        ids = self.entity_ids()
        return [
            r for r in self.relationships if r.source in ids and r.target in ids
        ]

    def is_empty(self) -> bool:
        return not self.entities

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relationships": [r.to_dict() for r in self.relationships],
            "summary": self.summary or "",
            "themes": list(self.themes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawGraph":
        """Load an already-normalized graph (e.g. from storage)."""
        entities = tuple(
            Entity(
                id=str(e["id"]),
                label=str(e.get("label", "")),
                type=EntityType.coerce(e.get("type", "other")),
                properties=dict(e.get("properties") or {}),
                description=e.get("description"),
                importance=float(e.get("importance", 0.5)),
            )
            for e in data.get("entities", [])
        )
        relationships = tuple(
            Relationship(
                id=str(r["id"]),
                source=str(r.get("source", "")),
                target=str(r.get("target", "")),
                type=str(r.get("type") or "related_to"),
                properties=dict(r.get("properties") or {}),
                weight=float(r.get("weight", 0.5)),
                description=r.get("description"),
            )
            for r in data.get("relationships", [])
        )
        return cls(
            entities=entities,
            relationships=relationships,
            summary=data.get("summary") or None,
            themes=tuple(str(t) for t in data.get("themes") or []),
        )


@dataclass(frozen=True)
class SourceDocument:
    id: str
    title: str
    content: str
    content_type: str = "text"


@dataclass(frozen=True)
class GenerationRequest:
    instructions: str
    document_ids: Tuple[str, ...] = ()
    inline_content: Optional[str] = None
    title: Optional[str] = None


class PipelineStage(str, Enum):
    QUEUED = "queued"
    PREPARING = "preparing"
    PROMPTING = "prompting"
    GENERATING = "generating"
    PARSING = "parsing"
    VISUALIZING = "visualizing"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineStage.DONE, PipelineStage.FAILED)


@dataclass(frozen=True)
class GenerationMetadata:
    processing_time_ms: int
    approximate_tokens_used: int
    model_identifier: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processingTime": self.processing_time_ms,
            "tokensUsed": self.approximate_tokens_used,
            "model": self.model_identifier,
        }


@dataclass(frozen=True)
class GraphResult:
    graph: RawGraph
    diagram: str
    metadata: GenerationMetadata


@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    stage: PipelineStage
    percent: int
    message: str
    result: Optional[GraphResult] = None
    error: Optional[Exception] = None

    @property
    def terminal(self) -> bool:
        return self.stage.terminal


@dataclass(frozen=True)
class CompiledScript:
    script: str
    source: str  # "model" or "fallback"
    valid: bool = True
    error: Optional[str] = None


def estimate_tokens(text: str) -> int:
    # ~4 characters per token for English text
    return math.ceil(len(text or "") / 4)
