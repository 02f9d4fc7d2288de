from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
import json
import logging
import uuid
from pathlib import Path

import networkx as nx
from networkx.readwrite import json_graph

from .schemas import (
    Entity,
    EntityType,
    GenerationMetadata,
    RawGraph,
    Relationship,
    SourceDocument,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StoredGraph:
    id: str
    graph: RawGraph
    diagram: str
    metadata: Dict[str, Any]
    title: str = "Knowledge Graph"
    instructions: str = ""
    document_ids: List[str] = field(default_factory=list)
    cypher: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "instructions": self.instructions,
            "documentIds": list(self.document_ids),
            "graph": self.graph.to_dict(),
            "mermaid": self.diagram,
            "cypher": self.cypher,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "entities": len(self.graph.entities),
            "relationships": len(self.graph.relationships),
            "hasCypher": bool(self.cypher),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class DocumentStorage(Protocol):
    """What the service needs from a persistence backend."""

    def find_document_by_id(self, document_id: str) -> Optional[SourceDocument]: ...

    def list_documents(self, limit: int | None = None) -> List[SourceDocument]: ...

    def save_graph(
        self,
        graph: RawGraph,
        diagram: str,
        metadata: GenerationMetadata,
        **fields: Any,
    ) -> str: ...

    def update_graph(self, graph_id: str, **fields: Any) -> StoredGraph: ...

    def find_graph_by_id(self, graph_id: str) -> Optional[StoredGraph]: ...

    def list_graphs(self, limit: int | None = None, offset: int = 0) -> List[StoredGraph]: ...

    def delete_graph(self, graph_id: str) -> bool: ...


# networkx conversion

def to_networkx(graph: RawGraph) -> nx.MultiDiGraph:
    """
    Directed multigraph view of a RawGraph.
    Nodes: entity id with attributes
    Edges: relationship id as key + type/weight/properties
    Dangling endpoints appear as bare nodes without the `entity` flag.
    """
    g = nx.MultiDiGraph(summary=graph.summary or "", themes=list(graph.themes))
    for entity in graph.entities:
        g.add_node(
            entity.id,
            entity=True,
            label=entity.label,
            type=entity.type.value,
            properties=dict(entity.properties),
            description=entity.description,
            importance=entity.importance,
        )
    for order, rel in enumerate(graph.relationships):
        g.add_edge(
            rel.source,
            rel.target,
            key=rel.id,
            type=rel.type,
            properties=dict(rel.properties),
            weight=rel.weight,
            description=rel.description,
            order=order,
        )
    return g


def from_networkx(g: nx.MultiDiGraph) -> RawGraph:
    entities = [
        Entity(
            id=str(node_id),
            label=data.get("label", ""),
            type=EntityType.coerce(data.get("type", "other")),
            properties=data.get("properties", {}),
            description=data.get("description"),
            importance=float(data.get("importance", 0.5)),
        )
        for node_id, data in g.nodes(data=True)
        if data.get("entity")
    ]
    edges = sorted(g.edges(keys=True, data=True), key=lambda e: e[3].get("order", 0))
    relationships = [
        Relationship(
            id=str(k),
            source=str(u),
            target=str(v),
            type=data.get("type") or "related_to",
            properties=data.get("properties", {}),
            weight=float(data.get("weight", 0.5)),
            description=data.get("description"),
        )
        for u, v, k, data in edges
    ]
    return RawGraph(
        entities=tuple(entities),
        relationships=tuple(relationships),
        summary=g.graph.get("summary") or None,
        themes=tuple(g.graph.get("themes", [])),
    )


def graph_stats(graph: RawGraph, top_n: int = 5) -> Dict[str, Any]:
    """Size, density and the best-connected entities of a graph."""
    g = to_networkx(graph)
    entity_nodes = [n for n, d in g.nodes(data=True) if d.get("entity")]
    top = sorted(entity_nodes, key=lambda n: g.degree(n), reverse=True)[:top_n]
    return {
        "entities": len(entity_nodes),
        "relationships": g.number_of_edges(),
        "dangling": len(graph.relationships) - len(graph.resolvable_relationships()),
        "components": (
            nx.number_weakly_connected_components(g.subgraph(entity_nodes))
            if entity_nodes
            else 0
        ),
        "density": nx.density(g) if g.number_of_nodes() > 1 else 0.0,
        "hubs": [{"id": n, "label": g.nodes[n]["label"], "degree": g.degree(n)} for n in top],
    }


class GraphStore:
    """
    In-process document and graph storage.
    With a root directory, every write is mirrored to
    `<root>/documents/<id>.json` and `<root>/graphs/<id>.json`.
    """

    def __init__(self, root: Path | None = None):
        self.root = Path(root) if root is not None else None
        self.documents: Dict[str, SourceDocument] = {}
        self.graphs: Dict[str, StoredGraph] = {}

    # Persistence

    @classmethod
    def load(cls, root: Path) -> "GraphStore":
        inst = cls(root)
        root = Path(root)
        for path in sorted((root / "documents").glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                doc = SourceDocument(
                    id=data["id"],
                    title=data.get("title", ""),
                    content=data.get("content", ""),
                    content_type=data.get("contentType", "text"),
                )
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable document {path}: {e}")
                continue
            inst.documents[doc.id] = doc
        for path in sorted((root / "graphs").glob("*.json")):
            try:
                stored = _stored_graph_from_json(
                    json.loads(path.read_text(encoding="utf-8"))
                )
            except (OSError, ValueError, KeyError, nx.NetworkXError) as e:
                logger.warning(f"Skipping unreadable graph {path}: {e}")
                continue
            inst.graphs[stored.id] = stored
        logger.info(
            f"Loaded {len(inst.documents)} documents and {len(inst.graphs)} graphs from {root}"
        )
        return inst

    def _write(self, kind: str, item_id: str, payload: Dict[str, Any]) -> None:
        if self.root is None:
            return
        path = self.root / kind / f"{item_id}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )

    # Documents

    def add_document(
        self,
        title: str,
        content: str,
        content_type: str = "text",
        document_id: str | None = None,
    ) -> SourceDocument:
        doc = SourceDocument(
            id=document_id or str(uuid.uuid4()),
            title=title,
            content=content,
            content_type=content_type,
        )
        self.documents[doc.id] = doc
        self._write(
            "documents",
            doc.id,
            {
                "id": doc.id,
                "title": doc.title,
                "content": doc.content,
                "contentType": doc.content_type,
            },
        )
        return doc

    def find_document_by_id(self, document_id: str) -> Optional[SourceDocument]:
        return self.documents.get(document_id)

    def list_documents(self, limit: int | None = None) -> List[SourceDocument]:
        """Most recently added first."""
        docs = list(reversed(list(self.documents.values())))
        return docs if limit is None else docs[:limit]

    # Graphs

    def save_graph(
        self,
        graph: RawGraph,
        diagram: str,
        metadata: GenerationMetadata,
        **fields: Any,
    ) -> str:
        stored = StoredGraph(
            id=str(uuid.uuid4()),
            graph=graph,
            diagram=diagram,
            metadata=metadata.to_dict(),
            **fields,
        )
        self.graphs[stored.id] = stored
        self._write("graphs", stored.id, _stored_graph_to_json(stored))
        logger.info(f"Saved knowledge graph {stored.id} ({len(graph.entities)} entities)")
        return stored.id

    def update_graph(self, graph_id: str, **fields: Any) -> StoredGraph:
        stored = self.graphs.get(graph_id)
        if stored is None:
            raise KeyError(graph_id)
        stored = replace(stored, updated_at=_now(), **fields)
        self.graphs[graph_id] = stored
        self._write("graphs", graph_id, _stored_graph_to_json(stored))
        return stored

    def find_graph_by_id(self, graph_id: str) -> Optional[StoredGraph]:
        return self.graphs.get(graph_id)

    def list_graphs(self, limit: int | None = None, offset: int = 0) -> List[StoredGraph]:
        """Newest first."""
        graphs = sorted(self.graphs.values(), key=lambda g: g.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return graphs[offset:end]

    def delete_graph(self, graph_id: str) -> bool:
        if self.graphs.pop(graph_id, None) is None:
            return False
        if self.root is not None:
            (self.root / "graphs" / f"{graph_id}.json").unlink(missing_ok=True)
        logger.info(f"Deleted knowledge graph {graph_id}")
        return True


def _stored_graph_to_json(stored: StoredGraph) -> Dict[str, Any]:
    return {
        "id": stored.id,
        "title": stored.title,
        "instructions": stored.instructions,
        "documentIds": list(stored.document_ids),
        "graph": json_graph.node_link_data(to_networkx(stored.graph), edges="links"),
        "mermaid": stored.diagram,
        "cypher": stored.cypher,
        "metadata": stored.metadata,
        "createdAt": stored.created_at,
        "updatedAt": stored.updated_at,
    }


def _stored_graph_from_json(data: Dict[str, Any]) -> StoredGraph:
    g = json_graph.node_link_graph(
        data["graph"], multigraph=True, directed=True, edges="links"
    )
    return StoredGraph(
        id=data["id"],
        graph=from_networkx(g),
        diagram=data.get("mermaid", ""),
        metadata=data.get("metadata", {}),
        title=data.get("title", "Knowledge Graph"),
        instructions=data.get("instructions", ""),
        document_ids=list(data.get("documentIds", [])),
        cypher=data.get("cypher"),
        created_at=data.get("createdAt", _now()),
        updated_at=data.get("updatedAt", _now()),
    )
