import json

import pytest

from doc_graph.graph_store import GraphStore, from_networkx, graph_stats, to_networkx
from doc_graph.schemas import Entity, EntityType, GenerationMetadata, RawGraph, Relationship

META = GenerationMetadata(processing_time_ms=1200, approximate_tokens_used=900, model_identifier="m")


def _graph() -> RawGraph:
    return RawGraph(
        entities=(
            Entity("acme", "Acme", EntityType.ORGANIZATION, {"hq": "Berlin"}, "Robots", 0.9),
            Entity("jane", "Jane", EntityType.PERSON, importance=0.7),
            Entity("bob", "Bob", EntityType.PERSON, importance=0.2),
        ),
        relationships=(
            Relationship("r2", "jane", "acme", "founded", weight=0.9),
            Relationship("r1", "bob", "acme", "works_for", {"since": 2020}, 0.6, "engineer"),
            Relationship("r3", "acme", "ghost", "owns"),
        ),
        summary="Acme and its people.",
        themes=("robotics",),
    )


def test_networkx_round_trip_keeps_order_and_dangling_edges():
    graph = _graph()
    g = to_networkx(graph)

    assert g.number_of_edges() == 3
    assert "ghost" in g  # bare endpoint node
    assert from_networkx(g) == graph


def test_graph_stats():
    stats = graph_stats(_graph())
    assert stats["entities"] == 3
    assert stats["relationships"] == 3
    assert stats["dangling"] == 1
    assert stats["components"] == 1
    assert stats["hubs"][0] == {"id": "acme", "label": "Acme", "degree": 3}


def test_documents():
    store = GraphStore()
    doc = store.add_document("Notes", "Jane founded Acme.", "markdown")
    later = store.add_document("More", "Bob joined.")

    assert store.find_document_by_id(doc.id) == doc
    assert store.find_document_by_id("missing") is None
    assert store.list_documents(limit=1) == [later]


def test_save_update_and_list_graphs():
    store = GraphStore()
    graph_id = store.save_graph(_graph(), "flowchart TD", META, title="Acme", document_ids=["d1"])

    stored = store.find_graph_by_id(graph_id)
    assert stored.title == "Acme"
    assert stored.metadata == {"processingTime": 1200, "tokensUsed": 900, "model": "m"}
    assert stored.cypher is None

    updated = store.update_graph(graph_id, cypher="MERGE (n);")
    assert updated.cypher == "MERGE (n);"
    assert store.find_graph_by_id(graph_id).cypher == "MERGE (n);"
    assert [g.id for g in store.list_graphs()] == [graph_id]
    assert store.list_graphs()[0].summary()["hasCypher"] is True

    with pytest.raises(KeyError):
        store.update_graph("nope", cypher="x")


def test_directory_persistence(tmp_path):
    store = GraphStore(tmp_path)
    doc = store.add_document("Notes", "Jane founded Acme.", "markdown")
    graph_id = store.save_graph(_graph(), "flowchart TD\n    a", META, instructions="who")
    store.update_graph(graph_id, cypher="MERGE (n);")

    saved = json.loads((tmp_path / "graphs" / f"{graph_id}.json").read_text(encoding="utf-8"))
    assert "links" in saved["graph"]
    assert (tmp_path / "documents" / f"{doc.id}.json").exists()

    reloaded = GraphStore.load(tmp_path)
    stored = reloaded.find_graph_by_id(graph_id)
    assert stored.graph == _graph()
    assert stored.diagram == "flowchart TD\n    a"
    assert stored.instructions == "who"
    assert stored.cypher == "MERGE (n);"
    assert reloaded.find_document_by_id(doc.id) == doc


def test_unreadable_files_are_skipped(tmp_path):
    (tmp_path / "graphs").mkdir()
    (tmp_path / "graphs" / "broken.json").write_text("{not json", encoding="utf-8")
    assert GraphStore.load(tmp_path).list_graphs() == []


def test_list_graphs_pages_newest_first():
    store = GraphStore()
    ids = []
    for day in (1, 2, 3):
        graph_id = store.save_graph(_graph(), "flowchart TD", META)
        store.update_graph(graph_id, created_at=f"2024-01-0{day}T00:00:00+00:00")
        ids.append(graph_id)

    newest_first = list(reversed(ids))
    assert [g.id for g in store.list_graphs()] == newest_first
    assert [g.id for g in store.list_graphs(limit=2)] == newest_first[:2]
    assert [g.id for g in store.list_graphs(limit=2, offset=2)] == newest_first[2:]
    assert store.list_graphs(offset=5) == []


def test_delete_graph_removes_file(tmp_path):
    store = GraphStore(tmp_path)
    graph_id = store.save_graph(_graph(), "flowchart TD", META)
    path = tmp_path / "graphs" / f"{graph_id}.json"
    assert path.exists()

    assert store.delete_graph(graph_id) is True
    assert store.find_graph_by_id(graph_id) is None
    assert not path.exists()
    assert store.delete_graph(graph_id) is False
    assert GraphStore.load(tmp_path).list_graphs() == []
