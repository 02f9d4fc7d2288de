import json

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from doc_graph.graph_store import GraphStore
from doc_graph.service import KnowledgeGraphService


def _events(response):
    return [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]


@pytest.fixture
def build_client(fast_settings):
    def factory(engine):
        service = KnowledgeGraphService(engine=engine, store=GraphStore(), cfg=fast_settings)
        return TestClient(create_app(service)), service

    return factory


def test_generate_stream_persists_graph(build_client, make_engine, company_graph_json):
    client, service = build_client(make_engine(company_graph_json, "no cypher keywords"))
    with client:
        doc_id = client.post(
            "/documents", json={"title": "Acme", "content": "Jane Doe founded Acme Robotics."}
        ).json()["id"]

        response = client.post(
            "/kg/generate",
            json={"instructions": "Who founded what?", "document_ids": [doc_id], "title": "Acme KG"},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = _events(response)
        assert all(e["type"] == "progress" for e in events[:-1])
        assert [e["progress"] for e in events[:-1]] == sorted(e["progress"] for e in events[:-1])
        result = events[-1]
        assert result["type"] == "result"
        assert result["mermaidCode"].startswith("flowchart TD")
        assert len(result["rawData"]["entities"]) == 3
        kg_id = result["kgId"]

        listing = client.get("/kg").json()["knowledgeGraphs"]
        assert [g["id"] for g in listing] == [kg_id]
        assert listing[0]["title"] == "Acme KG"

        detail = client.get(f"/kg/{kg_id}").json()["knowledgeGraph"]
        assert detail["documentIds"] == [doc_id]
        assert detail["stats"]["entities"] == 3

        compiled = client.post("/kg/cypher", json={"kg_id": kg_id}).json()
        assert compiled["source"] == "fallback"
        assert compiled["valid"] is True
        assert "MERGE (n:Person" in compiled["cypher_code"]
        assert service.store.find_graph_by_id(kg_id).cypher == compiled["cypher_code"]


def test_generate_failure_is_an_error_event(build_client, make_engine):
    client, service = build_client(make_engine("Just some prose, no structure."))
    with client:
        response = client.post(
            "/kg/generate", json={"instructions": "Map it", "inline_content": "Jane runs Acme."}
        )
        events = _events(response)

    assert events[-1]["type"] == "error"
    assert events[-1]["errorType"] == "ExtractionEmptyError"
    assert sum(1 for e in events if e["type"] in ("result", "error")) == 1
    assert service.store.list_graphs() == []


def test_cypher_from_raw_graph(build_client, make_engine):
    client, _ = build_client(make_engine('MERGE (n:Person {id: "p1"});'))
    raw = {"entities": [{"id": "p1", "label": "Ada", "type": "person"}], "relationships": []}
    with client:
        body = client.post("/kg/cypher", json={"raw_data": raw}).json()
    assert body["source"] == "model"
    assert body["kg_id"] is None


def test_request_errors(build_client, make_engine):
    client, _ = build_client(make_engine("{}"))
    with client:
        assert client.post("/kg/generate", json={"instructions": "x"}).status_code == 400
        missing = client.post("/kg/generate", json={"instructions": "x", "document_ids": ["nope"]})
        assert missing.status_code == 404
        assert missing.json() == {"success": False, "error": "No valid documents found"}
        assert client.get("/kg/unknown").status_code == 404
        assert client.post("/kg/cypher", json={}).status_code == 400
        assert client.post("/kg/cypher", json={"kg_id": "unknown"}).status_code == 404
        assert client.post("/llm/analyze", json={"task": "dance", "content": "x"}).status_code == 400
        assert client.post("/kg/runs/unknown/cancel").status_code == 404


def test_uninitialized_engine_returns_503(build_client, offline_engine):
    client, _ = build_client(offline_engine)
    with client:
        assert client.get("/health").json() == {"status": "ok", "engineReady": False}
        response = client.post("/kg/generate", json={"instructions": "x", "inline_content": "y"})
        assert response.status_code == 503
        assert client.post("/llm/query", json={"query": "hi"}).status_code == 503
        status = client.get("/llm/status").json()["status"]
        assert status["available"] is False
        assert status["initialized"] is False


def test_analyze_and_query(build_client, make_engine):
    engine = make_engine(
        '{"summary": "Short.", "keyPoints": [], "wordCount": 1}',
        '{"answer": "Jane", "references": []}',
    )
    client, _ = build_client(engine)
    with client:
        doc_id = client.post(
            "/documents", json={"title": "Bio", "content": "# Jane\nJane founded Acme.", "content_type": "markdown"}
        ).json()["id"]

        analysis = client.post("/llm/analyze", json={"task": "summarize", "document_id": doc_id}).json()
        assert analysis["success"] is True
        assert analysis["result"]["summary"] == "Short."

        answer = client.post("/llm/query", json={"query": "Who founded Acme?"}).json()
        assert answer["response"] == "Jane"
        assert answer["metadata"]["documentsUsed"] == 1
        assert "Jane founded Acme." in engine.prompts[1]

        status = client.get("/llm/status").json()["status"]
        assert status == {
            "initialized": True,
            "backend": "scripted",
            "model": "scripted-model",
            "available": True,
            "supportsEmbeddings": False,
            "activeRuns": 0,
        }
    assert engine.disposed


def test_list_pagination_and_delete(build_client, make_engine, company_graph_json):
    client, service = build_client(make_engine(company_graph_json))
    with client:
        kg_ids = []
        for n in range(3):
            events = _events(
                client.post(
                    "/kg/generate",
                    json={"instructions": "Map it", "inline_content": "Jane founded Acme.", "title": f"KG {n}"},
                )
            )
            kg_ids.append(events[-1]["kgId"])
        for day, kg_id in enumerate(kg_ids, start=1):
            service.store.update_graph(kg_id, created_at=f"2024-01-0{day}T00:00:00+00:00")

        page = client.get("/kg", params={"limit": 2}).json()["knowledgeGraphs"]
        assert [g["title"] for g in page] == ["KG 2", "KG 1"]
        rest = client.get("/kg", params={"limit": 2, "offset": 2}).json()["knowledgeGraphs"]
        assert [g["title"] for g in rest] == ["KG 0"]
        assert client.get("/kg", params={"limit": 0}).status_code == 422

        deleted = client.delete(f"/kg/{kg_ids[0]}")
        assert deleted.json() == {"success": True, "message": "Knowledge graph deleted successfully"}
        assert client.get(f"/kg/{kg_ids[0]}").status_code == 404
        assert client.delete(f"/kg/{kg_ids[0]}").status_code == 404
        assert len(client.get("/kg").json()["knowledgeGraphs"]) == 2
