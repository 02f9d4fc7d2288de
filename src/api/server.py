# src/api/server.py

from __future__ import annotations
from contextlib import asynccontextmanager
import json
import logging

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from doc_graph.config import settings
from doc_graph.errors import (
    EngineInitError,
    InvalidRequestError,
    PipelineError,
    ResourceNotFoundError,
)
from doc_graph.schemas import GenerationRequest
from doc_graph.service import KnowledgeGraphService

logger = logging.getLogger(__name__)

_STATUS_CODES = (
    (ResourceNotFoundError, 404),
    (InvalidRequestError, 400),
    (EngineInitError, 503),
)


class DocumentCreateRequest(BaseModel):
    title: str
    content: str
    content_type: str = "text"


class DocumentCreateResponse(BaseModel):
    id: str
    title: str
    content_type: str


class KGGenerateRequest(BaseModel):
    instructions: str
    document_ids: list[str] = []
    inline_content: str | None = None
    title: str | None = None


class CypherRequest(BaseModel):
    kg_id: str | None = None
    raw_data: dict | None = None


class CypherResponse(BaseModel):
    kg_id: str | None = None
    cypher_code: str
    source: str
    valid: bool
    error: str | None = None


class AnalyzeRequest(BaseModel):
    task: str
    content: str | None = None
    document_id: str | None = None
    content_type: str = "text"
    instructions: str | None = None
    max_length: int | None = None


class QueryRequest(BaseModel):
    query: str
    document_ids: list[str] = []
    context_limit: int = 4000


def create_app(service: KnowledgeGraphService | None = None) -> FastAPI:
    service = service or KnowledgeGraphService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Knowledge graph API starting up...")
        try:
            await service.initialize()
        except EngineInitError as e:
            # endpoints answer 503 until a restart with a reachable model
            logger.error(f"Failed to initialize KG services: {e.message}")
        yield
        await service.dispose()
        logger.info("Knowledge graph API shut down")

    app = FastAPI(title="Document Knowledge Graph API", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": exc.message},
        )

    @app.post("/documents", response_model=DocumentCreateResponse)
    def add_document(req: DocumentCreateRequest):
        """Register a document with the built-in store."""
        if not hasattr(service.store, "add_document"):
            raise InvalidRequestError("The configured store is read-only")
        doc = service.store.add_document(req.title, req.content, req.content_type)
        return DocumentCreateResponse(id=doc.id, title=doc.title, content_type=doc.content_type)

    @app.post("/kg/generate")
    async def generate_kg(req: KGGenerateRequest):
        """
        Generate a knowledge graph. The response is a server-sent event stream:
        progress messages, then exactly one `result` or `error` message.
        """
        gen_request = GenerationRequest(
            instructions=req.instructions,
            document_ids=tuple(req.document_ids),
            inline_content=req.inline_content,
            title=req.title,
        )
        run = service.start_generation(gen_request)

        async def event_stream():
            async for message in service.stream_generation(run, gen_request):
                yield f"data: {json.dumps(message, ensure_ascii=False)}\n\n"

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Run-Id": run.id},
        )

    @app.post("/kg/runs/{run_id}/cancel")
    def cancel_run(run_id: str):
        return {"runId": run_id, "cancelled": service.cancel_run(run_id)}

    @app.post("/kg/cypher", response_model=CypherResponse)
    async def to_cypher(req: CypherRequest):
        result = await service.compile_cypher(graph_id=req.kg_id, raw_graph=req.raw_data)
        return CypherResponse(
            kg_id=result["kgId"],
            cypher_code=result["cypherCode"],
            source=result["source"],
            valid=result["valid"],
            error=result["error"],
        )

    @app.get("/kg")
    def list_kgs(limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0)):
        return {"success": True, "knowledgeGraphs": service.list_graphs(limit=limit, offset=offset)}

    @app.get("/kg/{kg_id}")
    def get_kg(kg_id: str):
        return {"success": True, "knowledgeGraph": service.graph_details(kg_id)}

    @app.delete("/kg/{kg_id}")
    def delete_kg(kg_id: str):
        service.delete_graph(kg_id)
        return {"success": True, "message": "Knowledge graph deleted successfully"}

    @app.post("/llm/analyze")
    async def analyze(req: AnalyzeRequest):
        result = await service.analyze(
            req.task,
            content=req.content,
            document_id=req.document_id,
            content_type=req.content_type,
            instructions=req.instructions,
            max_tokens=req.max_length,
        )
        return {"success": True, **result.to_dict()}

    @app.post("/llm/query")
    async def query(req: QueryRequest):
        result = await service.query(
            req.query, document_ids=req.document_ids, context_limit=req.context_limit
        )
        return {"success": True, **result}

    @app.get("/llm/status")
    def llm_status():
        return {"success": True, "status": service.status()}

    @app.get("/health")
    def health():
        return {"status": "ok", "engineReady": service.ready}

    return app


logging.basicConfig(level=settings.log_level)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
