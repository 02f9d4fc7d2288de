from __future__ import annotations
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
import logging

from .analysis import AnalysisResult, DocumentAnalyzer
from .config import Settings, settings
from .cypher import compile_query_script
from .errors import EngineInitError, InvalidRequestError, ResourceNotFoundError
from .graph_store import DocumentStorage, GraphStore, StoredGraph, graph_stats
from .ingestion import document_text
from .llm import CompletionEngine, SamplingDefaults, load_engine
from .parsing import normalize_graph_payload
from .pipeline import GraphExtractionOrchestrator, PipelineRun
from .schemas import (
    CompiledScript,
    GenerationRequest,
    PipelineStage,
    RawGraph,
    SourceDocument,
)

logger = logging.getLogger(__name__)

RECENT_CONTEXT_DOCUMENTS = 5


class KnowledgeGraphService:
    """
    Process-wide facade: owns the engine and hands it to the orchestrator,
    analyzer and compiler. Transports talk to this class only.
    """

    def __init__(
        self,
        engine: CompletionEngine | None = None,
        store: DocumentStorage | None = None,
        cfg: Settings | None = None,
    ):
        self.cfg = cfg or settings
        self.engine = engine
        self.store = store if store is not None else self._load_store()
        self.orchestrator: Optional[GraphExtractionOrchestrator] = None
        self.analyzer: Optional[DocumentAnalyzer] = None
        self.runs: Dict[str, PipelineRun] = {}

    def _load_store(self) -> GraphStore:
        root = self.cfg.store_dir
        if root is None:
            return GraphStore()
        if root.exists():
            try:
                return GraphStore.load(root)
            except OSError as e:
                logger.warning(f"Failed to load existing store at {root}: {e}")
        return GraphStore(root)

    # Lifecycle

    @property
    def ready(self) -> bool:
        return self.engine is not None and self.engine.is_available()

    async def initialize(self) -> None:
        if self.engine is None:
            self.engine = await load_engine(self.cfg)
        elif not self.engine.is_available():
            await self.engine.initialize(
                self.cfg.ollama_model,
                context_size=self.cfg.context_size,
                sampling_defaults=SamplingDefaults.from_settings(self.cfg),
                acceleration=self.cfg.gpu,
            )
        self.orchestrator = GraphExtractionOrchestrator(self.engine, self.cfg)
        self.analyzer = DocumentAnalyzer(self.engine, cfg=self.cfg)
        logger.info(f"Knowledge graph service ready (model={self.engine.model_identifier})")

    async def dispose(self) -> None:
        for run in list(self.runs.values()):
            run.cancel()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Knowledge graph service disposed")

    def _require_ready(self) -> None:
        if not self.ready or self.orchestrator is None:
            raise EngineInitError("KG service not initialized. Please check model configuration.")

    def status(self) -> Dict[str, Any]:
        engine = self.engine
        return {
            "initialized": self.orchestrator is not None,
            "backend": getattr(engine, "name", None) if engine is not None else None,
            "model": engine.model_identifier if engine is not None else None,
            "available": self.ready,
            "supportsEmbeddings": bool(engine is not None and engine.supports_embeddings),
            "activeRuns": len(self.runs),
        }

    # Documents

    def resolve_documents(self, document_ids: Sequence[str]) -> List[SourceDocument]:
        documents = []
        for document_id in document_ids:
            doc = self.store.find_document_by_id(document_id)
            if doc is None:
                logger.warning(f"Document {document_id} not found; skipping")
                continue
            documents.append(doc)
        return documents

    # Knowledge graph generation

    def start_generation(self, request: GenerationRequest) -> PipelineRun:
        self._require_ready()
        documents = self.resolve_documents(request.document_ids)
        has_inline = bool(request.inline_content and request.inline_content.strip())
        if request.document_ids and not documents and not has_inline:
            raise ResourceNotFoundError("No valid documents found")
        if not documents and not has_inline:
            raise InvalidRequestError("Provide document ids or inline content")
        run = self.orchestrator.start(request, documents)
        self.runs[run.id] = run
        return run

    async def stream_generation(
        self, run: PipelineRun, request: GenerationRequest
    ) -> AsyncIterator[Dict[str, Any]]:
        """Progress messages for `run`, ending with one `result` or `error` message."""
        try:
            async for event in run.events():
                if event.stage == PipelineStage.DONE:
                    try:
                        graph_id = self._save_result(run, request)
                    except Exception as e:
                        logger.exception(f"Failed to save knowledge graph for run {run.id}")
                        yield {
                            "type": "error",
                            "runId": run.id,
                            "stage": event.stage.value,
                            "errorType": type(e).__name__,
                            "message": f"Failed to save knowledge graph: {e}",
                        }
                        continue
                    result = event.result
                    yield {
                        "type": "result",
                        "runId": run.id,
                        "kgId": graph_id,
                        "rawData": result.graph.to_dict(),
                        "mermaidCode": result.diagram,
                        "metadata": result.metadata.to_dict(),
                    }
                elif event.stage == PipelineStage.FAILED:
                    yield {
                        "type": "error",
                        "runId": run.id,
                        "stage": event.error.stage if event.error else None,
                        "errorType": type(event.error).__name__,
                        "message": event.message,
                    }
                else:
                    yield {
                        "type": "progress",
                        "runId": run.id,
                        "stage": event.stage.value,
                        "progress": event.percent,
                        "message": event.message,
                    }
        finally:
            self.runs.pop(run.id, None)

    def _save_result(self, run: PipelineRun, request: GenerationRequest) -> str:
        result = run.result
        count = len(request.document_ids) + (1 if request.inline_content else 0)
        title = request.title or f"Knowledge Graph: {count} Documents"
        return self.store.save_graph(
            result.graph,
            result.diagram,
            result.metadata,
            title=title,
            instructions=request.instructions,
            document_ids=list(request.document_ids),
        )

    async def generate(self, request: GenerationRequest) -> Dict[str, Any]:
        """Run to completion and return the final message (no progress)."""
        final: Dict[str, Any] = {}
        run = self.start_generation(request)
        async for message in self.stream_generation(run, request):
            final = message
        return final

    def cancel_run(self, run_id: str) -> bool:
        run = self.runs.get(run_id)
        if run is None:
            raise ResourceNotFoundError(f"Unknown run {run_id}")
        return run.cancel()

    # Stored graphs

    def get_graph(self, graph_id: str) -> StoredGraph:
        stored = self.store.find_graph_by_id(graph_id)
        if stored is None:
            raise ResourceNotFoundError(f"Knowledge graph {graph_id} not found")
        return stored

    def list_graphs(self, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        return [g.summary() for g in self.store.list_graphs(limit=limit, offset=offset)]

    def delete_graph(self, graph_id: str) -> None:
        if not self.store.delete_graph(graph_id):
            raise ResourceNotFoundError(f"Knowledge graph {graph_id} not found")

    def graph_details(self, graph_id: str) -> Dict[str, Any]:
        stored = self.get_graph(graph_id)
        return {**stored.to_dict(), "stats": graph_stats(stored.graph)}

    async def compile_cypher(
        self,
        graph_id: str | None = None,
        raw_graph: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        if graph_id is None and raw_graph is None:
            raise InvalidRequestError("Provide a knowledge graph id or raw graph data")
        stored = self.get_graph(graph_id) if graph_id is not None else None
        if raw_graph is not None:
            graph = RawGraph.from_dict(normalize_graph_payload(raw_graph))
        else:
            graph = stored.graph

        compiled: CompiledScript = await compile_query_script(
            graph, self.engine if self.ready else None, self.cfg.cypher_max_tokens
        )
        if stored is not None:
            self.store.update_graph(graph_id, cypher=compiled.script)
        return {
            "kgId": graph_id,
            "cypherCode": compiled.script,
            "source": compiled.source,
            "valid": compiled.valid,
            "error": compiled.error,
        }

    # Single-document analysis

    async def analyze(
        self,
        task: str,
        content: str | None = None,
        document_id: str | None = None,
        content_type: str = "text",
        instructions: str | None = None,
        max_tokens: int | None = None,
    ) -> AnalysisResult:
        self._require_ready()
        if document_id and not content:
            doc = self.store.find_document_by_id(document_id)
            if doc is None:
                raise ResourceNotFoundError("Document not found")
            content = document_text(doc)
            content_type = doc.content_type
        return await self.analyzer.analyze(
            content or "",
            task,
            content_type=content_type,
            instructions=instructions,
            max_tokens=max_tokens,
        )

    async def query(
        self,
        question: str,
        document_ids: Sequence[str] = (),
        context_limit: int = 4000,
    ) -> Dict[str, Any]:
        self._require_ready()
        if document_ids:
            documents = self.resolve_documents(document_ids)
        else:
            documents = self.store.list_documents(limit=RECENT_CONTEXT_DOCUMENTS)
        context = "\n\n---\n\n".join(document_text(d) for d in documents)[:context_limit]

        result = await self.analyzer.query(question, context)
        return {
            "response": result.outcome.data.get("answer", ""),
            "references": result.outcome.data.get("references", []),
            "fallback": result.outcome.is_fallback,
            "metadata": {
                **result.metadata.to_dict(),
                "contextLength": len(context),
                "documentsUsed": len(documents),
            },
        }
