from __future__ import annotations
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Union
import asyncio
import logging
import time
import uuid

from .config import Settings, settings
from .errors import (
    EngineInitError,
    ExtractionEmptyError,
    GenerationCancelledError,
    GenerationError,
    InvalidRequestError,
    PipelineError,
)
from .ingestion import as_text_document
from .llm import CompletionEngine, CompletionOptions
from .mermaid import MermaidConfig, render_mermaid
from .parsing import Fallback, graph_from_result, parse_response
from .prompts import AnalysisTask, build_prompt, format_documents_for_prompt
from .schemas import (
    GenerationMetadata,
    GenerationRequest,
    GraphResult,
    PipelineStage,
    ProgressEvent,
    SourceDocument,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

HEARTBEAT_STEP = 4
HEARTBEAT_CEILING = 78

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


def _debug(msg: str) -> None:
    logger.debug(f"[PIPELINE] {msg}")


class PipelineRun:
    """
    Handle on one scheduled generation run.
    Events are delivered in order through `events()`; the last one is terminal.
    """

    def __init__(self, run_id: str | None = None):
        self.id = run_id or str(uuid.uuid4())
        self.stage = PipelineStage.QUEUED
        self.percent = 0
        self.result: Optional[GraphResult] = None
        self.error: Optional[PipelineError] = None
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._generation: Optional[asyncio.Future] = None
        self._cancel_requested = False

    def _emit(
        self,
        stage: PipelineStage,
        percent: int,
        message: str,
        result: Optional[GraphResult] = None,
        error: Optional[PipelineError] = None,
    ) -> ProgressEvent:
        # progress never moves backwards
        self.percent = max(self.percent, percent)
        self.stage = stage
        event = ProgressEvent(
            run_id=self.id,
            stage=stage,
            percent=self.percent,
            message=message,
            result=result,
            error=error,
        )
        _debug(f"{self.id} {stage.value} {self.percent}% {message}")
        self._queue.put_nowait(event)
        return event

    def _finish(self, result: GraphResult) -> None:
        self.result = result
        self._emit(PipelineStage.DONE, 100, "Knowledge graph generated successfully!", result=result)

    def _fail(self, error: PipelineError) -> None:
        self.error = error
        self._emit(PipelineStage.FAILED, self.percent, error.message, error=error)

    @property
    def done(self) -> bool:
        return self.stage.terminal

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return

    def cancel(self) -> bool:
        """Cancel the pending model call. Returns False outside the generating stage."""
        if self.stage != PipelineStage.GENERATING or self._generation is None:
            return False
        if self._generation.done():
            # the response is already in; the run will finish normally
            return False
        self._cancel_requested = True
        self._generation.cancel()
        return True

    async def wait(self) -> GraphResult:
        if self._task is not None:
            await self._task
        if self.error is not None:
            raise self.error
        return self.result


class GraphExtractionOrchestrator:
    """
    Drives one document set through prepare, prompt, generate, parse and
    visualize, reporting progress at fixed checkpoints.
    """

    def __init__(
        self,
        engine: CompletionEngine,
        cfg: Settings | None = None,
        diagram_config: MermaidConfig | None = None,
    ):
        self.engine = engine
        self.cfg = cfg or settings
        self.diagram_config = diagram_config or MermaidConfig(
            max_nodes=self.cfg.diagram_max_nodes,
            max_edges=self.cfg.diagram_max_edges,
            theme=self.cfg.diagram_theme,
        )

    def start(
        self,
        request: GenerationRequest,
        documents: Sequence[SourceDocument] = (),
    ) -> PipelineRun:
        run = PipelineRun()
        run._emit(PipelineStage.QUEUED, 0, "Queued for generation")
        loop = asyncio.get_running_loop()
        run._task = loop.create_task(self._execute(run, request, list(documents)))
        return run

    async def generate_graph(
        self,
        request: GenerationRequest,
        documents: Sequence[SourceDocument] = (),
        on_progress: ProgressCallback | None = None,
    ) -> GraphResult:
        run = self.start(request, documents)
        async for event in run.events():
            if on_progress is not None:
                maybe = on_progress(event)
                if asyncio.iscoroutine(maybe):
                    await maybe
        return await run.wait()

    async def _execute(
        self,
        run: PipelineRun,
        request: GenerationRequest,
        documents: List[SourceDocument],
    ) -> None:
        started = time.perf_counter()
        try:
            result = await self._run_stages(run, request, documents, started)
        except PipelineError as e:
            if e.stage is None:
                e.stage = run.stage.value
            logger.warning(f"Run {run.id} failed during {e.stage}: {e.message}")
            run._fail(e)
        except Exception as e:
            logger.exception(f"Run {run.id} failed unexpectedly")
            run._fail(
                GenerationError(
                    f"Knowledge graph generation failed: {e}", stage=run.stage.value
                )
            )
        else:
            run._finish(result)

    async def _run_stages(
        self,
        run: PipelineRun,
        request: GenerationRequest,
        documents: List[SourceDocument],
        started: float,
    ) -> GraphResult:
        run._emit(PipelineStage.PREPARING, 10, "Preparing documents...")
        if not self.engine.is_available():
            raise EngineInitError("LLM service not available. Please check configuration.")
        if not (request.instructions or "").strip():
            raise InvalidRequestError("Instructions are required")
        texts = self._prepare_documents(request, documents)

        run._emit(PipelineStage.PROMPTING, 20, "Building knowledge graph prompt...")
        prompt_spec = build_prompt(
            AnalysisTask.KNOWLEDGE_GRAPH,
            format_documents_for_prompt(texts, excerpt_chars=self.cfg.kg_excerpt_chars),
            request.instructions,
        )

        response = await self._generate(run, prompt_spec.prompt_text)

        run._emit(PipelineStage.PARSING, 85, "Parsing knowledge graph structure...")
        outcome = parse_response(response, prompt_spec.expected_shape)
        if isinstance(outcome, Fallback):
            _debug(f"Parser fell back: {outcome.reason}")
            raise ExtractionEmptyError()
        graph = graph_from_result(outcome)
        if graph.is_empty():
            raise ExtractionEmptyError()

        run._emit(PipelineStage.VISUALIZING, 90, "Generating visualization...")
        diagram = render_mermaid(graph, self.diagram_config)

        metadata = GenerationMetadata(
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            approximate_tokens_used=estimate_tokens(prompt_spec.prompt_text + response),
            model_identifier=self.engine.model_identifier,
        )
        logger.info(
            f"Run {run.id}: {len(graph.entities)} entities, "
            f"{len(graph.relationships)} relationships in {metadata.processing_time_ms} ms"
        )
        return GraphResult(graph=graph, diagram=diagram, metadata=metadata)

    def _prepare_documents(
        self, request: GenerationRequest, documents: List[SourceDocument]
    ) -> List[SourceDocument]:
        docs = list(documents)
        if request.inline_content and request.inline_content.strip():
            docs.append(
                SourceDocument(
                    id="inline",
                    title=request.title or "Inline content",
                    content=request.inline_content,
                    content_type="text",
                )
            )
        if not docs:
            raise InvalidRequestError("No documents found")
        _debug(f"Preparing {len(docs)} documents")
        return [as_text_document(d) for d in docs]

    async def _generate(self, run: PipelineRun, prompt: str) -> str:
        run._emit(PipelineStage.GENERATING, 40, "Generating knowledge graph with AI...")
        options = CompletionOptions(
            max_tokens=self.cfg.kg_max_tokens,
            temperature=self.cfg.kg_temperature,
        )
        loop = asyncio.get_running_loop()
        generation = asyncio.ensure_future(self.engine.complete(prompt, options))
        run._generation = generation
        run._emit(PipelineStage.GENERATING, 50, "Waiting for model response...")

        deadline = loop.time() + self.cfg.generation_timeout_s
        percent = 50
        try:
            while not generation.done():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    generation.cancel()
                    await asyncio.wait({generation})
                    raise GenerationError(
                        f"Model did not respond within {self.cfg.generation_timeout_s:g} seconds"
                    )
                await asyncio.wait(
                    {generation}, timeout=min(self.cfg.progress_heartbeat_s, remaining)
                )
                if not generation.done() and percent < HEARTBEAT_CEILING:
                    percent = min(HEARTBEAT_CEILING, percent + HEARTBEAT_STEP)
                    run._emit(PipelineStage.GENERATING, percent, "Still generating...")
        finally:
            run._generation = None
            if not generation.done():
                generation.cancel()

        if generation.cancelled():
            if run._cancel_requested:
                raise GenerationCancelledError()
            raise GenerationError("Generation was interrupted")
        error = generation.exception()
        if isinstance(error, PipelineError):
            raise error
        if error is not None:
            raise GenerationError(f"LLM generation failed: {error}") from error

        response = generation.result()
        if not response or not str(response).strip():
            raise GenerationError("Empty response from model")
        run._emit(PipelineStage.GENERATING, 80, "Model response received")
        return str(response)
