from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging
import time

from .chunking import Chunker
from .config import Settings, settings
from .errors import EngineInitError, InvalidRequestError
from .ingestion import kind_for_content_type
from .llm import CompletionEngine, CompletionOptions
from .parsing import ParseOutcome, parse_response
from .prompts import AnalysisTask, build_prompt
from .schemas import GenerationMetadata, estimate_tokens

logger = logging.getLogger(__name__)

DOCUMENT_TASKS = (
    AnalysisTask.SUMMARIZE,
    AnalysisTask.EXTRACT_ENTITIES,
    AnalysisTask.ANALYZE_SENTIMENT,
    AnalysisTask.GENERATE_KEYWORDS,
    AnalysisTask.EXTRACT_RELATIONSHIPS,
)


def _debug(msg: str) -> None:
    logger.debug(f"[ANALYZER] {msg}")


@dataclass(frozen=True)
class AnalysisResult:
    outcome: ParseOutcome
    metadata: GenerationMetadata
    chunks_total: int = 1
    chunks_analyzed: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.outcome.task.value,
            "result": self.outcome.data,
            "fallback": self.outcome.is_fallback,
            "metadata": {
                **self.metadata.to_dict(),
                "chunksTotal": self.chunks_total,
                "chunksAnalyzed": self.chunks_analyzed,
            },
        }


class DocumentAnalyzer:
    """Single-document analysis tasks and free-form questions over supplied context."""

    def __init__(
        self,
        engine: CompletionEngine,
        chunker: Chunker | None = None,
        cfg: Settings | None = None,
    ):
        self.engine = engine
        self.cfg = cfg or settings
        self.chunker = chunker or Chunker(
            chunk_size=self.cfg.chunk_size_tokens,
            chunk_overlap=self.cfg.chunk_overlap_tokens,
        )

    def _require_engine(self) -> None:
        if not self.engine.is_available():
            raise EngineInitError("LLM service not initialized. Please check model configuration.")

    async def analyze(
        self,
        content: str,
        task: AnalysisTask | str,
        content_type: str = "text",
        instructions: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> AnalysisResult:
        try:
            task = AnalysisTask(task)
        except ValueError:
            raise InvalidRequestError(f"Unsupported analysis task: {task}") from None
        if task not in DOCUMENT_TASKS:
            raise InvalidRequestError(f"Unsupported analysis task: {task.value}")
        if not content or not content.strip():
            raise InvalidRequestError("No content provided")
        self._require_engine()

        started = time.perf_counter()
        chunks = self.chunker.chunk(content, kind_for_content_type(content_type))
        selected = chunks[: self.cfg.analysis_max_chunks]
        if len(chunks) > 1:
            # large documents: only the leading chunks are analyzed
            to_analyze = "\n\n".join(c.content for c in selected)
        else:
            to_analyze = content
        _debug(f"{task.value}: {len(chunks)} chunks, analyzing {len(selected)}")

        prompt_spec = build_prompt(task, to_analyze, instructions)
        response = await self.engine.complete(
            prompt_spec.prompt_text,
            CompletionOptions(
                max_tokens=max_tokens or self.cfg.analysis_max_tokens,
                temperature=0.1,
            ),
        )
        outcome = parse_response(response, prompt_spec.expected_shape)
        if outcome.is_fallback:
            logger.warning(f"Falling back for {task.value}: {outcome.reason}")

        return AnalysisResult(
            outcome=outcome,
            metadata=self._metadata(started, prompt_spec.prompt_text, response),
            chunks_total=max(1, len(chunks)),
            chunks_analyzed=max(1, len(selected)),
        )

    async def query(self, question: str, context: str) -> AnalysisResult:
        if not question or not question.strip():
            raise InvalidRequestError("A question is required")
        self._require_engine()

        started = time.perf_counter()
        prompt_spec = build_prompt(AnalysisTask.FREE_QUERY, context or "", question)
        response = await self.engine.complete(
            prompt_spec.prompt_text,
            CompletionOptions(max_tokens=self.cfg.query_max_tokens, temperature=0.3),
        )
        outcome = parse_response(response, prompt_spec.expected_shape)
        return AnalysisResult(
            outcome=outcome,
            metadata=self._metadata(started, prompt_spec.prompt_text, response),
        )

    def _metadata(self, started: float, prompt: str, response: str) -> GenerationMetadata:
        return GenerationMetadata(
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            approximate_tokens_used=estimate_tokens(prompt + (response or "")),
            model_identifier=self.engine.model_identifier,
        )
