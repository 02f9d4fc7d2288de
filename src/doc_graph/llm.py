from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Protocol, Union, runtime_checkable
import asyncio
import logging

import httpx
from langchain_core.prompts import ChatPromptTemplate
from langchain_ollama import ChatOllama, OllamaEmbeddings

from .config import Settings, settings
from .errors import EngineInitError, GenerationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a document analysis expert. Your job is to carefully read and analyze "
    "documents, then provide specific, relevant analysis based on the user's "
    "instructions. Always focus on the actual content of the document provided and "
    "give concrete, detailed responses about that specific document. Never provide "
    "generic instructions or documentation about analysis tools."
)

Acceleration = Union[bool, str]


@dataclass
class CompletionOptions:
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repeat_penalty: Optional[float] = None
    stop_sequences: Optional[List[str]] = None


@dataclass
class SamplingDefaults:
    max_tokens: int = 2048
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 40
    repeat_penalty: float = 1.1

    @classmethod
    def from_settings(cls, cfg: Settings) -> "SamplingDefaults":
        return cls(
            max_tokens=cfg.default_max_tokens,
            temperature=cfg.default_temperature,
            top_p=cfg.default_top_p,
            top_k=cfg.default_top_k,
            repeat_penalty=cfg.default_repeat_penalty,
        )


@runtime_checkable
class CompletionEngine(Protocol):
    """Capability set the pipeline needs from a model runtime."""

    @property
    def model_identifier(self) -> str: ...

    @property
    def supports_embeddings(self) -> bool: ...

    async def initialize(
        self,
        model_location: str,
        context_size: int = 4096,
        sampling_defaults: Optional[SamplingDefaults] = None,
        acceleration: Acceleration = "auto",
    ) -> None: ...

    async def complete(self, prompt: str, options: Optional[CompletionOptions] = None) -> str: ...

    async def embed(self, text: str) -> List[float]: ...

    def is_available(self) -> bool: ...

    async def dispose(self) -> None: ...


def gpu_layers_for(preference: Acceleration, forced_layers: int) -> Optional[int]:
    """Map an acceleration preference onto Ollama's num_gpu (None lets Ollama decide)."""
    if isinstance(preference, str):
        value = preference.strip().lower()
        if value in ("auto", ""):
            return None
        preference = value in ("true", "gpu", "1", "yes")
    return forced_layers if preference else 0


def _pick(value, default):
    return default if value is None else value


class OllamaEngine:
    """
    Completion engine backed by a local Ollama runtime.
    Calls are serialized: one generation at a time per instance.
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str | None = None,
        embedding_model: str | None = None,
        keep_alive: str | None = None,
        request_timeout: float | None = None,
        gpu_layers: int | None = None,
        system_prompt: str = SYSTEM_PROMPT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.ollama_base_url
        self.embedding_model = (
            settings.ollama_embedding_model if embedding_model is None else embedding_model
        )
        self.keep_alive = keep_alive or settings.ollama_keep_alive
        self.request_timeout = request_timeout or settings.ollama_request_timeout_s
        self.forced_gpu_layers = gpu_layers or settings.gpu_layers
        self.transport = transport

        self.prompt = ChatPromptTemplate.from_messages(
            [
                ("system", system_prompt),
                ("user", "{input}"),
            ]
        )
        self._model: Optional[str] = None
        self._context_size = 4096
        self._num_gpu: Optional[int] = None
        self._defaults = SamplingDefaults()
        self._embeddings: Optional[OllamaEmbeddings] = None
        self._ready = False
        self._lock = asyncio.Lock()

    @property
    def model_identifier(self) -> str:
        return self._model or "unknown"

    @property
    def supports_embeddings(self) -> bool:
        return self._embeddings is not None

    async def initialize(
        self,
        model_location: str,
        context_size: int = 4096,
        sampling_defaults: Optional[SamplingDefaults] = None,
        acceleration: Acceleration = "auto",
    ) -> None:
        logger.info(f"Loading model {model_location} from {self.base_url}")
        try:
            async with self._client() as client:
                resp = await client.get("/api/tags")
                resp.raise_for_status()
                tags = resp.json()
                if not isinstance(tags, dict):
                    raise EngineInitError(f"Unexpected /api/tags reply from {self.base_url}")
                pulled = {m.get("name") for m in tags.get("models") or [] if isinstance(m, dict)}
                if model_location not in pulled and f"{model_location}:latest" not in pulled:
                    raise EngineInitError(
                        f"Model '{model_location}' is not available in Ollama "
                        f"(run `ollama pull {model_location}`)"
                    )
                # An empty prompt only loads the model into memory.
                load = await client.post(
                    "/api/generate",
                    json={
                        "model": model_location,
                        "prompt": "",
                        "keep_alive": self.keep_alive,
                    },
                    timeout=None,
                )
                load.raise_for_status()
        except (httpx.HTTPError, ValueError) as e:
            raise EngineInitError(
                f"Ollama initialization failed at {self.base_url}: {e}"
            ) from e

        self._model = model_location
        self._context_size = context_size
        self._num_gpu = gpu_layers_for(acceleration, self.forced_gpu_layers)
        self._defaults = sampling_defaults or SamplingDefaults()
        if self.embedding_model:
            self._embeddings = OllamaEmbeddings(
                model=self.embedding_model,
                base_url=self.base_url,
            )
        self._ready = True
        logger.info(f"Ollama engine ready (model={model_location}, num_ctx={context_size})")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.request_timeout, transport=self.transport
        )

    def _chat_model(self, options: CompletionOptions) -> ChatOllama:
        d = self._defaults
        return ChatOllama(
            model=self._model,
            base_url=self.base_url,
            num_ctx=self._context_size,
            num_gpu=self._num_gpu,
            num_predict=_pick(options.max_tokens, d.max_tokens),
            temperature=_pick(options.temperature, d.temperature),
            top_p=_pick(options.top_p, d.top_p),
            top_k=_pick(options.top_k, d.top_k),
            repeat_penalty=_pick(options.repeat_penalty, d.repeat_penalty),
            stop=options.stop_sequences or None,
            keep_alive=self.keep_alive,
        )

    async def complete(self, prompt: str, options: Optional[CompletionOptions] = None) -> str:
        if not self.is_available():
            raise EngineInitError("Ollama engine not initialized")
        chain = self.prompt | self._chat_model(options or CompletionOptions())
        async with self._lock:
            try:
                resp = await chain.ainvoke({"input": prompt})
            except Exception as e:
                logger.error(f"Ollama completion error: {e}")
                raise GenerationError(f"Completion failed: {e}") from e
        return resp.content

    async def embed(self, text: str) -> List[float]:
        if not self.is_available():
            raise EngineInitError("Ollama engine not initialized")
        if self._embeddings is None:
            raise NotImplementedError("No embedding model configured for this engine")
        async with self._lock:
            try:
                return await self._embeddings.aembed_query(text)
            except Exception as e:
                logger.error(f"Ollama embedding error: {e}")
                raise GenerationError(f"Embedding failed: {e}") from e

    def is_available(self) -> bool:
        return self._ready and self._model is not None

    async def dispose(self) -> None:
        if not self._ready:
            return
        model = self._model
        self._ready = False
        self._embeddings = None
        try:
            async with self._client() as client:
                resp = await client.post(
                    "/api/generate", json={"model": model, "keep_alive": 0}
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to unload {model} from Ollama: {e}")
        logger.info("Ollama engine disposed")


async def load_engine(cfg: Settings | None = None) -> OllamaEngine:
    """Create and initialize the process-wide engine from settings."""
    cfg = cfg or settings
    engine = OllamaEngine(
        base_url=cfg.ollama_base_url,
        embedding_model=cfg.ollama_embedding_model,
        keep_alive=cfg.ollama_keep_alive,
        request_timeout=cfg.ollama_request_timeout_s,
        gpu_layers=cfg.gpu_layers,
    )
    await engine.initialize(
        cfg.ollama_model,
        context_size=cfg.context_size,
        sampling_defaults=SamplingDefaults.from_settings(cfg),
        acceleration=cfg.gpu,
    )
    return engine
