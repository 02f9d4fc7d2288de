from __future__ import annotations
import asyncio
import json

import pytest

from doc_graph.config import Settings
from doc_graph.errors import EngineInitError


class ScriptedEngine:
    """Completion engine double: replays canned responses and records every call."""

    name = "scripted"

    def __init__(
        self,
        responses=None,
        available: bool = True,
        delay: float = 0.0,
        block: bool = False,
        error: Exception | None = None,
        init_error: Exception | None = None,
    ):
        self.responses = list(responses or [])
        self.prompts = []
        self.options = []
        self.delay = delay
        self.block = block
        self.error = error
        self.init_error = init_error
        self.disposed = False
        self._available = available

    @property
    def model_identifier(self) -> str:
        return "scripted-model"

    @property
    def supports_embeddings(self) -> bool:
        return False

    async def initialize(self, model_location, context_size=4096, sampling_defaults=None, acceleration="auto"):
        if self.init_error is not None:
            raise self.init_error
        self._available = True

    async def complete(self, prompt, options=None):
        self.prompts.append(prompt)
        self.options.append(options)
        if self.block:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if not self.responses:
            return ""
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    async def embed(self, text):
        raise NotImplementedError("scripted engine has no embeddings")

    def is_available(self) -> bool:
        return self._available

    async def dispose(self):
        self._available = False
        self.disposed = True


COMPANY_GRAPH = {
    "entities": [
        {
            "id": "acme",
            "label": "Acme Robotics",
            "type": "organization",
            "importance": 0.9,
            "description": "Industrial robotics company",
        },
        {
            "id": "jane",
            "label": "Jane Doe",
            "type": "person",
            "importance": 0.8,
            "description": "Founder and CEO",
        },
        {
            "id": "rx1",
            "label": "RX-1 Arm",
            "type": "concept",
            "importance": 0.6,
        },
    ],
    "relationships": [
        {"id": "r1", "source": "jane", "target": "acme", "type": "founded", "weight": 0.9},
        {"id": "r2", "source": "acme", "target": "rx1", "type": "produces", "weight": 0.7},
    ],
    "summary": "Jane Doe founded Acme Robotics, which builds the RX-1 arm.",
    "themes": ["robotics", "entrepreneurship"],
}


@pytest.fixture
def company_graph_json() -> str:
    return "Here is the knowledge graph:\n```json\n" + json.dumps(COMPANY_GRAPH) + "\n```"


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        store_dir=None,
        progress_heartbeat_s=0.01,
        generation_timeout_s=5.0,
    )


@pytest.fixture
def make_engine():
    def factory(*responses, **kwargs) -> ScriptedEngine:
        return ScriptedEngine(responses=list(responses), **kwargs)

    return factory


@pytest.fixture
def offline_engine() -> ScriptedEngine:
    return ScriptedEngine(available=False, init_error=EngineInitError("Ollama is not reachable"))
