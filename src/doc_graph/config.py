from __future__ import annotations
from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    # Ollama runtime
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1:8b"
    ollama_embedding_model: str = "nomic-embed-text"
    ollama_keep_alive: str = "30m"
    ollama_request_timeout_s: float = 30.0

    # Engine defaults (used when a call does not override them)
    context_size: int = 8192
    gpu: str = "auto"  # auto | true | false
    gpu_layers: int = 32
    default_temperature: float = 0.7
    default_max_tokens: int = 2048
    default_top_p: float = 0.95
    default_top_k: int = 40
    default_repeat_penalty: float = 1.1

    # Chunking (tokens are estimated at ~4 chars each)
    chunk_size_tokens: int = 3000
    chunk_overlap_tokens: int = 200

    # Graph extraction pipeline
    kg_excerpt_chars: int = 3000
    kg_max_tokens: int = 8192
    kg_temperature: float = 0.1
    generation_timeout_s: float = 300.0
    progress_heartbeat_s: float = 5.0

    # Diagram
    diagram_max_nodes: int = 50
    diagram_max_edges: int = 100
    diagram_theme: str = "default"

    # Cypher compilation
    cypher_max_tokens: int = 4096

    # Document analysis
    analysis_max_chunks: int = 3
    analysis_max_tokens: int = 2048
    query_max_tokens: int = 1024

    # Storage
    store_dir: Path | None = Path("kg_store")

    # HTTP API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    log_level: str = "INFO"

    class Config:
        env_file = ".env"


settings = Settings()
