# src/main_generate_graph.py

from __future__ import annotations
from pathlib import Path
import argparse
import asyncio
import json
import logging
import sys

from doc_graph.config import settings
from doc_graph.cypher import compile_query_script
from doc_graph.errors import PipelineError
from doc_graph.ingestion import discover_sources, load_source_document
from doc_graph.llm import load_engine
from doc_graph.pipeline import GraphExtractionOrchestrator
from doc_graph.schemas import GenerationRequest, ProgressEvent


def _print_progress(event: ProgressEvent) -> None:
    print(f"[{event.percent:3d}%] {event.stage.value:<11} {event.message}", flush=True)


async def run(paths: list[Path], instructions: str, out_dir: Path, title: str | None) -> int:
    sources = discover_sources(paths)
    if not sources:
        print("No supported files found", file=sys.stderr)
        return 2
    documents = [load_source_document(p) for p in sources]

    engine = await load_engine(settings)
    try:
        orchestrator = GraphExtractionOrchestrator(engine)
        result = await orchestrator.generate_graph(
            GenerationRequest(instructions=instructions, title=title),
            documents,
            on_progress=_print_progress,
        )
        compiled = await compile_query_script(result.graph, engine)
    finally:
        await engine.dispose()

    out_dir.mkdir(parents=True, exist_ok=True)
    (out_dir / "graph.json").write_text(
        json.dumps(result.graph.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
    )
    (out_dir / "graph.mmd").write_text(result.diagram, encoding="utf-8")
    (out_dir / "graph.cypher").write_text(compiled.script, encoding="utf-8")

    meta = result.metadata
    print("Knowledge graph generated")
    print(f"- Documents      : {len(documents)}")
    print(f"- Entities       : {len(result.graph.entities)}")
    print(f"- Relationships  : {len(result.graph.relationships)}")
    print(f"- Cypher source  : {compiled.source} (valid={compiled.valid})")
    print(f"- Model          : {meta.model_identifier}")
    print(f"- Time / tokens  : {meta.processing_time_ms} ms / ~{meta.approximate_tokens_used}")
    print(f"- Output         : {out_dir}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    Generate a knowledge graph from local files:
    - Load .md/.txt/.json/.csv/.tsv/.html files (directories are scanned)
    - Extract entities/relationships with the local model
    - Write graph.json, graph.mmd (Mermaid) and graph.cypher (Neo4j)
    """
    parser = argparse.ArgumentParser(description=main.__doc__.strip().splitlines()[0])
    parser.add_argument("paths", nargs="+", type=Path, help="files or directories")
    parser.add_argument("-i", "--instructions", required=True, help="what to extract")
    parser.add_argument("-o", "--out", type=Path, default=Path("kg_output"))
    parser.add_argument("-t", "--title", default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.log_level)
    try:
        return asyncio.run(run(args.paths, args.instructions, args.out, args.title))
    except PipelineError as e:
        print(f"Generation failed ({type(e).__name__}): {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
