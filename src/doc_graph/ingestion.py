from __future__ import annotations
from dataclasses import replace
from typing import Iterable, List
from pathlib import Path
import logging
import uuid

import pandas as pd
from bs4 import BeautifulSoup

from .chunking import ContentKind
from .schemas import SourceDocument

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv", ".tsv", ".json", ".html", ".htm", ".md", ".txt"}

_CONTENT_TYPES = {
    ".csv": "excel",
    ".tsv": "excel",
    ".json": "json",
    ".html": "webpage",
    ".htm": "webpage",
    ".md": "markdown",
    ".txt": "text",
}

_HTML_TYPES = {"webpage", "html"}


def _debug(msg: str) -> None:
    logger.debug(f"[INGEST] {msg}")


def discover_sources(paths: Iterable[Path]) -> List[Path]:
    """Expand directories and keep only files with a supported extension."""
    found: List[Path] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            candidates = sorted(p for p in path.rglob("*") if p.is_file())
        else:
            candidates = [path]
        for candidate in candidates:
            if candidate.suffix.lower() in SUPPORTED_EXTENSIONS:
                found.append(candidate)
            else:
                _debug(f"Skipping unsupported file {candidate}")
    _debug(f"Total sources discovered: {len(found)}")
    return found


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for script in soup(["script", "style"]):
        script.extract()
    lines = (line.strip() for line in soup.get_text(separator="\n").splitlines())
    return "\n".join(line for line in lines if line)


def _load_text_from_csv(path: Path) -> str:
    _debug(f"Loading CSV: {path}")
    df = pd.read_csv(path)
    return df.to_csv(index=False)


def _load_text_from_tsv(path: Path) -> str:
    _debug(f"Loading TSV: {path}")
    df = pd.read_csv(path, sep="\t")
    return df.to_csv(index=False)


def _load_text_from_html(path: Path) -> str:
    _debug(f"Loading HTML: {path}")
    return path.read_text(encoding="utf-8", errors="ignore")


def _load_plain(path: Path) -> str:
    _debug(f"Loading text: {path}")
    return path.read_text(encoding="utf-8", errors="ignore")


def load_file_to_text(path: Path) -> str:
    ext = path.suffix.lower()
    if ext == ".csv":
        return _load_text_from_csv(path)
    if ext == ".tsv":
        return _load_text_from_tsv(path)
    if ext in {".html", ".htm"}:
        return _load_text_from_html(path)
    if ext in {".md", ".txt", ".json"}:
        return _load_plain(path)
    raise ValueError(f"Unsupported extension: {ext}")


def load_source_document(path: Path) -> SourceDocument:
    path = Path(path)
    return SourceDocument(
        id=str(uuid.uuid4()),
        title=path.name,
        content=load_file_to_text(path),
        content_type=_CONTENT_TYPES.get(path.suffix.lower(), "text"),
    )


def document_text(doc: SourceDocument) -> str:
    """Plain text of a stored document; captured web pages are stripped of markup."""
    if (doc.content_type or "").lower() in _HTML_TYPES:
        return html_to_text(doc.content)
    return doc.content or ""


def as_text_document(doc: SourceDocument) -> SourceDocument:
    return replace(doc, content=document_text(doc))


def kind_for_content_type(content_type: str | None) -> ContentKind:
    value = (content_type or "").lower()
    if value == "markdown":
        return ContentKind.STRUCTURED_TEXT
    if value in ("json", "excel", "csv"):
        return ContentKind.TABULAR_DATA
    return ContentKind.PLAIN_TEXT
