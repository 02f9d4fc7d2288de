from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple
import io
import json
import logging
import math
import re

import pandas as pd

from .schemas import Chunk, estimate_tokens
from .config import settings

logger = logging.getLogger(__name__)

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_FENCE = ("```", "~~~")


def _debug(msg: str) -> None:
    logger.debug(f"[CHUNKER] {msg}")


class ContentKind(str, Enum):
    STRUCTURED_TEXT = "structured-text"
    TABULAR_DATA = "tabular-data"
    PLAIN_TEXT = "plain-text"


@dataclass
class _Section:
    title: str
    content: str
    start_line: int
    end_line: int


def split_into_sentences(text: str) -> List[str]:
    """Split on whitespace that follows terminal punctuation; punctuation is kept."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text or "") if s.strip()]


class Chunker:
    """
    Splits long content into bounded, ordered chunks.

    Sizes are expressed in estimated tokens (~4 chars/token). Overlap is
    carried as whole sentences: every 100 overlap tokens buys one sentence
    from the tail of the previous chunk.
    """

    def __init__(
        self,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
    ):
        self.chunk_size = max(1, chunk_size or settings.chunk_size_tokens)
        overlap = settings.chunk_overlap_tokens if chunk_overlap is None else chunk_overlap
        self.overlap_sentences = max(0, overlap // 100)

    def chunk(self, content: str, kind: ContentKind = ContentKind.PLAIN_TEXT) -> List[Chunk]:
        if not content or not content.strip():
            return []
        if kind == ContentKind.STRUCTURED_TEXT:
            try:
                return self._chunk_structured(content)
            except Exception as e:
                logger.warning(f"Structured chunking failed, using plain text: {e}")
        elif kind == ContentKind.TABULAR_DATA:
            try:
                flattened = _tabular_to_text(content)
                if flattened:
                    return self._chunk_plain(flattened, label="data")
            except Exception as e:
                logger.warning(f"Tabular chunking failed, using plain text: {e}")
        return self._chunk_plain(content, label="text")

    # Structured (markdown) text

    def _chunk_structured(self, content: str) -> List[Chunk]:
        chunks: List[Chunk] = []
        for section in _split_at_headings(content):
            text = section.content.strip()
            line_range = (section.start_line, section.end_line)
            if estimate_tokens(text) <= self.chunk_size:
                chunks.append(
                    Chunk(
                        content=text,
                        index=len(chunks),
                        estimated_tokens=estimate_tokens(text),
                        section=section.title,
                        line_range=line_range,
                    )
                )
                continue
            parts = self._pack(self._segments(text))
            for part_no, (part, overlap) in enumerate(parts, start=1):
                chunks.append(
                    Chunk(
                        content=part,
                        index=len(chunks),
                        estimated_tokens=estimate_tokens(part),
                        section=f"{section.title} (part {part_no})",
                        line_range=line_range,
                        overlap_sentences=overlap,
                    )
                )
        _debug(f"Structured content split into {len(chunks)} chunks")
        return chunks

    # Plain text

    def _chunk_plain(self, content: str, label: str) -> List[Chunk]:
        chunks = [
            Chunk(
                content=part,
                index=i,
                estimated_tokens=estimate_tokens(part),
                section=f"{label}-chunk-{i + 1}",
                overlap_sentences=overlap,
            )
            for i, (part, overlap) in enumerate(self._pack(self._segments(content)))
        ]
        _debug(f"Plain content split into {len(chunks)} chunks")
        return chunks

    def _segments(self, text: str) -> List[str]:
        """Sentences, with any sentence larger than the budget cut down by lines, then words."""
        out: List[str] = []
        for sentence in split_into_sentences(text):
            if estimate_tokens(sentence) <= self.chunk_size:
                out.append(sentence)
                continue
            for line in (ln.strip() for ln in sentence.splitlines()):
                if not line:
                    continue
                if estimate_tokens(line) <= self.chunk_size:
                    out.append(line)
                else:
                    out.extend(_wrap_words(line, self.chunk_size * 4))
        return out

    def _pack(self, sentences: List[str]) -> List[Tuple[str, int]]:
        """Greedy packing. Returns (chunk text, number of carried-over sentences)."""
        packed: List[Tuple[str, int]] = []
        current: List[str] = []
        overlap = 0
        for sentence in sentences:
            candidate = current + [sentence]
            if current and estimate_tokens(" ".join(candidate)) > self.chunk_size:
                packed.append((" ".join(current), overlap))
                carry = current[-self.overlap_sentences:] if self.overlap_sentences else []
                # never let the carried context push a fresh chunk over budget
                while carry and estimate_tokens(" ".join(carry + [sentence])) > self.chunk_size:
                    carry = carry[1:]
                current = carry + [sentence]
                overlap = len(carry)
            else:
                current = candidate
        if current:
            packed.append((" ".join(current), overlap))
        return packed


def _split_at_headings(content: str) -> List[_Section]:
    lines = content.split("\n")
    sections: List[_Section] = []
    title = "Introduction"
    buffer: List[str] = []
    start = 0
    in_fence = False

    for i, line in enumerate(lines):
        if line.lstrip().startswith(_FENCE):
            in_fence = not in_fence
        match = None if in_fence else _HEADING.match(line)
        if match:
            if "\n".join(buffer).strip():
                sections.append(_Section(title, "\n".join(buffer), start, i - 1))
            title = match.group(2)
            buffer = [line]
            start = i
        else:
            buffer.append(line)

    if "\n".join(buffer).strip():
        sections.append(_Section(title, "\n".join(buffer), start, len(lines) - 1))
    return sections


def _wrap_words(text: str, max_chars: int) -> List[str]:
    pieces: List[str] = []
    current = ""
    for word in text.split():
        if current and len(current) + 1 + len(word) > max_chars:
            pieces.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        pieces.append(current)
    return pieces


# Tabular / keyed data

def _tabular_to_text(content: str) -> str:
    """Flatten JSON or delimited text into dotted-path sentences."""
    stripped = content.strip()
    if stripped[:1] in ("{", "["):
        data = json.loads(stripped)
        if isinstance(data, list) and not all(isinstance(row, dict) for row in data):
            data = {"items": data}
        if not isinstance(data, (dict, list)):
            raise ValueError("JSON document is a scalar")
        frame = pd.json_normalize(data, sep=".")
        keyed_rows = isinstance(data, list)
    else:
        frame = pd.read_csv(io.StringIO(stripped), sep=None, engine="python")
        if frame.shape[1] < 2:
            raise ValueError("content does not look like delimited data")
        keyed_rows = True

    descriptions: List[str] = []
    for row_no, row in enumerate(frame.to_dict(orient="records")):
        for column, value in row.items():
            if _is_missing(value):
                continue
            path = f"{row_no}.{column}" if keyed_rows else str(column)
            descriptions.append(_describe(path, value))
    _debug(f"Flattened tabular content into {len(descriptions)} statements")
    return " ".join(descriptions)


def _is_missing(value: Any) -> bool:
    if isinstance(value, (list, dict)):
        return False
    if value is None:
        return True
    return isinstance(value, float) and math.isnan(value)


def _describe(path: str, value: Any) -> str:
    if isinstance(value, list):
        preview = ", ".join(str(v) for v in value[:3])
        more = "..." if len(value) > 3 else ""
        return f"The {path} contains {len(value)} items: {preview}{more}."
    return f"The {path} is set to {json.dumps(value, ensure_ascii=False, default=str)}."


def chunk_text(
    content: str,
    kind: ContentKind = ContentKind.PLAIN_TEXT,
    chunk_size: Optional[int] = None,
    chunk_overlap: Optional[int] = None,
) -> List[Chunk]:
    return Chunker(chunk_size, chunk_overlap).chunk(content, kind)
