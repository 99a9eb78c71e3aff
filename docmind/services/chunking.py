"""Sentence-aware chunking for the retrieval index.

Why sentence-aware:
- Embedding quality drops when a chunk starts or ends mid-sentence.
- A small trailing overlap between neighbouring chunks keeps context that straddles
  the boundary retrievable from either side.

How we chunk:
- Sentences end at . ! or ? followed by whitespace. Titles and degrees (Dr., Ph.D., ...)
  are protected so they do not end a sentence.
- Sentences accumulate (joined by a single space) until the buffer reaches chunk_size
  characters; the buffer is emitted and its last floor(n * overlap / size) sentences seed
  the next buffer.
- The page-aware variant partitions the text by page-break offsets first, chunks each
  page independently and numbers chunks globally.
"""
from dataclasses import dataclass, field
import math
import re
from typing import Any

ABBREVIATIONS = (
    "Dr.", "Mr.", "Mrs.", "Ms.", "Prof.", "Sr.", "Jr.",
    "Ph.D.", "M.D.", "B.A.", "M.A.", "B.S.", "M.S.",
)

_DOT_PLACEHOLDER = "\x00"
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
# Longest first so "Ph.D." is protected before anything shorter can match inside it
_ABBREV_RE = re.compile(
    r"(?<![A-Za-z])(" + "|".join(re.escape(a) for a in sorted(ABBREVIATIONS, key=len, reverse=True)) + ")"
)


@dataclass
class TextChunk:
    index: int
    text: str
    page_number: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def split_sentences(text: str) -> list[str]:
    """Split text into sentences, keeping known abbreviations intact."""
    if not text or not text.strip():
        return []
    protected = _ABBREV_RE.sub(lambda m: m.group(0).replace(".", _DOT_PLACEHOLDER), text.strip())
    sentences = _SENTENCE_END.split(protected)
    return [s.replace(_DOT_PLACEHOLDER, ".") for s in sentences if s.strip()]


class Chunker:
    def __init__(self, chunk_size: int = 1500, chunk_overlap: int = 200):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def _base_metadata(self, metadata: dict | None) -> dict:
        return {**(metadata or {}), "chunk_size": self.chunk_size, "chunk_overlap": self.chunk_overlap}

    def _overlap_count(self, n_sentences: int) -> int:
        return math.floor(n_sentences * (self.chunk_overlap / self.chunk_size))

    def chunk_text(self, text: str, metadata: dict | None = None) -> list[TextChunk]:
        """Chunk one continuous text. Indices are 0-based and contiguous."""
        base = self._base_metadata(metadata)
        chunks: list[TextChunk] = []
        buffer: list[str] = []
        # True once the buffer holds a sentence that is not part of an already-emitted chunk
        has_new = False

        for sentence in split_sentences(text):
            buffer.append(sentence)
            has_new = True
            joined = " ".join(buffer)
            if len(joined) >= self.chunk_size:
                idx = len(chunks)
                chunks.append(TextChunk(index=idx, text=joined.strip(), metadata={**base, "position": idx}))
                keep = self._overlap_count(len(buffer))
                buffer = buffer[-keep:] if keep > 0 else []
                has_new = False

        if has_new:
            joined = " ".join(buffer).strip()
            if joined:
                idx = len(chunks)
                chunks.append(TextChunk(index=idx, text=joined, metadata={**base, "position": idx}))
        return chunks

    def chunk_text_with_pages(
        self,
        text: str,
        page_breaks: list[int],
        metadata: dict | None = None,
    ) -> list[TextChunk]:
        """Chunk per page. page_breaks are character offsets where pages 2..n start."""
        pages: list[tuple[int, str]] = []
        start = 0
        page_number = 1
        for offset in sorted(page_breaks or []):
            if offset <= start:
                continue
            pages.append((page_number, text[start:offset]))
            start = offset
            page_number += 1
        if start < len(text):
            pages.append((page_number, text[start:]))

        out: list[TextChunk] = []
        for page_number, page_text in pages:
            for chunk in self.chunk_text(page_text, metadata):
                chunk.metadata["position"] = chunk.index  # position within the page
                chunk.index = len(out)
                chunk.page_number = page_number
                out.append(chunk)
        return out


def estimate_chunk_size(text: str, max_tokens: int = 400) -> int:
    """Chunk size (chars) that keeps a chunk under max_tokens, assuming ~4 chars per token."""
    if len(text) / 4 <= max_tokens:
        return len(text)
    return max_tokens * 4
