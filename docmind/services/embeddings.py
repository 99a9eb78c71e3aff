"""Batched embedding generation and the per-document embedding job.

Batches run strictly one after another with a fixed pause between them so a large
document never bursts the provider's rate limit. What happens when a batch fails is
an explicit policy:

- FAIL (default): raise EmbeddingBatchError; the job fails and nothing is written.
- DEGRADE: the batch gets zero vectors and its indices are reported back so the
  caller can flag those chunks (``embedding_placeholder``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from docmind.config import (
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    EMBEDDING_BATCH_DELAY_SECONDS,
    EMBEDDING_BATCH_SIZE,
    EMBEDDING_DIMENSIONS,
    EMBEDDING_FAILURE_POLICY,
)
from docmind.services.chunking import Chunker
from docmind.services.embedding_provider import EmbeddingProvider, get_embedding_provider
from docmind.worker.db import replace_chunks, to_uuid

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    FAIL = "fail"
    DEGRADE = "degrade"

    @classmethod
    def parse(cls, value: str | None) -> "FailurePolicy":
        try:
            return cls((value or "fail").strip().lower())
        except ValueError:
            logger.warning("Unknown embedding failure policy %r, using 'fail'", value)
            return cls.FAIL


class EmbeddingBatchError(RuntimeError):
    def __init__(self, batch_start: int, batch_size: int, cause: BaseException):
        super().__init__(f"Embedding batch at {batch_start} (size {batch_size}) failed: {cause}")
        self.batch_start = batch_start
        self.batch_size = batch_size
        self.cause = cause


@dataclass
class EmbeddingBatchResult:
    vectors: list[list[float]]
    failed_indices: list[int] = field(default_factory=list)


class EmbeddingGenerator:
    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        *,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        batch_delay_seconds: float = EMBEDDING_BATCH_DELAY_SECONDS,
        dimensions: int = EMBEDDING_DIMENSIONS,
        on_batch_failure: FailurePolicy | str = EMBEDDING_FAILURE_POLICY,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._provider = provider
        self.batch_size = batch_size
        self.batch_delay_seconds = max(0.0, batch_delay_seconds)
        self.dimensions = dimensions
        self.on_batch_failure = (
            on_batch_failure if isinstance(on_batch_failure, FailurePolicy) else FailurePolicy.parse(on_batch_failure)
        )

    @property
    def provider(self) -> EmbeddingProvider:
        if self._provider is None:
            self._provider = get_embedding_provider()
        return self._provider

    async def embed_texts(self, texts: list[str]) -> EmbeddingBatchResult:
        out = EmbeddingBatchResult(vectors=[])
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size
        for b, start in enumerate(range(0, len(texts), self.batch_size)):
            batch = texts[start : start + self.batch_size]
            if b > 0 and self.batch_delay_seconds:
                await asyncio.sleep(self.batch_delay_seconds)
            try:
                vectors = await asyncio.to_thread(self.provider.embed, batch)
                if len(vectors) != len(batch):
                    raise RuntimeError(f"provider returned {len(vectors)} vectors for {len(batch)} texts")
            except Exception as e:
                if self.on_batch_failure == FailurePolicy.FAIL:
                    raise EmbeddingBatchError(start, len(batch), e) from e
                logger.warning(
                    "Embedding batch %d/%d failed, substituting zero vectors: %s",
                    b + 1, total_batches, e,
                )
                vectors = [[0.0] * self.dimensions for _ in batch]
                out.failed_indices.extend(range(start, start + len(batch)))
            out.vectors.extend(vectors)
            logger.debug("Embedded batch %d/%d (%d texts)", b + 1, total_batches, len(batch))
        return out

    async def embed_query(self, text: str) -> list[float]:
        return await asyncio.to_thread(self.provider.embed_query, text)


async def process_document_embeddings(
    db: AsyncSession,
    document_id,
    text: str,
    page_breaks: list[int] | None = None,
    metadata: dict | None = None,
    *,
    generator: EmbeddingGenerator | None = None,
    chunker: Chunker | None = None,
) -> int:
    """Chunk *text*, embed every chunk, replace the document's chunk set. Returns chunk count.

    Caller owns the transaction (rows are flushed, not committed).
    """
    doc_uuid = to_uuid(document_id)
    chunker = chunker or Chunker(CHUNK_SIZE, CHUNK_OVERLAP)
    generator = generator or EmbeddingGenerator()

    if page_breaks:
        chunks = chunker.chunk_text_with_pages(text, page_breaks, metadata)
    else:
        chunks = chunker.chunk_text(text, metadata)
    if not chunks:
        logger.info("[%s] No text to embed", doc_uuid)
        await replace_chunks(db, doc_uuid, [])
        return 0

    result = await generator.embed_texts([c.text for c in chunks])
    failed = set(result.failed_indices)
    rows = []
    for i, (chunk, vector) in enumerate(zip(chunks, result.vectors)):
        meta = dict(chunk.metadata)
        if i in failed:
            meta["embedding_placeholder"] = True
        rows.append({
            "chunk_index": chunk.index,
            "chunk_text": chunk.text,
            "embedding": vector,
            "page_number": chunk.page_number,
            "metadata": meta,
        })
    await replace_chunks(db, doc_uuid, rows)
    logger.info(
        "[%s] Stored %d chunks (%d placeholder embeddings)", doc_uuid, len(rows), len(failed),
    )
    return len(rows)
