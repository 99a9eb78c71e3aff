"""Vector search over a document's stored chunks.

Embeddings live on DocumentChunk rows (JSONB), so search loads the document's chunk set
and ranks it in-process by cosine similarity. Results are ordered by similarity desc,
ties broken by chunk_index asc. Chunks flagged ``embedding_placeholder`` (zero vectors
from a degraded embedding run) are never returned.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
import logging
import math

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docmind.models import DocumentChunk
from docmind.worker.db import to_uuid

logger = logging.getLogger(__name__)


@dataclass
class ScoredChunk:
    chunk_id: str
    chunk_index: int
    text: str
    page_number: int | None
    score: float


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity; 0.0 for empty, zero-norm or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def rank_chunks(query: list[float], chunks: Iterable[DocumentChunk], limit: int = 5) -> list[ScoredChunk]:
    scored = []
    for c in chunks:
        if (c.chunk_metadata or {}).get("embedding_placeholder"):
            continue
        scored.append(ScoredChunk(
            chunk_id=str(c.id),
            chunk_index=c.chunk_index,
            text=c.chunk_text,
            page_number=c.page_number,
            score=cosine_similarity(query, c.embedding or []),
        ))
    scored.sort(key=lambda s: (-s.score, s.chunk_index))
    return scored[: max(0, limit)]


class DatabaseVectorStore:
    """Cosine search over DocumentChunk.embedding for one document."""

    async def search(
        self,
        db: AsyncSession,
        embedding: list[float],
        document_id,
        limit: int = 5,
    ) -> list[ScoredChunk]:
        doc_uuid = to_uuid(document_id)
        result = await db.execute(
            select(DocumentChunk)
            .where(DocumentChunk.document_id == doc_uuid)
            .order_by(DocumentChunk.chunk_index)
        )
        chunks = result.scalars().all()
        ranked = rank_chunks(embedding, chunks, limit)
        logger.debug("[%s] Vector search: %d chunks scanned, %d returned", doc_uuid, len(chunks), len(ranked))
        return ranked
