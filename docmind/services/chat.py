"""
Retrieval-augmented chat over one document.

Per question: embed the query, rank that document's chunks by cosine similarity,
number the top hits [1]..[n] in rank order, and send the model a system prompt,
the last CHAT_HISTORY_LIMIT messages, and the numbered context. The exchange is
persisted only after the full answer has been produced.
"""
from __future__ import annotations

from typing import AsyncIterator
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docmind.config import CHAT_HISTORY_LIMIT, CHAT_TOP_K
from docmind.models import ChatSession
from docmind.services.embeddings import EmbeddingGenerator
from docmind.services.llm_provider import LLMProvider, Message, get_llm_provider
from docmind.services.vector_store import DatabaseVectorStore
from docmind.worker.db import safe_rollback, to_uuid

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are DocMind, an intelligent document assistant.
You help users understand and work with their documents by:
- Answering questions about document content
- Extracting specific information
- Summarizing key points
- Helping fill out forms
- Explaining complex terms or sections

Always provide accurate, helpful responses based on the document context provided.
When citing information, reference the specific section or page number.
If you're unsure about something, acknowledge the uncertainty rather than guessing."""

CITATION_INSTRUCTION = (
    "When you reference information from the provided context, include citation numbers "
    "like [1], [2], etc. to indicate which source you are referencing."
)

APOLOGY = "I apologize, but I encountered an error while processing your request. Please try again."


def build_context(citations: list[dict]) -> str:
    blocks = []
    for n, c in enumerate(citations, start=1):
        page = f" [Page {c['pageNumber']}]" if c.get("pageNumber") else ""
        blocks.append(f"[{n}] {c['sourceText']}{page}")
    return "\n\n".join(blocks)


def build_user_prompt(query: str, context: str) -> str:
    prefix = (
        "Here is the relevant document context. When referencing information, use citation numbers "
        f"like [1], [2], etc.:\n\n{context}\n\n"
        if context
        else ""
    )
    return (
        f"{prefix}User Question: {query}\n\n"
        "Provide a helpful answer based on the document context. "
        "Include citation numbers [1], [2], etc. when referencing specific information."
    )


def build_messages(history: list[dict], query: str, context: str, history_limit: int = CHAT_HISTORY_LIMIT) -> list[Message]:
    messages: list[Message] = [{"role": "system", "content": f"{SYSTEM_PROMPT}\n\n{CITATION_INSTRUCTION}"}]
    recent = history[-history_limit:] if history_limit > 0 else []
    for msg in recent:
        if msg.get("role") in ("user", "assistant"):
            messages.append({"role": msg["role"], "content": msg.get("content", "")})
    messages.append({"role": "user", "content": build_user_prompt(query, context)})
    return messages


class ChatService:
    def __init__(
        self,
        embeddings: EmbeddingGenerator | None = None,
        llm: LLMProvider | None = None,
        vector_store: DatabaseVectorStore | None = None,
        top_k: int = CHAT_TOP_K,
    ):
        self.embeddings = embeddings or EmbeddingGenerator()
        self._llm = llm
        self.vector_store = vector_store or DatabaseVectorStore()
        self.top_k = top_k

    @property
    def llm(self) -> LLMProvider:
        if self._llm is None:
            self._llm = get_llm_provider()
        return self._llm

    # --- sessions ---

    async def get_or_create_session(self, db: AsyncSession, document_id, user_id: str) -> ChatSession:
        doc_uuid = to_uuid(document_id)
        result = await db.execute(
            select(ChatSession).where(ChatSession.document_id == doc_uuid, ChatSession.user_id == user_id)
        )
        session = result.scalars().first()
        if session is not None:
            return session
        session = ChatSession(document_id=doc_uuid, user_id=user_id, messages=[])
        db.add(session)
        await db.commit()
        logger.info("Created chat session %s for document %s", session.id, doc_uuid)
        return session

    async def _get_session(self, db: AsyncSession, session_id) -> ChatSession:
        session = await db.get(ChatSession, to_uuid(session_id))
        if session is None:
            raise LookupError(f"Chat session not found: {session_id}")
        return session

    async def get_history(self, db: AsyncSession, session_id) -> list[dict]:
        return list((await self._get_session(db, session_id)).messages or [])

    async def clear_history(self, db: AsyncSession, session_id) -> None:
        session = await self._get_session(db, session_id)
        session.messages = []
        await db.commit()

    async def _append_exchange(self, db: AsyncSession, session: ChatSession, query: str, answer: str, citations: list[dict]) -> None:
        session.messages = [
            *(session.messages or []),
            {"role": "user", "content": query},
            {"role": "assistant", "content": answer, "citations": citations},
        ]
        await db.commit()

    # --- retrieval ---

    async def search_citations(self, db: AsyncSession, query: str, document_id, limit: int | None = None) -> list[dict]:
        vector = await self.embeddings.embed_query(query)
        hits = await self.vector_store.search(db, vector, document_id, limit or self.top_k)
        return [
            {
                "sourceText": h.text,
                "pageNumber": h.page_number,
                "relevanceScore": h.score,
                "chunkIndex": h.chunk_index,
            }
            for h in sorted(hits, key=lambda h: (-h.score, h.chunk_index))
        ]

    async def prepare(self, db: AsyncSession, session: ChatSession, query: str, document_id) -> tuple[list[dict], list[Message]]:
        citations = await self.search_citations(db, query, document_id)
        messages = build_messages(list(session.messages or []), query, build_context(citations))
        return citations, messages

    # --- answers ---

    async def stream_response(
        self,
        db: AsyncSession,
        session_id,
        query: str,
        document_id,
        citations_out: list | None = None,
    ) -> AsyncIterator[str]:
        """Yield answer tokens. On any error yield a single apology and persist nothing.

        *citations_out*, when given, is filled with the citations before the first token.
        """
        try:
            session = await self._get_session(db, session_id)
            citations, messages = await self.prepare(db, session, query, document_id)
            if citations_out is not None:
                citations_out.extend(citations)
            parts: list[str] = []
            async for token in self.llm.stream_chat(messages):
                parts.append(token)
                yield token
            await self._append_exchange(db, session, query, "".join(parts), citations)
        except Exception as e:
            logger.error("Chat stream failed for session %s: %s", session_id, e, exc_info=True)
            await safe_rollback(db)
            yield APOLOGY

    async def generate_response(self, db: AsyncSession, session_id, query: str, document_id) -> dict:
        try:
            session = await self._get_session(db, session_id)
            citations, messages = await self.prepare(db, session, query, document_id)
            answer = await self.llm.chat(messages)
            await self._append_exchange(db, session, query, answer, citations)
        except Exception as e:
            logger.error("Chat response failed for session %s: %s", session_id, e, exc_info=True)
            await safe_rollback(db)
            raise RuntimeError("Failed to generate response") from e
        return {"content": answer, "citations": citations}
