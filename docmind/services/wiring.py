"""Process-wide service graph shared by the API and the queue worker.

Everything stateful (pool, single-flight guard, retry counters) must exist once per
process, so both entry points build it through build_services() exactly once.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any
import logging

from docmind.config import GCS_BUCKET
from docmind.services.batch import BatchProcessor
from docmind.services.chat import ChatService
from docmind.services.connection_pool import ConnectionPool, load_pool_config
from docmind.services.detection import build_default_chain
from docmind.services.document_ai import DocumentAIService, make_documentai_client
from docmind.services.embeddings import EmbeddingGenerator
from docmind.services.error_recovery import ErrorRecoveryService
from docmind.services.pipeline import ProcessingPipeline
from docmind.services.processing_queue import ProcessingQueue, pipeline_processor
from docmind.services.storage import ObjectStore
from docmind.services.webhooks import publish

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_factory: Any
    pool: ConnectionPool
    recovery: ErrorRecoveryService
    pipeline: ProcessingPipeline
    queue: ProcessingQueue
    storage: ObjectStore
    chat: ChatService
    document_ai: DocumentAIService
    batch: BatchProcessor

    async def shutdown(self) -> None:
        await self.pool.shutdown()


def build_services(session_factory, *, max_concurrent: int = 10) -> Services:
    pool = ConnectionPool(make_documentai_client, load_pool_config())
    document_ai = DocumentAIService(pool)
    storage = ObjectStore(GCS_BUCKET)
    embeddings = EmbeddingGenerator()
    recovery = ErrorRecoveryService(session_factory=session_factory)
    pipeline = ProcessingPipeline(
        session_factory,
        storage,
        build_default_chain(document_ai),
        recovery,
        document_ai=document_ai,
        embeddings=embeddings,
        publisher=publish,
    )
    queue = ProcessingQueue(
        session_factory,
        pipeline_processor(pipeline),
        recovery=recovery,
        max_concurrent=max_concurrent,
    )
    # queue_for_later decisions land back in the queue
    recovery.requeue = queue.requeue_for_retry
    chat = ChatService(embeddings=embeddings)
    batch = BatchProcessor(session_factory, pipeline, queue, publisher=publish)
    logger.info(
        "Services ready (document_ai: %s)",
        ", ".join(t for t in document_ai.processors if document_ai.is_configured(t)) or "not configured",
    )
    return Services(session_factory, pool, recovery, pipeline, queue, storage, chat, document_ai, batch)
