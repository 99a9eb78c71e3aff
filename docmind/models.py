from sqlalchemy import Boolean, Column, String, DateTime, Integer, Text, ForeignKey, Float, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
# NOTE: Embeddings are stored as JSONB arrays; cosine similarity is computed in the service layer.
from datetime import datetime
import uuid
from docmind.database import Base


class Document(Base):
    __tablename__ = "documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=True, index=True)
    filename = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)  # object-store path (GCS)
    mime_type = Column(String(100), default="application/pdf", nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, failed, cancelled
    processing_attempts = Column(Integer, default=0, nullable=False)
    processing_error = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes; keep the column name, rename the attribute
    doc_metadata = Column("metadata", JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class DetectedField(Base):
    """Form field found in a document by one of the detection strategies. Replaced wholesale per run."""
    __tablename__ = "document_form_fields"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    field_name = Column(String(255), nullable=False)
    field_label = Column(String(500), nullable=True)
    field_type = Column(String(20), default="text", nullable=False)  # see services.field_types.FieldType
    field_value = Column(Text, nullable=True)
    confidence = Column(Float, default=0.0, nullable=False)  # 0.0-1.0
    coordinates = Column(JSONB, nullable=True)  # {page, x, y, width, height} as page-relative percentages
    page_number = Column(Integer, default=1, nullable=False)
    source_strategy = Column(String(50), nullable=True)  # document_ai, native_form_fields, text_pattern, synthetic
    field_metadata = Column("metadata", JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DocumentExtraction(Base):
    """Text/table/entity extraction output of the OCR stage. One row per document."""
    __tablename__ = "document_extractions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True)
    full_text = Column(Text, nullable=True)
    page_breaks = Column(JSONB, nullable=True)  # list[int] character offsets where pages 2..n start
    tables = Column(JSONB, nullable=True)
    entities = Column(JSONB, nullable=True)
    page_count = Column(Integer, default=0, nullable=False)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DocumentChunk(Base):
    """Embedded text chunk for retrieval. The whole set for a document is replaced on reprocessing."""
    __tablename__ = "document_chunks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)  # 0-based, contiguous per document
    chunk_text = Column(Text, nullable=False)
    embedding = Column(JSONB, nullable=False)  # list[float] length=EMBEDDING_DIMENSIONS
    page_number = Column(Integer, nullable=True)
    chunk_metadata = Column("metadata", JSONB, nullable=True)  # chunk_size, chunk_overlap, position, embedding_placeholder
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class QueueItem(Base):
    """Persisted processing work item. attempts <= max_attempts; 'failed' is terminal (dead-letter)."""
    __tablename__ = "processing_queue"
    __table_args__ = (
        Index("ix_processing_queue_ready", "status", "priority", "scheduled_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    priority = Column(Integer, default=5, nullable=False)  # higher = sooner
    status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, failed
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    scheduled_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    processor_types = Column(JSONB, nullable=True)  # e.g. ["ocr", "formParser"]
    options = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ChatSession(Base):
    """One conversation per (document_id, user_id). messages is an ordered list of ChatMessage dicts."""
    __tablename__ = "chat_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=False)
    messages = Column(JSONB, default=list, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ErrorLog(Base):
    """Audit row for every error handled by the recovery service."""
    __tablename__ = "error_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), nullable=True, index=True)  # no FK: errors may outlive documents
    user_id = Column(String(255), nullable=True)
    operation = Column(String(100), nullable=False)
    stage = Column(String(50), nullable=True)
    error_type = Column(String(30), nullable=False)  # network, auth, storage, processing, validation, quota_exceeded, unknown
    error_message = Column(Text, nullable=False)
    recovery_strategy = Column(String(30), nullable=False)
    recovery_success = Column(Boolean, default=False, nullable=False)
    context = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# --------------------------------------------------------------------------------------
# Webhook outbox
# --------------------------------------------------------------------------------------


class WebhookEndpoint(Base):
    __tablename__ = "webhook_endpoints"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=True)
    url = Column(String(1000), nullable=False)
    events = Column(JSONB, nullable=False)  # list of event types this endpoint receives
    secret = Column(String(255), nullable=True)  # HMAC-SHA256 key; unsigned when empty
    headers = Column(JSONB, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    backoff_multiplier = Column(Float, default=2.0, nullable=False)
    initial_delay_ms = Column(Integer, default=1000, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class WebhookEvent(Base):
    """Outbox row: written by publishers, delivered by the worker's drain loop."""
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSONB, nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, delivering, delivered, failed
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)  # claim time while delivering, then completion time


class WebhookDelivery(Base):
    """One row per HTTP delivery attempt."""
    __tablename__ = "webhook_deliveries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(UUID(as_uuid=True), ForeignKey("webhook_events.id", ondelete="CASCADE"), nullable=False)
    endpoint_id = Column(UUID(as_uuid=True), ForeignKey("webhook_endpoints.id", ondelete="CASCADE"), nullable=False)
    attempt = Column(Integer, nullable=False)
    status_code = Column(Integer, nullable=True)
    success = Column(Boolean, default=False, nullable=False)
    response_body = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
