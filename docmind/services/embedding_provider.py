"""Embedding backends for chunk and query vectors.

Backends: openai, vertex. A backend makes one API call per embed() and is synchronous;
EmbeddingGenerator owns batching, pacing and failure policy. Queries can be embedded
differently from stored chunks (Vertex uses a separate retrieval task type for them).
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict
import logging
import os

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Dict[str, Any]], "EmbeddingProvider"]
_PROVIDERS: Dict[str, ProviderFactory] = {}


def register_provider(name: str, factory: ProviderFactory) -> None:
    key = (name or "").strip().lower()
    if not key:
        raise ValueError("Provider name must be non-empty")
    _PROVIDERS[key] = factory


def list_providers() -> list[str]:
    return sorted(_PROVIDERS)


def _dimensions(config: dict) -> int:
    return int(config.get("dimensions") or os.getenv("EMBEDDING_DIMENSIONS", "1536"))


class EmbeddingProvider(ABC):
    model: str = ""
    dimensions: int = 1536

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """One vector per chunk text, same order as *texts*."""

    def embed_query(self, text: str) -> list[float]:
        vectors = self.embed([text])
        if not vectors:
            raise RuntimeError("Embedding provider returned no vector for query")
        return vectors[0]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    def __init__(self, config: dict):
        section = config.get("openai") or {}
        self.model = config.get("model") or os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
        self.dimensions = _dimensions(config)
        self.api_key = config.get("api_key") or section.get("api_key") or os.getenv("OPENAI_API_KEY")
        self.base_url = config.get("base_url") or section.get("base_url")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise ValueError("OPENAI_API_KEY not set")
            from openai import OpenAI
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        request: dict[str, Any] = {"input": texts, "model": self.model}
        # ada-002 and older reject a dimensions override
        if self.model.startswith("text-embedding-3"):
            request["dimensions"] = self.dimensions
        resp = self.client.embeddings.create(**request)
        ordered = sorted(resp.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]


class VertexEmbeddingProvider(EmbeddingProvider):
    """Vertex AI text embeddings; credentials come from GOOGLE_APPLICATION_CREDENTIALS."""

    DOCUMENT_TASK = "RETRIEVAL_DOCUMENT"
    QUERY_TASK = "RETRIEVAL_QUERY"

    def __init__(self, config: dict):
        section = config.get("vertex") or {}
        self.model = config.get("model") or os.getenv("EMBEDDING_MODEL", "gemini-embedding-001")
        self.dimensions = _dimensions(config)
        self.project = section.get("project_id") or os.getenv("VERTEX_PROJECT_ID")
        self.location = section.get("location") or os.getenv("VERTEX_LOCATION", "us-central1")
        self._model = None

    def _text_model(self):
        if self._model is None:
            if not self.project:
                raise ValueError("VERTEX_PROJECT_ID not set")
            import vertexai
            from vertexai.language_models import TextEmbeddingModel
            vertexai.init(project=self.project, location=self.location)
            self._model = TextEmbeddingModel.from_pretrained(self.model)
        return self._model

    def _embed(self, texts: list[str], task_type: str) -> list[list[float]]:
        if not texts:
            return []
        from vertexai.language_models import TextEmbeddingInput
        model = self._text_model()
        inputs = [TextEmbeddingInput(t, task_type=task_type) for t in texts]
        # gemini-embedding-001 accepts a single input per request
        per_call = 1 if self.model == "gemini-embedding-001" else len(inputs)
        vectors: list[list[float]] = []
        for start in range(0, len(inputs), per_call):
            resp = model.get_embeddings(inputs[start : start + per_call], output_dimensionality=self.dimensions)
            vectors.extend(list(r.values) for r in resp)
        return vectors

    def embed(self, texts: list[str]) -> list[list[float]]:
        return self._embed(texts, self.DOCUMENT_TASK)

    def embed_query(self, text: str) -> list[float]:
        vectors = self._embed([text], self.QUERY_TASK)
        if not vectors:
            raise RuntimeError("Embedding provider returned no vector for query")
        return vectors[0]


register_provider("openai", OpenAIEmbeddingProvider)
register_provider("vertex", VertexEmbeddingProvider)


def get_embedding_provider(config: dict | None = None) -> EmbeddingProvider:
    """Build the configured backend. Without *config*, EMBEDDING_* settings from docmind.config apply."""
    if config is None:
        from docmind.config import EMBEDDING_DIMENSIONS, EMBEDDING_MODEL, EMBEDDING_PROVIDER
        config = {"provider": EMBEDDING_PROVIDER, "model": EMBEDDING_MODEL, "dimensions": EMBEDDING_DIMENSIONS}
    name = (config.get("provider") or "openai").strip().lower()
    factory = _PROVIDERS.get(name)
    if factory is None:
        raise ValueError(f"Unknown embedding provider: {name}. Available: {list_providers()}")
    logger.info("Embedding provider: %s (%s)", name, config.get("model") or "default model")
    return factory(config)
