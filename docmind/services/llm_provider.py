"""Chat LLM provider abstraction.

Providers take an OpenAI-style message list ([{"role": "system"|"user"|"assistant", "content": str}])
and either stream tokens or return the full reply.

Built-ins: openai (llm_provider_openai), ollama (/api/chat over urllib), vertex (Gemini).
To add one, subclass LLMProvider and call register_provider("name", factory).
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, Any
import asyncio
import json
import logging
import queue
import threading
import urllib.error
import urllib.request

logger = logging.getLogger(__name__)

Message = Dict[str, str]

# Registry: provider name -> factory(config: dict) -> LLMProvider
_PROVIDER_REGISTRY: Dict[str, Callable[[Dict[str, Any]], "LLMProvider"]] = {}


def register_provider(name: str, factory: Callable[[Dict[str, Any]], "LLMProvider"]) -> None:
    """Register an LLM provider. factory(config_dict) must return an LLMProvider instance."""
    name = (name or "").lower().strip()
    if not name:
        raise ValueError("Provider name must be non-empty")
    _PROVIDER_REGISTRY[name] = factory


def list_providers() -> list[str]:
    return sorted(_PROVIDER_REGISTRY.keys())


class LLMProvider(ABC):
    @abstractmethod
    async def stream_chat(self, messages: list[Message], **kwargs) -> AsyncIterator[str]:
        """Stream reply tokens."""
        pass

    @abstractmethod
    async def chat(self, messages: list[Message], **kwargs) -> str:
        """Complete reply (non-streaming)."""
        pass


async def _drain_thread(target: Callable[..., None], *args) -> AsyncIterator[str]:
    """Run a blocking producer in a daemon thread and yield what it puts on the queue.

    Producer contract: put str chunks, then None when done, or ("error", msg) on failure.
    """
    loop = asyncio.get_running_loop()
    q: queue.Queue = queue.Queue()
    threading.Thread(target=target, args=(*args, q), daemon=True).start()
    while True:
        item = await loop.run_in_executor(None, q.get)
        if item is None:
            break
        if isinstance(item, tuple) and item[0] == "error":
            raise RuntimeError(item[1])
        yield item


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------

def _ollama_http_error(e: urllib.error.HTTPError) -> str:
    try:
        body = e.read().decode("utf-8")
    except OSError:
        body = ""
    return f"Ollama API error: {e.code} - {body}"


def _ollama_chat_request(base_url: str, payload: dict) -> urllib.request.Request:
    return urllib.request.Request(
        f"{base_url.rstrip('/')}/api/chat",
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )


def _ollama_stream_producer(base_url: str, model: str, messages: list[Message], opts: dict, out: queue.Queue) -> None:
    req = _ollama_chat_request(base_url, {"model": model, "messages": messages, "stream": True, "options": opts})
    try:
        with urllib.request.urlopen(req, timeout=300) as resp:
            for line in resp:
                line = line.decode("utf-8").strip()
                if not line:
                    continue
                try:
                    d = json.loads(line)
                except json.JSONDecodeError:
                    continue
                content = (d.get("message") or {}).get("content")
                if content:
                    out.put(content)
                if d.get("done", False):
                    break
        out.put(None)
    except urllib.error.HTTPError as e:
        out.put(("error", _ollama_http_error(e)))
    except Exception as e:
        out.put(("error", str(e)))


def _ollama_chat_sync(base_url: str, model: str, messages: list[Message], opts: dict) -> str:
    req = _ollama_chat_request(base_url, {"model": model, "messages": messages, "stream": False, "options": opts})
    try:
        with urllib.request.urlopen(req, timeout=300) as resp:
            d = json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        raise RuntimeError(_ollama_http_error(e)) from e
    return (d.get("message") or {}).get("content", "")


class OllamaProvider(LLMProvider):
    """Local development backend. Uses urllib (no aiohttp)."""

    def __init__(self, base_url: str = "http://localhost:11434", model: str = "llama3.1:8b", num_predict: int = 2000, temperature: float = 0.7):
        self.base_url = base_url
        self.model = model
        self.num_predict = num_predict
        self.temperature = temperature

    def _options(self, **kwargs) -> dict:
        return {"num_predict": self.num_predict, "temperature": kwargs.get("temperature", self.temperature)}

    async def stream_chat(self, messages: list[Message], **kwargs) -> AsyncIterator[str]:
        async for token in _drain_thread(_ollama_stream_producer, self.base_url, self.model, messages, self._options(**kwargs)):
            yield token

    async def chat(self, messages: list[Message], **kwargs) -> str:
        return await asyncio.to_thread(_ollama_chat_sync, self.base_url, self.model, messages, self._options(**kwargs))


# ---------------------------------------------------------------------------
# Vertex AI (Gemini)
# ---------------------------------------------------------------------------

def _vertex_model_and_contents(model_name: str, messages: list[Message]):
    """Gemini takes the system prompt separately and calls the assistant role 'model'."""
    from vertexai.generative_models import Content, GenerativeModel, Part

    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    contents = [
        Content(role="model" if m["role"] == "assistant" else "user", parts=[Part.from_text(m["content"])])
        for m in messages
        if m["role"] != "system"
    ]
    model = GenerativeModel(model_name, system_instruction=system or None)
    return model, contents


def _vertex_stream_producer(model_name: str, messages: list[Message], gen_config: dict, out: queue.Queue) -> None:
    try:
        model, contents = _vertex_model_and_contents(model_name, messages)
        for chunk in model.generate_content(contents, generation_config=gen_config, stream=True):
            if chunk.text:
                out.put(chunk.text)
        out.put(None)
    except Exception as e:
        out.put(("error", str(e)))


def _vertex_chat_sync(model_name: str, messages: list[Message], gen_config: dict) -> str:
    model, contents = _vertex_model_and_contents(model_name, messages)
    response = model.generate_content(contents, generation_config=gen_config)
    return response.text or ""


class VertexAIProvider(LLMProvider):
    """Vertex AI (Gemini). Sync SDK calls run off the event loop."""

    def __init__(self, project_id: str, location: str = "us-central1", model: str = "gemini-1.5-pro", temperature: float = 0.7, max_tokens: int = 2000):
        import vertexai
        vertexai.init(project=project_id, location=location)
        self.model_name = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _generation_config(self, **kwargs) -> dict:
        return {
            "temperature": kwargs.get("temperature", self.temperature),
            "max_output_tokens": kwargs.get("max_tokens", self.max_tokens),
        }

    async def stream_chat(self, messages: list[Message], **kwargs) -> AsyncIterator[str]:
        async for token in _drain_thread(_vertex_stream_producer, self.model_name, messages, self._generation_config(**kwargs)):
            yield token

    async def chat(self, messages: list[Message], **kwargs) -> str:
        return await asyncio.to_thread(_vertex_chat_sync, self.model_name, messages, self._generation_config(**kwargs))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _ollama_factory(config: Dict[str, Any]) -> LLMProvider:
    from docmind.config import OLLAMA_BASE_URL, OLLAMA_MODEL, OLLAMA_NUM_PREDICT
    ollama = config.get("ollama") or {}
    return OllamaProvider(
        base_url=ollama.get("base_url") or OLLAMA_BASE_URL,
        model=config.get("model") or OLLAMA_MODEL,
        num_predict=int(config.get("max_tokens") or OLLAMA_NUM_PREDICT),
        temperature=float(config.get("temperature", 0.7)),
    )


def _vertex_factory(config: Dict[str, Any]) -> LLMProvider:
    from docmind.config import VERTEX_PROJECT_ID, VERTEX_LOCATION, VERTEX_MODEL
    vertex = config.get("vertex") or {}
    project_id = vertex.get("project_id") or VERTEX_PROJECT_ID
    if not project_id:
        raise ValueError("Vertex AI requires project_id (vertex.project_id or VERTEX_PROJECT_ID)")
    return VertexAIProvider(
        project_id=project_id,
        location=vertex.get("location") or VERTEX_LOCATION,
        model=config.get("model") or VERTEX_MODEL,
        temperature=float(config.get("temperature", 0.7)),
        max_tokens=int(config.get("max_tokens") or 2000),
    )


def _openai_factory(config: Dict[str, Any]) -> LLMProvider:
    import os
    from docmind.services.llm_provider_openai import OpenAIProvider
    openai_config = config.get("openai") or {}
    api_key = openai_config.get("api_key") or os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ValueError("OpenAI requires api_key (openai.api_key or OPENAI_API_KEY)")
    return OpenAIProvider(
        api_key=api_key,
        model=config.get("model") or "gpt-4o-mini",
        base_url=openai_config.get("base_url"),
        temperature=float(config.get("temperature", 0.7)),
        max_tokens=int(config.get("max_tokens") or 2000),
    )


register_provider("openai", _openai_factory)
register_provider("ollama", _ollama_factory)
register_provider("vertex", _vertex_factory)


def get_llm_provider(config: Dict[str, Any] | None = None) -> LLMProvider:
    """Provider from *config*, or from docmind.config env settings when omitted."""
    if config is None:
        from docmind.config import LLM_PROVIDER, LLM_MODEL, LLM_TEMPERATURE, LLM_MAX_TOKENS, OLLAMA_MODEL, VERTEX_MODEL
        name = (LLM_PROVIDER or "").lower()
        model = {"ollama": OLLAMA_MODEL, "vertex": VERTEX_MODEL}.get(name, LLM_MODEL)
        config = {"provider": name, "model": model, "temperature": LLM_TEMPERATURE, "max_tokens": LLM_MAX_TOKENS}
    provider_name = (config.get("provider") or "").lower().strip()
    factory = _PROVIDER_REGISTRY.get(provider_name)
    if factory:
        return factory(config)
    raise ValueError(f"Unknown LLM provider: {provider_name}. Registered: {list_providers()}")
