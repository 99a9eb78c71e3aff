"""OpenAI chat completions backend."""
from typing import AsyncIterator
import logging

from openai import AsyncOpenAI

from docmind.services.llm_provider import LLMProvider, Message

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    def _params(self, **kwargs) -> dict:
        return {
            "model": self.model,
            "temperature": kwargs.get("temperature", self.temperature),
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
        }

    async def stream_chat(self, messages: list[Message], **kwargs) -> AsyncIterator[str]:
        stream = await self._client.chat.completions.create(messages=messages, stream=True, **self._params(**kwargs))
        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    async def chat(self, messages: list[Message], **kwargs) -> str:
        resp = await self._client.chat.completions.create(messages=messages, stream=False, **self._params(**kwargs))
        if resp.choices and resp.choices[0].message.content:
            return resp.choices[0].message.content
        return ""
