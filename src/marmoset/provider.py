import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from openai import AsyncOpenAI

from marmoset.streaming import StreamChunk, ToolCallFragment

logger = logging.getLogger(__name__)


class ModelProvider(ABC):
    """Streams chat completions as :class:`StreamChunk` objects."""

    system: str = "openai"

    @abstractmethod
    def stream_complete(
        self,
        model: str,
        messages: list[dict],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        ...


def _to_stream_chunk(chunk) -> StreamChunk | None:
    if not chunk.choices:
        return None
    choice = chunk.choices[0]
    delta = choice.delta
    fragments = None
    if delta is not None and delta.tool_calls:
        fragments = [
            ToolCallFragment(
                index=tc.index,
                call_id=tc.id,
                name=tc.function.name if tc.function else None,
                arguments_delta=tc.function.arguments if tc.function else None,
            )
            for tc in delta.tool_calls
        ]
    return StreamChunk(
        content_delta=delta.content if delta is not None else None,
        tool_call_fragments=fragments,
        finish_reason=choice.finish_reason,
    )


class OpenAIProvider(ModelProvider):

    def __init__(self, api_key: str | None = None, base_url: str | None = None, timeout: float = 600.0):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=5,
            timeout=timeout,
        )

    async def stream_complete(self, model, messages, tools=None):
        kwargs = {}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        stream = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            stream=True,
            **kwargs,
        )
        async for chunk in stream:
            converted = _to_stream_chunk(chunk)
            if converted is not None:
                yield converted


class OpenRouter(OpenAIProvider):
    system = "openrouter"

    def __init__(self, api_key: str | None = None):
        super().__init__(
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
            base_url="https://openrouter.ai/api/v1",
            timeout=180.0,
        )


class VLLMProvider(OpenAIProvider):
    system = "vllm"

    def __init__(self, url: str, port: int):
        self.base_url = f"http://{url}:{port}/v1"
        super().__init__(api_key="DUMMY", base_url=self.base_url)
