import asyncio
import json

import pytest

from marmoset.agent import Agent
from marmoset.blocks import ToolProtocol
from marmoset.config import EngineSettings
from marmoset.context import Context
from marmoset.presentation import AskResponse, AskResult, Presenter
from marmoset.provider import ModelProvider
from marmoset.streaming import StreamChunk, ToolCallFragment
from marmoset.task import Task
from marmoset.tools import tool


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that streams pre-queued chunk lists. No network calls."""

    system = "mock"

    def __init__(self):
        self.responses: list[list[StreamChunk]] = []
        self.call_log: list[dict] = []

    async def stream_complete(self, model, messages, tools=None):
        self.call_log.append({"messages": messages, "tools": tools})
        for chunk in self.responses.pop(0):
            yield chunk


# ---------------------------------------------------------------------------
# Chunk builder helpers
# ---------------------------------------------------------------------------

def split_text(text: str, size: int) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


def make_text_response(content: str, size: int = 5) -> list[StreamChunk]:
    """Streamed text only (no tool calls)."""
    chunks = [StreamChunk(content_delta=piece) for piece in split_text(content, size)]
    chunks.append(StreamChunk(finish_reason="stop"))
    return chunks


def make_tool_call_response(
    name: str,
    args: dict,
    call_id: str = "call_1",
    content: str | None = None,
    size: int = 7,
) -> list[StreamChunk]:
    """A single native tool call whose arguments arrive in fragments."""
    return make_multi_tool_call_response([(name, args, call_id)], content=content, size=size)


def make_multi_tool_call_response(
    calls: list[tuple[str, dict | str, str]],
    content: str | None = None,
    size: int = 7,
) -> list[StreamChunk]:
    """Several native tool calls streamed one after another.

    Each item in *calls* is ``(name, args, call_id)``; *args* may be a
    raw string to stream malformed JSON.
    """
    chunks: list[StreamChunk] = []
    if content:
        chunks.extend(StreamChunk(content_delta=p) for p in split_text(content, size))
    for index, (name, args, call_id) in enumerate(calls):
        raw = args if isinstance(args, str) else json.dumps(args)
        chunks.append(StreamChunk(tool_call_fragments=[
            ToolCallFragment(index=index, call_id=call_id, name=name),
        ]))
        for piece in split_text(raw, size):
            chunks.append(StreamChunk(tool_call_fragments=[
                ToolCallFragment(index=index, arguments_delta=piece),
            ]))
    chunks.append(StreamChunk(finish_reason="tool_calls"))
    return chunks


def make_xml_response(text: str, size: int = 6) -> list[StreamChunk]:
    """Legacy response: tool calls written inline as XML tags."""
    return make_text_response(text, size=size)


async def feed_stream(task, chunks, stop_early=True):
    """Drive one request through *task* the way the runner reads a stream.

    Returns the collected user message content.
    """
    await task.drain()
    task.begin_request()
    for chunk in chunks:
        if chunk.content_delta:
            task.ingest_text(chunk.content_delta)
        for fragment in chunk.tool_call_fragments or ():
            task.ingest_tool_call_fragment(fragment)
        if chunk.finish_reason:
            task.ingest_finish(chunk.finish_reason)
        await asyncio.sleep(0)
        if stop_early and task.should_stop_reading:
            task.did_interrupt_stream = True
            break
    task.complete_stream()
    return await task.wait_for_user_message_content()


# ---------------------------------------------------------------------------
# Presenter double
# ---------------------------------------------------------------------------

class RecordingPresenter(Presenter):
    """Records every say/ask; answers asks from a queue (default: yes)."""

    def __init__(self, answers: list[AskResult] | None = None):
        self.answers = list(answers or [])
        self.says: list[tuple[str, str | None, bool]] = []
        self.asks: list[tuple[str, str | None, bool]] = []

    async def ask(self, kind, text=None, partial=False, progress_status=None, is_protected=False):
        self.asks.append((kind, text, partial))
        if partial or not self.answers:
            return AskResult(response=AskResponse.YES)
        return self.answers.pop(0)

    async def say(self, kind, text=None, images=None, partial=False):
        self.says.append((kind, text, partial))

    def complete_says(self, kind: str) -> list[str | None]:
        return [text for k, text, partial in self.says if k == kind and not partial]


def deny(text: str | None = None) -> AskResult:
    return AskResult(response=AskResponse.NO if text is None else AskResponse.MESSAGE, text=text)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def presenter():
    return RecordingPresenter()


@pytest.fixture
def read_file_tool():
    """Stand-in for the built-in read_file tool body."""
    calls = []

    @tool(name="read_file")
    def read_file(files: list):
        """Read files."""
        calls.append(files)
        return "\n".join(f"contents of {f['path']}" for f in files)

    read_file.calls = calls
    return read_file


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_context_tool():
    @tool
    def whoami(context: Context, query: str):
        """Tool that uses context."""
        return f"agent={context.agent.name}, query={query}"
    return whoami


@pytest.fixture
def make_task(presenter):
    """Factory fixture building a Task wired to the recording presenter."""
    def _make(tools=(), protocol=ToolProtocol.NATIVE, **settings):
        return Task(
            tools={t.name: t for t in tools},
            presenter=presenter,
            settings=EngineSettings(**settings),
            protocol=protocol,
        )
    return _make


@pytest.fixture
def make_agent(mock_provider):
    """Factory fixture to build agents with the mock provider."""
    def _make(
        name="test_agent",
        tools=None,
        system_prompt="You are helpful.",
        provider=None,
    ):
        return Agent(
            name=name,
            system_prompt=system_prompt,
            tools=tools or [],
            model="mock-model",
            provider=provider or mock_provider,
        )
    return _make
