"""Dispatcher behaviour driven through Task ingestion, no provider involved."""

import asyncio
import json
import logging
from collections import Counter

import pytest

from marmoset.blocks import ToolProtocol
from marmoset.browser import ChatRecord
from marmoset.dispatcher import clean_text_block
from marmoset.errors import TaskAbortedError
from marmoset.message import ImageContent, TextContent, ToolResultContent
from marmoset.presentation import AskResponse, AskResult
from marmoset.responses import EMPTY_RESULT
from marmoset.streaming import ToolCallFragment
from marmoset.tools import BaseTool, ToolOutput, tool
from tests.conftest import (
    deny,
    feed_stream,
    make_multi_tool_call_response,
    make_tool_call_response,
    make_xml_response,
)

A_PY = {"files": [{"path": "a.py"}]}
B_PY = {"files": [{"path": "b.py"}]}


def tool_results(content):
    return [c for c in content if isinstance(c, ToolResultContent)]


# ---------------------------------------------------------------------------
# Tool doubles
# ---------------------------------------------------------------------------


class DoublePushTool(BaseTool):
    name = "double_push"

    async def execute(self, args, task, callbacks):
        callbacks.push_tool_result("first")
        callbacks.push_tool_result("second")


class SilentTool(BaseTool):
    name = "silent"

    async def execute(self, args, task, callbacks):
        return None


class ExplodingTool(BaseTool):
    name = "explode"

    async def execute(self, args, task, callbacks):
        raise RuntimeError("boom")


class AbortingTool(BaseTool):
    name = "abort_me"

    async def execute(self, args, task, callbacks):
        task.abort_task()
        await task.say("text", "still here")


@pytest.fixture
def screenshot_tool():
    @tool(requires_approval=False)
    def screenshot(url: str):
        """Capture a page."""
        return ToolOutput(text="captured", images=["data:image/png;base64,AAAA"])
    return screenshot


# ---------------------------------------------------------------------------
# Text cleanup
# ---------------------------------------------------------------------------


class TestCleanTextBlock:
    def test_thinking_tags_removed(self):
        assert clean_text_block("<thinking>\nplan\n</thinking>\nDone") == "plan\nDone"

    def test_half_streamed_tag_removed(self):
        assert clean_text_block("Reading now <read_fi") == "Reading now"
        assert clean_text_block("Reading now </") == "Reading now"

    def test_complete_markup_kept(self):
        assert clean_text_block("Use <b>bold</b>") == "Use <b>bold</b>"


# ---------------------------------------------------------------------------
# Basic flows
# ---------------------------------------------------------------------------


class TestBasicDispatch:
    @pytest.mark.asyncio
    async def test_native_call_gets_one_result(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool])
        content = await feed_stream(task, make_tool_call_response("read_file", A_PY))

        assert content == [ToolResultContent(tool_use_id="call_1", content="contents of a.py")]
        assert read_file_tool.calls == [[{"path": "a.py"}]]
        assert task.tool_usage["read_file"].attempts == 1
        assert task.user_message_content_ready

    @pytest.mark.asyncio
    async def test_partial_calls_stream_previews(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool])
        await feed_stream(task, make_tool_call_response("read_file", A_PY, size=3))

        partial_asks = [a for a in presenter.asks if a[2]]
        final_asks = [a for a in presenter.asks if not a[2]]
        assert partial_asks
        assert len(final_asks) == 1

    @pytest.mark.asyncio
    async def test_legacy_call_gets_text_result(self, make_task, presenter, sample_tool):
        task = make_task(tools=[sample_tool], protocol=ToolProtocol.XML)
        text = "Hello there.\n<greet>\n<name>Ada</name>\n</greet>"
        content = await feed_stream(task, make_xml_response(text))

        assert content == [
            TextContent(text="[greet] Result:"),
            TextContent(text="Hello Ada"),
        ]
        assert presenter.complete_says("text") == ["Hello there."]

    @pytest.mark.asyncio
    async def test_text_after_used_tool_suppressed(self, make_task, presenter, sample_tool):
        task = make_task(tools=[sample_tool], protocol=ToolProtocol.XML)
        task.begin_request()
        task.ingest_text("<greet><name>Ada</name></greet>\nMore words")
        task.complete_stream()
        await task.wait_for_user_message_content()

        assert presenter.complete_says("text") == []

    @pytest.mark.asyncio
    async def test_missing_implementation(self, make_task):
        task = make_task()
        content = await feed_stream(task, make_tool_call_response("list_files", {"path": "."}))

        (result,) = content
        assert result.is_error is True
        assert json.loads(result.content)["error"] == "Tool list_files is not available."
        assert task.consecutive_mistake_count == 1


# ---------------------------------------------------------------------------
# Exactly one result per call id
# ---------------------------------------------------------------------------


class TestSingleResultInvariant:
    @pytest.mark.asyncio
    async def test_mistake_then_rejection_then_retry(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool])
        presenter.answers.append(deny())

        results = []
        results += await feed_stream(task, make_tool_call_response("read_file", {}, call_id="c1"))
        assert task.consecutive_mistake_count == 1
        results += await feed_stream(task, make_tool_call_response("read_file", A_PY, call_id="c2"))
        assert task.cursor.tool_was_rejected
        results += await feed_stream(task, make_tool_call_response("read_file", A_PY, call_id="c3"))

        counts = Counter(r.tool_use_id for r in tool_results(results))
        assert counts == {"c1": 1, "c2": 1, "c3": 1}
        by_id = {r.tool_use_id: r for r in tool_results(results)}
        assert "Missing value for required parameter 'files'" in json.loads(by_id["c1"].content)["error"]
        assert json.loads(by_id["c2"].content)["status"] == "denied"
        assert by_id["c3"].content == "contents of a.py"
        assert read_file_tool.calls == [[{"path": "a.py"}]]
        assert task.consecutive_mistake_count == 0

    @pytest.mark.asyncio
    async def test_second_call_skipped_when_single_tool_per_message(self, make_task, read_file_tool):
        task = make_task(tools=[read_file_tool])
        chunks = make_multi_tool_call_response([
            ("read_file", A_PY, "c1"),
            ("read_file", B_PY, "c2"),
        ])
        content = await feed_stream(task, chunks)

        first, second = tool_results(content)
        assert first.tool_use_id == "c1"
        assert first.content == "contents of a.py"
        assert second.tool_use_id == "c2"
        assert second.is_error is True
        assert "Only one tool may be used per message" in second.content
        assert len(read_file_tool.calls) == 1

    @pytest.mark.asyncio
    async def test_multiple_calls_when_enabled(self, make_task, read_file_tool):
        task = make_task(tools=[read_file_tool], multiple_native_tool_calls=True)
        chunks = make_multi_tool_call_response([
            ("read_file", A_PY, "c1"),
            ("read_file", B_PY, "c2"),
        ])
        content = await feed_stream(task, chunks)

        assert [r.content for r in tool_results(content)] == ["contents of a.py", "contents of b.py"]
        assert not task.should_stop_reading

    @pytest.mark.asyncio
    async def test_calls_after_rejection_get_error_results(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool], multiple_native_tool_calls=True)
        presenter.answers.append(deny())
        chunks = make_multi_tool_call_response([
            ("read_file", A_PY, "c1"),
            ("read_file", B_PY, "c2"),
        ])
        content = await feed_stream(task, chunks, stop_early=False)

        first, second = tool_results(content)
        assert json.loads(first.content)["status"] == "denied"
        assert second.is_error is True
        assert second.content == "Skipping tool [read_file for 'b.py'] due to user rejecting a previous tool."
        assert read_file_tool.calls == []

    @pytest.mark.asyncio
    async def test_legacy_skip_after_rejection_is_text(self, make_task, presenter, sample_tool):
        task = make_task(tools=[sample_tool], protocol=ToolProtocol.XML)
        presenter.answers.append(deny())
        task.begin_request()
        task.ingest_text("<greet><name>Ada</name></greet>\n<greet><name>Bob</name></greet>")
        task.complete_stream()
        content = await task.wait_for_user_message_content()

        assert tool_results(content) == []
        assert content == [
            TextContent(text="[greet] Result:"),
            TextContent(text="The user denied this operation."),
            TextContent(text="Skipping tool [greet] due to user rejecting a previous tool."),
        ]

    @pytest.mark.asyncio
    async def test_legacy_runs_one_tool_even_with_multiple_calls_enabled(self, make_task, sample_tool):
        task = make_task(tools=[sample_tool], protocol=ToolProtocol.XML, multiple_native_tool_calls=True)
        task.begin_request()
        task.ingest_text("<greet><name>Ada</name></greet>\n<greet><name>Bob</name></greet>")
        task.complete_stream()
        content = await task.wait_for_user_message_content()

        assert tool_results(content) == []
        assert content == [
            TextContent(text="[greet] Result:"),
            TextContent(text="Hello Ada"),
            TextContent(
                text="Tool [greet] was not executed because a tool has already been used in this message. "
                "Only one tool may be used per message. You must assess the first tool's result "
                "before proceeding to use the next tool."
            ),
        ]
        assert task.should_stop_reading

    @pytest.mark.asyncio
    async def test_duplicate_push_dropped(self, make_task, caplog):
        task = make_task(tools=[DoublePushTool()])
        with caplog.at_level(logging.WARNING, logger="marmoset.dispatcher"):
            content = await feed_stream(task, make_tool_call_response("double_push", {}))

        assert content == [ToolResultContent(tool_use_id="call_1", content="first")]
        assert "Skipping duplicate tool_result for tool_use_id: call_1" in caplog.text

    @pytest.mark.asyncio
    async def test_tool_without_result_gets_placeholder(self, make_task):
        task = make_task(tools=[SilentTool()])
        content = await feed_stream(task, make_tool_call_response("silent", {}))
        assert content == [ToolResultContent(tool_use_id="call_1", content=EMPTY_RESULT)]

    @pytest.mark.asyncio
    async def test_exception_wrapped_with_action(self, make_task, presenter):
        task = make_task(tools=[ExplodingTool()])
        content = await feed_stream(task, make_tool_call_response("explode", {}))

        (result,) = content
        assert result.is_error is True
        assert json.loads(result.content)["error"] == "Error executing explode: RuntimeError: boom"
        assert presenter.complete_says("error") == ["Error executing explode:\nboom"]


# ---------------------------------------------------------------------------
# Approval feedback
# ---------------------------------------------------------------------------


class TestApproval:
    @pytest.mark.asyncio
    async def test_native_approval_feedback_merged_into_result(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool])
        presenter.answers.append(AskResult(response=AskResponse.YES, text="also check b.py"))
        content = await feed_stream(task, make_tool_call_response("read_file", A_PY))

        (result,) = content
        feedback, output = result.content.split("\n\n")
        assert json.loads(feedback)["feedback"] == "also check b.py"
        assert output == "contents of a.py"
        assert presenter.complete_says("user_feedback") == ["also check b.py"]

    @pytest.mark.asyncio
    async def test_native_denial_with_feedback(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool])
        presenter.answers.append(deny("read b.py instead"))
        content = await feed_stream(task, make_tool_call_response("read_file", A_PY))

        (result,) = content
        assert json.loads(result.content)["feedback"] == "read b.py instead"
        assert task.should_stop_reading

    @pytest.mark.asyncio
    async def test_legacy_approval_feedback_is_separate_text(self, make_task, presenter, sample_tool):
        task = make_task(tools=[sample_tool], protocol=ToolProtocol.XML)
        presenter.answers.append(AskResult(response=AskResponse.YES, text="be polite"))
        content = await feed_stream(task, make_xml_response("<greet><name>Ada</name></greet>"))

        texts = [c.text for c in content]
        assert texts[0] == "[greet] Result:"
        assert texts[1].endswith("<feedback>\nbe polite\n</feedback>")
        assert texts[2:] == ["[greet] Result:", "Hello Ada"]


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


class TestImagePlacement:
    @pytest.mark.asyncio
    async def test_native_images_follow_result(self, make_task, screenshot_tool):
        task = make_task(tools=[screenshot_tool])
        content = await feed_stream(task, make_tool_call_response("screenshot", {"url": "http://x"}))

        result, image = content
        assert result == ToolResultContent(tool_use_id="call_1", content="captured")
        assert isinstance(image, ImageContent)
        assert image.source.data == "AAAA"

    @pytest.mark.asyncio
    async def test_legacy_images_inline(self, make_task, screenshot_tool):
        task = make_task(tools=[screenshot_tool], protocol=ToolProtocol.XML)
        content = await feed_stream(task, make_xml_response("<screenshot><url>http://x</url></screenshot>"))

        assert content[:2] == [TextContent(text="[screenshot] Result:"), TextContent(text="captured")]
        assert isinstance(content[2], ImageContent)


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_invalid_json_becomes_error_result(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool])
        content = await feed_stream(task, make_tool_call_response("read_file", '{"files": ['))

        (result,) = content
        assert result.tool_use_id == "call_1"
        assert result.is_error is True
        assert task.consecutive_mistake_count == 1
        assert task.tool_usage["read_file"].failures == 1
        assert presenter.complete_says("error") == ["Invalid arguments for tool call read_file (call_1)"]
        assert read_file_tool.calls == []

    @pytest.mark.asyncio
    async def test_unknown_tool_named_in_error(self, make_task, presenter):
        task = make_task()
        content = await feed_stream(task, make_tool_call_response("make_coffee", {"size": "large"}))

        (result,) = content
        assert result.is_error is True
        assert json.loads(result.content)["error"] == "Unknown tool 'make_coffee' in tool call call_1"
        assert presenter.complete_says("error") == ["Unknown tool 'make_coffee' in tool call call_1"]
        assert task.consecutive_mistake_count == 1

    @pytest.mark.asyncio
    async def test_mode_denial(self, make_task):
        task = make_task(mode="ask")
        content = await feed_stream(task, make_tool_call_response("write_to_file", {"path": "a.py", "content": "x"}))

        (result,) = content
        assert result.is_error is True
        assert json.loads(result.content)["error"] == 'Tool "write_to_file" is not allowed in ask mode.'
        assert task.consecutive_mistake_count == 1

    @pytest.mark.asyncio
    async def test_file_restriction(self, make_task):
        task = make_task(mode="architect")
        content = await feed_stream(task, make_tool_call_response("write_to_file", {"path": "a.py", "content": "x"}))

        (result,) = content
        assert "can only edit files matching pattern" in json.loads(result.content)["error"]

    @pytest.mark.asyncio
    async def test_repetition_blocked_then_recovers(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool])
        results = []
        for i in range(4):
            content = await feed_stream(task, make_tool_call_response("read_file", A_PY, call_id=f"c{i}"))
            results.append(content[0])

        assert [r.is_error for r in results] == [None, None, True, None]
        assert "Tool call repetition limit reached for read_file" in results[2].content
        assert len(read_file_tool.calls) == 3
        assert any(kind == "mistake_limit_reached" for kind, _, _ in presenter.asks)

    @pytest.mark.asyncio
    async def test_repetition_guidance_added_to_message(self, make_task, presenter, read_file_tool):
        task = make_task(tools=[read_file_tool], consecutive_mistake_limit=2)
        await feed_stream(task, make_tool_call_response("read_file", A_PY, call_id="c1"))
        presenter.answers.append(AskResult(response=AskResponse.MESSAGE, text="try b.py"))
        content = await feed_stream(task, make_tool_call_response("read_file", A_PY, call_id="c2"))

        assert TextContent(text="Tool repetition limit reached. User feedback: try b.py") in content
        assert len(tool_results(content)) == 1

    @pytest.mark.asyncio
    async def test_abort_is_fatal(self, make_task):
        task = make_task()
        task.begin_request()
        task.abort_task()
        task.ingest_text("hello")
        with pytest.raises(TaskAbortedError):
            await task.wait_for_user_message_content()

    @pytest.mark.asyncio
    async def test_abort_inside_tool_propagates(self, make_task):
        task = make_task(tools=[AbortingTool()])
        with pytest.raises(TaskAbortedError):
            await feed_stream(task, make_tool_call_response("abort_me", {}))
        assert task.user_message_content == []


# ---------------------------------------------------------------------------
# Ordering and concurrency
# ---------------------------------------------------------------------------


class TestOrdering:
    @pytest.mark.asyncio
    async def test_blocks_presented_in_arrival_order(self, make_task, presenter):
        log = []
        running = asyncio.Event()
        release = asyncio.Event()

        @tool(requires_approval=False)
        async def slow(x: str):
            """Slow tool."""
            log.append(("tool", x))
            running.set()
            await release.wait()
            log.append(("tool_done", x))
            return "ok"

        record_say = presenter.say

        async def say(kind, text=None, images=None, partial=False):
            if kind == "text" and not partial:
                log.append(("say", text))
            await record_say(kind, text, images, partial)

        presenter.say = say
        task = make_task(tools=[slow], multiple_native_tool_calls=True)
        task.begin_request()

        task.ingest_text("a")
        task.ingest_tool_call_fragment(ToolCallFragment(index=0, call_id="c1", name="slow"))
        task.ingest_tool_call_fragment(ToolCallFragment(index=0, arguments_delta='{"x": "1"}'))
        await asyncio.sleep(0)
        assert log == [("say", "a")]

        task.ingest_call_end(0)
        await asyncio.wait_for(running.wait(), timeout=1)
        task.ingest_text("b")
        for _ in range(5):
            await asyncio.sleep(0)
        assert ("say", "b") not in log
        assert task.cursor.has_pending_updates

        release.set()
        task.complete_stream()
        content = await task.wait_for_user_message_content()

        assert log == [("say", "a"), ("tool", "1"), ("tool_done", "1"), ("say", "b")]
        assert content == [ToolResultContent(tool_use_id="c1", content="ok")]

    @pytest.mark.asyncio
    async def test_block_snapshot_not_affected_by_producer(self, make_task):
        seen = []

        @tool(requires_approval=False)
        async def echo(x: str):
            """Echo."""
            await asyncio.sleep(0)
            seen.append(x)
            return x

        task = make_task(tools=[echo])
        content = await feed_stream(task, make_tool_call_response("echo", {"x": "hello world"}, size=2))
        assert seen == ["hello world"]
        assert content == [ToolResultContent(tool_use_id="call_1", content="hello world")]


# ---------------------------------------------------------------------------
# Browser session
# ---------------------------------------------------------------------------


class TestBrowserAutoClose:
    @pytest.mark.asyncio
    async def test_closed_when_no_session_active(self, make_task, read_file_tool):
        task = make_task(tools=[read_file_tool])
        await feed_stream(task, make_tool_call_response("read_file", A_PY))
        assert task.browser_session.close_count == 1

    @pytest.mark.asyncio
    async def test_kept_open_while_session_active(self, make_task, read_file_tool):
        task = make_task(tools=[read_file_tool])
        task.chat_history = [
            ChatRecord(kind="browser_action", text=json.dumps({"action": "launch", "url": "http://x"})),
            ChatRecord(kind="browser_action_result", text="{}"),
        ]
        await feed_stream(task, make_tool_call_response("read_file", A_PY))
        assert task.browser_session.close_count == 0

    @pytest.mark.asyncio
    async def test_closed_after_close_action(self, make_task, read_file_tool):
        task = make_task(tools=[read_file_tool])
        task.chat_history = [
            ChatRecord(kind="browser_action", text=json.dumps({"action": "launch"})),
            ChatRecord(kind="browser_action_result", text="{}"),
            ChatRecord(kind="browser_action", text=json.dumps({"action": "close"})),
        ]
        await feed_stream(task, make_tool_call_response("read_file", A_PY))
        assert task.browser_session.close_count == 1

    @pytest.mark.asyncio
    async def test_browser_call_never_closes(self, make_task):
        task = make_task()
        await feed_stream(task, make_tool_call_response("browser_action", {"action": "launch", "url": "http://x"}))
        assert task.browser_session.close_count == 0


# ---------------------------------------------------------------------------
# Nested tools
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_nested_tool_runs_through_generic_tool(make_task):
    @tool(name="use_mcp_tool", requires_approval=False)
    def use_mcp(server_name: str, tool_name: str, arguments: dict | None = None):
        """Call a tool on a connected server."""
        return f"{server_name}/{tool_name} {json.dumps(arguments)}"

    task = make_task(tools=[use_mcp])
    content = await feed_stream(task, make_tool_call_response("mcp_github_create_issue", {"title": "Bug"}))

    assert content == [
        ToolResultContent(tool_use_id="call_1", content='github/create_issue {"title": "Bug"}'),
    ]
