"""Walks the assistant message block by block and runs its tool calls.

The stream producer and the dispatcher itself both call
:meth:`AssistantMessageDispatcher.present`. Only one pass runs at a
time: a call that arrives while a pass holds the lock just sets
``has_pending_updates`` and returns, and the running pass loops once more
before it exits. Pending signals coalesce, which is fine because every
pass re-reads the current block list.

Result shapes differ by protocol. A native call (it has an ``id``) gets
exactly one ``tool_result`` keyed by that id, holding text only, with
any images placed right after it. A legacy call gets a
``"<description> Result:"`` text line followed by the content.
"""

from __future__ import annotations

import copy
import logging
import re
from typing import TYPE_CHECKING, Any

from marmoset import responses
from marmoset.blocks import NestedToolUse, TextBlock, ToolProtocol, ToolUse
from marmoset.browser import BROWSER_ACTION, is_browser_session_active
from marmoset.errors import TaskAbortedError, ToolNotAllowedError
from marmoset.instrumentation import record_error, tool_span
from marmoset.message import ImageContent, TextContent, ToolResultContent
from marmoset.modes import validate_tool_use
from marmoset.presentation import ApprovalResult, AskResponse, ToolProgressStatus
from marmoset.tool_args import describe_tool
from marmoset.tools import ToolCallbacks, remove_closing_tag

from marmoset.task import DispatchState

if TYPE_CHECKING:
    from marmoset.task import Task

logger = logging.getLogger(__name__)

_THINKING_OPEN = re.compile(r"<thinking>\s?")
_THINKING_CLOSE = re.compile(r"\s?</thinking>")
_TAG_NAME = re.compile(r"^[a-zA-Z_]+$")


def clean_text_block(content: str) -> str:
    """Strip thinking tags and a half-streamed tag at the end of *content*."""
    content = _THINKING_OPEN.sub("", content)
    content = _THINKING_CLOSE.sub("", content)
    last_open = content.rfind("<")
    if last_open == -1:
        return content
    possible_tag = content[last_open:]
    if ">" in possible_tag:
        return content
    tag_content = possible_tag[2:] if possible_tag.startswith("</") else possible_tag[1:]
    if possible_tag in ("<", "</") or _TAG_NAME.match(tag_content.strip()):
        content = content[:last_open].strip()
    return content


class _ResultSink:
    """Collects the result of one tool call into the outgoing user message."""

    def __init__(self, task: Task, block: ToolUse, description: str):
        self.task = task
        self.block = block
        self.description = description
        self.protocol = block.protocol
        self.has_result = block.id is not None and block.id in task.answered_tool_ids
        self._feedback: list[str] = []
        self._feedback_images: list[str] = []

    def add_feedback(self, text: str, images: list[str]) -> None:
        """Keep approval feedback to prepend to the tool's own result."""
        if self.protocol == ToolProtocol.XML:
            self.push(responses.tool_result(text, images), consume=False)
            return
        self._feedback.append(text)
        self._feedback_images.extend(images)

    def push(self, content: Any, is_error: bool | None = None, consume: bool = True) -> None:
        task = self.task
        if self.protocol == ToolProtocol.NATIVE:
            if self.has_result:
                logger.warning(f"Skipping duplicate tool_result for tool_use_id: {self.block.id}")
                return
            text, images = _split_content(content)
            if self._feedback:
                text = "\n\n".join((*self._feedback, text))
            task.user_message_content.append(ToolResultContent(
                tool_use_id=self.block.id,
                content=text,
                is_error=is_error,
            ))
            task.user_message_content.extend(responses.image_blocks(self._feedback_images))
            task.user_message_content.extend(images)
            task.answered_tool_ids.add(self.block.id)
            self.has_result = True
        else:
            task.user_message_content.append(TextContent(text=f"{self.description} Result:"))
            if isinstance(content, str):
                task.user_message_content.append(TextContent(text=content or responses.EMPTY_RESULT))
            else:
                task.user_message_content.extend(content)
            self.has_result = True

        if not consume:
            return
        if self.protocol == ToolProtocol.XML or not task.settings.multiple_native_tool_calls:
            task.cursor.tool_already_used = True


def _split_content(content: Any) -> tuple[str, list[ImageContent]]:
    if isinstance(content, str):
        return content or responses.EMPTY_RESULT, []
    texts = [item.text for item in content if isinstance(item, TextContent)]
    images = [item for item in content if isinstance(item, ImageContent)]
    return "\n".join(texts) or responses.EMPTY_RESULT, images


class AssistantMessageDispatcher:
    """Presents the blocks of a :class:`~marmoset.task.Task` in order."""

    def __init__(self, task: Task):
        self.task = task

    async def present(self) -> None:
        task = self.task
        cursor = task.cursor

        while True:
            if task.abort:
                raise TaskAbortedError(task.task_id)

            if cursor.locked:
                cursor.has_pending_updates = True
                return

            cursor.locked = True
            cursor.has_pending_updates = False
            cursor.state = DispatchState.LOCKED

            blocks = task.assistant_message_content
            if cursor.current_index >= len(blocks):
                cursor.locked = False
                if task.did_complete_reading_stream:
                    task.mark_user_message_content_ready()
                else:
                    cursor.state = DispatchState.AWAITING_NEXT_BLOCK
                return

            # The producer may replace or grow this block while we await.
            block = copy.deepcopy(blocks[cursor.current_index])
            cursor.state = DispatchState.PRESENTING
            try:
                await self._present_block(block)
            finally:
                cursor.locked = False

            if not block.partial or cursor.tool_was_rejected or cursor.tool_already_used:
                is_last = cursor.current_index == len(task.assistant_message_content) - 1
                if is_last and task.did_complete_reading_stream:
                    task.mark_user_message_content_ready()
                cursor.current_index += 1
                if cursor.current_index < len(task.assistant_message_content):
                    continue
                if task.did_complete_reading_stream:
                    task.mark_user_message_content_ready()
                else:
                    cursor.state = DispatchState.AWAITING_NEXT_BLOCK

            if cursor.has_pending_updates:
                continue
            return

    async def _present_block(self, block) -> None:
        if isinstance(block, TextBlock):
            await self._present_text(block)
        elif isinstance(block, NestedToolUse):
            await self._present_tool(
                block.as_tool_use(),
                display_name=block.name,
                description=f"[mcp_tool: {block.server_name}/{block.tool_name}]",
            )
        elif isinstance(block, ToolUse):
            await self._present_tool(
                block,
                display_name=block.name,
                description=describe_tool(block.name, block.params, block.native_args),
            )
        else:
            raise TypeError(f"Unknown content block {type(block).__name__}")

    async def _present_text(self, block: TextBlock) -> None:
        cursor = self.task.cursor
        if cursor.tool_was_rejected or cursor.tool_already_used:
            return
        await self.task.say("text", clean_text_block(block.text), partial=block.partial)

    def _push_skip_notice(self, block: ToolUse, message: str) -> None:
        if block.protocol == ToolProtocol.NATIVE:
            if block.id in self.task.answered_tool_ids:
                return
            self.task.answered_tool_ids.add(block.id)
            self.task.user_message_content.append(ToolResultContent(
                tool_use_id=block.id, content=message, is_error=True,
            ))
        else:
            self.task.user_message_content.append(TextContent(text=message))

    async def _present_tool(self, block: ToolUse, display_name: str, description: str) -> None:
        task = self.task
        cursor = task.cursor
        protocol = block.protocol

        if cursor.tool_was_rejected:
            if block.partial:
                message = f"Tool {description} was interrupted and not executed due to user rejecting a previous tool."
            else:
                message = f"Skipping tool {description} due to user rejecting a previous tool."
            self._push_skip_notice(block, message)
            return

        if cursor.tool_already_used:
            self._push_skip_notice(
                block,
                f"Tool [{display_name}] was not executed because a tool has already been used in "
                f"this message. Only one tool may be used per message. You must assess the first "
                f"tool's result before proceeding to use the next tool.",
            )
            return

        sink = _ResultSink(task, block, description)
        callbacks = ToolCallbacks(
            ask_approval=lambda kind, preview=None, progress_status=None, is_protected=False: (
                self._ask_approval(sink, kind, preview, progress_status, is_protected)
            ),
            handle_error=lambda action, error: self._handle_error(sink, action, error),
            push_tool_result=sink.push,
            remove_closing_tag=lambda tag, text: remove_closing_tag(tag, text, block.partial),
            protocol=protocol,
            tool_call_id=block.id,
        )

        if block.parse_error is not None:
            task.consecutive_mistake_count += 1
            task.record_tool_usage(block.name)
            task.record_tool_error(block.name, block.parse_error)
            await task.say("error", block.parse_error)
            sink.push(responses.tool_error(block.parse_error, protocol), is_error=True)
            return

        if not block.partial:
            await self._maybe_close_browser(block)
            task.record_tool_usage(block.name)

        try:
            validate_tool_use(block.name, task.mode, task.mode_policy, block.params)
        except ToolNotAllowedError as e:
            if block.partial:
                # Reported once the call is complete.
                return
            task.consecutive_mistake_count += 1
            task.record_tool_error(block.name, str(e))
            sink.push(responses.tool_error(str(e), protocol), is_error=True)
            return

        if not block.partial:
            check = task.repetition_detector.check(block)
            if not check.allow_execution:
                await self._ask_repetition_guidance(block, check.message_key, check.message_detail)
                sink.push(
                    responses.tool_error(
                        f"Tool call repetition limit reached for {block.name}. "
                        f"Please try a different approach.",
                        protocol,
                    ),
                    is_error=True,
                )
                return

        tool = task.tools.get(block.name)
        if tool is None:
            if not block.partial:
                task.consecutive_mistake_count += 1
                task.record_tool_error(block.name, "no implementation")
                sink.push(
                    responses.tool_error(f"Tool {display_name} is not available.", protocol),
                    is_error=True,
                )
            return

        async with tool_span(display_name, block.id, protocol.value) as span:
            try:
                await tool.handle(task, block, callbacks)
            except TaskAbortedError:
                raise
            except Exception as e:
                record_error(span, e)
                await self._handle_error(sink, f"executing {display_name}", e)

        if not block.partial and not sink.has_result and protocol == ToolProtocol.NATIVE:
            logger.warning(f"Tool {display_name} finished without a result for {block.id}")
            sink.push(responses.EMPTY_RESULT)

    async def _ask_approval(
        self,
        sink: _ResultSink,
        kind: str,
        preview: str | None = None,
        progress_status: ToolProgressStatus | None = None,
        is_protected: bool = False,
    ) -> ApprovalResult:
        task = self.task
        answer = await task.ask(kind, preview, False, progress_status, is_protected)
        if answer.response != AskResponse.YES:
            if answer.text:
                await task.say("user_feedback", answer.text, answer.images)
                sink.push(responses.tool_result(
                    responses.tool_denied_with_feedback(answer.text, sink.protocol), answer.images,
                ))
            else:
                sink.push(responses.tool_denied(sink.protocol))
            task.cursor.tool_was_rejected = True
            return ApprovalResult(approved=False, feedback_text=answer.text, feedback_images=answer.images)

        if answer.text:
            await task.say("user_feedback", answer.text, answer.images)
            sink.add_feedback(
                responses.tool_approved_with_feedback(answer.text, sink.protocol), answer.images,
            )
        return ApprovalResult(approved=True, feedback_text=answer.text, feedback_images=answer.images)

    async def _handle_error(self, sink: _ResultSink, action: str, error: BaseException) -> None:
        logger.error(f"Error {action}: {error}")
        await self.task.say("error", f"Error {action}:\n{error}")
        sink.push(
            responses.tool_error(f"Error {action}: {type(error).__name__}: {error}", sink.protocol),
            is_error=True,
        )

    async def _ask_repetition_guidance(self, block: ToolUse, message_key: str | None, detail: str | None) -> None:
        task = self.task
        answer = await task.ask(message_key or "mistake_limit_reached", detail)
        if answer.response == AskResponse.MESSAGE:
            task.user_message_content.append(
                TextContent(text=f"Tool repetition limit reached. User feedback: {answer.text}")
            )
            task.user_message_content.extend(responses.image_blocks(answer.images))
            await task.say("user_feedback", answer.text, answer.images)

    async def _maybe_close_browser(self, block: ToolUse) -> None:
        if block.name == BROWSER_ACTION:
            return
        if not is_browser_session_active(self.task.chat_history):
            await self.task.browser_session.close_browser()
