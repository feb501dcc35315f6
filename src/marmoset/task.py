"""The task owns one conversation and the assistant message being streamed.

The stream producer calls the ``ingest_*`` methods as chunks arrive.
They only touch the block list and then schedule a dispatcher pass; the
dispatcher runs as its own asyncio task so that a slow tool never stalls
stream reading. The runner waits on :meth:`Task.wait_for_user_message_content`
for the dispatcher to finish the message.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from marmoset.blocks import ContentBlock, NestedToolUse, TextBlock, ToolProtocol, ToolUse
from marmoset.browser import BrowserSession, ChatRecord, NullBrowserSession
from marmoset.config import EngineSettings
from marmoset.errors import TaskAbortedError
from marmoset.message import UserContent
from marmoset.modes import GroupModePolicy, ModePolicy
from marmoset.parser import ToolCallParser
from marmoset.presentation import AskResult, AutoApprovePresenter, Presenter, ToolProgressStatus
from marmoset.repetition import ToolRepetitionDetector
from marmoset.streaming import ToolCall, ToolCallDelta, ToolCallEnd, ToolCallEvent, ToolCallFragment, ToolCallStart
from marmoset.tool_args import TOOL_NAMES, is_nested_tool_name
from marmoset.tools import BaseTool
from marmoset.xml_parser import AssistantMessageParser

if TYPE_CHECKING:
    from marmoset.context import Context

logger = logging.getLogger(__name__)


class DispatchState(Enum):
    IDLE = "idle"
    PRESENTING = "presenting"
    LOCKED = "locked"
    AWAITING_NEXT_BLOCK = "awaiting_next_block"
    TURN_COMPLETE = "turn_complete"


@dataclass
class DispatchCursor:
    """Dispatcher position within the current assistant message."""

    current_index: int = 0
    locked: bool = False
    has_pending_updates: bool = False
    tool_already_used: bool = False
    tool_was_rejected: bool = False
    state: DispatchState = DispatchState.IDLE

    def reset(self) -> None:
        self.current_index = 0
        self.locked = False
        self.has_pending_updates = False
        self.tool_already_used = False
        self.tool_was_rejected = False
        self.state = DispatchState.IDLE


@dataclass
class ToolUsage:
    attempts: int = 0
    failures: int = 0


@dataclass
class ToolError:
    tool_name: str
    error: str | None = None


class Task:
    """Conversation owner shared by the stream producer and the dispatcher.

    Args:
        tools: Tool implementations keyed by name.
        presenter: Display and approval collaborator.
        settings: Engine settings.
        protocol: Calling convention for this task.
        mode_policy: Decides which tools each mode may use.
        browser_session: Long-lived browser closed between unrelated calls.
        task_id: Identifier used in logs; random when omitted.
    """

    def __init__(
        self,
        tools: dict[str, BaseTool] | None = None,
        presenter: Presenter | None = None,
        settings: EngineSettings | None = None,
        protocol: ToolProtocol = ToolProtocol.XML,
        mode_policy: ModePolicy | None = None,
        browser_session: BrowserSession | None = None,
        task_id: str | None = None,
    ):
        from marmoset.dispatcher import AssistantMessageDispatcher

        self.task_id = task_id or uuid.uuid4().hex[:8]
        self.tools: dict[str, BaseTool] = dict(tools or {})
        self.presenter = presenter or AutoApprovePresenter()
        self.settings = settings or EngineSettings()
        self.protocol = protocol
        self.mode = self.settings.mode
        self.mode_policy = mode_policy or GroupModePolicy(
            always_allowed=tuple(n for n in self.tools if n not in TOOL_NAMES),
        )
        self.browser_session = browser_session or NullBrowserSession()
        self.context: Context | None = None

        self.abort = False
        # Set by a tool (e.g. attempt_completion) to end the run after this message.
        self.did_finish = False
        self.consecutive_mistake_count = 0
        self.tool_usage: dict[str, ToolUsage] = {}
        self.tool_errors: list[ToolError] = []
        self.chat_history: list[ChatRecord] = []
        self.repetition_detector = ToolRepetitionDetector(self.settings.consecutive_mistake_limit)

        custom = [t for n, t in self.tools.items() if n not in TOOL_NAMES]
        self.parser = ToolCallParser(extra_specs=[t.args_spec() for t in custom])
        self.xml_parser = AssistantMessageParser(
            extra_tool_names=[t.name for t in custom],
            extra_param_names=[p for t in custom for p in t.args_spec().fields],
        )
        self.dispatcher = AssistantMessageDispatcher(self)

        self.cursor = DispatchCursor()
        self.assistant_message_content: list[ContentBlock] = []
        self.user_message_content: list[UserContent] = []
        self.user_message_content_ready = False
        self.did_complete_reading_stream = False
        self.did_interrupt_stream = False
        self._call_positions: dict[str, int] = {}
        self.answered_tool_ids: set[str] = set()
        self._pending: set[asyncio.Future] = set()
        self._ready = asyncio.Event()
        self._error: BaseException | None = None

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    def begin_request(self) -> None:
        """Reset all per-message state before a new model request."""
        self.parser.clear_all()
        self.xml_parser.reset()
        self.cursor.reset()
        self.assistant_message_content = []
        self.user_message_content = []
        self.user_message_content_ready = False
        self.did_complete_reading_stream = False
        self.did_interrupt_stream = False
        self._call_positions = {}
        self.answered_tool_ids = set()
        self._ready = asyncio.Event()
        self._error = None

    def abort_task(self) -> None:
        logger.info(f"Aborting task {self.task_id}")
        self.abort = True

    @property
    def should_stop_reading(self) -> bool:
        return self.cursor.tool_was_rejected or self.cursor.tool_already_used

    # ------------------------------------------------------------------
    # Stream ingestion
    # ------------------------------------------------------------------

    def ingest_text(self, delta: str) -> None:
        if not delta:
            return
        if self.protocol == ToolProtocol.XML:
            blocks = self.xml_parser.process_chunk(delta)
            for i, block in enumerate(blocks):
                if i < len(self.assistant_message_content):
                    self.assistant_message_content[i] = block
                else:
                    self.assistant_message_content.append(block)
        else:
            last = self.assistant_message_content[-1] if self.assistant_message_content else None
            if isinstance(last, TextBlock) and last.partial:
                last.text += delta
            else:
                self.assistant_message_content.append(TextBlock(text=delta, partial=True))
        self.schedule_present()

    def ingest_tool_call_fragment(self, fragment: ToolCallFragment) -> None:
        self._apply_events(self.parser.process_raw_chunk(fragment))

    def ingest_call_end(self, index: int) -> None:
        self._apply_events(self.parser.process_call_end(index))

    def ingest_finish(self, finish_reason: str | None) -> None:
        self._apply_events(self.parser.process_finish_signal(finish_reason))

    def ingest_complete_tool_call(self, call: ToolCall) -> None:
        """Add a tool call that arrived whole rather than in fragments."""
        self._finish_trailing_text()
        block = self.parser.parse_tool_call(call.id, call.name, call.arguments)
        if block is None:
            block = self._failed_call(call.id, call.name, call.arguments)
        self.assistant_message_content.append(block)
        self.schedule_present()

    def complete_stream(self) -> None:
        """Close every open call and mark all blocks complete."""
        self._apply_events(self.parser.finalize_remaining())
        if self.protocol == ToolProtocol.XML:
            self.xml_parser.finalize_content_blocks()
        for block in self.assistant_message_content:
            block.partial = False
        self.did_complete_reading_stream = True
        self.schedule_present()

    def _finish_trailing_text(self) -> None:
        last = self.assistant_message_content[-1] if self.assistant_message_content else None
        if isinstance(last, TextBlock) and last.partial:
            last.partial = False

    def _failed_call(self, call_id: str, name: str, raw_arguments: str | None) -> ToolUse:
        if self.parser.is_known_tool(name):
            error = f"Invalid arguments for tool call {name} ({call_id})"
        else:
            error = f"Unknown tool '{name}' in tool call {call_id}"
        return ToolUse(
            id=call_id,
            name=name,
            partial=False,
            raw_arguments=raw_arguments,
            parse_error=error,
        )

    def _apply_events(self, events: Iterable[ToolCallEvent]) -> None:
        changed = False
        for event in events:
            if isinstance(event, ToolCallStart):
                self._finish_trailing_text()
                self.parser.start_call(event.id, event.name)
                if is_nested_tool_name(event.name):
                    placeholder: ContentBlock = NestedToolUse(id=event.id, name=event.name, partial=True)
                else:
                    placeholder = ToolUse(id=event.id, name=event.name, partial=True)
                self._call_positions[event.id] = len(self.assistant_message_content)
                self.assistant_message_content.append(placeholder)
            elif isinstance(event, ToolCallDelta):
                partial = self.parser.append_chunk(event.id, event.fragment)
                position = self._call_positions.get(event.id)
                if partial is None or position is None:
                    continue
                self.assistant_message_content[position] = partial
            elif isinstance(event, ToolCallEnd):
                position = self._call_positions.pop(event.id, None)
                if position is None:
                    logger.warning(f"End event for untracked tool call {event.id}")
                    continue
                name = self.assistant_message_content[position].name
                raw_arguments = self.parser.raw_arguments(event.id)
                final = self.parser.finalize_call(event.id)
                if final is None:
                    final = self._failed_call(event.id, name, raw_arguments)
                self.assistant_message_content[position] = final
            changed = True
        if changed:
            self.schedule_present()

    # ------------------------------------------------------------------
    # Dispatcher scheduling
    # ------------------------------------------------------------------

    def schedule_present(self) -> None:
        future = asyncio.ensure_future(self.dispatcher.present())
        self._pending.add(future)
        future.add_done_callback(self._on_present_done)

    def _on_present_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None and self._error is None:
            self._error = error
            self._ready.set()

    def mark_user_message_content_ready(self) -> None:
        self.user_message_content_ready = True
        self.cursor.state = DispatchState.TURN_COMPLETE
        self._ready.set()

    async def wait_for_user_message_content(self) -> list[UserContent]:
        """Block until the dispatcher has handled every block of the message.

        Raises:
            TaskAbortedError: If the task was aborted mid-message.
        """
        await self._ready.wait()
        if self._error is not None:
            raise self._error
        return self.user_message_content

    async def drain(self) -> None:
        """Wait for scheduled dispatcher passes that are still running."""
        while self._pending:
            await asyncio.wait(set(self._pending))

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    async def say(
        self,
        kind: str,
        text: str | None = None,
        images: list[str] | None = None,
        partial: bool = False,
    ) -> None:
        if self.abort:
            raise TaskAbortedError(self.task_id)
        await self.presenter.say(kind, text, images, partial)
        if not partial:
            self.chat_history.append(ChatRecord(kind=kind, text=text))

    async def ask(
        self,
        kind: str,
        text: str | None = None,
        partial: bool = False,
        progress_status: ToolProgressStatus | None = None,
        is_protected: bool = False,
    ) -> AskResult:
        if self.abort:
            raise TaskAbortedError(self.task_id)
        return await self.presenter.ask(kind, text, partial, progress_status, is_protected)

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def record_tool_usage(self, tool_name: str) -> None:
        self.tool_usage.setdefault(tool_name, ToolUsage()).attempts += 1

    def record_tool_error(self, tool_name: str, error: str | None = None) -> None:
        self.tool_usage.setdefault(tool_name, ToolUsage()).failures += 1
        self.tool_errors.append(ToolError(tool_name=tool_name, error=error))

