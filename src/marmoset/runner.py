import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from marmoset import responses
from marmoset.agent import Agent
from marmoset.blocks import NestedToolUse, ToolProtocol, ToolUse
from marmoset.browser import BrowserSession
from marmoset.config import EngineSettings, ModelInfo, resolve_tool_protocol
from marmoset.context import Context
from marmoset.events import RawResponseEvent, RunCompleteEvent, RunItemEvent, StreamEvent
from marmoset.instrumentation import completion_span, record_error, record_finish, turn_span
from marmoset.message import (
    Message,
    MessageRole,
    ToolCallRequestMessage,
    ToolResultContent,
    to_openai_messages,
)
from marmoset.modes import ModePolicy
from marmoset.presentation import AskResponse, Presenter
from marmoset.session import Session
from marmoset.streaming import ToolCall
from marmoset.task import Task, ToolUsage

logger = logging.getLogger(__name__)

INTERRUPTED_BY_FEEDBACK = "\n\n[Response interrupted by user feedback]"
INTERRUPTED_BY_TOOL = (
    "\n\n[Response interrupted by a tool use result. Only one tool may be used at a time "
    "and should be placed at the end of the message.]"
)
MISTAKE_LIMIT_PROMPT = (
    "This may indicate a failure in the model's thought process or inability to use a tool "
    "properly, which can be mitigated with some user guidance (e.g. \"Try breaking down the "
    "task into smaller steps\")."
)


@dataclass
class RunResult:
    """The result of a single Runner.run() invocation."""

    last_message: Message
    agent_name: str
    task_id: str
    turns: int = 0
    tool_usage: dict[str, ToolUsage] = field(default_factory=dict)


class Runner:
    """Drives request, stream, dispatch and results until the task is done.

    Each turn sends the transcript to the provider, feeds the streamed
    text and tool-call fragments into a :class:`~marmoset.task.Task`, waits
    for the dispatcher to handle every block, then records the assistant
    message and the collected results in the transcript. The system prompt
    is injected at call time and never stored.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        settings: Engine settings; read from the environment when omitted.
        presenter: Display and approval collaborator.
        model_info: Capabilities of the model, used to pick the protocol.
        mode_policy: Tool permissions per mode.
        browser_session: Shared browser session.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        presenter: Presenter | None = None,
        model_info: ModelInfo | None = None,
        mode_policy: ModePolicy | None = None,
        browser_session: BrowserSession | None = None,
    ):
        self.settings = settings or EngineSettings.from_env()
        self.presenter = presenter
        self.model_info = model_info
        self.mode_policy = mode_policy
        self.browser_session = browser_session

    def create_task(self, agent: Agent, session: Session) -> Task:
        task = Task(
            tools=agent.tool_registry,
            presenter=self.presenter,
            settings=self.settings,
            protocol=resolve_tool_protocol(self.settings, self.model_info),
            mode_policy=self.mode_policy,
            browser_session=self.browser_session,
        )
        task.context = Context(session=session, task=task, agent=agent)
        return task

    async def run(
        self, agent: Agent, session: Session, task: Task | None = None,
    ) -> RunResult:
        """Run the task loop until the model stops calling tools."""
        result: RunResult | None = None
        async for event in self.iter(agent, session, task):
            if isinstance(event, RunCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting RunCompleteEvent")
        return result

    async def iter(
        self, agent: Agent, session: Session, task: Task | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the task loop, yielding events as execution proceeds."""
        task = task or self.create_task(agent, session)
        tool_schemas = None
        if task.protocol == ToolProtocol.NATIVE and agent.tools:
            tool_schemas = [t.to_openai_schema() for t in agent.tools]
        logger.info(f"Task {task.task_id} using {task.protocol.value} tool protocol")

        async with turn_span(task.task_id, agent.name, agent.model) as run_span:
            try:
                for turn in range(1, self.settings.max_turns + 1):
                    async for event in self._check_mistake_limit(task, session):
                        yield event

                    await task.drain()
                    task.begin_request()
                    assistant_text = ""
                    async for event in self._stream_turn(task, agent, session, tool_schemas):
                        if isinstance(event, RawResponseEvent):
                            assistant_text += event.content
                        yield event
                    assistant_text += _interruption_note(task)

                    user_content = await task.wait_for_user_message_content()
                    tool_blocks = [
                        b for b in task.assistant_message_content
                        if isinstance(b, (ToolUse, NestedToolUse))
                    ]
                    message = self._record_assistant_message(session, assistant_text, tool_blocks)
                    for block in tool_blocks:
                        yield RunItemEvent(name="tool_call", data={
                            "tool_name": block.name,
                            "call_id": block.id,
                            "params": dict(getattr(block, "params", {}) or {}),
                        })
                    for item in user_content:
                        if isinstance(item, ToolResultContent):
                            yield RunItemEvent(name="tool_result", data={
                                "call_id": item.tool_use_id,
                                "output": item.content,
                                "is_error": bool(item.is_error),
                            })

                    if not tool_blocks:
                        if not self.settings.require_tool_use:
                            yield RunItemEvent(name="message", data={"content": assistant_text})
                            yield RunCompleteEvent(result=self._result(message, agent, task, turn))
                            return
                        task.consecutive_mistake_count += 1
                        session.transcript.append(Message(
                            role=MessageRole.USER, content=responses.no_tools_used(task.protocol),
                        ))
                        continue

                    session.transcript.extend(to_openai_messages(user_content))
                    if task.did_finish:
                        yield RunCompleteEvent(result=self._result(message, agent, task, turn))
                        return
            except Exception as e:
                record_error(run_span, e)
                raise
            finally:
                await task.drain()

        timeout_msg = Message(
            role=MessageRole.ASSISTANT,
            content="Maximum turns reached. Please try again.",
        )
        session.transcript.append(timeout_msg)
        yield RunCompleteEvent(result=self._result(timeout_msg, agent, task, self.settings.max_turns))

    # ------------------------------------------------------------------
    # One request
    # ------------------------------------------------------------------

    async def _stream_turn(
        self, task: Task, agent: Agent, session: Session, tool_schemas: list[dict] | None,
    ) -> AsyncIterator[StreamEvent]:
        messages = [
            {"role": "system", "content": agent.system_prompt},
            *[m.model_dump() for m in session.transcript],
        ]
        finish_reason = None
        async with completion_span(agent.provider.system, agent.model) as span:
            stream = agent.provider.stream_complete(
                model=agent.model, messages=messages, tools=tool_schemas,
            )
            try:
                async for chunk in stream:
                    if task.abort:
                        break
                    if chunk.content_delta:
                        task.ingest_text(chunk.content_delta)
                        yield RawResponseEvent(content=chunk.content_delta)
                    for fragment in chunk.tool_call_fragments or ():
                        task.ingest_tool_call_fragment(fragment)
                    if chunk.finish_reason:
                        finish_reason = chunk.finish_reason
                        task.ingest_finish(finish_reason)
                    # Let scheduled dispatcher passes run between chunks.
                    await asyncio.sleep(0)
                    if task.should_stop_reading:
                        task.did_interrupt_stream = True
                        logger.debug(f"Task {task.task_id} stops reading the stream early")
                        break
            except Exception as e:
                record_error(span, e)
                raise
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            task.complete_stream()
            record_finish(span, finish_reason, sum(
                1 for b in task.assistant_message_content if isinstance(b, (ToolUse, NestedToolUse))
            ))

    async def _check_mistake_limit(self, task: Task, session: Session) -> AsyncIterator[StreamEvent]:
        limit = self.settings.consecutive_mistake_limit
        if limit <= 0 or task.consecutive_mistake_count < limit:
            return
        logger.info(f"Task {task.task_id} reached {task.consecutive_mistake_count} consecutive mistakes")
        answer = await task.ask("mistake_limit_reached", MISTAKE_LIMIT_PROMPT)
        if answer.response == AskResponse.MESSAGE and answer.text:
            await task.say("user_feedback", answer.text, answer.images)
            session.transcript.append(Message(
                role=MessageRole.USER,
                content=responses.too_many_mistakes(answer.text, task.protocol),
            ))
        task.consecutive_mistake_count = 0
        yield RunItemEvent(name="mistake_limit", data={"feedback": answer.text})

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    def _record_assistant_message(
        self, session: Session, text: str, tool_blocks: list,
    ) -> Message:
        tool_calls = [_history_call(b) for b in tool_blocks if b.id]
        if tool_calls:
            message: Message = ToolCallRequestMessage(
                role=MessageRole.ASSISTANT, content=text, tool_calls=tool_calls,
            )
        else:
            message = Message(role=MessageRole.ASSISTANT, content=text)
        session.transcript.append(message)
        return message

    def _result(self, message: Message, agent: Agent, task: Task, turns: int) -> RunResult:
        return RunResult(
            last_message=message,
            agent_name=agent.name,
            task_id=task.task_id,
            turns=turns,
            tool_usage=dict(task.tool_usage),
        )


def _interruption_note(task: Task) -> str:
    if not task.did_interrupt_stream:
        return ""
    if task.cursor.tool_was_rejected:
        return INTERRUPTED_BY_FEEDBACK
    return INTERRUPTED_BY_TOOL


def _history_call(block: ToolUse | NestedToolUse) -> ToolCall:
    """Record a native call under the name and arguments the model sent."""
    if block.raw_arguments is not None:
        arguments = block.raw_arguments
    elif isinstance(block, NestedToolUse):
        arguments = json.dumps(block.arguments)
    else:
        arguments = json.dumps(block.native_args if block.native_args is not None else block.params)
    return ToolCall(id=block.id, name=block.name, arguments=arguments)
