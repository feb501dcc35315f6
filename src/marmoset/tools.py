"""Tool capability contract.

A tool body never talks to the dispatcher directly. It receives a
:class:`ToolCallbacks` bundle for the one call it is handling and uses it
to ask for approval, report errors and push exactly one result.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
import types
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from marmoset import responses
from marmoset.blocks import ToolProtocol, ToolUse
from marmoset.errors import LLMRecoverableError, ToolArgumentError
from marmoset.presentation import ApprovalResult, ToolProgressStatus
from marmoset.tool_args import ToolArgsSpec

if TYPE_CHECKING:
    from marmoset.task import Task

logger = logging.getLogger(__name__)

# Names that are injected at call time and never exposed to the model.
_INJECTED_PARAMS = ("context",)


@dataclass
class ToolCallbacks:
    """Per-call hooks handed to a tool by the dispatcher.

    ``push_tool_result`` must be called exactly once for a native call;
    ``handle_error`` pushes the failure result itself.
    """

    ask_approval: Callable[..., Awaitable[ApprovalResult]]
    handle_error: Callable[[str, BaseException], Awaitable[None]]
    push_tool_result: Callable[[Any], None]
    remove_closing_tag: Callable[[str, str | None], str]
    protocol: ToolProtocol = ToolProtocol.XML
    tool_call_id: str | None = None


@dataclass
class ToolOutput:
    """Tool return value carrying images as ``data:`` URLs next to the text."""

    text: str
    images: list[str] = field(default_factory=list)


def remove_closing_tag(tag: str, text: str | None, is_partial: bool) -> str:
    """Strip a half-streamed ``</tag>`` fragment from the end of *text*.

    While a legacy call streams, a parameter value may end with the first
    characters of its closing tag (``"foo</pa"``). Complete values are
    returned unchanged.
    """
    if not text:
        return ""
    if not is_partial:
        return text
    optional_chars = "".join(f"(?:{re.escape(char)})?" for char in tag)
    return re.sub(rf"\s?</?{optional_chars}$", "", text)


class BaseTool(ABC):
    """A tool the dispatcher can run.

    Subclasses implement :meth:`execute`. Legacy XML calls only carry
    string parameters, so :meth:`parse_legacy` converts them into the
    same argument dict a native call provides.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    required: tuple[str, ...] = ()

    def args_spec(self) -> ToolArgsSpec:
        properties = self.parameters.get("properties", {})
        return ToolArgsSpec(
            self.name,
            required=tuple(self.required),
            optional=tuple(p for p in properties if p not in self.required),
        )

    def to_openai_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {**self.parameters, "required": list(self.required)},
            },
        }

    def parse_legacy(self, params: dict[str, str]) -> dict[str, Any]:
        return dict(params)

    @abstractmethod
    async def execute(self, args: dict[str, Any], task: Task, callbacks: ToolCallbacks) -> None:
        ...

    async def handle_partial(self, task: Task, block: ToolUse, callbacks: ToolCallbacks) -> None:
        return None

    async def handle(self, task: Task, block: ToolUse, callbacks: ToolCallbacks) -> None:
        if block.partial:
            try:
                await self.handle_partial(task, block, callbacks)
            except Exception as e:
                logger.warning(f"Error while streaming {self.name}: {e}")
            return

        try:
            if block.native_args is not None:
                args = dict(block.native_args)
            else:
                args = self.parse_legacy(block.params)
        except ValueError as e:
            task.consecutive_mistake_count += 1
            task.record_tool_error(self.name, str(e))
            await callbacks.handle_error(f"parsing {self.name} args", e)
            return

        missing = next((p for p in self.required if args.get(p) in (None, "")), None)
        if missing is not None:
            task.consecutive_mistake_count += 1
            task.record_tool_error(self.name, f"missing {missing}")
            await task.say(
                "error",
                f"Marmoset tried to use {self.name} without value for required "
                f"parameter '{missing}'. Retrying...",
            )
            callbacks.push_tool_result(responses.tool_error(
                responses.missing_tool_parameter_error(missing, callbacks.protocol),
                callbacks.protocol,
            ))
            return

        await self.execute(args, task, callbacks)


# ---------------------------------------------------------------------------
# Function tools
# ---------------------------------------------------------------------------

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    origin = typing.get_origin(annotation) or annotation
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        return _json_type(args[0]) if args else "string"
    return _JSON_TYPES.get(origin, "string")


def _build_parameters_schema(func: Callable) -> tuple[dict[str, Any], list[str]]:
    """Build a JSON-schema ``object`` for *func*'s parameters.

    Returns the schema and the list of required parameter names.
    """
    descriptions = _parse_param_descriptions(func)
    properties: dict[str, dict[str, Any]] = {}
    required: list[str] = []
    for param_name, param in inspect.signature(func).parameters.items():
        if param_name in _INJECTED_PARAMS:
            continue
        properties[param_name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(param_name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(param_name)
    return {"type": "object", "properties": properties}, required


_GOOGLE_HEADER = re.compile(r"^(Args|Arguments|Parameters|Params):\s*$")
_GOOGLE_PARAM = re.compile(r"^(\*{0,2}\w+)\s*(?:\(.*?\))?\s*:\s*(.*)$")
_REST_PARAM = re.compile(r"^:param\s+(?:\S+\s+)?(\w+)\s*:\s*(.*)$")
_NUMPY_PARAM = re.compile(r"^(\w+)\s*(?::.*)?$")


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _parse_rest(lines: list[str]) -> dict[str, str]:
    descriptions: dict[str, list[str]] = {}
    current = None
    for line in lines:
        stripped = line.strip()
        match = _REST_PARAM.match(stripped)
        if match:
            current = match.group(1)
            descriptions[current] = [match.group(2)]
        elif stripped.startswith(":") or not stripped:
            current = None
        elif current is not None:
            descriptions[current].append(stripped)
    return {k: "\n".join(v).strip() for k, v in descriptions.items()}


def _parse_google(lines: list[str]) -> dict[str, str]:
    descriptions: dict[str, list[str]] = {}
    section_indent = None
    param_indent = None
    current = None
    for line in lines:
        stripped = line.strip()
        if section_indent is None:
            if _GOOGLE_HEADER.match(stripped):
                section_indent = _indent(line)
            continue
        if not stripped:
            continue
        indent = _indent(line)
        if indent <= section_indent:
            break
        if param_indent is None:
            param_indent = indent
        match = _GOOGLE_PARAM.match(stripped)
        if indent == param_indent and match:
            current = match.group(1).lstrip("*")
            descriptions[current] = [match.group(2)]
        elif current is not None:
            descriptions[current].append(stripped)
    return {k: "\n".join(v).strip() for k, v in descriptions.items()}


def _parse_numpy(lines: list[str]) -> dict[str, str]:
    descriptions: dict[str, list[str]] = {}
    start = None
    for i in range(len(lines) - 1):
        if lines[i].strip() == "Parameters" and set(lines[i + 1].strip()) == {"-"}:
            start = i + 2
            break
    if start is None:
        return {}
    base_indent = None
    current = None
    for i in range(start, len(lines)):
        line = lines[i]
        stripped = line.strip()
        if not stripped:
            continue
        # Next section header ("Returns" followed by dashes).
        if i + 1 < len(lines) and lines[i + 1].strip() and set(lines[i + 1].strip()) == {"-"}:
            break
        indent = _indent(line)
        if base_indent is None:
            base_indent = indent
        match = _NUMPY_PARAM.match(stripped)
        if indent == base_indent and match:
            current = match.group(1)
            descriptions[current] = []
        elif current is not None:
            descriptions[current].append(stripped)
    return {k: "\n".join(v).strip() for k, v in descriptions.items()}


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from *func*'s docstring.

    Google (``Args:``), reST (``:param x:``) and NumPy (``Parameters``
    with an underline) styles are recognised.
    """
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()
    return _parse_rest(lines) or _parse_google(lines) or _parse_numpy(lines)


def _coerce_legacy(name: str, value: str, json_type: str) -> Any:
    if json_type == "string":
        return value
    if json_type == "integer":
        try:
            return int(value.strip())
        except ValueError:
            raise ToolArgumentError(f"Parameter '{name}' must be an integer, got {value!r}")
    if json_type == "number":
        try:
            return float(value.strip())
        except ValueError:
            raise ToolArgumentError(f"Parameter '{name}' must be a number, got {value!r}")
    if json_type == "boolean":
        lowered = value.strip().lower()
        if lowered not in ("true", "false"):
            raise ToolArgumentError(f"Parameter '{name}' must be true or false, got {value!r}")
        return lowered == "true"
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ToolArgumentError(f"Parameter '{name}' must be valid JSON: {e}")


def _format_output(result: Any) -> Any:
    if isinstance(result, ToolOutput):
        return responses.tool_result(result.text or responses.EMPTY_RESULT, result.images)
    if result is None or result == "":
        return responses.EMPTY_RESULT
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class FunctionTool(BaseTool):
    """Wraps a plain (sync or async) function as a tool.

    The function's signature becomes the JSON schema, its docstring the
    description. A parameter named ``context`` receives the running
    task's :class:`~marmoset.context.Context` and is hidden from the model.

    Args:
        func: The callable implementing the tool.
        name: Tool name, defaults to ``func.__name__``.
        description: Tool description, defaults to the docstring summary.
        requires_approval: Ask the presenter before every call.
    """

    def __init__(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        requires_approval: bool = True,
    ):
        self.func = func
        self.name = name or func.__name__
        if description is None:
            doc = inspect.getdoc(func) or ""
            description = doc.split("\n\n", 1)[0].strip()
        self.description = description
        self.parameters, required = _build_parameters_schema(func)
        self.required = tuple(required)
        self.requires_approval = requires_approval
        self._wants_context = "context" in inspect.signature(func).parameters

    def __repr__(self) -> str:
        return f"FunctionTool(name={self.name!r})"

    def parse_legacy(self, params: dict[str, str]) -> dict[str, Any]:
        args: dict[str, Any] = {}
        for key, prop in self.parameters["properties"].items():
            if key in params:
                args[key] = _coerce_legacy(key, params[key], prop["type"])
        return args

    async def handle_partial(self, task: Task, block: ToolUse, callbacks: ToolCallbacks) -> None:
        preview = {
            key: callbacks.remove_closing_tag(key, value)
            for key, value in block.params.items()
        }
        await task.ask("tool", json.dumps({"tool": self.name, **preview}), partial=True)

    async def execute(self, args: dict[str, Any], task: Task, callbacks: ToolCallbacks) -> None:
        if self.requires_approval:
            approval = await callbacks.ask_approval(
                "tool",
                json.dumps({"tool": self.name, **args}, default=str),
                ToolProgressStatus(text=self.name),
            )
            if not approval.approved:
                return

        kwargs = dict(args)
        if self._wants_context:
            kwargs["context"] = task.context
        try:
            result = self.func(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except LLMRecoverableError as e:
            logger.info(f"Tool {self.name} requested retry: {e}")
            callbacks.push_tool_result(str(e))
            return
        except Exception as e:
            await callbacks.handle_error(f"executing {self.name}", e)
            return

        task.consecutive_mistake_count = 0
        callbacks.push_tool_result(_format_output(result))


def tool(
    func: Callable | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    requires_approval: bool = True,
):
    """Decorator turning a function into a :class:`FunctionTool`.

    Usable bare (``@tool``) or with arguments
    (``@tool(name="x", requires_approval=False)``).
    """

    def wrap(f: Callable) -> FunctionTool:
        return FunctionTool(
            f, name=name, description=description, requires_approval=requires_approval,
        )

    if func is not None:
        return wrap(func)
    return wrap
