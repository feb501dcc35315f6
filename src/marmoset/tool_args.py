"""Per-tool argument shapes.

Every statically known tool has a :class:`ToolArgsSpec` describing the
fields of its typed ("native") argument shape. It projects a call both
while the call is still streaming (whatever is present so far) and when
it is finalized, where the required fields are also checked.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, TypedDict

MCP_TOOL_PREFIX = "mcp_"

TOOL_NAMES = (
    "execute_command",
    "read_file",
    "write_to_file",
    "apply_diff",
    "insert_content",
    "search_and_replace",
    "apply_patch",
    "search_files",
    "list_files",
    "list_code_definition_names",
    "browser_action",
    "use_mcp_tool",
    "access_mcp_resource",
    "ask_followup_question",
    "attempt_completion",
    "switch_mode",
    "new_task",
    "fetch_instructions",
    "codebase_search",
    "update_todo_list",
    "run_slash_command",
    "generate_image",
)

# Parameter names understood by the legacy XML convention.
TOOL_PARAM_NAMES = frozenset((
    "command",
    "path",
    "content",
    "regex",
    "file_pattern",
    "recursive",
    "action",
    "url",
    "coordinate",
    "text",
    "server_name",
    "tool_name",
    "arguments",
    "uri",
    "question",
    "result",
    "diff",
    "mode_slug",
    "reason",
    "line",
    "mode",
    "message",
    "cwd",
    "follow_up",
    "task",
    "size",
    "query",
    "args",
    "start_line",
    "end_line",
    "todos",
    "prompt",
    "image",
    "files",
    "operations",
    "patch",
))


class LineRange(TypedDict):
    start: int
    end: int


class FileEntry(TypedDict, total=False):
    path: str
    line_ranges: list[LineRange]


_RANGE_STRING_RE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def normalize_line_range(entry: Any) -> LineRange | None:
    """Normalise ``[s, e]``, ``{"start": s, "end": e}`` or ``"s-e"``.

    Returns ``None`` for anything else.
    """
    if isinstance(entry, (list, tuple)) and len(entry) == 2:
        start, end = entry
        if isinstance(start, str) or isinstance(end, str):
            return None
        start, end = _as_int(start), _as_int(end)
    elif isinstance(entry, dict) and "start" in entry and "end" in entry:
        if isinstance(entry["start"], str) or isinstance(entry["end"], str):
            return None
        start, end = _as_int(entry["start"]), _as_int(entry["end"])
    elif isinstance(entry, str):
        match = _RANGE_STRING_RE.match(entry)
        if not match:
            return None
        start, end = int(match.group(1)), int(match.group(2))
    else:
        return None
    if start is None or end is None:
        return None
    return {"start": start, "end": end}


def normalize_line_ranges(entries: Any) -> list[LineRange] | None:
    """Normalise a list of ranges, silently dropping malformed entries."""
    if not isinstance(entries, list):
        return None
    ranges = [r for r in (normalize_line_range(e) for e in entries) if r is not None]
    return ranges or None


def _file_entry(raw: Any) -> FileEntry | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("path"), str):
        return None
    entry: FileEntry = {"path": raw["path"]}
    ranges = normalize_line_ranges(raw.get("line_ranges"))
    if ranges is not None:
        entry["line_ranges"] = ranges
    return entry


def _project_read_file(args: dict[str, Any]) -> dict[str, Any]:
    files = args.get("files")
    if isinstance(files, list):
        return {"files": [e for e in (_file_entry(f) for f in files) if e is not None]}
    # Single-file shorthand: {"path": ..., "line_ranges": [...]}
    entry = _file_entry(args)
    if entry is not None:
        return {"files": [entry]}
    return {}


def _coordinate(value: Any) -> dict[str, int] | None:
    if isinstance(value, dict):
        x, y = _as_int(value.get("x")), _as_int(value.get("y"))
    elif isinstance(value, str) and "," in value:
        x, y = (_as_int(part) for part in value.split(",", 1))
    else:
        return None
    if x is None or y is None:
        return None
    return {"x": x, "y": y}


def _size(value: Any) -> dict[str, int] | None:
    if isinstance(value, dict):
        width, height = _as_int(value.get("width")), _as_int(value.get("height"))
    elif isinstance(value, str) and ("x" in value or "," in value):
        width, height = (_as_int(part) for part in re.split(r"[x,]", value, maxsplit=1))
    else:
        return None
    if width is None or height is None:
        return None
    return {"width": width, "height": height}


def _follow_up(value: Any) -> list[dict[str, str]] | None:
    if not isinstance(value, list):
        return None
    suggestions = []
    for item in value:
        if isinstance(item, str):
            suggestions.append({"text": item})
        elif isinstance(item, dict) and isinstance(item.get("text"), str):
            suggestion = {"text": item["text"]}
            if isinstance(item.get("mode"), str):
                suggestion["mode"] = item["mode"]
            suggestions.append(suggestion)
    return suggestions


def _operations(value: Any) -> list[dict[str, str]] | None:
    if not isinstance(value, list):
        return None
    return [
        {"search": op["search"], "replace": op["replace"]}
        for op in value
        if isinstance(op, dict)
        and isinstance(op.get("search"), str)
        and isinstance(op.get("replace"), str)
    ]


@dataclass(frozen=True)
class ToolArgsSpec:
    """Typed argument shape of one tool.

    Args:
        name: Tool name.
        required: Fields that must all be present for a final shape.
        optional: Fields copied when present.
        coerce: Per-field converters; a converter returning ``None``
            drops the field.
        project_fn: Replaces the field-by-field projection entirely
            (used for shapes with nested structures).
    """

    name: str
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    coerce: Mapping[str, Callable[[Any], Any]] = field(default_factory=dict)
    project_fn: Callable[[dict[str, Any]], dict[str, Any]] | None = None

    def project(self, args: dict[str, Any]) -> dict[str, Any]:
        """Return whatever subset of the shape *args* currently supports."""
        if self.project_fn is not None:
            return self.project_fn(args)
        projected: dict[str, Any] = {}
        for key in (*self.required, *self.optional):
            if args.get(key) is None:
                continue
            value = args[key]
            converter = self.coerce.get(key)
            if converter is not None:
                value = converter(value)
                if value is None:
                    continue
            projected[key] = value
        return projected

    @property
    def fields(self) -> tuple[str, ...]:
        return (*self.required, *self.optional)

    def is_complete(self, projected: dict[str, Any]) -> bool:
        return all(projected.get(key) is not None for key in self.required)


_SPECS = (
    ToolArgsSpec("read_file", required=("files",), project_fn=_project_read_file),
    ToolArgsSpec("attempt_completion", required=("result",)),
    ToolArgsSpec("execute_command", required=("command",), optional=("cwd",)),
    ToolArgsSpec(
        "insert_content",
        required=("path", "line", "content"),
        coerce={"line": _as_int},
    ),
    ToolArgsSpec("apply_diff", required=("path", "diff")),
    ToolArgsSpec(
        "search_and_replace",
        required=("path", "operations"),
        coerce={"operations": _operations},
    ),
    ToolArgsSpec("apply_patch", required=("patch",)),
    ToolArgsSpec(
        "ask_followup_question",
        required=("question", "follow_up"),
        coerce={"follow_up": _follow_up},
    ),
    ToolArgsSpec(
        "browser_action",
        required=("action",),
        optional=("url", "coordinate", "size", "text"),
        coerce={"coordinate": _coordinate, "size": _size},
    ),
    ToolArgsSpec("codebase_search", required=("query",), optional=("path",)),
    ToolArgsSpec("fetch_instructions", required=("task",)),
    ToolArgsSpec("generate_image", required=("prompt", "path"), optional=("image",)),
    ToolArgsSpec("list_code_definition_names", required=("path",)),
    ToolArgsSpec("list_files", required=("path",), optional=("recursive",)),
    ToolArgsSpec("run_slash_command", required=("command",), optional=("args",)),
    ToolArgsSpec("search_files", required=("path", "regex"), optional=("file_pattern",)),
    ToolArgsSpec("switch_mode", required=("mode_slug", "reason")),
    ToolArgsSpec("update_todo_list", required=("todos",)),
    ToolArgsSpec(
        "write_to_file",
        required=("path", "content"),
        optional=("line_count",),
        coerce={"line_count": _as_int},
    ),
    ToolArgsSpec(
        "use_mcp_tool",
        required=("server_name", "tool_name"),
        optional=("arguments",),
    ),
    ToolArgsSpec("access_mcp_resource", required=("server_name", "uri")),
    ToolArgsSpec("new_task", required=("mode", "message"), optional=("todos",)),
)

TOOL_ARGS: dict[str, ToolArgsSpec] = {spec.name: spec for spec in _SPECS}


def is_known_tool(name: str) -> bool:
    return name in TOOL_NAMES


def is_nested_tool_name(name: str) -> bool:
    return name.startswith(MCP_TOOL_PREFIX)


def legacy_params(
    args: dict[str, Any], param_names: frozenset[str] = TOOL_PARAM_NAMES
) -> dict[str, str]:
    """Stringify every recognised top-level parameter."""
    params: dict[str, str] = {}
    for key, value in args.items():
        if key not in param_names:
            continue
        params[key] = value if isinstance(value, str) else json.dumps(value)
    return params


def describe_tool(
    name: str,
    params: Mapping[str, str],
    native_args: Mapping[str, Any] | None = None,
) -> str:
    """Short human-readable label for a call, e.g. ``[read_file for 'a.py']``."""
    if name == "read_file" and native_args and native_args.get("files"):
        paths = [entry["path"] for entry in native_args["files"]]
        more = f" and {len(paths) - 1} more" if len(paths) > 1 else ""
        return f"[{name} for '{paths[0]}'{more}]"
    if name == "search_files":
        pattern = params.get("file_pattern")
        suffix = f" in '{pattern}'" if pattern else ""
        return f"[{name} for '{params.get('regex')}'{suffix}]"
    if name == "switch_mode":
        reason = params.get("reason")
        suffix = f" because: {reason}" if reason else ""
        return f"[{name} to '{params.get('mode_slug')}'{suffix}]"
    if name == "run_slash_command":
        args = params.get("args")
        suffix = f" with args: {args}" if args else ""
        return f"[{name} for '{params.get('command')}'{suffix}]"
    if name == "new_task":
        return f"[{name} in {params.get('mode', 'code')} mode: '{params.get('message', '(no message)')}']"
    key = _DESCRIPTION_KEYS.get(name)
    if key is None:
        return f"[{name}]"
    return f"[{name} for '{params.get(key)}']"


_DESCRIPTION_KEYS = {
    "execute_command": "command",
    "read_file": "path",
    "fetch_instructions": "task",
    "write_to_file": "path",
    "apply_diff": "path",
    "insert_content": "path",
    "search_and_replace": "path",
    "list_files": "path",
    "list_code_definition_names": "path",
    "browser_action": "action",
    "use_mcp_tool": "server_name",
    "access_mcp_resource": "server_name",
    "ask_followup_question": "question",
    "codebase_search": "query",
    "generate_image": "path",
}
