from marmoset.agent import Agent
from marmoset.config import EngineSettings, ModelInfo, configure_logging, resolve_tool_protocol
from marmoset.instrumentation import instrument, uninstrument
from marmoset.runner import Runner, RunResult
from marmoset.session import Session
from marmoset.task import Task
from marmoset.tools import BaseTool, FunctionTool, ToolCallbacks, ToolOutput, tool

__all__ = [
    "Agent",
    "BaseTool",
    "EngineSettings",
    "FunctionTool",
    "ModelInfo",
    "RunResult",
    "Runner",
    "Session",
    "Task",
    "ToolCallbacks",
    "ToolOutput",
    "configure_logging",
    "instrument",
    "resolve_tool_protocol",
    "tool",
    "uninstrument",
]
