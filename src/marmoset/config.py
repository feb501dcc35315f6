"""Engine settings, protocol resolution and logging setup."""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel

from marmoset.blocks import ToolProtocol

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s:%(name)s:%(levelname)s:%(message)s'


class EngineSettings(BaseModel):
    """Behaviour switches for one task.

    Args:
        consecutive_mistake_limit: Mistakes (and identical repeated tool
            calls) tolerated before the user is asked for guidance.
            ``0`` disables both checks.
        multiple_native_tool_calls: Let native-protocol messages run more
            than one tool call. Legacy XML messages never can.
        native_tool_calling: Prefer the native protocol when the model
            supports it.
        tool_protocol: Explicit protocol, overriding everything else.
        mode: Starting mode slug.
        max_turns: Maximum model requests per task.
        require_tool_use: Treat a message without any tool call as a
            mistake and ask the model to retry, instead of ending the run.
    """

    consecutive_mistake_limit: int = 3
    multiple_native_tool_calls: bool = False
    native_tool_calling: bool = False
    tool_protocol: ToolProtocol | None = None
    mode: str = "code"
    max_turns: int = 50
    require_tool_use: bool = False

    @classmethod
    def from_env(cls, prefix: str = "MARMOSET_") -> "EngineSettings":
        """Build settings from ``MARMOSET_*`` environment variables."""
        values: dict = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)


class ModelInfo(BaseModel):
    model_id: str = ""
    supports_native_tools: bool = False
    default_tool_protocol: ToolProtocol | None = None


def resolve_tool_protocol(settings: EngineSettings, model_info: ModelInfo | None = None) -> ToolProtocol:
    """Pick the calling convention for a task.

    Order of precedence: explicit setting, the native experiment, the
    model's default, then XML. Native is never used for a model known
    not to support native tool calls.
    """
    known_model = model_info is not None
    model_info = model_info or ModelInfo()
    if settings.tool_protocol is not None:
        protocol = settings.tool_protocol
    elif settings.native_tool_calling:
        protocol = ToolProtocol.NATIVE
    elif model_info.default_tool_protocol is not None:
        protocol = model_info.default_tool_protocol
    else:
        protocol = ToolProtocol.XML

    if protocol == ToolProtocol.NATIVE and known_model and not model_info.supports_native_tools:
        logger.info(f"Model {model_info.model_id or '(unknown)'} has no native tool support, using XML")
        return ToolProtocol.XML
    return protocol


def configure_logging(level: int | str = logging.INFO, log_file: str | None = None) -> None:
    """Install stream (and optional file) handlers on the root logger."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
        force=True,
    )
