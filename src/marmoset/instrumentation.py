"""Optional OpenTelemetry instrumentation.

Call ``marmoset.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api``; the engine behaves the same without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "marmoset") -> None:
    """Enable OpenTelemetry tracing for requests and tool calls.

    Call once at startup, after configuring your TracerProvider::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        import marmoset
        marmoset.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install marmoset[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be discarded. "
            "Set up a TracerProvider to export traces."
        )
    else:
        logger.info("Marmoset instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def turn_span(task_id: str, agent_name: str, model: str):
    """Wrap one task run in an ``invoke_agent`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"invoke_agent {agent_name}",
        attributes={
            "gen_ai.operation.name": "invoke_agent",
            "gen_ai.agent.name": agent_name,
            "gen_ai.request.model": model,
            "gen_ai.conversation.id": task_id,
        },
    ) as span:
        yield span


@asynccontextmanager
async def completion_span(system: str, model: str):
    """Wrap one streamed model request in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str | None, protocol: str):
    """Wrap a tool execution in an ``execute_tool`` span.

    Legacy calls have no id; the attribute is left out for them.
    """
    if _tracer is None:
        yield None
        return
    attributes = {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": tool_name,
        "marmoset.tool.protocol": protocol,
    }
    if call_id:
        attributes["gen_ai.tool.call.id"] = call_id
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}", attributes=attributes,
    ) as span:
        yield span


def record_finish(span, finish_reason: str | None, tool_calls: int) -> None:
    """Set the finish reason and tool-call count on a ``chat`` span."""
    if span is None:
        return
    if finish_reason:
        span.set_attribute("gen_ai.response.finish_reasons", [finish_reason])
    span.set_attribute("marmoset.response.tool_calls", tool_calls)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
