"""Text fed back to the model after a tool call.

Native protocol results are small JSON status objects; legacy XML
results are prose with the payload wrapped in tags.
"""

import json

from marmoset.blocks import ToolProtocol
from marmoset.message import ImageContent, ImageSource, TextContent

EMPTY_RESULT = "(tool did not return anything)"

_NATIVE_REMINDER = """# Reminder: Instructions for Tool Use

Tools are invoked using the platform's native tool calling mechanism. Each tool requires specific parameters as defined in the tool descriptions. Refer to the tool definitions provided in your system instructions for the correct parameter structure and usage examples.

Always ensure you provide all required parameters for the tool you wish to use."""

_XML_REMINDER = """# Reminder: Instructions for Tool Use

Tool uses are formatted using XML-style tags. The tool name itself becomes the XML tag name. Each parameter is enclosed within its own set of tags. Here's the structure:

<actual_tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
...
</actual_tool_name>

Always use the actual tool name as the XML tag name for proper parsing and execution."""


def _is_native(protocol: ToolProtocol | None) -> bool:
    return protocol == ToolProtocol.NATIVE


def tool_instructions_reminder(protocol: ToolProtocol | None = None) -> str:
    return _NATIVE_REMINDER if _is_native(protocol) else _XML_REMINDER


def tool_denied(protocol: ToolProtocol | None = None) -> str:
    if _is_native(protocol):
        return json.dumps({"status": "denied", "message": "The user denied this operation."})
    return "The user denied this operation."


def tool_denied_with_feedback(feedback: str | None, protocol: ToolProtocol | None = None) -> str:
    if _is_native(protocol):
        return json.dumps({
            "status": "denied",
            "message": "The user denied this operation and provided the following feedback",
            "feedback": feedback,
        })
    return (
        "The user denied this operation and provided the following feedback:\n"
        f"<feedback>\n{feedback}\n</feedback>"
    )


def tool_approved_with_feedback(feedback: str | None, protocol: ToolProtocol | None = None) -> str:
    if _is_native(protocol):
        return json.dumps({
            "status": "approved",
            "message": "The user approved this operation and provided the following context",
            "feedback": feedback,
        })
    return (
        "The user approved this operation and provided the following context:\n"
        f"<feedback>\n{feedback}\n</feedback>"
    )


def tool_error(error: str | None, protocol: ToolProtocol | None = None) -> str:
    if _is_native(protocol):
        return json.dumps({
            "status": "error",
            "message": "The tool execution failed",
            "error": error,
        })
    return f"The tool execution failed with the following error:\n<error>\n{error}\n</error>"


def too_many_mistakes(feedback: str | None, protocol: ToolProtocol | None = None) -> str:
    if _is_native(protocol):
        return json.dumps({
            "status": "guidance",
            "message": "You seem to be having trouble proceeding",
            "feedback": feedback,
        })
    return (
        "You seem to be having trouble proceeding. The user has provided the "
        f"following feedback to help guide you:\n<feedback>\n{feedback}\n</feedback>"
    )


def missing_tool_parameter_error(param_name: str, protocol: ToolProtocol | None = None) -> str:
    return (
        f"Missing value for required parameter '{param_name}'. "
        f"Please retry with complete response.\n\n{tool_instructions_reminder(protocol)}"
    )


def no_tools_used(protocol: ToolProtocol | None = None) -> str:
    return f"""[ERROR] You did not use a tool in your previous response! Please retry with a tool use.

{tool_instructions_reminder(protocol)}

# Next Steps

If you have completed the user's task, use the attempt_completion tool.
If you require additional information from the user, use the ask_followup_question tool.
Otherwise, if you have not completed the task and do not need additional information, then proceed with the next step of the task.
(This is an automated message, so do not respond to it conversationally.)"""


def image_blocks(images: list[str] | None) -> list[ImageContent]:
    """Convert ``data:<mime>;base64,<data>`` URLs into image blocks."""
    blocks = []
    for data_url in images or []:
        header, _, data = data_url.partition(",")
        media_type = header.split(":", 1)[-1].split(";", 1)[0]
        blocks.append(ImageContent(source=ImageSource(media_type=media_type, data=data)))
    return blocks


def tool_result(
    text: str, images: list[str] | None = None
) -> str | list[TextContent | ImageContent]:
    """Attach images after *text*, or return *text* unchanged when there are none."""
    if images:
        return [TextContent(text=text), *image_blocks(images)]
    return text
