from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, field_serializer

from marmoset.streaming import ToolCall


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str | list[dict] = ""

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


class ToolCallRequestMessage(Message):
    tool_calls: list[ToolCall]

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls: list[ToolCall]) -> list[dict]:
        return [
            {
                "id": t.id,
                "type": "function",
                "function": {
                    "arguments": t.arguments,
                    "name": t.name
                }
            }
            for t in tool_calls
        ]


class ToolCallResultMessage(Message):
    tool_call_id: str


# ---------------------------------------------------------------------------
# User-message content blocks fed back to the model after a turn
# ---------------------------------------------------------------------------

class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageSource(BaseModel):
    type: Literal["base64"] = "base64"
    media_type: str
    data: str

    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    source: ImageSource


class ToolResultContent(BaseModel):
    """Result for one native tool call; ``content`` is always plain text."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool | None = None


UserContent = Union[TextContent, ImageContent, ToolResultContent]


def to_openai_messages(blocks: list[UserContent]) -> list[Message]:
    """Convert accumulated user content into chat-completions messages.

    Each tool result becomes a ``tool`` message. Text and image blocks
    are collected into one multipart ``user`` message that follows them.
    """
    messages: list[Message] = []
    parts: list[dict] = []
    for block in blocks:
        if isinstance(block, ToolResultContent):
            messages.append(ToolCallResultMessage(
                role=MessageRole.TOOL,
                content=block.content,
                tool_call_id=block.tool_use_id,
            ))
        elif isinstance(block, ImageContent):
            parts.append({
                "type": "image_url",
                "image_url": {"url": block.source.data_url()},
            })
        else:
            parts.append({"type": "text", "text": block.text})
    if parts:
        if all(p["type"] == "text" for p in parts):
            content: str | list[dict] = "\n\n".join(p["text"] for p in parts)
        else:
            content = parts
        messages.append(Message(role=MessageRole.USER, content=content))
    return messages
