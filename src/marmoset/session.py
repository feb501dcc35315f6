from pydantic import BaseModel, Field

from marmoset.message import Message


class Session(BaseModel):
    """Conversation transcript shared by every request of a task."""

    session_id: str
    transcript: list[Message] = Field(default_factory=list)
