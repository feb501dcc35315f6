from marmoset.message import (
    Message,
    MessageRole,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from marmoset.session import Session
from marmoset.streaming import ToolCall


def test_plain_messages_round_trip():
    """A transcript of plain messages survives dump/validate."""
    session = Session(session_id="s1")
    session.transcript = [
        Message(role=MessageRole.USER, content="hello"),
        Message(role=MessageRole.ASSISTANT, content="hi there"),
        Message(role=MessageRole.USER, content="bye"),
    ]

    restored = Session.model_validate(session.model_dump())

    assert restored.session_id == "s1"
    assert [m.content for m in restored.transcript] == ["hello", "hi there", "bye"]
    for orig, rest in zip(session.transcript, restored.transcript):
        assert orig.role == rest.role


def test_subclass_fields_survive_per_message_dump():
    """The runner dumps each message on its own, so tool fields are kept.

    Dumping the whole session still serializes by the declared
    ``list[Message]`` type and drops them.
    """
    session = Session(session_id="s1")
    session.transcript.append(ToolCallRequestMessage(
        role=MessageRole.ASSISTANT,
        content="",
        tool_calls=[ToolCall(id="call_42", name="read_file", arguments="{}")],
    ))
    session.transcript.append(ToolCallResultMessage(
        role=MessageRole.TOOL,
        content="result data",
        tool_call_id="call_42",
    ))

    per_message = [m.model_dump() for m in session.transcript]
    assert per_message[0]["tool_calls"][0]["id"] == "call_42"
    assert per_message[1]["tool_call_id"] == "call_42"

    dumped = session.model_dump()
    assert "tool_call_id" not in dumped["transcript"][1]
    assert dumped["transcript"][1]["content"] == "result data"
    assert dumped["transcript"][1]["role"] == "tool"
