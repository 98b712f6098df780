"""Tests for the transcript model in :mod:`codeloop.ai.messages`."""

from __future__ import annotations

import pytest

from codeloop.ai.messages import (
    Conversation,
    ImagePart,
    Message,
    MessageRole,
    TextPart,
    ToolCall,
    ToolCallStatus,
    to_openai_messages,
)
from codeloop.ai.orchestration.errors import InvalidTransitionError, MessageFrozenError, MessageOrderError


def _assistant_with_call(call_id: str = "call-1") -> Message:
    message = Message.assistant(streaming=True)
    message.add_tool_call(ToolCall(call_id, "read_file", {"path": "a.py"}))
    message.finalize()
    return message


class TestToolCall:
    """Status state machine and serialization."""

    def test_happy_path(self) -> None:
        call = ToolCall("c1", "write_file")

        call.transition(ToolCallStatus.AWAITING_APPROVAL)
        call.transition(ToolCallStatus.RUNNING)
        call.transition(ToolCallStatus.RUNNING)
        call.transition(ToolCallStatus.SUCCESS)

        assert call.status.is_terminal

    def test_terminal_states_are_final(self) -> None:
        call = ToolCall("c1", "write_file")
        call.transition(ToolCallStatus.REJECTED)

        with pytest.raises(InvalidTransitionError) as excinfo:
            call.transition(ToolCallStatus.RUNNING)

        assert excinfo.value.current == "rejected"
        assert excinfo.value.target == "running"

    def test_pending_cannot_succeed_directly(self) -> None:
        with pytest.raises(InvalidTransitionError):
            ToolCall("c1", "read_file").transition(ToolCallStatus.SUCCESS)

    def test_signature_is_order_independent(self) -> None:
        first = ToolCall("a", "search_files", {"query": "x", "path": "."})
        second = ToolCall("b", "search_files", {"path": ".", "query": "x"})

        assert first.signature() == second.signature()

    def test_to_dict_omits_empty_fields(self) -> None:
        call = ToolCall("c1", "read_file", {"path": "a.py"})

        assert call.to_dict() == {"id": "c1", "name": "read_file", "arguments": {"path": "a.py"}, "status": "pending"}


class TestMessage:
    """Streaming mutation and freezing."""

    def test_streaming_assistant_accumulates_text(self) -> None:
        message = Message.assistant(streaming=True)

        message.append_text("Hel")
        message.append_text("lo")
        message.finalize()

        assert message.text == "Hello"
        assert message.is_frozen
        assert not message.is_streaming

    def test_frozen_message_rejects_mutation(self) -> None:
        message = Message.user("hi")

        with pytest.raises(MessageFrozenError):
            message.append_text("!")
        with pytest.raises(MessageFrozenError):
            message.add_tool_call(ToolCall("c1", "read_file"))

    def test_duplicate_tool_call_is_ignored(self) -> None:
        message = Message.assistant(streaming=True)
        first = message.add_tool_call(ToolCall("c1", "read_file"))

        second = message.add_tool_call(ToolCall("c1", "write_file"))

        assert second is first
        assert len(message.tool_calls) == 1

    def test_set_text_keeps_images(self) -> None:
        message = Message(role=MessageRole.ASSISTANT, content=[TextPart("old"), ImagePart("data:image/png;base64,AA")])

        message.set_text("new")

        assert message.text == "new"
        assert isinstance(message.content[1], ImagePart)


class TestConversation:
    """Ordering of tool messages."""

    def test_tool_message_follows_its_call(self) -> None:
        conversation = Conversation([Message.user("read it"), _assistant_with_call()])

        conversation.append(Message.tool("call-1", "contents"))

        assert [message.role for message in conversation] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.TOOL,
        ]

    def test_orphan_tool_message_is_rejected(self) -> None:
        conversation = Conversation([Message.user("hi")])

        with pytest.raises(MessageOrderError):
            conversation.append(Message.tool("call-1", "contents"))

    def test_unknown_call_id_is_rejected(self) -> None:
        conversation = Conversation([_assistant_with_call()])

        with pytest.raises(MessageOrderError):
            conversation.append(Message.tool("call-2", "contents"))

    def test_checkpoint_markers_are_skipped(self) -> None:
        conversation = Conversation([Message.user("hi"), Message.checkpoint_marker("cp-1", "Before edit")])

        assert len(conversation.non_checkpoint()) == 1


def test_to_openai_messages() -> None:
    user = Message.user([TextPart("look"), ImagePart("https://example.com/a.png")])
    assistant = _assistant_with_call()
    tool = Message.tool("call-1", "contents", name="read_file")
    marker = Message.checkpoint_marker("cp-1")

    payload = to_openai_messages([user, marker, assistant, tool], system_prompt="System")

    assert payload == [
        {"role": "system", "content": "System"},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "look"},
                {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
            ],
        },
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": "call-1",
                    "type": "function",
                    "function": {"name": "read_file", "arguments": '{"path": "a.py"}'},
                }
            ],
        },
        {"role": "tool", "tool_call_id": "call-1", "content": "contents"},
    ]
