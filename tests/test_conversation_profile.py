from __future__ import annotations

import json

import pytest

from agentic_runtime.conversation import Conversation, ConversationStore, sanitize_key
from agentic_runtime.errors import ConfigError
from agentic_runtime.events import EventStream, RecordingSink
from agentic_runtime.messages import ROLE_SYSTEM, ROLE_TOOL, Message, ToolCall
from agentic_runtime.profile import NoopProfile, TrimmingProfile, create_profile


def test_sanitize_key() -> None:
    assert sanitize_key("feature/login fix") == "feature_login_fix"
    assert sanitize_key("   ") == "default"
    assert sanitize_key("../..") == "default"


def test_store_seeds_system_prompt_and_persists(tmp_path) -> None:
    store = ConversationStore(str(tmp_path), system_prompt="be brief")
    conversation = store.ensure("main")
    assert [m.role for m in conversation.messages()] == [ROLE_SYSTEM]

    conversation.append(Message(role="user", content="hello"))
    conversation.append(
        Message(role="assistant", tool_calls=[ToolCall(id="c1", name="shell", arguments='{"command": "ls"}')])
    )
    store.save(conversation)

    on_disk = json.loads((tmp_path / "sessions" / "main.json").read_text(encoding="utf-8"))
    assert on_disk["key"] == "main"
    assert on_disk["messages"][2]["tool_calls"][0]["function"]["name"] == "shell"

    reloaded = ConversationStore(str(tmp_path), system_prompt="ignored").ensure("main")
    assert len(reloaded) == 3
    assert reloaded.messages()[0].content == "be brief"
    assert reloaded.messages()[2].tool_calls[0].id == "c1"
    assert store.list_keys() == ["main"]


def test_store_recovers_from_corrupt_session(tmp_path) -> None:
    store = ConversationStore(str(tmp_path))
    path = store.path_for("broken")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    conversation = store.ensure("broken")
    assert len(conversation) == 0
    assert json.loads(path.read_text(encoding="utf-8"))["messages"] == []


def test_current_defaults_to_default_session(tmp_path) -> None:
    store = ConversationStore(str(tmp_path))
    assert store.current().key == "default"
    other = store.ensure("other")
    assert store.current() is other


def test_messages_returns_a_copy() -> None:
    conversation = Conversation("k", [Message(role="user", content="a")])
    snapshot = conversation.messages()
    snapshot.append(Message(role="user", content="b"))
    assert len(conversation) == 1


def _long_history():
    filler = "x" * 200
    return [
        Message(role=ROLE_SYSTEM, content="system prompt"),
        Message(role="user", content=filler),
        Message(
            role="assistant",
            tool_calls=[ToolCall(id="a", name="read_file"), ToolCall(id="b", name="read_file")],
        ),
        Message(role=ROLE_TOOL, content=filler, tool_call_id="a"),
        Message(role=ROLE_TOOL, content=filler, tool_call_id="b"),
        Message(role="user", content="next question"),
        Message(role="assistant", content="answer"),
    ]


@pytest.mark.asyncio
async def test_trimming_keeps_system_and_skips_orphan_tool_results() -> None:
    sink = RecordingSink()
    profile = TrimmingProfile(max_chars=300, keep_last=3)
    profile.set_event_sink(EventStream(sink))
    conversation = Conversation("k", _long_history())

    prepared = await profile.prepare(conversation)

    assert prepared.mutated is True
    assert [m.role for m in prepared.messages] == [ROLE_SYSTEM, "user", "assistant"]
    assert prepared.messages[1].content == "next question"
    assert sink.types() == ["compaction_start", "compaction_complete"]
    assert sink.events[1].data["removed"] == 4
    assert len(conversation) == 3


@pytest.mark.asyncio
async def test_trimming_leaves_small_conversations_alone() -> None:
    profile = TrimmingProfile(max_chars=100_000)
    conversation = Conversation("k", _long_history())
    prepared = await profile.prepare(conversation)
    assert prepared.mutated is False
    assert await profile.after_response(conversation) is False
    assert len(prepared.messages) == 7


@pytest.mark.asyncio
async def test_noop_profile_passes_through() -> None:
    conversation = Conversation("k", _long_history())
    prepared = await NoopProfile().prepare(conversation)
    assert prepared.messages == conversation.messages()
    assert prepared.mutated is False


def test_create_profile() -> None:
    assert isinstance(create_profile(None), NoopProfile)
    assert isinstance(create_profile(" Trim "), TrimmingProfile)
    with pytest.raises(ConfigError, match="unknown context profile"):
        create_profile("summarize")


@pytest.mark.asyncio
async def test_trimming_keeps_owning_assistant_when_tail_is_all_tool_results() -> None:
    filler = "x" * 200
    calls = [ToolCall(id=call_id, name="read_file") for call_id in ("a", "b", "c")]
    conversation = Conversation(
        "k",
        [
            Message(role=ROLE_SYSTEM, content="system prompt"),
            Message(role="user", content=filler),
            Message(role="assistant", tool_calls=calls),
            Message(role=ROLE_TOOL, content=filler, tool_call_id="a"),
            Message(role=ROLE_TOOL, content=filler, tool_call_id="b"),
            Message(role=ROLE_TOOL, content=filler, tool_call_id="c"),
        ],
    )

    prepared = await TrimmingProfile(max_chars=300, keep_last=2).prepare(conversation)

    assert [m.role for m in prepared.messages] == [ROLE_SYSTEM, "assistant", ROLE_TOOL, ROLE_TOOL, ROLE_TOOL]
    assert [m.tool_call_id for m in prepared.messages[2:]] == ["a", "b", "c"]
