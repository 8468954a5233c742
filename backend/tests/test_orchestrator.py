"""
Tests for the Chat Orchestrator: validation and the full request flow.

Every turn runs against the in-memory store with a scripted provider.
"""

import asyncio

import pytest

from errors import ErrorCode, LLMError, NotFoundError, ValidationError
from routers.chat_orchestration import EvidenceGate
from routers.chat_orchestration.orchestrator import (
    ACTIVE_TOPIC_KEY,
    DOCUMENT_INDEX_KEY,
    Attachment,
    ChatOrchestrator,
    TurnRequest,
    prompt_cache_key,
    user_message_content,
)
from routers.chat_orchestration.stream_engine import FALLBACK_TOKEN
from routers.chat_streaming import CancelToken, EventChannel
from services.chat_store import InMemoryChatStore, Memory

from conftest import (
    OTHER_USER_ID,
    USER_ID,
    FakeEvidenceClient,
    FakeProvider,
    completed,
    evidence_result,
    failed,
    make_config,
    seed_conversation,
    seed_message,
    text_delta,
)

REPLY = [text_delta("Sure, "), text_delta("here you go."), completed("Sure, here you go.")]


def _orchestrator(store, provider=None, evidence=None, **config_overrides):
    gate = EvidenceGate(evidence, enabled=evidence is not None)
    return ChatOrchestrator(store, provider or FakeProvider(REPLY), gate, config=make_config(**config_overrides))


def _serve(orchestrator, turn, user_id=USER_ID, cancelled=False):
    """Prepare and run one turn; returns (prepared, outcome, events)."""
    async def run():
        prepared = await orchestrator.prepare(turn, user_id)
        cancel = CancelToken()
        if cancelled:
            cancel.cancel()
        channel = EventChannel(cancel)
        outcome = await orchestrator.run(prepared, channel, cancel)
        events = [event async for event in channel.events()]
        pending = list(orchestrator._background)
        if pending:
            await asyncio.gather(*pending)
        return prepared, outcome, events

    return asyncio.run(run())


def _new_conversation(store, **fields):
    return asyncio.run(seed_conversation(store, **fields))


def _statuses(events):
    return [e["status"]["type"] for e in events if "status" in e]


class TestHelpers:
    """Test request helpers."""

    def test_user_message_content(self):
        attachments = [Attachment("a.pdf", "application/pdf"), Attachment("b.png", "image/png")]
        assert user_message_content("Look", attachments) == (
            "Look\n\nAttachment: a.pdf (application/pdf)\n\nAttachment: b.png (image/png)"
        )

    def test_cache_key(self):
        """Short keys stay readable; long keys are hashed to a fixed length."""
        assert prompt_cache_key("c1", None) == "c1:none"
        assert prompt_cache_key("c1", "t1") == "c1:t1"
        long_key = prompt_cache_key("c" * 60, "t" * 10)
        assert len(long_key) == 64
        assert long_key == prompt_cache_key("c" * 60, "t" * 10)


class TestPrepare:
    """Test validation before streaming."""

    def _prepare(self, orchestrator, turn, user_id=USER_ID):
        return asyncio.run(orchestrator.prepare(turn, user_id))

    def test_blank_message(self):
        """A blank message is rejected and nothing is written."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        with pytest.raises(ValidationError):
            self._prepare(_orchestrator(store), TurnRequest(conversation_id=conversation.id, message="   "))
        assert store.messages == {}

    def test_missing_conversation_id(self):
        store = InMemoryChatStore()
        with pytest.raises(ValidationError) as exc:
            self._prepare(_orchestrator(store), TurnRequest(conversation_id=None, message="hi"))
        assert exc.value.http_status == 400

    def test_unknown_conversation(self):
        store = InMemoryChatStore()
        with pytest.raises(NotFoundError) as exc:
            self._prepare(_orchestrator(store), TurnRequest(conversation_id="missing", message="hi"))
        assert exc.value.http_status == 404

    def test_other_users_conversation_is_not_found(self):
        """Another user's conversation looks exactly like a missing one."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store, user_id=OTHER_USER_ID)
        with pytest.raises(NotFoundError) as exc:
            self._prepare(_orchestrator(store), TurnRequest(conversation_id=conversation.id, message="hi"))
        assert exc.value.code == ErrorCode.NOT_FOUND_CONVERSATION
        assert store.messages == {}

    def test_project_mismatch(self):
        """A project id that doesn't match the conversation is rejected."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store, project_id="p1")
        with pytest.raises(ValidationError) as exc:
            self._prepare(
                _orchestrator(store),
                TurnRequest(conversation_id=conversation.id, message="hi", project_id="p2"),
            )
        assert exc.value.code == ErrorCode.VALIDATION_PROJECT_MISMATCH
        assert store.messages == {}

    def test_retry_reuses_user_message(self):
        """A known user message id is reused instead of inserted twice."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        existing = asyncio.run(seed_message(store, conversation, "user", "hello", id="msg-1"))
        prepared = self._prepare(
            _orchestrator(store),
            TurnRequest(conversation_id=conversation.id, message="hello", user_message_id="msg-1"),
        )
        assert prepared.user_message.id == existing.id
        assert len(store.messages) == 1

    def test_foreign_user_message_id(self):
        """A message id from another conversation is not found."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        other = _new_conversation(store)
        asyncio.run(seed_message(store, other, "user", "elsewhere", id="msg-x"))
        with pytest.raises(NotFoundError) as exc:
            self._prepare(
                _orchestrator(store),
                TurnRequest(conversation_id=conversation.id, message="hi", user_message_id="msg-x"),
            )
        assert exc.value.code == ErrorCode.NOT_FOUND_MESSAGE

    def test_personalization_defaults_and_consent(self):
        """Missing settings take defaults; cross-chat needs both the flag and consent."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        prepared = self._prepare(
            _orchestrator(store),
            TurnRequest(conversation_id=conversation.id, message="hi", personalization={"cross_chat_history": False}),
        )
        assert prepared.personalization["reference_saved_memories"] is True
        assert prepared.cross_chat_enabled is False

        prepared = self._prepare(
            _orchestrator(store, cross_chat_default_enabled=False),
            TurnRequest(conversation_id=conversation.id, message="hi again"),
        )
        assert prepared.cross_chat_enabled is False


class TestRun:
    """Test the full turn."""

    def test_event_order_and_persistence(self):
        """model_info first, tokens, one meta, and done last exactly once."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        prepared, outcome, events = _serve(
            _orchestrator(store), TurnRequest(conversation_id=conversation.id, message="Plan a trip to Lisbon")
        )

        assert "model_info" in events[0]
        assert events[-1] == {"done": True}
        assert sum(1 for e in events if "done" in e) == 1
        assert sum(1 for e in events if "meta" in e) == 1
        keys = [next(iter(e)) for e in events]
        assert keys.index("token") < keys.index("meta")

        meta = next(e["meta"] for e in events if "meta" in e)
        assert meta["userMessageId"] == prepared.user_message.id
        assert meta["contextUsage"]["sourceTag"] == "recency"
        assistant = store.messages[meta["assistantMessageId"]]
        assert assistant.content == "Sure, here you go."
        assert assistant.metadata["routedBy"] == "heuristic"

    def test_first_turn_gets_a_topic(self):
        """The writer creates a topic and tags both messages of the first turn."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        prepared, _, events = _serve(
            _orchestrator(store), TurnRequest(conversation_id=conversation.id, message="Plan a trip to Lisbon")
        )
        topics = list(store.topics.values())
        assert len(topics) == 1
        meta = next(e["meta"] for e in events if "meta" in e)
        assert store.messages[prepared.user_message.id].topic_id == topics[0].id
        assert store.messages[meta["assistantMessageId"]].topic_id == topics[0].id

    def test_writer_runs_inline_before_meta(self):
        """Writer bookkeeping has landed when run() returns; nothing is left in the background."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        orchestrator = _orchestrator(store)

        async def run():
            prepared = await orchestrator.prepare(
                TurnRequest(conversation_id=conversation.id, message="Plan a trip to Lisbon"), USER_ID
            )
            cancel = CancelToken()
            channel = EventChannel(cancel)
            await orchestrator.run(prepared, channel, cancel)
            return [event async for event in channel.events()], len(store.topics), len(orchestrator._background)

        events, topic_count, pending = asyncio.run(run())
        assert topic_count == 1
        assert pending == 0
        meta = next(e["meta"] for e in events if "meta" in e)
        assert store.messages[meta["assistantMessageId"]].topic_id == next(iter(store.topics))

    def test_new_topic_stub_created_and_reconciled(self):
        """A routed new topic exists before streaming and is reconciled after."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        provider = FakeProvider(REPLY, json_responses=[{"topicAction": "new", "newTopicLabel": "Lisbon Trip"}])
        prepared, _, events = _serve(
            _orchestrator(store, provider, decision_policy_enabled=True),
            TurnRequest(conversation_id=conversation.id, message="Plan a trip to Lisbon"),
        )
        topic = list(store.topics.values())[0]
        assert topic.label == "Lisbon Trip"
        assert topic.stub is False
        assert store.messages[prepared.user_message.id].topic_id == topic.id
        assert store.conversations[conversation.id].metadata[ACTIVE_TOPIC_KEY] == topic.id

        meta = next(e["meta"] for e in events if "meta" in e)
        assert meta["metadata"]["topicId"] == topic.id
        assert meta["metadata"]["routedBy"] == "policy"
        assert provider.requests[0].cache_key == prompt_cache_key(conversation.id, topic.id)

    def test_history_and_current_turn_sent(self):
        """Earlier turns come before the current one; the current message isn't duplicated."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        asyncio.run(seed_message(store, conversation, "user", "What's a good beach?"))
        asyncio.run(seed_message(store, conversation, "assistant", "Try Cascais."))
        provider = FakeProvider(REPLY)
        _serve(_orchestrator(store, provider), TurnRequest(conversation_id=conversation.id, message="How do I get there?"))

        turns = provider.requests[0].ordered_turns
        assert [t["content"] for t in turns] == ["What's a good beach?", "Try Cascais.", "How do I get there?"]
        assert provider.requests[0].user_id == USER_ID

    def test_cancelled_before_model_info(self):
        """A cancelled request writes nothing to the wire except done."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        provider = FakeProvider(REPLY)
        _, outcome, events = _serve(
            _orchestrator(store, provider),
            TurnRequest(conversation_id=conversation.id, message="hello there"),
            cancelled=True,
        )
        assert outcome is None
        assert events == [{"done": True}]
        assert provider.requests == []


class TestEvidence:
    """Test the evidence gate inside a turn."""

    def test_sufficient_evidence_withholds_search(self):
        """Evidence goes into the prompt and web_search is not offered, even when forced."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        provider = FakeProvider(REPLY)
        evidence = FakeEvidenceClient(evidence_result(enough=True))
        _, _, events = _serve(
            _orchestrator(store, provider, evidence),
            TurnRequest(conversation_id=conversation.id, message="Latest Python release notes", force_web_search=True),
        )

        request = provider.requests[0]
        assert all(t.get("type") != "web_search" for t in request.tools)
        assert request.tool_choice == "none"
        assert "WEB EVIDENCE" in request.instructions

        statuses = _statuses(events)
        assert statuses[:2] == ["evidence-start", "evidence-complete"]
        domains = [e["status"]["domain"] for e in events if e.get("status", {}).get("type") == "search-domain"]
        assert domains == ["example.com", "docs.python.org"]

        meta = next(e["meta"] for e in events if "meta" in e)
        assert meta["metadata"]["evidence"]["sufficient"] is True
        assert meta["metadata"]["searchDomains"] == ["example.com", "docs.python.org"]

    def test_weak_evidence_forced_search_required(self):
        """Thin evidence plus a force request makes search mandatory."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        provider = FakeProvider(REPLY)
        evidence = FakeEvidenceClient(evidence_result(enough=False))
        _serve(
            _orchestrator(store, provider, evidence),
            TurnRequest(conversation_id=conversation.id, message="Latest Python release notes", force_web_search=True),
        )
        request = provider.requests[0]
        assert request.tools[0] == {"type": "web_search"}
        assert request.tool_choice == "required"
        assert "WEB EVIDENCE" not in request.instructions

    def test_conversational_prompt_skips_pipeline(self):
        """Small talk never calls the pipeline or emits evidence statuses."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        evidence = FakeEvidenceClient()
        _, _, events = _serve(
            _orchestrator(store, evidence=evidence),
            TurnRequest(conversation_id=conversation.id, message="hi"),
        )
        assert evidence.calls == []
        assert not any(s.startswith("evidence") for s in _statuses(events))

    def test_progress_relayed(self):
        """Pipeline progress is forwarded as evidence-progress statuses."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        evidence = FakeEvidenceClient(progress=[{"stage": "search", "message": "Searching"}])
        _, _, events = _serve(
            _orchestrator(store, evidence=evidence),
            TurnRequest(conversation_id=conversation.id, message="Latest Python release notes"),
        )
        progress = [e["status"] for e in events if e.get("status", {}).get("type") == "evidence-progress"]
        assert progress == [{"type": "evidence-progress", "stage": "search", "detail": "Searching"}]


class TestPersonalization:
    """Test memories and cross-chat consent."""

    def _with_memory(self, store):
        asyncio.run(store.insert_memory(Memory(id="m1", user_id=USER_ID, type="identity", title="Name", content="Sam Rivera")))

    def test_memories_in_prompt(self):
        """Routed memory types are loaded into the system prompt."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        self._with_memory(store)
        provider = FakeProvider(REPLY)
        _serve(_orchestrator(store, provider), TurnRequest(conversation_id=conversation.id, message="who am i, really?"))
        assert "Sam Rivera" in provider.requests[0].instructions

    def test_memories_off(self):
        """With referencing turned off, memories stay out of the prompt."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        self._with_memory(store)
        provider = FakeProvider(REPLY)
        _serve(
            _orchestrator(store, provider),
            TurnRequest(
                conversation_id=conversation.id,
                message="who am i, really?",
                personalization={"reference_saved_memories": False},
            ),
        )
        assert "Sam Rivera" not in provider.requests[0].instructions

    def test_cross_chat_consent_off(self):
        """Other chats are never included without consent."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        other = _new_conversation(store, title="Secrets")
        asyncio.run(seed_message(store, other, "user", "my secret plan"))
        provider = FakeProvider(REPLY)
        _serve(
            _orchestrator(store, provider, context_strategy="recency"),
            TurnRequest(
                conversation_id=conversation.id,
                message="hello there",
                personalization={"cross_chat_history": False},
            ),
        )
        assert all("my secret plan" not in t["content"] for t in provider.requests[0].ordered_turns)


class TestToolsAndAttachments:
    """Test sandbox, document index and uploads."""

    def test_sandbox_container_reused(self):
        """The saved container id is passed back to the code tool."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store, metadata={"code_container_id": "cntr_7"})
        provider = FakeProvider(REPLY)
        _serve(
            _orchestrator(store, provider, sandbox_enabled=True),
            TurnRequest(conversation_id=conversation.id, message="Plot a sine wave"),
        )
        code_tools = [t for t in provider.requests[0].tools if t["type"] == "code_interpreter"]
        assert code_tools == [{"type": "code_interpreter", "container": "cntr_7"}]

    def test_document_index_enables_file_search(self):
        store = InMemoryChatStore()
        conversation = _new_conversation(store, metadata={DOCUMENT_INDEX_KEY: "vs_1"})
        provider = FakeProvider(REPLY)
        _serve(_orchestrator(store, provider), TurnRequest(conversation_id=conversation.id, message="Summarize my notes"))
        assert {"type": "file_search", "vector_store_ids": ["vs_1"]} in provider.requests[0].tools

    def test_attachments(self):
        """Images go inline; documents are uploaded in the background."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        provider = FakeProvider(REPLY)
        attachments = [
            Attachment("notes.pdf", "application/pdf", data=b"%PDF-1.4"),
            Attachment("cat.png", "image/png", url="data:image/png;base64,iVBORw0KGgo="),
        ]
        prepared, _, _ = _serve(
            _orchestrator(store, provider),
            TurnRequest(conversation_id=conversation.id, message="What's in these?", attachments=attachments),
        )

        user = store.messages[prepared.user_message.id]
        assert user.metadata["files"] == [
            {"name": "notes.pdf", "mimeType": "application/pdf"},
            {"name": "cat.png", "mimeType": "image/png"},
        ]
        assert "Attachment: notes.pdf (application/pdf)" in user.content

        current = provider.requests[0].ordered_turns[-1]
        assert current["images"] == ["data:image/png;base64,iVBORw0KGgo="]
        assert [u["filename"] for u in provider.uploads] == ["notes.pdf"]
        assert store.conversations[conversation.id].metadata[DOCUMENT_INDEX_KEY] == "vs_test"


class TestFailures:
    """Test upstream failures inside a turn."""

    def test_upstream_start_failure_fallback(self):
        """A provider that can't start yields the fallback token and no assistant row."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        provider = FakeProvider(open_error=LLMError("down", model="gpt-5-nano"))
        prepared, outcome, events = _serve(
            _orchestrator(store, provider), TurnRequest(conversation_id=conversation.id, message="hello there")
        )
        assert outcome.fallback is True
        assert {"token": FALLBACK_TOKEN} in events
        assert not any("meta" in e for e in events)
        assert events[-1] == {"done": True}
        assert [m.role for m in store.messages.values()] == ["user"]

    def test_mid_stream_failure(self):
        """error then done, and the partial reply is kept."""
        store = InMemoryChatStore()
        conversation = _new_conversation(store)
        provider = FakeProvider([text_delta("Partial"), failed()])
        _, _, events = _serve(
            _orchestrator(store, provider), TurnRequest(conversation_id=conversation.id, message="hello there")
        )
        assert events[-2:] == [{"error": "upstream_error"}, {"done": True}]
        assistant = [m for m in store.messages.values() if m.role == "assistant"]
        assert assistant[0].content == "Partial"
