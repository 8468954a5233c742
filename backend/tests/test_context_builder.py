"""
Tests for context assembly (recency window and topic-structured strategies).
"""

import asyncio
from datetime import timedelta

from routers.chat_orchestration.context_builder import (
    FILES_MARKER,
    AssemblyOptions,
    RecencyWindowStrategy,
    TopicStructuredStrategy,
    build_assembler,
    fit_newest_first,
    sanitize_message_content,
)
from routers.chat_orchestration.tokens import estimate_tokens, estimate_turns_tokens
from services.chat_store import Artifact, InMemoryChatStore, Message, Topic, new_id, utcnow

from conftest import USER_ID, seed_conversation, seed_message


def _recency(store, **overrides):
    params = {"fetch_limit": 500, "lookback_days": 14, "max_conversations": 5, "per_chat_allowance": 2000}
    params.update(overrides)
    return RecencyWindowStrategy(store, **params)


class TestSanitize:
    """Test attachment line replacement."""

    def test_attachment_lines_replaced_with_marker(self):
        """User turns with files lose their Attachment lines and gain one marker."""
        message = Message(
            id="m1",
            conversation_id="c1",
            user_id=USER_ID,
            role="user",
            content="Summarize these\n\nAttachment: a.pdf (application/pdf)\n\nAttachment: b.txt (text/plain)",
            metadata={"files": [{"name": "a.pdf"}, {"name": "b.txt"}]},
        )
        assert sanitize_message_content(message) == f"Summarize these {FILES_MARKER}"

    def test_messages_without_files_untouched(self):
        """Only user turns that carry files metadata are rewritten."""
        content = "Text\n\nAttachment: a.pdf (application/pdf)"
        message = Message(id="m1", conversation_id="c1", user_id=USER_ID, role="user", content=content)
        assert sanitize_message_content(message) == content


class TestFitNewestFirst:
    """Test the greedy fitter."""

    def test_skips_items_that_do_not_fit(self):
        """An oversized item is skipped; smaller older items can still fit."""
        kept, used = fit_newest_first([5, 50, 3], budget=10, cost=lambda n: n)
        assert kept == [3, 5]
        assert used == 8

    def test_zero_budget(self):
        """Nothing fits a zero budget."""
        kept, used = fit_newest_first([1, 2], budget=0, cost=lambda n: n)
        assert kept == []
        assert used == 0


class TestRecencyWindow:
    """Test the recency strategy."""

    def test_respects_ceiling_and_keeps_newest(self):
        """Kept turns fit the ceiling and favour recent messages."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            for i in range(10):
                await seed_message(store, conversation, "user" if i % 2 == 0 else "assistant", f"message {i} " + "x" * 70)
            return await _recency(store).assemble(conversation.id, 100, AssemblyOptions(user_id=USER_ID))

        result = asyncio.run(run())
        assert 0 < result.history_kept < result.history_total
        assert estimate_turns_tokens(result.ordered_turns) <= 100
        assert result.ordered_turns[-1]["content"].startswith("message 9")
        assert result.source_tag == "recency"

    def test_empty_conversation(self):
        """No prior messages gives no turns, still tagged recency."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            return await _recency(store).assemble(conversation.id, 1000, AssemblyOptions(user_id=USER_ID))

        result = asyncio.run(run())
        assert result.ordered_turns == []
        assert result.source_tag == "recency"

    def test_excludes_current_message(self):
        """Excluded ids never reach the context."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            await seed_message(store, conversation, "user", "earlier question")
            current = await seed_message(store, conversation, "user", "current question")
            return await _recency(store).assemble(
                conversation.id, 1000, AssemblyOptions(user_id=USER_ID, exclude_message_ids={current.id})
            )

        result = asyncio.run(run())
        assert [t["content"] for t in result.ordered_turns] == ["earlier question"]

    def test_cross_chat_block_included_when_enabled(self):
        """Recent other chats are fronted as delimited assistant turns."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            other = await seed_conversation(store, title="Trip planning")
            await seed_message(store, other, "user", "Find flights to Lisbon")
            await seed_message(store, conversation, "user", "hello")
            return await _recency(store).assemble(
                conversation.id, 1000, AssemblyOptions(user_id=USER_ID, cross_chat_enabled=True)
            )

        result = asyncio.run(run())
        first = result.ordered_turns[0]["content"]
        assert first.startswith('[Context from another chat: "Trip planning"]')
        assert "Find flights to Lisbon" in first
        assert len(result.external_conversation_ids) == 1

    def test_empty_external_list_means_none(self):
        """An explicit empty list disables cross-chat context even with consent."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            other = await seed_conversation(store, title="Other")
            await seed_message(store, other, "user", "secret plans")
            return await _recency(store).assemble(
                conversation.id,
                1000,
                AssemblyOptions(user_id=USER_ID, cross_chat_enabled=True, external_conversation_ids=[]),
            )

        result = asyncio.run(run())
        assert result.external_conversation_ids == []
        assert all("secret plans" not in t["content"] for t in result.ordered_turns)

    def test_other_users_chats_never_included(self):
        """Cross-chat lookups are scoped to the caller."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            stranger = await seed_conversation(store, user_id="someone-else", title="Theirs")
            await seed_message(store, stranger, "user", "not yours")
            return await _recency(store).assemble(
                conversation.id, 1000, AssemblyOptions(user_id=USER_ID, cross_chat_enabled=True)
            )

        result = asyncio.run(run())
        assert result.external_conversation_ids == []

    def test_stale_chats_outside_lookback(self):
        """Chats not updated within the lookback window are ignored."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            other = await seed_conversation(store, title="Old")
            await seed_message(store, other, "user", "ancient history")
            store.conversations[other.id].updated_at = utcnow() - timedelta(days=30)
            return await _recency(store).assemble(
                conversation.id, 1000, AssemblyOptions(user_id=USER_ID, cross_chat_enabled=True)
            )

        result = asyncio.run(run())
        assert result.external_conversation_ids == []


class TestTopicStructured:
    """Test the topic strategy."""

    def test_no_topic_delegates_to_recency(self):
        """Without a primary topic the recency window is used."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            await seed_message(store, conversation, "user", "hello")
            assembler = TopicStructuredStrategy(store, fallback=_recency(store))
            return await assembler.assemble(conversation.id, 1000, AssemblyOptions(user_id=USER_ID))

        result = asyncio.run(run())
        assert result.source_tag == "recency"
        assert result.ordered_turns == [{"role": "user", "content": "hello"}]

    def test_selects_topic_messages_and_summaries(self):
        """Messages of the primary and secondary topics are selected; other topics are not."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            parent = await store.create_topic(
                Topic(id="t-parent", conversation_id=conversation.id, label="Travel", summary="Planning a Europe trip")
            )
            primary = await store.create_topic(
                Topic(id="t-primary", conversation_id=conversation.id, label="Lisbon", parent_topic_id=parent.id)
            )
            other = await store.create_topic(
                Topic(id="t-other", conversation_id=conversation.id, label="Budget", summary="Spending cap 2k")
            )
            await seed_message(store, conversation, "user", "Lisbon hotels?", topic_id=primary.id)
            await seed_message(store, conversation, "assistant", "Try Alfama.", topic_id=primary.id)
            await seed_message(store, conversation, "user", "Unrelated chatter", topic_id=other.id)
            assembler = TopicStructuredStrategy(store, fallback=_recency(store))
            return await assembler.assemble(
                conversation.id,
                5000,
                AssemblyOptions(user_id=USER_ID, primary_topic_id=primary.id, secondary_topic_ids=[other.id]),
            )

        result = asyncio.run(run())
        contents = [t["content"] for t in result.ordered_turns]
        assert result.source_tag == "topic"
        assert "Lisbon hotels?" in contents
        assert "Unrelated chatter" in contents
        assert result.included_topic_ids == ["t-primary", "t-other"]

    def test_respects_ceiling_with_summaries_and_artifacts(self):
        """Messages, summaries and artifacts together never exceed the ceiling."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            topic = await store.create_topic(
                Topic(id="t1", conversation_id=conversation.id, label="Parser", summary="Writing a parser " * 5)
            )
            for i in range(20):
                await seed_message(store, conversation, "user", f"step {i} " + "y" * 120, topic_id=topic.id)
            await store.insert_artifact(
                Artifact(
                    id="a1",
                    conversation_id=conversation.id,
                    topic_id=topic.id,
                    created_by_message_id="m0",
                    type="code",
                    title="Code (PYTHON)",
                    content="def parse():\n    return 1\n" * 3,
                )
            )
            assembler = TopicStructuredStrategy(store, fallback=_recency(store), artifact_budget_ratio=0.2)
            return await assembler.assemble(
                conversation.id,
                300,
                AssemblyOptions(user_id=USER_ID, primary_topic_id=topic.id, artifact_ids=["a1"]),
            )

        result = asyncio.run(run())
        total = sum(estimate_tokens(t["content"]) for t in result.ordered_turns)
        assert total <= 300
        assert result.tokens_used == total
        assert result.history_kept < result.history_total
        assert result.artifact_count == 1

    def test_unknown_primary_falls_back(self):
        """A stale topic id degrades to the recency window."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store)
            await seed_message(store, conversation, "user", "hi")
            assembler = TopicStructuredStrategy(store, fallback=_recency(store))
            return await assembler.assemble(
                conversation.id, 1000, AssemblyOptions(user_id=USER_ID, primary_topic_id=new_id())
            )

        result = asyncio.run(run())
        assert result.source_tag == "recency"

    def test_oversized_external_topic_replaced_by_notice(self):
        """A huge topic from another chat is skipped with a notice."""
        store = InMemoryChatStore()

        async def run():
            conversation = await seed_conversation(store, project_id="p1")
            sibling = await seed_conversation(store, project_id="p1", title="Sibling")
            huge = await store.create_topic(
                Topic(id="t-huge", conversation_id=sibling.id, label="Giant", token_estimate=10_000_000)
            )
            await seed_message(store, conversation, "user", "hello")
            assembler = TopicStructuredStrategy(store, fallback=_recency(store), cross_chat_token_limit=1000)
            return await assembler.assemble(
                conversation.id, 1000, AssemblyOptions(user_id=USER_ID, primary_topic_id=huge.id)
            )

        result = asyncio.run(run())
        assert result.ordered_turns[0]["content"].startswith("[Cross-chat notice]")

    @staticmethod
    async def _project_with_sibling_topic(store):
        conversation = await seed_conversation(store, project_id="p1")
        sibling = await seed_conversation(store, project_id="p1", title="Sibling")
        primary = await store.create_topic(Topic(id="t-local", conversation_id=conversation.id, label="Local"))
        foreign = await store.create_topic(
            Topic(id="t-sibling", conversation_id=sibling.id, label="Roadmap", summary="Q3 launch plan")
        )
        await seed_message(store, conversation, "user", "local question", topic_id=primary.id)
        await seed_message(store, sibling, "user", "sibling secret", topic_id=foreign.id)
        return conversation, sibling, primary, foreign

    def test_empty_external_list_drops_sibling_topics(self):
        """An explicit empty list keeps other conversations' topics out entirely."""
        store = InMemoryChatStore()

        async def run():
            conversation, _, primary, foreign = await self._project_with_sibling_topic(store)
            assembler = TopicStructuredStrategy(store, fallback=_recency(store))
            return await assembler.assemble(
                conversation.id,
                5000,
                AssemblyOptions(
                    user_id=USER_ID,
                    primary_topic_id=primary.id,
                    secondary_topic_ids=[foreign.id],
                    external_conversation_ids=[],
                ),
            )

        result = asyncio.run(run())
        assert [t["content"] for t in result.ordered_turns] == ["local question"]
        assert result.included_topic_ids == ["t-local"]
        assert result.external_conversation_ids == []

    def test_list_narrows_sibling_topics(self):
        """A non-empty list only admits topics from the listed conversations."""
        store = InMemoryChatStore()

        async def run():
            conversation, _, primary, foreign = await self._project_with_sibling_topic(store)
            assembler = TopicStructuredStrategy(store, fallback=_recency(store))
            return await assembler.assemble(
                conversation.id,
                5000,
                AssemblyOptions(
                    user_id=USER_ID,
                    primary_topic_id=primary.id,
                    secondary_topic_ids=[foreign.id],
                    external_conversation_ids=["some-other-chat"],
                ),
            )

        result = asyncio.run(run())
        assert all("sibling secret" not in t["content"] for t in result.ordered_turns)
        assert "t-sibling" not in result.included_topic_ids

    def test_sibling_topic_only_appears_as_reference_summary(self):
        """Default inclusion never turns another chat's messages into bare turns."""
        store = InMemoryChatStore()

        async def run():
            conversation, sibling, primary, foreign = await self._project_with_sibling_topic(store)
            assembler = TopicStructuredStrategy(store, fallback=_recency(store))
            result = await assembler.assemble(
                conversation.id,
                5000,
                AssemblyOptions(user_id=USER_ID, primary_topic_id=primary.id, secondary_topic_ids=[foreign.id]),
            )
            return result, sibling

        result, sibling = asyncio.run(run())
        contents = [t["content"] for t in result.ordered_turns]
        assert "sibling secret" not in contents
        references = [c for c in contents if "sibling secret" in c]
        assert len(references) == 1
        assert references[0].startswith("[Reference summary: Roadmap from another conversation]")
        assert result.external_conversation_ids == [sibling.id]


class TestBuildAssembler:
    """Test strategy selection."""

    def test_strategy_names(self):
        """'recency' builds the recency window; anything else the topic strategy."""
        store = InMemoryChatStore()
        assert isinstance(build_assembler(store, "recency"), RecencyWindowStrategy)
        assert isinstance(build_assembler(store, "topic"), TopicStructuredStrategy)
