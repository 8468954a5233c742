"""
Context Assembler - bounded conversation history for the main model.

Two interchangeable strategies behind one interface:
- RecencyWindowStrategy: newest-first greedy fit over this conversation,
  plus an optional read-only block from the user's other recent chats
- TopicStructuredStrategy: primary/secondary topic messages, topic
  summaries and artifacts under the same token discipline

Both skip (never abort on) items that don't fit and never exceed the
ceiling. Overflow is not an error; the kept ratio is logged and reported
back as context usage.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from config import runtime_config
from services.chat_store import ChatStore, Conversation, Message, Topic, utcnow
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

T = TypeVar("T")

ATTACHMENT_LINE = re.compile(r"\n\nAttachment: [^\n]+ \([^)]+\)(?=\n|$)")
FILES_MARKER = "[Files attached]"
SECONDARY_TOPIC_TAIL = 3
TAIL_SNIPPET_CHARS = 140
CROSS_CHAT_MESSAGE_LIMIT = 40


@dataclass
class AssemblyOptions:
    """Per-call knobs. `external_conversation_ids=None` means default inclusion; `[]` means none."""

    user_id: Optional[str] = None
    exclude_message_ids: Set[str] = field(default_factory=set)
    cross_chat_enabled: bool = False
    external_conversation_ids: Optional[List[str]] = None
    primary_topic_id: Optional[str] = None
    secondary_topic_ids: List[str] = field(default_factory=list)
    artifact_ids: List[str] = field(default_factory=list)


@dataclass
class AssembledContext:
    ordered_turns: List[Dict[str, str]]
    included_topic_ids: List[str]
    included_message_ids: List[str]
    source_tag: str
    ceiling: int = 0
    tokens_used: int = 0
    history_total: int = 0
    history_kept: int = 0
    external_conversation_ids: List[str] = field(default_factory=list)
    summary_count: int = 0
    artifact_count: int = 0

    def context_usage(self) -> Dict[str, Any]:
        """Observability payload attached to the final `meta` event."""
        return {
            "sourceTag": self.source_tag,
            "ceiling": self.ceiling,
            "tokensUsed": self.tokens_used,
            "keptMessages": self.history_kept,
            "totalMessages": self.history_total,
            "externalChats": len(self.external_conversation_ids),
            "summaries": self.summary_count,
            "artifacts": self.artifact_count,
        }


def sanitize_message_content(message: Message) -> str:
    """Drop inline attachment lines from user turns that carry files."""
    content = message.content or ""
    if message.role == "user" and isinstance(message.metadata.get("files"), list):
        content = ATTACHMENT_LINE.sub("", content).strip()
        if content and FILES_MARKER not in content:
            content = f"{content} {FILES_MARKER}"
    return content


def fit_newest_first(
    items_newest_first: Sequence[T],
    budget: int,
    cost: Callable[[T], int],
) -> Tuple[List[T], int]:
    """Greedy fit: keep each item that fits the remaining budget, skip the rest.

    Returns:
        (kept items in chronological order, tokens used)
    """
    kept: List[T] = []
    used = 0
    remaining = max(0, budget)
    for item in items_newest_first:
        tokens = cost(item)
        if tokens <= remaining:
            kept.append(item)
            used += tokens
            remaining -= tokens
    kept.reverse()
    return kept, used


def _turn(role: str, content: str) -> Dict[str, str]:
    return {"role": role, "content": content}


class ContextAssembler(ABC):
    """Common interface of the context strategies."""

    source_tag = "recency"

    @abstractmethod
    async def assemble(
        self,
        conversation_id: str,
        ceiling_tokens: int,
        options: Optional[AssemblyOptions] = None,
    ) -> AssembledContext: ...


class RecencyWindowStrategy(ContextAssembler):
    """Most recent turns that fit, optionally fronted by other-chat context."""

    source_tag = "recency"

    def __init__(
        self,
        store: ChatStore,
        fetch_limit: Optional[int] = None,
        lookback_days: Optional[int] = None,
        max_conversations: Optional[int] = None,
        per_chat_allowance: Optional[int] = None,
    ):
        self.store = store
        self.fetch_limit = fetch_limit or runtime_config.history_fetch_limit
        self.lookback_days = lookback_days or runtime_config.cross_chat_lookback_days
        self.max_conversations = (
            max_conversations if max_conversations is not None else runtime_config.cross_chat_max_conversations
        )
        self.per_chat_allowance = (
            per_chat_allowance if per_chat_allowance is not None else runtime_config.cross_chat_token_allowance
        )

    async def assemble(
        self,
        conversation_id: str,
        ceiling_tokens: int,
        options: Optional[AssemblyOptions] = None,
    ) -> AssembledContext:
        options = options or AssemblyOptions()
        ceiling = max(0, int(ceiling_tokens or 0))

        rows = await self.store.list_messages(conversation_id, limit=self.fetch_limit)
        candidates = [
            (m, sanitize_message_content(m))
            for m in rows
            if m.id not in options.exclude_message_ids and (m.content or "").strip()
        ]
        kept, used = fit_newest_first(candidates, ceiling, lambda pair: estimate_tokens(pair[1]))

        external_turns, external_ids, external_used = await self._cross_chat_block(
            conversation_id, options, ceiling - used
        )

        turns = external_turns + [_turn(m.role, content) for m, content in kept]
        result = AssembledContext(
            ordered_turns=turns,
            included_topic_ids=sorted({m.topic_id for m, _ in kept if m.topic_id}),
            included_message_ids=[m.id for m, _ in kept],
            source_tag=self.source_tag,
            ceiling=ceiling,
            tokens_used=used + external_used,
            history_total=len(candidates),
            history_kept=len(kept),
            external_conversation_ids=external_ids,
        )
        if result.history_kept < result.history_total:
            logger.info(
                f"Context trimmed: kept {result.history_kept}/{result.history_total} messages "
                f"({result.tokens_used}/{ceiling} tokens)"
            )
        return result

    async def _resolve_external(self, conversation_id: str, options: AssemblyOptions) -> List[Conversation]:
        requested = options.external_conversation_ids
        if requested is not None and len(requested) == 0:
            return []
        if requested is None and not options.cross_chat_enabled:
            return []
        if self.max_conversations <= 0:
            return []

        user_id = options.user_id
        if user_id is None:
            current = await self.store.get_conversation(conversation_id)
            if current is None:
                return []
            user_id = current.user_id

        since = utcnow() - timedelta(days=self.lookback_days)
        return await self.store.list_recent_conversations(
            user_id,
            since=since,
            exclude_id=conversation_id,
            limit=self.max_conversations,
            conversation_ids=list(requested) if requested is not None else None,
        )

    async def _cross_chat_block(
        self,
        conversation_id: str,
        options: AssemblyOptions,
        budget: int,
    ) -> Tuple[List[Dict[str, str]], List[str], int]:
        """One delimited assistant turn per other chat, each within the per-chat allowance."""
        if budget <= 0:
            return [], [], 0

        conversations = await self._resolve_external(conversation_id, options)
        turns: List[Dict[str, str]] = []
        included: List[str] = []
        used = 0

        for conversation in conversations:
            cap = min(self.per_chat_allowance, budget - used)
            if cap <= 0:
                break
            messages = await self.store.list_messages(conversation.id, limit=CROSS_CHAT_MESSAGE_LIMIT)
            block = self._render_block(conversation, messages, cap)
            if block is None:
                continue
            turns.append(_turn("assistant", block))
            included.append(conversation.id)
            used += estimate_tokens(block)

        # Oldest chat first so the most recent one sits closest to the live history
        turns.reverse()
        included.reverse()
        return turns, included, used

    @staticmethod
    def _render_block(conversation: Conversation, messages_newest_first: List[Message], cap: int) -> Optional[str]:
        header = f'[Context from another chat: "{conversation.title or "Untitled chat"}"]'
        footer = "[End of context from another chat]"
        lines: List[str] = []
        for message in messages_newest_first:
            content = sanitize_message_content(message).strip()
            if not content:
                continue
            speaker = "User" if message.role == "user" else "Assistant"
            candidate = [f"{speaker}: {content}"] + lines
            if estimate_tokens("\n".join([header, *candidate, footer])) <= cap:
                lines = candidate
        if not lines:
            return None
        return "\n".join([header, *lines, footer])


class TopicStructuredStrategy(ContextAssembler):
    """Topic-graph selection: topic messages, summaries and artifacts.

    Delegates to the recency strategy when no primary topic is known.
    """

    source_tag = "topic"

    def __init__(
        self,
        store: ChatStore,
        fallback: Optional[RecencyWindowStrategy] = None,
        cross_chat_token_limit: Optional[int] = None,
        artifact_budget_ratio: Optional[float] = None,
    ):
        self.store = store
        self.fallback = fallback or RecencyWindowStrategy(store)
        self.cross_chat_token_limit = cross_chat_token_limit or runtime_config.cross_chat_token_limit
        self.artifact_budget_ratio = (
            artifact_budget_ratio if artifact_budget_ratio is not None else runtime_config.artifact_budget_ratio
        )

    async def assemble(
        self,
        conversation_id: str,
        ceiling_tokens: int,
        options: Optional[AssemblyOptions] = None,
    ) -> AssembledContext:
        options = options or AssemblyOptions()
        ceiling = max(0, int(ceiling_tokens or 0))

        if not options.primary_topic_id:
            return await self.fallback.assemble(conversation_id, ceiling, options)

        conversation = await self.store.get_conversation(conversation_id)
        topics = await self._load_topic_map(conversation)
        primary = topics.get(options.primary_topic_id)
        if primary is None:
            logger.info(f"Primary topic {options.primary_topic_id} not found, using recency window")
            return await self.fallback.assemble(conversation_id, ceiling, options)
        if not self._external_allowed(primary, conversation_id, options):
            logger.info(f"Primary topic {primary.id} belongs to an excluded conversation, using recency window")
            return await self.fallback.assemble(conversation_id, ceiling, options)

        blocked: List[Topic] = []
        if self._is_oversized_external(primary, conversation_id):
            notices, notice_cost = fit_newest_first(
                [_turn("assistant", self._blocked_notice(primary))], ceiling, lambda t: estimate_tokens(t["content"])
            )
            result = await self.fallback.assemble(conversation_id, ceiling - notice_cost, options)
            result.ordered_turns = notices + result.ordered_turns
            result.tokens_used += notice_cost
            result.ceiling = ceiling
            result.summary_count += len(notices)
            return result

        secondary: List[Topic] = []
        for topic_id in options.secondary_topic_ids:
            topic = topics.get(topic_id)
            if topic is None or topic.id == primary.id:
                continue
            if not self._external_allowed(topic, conversation_id, options):
                continue
            if self._is_oversized_external(topic, conversation_id):
                blocked.append(topic)
            else:
                secondary.append(topic)

        # Only this conversation's topics contribute raw turns; other chats appear as reference summaries
        local = [t for t in [primary, *secondary] if t.conversation_id == conversation_id]
        external = [t for t in [primary, *secondary] if t.conversation_id != conversation_id]

        messages: List[Message] = []
        for topic in local:
            messages.extend(await self.store.list_messages(conversation_id, topic_id=topic.id, newest_first=False))
        messages = [m for m in messages if m.id not in options.exclude_message_ids and (m.content or "").strip()]
        messages.sort(key=lambda m: m.created_at)

        notices = [_turn("assistant", self._blocked_notice(t)) for t in blocked]
        references = await self._reference_turns(external, origin=" from another conversation")
        framing = await self._summary_turns(primary, secondary, topics, conversation_id)
        summaries = notices + framing + references

        artifact_turns, artifact_topic_ids = await self._artifact_turns(
            conversation_id, options.artifact_ids, min(ceiling, int(ceiling * self.artifact_budget_ratio))
        )
        artifact_cost = self._cost(artifact_turns)

        message_turns = [(m, sanitize_message_content(m)) for m in messages]
        all_message_cost = sum(estimate_tokens(content) for _, content in message_turns)

        if all_message_cost + artifact_cost <= ceiling:
            kept = message_turns
            summaries = notices + references
            summaries, summary_cost = fit_newest_first(
                list(reversed(summaries)), ceiling - all_message_cost - artifact_cost, lambda t: estimate_tokens(t["content"])
            )
            message_cost = all_message_cost
        else:
            summaries, summary_cost = fit_newest_first(
                list(reversed(summaries)), ceiling - artifact_cost, lambda t: estimate_tokens(t["content"])
            )
            kept, message_cost = fit_newest_first(
                list(reversed(message_turns)),
                ceiling - artifact_cost - summary_cost,
                lambda pair: estimate_tokens(pair[1]),
            )

        turns = [_turn(m.role, content) for m, content in kept] + summaries + artifact_turns
        if not turns:
            return await self.fallback.assemble(conversation_id, ceiling, options)

        included_topics: List[str] = [primary.id] + [t.id for t in secondary]
        for topic_id in artifact_topic_ids:
            if topic_id not in included_topics:
                included_topics.append(topic_id)

        result = AssembledContext(
            ordered_turns=turns,
            included_topic_ids=included_topics,
            included_message_ids=[m.id for m, _ in kept],
            source_tag=self.source_tag,
            ceiling=ceiling,
            tokens_used=message_cost + summary_cost + artifact_cost,
            history_total=len(message_turns),
            history_kept=len(kept),
            external_conversation_ids=sorted({t.conversation_id for t in external}),
            summary_count=len(summaries),
            artifact_count=len(artifact_turns),
        )
        logger.info(
            f"Topic context: {result.history_kept}/{result.history_total} messages, "
            f"{result.summary_count} summaries, {result.artifact_count} artifacts "
            f"({result.tokens_used}/{ceiling} tokens)"
        )
        return result

    @staticmethod
    def _cost(turns: List[Dict[str, str]]) -> int:
        return sum(estimate_tokens(t["content"]) for t in turns)

    async def _load_topic_map(self, conversation: Optional[Conversation]) -> Dict[str, Topic]:
        if conversation is None:
            return {}
        topics = await self.store.list_topics(conversation.id)
        if conversation.project_id:
            topics.extend(await self.store.list_project_topics(conversation.project_id, conversation.id))
        return {t.id: t for t in topics}

    @staticmethod
    def _external_allowed(topic: Topic, conversation_id: str, options: AssemblyOptions) -> bool:
        """Same-project topics are included by default; `[]` excludes them, a list narrows them."""
        if topic.conversation_id == conversation_id:
            return True
        requested = options.external_conversation_ids
        if requested is None:
            return True
        return topic.conversation_id in requested

    def _is_oversized_external(self, topic: Topic, conversation_id: str) -> bool:
        return topic.conversation_id != conversation_id and topic.token_estimate > self.cross_chat_token_limit

    @staticmethod
    def _blocked_notice(topic: Topic) -> str:
        return (
            f'[Cross-chat notice] Skipped topic "{topic.label}" from another conversation '
            f"because it is too large to include."
        )

    async def _summary_turns(
        self,
        primary: Topic,
        secondary: List[Topic],
        topics: Dict[str, Topic],
        conversation_id: str,
    ) -> List[Dict[str, str]]:
        turns: List[Dict[str, str]] = []

        if primary.conversation_id == conversation_id:
            # Ancestors give the primary topic its framing, root first
            ancestors: List[Topic] = []
            seen = {primary.id}
            parent_id = primary.parent_topic_id
            while parent_id and parent_id not in seen and parent_id in topics:
                seen.add(parent_id)
                ancestors.insert(0, topics[parent_id])
                parent_id = topics[parent_id].parent_topic_id

            for topic in [*ancestors, primary]:
                if topic.summary.strip():
                    turns.append(_turn("assistant", f"[Topic summary: {topic.label}] {topic.summary.strip()}"))

        local_secondary = [t for t in secondary if t.conversation_id == conversation_id]
        turns.extend(await self._reference_turns(local_secondary))
        return turns

    async def _reference_turns(self, topics: List[Topic], origin: str = "") -> List[Dict[str, str]]:
        """One delimited summary turn per topic: its summary plus a tail of recent snippets."""
        turns: List[Dict[str, str]] = []
        for topic in topics:
            parts: List[str] = []
            if topic.summary.strip():
                parts.append(topic.summary.strip())
            tail = await self.store.list_messages(topic.conversation_id, limit=SECONDARY_TOPIC_TAIL, topic_id=topic.id)
            snippets = [
                sanitize_message_content(m).replace("\n", " ").strip()[:TAIL_SNIPPET_CHARS]
                for m in reversed(tail)
            ]
            snippets = [s for s in snippets if s]
            if snippets:
                parts.append("Recent notes: " + " / ".join(snippets))
            if not parts:
                continue
            turns.append(_turn("assistant", f"[Reference summary: {topic.label}{origin}] {' | '.join(parts)}"))
        return turns

    async def _artifact_turns(
        self,
        conversation_id: str,
        artifact_ids: List[str],
        budget: int,
    ) -> Tuple[List[Dict[str, str]], List[str]]:
        if not artifact_ids or budget <= 0:
            return [], []
        wanted = set(artifact_ids)
        artifacts = [a for a in await self.store.list_artifacts(conversation_id, limit=200) if a.id in wanted]

        turns: List[Dict[str, str]] = []
        topic_ids: List[str] = []
        remaining = budget
        for artifact in artifacts:
            content = f"[Artifact: {artifact.title or 'Unnamed artifact'}] {artifact.content}"
            tokens = estimate_tokens(content)
            if tokens > remaining:
                continue
            turns.append(_turn("assistant", content))
            remaining -= tokens
            if artifact.topic_id and artifact.topic_id not in topic_ids:
                topic_ids.append(artifact.topic_id)
        return turns, topic_ids


def build_assembler(store: ChatStore, strategy: str = "topic") -> ContextAssembler:
    """Construct the configured context strategy."""
    recency = RecencyWindowStrategy(store)
    if strategy == "recency":
        return recency
    return TopicStructuredStrategy(store, fallback=recency)
