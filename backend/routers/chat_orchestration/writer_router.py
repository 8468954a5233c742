"""
Writer Router - post-stream bookkeeping.

After the assistant reply is final, decides what durable side effects the
turn produced and applies them:
- topic create / refine / running-summary update
- memories to write or delete (policy path only)
- permanent instructions to write or delete (policy path only)
- artifacts extracted from fenced code blocks

decide() never raises: a failed or invalid policy answer degrades to the
deterministic path. apply() is best-effort per item: one failed write is
logged and the rest of the batch still runs.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import pydantic
from pydantic import BaseModel

from config import runtime_config
from errors import LLMError, log_error
from logging_config import log_writer
from services.chat_store import (
    Artifact,
    ChatStore,
    Memory,
    Message,
    PermanentInstruction,
    Topic,
    new_id,
)

from .artifacts import extract_artifacts
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

LABEL_WORDS = 5
SUMMARY_CHARS = 200
SNAPSHOT_MESSAGES = 8
SNAPSHOT_SNIPPET_CHARS = 220
SNAPSHOT_MAX_CHARS = 900

POLICY_INSTRUCTIONS = """You maintain long-lived notes for a chat assistant. You never reply to the user.

Given the latest exchange, the current topic and recent messages, output ONE JSON object:
{
  "topicWrite": {"action": "create" | "update" | "skip", "targetTopicId": string | null,
                 "label": string | null, "summary": string | null, "description": string | null},
  "memoriesToWrite": [{"type": string, "title": string, "content": string}],
  "memoriesToDelete": [{"id": string, "reason": string}],
  "permanentInstructionsToWrite": [{"scope": "user" | "conversation", "title": string, "content": string}],
  "permanentInstructionsToDelete": [{"id": string, "reason": string}]
}

Rules:
- Only save memories the user clearly stated about themselves. Types: identity, food_preferences,
  romantic_interests, work_context, hobbies, or another short snake_case type.
- Only write permanent instructions when the user explicitly asks for a standing rule ("always", "from now on").
- Deletes need the id of an existing item and a reason.
- summary is at most 200 characters. label is 3-5 title-case words.
- Use empty arrays when nothing applies."""


# =============================================================================
# Policy schema
# =============================================================================


class TopicWritePolicy(BaseModel):
    action: str = "skip"
    targetTopicId: Optional[str] = None
    label: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None


class MemoryWritePolicy(BaseModel):
    type: str
    title: str
    content: str

    @pydantic.field_validator("type", "title", "content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class InstructionWritePolicy(BaseModel):
    scope: str = "user"
    title: str = ""
    content: str

    @pydantic.field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class DeletePolicy(BaseModel):
    id: str
    reason: str

    @pydantic.field_validator("id", "reason")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


# =============================================================================
# Decision types
# =============================================================================


@dataclass
class TopicWrite:
    action: str = "skip"  # create, update, skip
    target_topic_id: Optional[str] = None
    label: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None


@dataclass
class WriterDecision:
    topic_write: TopicWrite = field(default_factory=TopicWrite)
    memories_to_write: List[MemoryWritePolicy] = field(default_factory=list)
    memories_to_delete: List[DeletePolicy] = field(default_factory=list)
    instructions_to_write: List[InstructionWritePolicy] = field(default_factory=list)
    instructions_to_delete: List[DeletePolicy] = field(default_factory=list)
    artifacts_to_write: List[Artifact] = field(default_factory=list)
    decided_by: str = "deterministic"


@dataclass
class WriterContext:
    """Identifiers and settings apply() needs for one finished turn."""

    user_id: str
    conversation_id: str
    user_message_id: str
    assistant_message_id: Optional[str]
    current_topic: Optional[Topic] = None
    allow_saving_memory: bool = True
    turn_text: str = ""


# =============================================================================
# Deterministic helpers
# =============================================================================


def auto_label(text: str) -> str:
    words = " ".join((text or "").split()).split(" ")[:LABEL_WORDS]
    label = " ".join(w[:1].upper() + w[1:] for w in words if w).strip()
    return label or "New Topic"


def auto_summary(text: str) -> str:
    clean = " ".join((text or "").split())
    if not clean:
        return "New topic started."
    return f"{clean[:SUMMARY_CHARS]}…" if len(clean) > SUMMARY_CHARS else clean


def snapshot_summary(messages: Sequence[Message]) -> str:
    """Running topic summary built from the last few messages."""
    parts = []
    for message in list(messages)[-SNAPSHOT_MESSAGES:]:
        snippet = " ".join((message.content or "").split())[:SNAPSHOT_SNIPPET_CHARS]
        if snippet:
            parts.append(f"{message.role}: {snippet}")
    return " | ".join(parts)[:SNAPSHOT_MAX_CHARS]


def _validate_items(model: type, items: Any, kind: str) -> list:
    """Validate a list of policy items one by one; invalid items are dropped."""
    valid = []
    for item in items if isinstance(items, list) else []:
        try:
            valid.append(model.model_validate(item))
        except pydantic.ValidationError as e:
            logger.warning(f"Writer policy dropped invalid {kind}: {e.errors()[0].get('msg', e)}")
    return valid


class WriterRouter:
    """Decides and applies the post-stream writes for a turn."""

    def __init__(self, store: ChatStore, provider=None, policy_enabled: bool = True, policy_timeout: float = 8.0):
        self.store = store
        self.provider = provider
        self.policy_enabled = policy_enabled and provider is not None
        self.policy_timeout = policy_timeout

    # === decide ===

    def deterministic_topic_write(
        self,
        user_text: str,
        recent_turns: Sequence[Message],
        current_topic: Optional[Topic],
    ) -> TopicWrite:
        if current_topic is None:
            return TopicWrite(
                action="create",
                label=auto_label(user_text),
                summary=auto_summary(user_text),
                description=auto_summary(user_text),
            )
        if current_topic.stub:
            return TopicWrite(
                action="update",
                target_topic_id=current_topic.id,
                label=current_topic.label or auto_label(user_text),
                summary=auto_summary(user_text),
                description=current_topic.description or auto_summary(user_text),
            )
        return TopicWrite(
            action="update",
            target_topic_id=current_topic.id,
            summary=snapshot_summary(recent_turns) or current_topic.summary,
        )

    async def decide(
        self,
        user_text: str,
        assistant_text: str,
        recent_turns: Sequence[Message],
        candidate_topics: Sequence[Topic],
        current_topic: Optional[Topic],
        assistant_message: Optional[Message] = None,
    ) -> WriterDecision:
        """Decide the writes for a finished turn.

        Args:
            user_text: The user's message
            assistant_text: The final assistant reply
            recent_turns: Chronological tail of the conversation, this turn included
            candidate_topics: Topics the policy may target
            current_topic: Topic the turn was routed to, if any
            assistant_message: Persisted assistant row; enables artifact extraction

        Returns:
            WriterDecision (deterministic when the policy is off or fails)
        """
        decision = WriterDecision(
            topic_write=self.deterministic_topic_write(user_text, recent_turns, current_topic),
        )
        if assistant_message is not None:
            decision.artifacts_to_write = extract_artifacts(
                assistant_message, topic_id=current_topic.id if current_topic else None
            )

        if not self.policy_enabled:
            return decision

        try:
            raw = await self.provider.complete_json(
                model=runtime_config.model_for_family(runtime_config.router_model_family),
                instructions=POLICY_INSTRUCTIONS,
                payload={
                    "userMessage": user_text,
                    "assistantMessage": assistant_text[:4000],
                    "currentTopic": {
                        "id": current_topic.id,
                        "label": current_topic.label,
                        "summary": current_topic.summary,
                    } if current_topic else None,
                    "topics": [{"id": t.id, "label": t.label} for t in candidate_topics],
                    "recentMessages": [
                        {"role": m.role, "content": (m.content or "")[:400]} for m in list(recent_turns)[-6:]
                    ],
                },
                timeout=self.policy_timeout,
            )
        except LLMError as e:
            logger.warning(f"Writer policy failed, using deterministic writes: {e}")
            return decision

        topic_ids = {t.id for t in candidate_topics}
        if current_topic:
            topic_ids.add(current_topic.id)
        try:
            topic_policy = TopicWritePolicy.model_validate(raw.get("topicWrite") or {})
        except pydantic.ValidationError as e:
            logger.warning(f"Writer policy topicWrite invalid, keeping deterministic topic: {e}")
            topic_policy = None

        if topic_policy is not None:
            if topic_policy.action == "create" and (topic_policy.label or "").strip():
                decision.topic_write = TopicWrite(
                    action="create",
                    label=topic_policy.label.strip(),
                    summary=(topic_policy.summary or auto_summary(user_text))[:SUMMARY_CHARS],
                    description=topic_policy.description or "",
                )
            elif topic_policy.action == "update" and topic_policy.targetTopicId in topic_ids:
                decision.topic_write = TopicWrite(
                    action="update",
                    target_topic_id=topic_policy.targetTopicId,
                    label=topic_policy.label,
                    summary=topic_policy.summary,
                    description=topic_policy.description,
                )

        decision.memories_to_write = _validate_items(MemoryWritePolicy, raw.get("memoriesToWrite"), "memory write")
        decision.memories_to_delete = _validate_items(DeletePolicy, raw.get("memoriesToDelete"), "memory delete")
        decision.instructions_to_write = _validate_items(
            InstructionWritePolicy, raw.get("permanentInstructionsToWrite"), "instruction write"
        )
        decision.instructions_to_delete = _validate_items(
            DeletePolicy, raw.get("permanentInstructionsToDelete"), "instruction delete"
        )
        decision.decided_by = "policy"
        return decision

    # === apply ===

    async def apply(self, decision: WriterDecision, context: WriterContext) -> Dict[str, int]:
        """Apply a decision. Each item is independent; failures are logged, never raised.

        Returns:
            Counts of applied writes per kind
        """
        applied = {"topics": 0, "memories": 0, "instructions": 0, "artifacts": 0, "failed": 0}

        try:
            if await self._apply_topic(decision.topic_write, context):
                applied["topics"] += 1
        except Exception as e:
            applied["failed"] += 1
            log_error(logger, e, context="writer_topic", include_traceback=False)

        if decision.memories_to_write and not context.allow_saving_memory:
            log_writer(logger, "memory", "skip", reason="saving disabled", count=len(decision.memories_to_write))
        elif decision.memories_to_write:
            for item in decision.memories_to_write:
                try:
                    await self.store.insert_memory(
                        Memory(id=new_id(), user_id=context.user_id, type=item.type, title=item.title, content=item.content)
                    )
                    applied["memories"] += 1
                    log_writer(logger, "memory", "create", type=item.type, title=item.title)
                except Exception as e:
                    applied["failed"] += 1
                    log_error(logger, e, context="writer_memory", include_traceback=False)

        for item in decision.memories_to_delete:
            try:
                if await self.store.delete_memory(context.user_id, item.id):
                    applied["memories"] += 1
                    log_writer(logger, "memory", "delete", id=item.id, reason=item.reason)
            except Exception as e:
                applied["failed"] += 1
                log_error(logger, e, context="writer_memory_delete", include_traceback=False)

        for item in decision.instructions_to_write:
            try:
                scope = "conversation" if item.scope == "conversation" else "user"
                await self.store.insert_permanent_instruction(
                    PermanentInstruction(
                        id=new_id(),
                        user_id=context.user_id,
                        content=item.content,
                        scope=scope,
                        conversation_id=context.conversation_id if scope == "conversation" else None,
                        title=item.title,
                    )
                )
                applied["instructions"] += 1
                log_writer(logger, "instruction", "create", scope=scope)
            except Exception as e:
                applied["failed"] += 1
                log_error(logger, e, context="writer_instruction", include_traceback=False)

        for item in decision.instructions_to_delete:
            try:
                if await self.store.delete_permanent_instruction(context.user_id, item.id):
                    applied["instructions"] += 1
                    log_writer(logger, "instruction", "delete", id=item.id)
            except Exception as e:
                applied["failed"] += 1
                log_error(logger, e, context="writer_instruction_delete", include_traceback=False)

        if decision.artifacts_to_write and context.assistant_message_id:
            try:
                already = await self.store.has_artifacts_for_message(context.assistant_message_id)
            except Exception as e:
                already = True
                applied["failed"] += 1
                log_error(logger, e, context="writer_artifacts", include_traceback=False)
            for artifact in [] if already else decision.artifacts_to_write:
                try:
                    await self.store.insert_artifact(artifact)
                    applied["artifacts"] += 1
                    log_writer(logger, "artifact", "create", type=artifact.type, title=artifact.title)
                except Exception as e:
                    applied["failed"] += 1
                    log_error(logger, e, context="writer_artifact", include_traceback=False)

        return applied

    async def _apply_topic(self, write: TopicWrite, context: WriterContext) -> bool:
        turn_tokens = estimate_tokens(context.turn_text)
        message_ids = [m for m in (context.user_message_id, context.assistant_message_id) if m]

        if write.action == "create":
            topic = await self.store.create_topic(
                Topic(
                    id=new_id(),
                    conversation_id=context.conversation_id,
                    label=write.label or "New Topic",
                    summary=write.summary or "",
                    description=write.description or "",
                    token_estimate=turn_tokens,
                )
            )
            replaceable: List[Optional[str]] = [None]
            if context.current_topic is not None and context.current_topic.stub:
                replaceable.append(context.current_topic.id)
            moved = await self.store.assign_topic(message_ids, topic.id, replaceable_topic_ids=replaceable)
            log_writer(logger, "topic", "create", id=topic.id, label=topic.label, messages=moved)
            return True

        if write.action == "update" and write.target_topic_id:
            fields: Dict[str, Any] = {"stub": False}
            if write.label:
                fields["label"] = write.label
            if write.summary:
                fields["summary"] = write.summary
            if write.description:
                fields["description"] = write.description
            current = context.current_topic
            if current is not None and current.id == write.target_topic_id:
                fields["token_estimate"] = current.token_estimate + turn_tokens
            updated = await self.store.update_topic(write.target_topic_id, **fields)
            log_writer(logger, "topic", "update" if updated else "skip", id=write.target_topic_id)
            return updated

        return False
