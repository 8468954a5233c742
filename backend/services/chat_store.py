"""
Chat Store - Durable conversation state.

Provides:
- Entity dataclasses: Conversation, Message, Topic, Artifact, Memory,
  PermanentInstruction
- ChatStore: the contract the orchestrator relies on
- PostgresChatStore: asyncpg-backed implementation (via DatabaseManager)
- InMemoryChatStore: process-local implementation for development and tests

Every list is ordered by creation time. Metadata updates are patches
merged into the stored map so concurrent writers don't clobber each
other's keys.
"""

import copy
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from errors import StoreError

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Conversation:
    id: str
    user_id: str
    title: str = "New chat"
    project_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    id: str
    conversation_id: str
    user_id: str
    role: str
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    topic_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_placeholder(self) -> bool:
        return self.role == "assistant" and bool(self.metadata.get("streaming")) and not self.content


@dataclass
class Topic:
    id: str
    conversation_id: str
    label: str = ""
    description: str = ""
    summary: str = ""
    parent_topic_id: Optional[str] = None
    token_estimate: int = 0
    stub: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Artifact:
    id: str
    conversation_id: str
    type: str
    title: str
    topic_id: Optional[str] = None
    created_by_message_id: Optional[str] = None
    summary: str = ""
    keywords: List[str] = field(default_factory=list)
    content: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Memory:
    id: str
    user_id: str
    type: str
    title: str
    content: str
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PermanentInstruction:
    id: str
    user_id: str
    content: str
    scope: str = "user"
    conversation_id: Optional[str] = None
    title: str = ""
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)


class ChatStore(ABC):
    """Durable store contract used by the chat pipeline."""

    # === Conversations ===

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation: ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    @abstractmethod
    async def patch_conversation_metadata(self, conversation_id: str, patch: Dict[str, Any]) -> None:
        """Merge `patch` into the conversation metadata (last writer wins per key)."""

    @abstractmethod
    async def list_recent_conversations(
        self,
        user_id: str,
        since: datetime,
        exclude_id: Optional[str] = None,
        limit: int = 5,
        conversation_ids: Optional[List[str]] = None,
    ) -> List[Conversation]:
        """Most recently updated conversations of a user, newest first."""

    @abstractmethod
    async def find_conversation_by_container(self, user_id: str, container_id: str) -> Optional[Conversation]:
        """The caller's conversation whose sandbox container is `container_id`, if any."""

    # === Messages ===

    @abstractmethod
    async def insert_message(self, message: Message) -> Message: ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]: ...

    @abstractmethod
    async def update_message(
        self,
        message_id: str,
        content: Optional[str] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
    ) -> bool: ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> bool: ...

    @abstractmethod
    async def list_messages(
        self,
        conversation_id: str,
        limit: int = 200,
        topic_id: Optional[str] = None,
        newest_first: bool = True,
    ) -> List[Message]: ...

    @abstractmethod
    async def assign_topic(
        self,
        message_ids: List[str],
        topic_id: str,
        replaceable_topic_ids: Iterable[Optional[str]] = (None,),
    ) -> int:
        """Set topic_id on messages whose current topic is in `replaceable_topic_ids`."""

    # === Topics ===

    @abstractmethod
    async def create_topic(self, topic: Topic) -> Topic: ...

    @abstractmethod
    async def get_topic(self, topic_id: str) -> Optional[Topic]: ...

    @abstractmethod
    async def list_topics(self, conversation_id: str) -> List[Topic]: ...

    @abstractmethod
    async def list_project_topics(self, project_id: str, exclude_conversation_id: Optional[str] = None) -> List[Topic]: ...

    @abstractmethod
    async def update_topic(self, topic_id: str, **fields: Any) -> bool: ...

    # === Artifacts ===

    @abstractmethod
    async def insert_artifact(self, artifact: Artifact) -> Artifact: ...

    @abstractmethod
    async def list_artifacts(
        self,
        conversation_id: str,
        topic_ids: Optional[List[str]] = None,
        limit: int = 50,
    ) -> List[Artifact]: ...

    @abstractmethod
    async def has_artifacts_for_message(self, message_id: str) -> bool: ...

    # === Memories ===

    @abstractmethod
    async def list_memories(self, user_id: str, types: Optional[List[str]] = None, limit: int = 50) -> List[Memory]: ...

    @abstractmethod
    async def list_memory_types(self, user_id: str) -> List[str]: ...

    @abstractmethod
    async def insert_memory(self, memory: Memory) -> Memory: ...

    @abstractmethod
    async def delete_memory(self, user_id: str, memory_id: str) -> bool: ...

    # === Permanent instructions ===

    @abstractmethod
    async def list_permanent_instructions(self, user_id: str, conversation_id: Optional[str] = None) -> List[PermanentInstruction]: ...

    @abstractmethod
    async def insert_permanent_instruction(self, instruction: PermanentInstruction) -> PermanentInstruction: ...

    @abstractmethod
    async def delete_permanent_instruction(self, user_id: str, instruction_id: str) -> bool: ...

    # === Usage ===

    @abstractmethod
    async def insert_usage(self, record: Dict[str, Any]) -> None: ...


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryChatStore(ChatStore):
    """Process-local store. Not durable; used when PostgreSQL is disabled and in tests."""

    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, Message] = {}
        self.topics: Dict[str, Topic] = {}
        self.artifacts: Dict[str, Artifact] = {}
        self.memories: Dict[str, Memory] = {}
        self.instructions: Dict[str, PermanentInstruction] = {}
        self.usage: List[Dict[str, Any]] = []
        self._seq = itertools.count()
        self._order: Dict[str, int] = {}

    def _stamp(self, entity_id: str) -> None:
        self._order.setdefault(entity_id, next(self._seq))

    def _sort_key(self, entity) -> tuple:
        return (entity.created_at, self._order.get(entity.id, 0))

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        self._stamp(conversation.id)
        self.conversations[conversation.id] = copy.deepcopy(conversation)
        return copy.deepcopy(conversation)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        found = self.conversations.get(conversation_id)
        return copy.deepcopy(found) if found else None

    async def patch_conversation_metadata(self, conversation_id: str, patch: Dict[str, Any]) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise StoreError("Conversation not found", operation="patch_conversation_metadata")
        conversation.metadata = {**conversation.metadata, **copy.deepcopy(patch)}
        conversation.updated_at = utcnow()

    async def list_recent_conversations(
        self,
        user_id: str,
        since: datetime,
        exclude_id: Optional[str] = None,
        limit: int = 5,
        conversation_ids: Optional[List[str]] = None,
    ) -> List[Conversation]:
        wanted = set(conversation_ids) if conversation_ids is not None else None
        found = [
            c for c in self.conversations.values()
            if c.user_id == user_id
            and c.id != exclude_id
            and c.updated_at >= since
            and (wanted is None or c.id in wanted)
        ]
        found.sort(key=lambda c: c.updated_at, reverse=True)
        return [copy.deepcopy(c) for c in found[:limit]]

    async def find_conversation_by_container(self, user_id: str, container_id: str) -> Optional[Conversation]:
        for conversation in self.conversations.values():
            if conversation.user_id == user_id and conversation.metadata.get("code_container_id") == container_id:
                return copy.deepcopy(conversation)
        return None

    async def insert_message(self, message: Message) -> Message:
        if message.id in self.messages:
            raise StoreError("Duplicate message id", operation="insert_message", message_id=message.id)
        self._stamp(message.id)
        self.messages[message.id] = copy.deepcopy(message)
        conversation = self.conversations.get(message.conversation_id)
        if conversation:
            conversation.updated_at = utcnow()
        return copy.deepcopy(message)

    async def get_message(self, message_id: str) -> Optional[Message]:
        found = self.messages.get(message_id)
        return copy.deepcopy(found) if found else None

    async def update_message(
        self,
        message_id: str,
        content: Optional[str] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
    ) -> bool:
        message = self.messages.get(message_id)
        if message is None:
            return False
        if content is not None:
            message.content = content
        if metadata_patch:
            message.metadata = {**message.metadata, **copy.deepcopy(metadata_patch)}
        return True

    async def delete_message(self, message_id: str) -> bool:
        return self.messages.pop(message_id, None) is not None

    async def list_messages(
        self,
        conversation_id: str,
        limit: int = 200,
        topic_id: Optional[str] = None,
        newest_first: bool = True,
    ) -> List[Message]:
        found = [
            m for m in self.messages.values()
            if m.conversation_id == conversation_id and (topic_id is None or m.topic_id == topic_id)
        ]
        found.sort(key=self._sort_key, reverse=True)
        found = found[:limit]
        if not newest_first:
            found.reverse()
        return [copy.deepcopy(m) for m in found]

    async def assign_topic(
        self,
        message_ids: List[str],
        topic_id: str,
        replaceable_topic_ids: Iterable[Optional[str]] = (None,),
    ) -> int:
        replaceable = set(replaceable_topic_ids)
        changed = 0
        for message_id in message_ids:
            message = self.messages.get(message_id)
            if message is not None and message.topic_id in replaceable:
                message.topic_id = topic_id
                changed += 1
        return changed

    async def create_topic(self, topic: Topic) -> Topic:
        self._stamp(topic.id)
        self.topics[topic.id] = copy.deepcopy(topic)
        return copy.deepcopy(topic)

    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        found = self.topics.get(topic_id)
        return copy.deepcopy(found) if found else None

    async def list_topics(self, conversation_id: str) -> List[Topic]:
        found = [t for t in self.topics.values() if t.conversation_id == conversation_id]
        found.sort(key=self._sort_key)
        return [copy.deepcopy(t) for t in found]

    async def list_project_topics(self, project_id: str, exclude_conversation_id: Optional[str] = None) -> List[Topic]:
        conversation_ids = {
            c.id for c in self.conversations.values()
            if c.project_id == project_id and c.id != exclude_conversation_id
        }
        found = [t for t in self.topics.values() if t.conversation_id in conversation_ids]
        found.sort(key=self._sort_key)
        return [copy.deepcopy(t) for t in found]

    async def update_topic(self, topic_id: str, **fields: Any) -> bool:
        topic = self.topics.get(topic_id)
        if topic is None:
            return False
        for key, value in fields.items():
            if not hasattr(topic, key) or key in {"id", "conversation_id", "created_at"}:
                raise StoreError(f"Cannot update topic field {key!r}", operation="update_topic")
            setattr(topic, key, value)
        topic.updated_at = utcnow()
        return True

    async def insert_artifact(self, artifact: Artifact) -> Artifact:
        self._stamp(artifact.id)
        self.artifacts[artifact.id] = copy.deepcopy(artifact)
        return copy.deepcopy(artifact)

    async def list_artifacts(
        self,
        conversation_id: str,
        topic_ids: Optional[List[str]] = None,
        limit: int = 50,
    ) -> List[Artifact]:
        wanted = set(topic_ids) if topic_ids is not None else None
        found = [
            a for a in self.artifacts.values()
            if a.conversation_id == conversation_id and (wanted is None or a.topic_id in wanted)
        ]
        found.sort(key=self._sort_key, reverse=True)
        return [copy.deepcopy(a) for a in found[:limit]]

    async def has_artifacts_for_message(self, message_id: str) -> bool:
        return any(a.created_by_message_id == message_id for a in self.artifacts.values())

    async def list_memories(self, user_id: str, types: Optional[List[str]] = None, limit: int = 50) -> List[Memory]:
        found = [
            m for m in self.memories.values()
            if m.user_id == user_id and m.enabled and (types is None or m.type in types)
        ]
        found.sort(key=self._sort_key, reverse=True)
        return [copy.deepcopy(m) for m in found[:limit]]

    async def list_memory_types(self, user_id: str) -> List[str]:
        return sorted({m.type for m in self.memories.values() if m.user_id == user_id and m.enabled})

    async def insert_memory(self, memory: Memory) -> Memory:
        self._stamp(memory.id)
        self.memories[memory.id] = copy.deepcopy(memory)
        return copy.deepcopy(memory)

    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        memory = self.memories.get(memory_id)
        if memory is None or memory.user_id != user_id:
            return False
        del self.memories[memory_id]
        return True

    async def list_permanent_instructions(self, user_id: str, conversation_id: Optional[str] = None) -> List[PermanentInstruction]:
        found = [
            i for i in self.instructions.values()
            if i.user_id == user_id
            and i.enabled
            and (i.scope == "user" or (conversation_id is not None and i.conversation_id == conversation_id))
        ]
        found.sort(key=self._sort_key)
        return [copy.deepcopy(i) for i in found]

    async def insert_permanent_instruction(self, instruction: PermanentInstruction) -> PermanentInstruction:
        self._stamp(instruction.id)
        self.instructions[instruction.id] = copy.deepcopy(instruction)
        return copy.deepcopy(instruction)

    async def delete_permanent_instruction(self, user_id: str, instruction_id: str) -> bool:
        instruction = self.instructions.get(instruction_id)
        if instruction is None or instruction.user_id != user_id:
            return False
        del self.instructions[instruction_id]
        return True

    async def insert_usage(self, record: Dict[str, Any]) -> None:
        self.usage.append(dict(record))


# =============================================================================
# PostgreSQL implementation
# =============================================================================

_CONVERSATION_COLUMNS = "id, user_id, project_id, title, metadata, created_at, updated_at"
_MESSAGE_COLUMNS = "id, conversation_id, user_id, role, content, metadata, topic_id, created_at"
_TOPIC_COLUMNS = (
    "id, conversation_id, parent_topic_id, label, description, summary, "
    "token_estimate, stub, created_at, updated_at"
)
_ARTIFACT_COLUMNS = (
    "id, conversation_id, topic_id, created_by_message_id, type, title, summary, keywords, content, created_at"
)
_MEMORY_COLUMNS = "id, user_id, type, title, content, enabled, created_at"
_INSTRUCTION_COLUMNS = "id, user_id, scope, conversation_id, title, content, enabled, created_at"

_TOPIC_UPDATABLE = {"label", "description", "summary", "parent_topic_id", "token_estimate", "stub"}


class PostgresChatStore(ChatStore):
    """ChatStore over PostgreSQL, using the shared DatabaseManager pool."""

    def __init__(self, db):
        self.db = db

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        row = await self.db.fetchrow(
            f"""
            INSERT INTO conversations (id, user_id, project_id, title, metadata)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            conversation.id, conversation.user_id, conversation.project_id,
            conversation.title, conversation.metadata,
        )
        return Conversation(**row)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = await self.db.fetchrow(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = $1", conversation_id
        )
        return Conversation(**row) if row else None

    async def patch_conversation_metadata(self, conversation_id: str, patch: Dict[str, Any]) -> None:
        await self.db.execute(
            """
            UPDATE conversations
            SET metadata = COALESCE(metadata, '{}'::jsonb) || $2::jsonb, updated_at = now()
            WHERE id = $1
            """,
            conversation_id, patch,
        )

    async def list_recent_conversations(
        self,
        user_id: str,
        since: datetime,
        exclude_id: Optional[str] = None,
        limit: int = 5,
        conversation_ids: Optional[List[str]] = None,
    ) -> List[Conversation]:
        rows = await self.db.fetch(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE user_id = $1
              AND updated_at >= $2
              AND ($3::text IS NULL OR id <> $3)
              AND ($4::text[] IS NULL OR id = ANY($4))
            ORDER BY updated_at DESC
            LIMIT $5
            """,
            user_id, since, exclude_id, conversation_ids, limit,
        )
        return [Conversation(**row) for row in rows]

    async def find_conversation_by_container(self, user_id: str, container_id: str) -> Optional[Conversation]:
        row = await self.db.fetchrow(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE user_id = $1 AND metadata->>'code_container_id' = $2
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            user_id, container_id,
        )
        return Conversation(**row) if row else None

    async def insert_message(self, message: Message) -> Message:
        row = await self.db.fetchrow(
            f"""
            INSERT INTO messages (id, conversation_id, user_id, role, content, metadata, topic_id)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            RETURNING {_MESSAGE_COLUMNS}
            """,
            message.id, message.conversation_id, message.user_id, message.role,
            message.content, message.metadata, message.topic_id,
        )
        await self.db.execute("UPDATE conversations SET updated_at = now() WHERE id = $1", message.conversation_id)
        return Message(**row)

    async def get_message(self, message_id: str) -> Optional[Message]:
        row = await self.db.fetchrow(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = $1", message_id)
        return Message(**row) if row else None

    async def update_message(
        self,
        message_id: str,
        content: Optional[str] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
    ) -> bool:
        status = await self.db.execute(
            """
            UPDATE messages
            SET content = COALESCE($2, content),
                metadata = COALESCE(metadata, '{}'::jsonb) || COALESCE($3::jsonb, '{}'::jsonb)
            WHERE id = $1
            """,
            message_id, content, metadata_patch,
        )
        return status.endswith(" 1")

    async def delete_message(self, message_id: str) -> bool:
        status = await self.db.execute("DELETE FROM messages WHERE id = $1", message_id)
        return status.endswith(" 1")

    async def list_messages(
        self,
        conversation_id: str,
        limit: int = 200,
        topic_id: Optional[str] = None,
        newest_first: bool = True,
    ) -> List[Message]:
        rows = await self.db.fetch(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE conversation_id = $1 AND ($2::text IS NULL OR topic_id = $2)
            ORDER BY created_at DESC
            LIMIT $3
            """,
            conversation_id, topic_id, limit,
        )
        messages = [Message(**row) for row in rows]
        if not newest_first:
            messages.reverse()
        return messages

    async def assign_topic(
        self,
        message_ids: List[str],
        topic_id: str,
        replaceable_topic_ids: Iterable[Optional[str]] = (None,),
    ) -> int:
        replaceable = list(replaceable_topic_ids)
        allow_null = None in replaceable
        named = [t for t in replaceable if t is not None]
        status = await self.db.execute(
            """
            UPDATE messages SET topic_id = $2
            WHERE id = ANY($1::text[])
              AND ((topic_id IS NULL AND $3) OR topic_id = ANY($4::text[]))
            """,
            message_ids, topic_id, allow_null, named,
        )
        return int(status.rsplit(" ", 1)[-1] or 0)

    async def create_topic(self, topic: Topic) -> Topic:
        row = await self.db.fetchrow(
            f"""
            INSERT INTO conversation_topics
                (id, conversation_id, parent_topic_id, label, description, summary, token_estimate, stub)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING {_TOPIC_COLUMNS}
            """,
            topic.id, topic.conversation_id, topic.parent_topic_id, topic.label,
            topic.description, topic.summary, topic.token_estimate, topic.stub,
        )
        return Topic(**row)

    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        row = await self.db.fetchrow(f"SELECT {_TOPIC_COLUMNS} FROM conversation_topics WHERE id = $1", topic_id)
        return Topic(**row) if row else None

    async def list_topics(self, conversation_id: str) -> List[Topic]:
        rows = await self.db.fetch(
            f"SELECT {_TOPIC_COLUMNS} FROM conversation_topics WHERE conversation_id = $1 ORDER BY created_at",
            conversation_id,
        )
        return [Topic(**row) for row in rows]

    async def list_project_topics(self, project_id: str, exclude_conversation_id: Optional[str] = None) -> List[Topic]:
        rows = await self.db.fetch(
            f"""
            SELECT {", ".join("t." + c.strip() for c in _TOPIC_COLUMNS.split(","))}
            FROM conversation_topics t
            JOIN conversations c ON c.id = t.conversation_id
            WHERE c.project_id = $1 AND ($2::text IS NULL OR c.id <> $2)
            ORDER BY t.created_at
            """,
            project_id, exclude_conversation_id,
        )
        return [Topic(**row) for row in rows]

    async def update_topic(self, topic_id: str, **fields: Any) -> bool:
        unknown = set(fields) - _TOPIC_UPDATABLE
        if unknown:
            raise StoreError(f"Cannot update topic fields {sorted(unknown)}", operation="update_topic")
        if not fields:
            return False
        keys = list(fields)
        assignments = ", ".join(f"{key} = ${i + 2}" for i, key in enumerate(keys))
        status = await self.db.execute(
            f"UPDATE conversation_topics SET {assignments}, updated_at = now() WHERE id = $1",
            topic_id, *[fields[k] for k in keys],
        )
        return status.endswith(" 1")

    async def insert_artifact(self, artifact: Artifact) -> Artifact:
        row = await self.db.fetchrow(
            f"""
            INSERT INTO artifacts
                (id, conversation_id, topic_id, created_by_message_id, type, title, summary, keywords, content)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
            RETURNING {_ARTIFACT_COLUMNS}
            """,
            artifact.id, artifact.conversation_id, artifact.topic_id, artifact.created_by_message_id,
            artifact.type, artifact.title, artifact.summary, artifact.keywords, artifact.content,
        )
        return Artifact(**row)

    async def list_artifacts(
        self,
        conversation_id: str,
        topic_ids: Optional[List[str]] = None,
        limit: int = 50,
    ) -> List[Artifact]:
        rows = await self.db.fetch(
            f"""
            SELECT {_ARTIFACT_COLUMNS} FROM artifacts
            WHERE conversation_id = $1 AND ($2::text[] IS NULL OR topic_id = ANY($2))
            ORDER BY created_at DESC
            LIMIT $3
            """,
            conversation_id, topic_ids, limit,
        )
        return [Artifact(**row) for row in rows]

    async def has_artifacts_for_message(self, message_id: str) -> bool:
        found = await self.db.fetchval(
            "SELECT EXISTS (SELECT 1 FROM artifacts WHERE created_by_message_id = $1)", message_id
        )
        return bool(found)

    async def list_memories(self, user_id: str, types: Optional[List[str]] = None, limit: int = 50) -> List[Memory]:
        rows = await self.db.fetch(
            f"""
            SELECT {_MEMORY_COLUMNS} FROM memories
            WHERE user_id = $1 AND enabled AND ($2::text[] IS NULL OR type = ANY($2))
            ORDER BY created_at DESC
            LIMIT $3
            """,
            user_id, types, limit,
        )
        return [Memory(**row) for row in rows]

    async def list_memory_types(self, user_id: str) -> List[str]:
        rows = await self.db.fetch(
            "SELECT DISTINCT type FROM memories WHERE user_id = $1 AND enabled ORDER BY type", user_id
        )
        return [row["type"] for row in rows]

    async def insert_memory(self, memory: Memory) -> Memory:
        row = await self.db.fetchrow(
            f"""
            INSERT INTO memories (id, user_id, type, title, content, enabled)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {_MEMORY_COLUMNS}
            """,
            memory.id, memory.user_id, memory.type, memory.title, memory.content, memory.enabled,
        )
        return Memory(**row)

    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        status = await self.db.execute("DELETE FROM memories WHERE id = $1 AND user_id = $2", memory_id, user_id)
        return status.endswith(" 1")

    async def list_permanent_instructions(self, user_id: str, conversation_id: Optional[str] = None) -> List[PermanentInstruction]:
        rows = await self.db.fetch(
            f"""
            SELECT {_INSTRUCTION_COLUMNS} FROM permanent_instructions
            WHERE user_id = $1 AND enabled
              AND (scope = 'user' OR ($2::text IS NOT NULL AND conversation_id = $2))
            ORDER BY created_at
            """,
            user_id, conversation_id,
        )
        return [PermanentInstruction(**row) for row in rows]

    async def insert_permanent_instruction(self, instruction: PermanentInstruction) -> PermanentInstruction:
        row = await self.db.fetchrow(
            f"""
            INSERT INTO permanent_instructions (id, user_id, scope, conversation_id, title, content, enabled)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING {_INSTRUCTION_COLUMNS}
            """,
            instruction.id, instruction.user_id, instruction.scope, instruction.conversation_id,
            instruction.title, instruction.content, instruction.enabled,
        )
        return PermanentInstruction(**row)

    async def delete_permanent_instruction(self, user_id: str, instruction_id: str) -> bool:
        status = await self.db.execute(
            "DELETE FROM permanent_instructions WHERE id = $1 AND user_id = $2", instruction_id, user_id
        )
        return status.endswith(" 1")

    async def insert_usage(self, record: Dict[str, Any]) -> None:
        await self.db.execute(
            """
            INSERT INTO usage_records
                (user_id, conversation_id, model, input_tokens, cached_tokens, output_tokens,
                 reasoning_tokens, estimated_cost)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            record["user_id"], record["conversation_id"], record["model"],
            record.get("input_tokens", 0), record.get("cached_tokens", 0),
            record.get("output_tokens", 0), record.get("reasoning_tokens", 0),
            record.get("estimated_cost", 0.0),
        )


def entity_to_dict(entity) -> Dict[str, Any]:
    """JSON-friendly dict for an entity dataclass (datetimes as ISO strings)."""
    data = asdict(entity)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data
