"""
Parley Chat Orchestrator - One user turn, end to end

Contains:
- Attachment / TurnRequest / PreparedTurn: request types
- ChatOrchestrator: validation (prepare) and the request state machine (run)

Flow of run():
    1. Decision Router, stub topic, tag the user message
    2. model_info
    3. context assembly | evidence gate | memories | instructions (concurrent)
    4. deferred attachment uploads (detached)
    5. system prompt
    6. tool plan and cache key
    7. Streaming Engine, Writer Router as its finalize hook
    done is emitted once, from the finally block.

Usage:
    orchestrator = ChatOrchestrator(store, provider, evidence_gate)
    prepared = await orchestrator.prepare(turn, user_id)   # raises before streaming
    task = asyncio.create_task(orchestrator.run(prepared, channel, cancel))
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from config import runtime_config
from errors import (
    NotFoundError,
    StreamCancelled,
    ValidationError,
    ErrorCode,
    log_error,
    log_task_failure,
    soft_fail,
    stream_error_code,
)
from logging_config import log_message_in
from services.chat_store import (
    Artifact,
    ChatStore,
    Conversation,
    Memory,
    Message,
    PermanentInstruction,
    Topic,
    new_id,
)
from services.llm_client import ProviderRequest
from services.sandbox import CONTAINER_METADATA_KEY, code_interpreter_tool

from ..chat_prompts import build_system_prompt, format_date_context
from ..chat_streaming import CancelToken, EventChannel, error_event, model_info_event, status_event
from .context_builder import AssembledContext, AssemblyOptions, ContextAssembler, build_assembler
from .decision_router import Decision, DecisionRouter
from .evidence_gate import EvidenceGate, GateResult, resolve_tool_plan
from .stream_engine import EngineRequest, StreamingEngine, StreamOutcome
from .tokens import estimate_tokens
from .writer_router import SNAPSHOT_MESSAGES, WriterContext, WriterRouter, auto_label

logger = logging.getLogger(__name__)

DOCUMENT_INDEX_KEY = "document_index_id"
ACTIVE_TOPIC_KEY = "active_topic_id"

RECENT_FOR_ROUTING = 10
RECENT_FOR_EVIDENCE = 6
ARTIFACTS_FOR_ROUTING = 10
CACHE_KEY_MAX = 64

DEFAULT_PERSONALIZATION = {
    "base_style": None,
    "custom_instructions": None,
    "reference_saved_memories": True,
    "allow_saving_memory": True,
    "cross_chat_history": True,
}


@dataclass
class Attachment:
    name: str
    mime_type: str
    url: Optional[str] = None  # data URL or hosted URL, images only
    data: Optional[bytes] = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass
class TurnRequest:
    """One client turn, already decoded from the wire."""

    conversation_id: Optional[str]
    message: Optional[str]
    project_id: Optional[str] = None
    user_message_id: Optional[str] = None
    speed_mode: str = "auto"
    model_family: str = "auto"
    force_web_search: bool = False
    external_conversation_ids: Optional[List[str]] = None
    personalization: Dict[str, Any] = field(default_factory=dict)
    attachments: List[Attachment] = field(default_factory=list)
    locale: Optional[str] = None
    timezone: Optional[str] = None


@dataclass
class PreparedTurn:
    request: TurnRequest
    user_id: str
    conversation: Conversation
    user_message: Message
    personalization: Dict[str, Any]
    cross_chat_enabled: bool = False


@dataclass
class TurnContext:
    """Results of the concurrent lookups in step 3."""

    context: AssembledContext
    gate: GateResult
    memories: Sequence[Memory]
    instructions: Sequence[PermanentInstruction]


def user_message_content(message: str, attachments: Sequence[Attachment]) -> str:
    """Message text with one `Attachment: name (mime)` line per file."""
    content = message
    for attachment in attachments:
        content += f"\n\nAttachment: {attachment.name} ({attachment.mime_type})"
    return content


def prompt_cache_key(conversation_id: str, topic_id: Optional[str]) -> str:
    key = f"{conversation_id}:{topic_id or 'none'}"
    if len(key) > CACHE_KEY_MAX:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()
    return key


# =============================================================================
# Best-effort lookups
# =============================================================================


@soft_fail("memories", default=(), logger=logger)
async def _load_memories(store: ChatStore, user_id: str, types: List[str], limit: int) -> Sequence[Memory]:
    if not types:
        return ()
    return await store.list_memories(user_id, types=types, limit=limit)


@soft_fail("instructions", default=(), logger=logger)
async def _load_instructions(store: ChatStore, user_id: str, conversation_id: str) -> Sequence[PermanentInstruction]:
    return await store.list_permanent_instructions(user_id, conversation_id=conversation_id)


@soft_fail("memory_types", default=(), logger=logger)
async def _load_memory_types(store: ChatStore, user_id: str) -> Sequence[str]:
    return await store.list_memory_types(user_id)


@soft_fail("project_topics", default=(), logger=logger)
async def _load_project_topics(store: ChatStore, conversation: Conversation) -> Sequence[Topic]:
    if not conversation.project_id:
        return ()
    return await store.list_project_topics(conversation.project_id, exclude_conversation_id=conversation.id)


@soft_fail("artifacts", default=(), logger=logger)
async def _load_artifacts(store: ChatStore, conversation_id: str) -> Sequence[Artifact]:
    return await store.list_artifacts(conversation_id, limit=ARTIFACTS_FOR_ROUTING)


class ChatOrchestrator:
    """Owns the collaborators and runs one turn per call to run()."""

    def __init__(
        self,
        store: ChatStore,
        provider,
        evidence_gate: EvidenceGate,
        config=None,
        decision_router: Optional[DecisionRouter] = None,
        writer_router: Optional[WriterRouter] = None,
        assembler: Optional[ContextAssembler] = None,
    ):
        self.store = store
        self.provider = provider
        self.evidence_gate = evidence_gate
        self.config = config or runtime_config
        self.decision_router = decision_router or DecisionRouter(
            provider,
            policy_enabled=self.config.decision_policy_enabled,
            policy_timeout=self.config.policy_timeout_s,
        )
        self.writer_router = writer_router or WriterRouter(
            store,
            provider,
            policy_enabled=self.config.writer_policy_enabled,
            policy_timeout=self.config.policy_timeout_s,
        )
        self.assembler = assembler or build_assembler(store, self.config.context_strategy)
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # Validation
    # =========================================================================

    async def prepare(self, request: TurnRequest, user_id: str) -> PreparedTurn:
        """Validate the turn and insert (or reuse) the user message.

        Raises:
            ValidationError: blank message, missing conversation id, project mismatch
            NotFoundError: unknown conversation, or one owned by another user
        """
        if not request.message or not request.message.strip():
            raise ValidationError("Message is required", parameter="message")
        if not request.conversation_id:
            raise ValidationError("Conversation id is required", parameter="conversationId")

        conversation = await self.store.get_conversation(request.conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise NotFoundError(
                "Conversation not found",
                resource_type="conversation",
                resource_id=request.conversation_id,
            )

        if request.project_id and request.project_id != conversation.project_id:
            raise ValidationError(
                "Conversation does not belong to this project",
                code=ErrorCode.VALIDATION_PROJECT_MISMATCH,
                parameter="projectId",
                expected=conversation.project_id or "none",
                received=request.project_id,
            )

        user_message = await self._ensure_user_message(request, conversation, user_id)
        personalization = {**DEFAULT_PERSONALIZATION, **(request.personalization or {})}
        return PreparedTurn(
            request=request,
            user_id=user_id,
            conversation=conversation,
            user_message=user_message,
            personalization=personalization,
            cross_chat_enabled=self.config.cross_chat_default_enabled and bool(personalization.get("cross_chat_history")),
        )

    async def _ensure_user_message(self, request: TurnRequest, conversation: Conversation, user_id: str) -> Message:
        if request.user_message_id:
            existing = await self.store.get_message(request.user_message_id)
            if existing is not None:
                if (
                    existing.conversation_id != conversation.id
                    or existing.user_id != user_id
                    or existing.role != "user"
                ):
                    raise NotFoundError(
                        "Message not found",
                        resource_type="message",
                        resource_id=request.user_message_id,
                    )
                logger.info(f"Reusing user message {existing.id} (retry)")
                return existing

        metadata: Dict[str, Any] = {}
        if request.attachments:
            metadata["files"] = [{"name": a.name, "mimeType": a.mime_type} for a in request.attachments]
        message = Message(
            id=request.user_message_id or new_id(),
            conversation_id=conversation.id,
            user_id=user_id,
            role="user",
            content=user_message_content(request.message.strip(), request.attachments),
            metadata=metadata,
        )
        return await self.store.insert_message(message)

    # =========================================================================
    # Request state machine
    # =========================================================================

    async def run(self, prepared: PreparedTurn, channel: EventChannel, cancel: CancelToken) -> Optional[StreamOutcome]:
        """Serve one prepared turn onto the channel. Always ends with a single done."""
        log_message_in(
            logger,
            prepared.request.message or "",
            conversation=prepared.conversation.id,
            attachments=len(prepared.request.attachments),
        )
        try:
            return await self._run(prepared, channel, cancel)
        except StreamCancelled:
            logger.info(f"Turn cancelled for conversation {prepared.conversation.id}")
            return None
        except Exception as e:
            log_error(logger, e, context="orchestrator")
            if not cancel.cancelled and not channel.meta_sent:
                try:
                    await channel.send(error_event(stream_error_code(e)))
                except StreamCancelled:
                    pass
            return None
        finally:
            channel.finish()

    async def _run(self, prepared: PreparedTurn, channel: EventChannel, cancel: CancelToken) -> StreamOutcome:
        request = prepared.request
        conversation = prepared.conversation
        date_context = format_date_context(request.timezone)

        # 1. Routing
        recent, topics, artifacts, memory_types = await self._routing_inputs(prepared)
        cancel.raise_if_cancelled()
        decision = await self.decision_router.route(
            user_text=request.message,
            recent_turns=recent,
            active_topic_id=conversation.metadata.get(ACTIVE_TOPIC_KEY),
            available_memory_types=memory_types,
            available_topics=topics,
            available_artifacts=artifacts,
            speed_preference=request.speed_mode,
            model_preference=request.model_family,
        )
        current_topic, topics = await self._resolve_topic(prepared, decision, topics)
        cancel.raise_if_cancelled()

        # 2. Model info
        await channel.send(
            model_info_event(decision.model, decision.model_family, decision.speed_mode, decision.reasoning_effort)
        )

        engine = StreamingEngine(
            self.provider,
            self.store,
            channel,
            cancel,
            start_timeout=self.config.stream_start_timeout_s,
            public_base_url=self.config.public_base_url,
        )

        # 3. Concurrent lookups
        turn = await self._gather_context(prepared, decision, recent, date_context, channel, engine)
        cancel.raise_if_cancelled()

        # 4. Deferred uploads
        self._schedule_uploads(prepared)

        # 5-6. Prompt and tools
        extra_tools: List[Dict[str, Any]] = []
        container_id = conversation.metadata.get(CONTAINER_METADATA_KEY)
        if self.config.sandbox_enabled:
            extra_tools.append(code_interpreter_tool(container_id))
        index_id = conversation.metadata.get(DOCUMENT_INDEX_KEY)
        if index_id:
            extra_tools.append({"type": "file_search", "vector_store_ids": [index_id]})
        plan = resolve_tool_plan(
            turn.gate,
            force_live_search=request.force_web_search,
            extra_tools=extra_tools,
        )
        tool_types = {t.get("type") for t in plan.tools}

        instructions = build_system_prompt(
            memories=turn.memories,
            instructions=turn.instructions,
            personalization=prepared.personalization,
            evidence_block=turn.gate.evidence_block,
            search_enabled=plan.search_allowed,
            file_search_enabled="file_search" in tool_types,
            code_enabled="code_interpreter" in tool_types,
            force_web_search=request.force_web_search,
            date_context=date_context,
        )

        current_turn: Dict[str, Any] = {"role": "user", "content": prepared.user_message.content}
        images = [a.url for a in request.attachments if a.is_image and a.url]
        if images:
            current_turn["images"] = images

        topic_id = decision.primary_topic_id
        provider_request = ProviderRequest(
            model=decision.model,
            instructions=instructions,
            ordered_turns=turn.context.ordered_turns + [current_turn],
            tools=plan.tools,
            tool_choice=plan.tool_choice,
            reasoning_effort=decision.reasoning_effort,
            cache_key=prompt_cache_key(conversation.id, topic_id),
            user_id=prepared.user_id,
        )

        # 7-8. Stream, then write
        engine.finalize_hook = self._writer_hook(prepared, current_topic, topics)
        base_metadata: Dict[str, Any] = {
            "routedBy": decision.routed_by,
            "topicAction": decision.topic_action,
            "evidence": {
                "sufficient": turn.gate.sufficient,
                "skipped": turn.gate.skipped,
                "skipReason": turn.gate.skip_reason,
            },
        }
        if topic_id:
            base_metadata["topicId"] = topic_id
        if turn.gate.source_domains:
            base_metadata["searchDomains"] = list(turn.gate.source_domains)
        if turn.gate.queries:
            base_metadata["evidenceQueries"] = list(turn.gate.queries)

        return await engine.run(
            EngineRequest(
                provider_request=provider_request,
                conversation_id=conversation.id,
                user_id=prepared.user_id,
                user_message_id=prepared.user_message.id,
                assistant_message_id=new_id(),
                model_family=decision.model_family,
                topic_id=topic_id,
                container_id=container_id,
                base_metadata=base_metadata,
                context_usage=turn.context.context_usage(),
            )
        )

    # =========================================================================
    # Steps
    # =========================================================================

    async def _routing_inputs(self, prepared: PreparedTurn):
        conversation = prepared.conversation
        reference_memories = bool(prepared.personalization.get("reference_saved_memories"))

        async def _memory_types() -> Sequence[str]:
            if not reference_memories:
                return ()
            return await _load_memory_types(self.store, prepared.user_id)

        newest_first, topics, project_topics, artifacts, memory_types = await asyncio.gather(
            self.store.list_messages(conversation.id, limit=RECENT_FOR_ROUTING + 1),
            self.store.list_topics(conversation.id),
            _load_project_topics(self.store, conversation),
            _load_artifacts(self.store, conversation.id),
            _memory_types(),
        )
        recent = [m for m in reversed(newest_first) if m.id != prepared.user_message.id][-RECENT_FOR_ROUTING:]
        return recent, list(topics) + list(project_topics), list(artifacts), list(memory_types)

    async def _resolve_topic(self, prepared: PreparedTurn, decision: Decision, topics: List[Topic]):
        """Create the stub topic for a new thread and tag the user message."""
        conversation = prepared.conversation
        if decision.topic_action == "new" and not decision.primary_topic_id:
            stub = await self.store.create_topic(
                Topic(
                    id=new_id(),
                    conversation_id=conversation.id,
                    label=decision.new_topic_label or auto_label(prepared.request.message),
                    parent_topic_id=decision.new_parent_topic_id,
                    stub=True,
                )
            )
            decision.primary_topic_id = stub.id
            topics = topics + [stub]
            logger.info(f"Stub topic {stub.id} created: {stub.label}")

        topic_id = decision.primary_topic_id
        if not topic_id:
            return None, topics

        current = next((t for t in topics if t.id == topic_id), None)
        if current is None:
            current = await self.store.get_topic(topic_id)

        if prepared.user_message.topic_id is None:
            tagged = await self.store.assign_topic([prepared.user_message.id], topic_id)
            if tagged:
                prepared.user_message.topic_id = topic_id

        if conversation.metadata.get(ACTIVE_TOPIC_KEY) != topic_id:
            await self._patch_conversation(conversation, {ACTIVE_TOPIC_KEY: topic_id})
        return current, topics

    async def _gather_context(
        self,
        prepared: PreparedTurn,
        decision: Decision,
        recent: Sequence[Message],
        date_context: str,
        channel: EventChannel,
        engine: StreamingEngine,
    ) -> TurnContext:
        request = prepared.request
        ceiling = max(0, self.config.context_ceiling_tokens - estimate_tokens(prepared.user_message.content))
        options = AssemblyOptions(
            user_id=prepared.user_id,
            exclude_message_ids={prepared.user_message.id},
            cross_chat_enabled=prepared.cross_chat_enabled,
            external_conversation_ids=request.external_conversation_ids,
            primary_topic_id=decision.primary_topic_id,
            secondary_topic_ids=decision.secondary_topic_ids,
            artifact_ids=decision.artifact_ids_to_load,
        )

        async def _evidence() -> GateResult:
            if not self.evidence_gate.will_run(request.message, request.force_web_search):
                return await self.evidence_gate.gate(
                    request.message, [], request.locale, date_context, force=request.force_web_search
                )

            async def _progress(payload: Dict[str, Any]) -> None:
                await channel.send(status_event("evidence-progress", stage=payload.get("stage"), detail=payload.get("message")))

            await channel.send(status_event("evidence-start"))
            started = time.time()
            result = await self.evidence_gate.gate(
                request.message,
                [{"role": m.role, "content": m.content} for m in list(recent)[-RECENT_FOR_EVIDENCE:]],
                request.locale,
                date_context,
                force=request.force_web_search,
                on_progress=_progress,
            )
            await channel.send(
                status_event(
                    "evidence-complete",
                    sufficient=result.sufficient,
                    skipped=result.skipped,
                    reason=result.skip_reason,
                    sources=len(result.sources),
                    durationMs=int((time.time() - started) * 1000),
                )
            )
            for domain in engine.domains.add_many(result.source_domains):
                await channel.send(status_event("search-domain", domain=domain))
            return result

        memories_allowed = bool(prepared.personalization.get("reference_saved_memories"))
        context, gate, memories, instructions = await asyncio.gather(
            self.assembler.assemble(prepared.conversation.id, ceiling, options),
            _evidence(),
            _load_memories(
                self.store,
                prepared.user_id,
                decision.memory_types_to_load if memories_allowed else [],
                self.config.memory_load_limit,
            ),
            _load_instructions(self.store, prepared.user_id, prepared.conversation.id),
        )
        return TurnContext(context=context, gate=gate, memories=memories, instructions=instructions)

    def _schedule_uploads(self, prepared: PreparedTurn) -> None:
        files = [a for a in prepared.request.attachments if not a.is_image and a.data]
        if not files or not self.config.attachment_upload_enabled:
            return
        task = asyncio.create_task(self._upload_attachments(prepared.conversation, files))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(log_task_failure(logger, "attachment_upload"))

    async def _upload_attachments(self, conversation: Conversation, files: Sequence[Attachment]) -> int:
        """Upload documents into the conversation's index; later turns can file_search them."""
        existing = conversation.metadata.get(DOCUMENT_INDEX_KEY)
        index_id = await self.provider.ensure_document_index(conversation.id, existing)
        if index_id != existing:
            await self.store.patch_conversation_metadata(conversation.id, {DOCUMENT_INDEX_KEY: index_id})
            conversation.metadata[DOCUMENT_INDEX_KEY] = index_id

        uploaded = 0
        for attachment in files:
            try:
                await self.provider.upload_file(index_id, attachment.name, attachment.data, attachment.mime_type)
                uploaded += 1
            except Exception as e:
                log_error(logger, e, context=f"attachment_upload:{attachment.name}")
        logger.info(f"Uploaded {uploaded}/{len(files)} attachments to {index_id}")
        return uploaded

    def _writer_hook(self, prepared: PreparedTurn, current_topic: Optional[Topic], topics: Sequence[Topic]):
        async def _hook(assistant_message: Message) -> None:
            newest_first = await self.store.list_messages(
                prepared.conversation.id,
                limit=SNAPSHOT_MESSAGES,
                topic_id=current_topic.id if current_topic else None,
            )
            decision = await self.writer_router.decide(
                user_text=prepared.request.message,
                assistant_text=assistant_message.content,
                recent_turns=list(reversed(newest_first)),
                candidate_topics=topics,
                current_topic=current_topic,
                assistant_message=assistant_message,
            )
            await self.writer_router.apply(
                decision,
                WriterContext(
                    user_id=prepared.user_id,
                    conversation_id=prepared.conversation.id,
                    user_message_id=prepared.user_message.id,
                    assistant_message_id=assistant_message.id,
                    current_topic=current_topic,
                    allow_saving_memory=bool(prepared.personalization.get("allow_saving_memory")),
                    turn_text=f"{prepared.request.message}\n{assistant_message.content}",
                ),
            )

        return _hook

    async def _patch_conversation(self, conversation: Conversation, patch: Dict[str, Any]) -> None:
        try:
            await self.store.patch_conversation_metadata(conversation.id, patch)
            conversation.metadata.update(patch)
        except Exception as e:
            log_error(logger, e, context="conversation_metadata", include_traceback=False)
