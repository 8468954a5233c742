"""
Parley Chat Router - HTTP endpoints

POST /api/chat streams one assistant reply as NDJSON. Everything that can
be rejected is rejected by ChatOrchestrator.prepare() before the first byte,
as a JSON error body with the error's HTTP status. Once streaming starts,
failures arrive in-band as {"error": ...} followed by {"done": true}.

Architecture:
- chat.py: request models, caller identity, endpoints
- chat_orchestration/: routing, context, evidence, streaming, writes
- chat_prompts.py: system prompt assembly
- chat_streaming.py: NDJSON wire protocol
"""

import asyncio
import base64
import binascii
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from errors import (
    AuthenticationError,
    NotFoundError,
    ParleyError,
    ValidationError,
    error_response,
    success_response,
)

from .chat_orchestration import Attachment, ChatOrchestrator, TurnRequest
from .chat_streaming import NDJSON_MEDIA_TYPE, CancelToken, EventChannel, ndjson_stream

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat")


class AttachmentIn(BaseModel):
    name: str
    mimeType: str = "application/octet-stream"
    url: Optional[str] = None
    dataBase64: Optional[str] = None


class PersonalizationIn(BaseModel):
    baseStyle: Optional[str] = None
    customInstructions: Optional[str] = None
    referenceSavedMemories: bool = True
    allowSavingMemory: bool = True
    crossChatHistory: bool = True

    def to_settings(self) -> dict:
        return {
            "base_style": self.baseStyle,
            "custom_instructions": self.customInstructions,
            "reference_saved_memories": self.referenceSavedMemories,
            "allow_saving_memory": self.allowSavingMemory,
            "cross_chat_history": self.crossChatHistory,
        }


class ChatRequest(BaseModel):
    conversationId: Optional[str] = None
    message: Optional[str] = None
    projectId: Optional[str] = None
    userMessageId: Optional[str] = None
    speedMode: str = "auto"
    modelFamily: str = "auto"
    forceWebSearch: bool = False
    externalConversationIds: Optional[List[str]] = None
    personalization: PersonalizationIn = Field(default_factory=PersonalizationIn)
    attachments: List[AttachmentIn] = Field(default_factory=list)
    locale: Optional[str] = None
    timezone: Optional[str] = None

    def to_turn(self) -> TurnRequest:
        return TurnRequest(
            conversation_id=self.conversationId,
            message=self.message,
            project_id=self.projectId,
            user_message_id=self.userMessageId,
            speed_mode=self.speedMode,
            model_family=self.modelFamily,
            force_web_search=self.forceWebSearch,
            external_conversation_ids=self.externalConversationIds,
            personalization=self.personalization.to_settings(),
            attachments=[_decode_attachment(a) for a in self.attachments],
            locale=self.locale,
            timezone=self.timezone,
        )


def _decode_attachment(attachment: AttachmentIn) -> Attachment:
    data = None
    if attachment.dataBase64:
        try:
            data = base64.b64decode(attachment.dataBase64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(
                "Attachment data is not valid base64",
                parameter="attachments",
                received=attachment.name,
            )
    return Attachment(name=attachment.name, mime_type=attachment.mimeType, url=attachment.url, data=data)


async def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Caller identity from the X-User-Id header."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Missing caller identity", details="X-User-Id header is required")
    return x_user_id.strip()


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


async def parley_error_handler(request: Request, exc: ParleyError) -> JSONResponse:
    """Render errors raised before streaming as JSON bodies."""
    logger.info(f"Rejected {request.method} {request.url.path}: {exc.code.value} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=error_response(exc, step="prepare"))


@router.post("")
async def chat(
    body: ChatRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Stream one assistant reply as NDJSON."""
    prepared = await orchestrator.prepare(body.to_turn(), user_id)

    cancel = CancelToken()
    channel = EventChannel(cancel)
    task = asyncio.create_task(orchestrator.run(prepared, channel, cancel))
    return StreamingResponse(
        ndjson_stream(channel, task),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Delete one of the caller's messages."""
    store = orchestrator.store
    message = await store.get_message(message_id)
    if message is None or message.user_id != user_id:
        raise NotFoundError("Message not found", resource_type="message", resource_id=message_id)

    await store.delete_message(message_id)
    logger.info(f"Message {message_id} deleted by {user_id}")
    return success_response(deleted=message_id)
