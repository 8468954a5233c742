"""
Parley Sandbox Router - downloads for files written by the code sandbox

GET /api/sandbox/files/{container_id}?path=/mnt/data/<name>

Finalized replies carry these URLs in place of `sandbox:` links
(services/sandbox.py). A file is only served to the user who owns a
conversation bound to that container; anything else is a plain 404.
"""

import logging
import mimetypes
import posixpath
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from errors import ErrorCode, NotFoundError, ValidationError
from services.sandbox import SANDBOX_FILE_ROOT

from .chat import get_orchestrator, get_user_id
from .chat_orchestration import ChatOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sandbox")


def _normalize_path(path: str) -> str:
    cleaned = posixpath.normpath(path.strip())
    if not cleaned.startswith(SANDBOX_FILE_ROOT) or cleaned == SANDBOX_FILE_ROOT.rstrip("/"):
        raise ValidationError(
            "Invalid sandbox file path",
            code=ErrorCode.VALIDATION_INVALID_FORMAT,
            parameter="path",
            expected=f"{SANDBOX_FILE_ROOT}<name>",
            received=path,
        )
    return cleaned


@router.get("/files/{container_id}")
async def download_file(
    container_id: str,
    path: str = Query(...),
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Stream one sandbox file back to the conversation owner."""
    path = _normalize_path(path)

    conversation = await orchestrator.store.find_conversation_by_container(user_id, container_id)
    if conversation is None:
        raise NotFoundError("File not found", resource_type="file", resource_id=container_id)

    data = await orchestrator.provider.download_container_file(container_id, path)
    if data is None:
        raise NotFoundError("File not found", resource_type="file", resource_id=path)

    filename = posixpath.basename(path)
    media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    logger.info(f"Sandbox file {path} served from {container_id} (conversation={conversation.id}, {len(data)} bytes)")
    return Response(
        content=data,
        media_type=media_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}",
            "Cache-Control": "private, no-store",
        },
    )
