"""
Code Sandbox helpers.

The provider runs code in a hosted container; files it writes are
referenced in replies as `sandbox:/mnt/data/<name>`. Those paths are
meaningless to the client, so finalized replies get them rewritten to
download URLs served by this backend (routers/sandbox.py). The container
id is kept on the conversation so the next turn can reuse the same
container, and so downloads can be checked against its owner.
"""

import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import quote

from config import runtime_config
from services.chat_store import ChatStore, utcnow

logger = logging.getLogger(__name__)

CONTAINER_METADATA_KEY = "code_container_id"
SANDBOX_FILE_ROOT = "/mnt/data/"

SANDBOX_LINK_RE = re.compile(r"sandbox:(/mnt/data/[^\s)\]\"'>]+)")


def code_interpreter_tool(container_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": "code_interpreter",
        "container": container_id or {"type": "auto"},
    }


def rewrite_file_links(text: str, container_id: Optional[str], base_url: Optional[str] = None) -> str:
    """Replace sandbox file paths with durable download URLs.

    Args:
        text: Final assistant text
        container_id: Container that produced the files; nothing is rewritten without it
        base_url: Public URL of this service (defaults to runtime config)

    Returns:
        Text with every `sandbox:/mnt/data/...` link rewritten
    """
    if not text or not container_id or "sandbox:" not in text:
        return text
    base = (base_url or runtime_config.public_base_url).rstrip("/")

    def _replace(match: re.Match) -> str:
        path = match.group(1)
        return f"{base}/api/sandbox/files/{quote(container_id, safe='')}?path={quote(path, safe='/')}"

    return SANDBOX_LINK_RE.sub(_replace, text)


async def persist_container_id(store: ChatStore, conversation_id: str, container_id: str) -> None:
    """Upsert the conversation's sandbox container id (last writer wins)."""
    await store.patch_conversation_metadata(
        conversation_id,
        {CONTAINER_METADATA_KEY: container_id, "code_container_updated_at": utcnow().isoformat()},
    )
    logger.info(f"Sandbox container {container_id} saved for conversation {conversation_id}")
