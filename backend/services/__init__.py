"""
Parley Services - Shared infrastructure services.

- chat_store: durable conversation state (PostgreSQL or in-memory)
- database: asyncpg connection manager with health checks
- llm_client: model provider facade (OpenAI Responses API)
- evidence_client: web evidence pipeline client
- sandbox: code sandbox container and file link helpers
- usage: token usage and cost accounting
"""

from .chat_store import ChatStore, InMemoryChatStore, PostgresChatStore

__all__ = ["ChatStore", "InMemoryChatStore", "PostgresChatStore"]
