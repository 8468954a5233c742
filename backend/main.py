"""
Parley - Streaming chat request orchestrator
FastAPI backend: POST /api/chat -> NDJSON
GET /api/sandbox/files/{container_id} serves files the code sandbox wrote
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import uuid

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import runtime_config
from errors import ParleyError
from logging_config import setup_logging
from routers import chat, sandbox
from routers.chat_orchestration import ChatOrchestrator, EvidenceGate
from services.chat_store import InMemoryChatStore, PostgresChatStore
from services.database import close_database, get_database
from services.evidence_client import EvidenceClient
from services.llm_client import ModelProvider

setup_logging()
logger = logging.getLogger(__name__)

# Instance ID - changes on every startup, used by clients to detect restarts
INSTANCE_ID = str(uuid.uuid4())


@dataclass
class StartupHealth:
    """Tracks component health through startup."""
    phase: str = "initializing"
    store: str = "pending"
    provider: str = "pending"
    evidence: str = "pending"


_startup_health = StartupHealth()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    db = None
    if runtime_config.database_enabled:
        db = await get_database()
    if db is not None and db.available:
        store = PostgresChatStore(db)
        _startup_health.store = "postgres"
    else:
        if runtime_config.database_enabled:
            logger.warning("PostgreSQL unavailable, falling back to in-memory chat store")
        store = InMemoryChatStore()
        _startup_health.store = "memory"

    provider = ModelProvider.from_config(runtime_config)
    _startup_health.provider = "ok"

    evidence_client = None
    if runtime_config.evidence_enabled:
        evidence_client = EvidenceClient(
            runtime_config.evidence_pipeline_url,
            timeout=runtime_config.evidence_timeout_s,
        )
    _startup_health.evidence = "enabled" if evidence_client else "disabled"
    evidence_gate = EvidenceGate(
        evidence_client,
        enabled=runtime_config.evidence_enabled,
        max_chunks=runtime_config.evidence_max_chunks,
    )

    app.state.store = store
    app.state.orchestrator = ChatOrchestrator(store, provider, evidence_gate, config=runtime_config)
    _startup_health.phase = "ready"
    logger.info(f"Parley is ready (store={_startup_health.store}, evidence={_startup_health.evidence})")

    yield

    # Shutdown
    try:
        await provider.client.close()
    except Exception as e:
        logger.debug(f"Provider close error: {e}")
    if db is not None:
        await close_database()
    logger.info("Parley signing off")


app = FastAPI(
    title="Parley",
    description="Streaming chat request orchestrator",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS - restrict to localhost and private network IPs on port 3000
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1|100\.\d+\.\d+\.\d+|192\.168\.\d+\.\d+|[a-zA-Z][a-zA-Z0-9\-]*):3000$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ParleyError, chat.parley_error_handler)
app.include_router(chat.router, tags=["chat"])
app.include_router(sandbox.router, tags=["sandbox"])


@app.get("/health")
async def health():
    """Health check - reports the store backend and database status."""
    checks = {"store": _startup_health.store}
    if runtime_config.database_enabled:
        try:
            db = await get_database()
            db_health = await db.health_check()
            checks["postgres"] = "ok" if db_health.get("status") == "connected" else "down"
        except Exception:
            checks["postgres"] = "down"

    all_ok = checks.get("postgres", "ok") == "ok"
    return {
        "status": "healthy" if all_ok else "degraded",
        "service": "parley",
        "checks": checks,
        "startup_phase": _startup_health.phase,
        "components": {
            "provider": _startup_health.provider,
            "evidence": _startup_health.evidence,
        },
    }


@app.get("/api/instance")
async def get_instance():
    """Return instance ID - changes on each startup."""
    return {"instance_id": INSTANCE_ID}
