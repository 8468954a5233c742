"""
Runtime Configuration for Parley.

Provides a singleton RuntimeConfig class that allows dynamic adjustment of
orchestration parameters at runtime, without requiring service restart.

Usage:
    from config import runtime_config
    ceiling = runtime_config.context_ceiling_tokens
    runtime_config.update(stream_start_timeout_s=20.0)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List
from threading import Lock
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)


def _first_env(*keys: str, default: str) -> str:
    """Return the first non-empty environment value from keys, else default."""
    for key in keys:
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return default


def _env_bool(key: str, default: str) -> bool:
    return os.environ.get(key, default).strip().lower() == "true"


def _build_database_url_default() -> str:
    """
    Build a PostgreSQL URL from env vars when DATABASE_URL is not explicitly set.

    Password is URL-encoded to avoid auth breakage with special characters.
    """
    explicit = os.environ.get("DATABASE_URL", "").strip()
    if explicit:
        return explicit

    user = os.environ.get("POSTGRES_USER", "parley").strip() or "parley"
    password = os.environ.get("POSTGRES_PASSWORD", "parley-local-dev")
    host = os.environ.get("POSTGRES_HOST", "localhost").strip() or "localhost"
    port = os.environ.get("POSTGRES_PORT", "5432").strip() or "5432"
    db = os.environ.get("POSTGRES_DB", "parley").strip() or "parley"

    safe_password = quote_plus(password)
    return f"postgresql://{user}:{safe_password}@{host}:{port}/{db}"


# Model family -> provider model id
MODEL_FAMILIES = {
    "gpt-5-nano": "gpt-5-nano-2025-08-07",
    "gpt-5-mini": "gpt-5-mini-2025-08-07",
    "gpt-5.1": "gpt-5.1-2025-11-13",
    "gpt-5-pro": "gpt-5-pro-2025-10-06",
}


@dataclass
class RuntimeConfig:
    """
    Singleton configuration for runtime-adjustable parameters.

    All values have defaults from environment variables, but can be
    changed at runtime via the update() method.
    """

    # Model provider
    openai_api_key: str = field(default_factory=lambda: _first_env("OPENAI_API_KEY", default=""))
    openai_base_url: str = field(default_factory=lambda: _first_env("OPENAI_BASE_URL", default=""))
    default_model_family: str = field(
        default_factory=lambda: os.environ.get("DEFAULT_MODEL_FAMILY", "gpt-5-mini")
    )
    router_model_family: str = field(
        default_factory=lambda: os.environ.get("ROUTER_MODEL_FAMILY", "gpt-5-nano")
    )
    llm_timeout_s: float = field(default_factory=lambda: float(os.environ.get("LLM_TIMEOUT_S", "60.0")))
    policy_timeout_s: float = field(default_factory=lambda: float(os.environ.get("POLICY_TIMEOUT_S", "8.0")))
    stream_start_timeout_s: float = field(
        default_factory=lambda: float(os.environ.get("STREAM_START_TIMEOUT_S", "45.0"))
    )

    # Context assembly (tokens)
    context_strategy: str = field(default_factory=lambda: os.environ.get("CONTEXT_STRATEGY", "topic"))
    context_ceiling_tokens: int = field(
        default_factory=lambda: int(os.environ.get("CONTEXT_CEILING_TOKENS", "350000"))
    )
    context_fallback_cap_tokens: int = field(
        default_factory=lambda: int(os.environ.get("CONTEXT_FALLBACK_CAP_TOKENS", "200000"))
    )
    history_fetch_limit: int = field(default_factory=lambda: int(os.environ.get("HISTORY_FETCH_LIMIT", "500")))
    artifact_budget_ratio: float = field(
        default_factory=lambda: float(os.environ.get("ARTIFACT_BUDGET_RATIO", "0.2"))
    )

    # Cross-chat context
    cross_chat_default_enabled: bool = field(default_factory=lambda: _env_bool("CROSS_CHAT_ENABLED", "true"))
    cross_chat_lookback_days: int = field(default_factory=lambda: int(os.environ.get("CROSS_CHAT_LOOKBACK_DAYS", "14")))
    cross_chat_max_conversations: int = field(
        default_factory=lambda: int(os.environ.get("CROSS_CHAT_MAX_CONVERSATIONS", "5"))
    )
    cross_chat_token_allowance: int = field(
        default_factory=lambda: int(os.environ.get("CROSS_CHAT_TOKEN_ALLOWANCE", "2000"))
    )
    cross_chat_token_limit: int = field(
        default_factory=lambda: int(os.environ.get("CROSS_CHAT_TOKEN_LIMIT", "200000"))
    )

    # Routers
    decision_policy_enabled: bool = field(default_factory=lambda: _env_bool("DECISION_POLICY_ENABLED", "true"))
    writer_policy_enabled: bool = field(default_factory=lambda: _env_bool("WRITER_POLICY_ENABLED", "true"))
    memory_load_limit: int = field(default_factory=lambda: int(os.environ.get("MEMORY_LOAD_LIMIT", "50")))

    # Evidence pipeline
    evidence_enabled: bool = field(default_factory=lambda: _env_bool("EVIDENCE_ENABLED", "true"))
    evidence_pipeline_url: str = field(
        default_factory=lambda: os.environ.get("EVIDENCE_PIPELINE_URL", "http://localhost:8090")
    )
    evidence_timeout_s: float = field(default_factory=lambda: float(os.environ.get("EVIDENCE_TIMEOUT_S", "12.0")))
    evidence_max_chunks: int = field(default_factory=lambda: int(os.environ.get("EVIDENCE_MAX_CHUNKS", "8")))

    # Code sandbox
    sandbox_enabled: bool = field(default_factory=lambda: _env_bool("SANDBOX_ENABLED", "true"))
    public_base_url: str = field(default_factory=lambda: os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000"))

    # Deferred attachment uploads
    attachment_upload_enabled: bool = field(default_factory=lambda: _env_bool("ATTACHMENT_UPLOAD_ENABLED", "true"))

    # Database
    database_url: str = field(default_factory=_build_database_url_default)
    database_enabled: bool = field(default_factory=lambda: _env_bool("DATABASE_ENABLED", "false"))
    database_pool_min: int = field(default_factory=lambda: int(os.environ.get("DATABASE_POOL_MIN", "2")))
    database_pool_max: int = field(default_factory=lambda: int(os.environ.get("DATABASE_POOL_MAX", "10")))
    database_connect_retries: int = field(
        default_factory=lambda: int(os.environ.get("DATABASE_CONNECT_RETRIES", "15"))
    )
    database_retry_delay_s: float = field(
        default_factory=lambda: float(os.environ.get("DATABASE_RETRY_DELAY_S", "2.0"))
    )

    # Environment
    parley_env: str = field(default_factory=lambda: os.environ.get("PARLEY_ENV", "development"))

    # Internal state
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)
    _update_count: int = field(default=0, repr=False)

    # Validation ranges for numeric config values
    _VALIDATION_RANGES: Dict[str, tuple] = field(default_factory=lambda: {
        "llm_timeout_s": (1.0, 600.0),
        "policy_timeout_s": (0.5, 60.0),
        "stream_start_timeout_s": (0.1, 300.0),
        "context_ceiling_tokens": (256, 2_000_000),
        "context_fallback_cap_tokens": (256, 2_000_000),
        "history_fetch_limit": (1, 10_000),
        "artifact_budget_ratio": (0.0, 1.0),
        "cross_chat_lookback_days": (1, 365),
        "cross_chat_max_conversations": (0, 50),
        "cross_chat_token_allowance": (0, 100_000),
        "evidence_timeout_s": (1.0, 120.0),
        "evidence_max_chunks": (1, 50),
        "memory_load_limit": (1, 500),
        "database_connect_retries": (0, 100),
        "database_retry_delay_s": (0.0, 60.0),
    })

    def update(self, **kwargs) -> Dict[str, Any]:
        """
        Update configuration values at runtime.

        Args:
            **kwargs: Key-value pairs to update (e.g., stream_start_timeout_s=20.0)

        Returns:
            Dict with 'updated' (changed keys) and 'ignored' (unknown keys)
        """
        updated = []
        ignored = []

        with self._lock:
            for key, value in kwargs.items():
                if key.startswith("_"):
                    ignored.append(key)
                    continue

                if hasattr(self, key):
                    if key in {"evidence_pipeline_url", "public_base_url"} and isinstance(value, str):
                        cleaned = value.strip()
                        if not cleaned.startswith(("http://", "https://")):
                            ignored.append(key)
                            logger.warning(f"Config rejected invalid URL: {key}={value!r}")
                            continue
                        value = cleaned.rstrip("/")

                    if key.endswith("_model_family") and value not in MODEL_FAMILIES:
                        ignored.append(key)
                        logger.warning(f"Config rejected unknown model family: {key}={value!r}")
                        continue

                    # Validate numeric ranges
                    if key in self._VALIDATION_RANGES:
                        lo, hi = self._VALIDATION_RANGES[key]
                        if not (lo <= value <= hi):
                            ignored.append(key)
                            logger.warning(f"Config rejected {key}={value} (must be {lo}-{hi})")
                            continue

                    old_value = getattr(self, key)
                    setattr(self, key, value)
                    updated.append(key)
                    if "key" in key:
                        logger.info(f"Config updated: {key}")
                    else:
                        logger.info(f"Config updated: {key} = {value} (was {old_value})")
                else:
                    ignored.append(key)
                    logger.warning(f"Config ignored unknown key: {key}")

            self._update_count += 1

        return {"updated": updated, "ignored": ignored, "update_count": self._update_count}

    def model_for_family(self, family: str) -> str:
        """Resolve a model family to a provider model id (unknown families use the default)."""
        if family in MODEL_FAMILIES:
            return MODEL_FAMILIES[family]
        return MODEL_FAMILIES.get(self.default_model_family, MODEL_FAMILIES["gpt-5-mini"])

    def model_families(self) -> List[str]:
        return list(MODEL_FAMILIES.keys())

    def to_dict(self) -> Dict[str, Any]:
        """Export current config as dict (excludes internal fields and credentials)."""
        from dataclasses import fields as dataclass_fields

        result = {}
        for field_info in dataclass_fields(self):
            if field_info.name.startswith("_") or field_info.name in {"openai_api_key", "database_url"}:
                continue
            result[field_info.name] = getattr(self, field_info.name)
        return result

    def reset_to_defaults(self) -> Dict[str, Any]:
        """Reset all values to environment defaults."""
        defaults = RuntimeConfig()
        changes = {}

        with self._lock:
            for key in self.to_dict().keys():
                old_value = getattr(self, key)
                new_value = getattr(defaults, key)
                if old_value != new_value:
                    setattr(self, key, new_value)
                    changes[key] = {"old": old_value, "new": new_value}
                    logger.info(f"Config reset: {key} = {new_value}")

            self._update_count += 1

        return {"reset": True, "changes": changes, "update_count": self._update_count}


# Singleton instance
runtime_config = RuntimeConfig()


def get_config() -> RuntimeConfig:
    """Get the singleton config instance."""
    return runtime_config
