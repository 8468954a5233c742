"""
Parley Logging Configuration - Color-Coded Container Logs

Provides:
- ColorFormatter: ANSI color-coded log output (plain when not a TTY or NO_COLOR is set)
- Event helpers for the chat pipeline: log_message_in, log_message_out,
  log_route, log_tool, log_llm, log_writer
- setup_logging(): Configure application logging

Usage:
    from logging_config import setup_logging, log_message_in, log_tool
    setup_logging()
    logger = logging.getLogger(__name__)
    log_message_in(logger, "User question", conversation="c-1")
"""

import logging
import os
import sys
from typing import Optional, Sequence

# ANSI color codes
COLORS = {
    "RESET": "\033[0m",
    "BOLD": "\033[1m",
    "DIM": "\033[2m",
    # Pipeline events
    "MSG_IN": "\033[96m",  # Cyan
    "MSG_OUT": "\033[92m",  # Green
    "ROUTE": "\033[95m",  # Magenta
    "TOOL": "\033[93m",  # Yellow
    "LLM": "\033[94m",  # Blue
    "WRITE": "\033[36m",  # Teal
    # Levels
    "ERROR": "\033[91m",
    "WARN": "\033[33m",
    "DEBUG": "\033[90m",
}

_use_color = True


def _paint(key: str, text: str) -> str:
    if not _use_color:
        return text
    return f"{COLORS[key]}{text}{COLORS['RESET']}"


class ColorFormatter(logging.Formatter):
    """`HH:MM:SS [LEVL] message`, level colored."""

    LEVEL_COLORS = {
        logging.DEBUG: "DEBUG",
        logging.WARNING: "WARN",
        logging.ERROR: "ERROR",
        logging.CRITICAL: "ERROR",
    }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, "%H:%M:%S")
        level = record.levelname[:4]
        color = self.LEVEL_COLORS.get(record.levelno)
        if color:
            level = _paint(color, level)
        if record.levelno >= logging.CRITICAL:
            level = _paint("BOLD", level)

        formatted = f"{_paint('DIM', timestamp)} [{level}] {record.getMessage()}"
        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


def setup_logging(level: Optional[int] = None) -> None:
    """Configure the root logger. LOG_LEVEL overrides the default INFO."""
    global _use_color
    _use_color = sys.stdout.isatty() and "NO_COLOR" not in os.environ

    if level is None:
        level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # Quiet noisy libraries
    for name in ("httpx", "httpcore", "openai", "asyncpg", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# PIPELINE EVENT HELPERS
# =============================================================================


def _ctx(context: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items() if v is not None)


def _event(logger: logging.Logger, color: str, tag: str, text: str) -> None:
    logger.info(f"{_paint(color, tag)} {text}".rstrip())


def log_message_in(logger: logging.Logger, message: str, **context) -> None:
    """Log an incoming user turn (preview only) with request context."""
    preview = message[:80] + "..." if len(message) > 80 else message
    _event(logger, "MSG_IN", ">>> MESSAGE", f"{preview} [{_ctx(context)}]")


def log_message_out(
    logger: logging.Logger,
    tools_used: Optional[Sequence[str]] = None,
    domains: int = 0,
    chars: int = 0,
) -> None:
    """Log a finalized assistant reply.

    Args:
        logger: Logger instance
        tools_used: Tool names that ran during the stream
        domains: Number of distinct search domains reported
        chars: Length of the final text
    """
    tools = ", ".join(tools_used) if tools_used else "none"
    _event(logger, "MSG_OUT", "<<< RESPONSE", f"tools=[{tools}] domains={domains} chars={chars}")


def log_route(logger: logging.Logger, model: str, effort: str, topic_action: str, routed_by: str) -> None:
    _event(logger, "ROUTE", "--> ROUTE", f"model={model} effort={effort} topic={topic_action} via={routed_by}")


def log_tool(logger: logging.Logger, tool_name: str, state: str, **context) -> None:
    """Log tool lifecycle. `state` is 'start' or 'end'."""
    tag = ">>> TOOL" if state == "start" else "<<< TOOL"
    _event(logger, "TOOL", tag, f"{tool_name} {_ctx(context)}")


def log_llm(logger: logging.Logger, state: str, model: str = "", duration: float = 0) -> None:
    """Log a provider call. `duration` (seconds) is reported on 'end'."""
    if state == "start":
        _event(logger, "LLM", ">>> LLM", f"calling {model}")
    else:
        _event(logger, "LLM", "<<< LLM", f"{model} completed in {duration:.1f}s")


def log_writer(logger: logging.Logger, kind: str, action: str, **context) -> None:
    """Log a post-stream bookkeeping write.

    Args:
        logger: Logger instance
        kind: topic / memory / instruction / artifact
        action: create / update / delete / skip
        **context: ids and titles
    """
    _event(logger, "WRITE", "+++ WRITE", f"{kind} {action} {_ctx(context)}")
