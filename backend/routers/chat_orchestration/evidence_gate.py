"""
Parley Evidence Gate - web evidence before the model speaks.

Runs the evidence pipeline for a turn and decides whether what came back
is strong enough to answer from. Three outcomes:

- sufficient: an evidence block is injected into the system prompt and the
  model's own search tool is withheld for the turn
- skipped: conversational prompt, feature disabled or pipeline failure;
  the model may search on its own
- weak: pipeline ran but evidence is thin; same tool freedom as skipped,
  and a force request makes a search call mandatory

Usage:
    gate = EvidenceGate(EvidenceClient(url), enabled=True)
    result = await gate.gate(prompt, recent, locale, date_ctx)
    plan = resolve_tool_plan(result, force_live_search=False, allow_web_search=True)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from errors import ExternalServiceError, log_error
from logging_config import log_tool
from services.evidence_client import EvidenceClient, EvidenceResult

from .search_domains import SearchDomainTracker

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL = {"type": "web_search"}

# Chunks quoted into the evidence block, and characters per chunk
MAX_BLOCK_CHUNKS = 8
MAX_CHUNK_CHARS = 700

_GREETING_RE = re.compile(r"^(hi|hello|hey|thanks|thank you|ok|okay|sure|cool|great|bye)[!. ]*$", re.IGNORECASE)

_META_QUESTION_PATTERNS = [
    re.compile(r"\b(?:can|could|would) you (?:browse|access|use) (?:the )?(?:internet|web)", re.IGNORECASE),
    re.compile(r"\b(?:do|can) you have internet", re.IGNORECASE),
    re.compile(r"\bwhat(?:'s| is) your knowledge cutoff", re.IGNORECASE),
    re.compile(r"\bwhat model are you", re.IGNORECASE),
    re.compile(r"\bare you able to search", re.IGNORECASE),
]

# Follow-ups make bad pipeline queries; the model can reformulate itself
_CONTINUATION_PHRASES = [
    "continue", "keep going", "go on", "show more", "what else", "any more", "next ones",
]
_REFERENTIAL_STARTS = [
    "what about", "tell me more", "can you also", "how about", "and the",
]


def is_conversational(prompt: str) -> bool:
    """True when a prompt is chit-chat or a follow-up not worth a pipeline run."""
    text = (prompt or "").strip()
    if not text:
        return True
    if _GREETING_RE.match(text):
        return True
    if any(p.search(text) for p in _META_QUESTION_PATTERNS):
        return True

    lower = text.lower()
    if len(lower) < 60 and any(phrase in lower for phrase in _CONTINUATION_PHRASES):
        return True
    if len(lower) < 50 and any(lower.startswith(phrase) for phrase in _REFERENTIAL_STARTS):
        return True
    return len(lower) < 8


@dataclass
class GateResult:
    sufficient: bool = False
    skipped: bool = False
    evidence_block: Optional[str] = None
    source_domains: List[str] = field(default_factory=list)
    queries: List[str] = field(default_factory=list)
    sources: List[Dict[str, Any]] = field(default_factory=list)
    skip_reason: Optional[str] = None

    @classmethod
    def skip(cls, reason: str) -> "GateResult":
        return cls(skipped=True, skip_reason=reason)


@dataclass
class ToolPlan:
    tools: List[Dict[str, Any]]
    tool_choice: Optional[str]

    @property
    def search_allowed(self) -> bool:
        return any(t.get("type") == WEB_SEARCH_TOOL["type"] for t in self.tools)


def build_evidence_block(result: EvidenceResult, date_context: str, max_chunks: int = MAX_BLOCK_CHUNKS) -> str:
    """Render pipeline chunks into the block appended to the system prompt."""
    lines = [f"WEB EVIDENCE (retrieved {date_context}; use this to answer):"]
    for chunk in result.chunks[:max_chunks]:
        label = chunk.title or chunk.domain or chunk.url
        text = chunk.text.strip()
        if len(text) > MAX_CHUNK_CHARS:
            text = text[:MAX_CHUNK_CHARS].rstrip() + "..."
        lines.append(f"- [{label}]({chunk.url}): {text}")
    lines.append(
        "Answer from this evidence and cite sources as markdown links. "
        "Live web search is unavailable for this turn."
    )
    return "\n".join(lines)


class EvidenceGate:
    """Decides per turn whether retrieved web evidence can stand in for live search."""

    def __init__(self, client: Optional[EvidenceClient], enabled: bool = True, max_chunks: int = MAX_BLOCK_CHUNKS):
        self.client = client
        self.enabled = enabled and client is not None
        self.max_chunks = max_chunks

    def will_run(self, prompt: str, force: bool = False) -> bool:
        return self.enabled and (force or not is_conversational(prompt))

    async def gate(
        self,
        prompt: str,
        recent_context: List[Dict[str, Any]],
        locale: Optional[str],
        date_context: str,
        force: bool = False,
        on_progress: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        preferred_sources: Optional[List[str]] = None,
    ) -> GateResult:
        """Run the pipeline for one turn.

        Args:
            prompt: The user's message
            recent_context: Last few turns as {"role", "content"} dicts
            locale: Caller locale, forwarded to the pipeline
            date_context: Human-readable current date
            force: Caller asked for live search; bypasses the conversational skip
            on_progress: Awaited with each pipeline progress payload

        Returns:
            GateResult; never raises for pipeline failures
        """
        if not self.enabled:
            return GateResult.skip("disabled")
        if not force and is_conversational(prompt):
            logger.debug("Evidence gate skipped conversational prompt")
            return GateResult.skip("conversational")

        log_tool(logger, "evidence", "start", force=force)
        try:
            result = await self.client.run(
                prompt=prompt,
                recent_turns=recent_context,
                locale=locale,
                current_date=date_context,
                preferred_sources=preferred_sources,
                force=force,
                on_progress=on_progress,
            )
        except ExternalServiceError as e:
            log_error(logger, e, context="evidence_gate", include_traceback=False)
            return GateResult.skip("pipeline_error")

        domains = SearchDomainTracker()
        domains.add_many(s.get("url", "") for s in result.sources)
        domains.add_many(c.url for c in result.chunks)

        if result.skipped:
            log_tool(logger, "evidence", "end", skipped=True, reason=result.skip_reason)
            return GateResult(
                skipped=True,
                queries=result.queries,
                source_domains=domains.domains,
                skip_reason=result.skip_reason or "pipeline",
            )

        sufficient = result.enough_evidence and bool(result.chunks)
        block = build_evidence_block(result, date_context, self.max_chunks) if sufficient else None
        log_tool(logger, "evidence", "end", sufficient=sufficient, chunks=len(result.chunks), domains=len(domains))
        return GateResult(
            sufficient=sufficient,
            evidence_block=block,
            source_domains=domains.domains,
            queries=result.queries,
            sources=result.sources,
        )


def resolve_tool_plan(
    gate: GateResult,
    force_live_search: bool = False,
    allow_web_search: bool = True,
    extra_tools: Optional[List[Dict[str, Any]]] = None,
) -> ToolPlan:
    """Choose the tool list and tool_choice for the provider call.

    Sufficient evidence withholds the search tool and a force request can't
    bring it back. Otherwise search is offered, and required when forced.
    """
    tools = [dict(t) for t in extra_tools or []]

    if gate.sufficient and gate.evidence_block:
        tools = [t for t in tools if t.get("type") != WEB_SEARCH_TOOL["type"]]
        return ToolPlan(tools=tools, tool_choice="auto" if tools else "none")

    if allow_web_search or force_live_search:
        tools.insert(0, dict(WEB_SEARCH_TOOL))
        return ToolPlan(tools=tools, tool_choice="required" if force_live_search else "auto")

    return ToolPlan(tools=tools, tool_choice="auto" if tools else None)
