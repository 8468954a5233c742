"""
Parley Chat Prompts - System prompt assembly

Contains:
- BASE_PERSONALITY: Assistant identity and response contract
- get_tools_section(): Tool guidance for the tools offered this turn
- get_rules_section(): Response style and formatting rules
- get_personalization_section(): Style, custom instructions, permanent
  instructions and saved memories
- build_system_prompt(): Full prompt for one turn
- format_date_context(): Human-readable date line in the caller's timezone
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from services.chat_store import Memory, PermanentInstruction

BASE_PERSONALITY = (
    "You are Parley, a helpful assistant with access to tools for live information.\n\n"
    "**CRITICAL RESPONSE RULE: You MUST ALWAYS provide a text response to the user. "
    "NEVER end a turn with only tool calls.**\n\n"
)

STYLE_INSTRUCTIONS = {
    "Professional": "Maintain a professional, formal tone in your responses.",
    "Friendly": "Be warm, conversational, and friendly in your responses.",
    "Concise": "Keep your responses brief and to the point, avoiding unnecessary elaboration.",
    "Creative": "Be imaginative, expressive, and engaging in your responses.",
}

FORCE_WEB_SEARCH_PROMPT = (
    "The user explicitly requested live web search. Call the `web_search` tool for this turn "
    "unless it would clearly be redundant."
)


def get_tools_section(search: bool, file_search: bool, code: bool) -> str:
    """Tool guidance for exactly the tools offered this turn."""
    lines = []
    if search:
        lines.append("- `web_search`: live internet search for current events, prices, schedules and other fast-changing facts")
    if file_search:
        lines.append("- `file_search`: semantic search over documents the user uploaded to this conversation")
    if code:
        lines.append("- `code_interpreter`: run Python for calculations, data analysis and generated files")
    if not lines:
        return "No tools are available this turn. Answer from your own knowledge and any context provided.\n\n"

    section = "AVAILABLE TOOLS:\n" + "\n".join(lines) + "\n\n"
    if search:
        section += (
            "WEB SEARCH RULES:\n"
            "- Use internal knowledge for timeless concepts, math, or historical context\n"
            "- For fast-changing facts, prefer calling `web_search`\n"
            "- Cite results with inline markdown links: [domain.com](https://full-url)\n"
            "- If the tool returns little, say so before relying on older knowledge\n"
            "- Do not send capability or identity questions to `web_search`\n\n"
        )
    return section


def get_rules_section() -> str:
    return (
        "RESPONSE STYLE:\n"
        "- Keep answers clear and grounded, blending background context with live data you retrieved\n"
        "- Never claim you lack internet access in a turn where tool outputs or web evidence were provided\n"
        "- The marker '[Files attached]' means files were included; it is not part of the prompt\n"
        "- Context from other chats is background only; do not quote it unless asked\n"
        "\n"
        "FORMATTING:\n"
        "- Use markdown headings and lists for structured answers\n"
        "- For math: $$...$$ for block math, $...$ for inline math\n"
        "\n"
    )


def get_personalization_section(
    memories: Sequence[Memory],
    instructions: Sequence[PermanentInstruction],
    personalization: Optional[Dict[str, Any]] = None,
) -> str:
    """Style, custom instructions, permanent instructions and saved memories.

    Memories are omitted when the user turned off referencing saved memories.
    """
    settings = personalization or {}
    parts: List[str] = []

    style = STYLE_INSTRUCTIONS.get(settings.get("base_style") or "")
    if style:
        parts.append(style)

    custom = (settings.get("custom_instructions") or "").strip()
    if custom:
        parts.append("**Custom Instructions:**\n" + custom)

    if instructions:
        lines = ["**Permanent Instructions (ALWAYS follow these):**"]
        for inst in instructions:
            scope = " (this conversation)" if inst.scope == "conversation" else ""
            title = f"{inst.title}: " if inst.title else ""
            lines.append(f"- {title}{inst.content}{scope} (id: {inst.id})")
        parts.append("\n".join(lines))

    if memories and settings.get("reference_saved_memories", True):
        lines = ["**Saved Memories (User Context):**"]
        for mem in memories:
            lines.append(f"- [{mem.type}] {mem.title}: {mem.content} (id: {mem.id})")
        lines.append("")
        lines.append(
            "Use these memories to personalize your responses. When asked what you know about "
            "the user, answer from this list."
        )
        parts.append("\n".join(lines))

    return "\n\n".join(parts) + "\n\n" if parts else ""


def format_date_context(tz_name: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """e.g. 'Monday, October 19, 2026 (Europe/Berlin)'. Unknown zones fall back to UTC."""
    tz = timezone.utc
    label = "UTC"
    if tz_name:
        try:
            tz = ZoneInfo(tz_name)
            label = tz_name
        except (ZoneInfoNotFoundError, ValueError):
            pass
    moment = (now or datetime.now(timezone.utc)).astimezone(tz)
    return f"{moment.strftime('%A, %B %d, %Y')} ({label})"


def build_system_prompt(
    memories: Sequence[Memory] = (),
    instructions: Sequence[PermanentInstruction] = (),
    personalization: Optional[Dict[str, Any]] = None,
    evidence_block: Optional[str] = None,
    search_enabled: bool = True,
    file_search_enabled: bool = False,
    code_enabled: bool = False,
    force_web_search: bool = False,
    date_context: Optional[str] = None,
) -> str:
    """Full system prompt for one turn.

    Args:
        memories: Memories loaded for the routed memory types
        instructions: User and conversation-scoped permanent instructions
        personalization: Caller personalization settings (snake_case keys)
        evidence_block: Web evidence to answer from; live search is withheld when set
        search_enabled: Whether `web_search` is offered this turn
        file_search_enabled: Whether `file_search` is offered this turn
        code_enabled: Whether `code_interpreter` is offered this turn
        force_web_search: Caller asked for live search
        date_context: Current date line

    Returns:
        Prompt text
    """
    prompt = BASE_PERSONALITY
    if date_context:
        prompt += f"CURRENT DATE: {date_context}\n\n"
    prompt += get_tools_section(search_enabled, file_search_enabled, code_enabled)
    prompt += get_rules_section()
    if force_web_search and search_enabled:
        prompt += FORCE_WEB_SEARCH_PROMPT + "\n\n"
    prompt += get_personalization_section(memories, instructions, personalization)
    if evidence_block:
        prompt += evidence_block + "\n"
    return prompt.rstrip() + "\n"
