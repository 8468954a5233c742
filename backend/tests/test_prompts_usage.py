"""
Tests for system prompt assembly and usage accounting.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from errors import StoreError
from routers.chat_prompts import (
    FORCE_WEB_SEARCH_PROMPT,
    build_system_prompt,
    format_date_context,
    get_personalization_section,
    get_tools_section,
)
from services.chat_store import InMemoryChatStore, Memory, PermanentInstruction
from services.usage import calculate_cost, pricing_for_model, record_usage

MEMORY = Memory(id="m1", user_id="user-1", type="hobbies", title="Surfing", content="Surfs on weekends")
INSTRUCTION = PermanentInstruction(id="pi1", user_id="user-1", content="Use metric units", scope="conversation")


class BrokenStore(InMemoryChatStore):
    async def insert_usage(self, record):
        raise StoreError("usage table locked", operation="insert_usage")


class TestPromptSections:
    """Test individual prompt sections."""

    def test_tools_listed_only_when_offered(self):
        section = get_tools_section(search=False, file_search=True, code=False)
        assert "`file_search`" in section
        assert "`web_search`" not in section
        assert "WEB SEARCH RULES" not in section

    def test_no_tools(self):
        assert get_tools_section(False, False, False).startswith("No tools are available")

    def test_personalization(self):
        """Style, permanent instructions and memories each get a block."""
        section = get_personalization_section([MEMORY], [INSTRUCTION], {"base_style": "Friendly"})
        assert "warm, conversational" in section
        assert "- Use metric units (this conversation) (id: pi1)" in section
        assert "- [hobbies] Surfing: Surfs on weekends (id: m1)" in section

    def test_memories_hidden_when_referencing_off(self):
        """Permanent instructions still apply when saved memories are off."""
        section = get_personalization_section([MEMORY], [INSTRUCTION], {"reference_saved_memories": False})
        assert "Surfing" not in section
        assert "Use metric units" in section

    def test_empty_personalization(self):
        assert get_personalization_section([], [], None) == ""


class TestBuildSystemPrompt:
    """Test full prompt assembly."""

    def test_force_search_needs_search_tool(self):
        assert FORCE_WEB_SEARCH_PROMPT in build_system_prompt(force_web_search=True)
        assert FORCE_WEB_SEARCH_PROMPT not in build_system_prompt(force_web_search=True, search_enabled=False)

    def test_evidence_and_date(self):
        prompt = build_system_prompt(evidence_block="WEB EVIDENCE:\n[1] example", date_context="Monday (UTC)")
        assert "CURRENT DATE: Monday (UTC)" in prompt
        assert prompt.rstrip().endswith("[1] example")

    def test_date_context(self):
        moment = datetime(2026, 10, 19, 23, 30, tzinfo=timezone.utc)
        assert format_date_context("Europe/Berlin", now=moment) == "Tuesday, October 20, 2026 (Europe/Berlin)"
        assert format_date_context("Not/AZone", now=moment) == "Monday, October 19, 2026 (UTC)"


class TestUsage:
    """Test cost estimation and usage recording."""

    def test_pricing_lookup(self):
        """Dated provider ids resolve to their family; the longest prefix wins."""
        assert pricing_for_model("gpt-5.1-2025-11-13") == pricing_for_model("gpt-5.1")
        assert pricing_for_model("gpt-5-mini-2025-08-07")["input"] == 0.25
        assert pricing_for_model("other-model") is None

    def test_cached_tokens_not_billed_twice(self):
        full = calculate_cost("gpt-5.1", input_tokens=1_000_000)
        cached = calculate_cost("gpt-5.1", input_tokens=1_000_000, cached_tokens=1_000_000)
        assert full == pytest.approx(1.25)
        assert cached == pytest.approx(0.125)

    def test_tool_calls_priced(self):
        assert calculate_cost("unknown", 0, tool_calls={"search": 2}) == pytest.approx(0.02)

    def test_record_usage(self):
        store = InMemoryChatStore()
        assert asyncio.run(record_usage(store, "user-1", "c1", "gpt-5.1", 100, 20, 40, reasoning_tokens=5)) is True
        row = store.usage[0]
        assert row["reasoning_tokens"] == 5
        assert row["estimated_cost"] > 0

    def test_record_usage_failure_is_soft(self):
        """A failed insert returns False instead of raising."""
        assert asyncio.run(record_usage(BrokenStore(), "user-1", "c1", "gpt-5.1", 100)) is False
