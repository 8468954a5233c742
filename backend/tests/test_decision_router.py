"""
Tests for the Decision Router: model heuristics and the routing policy.
"""

import asyncio

from errors import LLMError
from routers.chat_orchestration.decision_router import (
    DecisionRouter,
    infer_memory_types,
    last_topic_in,
    pick_medium_or_high,
    resolve_model,
    select_auto_family,
    should_use_light_reasoning,
)
from services.chat_store import Artifact, Message, Topic

from conftest import USER_ID, FakeProvider


def _message(topic_id=None, role="user", content="hi"):
    return Message(id=f"m-{topic_id}-{role}", conversation_id="c1", user_id=USER_ID, role=role, content=content, topic_id=topic_id)


TOPICS = [
    Topic(id="t1", conversation_id="c1", label="Trip to Lisbon"),
    Topic(id="t2", conversation_id="c1", label="Budget"),
]
ARTIFACTS = [Artifact(id="a1", conversation_id="c1", type="code", title="Code (PYTHON)", topic_id="t1")]


def _route(router, text="What should I pack?", turns=None, memory_types=("identity", "hobbies"), **kwargs):
    return asyncio.run(
        router.route(
            user_text=text,
            recent_turns=turns if turns is not None else [_message("t1")],
            active_topic_id=kwargs.pop("active_topic_id", None),
            available_memory_types=list(memory_types),
            available_topics=TOPICS,
            available_artifacts=ARTIFACTS,
            **kwargs,
        )
    )


class TestModelHeuristics:
    """Test family and effort selection."""

    def test_short_auto_prompt_uses_nano_low(self):
        """Small talk on auto picks the smallest family with minimal reasoning."""
        assert resolve_model("auto", "auto", "hi") == ("gpt-5-nano", "low")

    def test_instant_full_family_omits_reasoning(self):
        """Instant on a full family means no reasoning."""
        assert resolve_model("gpt-5.1", "instant", "hello") == ("gpt-5.1", "none")

    def test_small_families_never_get_none(self):
        """Mini and Nano always reason."""
        family, effort = resolve_model("gpt-5-mini", "instant", "hello")
        assert family == "gpt-5-mini"
        assert effort == "low"

    def test_pro_is_always_high(self):
        """The pro family always reasons at high effort."""
        assert resolve_model("gpt-5-pro", "instant", "hi") == ("gpt-5-pro", "high")

    def test_thinking_mode(self):
        """Thinking picks medium, or high for complex prompts."""
        assert resolve_model("gpt-5.1", "thinking", "Explain recursion")[1] == "medium"
        assert resolve_model("gpt-5.1", "thinking", "Write a comprehensive research plan")[1] == "high"

    def test_unknown_preference_means_auto(self):
        """Unknown families and speed modes behave like auto."""
        assert resolve_model("gpt-9000", "warp", "hi") == resolve_model("auto", "auto", "hi")

    def test_light_reasoning_keywords(self):
        """Explanatory prompts ask for light reasoning."""
        assert should_use_light_reasoning("Explain how DNS works")
        assert not should_use_light_reasoning("hi")
        assert not should_use_light_reasoning("   ")

    def test_pick_medium_or_high_by_length(self):
        """Very long prompts get high effort."""
        assert pick_medium_or_high("x" * 950) == "high"
        assert pick_medium_or_high("short question") == "medium"

    def test_auto_family_escalates_for_complex_subjects(self):
        """High effort on a long, complex prompt selects the full family."""
        prompt = "Design the system architecture for our algorithm. " * 30
        assert select_auto_family(prompt, "high") == "gpt-5.1"
        assert select_auto_family("hi", None) == "gpt-5-nano"


class TestMemoryTypes:
    """Test keyword-based memory type inference."""

    def test_keyword_match_limited_to_available(self):
        """Matched types must be ones the user actually has."""
        chosen = infer_memory_types("Any good hiking spots for the weekend?", ["identity", "hobbies"])
        assert chosen == ["hobbies"]

    def test_identity_default(self):
        """With no keyword match, identity is loaded when available."""
        assert infer_memory_types("What time is it in Tokyo?", ["identity", "work_context"]) == ["identity"]
        assert infer_memory_types("What time is it in Tokyo?", ["work_context"]) == []


class TestLastTopic:
    """Test active topic fallback."""

    def test_latest_tagged_turn_wins(self):
        """The most recent turn with a topic decides."""
        turns = [_message("t1"), _message("t2", role="assistant"), _message(None)]
        assert last_topic_in(turns) == "t2"
        assert last_topic_in([]) is None


class TestDecisionRouter:
    """Test routing with and without the policy."""

    def test_heuristic_when_policy_disabled(self):
        """Without a provider the heuristics decide everything."""
        decision = _route(DecisionRouter(provider=None))
        assert decision.routed_by == "heuristic"
        assert decision.topic_action == "reuse"
        assert decision.primary_topic_id == "t1"
        assert decision.memory_types_to_load == ["identity"]

    def test_policy_reopens_topic_and_filters_ids(self):
        """Known ids are kept; invented secondary and artifact ids are dropped."""
        provider = FakeProvider(json_responses=[{
            "topicAction": "reopen_existing",
            "primaryTopicId": "t2",
            "secondaryTopicIds": ["t1", "t-invented", "t2"],
            "artifactsToLoad": ["a1", "a-invented"],
            "memoryTypesToLoad": ["hobbies", "romantic_interests"],
        }])
        decision = _route(DecisionRouter(provider=provider))
        assert decision.routed_by == "policy"
        assert decision.primary_topic_id == "t2"
        assert decision.secondary_topic_ids == ["t1"]
        assert decision.artifact_ids_to_load == ["a1"]
        assert decision.memory_types_to_load == ["hobbies"]

    def test_policy_new_topic(self):
        """A new topic carries its label and a valid parent only."""
        provider = FakeProvider(json_responses=[{
            "topicAction": "new",
            "newTopicLabel": "Packing List",
            "newParentTopicId": "t1",
        }])
        decision = _route(DecisionRouter(provider=provider))
        assert decision.topic_action == "new"
        assert decision.primary_topic_id is None
        assert decision.new_topic_label == "Packing List"
        assert decision.new_parent_topic_id == "t1"

    def test_policy_new_topic_with_unknown_parent(self):
        """An invented parent id is discarded, the new topic is kept."""
        provider = FakeProvider(json_responses=[{
            "topicAction": "new",
            "newTopicLabel": "Packing List",
            "newParentTopicId": "t-invented",
        }])
        decision = _route(DecisionRouter(provider=provider))
        assert decision.topic_action == "new"
        assert decision.new_parent_topic_id is None

    def test_unknown_primary_topic_falls_back(self):
        """Reusing an id that doesn't exist discards the whole policy answer."""
        provider = FakeProvider(json_responses=[{
            "topicAction": "continue_active",
            "primaryTopicId": "t-invented",
            "artifactsToLoad": ["a1"],
            "memoryTypesToLoad": ["hobbies"],
        }])
        decision = _route(DecisionRouter(provider=provider), active_topic_id="t2")
        assert decision.routed_by == "fallback"
        assert decision.primary_topic_id == "t2"
        assert decision.artifact_ids_to_load == []
        assert decision.memory_types_to_load == ["identity"]

    def test_policy_failure_falls_back(self):
        """A failed policy call never fails the turn."""
        provider = FakeProvider(json_responses=[LLMError("Policy call failed", model="gpt-5-nano")])
        decision = _route(DecisionRouter(provider=provider))
        assert decision.routed_by == "fallback"
        assert decision.primary_topic_id == "t1"

    def test_invalid_policy_shape_falls_back(self):
        """An unknown topicAction fails validation and falls back."""
        provider = FakeProvider(json_responses=[{"topicAction": "teleport"}])
        decision = _route(DecisionRouter(provider=provider))
        assert decision.routed_by == "fallback"

    def test_model_always_from_heuristics(self):
        """The policy never changes the model or effort."""
        provider = FakeProvider(json_responses=[{"topicAction": "new", "newTopicLabel": "X"}])
        with_policy = _route(DecisionRouter(provider=provider), text="hi", model_preference="gpt-5.1", speed_preference="instant")
        without = _route(DecisionRouter(provider=None), text="hi", model_preference="gpt-5.1", speed_preference="instant")
        assert (with_policy.model, with_policy.reasoning_effort) == (without.model, without.reasoning_effort)
        assert with_policy.model_family == "gpt-5.1"
        assert with_policy.reasoning_effort == "none"

    def test_policy_payload_shape(self):
        """The policy sees the message, topics and artifacts it may choose from."""
        provider = FakeProvider(json_responses=[{"topicAction": "new"}])
        _route(DecisionRouter(provider=provider), text="Plan my trip")
        payload = provider.json_calls[0]["payload"]
        assert payload["userMessage"] == "Plan my trip"
        assert [t["id"] for t in payload["topics"]] == ["t1", "t2"]
        assert [a["id"] for a in payload["artifacts"]] == ["a1"]
