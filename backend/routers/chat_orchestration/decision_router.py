"""
Decision Router - per-turn model, topic and memory selection.

Runs before anything is streamed. Model family and reasoning effort come
from prompt heuristics; topic placement comes from an optional JSON
policy call on the router model, validated with pydantic. A policy that
is disabled, slow or wrong never blocks the turn: the router falls back
to continuing the active (or most recent) topic.

Decision.routed_by:
- "policy": the policy call answered and validated
- "heuristic": policy disabled, heuristics only
- "fallback": the policy call failed and was discarded
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import pydantic
from pydantic import BaseModel

from config import runtime_config
from errors import LLMError
from logging_config import log_route
from services.chat_store import Artifact, Message, Topic

logger = logging.getLogger(__name__)

SPEED_MODES = ("auto", "instant", "thinking")
FULL_FAMILIES = {"gpt-5.1", "gpt-5-pro"}
SMALL_FAMILIES = {"gpt-5-mini", "gpt-5-nano"}

LIGHT_REASONING_KEYWORDS = [
    "step by step", "analyze", "analysis", "explain", "break down", "derive",
    "prove", "detailed", "strategy", "plan", "evaluate", "compare", "contrast",
    "investigate", "why", "how", "improve",
]

HIGH_COMPLEXITY_KEYWORDS = [
    "research", "comprehensive", "in-depth", "long-form", "whitepaper",
    "architecture", "roadmap", "algorithm", "implementation", "financial model",
]

EXTREME_COMPLEXITY_PHRASES = [
    "step-by-step proof", "academic thesis", "full proposal", "enterprise rollout",
    "investment memorandum", "system architecture", "risk assessment",
]

LONG_PROMPT_THRESHOLD = 360
MEDIUM_PROMPT_THRESHOLD = 640
HIGH_PROMPT_THRESHOLD = 900

_PLANNING_RE = re.compile(r"\b(plan|roadmap|design|strategy|debug)\b", re.IGNORECASE)
_COMPLEX_SUBJECT_RE = re.compile(
    r"\b(debug|optimize|architecture|roadmap|financial|legal|proof|algorithm|analysis)\b"
)

MEMORY_TYPE_KEYWORDS = {
    "identity": ["my name", "who am i", "about me", "my age", "i am ", "i'm ", "where i live", "remember me"],
    "food_preferences": ["food", "eat", "dinner", "lunch", "breakfast", "recipe", "restaurant", "cook", "diet", "vegetarian", "vegan", "allerg"],
    "romantic_interests": ["date", "dating", "girlfriend", "boyfriend", "partner", "wife", "husband", "relationship", "anniversary", "crush"],
    "work_context": ["work", "job", "boss", "coworker", "colleague", "client", "meeting", "career", "office", "manager", "deadline"],
    "hobbies": ["hobby", "hobbies", "game", "gaming", "music", "sport", "hiking", "reading", "weekend", "guitar", "painting", "travel"],
}

MAX_RECENT_FOR_POLICY = 10
MAX_TOPICS_FOR_POLICY = 50
MAX_ARTIFACTS_FOR_POLICY = 10

POLICY_INSTRUCTIONS = """You are a topic routing helper for a single conversation.

You are NOT the assistant that replies to the user. Never answer the message. Output ONE JSON object only.

Decide whether the new message continues the active topic, opens a new topic, or reopens an existing topic, and which artifacts to load.

Return exactly:
{
  "topicAction": "continue_active" | "new" | "reopen_existing",
  "primaryTopicId": string | null,
  "secondaryTopicIds": string[],
  "newTopicLabel": string | null,
  "newParentTopicId": string | null,
  "artifactsToLoad": string[],
  "memoryTypesToLoad": string[]
}

Rules:
- continue_active: primaryTopicId is the active topic id; newTopicLabel is null.
- new: primaryTopicId is null; newTopicLabel is 3-5 title-case words. newParentTopicId may name a top-level topic.
- reopen_existing: primaryTopicId is one of the listed topic ids.
- Only use ids that appear in the input. Never invent ids.
- Subtopics only go directly under top-level topics.
- memoryTypesToLoad is a subset of availableMemoryTypes."""


class RoutingPolicyOutput(BaseModel):
    """Shape the routing policy must answer with."""

    topicAction: str
    primaryTopicId: Optional[str] = None
    secondaryTopicIds: List[str] = []
    newTopicLabel: Optional[str] = None
    newParentTopicId: Optional[str] = None
    artifactsToLoad: List[str] = []
    memoryTypesToLoad: Optional[List[str]] = None

    @pydantic.field_validator("topicAction")
    @classmethod
    def _known_action(cls, value: str) -> str:
        if value not in ("continue_active", "new", "reopen_existing"):
            raise ValueError(f"unknown topicAction {value!r}")
        return value


@dataclass
class Decision:
    model: str
    model_family: str
    reasoning_effort: Optional[str]
    speed_mode: str = "auto"
    topic_action: str = "reuse"
    primary_topic_id: Optional[str] = None
    secondary_topic_ids: List[str] = field(default_factory=list)
    memory_types_to_load: List[str] = field(default_factory=list)
    artifact_ids_to_load: List[str] = field(default_factory=list)
    new_topic_label: Optional[str] = None
    new_parent_topic_id: Optional[str] = None
    routed_by: str = "heuristic"


# =============================================================================
# Model heuristics
# =============================================================================


def _has_complexity(normalized: str) -> bool:
    return any(k in normalized for k in HIGH_COMPLEXITY_KEYWORDS) or any(
        p in normalized for p in EXTREME_COMPLEXITY_PHRASES
    )


def should_use_light_reasoning(prompt: str) -> bool:
    normalized = prompt.strip().lower()
    if not normalized:
        return False
    if len(normalized) >= LONG_PROMPT_THRESHOLD:
        return True
    return any(k in normalized for k in LIGHT_REASONING_KEYWORDS)


def pick_medium_or_high(prompt: str) -> str:
    normalized = prompt.strip().lower()
    if len(normalized) >= HIGH_PROMPT_THRESHOLD:
        return "high"
    if any(k in normalized for k in HIGH_COMPLEXITY_KEYWORDS):
        return "high"
    if any(len(segment.strip()) > 200 for segment in re.split(r"[.!?]", normalized)):
        return "high"
    return "medium"


def _auto_effort(prompt: str, family: str) -> Optional[str]:
    normalized = prompt.strip()
    if not normalized:
        return None
    if len(normalized) >= HIGH_PROMPT_THRESHOLD * 1.2:
        return "high"
    if len(normalized) >= MEDIUM_PROMPT_THRESHOLD:
        return "medium"
    if should_use_light_reasoning(normalized):
        return "low"
    if _PLANNING_RE.search(normalized):
        return "medium"
    if family == "gpt-5.1" and len(normalized) >= LONG_PROMPT_THRESHOLD:
        return "low"
    return None


def _small_model_effort(effort: Optional[str]) -> str:
    """Mini/Nano always reason; 'none' is not accepted for them."""
    return effort if effort in ("medium", "high") else "low"


def select_auto_family(prompt: str, effort: Optional[str]) -> str:
    """Pick a family for an 'auto' preference from prompt size, complexity and effort."""
    normalized = prompt.strip().lower()
    length = len(normalized)
    complex_subject = _has_complexity(normalized) or bool(_COMPLEX_SUBJECT_RE.search(normalized))

    if not effort or effort == "none":
        return "gpt-5-nano" if length < 320 else "gpt-5-mini"
    if effort == "low":
        return "gpt-5-nano" if length < 600 and not complex_subject else "gpt-5-mini"
    if effort == "medium":
        if length < 400 and not complex_subject:
            return "gpt-5-nano"
        if length < 1600 or not complex_subject:
            return "gpt-5-mini"
        return "gpt-5.1"
    if length < 900 and not complex_subject:
        return "gpt-5-mini"
    return "gpt-5.1"


def resolve_model(model_preference: str, speed_mode: str, prompt: str) -> tuple:
    """Resolve (family, reasoning_effort) from the caller's preference and the prompt.

    Args:
        model_preference: "auto" or a known family name
        speed_mode: auto, instant or thinking (unknown values mean auto)
        prompt: The user's message

    Returns:
        (family, effort); effort is None when reasoning is omitted
    """
    speed_mode = speed_mode if speed_mode in SPEED_MODES else "auto"
    auto_family = model_preference not in runtime_config.model_families()
    family = runtime_config.default_model_family if auto_family else model_preference
    is_full = family in FULL_FAMILIES

    if family == "gpt-5-pro":
        effort: Optional[str] = "high"
    elif speed_mode == "instant":
        effort = "none" if is_full else "low"
    elif speed_mode == "thinking":
        effort = pick_medium_or_high(prompt)
    else:
        auto = _auto_effort(prompt, family)
        effort = (auto or "none") if is_full else _small_model_effort(auto)

    if auto_family:
        family = select_auto_family(prompt, effort)

    if family in SMALL_FAMILIES:
        effort = _small_model_effort(effort)

    return family, effort


def infer_memory_types(prompt: str, available: Sequence[str]) -> List[str]:
    """Memory types whose keywords appear in the prompt, limited to the user's types."""
    lower = f" {prompt.lower()} "
    matched = [t for t, words in MEMORY_TYPE_KEYWORDS.items() if any(w in lower for w in words)]
    chosen = [t for t in matched if t in available]
    if not chosen and "identity" in available:
        chosen = ["identity"]
    return chosen


def last_topic_in(turns: Sequence[Message]) -> Optional[str]:
    for turn in reversed(list(turns)):
        if turn.topic_id:
            return turn.topic_id
    return None


# =============================================================================
# Router
# =============================================================================


class DecisionRouter:
    """Chooses model, effort, topic and context to load for one turn."""

    def __init__(self, provider=None, policy_enabled: bool = True, policy_timeout: float = 8.0):
        self.provider = provider
        self.policy_enabled = policy_enabled and provider is not None
        self.policy_timeout = policy_timeout

    async def route(
        self,
        user_text: str,
        recent_turns: Sequence[Message],
        active_topic_id: Optional[str],
        available_memory_types: Sequence[str],
        available_topics: Sequence[Topic],
        available_artifacts: Sequence[Artifact],
        speed_preference: str = "auto",
        model_preference: str = "auto",
    ) -> Decision:
        family, effort = resolve_model(model_preference, speed_preference, user_text)
        decision = Decision(
            model=runtime_config.model_for_family(family),
            model_family=family,
            reasoning_effort=effort,
            speed_mode=speed_preference if speed_preference in SPEED_MODES else "auto",
            primary_topic_id=active_topic_id or last_topic_in(recent_turns),
            memory_types_to_load=infer_memory_types(user_text, available_memory_types),
        )

        if self.policy_enabled:
            try:
                self._apply_policy(
                    decision,
                    await self._call_policy(
                        user_text, recent_turns, active_topic_id, available_memory_types,
                        available_topics, available_artifacts,
                    ),
                    available_memory_types,
                    available_topics,
                    available_artifacts,
                )
                decision.routed_by = "policy"
            except (LLMError, pydantic.ValidationError, ValueError) as e:
                logger.warning(f"Routing policy discarded, using fallback: {e}")
                self._reset_to_fallback(decision, active_topic_id, recent_turns, available_memory_types)
                decision.routed_by = "fallback"

        log_route(logger, decision.model, decision.reasoning_effort or "none", decision.topic_action, decision.routed_by)
        return decision

    async def _call_policy(
        self,
        user_text: str,
        recent_turns: Sequence[Message],
        active_topic_id: Optional[str],
        available_memory_types: Sequence[str],
        available_topics: Sequence[Topic],
        available_artifacts: Sequence[Artifact],
    ) -> RoutingPolicyOutput:
        payload: Dict[str, Any] = {
            "userMessage": user_text,
            "activeTopicId": active_topic_id,
            "availableMemoryTypes": list(available_memory_types),
            "recentMessages": [
                {
                    "role": m.role,
                    "topicId": m.topic_id,
                    "preview": " ".join((m.content or "").split())[:240],
                }
                for m in list(recent_turns)[-MAX_RECENT_FOR_POLICY:]
            ],
            "topics": [
                {
                    "id": t.id,
                    "label": t.label,
                    "parentTopicId": t.parent_topic_id,
                    "summary": (t.summary or "")[:180],
                    "conversationId": t.conversation_id,
                }
                for t in list(available_topics)[:MAX_TOPICS_FOR_POLICY]
            ],
            "artifacts": [
                {"id": a.id, "title": a.title, "type": a.type, "topicId": a.topic_id, "summary": (a.summary or "")[:180]}
                for a in list(available_artifacts)[:MAX_ARTIFACTS_FOR_POLICY]
            ],
        }
        raw = await self.provider.complete_json(
            model=runtime_config.model_for_family(runtime_config.router_model_family),
            instructions=POLICY_INSTRUCTIONS,
            payload=payload,
            timeout=self.policy_timeout,
        )
        return RoutingPolicyOutput.model_validate(raw)

    @staticmethod
    def _apply_policy(
        decision: Decision,
        output: RoutingPolicyOutput,
        available_memory_types: Sequence[str],
        available_topics: Sequence[Topic],
        available_artifacts: Sequence[Artifact],
    ) -> None:
        topic_ids = {t.id for t in available_topics}
        artifact_ids = {a.id for a in available_artifacts}

        if output.topicAction == "new":
            decision.topic_action = "new"
            decision.primary_topic_id = None
            decision.new_topic_label = (output.newTopicLabel or "").strip() or None
            parent = output.newParentTopicId
            decision.new_parent_topic_id = parent if parent in topic_ids else None
        else:
            if not output.primaryTopicId or output.primaryTopicId not in topic_ids:
                raise ValueError(f"policy referenced unknown topic id {output.primaryTopicId!r}")
            decision.topic_action = "reuse"
            decision.primary_topic_id = output.primaryTopicId

        decision.secondary_topic_ids = [
            t for t in dict.fromkeys(output.secondaryTopicIds)
            if t in topic_ids and t != decision.primary_topic_id
        ]
        decision.artifact_ids_to_load = [a for a in dict.fromkeys(output.artifactsToLoad) if a in artifact_ids]
        if output.memoryTypesToLoad is not None:
            decision.memory_types_to_load = [t for t in output.memoryTypesToLoad if t in available_memory_types]

    @staticmethod
    def _reset_to_fallback(
        decision: Decision,
        active_topic_id: Optional[str],
        recent_turns: Sequence[Message],
        available_memory_types: Sequence[str],
    ) -> None:
        decision.topic_action = "reuse"
        decision.primary_topic_id = active_topic_id or last_topic_in(recent_turns)
        decision.secondary_topic_ids = []
        decision.artifact_ids_to_load = []
        decision.new_topic_label = None
        decision.new_parent_topic_id = None
        decision.memory_types_to_load = ["identity"] if "identity" in available_memory_types else []
