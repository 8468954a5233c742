"""
Parley Chat Orchestration - Components behind POST /api/chat

Components:
- ChatOrchestrator: validates a turn and runs it end to end
- DecisionRouter: model, effort, topic and context selection (before the reply)
- ContextAssembler: budgeted history (topic-structured or recency window)
- EvidenceGate: web evidence pipeline and the tool plan it implies
- StreamingEngine: provider stream -> NDJSON events and a persisted reply
- WriterRouter: topic, memory, instruction and artifact writes (after the reply)

Routing Architecture:
    Both routers try a small JSON policy model first and fall back to
    deterministic heuristics. A policy that times out, returns invalid JSON
    or references unknown ids never fails the turn.

    Model and reasoning effort are always chosen by the heuristics; the
    policy only picks topics, artifacts and memory types.
"""

from .context_builder import AssembledContext, AssemblyOptions, ContextAssembler, build_assembler
from .decision_router import Decision, DecisionRouter
from .evidence_gate import EvidenceGate, GateResult, ToolPlan, resolve_tool_plan
from .orchestrator import Attachment, ChatOrchestrator, PreparedTurn, TurnRequest
from .stream_engine import EngineRequest, StreamingEngine, StreamOutcome, StreamState
from .writer_router import WriterContext, WriterDecision, WriterRouter

__all__ = [
    "AssembledContext",
    "AssemblyOptions",
    "Attachment",
    "ChatOrchestrator",
    "ContextAssembler",
    "Decision",
    "DecisionRouter",
    "EngineRequest",
    "EvidenceGate",
    "GateResult",
    "PreparedTurn",
    "StreamOutcome",
    "StreamState",
    "StreamingEngine",
    "ToolPlan",
    "TurnRequest",
    "WriterContext",
    "WriterDecision",
    "WriterRouter",
    "build_assembler",
    "resolve_tool_plan",
]
