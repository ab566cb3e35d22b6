"""
Realtime agent orchestration for MockLoop interviews.

A coordinator hub hands off to behavioral and technical spokes, which only
hand back to the coordinator.
"""

from .flow import HandoffFlow, Phase
from .graph import AgentGraph, build_agent_graph
from .router import SessionEvent, SessionEventRouter
from .session import CodeHint, InterviewSessionContext, SessionConfig, SessionServices
from .tools import AgentsHintGenerator, SessionToolbox, summarize_run


__all__ = [
    "AgentGraph",
    "AgentsHintGenerator",
    "CodeHint",
    "HandoffFlow",
    "InterviewSessionContext",
    "Phase",
    "SessionConfig",
    "SessionEvent",
    "SessionEventRouter",
    "SessionServices",
    "SessionToolbox",
    "build_agent_graph",
    "summarize_run",
]
