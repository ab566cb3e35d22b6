"""
Agent graph factory.

Builds the coordinator hub and the spokes a mode needs as ``RealtimeAgent``s.
All instructions and handoffs are fixed here; nothing mutates an agent after
``build_agent_graph`` returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from agents.realtime import RealtimeAgent

from .prompts import (
    BEHAVIORAL_NAME,
    COORDINATOR_NAME,
    TECHNICAL_NAME,
    behavioral_instructions,
    coordinator_instructions,
    technical_instructions,
)
from .session import InterviewSessionContext, SessionConfig
from .tools import COORDINATOR_TOOLS, TECHNICAL_TOOLS


__all__ = ["AgentGraph", "build_agent_graph"]


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentGraph:
    """The agents for one session. ``coordinator`` is the starting agent."""

    config: SessionConfig
    coordinator: RealtimeAgent[InterviewSessionContext]
    behavioral: Optional[RealtimeAgent[InterviewSessionContext]] = None
    technical: Optional[RealtimeAgent[InterviewSessionContext]] = None

    @property
    def agents(self) -> list[RealtimeAgent[InterviewSessionContext]]:
        return [a for a in (self.coordinator, self.behavioral, self.technical) if a is not None]

    def edges(self) -> set[tuple[str, str]]:
        """Directed handoff edges as (from, to) agent names."""
        return {(agent.name, target.name) for agent in self.agents for target in agent.handoffs}


def build_agent_graph(config: SessionConfig) -> AgentGraph:
    """
    Build the star-shaped agent graph for ``config.mode``.

    Spokes are created first without handoffs so the coordinator can list
    them, then each spoke is given its single edge back to the coordinator.
    """
    behavioral: Optional[RealtimeAgent[InterviewSessionContext]] = None
    technical: Optional[RealtimeAgent[InterviewSessionContext]] = None

    if config.runs_behavioral:
        behavioral = RealtimeAgent(
            name=BEHAVIORAL_NAME,
            instructions=behavioral_instructions(config),
            handoff_description="Conducts the behavioral interview. Does not give feedback.",
        )
    if config.runs_technical:
        technical = RealtimeAgent(
            name=TECHNICAL_NAME,
            instructions=technical_instructions(config),
            tools=list(TECHNICAL_TOOLS),
            handoff_description="Conducts the coding interview. Does not give feedback.",
        )

    spokes = [agent for agent in (behavioral, technical) if agent is not None]
    coordinator = RealtimeAgent(
        name=COORDINATOR_NAME,
        instructions=coordinator_instructions(config),
        tools=list(COORDINATOR_TOOLS),
        handoffs=list(spokes),
        handoff_description="Coordinates the interview phases and delivers the evaluation.",
    )
    for spoke in spokes:
        spoke.handoffs = [coordinator]

    logger.info(
        "Built %s agent graph: %s",
        config.mode.value,
        ", ".join(agent.name for agent in [coordinator, *spokes]),
    )
    return AgentGraph(config=config, coordinator=coordinator, behavioral=behavioral, technical=technical)
