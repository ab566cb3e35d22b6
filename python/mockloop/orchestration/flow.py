"""
Handoff state machine.

    greeting -> dispatch -> [behavioral | technical]* -> feedback -> closing -> terminated

The coordinator is the hub. Spokes only hand control back to it; the
coordinator only hands off to the next spoke its mode still needs (full runs
behavioral, then technical). Exactly one agent is active at a time.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from ..errors import HandoffViolation
from ..models import InterviewMode
from .prompts import BEHAVIORAL_NAME, COORDINATOR_NAME, TECHNICAL_NAME


logger = logging.getLogger(__name__)


class Phase(str, Enum):
    GREETING = "greeting"
    DISPATCH = "dispatch"
    BEHAVIORAL = "behavioral"
    TECHNICAL = "technical"
    FEEDBACK = "feedback"
    CLOSING = "closing"
    TERMINATED = "terminated"


_SPOKE_PHASES = {
    BEHAVIORAL_NAME: Phase.BEHAVIORAL,
    TECHNICAL_NAME: Phase.TECHNICAL,
}

_PLANS = {
    InterviewMode.FULL: (Phase.BEHAVIORAL, Phase.TECHNICAL),
    InterviewMode.BEHAVIORAL: (Phase.BEHAVIORAL,),
    InterviewMode.TECHNICAL: (Phase.TECHNICAL,),
}

_COORDINATOR_PHASES = frozenset({Phase.GREETING, Phase.DISPATCH, Phase.FEEDBACK})


class HandoffFlow:
    """Tracks and enforces the phase sequence of one session."""

    def __init__(self, mode: InterviewMode) -> None:
        self.mode = InterviewMode(mode)
        self.plan: tuple[Phase, ...] = _PLANS[self.mode]
        self.completed: list[Phase] = []
        self.phase = Phase.GREETING
        self.active_agent = COORDINATOR_NAME
        self.history: list[Phase] = [Phase.GREETING]
        self._before_closing: Optional[Phase] = None

    @property
    def remaining(self) -> tuple[Phase, ...]:
        if self.phase in (Phase.FEEDBACK, Phase.CLOSING, Phase.TERMINATED):
            return ()
        return self.plan[len(self.completed):]

    @property
    def terminated(self) -> bool:
        return self.phase == Phase.TERMINATED

    def _move(self, phase: Phase) -> None:
        logger.debug("Phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        self.history.append(phase)

    def _require_live(self) -> None:
        if self.phase == Phase.TERMINATED:
            raise HandoffViolation("Session is terminated")

    def _require_coordinator(self, action: str) -> None:
        if self.active_agent != COORDINATOR_NAME:
            raise HandoffViolation(f"Only the coordinator may {action}; {self.active_agent} is active")

    def enter(self, agent_name: str) -> Phase:
        """Record that ``agent_name`` became active, validating the implied handoff."""
        if agent_name == self.active_agent:
            return self.phase
        return self.hand_off(self.active_agent, agent_name)

    def hand_off(self, from_agent: str, to_agent: str) -> Phase:
        self._require_live()
        if from_agent != self.active_agent:
            raise HandoffViolation(f"{from_agent} is not the active agent ({self.active_agent} is)")
        if COORDINATOR_NAME not in (from_agent, to_agent):
            raise HandoffViolation(f"Spoke-to-spoke handoff {from_agent} -> {to_agent} is not allowed")

        if from_agent == COORDINATOR_NAME:
            target = _SPOKE_PHASES.get(to_agent)
            if target is None:
                raise HandoffViolation(f"Unknown agent {to_agent!r}")
            if self.phase not in (Phase.GREETING, Phase.DISPATCH):
                raise HandoffViolation(f"Cannot hand off to {to_agent} during {self.phase.value}")
            remaining = self.remaining
            if not remaining or remaining[0] != target:
                expected = remaining[0].value if remaining else "feedback"
                raise HandoffViolation(
                    f"Out-of-order phase {target.value} for {self.mode.value} interview; expected {expected}"
                )
            if self.phase == Phase.GREETING:
                self._move(Phase.DISPATCH)
            self._move(target)
        else:
            self.completed.append(self.phase)
            self._move(Phase.DISPATCH if self.plan[len(self.completed):] else Phase.FEEDBACK)

        logger.info("Handoff %s -> %s (phase=%s)", from_agent, to_agent, self.phase.value)
        self.active_agent = to_agent
        return self.phase

    def request_feedback(self) -> Phase:
        """Coordinator asked for feedback. Phases not yet run are skipped."""
        self._require_live()
        self._require_coordinator("request feedback")
        if self.phase not in _COORDINATOR_PHASES:
            raise HandoffViolation(f"Cannot request feedback during {self.phase.value}")
        if self.phase != Phase.FEEDBACK:
            skipped = self.remaining
            if skipped:
                logger.warning("Feedback requested with phases not run: %s", [p.value for p in skipped])
            self._move(Phase.FEEDBACK)
        return self.phase

    def close(self) -> Phase:
        """Coordinator called end_interview."""
        self._require_live()
        self._require_coordinator("close the interview")
        if self.phase == Phase.CLOSING:
            return self.phase
        self._before_closing = self.phase
        self._move(Phase.CLOSING)
        return self.phase

    def reopen(self) -> Phase:
        """The candidate declined to end; resume the phase that was interrupted."""
        self._require_live()
        if self.phase != Phase.CLOSING or self._before_closing is None:
            raise HandoffViolation(f"Nothing to reopen during {self.phase.value}")
        self._move(self._before_closing)
        self._before_closing = None
        return self.phase

    def terminate(self) -> Phase:
        if self.phase != Phase.TERMINATED:
            self._move(Phase.TERMINATED)
        return self.phase
