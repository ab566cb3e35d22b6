"""
Session event router.

Consumes normalized realtime events and reacts to them:

    agent_start      advance the handoff flow
    agent_tool_start end_interview / get_feedback move the flow
    agent_tool_end   get_feedback runs the synthesizer, delivered out-of-band
    transcript       merge into the session transcript
    audio_done       if an end is pending, confirm and end the interview
    disconnect       best-effort end; safe to repeat
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, Field

from ..errors import FeedbackGenerationFailed, FeedbackValidationError
from ..execution import ExecutionResult
from ..feedback import FeedbackRequest, FeedbackSynthesizer
from ..models import Message
from .flow import HandoffFlow, Phase
from .session import InterviewSessionContext
from .tools import SessionToolbox, summarize_run


__all__ = ["SessionEvent", "SessionEventRouter"]


logger = logging.getLogger(__name__)


EventType = Literal[
    "agent_start",
    "agent_tool_start",
    "agent_tool_end",
    "audio_done",
    "transcript",
    "disconnect",
]


class SessionEvent(BaseModel):
    """A transport event reduced to what the session core reacts to."""

    type: EventType
    agent: Optional[str] = Field(default=None, description="Agent name for agent_* events")
    tool: Optional[str] = Field(default=None, description="Tool name for agent_tool_* events")
    output: Optional[str] = Field(default=None, description="Tool output for agent_tool_end")
    message: Optional[Message] = Field(default=None, description="Transcript message")


class SessionEventRouter:
    """
    Drives one session from its events.

    Args:
        context: Session state shared with the tools.
        flow: Handoff state machine for the session's mode.
        on_end: Finalizes the interview. Must be idempotent.
        synthesizer: Produces feedback when the coordinator calls get_feedback.
        confirm_end: Asks the candidate to confirm ending; defaults to yes.
    """

    def __init__(
        self,
        context: InterviewSessionContext,
        flow: HandoffFlow,
        on_end: Callable[[], Awaitable[Any]],
        synthesizer: Optional[FeedbackSynthesizer] = None,
        confirm_end: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> None:
        self.context = context
        self.flow = flow
        self.on_end = on_end
        self.synthesizer = synthesizer
        self.confirm_end = confirm_end
        self.toolbox = SessionToolbox(context)

    async def handle(self, event: SessionEvent) -> None:
        if event.type == "agent_start":
            if event.agent:
                self.flow.enter(event.agent)
                self.context.active_agent = event.agent
        elif event.type == "agent_tool_start":
            await self._on_tool_start(event.tool)
        elif event.type == "agent_tool_end":
            await self._on_tool_end(event.tool)
        elif event.type == "transcript":
            if event.message is not None:
                self.context.add_messages(event.message)
        elif event.type == "audio_done":
            await self._on_audio_done()
        elif event.type == "disconnect":
            await self._on_disconnect()

    async def _on_tool_start(self, tool: Optional[str]) -> None:
        if tool == "end_interview":
            self.flow.close()
        elif tool == "get_feedback":
            self.flow.request_feedback()

    async def _on_tool_end(self, tool: Optional[str]) -> None:
        if tool == "get_feedback":
            await self.deliver_feedback()

    async def _on_audio_done(self) -> None:
        if not self.context.pending_end or self.context.ended:
            return
        confirmed = True
        if self.confirm_end is not None:
            confirmed = await self.confirm_end()
        if confirmed:
            await self.end("final remarks finished")
        else:
            await self.toolbox.cancel_pending_end()
            if self.flow.phase == Phase.CLOSING:
                self.flow.reopen()

    async def _on_disconnect(self) -> None:
        self.flow.terminate()
        await self.end("disconnect")

    async def end(self, reason: str) -> bool:
        """
        End the interview once. Failures are logged and leave the session
        endable, so a later signal retries.
        """
        if self.context.ended:
            logger.debug("Session %s already ended; ignoring %s", self.context.interview_id, reason)
            return False
        try:
            await self.on_end()
        except Exception:
            logger.error("Ending interview %s failed (%s)", self.context.interview_id, reason, exc_info=True)
            return False
        self.context.ended = True
        self.flow.terminate()
        logger.info("Session %s ended: %s", self.context.interview_id, reason)
        return True

    async def deliver_feedback(self) -> Optional[dict[str, Any]]:
        """Synthesize feedback and send it to the coordinator as a system message."""
        ctx = self.context
        if self.synthesizer is None:
            await ctx.notify("Do not mention this message. Feedback is unavailable; thank the candidate instead.")
            return None

        request = FeedbackRequest(
            mode=ctx.config.mode,
            messages=ctx.messages,
            final_code=ctx.code,
            submissions=ctx.submissions,
            question=ctx.question.describe() if ctx.question is not None else None,
        )
        try:
            feedback = await self.synthesizer.synthesize(request)
        except (FeedbackGenerationFailed, FeedbackValidationError) as e:
            logger.error("Feedback for %s failed: %s", ctx.interview_id, e.message)
            await ctx.notify(
                "Do not mention this message. Feedback could not be generated. "
                "Apologize briefly and let the candidate know it will be available later."
            )
            return None

        payload = feedback.model_dump(mode="json")
        ctx.latest_feedback = payload
        await ctx.notify(
            "Do not mention this message. This is the interview feedback; deliver it to the candidate: "
            + json.dumps(payload)
        )
        return payload

    async def relay_run(self, result: ExecutionResult, submitted_at: int) -> dict[str, Any]:
        """Record a code run and tell the active agent how it went."""
        self.context.record_run(result, submitted_at)
        summary = summarize_run(result.stdout, result.stderr)
        await self.context.notify(
            "This is a message from the system, do not acknowledge you have received it. "
            f"The result of the candidate's code run was {json.dumps(summary)}."
        )
        return summary
