"""
Realtime session runtime.

Wires one interview to an OpenAI Agents SDK ``RealtimeSession``: builds the
agent graph, feeds SDK events through ``SessionEventRouter`` and connects the
tools to the lifecycle manager, question rotation, code runner and vision
client.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from agents.realtime import RealtimeRunner, RealtimeSession

from ..errors import HandoffViolation
from ..execution import PistonClient
from ..feedback import FeedbackSynthesizer
from ..lifecycle import InterviewLifecycleManager, InterviewUpdate
from ..models import Message, Submission
from ..questions import Question, QuestionRotation
from .flow import HandoffFlow
from .graph import AgentGraph, build_agent_graph
from .router import SessionEvent, SessionEventRouter
from .session import (
    HintGenerator,
    ImageInterpreter,
    InterviewSessionContext,
    SessionConfig,
    SessionServices,
    WhiteboardSource,
)


__all__ = ["RealtimeSessionTransport", "InterviewSessionRunner", "normalize_event"]


logger = logging.getLogger(__name__)


DEFAULT_REALTIME_MODEL = "gpt-realtime"
KICKOFF_MESSAGE = "Do not mention this message. Start the conversation with the candidate."


def _now_ms() -> int:
    return int(time.time() * 1000)


class RealtimeSessionTransport:
    """
    Adapts a ``RealtimeSession`` to ``RealtimeTransport``.

    The SDK session has no mute switch, so muting is enforced here by dropping
    candidate audio until unmuted.
    """

    def __init__(self, session: RealtimeSession) -> None:
        self.session = session
        self.muted = False

    async def mute(self, muted: bool) -> None:
        self.muted = muted

    async def send_message(self, message: str) -> None:
        await self.session.send_message(message)

    async def send_audio(self, audio: bytes) -> None:
        if self.muted:
            return
        await self.session.send_audio(audio)


# =============================================================================
# Event normalization
# =============================================================================


def _item_to_message(item: Any, created: int) -> Optional[Message]:
    role = getattr(item, "role", None)
    if role not in ("user", "assistant") or getattr(item, "type", "message") != "message":
        return None
    parts = []
    for part in getattr(item, "content", None) or []:
        text = getattr(part, "transcript", None) or getattr(part, "text", None)
        if text:
            parts.append(text)
    return Message(
        role="user" if role == "user" else "agent",
        id=item.item_id,
        content=" ".join(parts),
        created=created,
    )


def normalize_event(event: Any, created_for: Callable[[str], int] = lambda _id: _now_ms()) -> list[SessionEvent]:
    """
    Reduce an SDK realtime event to zero or more ``SessionEvent``s.

    ``created_for`` supplies the timestamp for a transcript item so that
    re-delivered items keep their original position.
    """
    kind = getattr(event, "type", None)
    if kind == "agent_start":
        return [SessionEvent(type="agent_start", agent=event.agent.name)]
    if kind == "tool_start":
        return [SessionEvent(type="agent_tool_start", agent=event.agent.name, tool=event.tool.name)]
    if kind == "tool_end":
        return [
            SessionEvent(
                type="agent_tool_end",
                agent=event.agent.name,
                tool=event.tool.name,
                output=str(event.output) if event.output is not None else None,
            )
        ]
    if kind == "audio_end":
        return [SessionEvent(type="audio_done")]
    if kind in ("history_added", "history_updated"):
        items = [event.item] if kind == "history_added" else list(event.history)
        events = []
        for item in items:
            item_id = getattr(item, "item_id", None)
            if not item_id:
                continue
            message = _item_to_message(item, created_for(item_id))
            if message is not None and message.content:
                events.append(SessionEvent(type="transcript", message=message))
        return events
    if kind == "error":
        logger.error("Realtime session error: %s", getattr(event, "error", event))
    return []


# =============================================================================
# Runner
# =============================================================================


class InterviewSessionRunner:
    """
    One realtime interview, from kickoff to finalization.

    Example:
        >>> runner = InterviewSessionRunner.create(
        ...     interview_id, user_id, SessionConfig(mode=InterviewMode.TECHNICAL),
        ...     lifecycle=lifecycle, rotation=rotation, piston=piston,
        ... )
        >>> await runner.run()
    """

    def __init__(
        self,
        graph: AgentGraph,
        context: InterviewSessionContext,
        router: SessionEventRouter,
        lifecycle: InterviewLifecycleManager,
        piston: Optional[PistonClient] = None,
        model_name: str = DEFAULT_REALTIME_MODEL,
    ) -> None:
        self.graph = graph
        self.context = context
        self.router = router
        self.lifecycle = lifecycle
        self.piston = piston
        self.model_name = model_name
        self.transport: Optional[RealtimeSessionTransport] = None
        self.outbound: Optional[Callable[[dict[str, Any]], Awaitable[None]]] = None

    @classmethod
    def create(
        cls,
        interview_id: str,
        user_id: str,
        config: SessionConfig,
        lifecycle: InterviewLifecycleManager,
        rotation: QuestionRotation,
        piston: Optional[PistonClient] = None,
        synthesizer: Optional[FeedbackSynthesizer] = None,
        interpreter: Optional[ImageInterpreter] = None,
        whiteboard: Optional[WhiteboardSource] = None,
        hints: Optional[HintGenerator] = None,
        confirm_end: Optional[Callable[[], Awaitable[bool]]] = None,
        model_name: str = DEFAULT_REALTIME_MODEL,
    ) -> "InterviewSessionRunner":
        async def record_attempt(question: Question, language: str, version: str) -> Optional[str]:
            attempt = await lifecycle.start_problem_attempt(user_id, interview_id, question.id, language, version)
            return attempt.id

        services = SessionServices(
            questions=rotation,
            whiteboard=whiteboard,
            interpreter=interpreter,
            hints=hints,
            languages=piston,
            record_attempt=record_attempt,
        )
        context = InterviewSessionContext(
            interview_id=interview_id,
            user_id=user_id,
            config=config,
            services=services,
        )

        async def finalize() -> None:
            update = InterviewUpdate(
                messages=context.messages,
                code=context.code,
                feedback=context.latest_feedback,
            )
            await lifecycle.save_interview(user_id, interview_id, update)
            result = await lifecycle.end_interview(user_id, interview_id)
            logger.info(
                "Interview %s finalized: used=%d balance=%d", interview_id, result.tokens_used, result.new_balance
            )

        router = SessionEventRouter(
            context=context,
            flow=HandoffFlow(config.mode),
            on_end=finalize,
            synthesizer=synthesizer,
            confirm_end=confirm_end,
        )
        return cls(
            graph=build_agent_graph(config),
            context=context,
            router=router,
            lifecycle=lifecycle,
            piston=piston,
            model_name=model_name,
        )

    def _created_for(self, item_id: str) -> int:
        for message in self.context.messages:
            if message.id == item_id:
                return message.created
        return _now_ms()

    async def send_audio(self, audio: bytes) -> None:
        """Forward candidate audio. Dropped before the session connects or while muted."""
        if self.transport is None:
            return
        await self.transport.send_audio(audio)

    async def _forward(self, event: Any, normalized: list[SessionEvent]) -> None:
        if self.outbound is None:
            return
        kind = getattr(event, "type", None)
        if kind == "audio":
            await self.outbound({"type": "audio", "data": base64.b64encode(event.audio.data).decode("ascii")})
        elif kind == "audio_interrupted":
            await self.outbound({"type": "audio_interrupted"})
        for item in normalized:
            if item.type == "agent_start":
                await self.outbound({"type": "agent", "agent": item.agent})
            elif item.type == "transcript" and item.message is not None:
                await self.outbound({"type": "transcript", "message": item.message.model_dump()})

    async def submit_code(self, source: str) -> dict[str, Any]:
        """Run the candidate's code and relay the result to the active agent."""
        if self.piston is None:
            raise RuntimeError("No code runner configured for this session")
        self.context.set_code(source)
        submitted_at = _now_ms()
        result = await self.piston.execute(
            self.context.language or "python",
            self.context.language_version,
            source,
        )
        summary = await self.router.relay_run(result, submitted_at)
        if self.context.attempt_id is not None:
            await self.lifecycle.record_submission(
                self.context.user_id,
                self.context.attempt_id,
                Submission(submitted_at=submitted_at, user_code=source, stdout=result.stdout, stderr=result.stderr),
            )
        return summary

    async def run(self) -> None:
        """Run the session until it ends or the connection drops."""
        runner = RealtimeRunner(
            starting_agent=self.graph.coordinator,
            config={"model_settings": {"model_name": self.model_name, "modalities": ["audio"]}},
        )
        try:
            session = await runner.run(context=self.context)
            self.transport = RealtimeSessionTransport(session)
            self.context.transport = self.transport
            async with session:
                await session.send_message(KICKOFF_MESSAGE)
                async for event in session:
                    normalized = normalize_event(event, self._created_for)
                    for item in normalized:
                        try:
                            await self.router.handle(item)
                        except HandoffViolation as e:
                            logger.error("Session %s handoff violation: %s", self.context.interview_id, e)
                    await self._forward(event, normalized)
                    if self.context.ended:
                        break
        finally:
            await self.router.handle(SessionEvent(type="disconnect"))
