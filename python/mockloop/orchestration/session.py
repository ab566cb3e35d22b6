"""
Per-session configuration and state for a realtime interview.

``SessionConfig`` is fixed before the agent graph is built. Everything that
changes during the call lives on ``InterviewSessionContext``, which the
realtime runner hands to every tool through ``RunContextWrapper``. Nothing is
kept at module level, so concurrent sessions never share state.

Thread Safety:
    A context belongs to one session and one event loop. It is NOT safe to
    share across sessions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from ..execution import ExecutionResult, Runtime
from ..models import InterviewMode, Message, Submission, merge_messages
from ..questions import Question


__all__ = [
    "SessionConfig",
    "CodeHint",
    "SessionServices",
    "InterviewSessionContext",
    "RealtimeTransport",
]


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionConfig:
    """Inputs fixed for the lifetime of one realtime session."""

    resume_text: str = ""
    candidate_name: str = "the candidate"
    mode: InterviewMode = InterviewMode.FULL
    preselected_language: Optional[str] = None
    difficulty: str = "Medium"

    @property
    def runs_behavioral(self) -> bool:
        return self.mode in (InterviewMode.FULL, InterviewMode.BEHAVIORAL)

    @property
    def runs_technical(self) -> bool:
        return self.mode in (InterviewMode.FULL, InterviewMode.TECHNICAL)


class CodeHint(BaseModel):
    """A targeted suggestion against the candidate's current code."""

    start_line: int = Field(..., ge=1, description="First line (1-based) the hint replaces")
    end_line: int = Field(..., ge=1, description="Last line (1-based, inclusive) the hint replaces")
    snippet: str = Field(..., description="Replacement code, 1 to 3 lines. Never a full solution.")


# =============================================================================
# Substitutable sources
# =============================================================================


class QuestionSource(Protocol):
    async def next_question(self, user_id: str, difficulty: str) -> Question: ...


class WhiteboardSource(Protocol):
    async def capture(self) -> str:
        """Current whiteboard snapshot as a data URL."""
        ...


class ImageInterpreter(Protocol):
    async def interpret(self, image: str) -> str: ...


class HintGenerator(Protocol):
    async def suggest(self, numbered_code: str, problem: str) -> CodeHint: ...


class LanguageCatalog(Protocol):
    async def resolve_language(self, name: str) -> Runtime: ...


class AttemptRecorder(Protocol):
    async def __call__(self, question: Question, language: str, version: str) -> Optional[str]:
        """Persist a problem attempt and return its id."""
        ...


class RealtimeTransport(Protocol):
    """What the session core needs from the realtime connection."""

    async def mute(self, muted: bool) -> None: ...

    async def send_message(self, message: str) -> None: ...


@dataclass
class SessionServices:
    """External collaborators reachable from tools."""

    questions: QuestionSource
    whiteboard: Optional[WhiteboardSource] = None
    interpreter: Optional[ImageInterpreter] = None
    hints: Optional[HintGenerator] = None
    languages: Optional[LanguageCatalog] = None
    record_attempt: Optional[AttemptRecorder] = None


# =============================================================================
# Session context
# =============================================================================


@dataclass
class InterviewSessionContext:
    """
    Mutable state of one realtime interview.

    Attributes:
        pending_end: Set by ``end_interview``; the session ends once the
            coordinator's final audio finishes, unless cancelled first.
        muted: Whether candidate audio is currently muted.
        code: The candidate's editor buffer. Tools read it fresh every call.
    """

    interview_id: str
    user_id: str
    config: SessionConfig
    services: SessionServices
    transport: Optional[RealtimeTransport] = None
    pending_end: bool = False
    muted: bool = False
    ended: bool = False
    active_agent: Optional[str] = None
    code: str = ""
    language: Optional[str] = None
    language_version: str = "*"
    question: Optional[Question] = None
    attempt_id: Optional[str] = None
    submissions: list[Submission] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    latest_feedback: Optional[dict] = None

    def __post_init__(self) -> None:
        if self.language is None:
            self.language = self.config.preselected_language

    def set_code(self, code: str) -> None:
        self.code = code

    def add_messages(self, *messages: Message) -> None:
        self.messages = merge_messages(self.messages, list(messages))

    def record_run(self, result: ExecutionResult, submitted_at: int) -> Submission:
        submission = Submission(
            submitted_at=submitted_at,
            user_code=self.code,
            stdout=result.stdout,
            stderr=result.stderr,
        )
        self.submissions.append(submission)
        return submission

    async def set_muted(self, muted: bool) -> None:
        self.muted = muted
        if self.transport is not None:
            await self.transport.mute(muted)

    async def notify(self, message: str) -> None:
        """Send a system message into the conversation, if connected."""
        if self.transport is None:
            logger.warning("No transport for session %s; dropping message", self.interview_id)
            return
        await self.transport.send_message(message)
