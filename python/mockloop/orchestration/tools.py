"""
Interview tools.

``SessionToolbox`` holds the tool behaviour against an
``InterviewSessionContext`` so it can be exercised without a realtime
session. The ``function_tool`` wrappers below are what the agents see; each
one only unwraps the context and delegates.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx
from agents import Agent, RunContextWrapper, Runner, function_tool

from ..errors import ImagePayloadTooLarge, VisionUnavailable
from ..execution import AVAILABLE_LANGUAGES
from ..llm import get_openai_config
from .session import CodeHint, InterviewSessionContext, SessionServices


__all__ = [
    "SessionToolbox",
    "AgentsHintGenerator",
    "number_code_lines",
    "bound_hint",
    "summarize_run",
    "COORDINATOR_TOOLS",
    "TECHNICAL_TOOLS",
    "END_ACKNOWLEDGEMENT",
    "FEEDBACK_PLACEHOLDER",
]


logger = logging.getLogger(__name__)


END_ACKNOWLEDGEMENT = "Interview ending... waiting for final remarks."
FEEDBACK_PLACEHOLDER = " "
MAX_HINT_LINES = 3

WHITEBOARD_TOO_LARGE = (
    "The whiteboard drawing is too large to analyze right now. Ask the candidate to describe "
    "what they drew, or to simplify the drawing and ask again."
)
WHITEBOARD_UNAVAILABLE = "The whiteboard is not available in this session. Ask the candidate to describe their drawing."
WHITEBOARD_FAILED = (
    "The whiteboard could not be analyzed because the vision service is not responding. "
    "Ask the candidate to walk you through the drawing."
)


# =============================================================================
# Pure helpers
# =============================================================================


def number_code_lines(code: str) -> str:
    """'a\\nb' -> '1: a\\n2: b'. Empty code yields an empty string."""
    if not code:
        return ""
    return "\n".join(f"{i}: {line}" for i, line in enumerate(code.split("\n"), 1))


def bound_hint(hint: CodeHint, line_count: int) -> CodeHint:
    """Clamp a hint to the code's lines and to at most ``MAX_HINT_LINES`` lines."""
    line_count = max(1, line_count)
    start = min(max(1, hint.start_line), line_count)
    end = min(max(start, hint.end_line), line_count, start + MAX_HINT_LINES - 1)
    snippet_lines = hint.snippet.split("\n")[:MAX_HINT_LINES]
    return CodeHint(start_line=start, end_line=end, snippet="\n".join(snippet_lines))


def summarize_run(stdout: str, stderr: str) -> dict[str, Any]:
    """
    Relay a code run to the agent.

    Non-empty stderr is a failure and is passed through verbatim; empty
    stderr is a pass.
    """
    stderr = stderr or ""
    if stderr.strip():
        return {"passed": False, "stderr": stderr, "stdout": stdout or ""}
    return {"passed": True, "stdout": stdout or ""}


# =============================================================================
# Hint generation
# =============================================================================


HINT_INSTRUCTIONS = """You write one small, targeted hint for a candidate in a coding interview.

You are given the problem and the candidate's code with 1-based line numbers.
Choose the smallest range of lines (at most 3) whose change moves the candidate forward,
and return replacement code for exactly that range.

Rules:
- start_line and end_line must refer to existing lines.
- snippet is 1 to 3 lines of code. NEVER write the full solution.
- Prefer fixing the first real bug over style issues."""


class AgentsHintGenerator:
    """Runs a structured-output Agent that returns a ``CodeHint``."""

    def __init__(self, model: Optional[str] = None) -> None:
        default_model, azure_client = get_openai_config("OPENAI_FEEDBACK_MODEL")
        self.model = model or default_model
        if azure_client is not None:
            from agents import set_default_openai_client

            set_default_openai_client(azure_client)

    async def suggest(self, numbered_code: str, problem: str) -> CodeHint:
        agent = Agent(
            name="Hint Writer",
            instructions=HINT_INSTRUCTIONS,
            model=self.model,
            output_type=CodeHint,
        )
        prompt = f"## Problem\n{problem or '(unknown problem)'}\n\n## Candidate code\n{numbered_code}"
        result = await Runner.run(agent, prompt)
        return result.final_output


# =============================================================================
# Toolbox
# =============================================================================


class SessionToolbox:
    """Tool behaviour bound to one session context."""

    def __init__(self, context: InterviewSessionContext) -> None:
        self.context = context

    @property
    def services(self) -> SessionServices:
        return self.context.services

    async def get_question(self, difficulty: Optional[str] = None) -> str:
        ctx = self.context
        difficulty = difficulty or ctx.config.difficulty
        question = await self.services.questions.next_question(ctx.user_id, difficulty)
        ctx.question = question
        ctx.submissions = []

        if self.services.record_attempt is not None:
            ctx.attempt_id = await self.services.record_attempt(
                question,
                ctx.language or "python",
                ctx.language_version,
            )

        logger.info("Session %s presented question %s", ctx.interview_id, question.id)
        return json.dumps(
            {
                "id": question.id,
                "title": question.title,
                "difficulty": question.difficulty,
                "problem": question.describe(),
            }
        )

    async def get_user_code(self) -> str:
        numbered = number_code_lines(self.context.code)
        if not numbered:
            return "The candidate has not written any code yet."
        return numbered

    async def get_whiteboard_image(self) -> str:
        whiteboard = self.services.whiteboard
        interpreter = self.services.interpreter
        if whiteboard is None or interpreter is None:
            return WHITEBOARD_UNAVAILABLE

        image = await whiteboard.capture()
        if not image:
            return "The whiteboard is empty."
        try:
            return await interpreter.interpret(image)
        except ImagePayloadTooLarge as e:
            logger.warning("Session %s whiteboard too large: %s", self.context.interview_id, e.message)
            return WHITEBOARD_TOO_LARGE
        except VisionUnavailable as e:
            logger.warning("Session %s whiteboard interpretation failed: %s", self.context.interview_id, e.message)
            return WHITEBOARD_FAILED

    async def provide_hint(self) -> str:
        ctx = self.context
        if self.services.hints is None:
            return "Hints are not available in this session."
        if not ctx.code.strip():
            return "The candidate has no code yet. Guide them verbally instead."

        problem = ctx.question.describe() if ctx.question is not None else ""
        raw = await self.services.hints.suggest(number_code_lines(ctx.code), problem)
        hint = bound_hint(raw, len(ctx.code.split("\n")))
        logger.info("Session %s hint on lines %d-%d", ctx.interview_id, hint.start_line, hint.end_line)
        return hint.model_dump_json()

    async def get_languages(self) -> list[str]:
        return list(AVAILABLE_LANGUAGES)

    async def get_language(self, name: str) -> str:
        if self.services.languages is None:
            return f"{name}: Language lookup is not available. Use get_languages."
        try:
            runtime = await self.services.languages.resolve_language(name)
        except LookupError as e:
            return str(e)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Session %s runtime lookup failed: %s", self.context.interview_id, e)
            return f"{name}: The code runner is unreachable right now. Use get_languages and continue."
        self.context.language = runtime.language
        self.context.language_version = runtime.version
        return json.dumps({"language": runtime.language, "version": runtime.version})

    async def end_interview(self) -> str:
        ctx = self.context
        ctx.pending_end = True
        await ctx.set_muted(True)
        logger.info("Session %s pending end", ctx.interview_id)
        return END_ACKNOWLEDGEMENT

    async def cancel_pending_end(self) -> None:
        """The candidate declined to end: unmute and tell the agent to carry on."""
        ctx = self.context
        if not ctx.pending_end:
            return
        ctx.pending_end = False
        await ctx.set_muted(False)
        await ctx.notify("Do not mention this message. The user does not want to end the interview yet.")
        logger.info("Session %s end cancelled", ctx.interview_id)

    async def get_feedback(self) -> str:
        return FEEDBACK_PLACEHOLDER


# =============================================================================
# Function tools
# =============================================================================


@function_tool
async def get_question(ctx: RunContextWrapper[InterviewSessionContext], difficulty: str) -> str:
    """
    Return a leetcode style coding question. Call this once at the start of the technical portion.

    Args:
        difficulty: Easy, Medium or Hard
    """
    return await SessionToolbox(ctx.context).get_question(difficulty)


@function_tool
async def get_user_code(ctx: RunContextWrapper[InterviewSessionContext]) -> str:
    """Return the candidate's current code with line numbers. Always call this before discussing their code."""
    return await SessionToolbox(ctx.context).get_user_code()


@function_tool
async def get_whiteboard_image(ctx: RunContextWrapper[InterviewSessionContext]) -> str:
    """Return a description of the candidate's current whiteboard drawing."""
    return await SessionToolbox(ctx.context).get_whiteboard_image()


@function_tool
async def provide_hint(ctx: RunContextWrapper[InterviewSessionContext]) -> str:
    """Give the candidate a small hint: a 1-3 line replacement for a range of their code."""
    return await SessionToolbox(ctx.context).provide_hint()


@function_tool
async def get_languages(ctx: RunContextWrapper[InterviewSessionContext]) -> list[str]:
    """Return the languages available for the interview."""
    return await SessionToolbox(ctx.context).get_languages()


@function_tool
async def get_language(ctx: RunContextWrapper[InterviewSessionContext], name: str) -> str:
    """
    Return a language name and the runtime version to use for the candidate's chosen language.

    Args:
        name: Language name or alias, e.g. python, js, c++
    """
    return await SessionToolbox(ctx.context).get_language(name)


@function_tool
async def end_interview(ctx: RunContextWrapper[InterviewSessionContext]) -> str:
    """End the interview. Use this when the interview is complete or the candidate asks to stop."""
    return await SessionToolbox(ctx.context).end_interview()


@function_tool
async def get_feedback(ctx: RunContextWrapper[InterviewSessionContext]) -> str:
    """Request the interview analysis. The full feedback arrives as a follow-up system message."""
    return await SessionToolbox(ctx.context).get_feedback()


COORDINATOR_TOOLS = [end_interview, get_feedback]
TECHNICAL_TOOLS = [
    get_question,
    get_user_code,
    get_whiteboard_image,
    provide_hint,
    get_languages,
    get_language,
]
