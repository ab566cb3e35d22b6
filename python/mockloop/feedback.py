"""
Feedback Synthesizer.

Maps an interview's conversation and code artifacts into a structured,
mode-dependent evaluation. The schema is a tagged union keyed by ``mode``:

    - full:        technical block AND behavioral block
    - behavioral:  behavioral block only
    - technical:   technical block only

Extra or missing blocks are schema violations, never coerced.

The model call goes through a ``FeedbackModel``; the default implementation
runs an OpenAI Agents SDK ``Agent`` with ``output_type`` set to the mode's
schema, the same way the structured analysis agents are run elsewhere.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from agents import Agent, Runner

from .errors import FeedbackGenerationFailed, FeedbackValidationError
from .llm import get_openai_config
from .models import InterviewMode, Message, Submission


__all__ = [
    "FeedbackModel",
    "AgentsFeedbackModel",
    "FeedbackRequest",
    "FeedbackSynthesizer",
    "FullInterviewFeedback",
    "BehavioralInterviewFeedback",
    "TechnicalInterviewFeedback",
    "InterviewFeedback",
    "schema_for_mode",
    "validate_feedback",
]


logger = logging.getLogger(__name__)


# =============================================================================
# Evaluation blocks
# =============================================================================

Rating = Annotated[int, Field(ge=1, le=5)]
Score = Annotated[float, Field(ge=1, le=10)]

HireRecommendation = Literal["strong_yes", "yes", "maybe", "no", "strong_no"]


class _Strict(BaseModel):
    model_config = {"extra": "forbid"}


class ProblemSolvingApproach(_Strict):
    rating: Rating
    feedback: str
    strengths: list[str]
    weaknesses: list[str]


class CodeQuality(_Strict):
    rating: Rating
    feedback: str
    readability: str
    efficiency: str
    edge_case_handling: str


class ComplexityAnalysis(_Strict):
    understood_complexity: bool
    time_complexity: str = Field(..., description="Complexity the candidate achieved")
    space_complexity: str
    optimal_solution: bool
    feedback: str


class TechnicalCommunication(_Strict):
    rating: Rating
    feedback: str
    explained_approach: bool
    asked_clarifying_questions: bool
    thought_process: str


class Debugging(_Strict):
    rating: Rating
    feedback: str
    identified_issues: bool
    number_of_attempts: int = Field(..., ge=0)
    persisted_through_failures: bool


class TechnicalAssessment(_Strict):
    """Technical portion of the evaluation."""

    score: Score
    problem_solving_approach: ProblemSolvingApproach
    code_quality: CodeQuality
    complexity: ComplexityAnalysis
    communication: TechnicalCommunication
    debugging: Debugging
    highlights: list[str]
    areas_for_improvement: list[str]


class BehavioralResponse(_Strict):
    question: str
    competency: str = Field(..., description="e.g. leadership, conflict resolution, teamwork")
    rating: Rating
    feedback: str
    used_star_method: bool
    specificity_level: Literal["vague", "moderate", "specific", "very_specific"]
    strengths: list[str]
    weaknesses: list[str]


class OverallCommunication(_Strict):
    clarity: Rating
    conciseness: Rating
    professionalism: Rating
    feedback: str


class CulturalFit(_Strict):
    rating: Rating
    feedback: str
    alignment: list[str]
    concerns: list[str]


class BehavioralAssessment(_Strict):
    """Behavioral portion of the evaluation."""

    score: Score
    responses: list[BehavioralResponse]
    overall_communication: OverallCommunication
    cultural_fit: CulturalFit
    highlights: list[str]
    areas_for_improvement: list[str]


class Recommendation(_Strict):
    area: str
    suggestion: str
    priority: Literal["high", "medium", "low"]


# =============================================================================
# Mode-tagged feedback schemas
# =============================================================================


class _FeedbackBase(_Strict):
    overall_score: Score
    overall_summary: str
    hire_recommendation: HireRecommendation
    key_strengths: list[str]
    key_weaknesses: list[str]
    recommendations: list[Recommendation]
    ready_for_role: bool
    suggested_next_steps: str
    additional_comments: str


class FullInterviewFeedback(_FeedbackBase):
    """Feedback for a full interview: both blocks required."""

    mode: Literal["full"]
    technical: TechnicalAssessment
    behavioral: BehavioralAssessment


class BehavioralInterviewFeedback(_FeedbackBase):
    """Feedback for a behavioral-only interview."""

    mode: Literal["behavioral"]
    behavioral: BehavioralAssessment


class TechnicalInterviewFeedback(_FeedbackBase):
    """Feedback for a technical-only interview."""

    mode: Literal["technical"]
    technical: TechnicalAssessment


InterviewFeedback = Annotated[
    Union[FullInterviewFeedback, BehavioralInterviewFeedback, TechnicalInterviewFeedback],
    Field(discriminator="mode"),
]

_FEEDBACK_ADAPTER: TypeAdapter[Any] = TypeAdapter(InterviewFeedback)

_SCHEMAS: dict[InterviewMode, type[_FeedbackBase]] = {
    InterviewMode.FULL: FullInterviewFeedback,
    InterviewMode.BEHAVIORAL: BehavioralInterviewFeedback,
    InterviewMode.TECHNICAL: TechnicalInterviewFeedback,
}


def schema_for_mode(mode: InterviewMode) -> type[_FeedbackBase]:
    return _SCHEMAS[InterviewMode(mode)]


def validate_feedback(mode: InterviewMode, payload: Any) -> _FeedbackBase:
    """
    Validate ``payload`` against the schema implied by ``mode``.

    Accepts a model instance or a plain dict. Raises FeedbackValidationError
    when the payload is tagged with a different mode or its blocks do not
    match the mode exactly.
    """
    mode = InterviewMode(mode)
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    if not isinstance(payload, dict):
        raise FeedbackValidationError(
            f"Feedback must be an object, got {type(payload).__name__}"
        )

    tagged = payload.get("mode")
    if tagged != mode.value:
        raise FeedbackValidationError(
            f"Feedback is tagged mode={tagged!r} but the interview mode is {mode.value!r}"
        )

    try:
        return _FEEDBACK_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise FeedbackValidationError(
            f"Feedback does not match the {mode.value} schema: {e.error_count()} error(s): {e}"
        ) from e


# =============================================================================
# Request + prompts
# =============================================================================


class FeedbackRequest(BaseModel):
    """Inputs to one feedback synthesis."""

    mode: InterviewMode = InterviewMode.FULL
    messages: list[Message] = Field(default_factory=list)
    final_code: str = ""
    submissions: list[Submission] = Field(default_factory=list)
    question: Optional[str] = Field(default=None, description="Problem statement shown to the candidate")


_SYSTEM_PROMPTS: dict[InterviewMode, str] = {
    InterviewMode.FULL: """You are an expert technical interviewer providing comprehensive feedback on a software engineering interview that had a behavioral portion followed by a coding portion.

Analyze the entire conversation to evaluate:
- Technical problem-solving approach and thought process
- Code quality, correctness, and optimization
- Understanding of time/space complexity
- Communication and explanation skills during technical discussion
- Debugging ability based on submission attempts
- Behavioral responses: STAR structure, specificity, competencies shown
- Professional communication throughout

Set "mode" to "full" and fill BOTH the "technical" and "behavioral" blocks.
Provide detailed, constructive feedback with specific examples from the conversation and code submissions.""",
    InterviewMode.BEHAVIORAL: """You are an expert behavioral interviewer providing feedback on a behavioral interview for a software engineering role.

Analyze the conversation to evaluate:
- Each behavioral answer: competency demonstrated, STAR structure, specificity
- Clarity, conciseness and professionalism of communication
- Cultural fit signals and any concerns

Set "mode" to "behavioral" and fill ONLY the "behavioral" block. There is no coding portion; do not invent one.
Quote or paraphrase specific answers from the conversation to support every rating.""",
    InterviewMode.TECHNICAL: """You are an expert technical interviewer providing feedback on a coding interview.

Analyze the conversation and code to evaluate:
- Problem-solving approach and thought process
- Code quality, correctness, and optimization
- Understanding of time/space complexity
- Communication while solving
- Debugging ability based on submission attempts

Set "mode" to "technical" and fill ONLY the "technical" block.
Provide detailed, constructive feedback with specific examples from the conversation and code submissions.""",
}


def format_conversation(messages: list[Message]) -> str:
    ordered = sorted(messages, key=lambda m: m.created)
    return "\n\n".join(f"{m.role}: {m.content}" for m in ordered)


def format_submissions(submissions: list[Submission]) -> str:
    if not submissions:
        return "(no code was run)"
    blocks = []
    for idx, sub in enumerate(submissions, 1):
        status_label = "passed" if sub.passed else "failed"
        blocks.append(
            f"Attempt {idx}:\nCode:\n{sub.user_code}\n"
            f"Stdout: {sub.stdout}\nStderr: {sub.stderr}\nStatus: {status_label}"
        )
    return "\n\n---\n\n".join(blocks)


def build_feedback_prompt(request: FeedbackRequest) -> str:
    """
    Build the user prompt for ``request.mode``.

    The behavioral prompt sees only the conversation. Technical and full
    prompts also see the problem, every submission and the final code.
    """
    parts = ["# Interview Analysis Context", ""]

    if request.mode != InterviewMode.BEHAVIORAL:
        parts.append("## Problem Given:")
        parts.append(request.question or "(no problem was recorded)")
        parts.append("")

    parts.append("## Conversation History:")
    parts.append(format_conversation(request.messages) or "(empty conversation)")
    parts.append("")

    if request.mode != InterviewMode.BEHAVIORAL:
        parts.append("## Code Submissions:")
        parts.append(format_submissions(request.submissions))
        parts.append("")
        parts.append("## Final Code:")
        parts.append(request.final_code or "(no code written)")
        parts.append("")

    parts.append("---")
    parts.append("")
    focus = {
        InterviewMode.FULL: "covering both the technical and behavioral portions",
        InterviewMode.BEHAVIORAL: "covering the behavioral answers only",
        InterviewMode.TECHNICAL: "covering the technical portion only",
    }[request.mode]
    parts.append(f"Analyze this complete interview session and provide comprehensive feedback {focus}.")
    return "\n".join(parts)


# =============================================================================
# Model provider
# =============================================================================


class FeedbackModel(Protocol):
    """Anything that turns instructions + prompt into a schema-shaped object."""

    async def generate(
        self,
        instructions: str,
        prompt: str,
        output_type: type[BaseModel],
    ) -> Any: ...


class AgentsFeedbackModel:
    """Runs a structured-output Agent per request."""

    def __init__(self, model: Optional[str] = None) -> None:
        default_model, azure_client = get_openai_config("OPENAI_FEEDBACK_MODEL")
        self.model = model or default_model
        if azure_client is not None:
            from agents import set_default_openai_client

            set_default_openai_client(azure_client)
        logger.info(f"AgentsFeedbackModel initialized with model: {self.model}")

    async def generate(
        self,
        instructions: str,
        prompt: str,
        output_type: type[BaseModel],
    ) -> Any:
        agent = Agent(
            name=f"{output_type.__name__} Analyst",
            instructions=instructions,
            model=self.model,
            output_type=output_type,
        )
        result = await Runner.run(agent, prompt)
        return result.final_output


# =============================================================================
# Synthesizer
# =============================================================================


class FeedbackSynthesizer:
    """
    Produces validated, mode-tagged feedback.

    Example:
        >>> synthesizer = FeedbackSynthesizer(AgentsFeedbackModel())
        >>> feedback = await synthesizer.synthesize(
        ...     FeedbackRequest(mode="behavioral", messages=messages)
        ... )
        >>> feedback.mode
        'behavioral'
    """

    def __init__(self, model: FeedbackModel) -> None:
        self._model = model

    async def synthesize(self, request: FeedbackRequest) -> _FeedbackBase:
        """
        Generate and validate feedback for ``request``.

        Raises:
            FeedbackGenerationFailed: If the model call fails.
            FeedbackValidationError: If the output does not match the mode schema.
        """
        schema = schema_for_mode(request.mode)
        instructions = _SYSTEM_PROMPTS[request.mode]
        prompt = build_feedback_prompt(request)

        logger.info(
            "Generating %s feedback (%d messages, %d submissions, %d prompt chars)",
            request.mode.value,
            len(request.messages),
            len(request.submissions),
            len(prompt),
        )

        try:
            raw = await self._model.generate(instructions, prompt, schema)
        except Exception as e:
            logger.error("Feedback generation failed: %s", e, exc_info=True)
            raise FeedbackGenerationFailed(f"Failed to generate interview feedback: {e}") from e

        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise FeedbackValidationError(f"Model returned non-JSON feedback: {e}") from e

        feedback = validate_feedback(request.mode, raw)
        logger.info(
            "Feedback ready: mode=%s overall_score=%.1f recommendation=%s",
            request.mode.value,
            feedback.overall_score,
            feedback.hire_recommendation,
        )
        return feedback
