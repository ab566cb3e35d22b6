"""
Mock data generators for MockLoop testing.

Generates users, transcript messages and mode-tagged feedback payloads
matching the shapes the realtime client and the feedback model produce,
plus small fakes for the clock, the feedback model and a failing store.
"""

import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from mockloop.models import InterviewMode, Message, User
from mockloop.store import InMemoryInterviewStore


# =============================================================================
# Interview Content
# =============================================================================

INTERVIEWER_LINES = [
    "Welcome! Before we start, how are you doing today?",
    "Tell me about a time you disagreed with a teammate on a technical decision.",
    "What was the outcome, and what would you do differently?",
    "Let's move on to a coding problem. I'll share it now.",
    "Can you walk me through the time complexity of your approach?",
    "Looks like your second test case failed. What do you think is happening?",
]

CANDIDATE_LINES = [
    "Doing well, thanks. A little nervous but excited.",
    "On my last team we argued about adopting Kafka. I wrote a short benchmark comparing it with our Postgres queue and we used the numbers to decide.",
    "We kept Postgres for another quarter. Next time I'd involve the on-call engineers earlier.",
    "Sounds good. Let me read through it and ask a couple of clarifying questions.",
    "It's O(n) time with a hash map, and O(n) space in the worst case.",
    "I think I'm returning the indices in the wrong order. Let me fix that.",
]

TWO_SUM_SOLUTION = """def two_sum(nums, target):
    seen = {}
    for i, n in enumerate(nums):
        if target - n in seen:
            return [seen[target - n], i]
        seen[n] = i
    return []"""


BASE_TIME = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Entities
# =============================================================================


def generate_user(
    user_id: Optional[str] = None,
    tokens: int = 1000,
    xp: int = 0,
    recent_question_ids: Optional[list[str]] = None,
    user_name: Optional[str] = None,
) -> User:
    user_id = user_id or f"user-{uuid.uuid4().hex[:8]}"
    return User(
        id=user_id,
        user_name=user_name or user_id,
        full_name="Test Candidate",
        tokens=tokens,
        xp=xp,
        recent_question_ids=recent_question_ids or [],
        resume_text="Backend engineer, 5 years of Python, FastAPI and Kafka.",
        created_at=BASE_TIME,
    )


def generate_message(
    role: str = "user",
    content: str = "Test transcript text",
    created: Optional[int] = None,
    message_id: Optional[str] = None,
) -> Message:
    return Message(
        role=role,
        id=message_id or f"item_{uuid.uuid4().hex[:12]}",
        content=content,
        created=created if created is not None else int(BASE_TIME.timestamp() * 1000),
    )


def generate_conversation(turns: int = 4, start_ms: Optional[int] = None) -> list[Message]:
    """
    Generate an alternating agent/candidate conversation.

    Args:
        turns: Number of agent+candidate exchanges.
        start_ms: Epoch milliseconds of the first message.

    Returns:
        Messages in chronological order, 5-20 seconds apart.
    """
    created = start_ms if start_ms is not None else int(BASE_TIME.timestamp() * 1000)
    messages = []
    for i in range(turns):
        idx = i % len(INTERVIEWER_LINES)
        messages.append(generate_message("agent", INTERVIEWER_LINES[idx], created))
        created += random.randint(5_000, 20_000)
        messages.append(generate_message("user", CANDIDATE_LINES[idx], created))
        created += random.randint(5_000, 20_000)
    return messages


# =============================================================================
# Feedback Payloads
# =============================================================================


def generate_technical_block(score: float = 7.5) -> dict[str, Any]:
    return {
        "score": score,
        "problem_solving_approach": {
            "rating": 4,
            "feedback": "Clarified constraints before coding and picked a hash map early.",
            "strengths": ["Asked about duplicate values"],
            "weaknesses": ["Did not consider an empty input"],
        },
        "code_quality": {
            "rating": 4,
            "feedback": "Readable and idiomatic.",
            "readability": "Clear names, single loop.",
            "efficiency": "Linear time.",
            "edge_case_handling": "Missing the no-solution case at first.",
        },
        "complexity": {
            "understood_complexity": True,
            "time_complexity": "O(n)",
            "space_complexity": "O(n)",
            "optimal_solution": True,
            "feedback": "Explained both bounds correctly.",
        },
        "communication": {
            "rating": 4,
            "feedback": "Narrated the approach while typing.",
            "explained_approach": True,
            "asked_clarifying_questions": True,
            "thought_process": "Brute force first, then optimized.",
        },
        "debugging": {
            "rating": 3,
            "feedback": "Found the index ordering bug after one failed run.",
            "identified_issues": True,
            "number_of_attempts": 2,
            "persisted_through_failures": True,
        },
        "highlights": ["Optimal solution"],
        "areas_for_improvement": ["Test edge cases before running"],
    }


def generate_behavioral_block(score: float = 8.0) -> dict[str, Any]:
    return {
        "score": score,
        "responses": [
            {
                "question": INTERVIEWER_LINES[1],
                "competency": "conflict resolution",
                "rating": 4,
                "feedback": "Used a benchmark to settle the disagreement.",
                "used_star_method": True,
                "specificity_level": "specific",
                "strengths": ["Data-driven"],
                "weaknesses": ["Outcome was brief"],
            }
        ],
        "overall_communication": {
            "clarity": 4,
            "conciseness": 4,
            "professionalism": 5,
            "feedback": "Clear and composed.",
        },
        "cultural_fit": {
            "rating": 4,
            "feedback": "Collaborative.",
            "alignment": ["Ownership"],
            "concerns": [],
        },
        "highlights": ["Concrete example"],
        "areas_for_improvement": ["Quantify impact"],
    }


def generate_feedback(mode: InterviewMode = InterviewMode.FULL, overall_score: float = 7.5) -> dict[str, Any]:
    """
    Generate a valid feedback payload for ``mode``.

    Full carries both blocks; behavioral and technical carry only their own.
    """
    mode = InterviewMode(mode)
    payload: dict[str, Any] = {
        "mode": mode.value,
        "overall_score": overall_score,
        "overall_summary": "Solid interview with a clear, well-explained solution.",
        "hire_recommendation": "yes",
        "key_strengths": ["Communication", "Problem solving"],
        "key_weaknesses": ["Edge cases"],
        "recommendations": [
            {"area": "Testing", "suggestion": "Walk through edge cases aloud.", "priority": "high"}
        ],
        "ready_for_role": True,
        "suggested_next_steps": "Practice medium graph problems.",
        "additional_comments": "",
    }
    if mode in (InterviewMode.FULL, InterviewMode.TECHNICAL):
        payload["technical"] = generate_technical_block()
    if mode in (InterviewMode.FULL, InterviewMode.BEHAVIORAL):
        payload["behavioral"] = generate_behavioral_block()
    return payload


# =============================================================================
# Fakes
# =============================================================================


class FakeFeedbackModel:
    """Returns a canned payload (or raises) and records each call."""

    def __init__(self, payload: Any = None, error: Optional[Exception] = None) -> None:
        self.payload = payload
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def generate(self, instructions: str, prompt: str, output_type: type) -> Any:
        self.calls.append({"instructions": instructions, "prompt": prompt, "output_type": output_type})
        if self.error is not None:
            raise self.error
        return self.payload


class FlakyStore(InMemoryInterviewStore):
    """In-memory store whose named operations can be made to fail."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.fail_on: set[str] = set()
        self.fail_interview_ids: set[str] = set()
        self.fail_user_fields: set[str] = set()

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise ConnectionError(f"simulated {operation} failure")

    async def create_interview(self, interview):
        self._maybe_fail("create_interview")
        return await super().create_interview(interview)

    async def update_interview(self, interview_id, **fields):
        self._maybe_fail("update_interview")
        if interview_id in self.fail_interview_ids:
            raise ConnectionError(f"simulated update failure for {interview_id}")
        return await super().update_interview(interview_id, **fields)

    async def set_user_tokens(self, user_id, balance):
        self._maybe_fail("set_user_tokens")
        return await super().set_user_tokens(user_id, balance)

    async def get_interview(self, interview_id):
        self._maybe_fail("get_interview")
        return await super().get_interview(interview_id)

    async def update_user(self, user_id, **fields):
        self._maybe_fail("update_user")
        if self.fail_user_fields & fields.keys():
            raise ConnectionError(f"simulated update of {sorted(fields)} for {user_id}")
        return await super().update_user(user_id, **fields)

    async def add_billing_entry(self, entry):
        self._maybe_fail("add_billing_entry")
        return await super().add_billing_entry(entry)
