"""
Pydantic models for the MockLoop interview backend.

Defines users, interviews, problem attempts, code submissions and transcript
messages. Timestamps are timezone-aware UTC datetimes; transcript messages
carry epoch milliseconds the way the realtime client reports them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


MAX_RECENT_QUESTIONS = 10


def utc_now() -> datetime:
    """Return the current timezone-aware UTC time."""
    return datetime.now(timezone.utc)


class InterviewMode(str, Enum):
    """Which interview phases run, and which feedback schema applies."""

    FULL = "full"
    BEHAVIORAL = "behavioral"
    TECHNICAL = "technical"


class InterviewStatus(str, Enum):
    """Interview lifecycle states. COMPLETED and ABANDONED are terminal."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class SubscriptionTier(str, Enum):
    """Subscription tiers that grant tokens."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"


TERMINAL_STATUSES = frozenset({InterviewStatus.COMPLETED, InterviewStatus.ABANDONED})


class User(BaseModel):
    """
    A candidate account.

    The token balance is the principal shared, mutable resource; every
    mutation goes through the lifecycle manager's per-user lock.
    """

    id: str = Field(..., min_length=1, description="Opaque user identifier")
    user_name: Optional[str] = Field(default=None, description="Public handle")
    full_name: Optional[str] = Field(default=None, description="Display name")
    tokens: int = Field(default=0, ge=0, description="Token balance")
    subscription_tier: SubscriptionTier = Field(default=SubscriptionTier.FREE)
    xp: int = Field(default=0, ge=0, description="Experience points")
    recent_question_ids: list[str] = Field(
        default_factory=list,
        max_length=MAX_RECENT_QUESTIONS,
        description="Most recent question ids, newest first",
    )
    interview_ids: list[str] = Field(default_factory=list)
    resume_text: Optional[str] = Field(default=None, description="Parsed resume content")
    created_at: datetime = Field(default_factory=utc_now)


class Message(BaseModel):
    """One transcript message from the realtime session."""

    role: str = Field(..., pattern="^(user|agent)$")
    id: str = Field(..., min_length=1, description="Stable per-message id used for de-duplication")
    content: str = Field(default="")
    event_id: Optional[str] = Field(default=None)
    created: int = Field(..., description="Epoch milliseconds when the message was produced")


class Submission(BaseModel):
    """One code run inside a problem attempt."""

    submitted_at: int = Field(..., description="Epoch milliseconds")
    user_code: str
    stdout: str = ""
    stderr: str = ""

    @property
    def passed(self) -> bool:
        return not self.stderr.strip()


class ProblemAttempt(BaseModel):
    """A technical question presented during an interview, with its code runs."""

    id: str = Field(..., min_length=1)
    interview_id: str = Field(..., min_length=1)
    question_id: Optional[str] = Field(default=None)
    started_at: int = Field(..., description="Epoch milliseconds")
    language: str = Field(default="python")
    version: str = Field(default="*")
    feedback: Optional[dict[str, Any]] = Field(
        default=None,
        description="Mode-independent technical feedback for this attempt",
    )
    submissions: list[Submission] = Field(default_factory=list)


class BillingType(str, Enum):
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


class BillingEntry(BaseModel):
    """One entry of a user's billing history, written when tokens are purchased."""

    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    type: BillingType = Field(default=BillingType.SUBSCRIPTION)
    reference_id: Optional[str] = Field(default=None, description="Payment provider session or invoice id")
    amount: int = Field(default=0, ge=0, description="Amount charged, in cents")
    tokens: int = Field(default=0, ge=0, description="Tokens credited by this entry")
    description: str = Field(default="")
    created_at: datetime = Field(default_factory=utc_now)


class Interview(BaseModel):
    """
    An interview session record.

    Invariant: ``tokens_deducted`` is True exactly when ``tokens_used`` is set
    and exactly when ``status`` is terminal.
    """

    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    mode: InterviewMode = Field(default=InterviewMode.FULL)
    status: InterviewStatus = Field(default=InterviewStatus.ACTIVE)
    created_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = Field(default=None)
    tokens_prepaid: int = Field(..., ge=0)
    tokens_used: Optional[int] = Field(default=None, ge=0)
    tokens_deducted: bool = Field(default=False)
    feedback: Optional[dict[str, Any]] = Field(default=None)
    messages: list[Message] = Field(default_factory=list)
    code: str = Field(default="")
    problem_attempt_ids: list[str] = Field(default_factory=list)
    xp_awarded: int = Field(default=0, ge=0, description="XP already credited to the owner for this interview")

    @model_validator(mode="after")
    def validate_billing_state(self) -> "Interview":
        finalized = self.status in TERMINAL_STATUSES
        if self.tokens_deducted != finalized:
            raise ValueError(
                f"tokens_deducted={self.tokens_deducted} is inconsistent with status={self.status.value}"
            )
        if self.tokens_deducted != (self.tokens_used is not None):
            raise ValueError("tokens_used must be set exactly when tokens_deducted is True")
        return self

    @property
    def is_finalized(self) -> bool:
        return self.tokens_deducted


def merge_messages(existing: list[Message], incoming: list[Message]) -> list[Message]:
    """
    Merge transcript messages, de-duplicating by message id.

    Later copies of the same id replace earlier ones. The result is ordered by
    ``created`` (ties keep arrival order), so out-of-order arrivals are
    re-sorted.
    """
    by_id: dict[str, Message] = {}
    for message in [*existing, *incoming]:
        by_id[message.id] = message
    return sorted(by_id.values(), key=lambda m: m.created)
