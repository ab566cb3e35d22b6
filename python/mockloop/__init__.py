"""
MockLoop - AI mock interview backend.

Provides:
    - Token ledger and interview lifecycle (start / save / end / sweep)
    - Interview record store (in-memory and JSON file)
    - Mode-dependent feedback synthesis
    - Non-repeating question rotation
    - Realtime agent orchestration (see ``mockloop.orchestration``)
"""

from .errors import InterviewServiceError
from .feedback import FeedbackRequest, FeedbackSynthesizer, validate_feedback
from .lifecycle import InterviewLifecycleManager, InterviewUpdate
from .models import (
    Interview,
    InterviewMode,
    InterviewStatus,
    Message,
    ProblemAttempt,
    SubscriptionTier,
    Submission,
    User,
)
from .questions import Question, QuestionBank, QuestionRotation
from .store import InMemoryInterviewStore, InterviewStore, JsonFileInterviewStore


__all__ = [
    "FeedbackRequest",
    "FeedbackSynthesizer",
    "InMemoryInterviewStore",
    "Interview",
    "InterviewLifecycleManager",
    "InterviewMode",
    "InterviewServiceError",
    "InterviewStatus",
    "InterviewStore",
    "InterviewUpdate",
    "JsonFileInterviewStore",
    "Message",
    "ProblemAttempt",
    "Question",
    "QuestionBank",
    "QuestionRotation",
    "SubscriptionTier",
    "Submission",
    "User",
    "validate_feedback",
]

__version__ = "0.1.0"
