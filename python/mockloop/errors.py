"""
Error taxonomy for the interview service.

Every failure that reaches an API caller is one of these classes. Each carries
the HTTP status and a stable ``error_code`` so the client can branch, e.g.
route to the purchase flow on ``INSUFFICIENT_TOKENS``.
"""

from __future__ import annotations

from fastapi import status


class InterviewServiceError(Exception):
    """Base exception for interview service errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


# =============================================================================
# Validation / authorization
# =============================================================================


class RequestValidationFailed(InterviewServiceError):
    """Raised when input is malformed. No side effects have been performed."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_FAILED",
        )


class Unauthenticated(InterviewServiceError):
    """Raised when the request carries no caller identity."""

    def __init__(self, message: str = "Caller identity is required.") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="UNAUTHENTICATED",
        )


class Forbidden(InterviewServiceError):
    """Raised when the caller does not own the resource."""

    def __init__(self, message: str = "You do not have access to this interview.") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="FORBIDDEN",
        )


# =============================================================================
# Resource state
# =============================================================================


class UserNotFound(InterviewServiceError):
    """Raised when the user does not exist."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(
            message=f"User '{user_id}' not found.",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="USER_NOT_FOUND",
        )


class InterviewNotFound(InterviewServiceError):
    """Raised when the interview does not exist."""

    def __init__(self, interview_id: str) -> None:
        self.interview_id = interview_id
        super().__init__(
            message=f"Interview '{interview_id}' not found.",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="INTERVIEW_NOT_FOUND",
        )


class ProblemAttemptNotFound(InterviewServiceError):
    """Raised when the problem attempt does not exist."""

    def __init__(self, attempt_id: str) -> None:
        self.attempt_id = attempt_id
        super().__init__(
            message=f"Problem attempt '{attempt_id}' not found.",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="PROBLEM_ATTEMPT_NOT_FOUND",
        )


class InsufficientTokens(InterviewServiceError):
    """Raised when the balance cannot cover the interview reservation."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(
            message=f"Insufficient tokens: balance {balance}, required {required}.",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            error_code="INSUFFICIENT_TOKENS",
        )


class QuestionPoolEmpty(InterviewServiceError):
    """Raised when no question exists for the requested difficulty."""

    def __init__(self, difficulty: str) -> None:
        self.difficulty = difficulty
        super().__init__(
            message=f"No questions available for difficulty '{difficulty}'.",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="QUESTION_POOL_EMPTY",
        )


# =============================================================================
# Upstream / external
# =============================================================================


class StoreUnavailable(InterviewServiceError):
    """Raised when the record store fails. Retryable by the client."""

    def __init__(self, message: str = "Interview store is unavailable.") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="STORE_UNAVAILABLE",
        )


class FeedbackGenerationFailed(InterviewServiceError):
    """Raised when the conversational model fails to produce feedback."""

    def __init__(self, message: str = "Failed to generate interview feedback.") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="FEEDBACK_GENERATION_FAILED",
        )


class FeedbackValidationError(InterviewServiceError):
    """Raised when model output does not match the mode's feedback schema."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="FEEDBACK_SCHEMA_INVALID",
        )


class ImagePayloadTooLarge(InterviewServiceError):
    """Raised when a whiteboard snapshot is too large for the vision service."""

    def __init__(self, size_bytes: int | None = None) -> None:
        self.size_bytes = size_bytes
        detail = f" ({size_bytes} bytes)" if size_bytes is not None else ""
        super().__init__(
            message=f"Whiteboard image is too large to interpret{detail}.",
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            error_code="IMAGE_TOO_LARGE",
        )


class VisionUnavailable(InterviewServiceError):
    """Raised when the vision model fails for any reason other than payload size."""

    def __init__(self, message: str = "Whiteboard interpretation is unavailable.") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="VISION_UNAVAILABLE",
        )


class HandoffViolation(Exception):
    """Raised when an agent transition breaks the star topology or phase order."""
