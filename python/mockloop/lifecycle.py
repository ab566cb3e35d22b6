"""
Interview lifecycle manager.

Owns the ``active -> completed | abandoned`` state machine and every token
movement attached to it:

    start   reserve MIN_TOKENS_REQUIRED, create the interview
    save    persist transcript/code/feedback; finalize billing if still open
    end     finalize billing (idempotent), award XP
    sweep   finalize stale active interviews as abandoned, usage capped

All balance mutations for a user run under that user's lock, and finalization
re-reads the interview under the lock before checking ``tokens_deducted``, so
concurrent save/end/sweep bill exactly once.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from . import ledger
from .errors import (
    FeedbackValidationError,
    Forbidden,
    InterviewNotFound,
    ProblemAttemptNotFound,
    RequestValidationFailed,
    StoreUnavailable,
    UserNotFound,
)
from .feedback import validate_feedback
from .locks import KeyedLocks
from .models import (
    BillingEntry,
    BillingType,
    Interview,
    InterviewMode,
    InterviewStatus,
    Message,
    ProblemAttempt,
    SubscriptionTier,
    Submission,
    merge_messages,
    utc_now,
)
from .store import InterviewStore, mapped_store_errors


__all__ = [
    "InterviewLifecycleManager",
    "InterviewUpdate",
    "StartResult",
    "SaveResult",
    "EndResult",
    "SweepResult",
    "SubscriptionResult",
]


logger = logging.getLogger(__name__)


# =============================================================================
# Request / Result Models
# =============================================================================


class InterviewUpdate(BaseModel):
    """Content persisted by a save call."""

    messages: list[Message] = Field(default_factory=list)
    code: Optional[str] = Field(default=None, description="Replaces the stored code when set")
    feedback: Optional[dict[str, Any]] = Field(
        default=None, description="Mode-tagged feedback; validated against the interview mode"
    )
    problem_attempts: list[ProblemAttempt] = Field(default_factory=list)

    model_config = {"extra": "forbid"}


class StartResult(BaseModel):
    interview_id: str
    mode: InterviewMode
    tokens_prepaid: int
    new_balance: int


class SaveResult(BaseModel):
    interview_id: str
    status: InterviewStatus
    tokens_used: int
    new_balance: int
    finalized_now: bool = Field(description="True when this call closed billing")


class EndResult(BaseModel):
    interview_id: str
    status: InterviewStatus
    tokens_used: int
    tokens_prepaid: int
    difference: int = Field(description="prepaid - used; positive means tokens were credited back")
    new_balance: int
    already_finalized: bool = False


class SubscriptionResult(BaseModel):
    user_id: str
    tier: SubscriptionTier
    tokens_granted: int
    new_balance: int


@dataclass
class SweepResult:
    """Batch outcome of an abandon sweep."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    interview_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Finalization:
    interview: Interview
    tokens_used: int
    true_up: ledger.TrueUp


# =============================================================================
# Lifecycle Manager
# =============================================================================


class InterviewLifecycleManager:
    """
    Drives interviews through their lifecycle against an ``InterviewStore``.

    Every store failure surfaces as ``StoreUnavailable``. The clock is
    injectable so billing is testable without sleeping.
    """

    def __init__(
        self,
        store: InterviewStore,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utc_now,
        min_tokens_required: int = ledger.MIN_TOKENS_REQUIRED,
        tokens_per_second: Fraction = ledger.TOKENS_PER_SECOND,
        abandon_after: timedelta = timedelta(minutes=60),
    ) -> None:
        self.store = store
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.min_tokens_required = min_tokens_required
        self.tokens_per_second = tokens_per_second
        self.abandon_after = abandon_after

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_interview(self, user_id: str, mode: InterviewMode = InterviewMode.FULL) -> StartResult:
        """
        Reserve tokens and create an active interview.

        Raises:
            UserNotFound: Unknown user. No mutation.
            InsufficientTokens: Balance below the reservation. No mutation.
            StoreUnavailable: Store failure; a debit already made is refunded.
        """
        async with self.locks.hold(user_id):
            async with mapped_store_errors("start interview"):
                user = await self.store.get_user(user_id, fresh=True)
                if user is None:
                    raise UserNotFound(user_id)
                balance = await self.store.get_user_tokens(user_id)

            reservation = ledger.reserve(balance, self.min_tokens_required)

            async with mapped_store_errors("start interview"):
                await self.store.set_user_tokens(user_id, reservation.new_balance)
                await self.store.invalidate_user_cache(user_id)

            interview = Interview(
                id=str(uuid.uuid4()),
                user_id=user_id,
                mode=mode,
                created_at=self.clock(),
                tokens_prepaid=reservation.reserved,
            )
            try:
                await self.store.create_interview(interview)
            except Exception as e:
                logger.error("Interview creation failed for %s; refunding reservation", user_id, exc_info=True)
                await self._refund_reservation(user_id, reservation.reserved)
                raise StoreUnavailable(f"Failed to create interview: {e}") from e

        logger.info(
            "Interview %s started for %s (mode=%s, prepaid=%d, balance=%d)",
            interview.id,
            user_id,
            mode.value,
            reservation.reserved,
            reservation.new_balance,
        )
        return StartResult(
            interview_id=interview.id,
            mode=mode,
            tokens_prepaid=reservation.reserved,
            new_balance=reservation.new_balance,
        )

    async def _refund_reservation(self, user_id: str, amount: int) -> None:
        """Compensate a reservation whose interview was never created. Caller holds the lock."""
        try:
            balance = await self.store.get_user_tokens(user_id)
            await self.store.set_user_tokens(user_id, ledger.refund(balance, amount))
            await self.store.invalidate_user_cache(user_id)
        except Exception:
            logger.critical(
                "Refund of %d tokens to %s failed; balance needs manual repair",
                amount,
                user_id,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def save_interview(self, caller_id: str, interview_id: str, update: InterviewUpdate) -> SaveResult:
        """
        Persist interview content, finalizing billing first if still open.

        Raises:
            InterviewNotFound, Forbidden: No mutation.
            RequestValidationFailed: Feedback or attempts malformed. No mutation.
            StoreUnavailable: Store failure.
        """
        interview = await self.authorize_interview(caller_id, interview_id)
        self._validate_update(interview, update)

        async with self.locks.hold(interview.user_id), mapped_store_errors("save interview"):
            interview = await self._require_interview(interview_id)

            content: dict[str, Any] = {}
            if update.messages:
                content["messages"] = merge_messages(interview.messages, update.messages)
            if update.code is not None:
                content["code"] = update.code
            if update.feedback is not None:
                content["feedback"] = update.feedback
            attempt_ids = list(interview.problem_attempt_ids)
            for attempt in update.problem_attempts:
                await self.store.upsert_problem_attempt(attempt)
                if attempt.id not in attempt_ids:
                    attempt_ids.append(attempt.id)
            if attempt_ids != interview.problem_attempt_ids:
                content["problem_attempt_ids"] = attempt_ids
            if content:
                interview = await self.store.update_interview(interview_id, **content)

            finalized_now = False
            if not interview.is_finalized:
                finalization = await self._finalize(interview, InterviewStatus.COMPLETED)
                interview = finalization.interview
                finalized_now = True
            await self._link_interview(interview)
            await self._settle_xp(interview)
            balance = await self.store.get_user_tokens(interview.user_id)

        logger.info(
            "Interview %s saved by %s (messages=%d, finalized_now=%s)",
            interview_id,
            caller_id,
            len(interview.messages),
            finalized_now,
        )
        return SaveResult(
            interview_id=interview_id,
            status=interview.status,
            tokens_used=interview.tokens_used or 0,
            new_balance=balance,
            finalized_now=finalized_now,
        )

    def _validate_update(self, interview: Interview, update: InterviewUpdate) -> None:
        if update.feedback is not None:
            try:
                validate_feedback(interview.mode, update.feedback)
            except FeedbackValidationError as e:
                raise RequestValidationFailed(e.message) from e
        for attempt in update.problem_attempts:
            if attempt.interview_id != interview.id:
                raise RequestValidationFailed(
                    f"Problem attempt '{attempt.id}' belongs to interview '{attempt.interview_id}'"
                )

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    async def end_interview(self, caller_id: str, interview_id: str) -> EndResult:
        """
        Finalize billing for an interview. Safe to call any number of times.

        A finalized interview returns its stored result and moves no tokens.

        Raises:
            InterviewNotFound, Forbidden: No mutation.
            StoreUnavailable: Store failure.
        """
        interview = await self.authorize_interview(caller_id, interview_id)

        async with self.locks.hold(interview.user_id), mapped_store_errors("end interview"):
            interview = await self._require_interview(interview_id)

            if interview.is_finalized:
                await self._link_interview(interview)
                await self._settle_xp(interview)
                balance = await self.store.get_user_tokens(interview.user_id)
                used = interview.tokens_used or 0
                logger.info("Interview %s already finalized; replaying result", interview_id)
                return EndResult(
                    interview_id=interview_id,
                    status=interview.status,
                    tokens_used=used,
                    tokens_prepaid=interview.tokens_prepaid,
                    difference=interview.tokens_prepaid - used,
                    new_balance=balance,
                    already_finalized=True,
                )

            finalization = await self._finalize(interview, InterviewStatus.COMPLETED)
            await self._link_interview(finalization.interview)
            await self._settle_xp(finalization.interview)

        return EndResult(
            interview_id=interview_id,
            status=finalization.interview.status,
            tokens_used=finalization.tokens_used,
            tokens_prepaid=interview.tokens_prepaid,
            difference=finalization.true_up.difference,
            new_balance=finalization.true_up.new_balance,
        )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep_abandoned(self) -> SweepResult:
        """
        Finalize every active interview older than ``abandon_after`` as abandoned.

        Usage is capped at the reservation. Rows are processed independently;
        one failing row is logged and counted, and the batch continues.
        """
        cutoff = self.clock() - self.abandon_after
        async with mapped_store_errors("list stale interviews"):
            stale = await self.store.list_interviews(status=InterviewStatus.ACTIVE, created_before=cutoff)

        result = SweepResult()
        for candidate in stale:
            try:
                async with self.locks.hold(candidate.user_id), mapped_store_errors("sweep interview"):
                    interview = await self.store.get_interview(candidate.id)
                    if interview is None or interview.is_finalized:
                        result.skipped += 1
                        continue
                    await self._finalize(interview, InterviewStatus.ABANDONED, cap_at_prepaid=True)
                result.processed += 1
                result.interview_ids.append(candidate.id)
            except Exception:
                logger.error("Sweep failed for interview %s", candidate.id, exc_info=True)
                result.failed += 1
                result.failed_ids.append(candidate.id)

        logger.info(
            "Abandon sweep: %d processed, %d skipped, %d failed (cutoff %s)",
            result.processed,
            result.skipped,
            result.failed,
            cutoff.isoformat(),
        )
        return result

    # ------------------------------------------------------------------
    # Problem attempts
    # ------------------------------------------------------------------

    async def start_problem_attempt(
        self,
        caller_id: str,
        interview_id: str,
        question_id: Optional[str],
        language: str = "python",
        version: str = "*",
    ) -> ProblemAttempt:
        """Record that a question was presented during an interview."""
        interview = await self.authorize_interview(caller_id, interview_id)
        attempt = ProblemAttempt(
            id=str(uuid.uuid4()),
            interview_id=interview_id,
            question_id=question_id,
            started_at=int(self.clock().timestamp() * 1000),
            language=language,
            version=version,
        )

        async with self.locks.hold(interview.user_id), mapped_store_errors("start problem attempt"):
            await self.store.upsert_problem_attempt(attempt)
            interview = await self._require_interview(interview_id)
            await self.store.update_interview(
                interview_id,
                problem_attempt_ids=[*interview.problem_attempt_ids, attempt.id],
            )

        logger.info("Problem attempt %s (question %s) opened on %s", attempt.id, question_id, interview_id)
        return attempt

    async def record_submission(self, caller_id: str, attempt_id: str, submission: Submission) -> ProblemAttempt:
        """Append a code run to a problem attempt owned by the caller."""
        async with mapped_store_errors("load problem attempt"):
            attempt = await self.store.get_problem_attempt(attempt_id)
        if attempt is None:
            raise ProblemAttemptNotFound(attempt_id)
        interview = await self.authorize_interview(caller_id, attempt.interview_id)

        async with self.locks.hold(interview.user_id), mapped_store_errors("record submission"):
            attempt = await self.store.get_problem_attempt(attempt_id)
            if attempt is None:
                raise ProblemAttemptNotFound(attempt_id)
            attempt.submissions.append(submission)
            attempt = await self.store.upsert_problem_attempt(attempt)

        logger.debug("Submission recorded on %s (passed=%s)", attempt_id, submission.passed)
        return attempt

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def grant_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier,
        reference_id: Optional[str] = None,
        amount: int = 0,
    ) -> SubscriptionResult:
        """
        Credit a subscription's token grant, record the tier and add a billing
        history entry.

        If the history entry cannot be written, the previous balance and tier
        are restored before the error propagates.
        """
        granted = ledger.tier_grant(tier)
        async with self.locks.hold(user_id), mapped_store_errors("grant subscription"):
            user = await self.store.get_user(user_id, fresh=True)
            if user is None:
                raise UserNotFound(user_id)
            previous = await self.store.get_user_tokens(user_id)
            balance = ledger.credit(previous, granted)
            await self.store.update_user(user_id, tokens=balance, subscription_tier=tier)
            await self.store.invalidate_user_cache(user_id)

            entry = BillingEntry(
                id=str(uuid.uuid4()),
                user_id=user_id,
                type=BillingType.SUBSCRIPTION,
                reference_id=reference_id,
                amount=amount,
                tokens=granted,
                description=f"Subscribed to {tier.value} plan",
                created_at=self.clock(),
            )
            try:
                await self.store.add_billing_entry(entry)
            except Exception:
                logger.error("Billing entry for %s failed; reverting grant", user_id, exc_info=True)
                try:
                    await self.store.update_user(user_id, tokens=previous, subscription_tier=user.subscription_tier)
                    await self.store.invalidate_user_cache(user_id)
                except Exception:
                    logger.critical("Grant revert for %s failed; expected %d", user_id, previous, exc_info=True)
                raise

        logger.info("Granted %s subscription to %s (+%d tokens, balance=%d)", tier.value, user_id, granted, balance)
        return SubscriptionResult(user_id=user_id, tier=tier, tokens_granted=granted, new_balance=balance)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    async def billing_history(self, caller_id: str, user_id: str) -> list[BillingEntry]:
        """A user's billing entries. Only the user may read them."""
        if caller_id != user_id:
            logger.warning("User %s denied access to billing history of %s", caller_id, user_id)
            raise Forbidden("You do not have access to this billing history.")
        async with mapped_store_errors("billing history"):
            if await self.store.get_user(user_id) is None:
                raise UserNotFound(user_id)
            return await self.store.list_billing_history(user_id)

    async def authorize_interview(self, caller_id: str, interview_id: str) -> Interview:
        """
        Load an interview the caller owns. Performs no mutation.

        Raises:
            InterviewNotFound: No such interview.
            Forbidden: The caller is not the owner.
        """
        async with mapped_store_errors("load interview"):
            interview = await self._require_interview(interview_id)
        if interview.user_id != caller_id:
            logger.warning("User %s denied access to interview %s", caller_id, interview_id)
            raise Forbidden()
        return interview

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_interview(self, interview_id: str) -> Interview:
        interview = await self.store.get_interview(interview_id)
        if interview is None:
            raise InterviewNotFound(interview_id)
        return interview

    async def _finalize(
        self,
        interview: Interview,
        status: InterviewStatus,
        cap_at_prepaid: bool = False,
    ) -> _Finalization:
        """
        Close billing for ``interview``. Caller holds the user's lock and has
        re-read the interview, which must not be finalized yet.

        The balance is written first; if the interview update then fails, the
        previous balance is restored before the error propagates.
        """
        now = self.clock()
        used = ledger.compute_usage(interview.created_at, now, self.tokens_per_second)
        if cap_at_prepaid:
            used = ledger.capped_usage(used, interview.tokens_prepaid)

        balance = await self.store.get_user_tokens(interview.user_id)
        outcome = ledger.true_up(balance, interview.tokens_prepaid, used)
        await self.store.set_user_tokens(interview.user_id, outcome.new_balance)
        await self.store.invalidate_user_cache(interview.user_id)

        try:
            updated = await self.store.update_interview(
                interview.id,
                status=status,
                ended_at=now,
                tokens_used=used,
                tokens_deducted=True,
            )
        except Exception:
            logger.error("Finalizing %s failed; restoring balance %d", interview.id, balance, exc_info=True)
            try:
                await self.store.set_user_tokens(interview.user_id, balance)
                await self.store.invalidate_user_cache(interview.user_id)
            except Exception:
                logger.critical(
                    "Balance restore for %s failed; expected %d", interview.user_id, balance, exc_info=True
                )
            raise

        logger.info(
            "Interview %s %s: used=%d prepaid=%d charged=%d refunded=%d balance=%d",
            interview.id,
            status.value,
            used,
            interview.tokens_prepaid,
            outcome.charged,
            outcome.refunded,
            outcome.new_balance,
        )
        return _Finalization(interview=updated, tokens_used=used, true_up=outcome)

    async def _settle_xp(self, interview: Interview) -> Interview:
        """
        Credit whatever XP a completed interview has earned but not yet paid.

        ``xp_awarded`` records what was already credited, so a retried end only
        finishes an interrupted award, and feedback saved after end adds just
        the score bonus. Caller holds the user's lock.
        """
        if interview.status != InterviewStatus.COMPLETED:
            return interview
        score = interview.feedback.get("overall_score") if interview.feedback else None
        owed = ledger.xp_for_interview(score) - interview.xp_awarded
        if owed <= 0:
            return interview

        user = await self.store.get_user(interview.user_id, fresh=True)
        if user is None:
            raise UserNotFound(interview.user_id)
        await self.store.update_user(interview.user_id, xp=user.xp + owed)
        await self.store.invalidate_user_cache(interview.user_id)
        try:
            interview = await self.store.update_interview(interview.id, xp_awarded=interview.xp_awarded + owed)
        except Exception:
            logger.error("Recording XP on %s failed; restoring xp %d", interview.id, user.xp, exc_info=True)
            try:
                await self.store.update_user(interview.user_id, xp=user.xp)
                await self.store.invalidate_user_cache(interview.user_id)
            except Exception:
                logger.critical("XP restore for %s failed; expected %d", interview.user_id, user.xp, exc_info=True)
            raise

        logger.info("Awarded %d XP to %s for %s", owed, interview.user_id, interview.id)
        return interview

    async def _link_interview(self, interview: Interview) -> None:
        user = await self.store.get_user(interview.user_id, fresh=True)
        if user is None:
            raise UserNotFound(interview.user_id)
        if interview.id in user.interview_ids:
            return
        await self.store.update_user(interview.user_id, interview_ids=[*user.interview_ids, interview.id])
        await self.store.invalidate_user_cache(interview.user_id)
