"""
Token ledger: pure accounting over a user's integer token balance.

Nothing here performs I/O or holds state. Callers pass balances and
timestamps in and persist the results themselves; the idempotence guard
(``Interview.tokens_deducted``) is the caller's job.

Billing is pay-per-wall-clock-second at a single rate for every interview
mode. Rates are kept as ``Fraction`` so ``ceil`` never sees float noise.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from fractions import Fraction

from .errors import InsufficientTokens
from .models import SubscriptionTier


# =============================================================================
# Constants
# =============================================================================

# One interview reservation; 1 token is roughly $0.001 of compute.
ONE_INTERVIEW_TOKENS = 750
MIN_TOKENS_REQUIRED = ONE_INTERVIEW_TOKENS

TOKENS_PER_MINUTE = 50
TOKENS_PER_SECOND = Fraction(TOKENS_PER_MINUTE, 60)

TIER_INTERVIEW_GRANTS: dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 0,
    SubscriptionTier.STARTER: 6,
    SubscriptionTier.PRO: 15,
}

XP_PER_INTERVIEW = 100
XP_PER_SCORE_POINT = 10
XP_PER_LEVEL = 500


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class Reservation:
    """Outcome of a successful prepaid reservation."""

    reserved: int
    new_balance: int


@dataclass(frozen=True)
class TrueUp:
    """
    Outcome of reconciling a prepaid reservation against actual usage.

    ``difference`` is ``prepaid - actual_used``: positive means tokens were
    credited back, negative means an extra debit was attempted. ``charged`` is
    what was actually debited beyond the prepaid amount after clamping.
    """

    new_balance: int
    difference: int
    charged: int
    refunded: int


# =============================================================================
# Operations
# =============================================================================


def reserve(balance: int, min_required: int = MIN_TOKENS_REQUIRED) -> Reservation:
    """
    Reserve ``min_required`` tokens from ``balance``.

    Raises:
        InsufficientTokens: If ``balance < min_required``.
    """
    if balance < min_required:
        raise InsufficientTokens(balance=balance, required=min_required)
    return Reservation(reserved=min_required, new_balance=balance - min_required)


def compute_usage(
    started_at: datetime,
    now: datetime,
    rate: Fraction | int = TOKENS_PER_SECOND,
) -> int:
    """
    Tokens consumed between ``started_at`` and ``now``.

    ``ceil(max(0, elapsed_seconds) * rate)``, floored at 1 once any time has
    elapsed. Clock skew that puts ``now`` before ``started_at`` bills nothing.
    """
    elapsed = Fraction((now - started_at).total_seconds())
    if elapsed <= 0:
        return 0
    return max(1, math.ceil(elapsed * Fraction(rate)))


def capped_usage(actual_used: int, prepaid: int) -> int:
    """Usage for sessions that never ended cleanly: never more than the reservation."""
    return min(actual_used, prepaid)


def true_up(balance: int, prepaid: int, actual_used: int) -> TrueUp:
    """
    Reconcile a reservation against measured usage.

    ``balance`` is the current (post-reservation) balance. Over-use is
    debited, clamped so the balance never goes negative; under-use is
    credited back.
    """
    if actual_used > prepaid:
        extra = actual_used - prepaid
        charged = min(extra, balance)
        return TrueUp(
            new_balance=balance - charged,
            difference=prepaid - actual_used,
            charged=charged,
            refunded=0,
        )

    refunded = prepaid - actual_used
    return TrueUp(
        new_balance=balance + refunded,
        difference=refunded,
        charged=0,
        refunded=refunded,
    )


def refund(balance: int, amount: int) -> int:
    """Return ``amount`` reserved tokens to ``balance``."""
    if amount < 0:
        raise ValueError(f"Refund amount must be non-negative. Got: {amount}")
    return balance + amount


def credit(balance: int, amount: int) -> int:
    """Add purchased or granted tokens."""
    if amount < 0:
        raise ValueError(f"Credit amount must be non-negative. Got: {amount}")
    return balance + amount


def tier_grant(tier: SubscriptionTier) -> int:
    """Tokens granted when a subscription of ``tier`` is purchased."""
    return TIER_INTERVIEW_GRANTS[tier] * ONE_INTERVIEW_TOKENS


def xp_for_interview(overall_score: float | None) -> int:
    """XP awarded when an interview completes; scored interviews earn a bonus."""
    if overall_score is None:
        return XP_PER_INTERVIEW
    return XP_PER_INTERVIEW + int(round(overall_score * XP_PER_SCORE_POINT))


def level_for_xp(xp: int) -> int:
    return xp // XP_PER_LEVEL + 1
