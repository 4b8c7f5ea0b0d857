"""
validation.py - Distribution Validator

Read-only pre-transition checks. Each check returns a ValidationResult with
hard errors (which block the transition) and warnings (which are reported and
logged but never raise):

    validate_distribution   before DECLARED
    validate_payout         before a payout is marked PAID

Neither function writes or locks anything; callers that act on the result
hold their own locks.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Tuple

from sqlalchemy.orm import Session

from .core import (
    RECONCILIATION_TOLERANCE, DistributionStatus, KycStatus, PayoutStatus,
)
from .models import Distribution, Payout


@dataclass(frozen=True, slots=True)
class ValidationResult:
    is_valid: bool
    errors: Tuple[str, ...]
    warnings: Tuple[str, ...]

    @classmethod
    def build(cls, errors: List[str], warnings: List[str]) -> "ValidationResult":
        return cls(is_valid=not errors, errors=tuple(errors), warnings=tuple(warnings))


def validate_distribution(session: Session, distribution_id: str) -> ValidationResult:
    """
    Check that a distribution can be declared.

    Errors:
        - distribution not found
        - no payouts (no investors)
        - net distributable is not positive
        - statement period is invalid

    Warnings:
        - investors whose KYC is not approved
        - payout sum differs from the net by more than RECONCILIATION_TOLERANCE
        - payouts with a zero amount
    """
    errors: List[str] = []
    warnings: List[str] = []

    distribution = session.get(Distribution, distribution_id)
    if distribution is None:
        return ValidationResult.build([f"Distribution {distribution_id} not found"], [])

    statement = distribution.rental_statement
    payouts = list(distribution.payouts)

    if not payouts:
        errors.append("No investors found for this distribution")
    if statement.net_distributable <= 0:
        errors.append(
            f"Net distributable must be positive, got {statement.net_distributable}"
        )
    if statement.period_start >= statement.period_end:
        errors.append(
            f"Invalid statement period {statement.period_start}..{statement.period_end}"
        )

    not_verified = [p for p in payouts if p.user.kyc_status != KycStatus.APPROVED]
    if not_verified:
        warnings.append(f"{len(not_verified)} investor(s) have not completed KYC verification")

    paid_out = sum((p.amount for p in payouts), Decimal("0"))
    if payouts and abs(paid_out - statement.net_distributable) > RECONCILIATION_TOLERANCE:
        warnings.append(
            f"Payout total {paid_out} differs from net distributable "
            f"{statement.net_distributable}"
        )

    zero = [p for p in payouts if p.amount <= 0]
    if zero:
        warnings.append(f"{len(zero)} payout(s) have a zero amount")

    return ValidationResult.build(errors, warnings)


def validate_payout(session: Session, payout_id: str) -> ValidationResult:
    """Check that a payout can be marked PAID."""
    errors: List[str] = []
    warnings: List[str] = []

    payout = session.get(Payout, payout_id)
    if payout is None:
        return ValidationResult.build([f"Payout {payout_id} not found"], [])

    status = payout.distribution.status
    if status not in (DistributionStatus.DECLARED, DistributionStatus.PAID):
        errors.append(f"Distribution must be declared before payment (is {status.value})")
    if payout.amount <= 0:
        errors.append(f"Payout amount must be positive, got {payout.amount}")
    if payout.status == PayoutStatus.PAID:
        errors.append("Payout is already paid")

    if payout.user.kyc_status != KycStatus.APPROVED:
        warnings.append(f"User {payout.user_id} has not completed KYC verification")

    return ValidationResult.build(errors, warnings)
