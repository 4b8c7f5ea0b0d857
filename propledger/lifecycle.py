"""
lifecycle.py - Distribution State Machine

=== STATES ===

    DRAFT ──approve──> APPROVED ──declare──> DECLARED ──all payouts paid──> PAID
      ^                   │
      └─────reject────────┘
    DRAFT ──declare(allow_draft=True)──> DECLARED      (administrative fast path)

PAID is terminal. Declaring a DECLARED or PAID distribution raises
AlreadyDeclared, so a retried declaration never writes a second set of ledger
rows.

=== DECLARATION ===

declare_distribution() is one unit of work:
    1. lock the distribution row
    2. check the transition and run the validator (hard errors raise)
    3. verify sum(payouts) == net_distributable exactly
    4. append one PAYOUT ledger row per payout, PAY-<PAYOUT ID>, and link it
    5. set DECLARED and declared_at

Payout amounts are frozen from this point on.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List, Optional
import logging

from sqlalchemy.orm import Session

from .core import (
    PAYOUT_REFERENCE_PREFIX,
    DistributionStatus, PaymentMethod, PayoutStatus, TransactionType,
    AlreadyDeclared, IllegalTransition, InvalidInput, ReconciliationError,
    ValidationFailed, make_reference,
)
from .db import atomic, get_row, lock_row
from .models import Distribution, Payout, record_audit, utcnow
from .validation import validate_distribution, validate_payout
from .wallet import credit_wallet, record_transaction

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[DistributionStatus, FrozenSet[DistributionStatus]] = {
    DistributionStatus.DRAFT: frozenset({DistributionStatus.APPROVED, DistributionStatus.DECLARED}),
    DistributionStatus.APPROVED: frozenset({DistributionStatus.DECLARED, DistributionStatus.DRAFT}),
    DistributionStatus.DECLARED: frozenset({DistributionStatus.PAID}),
    DistributionStatus.PAID: frozenset(),
}


def check_transition(current: DistributionStatus, target: DistributionStatus) -> None:
    """
    Raises:
        AlreadyDeclared: declaring a DECLARED or PAID distribution
        IllegalTransition: any other move not in TRANSITIONS
    """
    if target == DistributionStatus.DECLARED and current in (
        DistributionStatus.DECLARED, DistributionStatus.PAID
    ):
        raise AlreadyDeclared(f"Distribution is already {current.value}")
    if target not in TRANSITIONS[current]:
        raise IllegalTransition("Distribution", current.value, target.value)


# =============================================================================
# APPROVAL
# =============================================================================

def approve_distribution(
    session: Session,
    distribution_id: str,
    approved_by: str,
    notes: Optional[str] = None,
) -> Distribution:
    with atomic(session):
        distribution = lock_row(session, Distribution, distribution_id)
        check_transition(distribution.status, DistributionStatus.APPROVED)
        distribution.status = DistributionStatus.APPROVED
        distribution.approved_by = approved_by
        distribution.approved_at = utcnow()
        if notes is not None:
            distribution.notes = notes
        record_audit(session, "DISTRIBUTION_APPROVED", distribution.id, actor_id=approved_by)
        session.flush()
    logger.info("Distribution %s approved by %s", distribution_id, approved_by)
    return distribution


def reject_distribution(
    session: Session,
    distribution_id: str,
    notes: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Distribution:
    """Send an APPROVED distribution back to DRAFT."""
    with atomic(session):
        distribution = lock_row(session, Distribution, distribution_id)
        if distribution.status != DistributionStatus.APPROVED:
            raise IllegalTransition(
                "Distribution", distribution.status.value, DistributionStatus.DRAFT.value
            )
        check_transition(distribution.status, DistributionStatus.DRAFT)
        distribution.status = DistributionStatus.DRAFT
        distribution.approved_by = None
        distribution.approved_at = None
        if notes is not None:
            distribution.notes = notes
        record_audit(session, "DISTRIBUTION_REJECTED", distribution.id,
                     actor_id=actor_id, notes=notes)
        session.flush()
    logger.info("Distribution %s rolled back to DRAFT", distribution_id)
    return distribution


# =============================================================================
# DECLARATION
# =============================================================================

def declare_distribution(
    session: Session,
    distribution_id: str,
    allow_draft: bool = False,
    actor_id: Optional[str] = None,
) -> Distribution:
    """
    Declare a distribution and write its PAYOUT ledger rows.

    Args:
        session: Per-request session
        distribution_id: Distribution to declare (normally APPROVED)
        allow_draft: Permit the DRAFT -> DECLARED administrative fast path
        actor_id: Recorded in the audit log

    Raises:
        AlreadyDeclared: distribution is DECLARED or PAID (nothing is written)
        IllegalTransition: DRAFT without allow_draft
        ValidationFailed: validator reported hard errors
        ReconciliationError: payouts do not sum exactly to the net
    """
    with atomic(session):
        distribution = lock_row(session, Distribution, distribution_id)
        current = distribution.status
        check_transition(current, DistributionStatus.DECLARED)
        if current == DistributionStatus.DRAFT and not allow_draft:
            raise IllegalTransition("Distribution", current.value, DistributionStatus.DECLARED.value)

        result = validate_distribution(session, distribution_id)
        if not result.is_valid:
            raise ValidationFailed(result)
        for warning in result.warnings:
            logger.warning("Distribution %s: %s", distribution_id, warning)

        net = distribution.rental_statement.net_distributable
        paid_out = sum((p.amount for p in distribution.payouts), Decimal("0"))
        if paid_out != net or distribution.total_distributed != net:
            raise ReconciliationError(
                f"Distribution {distribution_id} does not reconcile: payouts {paid_out}, "
                f"recorded {distribution.total_distributed}, net {net}"
            )

        for payout in distribution.payouts:
            # A zero payout owes nothing and gets no ledger row
            if payout.amount <= 0:
                continue
            tx = record_transaction(
                session,
                user_id=payout.user_id,
                tx_type=TransactionType.PAYOUT,
                amount=payout.amount,
                reference=make_reference(PAYOUT_REFERENCE_PREFIX, payout.id),
                currency=payout.currency,
            )
            payout.transaction_id = tx.id

        distribution.status = DistributionStatus.DECLARED
        distribution.declared_at = utcnow()
        record_audit(
            session, "DISTRIBUTION_DECLARED", distribution.id, actor_id=actor_id,
            previous_status=current.value, total_distributed=str(net),
            payouts=len(distribution.payouts), warnings=list(result.warnings),
        )
        session.flush()

    logger.info(
        "Declared distribution %s: %s %s to %d investors",
        distribution_id, net, distribution.currency, len(distribution.payouts),
    )
    return distribution


# =============================================================================
# PAYMENT
# =============================================================================

def _all_settled(distribution: Distribution) -> bool:
    return all(
        p.status == PayoutStatus.PAID for p in distribution.payouts if p.amount > 0
    )


def mark_payout_paid(
    session: Session,
    payout_id: str,
    method: PaymentMethod = PaymentMethod.WALLET,
    paid_at: Optional[datetime] = None,
    actor_id: Optional[str] = None,
) -> Payout:
    """
    Record that a payout was settled.

    With PaymentMethod.WALLET the investor's wallet is credited in the same
    unit of work (a no-op when declaration already linked a ledger row).
    The distribution moves to PAID once every non-zero payout is PAID.

    Raises:
        ValidationFailed: distribution not declared, zero amount, or
                          payout already PAID
    """
    method = PaymentMethod(method)
    with atomic(session):
        payout = get_row(session, Payout, payout_id)
        distribution = lock_row(session, Distribution, payout.distribution_id)
        payout = lock_row(session, Payout, payout_id)

        result = validate_payout(session, payout_id)
        if not result.is_valid:
            raise ValidationFailed(result)
        for warning in result.warnings:
            logger.warning("Payout %s: %s", payout_id, warning)

        if method == PaymentMethod.WALLET:
            credit_wallet(session, payout)

        payout.status = PayoutStatus.PAID
        payout.payment_method = method
        payout.paid_at = paid_at or utcnow()
        session.flush()

        if distribution.status == DistributionStatus.DECLARED and _all_settled(distribution):
            check_transition(distribution.status, DistributionStatus.PAID)
            distribution.status = DistributionStatus.PAID
            logger.info("Distribution %s fully paid", distribution.id)

        record_audit(
            session, "PAYOUT_PAID", payout.id, actor_id=actor_id,
            method=method.value, amount=str(payout.amount),
        )
        session.flush()

    logger.info("Payout %s of %s %s paid via %s",
                payout_id, payout.amount, payout.currency, method.value)
    return payout


def mark_payouts_paid(
    session: Session,
    payout_ids: Iterable[str],
    method: PaymentMethod = PaymentMethod.WALLET,
    paid_at: Optional[datetime] = None,
    actor_id: Optional[str] = None,
) -> List[Payout]:
    """
    Settle a batch of payouts as one unit of work.

    Each payout goes through mark_payout_paid. If any of them is refused, the
    whole batch rolls back and nothing is marked PAID. Repeated ids are
    settled once, and payouts are locked in id order.

    Raises:
        InvalidInput: no payout ids given
        NotFound, ValidationFailed: the first payout that cannot be paid
    """
    ids = sorted(set(payout_ids))
    if not ids:
        raise InvalidInput("mark_payouts_paid needs at least one payout id")
    method = PaymentMethod(method)
    paid_at = paid_at or utcnow()

    with atomic(session):
        payouts = [
            mark_payout_paid(session, payout_id, method, paid_at=paid_at, actor_id=actor_id)
            for payout_id in ids
        ]

    logger.info("Settled %d payout(s) via %s", len(payouts), method.value)
    return payouts


def mark_payout_failed(
    session: Session,
    payout_id: str,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Payout:
    """
    Flag a PENDING payout of a declared distribution as FAILED.

    A failed payout can still be marked PAID later.
    """
    with atomic(session):
        payout = get_row(session, Payout, payout_id)
        distribution = lock_row(session, Distribution, payout.distribution_id)
        payout = lock_row(session, Payout, payout_id)
        if distribution.status != DistributionStatus.DECLARED:
            raise IllegalTransition(
                "Distribution", distribution.status.value, "payout failure"
            )
        if payout.status != PayoutStatus.PENDING:
            raise IllegalTransition("Payout", payout.status.value, PayoutStatus.FAILED.value)
        payout.status = PayoutStatus.FAILED
        if reason is not None:
            payout.notes = reason
        record_audit(session, "PAYOUT_FAILED", payout.id, actor_id=actor_id, reason=reason)
        session.flush()
    logger.warning("Payout %s failed: %s", payout_id, reason)
    return payout
