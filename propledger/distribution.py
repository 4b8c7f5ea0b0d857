"""
distribution.py - Distribution Engine

Turns one rental statement into a DRAFT distribution with one payout per
investor holding confirmed shares.

=== ALLOCATION MODEL ===

    payout(u) = net_distributable * shares(u) / total_confirmed_shares

The denominator is the sum of CONFIRMED shares, not property.total_shares:
unsold shares earn nothing for anyone.

Amounts are computed in integer minor units (kobo/cents):
    1. floor each holder's exact share to a whole minor unit
    2. hand the leftover minor units out one at a time, largest discarded
       remainder first (ties: larger holding, then user id)

so that sum(payouts) == net_distributable exactly and the result depends only
on the inputs.

=== PURE FUNCTIONS ===

    allocate_pro_rata(net, holdings, currency) -> [PayoutAllocation]
    check_statement(statement)                 -> None | InvalidStatement

=== ORCHESTRATORS ===

    create_draft_distribution   one unit of work: distribution + payouts
    recalculate_payouts         DRAFT only, after a statement correction
    fix_underwriter_payouts     administrative re-snapshot before declaration
    delete_distribution         DRAFT/APPROVED only (no ledger rows exist yet)
    declare_from_statement      draft + declare in one unit of work
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .core import (
    DEFAULT_CURRENCY,
    DistributionStatus, PayoutStatus,
    DuplicateDistribution, IllegalTransition, InvalidStatement, NoInvestors,
    ReconciliationError, StateTransitionError,
)
from .db import atomic, lock_row
from .lifecycle import declare_distribution
from .models import Distribution, Payout, Property, RentalStatement, record_audit
from .money import minor_unit
from .shares import holdings_by_user
from .statements import compute_net_distributable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PayoutAllocation:
    """One investor's computed share of a distribution."""
    user_id: str
    shares: int
    amount: Decimal


@dataclass(frozen=True, slots=True)
class DraftResult:
    distribution: Distribution
    payouts: Tuple[Payout, ...]
    net_distributable: Decimal
    total_confirmed_shares: int
    available_shares: int


@dataclass(frozen=True, slots=True)
class PayoutFix:
    """
    Record of one payout changed by a re-snapshot.

    old_* are zero for a payout that was added; new_* are zero for one that
    was removed.
    """
    payout_id: Optional[str]
    user_id: str
    old_shares: int
    new_shares: int
    old_amount: Decimal
    new_amount: Decimal


@dataclass(frozen=True, slots=True)
class FixResult:
    fixed: int
    payouts: Tuple[PayoutFix, ...]


# =============================================================================
# PURE FUNCTIONS - The core logic, trivially testable
# =============================================================================

def allocate_pro_rata(
    net: Decimal,
    holdings: Mapping[str, int],
    currency: str = DEFAULT_CURRENCY,
) -> List[PayoutAllocation]:
    """
    Split `net` across holders in proportion to their shares. Pure function.

    Args:
        net: Amount to distribute, already expressed in whole minor units
        holdings: {user_id: confirmed shares}; zero holdings are skipped
        currency: Determines the minor unit

    Returns:
        Allocations sorted by user_id

    Raises:
        ReconciliationError: if net is not a whole number of minor units

    Invariants:
        - sum(a.amount) == net
        - every amount is a multiple of the minor unit
        - |a.amount - exact share| < one minor unit
    """
    eligible = sorted((user, shares) for user, shares in holdings.items() if shares > 0)
    if not eligible:
        return []

    unit = minor_unit(currency)
    net_units = net / unit
    if net_units != net_units.to_integral_value():
        raise ReconciliationError(f"{net} is not a whole number of {unit} units")
    net_units = int(net_units)
    total_shares = sum(shares for _, shares in eligible)

    floors: Dict[str, int] = {}
    remainders: List[Tuple[int, int, str]] = []
    for user, shares in eligible:
        quotient, remainder = divmod(net_units * shares, total_shares)
        floors[user] = quotient
        remainders.append((remainder, shares, user))

    leftover = net_units - sum(floors.values())
    # Largest remainder first, then the larger holding, then user id
    remainders.sort(key=lambda r: (-r[0], -r[1], r[2]))
    for _, _, user in remainders[:leftover]:
        floors[user] += 1

    return [
        PayoutAllocation(user_id=user, shares=shares, amount=floors[user] * unit)
        for user, shares in eligible
    ]


def check_statement(statement: RentalStatement) -> None:
    """
    Refuse statements that cannot be distributed. Pure function.

    Raises:
        InvalidStatement: invalid period, a stored net that disagrees with its
                          components, or a non-positive net
    """
    if statement.period_start >= statement.period_end:
        raise InvalidStatement(
            f"Statement {statement.id} period is invalid "
            f"({statement.period_start} is not before {statement.period_end})"
        )
    expected = compute_net_distributable(
        statement.gross_revenue,
        statement.operating_costs,
        statement.management_fee,
        statement.income_adjustment,
    )
    if statement.net_distributable != expected:
        raise InvalidStatement(
            f"Statement {statement.id} net {statement.net_distributable} "
            f"does not match its components ({expected})"
        )
    if statement.net_distributable <= 0:
        raise InvalidStatement(
            f"Statement {statement.id} has no positive net distributable "
            f"({statement.net_distributable})"
        )


def total_of(amounts: Iterable[Decimal]) -> Decimal:
    return sum(amounts, Decimal("0"))


# =============================================================================
# HELPERS
# =============================================================================

def _is_duplicate_statement_error(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "rental_statement" in message and ("unique" in message or "duplicate" in message)


def _assert_reconciled(payouts: Iterable[Payout], net: Decimal) -> None:
    paid_out = total_of(p.amount for p in payouts)
    if paid_out != net:
        raise ReconciliationError(f"Payouts sum to {paid_out}, net distributable is {net}")


def _snapshot(session: Session, distribution: Distribution,
              statement: RentalStatement) -> List[PayoutAllocation]:
    holdings = holdings_by_user(session, distribution.property_id)
    if not holdings:
        raise NoInvestors(f"No confirmed shares for property {distribution.property_id}")
    return allocate_pro_rata(statement.net_distributable, holdings, statement.currency)


def _sync_payouts(
    session: Session,
    distribution: Distribution,
    allocations: List[PayoutAllocation],
) -> List[PayoutFix]:
    """Bring a distribution's payouts in line with fresh allocations, in place."""
    existing = {p.user_id: p for p in distribution.payouts}
    wanted = {a.user_id: a for a in allocations}
    fixes: List[PayoutFix] = []

    for allocation in allocations:
        payout = existing.get(allocation.user_id)
        if payout is None:
            payout = Payout(
                user_id=allocation.user_id,
                property_id=distribution.property_id,
                shares_at_record=allocation.shares,
                amount=allocation.amount,
                currency=distribution.currency,
                status=PayoutStatus.PENDING,
            )
            distribution.payouts.append(payout)
            session.flush()
            fixes.append(PayoutFix(payout.id, allocation.user_id, 0, allocation.shares,
                                   Decimal("0"), allocation.amount))
        elif payout.shares_at_record != allocation.shares or payout.amount != allocation.amount:
            fixes.append(PayoutFix(payout.id, allocation.user_id,
                                   payout.shares_at_record, allocation.shares,
                                   payout.amount, allocation.amount))
            payout.shares_at_record = allocation.shares
            payout.amount = allocation.amount

    for user_id, payout in existing.items():
        if user_id not in wanted:
            fixes.append(PayoutFix(payout.id, user_id, payout.shares_at_record, 0,
                                   payout.amount, Decimal("0")))
            distribution.payouts.remove(payout)

    session.flush()
    return fixes


# =============================================================================
# ORCHESTRATORS
# =============================================================================

def create_draft_distribution(
    session: Session,
    property_id: str,
    rental_statement_id: str,
    actor_id: Optional[str] = None,
) -> DraftResult:
    """
    Create a DRAFT distribution and its payouts from a rental statement.

    The statement row is locked for the whole unit of work and a UNIQUE
    constraint on distributions.rental_statement_id backs the existence
    check, so of two concurrent calls for the same statement exactly one
    succeeds.

    Raises:
        NotFound: statement or property does not exist
        DuplicateDistribution: the statement already has a distribution
        InvalidStatement: statement belongs to another property, has an
                          invalid period or a non-positive net
        NoInvestors: no confirmed shares exist for the property
    """
    try:
        with atomic(session):
            statement = lock_row(session, RentalStatement, rental_statement_id)
            if statement.property_id != property_id:
                raise InvalidStatement(
                    f"Statement {rental_statement_id} does not belong to property {property_id}"
                )
            existing = session.execute(
                select(Distribution.id).where(
                    Distribution.rental_statement_id == rental_statement_id
                )
            ).scalar_one_or_none()
            if existing is not None:
                raise DuplicateDistribution(
                    f"Distribution {existing} already exists for statement {rental_statement_id}"
                )
            check_statement(statement)

            prop = lock_row(session, Property, property_id)
            holdings = holdings_by_user(session, property_id)
            total_confirmed = sum(holdings.values())
            if total_confirmed == 0:
                raise NoInvestors(f"No shares have been purchased for property {property_id}")

            net = statement.net_distributable
            allocations = allocate_pro_rata(net, holdings, statement.currency)

            distribution = Distribution(
                property_id=property_id,
                rental_statement_id=rental_statement_id,
                status=DistributionStatus.DRAFT,
                total_distributed=net,
                currency=statement.currency,
            )
            session.add(distribution)
            session.flush()

            payouts = [
                Payout(
                    user_id=a.user_id,
                    property_id=property_id,
                    shares_at_record=a.shares,
                    amount=a.amount,
                    currency=statement.currency,
                    status=PayoutStatus.PENDING,
                )
                for a in allocations
            ]
            distribution.payouts.extend(payouts)
            session.flush()
            _assert_reconciled(payouts, net)

            record_audit(
                session, "DISTRIBUTION_DRAFTED", distribution.id, actor_id=actor_id,
                rental_statement_id=rental_statement_id,
                net_distributable=str(net), payouts=len(payouts),
            )
    except IntegrityError as exc:
        if _is_duplicate_statement_error(exc):
            raise DuplicateDistribution(
                f"Distribution already exists for statement {rental_statement_id}"
            ) from exc
        raise

    logger.info(
        "Drafted distribution %s for statement %s: %s across %d investors",
        distribution.id, rental_statement_id, net, len(payouts),
    )
    return DraftResult(
        distribution=distribution,
        payouts=tuple(payouts),
        net_distributable=net,
        total_confirmed_shares=total_confirmed,
        available_shares=prop.total_shares - total_confirmed,
    )


def recalculate_payouts(session: Session, distribution_id: str) -> Tuple[Payout, ...]:
    """
    Re-price a DRAFT distribution from the statement's current net and a
    fresh holdings snapshot.

    Raises:
        StateTransitionError: distribution is not DRAFT
    """
    with atomic(session):
        distribution = lock_row(session, Distribution, distribution_id)
        if distribution.status != DistributionStatus.DRAFT:
            raise StateTransitionError(
                f"Can only recalculate payouts for DRAFT distributions, "
                f"{distribution_id} is {distribution.status.value}"
            )
        statement = distribution.rental_statement
        check_statement(statement)
        allocations = _snapshot(session, distribution, statement)
        _sync_payouts(session, distribution, allocations)
        distribution.total_distributed = statement.net_distributable
        _assert_reconciled(distribution.payouts, statement.net_distributable)
    return tuple(distribution.payouts)


def fix_underwriter_payouts(
    session: Session,
    distribution_id: str,
    actor_id: Optional[str] = None,
) -> FixResult:
    """
    Administrative repair: re-snapshot holdings for an undeclared distribution.

    This is a plain re-snapshot of confirmed holdings. Nothing here looks at
    UserRole.UNDERWRITER: an underwriter is paid like any other holder of
    confirmed shares, and unsold shares are never paid to anyone. Run it after
    holdings changed under a draft, e.g. the underwriter took over unsold
    inventory as a confirmed investment. Changed payouts are updated in place,
    missing ones added and stale ones removed. Running it twice changes
    nothing the second time.

    A fixed APPROVED distribution goes back to DRAFT for re-approval.
    DECLARED and PAID distributions are frozen and are reported as fixed=0.
    """
    with atomic(session):
        distribution = lock_row(session, Distribution, distribution_id)
        if distribution.status in (DistributionStatus.DECLARED, DistributionStatus.PAID):
            logger.warning(
                "Distribution %s is %s; payouts are frozen and were not fixed",
                distribution_id, distribution.status.value,
            )
            return FixResult(fixed=0, payouts=())

        statement = distribution.rental_statement
        check_statement(statement)
        allocations = _snapshot(session, distribution, statement)
        fixes = _sync_payouts(session, distribution, allocations)
        distribution.total_distributed = statement.net_distributable
        _assert_reconciled(distribution.payouts, statement.net_distributable)

        if fixes:
            if distribution.status == DistributionStatus.APPROVED:
                distribution.status = DistributionStatus.DRAFT
                distribution.approved_by = None
                distribution.approved_at = None
            record_audit(
                session, "DISTRIBUTION_PAYOUTS_FIXED", distribution.id, actor_id=actor_id,
                fixed=len(fixes),
                users=[f.user_id for f in fixes],
            )

    if fixes:
        logger.info("Fixed %d payouts of distribution %s", len(fixes), distribution_id)
    return FixResult(fixed=len(fixes), payouts=tuple(fixes))


def delete_distribution(
    session: Session,
    distribution_id: str,
    deleted_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """
    Delete an undeclared distribution and its payouts.

    Declared distributions have ledger rows, which are never deleted, so
    they cannot be removed.

    Raises:
        IllegalTransition: distribution is DECLARED or PAID
    """
    with atomic(session):
        distribution = lock_row(session, Distribution, distribution_id)
        if distribution.status not in (DistributionStatus.DRAFT, DistributionStatus.APPROVED):
            raise IllegalTransition("Distribution", distribution.status.value, "DELETED")
        record_audit(
            session, "DISTRIBUTION_DELETED", distribution.id, actor_id=deleted_by,
            reason=reason,
            total_distributed=str(distribution.total_distributed),
            payouts_deleted=len(distribution.payouts),
        )
        session.delete(distribution)
        session.flush()
    logger.info("Deleted distribution %s", distribution_id)


def declare_from_statement(
    session: Session,
    property_id: str,
    rental_statement_id: str,
    actor_id: Optional[str] = None,
) -> Distribution:
    """
    Administrative bulk path: draft and declare in one unit of work.

    Skips approval (DRAFT -> DECLARED) but not validation or reconciliation.
    Any failure leaves neither the draft nor ledger rows behind.
    """
    with atomic(session):
        draft = create_draft_distribution(session, property_id, rental_statement_id,
                                          actor_id=actor_id)
        distribution = declare_distribution(session, draft.distribution.id,
                                            allow_draft=True, actor_id=actor_id)
    return distribution
