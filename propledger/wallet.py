"""
wallet.py - Transaction Ledger and derived wallet balances

The transactions table is append-only: record_transaction() is the single
insert path and nothing in the package updates or deletes a row. A user's
wallet balance is never stored; it is recomputed from the full history on
every call:

    balance(user) = sum(PAYOUT amounts) - sum(INVESTMENT amounts)

Recomputation costs a scan per call, and in exchange the balance can never
silently diverge from the rows it is derived from.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from .core import (
    DEFAULT_CURRENCY, WALLET_CREDIT_REFERENCE_PREFIX,
    DuplicateReference, InvalidInput, PayoutStatus, TransactionType, make_reference,
)
from .db import atomic, get_row
from .models import Distribution, Payout, RentalStatement, Transaction, User
from .money import quantize_money, to_decimal

logger = logging.getLogger(__name__)


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def compute_balance(transactions: Iterable[Any]) -> Decimal:
    """
    Fold ledger rows into a balance. Pure function.

    Accepts anything with `type` and `amount` attributes, so tests can check
    the database result against an independently built list.
    """
    balance = Decimal("0")
    for tx in transactions:
        if tx.type == TransactionType.PAYOUT:
            balance += tx.amount
        elif tx.type == TransactionType.INVESTMENT:
            balance -= tx.amount
    return balance


# =============================================================================
# LEDGER WRITES
# =============================================================================

def record_transaction(
    session: Session,
    user_id: str,
    tx_type: TransactionType,
    amount: Any,
    reference: str,
    currency: str = DEFAULT_CURRENCY,
) -> Transaction:
    """
    Append one row to the ledger.

    Runs inside the caller's unit of work when one is open, so an investment
    or payout and its ledger row commit or roll back together.

    Raises:
        InvalidInput: if amount is not positive or the reference is blank
        DuplicateReference: if the reference is already used
    """
    amount = quantize_money(to_decimal(amount), currency)
    if amount <= 0:
        raise InvalidInput(f"Transaction amount must be positive, got {amount}")
    if not reference or not reference.strip():
        raise InvalidInput("Transaction reference cannot be empty")

    with atomic(session):
        existing = session.execute(
            select(Transaction.id).where(Transaction.reference == reference)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateReference(f"Reference {reference} already recorded")

        tx = Transaction(
            user_id=user_id,
            type=TransactionType(tx_type),
            amount=amount,
            currency=currency,
            reference=reference,
        )
        session.add(tx)
        session.flush()
    return tx


def credit_wallet(session: Session, payout: Payout) -> Transaction:
    """
    Credit a payout to the investor's wallet.

    This is the only writer of PAYOUT rows outside declaration. It must run in
    the same unit of work as the payout status update (see
    lifecycle.mark_payout_paid).

    Idempotent: a payout already linked to a ledger row (normally the row
    written when its distribution was declared) is not credited again and the
    linked row is returned.

    Declaration links every positive payout, so through mark_payout_paid this
    always takes the already-linked path. The PAYOUT-<ID> write below is only
    reached by callers crediting a payout that was never declared.
    """
    with atomic(session):
        if payout.transaction_id is not None:
            linked = session.get(Transaction, payout.transaction_id)
            if linked is not None:
                logger.info("Payout %s already credited by %s", payout.id, linked.reference)
                return linked

        tx = record_transaction(
            session,
            user_id=payout.user_id,
            tx_type=TransactionType.PAYOUT,
            amount=payout.amount,
            reference=make_reference(WALLET_CREDIT_REFERENCE_PREFIX, payout.id),
            currency=payout.currency,
        )
        payout.transaction_id = tx.id
        logger.info("Credited wallet of %s with %s %s", payout.user_id, tx.amount, tx.currency)
    return tx


# =============================================================================
# READS
# =============================================================================

def get_wallet_balance(session: Session, user_id: str) -> Decimal:
    """
    Recompute a user's wallet balance from the full transaction history.

    The sum is folded in Python over Decimal values; no SQL aggregate is
    trusted with money.
    """
    get_row(session, User, user_id)
    rows = session.execute(
        select(Transaction).where(Transaction.user_id == user_id)
    ).scalars()
    return compute_balance(rows)


def list_transactions(
    session: Session,
    user_id: str,
    tx_type: Optional[TransactionType] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    min_amount: Optional[Any] = None,
    max_amount: Optional[Any] = None,
) -> List[Transaction]:
    """A user's ledger rows, newest first, with optional filters."""
    stmt = select(Transaction).where(Transaction.user_id == user_id)
    if tx_type is not None:
        stmt = stmt.where(Transaction.type == TransactionType(tx_type))
    if start is not None:
        stmt = stmt.where(Transaction.created_at >= start)
    if end is not None:
        stmt = stmt.where(Transaction.created_at <= end)
    rows = list(session.execute(
        stmt.order_by(Transaction.created_at.desc(), Transaction.reference)
    ).scalars())
    # Amount bounds are applied on Decimals, not in SQL
    if min_amount is not None:
        low = to_decimal(min_amount)
        rows = [r for r in rows if r.amount >= low]
    if max_amount is not None:
        high = to_decimal(max_amount)
        rows = [r for r in rows if r.amount <= high]
    return rows


def transaction_summary(session: Session, user_id: str) -> Dict[str, Any]:
    """
    Totals for a user's ledger rows.

    Returns:
        Dict with total_invested, total_received, balance, and counts.
    """
    rows = list(session.execute(
        select(Transaction).where(Transaction.user_id == user_id)
    ).scalars())
    investments = [r for r in rows if r.type == TransactionType.INVESTMENT]
    payouts = [r for r in rows if r.type == TransactionType.PAYOUT]
    total_invested = sum((r.amount for r in investments), Decimal("0"))
    total_received = sum((r.amount for r in payouts), Decimal("0"))
    return {
        'total_invested': total_invested,
        'total_received': total_received,
        'balance': total_received - total_invested,
        'total_transactions': len(rows),
        'investment_count': len(investments),
        'payout_count': len(payouts),
    }


# =============================================================================
# INVESTOR PAYOUT HISTORY
# =============================================================================

@dataclass(frozen=True, slots=True)
class MonthlyPayouts:
    """A user's payouts for statements whose period starts in one month."""
    month: str
    payouts: Tuple[Payout, ...]
    total_amount: Decimal


def list_user_payouts(
    session: Session,
    user_id: str,
    status: Optional[PayoutStatus] = None,
) -> List[Payout]:
    """A user's payouts across all distributions, newest first."""
    get_row(session, User, user_id)
    stmt = select(Payout).where(Payout.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Payout.status == PayoutStatus(status))
    return list(session.execute(
        stmt.order_by(Payout.created_at.desc(), Payout.id)
    ).scalars())


def income_by_month(session: Session, user_id: str) -> List[Tuple[str, Decimal]]:
    """
    PAID payout income grouped by the month it was paid.

    Returns:
        (YYYY-MM, amount) pairs, oldest month first
    """
    totals: Dict[str, Decimal] = {}
    for payout in list_user_payouts(session, user_id, PayoutStatus.PAID):
        if payout.paid_at is None:
            continue
        month = payout.paid_at.strftime("%Y-%m")
        totals[month] = totals.get(month, Decimal("0")) + payout.amount
    return sorted(totals.items())


def payouts_by_statement_month(session: Session, user_id: str) -> List[MonthlyPayouts]:
    """
    A user's payouts grouped by the month their rental statement starts in.

    Every payout status is included. Newest month first.
    """
    get_row(session, User, user_id)
    rows = session.execute(
        select(Payout, RentalStatement.period_start)
        .join(Distribution, Payout.distribution_id == Distribution.id)
        .join(RentalStatement, Distribution.rental_statement_id == RentalStatement.id)
        .where(Payout.user_id == user_id)
        .order_by(Payout.created_at.desc(), Payout.id)
    ).all()

    grouped: Dict[str, List[Payout]] = {}
    for payout, period_start in rows:
        grouped.setdefault(period_start.strftime("%Y-%m"), []).append(payout)

    return [
        MonthlyPayouts(
            month=month,
            payouts=tuple(payouts),
            total_amount=sum((p.amount for p in payouts), Decimal("0")),
        )
        for month, payouts in sorted(grouped.items(), reverse=True)
    ]
