"""
shares.py - Share Ledger

Sells shares of a property while guaranteeing it is never oversold.

=== SUPPLY MODEL ===

    available_shares(P) = P.total_shares - sum(shares of CONFIRMED investments in P)

available_shares is derived on every call and never stored. All callers go
through available_shares(); nothing else re-implements the sum.

=== PURCHASE ===

purchase_shares() is one unit of work:
    1. lock the property row (FOR UPDATE / BEGIN IMMEDIATE on SQLite)
    2. derive available shares
    3. insert a CONFIRMED Investment
    4. append the matching INVESTMENT ledger row (same amount)
    5. mark the property FUNDED when supply reaches zero

Two concurrent purchases of the same property serialize on step 1, so the
second one sees the first one's investment when it derives supply.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .core import (
    DEFAULT_CURRENCY, INVESTMENT_REFERENCE_PREFIX,
    IllegalTransition, InsufficientShares, InvalidInput, InvestmentStatus,
    PayoutStatus, PropertyClosed, PropertyHasInvestors, PropertyStatus, TransactionType,
    make_reference,
)
from .db import atomic, get_row, lock_row
from .models import Investment, Property, User, record_audit
from .money import get_currency, quantize_money, to_decimal
from .wallet import get_wallet_balance, list_user_payouts, record_transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PurchaseResult:
    """Outcome of a successful share purchase."""
    investment_id: str
    transaction_id: str
    reference: str
    shares: int
    price_per_share: Decimal
    total_amount: Decimal
    currency: str
    available_shares: int


@dataclass(frozen=True, slots=True)
class PortfolioSummary:
    """
    An investor's position across properties.

    current_value prices confirmed shares at today's price_per_share;
    total_income counts PAID payouts only.
    """
    total_invested: Decimal
    total_income: Decimal
    current_value: Decimal
    wallet_balance: Decimal
    holdings: Dict[str, int]


def _require_share_count(value: Any, name: str = "share_count") -> int:
    # bool is an int subclass; True must not buy one share
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer, got {value!r}")
    if value < 1:
        raise InvalidInput(f"{name} must be at least 1, got {value}")
    return value


# =============================================================================
# SUPPLY
# =============================================================================

def confirmed_shares(session: Session, property_id: str) -> int:
    """Sum of shares held across CONFIRMED investments of a property."""
    total = session.execute(
        select(func.coalesce(func.sum(Investment.shares), 0)).where(
            Investment.property_id == property_id,
            Investment.status == InvestmentStatus.CONFIRMED,
        )
    ).scalar_one()
    return int(total)


def available_shares(session: Session, property_id: str) -> int:
    """
    Derive the shares still for sale.

    Callers that act on the result (purchase) must hold the property lock in
    the same unit of work.
    """
    prop = get_row(session, Property, property_id)
    return prop.total_shares - confirmed_shares(session, property_id)


def holdings_by_user(session: Session, property_id: str) -> Dict[str, int]:
    """
    Confirmed shares per user for a property.

    This is the snapshot the distribution engine prices payouts from.
    """
    rows = session.execute(
        select(Investment.user_id, func.sum(Investment.shares))
        .where(
            Investment.property_id == property_id,
            Investment.status == InvestmentStatus.CONFIRMED,
        )
        .group_by(Investment.user_id)
    ).all()
    return {user_id: int(shares) for user_id, shares in rows if shares}


def holdings_of_user(session: Session, user_id: str) -> Dict[str, int]:
    """Confirmed shares per property for one user."""
    rows = session.execute(
        select(Investment.property_id, func.sum(Investment.shares))
        .where(
            Investment.user_id == user_id,
            Investment.status == InvestmentStatus.CONFIRMED,
        )
        .group_by(Investment.property_id)
    ).all()
    return {property_id: int(shares) for property_id, shares in rows if shares}


def portfolio_summary(session: Session, user_id: str) -> PortfolioSummary:
    """
    Totals for an investor's dashboard.

    Raises:
        NotFound: user does not exist
    """
    balance = get_wallet_balance(session, user_id)
    holdings = holdings_of_user(session, user_id)

    invested = session.execute(
        select(Investment.total_amount).where(
            Investment.user_id == user_id,
            Investment.status == InvestmentStatus.CONFIRMED,
        )
    ).scalars()
    total_invested = sum(invested, Decimal("0"))

    current_value = Decimal("0")
    for property_id, shares in holdings.items():
        prop = get_row(session, Property, property_id)
        current_value += quantize_money(shares * prop.price_per_share, prop.currency)

    paid = list_user_payouts(session, user_id, PayoutStatus.PAID)
    total_income = sum((p.amount for p in paid), Decimal("0"))

    return PortfolioSummary(
        total_invested=total_invested,
        total_income=total_income,
        current_value=current_value,
        wallet_balance=balance,
        holdings=holdings,
    )


# =============================================================================
# PROPERTY LIFECYCLE
# =============================================================================

def create_property(
    session: Session,
    name: str,
    total_shares: int,
    price_per_share: Any,
    min_shares: int = 1,
    currency: str = DEFAULT_CURRENCY,
    status: PropertyStatus = PropertyStatus.OPEN,
) -> Property:
    """
    Register a property with a fixed share supply.

    Raises:
        InvalidInput: for a blank name, non-positive supply or price,
                      or min_shares above total_shares
    """
    if not name or not name.strip():
        raise InvalidInput("Property name cannot be empty")
    _require_share_count(total_shares, "total_shares")
    _require_share_count(min_shares, "min_shares")
    if min_shares > total_shares:
        raise InvalidInput(f"min_shares ({min_shares}) exceeds total_shares ({total_shares})")
    get_currency(currency)
    price = quantize_money(to_decimal(price_per_share), currency)
    if price <= 0:
        raise InvalidInput(f"price_per_share must be positive, got {price}")

    with atomic(session):
        prop = Property(
            name=name.strip(),
            total_shares=total_shares,
            price_per_share=price,
            min_shares=min_shares,
            currency=currency,
            status=PropertyStatus(status),
        )
        session.add(prop)
        session.flush()
    return prop


def delete_property(session: Session, property_id: str) -> None:
    """
    Delete a property together with its investments and statements.

    Raises:
        PropertyHasInvestors: if any CONFIRMED investment exists
    """
    with atomic(session):
        prop = lock_row(session, Property, property_id)
        confirmed = confirmed_shares(session, property_id)
        if confirmed > 0:
            raise PropertyHasInvestors(
                f"Property {property_id} has {confirmed} confirmed shares"
            )
        session.delete(prop)
        session.flush()
    logger.info("Deleted property %s", property_id)


# =============================================================================
# PURCHASE
# =============================================================================

def purchase_shares(
    session: Session,
    user_id: str,
    property_id: str,
    share_count: int,
    confirm: bool = True,
) -> PurchaseResult:
    """
    Buy shares of a property.

    Args:
        session: Per-request session (the unit of work runs on it)
        user_id: Buyer
        property_id: Property to buy into
        share_count: Whole number of shares, at least the property's minimum
        confirm: True for the simple flow (CONFIRMED investment plus its
                 ledger row). False records a PENDING investment with no
                 ledger row; confirm_investment() writes both later.

    Returns:
        PurchaseResult with the investment id and total amount. For a pending
        purchase transaction_id and reference are empty strings.

    Raises:
        InvalidInput: share_count is not a positive integer or below minimum
        NotFound: user or property does not exist
        PropertyClosed: property is not OPEN
        InsufficientShares: share_count exceeds available supply
    """
    _require_share_count(share_count)

    with atomic(session):
        get_row(session, User, user_id)
        prop = lock_row(session, Property, property_id)

        if prop.status != PropertyStatus.OPEN:
            raise PropertyClosed(
                f"Property {property_id} is {prop.status.value}, not open for investment"
            )
        if share_count < prop.min_shares:
            raise InvalidInput(f"Minimum investment is {prop.min_shares} shares")

        available = prop.total_shares - confirmed_shares(session, property_id)
        if share_count > available:
            raise InsufficientShares(share_count, available)

        price = prop.price_per_share
        total_amount = quantize_money(price * share_count, prop.currency)

        investment = Investment(
            user_id=user_id,
            property_id=property_id,
            shares=share_count,
            price_per_share_at_purchase=price,
            total_amount=total_amount,
            currency=prop.currency,
            status=InvestmentStatus.CONFIRMED if confirm else InvestmentStatus.PENDING,
        )
        session.add(investment)
        session.flush()

        if not confirm:
            logger.info(
                "User %s reserved %d shares of %s (pending)", user_id, share_count, property_id
            )
            return PurchaseResult(
                investment_id=investment.id,
                transaction_id="",
                reference="",
                shares=share_count,
                price_per_share=price,
                total_amount=total_amount,
                currency=prop.currency,
                available_shares=available,
            )

        tx = record_transaction(
            session,
            user_id=user_id,
            tx_type=TransactionType.INVESTMENT,
            amount=total_amount,
            reference=make_reference(INVESTMENT_REFERENCE_PREFIX, investment.id),
            currency=prop.currency,
        )

        remaining = available - share_count
        if remaining == 0:
            prop.status = PropertyStatus.FUNDED

    logger.info(
        "User %s bought %d shares of %s for %s %s (%d left)",
        user_id, share_count, property_id, total_amount, prop.currency, remaining,
    )
    return PurchaseResult(
        investment_id=investment.id,
        transaction_id=tx.id,
        reference=tx.reference,
        shares=share_count,
        price_per_share=price,
        total_amount=total_amount,
        currency=prop.currency,
        available_shares=remaining,
    )


def cancel_investment(
    session: Session,
    investment_id: str,
    administrative: bool = False,
    actor_id: Optional[str] = None,
) -> Investment:
    """
    Cancel an investment, releasing its shares back to supply.

    PENDING investments can always be cancelled. Cancelling a CONFIRMED one is
    an administrative correction and requires administrative=True. The
    INVESTMENT ledger row already written stays in place; refunds are handled
    outside the ledger.

    Raises:
        IllegalTransition: investment already cancelled, or confirmed without
                           administrative=True
    """
    with atomic(session):
        investment = get_row(session, Investment, investment_id)
        prop = lock_row(session, Property, investment.property_id)
        investment = lock_row(session, Investment, investment_id)

        current = investment.status
        if current == InvestmentStatus.CANCELLED:
            raise IllegalTransition("Investment", current.value, InvestmentStatus.CANCELLED.value)
        if current == InvestmentStatus.CONFIRMED and not administrative:
            raise IllegalTransition("Investment", current.value, InvestmentStatus.CANCELLED.value)

        investment.status = InvestmentStatus.CANCELLED
        if current == InvestmentStatus.CONFIRMED and prop.status == PropertyStatus.FUNDED:
            prop.status = PropertyStatus.OPEN

        record_audit(
            session, "INVESTMENT_CANCELLED", investment.id, actor_id=actor_id,
            previous_status=current.value, shares=investment.shares,
            administrative=administrative,
        )
        session.flush()

    logger.info("Cancelled investment %s (%s)", investment_id, current.value)
    return investment


def confirm_investment(
    session: Session,
    investment_id: str,
    actor_id: Optional[str] = None,
) -> Investment:
    """
    Confirm a PENDING investment, re-checking supply under the property lock.

    Raises:
        IllegalTransition: investment is not PENDING
        InsufficientShares: confirming would oversell the property
    """
    with atomic(session):
        investment = get_row(session, Investment, investment_id)
        prop = lock_row(session, Property, investment.property_id)
        investment = lock_row(session, Investment, investment_id)

        if investment.status != InvestmentStatus.PENDING:
            raise IllegalTransition(
                "Investment", investment.status.value, InvestmentStatus.CONFIRMED.value
            )
        available = prop.total_shares - confirmed_shares(session, prop.id)
        if investment.shares > available:
            raise InsufficientShares(investment.shares, available)

        investment.status = InvestmentStatus.CONFIRMED
        record_transaction(
            session,
            user_id=investment.user_id,
            tx_type=TransactionType.INVESTMENT,
            amount=investment.total_amount,
            reference=make_reference(INVESTMENT_REFERENCE_PREFIX, investment.id),
            currency=investment.currency,
        )
        if available - investment.shares == 0:
            prop.status = PropertyStatus.FUNDED
        record_audit(session, "INVESTMENT_CONFIRMED", investment.id, actor_id=actor_id)
        session.flush()
    return investment
