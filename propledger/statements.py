"""
statements.py - Rental statements

A rental statement records one period of income for a property:

    net_distributable = gross_revenue - operating_costs - management_fee
                        + income_adjustment

The net is always computed here from its components; a caller-supplied net is
never stored. The operating cost breakdown arrives as loosely-typed JSON and
is parsed into CostItem values at the boundary.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Sequence
import logging

from sqlalchemy.orm import Session

from .core import (
    DEFAULT_CURRENCY, DistributionStatus, InvalidInput, InvalidPeriod,
    StatementLocked,
)
from .db import atomic, get_row, lock_row
from .models import Property, RentalStatement, record_audit
from .money import get_currency, quantize_money, to_decimal
from .proration import as_date

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CostItem:
    """One line of an operating cost breakdown."""
    description: str
    amount: Decimal

    def to_json(self) -> dict:
        return {"description": self.description, "amount": str(self.amount)}


def parse_cost_items(raw: Optional[Iterable[Any]], currency: str = DEFAULT_CURRENCY) -> List[CostItem]:
    """
    Validate a cost breakdown at the boundary.

    Accepts CostItem instances or mappings with "description" and "amount".

    Raises:
        InvalidInput: for anything that is not a list of well-formed items
    """
    if raw is None:
        return []
    if isinstance(raw, (str, bytes, Mapping)):
        raise InvalidInput("cost_items must be a list of {description, amount} items")

    items: List[CostItem] = []
    for index, entry in enumerate(raw):
        if isinstance(entry, CostItem):
            description, amount = entry.description, entry.amount
        elif isinstance(entry, Mapping):
            description = entry.get("description")
            amount = entry.get("amount")
        else:
            raise InvalidInput(f"cost_items[{index}] must be an object, got {type(entry).__name__}")

        if not isinstance(description, str) or not description.strip():
            raise InvalidInput(f"cost_items[{index}] needs a non-empty description")
        if amount is None:
            raise InvalidInput(f"cost_items[{index}] needs an amount")
        value = quantize_money(to_decimal(amount), currency)
        if value < 0:
            raise InvalidInput(f"cost_items[{index}] amount cannot be negative")
        items.append(CostItem(description=description.strip(), amount=value))
    return items


def compute_net_distributable(
    gross_revenue: Decimal,
    operating_costs: Decimal,
    management_fee: Decimal,
    income_adjustment: Decimal = Decimal("0"),
) -> Decimal:
    """Net income available to shareholders. Pure function."""
    return gross_revenue - operating_costs - management_fee + income_adjustment


def _validated_amounts(
    gross_revenue: Any,
    operating_costs: Any,
    management_fee: Any,
    income_adjustment: Any,
    currency: str,
) -> Sequence[Decimal]:
    gross = quantize_money(to_decimal(gross_revenue), currency)
    costs = quantize_money(to_decimal(operating_costs), currency)
    fee = quantize_money(to_decimal(management_fee), currency)
    adjustment = quantize_money(to_decimal(income_adjustment), currency)
    for label, value in (("gross_revenue", gross), ("operating_costs", costs),
                         ("management_fee", fee)):
        if value < 0:
            raise InvalidInput(f"{label} cannot be negative, got {value}")
    return gross, costs, fee, adjustment


def _validated_period(period_start: Any, period_end: Any) -> Sequence[date]:
    start = as_date(period_start)
    end = as_date(period_end)
    if start >= end:
        raise InvalidPeriod(f"Period start {start} must be before period end {end}")
    return start, end


def _check_cost_items(items: List[CostItem], operating_costs: Decimal) -> None:
    if items:
        itemized = sum((i.amount for i in items), Decimal("0"))
        if itemized != operating_costs:
            raise InvalidInput(
                f"Cost items sum to {itemized}, operating_costs is {operating_costs}"
            )


def create_rental_statement(
    session: Session,
    property_id: str,
    period_start: Any,
    period_end: Any,
    gross_revenue: Any,
    operating_costs: Any,
    management_fee: Any,
    income_adjustment: Any = 0,
    cost_items: Optional[Iterable[Any]] = None,
    occupancy_rate_pct: Optional[Any] = None,
    adr: Optional[Any] = None,
    notes: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> RentalStatement:
    """
    Record a rental statement for a property.

    Raises:
        InvalidPeriod: period_start is not before period_end
        InvalidInput: negative amounts or a malformed cost breakdown
        NotFound: property does not exist
    """
    start, end = _validated_period(period_start, period_end)

    with atomic(session):
        currency = get_row(session, Property, property_id).currency
        get_currency(currency)
        gross, costs, fee, adjustment = _validated_amounts(
            gross_revenue, operating_costs, management_fee, income_adjustment, currency
        )
        items = parse_cost_items(cost_items, currency)
        _check_cost_items(items, costs)

        statement = RentalStatement(
            property_id=property_id,
            period_start=start,
            period_end=end,
            gross_revenue=gross,
            operating_costs=costs,
            management_fee=fee,
            income_adjustment=adjustment,
            net_distributable=compute_net_distributable(gross, costs, fee, adjustment),
            currency=currency,
            cost_items=[i.to_json() for i in items],
            occupancy_rate_pct=to_decimal(occupancy_rate_pct) if occupancy_rate_pct is not None else None,
            adr=quantize_money(to_decimal(adr), currency) if adr is not None else None,
            notes=notes,
        )
        session.add(statement)
        session.flush()
        record_audit(
            session, "STATEMENT_CREATED", statement.id, actor_id=actor_id,
            property_id=property_id, net_distributable=str(statement.net_distributable),
        )

    logger.info(
        "Rental statement %s for %s: %s..%s net %s",
        statement.id, property_id, start, end, statement.net_distributable,
    )
    return statement


def update_rental_statement(
    session: Session,
    statement_id: str,
    gross_revenue: Any,
    operating_costs: Any,
    management_fee: Any,
    income_adjustment: Any = 0,
    cost_items: Optional[Iterable[Any]] = None,
    period_start: Optional[Any] = None,
    period_end: Optional[Any] = None,
    notes: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> RentalStatement:
    """
    Correct the figures of a statement.

    Allowed while the statement has no distribution or only a DRAFT one; the
    draft's payouts are recalculated in the same unit of work.

    Raises:
        StatementLocked: the distribution is APPROVED, DECLARED or PAID
    """
    # Imported here: distribution imports this module
    from .distribution import recalculate_payouts

    with atomic(session):
        statement = lock_row(session, RentalStatement, statement_id)
        distribution = statement.distribution
        if distribution is not None and distribution.status != DistributionStatus.DRAFT:
            raise StatementLocked(
                f"Statement {statement_id} is locked by a {distribution.status.value} distribution"
            )

        currency = statement.currency
        start, end = _validated_period(
            period_start if period_start is not None else statement.period_start,
            period_end if period_end is not None else statement.period_end,
        )
        gross, costs, fee, adjustment = _validated_amounts(
            gross_revenue, operating_costs, management_fee, income_adjustment, currency
        )
        items = parse_cost_items(cost_items, currency)
        _check_cost_items(items, costs)

        previous_net = statement.net_distributable
        statement.period_start = start
        statement.period_end = end
        statement.gross_revenue = gross
        statement.operating_costs = costs
        statement.management_fee = fee
        statement.income_adjustment = adjustment
        statement.net_distributable = compute_net_distributable(gross, costs, fee, adjustment)
        statement.cost_items = [i.to_json() for i in items]
        if notes is not None:
            statement.notes = notes
        record_audit(
            session, "STATEMENT_UPDATED", statement.id, actor_id=actor_id,
            previous_net=str(previous_net), net_distributable=str(statement.net_distributable),
        )
        session.flush()

        if distribution is not None:
            recalculate_payouts(session, distribution.id)

    return statement
