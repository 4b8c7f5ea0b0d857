"""
models.py - Relational tables for the ledger

SQLAlchemy declarative models mirroring the ledger entities. Money columns are
NUMERIC(20, 2) and always come back as Decimal; every monetary row stores its
currency code explicitly.

Derived values are deliberately absent:
    - Property has no available_shares column (see shares.available_shares)
    - User has no balance column (see wallet.get_wallet_balance)
"""

from __future__ import annotations
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import (
    JSON, CheckConstraint, Date, DateTime, Enum, ForeignKey, Integer, Numeric,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .core import (
    DEFAULT_CURRENCY,
    DistributionStatus, InvestmentStatus, KycStatus, PaymentMethod,
    PayoutStatus, PropertyStatus, TransactionType, UserRole,
)


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite does not round-trip tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls) -> Enum:
    return Enum(enum_cls, native_enum=False, length=20, validate_strings=True)


MONEY = Numeric(20, 2, asdecimal=True)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), default=UserRole.INVESTOR, nullable=False)
    kyc_status: Mapped[KycStatus] = mapped_column(
        _enum(KycStatus), default=KycStatus.NOT_STARTED, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    investments: Mapped[List["Investment"]] = relationship(back_populates="user")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role={self.role.value})>"


class Property(Base):
    __tablename__ = "properties"
    __table_args__ = (
        CheckConstraint("total_shares > 0", name="ck_properties_total_shares_positive"),
        CheckConstraint("price_per_share > 0", name="ck_properties_price_positive"),
        CheckConstraint("min_shares > 0", name="ck_properties_min_shares_positive"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_shares: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_share: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    min_shares: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=DEFAULT_CURRENCY, nullable=False)
    status: Mapped[PropertyStatus] = mapped_column(
        _enum(PropertyStatus), default=PropertyStatus.OPEN, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    investments: Mapped[List["Investment"]] = relationship(
        back_populates="property", cascade="all, delete-orphan"
    )
    rental_statements: Mapped[List["RentalStatement"]] = relationship(
        back_populates="property", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, name='{self.name}', total_shares={self.total_shares})>"


class Investment(Base):
    __tablename__ = "investments"
    __table_args__ = (
        CheckConstraint("shares > 0", name="ck_investments_shares_positive"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    property_id: Mapped[str] = mapped_column(ForeignKey("properties.id"), nullable=False, index=True)
    shares: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_share_at_purchase: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=DEFAULT_CURRENCY, nullable=False)
    status: Mapped[InvestmentStatus] = mapped_column(
        _enum(InvestmentStatus), default=InvestmentStatus.PENDING, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped[User] = relationship(back_populates="investments")
    property: Mapped[Property] = relationship(back_populates="investments")

    def __repr__(self) -> str:
        return (f"<Investment(id={self.id}, user_id={self.user_id}, "
                f"shares={self.shares}, status={self.status.value})>")


class RentalStatement(Base):
    __tablename__ = "rental_statements"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    property_id: Mapped[str] = mapped_column(ForeignKey("properties.id"), nullable=False, index=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    gross_revenue: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    operating_costs: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    management_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    income_adjustment: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    net_distributable: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=DEFAULT_CURRENCY, nullable=False)
    # List of {"description": str, "amount": str}; validated by statements.parse_cost_items
    cost_items: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    occupancy_rate_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2))
    adr: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    property: Mapped[Property] = relationship(back_populates="rental_statements")
    distribution: Mapped[Optional["Distribution"]] = relationship(
        back_populates="rental_statement", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (f"<RentalStatement(id={self.id}, {self.period_start}..{self.period_end}, "
                f"net={self.net_distributable})>")


class Distribution(Base):
    __tablename__ = "distributions"
    __table_args__ = (
        UniqueConstraint("rental_statement_id", name="uq_distributions_rental_statement"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    property_id: Mapped[str] = mapped_column(ForeignKey("properties.id"), nullable=False, index=True)
    rental_statement_id: Mapped[str] = mapped_column(
        ForeignKey("rental_statements.id"), nullable=False
    )
    status: Mapped[DistributionStatus] = mapped_column(
        _enum(DistributionStatus), default=DistributionStatus.DRAFT, nullable=False
    )
    total_distributed: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=DEFAULT_CURRENCY, nullable=False)
    declared_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    approved_by: Mapped[Optional[str]] = mapped_column(String(32))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    rental_statement: Mapped[RentalStatement] = relationship(back_populates="distribution")
    payouts: Mapped[List["Payout"]] = relationship(
        back_populates="distribution",
        cascade="all, delete-orphan",
        order_by="Payout.user_id",
    )

    def __repr__(self) -> str:
        return (f"<Distribution(id={self.id}, status={self.status.value}, "
                f"total={self.total_distributed})>")


class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("distribution_id", "user_id", name="uq_payouts_distribution_user"),
        CheckConstraint("shares_at_record > 0", name="ck_payouts_shares_positive"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    distribution_id: Mapped[str] = mapped_column(
        ForeignKey("distributions.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    property_id: Mapped[str] = mapped_column(ForeignKey("properties.id"), nullable=False)
    shares_at_record: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=DEFAULT_CURRENCY, nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        _enum(PayoutStatus), default=PayoutStatus.PENDING, nullable=False
    )
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(_enum(PaymentMethod))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Reference only: the ledger row that credits this payout
    transaction_id: Mapped[Optional[str]] = mapped_column(String(32))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    distribution: Mapped[Distribution] = relationship(back_populates="payouts")
    user: Mapped[User] = relationship()

    def __repr__(self) -> str:
        return (f"<Payout(id={self.id}, user_id={self.user_id}, "
                f"shares={self.shares_at_record}, amount={self.amount})>")


class Transaction(Base):
    """
    Append-only ledger row.

    There is no code path that updates or deletes a Transaction.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("reference", name="uq_transactions_reference"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=DEFAULT_CURRENCY, nullable=False)
    reference: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (f"<Transaction({self.reference}: {self.type.value} "
                f"{self.amount} {self.currency} user={self.user_id})>")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    actor_id: Mapped[Optional[str]] = mapped_column(String(32))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


def record_audit(session, action: str, entity_id: str,
                 actor_id: Optional[str] = None, **details: Any) -> AuditLog:
    """Add an audit row to the current unit of work."""
    entry = AuditLog(actor_id=actor_id, action=action, entity_id=entity_id, details=details)
    session.add(entry)
    return entry
