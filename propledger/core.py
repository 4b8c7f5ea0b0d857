"""
Core types and constants for the property investment ledger.

This module provides the foundational pieces shared by every ledger component:
1. Decimal context configuration (exact fixed-point money arithmetic)
2. Constants: default currency, tolerances, reference prefixes
3. Enums: status and classification values persisted in the database
4. Exceptions: LedgerError and the typed failures returned to callers

Nothing in this module touches the database.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All money arithmetic in the ledger uses Decimal. The global context is
# configured once at import time so every module rounds identically.
#
# PRECONDITION: No other code should modify the global Decimal context.
# Use decimal.localcontext() for temporary changes.
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# The ledger is single-currency today; every monetary row still stores its code.
DEFAULT_CURRENCY = "NGN"

# Average calendar month length used by the display-only pro-ration.
AVERAGE_DAYS_PER_MONTH = Decimal("30.44")

# Payout sum vs net distributable differences above this are reported.
RECONCILIATION_TOLERANCE = Decimal("0.01")

# Ledger reference prefixes. References are derived from row ids so that
# re-running an operation can never mint a second reference for the same row.
INVESTMENT_REFERENCE_PREFIX = "INV"
PAYOUT_REFERENCE_PREFIX = "PAY"
WALLET_CREDIT_REFERENCE_PREFIX = "PAYOUT"


def make_reference(prefix: str, row_id: str) -> str:
    """Build the human-readable ledger reference for a row id."""
    return f"{prefix}-{row_id.upper()}"


# ============================================================================
# ENUMS
# ============================================================================

class PropertyStatus(str, Enum):
    """
    Funding state of a property.

    Only OPEN properties accept share purchases. FUNDED is set automatically
    when the last available share is sold.
    """
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    FUNDED = "FUNDED"
    CLOSED = "CLOSED"


class InvestmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class DistributionStatus(str, Enum):
    """
    Lifecycle of a distribution.

    DRAFT -> APPROVED -> DECLARED -> PAID, with APPROVED -> DRAFT on rejection
    and a DRAFT -> DECLARED fast path for administrative bulk declaration.
    """
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    DECLARED = "DECLARED"
    PAID = "PAID"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class PaymentMethod(str, Enum):
    """How an administrator settled a payout."""
    WALLET = "WALLET"
    BANK_TRANSFER = "BANK_TRANSFER"


class TransactionType(str, Enum):
    """
    Ledger row classification.

    Wallet balance = sum(PAYOUT) - sum(INVESTMENT).
    """
    INVESTMENT = "INVESTMENT"
    PAYOUT = "PAYOUT"


class UserRole(str, Enum):
    INVESTOR = "INVESTOR"
    ADMIN = "ADMIN"
    UNDERWRITER = "UNDERWRITER"


class KycStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ============================================================================
# EXCEPTIONS
# ============================================================================
#
# Taxonomy:
#   InputError            - malformed request, rejected before any write
#   NotFound              - referenced row does not exist
#   InvariantViolation    - the write would break a ledger invariant
#   StateTransitionError  - the entity is not in a state that allows the call
#   ValidationFailed      - pre-transition checks produced hard errors
#

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class InputError(LedgerError, ValueError):
    """Raised when a request is malformed."""
    pass


class InvalidInput(InputError):
    """Raised when an argument has the wrong type or an out-of-range value."""
    pass


class InvalidPeriod(InputError):
    """Raised when a period does not satisfy start < end."""
    pass


class UnknownExchangeRate(LedgerError, KeyError):
    """Raised when the static FX table has no rate for a currency pair."""
    pass


class NotFound(LedgerError, LookupError):
    """Raised when a referenced row does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvariantViolation(LedgerError):
    """Base class for writes rejected because they would break an invariant."""
    pass


class InsufficientShares(InvariantViolation):
    """Raised when a purchase asks for more shares than are available."""

    def __init__(self, requested: int, available: int):
        super().__init__(f"Only {available} shares available, {requested} requested")
        self.requested = requested
        self.available = available


class DuplicateDistribution(InvariantViolation):
    """Raised when a rental statement already has a distribution."""
    pass


class InvalidStatement(InvariantViolation):
    """Raised when a rental statement cannot be distributed."""
    pass


class NoInvestors(InvalidStatement):
    """Raised when a property has no confirmed shares to distribute to."""
    pass


class DuplicateReference(InvariantViolation):
    """Raised when a ledger reference is already in use."""
    pass


class PropertyHasInvestors(InvariantViolation):
    """Raised when deleting a property that still has confirmed investments."""
    pass


class StatementLocked(InvariantViolation):
    """Raised when editing a statement whose distribution is past DRAFT."""
    pass


class ReconciliationError(InvariantViolation):
    """Raised when payouts would not sum exactly to the net distributable."""
    pass


class StateTransitionError(LedgerError):
    """Base class for calls that are illegal in the entity's current state."""
    pass


class IllegalTransition(StateTransitionError):
    """Raised for a transition that the state machine does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity} cannot move from {current} to {target}")
        self.current = current
        self.target = target


class PropertyClosed(StateTransitionError):
    """Raised when purchasing shares of a property that is not OPEN."""
    pass


class AlreadyDeclared(StateTransitionError):
    """Raised when declaring a distribution that is already DECLARED or PAID."""
    pass


class ValidationFailed(LedgerError):
    """
    Raised when pre-transition validation produced hard errors.

    The full ValidationResult (errors and warnings) is attached as `result`.
    """

    def __init__(self, result):
        super().__init__("; ".join(result.errors) or "validation failed")
        self.result = result
