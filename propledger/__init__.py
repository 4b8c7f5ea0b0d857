"""
propledger - Investment & Distribution Ledger

Fractional property shares, rental-income distributions and derived investor
wallets on a relational database.

Usage:
    from propledger import (
        create_engine_from_url, create_schema, make_session_factory,
        create_property, purchase_shares, create_rental_statement,
        create_draft_distribution, approve_distribution, declare_distribution,
        get_wallet_balance,
    )

    engine = create_engine_from_url("sqlite:///ledger.db")
    create_schema(engine)
    Session = make_session_factory(engine)

    with Session() as session:
        prop = create_property(session, "Lekki Villa", total_shares=100,
                               price_per_share="50000")
        purchase_shares(session, alice.id, prop.id, 60)

        statement = create_rental_statement(
            session, prop.id, date(2024, 1, 1), date(2024, 1, 31),
            gross_revenue="1500000", operating_costs="300000",
            management_fee="200000",
        )
        draft = create_draft_distribution(session, prop.id, statement.id)
        approve_distribution(session, draft.distribution.id, approved_by=admin.id)
        declare_distribution(session, draft.distribution.id)

        get_wallet_balance(session, alice.id)
"""

# Core types
from .core import (
    DEFAULT_CURRENCY,
    AVERAGE_DAYS_PER_MONTH,
    RECONCILIATION_TOLERANCE,
    make_reference,
    PropertyStatus,
    InvestmentStatus,
    DistributionStatus,
    PayoutStatus,
    PaymentMethod,
    TransactionType,
    UserRole,
    KycStatus,
    LedgerError,
    InputError,
    InvalidInput,
    InvalidPeriod,
    UnknownExchangeRate,
    NotFound,
    InvariantViolation,
    InsufficientShares,
    DuplicateDistribution,
    InvalidStatement,
    NoInvestors,
    DuplicateReference,
    PropertyHasInvestors,
    StatementLocked,
    ReconciliationError,
    StateTransitionError,
    IllegalTransition,
    PropertyClosed,
    AlreadyDeclared,
    ValidationFailed,
)

# Money
from .money import (
    Currency,
    CURRENCIES,
    FX_RATES,
    get_currency,
    to_decimal,
    quantize_money,
    minor_unit,
    get_rate,
    convert,
    to_display,
)

# Persistence
from .models import (
    Base,
    User,
    Property,
    Investment,
    RentalStatement,
    Distribution,
    Payout,
    Transaction,
    AuditLog,
)
from .db import (
    database_url,
    configure_logging,
    create_engine_from_url,
    create_schema,
    make_session_factory,
    atomic,
)

# Share ledger
from .shares import (
    PurchaseResult,
    PortfolioSummary,
    create_property,
    delete_property,
    available_shares,
    holdings_by_user,
    holdings_of_user,
    portfolio_summary,
    purchase_shares,
    cancel_investment,
    confirm_investment,
)

# Pro-ration (reporting only)
from .proration import (
    MonthlyBreakdown,
    ProratedAmount,
    monthly_breakdown,
    period_days,
    prorate_to_monthly,
)

# Rental statements
from .statements import (
    CostItem,
    parse_cost_items,
    compute_net_distributable,
    create_rental_statement,
    update_rental_statement,
)

# Wallet
from .wallet import (
    compute_balance,
    record_transaction,
    credit_wallet,
    get_wallet_balance,
    list_transactions,
    transaction_summary,
    MonthlyPayouts,
    list_user_payouts,
    income_by_month,
    payouts_by_statement_month,
)

# Validation
from .validation import (
    ValidationResult,
    validate_distribution,
    validate_payout,
)

# Lifecycle
from .lifecycle import (
    TRANSITIONS,
    check_transition,
    approve_distribution,
    reject_distribution,
    declare_distribution,
    mark_payout_paid,
    mark_payouts_paid,
    mark_payout_failed,
)

# Distribution engine
from .distribution import (
    PayoutAllocation,
    DraftResult,
    PayoutFix,
    FixResult,
    allocate_pro_rata,
    check_statement,
    create_draft_distribution,
    recalculate_payouts,
    fix_underwriter_payouts,
    delete_distribution,
    declare_from_statement,
)
