"""
Wallet Derivation Conformance Tests

INVARIANT: A wallet balance is exactly its history.

    ∀ user U:
        balance(U) = Σ PAYOUT rows of U − Σ INVESTMENT rows of U
                   = Σ declared payouts of U − Σ confirmed investments of U

The second line is recomputed here from the investment and payout tables,
independently of the transactions table.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import select

from propledger import (
    Investment, Payout, Transaction,
    InvestmentStatus,
    compute_balance, create_draft_distribution, declare_from_statement,
    get_wallet_balance, mark_payout_paid, purchase_shares, transaction_summary,
)

from tests.builders import make_property, make_statement, make_user


def independent_balance(session, user_id):
    invested = session.execute(
        select(Investment.total_amount).where(
            Investment.user_id == user_id,
            Investment.status == InvestmentStatus.CONFIRMED,
        )
    ).scalars().all()
    received = session.execute(
        select(Payout.amount).where(
            Payout.user_id == user_id,
            Payout.transaction_id.is_not(None),
        )
    ).scalars().all()
    return sum(received, Decimal("0")) - sum(invested, Decimal("0"))


class TestWalletDerivation:

    def test_balances_match_independent_history(self, session):
        users = [make_user(session, f"investor{i}@example.com") for i in range(3)]
        villa = make_property(session, name="Villa", total_shares=100, price_per_share="500")
        flat = make_property(session, name="Flat", total_shares=40, price_per_share="1250.50")

        purchase_shares(session, users[0].id, villa.id, 45)
        purchase_shares(session, users[1].id, villa.id, 33)
        purchase_shares(session, users[2].id, villa.id, 22)
        purchase_shares(session, users[0].id, flat.id, 7)
        purchase_shares(session, users[2].id, flat.id, 19)

        january = make_statement(session, villa.id, gross="98765.43", costs="1234.56", fee="987.65")
        february = make_statement(session, villa.id, gross="5000", costs="100", fee="50",
                                  start=date(2024, 2, 1), end=date(2024, 2, 29))
        flat_q1 = make_statement(session, flat.id, gross="3333.33", costs="0", fee="333.33",
                                 start=date(2024, 1, 1), end=date(2024, 3, 31))

        declared = declare_from_statement(session, villa.id, january.id)
        declare_from_statement(session, flat.id, flat_q1.id)
        # An undeclared draft must not move any balance
        create_draft_distribution(session, villa.id, february.id)

        for payout in declared.payouts[:2]:
            mark_payout_paid(session, payout.id)

        for user in users:
            balance = get_wallet_balance(session, user.id)
            assert balance == independent_balance(session, user.id)
            assert balance == transaction_summary(session, user.id)['balance']

            rows = session.execute(
                select(Transaction).where(Transaction.user_id == user.id)
            ).scalars().all()
            assert balance == compute_balance(rows)

    def test_user_without_history(self, session):
        user = make_user(session, "idle@example.com")
        assert get_wallet_balance(session, user.id) == Decimal("0")
