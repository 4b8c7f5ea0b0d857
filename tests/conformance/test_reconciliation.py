"""
Reconciliation Conformance Tests

INVARIANT: A declared distribution pays out exactly its net.

    ∀ declared D:
        Σ payout.amount = D.total_distributed = statement.net_distributable
        Σ PAY-* ledger rows of D = statement.net_distributable

No cent is created or lost by rounding.
"""

import pytest
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy import select

from propledger import (
    Transaction, TransactionType,
    allocate_pro_rata, declare_from_statement, purchase_shares,
)

from tests.builders import make_property, make_statement, make_user


class TestReconciliationProperties:
    """Property-based reconciliation tests on the pure allocation."""

    @given(
        st.integers(min_value=1, max_value=10 ** 9),
        st.lists(st.integers(min_value=1, max_value=10 ** 6), min_size=1, max_size=40),
    )
    @settings(max_examples=200)
    def test_allocation_never_creates_or_loses_a_kobo(self, net_kobo, shares):
        net = Decimal(net_kobo) / 100
        holdings = {f"user{i:03d}": s for i, s in enumerate(shares)}
        result = allocate_pro_rata(net, holdings)
        assert sum((a.amount for a in result), Decimal("0")) == net
        assert len(result) == len(holdings)


class TestDeclaredDistributions:

    @pytest.mark.parametrize("holdings,gross", [
        ([300, 700], "1500.00"),
        ([333, 667], "1500.00"),
        ([1, 1, 1], "500.01"),
        ([7, 13, 29, 51], "1234.57"),
        ([1, 998, 1], "500.03"),
    ])
    def test_declared_rows_sum_to_net(self, session, holdings, gross):
        prop = make_property(session, total_shares=sum(holdings), price_per_share="1")
        for i, count in enumerate(holdings):
            user = make_user(session, f"holder{i}@example.com")
            purchase_shares(session, user.id, prop.id, count)
        stmt = make_statement(session, prop.id, gross=gross, costs="300.00", fee="200.00")

        distribution = declare_from_statement(session, prop.id, stmt.id)

        net = stmt.net_distributable
        assert sum(p.amount for p in distribution.payouts) == net
        assert distribution.total_distributed == net
        pay_rows = session.execute(
            select(Transaction.amount).where(
                Transaction.type == TransactionType.PAYOUT,
                Transaction.reference.like("PAY-%"),
            )
        ).scalars().all()
        assert sum(pay_rows, Decimal("0")) == net
