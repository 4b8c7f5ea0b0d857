"""
Supply Conformance Tests

INVARIANT: A property is never oversold.

    ∀ property P:
        Σ shares of CONFIRMED investments in P ≤ P.total_shares

Under N concurrent purchases exactly the attempts that fit succeed.
"""

import pytest
from concurrent.futures import ThreadPoolExecutor

from propledger import (
    InsufficientShares, PropertyClosed, PropertyStatus, Property,
    available_shares, holdings_by_user, purchase_shares,
)

from tests.builders import make_property, make_user


def _buy(session_factory, user_id, property_id, count):
    with session_factory() as session:
        try:
            purchase_shares(session, user_id, property_id, count)
            return True
        except (InsufficientShares, PropertyClosed):
            return False


class TestConcurrentPurchases:

    @pytest.mark.parametrize("workers,per_buy,expected", [
        (10, 15, 6),    # 90 sold, 10 left over
        (12, 10, 10),   # exact sell-out, two late buyers refused
        (8, 40, 2),
    ])
    def test_exactly_the_fitting_purchases_succeed(self, session, session_factory,
                                                   workers, per_buy, expected):
        prop = make_property(session, total_shares=100)
        users = [make_user(session, f"buyer{i}@example.com") for i in range(workers)]

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(
                lambda u: _buy(session_factory, u.id, prop.id, per_buy), users
            ))

        assert outcomes.count(True) == expected
        holdings = holdings_by_user(session, prop.id)
        assert sum(holdings.values()) == expected * per_buy <= 100
        assert available_shares(session, prop.id) == 100 - expected * per_buy

    def test_sell_out_marks_funded(self, session, session_factory):
        prop = make_property(session, total_shares=20)
        users = [make_user(session, f"buyer{i}@example.com") for i in range(5)]

        with ThreadPoolExecutor(max_workers=5) as pool:
            outcomes = list(pool.map(
                lambda u: _buy(session_factory, u.id, prop.id, 5), users
            ))

        assert outcomes.count(True) == 4
        session.expire_all()
        assert session.get(Property, prop.id).status == PropertyStatus.FUNDED

    def test_sequential_scenario(self, session):
        """100 shares: 60 + 30 confirmed leaves 10; 15 fails; 10 succeeds."""
        prop = make_property(session, total_shares=100)
        a, b, c = (make_user(session, f"{n}@example.com") for n in "abc")

        purchase_shares(session, a.id, prop.id, 60)
        purchase_shares(session, b.id, prop.id, 30)
        assert available_shares(session, prop.id) == 10
        with pytest.raises(InsufficientShares):
            purchase_shares(session, c.id, prop.id, 15)
        purchase_shares(session, c.id, prop.id, 10)
        assert available_shares(session, prop.id) == 0
