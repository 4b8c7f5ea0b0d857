"""
Single Distribution Conformance Tests

INVARIANT: A rental statement produces at most one distribution.

    ∀ statement S: |{D : D.rental_statement_id = S.id}| ≤ 1

Concurrent draft attempts for the same statement: exactly one succeeds, the
rest raise DuplicateDistribution, and no orphan payouts are left behind.
"""

import pytest
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import func, select

from propledger import (
    Distribution, Payout,
    DuplicateDistribution,
    create_draft_distribution, declare_from_statement,
)


def _draft(session_factory, property_id, statement_id):
    with session_factory() as session:
        try:
            return create_draft_distribution(session, property_id, statement_id).distribution.id
        except DuplicateDistribution:
            return None


def _declare(session_factory, property_id, statement_id):
    with session_factory() as session:
        try:
            return declare_from_statement(session, property_id, statement_id).id
        except DuplicateDistribution:
            return None


def _count(session, model):
    return session.execute(select(func.count()).select_from(model)).scalar_one()


class TestConcurrentDrafts:

    def test_one_draft_wins(self, session, session_factory, statement, funded_villa):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: _draft(session_factory, funded_villa.id, statement.id), range(8)
            ))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert _count(session, Distribution) == 1
        assert _count(session, Payout) == 2

    def test_one_bulk_declaration_wins(self, session, session_factory, statement, funded_villa):
        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(
                lambda _: _declare(session_factory, funded_villa.id, statement.id), range(6)
            ))

        assert len([r for r in results if r is not None]) == 1
        assert _count(session, Distribution) == 1

    def test_sequential_retry(self, session, statement, funded_villa):
        create_draft_distribution(session, funded_villa.id, statement.id)
        for _ in range(3):
            with pytest.raises(DuplicateDistribution):
                create_draft_distribution(session, funded_villa.id, statement.id)
        assert _count(session, Distribution) == 1
