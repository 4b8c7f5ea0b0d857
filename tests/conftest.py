"""
conftest.py - Shared pytest fixtures for propledger tests

Provides common fixtures used across unit, conformance and functional tests:
- A file-backed SQLite engine per test (threads need a real file to share)
- A session factory and a default session
- Builders for users, properties, purchases and rental statements
"""

import pytest

from propledger import (
    UserRole,
    create_engine_from_url, create_schema, make_session_factory,
    purchase_shares,
)

from tests.builders import make_user, make_property, make_statement


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = create_engine_from_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


# =============================================================================
# SCENARIO FIXTURES
# =============================================================================

@pytest.fixture
def alice(session):
    return make_user(session, "alice@example.com")


@pytest.fixture
def bob(session):
    return make_user(session, "bob@example.com")


@pytest.fixture
def admin(session):
    return make_user(session, "admin@example.com", role=UserRole.ADMIN)


@pytest.fixture
def villa(session):
    """100 shares at 1000.00."""
    return make_property(session)


@pytest.fixture
def funded_villa(session, villa, alice, bob):
    """Villa with alice holding 30 shares and bob 70; nothing left for sale."""
    purchase_shares(session, alice.id, villa.id, 30)
    purchase_shares(session, bob.id, villa.id, 70)
    return villa


@pytest.fixture
def statement(session, funded_villa):
    """Net 1000.00 statement for the funded villa."""
    return make_statement(session, funded_villa.id)
