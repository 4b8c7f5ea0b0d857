"""
db.py - Engine configuration and the ledger unit of work

Every ledger operation receives an explicit SQLAlchemy Session from its caller
(one per request) and performs its writes inside atomic(session). There is no
module-level session or engine singleton.

Serialization:
    - PostgreSQL and other row-locking backends: check-then-write sequences
      lock the row they derive from with SELECT ... FOR UPDATE (lock_row).
    - SQLite ignores FOR UPDATE, so explicit ledger transactions open with
      BEGIN IMMEDIATE, which serializes writers on the database lock. The
      transaction a Session opens implicitly for a plain read uses a deferred
      BEGIN, and the database runs in WAL mode, so reads never hold or wait on
      the writer lock.

A read followed by a write on the same Session is safe: atomic() finishes the
implicit read transaction and runs the write in a transaction of its own.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator, Optional, Type, TypeVar
import logging
import os

from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, SessionTransaction, SessionTransactionOrigin, sessionmaker

from .core import NotFound
from .models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///propledger.db"
DEFAULT_SQLITE_BUSY_TIMEOUT = 30.0

# Connections carrying this execution option leave BEGIN to the Session
SESSION_BEGIN_OPTION = "propledger_session_begin"

T = TypeVar("T")


# ============================================================================
# CONFIGURATION
# ============================================================================

def database_url() -> str:
    """Database URL from the DATABASE_URL environment variable."""
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def configure_logging(level: Optional[str] = None) -> None:
    """
    Attach a stream handler to the propledger logger for scripts and shells.

    Library code never calls this. The level defaults to PROPLEDGER_LOG_LEVEL
    (or INFO).
    """
    level = (level or os.environ.get("PROPLEDGER_LOG_LEVEL", "INFO")).upper()
    package_logger = logging.getLogger("propledger")
    package_logger.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) for h in package_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        ))
        package_logger.addHandler(handler)


def _install_sqlite_hooks(engine: Engine) -> None:
    """
    Take over transaction control from pysqlite.

    pysqlite's implicit BEGIN breaks SAVEPOINT and cannot take the write lock
    up front; we emit BEGIN ourselves instead. Plain engine connections get
    BEGIN IMMEDIATE here; Session connections are begun in
    _begin_session_transaction.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if not conn.get_execution_options().get(SESSION_BEGIN_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def _begin_session_transaction(session: Session, transaction: SessionTransaction,
                               connection) -> None:
    """Deferred BEGIN for implicit read transactions, BEGIN IMMEDIATE otherwise."""
    if transaction.parent is not None:
        return
    if transaction.origin is SessionTransactionOrigin.AUTOBEGIN:
        connection.exec_driver_sql("BEGIN")
    else:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_from_url(url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Build an engine for the ledger database.

    Args:
        url: SQLAlchemy URL (default: database_url())
        echo: Log emitted SQL

    Returns:
        Engine with SQLite serialization hooks installed where needed
    """
    url = url or database_url()
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"timeout": DEFAULT_SQLITE_BUSY_TIMEOUT, "check_same_thread": False},
        )
        _install_sqlite_hooks(engine)
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)
    return engine


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory for per-request sessions."""
    if engine.dialect.name != "sqlite":
        return sessionmaker(bind=engine, expire_on_commit=False)

    factory = sessionmaker(
        bind=engine.execution_options(**{SESSION_BEGIN_OPTION: True}),
        expire_on_commit=False,
    )
    event.listen(factory, "after_begin", _begin_session_transaction)
    return factory


# ============================================================================
# UNIT OF WORK
# ============================================================================

@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """
    Run a block as one indivisible unit of work.

    Opens a transaction when the session has none of its own (committed on
    success), or a SAVEPOINT when the caller already began one (the caller
    commits). A transaction the Session opened implicitly for earlier reads
    is not the caller's: it is committed first and the block gets a fresh
    transaction, so the block's writes are always committed by someone.
    Any exception rolls back everything written inside the block.
    """
    current = session.get_transaction()
    if (current is not None
            and current.origin is SessionTransactionOrigin.AUTOBEGIN
            and not session.in_nested_transaction()):
        session.commit()
        current = None

    if current is None:
        with session.begin():
            yield session
    else:
        with session.begin_nested():
            yield session


def lock_row(session: Session, model: Type[T], row_id: str) -> T:
    """
    Load a row with SELECT ... FOR UPDATE.

    Raises:
        NotFound: if the row does not exist
    """
    stmt = (
        select(model)
        .where(model.id == row_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = session.execute(stmt).scalar_one_or_none()
    if row is None:
        raise NotFound(model.__name__, row_id)
    logger.debug("Locked %s %s", model.__name__, row_id)
    return row


def get_row(session: Session, model: Type[T], row_id: str) -> T:
    """Load a row without locking, raising NotFound when it is missing."""
    row = session.get(model, row_id)
    if row is None:
        raise NotFound(model.__name__, row_id)
    return row
