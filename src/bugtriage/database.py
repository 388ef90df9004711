"""Database setup, session management and storage-level concurrency helpers"""

import logging
from typing import Callable, Optional, Tuple, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as SATimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_database_url
from .exceptions import WriteConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATEs Postgres uses for serialization failures and detected deadlocks
SERIALIZATION_SQLSTATES = {"40001", "40P01"}

CONFLICT_MESSAGES = (
    "could not serialize access",
    "deadlock detected",
    "database is locked",
)

Base = declarative_base()


def create_db_engine(url: str, **kwargs) -> Engine:
    """Create an engine with the transaction semantics ingestion relies on.

    Postgres runs SERIALIZABLE so that write-write races surface as
    serialization failures (retried by the pipeline). SQLite gets explicit
    BEGIN IMMEDIATE transactions, which serialize writers and make SAVEPOINTs
    behave under the pysqlite driver.
    """
    if url.startswith("postgresql"):
        kwargs.setdefault("isolation_level", "SERIALIZABLE")
    engine = create_engine(url, pool_pre_ping=True, **kwargs)

    if url.startswith("sqlite"):

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


# pool_recycle guards against server-side timeouts on long-lived workers.
engine = create_db_engine(get_database_url(), pool_recycle=1800)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI to get DB session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None):
    """Initialize database tables"""
    # Import models to register them with Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def insert_or_fetch(
    session: Session, fetch: Callable[[], Optional[T]], build: Callable[[], T]
) -> Tuple[T, bool]:
    """Return the row `fetch` finds, or insert the one `build` makes.

    The insert runs inside a SAVEPOINT and is guarded by a unique constraint,
    so two callers racing on the same key end up with the same row: the loser
    rolls its savepoint back and fetches the winner's row.

    Returns:
        (row, created)
    """
    existing = fetch()
    if existing is not None:
        return existing, False

    row = build()
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError as exc:
        winner = fetch()
        if winner is None:
            # The winning transaction has not committed yet (or our snapshot
            # predates it); a fresh attempt will see it.
            raise WriteConflictError(f"Lost insert race on {type(row).__name__}") from exc
        logger.debug("[Storage] Insert race on %s lost; using existing row", type(row).__name__)
        return winner, False
    return row, True


def is_serialization_failure(exc: BaseException) -> bool:
    """Whether `exc` is a transient write conflict that warrants retrying the transaction."""
    if isinstance(exc, (WriteConflictError, SATimeoutError)):
        return True
    if not isinstance(exc, DBAPIError):
        return False

    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in SERIALIZATION_SQLSTATES:
        return True

    message = str(exc).lower()
    return any(marker in message for marker in CONFLICT_MESSAGES)
