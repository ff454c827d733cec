"""
Module: stock_kernel.db.engine
Responsibility: One engine and session factory per process, plus the
    session_scope() commit boundary used by callers of the stock services.
Architecture position: Kernel > DB.  Imports the models package lazily so
    create_tables() sees every table.

Dialect behaviour:
    - PostgreSQL: READ COMMITTED; the ledger and cursor services take
      FOR UPDATE locks on balance, counter and cursor rows.
    - SQLite: pysqlite's implicit transactions are switched off and every
      transaction starts with BEGIN IMMEDIATE, so writers queue on the
      database lock and SAVEPOINT works.

Failure modes:
    - RuntimeError from the accessors before init_engine_from_url().
    - OperationalError ("database is locked") when a SQLite writer waits
      longer than ``sqlite_timeout`` seconds.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from stock_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Engine not initialized. Call init_engine_from_url() first."


def _install_sqlite_transaction_recipe(engine: Engine) -> None:
    """Take transaction control away from pysqlite.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT and lets two writers read the same balance before either
    locks.  Emitting BEGIN IMMEDIATE ourselves takes the write lock at
    transaction start.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    sqlite_timeout: float = 30.0,
) -> Engine:
    """
    Create the process-wide engine and session factory.

    A SQLite URL gets the BEGIN IMMEDIATE recipe and ``sqlite_timeout``;
    anything else gets a READ COMMITTED QueuePool sized by the pool
    arguments.  Calling it again disposes the previous engine first.
    """
    global _engine, _SessionFactory

    reset_engine()

    if make_url(database_url).get_backend_name() == "sqlite":
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": sqlite_timeout, "check_same_thread": False},
        )
        _install_sqlite_transaction_recipe(engine)
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    _engine = engine
    _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": engine.dialect.name, "url": engine.url.render_as_string()},
    )
    return engine


def get_engine() -> Engine:
    """The engine created by init_engine_from_url()."""
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Session factory bound to the current engine.

    Sync workers and the scheduler each open their own session from it.
    """
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Commit on clean exit, roll back and re-raise otherwise.

    Services only flush, so everything done inside the block (a movement,
    its balance update, a cursor checkpoint) lands as one transaction.

    Usage:
        with session_scope() as session:
            StockLedgerService(session, clock, policy).append_movement(...)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("session_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _stock_metadata():
    from stock_kernel.db.base import Base
    import stock_kernel.models  # noqa: F401  (registers every table)

    return Base.metadata


def create_tables() -> None:
    """Create the stock schema on the current engine (no-op for existing tables)."""
    _stock_metadata().create_all(get_engine())


def drop_tables() -> None:
    """Drop the stock schema.  Test teardown only."""
    _stock_metadata().drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


atexit.register(reset_engine)
