"""SQLModel engine singleton and session dependency."""
from typing import Generator

from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from ticketsync.config import get_settings

_engine = None


def create_store_engine(database_url: str, **kwargs):
    """Create an engine whose SQLite transactions also cover DDL.

    pysqlite only opens a transaction implicitly before DML, so a CREATE TEMP
    TABLE issued at the start of a chunk would otherwise run outside it. We
    disable the driver's own transaction handling and emit BEGIN ourselves.
    """
    connect_args = kwargs.pop("connect_args", {})
    if database_url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    engine = create_engine(database_url, connect_args=connect_args, **kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def init_db(engine) -> None:
    """Create all tables and apply pending column migrations."""
    # Import all models so metadata is populated before create_all
    from ticketsync.models.sync import SyncSession  # noqa
    from ticketsync.models.ticket import Client, Ticket  # noqa
    SQLModel.metadata.create_all(engine)
    from ticketsync.db.migrations import run_migrations
    run_migrations(engine)


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_store_engine(settings.database_url)
        init_db(_engine)
    return _engine


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(get_engine()) as session:
        yield session
