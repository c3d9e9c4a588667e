"""
Database migrations for the ticket store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from init_db() after create_all() so both fresh
stores and stores created by earlier releases are handled without manual
steps.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine.
    """
    with engine.begin() as conn:
        # Client: per-project sync stamp
        _add_column_if_missing(conn, "client", "last_synced", "TIMESTAMP")

        # Ticket: list-valued attributes kept beside the custom field bag
        _add_column_if_missing(conn, "ticket", "components", "TEXT")
        _add_column_if_missing(conn, "ticket", "labels", "TEXT")

        # SyncSession: project keys targeted by the run
        _add_column_if_missing(conn, "syncsession", "target_entities", "TEXT")


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
