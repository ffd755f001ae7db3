from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.extensions

from pg_partialcopy.errors import DatabaseConnectionError, SnapshotError

LOG = logging.getLogger(__name__)

BEGIN_SNAPSHOT_SQL = "begin isolation level serializable read only deferrable"
EXPORT_SNAPSHOT_SQL = "select pg_export_snapshot()"

# ============================== Connections ===============================

def connect(database_url: str, role: str) -> psycopg2.extensions.connection:
    """Open an autocommit connection; statements run exactly as given."""
    try:
        conn = psycopg2.connect(database_url, application_name=f"pg_partialcopy_{role}")
    except psycopg2.Error as e:
        raise DatabaseConnectionError(
            f"error connecting to {role} database: {e}", role=role, phase=f"connect_{role}"
        ) from e
    conn.autocommit = True
    LOG.debug("Connected to %s database (backend pid %s)", role, conn.get_backend_pid())
    return conn

@contextmanager
def pg_conn(database_url: str, role: str) -> Iterator[psycopg2.extensions.connection]:
    conn = connect(database_url, role)
    try:
        yield conn
    finally:
        try:
            conn.close()
            LOG.debug("Closed %s connection", role)
        except Exception:
            LOG.warning("Could not close %s connection", role, exc_info=True)

def execute_sql(conn, sql: str) -> None:
    """Run one or more semicolon-separated statements as a single simple query."""
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Executing SQL: %s", sql)
    with conn.cursor() as c:
        c.execute(sql)

# ============================== Snapshot ===============================

@contextmanager
def snapshot_transaction(conn) -> Iterator[str]:
    """
    Begin a serializable, read-only, deferrable transaction on ``conn`` and
    yield its exported snapshot id. The transaction is rolled back on exit,
    successful or not; a failing rollback is logged and never hides the
    error that is already propagating.
    """
    try:
        with conn.cursor() as c:
            c.execute(BEGIN_SNAPSHOT_SQL)
            c.execute(EXPORT_SNAPSHOT_SQL)
            rows = c.fetchall()
    except psycopg2.Error as e:
        _end_transaction(conn)
        raise SnapshotError(f"error starting snapshot transaction: {e}", phase="snapshot") from e

    if len(rows) != 1:
        _end_transaction(conn)
        raise SnapshotError(
            f"expected one row from pg_export_snapshot, got {len(rows)}", phase="snapshot"
        )

    snapshot_id = rows[0][0]
    try:
        yield snapshot_id
    finally:
        _end_transaction(conn)

def _end_transaction(conn) -> None:
    if conn.closed:
        return
    try:
        with conn.cursor() as c:
            c.execute("rollback")
        LOG.debug("Snapshot transaction rolled back")
    except Exception:
        LOG.warning("Could not roll back snapshot transaction", exc_info=True)
