"""DB connection + scoped transactions.

Connections are opened in autocommit mode (isolation_level=None) so that
transaction boundaries are explicit:

    with transaction(conn, "write revision"):
        ...            # BEGIN IMMEDIATE ... COMMIT, ROLLBACK on any exception

Nested use turns into a SAVEPOINT, so a write-path call made from inside a
sync batch commits or rolls back with the batch.
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

from labledger.errors import StorageError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from labledger.config import LedgerConfig

logger = logging.getLogger("labledger.db")

_MEMORY = ":memory:"
_savepoints = itertools.count(1)


def connect(db_path: Path | str) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and foreign key enforcement.

    ``":memory:"`` gives an ephemeral store (tests, dry runs).
    """
    target = str(db_path)
    if target != _MEMORY:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        # 0-byte files come from interrupted creates; sqlite reports them as an opaque I/O error
        if path.exists() and path.stat().st_size == 0:
            msg = f"SQLite DB is empty (0 bytes): {path}\nFix: rm {path}* && labledger migrate"
            raise StorageError(msg)
    conn = sqlite3.connect(target, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        if target != _MEMORY:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
    except sqlite3.OperationalError as exc:
        conn.close()
        raise StorageError(f"Failed to open DB {target}: {exc}") from exc
    return conn


def get_conn(cfg: LedgerConfig) -> sqlite3.Connection:
    """Return a connection for the configured db path."""
    cfg.ensure_dirs()
    return connect(cfg.db_path)


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection, what: str = "transaction") -> Iterator[sqlite3.Connection]:
    """Scoped transaction: commit on success, roll back on every other exit.

    sqlite3 errors are logged and re-raised as StorageError; anything else
    propagates unchanged after the rollback.
    """
    if conn.in_transaction:
        name = f"sp_{next(_savepoints)}"
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            conn.execute(f"RELEASE SAVEPOINT {name}")
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except sqlite3.Error as exc:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        logger.exception("%s failed, rolled back", what)
        raise StorageError(f"{what} failed") from exc
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


@contextlib.contextmanager
def foreign_keys_disabled(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Turn FK enforcement off for a table rebuild; always turned back on.

    SQLite ignores this pragma inside a transaction, so enter it first and
    open the transaction inside.
    """
    if conn.in_transaction:
        raise StorageError("foreign_keys can only be toggled outside a transaction")
    conn.execute("PRAGMA foreign_keys=OFF")
    try:
        yield conn
    finally:
        conn.execute("PRAGMA foreign_keys=ON")


def execute_script(conn: sqlite3.Connection, script: str) -> None:
    """Run a multi-statement script statement by statement.

    Unlike Connection.executescript this never issues an implicit COMMIT, so
    it is safe inside transaction().
    """
    buf = ""
    for line in script.splitlines(keepends=True):
        buf += line
        if sqlite3.complete_statement(buf):
            if buf.strip():
                conn.execute(buf)
            buf = ""
    if buf.strip() and not buf.strip().startswith("--"):
        conn.execute(buf)


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------

def object_exists(conn: sqlite3.Connection, kind: str, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = ? AND name = ?", (kind, name)
    ).fetchone()
    return row is not None


def table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    return [r["name"] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()]
