"""
SecureEnv - Storage Handle

This file handles:
- Opening/creating the SQLite store file
- Schema and crash-safety PRAGMAs
- Transactions (all-or-nothing, serialized across processes)
- The metadata table

Database structure:
- metadata: store configuration (salt, KDF params, verification artifact)
- secrets: current value per (project, environment, key)
- secret_history: append-only record of every past state
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from .errors import CorruptionError, NotInitializedError, StorageError

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1

# Seconds a writer waits for another process to release the lock
BUSY_TIMEOUT = 5.0

SCHEMA = """
-- Store metadata (passphrase verification, KDF parameters, schema version)
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Current secrets (one row per project/environment/key)
CREATE TABLE IF NOT EXISTS secrets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project TEXT NOT NULL,
    environment TEXT NOT NULL,
    key TEXT NOT NULL,
    encrypted_value TEXT NOT NULL,
    description TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    UNIQUE(project, environment, key)
);

-- Secret history (every past state, including deletion markers)
CREATE TABLE IF NOT EXISTS secret_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project TEXT NOT NULL,
    environment TEXT NOT NULL,
    key TEXT NOT NULL,
    encrypted_value TEXT NOT NULL,
    version INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_secrets_project ON secrets(project);
CREATE INDEX IF NOT EXISTS idx_secrets_project_env ON secrets(project, environment);
CREATE INDEX IF NOT EXISTS idx_history_project_env_key
    ON secret_history(project, environment, key);
"""

PRAGMAS = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=FULL;
PRAGMA foreign_keys=ON;
PRAGMA secure_delete=ON;
"""


class StoreHandle:
    """
    An open store file.

    Passed explicitly to KeyManager, Store and BundleCodec; nothing in
    the package keeps a global "current store".

    Usage:
        with StoreHandle.open("~/.secureenv/store.db", create=True) as handle:
            with handle.transaction() as conn:
                conn.execute(...)
    """

    def __init__(self, path: Path, conn: sqlite3.Connection):
        self.path = path
        self.conn: Optional[sqlite3.Connection] = conn

    @classmethod
    def open(cls, path, create: bool = False) -> "StoreHandle":
        """
        Open (and optionally create) a store file.

        Args:
            path: Path to the SQLite file
            create: Create the file and parent directory if missing

        Raises:
            NotInitializedError: File missing and create is False
            StorageError: SQLite could not open or prepare the file
        """
        path = Path(path).expanduser().resolve()
        if not path.exists():
            if not create:
                raise NotInitializedError(
                    f"No store found at {path}. Run `senv init` first."
                )
            try:
                path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create {path.parent}: {e}") from e

        try:
            conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.executescript(PRAGMAS)
            conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open store {path}: {e}") from e

        try:
            path.chmod(0o600)
        except OSError:
            logger.warning(f"Could not set permissions on store file: {path}")

        handle = cls(path, conn)
        try:
            handle._check_schema_version()
        except CorruptionError:
            handle.close()
            raise
        logger.debug(f"Opened store {path}")
        return handle

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self) -> "StoreHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # Transactions and queries
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block as one IMMEDIATE transaction.

        The write lock is taken before the block reads anything, so a
        read-modify-write sequence cannot interleave with another
        process. Any exception rolls everything back; SQLite errors are
        re-raised as StorageError.
        """
        conn = self._require_open()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(f"Could not start transaction: {e}") from e

        try:
            yield conn
        except sqlite3.Error as e:
            self._rollback(conn)
            raise StorageError(f"Transaction failed: {e}") from e
        except BaseException:
            self._rollback(conn)
            raise

        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback(conn)
            raise StorageError(f"Commit failed: {e}") from e

    def query(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        """Run a read-only statement and return all rows."""
        conn = self._require_open()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Query failed: {e}") from e

    def query_one(self, sql: str, params: Sequence = ()) -> Optional[sqlite3.Row]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    # =========================================================================
    # Metadata
    # =========================================================================

    def get_meta(self, key: str) -> Optional[str]:
        row = self.query_one("SELECT value FROM metadata WHERE key = ?", (key,))
        return row["value"] if row else None

    def all_meta(self) -> Dict[str, str]:
        return {row["key"]: row["value"] for row in self.query("SELECT key, value FROM metadata")}

    def set_meta(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        """Write one metadata value. Call inside transaction()."""
        conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (key, value),
        )

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _require_open(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageError("Store handle is closed")
        return self.conn

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error(f"Rollback failed: {e}")

    def _check_schema_version(self) -> None:
        stored = self.get_meta("schema_version")
        if stored is None:
            return
        try:
            version = int(stored)
        except ValueError as e:
            raise CorruptionError(f"Invalid schema version in metadata: {stored!r}") from e
        if version > SCHEMA_VERSION:
            raise CorruptionError(
                f"Store schema v{version} is newer than supported v{SCHEMA_VERSION}"
            )
