"""
SecureEnv - Vault Module

This file handles:
- Setting/getting/deleting secrets by (project, environment, key)
- Version numbering and the append-only history table
- Listing projects, environments and secrets

Every value is encrypted by CryptoEngine before it reaches SQLite and
is bound to its triple as associated data, so a ciphertext moved to a
different row will not decrypt.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .crypto import CryptoEngine
from .errors import NotFoundError, ValidationError
from .storage import StoreHandle

logger = logging.getLogger(__name__)

_FORBIDDEN_IN_SCOPE = ("/", "\x00")
_FORBIDDEN_IN_KEY = ("=", "\x00")


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class Secret:
    """A secret row. `value` is only filled when decryption was requested."""

    project: str
    environment: str
    key: str
    version: int
    created_at: str
    updated_at: str
    description: Optional[str] = None
    deleted_at: Optional[str] = None
    value: Optional[str] = field(default=None, repr=False)

    @property
    def triple(self) -> Tuple[str, str, str]:
        return (self.project, self.environment, self.key)


@dataclass
class HistoryEntry:
    """One recorded state of a triple, newest first in history()."""

    project: str
    environment: str
    key: str
    version: int
    created_at: str
    deleted_at: Optional[str] = None
    current: bool = False
    value: Optional[str] = field(default=None, repr=False)

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None


def validate_triple(project: str, environment: str, key: str) -> None:
    """
    Reject malformed identifiers.

    project/environment: non-empty, no whitespace, '/' or NUL
    key: non-empty, no whitespace, '=' or NUL (keys become env var names)
    """
    for label, value, forbidden in (
        ("project", project, _FORBIDDEN_IN_SCOPE),
        ("environment", environment, _FORBIDDEN_IN_SCOPE),
        ("key", key, _FORBIDDEN_IN_KEY),
    ):
        if not isinstance(value, str) or not value:
            raise ValidationError(f"{label} cannot be empty")
        if any(ch.isspace() for ch in value) or any(ch in value for ch in forbidden):
            raise ValidationError(f"Invalid {label}: {value!r}")


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _context(project: str, environment: str, key: str) -> dict:
    return {"project": project, "environment": environment, "key": key}


# =============================================================================
# STORE CLASS
# =============================================================================

class Store:
    """
    Versioned secret persistence.

    Usage:
        with StoreHandle.open(path) as handle, km.unlock(passphrase) as key:
            store = Store(handle, CryptoEngine(key))
            store.set("api", "staging", "API_KEY", "v1")
            store.get("api", "staging", "API_KEY").value   # "v1"
    """

    def __init__(self, handle: StoreHandle, engine: CryptoEngine):
        self.handle = handle
        self.engine = engine

    def set(
        self,
        project: str,
        environment: str,
        key: str,
        plaintext: str,
        description: Optional[str] = None,
    ) -> Secret:
        """
        Create or update a secret.

        In one transaction: archive the current row (if any) to history,
        then write the new value with version + 1. A re-created triple
        continues numbering after its highest recorded version.

        Args:
            description: New description; None keeps the existing one

        Returns:
            The new current row (without value)
        """
        validate_triple(project, environment, key)
        if not isinstance(plaintext, str):
            raise ValidationError("Secret value must be a string")

        triple = (project, environment, key)
        encrypted = self.engine.encrypt(plaintext, _context(*triple))
        now = _utcnow()

        with self.handle.transaction() as conn:
            row = conn.execute(
                """SELECT * FROM secrets
                   WHERE project = ? AND environment = ? AND key = ?""",
                triple,
            ).fetchone()

            if row:
                # Pre-update snapshot
                conn.execute(
                    """INSERT INTO secret_history
                       (project, environment, key, encrypted_value, version, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    triple + (row["encrypted_value"], row["version"], row["updated_at"]),
                )
                version = row["version"] + 1
                created_at = row["created_at"]
                if description is None:
                    description = row["description"]
                conn.execute(
                    """UPDATE secrets
                       SET encrypted_value = ?, description = ?, updated_at = ?, version = ?
                       WHERE id = ?""",
                    (encrypted, description, now, version, row["id"]),
                )
            else:
                last = conn.execute(
                    """SELECT MAX(version) FROM secret_history
                       WHERE project = ? AND environment = ? AND key = ?""",
                    triple,
                ).fetchone()[0]
                version = (last or 0) + 1
                created_at = now
                conn.execute(
                    """INSERT INTO secrets
                       (project, environment, key, encrypted_value, description,
                        created_at, updated_at, version)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    triple + (encrypted, description, created_at, now, version),
                )

        logger.debug(f"Set {project}/{environment}/{key} v{version}")
        return Secret(project, environment, key, version, created_at, now, description)

    def get(
        self,
        project: str,
        environment: str,
        key: str,
        version: Optional[int] = None,
    ) -> Secret:
        """
        Get a decrypted secret.

        Args:
            version: Specific version (current row or history); None for latest

        Raises:
            NotFoundError: No such triple or version
        """
        validate_triple(project, environment, key)
        triple = (project, environment, key)
        row = self._current_row(*triple)

        if version is None:
            if not row:
                raise NotFoundError(f"Secret not found: {project}/{environment}/{key}")
            return self._secret_from_row(row, decrypt=True)

        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ValidationError(f"Invalid version: {version!r}")
        if row and row["version"] == version:
            return self._secret_from_row(row, decrypt=True)

        hist = self.handle.query_one(
            """SELECT * FROM secret_history
               WHERE project = ? AND environment = ? AND key = ? AND version = ?
               ORDER BY id DESC LIMIT 1""",
            triple + (version,),
        )
        if not hist:
            raise NotFoundError(
                f"Version {version} not found for {project}/{environment}/{key}"
            )
        return Secret(
            project=project,
            environment=environment,
            key=key,
            version=hist["version"],
            created_at=hist["created_at"],
            updated_at=hist["created_at"],
            deleted_at=hist["deleted_at"],
            value=self.engine.decrypt(hist["encrypted_value"], _context(*triple)),
        )

    def delete(self, project: str, environment: str, key: str) -> int:
        """
        Delete a secret, keeping its last state in history.

        Returns:
            The version that was deleted

        Raises:
            NotFoundError: No current row for the triple
        """
        validate_triple(project, environment, key)
        triple = (project, environment, key)
        now = _utcnow()

        with self.handle.transaction() as conn:
            row = conn.execute(
                """SELECT * FROM secrets
                   WHERE project = ? AND environment = ? AND key = ?""",
                triple,
            ).fetchone()
            if not row:
                raise NotFoundError(f"Secret not found: {project}/{environment}/{key}")

            conn.execute(
                """INSERT INTO secret_history
                   (project, environment, key, encrypted_value, version, created_at, deleted_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                triple + (row["encrypted_value"], row["version"], row["updated_at"], now),
            )
            conn.execute("DELETE FROM secrets WHERE id = ?", (row["id"],))

        logger.debug(f"Deleted {project}/{environment}/{key} v{row['version']}")
        return row["version"]

    def history(
        self,
        project: str,
        environment: str,
        key: str,
        limit: Optional[int] = None,
        include_values: bool = False,
    ) -> List[HistoryEntry]:
        """
        All recorded states of a triple, most recent first.

        The current row (if any) comes first with current=True. Deletion
        markers have deleted_at set. Unknown triples give an empty list.
        """
        validate_triple(project, environment, key)
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise ValidationError(f"Invalid history limit: {limit!r}")
        triple = (project, environment, key)
        ctx = _context(*triple)
        entries = []

        row = self._current_row(*triple)
        if row:
            entries.append(HistoryEntry(
                project, environment, key,
                version=row["version"],
                created_at=row["updated_at"],
                current=True,
                value=self.engine.decrypt(row["encrypted_value"], ctx) if include_values else None,
            ))

        rows = self.handle.query(
            """SELECT * FROM secret_history
               WHERE project = ? AND environment = ? AND key = ?
               ORDER BY version DESC, id DESC""",
            triple,
        )
        for r in rows:
            entries.append(HistoryEntry(
                project, environment, key,
                version=r["version"],
                created_at=r["created_at"],
                deleted_at=r["deleted_at"],
                value=self.engine.decrypt(r["encrypted_value"], ctx) if include_values else None,
            ))

        if limit is not None:
            entries = entries[:limit]
        return entries

    def list(
        self,
        project: Optional[str] = None,
        environment: Optional[str] = None,
        include_values: bool = False,
    ) -> List[Secret]:
        """Current secrets matching the filters, ordered by project, environment, key."""
        sql = "SELECT * FROM secrets WHERE 1=1"
        params = []
        if project is not None:
            sql += " AND project = ?"
            params.append(project)
        if environment is not None:
            sql += " AND environment = ?"
            params.append(environment)
        sql += " ORDER BY project, environment, key"

        return [
            self._secret_from_row(row, decrypt=include_values)
            for row in self.handle.query(sql, params)
        ]

    def get_all(self, project: str, environment: str) -> Dict[str, str]:
        """Decrypted KEY -> value map for one project/environment."""
        return {
            s.key: s.value
            for s in self.list(project, environment, include_values=True)
        }

    def exists(self, project: str, environment: str, key: str) -> bool:
        validate_triple(project, environment, key)
        return self._current_row(project, environment, key) is not None

    def projects(self) -> List[str]:
        rows = self.handle.query("SELECT DISTINCT project FROM secrets ORDER BY project")
        return [row["project"] for row in rows]

    def environments(self, project: str) -> List[str]:
        rows = self.handle.query(
            "SELECT DISTINCT environment FROM secrets WHERE project = ? ORDER BY environment",
            (project,),
        )
        return [row["environment"] for row in rows]

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _current_row(self, project: str, environment: str, key: str) -> Optional[sqlite3.Row]:
        return self.handle.query_one(
            """SELECT * FROM secrets
               WHERE project = ? AND environment = ? AND key = ?""",
            (project, environment, key),
        )

    def _secret_from_row(self, row: sqlite3.Row, decrypt: bool = False) -> Secret:
        value = None
        if decrypt:
            value = self.engine.decrypt(
                row["encrypted_value"],
                _context(row["project"], row["environment"], row["key"]),
            )
        return Secret(
            project=row["project"],
            environment=row["environment"],
            key=row["key"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            description=row["description"],
            value=value,
        )


def reencrypt_all(conn: sqlite3.Connection, old: CryptoEngine, new: CryptoEngine) -> int:
    """
    Re-encrypt every current and history value from one key to another.

    Must run inside the caller's transaction so a failure part-way
    leaves every row under the old key.

    Returns:
        Number of values re-encrypted
    """
    count = 0
    for table in ("secrets", "secret_history"):
        rows = conn.execute(
            f"SELECT id, project, environment, key, encrypted_value FROM {table}"
        ).fetchall()
        for row in rows:
            ctx = _context(row["project"], row["environment"], row["key"])
            value = old.decrypt(row["encrypted_value"], ctx)
            conn.execute(
                f"UPDATE {table} SET encrypted_value = ? WHERE id = ?",
                (new.encrypt(value, ctx), row["id"]),
            )
            count += 1
    return count
