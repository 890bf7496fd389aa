"""
User and topic directory for mosquitto-sync.

This module manages the SQLite database holding the relational side of the
broker's permissions:
- Users with their role and desired broker state
- Topics owned by users with their read/write flags

The ACL and password files are derived from this data by BrokerSync.

Invariants:
    - E-mail is unique per user and doubles as the broker username
    - Topic names are unique per owning user
    - All writes run in a single transaction

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS, new columns with defaults)
    - Keep the e-mail column in sync with the ACL `user` lines

Table schema:
    users:
        - id INTEGER PRIMARY KEY
        - email TEXT UNIQUE
        - password_hash TEXT
        - full_name TEXT
        - role TEXT
        - mosquitto_on INTEGER (0/1)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)

    topics:
        - id INTEGER PRIMARY KEY
        - user_id INTEGER REFERENCES users(id)
        - name TEXT
        - can_read INTEGER (0/1)
        - can_write INTEGER (0/1)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - UNIQUE (user_id, name)
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import ConflictError, RecordNotFoundError

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 260_000


class Role(Enum):
    """Caller roles."""

    ANONYMOUS = "Anonymous"
    USER = "User"
    SUPER_ADMIN = "SuperAdmin"


@dataclass
class UserRecord:
    """A registered user.

    Attributes:
        id: Primary key
        email: E-mail address, also the broker username
        full_name: Display name
        role: Caller role
        mosquitto_on: Whether the user asked for the broker to run
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    id: int
    email: str
    full_name: str
    role: Role
    mosquitto_on: bool
    created_at: int
    updated_at: int


@dataclass
class TopicRecord:
    """A topic grant owned by a user."""

    id: int
    user_id: int
    name: str
    can_read: bool
    can_write: bool
    created_at: int
    updated_at: int


def hash_password(password: str, salt: bytes | None = None) -> str:
    """Salted PBKDF2-SHA256 hash in `pbkdf2_sha256$iterations$salt$digest` form."""
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        _, iterations, salt_hex, digest_hex = encoded.split("$")
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations)
    )
    return hmac.compare_digest(digest.hex(), digest_hex)


def _now_ms() -> int:
    return int(time.time() * 1000)


class Directory:
    """SQLite store for users and topics.

    Thread safety:
        Each operation opens its own connection; SQLite serialises writers.

    Example:
        >>> directory = Directory("/var/lib/mosquitto-sync/broker.db")
        >>> directory.initialize()
        >>> user = await directory.create_user("alice@example.com", "s3cret-pass")
        >>> topic = await directory.create_topic(user.id, "sensors/temp", True, False)
    """

    def __init__(self, path: str, busy_timeout_ms: int = 5000) -> None:
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    full_name TEXT NOT NULL DEFAULT '',
                    role TEXT NOT NULL,
                    mosquitto_on INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS topics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    can_read INTEGER NOT NULL DEFAULT 0,
                    can_write INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE (user_id, name)
                );

                CREATE INDEX IF NOT EXISTS idx_topics_user ON topics(user_id);
            """)
        logger.info(f"Initialized directory database: {self.path}")

    @staticmethod
    def _user_from_row(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            role=Role(row["role"]),
            mosquitto_on=bool(row["mosquitto_on"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _topic_from_row(row: sqlite3.Row) -> TopicRecord:
        return TopicRecord(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            can_read=bool(row["can_read"]),
            can_write=bool(row["can_write"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def create_user(
        self,
        email: str,
        password: str,
        full_name: str = "",
        role: Role = Role.USER,
    ) -> UserRecord:
        """Insert a user, storing only a hash of the password.

        Raises:
            ConflictError: If the e-mail is already in use
        """
        now = _now_ms()
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, full_name, role,
                                       mosquitto_on, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 0, ?, ?)
                    """,
                    (email, hash_password(password), full_name, role.value, now, now),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError("email already in use") from e

        logger.debug("Created user", extra={"user_id": user_id})
        return UserRecord(
            id=user_id,
            email=email,
            full_name=full_name,
            role=role,
            mosquitto_on=False,
            created_at=now,
            updated_at=now,
        )

    async def get_user_by_id(self, user_id: int) -> UserRecord:
        """Raises RecordNotFoundError if absent."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise RecordNotFoundError("user", user_id)
        return self._user_from_row(row)

    async def get_user_by_email(self, email: str) -> UserRecord:
        """Raises RecordNotFoundError if absent."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        if not row:
            raise RecordNotFoundError("user", email)
        return self._user_from_row(row)

    async def email_exists(self, email: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone()
        return row is not None

    async def get_password_hash(self, user_id: int) -> str:
        """Raises RecordNotFoundError if absent."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        if not row:
            raise RecordNotFoundError("user", user_id)
        return row["password_hash"]

    async def set_mosquitto_on(self, user_id: int, mosquitto_on: bool) -> None:
        """Persist the user's desired broker state.

        Raises:
            RecordNotFoundError: If the user does not exist
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET mosquitto_on = ?, updated_at = ? WHERE id = ?",
                (int(mosquitto_on), _now_ms(), user_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError("user", user_id)

    async def topic_exists(self, user_id: int, name: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM topics WHERE user_id = ? AND name = ?", (user_id, name)
            ).fetchone()
        return row is not None

    async def create_topic(
        self,
        user_id: int,
        name: str,
        can_read: bool,
        can_write: bool,
    ) -> TopicRecord:
        """Insert a topic for a user.

        Raises:
            ConflictError: If the user already has a topic with this name
        """
        now = _now_ms()
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO topics (user_id, name, can_read, can_write,
                                        created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, name, int(can_read), int(can_write), now, now),
                )
                topic_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError("topic is already exist") from e

        return TopicRecord(
            id=topic_id,
            user_id=user_id,
            name=name,
            can_read=can_read,
            can_write=can_write,
            created_at=now,
            updated_at=now,
        )

    async def get_topic_by_id(self, topic_id: int) -> TopicRecord:
        """Raises RecordNotFoundError if absent."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM topics WHERE id = ?", (topic_id,)).fetchone()
        if not row:
            raise RecordNotFoundError("topic", topic_id)
        return self._topic_from_row(row)

    async def list_topics(
        self,
        user_id: int | None = None,
        offset: int = 0,
        limit: int = -1,
    ) -> tuple[list[TopicRecord], int]:
        """List topics, optionally restricted to one owner.

        Args:
            user_id: Owner filter (None = all users)
            offset: Rows to skip
            limit: Maximum rows (-1 = unlimited)

        Returns:
            Tuple of (topics, total count before paging)
        """
        where, params = ("WHERE user_id = ?", (user_id,)) if user_id is not None else ("", ())
        with self._get_connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM topics {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM topics {where} ORDER BY id LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [self._topic_from_row(r) for r in rows], total

    async def update_topic_permissions(
        self,
        topic_id: int,
        can_read: bool,
        can_write: bool,
    ) -> TopicRecord:
        """Set a topic's flags.

        Raises:
            RecordNotFoundError: If the topic does not exist
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE topics SET can_read = ?, can_write = ?, updated_at = ? WHERE id = ?",
                (int(can_read), int(can_write), _now_ms(), topic_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError("topic", topic_id)
        return await self.get_topic_by_id(topic_id)

    async def delete_topic(self, topic_id: int) -> None:
        """Raises RecordNotFoundError if the topic does not exist."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM topics WHERE id = ?", (topic_id,))
            if cursor.rowcount == 0:
                raise RecordNotFoundError("topic", topic_id)
