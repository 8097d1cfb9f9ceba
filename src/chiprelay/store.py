"""
Relational store for users, circles, expenses and payment requests.

SQLite in autocommit mode; every multi-statement write goes through
`Database.transaction()`, which holds a BEGIN IMMEDIATE write lock so
concurrent writers serialize instead of interleaving.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .authorization import normalize_address
from .errors import StoreError
from .storage import private_file

logger = logging.getLogger(__name__)


DEFAULT_DB_PATH = Path.home() / ".chiprelay" / "chiprelay.sqlite3"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        wallet_address TEXT PRIMARY KEY,
        name TEXT,
        twitter_handle TEXT,
        notification_id TEXT,
        chip_address TEXT UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS circles (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        creator_wallet TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_circles_one_active
    ON circles (creator_wallet)
    WHERE is_active = 1
    """,
    """
    CREATE TABLE IF NOT EXISTS circle_members (
        circle_id TEXT NOT NULL REFERENCES circles(id) ON DELETE CASCADE,
        member_wallet TEXT NOT NULL,
        UNIQUE (circle_id, member_wallet)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS expense (
        id TEXT PRIMARY KEY,
        creator_wallet TEXT NOT NULL,
        description TEXT NOT NULL,
        total_amount INTEGER NOT NULL,
        token_address TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS expense_participants (
        expense_id TEXT NOT NULL REFERENCES expense(id) ON DELETE CASCADE,
        wallet_address TEXT NOT NULL,
        share_amount INTEGER NOT NULL,
        is_creator INTEGER NOT NULL DEFAULT 0,
        UNIQUE (expense_id, wallet_address)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_requests (
        id TEXT PRIMARY KEY,
        payer TEXT NOT NULL,
        recipient TEXT NOT NULL,
        token TEXT NOT NULL,
        amount TEXT NOT NULL,
        memo TEXT,
        status TEXT NOT NULL,
        expires_at INTEGER NOT NULL,
        created_at INTEGER NOT NULL,
        completed_at INTEGER,
        tx_hash TEXT,
        payer_twitter TEXT,
        requester_twitter TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_payment_requests_pair
    ON payment_requests (payer, recipient, status)
    """,
)


@dataclass
class User:
    wallet_address: str
    name: Optional[str] = None
    twitter_handle: Optional[str] = None
    notification_id: Optional[str] = None
    chip_address: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "wallet_address": self.wallet_address,
            "name": self.name,
            "twitter_handle": self.twitter_handle,
            "notification_id": self.notification_id,
            "chip_address": self.chip_address,
        }


class Database:
    """Connection factory and schema owner for the relational store."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else DEFAULT_DB_PATH
        private_file(self.path)
        self._init_db()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One BEGIN IMMEDIATE transaction; rolled back if the block raises."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as e:
            raise StoreError(f"Constraint violated: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self.reader() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            for statement in SCHEMA:
                conn.execute(statement)

    def upsert_user(
        self,
        wallet_address: str,
        name: Optional[str] = None,
        twitter_handle: Optional[str] = None,
        notification_id: Optional[str] = None,
        chip_address: Optional[str] = None,
    ) -> User:
        wallet = normalize_address(wallet_address)
        chip = normalize_address(chip_address) if chip_address else None
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (wallet_address, name, twitter_handle, notification_id, chip_address)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (wallet_address) DO UPDATE SET
                    name = COALESCE(excluded.name, users.name),
                    twitter_handle = COALESCE(excluded.twitter_handle, users.twitter_handle),
                    notification_id = COALESCE(excluded.notification_id, users.notification_id),
                    chip_address = COALESCE(excluded.chip_address, users.chip_address)
                """,
                (wallet, name, twitter_handle, notification_id, chip),
            )
        user = self.get_user(wallet)
        assert user is not None
        return user

    def get_user(self, wallet_address: str) -> Optional[User]:
        with self.reader() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE wallet_address = ?",
                (normalize_address(wallet_address),),
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_users(self, wallets: list[str]) -> dict[str, User]:
        if not wallets:
            return {}
        normalized = [normalize_address(w) for w in wallets]
        placeholders = ",".join("?" for _ in normalized)
        with self.reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM users WHERE wallet_address IN ({placeholders})",
                normalized,
            ).fetchall()
        return {row["wallet_address"]: _row_to_user(row) for row in rows}


def now_ts() -> int:
    return int(time.time())


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        wallet_address=row["wallet_address"],
        name=row["name"],
        twitter_handle=row["twitter_handle"],
        notification_id=row["notification_id"],
        chip_address=row["chip_address"],
    )
