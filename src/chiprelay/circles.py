"""Circles: named groups a creator splits payments with."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .authorization import require_address
from .errors import NotFoundError, ValidationError
from .store import Database, now_ts

logger = logging.getLogger(__name__)


@dataclass
class Circle:
    id: str
    name: str
    creator_wallet: str
    is_active: bool
    created_at: int
    members: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "creator_wallet": self.creator_wallet,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "members": list(self.members),
        }


class CircleDirectory:
    """
    Circle CRUD.

    A creator has at most one active circle. Activating a circle
    deactivates the creator's others in the same transaction; the partial
    unique index on (creator_wallet) WHERE is_active backs that up.
    """

    def __init__(self, db: Database):
        self.db = db

    def create(self, name: str, creator: str, members: Iterable[str], activate: bool = True) -> Circle:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Circle name is required")
        creator = require_address(creator, "creator")
        member_list = _clean_members(members, creator)
        if not member_list:
            raise ValidationError("Must have at least one member in the circle")

        circle_id = str(uuid.uuid4())
        with self.db.transaction() as conn:
            if activate:
                self._deactivate_all(conn, creator)
            conn.execute(
                """
                INSERT INTO circles (id, name, creator_wallet, is_active, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (circle_id, name, creator, 1 if activate else 0, now_ts()),
            )
            conn.executemany(
                "INSERT INTO circle_members (circle_id, member_wallet) VALUES (?, ?)",
                [(circle_id, m) for m in member_list],
            )
        logger.info("circle %s created by %s with %d members", circle_id, creator, len(member_list))
        return self.require(circle_id)

    def get(self, circle_id: str) -> Optional[Circle]:
        with self.db.reader() as conn:
            row = conn.execute("SELECT * FROM circles WHERE id = ?", (circle_id,)).fetchone()
            if row is None:
                return None
            return self._row_to_circle(conn, row)

    def require(self, circle_id: str) -> Circle:
        circle = self.get(circle_id)
        if circle is None:
            raise NotFoundError(f"Circle not found: {circle_id}")
        return circle

    def get_active(self, creator: str) -> Optional[Circle]:
        with self.db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM circles WHERE creator_wallet = ? AND is_active = 1",
                (require_address(creator),),
            ).fetchone()
            if row is None:
                return None
            return self._row_to_circle(conn, row)

    def list_by_creator(self, creator: str) -> list[Circle]:
        with self.db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM circles WHERE creator_wallet = ? ORDER BY created_at DESC",
                (require_address(creator),),
            ).fetchall()
            return [self._row_to_circle(conn, row) for row in rows]

    def list_as_member(self, wallet: str) -> list[Circle]:
        with self.db.reader() as conn:
            rows = conn.execute(
                """
                SELECT c.* FROM circles c
                JOIN circle_members m ON m.circle_id = c.id
                WHERE m.member_wallet = ?
                ORDER BY c.created_at DESC
                """,
                (require_address(wallet),),
            ).fetchall()
            return [self._row_to_circle(conn, row) for row in rows]

    def update(self, circle_id: str, name: Optional[str] = None, members: Optional[Iterable[str]] = None) -> Circle:
        circle = self.require(circle_id)
        with self.db.transaction() as conn:
            if name is not None:
                if not name.strip():
                    raise ValidationError("Circle name is required")
                conn.execute("UPDATE circles SET name = ? WHERE id = ?", (name.strip(), circle_id))
            if members is not None:
                member_list = _clean_members(members, circle.creator_wallet)
                if not member_list:
                    raise ValidationError("Must have at least one member in the circle")
                conn.execute("DELETE FROM circle_members WHERE circle_id = ?", (circle_id,))
                conn.executemany(
                    "INSERT INTO circle_members (circle_id, member_wallet) VALUES (?, ?)",
                    [(circle_id, m) for m in member_list],
                )
        return self.require(circle_id)

    def set_active(self, circle_id: str, creator: str, is_active: bool = True) -> Circle:
        creator = require_address(creator, "creator")
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT creator_wallet FROM circles WHERE id = ?", (circle_id,)
            ).fetchone()
            if row is None or row["creator_wallet"] != creator:
                raise NotFoundError(f"Circle not found: {circle_id}")
            if is_active:
                self._deactivate_all(conn, creator)
            conn.execute(
                "UPDATE circles SET is_active = ? WHERE id = ?",
                (1 if is_active else 0, circle_id),
            )
        return self.require(circle_id)

    def leave(self, circle_id: str, member: str) -> None:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM circle_members WHERE circle_id = ? AND member_wallet = ?",
                (circle_id, require_address(member)),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"{member} is not a member of circle {circle_id}")

    def delete(self, circle_id: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM circle_members WHERE circle_id = ?", (circle_id,))
            cur = conn.execute("DELETE FROM circles WHERE id = ?", (circle_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Circle not found: {circle_id}")

    @staticmethod
    def _deactivate_all(conn: sqlite3.Connection, creator: str) -> None:
        conn.execute(
            "UPDATE circles SET is_active = 0 WHERE creator_wallet = ? AND is_active = 1",
            (creator,),
        )

    @staticmethod
    def _row_to_circle(conn: sqlite3.Connection, row: sqlite3.Row) -> Circle:
        members = [
            r["member_wallet"]
            for r in conn.execute(
                "SELECT member_wallet FROM circle_members WHERE circle_id = ? ORDER BY rowid",
                (row["id"],),
            ).fetchall()
        ]
        return Circle(
            id=row["id"],
            name=row["name"],
            creator_wallet=row["creator_wallet"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            members=members,
        )


def _clean_members(members: Iterable[str], creator: str) -> list[str]:
    """Normalized, de-duplicated member wallets, excluding the creator."""
    seen: list[str] = []
    for member in members:
        wallet = require_address(member, "member")
        if wallet != creator and wallet not in seen:
            seen.append(wallet)
    return seen
