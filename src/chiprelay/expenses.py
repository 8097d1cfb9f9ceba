"""Equal-split expenses: one expense row plus one participant row per wallet."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .authorization import require_address
from .errors import ValidationError
from .store import Database, now_ts

logger = logging.getLogger(__name__)


@dataclass
class ExpenseParticipant:
    wallet_address: str
    share_amount: int
    is_creator: bool = False

    def to_dict(self) -> dict:
        return {
            "wallet_address": self.wallet_address,
            "share_amount": self.share_amount,
            "is_creator": self.is_creator,
        }


@dataclass
class Expense:
    id: str
    creator_wallet: str
    description: str
    total_amount: int
    token_address: str
    status: str
    created_at: int
    participants: list[ExpenseParticipant] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "creator_wallet": self.creator_wallet,
            "description": self.description,
            "total_amount": self.total_amount,
            "token_address": self.token_address,
            "status": self.status,
            "created_at": self.created_at,
            "participants": [p.to_dict() for p in self.participants],
        }


class ExpenseLedger:
    """
    Writes an expense and all of its participants in one transaction.

    Amounts are integer base units. Creating an expense also deletes the
    pending payment requests the other participants owe the creator: their
    balance just changed, so those requests are stale.
    """

    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        creator: str,
        description: str,
        total_amount: int,
        token_address: str,
        participants: Sequence[str],
        share_amount: Optional[int] = None,
    ) -> Expense:
        creator = require_address(creator, "creator")
        token_address = require_address(token_address, "token")
        wallets: list[str] = []
        for wallet in participants:
            wallet = require_address(wallet, "participant")
            if wallet not in wallets:
                wallets.append(wallet)
        if not wallets:
            raise ValidationError("Must have at least one participant")
        if creator not in wallets:
            raise ValidationError("Creator must be included in participants")
        if int(total_amount) <= 0:
            raise ValidationError("Total amount must be greater than 0")
        share = int(share_amount) if share_amount is not None else int(total_amount) // len(wallets)

        expense = Expense(
            id=str(uuid.uuid4()),
            creator_wallet=creator,
            description=description,
            total_amount=int(total_amount),
            token_address=token_address,
            status="active",
            created_at=now_ts(),
            participants=[ExpenseParticipant(w, share, w == creator) for w in wallets],
        )
        others = [w for w in wallets if w != creator]

        with self.db.transaction() as conn:
            for wallet in wallets:
                conn.execute("INSERT OR IGNORE INTO users (wallet_address) VALUES (?)", (wallet,))
            conn.execute(
                """
                INSERT INTO expense (
                    id, creator_wallet, description, total_amount, token_address, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    expense.id,
                    expense.creator_wallet,
                    expense.description,
                    expense.total_amount,
                    expense.token_address,
                    expense.status,
                    expense.created_at,
                ),
            )
            conn.executemany(
                """
                INSERT INTO expense_participants (expense_id, wallet_address, share_amount, is_creator)
                VALUES (?, ?, ?, ?)
                """,
                [(expense.id, p.wallet_address, p.share_amount, int(p.is_creator)) for p in expense.participants],
            )
            if others:
                placeholders = ",".join("?" for _ in others)
                cancelled = conn.execute(
                    f"""
                    DELETE FROM payment_requests
                    WHERE recipient = ? AND status = 'pending' AND payer IN ({placeholders})
                    """,
                    (creator, *others),
                ).rowcount
                if cancelled:
                    logger.info("cancelled %d stale requests owed to %s", cancelled, creator)

        logger.info("expense %s: %s split %d ways at %d", expense.id, creator, len(wallets), share)
        return expense

    def get(self, expense_id: str) -> Optional[Expense]:
        with self.db.reader() as conn:
            row = conn.execute("SELECT * FROM expense WHERE id = ?", (expense_id,)).fetchone()
            if row is None:
                return None
            parts = conn.execute(
                "SELECT * FROM expense_participants WHERE expense_id = ? ORDER BY rowid",
                (expense_id,),
            ).fetchall()
        return Expense(
            id=row["id"],
            creator_wallet=row["creator_wallet"],
            description=row["description"],
            total_amount=row["total_amount"],
            token_address=row["token_address"],
            status=row["status"],
            created_at=row["created_at"],
            participants=[
                ExpenseParticipant(p["wallet_address"], p["share_amount"], bool(p["is_creator"])) for p in parts
            ],
        )
