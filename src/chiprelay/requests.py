"""
Payment request lifecycle.

A request asks `payer` to send `amount` of `token` to `recipient`. It is
created pending with a 24 hour lifetime and ends either completed (with the
settling tx hash) or expired. Expiry is applied lazily whenever a request is
read, with a conditional UPDATE so concurrent readers apply it once; the
`sweep_expired` batch does the same for every row.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .authorization import require_address
from .errors import NotFoundError, RequestStateError, ValidationError
from .money import normalize_amount
from .notify import DEFAULT_APP_BASE_URL, Notifier, payment_request_notification
from .store import Database

logger = logging.getLogger(__name__)


REQUEST_TTL_SECONDS = 24 * 60 * 60

_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


class RequestStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Direction(str, Enum):
    INCOMING = "incoming"  # wallet is the payer
    OUTGOING = "outgoing"  # wallet is the recipient


@dataclass
class PaymentRequest:
    id: str
    payer: str
    recipient: str
    token: str
    amount: str
    status: str
    expires_at: int
    created_at: int
    memo: Optional[str] = None
    completed_at: Optional[int] = None
    tx_hash: Optional[str] = None
    payer_twitter: Optional[str] = None
    requester_twitter: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payer": self.payer,
            "recipient": self.recipient,
            "token": self.token,
            "amount": self.amount,
            "memo": self.memo,
            "status": self.status,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "tx_hash": self.tx_hash,
            "payer_twitter": self.payer_twitter,
            "requester_twitter": self.requester_twitter,
        }


@dataclass
class CreateResult:
    request_id: str
    settle_url: str
    is_existing: bool
    notification_sent: bool = False

    def to_dict(self) -> dict:
        return {
            "requestId": self.request_id,
            "settleUrl": self.settle_url,
            "isExisting": self.is_existing,
        }


def settle_path(request_id: str) -> str:
    return f"/settle/{request_id}"


class PaymentRequestBook:
    """Creates, reads and transitions payment requests."""

    def __init__(
        self,
        db: Database,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditTrail] = None,
        app_base_url: str = DEFAULT_APP_BASE_URL,
        ttl_seconds: int = REQUEST_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.notifier = notifier
        self.audit = audit
        self.app_base_url = app_base_url
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    def create_or_remind(
        self,
        payer: str,
        recipient: str,
        token: str,
        amount: str,
        memo: Optional[str] = None,
    ) -> CreateResult:
        """
        Open a request, unless one is already pending for (payer, recipient).

        In that case nothing is inserted; the payer is reminded about the
        existing request and its id is returned with is_existing=True.
        """
        payer = require_address(payer, "payer")
        recipient = require_address(recipient, "recipient")
        token = require_address(token, "token")
        try:
            amount = normalize_amount(amount)
        except ValueError as e:
            raise ValidationError("Invalid amount") from e

        now = self._now()
        with self.db.transaction() as conn:
            self._expire_where(conn, now, "payer = ? AND recipient = ?", (payer, recipient))
            row = conn.execute(
                """
                SELECT * FROM payment_requests
                WHERE payer = ? AND recipient = ? AND status = 'pending'
                ORDER BY created_at DESC LIMIT 1
                """,
                (payer, recipient),
            ).fetchone()
            if row is not None:
                existing = _row_to_request(row)
                request = None
            else:
                existing = None
                request = self._insert(conn, payer, recipient, token, amount, memo, now)

        if existing is not None:
            sent = self._notify(existing, reminder=True)
            self._audit(EventType.REQUEST_REMINDED, existing)
            logger.info("pending request %s exists for %s -> %s; reminded", existing.id, payer, recipient)
            return CreateResult(existing.id, settle_path(existing.id), True, sent)

        assert request is not None
        sent = self._notify(request)
        self._audit(EventType.REQUEST_CREATED, request)
        return CreateResult(request.id, settle_path(request.id), False, sent)

    def issue(
        self,
        payer: str,
        recipient: str,
        token: str,
        amount: str,
        memo: Optional[str] = None,
    ) -> PaymentRequest:
        """Insert a pending request and notify the payer, without the pending-pair check."""
        payer = require_address(payer, "payer")
        recipient = require_address(recipient, "recipient")
        token = require_address(token, "token")
        try:
            amount = normalize_amount(amount)
        except ValueError as e:
            raise ValidationError("Invalid amount") from e
        with self.db.transaction() as conn:
            request = self._insert(conn, payer, recipient, token, amount, memo, self._now())
        self._notify(request)
        self._audit(EventType.REQUEST_CREATED, request)
        return request

    def get(self, request_id: str) -> Optional[PaymentRequest]:
        now = self._now()
        with self.db.transaction() as conn:
            self._expire_where(conn, now, "id = ?", (request_id,))
            row = conn.execute("SELECT * FROM payment_requests WHERE id = ?", (request_id,)).fetchone()
        return _row_to_request(row) if row else None

    def require(self, request_id: str) -> PaymentRequest:
        request = self.get(request_id)
        if request is None:
            raise NotFoundError("Payment request not found")
        return request

    def list_for_wallet(self, wallet: str, direction: Direction | str = Direction.INCOMING) -> list[PaymentRequest]:
        wallet = require_address(wallet, "wallet")
        try:
            direction = Direction(direction)
        except ValueError as e:
            raise ValidationError(f"Invalid type: {direction}. Use 'incoming' or 'outgoing'") from e
        column = "payer" if direction is Direction.INCOMING else "recipient"

        now = self._now()
        with self.db.transaction() as conn:
            self._expire_where(conn, now, f"{column} = ?", (wallet,))
            rows = conn.execute(
                f"SELECT * FROM payment_requests WHERE {column} = ? ORDER BY created_at DESC, rowid DESC",
                (wallet,),
            ).fetchall()
        return [_row_to_request(row) for row in rows]

    def complete(self, request_id: str, tx_hash: str) -> PaymentRequest:
        """pending -> completed. Any other current status is a RequestStateError."""
        if not isinstance(tx_hash, str) or not _TX_HASH_RE.match(tx_hash):
            raise ValidationError("Invalid transaction hash")

        now = self._now()
        with self.db.transaction() as conn:
            self._expire_where(conn, now, "id = ?", (request_id,))
            row = conn.execute("SELECT status FROM payment_requests WHERE id = ?", (request_id,)).fetchone()
            status = row["status"] if row else None
            if status == RequestStatus.PENDING.value:
                conn.execute(
                    """
                    UPDATE payment_requests
                    SET status = 'completed', tx_hash = ?, completed_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (tx_hash.lower(), now, request_id),
                )
                updated = conn.execute("SELECT * FROM payment_requests WHERE id = ?", (request_id,)).fetchone()

        if status is None:
            raise NotFoundError("Payment request not found")
        if status != RequestStatus.PENDING.value:
            raise RequestStateError(request_id, status)

        request = _row_to_request(updated)
        self._audit(EventType.REQUEST_COMPLETED, request)
        logger.info("request %s completed by %s", request_id, request.tx_hash)
        return request

    def remind(self, request_id: str) -> bool:
        request = self.require(request_id)
        if not request.is_pending:
            raise RequestStateError(request_id, request.status)
        sent = self._notify(request, reminder=True)
        self._audit(EventType.REQUEST_REMINDED, request)
        return sent

    def sweep_expired(self) -> int:
        """Expire every pending request past its deadline. Returns the number transitioned."""
        with self.db.transaction() as conn:
            count = self._expire_where(conn, self._now(), "1 = 1", ())
        if count:
            logger.info("expired %d payment requests", count)
        return count

    def _insert(
        self,
        conn: sqlite3.Connection,
        payer: str,
        recipient: str,
        token: str,
        amount: str,
        memo: Optional[str],
        now: int,
    ) -> PaymentRequest:
        handles = {
            row["wallet_address"]: row["twitter_handle"]
            for row in conn.execute(
                "SELECT wallet_address, twitter_handle FROM users WHERE wallet_address IN (?, ?)",
                (payer, recipient),
            ).fetchall()
        }
        request = PaymentRequest(
            id=str(uuid.uuid4()),
            payer=payer,
            recipient=recipient,
            token=token,
            amount=amount,
            memo=memo or None,
            status=RequestStatus.PENDING.value,
            expires_at=now + self.ttl_seconds,
            created_at=now,
            payer_twitter=handles.get(payer),
            requester_twitter=handles.get(recipient),
        )
        conn.execute(
            """
            INSERT INTO payment_requests (
                id, payer, recipient, token, amount, memo, status,
                expires_at, created_at, payer_twitter, requester_twitter
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.id,
                request.payer,
                request.recipient,
                request.token,
                request.amount,
                request.memo,
                request.status,
                request.expires_at,
                request.created_at,
                request.payer_twitter,
                request.requester_twitter,
            ),
        )
        return request

    def _expire_where(self, conn: sqlite3.Connection, now: int, where: str, params: tuple) -> int:
        # Idempotent: only rows still pending and past expiry are touched.
        expired_ids = [
            row["id"]
            for row in conn.execute(
                f"""
                SELECT id FROM payment_requests
                WHERE status = 'pending' AND expires_at <= ? AND {where}
                """,
                (now, *params),
            ).fetchall()
        ]
        if not expired_ids:
            return 0
        placeholders = ",".join("?" for _ in expired_ids)
        cur = conn.execute(
            f"""
            UPDATE payment_requests SET status = 'expired'
            WHERE status = 'pending' AND expires_at <= ? AND id IN ({placeholders})
            """,
            (now, *expired_ids),
        )
        for request_id in expired_ids:
            self._log(EventType.REQUEST_EXPIRED, request_id=request_id)
        return cur.rowcount

    def _notify(self, request: PaymentRequest, reminder: bool = False) -> bool:
        if self.notifier is None:
            return False
        notification = payment_request_notification(
            payer=request.payer,
            request_id=request.id,
            amount=request.amount,
            memo=request.memo,
            requester_twitter=request.requester_twitter,
            base_url=self.app_base_url,
            reminder=reminder,
        )
        try:
            return bool(self.notifier.send(notification))
        except Exception:
            logger.exception("notification for request %s failed", request.id)
            return False

    def _audit(self, event_type: EventType, request: PaymentRequest) -> None:
        self._log(
            event_type,
            wallet=request.payer,
            counterparty=request.recipient,
            amount=request.amount,
            tx_hash=request.tx_hash,
            request_id=request.id,
        )

    def _log(self, event_type: EventType, **fields) -> None:
        # Runs after the row change is written; audit failures are logged only.
        if self.audit is None:
            return
        try:
            self.audit.log(event_type, **fields)
        except Exception:
            logger.exception("audit write %s failed", event_type.value)


def _row_to_request(row: sqlite3.Row) -> PaymentRequest:
    return PaymentRequest(
        id=row["id"],
        payer=row["payer"],
        recipient=row["recipient"],
        token=row["token"],
        amount=row["amount"],
        status=row["status"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        memo=row["memo"],
        completed_at=row["completed_at"],
        tx_hash=row["tx_hash"],
        payer_twitter=row["payer_twitter"],
        requester_twitter=row["requester_twitter"],
    )
