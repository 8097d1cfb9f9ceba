"""
Audit trail for relay, split and payment-request events.

One JSON object per line. Each line carries ``prev_hash`` and an
HMAC-SHA256 ``event_hash`` over the previous hash and the canonical event
body, so an edited or reordered line breaks verification on the next read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import AuditChainError
from .storage import private_file


DEFAULT_AUDIT_PATH = Path.home() / ".chiprelay" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".chiprelay-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "CHIPRELAY_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    RELAY_SUBMITTED = "relay_submitted"
    RELAY_CONFIRMED = "relay_confirmed"
    RELAY_REJECTED = "relay_rejected"
    BATCH_SUBMITTED = "batch_submitted"
    CHIP_REGISTERED = "chip_registered"
    SPLIT_CREATED = "split_created"
    SPLIT_FAILED = "split_failed"
    REQUEST_CREATED = "request_created"
    REQUEST_REMINDED = "request_reminded"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_EXPIRED = "request_expired"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    wallet: Optional[str] = None
    counterparty: Optional[str] = None
    amount: Optional[str] = None
    tx_hash: Optional[str] = None
    request_id: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict, **chain: Optional[str]) -> AuditEvent:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known}, **chain)

    def body(self) -> dict:
        """The fields covered by ``event_hash``."""
        return {
            k: v for k, v in asdict(self).items()
            if v is not None and k not in _CHAIN_FIELDS
        }

    def involves(self, wallet: str) -> bool:
        return wallet.lower() in (self.wallet, self.counterparty)

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = private_file(path or DEFAULT_AUDIT_PATH)
        self.key_path = Path(key_path or DEFAULT_AUDIT_KEY_PATH)
        self._lock = threading.Lock()
        self._hmac_key = self._load_key()
        self._last_hash = self._tail_hash()

    def _load_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        private_file(self.key_path)
        key = self.key_path.read_bytes().strip()
        if not key:
            key = secrets.token_hex(32).encode()
            self.key_path.write_bytes(key)
        return key

    def _sign(self, body: dict, prev_hash: str) -> str:
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def _lines(self) -> Iterator[dict]:
        if not self.path.exists():
            return
        with self.path.open() as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _tail_hash(self) -> str:
        last = ""
        for raw in self._lines():
            last = raw.get("event_hash") or ""
        return last

    def _verified(self) -> Iterator[AuditEvent]:
        """Yield every event in order; raise at the first broken link."""
        expected_prev = ""
        for number, raw in enumerate(self._lines(), start=1):
            prev_hash = raw.pop("prev_hash", None) or ""
            event_hash = raw.pop("event_hash", None) or ""
            if prev_hash != expected_prev:
                raise AuditChainError(f"Audit chain broken at entry {number}: previous hash mismatch")
            if not hmac.compare_digest(self._sign(raw, prev_hash), event_hash):
                raise AuditChainError(f"Audit chain broken at entry {number}: event hash mismatch")
            expected_prev = event_hash
            yield AuditEvent.from_dict(raw, prev_hash=prev_hash or None, event_hash=event_hash)

    def _append(self, line: str) -> None:
        with self.path.open("a") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def log(
        self,
        event_type: EventType,
        wallet: Optional[str] = None,
        counterparty: Optional[str] = None,
        amount: Optional[str] = None,
        tx_hash: Optional[str] = None,
        request_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            wallet=wallet,
            counterparty=counterparty,
            amount=amount,
            tx_hash=tx_hash,
            request_id=request_id,
            success=success,
            reason=reason,
            details=details,
        )
        body = event.body()

        # Relay requests run on a threadpool; appends must not interleave.
        with self._lock:
            event.prev_hash = self._last_hash or None
            event.event_hash = self._sign(body, self._last_hash)
            self._append(event.to_json())
            self._last_hash = event.event_hash
        return event

    def verify(self) -> int:
        """Walk the whole chain and return the number of events in it."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        wallet: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Newest ``limit`` matching events. The whole chain is verified first."""
        matches = [
            e for e in self._verified()
            if (wallet is None or e.involves(wallet))
            and (event_type is None or e.event_type == event_type.value)
        ]
        return matches[-limit:]

    def summary(self, wallet: Optional[str] = None) -> dict:
        events = [e for e in self._verified() if wallet is None or e.involves(wallet)]
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
