"""
Circle auto-split.

After a confirmed payment or credit purchase, a payer with an active circle
splits the total equally with its members: one expense for the books and,
for payments, one payment request per member owed back to the payer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .audit import AuditTrail, EventType
from .authorization import require_address
from .circles import CircleDirectory
from .expenses import ExpenseLedger
from .money import USDC_DECIMALS, format_units, split_share
from .requests import PaymentRequestBook

logger = logging.getLogger(__name__)


class FlowKind(str, Enum):
    PAYMENT = "payment"
    CREDIT_PURCHASE = "credit_purchase"


@dataclass
class CircleSplitResult:
    circle_name: str
    member_count: int
    members_notified: int
    split_amount: str
    expense_id: str

    def to_dict(self) -> dict:
        return {
            "circleName": self.circle_name,
            "memberCount": self.member_count,
            "membersNotified": self.members_notified,
            "splitAmount": self.split_amount,
            "expenseId": self.expense_id,
        }


class CircleSplitEngine:
    """Splits a confirmed amount across the payer's active circle."""

    def __init__(
        self,
        circles: CircleDirectory,
        expenses: ExpenseLedger,
        requests: PaymentRequestBook,
        audit: Optional[AuditTrail] = None,
        decimals: int = USDC_DECIMALS,
    ):
        self.circles = circles
        self.expenses = expenses
        self.requests = requests
        self.audit = audit
        self.decimals = decimals

    def split(
        self,
        payer: str,
        total: int,
        token: str,
        kind: FlowKind = FlowKind.PAYMENT,
    ) -> Optional[CircleSplitResult]:
        """
        Returns None when the payer has no active circle or the circle is empty.

        share = total // (members + 1); the remainder stays with the payer.
        """
        payer = require_address(payer, "payer")
        token = require_address(token, "token")

        circle = self.circles.get_active(payer)
        if circle is None:
            return None
        members = [m for m in circle.members if m != payer]
        if not members:
            return None

        share = split_share(int(total), len(members))
        share_formatted = format_units(share, self.decimals)
        logger.info(
            "circle %s: %s / %d = %s each",
            circle.name,
            format_units(int(total), self.decimals),
            len(members) + 1,
            share_formatted,
        )

        expense = self.expenses.create(
            creator=payer,
            description=f"Circle: {circle.name}",
            total_amount=int(total),
            token_address=token,
            participants=[payer, *members],
            share_amount=share,
        )

        notified = 0
        if kind is FlowKind.PAYMENT and share > 0:
            memo = f"Circle split: {circle.name}"
            for member in members:
                try:
                    self.requests.issue(
                        payer=member,
                        recipient=payer,
                        token=token,
                        amount=share_formatted,
                        memo=memo,
                    )
                except Exception:
                    logger.exception("payment request for circle member %s failed", member)
                    continue
                notified += 1

        result = CircleSplitResult(
            circle_name=circle.name,
            member_count=len(members),
            members_notified=notified,
            split_amount=share_formatted,
            expense_id=expense.id,
        )
        self._audit(
            EventType.SPLIT_CREATED,
            wallet=payer,
            amount=share_formatted,
            details={"kind": kind.value, **result.to_dict()},
        )
        return result

    def safe_split(
        self,
        payer: str,
        total: int,
        token: str,
        kind: FlowKind = FlowKind.PAYMENT,
    ) -> Optional[CircleSplitResult]:
        """split() for use after a confirmed relay: failures are logged, never raised."""
        try:
            return self.split(payer, total, token, kind)
        except Exception as e:
            logger.exception("circle auto-split failed for %s (non-critical)", payer)
            self._audit(
                EventType.SPLIT_FAILED,
                wallet=str(payer).lower(),
                success=False,
                reason=f"{type(e).__name__}: {e}",
                details={"kind": kind.value},
            )
            return None

    def _audit(self, event_type: EventType, **fields) -> None:
        # Split rows are committed before this runs; audit failures are logged only.
        if self.audit is None:
            return
        try:
            self.audit.log(event_type, **fields)
        except Exception:
            logger.exception("audit write %s failed", event_type.value)
