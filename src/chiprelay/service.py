"""
Relay orchestration.

Validates a relay request, submits it through the relayer, audits the
outcome and, for confirmed payments and credit purchases, runs the circle
auto-split as a side effect that can never fail the relay.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Mapping, Optional, Sequence

from .audit import AuditTrail, EventType
from .authorization import (
    CreditPurchase,
    CreditSpend,
    PaymentAuth,
    ZERO_ADDRESS,
    normalize_signature,
    require_address,
)
from .chain import ChainBackend, Web3Backend
from .circles import CircleDirectory
from .config import RelayConfig
from .errors import (
    ChipAlreadyRegisteredError,
    ExpiredSignatureError,
    ValidationError,
)
from .expenses import ExpenseLedger
from .money import credits_for_usdc
from .notify import Notifier, NullNotifier, WebhookNotifier
from .oracle import NonceOracle, RegistryResolver
from .relay import RelayExecutor, RelayReceipt
from .requests import PaymentRequestBook
from .split import CircleSplitEngine, FlowKind
from .store import Database

logger = logging.getLogger(__name__)


class RelayService:
    """Everything the HTTP layer needs, wired from one RelayConfig."""

    def __init__(
        self,
        config: RelayConfig,
        chain: Optional[ChainBackend] = None,
        db: Optional[Database] = None,
        audit: Optional[AuditTrail] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.chain = chain or Web3Backend(config.rpc_url, config.chain_id)
        self.db = db or Database(config.db_path)
        self.audit = audit
        if notifier is None:
            notifier = WebhookNotifier(config.notify_url) if config.notify_url else NullNotifier()
        self.notifier = notifier
        self.clock = clock

        self.circles = CircleDirectory(self.db)
        self.expenses = ExpenseLedger(self.db)
        self.requests = PaymentRequestBook(
            self.db,
            notifier=self.notifier,
            audit=self.audit,
            app_base_url=config.app_base_url,
            clock=clock,
        )
        self.splitter = CircleSplitEngine(self.circles, self.expenses, self.requests, audit=self.audit)
        self.nonces = NonceOracle(self.chain)

        self._executor: Optional[RelayExecutor] = None
        self._executor_lock = threading.Lock()

    @property
    def executor(self) -> RelayExecutor:
        """Built on first use so a server without a relayer key still serves reads."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = RelayExecutor(
                    self.chain,
                    self.config.relayer_account(),
                    multicall_address=self.config.multicall_address,
                    receipt_timeout=self.config.receipt_timeout,
                )
            return self._executor

    @property
    def relayer_address(self) -> Optional[str]:
        if not self.config.relayer_private_key:
            return None
        return self.executor.relayer_address

    def relay_payment(
        self,
        auth: Any,
        signature: Any,
        contract_address: Optional[str] = None,
    ) -> dict[str, Any]:
        if not auth or not signature:
            raise ValidationError("Missing required fields: auth, signature")
        payment = PaymentAuth.from_json(auth, label="auth")
        signature = normalize_signature(signature)
        executor = self.executor
        contract = self.config.contract_for(self.config.payments_address, contract_address, "SplitHubPayments")
        self._check_deadline(payment)

        receipt = self._relayed(
            "executePayment",
            payment.payer,
            str(payment.amount),
            lambda: executor.execute_payment(contract, payment, signature),
            counterparty=payment.recipient,
        )
        split = self.splitter.safe_split(payment.payer, payment.amount, payment.token, FlowKind.PAYMENT)
        return {
            "success": True,
            "txHash": receipt.tx_hash,
            "blockNumber": str(receipt.block_number),
            "gasUsed": str(receipt.gas_used),
            "circleSplit": split.to_dict() if split else None,
        }

    def relay_batch(
        self,
        payments: Any,
        contract_address: Optional[str] = None,
    ) -> dict[str, Any]:
        if not payments or not isinstance(payments, Sequence) or isinstance(payments, (str, bytes)):
            raise ValidationError("Missing or empty payments array")
        items: list[tuple[PaymentAuth, str]] = []
        for entry in payments:
            if not isinstance(entry, Mapping) or not entry.get("signature"):
                raise ValidationError("Invalid payment: missing required fields")
            items.append((PaymentAuth.from_json(entry, label="payment"), normalize_signature(entry["signature"])))

        executor = self.executor
        contract = self.config.contract_for(self.config.payments_address, contract_address, "SplitHubPayments")
        for auth, _ in items:
            self._check_deadline(auth)

        receipt = self._relayed(
            f"aggregate3[{len(items)}]",
            None,
            str(sum(auth.amount for auth, _ in items)),
            lambda: executor.execute_batch(contract, items),
        )
        self._log_quietly(
            EventType.BATCH_SUBMITTED,
            tx_hash=receipt.tx_hash,
            details={"paymentsCount": len(items), "payers": sorted({a.payer for a, _ in items})},
        )
        return {
            "success": True,
            "txHash": receipt.tx_hash,
            "blockNumber": str(receipt.block_number),
            "paymentsCount": len(items),
        }

    def relay_credit_purchase(
        self,
        purchase: Any,
        signature: Any,
        contract_address: Optional[str] = None,
    ) -> dict[str, Any]:
        if not purchase or not signature:
            raise ValidationError("Missing required fields: purchase, signature")
        parsed = CreditPurchase.from_json(purchase, label="purchase")
        signature = normalize_signature(signature)
        executor = self.executor
        contract = self.config.contract_for(self.config.credit_token_address, contract_address, "CreditToken")
        self._check_deadline(parsed)

        receipt = self._relayed(
            "purchaseCredits",
            parsed.buyer,
            str(parsed.usdc_amount),
            lambda: executor.purchase_credits(contract, parsed, signature),
        )
        split = self.splitter.safe_split(
            parsed.buyer, parsed.usdc_amount, self.config.usdc_address, FlowKind.CREDIT_PURCHASE
        )
        return {
            "success": True,
            "txHash": receipt.tx_hash,
            "blockNumber": str(receipt.block_number),
            "creditsMinted": str(credits_for_usdc(parsed.usdc_amount)),
            "gasUsed": str(receipt.gas_used),
            "effectiveGasPrice": str(receipt.effective_gas_price),
            "chainId": self.config.chain_id,
            "circleSplit": split.to_dict() if split else None,
        }

    def relay_credit_spend(
        self,
        spend: Any,
        signature: Any,
        contract_address: Optional[str] = None,
    ) -> dict[str, Any]:
        if not spend or not signature:
            raise ValidationError("Missing required fields: spend, signature")
        parsed = CreditSpend.from_json(spend, label="spend")
        signature = normalize_signature(signature)
        executor = self.executor
        contract = self.config.contract_for(self.config.credit_token_address, contract_address, "CreditToken")
        self._check_deadline(parsed)

        receipt = self._relayed(
            "spendCredits",
            parsed.spender,
            str(parsed.amount),
            lambda: executor.spend_credits(contract, parsed, signature),
        )
        return {
            "success": True,
            "txHash": receipt.tx_hash,
            "blockNumber": str(receipt.block_number),
            "creditsSpent": str(parsed.amount),
            "activityId": str(parsed.activity_id),
        }

    def register_chip(
        self,
        signer: Any,
        owner: Any,
        signature: Any,
        contract_address: Optional[str] = None,
    ) -> dict[str, Any]:
        if not signer or not owner or not signature:
            raise ValidationError("Missing required fields: signer, owner, signature")
        chip = require_address(signer, "signer")
        owner = require_address(owner, "owner")
        signature = normalize_signature(signature)
        executor = self.executor
        registry = self.config.contract_for(self.config.registry_address, contract_address, "SplitHubRegistry")

        current = RegistryResolver(self.chain, registry).owner_of(chip)
        if current != ZERO_ADDRESS:
            raise ChipAlreadyRegisteredError(chip, current)

        receipt = self._relayed(
            "register",
            owner,
            None,
            lambda: executor.register_chip(registry, chip, owner, signature),
            counterparty=chip,
        )
        self._log_quietly(EventType.CHIP_REGISTERED, wallet=owner, counterparty=chip, tx_hash=receipt.tx_hash)
        try:
            self.db.upsert_user(owner, chip_address=chip)
        except Exception:
            logger.exception("chip %s registered on-chain but user record for %s not updated", chip, owner)
        return {
            "success": True,
            "txHash": receipt.tx_hash,
            "blockNumber": str(receipt.block_number),
        }

    def current_nonce(self, contract: str, account: str) -> int:
        return self.nonces.current_nonce(contract, account)

    def owner_of(self, chip_address: str, contract_address: Optional[str] = None) -> str:
        registry = self.config.contract_for(self.config.registry_address, contract_address, "SplitHubRegistry")
        return RegistryResolver(self.chain, registry).owner_of(chip_address)

    def _check_deadline(self, struct: PaymentAuth | CreditPurchase | CreditSpend) -> None:
        # Expired authorizations would revert on-chain; reject them before paying gas.
        if struct.is_expired(int(self.clock())):
            raise ExpiredSignatureError(raw_message=f"deadline {struct.deadline} has passed")

    def _relayed(
        self,
        label: str,
        wallet: Optional[str],
        amount: Optional[str],
        submit: Callable[[], RelayReceipt],
        counterparty: Optional[str] = None,
    ) -> RelayReceipt:
        self._log(
            EventType.RELAY_SUBMITTED,
            wallet=wallet,
            counterparty=counterparty,
            amount=amount,
            details={"call": label},
        )
        try:
            receipt = submit()
        except Exception as e:
            self._log_quietly(
                EventType.RELAY_REJECTED,
                wallet=wallet,
                counterparty=counterparty,
                amount=amount,
                success=False,
                reason=str(e),
                details={"call": label, "error": type(e).__name__},
            )
            raise
        self._log_quietly(
            EventType.RELAY_CONFIRMED,
            wallet=wallet,
            counterparty=counterparty,
            amount=amount,
            tx_hash=receipt.tx_hash,
            details={"call": label, **receipt.to_dict()},
        )
        return receipt

    def _log(self, event_type: EventType, **fields: Any) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **fields)

    def _log_quietly(self, event_type: EventType, **fields: Any) -> None:
        """Audit write for an outcome that is already final; failures are only logged."""
        try:
            self._log(event_type, **fields)
        except Exception:
            logger.exception("audit write %s failed", event_type.value)
