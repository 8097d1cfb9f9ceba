"""
Relayer-side submission of chip-signed authorizations.

One server-held relayer account pays gas for every transaction. Relayer
nonces are handed out by `RelayerNonceAllocator` so that concurrent
requests never race on the same account nonce.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from eth_account.signers.local import LocalAccount

from .abi import (
    EXECUTE_PAYMENT,
    MULTICALL3_ADDRESS,
    PURCHASE_CREDITS,
    REGISTER,
    SPEND_CREDITS,
    decode_revert_reason,
    encode_multicall,
)
from .authorization import CreditPurchase, CreditSpend, PaymentAuth, normalize_address, normalize_signature
from .chain import DEFAULT_RECEIPT_TIMEOUT, ChainBackend
from .errors import (
    ChipRelayError,
    ContractRevertError,
    ExpiredSignatureError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    InvalidNonceError,
    InvalidSignatureError,
    OnChainRejectionError,
    RelayRPCError,
    UnauthorizedSignerError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# (marker found in the revert reason or message, error raised)
REVERT_MARKERS: tuple[tuple[str, type[OnChainRejectionError]], ...] = (
    ("UnauthorizedSigner", UnauthorizedSignerError),
    ("InvalidNonce", InvalidNonceError),
    ("ExpiredSignature", ExpiredSignatureError),
    ("InvalidSignature", InvalidSignatureError),
    ("ERC20InsufficientAllowance", InsufficientAllowanceError),
    ("ERC20: insufficient allowance", InsufficientAllowanceError),
    ("ERC20InsufficientBalance", InsufficientBalanceError),
    ("ERC20: transfer amount exceeds balance", InsufficientBalanceError),
)


def translate_revert(error: ContractRevertError) -> ContractRevertError:
    """Map a raw revert to the matching actionable error, or return it unchanged."""
    if isinstance(error, OnChainRejectionError):
        return error
    reason = decode_revert_reason(error.data) or ""
    haystack = f"{reason} {error}"
    for marker, error_cls in REVERT_MARKERS:
        if marker in haystack:
            return error_cls(raw_message=str(error), data=error.data)
    return error


@dataclass
class RelayReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    effective_gas_price: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "blockNumber": str(self.block_number),
            "gasUsed": str(self.gas_used),
            "effectiveGasPrice": str(self.effective_gas_price),
        }


class RelayerNonceAllocator:
    """
    Serializes "read nonce, build tx, submit, increment" for the relayer.

    The next nonce is cached after the first read. A failed submission drops
    the cache so the next caller resynchronises from the pending count.
    """

    def __init__(self, chain: ChainBackend, address: str):
        self.chain = chain
        self.address = address
        self._lock = threading.Lock()
        self._next: Optional[int] = None

    def submit(self, send: Callable[[int], str]) -> str:
        with self._lock:
            if self._next is None:
                self._next = self.chain.pending_nonce(self.address)
            nonce = self._next
            try:
                tx_hash = send(nonce)
            except Exception:
                self._next = None
                raise
            self._next = nonce + 1
            return tx_hash


class RelayExecutor:
    """Submits authorizations as the relayer and blocks until they confirm."""

    def __init__(
        self,
        chain: ChainBackend,
        relayer: LocalAccount,
        multicall_address: str = MULTICALL3_ADDRESS,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
    ):
        self.chain = chain
        self.relayer = relayer
        self.multicall_address = normalize_address(multicall_address)
        self.receipt_timeout = receipt_timeout
        self.nonces = RelayerNonceAllocator(chain, relayer.address)

    @property
    def relayer_address(self) -> str:
        return normalize_address(self.relayer.address)

    def execute_payment(self, contract: str, auth: PaymentAuth, signature: str) -> RelayReceipt:
        data = EXECUTE_PAYMENT.encode_call(auth.as_tuple(), _sig_bytes(signature))
        return self._submit(contract, data, "executePayment")

    def purchase_credits(self, contract: str, purchase: CreditPurchase, signature: str) -> RelayReceipt:
        data = PURCHASE_CREDITS.encode_call(purchase.as_tuple(), _sig_bytes(signature))
        return self._submit(contract, data, "purchaseCredits")

    def spend_credits(self, contract: str, spend: CreditSpend, signature: str) -> RelayReceipt:
        data = SPEND_CREDITS.encode_call(spend.as_tuple(), _sig_bytes(signature))
        return self._submit(contract, data, "spendCredits")

    def register_chip(self, contract: str, chip_address: str, owner: str, signature: str) -> RelayReceipt:
        data = REGISTER.encode_call(
            normalize_address(chip_address),
            normalize_address(owner),
            _sig_bytes(signature),
        )
        return self._submit(contract, data, "register")

    def execute_batch(self, contract: str, payments: Sequence[tuple[PaymentAuth, str]]) -> RelayReceipt:
        """All payments in one aggregate3 call with allowFailure=false: all land or none do."""
        if not payments:
            raise ValidationError("Batch must contain at least one payment")
        target = normalize_address(contract)
        calls = [EXECUTE_PAYMENT.encode_call(auth.as_tuple(), _sig_bytes(sig)) for auth, sig in payments]
        data = encode_multicall(target, calls, allow_failure=False)
        return self._submit(self.multicall_address, data, f"aggregate3[{len(calls)}]")

    def _rpc(self, label: str, call: Callable[[], Any]) -> Any:
        """Run a chain call; anything that is not already a ChipRelayError becomes RelayRPCError."""
        try:
            return call()
        except ChipRelayError:
            raise
        except Exception as e:
            logger.error("%s: RPC failure: %s", label, e)
            raise RelayRPCError(str(e) or type(e).__name__) from e

    def _submit(self, to: str, data: bytes, label: str) -> RelayReceipt:
        to = normalize_address(to)
        try:
            tx_hash = self._rpc(
                label,
                lambda: self.nonces.submit(
                    lambda nonce: self.chain.send_transaction(self.relayer, to, data, nonce)
                ),
            )
        except ContractRevertError as e:
            translated = translate_revert(e)
            logger.warning("%s to %s rejected: %s", label, to, translated)
            if translated is e:
                raise
            raise translated from e

        logger.info("%s submitted to %s: %s", label, to, tx_hash)
        receipt = self._rpc(label, lambda: self.chain.wait_for_receipt(tx_hash, timeout=self.receipt_timeout))
        if not receipt.succeeded:
            raise ContractRevertError(f"Transaction {tx_hash} reverted")
        logger.info("%s confirmed in block %s (gas %s)", label, receipt.block_number, receipt.gas_used)
        return RelayReceipt(
            tx_hash=tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            effective_gas_price=receipt.effective_gas_price,
        )


def _sig_bytes(signature: str) -> bytes:
    return bytes.fromhex(normalize_signature(signature)[2:])
