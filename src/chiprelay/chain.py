"""
Chain access for the relayer.

`ChainBackend` is the narrow surface the relay core needs: read-only
calls, the relayer's pending nonce, raw transaction submission and
receipt waits. `Web3Backend` implements it over JSON-RPC with web3.py.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from .errors import ContractRevertError, ReceiptTimeoutError

logger = logging.getLogger(__name__)


DEFAULT_RECEIPT_TIMEOUT = 120.0


@dataclass
class TxReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    status: int
    effective_gas_price: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainBackend(Protocol):
    chain_id: int

    def call(self, to: str, data: bytes) -> bytes: ...

    def pending_nonce(self, address: str) -> int: ...

    def send_transaction(self, account: LocalAccount, to: str, data: bytes, nonce: int) -> str: ...

    def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> TxReceipt: ...


class Web3Backend:
    """JSON-RPC backend. Reverts surface as ContractRevertError with the raw revert data."""

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        request_timeout: float = 30.0,
        gas_buffer: float = 1.2,
        w3: Optional[Any] = None,
    ):
        self.rpc_url = rpc_url
        self.chain_id = int(chain_id)
        self.gas_buffer = gas_buffer
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))

    def call(self, to: str, data: bytes) -> bytes:
        try:
            return bytes(self.w3.eth.call({"to": Web3.to_checksum_address(to), "data": Web3.to_hex(data)}))
        except ContractLogicError as e:
            raise _revert_from(e) from e

    def pending_nonce(self, address: str) -> int:
        return int(self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"))

    def send_transaction(self, account: LocalAccount, to: str, data: bytes, nonce: int) -> str:
        tx: dict[str, Any] = {
            "from": account.address,
            "to": Web3.to_checksum_address(to),
            "data": Web3.to_hex(data),
            "value": 0,
            "nonce": int(nonce),
            "chainId": self.chain_id,
            "gasPrice": self.w3.eth.gas_price,
        }
        try:
            # estimate_gas simulates the call, so reverts are caught before spending gas
            tx["gas"] = int(self.w3.eth.estimate_gas(tx) * self.gas_buffer)
        except ContractLogicError as e:
            raise _revert_from(e) from e

        signed = account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> TxReceipt:
        wait = DEFAULT_RECEIPT_TIMEOUT if timeout is None else timeout
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=wait)
        except TimeExhausted as e:
            raise ReceiptTimeoutError(tx_hash, wait) from e
        return TxReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            status=int(receipt["status"]),
            effective_gas_price=int(receipt.get("effectiveGasPrice", 0) or 0),
        )


def _revert_from(exc: ContractLogicError) -> ContractRevertError:
    data = getattr(exc, "data", None)
    if isinstance(data, dict):
        data = data.get("data")
    if isinstance(data, (bytes, bytearray)):
        data = Web3.to_hex(data)
    message = getattr(exc, "message", None) or str(exc)
    return ContractRevertError(str(message), data=data if isinstance(data, str) else None)
