"""Shared fixtures: an in-memory chain that behaves like the deployed contracts."""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass

import pytest
from eth_abi import encode
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from chiprelay import audit as audit_module
from chiprelay import store as store_module
from chiprelay.abi import (
    AGGREGATE3,
    EXECUTE_PAYMENT,
    MULTICALL3_ADDRESS,
    NONCES,
    OWNER_OF,
    PURCHASE_CREDITS,
    REGISTER,
    SPEND_CREDITS,
    decode_call,
    error_selector,
)
from chiprelay.audit import AuditTrail
from chiprelay.authorization import (
    ZERO_ADDRESS,
    ChipRegistration,
    CreditPurchase,
    CreditSpend,
    PaymentAuth,
    credit_domain,
    normalize_address,
    payments_domain,
    recover_signer,
    registry_domain,
)
from chiprelay.chain import TxReceipt
from chiprelay.chip import LocalChipSigner, TapFlow
from chiprelay.config import BASE_SEPOLIA_USDC, RelayConfig
from chiprelay.errors import ContractRevertError, ReceiptTimeoutError
from chiprelay.notify import NullNotifier
from chiprelay.oracle import NonceOracle, RegistryResolver
from chiprelay.service import RelayService


CHAIN_ID = 84532
PAYMENTS = "0x" + "11" * 20
CREDIT = "0x" + "22" * 20
REGISTRY = "0x" + "33" * 20
USDC = BASE_SEPOLIA_USDC
RELAYER_KEY = "0x" + "ab" * 32


def revert(name: str, message: str = "execution reverted") -> ContractRevertError:
    return ContractRevertError(f"{message}: {name}", data=error_selector(name))


class FakeChain:
    """
    ChainBackend holding contract state in dicts.

    Implements the payments, credit token, registry and Multicall3 contracts
    closely enough for the relay to be exercised end to end: signatures are
    recovered against the right EIP-712 domain, nonces and deadlines are
    enforced, and token movements check balance and allowance. Reverts are
    raised from send_transaction, the way gas estimation surfaces them.
    """

    def __init__(self, chain_id: int = CHAIN_ID):
        self.chain_id = chain_id
        self.payments = normalize_address(PAYMENTS)
        self.credit = normalize_address(CREDIT)
        self.registry = normalize_address(REGISTRY)
        self.usdc = normalize_address(USDC)
        self.multicall = normalize_address(MULTICALL3_ADDRESS)

        self.state = {
            "nonces": {},       # (contract, account) -> int
            "owners": {},       # chip -> wallet
            "balances": {},     # (token, wallet) -> int
            "allowances": {},   # (token, owner, spender) -> int
            "credits": {},      # wallet -> int
        }
        self.relayer_nonces: dict[str, int] = {}
        self.sent: list[tuple[str, bytes, int]] = []
        self.receipts: dict[str, TxReceipt] = {}
        self.block_number = 1000
        self.revert_receipts = False
        self.stall_receipts = False
        self._lock = threading.Lock()

    # test helpers

    def fund(self, wallet: str, amount: int, token: str = USDC) -> None:
        wallet = normalize_address(wallet)
        token = normalize_address(token)
        self.state["balances"][(token, wallet)] = self.balance(wallet, token) + amount
        for spender in (self.payments, self.credit):
            self.state["allowances"][(token, wallet, spender)] = 2**255

    def register(self, chip: str, wallet: str) -> None:
        self.state["owners"][normalize_address(chip)] = normalize_address(wallet)

    def balance(self, wallet: str, token: str = USDC) -> int:
        return self.state["balances"].get((normalize_address(token), normalize_address(wallet)), 0)

    def nonce_of(self, contract: str, account: str) -> int:
        return self.state["nonces"].get((normalize_address(contract), normalize_address(account)), 0)

    # ChainBackend

    def call(self, to: str, data: bytes) -> bytes:
        to = normalize_address(to)
        if to not in (self.payments, self.credit, self.registry, self.multicall):
            return b""
        fn, args = decode_call(data)
        if fn is NONCES:
            return encode(["uint256"], [self.nonce_of(to, args[0])])
        if fn is OWNER_OF:
            owner = self.state["owners"].get(normalize_address(args[0]), ZERO_ADDRESS)
            return encode(["address"], [to_checksum_address(owner)])
        raise AssertionError(f"eth_call of state-changing {fn.name}")

    def pending_nonce(self, address: str) -> int:
        return self.relayer_nonces.get(normalize_address(address), 0)

    def send_transaction(self, account, to: str, data: bytes, nonce: int) -> str:
        sender = normalize_address(account.address)
        with self._lock:
            if nonce != self.relayer_nonces.get(sender, 0):
                raise ValueError(f"nonce too low: got {nonce}, expected {self.relayer_nonces.get(sender, 0)}")
            snapshot = copy.deepcopy(self.state)
            try:
                self._execute(normalize_address(to), data)
            except Exception:
                self.state = snapshot
                raise
            self.relayer_nonces[sender] = nonce + 1
            self.block_number += 1
            tx_hash = "0x" + keccak(sender.encode() + nonce.to_bytes(32, "big") + data).hex()
            self.sent.append((normalize_address(to), data, nonce))
            self.receipts[tx_hash] = TxReceipt(
                tx_hash=tx_hash,
                block_number=self.block_number,
                gas_used=65000,
                status=0 if self.revert_receipts else 1,
                effective_gas_price=1_000_000,
            )
            return tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout=None) -> TxReceipt:
        if self.stall_receipts:
            raise ReceiptTimeoutError(tx_hash, timeout or 0)
        return self.receipts[tx_hash]

    # contract semantics

    def _execute(self, to: str, data: bytes) -> None:
        fn, args = decode_call(data)
        if to == self.multicall and fn is AGGREGATE3:
            (calls,) = args
            for target, allow_failure, calldata in calls:
                assert not allow_failure
                self._execute(normalize_address(target), calldata)
        elif to == self.payments and fn is EXECUTE_PAYMENT:
            self._execute_payment(_struct(PaymentAuth, args[0]), args[1])
        elif to == self.credit and fn is PURCHASE_CREDITS:
            self._purchase_credits(_struct(CreditPurchase, args[0]), args[1])
        elif to == self.credit and fn is SPEND_CREDITS:
            self._spend_credits(_struct(CreditSpend, args[0]), args[1])
        elif to == self.registry and fn is REGISTER:
            self._register(normalize_address(args[0]), normalize_address(args[1]), args[2])
        else:
            raise ContractRevertError(f"execution reverted: {fn.name} not supported by {to}")

    def _check_authorization(self, contract, domain, struct, signer, signature) -> None:
        if struct.deadline <= int(time.time()):
            raise revert("ExpiredSignature")
        key = (contract, signer)
        if struct.nonce != self.state["nonces"].get(key, 0):
            raise revert("InvalidNonce")
        try:
            chip = recover_signer(struct, domain, signature)
        except Exception:
            raise revert("InvalidSignature")
        if self.state["owners"].get(chip) != signer:
            raise revert("UnauthorizedSigner")
        self.state["nonces"][key] = struct.nonce + 1

    def _transfer_from(self, token: str, owner: str, spender: str, to: str, amount: int) -> None:
        allowance = self.state["allowances"].get((token, owner, spender), 0)
        if allowance < amount:
            raise revert("ERC20InsufficientAllowance")
        balance = self.state["balances"].get((token, owner), 0)
        if balance < amount:
            raise revert("ERC20InsufficientBalance")
        self.state["allowances"][(token, owner, spender)] = allowance - amount
        self.state["balances"][(token, owner)] = balance - amount
        self.state["balances"][(token, to)] = self.state["balances"].get((token, to), 0) + amount

    def _execute_payment(self, auth: PaymentAuth, signature: bytes) -> None:
        domain = payments_domain(self.chain_id, self.payments)
        self._check_authorization(self.payments, domain, auth, auth.payer, signature)
        self._transfer_from(auth.token, auth.payer, self.payments, auth.recipient, auth.amount)

    def _purchase_credits(self, purchase: CreditPurchase, signature: bytes) -> None:
        domain = credit_domain(self.chain_id, self.credit)
        self._check_authorization(self.credit, domain, purchase, purchase.buyer, signature)
        self._transfer_from(self.usdc, purchase.buyer, self.credit, self.credit, purchase.usdc_amount)
        minted = purchase.usdc_amount * 10 * 10**18 // 10**6
        self.state["credits"][purchase.buyer] = self.state["credits"].get(purchase.buyer, 0) + minted

    def _spend_credits(self, spend: CreditSpend, signature: bytes) -> None:
        domain = credit_domain(self.chain_id, self.credit)
        self._check_authorization(self.credit, domain, spend, spend.spender, signature)
        held = self.state["credits"].get(spend.spender, 0)
        if held < spend.amount:
            raise revert("ERC20InsufficientBalance")
        self.state["credits"][spend.spender] = held - spend.amount

    def _register(self, chip: str, owner: str, signature: bytes) -> None:
        if self.state["owners"].get(chip):
            raise ContractRevertError("execution reverted: chip already registered")
        registration = ChipRegistration(owner=owner, chip_address=chip)
        try:
            signer = recover_signer(registration, registry_domain(self.chain_id, self.registry), signature)
        except Exception:
            raise revert("InvalidSignature")
        if signer != chip:
            raise revert("InvalidSignature")
        self.state["owners"][chip] = owner


def _struct(cls, values: tuple):
    return cls(*[normalize_address(v) if isinstance(v, str) else int(v) for v in values])


@dataclass
class Holder:
    """A wallet with a registered chip."""

    account: object
    chip: LocalChipSigner

    @property
    def wallet(self) -> str:
        return normalize_address(self.account.address)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    monkeypatch.delenv("CHIPRELAY_AUDIT_HMAC_KEY", raising=False)
    monkeypatch.setattr(audit_module, "DEFAULT_AUDIT_PATH", tmp_path / "home" / "audit.jsonl")
    monkeypatch.setattr(audit_module, "DEFAULT_AUDIT_KEY_PATH", tmp_path / "home-secrets" / "audit_hmac.key")
    monkeypatch.setattr(store_module, "DEFAULT_DB_PATH", tmp_path / "home" / "chiprelay.sqlite3")


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def config(tmp_path):
    return RelayConfig(
        chain_id=CHAIN_ID,
        relayer_private_key=RELAYER_KEY,
        payments_address=PAYMENTS,
        credit_token_address=CREDIT,
        registry_address=REGISTRY,
        db_path=tmp_path / "chiprelay.sqlite3",
        audit_path=tmp_path / "audit.jsonl",
    )


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")


@pytest.fixture
def notifier():
    return NullNotifier()


@pytest.fixture
def service(config, chain, audit, notifier):
    return RelayService(config, chain=chain, audit=audit, notifier=notifier)


@pytest.fixture
def make_holder(chain):
    """Factory: new wallet, chip registered to it, funded with USDC."""

    def _make(usdc: int = 1_000_000_000) -> Holder:
        holder = Holder(account=Account.create(), chip=LocalChipSigner())
        chain.register(holder.chip.address, holder.wallet)
        if usdc:
            chain.fund(holder.wallet, usdc)
        return holder

    return _make


@pytest.fixture
def tap_flow(chain):
    """Factory: TapFlow for a chip against the fake contracts."""

    def _flow(chip, **kwargs) -> TapFlow:
        return TapFlow(
            chip,
            RegistryResolver(chain, REGISTRY),
            NonceOracle(chain),
            CHAIN_ID,
            payments_contract=PAYMENTS,
            credit_contract=CREDIT,
            **kwargs,
        )

    return _flow
