"""
NFC chip signing and the two-phase tap protocol.

A chip holds a non-exportable key and signs EIP-712 payloads on tap. Which
wallet a chip belongs to is only known after its address has been revealed,
so every authorization takes two taps:

1. discovery: the chip signs a throwaway `ChipDiscovery` message and its
   address is recovered;
2. the registry resolves that address to the owner wallet, the nonce oracle
   is read for the wallet, and the chip signs the real struct.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from eth_account import Account
from eth_account.messages import encode_typed_data

from .authorization import (
    SIGNATURE_VALIDITY_SECONDS,
    ZERO_ADDRESS,
    ChipDiscovery,
    ChipRegistration,
    CreditPurchase,
    CreditSpend,
    PaymentAuth,
    SigningDomain,
    _TypedStruct,
    build_chip_registration,
    build_credit_purchase,
    build_credit_spend,
    build_payment_auth,
    credit_domain,
    discovery_domain,
    normalize_address,
    normalize_signature,
    payments_domain,
    recover_signer,
    registry_domain,
    typed_data,
)
from .errors import ChipAlreadyRegisteredError, ChipMismatchError, ChipSigningError, ValidationError
from .oracle import NonceOracle, RegistryResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChipSignature:
    """What a chip hands back after a tap."""

    address: str
    signature: str


class ChipSigner(Protocol):
    def sign_typed_data(self, payload: dict[str, Any]) -> ChipSignature: ...


class LocalChipSigner:
    """Software chip backed by an in-process key. Development and tests only."""

    def __init__(self, private_key: Optional[str] = None):
        self._account = Account.from_key(private_key) if private_key else Account.create()
        self.taps = 0

    @property
    def address(self) -> str:
        return normalize_address(self._account.address)

    def sign_typed_data(self, payload: dict[str, Any]) -> ChipSignature:
        self.taps += 1
        signed = self._account.sign_message(encode_typed_data(full_message=payload))
        return ChipSignature(address=self.address, signature="0x" + bytes(signed.signature).hex())


@dataclass
class SignedAuthorization:
    """A chip-signed struct ready to be posted to a relay endpoint."""

    struct: _TypedStruct
    signature: str
    chip_address: str
    wallet: str
    contract: str

    def to_payload(self) -> dict[str, Any]:
        if isinstance(self.struct, ChipRegistration):
            return {
                "signer": self.struct.chip_address,
                "owner": self.struct.owner,
                "signature": self.signature,
                "contractAddress": self.contract,
            }
        key = {
            PaymentAuth: "auth",
            CreditPurchase: "purchase",
            CreditSpend: "spend",
        }[type(self.struct)]
        return {key: self.struct.to_json(), "signature": self.signature, "contractAddress": self.contract}


class TapFlow:
    """Drives a chip through discovery, resolution and the authorization tap."""

    def __init__(
        self,
        chip: ChipSigner,
        resolver: RegistryResolver,
        nonces: NonceOracle,
        chain_id: int,
        payments_contract: Optional[str] = None,
        credit_contract: Optional[str] = None,
        validity_seconds: int = SIGNATURE_VALIDITY_SECONDS,
    ):
        self.chip = chip
        self.resolver = resolver
        self.nonces = nonces
        self.chain_id = int(chain_id)
        self.payments_contract = payments_contract
        self.credit_contract = credit_contract
        self.validity_seconds = validity_seconds

    def discover(self, purpose: str) -> str:
        """First tap: reveal the chip address without authorizing anything."""
        message = ChipDiscovery(purpose=purpose)
        domain = discovery_domain(self.chain_id)
        chip_address, _ = self._tap(message, domain)
        logger.info("chip discovered: %s (%s)", chip_address, purpose)
        return chip_address

    def resolve(self, purpose: str) -> tuple[str, str]:
        """Discovery tap plus registry lookup: (chip_address, owner_wallet)."""
        chip_address = self.discover(purpose)
        return chip_address, self.resolver.resolve(chip_address)

    def pay(self, recipient: str, token: str, amount: int) -> SignedAuthorization:
        contract = self._require(self.payments_contract, "SplitHubPayments")
        chip_address, wallet = self.resolve(PaymentAuth.PRIMARY_TYPE)
        nonce = self.nonces.current_nonce(contract, wallet)
        auth = build_payment_auth(
            payer=wallet,
            recipient=recipient,
            token=token,
            amount=amount,
            nonce=nonce,
            validity_seconds=self.validity_seconds,
        )
        return self._authorize(auth, payments_domain(self.chain_id, contract), chip_address, wallet, contract)

    def purchase_credits(self, usdc_amount: int) -> SignedAuthorization:
        contract = self._require(self.credit_contract, "CreditToken")
        chip_address, wallet = self.resolve(CreditPurchase.PRIMARY_TYPE)
        nonce = self.nonces.current_nonce(contract, wallet)
        purchase = build_credit_purchase(
            buyer=wallet,
            usdc_amount=usdc_amount,
            nonce=nonce,
            validity_seconds=self.validity_seconds,
        )
        return self._authorize(purchase, credit_domain(self.chain_id, contract), chip_address, wallet, contract)

    def spend_credits(self, amount: int, activity_id: int) -> SignedAuthorization:
        contract = self._require(self.credit_contract, "CreditToken")
        chip_address, wallet = self.resolve(CreditSpend.PRIMARY_TYPE)
        nonce = self.nonces.current_nonce(contract, wallet)
        spend = build_credit_spend(
            spender=wallet,
            amount=amount,
            activity_id=activity_id,
            nonce=nonce,
            validity_seconds=self.validity_seconds,
        )
        return self._authorize(spend, credit_domain(self.chain_id, contract), chip_address, wallet, contract)

    def register(self, owner: str) -> SignedAuthorization:
        """Bind the tapped chip to `owner`. Refuses chips that already have an owner."""
        chip_address = self.discover(ChipRegistration.PRIMARY_TYPE)
        current = self.resolver.owner_of(chip_address)
        if current != ZERO_ADDRESS:
            raise ChipAlreadyRegisteredError(chip_address, current)
        registration = build_chip_registration(owner=owner, chip_address=chip_address)
        registry = self.resolver.registry_address
        return self._authorize(
            registration,
            registry_domain(self.chain_id, registry),
            chip_address,
            registration.owner,
            registry,
        )

    def _authorize(
        self,
        struct: _TypedStruct,
        domain: SigningDomain,
        chip_address: str,
        wallet: str,
        contract: str,
    ) -> SignedAuthorization:
        signer, signature = self._tap(struct, domain)
        if signer != chip_address:
            raise ChipMismatchError(chip_address, signer)
        return SignedAuthorization(
            struct=struct,
            signature=signature,
            chip_address=chip_address,
            wallet=wallet,
            contract=contract,
        )

    def _tap(self, struct: _TypedStruct, domain: SigningDomain) -> tuple[str, str]:
        """One tap: returns (recovered chip address, signature)."""
        reply = self.chip.sign_typed_data(typed_data(struct, domain))
        try:
            signature = normalize_signature(reply.signature)
        except ValidationError as e:
            raise ChipSigningError(f"Chip returned a malformed signature: {e}") from e
        recovered = recover_signer(struct, domain, signature)
        if reply.address and normalize_address(reply.address) != recovered:
            raise ChipSigningError(
                f"Chip reported address {reply.address} but signature recovers to {recovered}"
            )
        return recovered, signature

    @staticmethod
    def _require(contract: Optional[str], label: str) -> str:
        if not contract:
            raise ValidationError(f"{label} contract address is required")
        return normalize_address(contract)
