"""
Typed authorization structs signed by NFC chips.

Each struct is an EIP-712 message bound to a fixed domain
(name, version, chain id, verifying contract). The relayer submits
the struct plus the chip's signature; the contract recovers the chip
address and checks it against the registry.
"""

from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Optional

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import keccak

from .errors import ValidationError


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DOMAIN_VERSION = "1"

PAYMENTS_DOMAIN_NAME = "SplitHubPayments"
CREDIT_DOMAIN_NAME = "CreditToken"
REGISTRY_DOMAIN_NAME = "SplitHubRegistry"
DISCOVERY_DOMAIN_NAME = "ChipDiscovery"

SIGNATURE_VALIDITY_SECONDS = 3600

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX_RE = re.compile(r"^0x[a-fA-F0-9]*$")


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = str(address).strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def require_address(value: Any, label: str = "address") -> str:
    """normalize_address for untrusted input: raises ValidationError."""
    if not is_address(value):
        raise ValidationError(f"Invalid {label} address")
    return normalize_address(value)


def normalize_signature(signature: Any) -> str:
    """Validate a 65-byte ECDSA signature and return it as 0x-prefixed hex."""
    if isinstance(signature, (bytes, bytearray)):
        signature = "0x" + bytes(signature).hex()
    if not isinstance(signature, str):
        raise ValidationError("Signature must be a hex string")
    candidate = signature.strip()
    if not candidate.lower().startswith("0x"):
        candidate = "0x" + candidate
    if not _HEX_RE.match(candidate) or len(candidate) != 132:
        raise ValidationError("Signature must be 65 bytes of hex")
    return candidate.lower()


@dataclass(frozen=True)
class SigningDomain:
    """EIP-712 domain separator inputs."""

    name: str
    version: str
    chain_id: int
    verifying_contract: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        domain: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "chainId": int(self.chain_id),
        }
        if self.verifying_contract is not None:
            domain["verifyingContract"] = normalize_address(self.verifying_contract)
        return domain


def payments_domain(chain_id: int, contract: str) -> SigningDomain:
    return SigningDomain(PAYMENTS_DOMAIN_NAME, DOMAIN_VERSION, chain_id, normalize_address(contract))


def credit_domain(chain_id: int, contract: str) -> SigningDomain:
    return SigningDomain(CREDIT_DOMAIN_NAME, DOMAIN_VERSION, chain_id, normalize_address(contract))


def registry_domain(chain_id: int, contract: str) -> SigningDomain:
    return SigningDomain(REGISTRY_DOMAIN_NAME, DOMAIN_VERSION, chain_id, normalize_address(contract))


def discovery_domain(chain_id: int) -> SigningDomain:
    # No verifying contract: discovery signatures are not redeemable anywhere.
    return SigningDomain(DISCOVERY_DOMAIN_NAME, DOMAIN_VERSION, chain_id)


@dataclass(frozen=True)
class _TypedStruct:
    """Shared EIP-712 plumbing for the signable structs."""

    PRIMARY_TYPE: ClassVar[str] = ""
    TYPE_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = ()
    SIGNER_FIELD: ClassVar[Optional[str]] = None
    POSITIVE_FIELDS: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def eip712_types(cls) -> dict[str, list[dict[str, str]]]:
        return {cls.PRIMARY_TYPE: [{"name": n, "type": t} for n, t in cls.TYPE_FIELDS]}

    def message(self) -> dict[str, Any]:
        return {name: getattr(self, _attr(name)) for name, _ in self.TYPE_FIELDS}

    def as_tuple(self) -> tuple:
        """Positional values in ABI tuple order."""
        return tuple(getattr(self, _attr(name)) for name, _ in self.TYPE_FIELDS)

    def to_json(self) -> dict[str, Any]:
        """Wire form: integers as decimal strings, bytes as hex."""
        out: dict[str, Any] = {}
        for name, type_ in self.TYPE_FIELDS:
            value = getattr(self, _attr(name))
            if type_.startswith("uint"):
                out[name] = str(value)
            elif type_ == "bytes32":
                out[name] = "0x" + bytes(value).hex()
            else:
                out[name] = value
        return out

    @classmethod
    def from_json(cls, payload: Any, *, label: Optional[str] = None):
        """Parse the wire form, raising ValidationError on malformed input."""
        label = label or cls.PRIMARY_TYPE
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Invalid {label}: expected an object")
        missing = [name for name, _ in cls.TYPE_FIELDS if payload.get(name) in (None, "")]
        if missing:
            raise ValidationError(f"Invalid {label}: missing {', '.join(missing)}")

        values: dict[str, Any] = {}
        for name, type_ in cls.TYPE_FIELDS:
            raw = payload[name]
            if type_ == "address":
                if not is_address(raw):
                    raise ValidationError(f"Invalid address format for {name}")
                values[_attr(name)] = normalize_address(raw)
            elif type_.startswith("uint"):
                values[_attr(name)] = _parse_uint(raw, name)
            elif type_ == "bytes32":
                values[_attr(name)] = _parse_bytes32(raw, name)
            else:
                values[_attr(name)] = str(raw)

        for name in cls.POSITIVE_FIELDS:
            if values[_attr(name)] <= 0:
                raise ValidationError(f"Invalid {label}: {name} must be greater than 0")
        return cls(**values)

    @property
    def signer(self) -> Optional[str]:
        """Wallet that the contract anchors the authorization on."""
        if self.SIGNER_FIELD is None:
            return None
        return getattr(self, _attr(self.SIGNER_FIELD))

    def is_expired(self, now: Optional[int] = None) -> bool:
        deadline = getattr(self, "deadline", None)
        if deadline is None:
            return False
        return int(deadline) <= int(time.time() if now is None else now)


@dataclass(frozen=True)
class PaymentAuth(_TypedStruct):
    """Single-use authorization for one token transfer."""

    PRIMARY_TYPE: ClassVar[str] = "PaymentAuth"
    TYPE_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("payer", "address"),
        ("recipient", "address"),
        ("token", "address"),
        ("amount", "uint256"),
        ("nonce", "uint256"),
        ("deadline", "uint256"),
    )
    SIGNER_FIELD: ClassVar[Optional[str]] = "payer"
    POSITIVE_FIELDS: ClassVar[tuple[str, ...]] = ("amount",)

    payer: str
    recipient: str
    token: str
    amount: int
    nonce: int
    deadline: int


@dataclass(frozen=True)
class CreditPurchase(_TypedStruct):
    PRIMARY_TYPE: ClassVar[str] = "CreditPurchase"
    TYPE_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("buyer", "address"),
        ("usdcAmount", "uint256"),
        ("nonce", "uint256"),
        ("deadline", "uint256"),
    )
    SIGNER_FIELD: ClassVar[Optional[str]] = "buyer"
    POSITIVE_FIELDS: ClassVar[tuple[str, ...]] = ("usdcAmount",)

    buyer: str
    usdc_amount: int
    nonce: int
    deadline: int


@dataclass(frozen=True)
class CreditSpend(_TypedStruct):
    PRIMARY_TYPE: ClassVar[str] = "CreditSpend"
    TYPE_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("spender", "address"),
        ("amount", "uint256"),
        ("activityId", "uint256"),
        ("nonce", "uint256"),
        ("deadline", "uint256"),
    )
    SIGNER_FIELD: ClassVar[Optional[str]] = "spender"
    POSITIVE_FIELDS: ClassVar[tuple[str, ...]] = ("amount",)

    spender: str
    amount: int
    activity_id: int
    nonce: int
    deadline: int


@dataclass(frozen=True)
class ChipRegistration(_TypedStruct):
    """Binds an ephemeral chip address to the wallet that owns it."""

    PRIMARY_TYPE: ClassVar[str] = "ChipRegistration"
    TYPE_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("owner", "address"),
        ("chipAddress", "address"),
    )
    SIGNER_FIELD: ClassVar[Optional[str]] = "owner"

    owner: str
    chip_address: str


@dataclass(frozen=True)
class ChipDiscovery(_TypedStruct):
    """Throwaway message a chip signs only to reveal its address."""

    PRIMARY_TYPE: ClassVar[str] = "ChipDiscovery"
    TYPE_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("purpose", "string"),
        ("challenge", "bytes32"),
        ("issuedAt", "uint256"),
    )

    purpose: str
    challenge: bytes = field(default_factory=lambda: secrets.token_bytes(32))
    issued_at: int = field(default_factory=lambda: int(time.time()))


def build_payment_auth(
    payer: str,
    recipient: str,
    token: str,
    amount: int,
    nonce: int,
    deadline: Optional[int] = None,
    validity_seconds: int = SIGNATURE_VALIDITY_SECONDS,
) -> PaymentAuth:
    if int(amount) <= 0:
        raise ValidationError("Amount must be greater than 0")
    return PaymentAuth(
        payer=normalize_address(payer),
        recipient=normalize_address(recipient),
        token=normalize_address(token),
        amount=int(amount),
        nonce=int(nonce),
        deadline=_deadline(deadline, validity_seconds),
    )


def build_credit_purchase(
    buyer: str,
    usdc_amount: int,
    nonce: int,
    deadline: Optional[int] = None,
    validity_seconds: int = SIGNATURE_VALIDITY_SECONDS,
) -> CreditPurchase:
    if int(usdc_amount) <= 0:
        raise ValidationError("USDC amount must be greater than 0")
    return CreditPurchase(
        buyer=normalize_address(buyer),
        usdc_amount=int(usdc_amount),
        nonce=int(nonce),
        deadline=_deadline(deadline, validity_seconds),
    )


def build_credit_spend(
    spender: str,
    amount: int,
    activity_id: int,
    nonce: int,
    deadline: Optional[int] = None,
    validity_seconds: int = SIGNATURE_VALIDITY_SECONDS,
) -> CreditSpend:
    if int(amount) <= 0:
        raise ValidationError("Credit amount must be greater than 0")
    return CreditSpend(
        spender=normalize_address(spender),
        amount=int(amount),
        activity_id=int(activity_id),
        nonce=int(nonce),
        deadline=_deadline(deadline, validity_seconds),
    )


def build_chip_registration(owner: str, chip_address: str) -> ChipRegistration:
    return ChipRegistration(owner=normalize_address(owner), chip_address=normalize_address(chip_address))


def typed_data(struct: _TypedStruct, domain: SigningDomain) -> dict[str, Any]:
    """Full EIP-712 payload, as handed to a chip for signing."""
    domain_dict = domain.to_dict()
    return {
        "types": {**struct.eip712_types(), "EIP712Domain": _build_domain_type(domain_dict)},
        "primaryType": struct.PRIMARY_TYPE,
        "domain": domain_dict,
        "message": struct.message(),
    }


def signable_message(struct: _TypedStruct, domain: SigningDomain) -> SignableMessage:
    return encode_typed_data(domain.to_dict(), struct.eip712_types(), struct.message())


def struct_digest(struct: _TypedStruct, domain: SigningDomain) -> bytes:
    """EIP-712 digest the contract recovers the signer from."""
    signable = signable_message(struct, domain)
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def sign_struct(struct: _TypedStruct, domain: SigningDomain, private_key: Any) -> str:
    signed = Account.sign_message(signable_message(struct, domain), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_signer(struct: _TypedStruct, domain: SigningDomain, signature: str | bytes) -> str:
    """Recover the (chip) address that produced the signature."""
    sig = normalize_signature(signature)
    recovered = Account.recover_message(signable_message(struct, domain), signature=bytes.fromhex(sig[2:]))
    return normalize_address(recovered)


def _attr(type_field: str) -> str:
    """camelCase EIP-712 field name -> snake_case dataclass attribute."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", type_field).lower()


def _deadline(deadline: Optional[int], validity_seconds: int) -> int:
    if deadline is not None:
        return int(deadline)
    return int(time.time()) + int(validity_seconds)


def _parse_uint(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an unsigned integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise ValidationError(f"{field_name} must be an unsigned integer")
    if parsed < 0 or parsed >= 2**256:
        raise ValidationError(f"{field_name} out of uint256 range")
    return parsed


def _parse_bytes32(value: Any, field_name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)) and len(value) == 32:
        return bytes(value)
    if isinstance(value, str) and _HEX_RE.match(value) and len(value) == 66:
        return bytes.fromhex(value[2:])
    raise ValidationError(f"{field_name} must be 32 bytes of hex")


def _build_domain_type(domain: dict[str, Any]) -> list[dict[str, str]]:
    fields_: list[dict[str, str]] = []
    if "name" in domain:
        fields_.append({"name": "name", "type": "string"})
    if "version" in domain:
        fields_.append({"name": "version", "type": "string"})
    if "chainId" in domain:
        fields_.append({"name": "chainId", "type": "uint256"})
    if "verifyingContract" in domain:
        fields_.append({"name": "verifyingContract", "type": "address"})
    return fields_
