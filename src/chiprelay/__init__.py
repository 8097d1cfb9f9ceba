"""
chiprelay: gasless NFC-chip payment relay.

A chip's EIP-712 signature authorizes a token transfer; a server-held
relayer pays the gas, and confirmed payments are split across the payer's
active circle as payment requests.
"""

__version__ = "0.1.0"

from .authorization import (
    ChipDiscovery,
    ChipRegistration,
    CreditPurchase,
    CreditSpend,
    PaymentAuth,
    SigningDomain,
)
from .chip import ChipSigner, LocalChipSigner, SignedAuthorization, TapFlow
from .config import RelayConfig
from .errors import ChipRelayError
from .oracle import NonceOracle, RegistryResolver
from .relay import RelayExecutor, RelayReceipt
from .requests import PaymentRequestBook
from .service import RelayService
from .split import CircleSplitEngine

__all__ = [
    "ChipDiscovery",
    "ChipRegistration",
    "ChipRelayError",
    "ChipSigner",
    "CircleSplitEngine",
    "CreditPurchase",
    "CreditSpend",
    "LocalChipSigner",
    "NonceOracle",
    "PaymentAuth",
    "PaymentRequestBook",
    "RegistryResolver",
    "RelayConfig",
    "RelayExecutor",
    "RelayReceipt",
    "RelayService",
    "SignedAuthorization",
    "SigningDomain",
    "TapFlow",
]
