"""Read-only contract lookups: authorization nonces and chip ownership."""

from __future__ import annotations

import logging

from .abi import NONCES, OWNER_OF
from .authorization import ZERO_ADDRESS, is_address, normalize_address, require_address
from .chain import ChainBackend
from .errors import ChipNotRegisteredError, ConfigurationError

logger = logging.getLogger(__name__)


def _checked_contract(value: str, label: str) -> str:
    if not value or not is_address(value) or normalize_address(value) == ZERO_ADDRESS:
        raise ConfigurationError(f"{label} not deployed on this chain")
    return normalize_address(value)


class NonceOracle:
    """
    Reads the per-signer authorization counter (`nonces(address)`).

    The value is read fresh for every authorization; nothing is cached, so a
    caller that relays twice must ask again after the first relay confirms.
    """

    def __init__(self, chain: ChainBackend):
        self.chain = chain

    def current_nonce(self, contract: str, account: str) -> int:
        contract = _checked_contract(contract, "Nonce contract")
        account = require_address(account, "account")
        raw = self.chain.call(contract, NONCES.encode_call(account))
        if not raw:
            raise ConfigurationError(f"No contract code at {contract}")
        (nonce,) = NONCES.decode_output(raw)
        logger.debug("nonce for %s on %s is %s", account, contract, nonce)
        return int(nonce)


class RegistryResolver:
    """Resolves a chip's ephemeral address to the wallet that registered it."""

    def __init__(self, chain: ChainBackend, registry_address: str):
        self.chain = chain
        self.registry_address = _checked_contract(registry_address, "SplitHubRegistry")

    def owner_of(self, chip_address: str) -> str:
        """Registered owner, or the zero address for an unknown chip."""
        chip_address = require_address(chip_address, "chip")
        raw = self.chain.call(self.registry_address, OWNER_OF.encode_call(chip_address))
        if not raw:
            raise ConfigurationError(f"No contract code at {self.registry_address}")
        (owner,) = OWNER_OF.decode_output(raw)
        return normalize_address(owner)

    def is_registered(self, chip_address: str) -> bool:
        return self.owner_of(chip_address) != ZERO_ADDRESS

    def resolve(self, chip_address: str) -> str:
        owner = self.owner_of(chip_address)
        if owner == ZERO_ADDRESS:
            raise ChipNotRegisteredError(normalize_address(chip_address))
        return owner
