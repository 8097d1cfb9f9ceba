"""Relayer configuration, loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .abi import MULTICALL3_ADDRESS
from .authorization import SIGNATURE_VALIDITY_SECONDS, is_address, normalize_address
from .chain import DEFAULT_RECEIPT_TIMEOUT
from .errors import ConfigurationError
from .notify import DEFAULT_APP_BASE_URL

RELAYER_PRIVATE_KEY_ENV = "RELAYER_PRIVATE_KEY"
RPC_URL_ENV = "CHIPRELAY_RPC_URL"
CHAIN_ID_ENV = "CHIPRELAY_CHAIN_ID"
PAYMENTS_ADDRESS_ENV = "CHIPRELAY_PAYMENTS_ADDRESS"
CREDIT_TOKEN_ADDRESS_ENV = "CHIPRELAY_CREDIT_TOKEN_ADDRESS"
REGISTRY_ADDRESS_ENV = "CHIPRELAY_REGISTRY_ADDRESS"
MULTICALL_ADDRESS_ENV = "CHIPRELAY_MULTICALL_ADDRESS"
USDC_ADDRESS_ENV = "CHIPRELAY_USDC_ADDRESS"
DB_PATH_ENV = "CHIPRELAY_DB_PATH"
AUDIT_PATH_ENV = "CHIPRELAY_AUDIT_PATH"
NOTIFY_URL_ENV = "CHIPRELAY_NOTIFY_URL"
APP_BASE_URL_ENV = "CHIPRELAY_APP_BASE_URL"
RECEIPT_TIMEOUT_ENV = "CHIPRELAY_RECEIPT_TIMEOUT"

BASE_SEPOLIA_CHAIN_ID = 84532
BASE_SEPOLIA_RPC_URL = "https://sepolia.base.org"
BASE_SEPOLIA_USDC = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"


@dataclass
class RelayConfig:
    rpc_url: str = BASE_SEPOLIA_RPC_URL
    chain_id: int = BASE_SEPOLIA_CHAIN_ID
    relayer_private_key: Optional[str] = None
    payments_address: Optional[str] = None
    credit_token_address: Optional[str] = None
    registry_address: Optional[str] = None
    multicall_address: str = MULTICALL3_ADDRESS
    usdc_address: str = BASE_SEPOLIA_USDC
    db_path: Optional[Path] = None
    audit_path: Optional[Path] = None
    notify_url: Optional[str] = None
    app_base_url: str = DEFAULT_APP_BASE_URL
    receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT
    signature_validity_seconds: int = SIGNATURE_VALIDITY_SECONDS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        env = os.environ if environ is None else environ

        def _get(name: str) -> Optional[str]:
            value = env.get(name)
            return value.strip() if value and value.strip() else None

        try:
            chain_id = int(_get(CHAIN_ID_ENV) or BASE_SEPOLIA_CHAIN_ID)
            receipt_timeout = float(_get(RECEIPT_TIMEOUT_ENV) or DEFAULT_RECEIPT_TIMEOUT)
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        db_path = _get(DB_PATH_ENV)
        audit_path = _get(AUDIT_PATH_ENV)
        return cls(
            rpc_url=_get(RPC_URL_ENV) or BASE_SEPOLIA_RPC_URL,
            chain_id=chain_id,
            relayer_private_key=_get(RELAYER_PRIVATE_KEY_ENV),
            payments_address=_optional_address(_get(PAYMENTS_ADDRESS_ENV), PAYMENTS_ADDRESS_ENV),
            credit_token_address=_optional_address(_get(CREDIT_TOKEN_ADDRESS_ENV), CREDIT_TOKEN_ADDRESS_ENV),
            registry_address=_optional_address(_get(REGISTRY_ADDRESS_ENV), REGISTRY_ADDRESS_ENV),
            multicall_address=_optional_address(_get(MULTICALL_ADDRESS_ENV), MULTICALL_ADDRESS_ENV)
            or MULTICALL3_ADDRESS,
            usdc_address=_optional_address(_get(USDC_ADDRESS_ENV), USDC_ADDRESS_ENV) or BASE_SEPOLIA_USDC,
            db_path=Path(db_path).expanduser() if db_path else None,
            audit_path=Path(audit_path).expanduser() if audit_path else None,
            notify_url=_get(NOTIFY_URL_ENV),
            app_base_url=_get(APP_BASE_URL_ENV) or DEFAULT_APP_BASE_URL,
            receipt_timeout=receipt_timeout,
        )

    def relayer_account(self) -> LocalAccount:
        if not self.relayer_private_key:
            raise ConfigurationError("Relayer not configured")
        try:
            return Account.from_key(self.relayer_private_key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError("Relayer key is not a valid private key") from e

    def contract_for(self, configured: Optional[str], requested: Optional[str], label: str) -> str:
        """Configured address wins; the request's contractAddress is only a fallback."""
        address = configured or requested
        if not address or not is_address(address):
            raise ConfigurationError(f"{label} not deployed. Provide contractAddress in request body.")
        return normalize_address(address)

    def to_dict(self) -> dict:
        """Safe view (no key material) for `chiprelay config` style output."""
        return {
            "rpc_url": self.rpc_url,
            "chain_id": self.chain_id,
            "relayer_configured": bool(self.relayer_private_key),
            "payments_address": self.payments_address,
            "credit_token_address": self.credit_token_address,
            "registry_address": self.registry_address,
            "multicall_address": self.multicall_address,
            "usdc_address": self.usdc_address,
            "db_path": str(self.db_path) if self.db_path else None,
            "audit_path": str(self.audit_path) if self.audit_path else None,
            "notify_url": self.notify_url,
            "app_base_url": self.app_base_url,
            "receipt_timeout": self.receipt_timeout,
        }


def _optional_address(value: Optional[str], env_name: str) -> Optional[str]:
    if value is None:
        return None
    if not is_address(value):
        raise ConfigurationError(f"{env_name} is not a valid address: {value}")
    return normalize_address(value)
