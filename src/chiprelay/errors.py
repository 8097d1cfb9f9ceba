"""
chiprelay error types.

One exception per failure mode of a tap, a relay or a store write.
Every error carries the HTTP status the API layer answers with.
"""

from typing import Optional


class ChipRelayError(Exception):
    """Base error for all chiprelay operations."""
    status_code = 500


# Input errors
class ValidationError(ChipRelayError):
    """Malformed address, missing required field, non-positive amount."""
    status_code = 400


# Configuration errors
class ConfigurationError(ChipRelayError):
    """Relayer key absent or target contract not deployed on the active network."""
    status_code = 500


# Chip errors
class ChipError(ChipRelayError):
    """Base error for chip discovery and signing."""
    status_code = 400


class ChipNotRegisteredError(ChipError):
    """Registry returned the zero address for the tapped chip."""

    def __init__(self, chip_address: str):
        self.chip_address = chip_address
        super().__init__("Chip not registered. Please register your chip first")


class ChipAlreadyRegisteredError(ChipError):
    """A chip can be bound to at most one wallet."""
    status_code = 409

    def __init__(self, chip_address: str, owner: str):
        self.chip_address = chip_address
        self.owner = owner
        super().__init__(f"Chip {chip_address} is already registered to {owner}")


class ChipMismatchError(ChipError):
    """The second tap was signed by a different chip than the discovery tap."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Chip mismatch: discovered {expected}, but {actual} signed the authorization")


class ChipSigningError(ChipError):
    """The chip (or its bridge) failed to produce a signature."""
    status_code = 502


# Relay errors
class RelayError(ChipRelayError):
    """Base error for relay submission failures."""
    status_code = 500


class ContractRevertError(RelayError):
    """The target contract reverted; carries the raw revert data when known."""

    def __init__(self, message: str, data: Optional[str] = None):
        self.data = data
        super().__init__(message)


class OnChainRejectionError(ContractRevertError):
    """A revert with a known reason, rewritten into an actionable message."""
    user_message = "Transaction rejected on-chain"

    def __init__(self, raw_message: str = "", data: Optional[str] = None):
        self.raw_message = raw_message
        super().__init__(self.user_message, data=data)


class UnauthorizedSignerError(OnChainRejectionError):
    user_message = "Unauthorized signer: The NFC chip is not registered to this wallet"


class InvalidNonceError(OnChainRejectionError):
    user_message = "Invalid nonce: Transaction out of order or already processed"


class ExpiredSignatureError(OnChainRejectionError):
    user_message = "Signature expired: Please try again"


class InvalidSignatureError(OnChainRejectionError):
    user_message = "Invalid signature: Signature verification failed"


class InsufficientAllowanceError(OnChainRejectionError):
    user_message = "Insufficient token allowance: Please approve the contract to spend your tokens"


class InsufficientBalanceError(OnChainRejectionError):
    user_message = "Insufficient balance: You don't have enough tokens"


class RelayRPCError(RelayError):
    """The node or its transport failed, e.g. a stale relayer nonce or a refused connection."""


class ReceiptTimeoutError(RelayError):
    """Transaction was submitted but no receipt arrived in time."""
    status_code = 504

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"Transaction {tx_hash} not confirmed after {timeout:.0f}s")


# Store errors
class StoreError(ChipRelayError):
    """Base error for relational store operations."""
    status_code = 500


class NotFoundError(StoreError):
    status_code = 404


class RequestStateError(StoreError):
    """Payment request is not in a state that allows the transition."""
    status_code = 400

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Cannot update request with status: {status}")


class AuditChainError(ChipRelayError):
    """The audit log's HMAC chain does not verify."""
