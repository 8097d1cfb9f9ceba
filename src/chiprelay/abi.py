"""
Minimal contract ABIs for the relayer.

Only the functions and custom errors the relay core calls are declared.
Calldata is built through web3 contract objects; call results and revert
data are decoded with eth-abi.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from eth_abi import decode
from eth_utils import is_hex_address, keccak, to_checksum_address
from web3 import Web3


MULTICALL3_ADDRESS = "0xca11bde05977b3631167028862be2a173976ca11"


def _uint(name: str) -> dict:
    return {"name": name, "type": "uint256"}


def _address(name: str) -> dict:
    return {"name": name, "type": "address"}


_SIGNATURE = {"name": "signature", "type": "bytes"}


# SplitHubPayments: executePayment, nonces
PAYMENTS_ABI = [
    {
        "inputs": [
            {
                "name": "auth",
                "type": "tuple",
                "components": [
                    _address("payer"),
                    _address("recipient"),
                    _address("token"),
                    _uint("amount"),
                    _uint("nonce"),
                    _uint("deadline"),
                ],
            },
            _SIGNATURE,
        ],
        "name": "executePayment",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [_address("account")],
        "name": "nonces",
        "outputs": [_uint("")],
        "stateMutability": "view",
        "type": "function",
    },
]

# CreditToken: purchaseCredits, spendCredits, nonces
CREDIT_TOKEN_ABI = [
    {
        "inputs": [
            {
                "name": "purchase",
                "type": "tuple",
                "components": [
                    _address("buyer"),
                    _uint("usdcAmount"),
                    _uint("nonce"),
                    _uint("deadline"),
                ],
            },
            _SIGNATURE,
        ],
        "name": "purchaseCredits",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {
                "name": "spend",
                "type": "tuple",
                "components": [
                    _address("spender"),
                    _uint("amount"),
                    _uint("activityId"),
                    _uint("nonce"),
                    _uint("deadline"),
                ],
            },
            _SIGNATURE,
        ],
        "name": "spendCredits",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    PAYMENTS_ABI[1],
]

# SplitHubRegistry: register, ownerOf
REGISTRY_ABI = [
    {
        "inputs": [_address("signer"), _address("owner"), _SIGNATURE],
        "name": "register",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [_address("signer")],
        "name": "ownerOf",
        "outputs": [_address("")],
        "stateMutability": "view",
        "type": "function",
    },
]

# Multicall3: aggregate3 only
MULTICALL3_ABI = [
    {
        "inputs": [
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    _address("target"),
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
            }
        ],
        "name": "aggregate3",
        "outputs": [
            {
                "name": "returnData",
                "type": "tuple[]",
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
            }
        ],
        "stateMutability": "payable",
        "type": "function",
    },
]

# Encoding needs no provider.
_w3 = Web3()


def _abi_type(param: dict) -> str:
    """Canonical type string, expanding tuple components."""
    type_ = param["type"]
    if type_.startswith("tuple"):
        inner = ",".join(_abi_type(c) for c in param["components"])
        return f"({inner}){type_[len('tuple'):]}"
    return type_


def _checksummed(value: Any) -> Any:
    # web3 rejects lower-case addresses; the relay core stores them lower-case.
    if isinstance(value, str) and is_hex_address(value):
        return to_checksum_address(value)
    if isinstance(value, (list, tuple)):
        return type(value)(_checksummed(v) for v in value)
    return value


class ContractFunction:
    """One function of a minimal ABI: selector, calldata encoding, decoding."""

    def __init__(self, abi: list[dict], name: str):
        self.name = name
        entry = next(e for e in abi if e["type"] == "function" and e["name"] == name)
        self.inputs = tuple(_abi_type(p) for p in entry["inputs"])
        self.outputs = tuple(_abi_type(p) for p in entry["outputs"])
        self._contract = _w3.eth.contract(abi=abi)

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return keccak(text=self.signature)[:4]

    def encode_call(self, *args: Any) -> bytes:
        if len(args) != len(self.inputs):
            raise ValueError(f"{self.signature} expects {len(self.inputs)} arguments, got {len(args)}")
        calldata = self._contract.encode_abi(self.name, args=[_checksummed(a) for a in args])
        return Web3.to_bytes(hexstr=calldata)

    def decode_args(self, calldata: bytes) -> tuple:
        if calldata[:4] != self.selector:
            raise ValueError(f"Calldata is not a {self.name} call")
        return tuple(decode(list(self.inputs), calldata[4:]))

    def decode_output(self, data: bytes) -> tuple:
        return tuple(decode(list(self.outputs), data))

    def __repr__(self) -> str:
        return f"ContractFunction({self.signature})"


EXECUTE_PAYMENT = ContractFunction(PAYMENTS_ABI, "executePayment")
NONCES = ContractFunction(PAYMENTS_ABI, "nonces")
PURCHASE_CREDITS = ContractFunction(CREDIT_TOKEN_ABI, "purchaseCredits")
SPEND_CREDITS = ContractFunction(CREDIT_TOKEN_ABI, "spendCredits")
REGISTER = ContractFunction(REGISTRY_ABI, "register")
OWNER_OF = ContractFunction(REGISTRY_ABI, "ownerOf")
AGGREGATE3 = ContractFunction(MULTICALL3_ABI, "aggregate3")

KNOWN_FUNCTIONS: dict[bytes, ContractFunction] = {
    fn.selector: fn
    for fn in (EXECUTE_PAYMENT, PURCHASE_CREDITS, SPEND_CREDITS, REGISTER, OWNER_OF, NONCES, AGGREGATE3)
}

CUSTOM_ERRORS = (
    "UnauthorizedSigner()",
    "InvalidNonce()",
    "ExpiredSignature()",
    "InvalidSignature()",
    # OpenZeppelin 5 ERC-20 errors
    "ERC20InsufficientAllowance(address,uint256,uint256)",
    "ERC20InsufficientBalance(address,uint256,uint256)",
)


def error_selector(signature: str) -> str:
    """0x-prefixed 4-byte selector of a custom error, e.g. `InvalidNonce()`."""
    if "(" not in signature:
        signature += "()"
    return "0x" + keccak(text=signature)[:4].hex()


ERROR_SELECTORS: dict[str, str] = {error_selector(sig): sig.split("(")[0] for sig in CUSTOM_ERRORS}

# Error(string), emitted by require() reverts such as the ERC-20 messages.
ERROR_STRING_SELECTOR = "0x08c379a0"


def decode_revert_reason(data: Optional[str | bytes]) -> Optional[str]:
    """Return the custom error name or Error(string) message carried by revert data."""
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        data = "0x" + bytes(data).hex()
    data = data.lower()
    if not data.startswith("0x"):
        data = "0x" + data
    selector = data[:10]
    if selector in ERROR_SELECTORS:
        return ERROR_SELECTORS[selector]
    if selector == ERROR_STRING_SELECTOR and len(data) > 10:
        try:
            (message,) = decode(["string"], bytes.fromhex(data[10:]))
        except Exception:
            return None
        return message
    return None


def encode_multicall(target: str, calls: Sequence[bytes], allow_failure: bool = False) -> bytes:
    """aggregate3 calldata for calls all addressed to one target."""
    return AGGREGATE3.encode_call([(target, allow_failure, call) for call in calls])


def decode_call(calldata: bytes) -> tuple[ContractFunction, tuple]:
    fn = KNOWN_FUNCTIONS.get(bytes(calldata[:4]))
    if fn is None:
        raise ValueError(f"Unknown function selector 0x{bytes(calldata[:4]).hex()}")
    return fn, fn.decode_args(calldata)
