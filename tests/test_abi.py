"""Tests for the minimal contract ABIs."""

import pytest
from eth_utils import keccak, to_checksum_address

from chiprelay.abi import (
    AGGREGATE3,
    EXECUTE_PAYMENT,
    NONCES,
    OWNER_OF,
    REGISTER,
    decode_call,
    encode_multicall,
)

from conftest import PAYMENTS, USDC


PAYER = "0x" + "a1" * 20
RECIPIENT = "0x" + "b1" * 20
SIGNATURE = b"\x11" * 65


def test_canonical_signatures():
    assert EXECUTE_PAYMENT.signature == (
        "executePayment((address,address,address,uint256,uint256,uint256),bytes)"
    )
    assert AGGREGATE3.signature == "aggregate3((address,bool,bytes)[])"
    assert REGISTER.selector == keccak(text="register(address,address,bytes)")[:4]


def test_encode_accepts_lower_case_addresses():
    auth = (PAYER, RECIPIENT, USDC, 5_000_000, 0, 1_900_000_000)

    calldata = EXECUTE_PAYMENT.encode_call(auth, SIGNATURE)

    assert calldata[:4] == EXECUTE_PAYMENT.selector
    fn, (decoded_auth, signature) = decode_call(calldata)
    assert fn is EXECUTE_PAYMENT
    assert decoded_auth[0] == to_checksum_address(PAYER)
    assert decoded_auth[3:] == (5_000_000, 0, 1_900_000_000)
    assert signature == SIGNATURE


def test_multicall_wraps_calls_for_one_target():
    inner = [NONCES.encode_call(PAYER), OWNER_OF.encode_call(RECIPIENT)]

    fn, (calls,) = decode_call(encode_multicall(PAYMENTS, inner))

    assert fn is AGGREGATE3
    assert [c[0] for c in calls] == [to_checksum_address(PAYMENTS)] * 2
    assert [c[1] for c in calls] == [False, False]
    assert [c[2] for c in calls] == inner


def test_wrong_argument_count():
    with pytest.raises(ValueError, match="expects 2 arguments"):
        EXECUTE_PAYMENT.encode_call(SIGNATURE)


def test_unknown_selector():
    with pytest.raises(ValueError, match="Unknown function selector"):
        decode_call(b"\xde\xad\xbe\xef")
