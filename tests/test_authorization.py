"""Tests for the typed authorization structs and their signatures."""

import time

import pytest
from eth_account import Account

from chiprelay.authorization import (
    ChipDiscovery,
    CreditPurchase,
    CreditSpend,
    PaymentAuth,
    build_payment_auth,
    discovery_domain,
    normalize_address,
    normalize_signature,
    payments_domain,
    recover_signer,
    registry_domain,
    sign_struct,
    struct_digest,
    typed_data,
)
from chiprelay.errors import ValidationError

from conftest import CHAIN_ID, PAYMENTS, REGISTRY, USDC


CHIP = Account.create()
PAYER = "0x" + "aa" * 20
RECIPIENT = "0x" + "bb" * 20
OTHER_CHAIN_ID = 8453


def make_auth(**overrides) -> PaymentAuth:
    fields = dict(payer=PAYER, recipient=RECIPIENT, token=USDC, amount=5_000_000, nonce=0)
    fields.update(overrides)
    return build_payment_auth(**fields)


class TestPaymentAuth:
    def test_sign_and_recover(self):
        auth = make_auth()
        domain = payments_domain(CHAIN_ID, PAYMENTS)
        signature = sign_struct(auth, domain, CHIP.key)
        assert recover_signer(auth, domain, signature) == CHIP.address.lower()

    def test_default_deadline_is_one_hour_out(self):
        before = int(time.time())
        auth = make_auth()
        assert before + 3600 <= auth.deadline <= int(time.time()) + 3600
        assert not auth.is_expired()
        assert auth.is_expired(now=auth.deadline)

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            make_auth(amount=0)

    def test_signature_bound_to_domain(self):
        auth = make_auth()
        signature = sign_struct(auth, payments_domain(OTHER_CHAIN_ID, PAYMENTS), CHIP.key)
        recovered = recover_signer(auth, payments_domain(CHAIN_ID, PAYMENTS), signature)
        assert recovered != CHIP.address.lower()

    def test_changed_field_changes_signer(self):
        auth = make_auth()
        domain = payments_domain(CHAIN_ID, PAYMENTS)
        signature = sign_struct(auth, domain, CHIP.key)
        tampered = make_auth(amount=6_000_000, deadline=auth.deadline)
        assert recover_signer(tampered, domain, signature) != CHIP.address.lower()

    def test_json_round_trip_uses_decimal_strings(self):
        auth = make_auth(amount=2**200)
        wire = auth.to_json()
        assert wire["amount"] == str(2**200)
        assert wire["nonce"] == "0"
        assert PaymentAuth.from_json(wire) == auth

    def test_from_json_rejects_bad_address(self):
        wire = make_auth().to_json()
        wire["recipient"] = "0x1234"
        with pytest.raises(ValidationError, match="Invalid address format for recipient"):
            PaymentAuth.from_json(wire)

    def test_from_json_rejects_missing_fields(self):
        wire = make_auth().to_json()
        del wire["deadline"]
        with pytest.raises(ValidationError, match="missing deadline"):
            PaymentAuth.from_json(wire, label="auth")

    def test_from_json_rejects_negative_and_fractional_uints(self):
        for bad in ("-1", "1.5", True):
            wire = make_auth().to_json()
            wire["nonce"] = bad
            with pytest.raises(ValidationError):
                PaymentAuth.from_json(wire)


class TestDiscovery:
    def test_discovery_signature_never_verifies_as_payment(self):
        """A discovery tap cannot be replayed as an authorization."""
        discovery = ChipDiscovery(purpose="PaymentAuth")
        sig = sign_struct(discovery, discovery_domain(CHAIN_ID), CHIP.key)
        assert recover_signer(discovery, discovery_domain(CHAIN_ID), sig) == CHIP.address.lower()

        auth = make_auth(payer=CHIP.address)
        assert recover_signer(auth, payments_domain(CHAIN_ID, PAYMENTS), sig) != CHIP.address.lower()

    def test_discovery_digest_differs_from_every_authorization(self):
        discovery = ChipDiscovery(purpose="PaymentAuth")
        digests = {
            struct_digest(discovery, discovery_domain(CHAIN_ID)),
            struct_digest(make_auth(), payments_domain(CHAIN_ID, PAYMENTS)),
            struct_digest(CreditPurchase(PAYER, 1, 0, 1), payments_domain(CHAIN_ID, PAYMENTS)),
            struct_digest(CreditSpend(PAYER, 1, 1, 0, 1), payments_domain(CHAIN_ID, PAYMENTS)),
        }
        assert len(digests) == 4

    def test_discovery_domain_has_no_verifying_contract(self):
        payload = typed_data(ChipDiscovery(purpose="x"), discovery_domain(CHAIN_ID))
        assert "verifyingContract" not in payload["domain"]
        assert [f["name"] for f in payload["types"]["EIP712Domain"]] == ["name", "version", "chainId"]

    def test_challenges_are_random(self):
        assert ChipDiscovery(purpose="x").challenge != ChipDiscovery(purpose="x").challenge


class TestTypedData:
    def test_payment_typed_data_shape(self):
        payload = typed_data(make_auth(), payments_domain(CHAIN_ID, PAYMENTS))
        assert payload["primaryType"] == "PaymentAuth"
        assert payload["domain"] == {
            "name": "SplitHubPayments",
            "version": "1",
            "chainId": CHAIN_ID,
            "verifyingContract": normalize_address(PAYMENTS),
        }
        assert [f["name"] for f in payload["types"]["PaymentAuth"]] == [
            "payer", "recipient", "token", "amount", "nonce", "deadline",
        ]

    def test_registry_domain_name(self):
        assert registry_domain(CHAIN_ID, REGISTRY).name == "SplitHubRegistry"


class TestNormalization:
    def test_normalize_address_lowercases(self):
        assert normalize_address("0X" + "AB" * 20) == "0x" + "ab" * 20

    def test_normalize_address_rejects_garbage(self):
        with pytest.raises(ValueError):
            normalize_address("not-an-address")

    def test_normalize_signature(self):
        raw = bytes(range(65))
        assert normalize_signature(raw) == "0x" + raw.hex()
        assert normalize_signature(raw.hex()) == "0x" + raw.hex()
        with pytest.raises(ValidationError):
            normalize_signature("0x1234")
        with pytest.raises(ValidationError):
            normalize_signature(42)


