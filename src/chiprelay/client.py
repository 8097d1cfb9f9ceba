"""HTTP client for the relay API, used by tap-side callers."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .chip import SignedAuthorization
from .errors import ChipRelayError, RelayError

logger = logging.getLogger(__name__)


class RelayAPIError(RelayError):
    """The relay API answered with an error status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


class RelayClient:
    """Posts chip-signed authorizations to a chiprelay server."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 150.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        # Relays block until the receipt confirms, so the timeout exceeds the server's receipt wait.
        self._http = client or httpx.Client(base_url=self.base_url, timeout=timeout_seconds)

    def relay(self, signed: SignedAuthorization) -> dict[str, Any]:
        path = {
            "PaymentAuth": "/relay/payment",
            "CreditPurchase": "/relay/credit-purchase",
            "CreditSpend": "/relay/credit-spend",
            "ChipRegistration": "/relay/register",
        }[signed.struct.PRIMARY_TYPE]
        return self._post(path, signed.to_payload())

    def relay_batch(self, payments: list[SignedAuthorization], contract_address: Optional[str] = None) -> dict[str, Any]:
        entries = []
        for signed in payments:
            if signed.struct.PRIMARY_TYPE != "PaymentAuth":
                raise ChipRelayError("Only PaymentAuth authorizations can be batched")
            entries.append({**signed.struct.to_json(), "signature": signed.signature})
        body: dict[str, Any] = {"payments": entries}
        if contract_address or payments:
            body["contractAddress"] = contract_address or payments[0].contract
        return self._post("/relay/batch-payment", body)

    def create_payment_request(
        self,
        payer: str,
        recipient: str,
        token: str,
        amount: str,
        memo: Optional[str] = None,
    ) -> dict[str, Any]:
        return self._post(
            "/payment-requests",
            {"payer": payer, "recipient": recipient, "token": token, "amount": amount, "memo": memo},
        )

    def payment_requests(self, wallet: str, direction: str = "incoming") -> list[dict[str, Any]]:
        return self._get("/payment-requests", params={"wallet": wallet, "type": direction})["data"]

    def complete_payment_request(self, request_id: str, tx_hash: str) -> dict[str, Any]:
        return self._post(f"/payment-requests/{request_id}/complete", {"txHash": tx_hash})

    def health(self) -> dict[str, Any]:
        return self._get("/health")

    def close(self) -> None:
        self._http.close()

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return self._handle(self._http.post(path, json=body))

    def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        return self._handle(self._http.get(path, params=params))

    @staticmethod
    def _handle(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {"error": response.text[:200]}
        if response.status_code >= 400:
            message = data.get("error") if isinstance(data, dict) else None
            logger.warning("relay API %s: %s", response.status_code, message)
            raise RelayAPIError(response.status_code, message or f"HTTP {response.status_code}")
        return data
