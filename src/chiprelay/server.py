"""
HTTP API.

Endpoints are sync functions so FastAPI runs them on its threadpool; a relay
blocks on the receipt wait without stalling the event loop. Errors raised as
ChipRelayError subclasses are answered with their status_code and
`{"error": message}`; anything else is a 500 in the same shape.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .errors import ChipRelayError, ValidationError
from .service import RelayService

logger = logging.getLogger(__name__)


def create_app(service: RelayService) -> FastAPI:
    app = FastAPI(title="chiprelay", version=__version__)
    app.state.service = service

    @app.exception_handler(ChipRelayError)
    async def _chiprelay_error(request: Request, exc: ChipRelayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _bad_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error("%s %s failed", request.method, request.url.path, exc_info=exc)
        return JSONResponse({"error": str(exc) or "Internal server error"}, status_code=500)

    @app.get("/health")
    def health() -> dict[str, Any]:
        try:
            relayer = service.relayer_address
        except ChipRelayError:
            relayer = None
        return {"status": "ok", "relayer": relayer}

    @app.post("/relay/payment")
    def relay_payment(payload: Optional[dict[str, Any]] = Body(default=None)) -> dict[str, Any]:
        body = _body(payload)
        return service.relay_payment(body.get("auth"), body.get("signature"), body.get("contractAddress"))

    @app.post("/relay/batch-payment")
    def relay_batch_payment(payload: Optional[dict[str, Any]] = Body(default=None)) -> dict[str, Any]:
        body = _body(payload)
        return service.relay_batch(body.get("payments"), body.get("contractAddress"))

    @app.post("/relay/credit-purchase")
    def relay_credit_purchase(payload: Optional[dict[str, Any]] = Body(default=None)) -> dict[str, Any]:
        body = _body(payload)
        return service.relay_credit_purchase(body.get("purchase"), body.get("signature"), body.get("contractAddress"))

    @app.post("/relay/credit-spend")
    def relay_credit_spend(payload: Optional[dict[str, Any]] = Body(default=None)) -> dict[str, Any]:
        body = _body(payload)
        return service.relay_credit_spend(body.get("spend"), body.get("signature"), body.get("contractAddress"))

    @app.post("/relay/register")
    def relay_register(payload: Optional[dict[str, Any]] = Body(default=None)) -> dict[str, Any]:
        body = _body(payload)
        return service.register_chip(
            body.get("signer"),
            body.get("owner"),
            body.get("signature"),
            body.get("contractAddress"),
        )

    @app.post("/payment-requests")
    def create_payment_request(payload: Optional[dict[str, Any]] = Body(default=None)) -> dict[str, Any]:
        body = _body(payload)
        if not all(body.get(k) for k in ("payer", "recipient", "token", "amount")):
            raise ValidationError("Missing required fields: payer, recipient, token, amount")
        result = service.requests.create_or_remind(
            payer=body["payer"],
            recipient=body["recipient"],
            token=body["token"],
            amount=str(body["amount"]),
            memo=body.get("memo"),
        )
        return result.to_dict()

    @app.get("/payment-requests")
    def list_payment_requests(
        wallet: Optional[str] = Query(default=None),
        type: str = Query(default="incoming"),
    ) -> dict[str, Any]:
        if not wallet:
            raise ValidationError("Missing wallet parameter")
        requests = service.requests.list_for_wallet(wallet, type)
        return {"data": [r.to_dict() for r in requests]}

    @app.get("/payment-requests/{request_id}")
    def get_payment_request(request_id: str) -> dict[str, Any]:
        return {"data": service.requests.require(request_id).to_dict()}

    @app.post("/payment-requests/{request_id}/complete")
    def complete_payment_request(
        request_id: str,
        payload: Optional[dict[str, Any]] = Body(default=None),
    ) -> dict[str, Any]:
        body = _body(payload)
        if not body.get("txHash"):
            raise ValidationError("Missing txHash")
        request = service.requests.complete(request_id, body["txHash"])
        return {"success": True, "data": request.to_dict()}

    @app.post("/payment-requests/{request_id}/remind")
    def remind_payment_request(request_id: str) -> dict[str, Any]:
        sent = service.requests.remind(request_id)
        return {"success": True, "requestId": request_id, "notificationSent": sent}

    return app


def _body(payload: Optional[dict[str, Any]]) -> dict[str, Any]:
    if payload is None:
        raise ValidationError("Request body must be a JSON object")
    return payload
