"""
bKash tokenized checkout.

Flow:
    1. grant token  (POST /tokenized/checkout/token/grant)
    2. create       (POST /tokenized/checkout/create) -> paymentID + bkashURL
    3. buyer approves on bkashURL, bKash redirects to our callback with
       ?paymentID=...&status=success|failure|cancel
    4. execute      (POST /tokenized/checkout/execute) -> trxID
"""
import logging

import httpx

from config import BkashGatewayConfig
from domain.enums import PaymentMethodType
from domain.errors import GatewayRejectedError
from services.gateways.base import (
    ConfirmationResult,
    SessionRequest,
    SessionResult,
    parse_amount,
    request_json,
)

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0000"


class BkashGateway:
    provider = PaymentMethodType.BKASH_GATEWAY.value

    def __init__(self, config: BkashGatewayConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            transport=self._transport,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )

    async def _grant_token(self, client: httpx.AsyncClient) -> str:
        body = await request_json(
            client,
            "POST",
            "/tokenized/checkout/token/grant",
            provider=self.provider,
            headers={
                "username": self.config.username or self.config.app_key,
                "password": self.config.password or self.config.app_secret,
            },
            json={"app_key": self.config.app_key, "app_secret": self.config.app_secret},
        )
        token = body.get("id_token")
        if body.get("statusCode") != SUCCESS_CODE or not token:
            raise GatewayRejectedError(self.provider, body.get("statusMessage") or "token grant refused")
        return token

    def _auth_headers(self, token: str) -> dict:
        return {"Authorization": token, "X-APP-Key": self.config.app_key}

    async def create_session(self, request: SessionRequest) -> SessionResult:
        async with self._client() as client:
            token = await self._grant_token(client)
            body = await request_json(
                client,
                "POST",
                "/tokenized/checkout/create",
                provider=self.provider,
                headers=self._auth_headers(token),
                json={
                    "mode": "0011",
                    "payerReference": request.customer_phone or "guest",
                    "callbackURL": request.callback_urls.success,
                    "amount": f"{request.amount:.2f}",
                    "currency": "BDT",
                    "intent": "sale",
                    "merchantInvoiceNumber": request.order_number,
                },
            )

        if body.get("statusCode") != SUCCESS_CODE or not body.get("bkashURL") or not body.get("paymentID"):
            reason = body.get("statusMessage") or "payment could not be created"
            logger.warning(f"bKash create refused for {request.order_number}: {reason}")
            raise GatewayRejectedError(self.provider, reason, details={"status_code": body.get("statusCode")})

        return SessionResult(session_token=body["paymentID"], redirect_url=body["bkashURL"], raw=body)

    async def confirm(self, token: str) -> ConfirmationResult:
        """Execute an approved payment. token is the bKash paymentID."""
        async with self._client() as client:
            grant = await self._grant_token(client)
            body = await request_json(
                client,
                "POST",
                "/tokenized/checkout/execute",
                provider=self.provider,
                headers=self._auth_headers(grant),
                json={"paymentID": token},
            )

        if body.get("statusCode") != SUCCESS_CODE or body.get("transactionStatus") != "Completed":
            reason = body.get("statusMessage") or f"transaction {body.get('transactionStatus') or 'not completed'}"
            logger.warning(f"bKash execute refused for payment {token}: {reason}")
            raise GatewayRejectedError(self.provider, reason, details={"status_code": body.get("statusCode")})

        return ConfirmationResult(
            transaction_id=body.get("trxID") or token,
            amount=parse_amount(body.get("amount"), provider=self.provider),
            reference=body.get("merchantInvoiceNumber"),
            raw=body,
        )
