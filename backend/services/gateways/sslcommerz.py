"""
SSLCommerz hosted payment page.

The session is opened with a form POST to /gwprocess/v4/api.php using the
order number as tran_id. After payment the buyer is redirected back with
val_id and tran_id; the val_id is then checked against the validation API
before anything is marked paid.
"""
import logging

import httpx

from config import SslcommerzGatewayConfig
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

VALID_STATUSES = frozenset({"VALID", "VALIDATED"})


class SslcommerzGateway:
    provider = PaymentMethodType.SSLCOMMERZ.value

    def __init__(self, config: SslcommerzGatewayConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )

    async def create_session(self, request: SessionRequest) -> SessionResult:
        form = {
            "store_id": self.config.store_id,
            "store_passwd": self.config.store_password,
            "total_amount": f"{request.amount:.2f}",
            "currency": "BDT",
            "tran_id": request.order_number,
            "success_url": request.callback_urls.success,
            "fail_url": request.callback_urls.failure,
            "cancel_url": request.callback_urls.cancel,
            "cus_name": request.customer_name or "Customer",
            "cus_email": "customer@example.com",
            "cus_add1": request.customer_address or "N/A",
            "cus_city": request.customer_city or "Dhaka",
            "cus_country": "Bangladesh",
            "cus_phone": request.customer_phone,
            "shipping_method": "Courier",
            "product_name": f"Order {request.order_number}",
            "product_category": "General",
            "product_profile": "physical-goods",
            "num_of_item": str(request.item_count),
            "value_a": request.idempotency_key,
        }
        async with self._client() as client:
            body = await request_json(
                client, "POST", "/gwprocess/v4/api.php", provider=self.provider, data=form
            )

        if body.get("status") != "SUCCESS" or not body.get("GatewayPageURL"):
            reason = body.get("failedreason") or "session could not be created"
            logger.warning(f"SSLCommerz init refused for {request.order_number}: {reason}")
            raise GatewayRejectedError(self.provider, reason)

        return SessionResult(
            session_token=body.get("sessionkey") or request.order_number,
            redirect_url=body["GatewayPageURL"],
            raw=body,
        )

    async def confirm(self, token: str) -> ConfirmationResult:
        """Validate a payment. token is the val_id from the redirect."""
        async with self._client() as client:
            body = await request_json(
                client,
                "GET",
                "/validator/api/validationserverAPI.php",
                provider=self.provider,
                params={
                    "val_id": token,
                    "store_id": self.config.store_id,
                    "store_passwd": self.config.store_password,
                    "format": "json",
                },
            )

        status = body.get("status")
        if status not in VALID_STATUSES:
            logger.warning(f"SSLCommerz validation refused for val_id {token}: {status}")
            raise GatewayRejectedError(self.provider, f"validation status {status or 'unknown'}")

        return ConfirmationResult(
            transaction_id=body.get("bank_tran_id") or body.get("val_id") or token,
            amount=parse_amount(body.get("amount"), provider=self.provider),
            reference=body.get("tran_id"),
            raw=body,
        )
