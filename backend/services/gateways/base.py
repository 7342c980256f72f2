"""
Shared types for hosted payment gateways.

A gateway does two things: open a remote session the buyer is redirected
to, and confirm a session after the buyer comes back. Anything that goes
wrong on the wire is a GatewayUnreachableError (retryable, the payment
state is unknown); an explicit "no" from the provider is a
GatewayRejectedError.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

import httpx

from domain.errors import GatewayRejectedError, GatewayUnreachableError


@dataclass(frozen=True, slots=True)
class CallbackUrls:
    """Where the provider sends the buyer back to."""
    success: str
    failure: str
    cancel: str


@dataclass(frozen=True, slots=True)
class SessionRequest:
    order_number: str
    amount: Decimal
    idempotency_key: str
    callback_urls: CallbackUrls
    customer_name: str = "Customer"
    customer_phone: str = ""
    customer_address: str = ""
    customer_city: str = ""
    item_count: int = 1


@dataclass(frozen=True, slots=True)
class SessionResult:
    session_token: str
    redirect_url: str
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class ConfirmationResult:
    transaction_id: str
    amount: Decimal
    reference: str | None = None
    raw: dict = field(default_factory=dict, compare=False)


class PaymentGateway(Protocol):
    provider: str

    async def create_session(self, request: SessionRequest) -> SessionResult: ...

    async def confirm(self, token: str) -> ConfirmationResult: ...


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    **kwargs,
) -> dict:
    """
    Send one request to a provider and decode its JSON body.

    Raises:
        GatewayUnreachableError: timeout, transport failure, 5xx or an
            unreadable body
        GatewayRejectedError: 4xx with a readable body
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException:
        raise GatewayUnreachableError(provider, "request timed out")
    except httpx.TransportError as e:
        raise GatewayUnreachableError(provider, str(e) or type(e).__name__)

    if response.status_code >= 500:
        raise GatewayUnreachableError(provider, f"HTTP {response.status_code}")

    try:
        body = response.json()
    except ValueError:
        raise GatewayUnreachableError(provider, "malformed response body")
    if not isinstance(body, dict):
        raise GatewayUnreachableError(provider, "unexpected response shape")

    if response.status_code >= 400:
        reason = body.get("statusMessage") or body.get("failedreason") or f"HTTP {response.status_code}"
        raise GatewayRejectedError(provider, reason, details={"status_code": response.status_code})

    return body


def parse_amount(value, *, provider: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError):
        raise GatewayUnreachableError(provider, f"unreadable amount {value!r}")
