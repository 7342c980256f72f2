"""
Shared FastAPI dependencies.

Routers import common dependencies from here (DB session, auth guards,
payment gateways, pagination) so tests can override them in one place.
"""

from __future__ import annotations

from typing import TypedDict

from fastapi import Query

from config import settings
from database import get_db
from domain.enums import PaymentMethodType
from middleware.auth import get_optional_buyer, require_admin
from services.gateways.base import CallbackUrls, PaymentGateway
from services.gateways.registry import build_gateways

__all__ = [
    "Pagination",
    "pagination_params",
    "get_db",
    "get_gateways",
    "callback_urls_for",
    "get_optional_buyer",
    "require_admin",
]


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


def get_gateways() -> dict[str, PaymentGateway]:
    """Configured hosted gateways, keyed by payment method type."""
    return build_gateways(settings)


CALLBACK_PATHS = {
    PaymentMethodType.BKASH_GATEWAY.value: "bkash",
    PaymentMethodType.SSLCOMMERZ.value: "sslcommerz",
}


def callback_urls_for(provider: str) -> CallbackUrls:
    """Return URLs on this API for a provider. bKash appends its own status query."""
    base = f"{settings.public_base_url.rstrip('/')}/payments/callback/{CALLBACK_PATHS.get(provider, provider)}"
    if provider == PaymentMethodType.BKASH_GATEWAY.value:
        return CallbackUrls(success=base, failure=base, cancel=base)
    return CallbackUrls(
        success=f"{base}?status=success",
        failure=f"{base}?status=failed",
        cancel=f"{base}?status=cancelled",
    )
