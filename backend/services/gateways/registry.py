"""
Gateway registry: provider key -> configured gateway client.

Only gateways that are enabled and have credentials are registered, so a
missing entry always means "not configured".
"""
import logging

import httpx

from config import Settings, settings as default_settings
from domain.errors import GatewayNotConfiguredError
from services.gateways.base import PaymentGateway
from services.gateways.bkash import BkashGateway
from services.gateways.sslcommerz import SslcommerzGateway

logger = logging.getLogger(__name__)


def build_gateways(
    app_settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, PaymentGateway]:
    app_settings = app_settings or default_settings
    gateways: dict[str, PaymentGateway] = {}

    bkash_config = app_settings.bkash_config()
    if bkash_config.is_configured:
        gateways[BkashGateway.provider] = BkashGateway(bkash_config, transport=transport)

    sslcommerz_config = app_settings.sslcommerz_config()
    if sslcommerz_config.is_configured:
        gateways[SslcommerzGateway.provider] = SslcommerzGateway(sslcommerz_config, transport=transport)

    logger.debug(f"Payment gateways configured: {', '.join(gateways) or 'none'}")
    return gateways


def get_gateway(gateways: dict[str, PaymentGateway], provider: str) -> PaymentGateway:
    gateway = gateways.get(provider)
    if gateway is None:
        raise GatewayNotConfiguredError(provider)
    return gateway
