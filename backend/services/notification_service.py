"""
Notification service: outbound SMS for verification codes and order updates.

The SMS provider is an external collaborator reached over HTTP
(BulkSMSBD-style GET API). Sends are fire-and-forget from the caller's
point of view: dispatch_sms() never raises; failures are logged and
reported through the returned bool only.
"""
import logging

import httpx

from config import SmsConfig, settings

logger = logging.getLogger(__name__)

TEMPLATE_OTP = "otp"
TEMPLATE_ORDER_CONFIRMATION = "order_confirmation"
TEMPLATE_ORDER_SHIPPED = "order_shipped"
TEMPLATE_ORDER_DELIVERED = "order_delivered"


class SmsDeliveryError(Exception):
    """Raised by the transport when the provider did not accept a message."""


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render_template(template_key: str, values: dict, sms_config: SmsConfig) -> str:
    """Fill a template; unknown placeholders are left as-is."""
    templates = {
        TEMPLATE_OTP: sms_config.otp_template,
        TEMPLATE_ORDER_CONFIRMATION: sms_config.order_confirmation_template,
        TEMPLATE_ORDER_SHIPPED: sms_config.order_shipped_template,
        TEMPLATE_ORDER_DELIVERED: sms_config.order_delivered_template,
    }
    if template_key not in templates:
        raise ValueError(f"Unknown SMS template: {template_key}")
    merged = {"store_name": settings.store_name, **values}
    return templates[template_key].format_map(_SafeDict(merged))


class HttpSmsSender:
    """Sends a single SMS through the configured HTTP provider."""

    def __init__(self, sms_config: SmsConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = sms_config
        self._transport = transport

    async def send(self, phone: str, message: str) -> None:
        if not self.config.api_key or not self.config.sender_id:
            raise SmsDeliveryError("SMS provider credentials not configured")

        params = {
            "api_key": self.config.api_key,
            "type": "text",
            "number": phone,
            "senderid": self.config.sender_id,
            "message": message,
        }
        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds, transport=self._transport
        ) as client:
            response = await client.get(self.config.api_url, params=params)

        if response.status_code >= 400:
            raise SmsDeliveryError(f"SMS provider returned {response.status_code}: {response.text[:200]}")

        body = response.text.lower()
        if "error" in body or "failed" in body:
            raise SmsDeliveryError(f"SMS provider rejected message: {response.text[:200]}")


async def dispatch_sms(
    template_key: str,
    phone: str,
    values: dict,
    *,
    sender=None,
    sms_config: SmsConfig | None = None,
) -> bool:
    """
    Render and send an SMS. Never raises.

    Returns:
        True if the provider accepted the message, False otherwise
        (disabled, misconfigured, unreachable or rejected)
    """
    sms_config = sms_config or settings.sms_config()
    if not sms_config.enabled and sender is None:
        logger.debug(f"SMS disabled, skipping {template_key} to {phone[-4:]}")
        return False

    sender = sender or HttpSmsSender(sms_config)
    try:
        message = render_template(template_key, values, sms_config)
        await sender.send(phone, message)
    except (httpx.HTTPError, SmsDeliveryError, ValueError) as e:
        logger.warning(f"SMS {template_key} to ...{phone[-4:]} failed: {e}")
        return False
    except Exception as e:
        # Delivery is best-effort; the checkout flow must not see provider bugs.
        logger.error(f"SMS {template_key} to ...{phone[-4:]} crashed: {e}", exc_info=True)
        return False

    logger.info(f"SMS {template_key} sent to ...{phone[-4:]}")
    return True
