"""
Domain enums shared by services, ORM models and routers.
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentMethodType(str, Enum):
    COD = "cod"
    BKASH = "bkash"                  # manual wallet: buyer sends money, admin reconciles
    NAGAD = "nagad"                  # manual wallet
    BKASH_GATEWAY = "bkash_gateway"  # hosted: bKash tokenized checkout
    SSLCOMMERZ = "sslcommerz"        # hosted: SSLCommerz payment page
    GENERIC = "generic"

    @property
    def is_hosted(self) -> bool:
        return self in (PaymentMethodType.BKASH_GATEWAY, PaymentMethodType.SSLCOMMERZ)

    @property
    def is_manual_wallet(self) -> bool:
        return self in (PaymentMethodType.BKASH, PaymentMethodType.NAGAD)


class PaymentSessionStatus(str, Enum):
    INITIATED = "initiated"
    RESOLVING = "resolving"  # claimed by one callback while it confirms with the provider
    PAID = "paid"
    FAILED = "failed"


class CallbackOutcome(str, Enum):
    """Normalised outcome reported by a gateway redirect/callback."""
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
