"""
Domain constants used across services/routers.
"""

from domain.enums import OrderStatus

# Order status graph: forward path plus cancellation before shipment.
ALLOWED_STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Buyer SMS is sent when an order reaches one of these statuses.
SMS_NOTIFY_STATUSES = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})

# Local mobile number: optional country prefix, operator digit 3-9, 8 more digits.
LOCAL_MOBILE_PATTERN = r"^(\+880|880|0)?1[3-9]\d{8}$"

ORDER_NUMBER_PATTERN = r"^[A-Z0-9]+-\d{8}-\d{4}$"

TRACK_ORDER_LIMIT = 10

GENERIC_FAILURE_MESSAGE = "Could not complete the request, please try again."
