"""
Order service: turns a validated cart into a persisted order.

place_order() never trusts client money: every amount is recomputed with
pricing_service.price() from catalog prices and the stored shipping rule.
The order row, its line items and the initial status history entry are
written in one transaction; a failure at any point leaves nothing behind.
"""
import logging
import re
import secrets
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings
from db_models import Order, OrderItem, OrderStatusHistory, PaymentMethod
from domain.constants import ORDER_NUMBER_PATTERN, TRACK_ORDER_LIMIT
from domain.enums import OrderStatus, PaymentStatus
from domain.errors import (
    EmptyCartError,
    IntegrityViolationError,
    NotFoundError,
    OrderNumberCollisionError,
    PaymentMethodDisabledError,
    PhoneNotVerifiedError,
    ValidationError,
)
from services import notification_service, otp_service, pricing_service
from utils.validators import normalize_phone, validate_shipping_address

logger = logging.getLogger(__name__)

# Marketing attribution captured with the order; anything else is dropped.
ATTRIBUTION_FIELDS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "referrer",
    "landing_page",
)

TRACK_BY_ORDER_NUMBER = "order_number"
TRACK_BY_PHONE = "phone"


def generate_order_number(prefix: str | None = None, now: datetime | None = None) -> str:
    """PREFIX-YYYYMMDD-NNNN with a random 4-digit suffix."""
    prefix = (prefix or settings.order_number_prefix).upper()
    now = now or datetime.utcnow()
    return f"{prefix}-{now:%Y%m%d}-{1000 + secrets.randbelow(9000)}"


def _clean_attribution(attribution: dict | None) -> dict | None:
    if not attribution:
        return None
    cleaned = {
        key: str(attribution[key])[:255]
        for key in ATTRIBUTION_FIELDS
        if attribution.get(key)
    }
    return cleaned or None


def _is_order_number_conflict(exc: IntegrityError) -> bool:
    return "order_number" in str(exc.orig)


async def place_order(
    db: AsyncSession,
    *,
    items: list[dict],
    shipping_option_id: str | None,
    payment_method_id: str,
    address: dict,
    buyer_id: str | None = None,
    notes: str | None = None,
    attribution: dict | None = None,
    now: datetime | None = None,
    sender=None,
    app_settings: Settings | None = None,
) -> Order:
    """
    Validate, price and persist an order.

    items: [{product_id:int, quantity:int, size?:str, color?:str}]

    Raises:
        EmptyCartError, PaymentMethodDisabledError, InvalidAddressError,
        ShippingOptionRequiredError, InvalidLineItemError, NotFoundError,
        PhoneNotVerifiedError, IntegrityViolationError, OrderNumberCollisionError
    """
    if not items:
        raise EmptyCartError()

    cfg = app_settings or settings
    now = now or datetime.utcnow()

    method = await db.get(PaymentMethod, payment_method_id) if payment_method_id else None
    if method is None or not method.enabled:
        raise PaymentMethodDisabledError(payment_method_id or "")
    method_id, method_type = method.id, method.type

    shipping_address = validate_shipping_address(address or {})
    shipping_address["phone"] = normalize_phone(shipping_address["phone"])

    if buyer_id is None and cfg.require_guest_otp:
        if not await otp_service.is_phone_verified(db, shipping_address["phone"], now=now, app_settings=cfg):
            raise PhoneNotVerifiedError()

    lines = await pricing_service.resolve_line_items(db, items)
    rule = await pricing_service.load_shipping_rule(db, shipping_option_id)
    quote = pricing_service.price(lines, rule)

    if quote.total != quote.subtotal + quote.shipping_fee:
        logger.critical(
            f"Pricing produced inconsistent totals: subtotal={quote.subtotal} "
            f"shipping={quote.shipping_fee} total={quote.total}"
        )
        raise IntegrityViolationError("Order total does not equal subtotal plus shipping")

    clean_attribution = _clean_attribution(attribution)
    max_attempts = max(1, cfg.order_number_max_attempts)

    for attempt in range(1, max_attempts + 1):
        order_number = generate_order_number(cfg.order_number_prefix, now=now)
        order = Order(
            order_number=order_number,
            buyer_id=buyer_id,
            subtotal=quote.subtotal,
            shipping_fee=quote.shipping_fee,
            total=quote.total,
            status=OrderStatus.PENDING.value,
            payment_method_id=method_id,
            payment_method_type=method_type,
            payment_status=PaymentStatus.PENDING.value,
            shipping_option_id=rule.option_id,
            shipping_address=shipping_address,
            notes=notes,
            attribution=clean_attribution,
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        try:
            await db.flush()
        except IntegrityError as e:
            await db.rollback()
            if not _is_order_number_conflict(e):
                raise
            logger.warning(f"Order number {order_number} already taken (attempt {attempt}/{max_attempts})")
            continue

        try:
            for line in lines:
                db.add(
                    OrderItem(
                        order_id=order.id,
                        product_id=line.product_id,
                        product_name=line.product_name,
                        unit_price=line.unit_price,
                        quantity=line.quantity,
                        size=line.size,
                        color=line.color,
                    )
                )
            db.add(
                OrderStatusHistory(
                    order_id=order.id,
                    old_status=None,
                    new_status=OrderStatus.PENDING.value,
                    changed_by=buyer_id,
                    notes="Order placed",
                    changed_at=now,
                )
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        break
    else:
        logger.error(f"Gave up allocating an order number after {max_attempts} attempts")
        raise OrderNumberCollisionError(max_attempts)

    logger.info(
        f"Order {order.order_number} placed: total={order.total} "
        f"method={method_type} buyer={buyer_id or 'guest'}"
    )

    await notification_service.dispatch_sms(
        notification_service.TEMPLATE_ORDER_CONFIRMATION,
        shipping_address["phone"],
        {
            "customer_name": shipping_address["full_name"],
            "order_number": order.order_number,
            "total": f"{order.total}",
            "store_name": cfg.store_name,
        },
        sender=sender,
        sms_config=cfg.sms_config(),
    )
    return order


# ════════════════════════════════════════════════════════════════════
# Reads
# ════════════════════════════════════════════════════════════════════


async def get_order(db: AsyncSession, order_id: int) -> Order:
    order = await db.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFoundError("Order", str(order_id))
    return order


async def get_order_by_number(db: AsyncSession, order_number: str) -> Order:
    res = await db.execute(select(Order).where(Order.order_number == order_number.strip().upper()))
    order = res.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order", order_number)
    return order


async def get_order_items(db: AsyncSession, order_id: int) -> list[OrderItem]:
    res = await db.execute(
        select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
    )
    return res.scalars().all()


async def list_orders(
    db: AsyncSession,
    *,
    status: str | None = None,
    payment_status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    """Admin listing, newest first."""
    q = select(Order)
    if status:
        q = q.where(Order.status == status)
    if payment_status:
        q = q.where(Order.payment_status == payment_status)
    res = await db.execute(
        q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)
    )
    return res.scalars().all()


async def track_orders(db: AsyncSession, *, search_type: str, value: str) -> list[Order]:
    """Public order lookup by order number or by the delivery phone."""
    value = (value or "").strip()
    if not value:
        raise ValidationError("Search value is required", field="value")

    if search_type == TRACK_BY_ORDER_NUMBER:
        value = value.upper()
        # Malformed numbers cannot match an issued order.
        if not re.match(ORDER_NUMBER_PATTERN, value):
            return []
        condition = Order.order_number == value
    elif search_type == TRACK_BY_PHONE:
        condition = Order.shipping_address["phone"].as_string() == normalize_phone(value)
    else:
        raise ValidationError(
            f"searchType must be '{TRACK_BY_ORDER_NUMBER}' or '{TRACK_BY_PHONE}'",
            field="searchType",
        )

    res = await db.execute(
        select(Order)
        .where(condition)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(TRACK_ORDER_LIMIT)
    )
    return res.scalars().all()
