"""
Order status machine.

    pending -> processing -> shipped -> delivered
    pending | processing -> cancelled

delivered and cancelled are terminal. Every accepted change writes one
history entry in the same transaction as the status update, and the
update is conditional on the status read, so two concurrent changes from
the same state cannot both win.
"""
import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings
from db_models import Order, OrderStatusHistory
from domain.constants import ALLOWED_STATUS_TRANSITIONS, SMS_NOTIFY_STATUSES, TERMINAL_STATUSES
from domain.enums import OrderStatus
from domain.errors import IllegalTransitionError, IntegrityViolationError, ValidationError
from services import notification_service, order_service

logger = logging.getLogger(__name__)

_KNOWN_STATUSES = frozenset(s.value for s in OrderStatus)

_STATUS_TEMPLATES = {
    OrderStatus.SHIPPED: notification_service.TEMPLATE_ORDER_SHIPPED,
    OrderStatus.DELIVERED: notification_service.TEMPLATE_ORDER_DELIVERED,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_STATUS_TRANSITIONS.get(current, frozenset())


async def _latest_entry(db: AsyncSession, order_id: int) -> OrderStatusHistory | None:
    res = await db.execute(
        select(OrderStatusHistory)
        .where(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.id.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def change_order_status(
    db: AsyncSession,
    *,
    order_id: int,
    new_status: str,
    actor: str | None,
    note: str | None = None,
    now: datetime | None = None,
    sender=None,
    app_settings: Settings | None = None,
) -> OrderStatusHistory:
    """
    Move an order to new_status and record who did it.

    Raises:
        ValidationError: new_status is not a known status
        NotFoundError: no such order
        IllegalTransitionError: target not reachable from the current status,
            or another change landed first
        IntegrityViolationError: stored status and history disagree
    """
    try:
        target = OrderStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown order status '{new_status}'", field="status")

    cfg = app_settings or settings
    now = now or datetime.utcnow()
    order = await order_service.get_order(db, order_id)
    latest = await _latest_entry(db, order_id)

    if latest is None or latest.new_status != order.status or order.status not in _KNOWN_STATUSES:
        logger.critical(
            f"Order {order.order_number} status '{order.status}' disagrees with history "
            f"'{latest.new_status if latest else None}'"
        )
        raise IntegrityViolationError(
            f"Status history for order {order.order_number} is inconsistent",
            details={"order_id": order_id},
        )

    current = OrderStatus(order.status)
    if current in TERMINAL_STATUSES:
        logger.info(f"Order {order.order_number} is {current.value}, rejecting move to {target.value}")
        raise IllegalTransitionError(current.value, target.value)
    if not can_transition(current, target):
        raise IllegalTransitionError(current.value, target.value)

    res = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == current.value)
        .values(status=target.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        await db.rollback()
        logger.warning(f"Order {order_id} changed concurrently, rejecting {current.value} -> {target.value}")
        raise IllegalTransitionError(current.value, target.value)

    entry = OrderStatusHistory(
        order_id=order_id,
        old_status=current.value,
        new_status=target.value,
        changed_by=actor,
        notes=note,
        changed_at=now,
    )
    db.add(entry)
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(order)
    logger.info(f"Order {order.order_number}: {current.value} -> {target.value} by {actor or 'system'}")

    if target in SMS_NOTIFY_STATUSES:
        address = order.shipping_address or {}
        if address.get("phone"):
            await notification_service.dispatch_sms(
                _STATUS_TEMPLATES[target],
                address["phone"],
                {
                    "customer_name": address.get("full_name", ""),
                    "order_number": order.order_number,
                    "total": f"{order.total}",
                    "store_name": cfg.store_name,
                },
                sender=sender,
                sms_config=cfg.sms_config(),
            )

    return entry


async def get_status_history(db: AsyncSession, order_id: int) -> list[OrderStatusHistory]:
    """Full audit trail for an order, newest first."""
    await order_service.get_order(db, order_id)
    res = await db.execute(
        select(OrderStatusHistory)
        .where(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.id.desc())
    )
    return res.scalars().all()
