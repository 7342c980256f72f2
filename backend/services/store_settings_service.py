"""
Store settings: shipping options and payment methods offered at checkout.

Edits take effect for the next quote; orders already placed keep the
amounts they were priced with.
"""
import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import PaymentMethod, ShippingOption
from domain.enums import PaymentMethodType
from domain.errors import ConflictError, NotFoundError, ValidationError
from services.pricing_service import to_money

logger = logging.getLogger(__name__)

_UNSET = object()


async def list_shipping_options(db: AsyncSession, *, include_disabled: bool = False) -> list[ShippingOption]:
    q = select(ShippingOption)
    if not include_disabled:
        q = q.where(ShippingOption.enabled == True)
    res = await db.execute(q.order_by(ShippingOption.sort_order, ShippingOption.id))
    return res.scalars().all()


async def list_payment_methods(db: AsyncSession, *, include_disabled: bool = False) -> list[PaymentMethod]:
    """Display order: the default method first, then sort_order."""
    q = select(PaymentMethod)
    if not include_disabled:
        q = q.where(PaymentMethod.enabled == True)
    res = await db.execute(
        q.order_by(PaymentMethod.is_default.desc(), PaymentMethod.sort_order, PaymentMethod.id)
    )
    return res.scalars().all()


async def get_shipping_option(db: AsyncSession, option_id: str) -> ShippingOption:
    option = await db.get(ShippingOption, option_id)
    if option is None:
        raise NotFoundError("Shipping option", option_id)
    return option


async def get_payment_method(db: AsyncSession, method_id: str) -> PaymentMethod:
    method = await db.get(PaymentMethod, method_id)
    if method is None:
        raise NotFoundError("Payment method", method_id)
    return method


def _non_negative(value, field: str) -> Decimal | None:
    if value is None:
        return None
    amount = to_money(value)
    if amount < 0:
        raise ValidationError("Amount cannot be negative", field=field)
    return amount


async def update_shipping_option(
    db: AsyncSession,
    option_id: str,
    *,
    name: str | None = None,
    base_price=None,
    free_shipping_threshold=_UNSET,
    discount_threshold=_UNSET,
    discount_amount=_UNSET,
    enabled: bool | None = None,
    sort_order: int | None = None,
) -> ShippingOption:
    """
    Update a shipping option. Thresholds accept None to clear the rule;
    omitted arguments are left unchanged.
    """
    option = await get_shipping_option(db, option_id)

    if name is not None and not name.strip():
        raise ValidationError("Name cannot be empty", field="name")
    amounts = {
        field: _non_negative(value, field)
        for field, value in (
            ("base_price", base_price),
            ("free_shipping_threshold", free_shipping_threshold),
            ("discount_threshold", discount_threshold),
            ("discount_amount", discount_amount),
        )
        if value is not _UNSET and not (field == "base_price" and value is None)
    }

    if name is not None:
        option.name = name.strip()
    for field, amount in amounts.items():
        setattr(option, field, amount)
    if enabled is not None:
        option.enabled = enabled
    if sort_order is not None:
        option.sort_order = sort_order

    if (option.discount_threshold is None) != (option.discount_amount is None):
        await db.rollback()
        raise ValidationError(
            "discount_threshold and discount_amount must be set together", field="discount_amount"
        )

    await db.commit()
    logger.info(f"Shipping option {option_id} updated")
    return option


async def update_payment_method(
    db: AsyncSession,
    method_id: str,
    *,
    name: str | None = None,
    enabled: bool | None = None,
    instructions: str | None = None,
    account_number: str | None = None,
    is_default: bool | None = None,
    sort_order: int | None = None,
) -> PaymentMethod:
    """
    Update a payment method.

    Raises:
        ValidationError: a manual wallet would be enabled without an account number
        ConflictError: the change would leave no payment method enabled
    """
    method = await get_payment_method(db, method_id)

    if name is not None:
        method.name = name.strip() or method.name
    if instructions is not None:
        method.instructions = instructions.strip() or None
    if account_number is not None:
        method.account_number = account_number.strip() or None
    if sort_order is not None:
        method.sort_order = sort_order
    if enabled is not None:
        method.enabled = enabled

    if method.enabled and PaymentMethodType(method.type).is_manual_wallet and not method.account_number:
        method_name = method.name
        await db.rollback()
        raise ValidationError(f"{method_name} needs an account number to be enabled", field="account_number")

    if not method.enabled:
        others = await db.execute(
            select(func.count())
            .select_from(PaymentMethod)
            .where(PaymentMethod.enabled == True, PaymentMethod.id != method_id)
        )
        if others.scalar_one() == 0:
            await db.rollback()
            raise ConflictError("At least one payment method must stay enabled")

    if is_default:
        res = await db.execute(select(PaymentMethod).where(PaymentMethod.id != method_id))
        for other in res.scalars().all():
            other.is_default = False
        method.is_default = True
    elif is_default is False:
        method.is_default = False

    await db.commit()
    logger.info(f"Payment method {method_id} updated (enabled={method.enabled})")
    return method
