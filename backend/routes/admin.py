"""
Admin endpoints: order management and checkout settings.

All routes require a bearer token with role "admin".
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from deps import Pagination, get_db, pagination_params, require_admin
from domain.responses import paginated_response, success_response
from models import (
    ManualPaymentRequest,
    OrderItemOut,
    OrderOut,
    PaymentMethodOut,
    PaymentMethodUpdate,
    ShippingOptionOut,
    ShippingOptionUpdate,
    StatusChangeRequest,
    StatusHistoryOut,
)
from services import order_service, order_status_service, payment_service, store_settings_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


# ── Orders ──────────────────────────────────────────────────────────


@router.get("/orders")
async def list_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    page: Pagination = Depends(pagination_params),
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    orders = await order_service.list_orders(
        db,
        status=status,
        payment_status=payment_status,
        limit=page["limit"],
        offset=page["offset"],
    )
    return paginated_response(
        [OrderOut.model_validate(o).to_api() for o in orders],
        limit=page["limit"],
        offset=page["offset"],
    )


@router.get("/orders/{order_id}")
async def get_order(
    order_id: int,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.get_order(db, order_id)
    items = await order_service.get_order_items(db, order_id)
    data = OrderOut.model_validate(order).to_api()
    data["items"] = [OrderItemOut.model_validate(i).to_api() for i in items]
    data["attribution"] = order.attribution
    return success_response(data=data)


@router.post("/orders/{order_id}/status")
async def change_status(
    order_id: int,
    request: StatusChangeRequest,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    entry = await order_status_service.change_order_status(
        db,
        order_id=order_id,
        new_status=request.status,
        actor=admin_id,
        note=request.note,
    )
    return success_response(data=StatusHistoryOut.model_validate(entry).to_api())


@router.get("/orders/{order_id}/history")
async def status_history(
    order_id: int,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    entries = await order_status_service.get_status_history(db, order_id)
    return success_response(data=[StatusHistoryOut.model_validate(e).to_api() for e in entries])


@router.post("/orders/{order_id}/payment")
async def record_payment(
    order_id: int,
    request: ManualPaymentRequest,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    order = await payment_service.record_manual_payment(
        db,
        order_id=order_id,
        payment_status=request.payment_status,
        actor=admin_id,
        note=request.note,
        transaction_id=request.transaction_id,
    )
    return success_response(data=OrderOut.model_validate(order).to_api())


# ── Checkout settings ───────────────────────────────────────────────


@router.get("/shipping-options/{option_id}")
async def get_shipping_option(
    option_id: str,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    option = await store_settings_service.get_shipping_option(db, option_id)
    return success_response(data=ShippingOptionOut.model_validate(option).to_api())


@router.put("/shipping-options/{option_id}")
async def update_shipping_option(
    option_id: str,
    request: ShippingOptionUpdate,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    # Only forward fields the caller sent, so an explicit null clears a threshold.
    changes = {name: getattr(request, name) for name in request.model_fields_set}
    option = await store_settings_service.update_shipping_option(db, option_id, **changes)
    logger.info(f"Admin {admin_id} updated shipping option {option_id}: {sorted(changes)}")
    return success_response(data=ShippingOptionOut.model_validate(option).to_api())


@router.get("/payment-methods/{method_id}")
async def get_payment_method(
    method_id: str,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    method = await store_settings_service.get_payment_method(db, method_id)
    return success_response(data=PaymentMethodOut.model_validate(method).to_api())


@router.patch("/payment-methods/{method_id}")
async def update_payment_method(
    method_id: str,
    request: PaymentMethodUpdate,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    method = await store_settings_service.update_payment_method(
        db, method_id, **request.model_dump(exclude_unset=True)
    )
    logger.info(f"Admin {admin_id} updated payment method {method_id}")
    return success_response(data=PaymentMethodOut.model_validate(method).to_api())
