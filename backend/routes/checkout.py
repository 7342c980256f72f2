"""
Checkout endpoints: options, live quote, phone verification, order placement.

Guest checkout is allowed; a valid buyer token attaches the order to the
signed-in buyer.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from deps import get_db, get_optional_buyer
from domain.responses import success_response
from middleware.rate_limit import rate_limit
from models import (
    OrderItemOut,
    OrderOut,
    OtpRequest,
    OtpVerifyRequest,
    PaymentMethodOut,
    PlaceOrderRequest,
    PriceQuoteOut,
    QuoteRequest,
    ShippingOptionOut,
)
from services import order_service, otp_service, pricing_service, store_settings_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/checkout", tags=["checkout"])


def _cart(items) -> list[dict]:
    return [item.model_dump(exclude_none=True) for item in items]


@router.get("/options")
async def checkout_options(db: AsyncSession = Depends(get_db)):
    """Enabled shipping options and payment methods, in display order."""
    options = await store_settings_service.list_shipping_options(db)
    methods = await store_settings_service.list_payment_methods(db)
    return success_response(
        data={
            "shippingOptions": [ShippingOptionOut.model_validate(o).to_api() for o in options],
            "paymentMethods": [PaymentMethodOut.model_validate(m).to_api() for m in methods],
        }
    )


@router.post("/quote")
async def quote(request: QuoteRequest, db: AsyncSession = Depends(get_db)):
    q = await pricing_service.quote_price(
        db,
        items=_cart(request.items),
        shipping_option_id=request.shipping_option_id,
    )
    return success_response(data=PriceQuoteOut.model_validate(q).to_api())


@router.post("/otp/request", dependencies=[Depends(rate_limit(5, 300))])
async def request_otp(request: OtpRequest, db: AsyncSession = Depends(get_db)):
    issued = await otp_service.request_otp(db, phone=request.phone)
    return success_response(data=issued.as_dict())


@router.post("/otp/verify", dependencies=[Depends(rate_limit(10, 300))])
async def verify_otp(request: OtpVerifyRequest, db: AsyncSession = Depends(get_db)):
    verified = await otp_service.confirm_otp(db, phone=request.phone, code=request.code)
    return success_response(data={"phone": verified.phone, "verified": verified.verified})


@router.post("/orders", status_code=201, dependencies=[Depends(rate_limit(10, 60))])
async def place_order(
    request: PlaceOrderRequest,
    db: AsyncSession = Depends(get_db),
    buyer_id: Optional[str] = Depends(get_optional_buyer),
):
    order = await order_service.place_order(
        db,
        items=_cart(request.items),
        shipping_option_id=request.shipping_option_id,
        payment_method_id=request.payment_method_id,
        address=request.address.model_dump(exclude_none=True),
        buyer_id=buyer_id,
        notes=request.notes,
        attribution=request.attribution.model_dump(exclude_none=True) if request.attribution else None,
    )
    items = await order_service.get_order_items(db, order.id)
    data = OrderOut.model_validate(order).to_api()
    data["items"] = [OrderItemOut.model_validate(i).to_api() for i in items]
    return success_response(data=data)
