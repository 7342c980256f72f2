"""
Payment endpoints: start payment for an order and receive gateway redirects.

Gateways redirect the buyer's browser back here (GET for bKash, form POST
for SSLCommerz). Callbacks are idempotent: a repeated redirect returns the
stored outcome.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from deps import callback_urls_for, get_db, get_gateways
from domain.enums import CallbackOutcome, PaymentMethodType
from domain.responses import success_response
from middleware.rate_limit import rate_limit
from models import PaymentInitiationOut, PaymentResolutionOut
from services import order_service, payment_service
from services.payment_service import CallbackEvent

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])

# Provider status words -> normalised outcome
_BKASH_OUTCOMES = {
    "success": CallbackOutcome.SUCCESS,
    "failure": CallbackOutcome.FAILED,
    "cancel": CallbackOutcome.CANCELLED,
}
_SSLCOMMERZ_OUTCOMES = {
    "valid": CallbackOutcome.SUCCESS,
    "validated": CallbackOutcome.SUCCESS,
    "success": CallbackOutcome.SUCCESS,
    "failed": CallbackOutcome.FAILED,
    "cancelled": CallbackOutcome.CANCELLED,
}


async def _callback_params(request: Request) -> dict:
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


@router.post("/{order_id}/initiate", dependencies=[Depends(rate_limit(10, 60))])
async def initiate_payment(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    gateways: dict = Depends(get_gateways),
):
    order = await order_service.get_order(db, order_id)
    initiation = await payment_service.initiate_payment(
        db,
        order_id=order_id,
        callback_urls=callback_urls_for(order.payment_method_type),
        gateways=gateways,
    )
    return success_response(data=PaymentInitiationOut.model_validate(initiation).to_api())


@router.api_route("/callback/bkash", methods=["GET", "POST"])
async def bkash_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: dict = Depends(get_gateways),
):
    params = await _callback_params(request)
    event = CallbackEvent(
        provider=PaymentMethodType.BKASH_GATEWAY.value,
        outcome=_BKASH_OUTCOMES.get(params.get("status", "").lower(), CallbackOutcome.FAILED),
        token=params.get("paymentID"),
    )
    logger.info(f"bKash callback: paymentID={event.token} status={params.get('status')}")
    resolution = await payment_service.resolve_payment_callback(db, event=event, gateways=gateways)
    return success_response(data=PaymentResolutionOut.model_validate(resolution).to_api())


@router.api_route("/callback/sslcommerz", methods=["GET", "POST"])
async def sslcommerz_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: dict = Depends(get_gateways),
):
    params = await _callback_params(request)
    event = CallbackEvent(
        provider=PaymentMethodType.SSLCOMMERZ.value,
        outcome=_SSLCOMMERZ_OUTCOMES.get(params.get("status", "").lower(), CallbackOutcome.FAILED),
        token=params.get("val_id"),
        reference=params.get("tran_id"),
    )
    logger.info(f"SSLCommerz callback: tran_id={event.reference} status={params.get('status')}")
    resolution = await payment_service.resolve_payment_callback(db, event=event, gateways=gateways)
    return success_response(data=PaymentResolutionOut.model_validate(resolution).to_api())
