"""
Tests for payment dispatch and gateway callback settlement.

Tests: manual paths, hosted session reuse and attempts, callback
idempotency, cancel / reject / underpay / unreachable outcomes, manual
reconciliation.
"""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from db_models import PaymentSession
from domain.enums import CallbackOutcome
from domain.errors import (
    ConflictError,
    GatewayNotConfiguredError,
    GatewayRejectedError,
    GatewayUnreachableError,
    NotFoundError,
    PaymentAlreadyCompletedError,
    PaymentNotInitiatedError,
    PaymentOrderCancelledError,
    PaymentResolutionInProgressError,
    ValidationError,
)
from services import order_service, order_status_service, payment_service
from services.gateways.base import CallbackUrls
from services.payment_service import CallbackEvent
from conftest import RecordingSender, confirmation

NOW = datetime(2026, 3, 1, 10, 0, 0)
URLS = CallbackUrls(
    success="http://test/payments/callback/x?status=success",
    failure="http://test/payments/callback/x?status=failed",
    cancel="http://test/payments/callback/x?status=cancelled",
)


async def _order(db, cart, address, method: str):
    order = await order_service.place_order(
        db,
        items=cart,
        shipping_option_id="inside_dhaka",
        payment_method_id=method,
        address=address,
        now=NOW,
        sender=RecordingSender(),
    )
    return order.id, order.order_number


async def _initiate(db, order_id, gateways, now=NOW):
    return await payment_service.initiate_payment(
        db, order_id=order_id, callback_urls=URLS, gateways=gateways, now=now
    )


async def _callback(db, gateways, provider, outcome, token=None, reference=None):
    return await payment_service.resolve_payment_callback(
        db,
        event=CallbackEvent(provider=provider, outcome=outcome, token=token, reference=reference),
        gateways=gateways,
        now=NOW + timedelta(minutes=5),
    )


async def _sessions(db, order_id) -> list[PaymentSession]:
    res = await db.execute(
        select(PaymentSession)
        .where(PaymentSession.order_id == order_id)
        .order_by(PaymentSession.attempt)
        .execution_options(populate_existing=True)
    )
    return res.scalars().all()


async def _hold_claim(db, order_id, claimed_at):
    """Leave the open session claimed as if another callback were confirming it."""
    await db.execute(
        update(PaymentSession)
        .where(PaymentSession.order_id == order_id)
        .values(status="resolving", claimed_at=claimed_at)
    )
    await db.commit()


class TestManualPayments:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cash_on_delivery_never_calls_out(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "cod")
        initiation = await _initiate(store, order_id, gateways)

        assert initiation.manual is True
        assert initiation.method_type == "cod"
        assert initiation.amount == Decimal("1300.00")
        assert initiation.redirect_url is None
        assert gateways["bkash_gateway"].created == []
        assert await _sessions(store, order_id) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_manual_wallet_returns_instructions(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "bkash_manual")
        initiation = await _initiate(store, order_id, gateways)

        assert initiation.manual is True
        assert initiation.account_number == "01800000000"
        assert "TrxID" in initiation.instructions


class TestHostedInitiation:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_opens_session_with_idempotency_key(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)

        assert initiation.manual is False
        assert initiation.reused is False
        assert initiation.redirect_url == "https://pay.example/bkash_gateway/1"
        assert initiation.idempotency_key == f"order-{order_id}-bkash_gateway-1"

        request = gateways["bkash_gateway"].created[0]
        assert request.order_number == number
        assert request.amount == Decimal("1300.00")
        assert request.callback_urls == URLS
        assert request.item_count == 2

        order = await order_service.get_order(store, order_id)
        assert order.payment_idempotency_key == initiation.idempotency_key
        [session] = await _sessions(store, order_id)
        assert session.status == "initiated"
        assert session.session_token == "bkash_gateway-token-1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reinitiating_reuses_open_session(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "bkash_pay")
        first = await _initiate(store, order_id, gateways)
        second = await _initiate(store, order_id, gateways)

        assert second.reused is True
        assert second.redirect_url == first.redirect_url
        assert second.idempotency_key == first.idempotency_key
        assert len(gateways["bkash_gateway"].created) == 1
        assert len(await _sessions(store, order_id)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_not_configured(self, store, cart, address):
        order_id, _ = await _order(store, cart, address, "card")
        with pytest.raises(GatewayNotConfiguredError):
            await _initiate(store, order_id, {})

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, store, gateways):
        with pytest.raises(NotFoundError):
            await _initiate(store, 404, gateways)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_failure_closes_attempt(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "bkash_pay")
        gateways["bkash_gateway"].create_error = GatewayUnreachableError("bkash_gateway", "request timed out")

        with pytest.raises(GatewayUnreachableError):
            await _initiate(store, order_id, gateways)
        [failed] = await _sessions(store, order_id)
        assert failed.status == "failed"

        # next try is a fresh attempt
        gateways["bkash_gateway"].create_error = None
        initiation = await _initiate(store, order_id, gateways)
        assert initiation.idempotency_key == f"order-{order_id}-bkash_gateway-2"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_in_flight_reservation_conflicts(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "bkash_pay")
        store.add(PaymentSession(
            order_id=order_id, provider="bkash_gateway", attempt=1,
            idempotency_key=f"order-{order_id}-bkash_gateway-1", amount=Decimal("1300.00"),
            status="initiated", created_at=NOW,
        ))
        await store.commit()

        with pytest.raises(ConflictError):
            await _initiate(store, order_id, gateways, now=NOW + timedelta(seconds=5))
        assert gateways["bkash_gateway"].created == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_abandoned_reservation_is_reclaimed(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "bkash_pay")
        store.add(PaymentSession(
            order_id=order_id, provider="bkash_gateway", attempt=1,
            idempotency_key=f"order-{order_id}-bkash_gateway-1", amount=Decimal("1300.00"),
            status="initiated", created_at=NOW,
        ))
        await store.commit()

        initiation = await _initiate(store, order_id, gateways, now=NOW + timedelta(minutes=10))
        assert initiation.idempotency_key == f"order-{order_id}-bkash_gateway-2"
        first, second = await _sessions(store, order_id)
        assert first.status == "failed"
        assert first.failure_reason == "initiation abandoned"
        assert second.status == "initiated"


class TestCallbackSettlement:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_marks_order_paid(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        gateways["bkash_gateway"].confirm_result = confirmation("TRX123", "1300.00", number)

        resolution = await _callback(
            store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token
        )

        assert resolution.success is True
        assert resolution.transaction_id == "TRX123"
        assert resolution.already_resolved is False
        assert gateways["bkash_gateway"].confirmed == [initiation.session_token]

        order = await order_service.get_order(store, order_id)
        assert order.payment_status == "paid"
        assert order.payment_transaction_id == "TRX123"
        [session] = await _sessions(store, order_id)
        assert session.status == "paid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_callback_changes_nothing(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        gateways["bkash_gateway"].confirm_result = confirmation("TRX123", "1300.00", number)

        first = await _callback(store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token)
        order_after_first = await order_service.get_order(store, order_id)
        updated_at = order_after_first.updated_at

        second = await _callback(store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token)

        assert second.already_resolved is True
        assert second.success is True
        assert second.transaction_id == first.transaction_id
        assert len(gateways["bkash_gateway"].confirmed) == 1
        order = await order_service.get_order(store, order_id)
        assert order.updated_at == updated_at

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_failure_after_success_is_ignored(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        gateways["bkash_gateway"].confirm_result = confirmation("TRX123", "1300.00", number)
        await _callback(store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token)

        late = await _callback(store, gateways, "bkash_gateway", CallbackOutcome.FAILED, token=initiation.session_token)
        assert late.success is True
        assert late.already_resolved is True
        order = await order_service.get_order(store, order_id)
        assert order.payment_status == "paid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_fails_payment_but_not_order(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)

        resolution = await _callback(
            store, gateways, "bkash_gateway", CallbackOutcome.CANCELLED, token=initiation.session_token
        )
        assert resolution.success is False
        assert resolution.reason == "cancelled by buyer"
        assert gateways["bkash_gateway"].confirmed == []

        order = await order_service.get_order(store, order_id)
        assert order.payment_status == "failed"
        assert order.status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retry_after_failure_opens_new_attempt(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        first = await _initiate(store, order_id, gateways)
        await _callback(store, gateways, "bkash_gateway", CallbackOutcome.FAILED, token=first.session_token)

        second = await _initiate(store, order_id, gateways)
        assert second.reused is False
        assert second.idempotency_key == f"order-{order_id}-bkash_gateway-2"
        order = await order_service.get_order(store, order_id)
        assert order.payment_status == "pending"

        gateways["bkash_gateway"].confirm_result = confirmation("TRX9", "1300.00", number)
        resolution = await _callback(
            store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=second.session_token
        )
        assert resolution.success is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rejected_confirmation_fails_payment(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        gateways["bkash_gateway"].confirm_result = GatewayRejectedError("bkash_gateway", "Insufficient Balance")

        resolution = await _callback(
            store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token
        )
        assert resolution.success is False
        assert resolution.reason == "Insufficient Balance"
        order = await order_service.get_order(store, order_id)
        assert order.payment_status == "failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unreachable_gateway_leaves_session_open(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        gateways["bkash_gateway"].confirm_result = GatewayUnreachableError("bkash_gateway", "request timed out")

        with pytest.raises(GatewayUnreachableError) as exc_info:
            await _callback(store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token)
        assert exc_info.value.retryable is True
        [session] = await _sessions(store, order_id)
        assert session.status == "initiated"

        # the provider retries the redirect once it is reachable again
        gateways["bkash_gateway"].confirm_result = confirmation("TRX5", "1300.00", number)
        resolution = await _callback(
            store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token
        )
        assert resolution.success is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_underpayment_is_not_paid(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        gateways["bkash_gateway"].confirm_result = confirmation("TRX1", "1299.99", number)

        resolution = await _callback(
            store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token
        )
        assert resolution.success is False
        assert "below order total" in resolution.reason
        order = await order_service.get_order(store, order_id)
        assert order.payment_status == "failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reference_for_another_order_is_not_paid(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        gateways["bkash_gateway"].confirm_result = confirmation("TRX1", "1300.00", "ORD-20990101-9999")

        resolution = await _callback(
            store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token
        )
        assert resolution.success is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_session(self, store, gateways):
        with pytest.raises(PaymentNotInitiatedError) as exc_info:
            await _callback(store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token="nope")
        assert exc_info.value.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_order_cannot_be_initiated_again(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        gateways["bkash_gateway"].confirm_result = confirmation("TRX1", "1300.00", number)
        await _callback(store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token)

        with pytest.raises(PaymentAlreadyCompletedError):
            await _initiate(store, order_id, gateways)


    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_callback_while_another_confirms_is_retryable(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        await _hold_claim(store, order_id, NOW + timedelta(minutes=4, seconds=55))
        gateways["bkash_gateway"].confirm_result = confirmation("TRX1", "1300.00", number)

        with pytest.raises(PaymentResolutionInProgressError) as exc_info:
            await _callback(store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token)
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True
        assert gateways["bkash_gateway"].confirmed == []

        [session] = await _sessions(store, order_id)
        assert session.status == "resolving"
        with pytest.raises(ConflictError):
            await _initiate(store, order_id, gateways)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_abandoned_claim_is_taken_over(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        initiation = await _initiate(store, order_id, gateways)
        await _hold_claim(store, order_id, NOW - timedelta(hours=1))
        gateways["bkash_gateway"].confirm_result = confirmation("TRX1", "1300.00", number)

        resolution = await _callback(
            store, gateways, "bkash_gateway", CallbackOutcome.SUCCESS, token=initiation.session_token
        )
        assert resolution.success is True
        order = await order_service.get_order(store, order_id)
        assert order.payment_status == "paid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancelled_order_cannot_be_paid(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "bkash_pay")
        await order_status_service.change_order_status(
            store, order_id=order_id, new_status="cancelled", actor="admin-1", now=NOW, sender=RecordingSender()
        )

        with pytest.raises(PaymentOrderCancelledError) as exc_info:
            await _initiate(store, order_id, gateways)
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "order_cancelled"
        assert gateways["bkash_gateway"].created == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancelled_cash_order_gets_no_instructions(self, store, cart, address, gateways):
        order_id, _ = await _order(store, cart, address, "cod")
        await order_status_service.change_order_status(
            store, order_id=order_id, new_status="cancelled", actor="admin-1", now=NOW, sender=RecordingSender()
        )
        with pytest.raises(PaymentOrderCancelledError):
            await _initiate(store, order_id, gateways)


class TestSslcommerzCallbacks:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_with_tran_id(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "card")
        await _initiate(store, order_id, gateways)
        gateways["sslcommerz"].confirm_result = confirmation("BANK77", "1300.00", number)

        resolution = await _callback(
            store, gateways, "sslcommerz", CallbackOutcome.SUCCESS, token="VAL-1", reference=number
        )
        assert resolution.success is True
        assert resolution.transaction_id == "BANK77"
        assert gateways["sslcommerz"].confirmed == ["VAL-1"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_without_tran_id_is_validated_first(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "card")
        await _initiate(store, order_id, gateways)
        gateways["sslcommerz"].confirm_result = confirmation("BANK77", "1300.00", number)

        resolution = await _callback(store, gateways, "sslcommerz", CallbackOutcome.SUCCESS, token="VAL-1")
        assert resolution.success is True
        assert gateways["sslcommerz"].confirmed == ["VAL-1"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_redirect_by_reference(self, store, cart, address, gateways):
        order_id, number = await _order(store, cart, address, "card")
        await _initiate(store, order_id, gateways)

        resolution = await _callback(
            store, gateways, "sslcommerz", CallbackOutcome.FAILED, reference=number.lower()
        )
        assert resolution.success is False
        assert resolution.order_number == number

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_val_id_without_reference(self, store, gateways):
        gateways["sslcommerz"].confirm_result = GatewayRejectedError("sslcommerz", "validation status INVALID")
        with pytest.raises(PaymentNotInitiatedError):
            await _callback(store, gateways, "sslcommerz", CallbackOutcome.SUCCESS, token="VAL-X")


class TestRecordManualPayment:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_marks_cod_paid(self, store, cart, address):
        order_id, _ = await _order(store, cart, address, "cod")
        order = await payment_service.record_manual_payment(
            store, order_id=order_id, payment_status="paid", actor="admin-1",
            note="Cash collected by rider", transaction_id=" RIDER-7 ",
        )
        assert order.payment_status == "paid"
        assert order.payment_transaction_id == "RIDER-7"
        assert "Cash collected by rider" in order.notes

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_hosted_orders_are_settled_by_callbacks_only(self, store, cart, address):
        order_id, _ = await _order(store, cart, address, "bkash_pay")
        with pytest.raises(ValidationError):
            await payment_service.record_manual_payment(
                store, order_id=order_id, payment_status="paid", actor="admin-1"
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment_status(self, store, cart, address):
        order_id, _ = await _order(store, cart, address, "cod")
        with pytest.raises(ValidationError):
            await payment_service.record_manual_payment(
                store, order_id=order_id, payment_status="refunded", actor="admin-1"
            )


class TestIdempotencyKey:

    @pytest.mark.unit
    def test_format(self):
        assert payment_service.idempotency_key_for(12, "sslcommerz", 3) == "order-12-sslcommerz-3"
