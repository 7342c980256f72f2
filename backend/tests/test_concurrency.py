"""
Tests for requests that race each other on a shared SQLite file.

Each side runs in its own session and connection, the way two workers
would, and the two are interleaved with asyncio.gather.
"""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import func, select

from db_models import OtpChallenge, PaymentSession
from domain.enums import CallbackOutcome
from domain.errors import GatewayRejectedError, OtpRateLimitedError, PaymentResolutionInProgressError
from services import order_service, otp_service, payment_service
from services.gateways.base import CallbackUrls
from services.otp_service import OtpIssued
from services.payment_service import CallbackEvent
from conftest import GUEST_PHONE, GUEST_PHONE_NORMALIZED, FakeGateway, RecordingSender, confirmation

NOW = datetime(2026, 3, 1, 10, 0, 0)
URLS = CallbackUrls(
    success="http://test/payments/callback/x?status=success",
    failure="http://test/payments/callback/x?status=failed",
    cancel="http://test/payments/callback/x?status=cancelled",
)


class ExecuteOnceGateway(FakeGateway):
    """
    bKash-like double: the first confirm blocks until released and then
    captures the payment, any later confirm is refused as already executed.
    """

    def __init__(self, provider: str):
        super().__init__(provider)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def confirm(self, token: str):
        self.confirmed.append(token)
        if len(self.confirmed) > 1:
            raise GatewayRejectedError(self.provider, "Payment already executed")
        self.entered.set()
        await self.release.wait()
        return self.confirm_result


async def _open_hosted_payment(session_maker, cart, address, gateways):
    async with session_maker() as db:
        order = await order_service.place_order(
            db,
            items=cart,
            shipping_option_id="inside_dhaka",
            payment_method_id="bkash_pay",
            address=address,
            now=NOW,
            sender=RecordingSender(),
        )
        initiation = await payment_service.initiate_payment(
            db, order_id=order.id, callback_urls=URLS, gateways=gateways, now=NOW
        )
        return order.id, order.order_number, initiation.session_token


class TestConcurrentCallbacks:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_callback_cannot_fail_a_captured_payment(self, file_store, cart, address):
        gateway = ExecuteOnceGateway("bkash_gateway")
        gateways = {"bkash_gateway": gateway}
        order_id, number, token = await _open_hosted_payment(file_store, cart, address, gateways)
        gateway.confirm_result = confirmation("TRX-OK", "1300.00", number)
        event = CallbackEvent(provider="bkash_gateway", outcome=CallbackOutcome.SUCCESS, token=token)

        async def first():
            async with file_store() as db:
                return await payment_service.resolve_payment_callback(db, event=event, gateways=gateways)

        async def duplicate():
            await gateway.entered.wait()
            try:
                async with file_store() as db:
                    return await payment_service.resolve_payment_callback(db, event=event, gateways=gateways)
            finally:
                gateway.release.set()

        winner, loser = await asyncio.wait_for(
            asyncio.gather(first(), duplicate(), return_exceptions=True), timeout=10
        )

        assert winner.success is True
        assert winner.transaction_id == "TRX-OK"
        assert isinstance(loser, PaymentResolutionInProgressError)
        assert loser.retryable is True
        assert gateway.confirmed == [token]

        async with file_store() as db:
            order = await order_service.get_order(db, order_id)
            assert order.payment_status == "paid"
            assert order.payment_transaction_id == "TRX-OK"
            [session] = (
                await db.execute(select(PaymentSession).where(PaymentSession.order_id == order_id))
            ).scalars().all()
            assert session.status == "paid"

            # once settled, a replay gets the stored result without calling out
            replay = await payment_service.resolve_payment_callback(db, event=event, gateways=gateways)
            assert replay.success is True
            assert replay.already_resolved is True
            assert len(gateway.confirmed) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_simultaneous_callbacks_confirm_once(self, file_store, cart, address):
        gateway = FakeGateway("bkash_gateway")
        gateways = {"bkash_gateway": gateway}
        order_id, number, token = await _open_hosted_payment(file_store, cart, address, gateways)
        gateway.confirm_result = confirmation("TRX-OK", "1300.00", number)
        event = CallbackEvent(provider="bkash_gateway", outcome=CallbackOutcome.SUCCESS, token=token)

        async def callback():
            async with file_store() as db:
                return await payment_service.resolve_payment_callback(db, event=event, gateways=gateways)

        results = await asyncio.wait_for(
            asyncio.gather(callback(), callback(), return_exceptions=True), timeout=10
        )

        settled = [r for r in results if not isinstance(r, Exception) and not r.already_resolved]
        assert len(settled) == 1
        assert settled[0].success is True
        for other in results:
            if other is settled[0]:
                continue
            assert isinstance(other, PaymentResolutionInProgressError) or other.success is True
        assert len(gateway.confirmed) == 1

        async with file_store() as db:
            order = await order_service.get_order(db, order_id)
            assert order.payment_status == "paid"


class TestConcurrentOtpRequests:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_only_one_code_is_issued(self, file_store):
        outbox = RecordingSender()

        async def request():
            async with file_store() as db:
                return await otp_service.request_otp(db, phone=GUEST_PHONE, now=NOW, sender=outbox)

        results = await asyncio.wait_for(
            asyncio.gather(request(), request(), return_exceptions=True), timeout=10
        )

        issued = [r for r in results if isinstance(r, OtpIssued)]
        limited = [r for r in results if isinstance(r, OtpRateLimitedError)]
        assert len(issued) == 1
        assert len(limited) == 1
        assert limited[0].status_code == 429
        assert len(outbox.messages) == 1

        async with file_store() as db:
            count = (
                await db.execute(
                    select(func.count()).select_from(OtpChallenge).where(OtpChallenge.phone == GUEST_PHONE_NORMALIZED)
                )
            ).scalar_one()
            assert count == 1
