"""
Payment service: dispatches an order to its payment path and settles
hosted gateway callbacks.

Manual paths (cash on delivery, manual wallets, generic) never call out;
the buyer gets instructions and an admin records the payment later.

Hosted paths open a remote session per attempt. Each attempt has an
idempotency key (order-<id>-<provider>-<attempt>) backed by a UNIQUE
constraint on payment_sessions, and callbacks are settled with
conditional updates on the session status, so:
    - re-initiating while a session is open returns that same session
    - only the callback that claims a session (initiated -> resolving)
      confirms with the provider; a concurrent one gets the stored result
      or a retryable in-progress error
    - a callback for an already settled session returns the stored result
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order, PaymentMethod, PaymentSession
from domain.enums import CallbackOutcome, OrderStatus, PaymentMethodType, PaymentSessionStatus, PaymentStatus
from domain.errors import (
    ConflictError,
    DomainError,
    GatewayRejectedError,
    IntegrityViolationError,
    NotFoundError,
    PaymentAlreadyCompletedError,
    PaymentNotInitiatedError,
    PaymentOrderCancelledError,
    PaymentResolutionInProgressError,
    ValidationError,
)
from services import order_service
from services.gateways.base import CallbackUrls, ConfirmationResult, PaymentGateway, SessionRequest
from services.gateways.registry import get_gateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PaymentInitiation:
    order_id: int
    order_number: str
    method_type: str
    amount: Decimal
    manual: bool
    redirect_url: str | None = None
    session_token: str | None = None
    idempotency_key: str | None = None
    reused: bool = False
    instructions: str | None = None
    account_number: str | None = None


@dataclass(frozen=True, slots=True)
class CallbackEvent:
    """
    A normalised gateway redirect.

    token: the provider's session/validation handle
        (bKash paymentID, SSLCommerz val_id)
    reference: our order number as echoed back (SSLCommerz tran_id)
    """
    provider: str
    outcome: CallbackOutcome
    token: str | None = None
    reference: str | None = None


@dataclass(frozen=True, slots=True)
class PaymentResolution:
    success: bool
    order_number: str
    transaction_id: str | None = None
    already_resolved: bool = False
    reason: str | None = None


def idempotency_key_for(order_id: int, provider: str, attempt: int) -> str:
    return f"order-{order_id}-{provider}-{attempt}"


def _method_type(order: Order) -> PaymentMethodType:
    try:
        return PaymentMethodType(order.payment_method_type)
    except ValueError:
        raise IntegrityViolationError(
            f"Order {order.order_number} has unknown payment method type '{order.payment_method_type}'"
        )


async def _latest_session(db: AsyncSession, order_id: int, provider: str) -> PaymentSession | None:
    res = await db.execute(
        select(PaymentSession)
        .where(PaymentSession.order_id == order_id, PaymentSession.provider == provider)
        .order_by(PaymentSession.attempt.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def _session_by_key(db: AsyncSession, idempotency_key: str) -> PaymentSession | None:
    res = await db.execute(
        select(PaymentSession)
        .where(PaymentSession.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


def _stale_before(now: datetime) -> datetime:
    """Reservations and claims older than this were abandoned by a crashed request."""
    return now - timedelta(seconds=settings.gateway_timeout_seconds * 2)


def _reused(order: Order, session: PaymentSession) -> PaymentInitiation:
    return PaymentInitiation(
        order_id=order.id,
        order_number=order.order_number,
        method_type=session.provider,
        amount=session.amount,
        manual=False,
        redirect_url=session.redirect_url,
        session_token=session.session_token,
        idempotency_key=session.idempotency_key,
        reused=True,
    )


# ════════════════════════════════════════════════════════════════════
# Initiation
# ════════════════════════════════════════════════════════════════════


async def initiate_payment(
    db: AsyncSession,
    *,
    order_id: int,
    callback_urls: CallbackUrls,
    gateways: dict[str, PaymentGateway],
    now: datetime | None = None,
) -> PaymentInitiation:
    """
    Start (or resume) payment for an order.

    Raises:
        NotFoundError: no such order
        PaymentAlreadyCompletedError: the order is already paid
        PaymentOrderCancelledError: the order was cancelled
        GatewayNotConfiguredError: hosted method without a configured gateway
        GatewayRejectedError / GatewayUnreachableError: from the provider
        ConflictError: another initiation for this order is in flight
    """
    now = now or datetime.utcnow()
    order = await order_service.get_order(db, order_id)
    if order.payment_status == PaymentStatus.PAID.value:
        raise PaymentAlreadyCompletedError(order.order_number)
    if order.status == OrderStatus.CANCELLED.value:
        raise PaymentOrderCancelledError(order.order_number)

    method_type = _method_type(order)
    if not method_type.is_hosted:
        method = await db.get(PaymentMethod, order.payment_method_id)
        return PaymentInitiation(
            order_id=order.id,
            order_number=order.order_number,
            method_type=method_type.value,
            amount=order.total,
            manual=True,
            instructions=method.instructions if method else None,
            account_number=method.account_number if method else None,
        )

    gateway = get_gateway(gateways, method_type.value)
    provider = gateway.provider

    latest = await _latest_session(db, order.id, provider)
    if latest is not None:
        if latest.status == PaymentSessionStatus.PAID.value:
            raise PaymentAlreadyCompletedError(order.order_number)
        if latest.status == PaymentSessionStatus.RESOLVING.value:
            raise ConflictError(
                "Payment for this order is being confirmed",
                details={"order_number": order.order_number},
            )
        if latest.status == PaymentSessionStatus.INITIATED.value:
            if latest.redirect_url:
                logger.info(f"Reusing open {provider} session {latest.idempotency_key}")
                return _reused(order, latest)
            if latest.created_at and latest.created_at > _stale_before(now):
                raise ConflictError(
                    "Payment initiation already in progress for this order",
                    details={"order_number": order.order_number},
                )
            await _fail_session(db, latest.id, "initiation abandoned", now)

    attempt = (latest.attempt + 1) if latest is not None else 1
    key = idempotency_key_for(order.id, provider, attempt)
    address = order.shipping_address or {}
    session_request = SessionRequest(
        order_number=order.order_number,
        amount=order.total,
        idempotency_key=key,
        callback_urls=callback_urls,
        customer_name=address.get("full_name") or "Customer",
        customer_phone=address.get("phone") or "",
        customer_address=address.get("address_line") or "",
        customer_city=address.get("city") or "",
        item_count=len(await order_service.get_order_items(db, order.id)) or 1,
    )
    order_ref = (order.id, order.order_number, order.total)

    # Reserve the attempt before calling out so concurrent initiators
    # collide on the idempotency key instead of opening two remote sessions.
    db.add(
        PaymentSession(
            order_id=order.id,
            provider=provider,
            attempt=attempt,
            idempotency_key=key,
            amount=order.total,
            status=PaymentSessionStatus.INITIATED.value,
            created_at=now,
        )
    )
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        winner = await _session_by_key(db, key)
        if winner is not None and winner.redirect_url:
            return _reused(await order_service.get_order(db, order_ref[0]), winner)
        raise ConflictError(
            "Payment initiation already in progress for this order",
            details={"order_number": order_ref[1]},
        )

    reset = await db.execute(
        update(Order)
        .where(Order.id == order_ref[0], Order.payment_status != PaymentStatus.PAID.value)
        .values(payment_status=PaymentStatus.PENDING.value, payment_idempotency_key=key, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if reset.rowcount == 0:
        await db.rollback()
        raise PaymentAlreadyCompletedError(order_ref[1])
    await db.commit()

    try:
        result = await gateway.create_session(session_request)
    except DomainError as e:
        await _fail_session_by_key(db, key, e.message, now)
        raise
    except Exception as e:
        await _fail_session_by_key(db, key, f"initiation error: {e}", now)
        raise

    await db.execute(
        update(PaymentSession)
        .where(PaymentSession.idempotency_key == key)
        .values(session_token=result.session_token, redirect_url=result.redirect_url)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info(f"Payment session {key} opened for {order_ref[1]} ({provider}, {order_ref[2]})")
    return PaymentInitiation(
        order_id=order_ref[0],
        order_number=order_ref[1],
        method_type=provider,
        amount=order_ref[2],
        manual=False,
        redirect_url=result.redirect_url,
        session_token=result.session_token,
        idempotency_key=key,
    )


async def _fail_session(db: AsyncSession, session_id: int, reason: str, now: datetime) -> None:
    await db.execute(
        update(PaymentSession)
        .where(PaymentSession.id == session_id, PaymentSession.status == PaymentSessionStatus.INITIATED.value)
        .values(status=PaymentSessionStatus.FAILED.value, failure_reason=reason[:500], resolved_at=now)
        .execution_options(synchronize_session=False)
    )


async def _fail_session_by_key(db: AsyncSession, key: str, reason: str, now: datetime) -> None:
    session = await _session_by_key(db, key)
    if session is not None:
        await _fail_session(db, session.id, reason, now)
        await db.commit()
    logger.warning(f"Payment session {key} could not be opened: {reason}")


# ════════════════════════════════════════════════════════════════════
# Callback settlement
# ════════════════════════════════════════════════════════════════════


async def _find_session(db: AsyncSession, event: CallbackEvent) -> PaymentSession | None:
    if event.token:
        res = await db.execute(
            select(PaymentSession)
            .where(PaymentSession.provider == event.provider, PaymentSession.session_token == event.token)
            .execution_options(populate_existing=True)
        )
        session = res.scalar_one_or_none()
        if session is not None:
            return session

    if event.reference:
        try:
            order = await order_service.get_order_by_number(db, event.reference)
        except NotFoundError:
            return None
        return await _latest_session(db, order.id, event.provider)

    return None


def _stored_resolution(session: PaymentSession, order_number: str) -> PaymentResolution:
    return PaymentResolution(
        success=session.status == PaymentSessionStatus.PAID.value,
        order_number=order_number,
        transaction_id=session.transaction_id,
        already_resolved=True,
        reason=session.failure_reason,
    )


async def _claim_session(db: AsyncSession, session_id: int, now: datetime) -> bool:
    """Move an open session to resolving; a stale claim may be taken over."""
    res = await db.execute(
        update(PaymentSession)
        .where(
            PaymentSession.id == session_id,
            or_(
                PaymentSession.status == PaymentSessionStatus.INITIATED.value,
                and_(
                    PaymentSession.status == PaymentSessionStatus.RESOLVING.value,
                    PaymentSession.claimed_at < _stale_before(now),
                ),
            ),
        )
        .values(status=PaymentSessionStatus.RESOLVING.value, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return res.rowcount == 1


def _held_claim(session_id: int, claimed_at: datetime):
    return and_(
        PaymentSession.id == session_id,
        PaymentSession.status == PaymentSessionStatus.RESOLVING.value,
        PaymentSession.claimed_at == claimed_at,
    )


async def _release_claim(db: AsyncSession, session_id: int, claimed_at: datetime) -> None:
    await db.rollback()
    await db.execute(
        update(PaymentSession)
        .where(_held_claim(session_id, claimed_at))
        .values(status=PaymentSessionStatus.INITIATED.value, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _settle_failed(
    db: AsyncSession,
    *,
    session_id: int,
    claimed_at: datetime,
    idempotency_key: str,
    order_id: int,
    order_number: str,
    reason: str,
    now: datetime,
) -> PaymentResolution:
    res = await db.execute(
        update(PaymentSession)
        .where(_held_claim(session_id, claimed_at))
        .values(status=PaymentSessionStatus.FAILED.value, failure_reason=reason[:500], resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        await db.rollback()
        return await _winner(db, session_id, order_number)

    # Only the current attempt may move the order; a stale session must not
    # overwrite the outcome of a newer one.
    await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status != PaymentStatus.PAID.value,
            Order.payment_idempotency_key == idempotency_key,
        )
        .values(payment_status=PaymentStatus.FAILED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.warning(f"Payment {idempotency_key} for {order_number} failed: {reason}")
    return PaymentResolution(success=False, order_number=order_number, reason=reason)


async def _winner(db: AsyncSession, session_id: int, order_number: str) -> PaymentResolution:
    """Stored outcome of a session another callback has settled, or is settling."""
    res = await db.execute(
        select(PaymentSession)
        .where(PaymentSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    session = res.scalar_one()
    if session.status not in (PaymentSessionStatus.PAID.value, PaymentSessionStatus.FAILED.value):
        await db.rollback()
        logger.info(f"Payment callback for {order_number} arrived while another is confirming it")
        raise PaymentResolutionInProgressError(order_number)
    logger.info(f"Payment callback for {order_number} lost the race, returning stored result")
    return _stored_resolution(session, order_number)


async def resolve_payment_callback(
    db: AsyncSession,
    *,
    event: CallbackEvent,
    gateways: dict[str, PaymentGateway],
    now: datetime | None = None,
) -> PaymentResolution:
    """
    Settle a gateway redirect/callback exactly once.

    The session is claimed before the provider is asked to confirm, so a
    duplicate callback never triggers a second bKash execute and can never
    record a captured payment as failed.

    Raises:
        PaymentNotInitiatedError: no session matches the callback
        PaymentResolutionInProgressError: another callback holds the session
        GatewayNotConfiguredError: provider not configured
        GatewayUnreachableError: confirmation could not reach the provider;
            the claim is released and the callback can be retried
    """
    now = now or datetime.utcnow()
    gateway = get_gateway(gateways, event.provider)

    pre_confirmed: ConfirmationResult | None = None
    session = await _find_session(db, event)
    if (
        session is None
        and event.provider == PaymentMethodType.SSLCOMMERZ.value
        and event.outcome == CallbackOutcome.SUCCESS
        and event.token
        and not event.reference
    ):
        # SSLCommerz redirects without tran_id: validate first, then look up by it.
        await db.rollback()
        try:
            pre_confirmed = await gateway.confirm(event.token)
        except GatewayRejectedError as e:
            raise PaymentNotInitiatedError(event.token) from e
        session = await _find_session(
            db, CallbackEvent(event.provider, event.outcome, reference=pre_confirmed.reference)
        )
    if session is None:
        logger.warning(f"{event.provider} callback for unknown session {event.token or event.reference}")
        raise PaymentNotInitiatedError(event.token or event.reference or "unknown")

    order = await order_service.get_order(db, session.order_id)
    order_id, order_number, order_total = order.id, order.order_number, order.total
    session_id, session_key, session_token = session.id, session.idempotency_key, session.session_token

    if session.status in (PaymentSessionStatus.PAID.value, PaymentSessionStatus.FAILED.value):
        logger.info(f"Payment {session_key} already {session.status}, callback ignored")
        return _stored_resolution(session, order_number)

    if not await _claim_session(db, session_id, now):
        return await _winner(db, session_id, order_number)

    def fail(reason: str):
        return _settle_failed(
            db,
            session_id=session_id,
            claimed_at=now,
            idempotency_key=session_key,
            order_id=order_id,
            order_number=order_number,
            reason=reason,
            now=now,
        )

    if event.outcome == CallbackOutcome.CANCELLED:
        return await fail("cancelled by buyer")
    if event.outcome != CallbackOutcome.SUCCESS:
        return await fail("payment failed at gateway")

    confirmation = pre_confirmed
    if confirmation is None:
        confirm_token = session_token if event.provider == PaymentMethodType.BKASH_GATEWAY.value else event.token
        if not confirm_token:
            return await fail("callback carried no confirmation token")
        try:
            confirmation = await gateway.confirm(confirm_token)
        except GatewayRejectedError as e:
            return await fail(e.reason)
        except Exception:
            await _release_claim(db, session_id, now)
            raise

    if confirmation.reference and confirmation.reference.upper() != order_number:
        logger.error(
            f"{event.provider} confirmed reference {confirmation.reference} "
            f"for session of order {order_number}"
        )
        return await fail("confirmation reference does not match order")

    if confirmation.amount < order_total:
        logger.warning(f"Underpayment on {order_number}: paid {confirmation.amount}, due {order_total}")
        return await fail(f"paid amount {confirmation.amount} is below order total {order_total}")

    res = await db.execute(
        update(PaymentSession)
        .where(_held_claim(session_id, now))
        .values(
            status=PaymentSessionStatus.PAID.value,
            transaction_id=confirmation.transaction_id,
            resolved_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        await db.rollback()
        return await _winner(db, session_id, order_number)

    await db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(
            payment_status=PaymentStatus.PAID.value,
            payment_transaction_id=confirmation.transaction_id,
            payment_idempotency_key=session_key,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info(f"Payment {session_key} settled for {order_number}: trx={confirmation.transaction_id}")
    return PaymentResolution(
        success=True,
        order_number=order_number,
        transaction_id=confirmation.transaction_id,
    )


# ════════════════════════════════════════════════════════════════════
# Manual reconciliation
# ════════════════════════════════════════════════════════════════════


async def record_manual_payment(
    db: AsyncSession,
    *,
    order_id: int,
    payment_status: str,
    actor: str | None,
    note: str | None = None,
    transaction_id: str | None = None,
) -> Order:
    """Admin records the outcome of a manual payment (COD collected, wallet transfer seen)."""
    try:
        new_status = PaymentStatus(payment_status)
    except ValueError:
        raise ValidationError(f"Unknown payment status '{payment_status}'", field="payment_status")

    order = await order_service.get_order(db, order_id)
    if _method_type(order).is_hosted:
        raise ValidationError("Hosted gateway payments are settled by gateway callbacks only")

    previous = order.payment_status
    order.payment_status = new_status.value
    if transaction_id:
        order.payment_transaction_id = transaction_id.strip()
    if note:
        order.notes = f"{order.notes}\n{note}" if order.notes else note
    order.updated_at = datetime.utcnow()
    await db.commit()

    logger.info(
        f"Manual payment on {order.order_number}: {previous} -> {new_status.value} by {actor or 'system'}"
    )
    return order
