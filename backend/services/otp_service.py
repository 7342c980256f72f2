"""
OTP service: phone ownership verification for guest checkout.

Per phone number: NoChallenge -> Issued -> (Verified | Expired | Replaced).

Concurrency:
    - Issuing is a conditional write: the stored challenge is only
      overwritten when its issued_at is older than the resend cooldown,
      and a first challenge is guarded by the UNIQUE(phone) constraint.
      Two simultaneous requests for one phone cannot both succeed.
    - Consumption is conditional on consumed_at IS NULL, so a replayed
      code always observes OtpAlreadyConsumedError.
"""
import hmac
import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings
from db_models import OtpChallenge
from domain.errors import (
    OtpAlreadyConsumedError,
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpMismatchError,
    OtpNotFoundError,
    OtpRateLimitedError,
)
from services import notification_service
from utils.validators import normalize_phone

logger = logging.getLogger(__name__)

CODE_DIGITS = 6


def _now_utc() -> datetime:
    # Naive UTC, consistent with the DateTime columns.
    return datetime.utcnow()


@dataclass(frozen=True, slots=True)
class OtpIssued:
    phone: str
    expires_at: datetime
    resend_available_at: datetime
    delivered: bool

    def as_dict(self, now: datetime | None = None) -> dict:
        now = now or _now_utc()
        return {
            "ok": True,
            "phone": self.phone,
            "expires_at": self.expires_at.isoformat(),
            "expires_in_seconds": max(0, math.ceil((self.expires_at - now).total_seconds())),
            "resend_in_seconds": max(0, math.ceil((self.resend_available_at - now).total_seconds())),
        }


@dataclass(frozen=True, slots=True)
class OtpVerified:
    phone: str
    verified: bool = True


def generate_code() -> str:
    """Uniformly random, zero-padded numeric code."""
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


def seconds_remaining(challenge: OtpChallenge, now: datetime | None = None) -> int:
    """Countdown view for the UI; 0 once expired."""
    now = now or _now_utc()
    return max(0, math.ceil((challenge.expires_at - now).total_seconds()))


async def get_challenge(db: AsyncSession, phone: str) -> OtpChallenge | None:
    res = await db.execute(
        select(OtpChallenge)
        .where(OtpChallenge.phone == phone)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def request_otp(
    db: AsyncSession,
    *,
    phone: str,
    now: datetime | None = None,
    sender=None,
    app_settings: Settings | None = None,
) -> OtpIssued:
    """
    Issue a fresh code for phone and send it by SMS.

    Raises:
        ValidationError: phone is not a local mobile number
        OtpRateLimitedError: a code was issued within the resend cooldown
    """
    cfg = app_settings or settings
    phone = normalize_phone(phone)
    now = now or _now_utc()
    ttl = timedelta(seconds=cfg.otp_ttl_seconds)
    cooldown = timedelta(seconds=cfg.otp_resend_cooldown_seconds)

    code = generate_code()
    expires_at = now + ttl

    replaced = await db.execute(
        update(OtpChallenge)
        .where(
            OtpChallenge.phone == phone,
            OtpChallenge.issued_at <= now - cooldown,
        )
        .values(code=code, issued_at=now, expires_at=expires_at, consumed_at=None, attempts=0)
        .execution_options(synchronize_session=False)
    )

    if replaced.rowcount == 0:
        last_issued_at = (
            await db.execute(select(OtpChallenge.issued_at).where(OtpChallenge.phone == phone))
        ).scalar_one_or_none()

        if last_issued_at is not None:
            await db.rollback()
            retry_after = max(1, math.ceil((last_issued_at + cooldown - now).total_seconds()))
            logger.warning(f"OTP resend blocked for ...{phone[-4:]} ({retry_after}s left)")
            raise OtpRateLimitedError(retry_after)

        db.add(
            OtpChallenge(
                phone=phone,
                code=code,
                issued_at=now,
                expires_at=expires_at,
                consumed_at=None,
                attempts=0,
            )
        )
        try:
            await db.flush()
        except IntegrityError:
            # Lost the race against a concurrent first issue for this phone.
            await db.rollback()
            raise OtpRateLimitedError(cfg.otp_resend_cooldown_seconds)

    await db.commit()
    logger.info(f"OTP issued for ...{phone[-4:]} (expires {expires_at.isoformat()})")

    delivered = await notification_service.dispatch_sms(
        notification_service.TEMPLATE_OTP,
        phone,
        {"otp": code, "minutes": max(1, cfg.otp_ttl_seconds // 60), "store_name": cfg.store_name},
        sender=sender,
        sms_config=cfg.sms_config(),
    )

    return OtpIssued(
        phone=phone,
        expires_at=expires_at,
        resend_available_at=now + cooldown,
        delivered=delivered,
    )


async def confirm_otp(
    db: AsyncSession,
    *,
    phone: str,
    code: str,
    now: datetime | None = None,
    app_settings: Settings | None = None,
) -> OtpVerified:
    """
    Check a code and consume the challenge on success.

    Raises:
        OtpNotFoundError, OtpAlreadyConsumedError, OtpExpiredError,
        OtpAttemptsExceededError, OtpMismatchError
    """
    phone = normalize_phone(phone)
    now = now or _now_utc()
    max_attempts = (app_settings or settings).otp_max_attempts

    challenge = await get_challenge(db, phone)
    if challenge is None:
        raise OtpNotFoundError()
    if challenge.consumed_at is not None:
        raise OtpAlreadyConsumedError()
    if challenge.expires_at <= now:
        raise OtpExpiredError()
    if challenge.attempts >= max_attempts:
        raise OtpAttemptsExceededError()

    submitted = (code or "").strip().encode("utf-8")
    if not hmac.compare_digest(challenge.code.encode("utf-8"), submitted):
        await db.execute(
            update(OtpChallenge)
            .where(OtpChallenge.id == challenge.id, OtpChallenge.issued_at == challenge.issued_at)
            .values(attempts=OtpChallenge.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        remaining = max(0, max_attempts - challenge.attempts - 1)
        logger.info(f"OTP mismatch for ...{phone[-4:]} ({remaining} attempts left)")
        raise OtpMismatchError(remaining)

    consumed = await db.execute(
        update(OtpChallenge)
        .where(
            OtpChallenge.id == challenge.id,
            OtpChallenge.issued_at == challenge.issued_at,
            OtpChallenge.consumed_at.is_(None),
        )
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount == 0:
        await db.rollback()
        raise OtpAlreadyConsumedError()

    await db.commit()
    logger.info(f"Phone ...{phone[-4:]} verified")
    return OtpVerified(phone=phone)


async def is_phone_verified(
    db: AsyncSession,
    phone: str,
    now: datetime | None = None,
    app_settings: Settings | None = None,
) -> bool:
    """True if phone consumed a code within the verified window."""
    phone = normalize_phone(phone)
    now = now or _now_utc()
    window_start = now - timedelta(seconds=(app_settings or settings).otp_verified_window_seconds)
    res = await db.execute(
        select(OtpChallenge.id).where(
            OtpChallenge.phone == phone,
            OtpChallenge.consumed_at.is_not(None),
            OtpChallenge.consumed_at >= window_start,
        )
    )
    return res.scalar_one_or_none() is not None
