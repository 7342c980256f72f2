"""
Custom domain exceptions for consistent error handling.

Every checkout failure is a DomainError carrying a machine-readable code
and one of the error categories below. The global exception handler in
main.py renders them as the standard error envelope; transient and
integrity failures get a generic public message while the full detail is
logged server-side.
"""
from fastapi import HTTPException, status

from domain.constants import GENERIC_FAILURE_MESSAGE

CATEGORY_VALIDATION = "validation"
CATEGORY_CONFLICT = "conflict"
CATEGORY_TRANSIENT = "transient"
CATEGORY_INTEGRITY = "integrity"
CATEGORY_NOT_FOUND = "not_found"
CATEGORY_AUTH = "auth"

_PRIVATE_CATEGORIES = frozenset({CATEGORY_TRANSIENT, CATEGORY_INTEGRITY})


class DomainError(HTTPException):
    """Base class for all domain-specific errors."""
    code = "domain_error"
    category = CATEGORY_VALIDATION

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, details: dict | None = None):
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.details = details or {}

    @property
    def public_message(self) -> str:
        if self.category in _PRIVATE_CATEGORIES:
            return GENERIC_FAILURE_MESSAGE
        return self.message

    @property
    def retryable(self) -> bool:
        return self.category == CATEGORY_TRANSIENT


# ── Generic categories ──────────────────────────────────────────────


class NotFoundError(DomainError):
    """Resource not found (404)."""
    code = "not_found"
    category = CATEGORY_NOT_FOUND

    def __init__(self, resource_type: str, identifier: str, details: dict | None = None):
        message = f"{resource_type} not found: {identifier}"
        super().__init__(message, status_code=status.HTTP_404_NOT_FOUND, details=details)


class ValidationError(DomainError):
    """Validation error (400)."""
    code = "validation_error"
    category = CATEGORY_VALIDATION

    def __init__(self, message: str, field: str | None = None, details: dict | None = None):
        if field:
            message = f"Validation error on {field}: {message}"
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class PermissionDeniedError(DomainError):
    """Permission denied (403)."""
    code = "permission_denied"
    category = CATEGORY_AUTH

    def __init__(self, message: str = "Permission denied", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_403_FORBIDDEN, details=details)


class UnauthorizedError(DomainError):
    """Unauthorized access (401)."""
    code = "unauthorized"
    category = CATEGORY_AUTH

    def __init__(self, message: str = "Unauthorized", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_401_UNAUTHORIZED, details=details)


class ConflictError(DomainError):
    """Resource conflict (409)."""
    code = "conflict"
    category = CATEGORY_CONFLICT

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


class RateLimitError(DomainError):
    """Rate limit exceeded (429)."""
    code = "rate_limited"
    category = CATEGORY_CONFLICT

    def __init__(self, message: str = "Rate limit exceeded", retry_after_seconds: int | None = None, details: dict | None = None):
        details = dict(details or {})
        if retry_after_seconds is not None:
            details["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, status_code=status.HTTP_429_TOO_MANY_REQUESTS, details=details)
        self.retry_after_seconds = retry_after_seconds


class TransientError(DomainError):
    """External dependency unavailable; safe to retry (503)."""
    code = "transient_error"
    category = CATEGORY_TRANSIENT

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_503_SERVICE_UNAVAILABLE, details=details)


class IntegrityViolationError(DomainError):
    """An invariant that must never break was found broken (500)."""
    code = "integrity_violation"
    category = CATEGORY_INTEGRITY

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)


# ── Pricing / order building ────────────────────────────────────────


class InvalidLineItemError(ValidationError):
    code = "invalid_line_item"


class ShippingOptionRequiredError(ValidationError):
    code = "shipping_option_required"

    def __init__(self, message: str = "A valid shipping option must be selected"):
        super().__init__(message)


class EmptyCartError(ValidationError):
    code = "empty_cart"

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class InvalidAddressError(ValidationError):
    code = "invalid_address"


class PaymentMethodDisabledError(ValidationError):
    code = "payment_method_unavailable"

    def __init__(self, payment_method_id: str):
        super().__init__(
            f"Payment method '{payment_method_id}' is not available",
            details={"payment_method_id": payment_method_id},
        )


class PhoneNotVerifiedError(ValidationError):
    code = "phone_not_verified"

    def __init__(self, message: str = "Phone number must be verified before placing a guest order"):
        super().__init__(message)


class OrderNumberCollisionError(ConflictError):
    code = "order_number_collision"

    def __init__(self, attempts: int):
        super().__init__(
            "Could not allocate a unique order number, please retry",
            details={"attempts": attempts},
        )


# ── OTP ─────────────────────────────────────────────────────────────


class OtpRateLimitedError(RateLimitError):
    code = "otp_rate_limited"

    def __init__(self, retry_after_seconds: int):
        super().__init__(
            f"Please wait {retry_after_seconds} seconds before requesting a new code.",
            retry_after_seconds=retry_after_seconds,
        )


class OtpNotFoundError(DomainError):
    code = "otp_not_found"
    category = CATEGORY_NOT_FOUND

    def __init__(self):
        super().__init__(
            "No verification code found. Please request a new one.",
            status_code=status.HTTP_404_NOT_FOUND,
        )


class OtpExpiredError(ValidationError):
    code = "otp_expired"

    def __init__(self):
        super().__init__("Verification code has expired. Please request a new one.")


class OtpMismatchError(ValidationError):
    code = "otp_mismatch"

    def __init__(self, remaining_attempts: int):
        super().__init__(
            "Invalid verification code.",
            details={"remaining_attempts": remaining_attempts},
        )


class OtpAttemptsExceededError(ConflictError):
    code = "otp_attempts_exceeded"

    def __init__(self):
        super().__init__("Too many failed attempts. Please request a new code.")


class OtpAlreadyConsumedError(ConflictError):
    code = "otp_already_consumed"

    def __init__(self):
        super().__init__("Verification code has already been used.")


# ── Order status ────────────────────────────────────────────────────


class IllegalTransitionError(ConflictError):
    code = "illegal_transition"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot change order status from '{current}' to '{target}'",
            details={"current_status": current, "requested_status": target},
        )


# ── Payments ────────────────────────────────────────────────────────


class PaymentAlreadyCompletedError(ConflictError):
    code = "payment_already_completed"

    def __init__(self, order_number: str):
        super().__init__(f"Order {order_number} is already paid")


class PaymentOrderCancelledError(ConflictError):
    code = "order_cancelled"

    def __init__(self, order_number: str):
        super().__init__(f"Order {order_number} is cancelled and cannot be paid")


class PaymentResolutionInProgressError(TransientError):
    """Another callback holds the session while it confirms with the provider (503, retryable)."""
    code = "payment_resolution_in_progress"

    def __init__(self, order_number: str):
        super().__init__(
            f"Payment for {order_number} is being confirmed by another callback",
            details={"order_number": order_number},
        )


class PaymentNotInitiatedError(NotFoundError):
    code = "payment_session_not_found"

    def __init__(self, reference: str):
        super().__init__("Payment session", reference)


class GatewayNotConfiguredError(ValidationError):
    code = "gateway_not_configured"

    def __init__(self, provider: str):
        super().__init__(f"Payment gateway '{provider}' is not configured")


class GatewayRejectedError(DomainError):
    """The gateway answered and refused the request (402)."""
    code = "gateway_rejected"
    category = CATEGORY_CONFLICT

    def __init__(self, provider: str, reason: str, details: dict | None = None):
        super().__init__(
            f"{provider} rejected the payment request: {reason}",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"provider": provider, **(details or {})},
        )
        self.provider = provider
        self.reason = reason


class GatewayUnreachableError(TransientError):
    """The gateway could not be reached or timed out (503, retryable)."""
    code = "gateway_unreachable"

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Could not reach {provider}: {reason}", details={"provider": provider})
        self.provider = provider


# ── Auth ────────────────────────────────────────────────────────────


class AuthMisconfiguredError(IntegrityViolationError):
    code = "auth_misconfigured"

    def __init__(self):
        super().__init__("Server auth misconfigured (JWT secret missing).")
