"""
Input validation utilities for checkout.

Phone numbers are accepted in any of the local forms (01XXXXXXXXX,
8801XXXXXXXXX, +8801XXXXXXXXX, with spaces or dashes) and stored in one
canonical form so the same phone always maps to the same OTP challenge
and the same order lookups.
"""
import re

from domain.constants import LOCAL_MOBILE_PATTERN
from domain.errors import InvalidAddressError, ValidationError

_MOBILE_RE = re.compile(LOCAL_MOBILE_PATTERN)
_NON_DIGIT_RE = re.compile(r"\D")


def is_valid_mobile(phone: str | None) -> bool:
    """True when phone looks like a local mobile number."""
    if not phone:
        return False
    compact = re.sub(r"[\s\-]", "", phone)
    return bool(_MOBILE_RE.match(compact))


def normalize_phone(phone: str) -> str:
    """
    Canonicalise a mobile number to 8801XXXXXXXXX.

    Raises:
        ValidationError if the input is not a local mobile number
    """
    if not is_valid_mobile(phone):
        raise ValidationError("Please enter a valid mobile number", field="phone")

    digits = _NON_DIGIT_RE.sub("", phone)
    if digits.startswith("880"):
        return digits
    if digits.startswith("0"):
        return "88" + digits
    return "880" + digits


def validate_shipping_address(address: dict) -> dict:
    """
    Check the required address fields and return a cleaned snapshot.

    Raises:
        InvalidAddressError naming the first missing or malformed field
    """
    cleaned = {key: (value.strip() if isinstance(value, str) else value) for key, value in address.items()}

    for field in ("full_name", "phone", "address_line"):
        if not cleaned.get(field):
            raise InvalidAddressError(f"{field.replace('_', ' ')} is required", field=field)

    if not is_valid_mobile(cleaned["phone"]):
        raise InvalidAddressError("Please enter a valid mobile number", field="phone")

    return cleaned
