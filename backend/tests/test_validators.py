"""
Tests for checkout input validation.

Tests: is_valid_mobile, normalize_phone, validate_shipping_address
"""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest
from fastapi import HTTPException

from domain.errors import InvalidAddressError, ValidationError
from utils.validators import is_valid_mobile, normalize_phone, validate_shipping_address


class TestIsValidMobile:

    @pytest.mark.unit
    @pytest.mark.parametrize("phone", [
        "01712345678",
        "8801712345678",
        "+8801712345678",
        "017-1234-5678",
        "0171 234 5678",
        "01312345678",
        "01912345678",
    ])
    def test_accepts_local_mobile_forms(self, phone):
        assert is_valid_mobile(phone) is True

    @pytest.mark.unit
    @pytest.mark.parametrize("phone", [
        "",
        None,
        "0171234567",      # too short
        "017123456789",    # too long
        "01212345678",     # operator digit 2
        "02912345678",     # landline
        "+4407123456789",
        "01712abc678",
    ])
    def test_rejects_everything_else(self, phone):
        assert is_valid_mobile(phone) is False


class TestNormalizePhone:

    @pytest.mark.unit
    def test_all_forms_map_to_one_canonical_value(self):
        forms = ["01712345678", "8801712345678", "+8801712345678", "017-1234-5678"]
        assert {normalize_phone(p) for p in forms} == {"8801712345678"}

    @pytest.mark.unit
    def test_bare_operator_form(self):
        """Without the leading 0 the country code is still added."""
        assert normalize_phone("1712345678") == "8801712345678"

    @pytest.mark.unit
    def test_invalid_raises_400(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_phone("12345")
        assert exc_info.value.status_code == 400
        assert "phone" in exc_info.value.detail

    @pytest.mark.unit
    def test_validation_error_is_an_http_exception(self):
        """Domain errors stay HTTPExceptions so FastAPI can render them."""
        with pytest.raises(HTTPException):
            normalize_phone("")


class TestValidateShippingAddress:

    @pytest.mark.unit
    def test_valid_address_is_trimmed(self):
        cleaned = validate_shipping_address({
            "full_name": "  Nusrat Jahan ",
            "phone": " 01712345678 ",
            "address_line": "House 12, Road 5",
            "city": "Dhaka",
        })
        assert cleaned["full_name"] == "Nusrat Jahan"
        assert cleaned["phone"] == "01712345678"
        assert cleaned["city"] == "Dhaka"

    @pytest.mark.unit
    @pytest.mark.parametrize("missing", ["full_name", "phone", "address_line"])
    def test_missing_required_field(self, missing):
        address = {"full_name": "Nusrat", "phone": "01712345678", "address_line": "Road 5"}
        address[missing] = "   "
        with pytest.raises(InvalidAddressError) as exc_info:
            validate_shipping_address(address)
        assert exc_info.value.code == "invalid_address"
        assert missing in exc_info.value.detail

    @pytest.mark.unit
    def test_bad_phone_is_an_address_error(self):
        with pytest.raises(InvalidAddressError):
            validate_shipping_address(
                {"full_name": "Nusrat", "phone": "555-0100", "address_line": "Road 5"}
            )

    @pytest.mark.unit
    def test_optional_fields_pass_through(self):
        cleaned = validate_shipping_address({
            "full_name": "Nusrat",
            "phone": "01712345678",
            "address_line": "Road 5",
            "area": "Dhanmondi",
            "postal_code": "1205",
        })
        assert cleaned["area"] == "Dhanmondi"
        assert cleaned["postal_code"] == "1205"
