"""
Pydantic models for request/response validation.

Field names are snake_case in Python and camelCase on the wire. Money is
serialised as a decimal string ("1360.00") so clients never see float
rounding.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiBase(BaseModel):
    """Shared base: allows construction by Python name or alias, and from ORM rows."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ── Checkout Requests ───────────────────────────────────────────────

class CartItemIn(ApiBase):
    product_id: int = Field(..., alias="productId")
    quantity: int = Field(..., description="Units of this product; must be at least 1")
    size: Optional[str] = Field(default=None, max_length=30)
    color: Optional[str] = Field(default=None, max_length=30)


class QuoteRequest(ApiBase):
    items: List[CartItemIn] = Field(default_factory=list)
    shipping_option_id: Optional[str] = Field(default=None, alias="shippingOptionId")


class ShippingAddressIn(ApiBase):
    full_name: str = Field("", alias="fullName", max_length=120)
    phone: str = Field("", max_length=20)
    address_line: str = Field("", alias="addressLine", max_length=500)
    area: Optional[str] = Field(default=None, max_length=100)
    city: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, alias="postalCode", max_length=20)


class AttributionIn(ApiBase):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    utm_source: Optional[str] = Field(default=None, alias="utmSource")
    utm_medium: Optional[str] = Field(default=None, alias="utmMedium")
    utm_campaign: Optional[str] = Field(default=None, alias="utmCampaign")
    utm_term: Optional[str] = Field(default=None, alias="utmTerm")
    utm_content: Optional[str] = Field(default=None, alias="utmContent")
    referrer: Optional[str] = None
    landing_page: Optional[str] = Field(default=None, alias="landingPage")


class PlaceOrderRequest(ApiBase):
    items: List[CartItemIn] = Field(default_factory=list)
    shipping_option_id: Optional[str] = Field(default=None, alias="shippingOptionId")
    payment_method_id: str = Field(..., alias="paymentMethodId")
    address: ShippingAddressIn
    notes: Optional[str] = Field(default=None, max_length=1000)
    attribution: Optional[AttributionIn] = None


class OtpRequest(ApiBase):
    phone: str = Field(..., max_length=20)


class OtpVerifyRequest(ApiBase):
    phone: str = Field(..., max_length=20)
    code: str = Field(..., max_length=6, description="Code received by SMS")


# ── Admin Requests ──────────────────────────────────────────────────

class StatusChangeRequest(ApiBase):
    status: str
    note: Optional[str] = Field(default=None, max_length=500)


class ManualPaymentRequest(ApiBase):
    payment_status: str = Field(..., alias="paymentStatus")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId", max_length=100)
    note: Optional[str] = Field(default=None, max_length=500)


class ShippingOptionUpdate(ApiBase):
    """Only fields present in the request body are changed; null clears a threshold."""
    name: Optional[str] = Field(default=None, max_length=100)
    base_price: Optional[Decimal] = Field(default=None, alias="basePrice")
    free_shipping_threshold: Optional[Decimal] = Field(default=None, alias="freeShippingThreshold")
    discount_threshold: Optional[Decimal] = Field(default=None, alias="discountThreshold")
    discount_amount: Optional[Decimal] = Field(default=None, alias="discountAmount")
    enabled: Optional[bool] = None
    sort_order: Optional[int] = Field(default=None, alias="sortOrder")


class PaymentMethodUpdate(ApiBase):
    name: Optional[str] = Field(default=None, max_length=100)
    enabled: Optional[bool] = None
    instructions: Optional[str] = Field(default=None, max_length=2000)
    account_number: Optional[str] = Field(default=None, alias="accountNumber", max_length=30)
    is_default: Optional[bool] = Field(default=None, alias="isDefault")
    sort_order: Optional[int] = Field(default=None, alias="sortOrder")


# ── Responses ───────────────────────────────────────────────────────

class PriceQuoteOut(ApiBase):
    subtotal: Decimal
    shipping_fee: Decimal = Field(..., alias="shippingFee")
    total: Decimal
    free_shipping_applied: bool = Field(False, alias="freeShippingApplied")
    shipping_discount_applied: bool = Field(False, alias="shippingDiscountApplied")


class ShippingOptionOut(ApiBase):
    id: str
    name: str
    base_price: Decimal = Field(..., alias="basePrice")
    free_shipping_threshold: Optional[Decimal] = Field(None, alias="freeShippingThreshold")
    discount_threshold: Optional[Decimal] = Field(None, alias="discountThreshold")
    discount_amount: Optional[Decimal] = Field(None, alias="discountAmount")
    enabled: bool
    sort_order: int = Field(0, alias="sortOrder")


class PaymentMethodOut(ApiBase):
    id: str
    name: str
    type: str
    enabled: bool
    instructions: Optional[str] = None
    account_number: Optional[str] = Field(None, alias="accountNumber")
    is_default: bool = Field(False, alias="isDefault")
    sort_order: int = Field(0, alias="sortOrder")


class OrderItemOut(ApiBase):
    product_id: int = Field(..., alias="productId")
    product_name: str = Field(..., alias="productName")
    unit_price: Decimal = Field(..., alias="unitPrice")
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None


class OrderOut(ApiBase):
    id: int
    order_number: str = Field(..., alias="orderNumber")
    buyer_id: Optional[str] = Field(None, alias="buyerId")
    subtotal: Decimal
    shipping_fee: Decimal = Field(..., alias="shippingFee")
    total: Decimal
    status: str
    payment_method_id: str = Field(..., alias="paymentMethodId")
    payment_method_type: str = Field(..., alias="paymentMethodType")
    payment_status: str = Field(..., alias="paymentStatus")
    payment_transaction_id: Optional[str] = Field(None, alias="paymentTransactionId")
    shipping_option_id: str = Field(..., alias="shippingOptionId")
    shipping_address: dict = Field(..., alias="shippingAddress")
    notes: Optional[str] = None
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class TrackedOrderOut(ApiBase):
    """Public tracking view; no address or buyer details."""
    order_number: str = Field(..., alias="orderNumber")
    status: str
    payment_status: str = Field(..., alias="paymentStatus")
    total: Decimal
    created_at: Optional[datetime] = Field(None, alias="createdAt")


class StatusHistoryOut(ApiBase):
    old_status: Optional[str] = Field(None, alias="oldStatus")
    new_status: str = Field(..., alias="newStatus")
    changed_by: Optional[str] = Field(None, alias="changedBy")
    notes: Optional[str] = None
    changed_at: datetime = Field(..., alias="changedAt")


class PaymentInitiationOut(ApiBase):
    order_id: int = Field(..., alias="orderId")
    order_number: str = Field(..., alias="orderNumber")
    method_type: str = Field(..., alias="methodType")
    amount: Decimal
    manual: bool
    redirect_url: Optional[str] = Field(None, alias="redirectUrl")
    session_token: Optional[str] = Field(None, alias="sessionToken")
    reused: bool = False
    instructions: Optional[str] = None
    account_number: Optional[str] = Field(None, alias="accountNumber")


class PaymentResolutionOut(ApiBase):
    success: bool
    order_number: str = Field(..., alias="orderNumber")
    transaction_id: Optional[str] = Field(None, alias="transactionId")
    already_resolved: bool = Field(False, alias="alreadyResolved")
    reason: Optional[str] = None
