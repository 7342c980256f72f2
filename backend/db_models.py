"""
SQLAlchemy ORM models for the storefront checkout service.

Tables:
    products              — catalog entries; authoritative unit prices
    shipping_options      — delivery zones with threshold discount rules
    payment_methods       — checkout payment paths (manual and hosted)
    orders                — placed orders (one row per checkout)
    order_items           — immutable line-item snapshots per order
    order_status_history  — append-only audit trail of status changes
    otp_challenges        — one active phone verification code per phone
    payment_sessions      — hosted gateway sessions (idempotency ledger)
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean, DateTime, Text, ForeignKey, JSON,
    UniqueConstraint, CheckConstraint, Index,
)
from sqlalchemy.orm import relationship

from database import Base

MONEY = Numeric(12, 2)


# ════════════════════════════════════════════════════════════════════
# Catalog & Store Settings
# ════════════════════════════════════════════════════════════════════

class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(120), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    price = Column(MONEY, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_product_price_non_negative"),
    )


class ShippingOption(Base):
    """
    A delivery zone and its fee rule.

    free_shipping_threshold: subtotal >= threshold  => fee 0
    discount_threshold/discount_amount: subtotal >= threshold => fee - amount (floored at 0)
    """
    __tablename__ = "shipping_options"

    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    base_price = Column(MONEY, nullable=False, default=0)
    free_shipping_threshold = Column(MONEY, nullable=True)
    discount_threshold = Column(MONEY, nullable=True)
    discount_amount = Column(MONEY, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)


class PaymentMethod(Base):
    """Checkout payment path. account_number is shown for manual wallets."""
    __tablename__ = "payment_methods"

    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)  # see domain.enums.PaymentMethodType
    enabled = Column(Boolean, nullable=False, default=True)
    instructions = Column(Text, nullable=True)
    account_number = Column(String(30), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)


# ════════════════════════════════════════════════════════════════════
# Orders
# ════════════════════════════════════════════════════════════════════

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(40), nullable=False, unique=True, index=True)
    buyer_id = Column(String(64), nullable=True, index=True)  # null => guest checkout

    subtotal = Column(MONEY, nullable=False)
    shipping_fee = Column(MONEY, nullable=False)
    total = Column(MONEY, nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)

    payment_method_id = Column(String(50), nullable=False)
    payment_method_type = Column(String(20), nullable=False)
    payment_status = Column(String(20), nullable=False, default="pending", index=True)
    payment_idempotency_key = Column(String(100), nullable=True)
    payment_transaction_id = Column(String(100), nullable=True)

    shipping_option_id = Column(String(50), nullable=False)
    shipping_address = Column(JSON, nullable=False)
    notes = Column(Text, nullable=True)
    attribution = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="raise")

    __table_args__ = (
        CheckConstraint("abs(total - (subtotal + shipping_fee)) < 0.005", name="ck_order_total"),
        CheckConstraint("shipping_fee >= 0", name="ck_order_shipping_fee_non_negative"),
        Index("ix_orders_status_created", "status", "created_at"),
    )


class OrderItem(Base):
    """Line item snapshot. Never updated after the order is written."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    product_name = Column(String(200), nullable=False)
    unit_price = Column(MONEY, nullable=False)
    quantity = Column(Integer, nullable=False)
    size = Column(String(30), nullable=True)
    color = Column(String(30), nullable=True)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_item_quantity"),
        CheckConstraint("unit_price >= 0", name="ck_order_item_price"),
    )


class OrderStatusHistory(Base):
    """
    Append-only audit trail of order status changes.

    old_status is null for the entry written when the order is placed.
    changed_by is null for system/gateway actors.
    """
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    changed_by = Column(String(64), nullable=True)
    notes = Column(Text, nullable=True)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_status_history_order_changed", "order_id", "changed_at"),
    )


# ════════════════════════════════════════════════════════════════════
# Phone Verification
# ════════════════════════════════════════════════════════════════════

class OtpChallenge(Base):
    """
    The active verification code for a phone number.

    One row per phone: issuing a new code overwrites the row, which
    invalidates the previous code and restarts the resend cooldown.
    """
    __tablename__ = "otp_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String(20), nullable=False, unique=True, index=True)
    code = Column(String(6), nullable=False)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)


# ════════════════════════════════════════════════════════════════════
# Hosted Gateway Sessions
# ════════════════════════════════════════════════════════════════════

class PaymentSession(Base):
    """
    A remote payment session opened with a hosted gateway.

    idempotency_key is derived from the order id, provider and attempt
    number; the unique constraint stops duplicate sessions for the same
    attempt. status moves initiated -> resolving -> paid|failed; a callback
    must claim the session (resolving, claimed_at) before it may confirm
    with the provider. An unreachable provider releases the claim.
    """
    __tablename__ = "payment_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    idempotency_key = Column(String(100), nullable=False)
    session_token = Column(String(200), nullable=True, index=True)
    redirect_url = Column(Text, nullable=True)
    amount = Column(MONEY, nullable=False)
    status = Column(String(20), nullable=False, default="initiated", index=True)
    transaction_id = Column(String(100), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    claimed_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_payment_session_idempotency_key"),
        Index("ix_payment_sessions_order_provider", "order_id", "provider"),
    )
