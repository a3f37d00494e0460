"""Database models for Payment Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from shared.database import Base, JSONType


class PaymentStatus(str, Enum):
    """Payment status. Transitions only go forward."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    """What a checkout is paying for."""
    REGISTRATION = "registration"
    ADDON_PURCHASE = "addon_purchase"


class RegistrationStatus(str, Enum):
    """Registration status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class Event(Base):
    """Ticketed event. Gateway credentials are optional per-event overrides."""

    __tablename__ = "events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    start_date = Column(DateTime, nullable=True)
    venue_name = Column(String(255), nullable=True)
    registration_open = Column(Boolean, default=True, nullable=False)

    razorpay_key_id = Column(String(255), nullable=True)
    razorpay_key_secret = Column(String(255), nullable=True)
    razorpay_webhook_secret = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EventSettings(Base):
    """Per-event registration numbering and auto-action toggles."""

    __tablename__ = "event_settings"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, unique=True)

    customize_registration_id = Column(Boolean, default=False, nullable=False)
    registration_prefix = Column(String(50), nullable=True)
    registration_suffix = Column(String(50), nullable=True)
    registration_start_number = Column(Integer, default=1, nullable=False)
    current_registration_number = Column(Integer, default=0, nullable=False)

    auto_send_receipt = Column(Boolean, default=True, nullable=False)
    auto_generate_badge = Column(Boolean, default=False, nullable=False)
    auto_email_badge = Column(Boolean, default=False, nullable=False)
    auto_generate_certificate = Column(Boolean, default=False, nullable=False)
    auto_email_certificate = Column(Boolean, default=False, nullable=False)
    auto_send_whatsapp = Column(Boolean, default=False, nullable=False)


class TicketType(Base):
    """Ticket tier with sold/total counters."""

    __tablename__ = "ticket_types"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Float, nullable=False, default=0)
    tax_percentage = Column(Float, nullable=True)
    status = Column(String(20), default="active", nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    quantity_total = Column(Integer, nullable=True)  # None means unlimited
    quantity_sold = Column(Integer, default=0, nullable=False)
    # processed_payments list, only written by the fallback inventory path
    meta = Column("metadata", JSONType, nullable=True)


class Addon(Base):
    """Optional extra sold alongside (or after) a ticket."""

    __tablename__ = "addons"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Float, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)


class DiscountCode(Base):
    """Discount code, percentage or fixed amount."""

    __tablename__ = "discount_codes"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, index=True)
    code = Column(String(50), nullable=False)
    discount_type = Column(String(20), nullable=False)  # percentage | fixed
    discount_value = Column(Float, nullable=False)
    max_discount_amount = Column(Float, nullable=True)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    max_uses = Column(Integer, nullable=True)
    current_uses = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_discount_codes_event_code", "event_id", "code"),
    )


class Payment(Base):
    """Ledger row for one checkout attempt."""

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    payment_number = Column(String(50), nullable=False, unique=True)
    payment_type = Column(String(30), default=PaymentType.REGISTRATION.value, nullable=False)
    payment_method = Column(String(30), default="razorpay", nullable=False)

    razorpay_order_id = Column(String(100), nullable=True, unique=True)
    razorpay_payment_id = Column(String(100), nullable=True, index=True)
    razorpay_signature = Column(String(255), nullable=True)

    payer_name = Column(String(255), nullable=True)
    payer_email = Column(String(255), nullable=True, index=True)
    payer_phone = Column(String(50), nullable=True)

    currency = Column(String(3), default="INR", nullable=False)
    amount = Column(Float, nullable=False)
    net_amount = Column(Float, nullable=True)
    tax_amount = Column(Float, default=0, nullable=False)
    discount_amount = Column(Float, default=0, nullable=False)

    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    event_id = Column(Uuid, nullable=True, index=True)
    meta = Column("metadata", JSONType, nullable=True)

    refund_amount = Column(Float, nullable=True)
    razorpay_refund_id = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
    )


class Registration(Base):
    """One attendee seat (or a quantity of seats) for an event."""

    __tablename__ = "registrations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    registration_number = Column(String(100), nullable=False, unique=True)
    event_id = Column(Uuid, nullable=False, index=True)
    ticket_type_id = Column(Uuid, nullable=True)
    order_id = Column(Uuid, nullable=True, index=True)

    attendee_name = Column(String(255), nullable=True)
    attendee_email = Column(String(255), nullable=True)
    attendee_phone = Column(String(50), nullable=True)

    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Float, default=0, nullable=False)
    tax_amount = Column(Float, default=0, nullable=False)
    discount_amount = Column(Float, default=0, nullable=False)
    total_amount = Column(Float, default=0, nullable=False)

    status = Column(String(20), default=RegistrationStatus.PENDING.value, nullable=False)
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    payment_id = Column(Uuid, nullable=True, index=True)
    # Set only on registrations synthesized from a payment, at most one per payment
    source_payment_id = Column(Uuid, nullable=True, unique=True)
    payment_method = Column(String(30), nullable=True)
    custom_fields = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)


class GroupOrder(Base):
    """Header row of a group checkout."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_number = Column(String(50), nullable=True)
    event_id = Column(Uuid, nullable=False, index=True)
    buyer_id = Column(Uuid, nullable=True)
    total_amount = Column(Float, default=0, nullable=False)
    status = Column(String(20), default="pending", nullable=False)
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    razorpay_payment_id = Column(String(100), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Buyer(Base):
    """Payer of a group checkout."""

    __tablename__ = "buyers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    razorpay_payment_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RegistrationAddon(Base):
    """Addon attached to a registration."""

    __tablename__ = "registration_addons"

    id = Column(Uuid, primary_key=True, default=uuid4)
    registration_id = Column(Uuid, nullable=False, index=True)
    addon_id = Column(Uuid, nullable=False)
    addon_variant_id = Column(Uuid, nullable=True)
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Float, default=0, nullable=False)
    total_price = Column(Float, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "registration_id", "addon_id", "addon_variant_id",
            name="uq_registration_addons_reg_addon_variant",
        ),
    )


class TicketSale(Base):
    """One applied inventory increment, keyed by the payment that caused it."""

    __tablename__ = "ticket_sales"

    id = Column(Uuid, primary_key=True, default=uuid4)
    ticket_type_id = Column(Uuid, nullable=False)
    payment_id = Column(Uuid, nullable=False)
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("ticket_type_id", "payment_id", name="uq_ticket_sales_ticket_payment"),
    )


class PaymentAlert(Base):
    """Advisory record for a human to look at."""

    __tablename__ = "payment_alerts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    payment_id = Column(Uuid, nullable=True, index=True)
    alert_type = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(20), default="medium", nullable=False)
    status = Column(String(20), default="open", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
