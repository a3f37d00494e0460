"""Event definitions and base classes for payment and registration events."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types emitted by the payment service."""

    # Payment events
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_ALERT_RAISED = "payment.alert"

    # Registration events
    REGISTRATION_CONFIRMED = "registration.confirmed"
    REGISTRATION_REFUNDED = "registration.refunded"


class AutoAction(str, Enum):
    """Downstream actions run for a newly confirmed registration."""
    SEND_RECEIPT = "send_receipt"
    GENERATE_BADGE = "generate_badge"
    EMAIL_BADGE = "email_badge"
    GENERATE_CERTIFICATE = "generate_certificate"
    EMAIL_CERTIFICATE = "email_certificate"
    SEND_WHATSAPP = "send_whatsapp"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # ID of the main entity (payment or registration)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID  # payment id, ties every event of one checkout together
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Payment Events
class PaymentCompletedEvent(BaseEvent):
    """Event emitted when a payment transitions to completed."""
    event_type: EventType = EventType.PAYMENT_COMPLETED
    payment_id: UUID
    payment_number: str
    gateway_payment_id: Optional[str] = None
    amount: float
    currency: str = "INR"
    via: str  # verify_api | webhook | manual


class PaymentFailedEvent(BaseEvent):
    """Event emitted when the gateway reports a failed payment."""
    event_type: EventType = EventType.PAYMENT_FAILED
    payment_id: UUID
    error_code: Optional[str] = None
    error_description: Optional[str] = None


class PaymentRefundedEvent(BaseEvent):
    """Event emitted when a refund is processed by the gateway."""
    event_type: EventType = EventType.PAYMENT_REFUNDED
    payment_id: UUID
    refund_id: str
    refund_amount: float


class PaymentAlertRaisedEvent(BaseEvent):
    """Event emitted alongside a PaymentAlert row."""
    event_type: EventType = EventType.PAYMENT_ALERT_RAISED
    alert_type: str
    severity: str
    message: str


# Registration Events
class RegistrationConfirmedEvent(BaseEvent):
    """Event emitted once per newly confirmed registration."""
    event_type: EventType = EventType.REGISTRATION_CONFIRMED
    registration_id: UUID
    registration_number: str
    event_ref: Optional[UUID] = None
    event_name: Optional[str] = None
    event_date: Optional[str] = None
    event_venue: Optional[str] = None
    ticket_name: Optional[str] = None
    attendee_name: Optional[str] = None
    attendee_email: Optional[str] = None
    attendee_phone: Optional[str] = None
    quantity: int = 1
    total_amount: float = 0
    payment_method: str = "razorpay"
    actions: List[AutoAction] = Field(default_factory=list)


class RegistrationRefundedEvent(BaseEvent):
    """Event emitted when a registration is refunded."""
    event_type: EventType = EventType.REGISTRATION_REFUNDED
    registration_id: UUID
    registration_number: str


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.PAYMENT_COMPLETED: PaymentCompletedEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,
    EventType.PAYMENT_REFUNDED: PaymentRefundedEvent,
    EventType.PAYMENT_ALERT_RAISED: PaymentAlertRaisedEvent,

    EventType.REGISTRATION_CONFIRMED: RegistrationConfirmedEvent,
    EventType.REGISTRATION_REFUNDED: RegistrationRefundedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
