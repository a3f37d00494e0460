"""
Shared fixtures for the payment service tests.

Each test gets its own SQLite database file (aiosqlite), a FakeGateway in place
of Razorpay and, for HTTP tests, an httpx AsyncClient bound to the app through
ASGITransport. Lifespan is not run: tables are created by the database fixture
and the broker is disabled.
"""
import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from shared.config import Settings
from shared.database import Database
from shared.outbox import OutboxMessage

from services.payment_service.app import create_app
from services.payment_service.confirmation import ConfirmationEngine
from services.payment_service.gateway import GatewayError, to_minor_units
from services.payment_service.ledger import PaymentLedger
from services.payment_service.models import Event, EventSettings, Payment, TicketType

DEFAULT_KEY_ID = "rzp_test_default"
DEFAULT_KEY_SECRET = "default_key_secret"
DEFAULT_WEBHOOK_SECRET = "default_webhook_secret"
ADMIN_TOKEN = "admin-token"


class FakeGateway:
    """In-memory stand-in for RazorpayGateway."""

    def __init__(self):
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.order_payments: Dict[str, List[Dict[str, Any]]] = {}
        self.created_orders: List[Dict[str, Any]] = []
        self.fetch_error: Optional[GatewayError] = None
        self.fetch_calls = 0

    def add_payment(self, payment_id: str, order_id: str, amount: float, status: str = "captured"):
        payment = {
            "id": payment_id,
            "order_id": order_id,
            "amount": to_minor_units(amount),
            "currency": "INR",
            "status": status,
            "method": "upi",
        }
        self.payments[payment_id] = payment
        self.order_payments.setdefault(order_id, []).append(payment)
        return payment

    async def create_order(self, amount, currency, receipt, notes=None, credentials=None):
        order = {
            "id": f"order_{len(self.created_orders) + 1:04d}",
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "key_id": credentials.key_id if credentials else None,
        }
        self.created_orders.append(order)
        return order

    async def fetch_payment(self, payment_id, credentials=None):
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        if payment_id not in self.payments:
            raise GatewayError(f"payment {payment_id} not found", status_code=404)
        return self.payments[payment_id]

    async def fetch_order_payments(self, order_id, credentials=None):
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.order_payments.get(order_id, [])

    async def close(self):
        pass


def checkout_signature(order_id: str, payment_id: str, secret: str = DEFAULT_KEY_SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def webhook_body(event: str, entity_kind: str, entity: Dict[str, Any]) -> bytes:
    return json.dumps({"event": event, "payload": {entity_kind: {"entity": entity}}}).encode()


def webhook_signature(body: bytes, secret: str = DEFAULT_WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        sqlalchemy_url=f"sqlite+aiosqlite:///{tmp_path / 'eventpay.db'}",
        razorpay_key_id=DEFAULT_KEY_ID,
        razorpay_key_secret=DEFAULT_KEY_SECRET,
        razorpay_webhook_secret=DEFAULT_WEBHOOK_SECRET,
        admin_api_token=ADMIN_TOKEN,
        broker_enabled=False,
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.create_tables()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def session(database):
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(session, settings, gateway):
    return ConfirmationEngine(session, settings, gateway)


@pytest_asyncio.fixture
async def client(settings, database, gateway):
    app = create_app(settings=settings, database=database, gateway=gateway)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest_asyncio.fixture
async def event(session):
    event = Event(name="Annual Surgical Congress", venue_name="Convention Centre")
    session.add(event)
    await session.commit()
    return event


@pytest_asyncio.fixture
async def ticket(session, event):
    ticket = TicketType(
        event_id=event.id,
        name="Delegate",
        price=1000.0,
        tax_percentage=18.0,
        status="active",
        sort_order=1,
        quantity_total=100,
        quantity_sold=0,
    )
    session.add(ticket)
    await session.commit()
    return ticket


@pytest.fixture
def make_event_settings(session):
    async def _make(event, **fields):
        event_settings = EventSettings(event_id=event.id, **fields)
        session.add(event_settings)
        await session.commit()
        return event_settings
    return _make


@pytest.fixture
def make_pending_payment(session):
    """Pending payment for one ticket, as create-order would leave it."""
    counter = {"n": 0}

    async def _make(event=None, ticket=None, quantity=1, amount=1180.0, email="asha@example.com", **meta):
        counter["n"] += 1
        metadata = {"validated_amount": amount}
        if ticket is not None:
            metadata["validated_tickets"] = [{
                "ticket_type_id": str(ticket.id),
                "name": ticket.name,
                "price": ticket.price,
                "quantity": quantity,
            }]
        metadata.update(meta)
        return await PaymentLedger(session).create_pending(
            payment_type=metadata.pop("payment_type", "registration"),
            payer_name="Asha Rao",
            payer_email=email,
            payer_phone="+919800000001",
            amount=amount,
            net_amount=amount,
            currency="INR",
            razorpay_order_id=f"order_{counter['n']:04d}",
            event_id=event.id if event is not None else None,
            meta=metadata,
        )
    return _make


async def refetch(session, model, id_):
    return await session.get(model, id_, populate_existing=True)


async def outbox_count(session, event_type: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(OutboxMessage).where(OutboxMessage.event_type == event_type)
    )
    return result.scalar_one()


async def payment_count(session) -> int:
    result = await session.execute(select(func.count()).select_from(Payment))
    return result.scalar_one()
