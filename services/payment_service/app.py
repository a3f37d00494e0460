"""Payment Service FastAPI application."""
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import Database
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher, reset_failed_messages

from .confirmation import SUPPORTED_WEBHOOK_EVENTS, ConfirmationEngine
from .errors import ConfigurationError, PaymentServiceError, RegistrationClosed
from .gateway import GatewayError, RazorpayGateway, resolve_credentials, to_minor_units
from .ledger import PaymentLedger, generate_payment_number
from .models import Event, PaymentType
from .pricing import OrderPricer, idempotency_key
from .reconciliation import ReconciliationSweep

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Request models
class CreateOrderRequest(BaseModel):
    """Checkout request. amount is accepted but ignored; the server prices the order."""
    amount: Optional[float] = None
    currency: str = "INR"
    payment_type: Optional[str] = None
    event_id: Optional[UUID] = None
    registration_data: Optional[Dict[str, Any]] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    payer_phone: Optional[str] = None
    tickets: Optional[List[Dict[str, Any]]] = None
    addons: Optional[List[Dict[str, Any]]] = None
    discount_code: Optional[str] = None
    idempotency_key: Optional[str] = None
    # addon purchases for an existing registration
    registration_id: Optional[UUID] = None
    registration_number: Optional[str] = None
    # group checkouts
    order_id: Optional[UUID] = None
    buyer_id: Optional[UUID] = None


class VerifyRequest(BaseModel):
    """Checkout handler payload from the client."""
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    registration_id: Optional[UUID] = None


class ReconcileRequest(BaseModel):
    fix: bool = False
    hours: float = 24


class ManualVerifyRequest(BaseModel):
    razorpay_payment_id: Optional[str] = None


class PublicVerifyRequest(BaseModel):
    """Payer self-verification: our payment id or the gateway payment id, plus the payer email."""
    payment_id: Optional[UUID] = None
    razorpay_payment_id: Optional[str] = None
    email: Optional[str] = None


# Dependencies
async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with request.app.state.database.session_factory() as session:
        yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> RazorpayGateway:
    return request.app.state.gateway


def require_admin(
    x_admin_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings)
):
    """Admin endpoints need X-Admin-Token matching the configured token."""
    if not x_admin_token:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not settings.admin_api_token or not hmac.compare_digest(
        x_admin_token.encode(), settings.admin_api_token.encode()
    ):
        raise HTTPException(status_code=403, detail="Admin access required")


def get_engine(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateway: RazorpayGateway = Depends(get_gateway)
) -> ConfirmationEngine:
    return ConfirmationEngine(session, settings, gateway)


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    gateway: Optional[RazorpayGateway] = None
) -> FastAPI:
    """
    Build the payment service.

    Args:
        settings: Defaults to environment-driven Settings
        database: Defaults to a Database on settings.database_url
        gateway: Defaults to a RazorpayGateway on the settings' credentials
    """
    settings = settings or Settings(service_name="payment-service", service_port=8003)
    database = database or Database(settings.database_url)
    gateway = gateway or RazorpayGateway(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the application."""
        logger.info("Starting Payment Service...")
        await database.create_tables()

        message_broker = None
        outbox_publisher = None
        if settings.broker_enabled:
            message_broker = MessageBroker(settings.rabbitmq_url)
            await message_broker.connect()
            outbox_publisher = OutboxPublisher(
                session_factory=database.session_factory,
                message_broker=message_broker,
            )
            await outbox_publisher.start()

        logger.info("Payment Service started successfully")

        yield

        logger.info("Shutting down Payment Service...")
        if outbox_publisher:
            await outbox_publisher.stop()
        if message_broker:
            await message_broker.disconnect()
        await gateway.close()
        await database.close()

    app = FastAPI(title="Payment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.gateway = gateway

    @app.post("/payments/razorpay/create-order")
    async def create_order(
        request: CreateOrderRequest,
        session: AsyncSession = Depends(get_session),
        gateway: RazorpayGateway = Depends(get_gateway)
    ):
        """Price a checkout, open a gateway order and record the pending payment."""
        if not request.payer_name or not request.payer_email:
            raise HTTPException(status_code=400, detail="Payer name and email are required")

        try:
            event = await session.get(Event, request.event_id) if request.event_id else None
            if event is not None and event.registration_open is False:
                raise RegistrationClosed("Registration is closed for this event")

            payment_type = request.payment_type or PaymentType.REGISTRATION.value
            priced = await OrderPricer(session, settings.default_tax_percentage).price(
                tickets=request.tickets,
                addons=request.addons,
                discount_code=request.discount_code,
                event_id=request.event_id,
                addon_purchase=payment_type == PaymentType.ADDON_PURCHASE.value,
            )
            credentials = resolve_credentials(event, settings)

            ledger = PaymentLedger(session)
            existing = await ledger.find_recent_pending(
                request.payer_email, priced.amount, settings.duplicate_window_minutes
            )
            if existing is not None:
                logger.info(
                    f"Returning existing order {existing.razorpay_order_id} for {request.payer_email}"
                )
                return {
                    "success": True,
                    "order_id": existing.razorpay_order_id,
                    "amount": to_minor_units(existing.amount),
                    "currency": existing.currency,
                    "key": credentials.key_id if credentials else None,
                    "payment_id": existing.id,
                    "payment_number": existing.payment_number,
                    "is_duplicate": True,
                    "message": "Returning existing pending payment",
                }

            if credentials is None:
                raise ConfigurationError("Payment gateway is not configured")

            ticket_ids = [t.ticket_type_id for t in priced.tickets]
            key = request.idempotency_key or idempotency_key(request.payer_email, priced.amount, ticket_ids)
            payment_number = generate_payment_number()
            order = await gateway.create_order(
                amount=priced.amount,
                currency=request.currency,
                receipt=payment_number,
                notes={
                    "payment_type": payment_type,
                    "event_id": str(request.event_id) if request.event_id else "",
                    "payer_email": request.payer_email,
                    "payer_name": request.payer_name,
                },
                credentials=credentials,
            )

            metadata = {
                "registration_data": request.registration_data,
                "razorpay_order": order,
                "uses_event_credentials": bool(event is not None and event.razorpay_key_id and event.razorpay_key_secret),
                "validated_tickets": [t.model_dump() for t in priced.tickets] or None,
                "validated_amount": priced.amount,
                "idempotency_key": key,
                "addons_selection": request.addons or None,
            }
            if request.registration_id:
                metadata["registration_id"] = str(request.registration_id)
                metadata["registration_number"] = request.registration_number
            if request.order_id:
                metadata["order_id"] = str(request.order_id)
                metadata["buyer_id"] = str(request.buyer_id) if request.buyer_id else None

            payment = await ledger.create_pending(
                payment_number=payment_number,
                payment_type=payment_type,
                payment_method="razorpay",
                payer_name=request.payer_name,
                payer_email=request.payer_email,
                payer_phone=request.payer_phone,
                amount=priced.amount,
                currency=request.currency,
                tax_amount=priced.tax_amount,
                discount_amount=priced.discount_amount,
                net_amount=priced.amount,
                razorpay_order_id=order["id"],
                event_id=request.event_id,
                meta=metadata,
            )
        except PaymentServiceError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except GatewayError as e:
            logger.error(f"Create order failed at gateway: {str(e)}", exc_info=True)
            raise HTTPException(status_code=502, detail="Failed to create order")

        return {
            "success": True,
            "order_id": order["id"],
            "amount": order.get("amount", to_minor_units(priced.amount)),
            "currency": order.get("currency", request.currency),
            "key": credentials.key_id,
            "payment_id": payment.id,
            "payment_number": payment_number,
        }

    @app.post("/payments/razorpay/verify")
    async def verify_payment(
        request: VerifyRequest,
        engine: ConfirmationEngine = Depends(get_engine)
    ):
        """Verify a checkout signature and confirm the registration."""
        try:
            result = await engine.verify(
                request.razorpay_order_id,
                request.razorpay_payment_id,
                request.razorpay_signature,
                request.registration_id,
            )
        except PaymentServiceError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return result.model_dump(mode="json", exclude_none=True)

    @app.post("/payments/razorpay/webhook")
    async def razorpay_webhook(
        request: Request,
        x_razorpay_signature: Optional[str] = Header(None),
        engine: ConfirmationEngine = Depends(get_engine)
    ):
        """Gateway webhook. The signature covers the raw body, so it is read unparsed."""
        raw_body = await request.body()
        try:
            return await engine.handle_webhook(raw_body, x_razorpay_signature)
        except PaymentServiceError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @app.get("/payments/razorpay/webhook")
    async def razorpay_webhook_info():
        """Webhook endpoint status."""
        return {
            "status": "active",
            "endpoint": "/payments/razorpay/webhook",
            "supported_events": SUPPORTED_WEBHOOK_EVENTS,
        }

    @app.post("/payments/reconcile", dependencies=[Depends(require_admin)])
    async def reconcile(
        request: Optional[ReconcileRequest] = None,
        session: AsyncSession = Depends(get_session)
    ):
        """Run a reconciliation sweep; with fix=true orphaned payments get review registrations."""
        request = request or ReconcileRequest()
        try:
            report = await ReconciliationSweep(session, settings).run(hours=request.hours, fix=request.fix)
        except Exception as e:
            logger.error(f"Reconciliation failed: {str(e)}", exc_info=True)
            raise HTTPException(status_code=500, detail="Reconciliation failed")
        return {"success": True, **report.model_dump(mode="json")}

    @app.get("/payments/reconcile", dependencies=[Depends(require_admin)])
    async def reconcile_help():
        """Usage of the reconciliation endpoint."""
        return {
            "endpoint": "/payments/reconcile",
            "method": "POST",
            "description": "Run payment reconciliation to find and fix orphaned payments",
            "parameters": {
                "fix": "boolean - If true, create registrations for orphaned payments (default: false)",
                "hours": "number - How many hours to look back (default: 24)",
            },
            "example": {"url": "POST /payments/reconcile", "body": {"fix": False, "hours": 48}},
            "checks_performed": [
                "Orphaned payments (completed but no registration)",
                f"Duplicate payments (same email + amount within {settings.duplicate_window_minutes} minutes)",
                f"Stale pending payments (pending > {settings.stale_pending_minutes} minutes)",
            ],
        }

    @app.post("/payments/outbox/retry-failed", dependencies=[Depends(require_admin)])
    async def retry_failed_outbox(
        limit: int = 100,
        session: AsyncSession = Depends(get_session)
    ):
        """Give outbox messages that ran out of publish retries another round."""
        reset = await reset_failed_messages(session, limit)
        return {"success": True, "reset": reset}

    @app.post("/payments/{payment_id}/verify-manual", dependencies=[Depends(require_admin)])
    async def verify_manual(
        payment_id: UUID,
        request: Optional[ManualVerifyRequest] = None,
        engine: ConfirmationEngine = Depends(get_engine)
    ):
        """Check a payment against the gateway and complete it if captured."""
        try:
            result = await engine.verify_manual(
                payment_id, request.razorpay_payment_id if request else None
            )
        except PaymentServiceError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return result

    @app.post("/payments/verify-public")
    async def verify_public(
        request: PublicVerifyRequest,
        engine: ConfirmationEngine = Depends(get_engine)
    ):
        """Let a payer re-check their own payment against the gateway."""
        try:
            return await engine.verify_public(
                request.email, request.payment_id, request.razorpay_payment_id
            )
        except PaymentServiceError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "payment-service"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.service_port)
