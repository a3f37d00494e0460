"""Notification Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from shared.config import Settings
from shared.events import (
    EventType,
    PaymentAlertRaisedEvent,
    RegistrationConfirmedEvent,
    RegistrationRefundedEvent,
)
from shared.message_broker import MessageBroker

from .auto_actions import AutoActionRunner

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8005,
)

# Message broker
message_broker = MessageBroker(settings.rabbitmq_url)
runner: Optional[AutoActionRunner] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global runner

    logger.info("Starting Notification Service...")

    client = httpx.AsyncClient(timeout=30.0)
    runner = AutoActionRunner(settings, client)
    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Notification Service started successfully")

    yield

    logger.info("Shutting down Notification Service...")
    await message_broker.disconnect()
    await client.aclose()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# Event Handlers
async def handle_registration_confirmed(event: RegistrationConfirmedEvent):
    """Run the event's enabled auto actions for a newly confirmed registration."""
    await runner.run(event)


async def handle_registration_refunded(event: RegistrationRefundedEvent):
    logger.info(f"Registration {event.registration_number} refunded")


async def handle_payment_alert(event: PaymentAlertRaisedEvent):
    logger.warning(f"[ALERT:{event.severity}] {event.alert_type}: {event.message}")


async def subscribe_to_events():
    """Subscribe to registration and alert events."""
    await message_broker.subscribe_to_event(
        EventType.REGISTRATION_CONFIRMED,
        "notification_service_registration_confirmed",
        handle_registration_confirmed,
    )

    await message_broker.subscribe_to_event(
        EventType.REGISTRATION_REFUNDED,
        "notification_service_registration_refunded",
        handle_registration_refunded,
    )

    await message_broker.subscribe_to_event(
        EventType.PAYMENT_ALERT_RAISED,
        "notification_service_payment_alert",
        handle_payment_alert,
    )

    logger.info("Subscribed to notification events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
