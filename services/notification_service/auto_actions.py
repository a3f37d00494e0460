"""Downstream actions for a confirmed registration: receipt, badge, certificate, WhatsApp."""
import logging
from typing import Any, Dict, Optional

import httpx

from shared.config import Settings
from shared.events import AutoAction, RegistrationConfirmedEvent

logger = logging.getLogger(__name__)


class AutoActionRunner:
    """
    Calls the email, badge, certificate and WhatsApp endpoints for an event.

    Actions are independent: one failing is logged and the rest still run.
    Badge and certificate emails only go out after generation succeeded.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client
        self.base_url = settings.app_base_url.rstrip("/")

    async def _post(self, url: str, payload: Dict[str, Any], label: str, headers: Optional[Dict[str, str]] = None) -> bool:
        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"{label} request failed: {str(e)}", exc_info=True)
            return False
        if response.is_success:
            logger.info(f"{label} done")
            return True
        logger.error(f"{label} failed: {response.status_code} {response.text}")
        return False

    async def send_receipt(self, event: RegistrationConfirmedEvent) -> bool:
        return await self._post(
            f"{self.base_url}/api/email/registration-confirmation",
            {
                "registration_id": str(event.registration_id),
                "registration_number": event.registration_number,
                "attendee_name": event.attendee_name,
                "attendee_email": event.attendee_email,
                "event_name": event.event_name or "Event",
                "event_date": event.event_date or "",
                "event_venue": event.event_venue or "",
                "ticket_name": event.ticket_name or "Ticket",
                "quantity": event.quantity,
                "total_amount": event.total_amount,
                "payment_method": event.payment_method,
                "payment_status": "completed",
            },
            f"Receipt for {event.registration_number}",
        )

    async def generate_badge(self, event: RegistrationConfirmedEvent) -> bool:
        return await self._post(
            f"{self.base_url}/api/badges/generate",
            {
                "event_id": str(event.event_ref) if event.event_ref else None,
                "single_registration_id": str(event.registration_id),
                "store_badges": True,
            },
            f"Badge for {event.registration_number}",
        )

    async def email_badge(self, event: RegistrationConfirmedEvent) -> bool:
        return await self._post(
            f"{self.base_url}/api/badges/email",
            {"registration_id": str(event.registration_id)},
            f"Badge email for {event.registration_number}",
        )

    async def generate_certificate(self, event: RegistrationConfirmedEvent) -> bool:
        return await self._post(
            f"{self.base_url}/api/certificates/generate",
            {
                "event_id": str(event.event_ref) if event.event_ref else None,
                "registration_ids": [str(event.registration_id)],
                "store_certificates": True,
            },
            f"Certificate for {event.registration_number}",
        )

    async def email_certificate(self, event: RegistrationConfirmedEvent) -> bool:
        return await self._post(
            f"{self.base_url}/api/certificates/email",
            {"registration_id": str(event.registration_id)},
            f"Certificate email for {event.registration_number}",
        )

    async def send_whatsapp(self, event: RegistrationConfirmedEvent) -> bool:
        """delegate_login template with the attendee portal link."""
        if not (self.settings.whatsapp_api_url and event.attendee_phone):
            logger.info(f"WhatsApp not configured or no phone for {event.registration_number}")
            return False
        return await self._post(
            self.settings.whatsapp_api_url,
            {
                "to": event.attendee_phone,
                "template": "delegate_login",
                "parameters": {
                    "Delegate_Name": event.attendee_name or "Delegate",
                    "Event_Name": event.event_name or "Event",
                    "Portal_URL": f"{self.base_url}/my",
                },
            },
            f"WhatsApp delegate_login to {event.attendee_phone}",
            headers={"Authorization": f"Bearer {self.settings.whatsapp_api_key}"},
        )

    async def run(self, event: RegistrationConfirmedEvent) -> Dict[AutoAction, bool]:
        """Run every action listed on the event. Returns per-action success."""
        actions = set(event.actions)
        results: Dict[AutoAction, bool] = {}

        if AutoAction.SEND_RECEIPT in actions:
            results[AutoAction.SEND_RECEIPT] = await self.send_receipt(event)

        if AutoAction.GENERATE_BADGE in actions:
            results[AutoAction.GENERATE_BADGE] = await self.generate_badge(event)
            if AutoAction.EMAIL_BADGE in actions:
                results[AutoAction.EMAIL_BADGE] = (
                    results[AutoAction.GENERATE_BADGE] and await self.email_badge(event)
                )

        if AutoAction.GENERATE_CERTIFICATE in actions:
            results[AutoAction.GENERATE_CERTIFICATE] = await self.generate_certificate(event)
            if AutoAction.EMAIL_CERTIFICATE in actions:
                results[AutoAction.EMAIL_CERTIFICATE] = (
                    results[AutoAction.GENERATE_CERTIFICATE] and await self.email_certificate(event)
                )

        if AutoAction.SEND_WHATSAPP in actions:
            results[AutoAction.SEND_WHATSAPP] = await self.send_whatsapp(event)

        logger.info(
            f"Auto actions for {event.registration_number}: "
            + ", ".join(f"{action.value}={ok}" for action, ok in results.items())
        )
        return results
