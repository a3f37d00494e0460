"""Registration materializer: turns a completed payment into confirmed registrations."""
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.events import AutoAction, RegistrationConfirmedEvent, RegistrationRefundedEvent
from shared.outbox import save_event_to_outbox

from .errors import InvalidInput
from .models import (
    Buyer,
    Event,
    EventSettings,
    GroupOrder,
    Payment,
    PaymentStatus,
    Registration,
    RegistrationAddon,
    RegistrationStatus,
    TicketType,
)

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 3


def generate_registration_number() -> str:
    """REG-YYYYMMDD-<6 hex chars>."""
    return f"REG-{datetime.utcnow().strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


def _as_uuid(value: Any) -> Optional[UUID]:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


def enabled_actions(event_settings: Optional[EventSettings], attendee_phone: Optional[str]) -> List[AutoAction]:
    """Auto actions switched on for an event. Receipts default to on."""
    if event_settings is None:
        return [AutoAction.SEND_RECEIPT]

    actions = []
    if event_settings.auto_send_receipt is not False:
        actions.append(AutoAction.SEND_RECEIPT)
    if event_settings.auto_generate_badge:
        actions.append(AutoAction.GENERATE_BADGE)
        if event_settings.auto_email_badge:
            actions.append(AutoAction.EMAIL_BADGE)
    if event_settings.auto_generate_certificate:
        actions.append(AutoAction.GENERATE_CERTIFICATE)
        if event_settings.auto_email_certificate:
            actions.append(AutoAction.EMAIL_CERTIFICATE)
    if event_settings.auto_send_whatsapp and attendee_phone:
        actions.append(AutoAction.SEND_WHATSAPP)
    return actions


class RegistrationMaterializer:
    """
    Creates and confirms Registration rows for a payment.

    Confirmation is a conditional update from pending, so a registration is
    reported as newly confirmed to exactly one caller. That caller also writes
    the registration.confirmed event to the outbox in the same commit.
    """

    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.settings = settings

    async def get(self, registration_id: UUID) -> Optional[Registration]:
        return await self.session.get(Registration, registration_id, populate_existing=True)

    async def find_for_payment(self, payment_id: UUID) -> Optional[Registration]:
        result = await self.session.execute(
            select(Registration)
            .where(Registration.payment_id == payment_id)
            .order_by(Registration.created_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_event_settings(self, event_id: Optional[UUID]) -> Optional[EventSettings]:
        if not event_id:
            return None
        result = await self.session.execute(
            select(EventSettings).where(EventSettings.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def next_registration_number(self, event_id: Optional[UUID]) -> str:
        """
        Next registration number for an event.

        With custom numbering the counter is bumped and read back in a single
        UPDATE ... RETURNING, so concurrent callers never share a number. The
        bump commits with the caller's transaction.
        """
        if event_id:
            current = func.coalesce(EventSettings.current_registration_number, 0) + 1
            start = func.coalesce(EventSettings.registration_start_number, 1)
            result = await self.session.execute(
                update(EventSettings)
                .where(
                    EventSettings.event_id == event_id,
                    EventSettings.customize_registration_id.is_(True),
                )
                .values(current_registration_number=case((current < start, start), else_=current))
                .returning(
                    EventSettings.current_registration_number,
                    EventSettings.registration_prefix,
                    EventSettings.registration_suffix,
                )
                .execution_options(synchronize_session=False)
            )
            row = result.first()
            if row is not None:
                number, prefix, suffix = row
                return f"{prefix or ''}{number}{suffix or ''}"

        return generate_registration_number()

    async def _resolve_ticket(self, payment: Payment) -> Tuple[Optional[UUID], Optional[UUID], Dict[str, Any]]:
        """
        Event and ticket for a synthesized registration.

        The ticket is validated_tickets[0], else the event's first active tier.
        A payment without an event takes the event of its ticket.
        """
        meta = payment.meta or {}
        ticket_details = (meta.get("validated_tickets") or [None])[0] or {}
        ticket_type_id = _as_uuid(ticket_details.get("ticket_type_id"))
        if ticket_type_id:
            event_id = payment.event_id
            if event_id is None:
                ticket = await self.session.get(TicketType, ticket_type_id)
                event_id = ticket.event_id if ticket else None
            return event_id, ticket_type_id, ticket_details

        if payment.event_id:
            result = await self.session.execute(
                select(TicketType.id)
                .where(TicketType.event_id == payment.event_id, TicketType.status == "active")
                .order_by(TicketType.sort_order)
                .limit(1)
            )
            return payment.event_id, result.scalar_one_or_none(), ticket_details
        return None, None, ticket_details

    async def confirmed_event(self, registration: Registration, payment: Payment) -> RegistrationConfirmedEvent:
        """Snapshot a confirmed registration for downstream consumers."""
        event = await self.session.get(Event, registration.event_id) if registration.event_id else None
        ticket = (
            await self.session.get(TicketType, registration.ticket_type_id)
            if registration.ticket_type_id else None
        )
        event_settings = await self.get_event_settings(registration.event_id)

        return RegistrationConfirmedEvent(
            aggregate_id=registration.id,
            correlation_id=payment.id,
            registration_id=registration.id,
            registration_number=registration.registration_number,
            event_ref=registration.event_id,
            event_name=event.name if event else None,
            event_date=event.start_date.isoformat() if event and event.start_date else None,
            event_venue=event.venue_name if event else None,
            ticket_name=ticket.name if ticket else None,
            attendee_name=registration.attendee_name,
            attendee_email=registration.attendee_email,
            attendee_phone=registration.attendee_phone,
            quantity=registration.quantity or 1,
            total_amount=registration.total_amount or 0,
            payment_method=registration.payment_method or payment.payment_method or "razorpay",
            actions=enabled_actions(event_settings, registration.attendee_phone),
        )

    async def _confirm_pending(self, registration_id: UUID, payment: Payment) -> bool:
        """pending -> confirmed, linked to the payment. Does not commit."""
        result = await self.session.execute(
            update(Registration)
            .where(
                Registration.id == registration_id,
                Registration.status == RegistrationStatus.PENDING.value,
            )
            .values(
                status=RegistrationStatus.CONFIRMED.value,
                payment_status=PaymentStatus.COMPLETED.value,
                payment_id=payment.id,
                payment_method=payment.payment_method,
                confirmed_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _confirm_and_announce(
        self,
        registration_id: UUID,
        payment: Payment
    ) -> Tuple[Optional[Registration], bool]:
        newly_confirmed = await self._confirm_pending(registration_id, payment)
        registration = await self.get(registration_id)
        if newly_confirmed and registration is not None:
            await save_event_to_outbox(self.session, await self.confirmed_event(registration, payment))
        await self.session.commit()
        return registration, newly_confirmed

    async def confirm_existing_for_payment(self, payment: Payment) -> Tuple[Optional[Registration], bool]:
        """
        Confirm every pending registration already pointing at this payment.

        Returns the first linked registration that ends up confirmed (else the
        first linked one) and whether this call confirmed any of them.
        """
        result = await self.session.execute(
            select(Registration.id, Registration.status)
            .where(Registration.payment_id == payment.id)
            .order_by(Registration.created_at)
        )
        linked = result.all()
        if not linked:
            return None, False

        newly_confirmed = False
        for registration_id, status in linked:
            if status == RegistrationStatus.PENDING.value:
                _, newly = await self._confirm_and_announce(registration_id, payment)
                newly_confirmed = newly_confirmed or newly

        registrations = [await self.get(registration_id) for registration_id, _ in linked]
        primary = next(
            (r for r in registrations if r is not None and r.status == RegistrationStatus.CONFIRMED.value),
            registrations[0],
        )
        return primary, newly_confirmed

    async def confirm_by_id(self, registration_id: UUID, payment: Payment) -> Tuple[Optional[Registration], bool]:
        """Confirm a registration the client created before paying."""
        if await self.get(registration_id) is None:
            logger.warning(f"Registration {registration_id} not found for payment {payment.id}")
            return None, False
        registration, newly_confirmed = await self._confirm_and_announce(registration_id, payment)
        if newly_confirmed:
            logger.info(f"Confirmed registration {registration.registration_number} for payment {payment.id}")
        return registration, newly_confirmed

    async def _insert_from_payment(
        self,
        payment: Payment,
        status: RegistrationStatus,
        custom_fields: Dict[str, Any],
        unit_price_from_ticket: bool
    ) -> Tuple[Optional[Registration], bool]:
        """
        Insert a registration keyed by source_payment_id. Returns (row, created).

        Raises:
            InvalidInput: The payment has no event to register against
        """
        event_id, ticket_type_id, ticket_details = await self._resolve_ticket(payment)
        payment_id = payment.id
        if event_id is None:
            raise InvalidInput(f"Payment {payment.payment_number} has no event or ticket to register against")

        values = dict(
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            attendee_name=payment.payer_name or "Pending Verification",
            attendee_email=payment.payer_email,
            attendee_phone=payment.payer_phone,
            quantity=ticket_details.get("quantity") or 1,
            unit_price=(ticket_details.get("price") if unit_price_from_ticket else None) or payment.amount,
            total_amount=payment.amount,
            status=status.value,
            payment_status=PaymentStatus.COMPLETED.value,
            payment_id=payment_id,
            source_payment_id=payment_id,
            payment_method=payment.payment_method,
            custom_fields=custom_fields,
            confirmed_at=datetime.utcnow() if status == RegistrationStatus.CONFIRMED else None,
        )

        for attempt in range(1, CREATE_ATTEMPTS + 1):
            registration = Registration(
                registration_number=await self.next_registration_number(event_id),
                **values,
            )
            self.session.add(registration)
            try:
                await self.session.flush()
                return registration, True
            except IntegrityError as e:
                await self.session.rollback()
                await self.session.refresh(payment)
                existing = await self._find_synthesized(payment_id)
                if existing is not None:
                    logger.info(f"Registration for payment {payment_id} was created concurrently")
                    return existing, False
                if "registration_number" not in str(e.orig):
                    raise
                logger.warning(
                    f"Registration number collision for payment {payment_id} "
                    f"(attempt {attempt}/{CREATE_ATTEMPTS})"
                )
        return None, False

    async def _find_synthesized(self, payment_id: UUID) -> Optional[Registration]:
        result = await self.session.execute(
            select(Registration)
            .where(Registration.source_payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_from_payment(self, payment: Payment) -> Tuple[Optional[Registration], bool]:
        """
        Synthesize a confirmed registration from payment metadata.

        Used when a payment completed but nothing was registered against it.
        At most one such registration exists per payment; a caller that loses
        the insert race gets the winner's row and newly_confirmed=False.
        """
        try:
            registration, created = await self._insert_from_payment(
                payment,
                RegistrationStatus.CONFIRMED,
                {
                    "auto_created_from_payment": True,
                    "created_at": datetime.utcnow().isoformat(),
                    "original_metadata": (payment.meta or {}).get("registration_data"),
                },
                unit_price_from_ticket=True,
            )
        except InvalidInput as e:
            logger.error(f"Cannot create registration for payment {payment.id}: {e.message}")
            return None, False
        if not created:
            if registration is not None and registration.status == RegistrationStatus.PENDING.value:
                return await self._confirm_and_announce(registration.id, payment)
            return registration, False

        await save_event_to_outbox(self.session, await self.confirmed_event(registration, payment))
        await self.session.commit()
        logger.info(
            f"Auto-created registration {registration.registration_number} for payment {payment.id}"
        )
        return registration, True

    async def create_for_review(self, payment: Payment) -> Optional[Registration]:
        """Pending registration for an orphaned payment, flagged for an admin.

        Raises:
            InvalidInput: The payment has no event or ticket to register against
        """
        registration, created = await self._insert_from_payment(
            payment,
            RegistrationStatus.PENDING,
            {
                "auto_created": True,
                "created_from_reconciliation": True,
                "needs_admin_review": True,
            },
            unit_price_from_ticket=False,
        )
        if not created:
            return None
        await self.session.commit()
        logger.info(
            f"Created registration {registration.registration_number} "
            f"for payment {payment.payment_number} pending admin review"
        )
        return registration

    async def confirm_group(
        self,
        payment: Payment,
        order_id: UUID,
        buyer_id: Optional[UUID],
        gateway_payment_id: Optional[str]
    ) -> Tuple[List[Registration], List[Registration]]:
        """
        Mark a group order paid and confirm each of its pending registrations.

        Returns:
            (all registrations of the order, the ones confirmed by this call)
        """
        now = datetime.utcnow()
        await self.session.execute(
            update(GroupOrder)
            .where(GroupOrder.id == order_id)
            .values(
                payment_status=PaymentStatus.COMPLETED.value,
                razorpay_payment_id=gateway_payment_id,
                paid_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if buyer_id:
            await self.session.execute(
                update(Buyer)
                .where(Buyer.id == buyer_id)
                .values(
                    payment_status=PaymentStatus.COMPLETED.value,
                    razorpay_payment_id=gateway_payment_id,
                )
                .execution_options(synchronize_session=False)
            )

        result = await self.session.execute(
            select(Registration.id).where(
                Registration.order_id == order_id,
                Registration.status == RegistrationStatus.PENDING.value,
            )
        )
        newly_confirmed_ids = [
            registration_id for registration_id in result.scalars().all()
            if await self._confirm_pending(registration_id, payment)
        ]

        result = await self.session.execute(
            select(Registration)
            .where(Registration.order_id == order_id)
            .order_by(Registration.created_at)
            .execution_options(populate_existing=True)
        )
        registrations = list(result.scalars().all())
        newly_confirmed = [r for r in registrations if r.id in newly_confirmed_ids]
        for registration in newly_confirmed:
            await save_event_to_outbox(self.session, await self.confirmed_event(registration, payment))
        await self.session.commit()

        logger.info(
            f"Group order {order_id}: {len(newly_confirmed)} of {len(registrations)} registrations confirmed"
        )
        return registrations, newly_confirmed

    async def group_ticket_counts(self, order_id: UUID, payment_id: UUID) -> Dict[UUID, int]:
        """Seats per ticket type across the order's registrations confirmed by this payment."""
        result = await self.session.execute(
            select(Registration.ticket_type_id, func.sum(func.coalesce(Registration.quantity, 1)))
            .where(
                Registration.order_id == order_id,
                Registration.payment_id == payment_id,
                Registration.status == RegistrationStatus.CONFIRMED.value,
                Registration.ticket_type_id.is_not(None),
            )
            .group_by(Registration.ticket_type_id)
        )
        return {ticket_type_id: int(count) for ticket_type_id, count in result.all()}

    async def attach_addons(self, registration_id: UUID, addons_selection: Optional[List[Dict[str, Any]]]) -> int:
        """
        Attach purchased addons, skipping (addon, variant) pairs already attached.

        Returns:
            Number of rows inserted
        """
        if not addons_selection:
            return 0

        result = await self.session.execute(
            select(RegistrationAddon.addon_id, RegistrationAddon.addon_variant_id)
            .where(RegistrationAddon.registration_id == registration_id)
        )
        existing = {(str(addon_id), str(variant_id) if variant_id else None) for addon_id, variant_id in result.all()}

        records = []
        for selection in addons_selection:
            addon_id = selection.get("addonId") or selection.get("addon_id")
            if not addon_id:
                continue
            variant_id = selection.get("variantId") or selection.get("addon_variant_id")
            key = (str(addon_id), str(variant_id) if variant_id else None)
            if key in existing:
                continue
            existing.add(key)
            records.append(
                RegistrationAddon(
                    registration_id=registration_id,
                    addon_id=UUID(str(addon_id)),
                    addon_variant_id=UUID(str(variant_id)) if variant_id else None,
                    quantity=selection.get("quantity") or 1,
                    unit_price=selection.get("unitPrice") or 0,
                    total_price=selection.get("totalPrice") or 0,
                )
            )

        if not records:
            logger.info(f"All addons already attached to registration {registration_id}")
            return 0

        self.session.add_all(records)
        try:
            await self.session.commit()
        except IntegrityError:
            # a concurrent caller attached the same addons first
            await self.session.rollback()
            logger.info(f"Addons for registration {registration_id} were attached concurrently")
            return 0

        logger.info(f"Attached {len(records)} addons to registration {registration_id}")
        return len(records)

    async def refund_for_payment(self, payment: Payment) -> List[Registration]:
        """Move every confirmed or pending registration of a refunded payment to refunded."""
        result = await self.session.execute(
            select(Registration)
            .where(
                Registration.payment_id == payment.id,
                Registration.status.in_(
                    [RegistrationStatus.CONFIRMED.value, RegistrationStatus.PENDING.value]
                ),
            )
            .execution_options(populate_existing=True)
        )
        registrations = list(result.scalars().all())
        now = datetime.utcnow()
        for registration in registrations:
            registration.status = RegistrationStatus.REFUNDED.value
            registration.payment_status = PaymentStatus.REFUNDED.value
            registration.refunded_at = now
            await save_event_to_outbox(
                self.session,
                RegistrationRefundedEvent(
                    aggregate_id=registration.id,
                    correlation_id=payment.id,
                    registration_id=registration.id,
                    registration_number=registration.registration_number,
                ),
            )
        await self.session.commit()

        if registrations:
            logger.info(f"Refunded {len(registrations)} registrations for payment {payment.id}")
        return registrations
