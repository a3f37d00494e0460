"""
Tests for ConfirmationEngine.

The verify call and the payment.captured webhook may arrive in either order,
more than once, and after a crashed earlier run; every path must converge on
one completed payment, one confirmed registration and one inventory increment.
"""
import asyncio
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from services.payment_service.confirmation import ConfirmationEngine
from services.payment_service.errors import (
    ConfigurationError,
    InvalidInput,
    PaymentNotFound,
    SignatureMismatch,
)
from services.payment_service.gateway import GatewayError
from services.payment_service.ledger import PaymentLedger
from services.payment_service.models import (
    GroupOrder,
    Payment,
    PaymentAlert,
    PaymentStatus,
    Registration,
    RegistrationAddon,
    RegistrationStatus,
    TicketType,
)
from shared.events import EventType

from conftest import (
    checkout_signature,
    outbox_count,
    payment_count,
    refetch,
    webhook_body,
    webhook_signature,
)


async def _registrations(session, payment_id):
    result = await session.execute(
        select(Registration)
        .where(Registration.payment_id == payment_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _alerts(session, alert_type):
    result = await session.execute(select(PaymentAlert).where(PaymentAlert.alert_type == alert_type))
    return list(result.scalars().all())


async def _sold(session, ticket_id):
    ticket = await refetch(session, TicketType, ticket_id)
    return ticket.quantity_sold


def _captured(order_id, payment_id, amount=118000, notes=None):
    return webhook_body("payment.captured", "payment", {
        "id": payment_id,
        "order_id": order_id,
        "amount": amount,
        "currency": "INR",
        "status": "captured",
        "email": "asha@example.com",
        "contact": "+919800000001",
        "notes": notes or {},
    })


async def _deliver(engine, body, secret=None):
    signature = webhook_signature(body) if secret is None else webhook_signature(body, secret)
    return await engine.handle_webhook(body, signature)


@pytest_asyncio.fixture
async def pending(event, ticket, make_pending_payment, gateway):
    payment = await make_pending_payment(event=event, ticket=ticket)
    gateway.add_payment("pay_1", payment.razorpay_order_id, 1180.0)
    return payment


class TestVerify:

    @pytest.mark.asyncio
    async def test_happy_path(self, session, engine, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id

        result = await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))

        assert result.success is True
        assert result.is_duplicate is None
        assert result.message == "Payment verified successfully"
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.razorpay_payment_id == "pay_1"
        assert payment.meta["verified_via"] == "verify_api"
        assert payment.meta["razorpay_payment"]["status"] == "captured"
        registrations = await _registrations(session, payment_id)
        assert len(registrations) == 1
        assert registrations[0].id == result.registration_id
        assert registrations[0].status == RegistrationStatus.CONFIRMED.value
        assert await _sold(session, ticket_id) == 1
        assert await outbox_count(session, EventType.PAYMENT_COMPLETED.value) == 1
        assert await outbox_count(session, EventType.REGISTRATION_CONFIRMED.value) == 1

    @pytest.mark.asyncio
    async def test_repeated_verify_is_idempotent(self, session, engine, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id
        signature = checkout_signature(order_id, "pay_1")

        first = await engine.verify(order_id, "pay_1", signature)
        second = await engine.verify(order_id, "pay_1", signature)

        assert second.is_duplicate is True
        assert second.message == "Payment already verified"
        assert second.registration_id == first.registration_id
        assert len(await _registrations(session, payment_id)) == 1
        assert await _sold(session, ticket_id) == 1
        assert await outbox_count(session, EventType.REGISTRATION_CONFIRMED.value) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_leaves_payment_pending(self, session, engine, pending):
        payment_id, order_id = pending.id, pending.razorpay_order_id

        with pytest.raises(SignatureMismatch):
            await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1", "wrong"))

        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.PENDING.value
        assert await _registrations(session, payment_id) == []

    @pytest.mark.asyncio
    async def test_duplicate_with_bad_signature_does_not_repair(self, session, engine, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id
        await PaymentLedger(session).mark_completed(pending, "pay_1")

        result = await engine.verify(order_id, "pay_1", "forged")

        assert result.is_duplicate is True
        assert result.registration_id is None
        assert await _registrations(session, payment_id) == []
        assert await _sold(session, ticket_id) == 0

    @pytest.mark.asyncio
    async def test_missing_fields_and_unknown_order(self, engine):
        with pytest.raises(InvalidInput):
            await engine.verify("order_1", "", "sig")
        with pytest.raises(PaymentNotFound):
            await engine.verify("order_unknown", "pay_1", checkout_signature("order_unknown", "pay_1"))

    @pytest.mark.asyncio
    async def test_gateway_lookup_failure_is_tolerated(self, session, engine, gateway, pending):
        payment_id, order_id = pending.id, pending.razorpay_order_id
        gateway.fetch_error = GatewayError("timeout")

        await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))

        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.meta["razorpay_payment"] is None

    @pytest.mark.asyncio
    async def test_not_captured_on_gateway(self, session, engine, gateway, pending):
        payment_id, order_id = pending.id, pending.razorpay_order_id
        gateway.payments["pay_1"]["status"] = "failed"

        with pytest.raises(InvalidInput):
            await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))

        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_failed_payment_is_not_completed(self, session, engine, pending):
        payment_id, order_id = pending.id, pending.razorpay_order_id
        await PaymentLedger(session).mark_failed(pending, "pay_1", error_code="BAD_REQUEST_ERROR")

        with pytest.raises(InvalidInput):
            await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))

        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.FAILED.value
        assert len(await _alerts(session, "payment_state_conflict")) == 1

    @pytest.mark.asyncio
    async def test_confirms_client_registration(self, session, engine, event, ticket, pending):
        payment_id, order_id = pending.id, pending.razorpay_order_id
        registration = Registration(
            registration_number="REG-CLIENT-1", event_id=event.id, ticket_type_id=ticket.id,
        )
        session.add(registration)
        await session.commit()
        registration_id = registration.id

        result = await engine.verify(
            order_id, "pay_1", checkout_signature(order_id, "pay_1"), registration_id=registration_id
        )

        assert result.registration_id == registration_id
        assert result.registration_number == "REG-CLIENT-1"
        registration = await refetch(session, Registration, registration_id)
        assert registration.status == RegistrationStatus.CONFIRMED.value
        assert registration.payment_id == payment_id
        assert len(await _registrations(session, payment_id)) == 1

    @pytest.mark.asyncio
    async def test_addons_attached_once(self, session, engine, event, ticket, make_pending_payment, gateway):
        addon_id = uuid4()
        payment = await make_pending_payment(
            event=event, ticket=ticket,
            addons_selection=[{"addonId": str(addon_id), "quantity": 1, "unitPrice": 200, "totalPrice": 200}],
        )
        order_id = payment.razorpay_order_id
        gateway.add_payment("pay_a", order_id, 1180.0)
        signature = checkout_signature(order_id, "pay_a")

        result = await engine.verify(order_id, "pay_a", signature)
        await engine.verify(order_id, "pay_a", signature)

        count = await session.execute(
            select(func.count()).select_from(RegistrationAddon)
            .where(RegistrationAddon.registration_id == result.registration_id)
        )
        assert count.scalar_one() == 1


class TestConvergence:
    """verify and webhook racing for the same payment"""

    @pytest.mark.asyncio
    async def test_webhook_then_verify(self, session, engine, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id

        assert await _deliver(engine, _captured(order_id, "pay_1")) == {"received": True}
        result = await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))

        assert result.is_duplicate is True
        registrations = await _registrations(session, payment_id)
        assert len(registrations) == 1
        assert result.registration_id == registrations[0].id
        assert await _sold(session, ticket_id) == 1
        assert await outbox_count(session, EventType.PAYMENT_COMPLETED.value) == 1
        assert await outbox_count(session, EventType.REGISTRATION_CONFIRMED.value) == 1

    @pytest.mark.asyncio
    async def test_verify_then_webhook(self, session, engine, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id

        await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))
        await _deliver(engine, _captured(order_id, "pay_1"))
        await _deliver(engine, _captured(order_id, "pay_1"))

        assert len(await _registrations(session, payment_id)) == 1
        assert await _sold(session, ticket_id) == 1
        assert await outbox_count(session, EventType.REGISTRATION_CONFIRMED.value) == 1
        assert await _alerts(session, "orphan_payment") == []

    @pytest.mark.asyncio
    async def test_webhook_repairs_after_crashed_verify(self, session, engine, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id
        # the winner completed the ledger row and died before creating anything
        await PaymentLedger(session).mark_completed(pending, "pay_1")

        await _deliver(engine, _captured(order_id, "pay_1"))

        registrations = await _registrations(session, payment_id)
        assert len(registrations) == 1
        assert registrations[0].status == RegistrationStatus.CONFIRMED.value
        assert await _sold(session, ticket_id) == 1
        assert len(await _alerts(session, "orphan_payment")) == 1

    @pytest.mark.asyncio
    async def test_verify_repairs_after_crashed_webhook(self, session, settings, gateway, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id
        await PaymentLedger(session).mark_completed(pending, "pay_1", via="webhook")

        result = await ConfirmationEngine(session, settings, gateway).verify(
            order_id, "pay_1", checkout_signature(order_id, "pay_1")
        )

        assert result.is_duplicate is True
        assert result.registration_id is not None
        assert await _sold(session, ticket_id) == 1

    @pytest.mark.asyncio
    async def test_repair_after_lost_inventory_step(self, session, engine, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id
        signature = checkout_signature(order_id, "pay_1")
        original = engine.inventory.increment_sold

        async def crash(*args, **kwargs):
            raise RuntimeError("worker killed")

        engine.inventory.increment_sold = crash
        await engine.verify(order_id, "pay_1", signature)
        assert await _sold(session, ticket_id) == 0

        engine.inventory.increment_sold = original
        await engine.verify(order_id, "pay_1", signature)

        assert await _sold(session, ticket_id) == 1
        assert len(await _registrations(session, payment_id)) == 1


    @pytest.mark.asyncio
    async def test_verify_and_webhooks_racing_on_separate_sessions(
        self, database, session, settings, gateway, ticket, pending
    ):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id
        body = _captured(order_id, "pay_1")

        async def verify():
            async with database.session_factory() as own_session:
                engine = ConfirmationEngine(own_session, settings, gateway)
                return await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))

        async def webhook():
            async with database.session_factory() as own_session:
                return await _deliver(ConfirmationEngine(own_session, settings, gateway), body)

        verified, first, second = await asyncio.gather(verify(), webhook(), webhook())

        assert verified.success is True
        assert first == second == {"received": True}
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value
        registrations = await _registrations(session, payment_id)
        assert [r.status for r in registrations] == [RegistrationStatus.CONFIRMED.value]
        assert await _sold(session, ticket_id) == 1
        assert await outbox_count(session, EventType.PAYMENT_COMPLETED.value) == 1
        assert await outbox_count(session, EventType.REGISTRATION_CONFIRMED.value) == 1

class TestWebhook:

    @pytest.mark.asyncio
    async def test_orphan_captured_payment(self, session, engine):
        body = _captured("order_ghost", "pay_ghost", amount=50000)

        await _deliver(engine, body)
        await _deliver(engine, body)

        result = await session.execute(select(Payment).where(Payment.razorpay_order_id == "order_ghost"))
        orphan = result.scalar_one()
        assert orphan.status == PaymentStatus.COMPLETED.value
        assert orphan.amount == 500.0
        assert orphan.meta["is_orphan"] is True
        assert await payment_count(session) == 1
        assert await _registrations(session, orphan.id) == []
        alerts = await _alerts(session, "orphan_webhook")
        assert len(alerts) == 1
        assert alerts[0].severity == "high"

    @pytest.mark.asyncio
    async def test_invalid_signature(self, engine, pending):
        body = _captured(pending.razorpay_order_id, "pay_1")
        with pytest.raises(SignatureMismatch):
            await engine.handle_webhook(body, webhook_signature(body, "wrong"))
        with pytest.raises(SignatureMismatch):
            await engine.handle_webhook(body, None)

    @pytest.mark.asyncio
    async def test_malformed_body(self, engine):
        with pytest.raises(InvalidInput):
            await engine.handle_webhook(b"not json", "sig")

    @pytest.mark.asyncio
    async def test_no_secret_configured(self, engine, settings):
        settings.razorpay_webhook_secret = ""
        body = _captured("order_1", "pay_1")
        with pytest.raises(ConfigurationError):
            await engine.handle_webhook(body, "sig")

    @pytest.mark.asyncio
    async def test_event_secret_with_default_fallback(self, session, engine, event, pending):
        event.razorpay_webhook_secret = "event_whsec"
        await session.commit()
        payment_id, order_id = pending.id, pending.razorpay_order_id

        await _deliver(engine, _captured(order_id, "pay_1"), secret="event_whsec")
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value

        # signed with the platform default: accepted on retry
        assert await _deliver(engine, _captured(order_id, "pay_1")) == {"received": True}

    @pytest.mark.asyncio
    async def test_payment_failed_then_captured(self, session, engine, ticket, pending):
        ticket_id, payment_id, order_id = ticket.id, pending.id, pending.razorpay_order_id
        failed = webhook_body("payment.failed", "payment", {
            "id": "pay_1",
            "order_id": order_id,
            "error_code": "BAD_REQUEST_ERROR",
            "error_description": "Payment was declined",
        })

        await _deliver(engine, failed)
        await _deliver(engine, _captured(order_id, "pay_1"))

        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.meta["error_code"] == "BAD_REQUEST_ERROR"
        assert await _registrations(session, payment_id) == []
        assert await _sold(session, ticket_id) == 0
        assert len(await _alerts(session, "payment_state_conflict")) == 1
        assert await outbox_count(session, EventType.PAYMENT_FAILED.value) == 1

    @pytest.mark.asyncio
    async def test_refund_processed(self, session, engine, pending):
        payment_id, order_id = pending.id, pending.razorpay_order_id
        await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))
        refund = webhook_body("refund.processed", "refund", {
            "id": "rfnd_1", "payment_id": "pay_1", "amount": 118000,
        })

        await _deliver(engine, refund)
        await _deliver(engine, refund)

        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.refund_amount == 1180.0
        registrations = await _registrations(session, payment_id)
        assert [r.status for r in registrations] == [RegistrationStatus.REFUNDED.value]
        assert await outbox_count(session, EventType.PAYMENT_REFUNDED.value) == 1
        assert await outbox_count(session, EventType.REGISTRATION_REFUNDED.value) == 1

    @pytest.mark.asyncio
    async def test_refund_failed_raises_alert(self, session, engine, pending):
        order_id = pending.razorpay_order_id
        await engine.verify(order_id, "pay_1", checkout_signature(order_id, "pay_1"))

        await _deliver(engine, webhook_body("refund.failed", "refund", {"id": "rfnd_2", "payment_id": "pay_1"}))

        assert len(await _alerts(session, "refund_failed")) == 1

    @pytest.mark.asyncio
    async def test_unhandled_event_acknowledged(self, engine):
        body = webhook_body("order.paid", "order", {"id": "order_1"})
        assert await _deliver(engine, body) == {"received": True}


class TestGroupAndAddonPurchase:

    @pytest.mark.asyncio
    async def test_group_order(self, session, engine, event, ticket, make_pending_payment, gateway):
        event_id, ticket_id = event.id, ticket.id
        vip = TicketType(event_id=event_id, name="VIP", price=5000.0, tax_percentage=18.0, quantity_sold=0)
        order = GroupOrder(event_id=event_id, total_amount=8260.0)
        session.add_all([vip, order])
        await session.commit()
        vip_id, group_id = vip.id, order.id
        for n, tier in enumerate([ticket_id, ticket_id, vip_id]):
            session.add(Registration(
                registration_number=f"GRP-{n}", event_id=event_id, ticket_type_id=tier, order_id=group_id,
            ))
        await session.commit()
        payment = await make_pending_payment(event=event, amount=8260.0, order_id=str(group_id))
        payment_id, order_id = payment.id, payment.razorpay_order_id
        gateway.add_payment("pay_grp", order_id, 8260.0)

        result = await engine.verify(order_id, "pay_grp", checkout_signature(order_id, "pay_grp"))
        await _deliver(engine, _captured(order_id, "pay_grp", amount=826000))

        assert result.order_id == group_id
        assert result.registration_count == 3
        assert result.message == "Group payment verified successfully"
        registrations = await _registrations(session, payment_id)
        assert len(registrations) == 3
        assert await _sold(session, ticket_id) == 2
        assert await _sold(session, vip_id) == 1
        assert await outbox_count(session, EventType.REGISTRATION_CONFIRMED.value) == 3

    @pytest.mark.asyncio
    async def test_addon_purchase(self, session, engine, event, ticket, make_pending_payment, gateway):
        ticket_id = ticket.id
        registration = Registration(
            registration_number="REG-EXISTING", event_id=event.id, ticket_type_id=ticket_id,
            status=RegistrationStatus.CONFIRMED.value,
        )
        session.add(registration)
        await session.commit()
        registration_id = registration.id
        addon_id = uuid4()
        payment = await make_pending_payment(
            event=event, amount=236.0, payment_type="addon_purchase",
            registration_id=str(registration_id),
            addons_selection=[{"addonId": str(addon_id), "quantity": 1, "unitPrice": 200, "totalPrice": 200}],
        )
        payment_id, order_id = payment.id, payment.razorpay_order_id
        gateway.add_payment("pay_addon", order_id, 236.0)

        result = await engine.verify(order_id, "pay_addon", checkout_signature(order_id, "pay_addon"))

        assert result.registration_id == registration_id
        assert result.registration_number == "REG-EXISTING"
        assert result.message == "Addon purchase verified successfully"
        count = await session.execute(
            select(func.count()).select_from(RegistrationAddon)
            .where(RegistrationAddon.registration_id == registration_id)
        )
        assert count.scalar_one() == 1
        assert await _sold(session, ticket_id) == 0
        assert await _registrations(session, payment_id) == []


class TestManualVerify:

    @pytest.mark.asyncio
    async def test_captured_pending_payment_is_completed(self, session, engine, ticket, pending):
        ticket_id, payment_id = ticket.id, pending.id

        result = await engine.verify_manual(payment_id, "pay_1")

        assert result["action"] == "payment_updated_to_completed"
        assert result["verified"] is True
        assert result["verification_method"] == "payment_id"
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.meta["verified_via"] == "manual"
        assert await _sold(session, ticket_id) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_order_lookup(self, session, engine, pending):
        result = await engine.verify_manual(pending.id)

        assert result["verification_method"] == "order_id"
        assert result["razorpay_payment_id"] == "pay_1"

    @pytest.mark.asyncio
    async def test_already_completed(self, session, engine, pending):
        payment_id = pending.id
        await PaymentLedger(session).mark_completed(pending, "pay_1")

        result = await engine.verify_manual(payment_id)

        assert result["status"] == "already_completed"

    @pytest.mark.asyncio
    async def test_not_on_gateway(self, engine, gateway, make_pending_payment):
        payment = await make_pending_payment()
        result = await engine.verify_manual(payment.id, "pay_missing")
        assert result["status"] == "not_found_on_gateway"

    @pytest.mark.asyncio
    async def test_amount_mismatch_flagged(self, engine, gateway, make_pending_payment):
        payment = await make_pending_payment()
        gateway.add_payment("pay_low", payment.razorpay_order_id, 1000.0, status="failed")

        result = await engine.verify_manual(payment.id, "pay_low")

        assert result["verified"] is False
        assert result["amount_mismatch"] is True

    @pytest.mark.asyncio
    async def test_unknown_payment(self, engine):
        with pytest.raises(PaymentNotFound):
            await engine.verify_manual(uuid4())


class TestSelfVerify:

    @pytest.mark.asyncio
    async def test_owner_completes_pending_payment(self, session, engine, ticket, pending):
        ticket_id, payment_id, payment_number = ticket.id, pending.id, pending.payment_number

        result = await engine.verify_public(" ASHA@example.com ", payment_id=payment_id)

        assert result["status"] == "verified"
        assert result["payment_number"] == payment_number
        assert result["registration_number"]
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.razorpay_payment_id == "pay_1"
        assert payment.meta["verified_via"] == "self_verification"
        registrations = await _registrations(session, payment_id)
        assert [r.status for r in registrations] == [RegistrationStatus.CONFIRMED.value]
        assert await _sold(session, ticket_id) == 1
        alerts = await _alerts(session, "self_verified")
        assert len(alerts) == 1
        assert alerts[0].severity == "info"

    @pytest.mark.asyncio
    async def test_other_email_finds_nothing(self, session, engine, pending):
        payment_id = pending.id

        result = await engine.verify_public("eve@example.com", payment_id=payment_id)

        assert result["status"] == "not_found"
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_gateway_payment_id_alone(self, session, engine, pending):
        payment_id = pending.id

        result = await engine.verify_public("asha@example.com", gateway_payment_id="pay_1")

        assert result["status"] == "verified"
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_gateway_payment_of_another_order_refused(self, session, engine, gateway, pending):
        payment_id = pending.id
        gateway.add_payment("pay_other", "order_9999", 1180.0)

        result = await engine.verify_public("asha@example.com", payment_id, "pay_other")

        assert result["status"] == "not_found_on_gateway"
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_failed_payment_is_not_revived(self, session, engine, pending):
        payment_id = pending.id
        await PaymentLedger(session).mark_failed(pending, "pay_1", error_code="BAD_REQUEST_ERROR")

        result = await engine.verify_public("asha@example.com", payment_id=payment_id)

        assert result["status"] == "requires_review"
        payment = await refetch(session, Payment, payment_id)
        assert payment.status == PaymentStatus.FAILED.value
        assert len(await _alerts(session, "payment_state_conflict")) == 1
        assert await _registrations(session, payment_id) == []

    @pytest.mark.asyncio
    async def test_already_completed_and_still_processing(self, session, engine, gateway, make_pending_payment):
        done = await make_pending_payment()
        done_id = done.id
        await PaymentLedger(session).mark_completed(done, "pay_done")
        slow = await make_pending_payment(email="slow@example.com")
        gateway.add_payment("pay_slow", slow.razorpay_order_id, 1180.0, status="created")

        completed = await engine.verify_public("asha@example.com", payment_id=done_id)
        processing = await engine.verify_public("slow@example.com", gateway_payment_id="pay_slow")

        assert completed["status"] == "already_completed"
        assert processing["status"] == "pending"

    @pytest.mark.asyncio
    async def test_requires_email_and_reference(self, engine, pending):
        with pytest.raises(InvalidInput):
            await engine.verify_public(None, payment_id=pending.id)
        with pytest.raises(InvalidInput):
            await engine.verify_public("asha@example.com")
