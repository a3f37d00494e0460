"""
Confirmation engine: drives a payment from gateway callback to confirmed registration.

The client's verify call and the gateway's payment.captured webhook reach
the same pipeline in either order and possibly more than once. Admin and
payer re-checks against the gateway feed into it as well. Every stage after
the ledger transition is idempotent on its own:
1. Ledger: pending -> completed is a guarded UPDATE, one winner
2. Registrations: confirmed from pending by a guarded UPDATE, at most one
   synthesized registration per payment
3. Inventory: keyed by (ticket type, payment)
4. Addons: deduplicated by (addon, variant)
5. Downstream triggers: written to the outbox with the confirmation itself

Each post-ledger stage commits on its own and a failing stage is rolled back
and logged without failing the request, so re-running the pipeline repairs
whatever an earlier, interrupted run left undone.
"""
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings

from .errors import (
    ConfigurationError,
    InvalidInput,
    LedgerWriteError,
    PaymentNotFound,
    SignatureMismatch,
)
from .gateway import (
    CAPTURED_STATUSES,
    GatewayError,
    RazorpayGateway,
    resolve_credentials,
    resolve_webhook_secret,
    verify_payment_signature,
    verify_webhook_signature,
)
from .inventory import InventoryAccountant
from .ledger import PaymentLedger
from .models import Event, Payment, PaymentStatus, PaymentType, RegistrationStatus
from .registrations import RegistrationMaterializer

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUPPORTED_WEBHOOK_EVENTS = ["payment.captured", "payment.failed", "refund.processed", "refund.failed"]


class MaterializeOutcome(BaseModel):
    """What the post-ledger pipeline produced for one payment."""
    kind: str  # individual | group | addon_purchase | orphan
    registration_id: Optional[UUID] = None
    registration_number: Optional[str] = None
    order_id: Optional[UUID] = None
    registration_count: Optional[int] = None
    newly_confirmed: int = 0
    synthesized: bool = False


class VerificationResult(BaseModel):
    """Response body of the verify endpoint."""
    success: bool = True
    payment_id: UUID
    payment_number: str
    registration_id: Optional[UUID] = None
    registration_number: Optional[str] = None
    order_id: Optional[UUID] = None
    registration_count: Optional[int] = None
    status: str = "completed"
    message: str
    is_duplicate: Optional[bool] = None


def _as_uuid(value: Any) -> Optional[UUID]:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


def _entity(payload: Dict[str, Any], kind: str) -> Dict[str, Any]:
    return ((payload.get("payload") or {}).get(kind) or {}).get("entity") or {}


class ConfirmationEngine:
    """Verify, webhook and manual-verify entry points over one request session."""

    def __init__(self, session: AsyncSession, settings: Settings, gateway: RazorpayGateway):
        self.session = session
        self.settings = settings
        self.gateway = gateway
        self.ledger = PaymentLedger(session)
        self.materializer = RegistrationMaterializer(session, settings)
        self.inventory = InventoryAccountant(
            session,
            atomic=settings.inventory_atomic,
            history_cap=settings.processed_payments_cap,
        )

    async def _event(self, event_id: Optional[UUID]) -> Optional[Event]:
        if not event_id:
            return None
        return await self.session.get(Event, event_id)

    async def _step(self, name: str, payment_id: UUID, action: Callable[[], Awaitable[T]], default: T = None) -> T:
        """Run one post-ledger stage; on failure roll it back, log it and carry on."""
        try:
            return await action()
        except Exception as e:
            await self.session.rollback()
            logger.error(f"{name} failed for payment {payment_id}: {str(e)}", exc_info=True)
            return default

    async def _complete(
        self,
        payment: Payment,
        gateway_payment_id: str,
        extra_metadata: Dict[str, Any],
        via: str,
        signature: Optional[str] = None
    ) -> Payment:
        """
        Conditional pending -> completed. Losing the race is fine; the payment
        must be completed afterwards either way.

        Raises:
            LedgerWriteError: The ledger could not be written
            InvalidInput: The payment already moved to failed or refunded
        """
        payment_id = payment.id
        try:
            await self.ledger.mark_completed(
                payment, gateway_payment_id, extra_metadata, signature=signature, via=via
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to complete payment {payment_id}: {str(e)}", exc_info=True)
            raise LedgerWriteError("Failed to update payment record") from e

        payment = await self.ledger.get(payment_id)
        if payment.status != PaymentStatus.COMPLETED.value:
            await self.ledger.raise_alert(
                payment_id,
                "payment_state_conflict",
                f"Gateway reports payment {gateway_payment_id} captured but payment "
                f"{payment.payment_number} is {payment.status}",
            )
            raise InvalidInput(f"Payment is {payment.status}")
        return payment

    async def materialize(
        self,
        payment_id: UUID,
        gateway_payment_id: Optional[str],
        registration_id: Optional[UUID] = None
    ) -> MaterializeOutcome:
        """
        Post-ledger pipeline for a completed payment. Safe to call repeatedly.

        Args:
            payment_id: Completed payment
            gateway_payment_id: Gateway payment id, copied onto group orders
            registration_id: Registration the client created before paying, if any
        """
        payment = await self.ledger.get(payment_id)
        meta = dict(payment.meta or {})
        addons_selection = meta.get("addons_selection")

        if meta.get("is_orphan"):
            logger.info(f"Payment {payment_id} is an orphan; left for reconciliation")
            return MaterializeOutcome(kind="orphan")

        order_id = _as_uuid(meta.get("order_id"))
        if order_id:
            return await self._materialize_group(payment_id, order_id, _as_uuid(meta.get("buyer_id")), gateway_payment_id)

        target_registration_id = _as_uuid(meta.get("registration_id"))
        if payment.payment_type == PaymentType.ADDON_PURCHASE.value and target_registration_id:
            logger.info(f"Processing addon-only purchase for registration {target_registration_id}")
            await self._step(
                "Addon attachment", payment_id,
                lambda: self.materializer.attach_addons(target_registration_id, addons_selection), 0,
            )
            registration = await self.materializer.get(target_registration_id)
            return MaterializeOutcome(
                kind=PaymentType.ADDON_PURCHASE.value,
                registration_id=target_registration_id,
                registration_number=registration.registration_number if registration else meta.get("registration_number"),
            )

        return await self._materialize_individual(payment_id, registration_id, addons_selection)

    async def _materialize_individual(
        self,
        payment_id: UUID,
        registration_id: Optional[UUID],
        addons_selection: Optional[List[Dict[str, Any]]]
    ) -> MaterializeOutcome:
        async def confirm():
            payment = await self.ledger.get(payment_id)
            registration, newly = await self.materializer.confirm_existing_for_payment(payment)
            if registration is None and registration_id:
                registration, newly = await self.materializer.confirm_by_id(registration_id, payment)
            synthesized = False
            if registration is None:
                logger.info(f"No registration for payment {payment_id}; creating one from payment metadata")
                registration, newly = await self.materializer.create_from_payment(payment)
                synthesized = newly
            if registration is None:
                return None
            return {
                "id": registration.id,
                "number": registration.registration_number,
                "status": registration.status,
                "ticket_type_id": registration.ticket_type_id,
                "quantity": registration.quantity or 1,
                "newly": newly,
                "synthesized": synthesized,
            }

        registration = await self._step("Registration materialization", payment_id, confirm)
        if registration is None:
            return MaterializeOutcome(kind="individual")

        if registration["status"] == RegistrationStatus.CONFIRMED.value:
            await self._step(
                "Inventory increment", payment_id,
                lambda: self.inventory.increment_sold(
                    registration["ticket_type_id"], registration["quantity"], payment_id
                ),
            )
            await self._step(
                "Addon attachment", payment_id,
                lambda: self.materializer.attach_addons(registration["id"], addons_selection), 0,
            )

        return MaterializeOutcome(
            kind="individual",
            registration_id=registration["id"],
            registration_number=registration["number"],
            newly_confirmed=1 if registration["newly"] else 0,
            synthesized=registration["synthesized"],
        )

    async def _materialize_group(
        self,
        payment_id: UUID,
        order_id: UUID,
        buyer_id: Optional[UUID],
        gateway_payment_id: Optional[str]
    ) -> MaterializeOutcome:
        async def confirm():
            payment = await self.ledger.get(payment_id)
            registrations, newly = await self.materializer.confirm_group(
                payment, order_id, buyer_id, gateway_payment_id
            )
            return len(registrations), len(newly)

        total, newly = await self._step("Group confirmation", payment_id, confirm, (0, 0))

        counts = await self._step(
            "Group ticket count", payment_id,
            lambda: self.materializer.group_ticket_counts(order_id, payment_id), {},
        )
        for ticket_type_id, quantity in counts.items():
            await self._step(
                "Inventory increment", payment_id,
                lambda: self.inventory.increment_sold(ticket_type_id, quantity, payment_id),
            )

        return MaterializeOutcome(
            kind="group",
            order_id=order_id,
            registration_count=total,
            newly_confirmed=newly,
        )

    def _result(
        self,
        payment: Payment,
        outcome: MaterializeOutcome,
        message: str,
        is_duplicate: Optional[bool] = None
    ) -> VerificationResult:
        return VerificationResult(
            payment_id=payment.id,
            payment_number=payment.payment_number,
            registration_id=outcome.registration_id,
            registration_number=outcome.registration_number,
            order_id=outcome.order_id,
            registration_count=outcome.registration_count,
            message=message,
            is_duplicate=is_duplicate,
        )

    async def verify(
        self,
        order_id: str,
        gateway_payment_id: str,
        signature: str,
        registration_id: Optional[UUID] = None
    ) -> VerificationResult:
        """
        Client-initiated verification after checkout.

        Raises:
            InvalidInput: Missing fields, or the gateway says the payment is not captured
            PaymentNotFound: No payment for the gateway order
            SignatureMismatch: The checkout signature does not match
        """
        if not (order_id and gateway_payment_id and signature):
            raise InvalidInput("Missing payment verification fields")

        payment = await self.ledger.find_by_order_id(order_id)
        if payment is None:
            logger.error(f"Payment not found for order {order_id}")
            raise PaymentNotFound("Payment record not found")
        payment_id = payment.id

        event = await self._event(payment.event_id)
        credentials = resolve_credentials(event, self.settings)
        signature_ok = verify_payment_signature(
            order_id, gateway_payment_id, signature, credentials.key_secret if credentials else None
        )

        if payment.status == PaymentStatus.COMPLETED.value:
            logger.info(f"Payment already completed for order {order_id}")
            if signature_ok:
                outcome = await self.materialize(payment_id, gateway_payment_id, registration_id)
            else:
                registration = await self.materializer.find_for_payment(payment_id)
                outcome = MaterializeOutcome(
                    kind="individual",
                    registration_id=registration.id if registration else None,
                    registration_number=registration.registration_number if registration else None,
                )
            payment = await self.ledger.get(payment_id)
            return self._result(payment, outcome, "Payment already verified", is_duplicate=True)

        if not signature_ok:
            logger.error(f"Invalid signature for order {order_id}")
            raise SignatureMismatch("Invalid payment signature")

        gateway_payment = None
        try:
            gateway_payment = await self.gateway.fetch_payment(gateway_payment_id, credentials)
        except GatewayError as e:
            # the signature already proves the payment; the lookup is a double check
            logger.warning(f"Failed to fetch payment {gateway_payment_id} from gateway: {str(e)}")

        if gateway_payment and gateway_payment.get("status") not in CAPTURED_STATUSES:
            logger.error(f"Payment {gateway_payment_id} not captured. Status: {gateway_payment.get('status')}")
            raise InvalidInput(f"Payment not captured. Status: {gateway_payment.get('status')}")

        payment = await self._complete(
            payment,
            gateway_payment_id,
            {
                "razorpay_payment": gateway_payment,
                "verified_at": datetime.utcnow().isoformat(),
                "verified_via": "verify_api",
            },
            via="verify_api",
            signature=signature,
        )

        outcome = await self.materialize(payment_id, gateway_payment_id, registration_id)
        payment = await self.ledger.get(payment_id)
        if outcome.kind == "group":
            message = "Group payment verified successfully"
        elif outcome.kind == PaymentType.ADDON_PURCHASE.value:
            message = "Addon purchase verified successfully"
        else:
            message = "Payment verified successfully"
        return self._result(payment, outcome, message)

    async def _resolve_webhook_payment(self, event_name: str, payload: Dict[str, Any]) -> Optional[Payment]:
        if event_name.startswith("refund."):
            gateway_payment_id = _entity(payload, "refund").get("payment_id")
            if gateway_payment_id:
                return await self.ledger.find_by_gateway_payment_id(gateway_payment_id)
            return None
        order_id = _entity(payload, "payment").get("order_id")
        if order_id:
            return await self.ledger.find_by_order_id(order_id)
        return None

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and dispatch a gateway webhook.

        The secret is the event's own when the payload maps to a known payment,
        else the platform default; a mismatch against the event secret is
        retried with the default.

        Raises:
            InvalidInput: Body is not JSON
            ConfigurationError: No webhook secret is configured
            SignatureMismatch: Signature does not match
        """
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise InvalidInput("Invalid webhook payload") from e
        if not isinstance(payload, dict):
            raise InvalidInput("Invalid webhook payload")

        event_name = payload.get("event") or ""
        payment = await self._resolve_webhook_payment(event_name, payload)
        event_id = payment.event_id if payment else _as_uuid(
            (_entity(payload, "payment").get("notes") or {}).get("event_id")
        )
        secret = resolve_webhook_secret(await self._event(event_id), self.settings)
        if not secret:
            logger.error("Webhook secret not configured")
            raise ConfigurationError("Webhook secret not configured")

        valid = verify_webhook_signature(raw_body, signature, secret)
        default_secret = self.settings.razorpay_webhook_secret
        if not valid and default_secret and default_secret != secret:
            valid = verify_webhook_signature(raw_body, signature, default_secret)
        if not valid:
            logger.error(f"Invalid webhook signature for {event_name}")
            raise SignatureMismatch("Invalid webhook signature")

        logger.info(f"Webhook received: {event_name}")
        if event_name == "payment.captured":
            await self._on_payment_captured(_entity(payload, "payment"))
        elif event_name == "payment.failed":
            await self._on_payment_failed(_entity(payload, "payment"))
        elif event_name == "refund.processed":
            await self._on_refund_processed(_entity(payload, "refund"))
        elif event_name == "refund.failed":
            refund = _entity(payload, "refund")
            logger.error(f"Refund failed: {refund.get('id')}")
            await self.ledger.raise_alert(
                payment.id if payment else None,
                "refund_failed",
                f"Refund {refund.get('id')} failed for gateway payment {refund.get('payment_id')}",
            )
        else:
            logger.info(f"Ignoring unhandled webhook event: {event_name}")

        return {"received": True}

    async def _on_payment_captured(self, entity: Dict[str, Any]):
        order_id = entity.get("order_id")
        gateway_payment_id = entity.get("id")
        payment = await self.ledger.find_by_order_id(order_id) if order_id else None

        if payment is None:
            notes = entity.get("notes") or {}
            orphan = await self.ledger.create_orphan(
                gateway_order_id=order_id,
                gateway_payment_id=gateway_payment_id,
                amount=(entity.get("amount") or 0) / 100,
                currency=entity.get("currency") or self.settings.default_currency,
                event_id=_as_uuid(notes.get("event_id")),
                payer_name=notes.get("payer_name"),
                payer_email=entity.get("email") or notes.get("payer_email"),
                payer_phone=entity.get("contact"),
                gateway_payload=entity,
            )
            await self.ledger.raise_alert(
                orphan.id,
                "orphan_webhook",
                f"Captured payment {gateway_payment_id} for order {order_id} has no pending payment record",
            )
            return

        payment_id = payment.id
        if payment.status == PaymentStatus.PENDING.value:
            payment = await self._complete(
                payment,
                gateway_payment_id,
                {
                    "razorpay_webhook": entity,
                    "webhook_received_at": datetime.utcnow().isoformat(),
                    "verified_via": "webhook",
                },
                via="webhook",
            )
        elif payment.status != PaymentStatus.COMPLETED.value:
            logger.warning(f"Captured webhook for payment {payment_id} in status {payment.status}")
            await self.ledger.raise_alert(
                payment_id,
                "payment_state_conflict",
                f"Gateway reports payment {gateway_payment_id} captured but payment "
                f"{payment.payment_number} is {payment.status}",
            )
            return
        else:
            logger.info(f"Payment {payment_id} already completed; running repair")

        outcome = await self.materialize(payment_id, gateway_payment_id)
        if outcome.synthesized:
            payment = await self.ledger.get(payment_id)
            await self.ledger.raise_alert(
                payment_id,
                "orphan_payment",
                f"Registration {outcome.registration_number} auto-created from payment "
                f"{payment.payment_number} by webhook",
            )

    async def _on_payment_failed(self, entity: Dict[str, Any]):
        order_id = entity.get("order_id")
        payment = await self.ledger.find_by_order_id(order_id) if order_id else None
        if payment is None:
            logger.warning(f"Failed-payment webhook for unknown order {order_id}")
            return

        await self.ledger.mark_failed(
            payment,
            entity.get("id"),
            {
                "webhook_event": "payment.failed",
                "error_code": entity.get("error_code"),
                "error_description": entity.get("error_description"),
                "error_reason": entity.get("error_reason"),
            },
            error_code=entity.get("error_code"),
            error_description=entity.get("error_description"),
        )

    async def _on_refund_processed(self, refund: Dict[str, Any]):
        gateway_payment_id = refund.get("payment_id")
        payment = await self.ledger.find_by_gateway_payment_id(gateway_payment_id) if gateway_payment_id else None
        if payment is None:
            logger.warning(f"Refund webhook for unknown gateway payment {gateway_payment_id}")
            return
        payment_id = payment.id

        await self.ledger.mark_refunded(
            payment,
            (refund.get("amount") or 0) / 100,
            refund.get("id"),
            {"webhook_event": "refund.processed", "refund_response": refund},
        )
        payment = await self.ledger.get(payment_id)
        if payment.status == PaymentStatus.REFUNDED.value:
            await self.materializer.refund_for_payment(payment)
        logger.info(f"Refund processed: {refund.get('id')}")

    async def _lookup_gateway_payment(
        self,
        payment: Payment,
        lookup_id: Optional[str]
    ) -> Tuple[Optional[Dict[str, Any]], str]:
        """
        Find a payment on the gateway by its payment id, else among its order's payments.

        Returns:
            (gateway payment or None, "payment_id" | "order_id" | "")
        """
        credentials = resolve_credentials(await self._event(payment.event_id), self.settings)
        order_id = payment.razorpay_order_id
        if lookup_id:
            try:
                return await self.gateway.fetch_payment(lookup_id, credentials), "payment_id"
            except GatewayError as e:
                logger.error(f"Failed to fetch by payment id {lookup_id}: {str(e)}")
        if order_id:
            try:
                items = await self.gateway.fetch_order_payments(order_id, credentials)
                gateway_payment = next(
                    (p for p in items if p.get("status") in CAPTURED_STATUSES),
                    items[0] if items else None,
                )
                return gateway_payment, "order_id"
            except GatewayError as e:
                logger.error(f"Failed to fetch payments for order {order_id}: {str(e)}")
        return None, ""

    async def verify_manual(self, payment_id: UUID, gateway_payment_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Admin check of a payment against the gateway.

        When the gateway has it captured and the ledger still has it pending,
        the payment is completed and the normal pipeline runs.

        Raises:
            PaymentNotFound: Unknown payment id
        """
        payment = await self.ledger.get(payment_id)
        if payment is None:
            raise PaymentNotFound("Payment not found")

        if payment.status == PaymentStatus.COMPLETED.value:
            return {
                "status": "already_completed",
                "message": "This payment is already marked as completed",
                "payment_id": payment.razorpay_payment_id,
                "completed_at": payment.completed_at.isoformat() if payment.completed_at else None,
            }

        lookup_id = gateway_payment_id or payment.razorpay_payment_id
        order_id = payment.razorpay_order_id
        if not lookup_id and not order_id:
            return {
                "status": "no_reference",
                "message": "No gateway payment id or order id found. Provide the gateway payment id.",
            }

        gateway_payment, method = await self._lookup_gateway_payment(payment, lookup_id)

        if gateway_payment is None:
            return {
                "status": "not_found_on_gateway",
                "message": "Payment not found on the gateway.",
                "checked": {"payment_id": lookup_id, "order_id": order_id},
            }

        gateway_status = gateway_payment.get("status")
        gateway_amount = (gateway_payment.get("amount") or 0) / 100
        our_amount = payment.net_amount or payment.amount
        result: Dict[str, Any] = {
            "status": gateway_status,
            "razorpay_payment_id": gateway_payment.get("id"),
            "razorpay_order_id": gateway_payment.get("order_id"),
            "amount": gateway_amount,
            "currency": gateway_payment.get("currency"),
            "method": gateway_payment.get("method"),
            "our_status": payment.status,
            "our_amount": our_amount,
            "verification_method": method,
        }

        if gateway_status in CAPTURED_STATUSES:
            if payment.status == PaymentStatus.PENDING.value:
                await self._complete(
                    payment,
                    gateway_payment.get("id"),
                    {
                        "manual_verification": {
                            "verified_at": datetime.utcnow().isoformat(),
                            "gateway_status": gateway_status,
                        },
                        "verified_via": "manual",
                    },
                    via="manual",
                )
                outcome = await self.materialize(payment_id, gateway_payment.get("id"))
                result["action"] = "payment_updated_to_completed"
                result["registration_id"] = outcome.registration_id
                result["registration_number"] = outcome.registration_number
                result["verified"] = True
                result["message"] = "Payment is captured on the gateway and has been marked as completed."
            else:
                await self.ledger.raise_alert(
                    payment_id,
                    "payment_state_conflict",
                    f"Gateway has payment {gateway_payment.get('id')} captured but our record is {payment.status}",
                )
                result["verified"] = False
                result["action"] = "requires_review"
                result["message"] = f"Payment is captured on the gateway but marked {payment.status} here."
        elif gateway_status == "failed":
            result["verified"] = False
            result["message"] = f"Payment failed on the gateway. Status: {gateway_status}."
        else:
            result["verified"] = False
            result["message"] = f"Payment status on the gateway: {gateway_status}. No action taken."

        if gateway_amount > 0 and our_amount and abs(gateway_amount - our_amount) > 1:
            result["amount_mismatch"] = True
            result["warning"] = f"Amount mismatch: gateway has {gateway_amount}, our record has {our_amount}"

        return result

    async def verify_public(
        self,
        email: Optional[str],
        payment_id: Optional[UUID] = None,
        gateway_payment_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Payer self-verification after a checkout that never reported back.

        The payment must belong to the given email. Only a pending payment is
        completed; a captured report for a failed or refunded one is left for an
        admin.

        Raises:
            InvalidInput: Email or both payment references missing
        """
        if not email or not email.strip():
            raise InvalidInput("Email is required")
        if not payment_id and not gateway_payment_id:
            raise InvalidInput("Payment ID is required")

        payment = await self.ledger.find_for_payer(email, payment_id, gateway_payment_id)
        if payment is None:
            return {
                "status": "not_found",
                "message": "No payment found for this email. Please check the email address.",
            }
        payment_id = payment.id
        payment_number = payment.payment_number

        if payment.status == PaymentStatus.COMPLETED.value:
            return {
                "status": "already_completed",
                "message": "Your payment has been received and your registration is confirmed.",
                "payment_number": payment_number,
            }

        lookup_id = (gateway_payment_id or "").strip() or payment.razorpay_payment_id
        gateway_payment, _ = await self._lookup_gateway_payment(payment, lookup_id)
        if gateway_payment is None:
            return {
                "status": "not_found_on_gateway",
                "message": "Payment not found on the payment gateway. If money was deducted, "
                           "your bank will refund it within 5-7 business days.",
            }

        gateway_order_id = gateway_payment.get("order_id")
        if gateway_order_id and payment.razorpay_order_id and gateway_order_id != payment.razorpay_order_id:
            logger.warning(
                f"Self-verification for {payment_number} offered gateway payment {gateway_payment.get('id')} "
                f"of order {gateway_order_id}"
            )
            return {
                "status": "not_found_on_gateway",
                "message": "That gateway payment does not belong to this order.",
            }

        gateway_status = gateway_payment.get("status")
        if gateway_status in CAPTURED_STATUSES:
            if payment.status != PaymentStatus.PENDING.value:
                await self.ledger.raise_alert(
                    payment_id,
                    "payment_state_conflict",
                    f"Payer reports payment {payment_number} captured on the gateway but it is {payment.status}",
                )
                return {
                    "status": "requires_review",
                    "message": "Your payment needs a manual check. The organizers have been notified.",
                    "payment_number": payment_number,
                }

            amount = payment.net_amount or payment.amount
            await self._complete(
                payment,
                gateway_payment.get("id"),
                {
                    "self_verification": {
                        "verified_at": datetime.utcnow().isoformat(),
                        "gateway_status": gateway_status,
                    },
                    "verified_via": "self_verification",
                },
                via="self_verification",
            )
            outcome = await self.materialize(payment_id, gateway_payment.get("id"))
            await self.ledger.raise_alert(
                payment_id,
                "self_verified",
                f"Payment {payment_number} ({amount}) was self-verified by {email.strip()}. "
                f"Gateway status: {gateway_status}.",
                severity="info",
            )
            return {
                "status": "verified",
                "message": "Payment verified successfully! Your registration has been confirmed.",
                "payment_number": payment_number,
                "registration_number": outcome.registration_number,
            }

        if gateway_status == "failed":
            return {
                "status": "failed",
                "message": "Payment failed on the payment gateway. Please register again with a new payment.",
            }
        return {
            "status": "pending",
            "message": f"Payment is still processing (Status: {gateway_status}). "
                       "Please wait a few minutes and try again.",
        }
