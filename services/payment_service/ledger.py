"""Payment ledger: the only writer of Payment.status."""
import logging
import secrets
import string
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import (
    BaseEvent,
    PaymentAlertRaisedEvent,
    PaymentCompletedEvent,
    PaymentFailedEvent,
    PaymentRefundedEvent,
)
from shared.outbox import save_event_to_outbox

from .errors import LedgerWriteError
from .models import Payment, PaymentAlert, PaymentStatus

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_payment_number() -> str:
    """PAY-<year>-<5 random base36 chars>."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"PAY-{datetime.utcnow().year}-{suffix}"


def generate_orphan_payment_number() -> str:
    """ORPHAN-<base36 millisecond timestamp>."""
    return f"ORPHAN-{_to_base36(int(time.time() * 1000))}"


def _audit_entry(event: str, via: str) -> Dict[str, Any]:
    return {"event": event, "at": datetime.utcnow().isoformat(), "via": via}


def _with_audit(meta: Optional[Dict[str, Any]], extra: Optional[Dict[str, Any]], event: str, via: str):
    merged = dict(meta or {})
    merged.update(extra or {})
    merged["verification_events"] = list(merged.get("verification_events") or []) + [
        _audit_entry(event, via)
    ]
    return merged


class PaymentLedger:
    """
    Reads and conditional writes on Payment rows.

    Every status change is an UPDATE guarded by the expected prior status, so
    two concurrent callers can never both win the same transition.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, payment_id: UUID) -> Optional[Payment]:
        return await self.session.get(Payment, payment_id, populate_existing=True)

    async def find_by_order_id(self, order_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.razorpay_order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.razorpay_payment_id == gateway_payment_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_recent_pending(
        self,
        email: str,
        amount: float,
        window_minutes: int
    ) -> Optional[Payment]:
        """Latest pending payment for the same payer and amount inside the window."""
        since = datetime.utcnow() - timedelta(minutes=window_minutes)
        result = await self.session.execute(
            select(Payment)
            .where(
                func.lower(Payment.payer_email) == email.lower(),
                Payment.amount == amount,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at >= since,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_for_payer(
        self,
        email: str,
        payment_id: Optional[UUID] = None,
        gateway_payment_id: Optional[str] = None
    ) -> Optional[Payment]:
        """
        A payment owned by this payer email.

        Looked up by our id, then by gateway payment id, then the payer's most
        recent pending payment.
        """
        owned = func.lower(Payment.payer_email) == email.strip().lower()
        candidates = []
        if payment_id:
            candidates.append(select(Payment).where(Payment.id == payment_id, owned))
        if gateway_payment_id:
            candidates.append(
                select(Payment).where(Payment.razorpay_payment_id == gateway_payment_id.strip(), owned)
            )
        candidates.append(select(Payment).where(owned, Payment.status == PaymentStatus.PENDING.value))

        for query in candidates:
            result = await self.session.execute(
                query.order_by(Payment.created_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
            payment = result.scalar_one_or_none()
            if payment is not None:
                return payment
        return None

    async def create_pending(self, **fields) -> Payment:
        """
        Insert a pending payment and commit.

        Raises:
            LedgerWriteError: The row could not be written
        """
        payment = Payment(
            payment_number=fields.pop("payment_number", None) or generate_payment_number(),
            status=PaymentStatus.PENDING.value,
            **fields,
        )
        self.session.add(payment)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to create pending payment: {str(e)}", exc_info=True)
            raise LedgerWriteError("Failed to create payment record") from e

        logger.info(f"Created pending payment {payment.payment_number} ({payment.id})")
        return payment

    async def create_orphan(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        amount: float,
        currency: str,
        event_id: Optional[UUID],
        payer_name: Optional[str],
        payer_email: Optional[str],
        payer_phone: Optional[str],
        gateway_payload: Dict[str, Any]
    ) -> Payment:
        """
        Record a captured payment we have no pending row for.

        A concurrent delivery of the same webhook loses on the unique order id
        and gets the row the winner wrote.
        """
        payment = Payment(
            payment_number=generate_orphan_payment_number(),
            razorpay_order_id=gateway_order_id,
            razorpay_payment_id=gateway_payment_id,
            amount=amount,
            net_amount=amount,
            currency=currency,
            event_id=event_id,
            payer_name=payer_name,
            payer_email=payer_email,
            payer_phone=payer_phone,
            status=PaymentStatus.COMPLETED.value,
            completed_at=datetime.utcnow(),
            meta=_with_audit(
                None,
                {
                    "is_orphan": True,
                    "needs_reconciliation": True,
                    "created_from_webhook": True,
                    "razorpay_response": gateway_payload,
                },
                "orphan_recorded",
                "webhook",
            ),
        )
        self.session.add(payment)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self.find_by_order_id(gateway_order_id)
            if existing is None:
                raise
            logger.info(f"Orphan payment for order {gateway_order_id} already recorded")
            return existing

        logger.warning(f"Recorded orphan payment {payment.payment_number} for order {gateway_order_id}")
        return payment

    async def _transition(
        self,
        payment: Payment,
        expected: PaymentStatus,
        values: Dict[str, Any],
        extra_metadata: Optional[Dict[str, Any]],
        audit_event: str,
        via: str,
        event_factory: Callable[[Payment], BaseEvent]
    ) -> bool:
        """
        Apply one guarded status change and commit.

        The domain event for the change goes to the outbox in the same commit,
        and only when this call's UPDATE matched the expected prior status.
        """
        payment_id = payment.id
        current = await self.get(payment_id)
        values["meta"] = _with_audit(current.meta, extra_metadata, audit_event, via)

        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        if applied:
            await self.session.refresh(current)
            await save_event_to_outbox(self.session, event_factory(current))
        await self.session.commit()
        await self.session.refresh(current)

        if applied:
            logger.info(f"Payment {payment_id}: {expected.value} -> {values['status']} via {via}")
        else:
            logger.info(
                f"Payment {payment_id}: {audit_event} skipped, status is {current.status}"
            )
        return applied

    async def mark_completed(
        self,
        payment: Payment,
        gateway_payment_id: str,
        extra_metadata: Optional[Dict[str, Any]] = None,
        signature: Optional[str] = None,
        via: str = "verify_api"
    ) -> bool:
        """pending -> completed. True iff this call performed the transition."""
        values = {
            "status": PaymentStatus.COMPLETED.value,
            "razorpay_payment_id": gateway_payment_id,
            "completed_at": datetime.utcnow(),
        }
        if signature:
            values["razorpay_signature"] = signature
        return await self._transition(
            payment, PaymentStatus.PENDING, values, extra_metadata, "completed", via,
            lambda p: PaymentCompletedEvent(
                aggregate_id=p.id,
                correlation_id=p.id,
                payment_id=p.id,
                payment_number=p.payment_number,
                gateway_payment_id=gateway_payment_id,
                amount=p.amount,
                currency=p.currency,
                via=via,
            ),
        )

    async def mark_failed(
        self,
        payment: Payment,
        gateway_payment_id: Optional[str],
        extra_metadata: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None,
        via: str = "webhook"
    ) -> bool:
        """pending -> failed. A completed payment is never failed."""
        values = {
            "status": PaymentStatus.FAILED.value,
            "failed_at": datetime.utcnow(),
        }
        if gateway_payment_id:
            values["razorpay_payment_id"] = gateway_payment_id
        return await self._transition(
            payment, PaymentStatus.PENDING, values, extra_metadata, "failed", via,
            lambda p: PaymentFailedEvent(
                aggregate_id=p.id,
                correlation_id=p.id,
                payment_id=p.id,
                error_code=error_code,
                error_description=error_description,
            ),
        )

    async def mark_refunded(
        self,
        payment: Payment,
        refund_amount: float,
        refund_id: str,
        extra_metadata: Optional[Dict[str, Any]] = None,
        via: str = "webhook"
    ) -> bool:
        """completed -> refunded."""
        values = {
            "status": PaymentStatus.REFUNDED.value,
            "refund_amount": refund_amount,
            "razorpay_refund_id": refund_id,
            "refunded_at": datetime.utcnow(),
        }
        return await self._transition(
            payment, PaymentStatus.COMPLETED, values, extra_metadata, "refunded", via,
            lambda p: PaymentRefundedEvent(
                aggregate_id=p.id,
                correlation_id=p.id,
                payment_id=p.id,
                refund_id=refund_id,
                refund_amount=refund_amount,
            ),
        )

    async def merge_metadata(self, payment: Payment, extra: Dict[str, Any]) -> Payment:
        """Merge keys into the existing metadata without dropping the others."""
        current = await self.get(payment.id)
        merged = dict(current.meta or {})
        merged.update(extra)
        current.meta = merged
        await self.session.commit()
        return current

    async def raise_alert(
        self,
        payment_id: Optional[UUID],
        alert_type: str,
        message: str,
        severity: Optional[str] = None
    ) -> Optional[PaymentAlert]:
        """
        Record a PaymentAlert for an operator. Best effort: failures are logged only.

        Unless given, orphan alerts are high severity and everything else medium.
        """
        severity = severity or ("high" if "orphan" in alert_type else "medium")
        alert = PaymentAlert(
            id=uuid4(),
            payment_id=payment_id,
            alert_type=alert_type,
            message=message,
            severity=severity,
        )
        try:
            self.session.add(alert)
            await save_event_to_outbox(
                self.session,
                PaymentAlertRaisedEvent(
                    aggregate_id=payment_id or alert.id,
                    correlation_id=payment_id or alert.id,
                    alert_type=alert_type,
                    severity=severity,
                    message=message,
                ),
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to record {alert_type} alert: {str(e)}", exc_info=True)
            return None

        logger.warning(f"Payment alert [{severity}] {alert_type}: {message}")
        return alert
