"""Reconciliation sweep: finds paid-but-unregistered, duplicate and stale payments."""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings

from .errors import InvalidInput
from .models import Payment, PaymentStatus, PaymentType, Registration
from .registrations import RegistrationMaterializer

logger = logging.getLogger(__name__)


class ReconciliationSummary(BaseModel):
    orphaned_payments: int = 0
    auto_registrations_created: int = 0
    duplicate_payments_flagged: int = 0
    stale_pending_payments: int = 0


class ReconciliationReport(BaseModel):
    """Findings of one sweep."""
    lookback_hours: float
    fix_mode: bool
    summary: ReconciliationSummary = Field(default_factory=ReconciliationSummary)
    details: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ReconciliationSweep:
    """
    Read-mostly audit of recent payments.

    Only orphaned payments are ever acted on, and only in fix mode, by adding a
    pending registration flagged for admin review. Payment rows are never
    written here.
    """

    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.settings = settings
        self.materializer = RegistrationMaterializer(session, settings)

    async def run(self, hours: float = 24, fix: bool = False) -> ReconciliationReport:
        """
        Sweep payments created within the last `hours`.

        Args:
            hours: Lookback window
            fix: Create review registrations for orphaned payments
        """
        report = ReconciliationReport(lookback_hours=hours, fix_mode=fix)
        since = datetime.utcnow() - timedelta(hours=hours)

        logger.info(f"Reconciliation started (hours={hours}, fix={fix})")
        await self._check_orphans(report, since, fix)
        await self._check_duplicates(report, since)
        await self._check_stale(report, since)
        logger.info(f"Reconciliation completed: {report.summary.model_dump()}")
        return report

    async def _covered_payment_ids(self, payments: List[Payment]) -> set:
        """Payments that some registration accounts for."""
        ids = [p.id for p in payments]
        if not ids:
            return set()
        result = await self.session.execute(
            select(Registration.payment_id).where(Registration.payment_id.in_(ids))
        )
        covered = set(result.scalars().all())

        # addon purchases are covered by the registration they were bought for
        targets: Dict[UUID, UUID] = {}
        for payment in payments:
            if payment.id in covered or payment.payment_type != PaymentType.ADDON_PURCHASE.value:
                continue
            try:
                targets[payment.id] = UUID(str((payment.meta or {}).get("registration_id")))
            except ValueError:
                continue
        if targets:
            result = await self.session.execute(
                select(Registration.id).where(Registration.id.in_(list(targets.values())))
            )
            existing = set(result.scalars().all())
            covered.update(pid for pid, rid in targets.items() if rid in existing)
        return covered

    async def _check_orphans(self, report: ReconciliationReport, since: datetime, fix: bool):
        try:
            result = await self.session.execute(
                select(Payment)
                .where(Payment.status == PaymentStatus.COMPLETED.value, Payment.created_at >= since)
                .order_by(Payment.created_at.desc())
            )
            payments = list(result.scalars().all())
            covered = await self._covered_payment_ids(payments)
        except Exception as e:
            await self.session.rollback()
            logger.error(f"Failed to fetch payments: {str(e)}", exc_info=True)
            report.errors.append(f"Failed to fetch payments: {str(e)}")
            return

        orphans: List[Tuple[UUID, str]] = []
        for payment in payments:
            if payment.id in covered:
                continue
            report.summary.orphaned_payments += 1
            report.details.append({
                "type": "orphaned_payment",
                "payment_id": str(payment.id),
                "payment_number": payment.payment_number,
                "email": payment.payer_email,
                "amount": payment.amount,
                "created_at": _iso(payment.created_at),
            })
            orphans.append((payment.id, payment.payment_number))

        if not fix:
            return

        for payment_id, payment_number in orphans:
            try:
                payment = await self.session.get(Payment, payment_id, populate_existing=True)
                registration = await self.materializer.create_for_review(payment)
                if registration is not None:
                    report.summary.auto_registrations_created += 1
            except InvalidInput as e:
                logger.warning(f"Cannot create registration for {payment_number}: {e.message}")
                report.errors.append(f"Cannot create registration for {payment_number}: {e.message}")
            except Exception as e:
                await self.session.rollback()
                logger.error(f"Failed to create registration for {payment_number}: {str(e)}", exc_info=True)
                report.errors.append(f"Failed to create registration for {payment_number}: {str(e)}")

    async def _check_duplicates(self, report: ReconciliationReport, since: datetime):
        result = await self.session.execute(
            select(Payment)
            .where(
                Payment.status.in_([PaymentStatus.COMPLETED.value, PaymentStatus.PENDING.value]),
                Payment.created_at >= since,
            )
            .order_by(Payment.created_at)
        )
        groups: Dict[Tuple[str, float], List[Payment]] = defaultdict(list)
        for payment in result.scalars().all():
            groups[((payment.payer_email or "").lower(), payment.amount)].append(payment)

        window = timedelta(minutes=self.settings.duplicate_window_minutes)
        for payments in groups.values():
            for previous, current in zip(payments, payments[1:]):
                gap = current.created_at - previous.created_at
                if gap < window:
                    report.summary.duplicate_payments_flagged += 1
                    report.details.append({
                        "type": "potential_duplicate",
                        "payment_1": previous.payment_number,
                        "payment_2": current.payment_number,
                        "email": current.payer_email,
                        "amount": current.amount,
                        "time_diff_seconds": round(gap.total_seconds()),
                    })

    async def _check_stale(self, report: ReconciliationReport, since: datetime):
        now = datetime.utcnow()
        cutoff = now - timedelta(minutes=self.settings.stale_pending_minutes)
        result = await self.session.execute(
            select(Payment).where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < cutoff,
                Payment.created_at >= since,
            )
        )
        stale = list(result.scalars().all())
        report.summary.stale_pending_payments = len(stale)
        for payment in stale:
            report.details.append({
                "type": "stale_pending",
                "payment_id": str(payment.id),
                "payment_number": payment.payment_number,
                "email": payment.payer_email,
                "amount": payment.amount,
                "created_at": _iso(payment.created_at),
                "age_minutes": round((now - payment.created_at).total_seconds() / 60),
            })
