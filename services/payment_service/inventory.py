"""Ticket inventory: exactly-once quantity_sold increments keyed by payment."""
import logging
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import TicketSale, TicketType

logger = logging.getLogger(__name__)


class IncrementResult(str, Enum):
    """Outcome of one increment attempt."""
    INCREMENTED = "incremented"
    ALREADY_PROCESSED = "already_processed"
    FAILED = "failed"
    SKIPPED = "skipped"


class InventoryAccountant:
    """
    Applies a ticket-count increment at most once per (ticket type, payment).

    The primary path records a TicketSale row and bumps quantity_sold in one
    transaction; the unique constraint on the sale row rejects replays. The
    fallback path keeps a bounded list of processed payment ids on the ticket
    type and is only used when the ticket_sales table cannot be used.
    """

    def __init__(self, session: AsyncSession, atomic: bool = True, history_cap: int = 100):
        self.session = session
        self.atomic = atomic
        self.history_cap = history_cap

    async def increment_sold(
        self,
        ticket_type_id: Optional[UUID],
        quantity: int,
        payment_id: UUID
    ) -> IncrementResult:
        """
        Add quantity to the ticket type's sold count, once per payment.

        Args:
            ticket_type_id: Ticket type to increment; None is a no-op
            quantity: Seats sold
            payment_id: Idempotency token

        Returns:
            What happened; never raises for persistence errors
        """
        if not ticket_type_id:
            return IncrementResult.SKIPPED

        if not self.atomic:
            return await self._increment_fallback(ticket_type_id, quantity, payment_id)

        try:
            return await self._increment_atomic(ticket_type_id, quantity, payment_id)
        except (OperationalError, ProgrammingError) as e:
            await self.session.rollback()
            logger.warning(
                f"Atomic ticket increment unavailable ({str(e)}), "
                "falling back to row-locked update"
            )
            return await self._increment_fallback(ticket_type_id, quantity, payment_id)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                f"Ticket increment failed for {ticket_type_id} / payment {payment_id}: {str(e)}",
                exc_info=True
            )
            return IncrementResult.FAILED

    async def _increment_atomic(
        self,
        ticket_type_id: UUID,
        quantity: int,
        payment_id: UUID
    ) -> IncrementResult:
        existing = await self.session.execute(
            select(TicketSale.id).where(
                TicketSale.ticket_type_id == ticket_type_id,
                TicketSale.payment_id == payment_id,
            )
        )
        if existing.first() is not None:
            logger.info(f"Ticket increment already processed for payment {payment_id}")
            return IncrementResult.ALREADY_PROCESSED

        result = await self.session.execute(
            update(TicketType)
            .where(TicketType.id == ticket_type_id)
            .values(quantity_sold=TicketType.quantity_sold + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            logger.warning(f"Ticket type {ticket_type_id} not found, nothing incremented")
            return IncrementResult.FAILED

        self.session.add(
            TicketSale(ticket_type_id=ticket_type_id, payment_id=payment_id, quantity=quantity)
        )
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"Ticket increment already processed for payment {payment_id}")
            return IncrementResult.ALREADY_PROCESSED

        await self.session.commit()
        logger.info(f"Atomically incremented ticket {ticket_type_id} by {quantity}")
        return IncrementResult.INCREMENTED

    async def _increment_fallback(
        self,
        ticket_type_id: UUID,
        quantity: int,
        payment_id: UUID
    ) -> IncrementResult:
        logger.warning(f"Inventory running in degraded mode for ticket {ticket_type_id}")
        token = str(payment_id)
        try:
            result = await self.session.execute(
                select(TicketType)
                .where(TicketType.id == ticket_type_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            ticket = result.scalar_one_or_none()
            if ticket is None:
                await self.session.rollback()
                return IncrementResult.FAILED

            meta = dict(ticket.meta or {})
            processed = list(meta.get("processed_payments") or [])
            if token in processed:
                await self.session.rollback()
                logger.info(f"Fallback: already processed for payment {payment_id}")
                return IncrementResult.ALREADY_PROCESSED

            meta["processed_payments"] = (processed + [token])[-self.history_cap:]
            ticket.quantity_sold = (ticket.quantity_sold or 0) + quantity
            ticket.meta = meta
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Fallback ticket increment failed: {str(e)}", exc_info=True)
            return IncrementResult.FAILED

        logger.info(f"Fallback incremented ticket {ticket_type_id} by {quantity}")
        return IncrementResult.INCREMENTED
