"""Server-side order pricing. Client-supplied amounts are never trusted."""
import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidInput
from .models import Addon, DiscountCode, TicketType

logger = logging.getLogger(__name__)


class PricedTicket(BaseModel):
    """Validated ticket line stored on the payment as validated_tickets."""
    ticket_type_id: str
    name: str
    price: float
    quantity: int
    subtotal: float
    tax: float


class PricedOrder(BaseModel):
    """Authoritative amount for a checkout."""
    amount: float
    subtotal: float = 0
    tax_amount: float = 0
    discount_amount: float = 0
    tickets: List[PricedTicket] = Field(default_factory=list)


def idempotency_key(email: str, amount: float, ticket_ids: List[str]) -> str:
    """Stable key for a checkout: sha256 of email, amount and sorted ticket ids, 32 hex chars."""
    data = f"{email.lower()}-{_format_amount(amount)}-{','.join(sorted(ticket_ids))}"
    return hashlib.sha256(data.encode()).hexdigest()[:32]


def _format_amount(amount: float) -> str:
    # 1180.0 -> "1180", 99.5 -> "99.5"
    return str(int(amount)) if float(amount).is_integer() else str(amount)


def _as_uuid(value: Any) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _quantity(selection: Dict[str, Any]) -> int:
    """Positive integer quantity of a selection line, 1 when absent."""
    quantity = selection.get("quantity")
    if quantity is None:
        return 1
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidInput(f"Invalid quantity: {quantity!r}")
    return quantity


class OrderPricer:
    """Prices tickets, addons, tax and discounts from database rows."""

    def __init__(self, session: AsyncSession, default_tax_percentage: float = 18.0):
        self.session = session
        self.default_tax_percentage = default_tax_percentage

    async def _addons_subtotal(self, addons: Optional[List[Dict[str, Any]]]) -> float:
        """Sum of active addons at server prices; unknown or inactive addons are ignored."""
        if not addons:
            return 0.0
        ids = [_as_uuid(a.get("addonId") or a.get("addon_id")) for a in addons]
        ids = [i for i in ids if i is not None]
        if not ids:
            return 0.0

        result = await self.session.execute(select(Addon).where(Addon.id.in_(ids)))
        by_id = {addon.id: addon for addon in result.scalars().all()}

        subtotal = 0.0
        for selection in addons:
            quantity = _quantity(selection)
            addon = by_id.get(_as_uuid(selection.get("addonId") or selection.get("addon_id")))
            if addon is not None and addon.is_active:
                subtotal += addon.price * quantity
        return subtotal

    async def _discount(self, event_id: Optional[UUID], code: Optional[str], subtotal: float) -> float:
        if not (code and event_id):
            return 0.0

        result = await self.session.execute(
            select(DiscountCode).where(
                DiscountCode.event_id == event_id,
                DiscountCode.code == code.upper(),
                DiscountCode.is_active.is_(True),
            )
        )
        discount = result.scalars().first()
        if discount is None:
            return 0.0

        now = datetime.utcnow()
        in_period = (
            (discount.valid_from is None or now >= discount.valid_from)
            and (discount.valid_until is None or now <= discount.valid_until)
        )
        has_uses_left = not discount.max_uses or (discount.current_uses or 0) < discount.max_uses
        if not (in_period and has_uses_left):
            return 0.0

        if discount.discount_type == "percentage":
            amount = subtotal * discount.discount_value / 100
        else:
            amount = discount.discount_value
        if discount.max_discount_amount and amount > discount.max_discount_amount:
            amount = discount.max_discount_amount
        return amount

    async def price(
        self,
        tickets: Optional[List[Dict[str, Any]]],
        addons: Optional[List[Dict[str, Any]]] = None,
        discount_code: Optional[str] = None,
        event_id: Optional[UUID] = None,
        addon_purchase: bool = False
    ) -> PricedOrder:
        """
        Compute the amount to charge.

        Args:
            tickets: [{ticket_type_id | id, quantity}]
            addons: [{addonId, variantId?, quantity}]
            discount_code: Optional code for the event
            event_id: Event the checkout belongs to
            addon_purchase: Addons for an existing registration, no tickets

        Raises:
            InvalidInput: Missing, unknown, inactive or sold-out tickets, a quantity that
                is not a positive integer, or a non-positive total
        """
        if addon_purchase and not tickets:
            subtotal = await self._addons_subtotal(addons)
            tax = round(subtotal * self.default_tax_percentage / 100)
            return self._checked(PricedOrder(amount=subtotal + tax, subtotal=subtotal, tax_amount=tax))

        if not tickets:
            raise InvalidInput("Tickets are required for payment")

        selections = [
            (_as_uuid(t.get("ticket_type_id") or t.get("id")), _quantity(t)) for t in tickets
        ]
        ids = [ticket_id for ticket_id, _ in selections if ticket_id is not None]
        result = await self.session.execute(select(TicketType).where(TicketType.id.in_(ids)))
        by_id = {ticket.id: ticket for ticket in result.scalars().all()}

        priced: List[PricedTicket] = []
        subtotal = 0.0
        tax = 0.0
        for ticket_id, quantity in selections:
            ticket = by_id.get(ticket_id)
            if ticket is None:
                raise InvalidInput(f"Ticket type not found: {ticket_id}")
            if ticket.status != "active":
                raise InvalidInput(f'Ticket "{ticket.name}" is not available')
            if ticket.quantity_total and (ticket.quantity_sold or 0) + quantity > ticket.quantity_total:
                raise InvalidInput(f'Not enough "{ticket.name}" tickets available')

            line_subtotal = ticket.price * quantity
            line_tax = line_subtotal * (ticket.tax_percentage or 0) / 100
            subtotal += line_subtotal
            tax += line_tax
            priced.append(
                PricedTicket(
                    ticket_type_id=str(ticket.id),
                    name=ticket.name,
                    price=ticket.price,
                    quantity=quantity,
                    subtotal=line_subtotal,
                    tax=line_tax,
                )
            )

        # addons are taxed at the first ticket's rate
        addon_tax_rate = by_id[selections[0][0]].tax_percentage or self.default_tax_percentage
        addons_subtotal = await self._addons_subtotal(addons)
        subtotal += addons_subtotal
        tax += addons_subtotal * addon_tax_rate / 100

        discount = await self._discount(event_id, discount_code, subtotal)
        return self._checked(
            PricedOrder(
                amount=subtotal + tax - discount,
                subtotal=subtotal,
                tax_amount=tax,
                discount_amount=discount,
                tickets=priced,
            )
        )

    @staticmethod
    def _checked(order: PricedOrder) -> PricedOrder:
        if order.amount <= 0:
            raise InvalidInput("Invalid amount")
        return order
