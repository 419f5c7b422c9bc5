from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import InventoryError, ValidationError
from .helpers import is_valid_id, money
from .infra.sql import Gated
from .infra.timings import timeit
from .model.db import Event, TicketType


@dataclass(frozen=True)
class ValidatedLineItem:
    ticket_type_id: str
    name: str
    quantity: int
    unit_price: Decimal
    currency: str

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


def _paused(tt: TicketType) -> bool:
    return (not tt.sales_enabled) or tt.status == "PAUSED"


class InventoryValidator:
    """Read-only availability check. Validation is not a hold: stock is
    only decremented when a payment settles."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def validate_selections(
        self, event_id: str, quantities: Mapping[str, int]
    ) -> List[ValidatedLineItem]:
        if not is_valid_id(event_id):
            raise ValidationError("event id required", code="event_required")
        wanted = {k: q for k, q in quantities.items() if q}
        if not wanted:
            raise ValidationError("no tickets selected",
                                  code="no_tickets_selected")

        async with timeit("inventory.read"):
            async with self.sessions() as db:
                async with self.gated():
                    event = await db.get(Event, event_id)
                    rows = (await db.execute(
                        select(TicketType).where(
                            TicketType.id.in_(list(wanted))
                        )
                    )).scalars().all()

        if event is None:
            raise ValidationError(f"event {event_id} not found",
                                  code="event_not_found")
        if event.status != "PUBLISHED":
            raise ValidationError(f"event {event_id} is {event.status}",
                                  code="event_unavailable")

        by_id: Dict[str, TicketType] = {tt.id: tt for tt in rows}
        missing = [k for k in wanted if k not in by_id]
        if missing:
            raise ValidationError(
                f"unknown ticket types: {', '.join(sorted(missing))}",
                code="ticket_type_not_found",
            )

        items: List[ValidatedLineItem] = []
        for tt_id, qty in wanted.items():
            tt = by_id[tt_id]
            if tt.event_id != event_id:
                raise InventoryError(
                    f"ticket type {tt_id} belongs to another event",
                    ticket_type_id=tt_id, reason="wrong_event",
                )
            if _paused(tt):
                raise InventoryError(
                    f"sales paused for {tt_id}",
                    ticket_type_id=tt_id, reason="paused",
                )
            if qty > tt.available:
                raise InventoryError(
                    f"only {tt.available} left for {tt_id}, wanted {qty}",
                    ticket_type_id=tt_id, reason="insufficient",
                    available=tt.available,
                )
            if tt.max_per_order is not None and qty > tt.max_per_order:
                raise InventoryError(
                    f"at most {tt.max_per_order} of {tt_id} per order",
                    ticket_type_id=tt_id, reason="over_limit",
                    max_per_order=tt.max_per_order,
                )
            try:
                price = Decimal(str(tt.price))
            except InvalidOperation:
                price = Decimal("NaN")
            if not price.is_finite() or price < 0:
                raise InventoryError(
                    f"invalid price for {tt_id}",
                    ticket_type_id=tt_id, reason="bad_price",
                )
            items.append(ValidatedLineItem(
                ticket_type_id=tt_id,
                name=tt.name,
                quantity=qty,
                unit_price=price,
                currency=event.currency,
            ))

        total = sum((i.line_total for i in items), Decimal("0"))
        if total <= 0:
            raise ValidationError("order total must be positive",
                                  code="amount_invalid")
        return items

    async def inventory_view(self, event_id: str) -> List[dict]:
        async with self.sessions() as db:
            async with self.gated():
                rows = (await db.execute(
                    select(TicketType)
                    .where(TicketType.event_id == event_id)
                    .order_by(TicketType.name)
                )).scalars().all()
        return [
            {
                "ticket_type_id": tt.id,
                "name": tt.name,
                "price": tt.price,
                "available": tt.available,
                "sales_enabled": bool(tt.sales_enabled) and not _paused(tt),
                "sold_out": tt.available <= 0 or tt.status == "SOLD_OUT",
            }
            for tt in rows
        ]
