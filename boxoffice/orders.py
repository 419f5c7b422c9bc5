"""
Order creation.

Two implementations of one ``OrderCreator`` interface, deliberately
asymmetric:

* ``AuthenticatedOrderCreator`` commits a PENDING order, then creates the
  payment; if that fails the order is deleted again (best effort).
* ``GuestOrderCreator`` writes order, guest contact and payment row in one
  transaction, so a failure leaves nothing behind to clean up. That
  transaction spans the provider call; on SQLite it holds the database write
  lock meanwhile, so concurrent checkouts queue behind it (up to the
  ``busy_timeout``). Run guest checkout on PostgreSQL in production.

Both run inventory validation and fee pricing before anything is written.
"""
from __future__ import annotations
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Union

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import OrderNotFoundError, ValidationError
from .fees import FeeResult, FeeRuleEngine, FeeSelection
from .helpers import (
    is_valid_email, mask_email, money, new_idempotency_key, normalize_email,
    now_ts, sanitize_phone, sanitize_provider, to_iso,
)
from .infra.sql import Gated
from .infra.timings import timeit
from .inventory import InventoryValidator, ValidatedLineItem
from .model.db import (
    AWAITING_PAYMENT, PENDING, GuestOrder, Order, Ticket,
)
from .payments import (
    CARD, MOBILE_MONEY, PAYMENT_METHODS,
    CardRequest, FXQuote, MobileMoneyRequest, PaymentGateway, PaymentRequest,
    TicketLine,
)


# ----------------------------
# Identity & inputs
# ----------------------------
@dataclass(frozen=True)
class Principal:
    user_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class GuestIdentity:
    email: str
    name: str
    phone: Optional[str] = None


Identity = Union[Principal, GuestIdentity]


@dataclass
class PaymentDetails:
    phone: Optional[str] = None
    provider: Optional[str] = None
    margin_bps: Optional[int] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    fx_quote: Optional[FXQuote] = None  # the quote the buyer was shown


@dataclass
class PricedSelection:
    items: List[ValidatedLineItem]
    fees: FeeResult
    subtotal: Decimal
    total: Decimal
    currency: str

    @property
    def quantities(self) -> Dict[str, int]:
        return {i.ticket_type_id: i.quantity for i in self.items}


@dataclass
class CheckoutResult:
    order_id: str
    payment_token: str
    payment_id: str
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None
    guest_token: Optional[str] = None
    subtotal: Decimal = Decimal("0.00")
    buyer_fees: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    currency: str = "XOF"
    fee_source: str = "rules"
    fx_quote: Optional[dict] = field(default=None)

    def as_dict(self) -> dict:
        out = {
            "order_id": self.order_id,
            "payment_token": self.payment_token,
            "payment_id": self.payment_id,
            "payment_url": self.payment_url,
            "client_secret": self.client_secret,
            "subtotal": self.subtotal,
            "buyer_fees": self.buyer_fees,
            "total": self.total,
            "currency": self.currency,
            "fee_source": self.fee_source,
        }
        if self.guest_token:
            out["guest_token"] = self.guest_token
        if self.fx_quote:
            out["fx_quote"] = self.fx_quote
        return out


# ----------------------------
# Input sanitation (no I/O)
# ----------------------------
def check_payment_method(method) -> str:
    value = (method or "").strip().upper() if isinstance(method, str) else ""
    if value not in PAYMENT_METHODS:
        raise ValidationError(f"payment method {method!r} not allowed",
                              code="payment_method_invalid")
    return value


def sanitize_quantities(raw: Mapping, *, strict: bool,
                        max_quantity: int = 100) -> Dict[str, int]:
    """Zero quantities are dropped, or rejected when ``strict``."""
    if not isinstance(raw, Mapping):
        raise ValidationError("ticket quantities must be a mapping")
    out: Dict[str, int] = {}
    for tt_id, q in raw.items():
        if isinstance(q, bool):
            raise ValidationError("quantity must be an integer",
                                  code="quantity_not_integer")
        if isinstance(q, float) and q.is_integer():
            q = int(q)
        if not isinstance(q, int):
            raise ValidationError("quantity must be an integer",
                                  code="quantity_not_integer")
        if q < 0:
            raise ValidationError("quantity cannot be negative",
                                  code="quantity_negative")
        if q == 0:
            if strict:
                raise ValidationError("quantity must be positive",
                                      code="quantity_not_positive")
            continue
        if q > max_quantity:
            raise ValidationError("quantity too large",
                                  code="quantity_too_large")
        out[str(tt_id)] = q
    if not out:
        raise ValidationError("no tickets selected",
                              code="no_tickets_selected")
    return out


def build_method(method: str, details: PaymentDetails,
                 fallback_phone: Optional[str] = None):
    if method == MOBILE_MONEY:
        phone = sanitize_phone(details.phone) or sanitize_phone(fallback_phone)
        if not phone:
            raise ValidationError("phone number required",
                                  code="phone_required")
        return MobileMoneyRequest(phone=phone,
                                  provider=sanitize_provider(details.provider))
    if method == CARD:
        return CardRequest(margin_bps=details.margin_bps,
                           quote=details.fx_quote)
    raise ValidationError(f"payment method {method!r} not allowed",
                          code="payment_method_invalid")


def ticket_lines(priced: PricedSelection) -> List[TicketLine]:
    return [
        TicketLine(
            ticket_type_id=i.ticket_type_id,
            quantity=i.quantity,
            price_major=i.unit_price,
            currency=i.currency,
            name=i.name,
        )
        for i in priced.items
    ]


# ----------------------------
# Creators
# ----------------------------
class OrderCreator(ABC):
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated, inventory: InventoryValidator,
                 fees: FeeRuleEngine, gateway: PaymentGateway, *,
                 max_quantity: int = 100) -> None:
        self.sessions = sessions
        self.gated = gated
        self.inventory = inventory
        self.fees = fees
        self.gateway = gateway
        self.max_quantity = max_quantity

    @abstractmethod
    async def create(self, identity: Identity, event_id: str,
                     quantities: Mapping, payment_method: str,
                     payment_details: Optional[PaymentDetails] = None
                     ) -> CheckoutResult: ...

    async def price(self, event_id: str,
                    quantities: Mapping[str, int]) -> PricedSelection:
        # inventory first: pricing is only trusted for validated lines
        async with timeit("orders.validate"):
            items = await self.inventory.validate_selections(event_id,
                                                             quantities)
        async with timeit("orders.fees"):
            fees = await self.fees.calculate_fees(event_id, [
                FeeSelection(i.ticket_type_id, i.quantity, i.unit_price)
                for i in items
            ])
        subtotal = money(sum((i.line_total for i in items), Decimal("0")))
        return PricedSelection(
            items=items,
            fees=fees,
            subtotal=subtotal,
            total=money(subtotal + fees.total_buyer_fees),
            currency=items[0].currency,
        )

    def new_order(self, event_id: str, priced: PricedSelection,
                  method: str, user_id: Optional[str]) -> Order:
        ts = now_ts()
        return Order(
            id=uuid.uuid4().hex,
            user_id=user_id,
            event_id=event_id,
            status=PENDING,
            subtotal=priced.subtotal,
            buyer_fees=priced.fees.total_buyer_fees,
            organizer_fees=priced.fees.total_organizer_fees,
            total=priced.total,
            currency=priced.currency,
            fee_source=priced.fees.source,
            payment_method=method,
            ticket_quantities=priced.quantities,
            created_at=ts,
            updated_at=ts,
        )


class AuthenticatedOrderCreator(OrderCreator):

    async def create(self, identity, event_id, quantities, payment_method,
                     payment_details=None):
        return await self.create_order(identity, event_id, quantities,
                                       payment_method, payment_details)

    async def create_order(self, identity: Principal, event_id: str,
                           quantities: Mapping, payment_method: str,
                           payment_details: Optional[PaymentDetails] = None
                           ) -> CheckoutResult:
        if not isinstance(identity, Principal) or not identity.user_id:
            raise ValidationError("not authenticated",
                                  code="not_authenticated")
        details = payment_details or PaymentDetails()
        method = check_payment_method(payment_method)
        qty = sanitize_quantities(quantities, strict=False,
                                  max_quantity=self.max_quantity)
        method_req = build_method(method, details)

        priced = await self.price(event_id, qty)
        order = self.new_order(event_id, priced, method, identity.user_id)

        async with self.sessions() as db:
            async with timeit("orders.insert"):
                async with self.gated():
                    db.add(order)
                    await db.commit()

            request = PaymentRequest(
                idempotency_key=new_idempotency_key(),
                event_id=event_id,
                ticket_lines=ticket_lines(priced),
                amount_major=priced.total,
                currency=priced.currency,
                method=method_req,
                order_id=order.id,
                user_id=identity.user_id,
                customer_email=normalize_email(identity.email),
                description=f"Order {order.id}",
                return_url=details.return_url,
                cancel_url=details.cancel_url,
            )
            try:
                payment = await self.gateway.create(request)
            except Exception as e:
                await self._compensate(db, order.id, e)
                raise

            try:
                await self._await_payment(db, order.id)
            except SQLAlchemyError as e:
                # the payment is live; verification settles PENDING orders
                await db.rollback()
                logger.error("ORDER LEFT PENDING {}: payment {} is live but "
                             "the status update failed ({})", order.id,
                             payment.payment_id, e)
            else:
                logger.info("order {} awaiting payment ({} {}, {})",
                            order.id, priced.total, priced.currency, method)

        return CheckoutResult(
            order_id=order.id,
            payment_token=payment.payment_token,
            payment_id=payment.payment_id,
            payment_url=payment.payment_url,
            client_secret=payment.client_secret,
            subtotal=priced.subtotal,
            buyer_fees=priced.fees.total_buyer_fees,
            total=priced.total,
            currency=priced.currency,
            fee_source=priced.fees.source,
            fx_quote=payment.fx_quote.as_dict() if payment.fx_quote else None,
        )

    async def _await_payment(self, db: AsyncSession, order_id: str) -> None:
        async with self.gated():
            await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == PENDING)
                .values(status=AWAITING_PAYMENT, updated_at=now_ts())
            )
            await db.commit()

    async def _compensate(self, db: AsyncSession, order_id: str,
                          cause: Exception) -> None:
        try:
            await db.rollback()
            async with self.gated():
                await db.execute(delete(Order).where(
                    Order.id == order_id, Order.status == PENDING
                ))
                await db.commit()
            logger.info("order {} removed after payment failure: {}",
                        order_id, cause)
        except SQLAlchemyError as e:
            # the stale-order sweep cancels it later
            logger.error("ORPHANED PENDING ORDER {}: delete failed ({}) "
                         "after payment failure ({})", order_id, e, cause)


class GuestOrderCreator(OrderCreator):

    async def create(self, identity, event_id, quantities, payment_method,
                     payment_details=None):
        return await self.create_guest_order(identity, event_id, quantities,
                                             payment_method, payment_details)

    async def create_guest_order(
        self, guest: GuestIdentity, event_id: str, quantities: Mapping,
        payment_method: str, payment_details: Optional[PaymentDetails] = None,
    ) -> CheckoutResult:
        raw_email = (guest.email or "").strip()
        if not raw_email:
            raise ValidationError("email required", code="email_required")
        if not is_valid_email(raw_email):
            raise ValidationError("invalid email", code="email_invalid")
        name = (guest.name or "").strip()
        if not name:
            raise ValidationError("name required", code="name_required")
        email = normalize_email(raw_email)
        phone = sanitize_phone(guest.phone)

        details = payment_details or PaymentDetails()
        method = check_payment_method(payment_method)
        qty = sanitize_quantities(quantities, strict=True,
                                  max_quantity=self.max_quantity)
        method_req = build_method(method, details, fallback_phone=phone)

        priced = await self.price(event_id, qty)
        order = self.new_order(event_id, priced, method, None)
        guest_token = uuid.uuid4().hex

        async with self.sessions() as db:
            async with timeit("orders.guest_tx"):
                async with db.begin():
                    async with self.gated():
                        db.add(order)
                        db.add(GuestOrder(order_id=order.id,
                                          token=guest_token, email=email,
                                          name=name, phone=phone))
                        await db.flush()
                    request = PaymentRequest(
                        idempotency_key=new_idempotency_key(),
                        event_id=event_id,
                        ticket_lines=ticket_lines(priced),
                        amount_major=priced.total,
                        currency=priced.currency,
                        method=method_req,
                        order_id=order.id,
                        customer_email=email,
                        customer_name=name,
                        description=f"Order {order.id}",
                        return_url=details.return_url,
                        cancel_url=details.cancel_url,
                    )
                    # leaving the block on error rolls everything back
                    payment = await self.gateway.create(request, db=db)
                    order.status = AWAITING_PAYMENT
                    order.updated_at = now_ts()

        logger.info("guest order {} awaiting payment ({} {}, {})", order.id,
                    priced.total, priced.currency, mask_email(email))
        return CheckoutResult(
            order_id=order.id,
            payment_token=payment.payment_token,
            payment_id=payment.payment_id,
            payment_url=payment.payment_url,
            client_secret=payment.client_secret,
            guest_token=guest_token,
            subtotal=priced.subtotal,
            buyer_fees=priced.fees.total_buyer_fees,
            total=priced.total,
            currency=priced.currency,
            fee_source=priced.fees.source,
            fx_quote=payment.fx_quote.as_dict() if payment.fx_quote else None,
        )

    async def verify_guest_order(self, token: str) -> dict:
        async with self.sessions() as db:
            async with self.gated():
                row = (await db.execute(
                    select(GuestOrder, Order)
                    .join(Order, Order.id == GuestOrder.order_id)
                    .where(GuestOrder.token == token)
                )).first()
        if row is None:
            raise OrderNotFoundError("guest order not found",
                                     code="guest_order_not_found")
        guest, order = row
        out = order_view(order)
        out["email"] = mask_email(guest.email)
        out["name"] = guest.name
        return out

    async def get_guest_tickets(self, token: str) -> List[dict]:
        async with self.sessions() as db:
            async with self.gated():
                guest = (await db.execute(
                    select(GuestOrder).where(GuestOrder.token == token)
                )).scalars().first()
                if guest is None:
                    raise OrderNotFoundError("guest order not found",
                                             code="guest_order_not_found")
                tickets = (await db.execute(
                    select(Ticket)
                    .where(Ticket.order_id == guest.order_id)
                    .order_by(Ticket.ticket_type_id, Ticket.code)
                )).scalars().all()
        return [ticket_view(t) for t in tickets]


# ----------------------------
# Read side
# ----------------------------
def order_view(order: Order) -> dict:
    return {
        "order_id": order.id,
        "event_id": order.event_id,
        "status": order.status,
        "subtotal": order.subtotal,
        "buyer_fees": order.buyer_fees,
        "total": order.total,
        "currency": order.currency,
        "payment_method": order.payment_method,
        "ticket_quantities": order.ticket_quantities,
        "created_at": to_iso(order.created_at),
        "completed_at": to_iso(order.completed_at),
    }


def ticket_view(t: Ticket) -> dict:
    return {
        "code": t.code,
        "ticket_type_id": t.ticket_type_id,
        "event_id": t.event_id,
        "issued_at": to_iso(t.issued_at),
    }


async def load_order(sessions: async_sessionmaker[AsyncSession],
                     gated: Gated, order_id: str,
                     user_id: Optional[str] = None) -> dict:
    """With ``user_id``, orders of other buyers read as missing."""
    async with sessions() as db:
        async with gated():
            order = await db.get(Order, order_id)
            if order is None or (user_id is not None
                                 and order.user_id != user_id):
                raise OrderNotFoundError(f"order {order_id} not found")
            tickets = (await db.execute(
                select(Ticket).where(Ticket.order_id == order_id)
                .order_by(Ticket.code)
            )).scalars().all()
    out = order_view(order)
    out["tickets"] = [ticket_view(t) for t in tickets]
    return out
