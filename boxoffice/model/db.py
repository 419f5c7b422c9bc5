from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)


Base = declarative_base()

# Order status
PENDING = "PENDING"
AWAITING_PAYMENT = "AWAITING_PAYMENT"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
TERMINAL_ORDER_STATES = (COMPLETED, CANCELLED)

# Payment status
P_INITIATED = "initiated"   # row exists, provider outcome unknown
P_PENDING = "pending"       # provider accepted, buyer has not paid yet
P_COMPLETED = "completed"
P_FAILED = "failed"
P_CANCELLED = "cancelled"
P_REFUND_DUE = "refund_due"  # paid after the order was closed
TERMINAL_PAYMENT_STATES = (P_COMPLETED, P_FAILED, P_CANCELLED, P_REFUND_DUE)


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    currency = Column(String, nullable=False, default="XOF")
    # DRAFT | PUBLISHED | CANCELLED
    status = Column(String, nullable=False, default="PUBLISHED")


class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_ticket_types_available"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(14, 2), nullable=False)  # major units
    available = Column(Integer, nullable=False, default=0)
    max_per_order = Column(Integer, nullable=True)  # NULL = unbounded
    sales_enabled = Column(Boolean, nullable=False, default=True)
    # ACTIVE | PAUSED | SOLD_OUT
    status = Column(String, nullable=False, default="ACTIVE")


class ServiceFeeRule(Base):
    __tablename__ = "service_fee_rules"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="Service Fee")
    # TICKET_TYPE | EVENT | GLOBAL
    scope = Column(String, nullable=False)
    event_id = Column(String, nullable=True, index=True)
    ticket_type_id = Column(String, nullable=True, index=True)
    # PERCENTAGE (fee_value is a rate, 0.02 = 2%) | FIXED (per ticket)
    fee_type = Column(String, nullable=False)
    fee_value = Column(Numeric(14, 4), nullable=False)
    minimum_fee = Column(Numeric(14, 2), nullable=True)
    maximum_fee = Column(Numeric(14, 2), nullable=True)
    # BUYER | ORGANIZER | SPLIT
    applies_to = Column(String, nullable=False, default="BUYER")
    priority = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True, index=True)  # NULL for guests
    event_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=PENDING)
    subtotal = Column(Numeric(14, 2), nullable=False)
    buyer_fees = Column(Numeric(14, 2), nullable=False, default=0)
    organizer_fees = Column(Numeric(14, 2), nullable=False, default=0)
    total = Column(Numeric(14, 2), nullable=False)
    currency = Column(String, nullable=False, default="XOF")
    # "rules" | "fallback_rules" | "default"
    fee_source = Column(String, nullable=False, default="rules")
    payment_method = Column(String, nullable=False)
    ticket_quantities = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)


class GuestOrder(Base):
    __tablename__ = "guest_orders"
    order_id = Column(String, primary_key=True)
    token = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=True, index=True)
    event_id = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    token = Column(String, nullable=False, unique=True)  # internal, uuid
    method = Column(String, nullable=False)  # MOBILE_MONEY | CARD
    provider = Column(String, nullable=False)
    provider_token = Column(String, nullable=True, unique=True)
    provider_payment_id = Column(String, nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)  # major units
    currency = Column(String, nullable=False)
    charge_amount_minor = Column(Integer, nullable=True)
    charge_currency = Column(String, nullable=True)
    fx_num = Column(Integer, nullable=True)
    fx_den = Column(Integer, nullable=True)
    fx_locked_at = Column(Float, nullable=True)
    fx_margin_bps = Column(Integer, nullable=True)
    fx_mode = Column(String, nullable=True)  # "locked" | "auto"
    status = Column(String, nullable=False, default=P_INITIATED)
    payment_url = Column(String, nullable=True)
    client_secret = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)


class Settlement(Base):
    """One row per settled order: the exactly-once gate for decrements."""
    __tablename__ = "settlements"
    order_id = Column(String, primary_key=True)
    payment_id = Column(String, nullable=False, unique=True)
    settled_at = Column(Float, nullable=False)
    # {ticket_type_id: missing_qty} when inventory ran out before settlement
    shortfall = Column(JSON, nullable=True)
    # NULL until the order confirmation has been delivered
    notified_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    code = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False)
    ticket_type_id = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    issued_at = Column(Float, nullable=False)


class SavedPaymentMethod(Base):
    __tablename__ = "saved_payment_methods"
    __table_args__ = (
        UniqueConstraint("user_id", "method_type", "provider",
                         "account_label", name="uq_saved_method"),
    )
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    method_type = Column(String, nullable=False)  # mobile_money | credit_card
    provider = Column(String, nullable=False)
    account_label = Column(String, nullable=False)  # masked, never full
    account_name = Column(String, nullable=False, default="")
    created_at = Column(Float, nullable=False)


class FxRate(Base):
    __tablename__ = "fx_rates"
    id = Column(Integer, primary_key=True, autoincrement=True)
    from_currency = Column(String, nullable=False)
    to_currency = Column(String, nullable=False)
    rate = Column(Numeric(14, 4), nullable=False)  # to per 1 from
    source = Column(String, nullable=False, default="manual")
    valid_from = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class CartEntry(Base):
    __tablename__ = "carts"
    owner = Column(String, primary_key=True)
    event_id = Column(String, primary_key=True)
    selections = Column(JSON, nullable=False)
    updated_at = Column(Float, nullable=False)


async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
