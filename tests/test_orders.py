from __future__ import annotations

from decimal import Decimal

import pytest
from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from boxoffice.errors import (
    InventoryError, OrderNotFoundError, PaymentProviderError, ValidationError,
)
from boxoffice.model.db import (
    AWAITING_PAYMENT, PENDING, GuestOrder, P_FAILED, P_PENDING,
)
from boxoffice.orders import (
    GuestIdentity, PaymentDetails, Principal, load_order,
    sanitize_quantities,
)
from boxoffice.payments import CARD, MOBILE_MONEY, MobileMoneyRequest

from .conftest import EVENT_ID, STD, VIP, RecordingProvider, transient_error

BUYER = Principal(user_id="user-1", email=" Buyer@Example.com ")
GUEST = GuestIdentity(email="guest@example.com", name="Awa Diop",
                      phone="77 123 45 67")


def both(provider) -> dict:
    return {MOBILE_MONEY: provider, CARD: provider}


# ----------------------------
# authenticated
# ----------------------------
def test_mobile_money_order_end_to_end(run):
    provider = RecordingProvider()

    async def scenario(env):
        result = await env.auth_orders.create_order(
            BUYER, EVENT_ID, {STD: 2}, "MOBILE_MONEY",
            PaymentDetails(phone=" +221 77 123 45 67 ", provider=" Orange "),
        )
        return result, await env.orders(), await env.payments()

    result, orders, payments = run(scenario, both(provider))

    assert result.subtotal == Decimal("10000.00")
    assert result.buyer_fees == Decimal("200.00")
    assert result.total == Decimal("10200.00")
    assert result.currency == "XOF"
    assert result.payment_url == "https://pay.example/1"

    [request] = provider.requests
    assert request.amount_major == Decimal("10200.00")
    assert isinstance(request.method, MobileMoneyRequest)
    assert request.method.phone == "+221771234567"
    assert request.method.provider == "orange"
    assert request.customer_email == "buyer@example.com"
    assert len(request.ticket_lines) == 1
    assert request.ticket_lines[0].quantity == 2
    assert request.idempotency_key.startswith("payment-")

    [order] = orders
    assert order.id == result.order_id
    assert order.status == AWAITING_PAYMENT
    assert order.user_id == "user-1"
    assert order.ticket_quantities == {STD: 2}
    [payment] = payments
    assert payment.status == P_PENDING
    assert payment.token == result.payment_token


def test_insufficient_stock_creates_nothing(run):
    provider = RecordingProvider()

    async def scenario(env):
        with pytest.raises(InventoryError) as exc:
            await env.auth_orders.create_order(
                BUYER, EVENT_ID, {STD: 11}, "CARD"
            )
        return exc.value, await env.orders()

    err, orders = run(scenario, both(provider))
    assert err.reason == "insufficient"
    assert orders == []
    assert provider.requests == []


def test_unknown_payment_method_rejected_before_io(run):
    provider = RecordingProvider()

    async def scenario(env):
        with pytest.raises(ValidationError) as exc:
            await env.auth_orders.create_order(
                BUYER, EVENT_ID, {STD: 1}, "CASH"
            )
        return exc.value, await env.orders()

    err, orders = run(scenario, both(provider))
    assert err.code == "payment_method_invalid"
    assert orders == []
    assert provider.requests == []


def test_missing_identity(run):
    async def scenario(env):
        with pytest.raises(ValidationError) as exc:
            await env.auth_orders.create_order(None, EVENT_ID, {STD: 1},
                                               "CARD")
        return exc.value
    assert run(scenario).code == "not_authenticated"


def test_mobile_money_requires_phone(run):
    provider = RecordingProvider()

    async def scenario(env):
        with pytest.raises(ValidationError) as exc:
            await env.auth_orders.create_order(
                BUYER, EVENT_ID, {STD: 1}, "MOBILE_MONEY",
                PaymentDetails(phone="  "),
            )
        return exc.value, await env.orders()

    err, orders = run(scenario, both(provider))
    assert err.code == "phone_required"
    assert orders == []


def test_provider_rejection_removes_pending_order(run):
    provider = RecordingProvider(fail=PaymentProviderError(
        "declined", provider="recording", provider_message="card declined"
    ))

    async def scenario(env):
        with pytest.raises(PaymentProviderError):
            await env.auth_orders.create_order(BUYER, EVENT_ID, {VIP: 1},
                                               "CARD")
        return await env.orders(), await env.payments()

    orders, payments = run(scenario, both(provider))
    assert orders == []
    [payment] = payments
    assert payment.status == P_FAILED
    assert "card declined" in payment.error_message


def test_transient_provider_error_removes_pending_order(run):
    provider = RecordingProvider(fail=transient_error())

    async def scenario(env):
        with pytest.raises(PaymentProviderError) as exc:
            await env.auth_orders.create_order(BUYER, EVENT_ID, {STD: 1},
                                               "CARD")
        return exc.value, await env.orders()

    err, orders = run(scenario, both(provider))
    assert err.transient is True
    assert orders == []


def test_lost_status_update_keeps_live_payment(run):
    provider = RecordingProvider()

    async def scenario(env):
        async def lost_update(db, order_id):
            raise OperationalError("UPDATE orders", {},
                                   Exception("database is locked"))
        env.auth_orders._await_payment = lost_update
        result = await env.auth_orders.create_order(BUYER, EVENT_ID,
                                                    {STD: 1}, "CARD")
        return result, await env.orders(), await env.payments()

    messages = []
    sink = logger.add(lambda m: messages.append(str(m)), level="ERROR")
    try:
        result, orders, payments = run(scenario, both(provider))
    finally:
        logger.remove(sink)
    [order] = orders
    [payment] = payments
    assert result.payment_url == "https://pay.example/1"
    assert order.status == PENDING
    assert payment.status == P_PENDING
    assert any("ORDER LEFT PENDING" in m and order.id in m
               and payment.id in m for m in messages)


def test_load_order_unknown(run):
    async def scenario(env):
        return await load_order(env.sessions, env.gated, "nope")
    with pytest.raises(OrderNotFoundError):
        run(scenario)


def test_load_order_scoped_to_buyer(run):
    async def scenario(env):
        result = await env.auth_orders.create_order(BUYER, EVENT_ID,
                                                    {STD: 1}, "CARD")
        mine = await load_order(env.sessions, env.gated, result.order_id,
                                user_id="user-1")
        with pytest.raises(OrderNotFoundError):
            await load_order(env.sessions, env.gated, result.order_id,
                             user_id="user-2")
        return result, mine

    result, mine = run(scenario)
    assert mine["order_id"] == result.order_id


# ----------------------------
# guest
# ----------------------------
def test_guest_zero_quantity_rejected_before_persistence(run):
    provider = RecordingProvider()

    async def scenario(env):
        with pytest.raises(ValidationError) as exc:
            await env.guest_orders.create_guest_order(
                GUEST, EVENT_ID, {STD: 0}, "CARD"
            )
        return exc.value, await env.orders()

    err, orders = run(scenario, both(provider))
    assert err.code == "quantity_not_positive"
    assert orders == []
    assert provider.requests == []


@pytest.mark.parametrize("guest,code", [
    (GuestIdentity(email="", name="A"), "email_required"),
    (GuestIdentity(email="not-an-email", name="A"), "email_invalid"),
    (GuestIdentity(email="a@example.com", name="  "), "name_required"),
])
def test_guest_identity_checks(run, guest, code):
    async def scenario(env):
        with pytest.raises(ValidationError) as exc:
            await env.guest_orders.create_guest_order(
                guest, EVENT_ID, {STD: 1}, "CARD"
            )
        return exc.value
    assert run(scenario).code == code


def test_guest_order_and_lookup(run):
    async def scenario(env):
        result = await env.guest_orders.create_guest_order(
            GUEST, EVENT_ID, {STD: 1, VIP: 1}, "MOBILE_MONEY"
        )
        status = await env.guest_orders.verify_guest_order(
            result.guest_token
        )
        tickets = await env.guest_orders.get_guest_tickets(
            result.guest_token
        )
        return result, status, tickets, await env.payments()

    result, status, tickets, payments = run(scenario)
    assert result.total == Decimal("25500.00")
    assert status["status"] == AWAITING_PAYMENT
    assert status["order_id"] == result.order_id
    assert status["email"] == "gue***@***"
    assert tickets == []
    [payment] = payments
    assert payment.customer_phone == "771234567"
    assert payment.order_id == result.order_id


def test_guest_provider_failure_leaves_nothing(run):
    provider = RecordingProvider(fail=PaymentProviderError(
        "rejected", provider="recording"
    ))

    async def scenario(env):
        with pytest.raises(PaymentProviderError):
            await env.guest_orders.create_guest_order(
                GUEST, EVENT_ID, {STD: 1}, "CARD"
            )
        async with env.sessions() as db:
            guests = (await db.execute(select(GuestOrder))).scalars().all()
        return await env.orders(), await env.payments(), guests

    orders, payments, guests = run(scenario, both(provider))
    assert orders == []
    assert payments == []
    assert guests == []


def test_guest_unknown_token(run):
    async def scenario(env):
        await env.guest_orders.verify_guest_order("missing")
    with pytest.raises(OrderNotFoundError) as exc:
        run(scenario)
    assert exc.value.code == "guest_order_not_found"


# ----------------------------
# sanitation
# ----------------------------
def test_sanitize_quantities_lenient_and_strict():
    assert sanitize_quantities({STD: 2.0, VIP: 0}, strict=False) == {STD: 2}
    with pytest.raises(ValidationError) as exc:
        sanitize_quantities({STD: 2, VIP: 0}, strict=True)
    assert exc.value.code == "quantity_not_positive"


@pytest.mark.parametrize("raw,code", [
    ({STD: "2"}, "quantity_not_integer"),
    ({STD: 1.5}, "quantity_not_integer"),
    ({STD: True}, "quantity_not_integer"),
    ({STD: -1}, "quantity_negative"),
    ({STD: 101}, "quantity_too_large"),
    ({STD: 0}, "no_tickets_selected"),
])
def test_sanitize_quantities_rejects(raw, code):
    with pytest.raises(ValidationError) as exc:
        sanitize_quantities(raw, strict=False, max_quantity=100)
    assert exc.value.code == code
