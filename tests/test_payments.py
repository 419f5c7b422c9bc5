from __future__ import annotations

import asyncio
import json
import time
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from boxoffice.errors import (
    ConfigurationError, PaymentNotFoundError, PaymentProviderError,
    ValidationError,
)
from boxoffice.model.db import FxRate, P_FAILED, P_INITIATED, P_PENDING
from boxoffice.orders import (
    AuthenticatedOrderCreator, PaymentDetails, Principal,
)
from boxoffice.payments import (
    CARD, MOBILE_MONEY, CardProvider, CardRequest, FxQuoteService, MockPay,
    MobileMoneyProvider, MobileMoneyRequest, PaymentGateway, PaymentRequest,
    TicketLine,
)
from boxoffice.payments.base import CANCELED, PENDING, SUCCEEDED
from boxoffice.payments.fx import build_quote, quote_from_client
from boxoffice.payments._card import sign_payload, verify_signature
from boxoffice.payments.gateway import validate_request

from .conftest import EVENT_ID, STD, RecordingProvider, transient_error


def payment_request(key="payment-key-1", amount="10200", method=None,
                    currency="XOF") -> PaymentRequest:
    return PaymentRequest(
        idempotency_key=key,
        event_id=EVENT_ID,
        ticket_lines=[TicketLine(STD, 2, Decimal("5000"), currency,
                                 "Standard")],
        amount_major=Decimal(amount),
        currency=currency,
        method=method or MobileMoneyRequest(phone="+221771234567",
                                            provider="orange"),
        order_id="ord-1",
        customer_email="buyer@example.com",
        customer_name="Awa Diop",
    )


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ----------------------------
# FX
# ----------------------------
def test_quote_applies_margin_and_rounds():
    q = build_quote(10200, 566, 150, "db", now=1000.0)
    # 566 * 1.015 = 574.49 -> 574
    assert q.fx_den == 574
    assert q.fx_num == 100
    assert q.usd_cents == 1777
    assert q.effective_xof_per_usd == 574
    assert q.as_dict()["base_xof_per_usd"] == 566


def test_quote_rejects_out_of_band_rates():
    with pytest.raises(PaymentProviderError) as exc:
        build_quote(10200, 200, 150, "db")
    assert exc.value.code == "fx_unavailable"
    # one cent minimum makes the implied rate absurd for tiny amounts
    with pytest.raises(PaymentProviderError):
        build_quote(1, 566, 150, "db")


def test_quote_staleness():
    q = build_quote(10200, 566, 0, "db", now=1000.0)
    assert q.is_stale(600, now=1700.0)
    assert not q.is_stale(600, now=1500.0)


def test_quote_service_uses_latest_rate_or_fallback(run):
    async def scenario(env):
        fx = FxQuoteService(env.sessions, env.gated)
        fallback = await fx.quote(10200)
        async with env.sessions() as db:
            db.add(FxRate(from_currency="USD", to_currency="XOF",
                          rate=Decimal("600"), source="manual",
                          valid_from=time.time() - 60))
            await db.commit()
        return fallback, await fx.quote(10200)

    fallback, from_db = run(scenario)
    assert fallback.source == "fallback"
    assert fallback.fx_den == 574
    assert from_db.source == "manual"
    assert from_db.fx_den == 609


@pytest.mark.parametrize("amount,margin", [(0, 150), (10200, 501),
                                           (10200, -1)])
def test_quote_service_input_checks(run, amount, margin):
    async def scenario(env):
        await FxQuoteService(env.sessions, env.gated).quote(amount, margin)
    with pytest.raises(ValidationError):
        run(scenario)


# ----------------------------
# card signatures
# ----------------------------
def test_card_signature_roundtrip_and_failures():
    payload = b'{"type":"payment_intent.succeeded"}'
    ts = 1_700_000_000
    header = f"t={ts},v1={sign_payload('whsec', payload, ts)}"
    verify_signature("whsec", payload, header, now=ts + 10)

    with pytest.raises(ValidationError):
        verify_signature("whsec", payload + b" ", header, now=ts)
    with pytest.raises(ValidationError):
        verify_signature("whsec", payload, header, now=ts + 301)
    with pytest.raises(ValidationError):
        verify_signature("whsec", payload, None)
    with pytest.raises(ValidationError):
        verify_signature("whsec", payload, "v1=abc")


# ----------------------------
# card provider
# ----------------------------
def test_card_payment_locks_fx_quote(run):
    seen = {}

    def handler(request: httpx.Request):
        seen["form"] = parse_qs(request.content.decode())
        seen["headers"] = request.headers
        return httpx.Response(200, json={"id": "pi_123",
                                         "client_secret": "pi_123_secret"})

    async def scenario(env):
        fx = FxQuoteService(env.sessions, env.gated)
        async with client_for(handler) as http:
            card = CardProvider(http, fx, api_base="https://cards.test/",
                                secret_key="sk_test")
            return await card.create_payment(
                payment_request(method=CardRequest()), internal_token="tok"
            )

    pp = run(scenario)
    assert pp.provider_token == "pi_123"
    assert pp.client_secret == "pi_123_secret"
    assert pp.fx_mode == "locked"
    assert pp.charge_currency == "USD"
    assert pp.charge_amount_minor == 1777
    assert seen["form"]["amount"] == ["1777"]
    assert seen["form"]["currency"] == ["usd"]
    assert seen["form"]["metadata[fx_den]"] == ["574"]
    assert seen["headers"]["authorization"] == "Bearer sk_test"
    assert seen["headers"]["idempotency-key"] == "payment-key-1"


def test_client_quote_is_rebuilt_from_its_inputs():
    now = 1_700_000_000.0
    q = quote_from_client(10200, 900, 150, now - 30, now=now)
    # 900 * 1.015 = 913.5 -> 914
    assert q.fx_den == 914
    assert q.usd_cents == 1116
    assert q.source == "client"
    assert q.locked_at == now - 30


@pytest.mark.parametrize("base,margin,locked_offset", [
    (200, 150, -30),     # base rate outside the band
    (566, 900, -30),     # margin above the cap
    (566, 150, 3600),    # dated in the future
])
def test_client_quote_rejections(base, margin, locked_offset):
    now = 1_700_000_000.0
    with pytest.raises(ValidationError) as exc:
        quote_from_client(10200, base, margin, now + locked_offset, now=now)
    assert exc.value.code == "fx_quote_invalid"


@pytest.mark.parametrize("age,amount,fx_den", [
    (30, "1116", "914"),     # fresh: the rate the buyer saw is kept
    (3600, "1777", "574"),   # stale: re-quoted at the fallback rate
])
def test_checkout_carries_client_quote(run, age, amount, fx_den):
    seen = []

    def handler(request: httpx.Request):
        seen.append(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"id": "pi_9",
                                         "client_secret": "pi_9_secret"})

    async def scenario(env):
        fx = FxQuoteService(env.sessions, env.gated, ttl_seconds=600)
        shown = quote_from_client(10200, 900, 150, time.time() - age)
        async with client_for(handler) as http:
            card = CardProvider(http, fx, api_base="https://cards.test/",
                                secret_key="sk_test")
            gateway = PaymentGateway(env.sessions, env.gated,
                                     {CARD: card, MOBILE_MONEY: card})
            creator = AuthenticatedOrderCreator(
                env.sessions, env.gated, env.inventory, env.fees, gateway,
            )
            return await creator.create_order(
                Principal(user_id="user-1"), EVENT_ID, {STD: 2}, "CARD",
                PaymentDetails(fx_quote=shown),
            )

    result = run(scenario)
    [form] = seen
    assert form["amount"] == [amount]
    assert form["currency"] == ["usd"]
    assert form["metadata[fx_den]"] == [fx_den]
    assert result.fx_quote["fx_den"] == int(fx_den)
    assert result.fx_quote["usd_cents"] == int(amount)


class BrokenFx:
    async def quote(self, *args, **kwargs):
        raise PaymentProviderError("no rate", provider="fx",
                                   code="fx_unavailable")


def test_card_payment_falls_back_to_auto_conversion():
    seen = {}

    def handler(request: httpx.Request):
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "pi_auto"})

    async def scenario():
        async with client_for(handler) as http:
            card = CardProvider(http, BrokenFx(), api_base="https://c.test",
                                secret_key="sk_test")
            return await card.create_payment(
                payment_request(method=CardRequest()), internal_token="tok"
            )

    pp = asyncio.run(scenario())
    assert pp.fx_mode == "auto"
    assert pp.charge_currency == "XOF"
    assert seen["form"]["amount"] == ["10200"]
    assert seen["form"]["currency"] == ["xof"]


def test_card_errors_are_classified():
    def declined(request):
        return httpx.Response(402, json={"error": {"message": "declined"}})

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def attempt(handler):
        async with client_for(handler) as http:
            card = CardProvider(http, BrokenFx(), api_base="https://c.test",
                                secret_key="sk_test")
            await card.create_payment(
                payment_request(currency="EUR", method=CardRequest()),
                internal_token="tok",
            )

    with pytest.raises(PaymentProviderError) as exc:
        asyncio.run(attempt(declined))
    assert exc.value.transient is False
    assert exc.value.provider_message == "declined"

    with pytest.raises(PaymentProviderError) as exc:
        asyncio.run(attempt(unreachable))
    assert exc.value.transient is True
    assert exc.value.code == "provider_unreachable"


def test_card_status_reads_latest_charge():
    def handler(request: httpx.Request):
        assert request.url.params["expand[]"] == "latest_charge"
        return httpx.Response(200, json={
            "id": "pi_1", "status": "succeeded",
            "latest_charge": {"payment_method_details": {
                "card": {"brand": "visa", "last4": "4242"},
            }},
        })

    async def scenario():
        async with client_for(handler) as http:
            card = CardProvider(http, BrokenFx(), api_base="https://c.test",
                                secret_key="sk_test")
            return await card.fetch_status("pi_1")

    status = asyncio.run(scenario())
    assert status.status == SUCCEEDED
    assert status.details == {"brand": "visa", "last4": "4242"}


def test_card_callback_requires_valid_signature():
    card = CardProvider(httpx.AsyncClient(), BrokenFx(),
                        api_base="https://c.test", secret_key="sk_test",
                        webhook_secret="whsec")
    event = json.dumps({"type": "payment_intent.succeeded",
                        "data": {"object": {"id": "pi_9"}}}).encode()
    ts = int(time.time())
    header = f"t={ts},v1={sign_payload('whsec', event, ts)}"
    assert card.parse_callback(event, {"stripe-signature": header}) == "pi_9"

    other = json.dumps({"type": "charge.refunded"}).encode()
    header = f"t={ts},v1={sign_payload('whsec', other, ts)}"
    assert card.parse_callback(other, {"stripe-signature": header}) is None

    with pytest.raises(ValidationError):
        card.parse_callback(event, {"stripe-signature": "t=1,v1=bad"})


def test_card_requires_secret_key():
    with pytest.raises(ConfigurationError):
        CardProvider(httpx.AsyncClient(), BrokenFx(),
                     api_base="https://c.test", secret_key=None)


# ----------------------------
# mobile money provider
# ----------------------------
def mobile_money(http, **kw) -> MobileMoneyProvider:
    return MobileMoneyProvider(
        http, base_url="https://mm.test/api/v1/", master_key="mk",
        private_key="pk", public_key="pub", token="tk",
        callback_url="https://shop.test/payments/mobile_money/callback",
        **kw,
    )


def test_mobile_money_invoice_created():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "response_code": "00",
            "response_text": "https://mm.test/checkout/inv_1",
            "token": "inv_1",
        })

    async def scenario():
        async with client_for(handler) as http:
            return await mobile_money(http).create_payment(
                payment_request(), internal_token="tok-1"
            )

    pp = asyncio.run(scenario())
    assert pp.provider_token == "inv_1"
    assert pp.payment_url == "https://mm.test/checkout/inv_1"
    assert seen["url"] == "https://mm.test/api/v1/checkout-invoice/create"
    assert seen["headers"]["paydunya-master-key"] == "mk"
    invoice = seen["body"]["invoice"]
    assert invoice["total_amount"] == "10200"
    assert invoice["customer"]["phone"] == "+221771234567"
    assert invoice["items"]["item_0"]["quantity"] == 2
    assert seen["body"]["custom_data"]["payment_token"] == "tok-1"
    assert seen["body"]["custom_data"]["wallet"] == "orange"
    assert seen["body"]["actions"]["callback_url"].endswith("/callback")


@pytest.mark.parametrize("amount,code", [("50", "amount_too_low"),
                                         ("10000001", "amount_too_high")])
def test_mobile_money_amount_limits_checked_before_http(amount, code):
    def handler(request):
        raise AssertionError("no HTTP call expected")

    async def scenario():
        async with client_for(handler) as http:
            await mobile_money(http).create_payment(
                payment_request(amount=amount), internal_token="tok"
            )

    with pytest.raises(ValidationError) as exc:
        asyncio.run(scenario())
    assert exc.value.code == code


def test_mobile_money_rejection_and_outage():
    def rejected(request):
        return httpx.Response(200, json={"response_code": "1001",
                                         "response_text": "invalid store"})

    def outage(request):
        return httpx.Response(503, text="maintenance")

    async def attempt(handler):
        async with client_for(handler) as http:
            await mobile_money(http).create_payment(payment_request(),
                                                    internal_token="tok")

    with pytest.raises(PaymentProviderError) as exc:
        asyncio.run(attempt(rejected))
    assert exc.value.transient is False
    assert exc.value.provider_message == "invalid store"

    with pytest.raises(PaymentProviderError) as exc:
        asyncio.run(attempt(outage))
    assert exc.value.transient is True


def test_mobile_money_confirm_maps_status():
    def handler(request: httpx.Request):
        assert request.url.path.endswith("/checkout-invoice/confirm/inv_1")
        return httpx.Response(200, json={
            "response_code": "00", "status": "completed",
            "receipt_identifier": "rcpt-7",
            "customer": {"phone": "771234567"},
        })

    async def scenario():
        async with client_for(handler) as http:
            return await mobile_money(http).fetch_status("inv_1")

    status = asyncio.run(scenario())
    assert status.status == SUCCEEDED
    assert status.provider_payment_id == "rcpt-7"
    assert status.details == {"phone": "771234567"}


def test_mobile_money_callback_token_extraction():
    mm = mobile_money(httpx.AsyncClient())
    form = b"data%5Binvoice%5D%5Btoken%5D=inv_2&data%5Bstatus%5D=completed"
    assert mm.parse_callback(form, {"content-type":
                                    "application/x-www-form-urlencoded"}) \
        == "inv_2"
    body = json.dumps({"data": {"invoice": {"token": "inv_3"}}}).encode()
    assert mm.parse_callback(body, {"content-type": "application/json"}) \
        == "inv_3"


def test_mobile_money_requires_credentials():
    with pytest.raises(ConfigurationError) as exc:
        MobileMoneyProvider(httpx.AsyncClient(), base_url="https://mm.test",
                            master_key="mk", private_key=None,
                            public_key="pub", token=None)
    assert "MOBILE_MONEY_PRIVATE_KEY" in exc.value.message
    assert "MOBILE_MONEY_TOKEN" in exc.value.message


# ----------------------------
# MockPay
# ----------------------------
def test_mockpay_outcomes_and_signed_events():
    mock = MockPay("secret")

    async def scenario():
        pp = await mock.create_payment(payment_request(method=CardRequest()),
                                       internal_token="tok")
        before = await mock.fetch_status(pp.provider_token)
        payload, sig = mock.emit(pp.provider_token, SUCCEEDED)
        after = await mock.fetch_status(pp.provider_token)
        return pp, before, payload, sig, after

    pp, before, payload, sig, after = asyncio.run(scenario())
    assert pp.provider_token.startswith("mock_")
    assert pp.payment_url == f"/mockpay/{pp.provider_token}"
    assert before.status == PENDING
    assert after.status == SUCCEEDED
    assert after.details == {"brand": "visa", "last4": "4242"}
    assert mock.parse_callback(payload, {"x-mockpay-signature": sig}) \
        == pp.provider_token
    with pytest.raises(ValidationError):
        mock.parse_callback(payload, {"x-mockpay-signature": "forged"})


def test_mockpay_emit_rejects_bad_input():
    mock = MockPay("secret")
    with pytest.raises(ValidationError) as exc:
        mock.emit("mock_unknown", CANCELED)
    assert exc.value.code == "payment_not_found"
    with pytest.raises(ValidationError):
        mock.emit("mock_unknown", "refunded")


# ----------------------------
# gateway
# ----------------------------
@pytest.mark.parametrize("field,value,code", [
    ("idempotency_key", " ", "idempotency_key_required"),
    ("ticket_lines", [], "ticket_lines_required"),
    ("amount_major", Decimal("0"), "amount_invalid"),
])
def test_gateway_request_validation(field, value, code):
    request = payment_request()
    setattr(request, field, value)
    with pytest.raises(ValidationError) as exc:
        validate_request(request)
    assert exc.value.code == code


def test_gateway_duplicate_create_returns_original(run):
    provider = RecordingProvider()

    async def scenario(env):
        first = await env.gateway.create(payment_request())
        second = await env.gateway.create(payment_request())
        return first, second, await env.payments()

    first, second, payments = run(scenario, {MOBILE_MONEY: provider,
                                             CARD: provider})
    assert len(provider.requests) == 1
    assert first.duplicate is False
    assert second.duplicate is True
    assert second.payment_token == first.payment_token
    assert second.payment_url == first.payment_url
    [row] = payments
    assert row.status == P_PENDING
    assert row.provider_token == "rec_1"


def test_gateway_key_reuse_with_other_amount(run):
    async def scenario(env):
        await env.gateway.create(payment_request())
        await env.gateway.create(payment_request(amount="9999"))
    with pytest.raises(ValidationError):
        run(scenario)


def test_gateway_transient_failure_can_be_resent(run):
    provider = RecordingProvider(fail=transient_error())

    async def scenario(env):
        with pytest.raises(PaymentProviderError):
            await env.gateway.create(payment_request())
        [row] = await env.payments()
        status_after_failure = row.status
        provider.fail = None
        result = await env.gateway.create(payment_request())
        return status_after_failure, row.id, result, await env.payments()

    status, row_id, result, payments = run(
        scenario, {MOBILE_MONEY: provider, CARD: provider}
    )
    assert status == P_INITIATED
    assert result.payment_id == row_id
    assert len(provider.requests) == 2
    assert [p.status for p in payments] == [P_PENDING]


def test_gateway_rejected_attempt_is_not_retried(run):
    provider = RecordingProvider(fail=PaymentProviderError(
        "declined", provider="recording"
    ))

    async def scenario(env):
        with pytest.raises(PaymentProviderError):
            await env.gateway.create(payment_request())
        with pytest.raises(PaymentProviderError):
            await env.gateway.create(payment_request())
        return await env.payments()

    [row] = run(scenario, {MOBILE_MONEY: provider, CARD: provider})
    assert row.status == P_FAILED
    assert len(provider.requests) == 1


def test_gateway_resolves_internal_and_provider_tokens(run):
    async def scenario(env):
        result = await env.gateway.create(payment_request())
        async with env.sessions() as db:
            by_internal = await env.gateway.resolve(db, result.payment_token)
            by_provider = await env.gateway.resolve(db, result.provider_token)
            with pytest.raises(PaymentNotFoundError):
                await env.gateway.resolve(db, "mock_missing")
            with pytest.raises(ValidationError) as exc:
                await env.gateway.resolve(db, "  ")
        return result, by_internal, by_provider, exc.value

    result, by_internal, by_provider, err = run(scenario)
    assert by_internal.id == result.payment_id
    assert by_provider.id == result.payment_id
    assert err.code == "token_required"


def test_gateway_without_provider_for_method(run):
    provider = RecordingProvider()

    async def scenario(env):
        await env.gateway.create(payment_request(method=CardRequest()))
    with pytest.raises(ConfigurationError):
        run(scenario, {MOBILE_MONEY: provider})
