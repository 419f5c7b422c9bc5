from __future__ import annotations
import hashlib
import hmac
import json
import time
from typing import Mapping, Optional

import httpx
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from ..errors import ConfigurationError, PaymentProviderError, ValidationError
from ..helpers import to_minor
from .base import (
    CANCELED, FAILED, PENDING, SUCCEEDED,
    CardRequest, PaymentProvider, PaymentRequest, ProviderPayment,
    ProviderStatus, response_json,
)
from .fx import FxQuoteService

SIGNATURE_TOLERANCE_SECONDS = 300

_STATUS = {
    "succeeded": SUCCEEDED,
    "processing": PENDING,
    "requires_action": PENDING,
    "requires_confirmation": PENDING,
    "requires_payment_method": PENDING,
    "requires_capture": PENDING,
    "canceled": CANCELED,
}


def sign_payload(secret: str, payload: bytes, ts: int) -> str:
    signed = f"{ts}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, header: Optional[str],
                     now: Optional[float] = None,
                     tolerance: int = SIGNATURE_TOLERANCE_SECONDS) -> None:
    if not header:
        raise ValidationError("missing signature header")
    parts = {}
    candidates = []
    for item in header.split(","):
        k, _, v = item.strip().partition("=")
        if k == "v1":
            candidates.append(v)
        else:
            parts[k] = v
    try:
        ts = int(parts.get("t", ""))
    except ValueError:
        raise ValidationError("malformed signature header")
    now = time.time() if now is None else now
    if abs(now - ts) > tolerance:
        raise ValidationError("signature timestamp outside tolerance")
    expected = sign_payload(secret, payload, ts)
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise ValidationError("invalid signature")


class CardProvider(PaymentProvider):
    """Payment intents on a card processor settling in USD. XOF amounts are
    converted with a locked FX quote, or left to the processor's own
    conversion when no quote can be had."""

    name = "card"

    def __init__(self, http: httpx.AsyncClient, fx: FxQuoteService, *,
                 api_base: str, secret_key: Optional[str],
                 webhook_secret: Optional[str] = None,
                 margin_bps: int = 150) -> None:
        if not secret_key:
            raise ConfigurationError("CARD_SECRET_KEY is not set")
        self.http = http
        self.fx = fx
        self.api_base = api_base.rstrip("/")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.margin_bps = margin_bps

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        h = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            h["Idempotency-Key"] = idempotency_key
        return h

    async def _charge_terms(self, request: PaymentRequest) -> ProviderPayment:
        currency = request.currency.upper()
        display_minor = to_minor(request.amount_major, currency)
        if currency != "XOF":
            return ProviderPayment(
                provider_token="",
                charge_amount_minor=display_minor,
                charge_currency=currency,
            )

        method = request.method
        margin = self.margin_bps
        if isinstance(method, CardRequest) and method.margin_bps is not None:
            margin = method.margin_bps
        try:
            quote = None
            if isinstance(method, CardRequest) and method.quote is not None \
                    and method.quote.xof_amount_minor == display_minor:
                quote = await self.fx.ensure_fresh(method.quote)
            if quote is None:
                quote = await self.fx.quote(display_minor, margin)
        except (PaymentProviderError, SQLAlchemyError) as e:
            # simple mode: the processor converts XOF itself
            logger.warning("card: no locked FX quote ({}), charging {} XOF "
                           "in auto-conversion mode", e, display_minor)
            return ProviderPayment(
                provider_token="",
                charge_amount_minor=display_minor,
                charge_currency="XOF",
                fx_mode="auto",
            )
        return ProviderPayment(
            provider_token="",
            charge_amount_minor=quote.usd_cents,
            charge_currency="USD",
            fx=quote,
            fx_mode="locked",
        )

    async def create_payment(self, request: PaymentRequest, *,
                             internal_token: str) -> ProviderPayment:
        terms = await self._charge_terms(request)
        form = {
            "amount": str(terms.charge_amount_minor),
            "currency": terms.charge_currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            "description": request.description
            or f"Tickets {request.event_id}",
            "metadata[order_id]": request.order_id or "",
            "metadata[event_id]": request.event_id,
            "metadata[payment_token]": internal_token,
            "metadata[display_amount]": str(request.amount_major),
            "metadata[display_currency]": request.currency.upper(),
        }
        if terms.fx is not None:
            form["metadata[fx_num]"] = str(terms.fx.fx_num)
            form["metadata[fx_den]"] = str(terms.fx.fx_den)
        if request.customer_email:
            form["receipt_email"] = request.customer_email

        try:
            resp = await self.http.post(
                f"{self.api_base}/v1/payment_intents", data=form,
                headers=self._headers(request.idempotency_key),
            )
        except httpx.HTTPError as e:
            raise PaymentProviderError(
                "card processor unreachable", provider=self.name,
                provider_message=str(e), transient=True,
                code="provider_unreachable",
            )
        data = response_json(resp)
        if resp.status_code >= 400:
            err = data.get("error") or {}
            raise PaymentProviderError(
                "card payment intent rejected", provider=self.name,
                provider_message=err.get("message") or resp.text,
                transient=resp.status_code >= 500 or resp.status_code == 429,
            )
        terms.provider_token = data["id"]
        terms.provider_payment_id = data["id"]
        terms.client_secret = data.get("client_secret")
        return terms

    async def fetch_status(self, provider_token: str) -> ProviderStatus:
        try:
            resp = await self.http.get(
                f"{self.api_base}/v1/payment_intents/{provider_token}",
                params={"expand[]": "latest_charge"},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise PaymentProviderError(
                "card processor unreachable", provider=self.name,
                provider_message=str(e), transient=True,
                code="provider_unreachable",
            )
        data = response_json(resp)
        if resp.status_code >= 400:
            err = data.get("error") or {}
            raise PaymentProviderError(
                "card payment lookup failed", provider=self.name,
                provider_message=err.get("message") or resp.text,
                transient=resp.status_code >= 500,
            )
        status = _STATUS.get(data.get("status", ""), FAILED)
        details = {}
        charge = data.get("latest_charge")
        if isinstance(charge, dict):
            card = (charge.get("payment_method_details") or {}).get("card")
            if card:
                details = {"brand": card.get("brand"),
                           "last4": card.get("last4")}
        last_error = data.get("last_payment_error") or {}
        return ProviderStatus(
            status=status,
            provider_payment_id=data.get("id"),
            message=last_error.get("message", ""),
            details=details,
        )

    def parse_callback(self, payload: bytes,
                       headers: Mapping[str, str]) -> Optional[str]:
        if not self.webhook_secret:
            raise ConfigurationError("CARD_WEBHOOK_SECRET is not set")
        verify_signature(self.webhook_secret, payload,
                         headers.get("stripe-signature"))
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("invalid JSON callback")
        if not str(event.get("type", "")).startswith("payment_intent."):
            return None
        obj = (event.get("data") or {}).get("object") or {}
        return obj.get("id")

