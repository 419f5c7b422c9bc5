from __future__ import annotations
import json
from decimal import Decimal
from typing import Mapping, Optional
from urllib.parse import parse_qs

import httpx
from loguru import logger

from ..errors import ConfigurationError, PaymentProviderError, ValidationError
from ..helpers import mask_phone
from .base import (
    CANCELED, FAILED, PENDING, SUCCEEDED,
    PaymentProvider, PaymentRequest, ProviderPayment, ProviderStatus,
    response_json,
)

MIN_AMOUNT = Decimal("100")
MAX_AMOUNT = Decimal("10000000")

# confirm API status -> provider outcome
_STATUS = {
    "completed": SUCCEEDED,
    "pending": PENDING,
    "failed": FAILED,
    "cancelled": CANCELED,
}


class MobileMoneyProvider(PaymentProvider):
    """Redirect checkout through a mobile-money aggregator
    (checkout-invoice create/confirm API)."""

    name = "mobile_money"

    def __init__(self, http: httpx.AsyncClient, *, base_url: str,
                 master_key: Optional[str], private_key: Optional[str],
                 public_key: Optional[str], token: Optional[str],
                 store_name: str = "Boxoffice",
                 callback_url: Optional[str] = None,
                 app_origin: Optional[str] = None) -> None:
        missing = [
            n for n, v in (
                ("MOBILE_MONEY_MASTER_KEY", master_key),
                ("MOBILE_MONEY_PRIVATE_KEY", private_key),
                ("MOBILE_MONEY_PUBLIC_KEY", public_key),
                ("MOBILE_MONEY_TOKEN", token),
            ) if not v
        ]
        if missing:
            raise ConfigurationError(
                f"mobile money credentials missing: {', '.join(missing)}"
            )
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Content-Type": "application/json",
            "PAYDUNYA-MASTER-KEY": master_key,
            "PAYDUNYA-PRIVATE-KEY": private_key,
            "PAYDUNYA-PUBLIC-KEY": public_key,
            "PAYDUNYA-TOKEN": token,
        }
        self.store_name = store_name
        self.callback_url = callback_url
        self.app_origin = (app_origin or "http://localhost:8000").rstrip("/")

    def build_payload(self, request: PaymentRequest,
                      internal_token: str) -> dict:
        items = {}
        for i, line in enumerate(request.ticket_lines):
            items[f"item_{i}"] = {
                "name": line.name or line.ticket_type_id,
                "quantity": line.quantity,
                "unit_price": str(line.price_major),
                "total_price": str(line.price_major * line.quantity),
            }
        return_url = request.return_url or (
            f"{self.app_origin}/payment/success"
            f"?order={request.order_id}&token={internal_token}"
        )
        cancel_url = request.cancel_url or (
            f"{self.app_origin}/payment/cancelled?order={request.order_id}"
        )
        actions = {"return_url": return_url, "cancel_url": cancel_url}
        if self.callback_url:
            actions["callback_url"] = self.callback_url
        return {
            "invoice": {
                "items": items,
                "total_amount": str(request.amount_major),
                "description": request.description
                or f"Tickets {request.event_id}",
                "customer": {
                    "name": request.customer_name or "",
                    "email": request.customer_email or "",
                    "phone": request.customer_phone or "",
                },
            },
            "store": {"name": self.store_name},
            "actions": actions,
            "custom_data": {
                "order_id": request.order_id,
                "event_id": request.event_id,
                "payment_token": internal_token,
                "wallet": getattr(request.method, "provider", None),
            },
        }

    async def create_payment(self, request: PaymentRequest, *,
                             internal_token: str) -> ProviderPayment:
        if not request.customer_phone:
            raise ValidationError("phone number required",
                                  code="phone_required")
        if request.amount_major < MIN_AMOUNT:
            raise ValidationError(
                f"amount {request.amount_major} below {MIN_AMOUNT}",
                code="amount_too_low",
            )
        if request.amount_major > MAX_AMOUNT:
            raise ValidationError(
                f"amount {request.amount_major} above {MAX_AMOUNT}",
                code="amount_too_high",
            )

        payload = self.build_payload(request, internal_token)
        logger.info("mobile money: creating invoice for order {} ({} {}, {})",
                    request.order_id, request.amount_major, request.currency,
                    mask_phone(request.customer_phone))
        try:
            resp = await self.http.post(
                f"{self.base_url}/checkout-invoice/create",
                json=payload, headers=self.headers,
            )
        except httpx.HTTPError as e:
            raise PaymentProviderError(
                "mobile money provider unreachable", provider=self.name,
                provider_message=str(e), transient=True,
                code="provider_unreachable",
            )
        data = response_json(resp)
        if resp.status_code >= 500:
            raise PaymentProviderError(
                "mobile money provider error", provider=self.name,
                provider_message=data.get("response_text") or resp.text,
                transient=True,
            )
        if data.get("response_code") != "00":
            raise PaymentProviderError(
                "mobile money invoice rejected", provider=self.name,
                provider_message=str(
                    data.get("response_text") or f"HTTP {resp.status_code}"
                ),
            )
        nested = data.get("response_json") or {}
        token = data.get("token") or nested.get("invoice_token")
        url = data.get("invoice_url") or nested.get("invoice_url") \
            or data.get("response_text")
        if not token:
            raise PaymentProviderError(
                "mobile money response without token", provider=self.name,
            )
        return ProviderPayment(provider_token=token, payment_url=url)

    async def fetch_status(self, provider_token: str) -> ProviderStatus:
        try:
            resp = await self.http.get(
                f"{self.base_url}/checkout-invoice/confirm/{provider_token}",
                headers=self.headers,
            )
        except httpx.HTTPError as e:
            raise PaymentProviderError(
                "mobile money provider unreachable", provider=self.name,
                provider_message=str(e), transient=True,
                code="provider_unreachable",
            )
        data = response_json(resp)
        if resp.status_code >= 500:
            raise PaymentProviderError(
                "mobile money confirm failed", provider=self.name,
                provider_message=resp.text, transient=True,
            )
        if resp.status_code >= 400 or "status" not in data:
            raise PaymentProviderError(
                "mobile money confirm rejected", provider=self.name,
                provider_message=str(data.get("response_text") or resp.text),
            )
        status = _STATUS.get(str(data["status"]).lower(), PENDING)
        customer = data.get("customer") or {}
        details = {}
        if customer.get("phone"):
            details["phone"] = customer["phone"]
        return ProviderStatus(
            status=status,
            provider_payment_id=data.get("receipt_identifier")
            or provider_token,
            message=str(data.get("response_text") or ""),
            details=details,
        )

    def parse_callback(self, payload: bytes,
                       headers: Mapping[str, str]) -> Optional[str]:
        # the IPN is only a hint; the caller re-confirms through the API
        ctype = headers.get("content-type", "")
        if "json" in ctype:
            try:
                body = json.loads(payload.decode())
            except (UnicodeDecodeError, json.JSONDecodeError):
                raise ValidationError("invalid JSON callback")
            data = body.get("data", body)
            invoice = data.get("invoice") or {}
            return invoice.get("token") or data.get("token")
        form = parse_qs(payload.decode(errors="replace"))
        for key in ("data[invoice][token]", "token"):
            if form.get(key):
                return form[key][0]
        return None

