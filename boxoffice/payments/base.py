from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from .fx import FXQuote

MOBILE_MONEY = "MOBILE_MONEY"
CARD = "CARD"
PAYMENT_METHODS = (MOBILE_MONEY, CARD)

# provider-side outcomes
SUCCEEDED = "succeeded"
PENDING = "pending"
FAILED = "failed"
CANCELED = "canceled"


# ----------------------------
# Requests
# ----------------------------
@dataclass(frozen=True)
class TicketLine:
    ticket_type_id: str
    quantity: int
    price_major: Decimal
    currency: str
    name: str = ""

    def as_dict(self) -> dict:
        return {
            "ticket_type_id": self.ticket_type_id,
            "quantity": self.quantity,
            "price_major": self.price_major,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class MobileMoneyRequest:
    phone: str
    provider: Optional[str] = None  # wallet operator, e.g. "orange"


@dataclass(frozen=True)
class CardRequest:
    margin_bps: Optional[int] = None
    quote: Optional[FXQuote] = None  # pre-locked by the client, may be stale


PaymentMethod = Union[MobileMoneyRequest, CardRequest]


@dataclass
class PaymentRequest:
    idempotency_key: str
    event_id: str
    ticket_lines: List[TicketLine]
    amount_major: Decimal
    currency: str
    method: PaymentMethod
    order_id: Optional[str] = None
    user_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    description: str = ""
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @property
    def method_name(self) -> str:
        return CARD if isinstance(self.method, CardRequest) else MOBILE_MONEY

    @property
    def customer_phone(self) -> Optional[str]:
        if isinstance(self.method, MobileMoneyRequest):
            return self.method.phone
        return None


# ----------------------------
# Results
# ----------------------------
@dataclass
class ProviderPayment:
    provider_token: str
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None
    provider_payment_id: Optional[str] = None
    charge_amount_minor: Optional[int] = None
    charge_currency: Optional[str] = None
    fx: Optional[FXQuote] = None
    fx_mode: Optional[str] = None  # "locked" | "auto" | None


@dataclass
class ProviderStatus:
    status: str  # succeeded | pending | failed | canceled
    provider_payment_id: Optional[str] = None
    message: str = ""
    # masked-able details used to remember the payment method
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentResult:
    success: bool
    payment_id: str
    payment_token: str
    order_id: Optional[str] = None
    provider_token: Optional[str] = None
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None
    duplicate: bool = False
    fx_quote: Optional[FXQuote] = None

    def as_dict(self) -> dict:
        out = {
            "success": self.success,
            "payment_id": self.payment_id,
            "payment_token": self.payment_token,
            "order_id": self.order_id,
            "payment_url": self.payment_url,
            "client_secret": self.client_secret,
            "duplicate": self.duplicate,
        }
        if self.fx_quote is not None:
            out["fx_quote"] = self.fx_quote.as_dict()
        return out


# ----------------------------
# Provider interface
# ----------------------------
class PaymentProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def create_payment(
        self, request: PaymentRequest, *, internal_token: str
    ) -> ProviderPayment: ...

    # "succeeded" | "pending" | "failed" | "canceled"
    @abstractmethod
    async def fetch_status(self, provider_token: str) -> ProviderStatus: ...

    # provider token named by a callback; raises on a bad signature
    @abstractmethod
    def parse_callback(self, payload: bytes,
                       headers: Mapping[str, str]) -> Optional[str]: ...


def response_json(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
