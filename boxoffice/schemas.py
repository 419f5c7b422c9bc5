"""Request bodies. Quantities and amounts stay loosely typed here so that
the domain layer can reject them with its own error codes."""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .fees import FeeSelection
from .orders import GuestIdentity, PaymentDetails
from .payments.fx import FXQuote, quote_from_client


class FeeLineIn(BaseModel):
    ticket_type_id: str
    quantity: Any
    unit_price: Any


class FeeQuoteIn(BaseModel):
    event_id: str
    selections: List[FeeLineIn] = Field(default_factory=list)

    def to_selections(self) -> List[FeeSelection]:
        return [FeeSelection(s.ticket_type_id, s.quantity, s.unit_price)
                for s in self.selections]


class FxQuoteIn(BaseModel):
    xof_amount_minor: Any
    margin_bps: Optional[int] = None


class LockedQuoteIn(BaseModel):
    """The fields of an earlier ``/api/fx/quote`` answer that pin it."""
    xof_amount_minor: int
    base_xof_per_usd: int
    margin_bps: int
    fx_locked_at: datetime

    def to_quote(self) -> FXQuote:
        return quote_from_client(self.xof_amount_minor,
                                 self.base_xof_per_usd, self.margin_bps,
                                 self.fx_locked_at.timestamp())


class PaymentDetailsIn(BaseModel):
    phone: Optional[str] = None
    provider: Optional[str] = None
    margin_bps: Optional[int] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    fx_quote: Optional[LockedQuoteIn] = None

    def to_details(self) -> PaymentDetails:
        return PaymentDetails(
            phone=self.phone,
            provider=self.provider,
            margin_bps=self.margin_bps,
            return_url=self.return_url,
            cancel_url=self.cancel_url,
            fx_quote=self.fx_quote.to_quote() if self.fx_quote else None,
        )


class CheckoutIn(BaseModel):
    event_id: str
    quantities: Dict[str, Any] = Field(default_factory=dict)
    payment_method: Optional[str] = None
    payment_details: PaymentDetailsIn = Field(
        default_factory=PaymentDetailsIn
    )


class GuestCheckoutIn(CheckoutIn):
    guest_email: Optional[str] = None
    guest_name: Optional[str] = None
    guest_phone: Optional[str] = None

    def guest(self) -> GuestIdentity:
        return GuestIdentity(email=self.guest_email or "",
                             name=self.guest_name or "",
                             phone=self.guest_phone)


class VerifyIn(BaseModel):
    token: Optional[str] = None
    order_id: Optional[str] = None
    save_method: bool = False
    # only used to derive a masked label; never stored as given
    payment_details: Dict[str, Any] = Field(default_factory=dict)


class CartIn(BaseModel):
    selections: Dict[str, Any] = Field(default_factory=dict)


class CartLineIn(BaseModel):
    ticket_type_id: str
    quantity: Any
