import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Dict, Mapping, Optional, Tuple

from ..errors import ValidationError
from .base import (
    CANCELED, FAILED, PENDING, SUCCEEDED,
    PaymentProvider, PaymentRequest, ProviderPayment, ProviderStatus,
)

OUTCOMES = {SUCCEEDED, FAILED, CANCELED}


# ----------------------------
# MockPay sandbox provider
# ----------------------------
class MockPay(PaymentProvider):
    """Sandbox provider serving both payment methods. Outcomes are chosen
    on the ``/mockpay/{token}`` page and kept in memory."""

    name = "mockpay"

    def __init__(self, secret: str) -> None:
        self.secret = secret
        self.sessions: Dict[str, dict] = {}
        self.outcomes: Dict[str, str] = {}

    async def create_payment(self, request: PaymentRequest, *,
                             internal_token: str) -> ProviderPayment:
        token = f"mock_{uuid.uuid4().hex}"
        self.sessions[token] = {
            "payment_token": internal_token,
            "order_id": request.order_id,
            "amount": str(request.amount_major),
            "currency": request.currency,
            "method": request.method_name,
        }
        return ProviderPayment(
            provider_token=token,
            payment_url=f"/mockpay/{token}",
            client_secret=f"{token}_secret",
            provider_payment_id=token,
        )

    async def fetch_status(self, provider_token: str) -> ProviderStatus:
        status = self.outcomes.get(provider_token, PENDING)
        details = {}
        if status == SUCCEEDED:
            session = self.sessions.get(provider_token) or {}
            if session.get("method") == "CARD":
                details = {"brand": "visa", "last4": "4242"}
        return ProviderStatus(status=status,
                              provider_payment_id=provider_token,
                              details=details)

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def emit(self, token: str, kind: str) -> Tuple[bytes, str]:
        """Record the outcome and build the signed webhook for it."""
        if kind not in OUTCOMES:
            raise ValidationError(f"invalid outcome {kind!r}")
        session = self.sessions.get(token)
        if session is None:
            raise ValidationError("unknown payment session",
                                  code="payment_not_found")
        self.outcomes[token] = kind
        event = {
            "type": f"payment.{kind}",
            "payment_session_id": token,
            "order_id": session["order_id"],
            "amount": session["amount"],
            "currency": session["currency"],
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        payload = json.dumps(event).encode()
        return payload, self.sign(payload)

    def parse_callback(self, payload: bytes,
                       headers: Mapping[str, str]) -> Optional[str]:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise ValidationError("invalid signature")
        try:
            event = json.loads(payload.decode())
        except json.JSONDecodeError:
            raise ValidationError("invalid JSON callback")
        return event.get("payment_session_id") or None
