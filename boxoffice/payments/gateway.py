from __future__ import annotations
import uuid
from decimal import Decimal
from typing import Mapping, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import (
    CheckoutError, ConfigurationError, PaymentNotFoundError,
    PaymentProviderError, ValidationError,
)
from ..helpers import is_uuid, money, now_ts
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..model.db import (
    P_CANCELLED, P_COMPLETED, P_FAILED, P_INITIATED, P_PENDING, P_REFUND_DUE,
    Payment,
)
from .base import (
    PENDING, PaymentProvider, PaymentRequest, PaymentResult, ProviderStatus,
)


def validate_request(request: PaymentRequest) -> None:
    if not (request.idempotency_key or "").strip():
        raise ValidationError("idempotency key required",
                              code="idempotency_key_required")
    if not request.ticket_lines:
        raise ValidationError("at least one ticket line required",
                              code="ticket_lines_required")
    for line in request.ticket_lines:
        if line.quantity <= 0:
            raise ValidationError("ticket line quantity must be positive",
                                  code="quantity_not_positive")
    amount = Decimal(str(request.amount_major))
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("payment amount must be positive",
                              code="amount_invalid")


def _result(row: Payment, *, duplicate: bool, fx=None) -> PaymentResult:
    return PaymentResult(
        success=True,
        payment_id=row.id,
        payment_token=row.token,
        order_id=row.order_id,
        provider_token=row.provider_token,
        payment_url=row.payment_url,
        client_secret=row.client_secret,
        duplicate=duplicate,
        fx_quote=fx,
    )


class PaymentGateway:
    """Single entry point for both payment methods.

    ``create`` is idempotent on ``request.idempotency_key``: the payments
    row is inserted before the provider is called, so a resend after a
    client timeout finds it and returns the original result instead of
    charging again.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated,
                 providers: Mapping[str, PaymentProvider]) -> None:
        self.sessions = sessions
        self.gated = gated
        self.providers = dict(providers)
        self.by_name = {p.name: p for p in self.providers.values()}

    def provider_for(self, method: str) -> PaymentProvider:
        provider = self.providers.get(method)
        if provider is None:
            raise ConfigurationError(f"no provider configured for {method}")
        return provider

    def provider_named(self, name: str) -> PaymentProvider:
        provider = self.by_name.get(name)
        if provider is None:
            raise ConfigurationError(f"unknown payment provider {name!r}")
        return provider

    # ----------------------------
    # create
    # ----------------------------
    async def create(self, request: PaymentRequest, *,
                     db: Optional[AsyncSession] = None) -> PaymentResult:
        """Create the provider payment. When ``db`` is given the row joins
        the caller's transaction and nothing is committed here."""
        validate_request(request)
        provider = self.provider_for(request.method_name)

        if db is not None:
            row = self._new_row(request, provider)
            async with self.gated():
                db.add(row)
                await db.flush()
            return await self._call_provider(db, row, provider, request,
                                             commit=False)

        async with self.sessions() as db:
            async with self.gated():
                existing = await self._by_key(db, request.idempotency_key)
            if existing is not None:
                replay = self._replay(existing, request)
                if replay is not None:
                    return replay
                logger.info("payment {}: resending initiated attempt",
                            existing.id)
                row = existing
            else:
                row = self._new_row(request, provider)
                try:
                    async with self.gated():
                        db.add(row)
                        await db.commit()
                except IntegrityError:
                    # same key raced us
                    await db.rollback()
                    async with self.gated():
                        existing = await self._by_key(
                            db, request.idempotency_key
                        )
                    replay = (self._replay(existing, request)
                              if existing is not None else None)
                    if replay is not None:
                        return replay
                    raise PaymentProviderError(
                        "payment already in progress",
                        provider=provider.name, transient=True,
                        code="payment_in_progress",
                    )
            return await self._call_provider(db, row, provider, request,
                                             commit=True)

    def _new_row(self, request: PaymentRequest,
                 provider: PaymentProvider) -> Payment:
        ts = now_ts()
        return Payment(
            id=uuid.uuid4().hex,
            order_id=request.order_id,
            event_id=request.event_id,
            user_id=request.user_id,
            idempotency_key=request.idempotency_key,
            token=str(uuid.uuid4()),
            method=request.method_name,
            provider=provider.name,
            amount=money(request.amount_major),
            currency=request.currency.upper(),
            status=P_INITIATED,
            customer_email=request.customer_email,
            customer_phone=request.customer_phone,
            created_at=ts,
            updated_at=ts,
        )

    async def _by_key(self, db: AsyncSession, key: str) -> Optional[Payment]:
        return (await db.execute(
            select(Payment).where(Payment.idempotency_key == key)
        )).scalars().first()

    def _replay(self, existing: Payment,
                request: PaymentRequest) -> Optional[PaymentResult]:
        if money(existing.amount) != money(request.amount_major):
            raise ValidationError(
                "idempotency key reused with a different amount"
            )
        if existing.status in (P_PENDING, P_COMPLETED, P_REFUND_DUE):
            logger.info("payment {}: duplicate create, returning original",
                        existing.id)
            return _result(existing, duplicate=True)
        if existing.status in (P_FAILED, P_CANCELLED):
            raise PaymentProviderError(
                "payment attempt already failed", provider=existing.provider,
                provider_message=existing.error_message,
            )
        return None

    async def _call_provider(self, db: AsyncSession, row: Payment,
                             provider: PaymentProvider,
                             request: PaymentRequest, *,
                             commit: bool) -> PaymentResult:
        try:
            async with timeit(f"payments.{provider.name}.create"):
                pp = await provider.create_payment(
                    request, internal_token=row.token
                )
        except CheckoutError as e:
            if isinstance(e, PaymentProviderError) and e.transient:
                # outcome unknown; a resend with the same key retries
                logger.warning("payment {}: transient provider error: {}",
                               row.id, e.message)
            else:
                logger.error("payment {}: provider rejected: {}",
                             row.id, e.message)
                row.status = P_FAILED
                row.error_message = e.message
                row.updated_at = now_ts()
                if commit:
                    async with self.gated():
                        await db.commit()
            raise

        row.provider_token = pp.provider_token
        row.provider_payment_id = pp.provider_payment_id
        row.payment_url = pp.payment_url
        row.client_secret = pp.client_secret
        row.charge_amount_minor = pp.charge_amount_minor
        row.charge_currency = pp.charge_currency
        row.fx_mode = pp.fx_mode
        if pp.fx is not None:
            row.fx_num = pp.fx.fx_num
            row.fx_den = pp.fx.fx_den
            row.fx_locked_at = pp.fx.locked_at
            row.fx_margin_bps = pp.fx.margin_bps
        row.status = P_PENDING
        row.updated_at = now_ts()
        async with self.gated():
            if commit:
                await db.commit()
            else:
                await db.flush()
        return _result(row, duplicate=False, fx=pp.fx)

    # ----------------------------
    # verify
    # ----------------------------
    async def resolve(self, db: AsyncSession, token: str) -> Payment:
        """Internal tokens are UUIDs; anything else is a provider token."""
        token = (token or "").strip()
        if not token:
            raise ValidationError("payment token required",
                                  code="token_required")
        if is_uuid(token):
            stmt = select(Payment).where(Payment.token == token)
        else:
            stmt = select(Payment).where(Payment.provider_token == token)
        async with self.gated():
            row = (await db.execute(stmt)).scalars().first()
        if row is None:
            raise PaymentNotFoundError(f"no payment for token {token}")
        return row

    async def verify(self, payment: Payment) -> ProviderStatus:
        if not payment.provider_token:
            return ProviderStatus(status=PENDING,
                                  message="provider payment not created")
        provider = self.provider_named(payment.provider)
        async with timeit(f"payments.{provider.name}.verify"):
            return await provider.fetch_status(payment.provider_token)
