"""
XOF -> USD quotes for the card path.

A quote locks the rate the buyer saw: ``usd_cents = xof * fx_num / fx_den``
where ``fx_den`` is the XOF-per-USD rate after margin.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import PaymentProviderError, ValidationError
from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from ..model.db import FxRate

MAX_MARGIN_BPS = 500
# sane band for XOF per USD
MIN_XOF_PER_USD = 300
MAX_XOF_PER_USD = 1000
MAX_CLOCK_SKEW_SECONDS = 60


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FXQuote:
    xof_amount_minor: int
    usd_cents: int
    fx_num: int
    fx_den: int
    locked_at: float
    margin_bps: int
    base_xof_per_usd: int
    source: str = "db"

    @property
    def effective_xof_per_usd(self) -> int:
        return self.fx_den

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else now_ts()) - self.locked_at

    def is_stale(self, ttl_seconds: float,
                 now: Optional[float] = None) -> bool:
        return self.age(now) > ttl_seconds

    def as_dict(self) -> dict:
        return {
            "xof_amount_minor": self.xof_amount_minor,
            "usd_cents": self.usd_cents,
            "fx_num": self.fx_num,
            "fx_den": self.fx_den,
            "fx_locked_at": to_iso(self.locked_at),
            "margin_bps": self.margin_bps,
            "base_xof_per_usd": self.base_xof_per_usd,
            "effective_xof_per_usd": self.effective_xof_per_usd,
            "source": self.source,
        }


def build_quote(xof_amount_minor: int, base_xof_per_usd: int,
                margin_bps: int, source: str,
                now: Optional[float] = None) -> FXQuote:
    if base_xof_per_usd < MIN_XOF_PER_USD or \
            base_xof_per_usd > MAX_XOF_PER_USD:
        raise PaymentProviderError(
            f"FX source out of bounds: {base_xof_per_usd} XOF/USD",
            provider="fx", code="fx_unavailable",
        )
    effective = _round(
        Decimal(base_xof_per_usd) * (1 + Decimal(margin_bps) / 10000)
    )
    usd_cents = max(1, _round(Decimal(xof_amount_minor * 100) / effective))
    implied = Decimal(xof_amount_minor * 100) / usd_cents
    if implied < MIN_XOF_PER_USD or implied > MAX_XOF_PER_USD:
        raise PaymentProviderError(
            f"implied FX out of bounds: {implied:.2f} XOF/USD",
            provider="fx", code="fx_unavailable",
        )
    return FXQuote(
        xof_amount_minor=xof_amount_minor,
        usd_cents=usd_cents,
        fx_num=100,
        fx_den=effective,
        locked_at=now if now is not None else now_ts(),
        margin_bps=margin_bps,
        base_xof_per_usd=base_xof_per_usd,
        source=source,
    )


def quote_from_client(xof_amount_minor: int, base_xof_per_usd: int,
                      margin_bps: int, locked_at: float,
                      now: Optional[float] = None) -> FXQuote:
    """Rebuild a quote the buyer was shown. Only its inputs are taken from
    the client; the charged amount is recomputed and the usual bands and
    staleness checks apply."""
    now = now if now is not None else now_ts()
    if margin_bps < 0 or margin_bps > MAX_MARGIN_BPS:
        raise ValidationError(
            f"margin_bps must be between 0 and {MAX_MARGIN_BPS}",
            code="fx_quote_invalid",
        )
    if locked_at > now + MAX_CLOCK_SKEW_SECONDS:
        raise ValidationError("fx quote is dated in the future",
                              code="fx_quote_invalid")
    try:
        return build_quote(xof_amount_minor, base_xof_per_usd, margin_bps,
                           "client", now=locked_at)
    except PaymentProviderError as e:
        raise ValidationError(e.message, code="fx_quote_invalid")


class FxQuoteService:
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated, *, fallback_xof_per_usd: int = 566,
                 default_margin_bps: int = 150,
                 ttl_seconds: int = 600) -> None:
        self.sessions = sessions
        self.gated = gated
        self.fallback_xof_per_usd = fallback_xof_per_usd
        self.default_margin_bps = default_margin_bps
        self.ttl_seconds = ttl_seconds

    async def quote(self, xof_amount_minor: int,
                    margin_bps: Optional[int] = None) -> FXQuote:
        if margin_bps is None:
            margin_bps = self.default_margin_bps
        if isinstance(xof_amount_minor, bool) or \
                not isinstance(xof_amount_minor, int) or \
                xof_amount_minor <= 0:
            raise ValidationError("xof amount must be a positive integer",
                                  code="amount_invalid")
        if margin_bps < 0 or margin_bps > MAX_MARGIN_BPS:
            raise ValidationError(
                f"margin_bps must be between 0 and {MAX_MARGIN_BPS}"
            )

        rate, source = await self._current_rate()
        if rate is None:
            logger.warning("FX: no active USD->XOF rate, using fallback {}",
                           self.fallback_xof_per_usd)
            return build_quote(xof_amount_minor, self.fallback_xof_per_usd,
                               margin_bps, "fallback")
        return build_quote(xof_amount_minor, rate, margin_bps, source)

    async def ensure_fresh(self, quote: FXQuote) -> FXQuote:
        if not quote.is_stale(self.ttl_seconds):
            return quote
        logger.info("FX: quote from {} is stale, re-quoting",
                    to_iso(quote.locked_at))
        return await self.quote(quote.xof_amount_minor, quote.margin_bps)

    async def _current_rate(self) -> tuple[Optional[int], str]:
        try:
            async with self.sessions() as db:
                async with self.gated():
                    row = (await db.execute(
                        select(FxRate)
                        .where(
                            FxRate.from_currency == "USD",
                            FxRate.to_currency == "XOF",
                            FxRate.is_active.is_(True),
                            FxRate.valid_from <= now_ts(),
                        )
                        .order_by(FxRate.valid_from.desc())
                        .limit(1)
                    )).scalars().first()
        except SQLAlchemyError as e:
            logger.error("FX: rate lookup failed: {}", e)
            return None, "fallback"
        if row is None:
            return None, "fallback"
        return _round(Decimal(str(row.rate))), row.source
