from __future__ import annotations
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Tuple


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_bool(key: str, default: bool = False) -> bool:
    value = _env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _opt_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value is not None else None


def _parse_backoff(raw: str) -> Tuple[float, ...]:
    delays = tuple(float(p) for p in raw.split(",") if p.strip())
    if not delays or any(d <= 0 for d in delays):
        raise ValueError("VERIFY_BACKOFF_SECONDS must be positive numbers")
    return delays


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./boxoffice.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None  # defaults to the pool size
    environment: str = "development"
    accept_pending_payments: bool = False
    log_level: str = "INFO"
    session_secret: str = "dev-secret-change-me"
    app_origin: Optional[str] = None

    # "mock" routes both methods through MockPay
    payment_providers: str = "mock"
    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/payments/mockpay/callback"

    mobile_money_base_url: str = "https://app.paydunya.com/sandbox-api/v1"
    mobile_money_master_key: Optional[str] = None
    mobile_money_private_key: Optional[str] = None
    mobile_money_public_key: Optional[str] = None
    mobile_money_token: Optional[str] = None
    mobile_money_callback_url: Optional[str] = None
    store_name: str = "Boxoffice"

    card_api_base: str = "https://api.stripe.com"
    card_secret_key: Optional[str] = None
    card_webhook_secret: Optional[str] = None
    fx_margin_bps: int = 150
    fx_quote_ttl_seconds: int = 600
    fx_fallback_xof_per_usd: int = 566

    notify_webhook_url: Optional[str] = None

    cart_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"
    cart_ttl_seconds: int = 24 * 3600

    verify_timeout_seconds: float = 5.0
    verify_attempts: int = 4
    verify_backoff_seconds: Tuple[float, ...] = field(
        default=(0.5, 1.0, 2.0)
    )

    default_fee_rate: Decimal = Decimal("0.02")
    max_quantity_per_type: int = 100
    stale_order_seconds: int = 30 * 60
    reconcile_interval_seconds: int = 0

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        return cls(
            database_url=_env("DATABASE_URL", d.database_url),
            db_pool_size=int(_env("DB_POOL_SIZE", str(d.db_pool_size))),
            db_max_overflow=int(
                _env("DB_MAX_OVERFLOW", str(d.db_max_overflow))
            ),
            db_pool_timeout=int(
                _env("DB_POOL_TIMEOUT", str(d.db_pool_timeout))
            ),
            db_gate_limit=_opt_int(_env("DB_GATE_LIMIT")),
            environment=_env("ENVIRONMENT", d.environment),
            accept_pending_payments=_env_bool("ACCEPT_PENDING_PAYMENTS"),
            log_level=_env("LOG_LEVEL", d.log_level),
            session_secret=_env("SESSION_SECRET", d.session_secret),
            app_origin=_env("APP_ORIGIN"),
            payment_providers=_env("PAYMENT_PROVIDERS",
                                   d.payment_providers).lower(),
            mock_secret=_env("MOCK_SECRET", d.mock_secret),
            mock_webhook_url=_env("MOCK_WEBHOOK_URL", d.mock_webhook_url),
            mobile_money_base_url=_env("MOBILE_MONEY_BASE_URL",
                                       d.mobile_money_base_url),
            mobile_money_master_key=_env("MOBILE_MONEY_MASTER_KEY"),
            mobile_money_private_key=_env("MOBILE_MONEY_PRIVATE_KEY"),
            mobile_money_public_key=_env("MOBILE_MONEY_PUBLIC_KEY"),
            mobile_money_token=_env("MOBILE_MONEY_TOKEN"),
            mobile_money_callback_url=_env("MOBILE_MONEY_CALLBACK_URL"),
            store_name=_env("STORE_NAME", d.store_name),
            card_api_base=_env("CARD_API_BASE", d.card_api_base),
            card_secret_key=_env("CARD_SECRET_KEY"),
            card_webhook_secret=_env("CARD_WEBHOOK_SECRET"),
            fx_margin_bps=int(_env("FX_MARGIN_BPS", str(d.fx_margin_bps))),
            fx_quote_ttl_seconds=int(
                _env("FX_QUOTE_TTL_SECONDS", str(d.fx_quote_ttl_seconds))
            ),
            fx_fallback_xof_per_usd=int(
                _env("FX_FALLBACK_XOF_PER_USD",
                     str(d.fx_fallback_xof_per_usd))
            ),
            notify_webhook_url=_env("NOTIFY_WEBHOOK_URL"),
            cart_backend=_env("CART_BACKEND", d.cart_backend).lower(),
            redis_url=_env("REDIS_URL", d.redis_url),
            cart_ttl_seconds=int(
                _env("CART_TTL_SECONDS", str(d.cart_ttl_seconds))
            ),
            verify_timeout_seconds=float(
                _env("VERIFY_TIMEOUT_SECONDS", str(d.verify_timeout_seconds))
            ),
            verify_attempts=int(
                _env("VERIFY_ATTEMPTS", str(d.verify_attempts))
            ),
            verify_backoff_seconds=_parse_backoff(
                _env("VERIFY_BACKOFF_SECONDS", "0.5,1,2")
            ),
            default_fee_rate=Decimal(
                _env("DEFAULT_FEE_RATE", str(d.default_fee_rate))
            ),
            max_quantity_per_type=int(
                _env("MAX_QUANTITY_PER_TYPE", str(d.max_quantity_per_type))
            ),
            stale_order_seconds=int(
                _env("STALE_ORDER_SECONDS", str(d.stale_order_seconds))
            ),
            reconcile_interval_seconds=int(
                _env("RECONCILE_INTERVAL_SECONDS",
                     str(d.reconcile_interval_seconds))
            ),
        )
