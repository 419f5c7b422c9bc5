from typing import Dict

import httpx

from ..config import Settings
from ..errors import ConfigurationError
from .base import (
    CARD, MOBILE_MONEY, PAYMENT_METHODS,
    CardRequest, MobileMoneyRequest, PaymentProvider, PaymentRequest,
    PaymentResult, ProviderPayment, ProviderStatus, TicketLine,
)
from .fx import FXQuote, FxQuoteService
from .gateway import PaymentGateway
from ._card import CardProvider
from ._mobilemoney import MobileMoneyProvider
from ._mock import MockPay


# Factory keeps server.py free of provider constructors:
def new_providers(settings: Settings, http: httpx.AsyncClient,
                  fx: FxQuoteService) -> Dict[str, PaymentProvider]:
    mode = settings.payment_providers
    if mode == "mock":
        mock = MockPay(settings.mock_secret)
        return {MOBILE_MONEY: mock, CARD: mock}
    if mode == "live":
        return {
            MOBILE_MONEY: MobileMoneyProvider(
                http,
                base_url=settings.mobile_money_base_url,
                master_key=settings.mobile_money_master_key,
                private_key=settings.mobile_money_private_key,
                public_key=settings.mobile_money_public_key,
                token=settings.mobile_money_token,
                store_name=settings.store_name,
                callback_url=settings.mobile_money_callback_url,
                app_origin=settings.app_origin,
            ),
            CARD: CardProvider(
                http, fx,
                api_base=settings.card_api_base,
                secret_key=settings.card_secret_key,
                webhook_secret=settings.card_webhook_secret,
                margin_bps=settings.fx_margin_bps,
            ),
        }
    raise ConfigurationError(f"PAYMENT_PROVIDERS must be mock|live, "
                             f"got {mode!r}")


__all__ = [
    "CARD", "MOBILE_MONEY", "PAYMENT_METHODS",
    "CardRequest", "MobileMoneyRequest", "PaymentProvider", "PaymentRequest",
    "PaymentResult", "ProviderPayment", "ProviderStatus", "TicketLine",
    "FXQuote", "FxQuoteService", "PaymentGateway",
    "CardProvider", "MobileMoneyProvider", "MockPay", "new_providers",
]
