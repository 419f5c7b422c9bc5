from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from sqlalchemy import select

from boxoffice.errors import PaymentProviderError
from boxoffice.fees import FeeRuleEngine
from boxoffice.infra.sql import Gated, make_async_engine
from boxoffice.inventory import InventoryValidator
from boxoffice.model.db import (
    Event, Order, Payment, ServiceFeeRule, Ticket, TicketType, create_schema,
)
from boxoffice.orders import AuthenticatedOrderCreator, GuestOrderCreator
from boxoffice.payments import (
    CARD, MOBILE_MONEY, MockPay, PaymentGateway, PaymentProvider,
    PaymentRequest, ProviderPayment, ProviderStatus,
)
from boxoffice.payments.base import PENDING

EVENT_ID = "evt-concert"
DRAFT_EVENT_ID = "evt-draft"
OTHER_EVENT_ID = "evt-other"
STD = "tt-std"        # 5000 XOF, 10 left
VIP = "tt-vip"        # 20000 XOF, 5 left, 4 per order
PAUSED = "tt-paused"  # sales disabled
OTHER = "tt-other"    # belongs to OTHER_EVENT_ID


async def seed(sessions) -> None:
    async with sessions() as db:
        db.add_all([
            Event(id=EVENT_ID, title="Concert", currency="XOF",
                  status="PUBLISHED"),
            Event(id=DRAFT_EVENT_ID, title="Draft", currency="XOF",
                  status="DRAFT"),
            Event(id=OTHER_EVENT_ID, title="Other", currency="XOF",
                  status="PUBLISHED"),
            TicketType(id=STD, event_id=EVENT_ID, name="Standard",
                       price=Decimal("5000"), available=10),
            TicketType(id=VIP, event_id=EVENT_ID, name="VIP",
                       price=Decimal("20000"), available=5, max_per_order=4),
            TicketType(id=PAUSED, event_id=EVENT_ID, name="Early",
                       price=Decimal("3000"), available=10,
                       sales_enabled=False),
            TicketType(id=OTHER, event_id=OTHER_EVENT_ID, name="Other",
                       price=Decimal("1000"), available=100),
            ServiceFeeRule(id="fee-global", name="Service Fee",
                           scope="GLOBAL", fee_type="PERCENTAGE",
                           fee_value=Decimal("0.02"), applies_to="BUYER",
                           priority=0, active=True),
        ])
        await db.commit()


def seed_database(url: str) -> None:
    async def main():
        engine, sessions, _ = make_async_engine(url)
        try:
            await create_schema(engine)
            await seed(sessions)
        finally:
            await engine.dispose()
    asyncio.run(main())


class RecordingProvider(PaymentProvider):
    """Counts calls; can be told to fail or to report an outcome."""

    name = "recording"

    def __init__(self, *, fail: Optional[Exception] = None,
                 status: str = PENDING, details: Optional[dict] = None):
        self.fail = fail
        self.status = status
        self.details = details or {}
        self.requests: List[PaymentRequest] = []
        self.status_calls = 0

    async def create_payment(self, request, *, internal_token):
        self.requests.append(request)
        if self.fail is not None:
            raise self.fail
        n = len(self.requests)
        return ProviderPayment(provider_token=f"rec_{n}",
                               payment_url=f"https://pay.example/{n}",
                               provider_payment_id=f"rec_{n}")

    async def fetch_status(self, provider_token):
        self.status_calls += 1
        if isinstance(self.status, Exception):
            raise self.status
        return ProviderStatus(status=self.status,
                              provider_payment_id=provider_token,
                              details=dict(self.details))

    def parse_callback(self, payload, headers):
        return None


def transient_error() -> PaymentProviderError:
    return PaymentProviderError("provider timeout", provider="recording",
                                transient=True, code="provider_unreachable")


@dataclass
class Env:
    """Services wired against one engine, all inside one event loop."""
    sessions: object
    gated: Gated
    providers: Dict[str, PaymentProvider]

    def __post_init__(self):
        self.gateway = PaymentGateway(self.sessions, self.gated,
                                      self.providers)
        self.inventory = InventoryValidator(self.sessions, self.gated)
        self.fees = FeeRuleEngine(self.sessions, self.gated)
        args = (self.sessions, self.gated, self.inventory, self.fees,
                self.gateway)
        self.auth_orders = AuthenticatedOrderCreator(*args)
        self.guest_orders = GuestOrderCreator(*args)

    async def available(self, tt_id: str) -> int:
        async with self.sessions() as db:
            return (await db.get(TicketType, tt_id)).available

    async def orders(self) -> List[Order]:
        async with self.sessions() as db:
            return list((await db.execute(select(Order))).scalars().all())

    async def payments(self) -> List[Payment]:
        async with self.sessions() as db:
            return list((await db.execute(select(Payment))).scalars().all())

    async def tickets(self, order_id: str) -> List[Ticket]:
        async with self.sessions() as db:
            return list((await db.execute(
                select(Ticket).where(Ticket.order_id == order_id)
            )).scalars().all())


@pytest.fixture
def database_url(tmp_path) -> str:
    url = f"sqlite:///{tmp_path / 'boxoffice.db'}"
    seed_database(url)
    return url


@pytest.fixture
def mock_provider() -> MockPay:
    return MockPay("test-secret")


@pytest.fixture
def run(database_url, mock_provider):
    """run(scenario, providers=None): await scenario(env) on a fresh loop.

    Providers default to the sandbox for both methods.
    """
    def _run(scenario, providers: Optional[dict] = None):
        async def main():
            engine, sessions, gated = make_async_engine(database_url)
            try:
                env = Env(sessions, gated, providers or {
                    MOBILE_MONEY: mock_provider, CARD: mock_provider,
                })
                return await scenario(env)
            finally:
                await engine.dispose()
        return asyncio.run(main())
    return _run
