from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import List, Optional

import httpx
from loguru import logger

from .helpers import mask_email


@dataclass
class OrderConfirmation:
    order_id: str
    event_id: str
    total: Decimal
    currency: str
    ticket_codes: List[str] = field(default_factory=list)
    user_id: Optional[str] = None
    email: Optional[str] = None

    def as_dict(self) -> dict:
        d = asdict(self)
        d["total"] = str(self.total)
        return d


class NotificationSink(ABC):
    @abstractmethod
    async def order_confirmed(self, event: OrderConfirmation) -> None: ...


class LogNotificationSink(NotificationSink):
    async def order_confirmed(self, event: OrderConfirmation) -> None:
        logger.info("order confirmed: {} ({} tickets, {} {}, {})",
                    event.order_id, len(event.ticket_codes), event.total,
                    event.currency,
                    mask_email(event.email) or event.user_id or "-")


class WebhookNotificationSink(NotificationSink):
    def __init__(self, http: httpx.AsyncClient, url: str) -> None:
        self.http = http
        self.url = url

    async def order_confirmed(self, event: OrderConfirmation) -> None:
        resp = await self.http.post(self.url, json={
            "type": "order.confirmed",
            "data": event.as_dict(),
        })
        resp.raise_for_status()


async def emit_safely(sink: NotificationSink,
                      event: OrderConfirmation) -> bool:
    """Fire-and-forget: a failing sink never fails settlement."""
    try:
        await sink.order_confirmed(event)
        return True
    except Exception as e:
        logger.warning("notification for order {} not delivered: {}",
                       event.order_id, e)
        return False
