from __future__ import annotations
import inspect
from abc import ABC, abstractmethod
from typing import (
    Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union,
)

from loguru import logger

from ..errors import ValidationError
from ..helpers import now_ts

Selections = Dict[str, int]
# listener(owner, event_id, selections); may be sync or async
CartListener = Callable[[str, str, Selections], Union[None, Awaitable[None]]]

CART_UPDATED = "cartUpdated"


def prune(selections: Mapping) -> Selections:
    """Drop zero and negative lines; reject non-integer quantities."""
    out: Selections = {}
    for tt_id, q in (selections or {}).items():
        if isinstance(q, bool) or not isinstance(q, int):
            raise ValidationError("quantity must be an integer",
                                  code="quantity_not_integer")
        if q > 0:
            out[str(tt_id)] = q
    return out


class CartStore(ABC):
    """Per-owner, per-event ticket selections.

    Entries older than ``ttl_seconds`` are treated as absent (and removed)
    when read. Every write notifies subscribers with the new selections.
    """

    def __init__(self, ttl_seconds: int) -> None:
        self.ttl = ttl_seconds
        self._listeners: List[CartListener] = []

    # ---- storage primitives
    @abstractmethod
    async def _load(self, owner: str,
                    event_id: str) -> Optional[Tuple[Selections, float]]: ...

    @abstractmethod
    async def _load_all(
        self, owner: str
    ) -> Dict[str, Tuple[Selections, float]]: ...

    @abstractmethod
    async def _save(self, owner: str, event_id: str,
                    selections: Selections, ts: float) -> None: ...

    @abstractmethod
    async def _delete(self, owner: str, event_ids: List[str]) -> None: ...

    # ---- observers
    def subscribe(self, listener: CartListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    async def _notify(self, owner: str, event_id: str,
                      selections: Selections) -> None:
        for listener in list(self._listeners):
            try:
                res = listener(owner, event_id, dict(selections))
                if inspect.isawaitable(res):
                    await res
            except Exception as e:
                logger.warning("{} listener failed: {}", CART_UPDATED, e)

    def _expired(self, ts: float, now: Optional[float] = None) -> bool:
        return ((now if now is not None else now_ts()) - ts) > self.ttl

    # ---- operations
    async def get(self, owner: str, event_id: str) -> Selections:
        entry = await self._load(owner, event_id)
        if entry is None:
            return {}
        selections, ts = entry
        if self._expired(ts):
            await self._delete(owner, [event_id])
            return {}
        return selections

    async def all_carts(self, owner: str) -> Dict[str, Selections]:
        now = now_ts()
        out: Dict[str, Selections] = {}
        stale: List[str] = []
        entries = await self._load_all(owner)
        for event_id, (selections, ts) in entries.items():
            if self._expired(ts, now):
                stale.append(event_id)
            elif selections:
                out[event_id] = selections
        if stale:
            await self._delete(owner, stale)
        return out

    async def set(self, owner: str, event_id: str,
                  selections: Mapping) -> Selections:
        pruned = prune(selections)
        if not pruned:
            await self._delete(owner, [event_id])
        else:
            await self._save(owner, event_id, pruned, now_ts())
        await self._notify(owner, event_id, pruned)
        return pruned

    async def update_quantity(self, owner: str, event_id: str,
                              ticket_type_id: str,
                              quantity: int) -> Selections:
        current = await self.get(owner, event_id)
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("quantity must be an integer",
                                  code="quantity_not_integer")
        current[ticket_type_id] = max(0, quantity)
        return await self.set(owner, event_id, current)

    async def clear(self, owner: str, event_id: str) -> None:
        await self._delete(owner, [event_id])
        await self._notify(owner, event_id, {})

    async def clear_all(self, owner: str) -> None:
        event_ids = list((await self._load_all(owner)).keys())
        if not event_ids:
            return
        await self._delete(owner, event_ids)
        for event_id in event_ids:
            await self._notify(owner, event_id, {})

    async def summary(self, owner: str) -> dict:
        carts = await self.all_carts(owner)
        return {
            "total_events": len(carts),
            "total_items": sum(sum(s.values()) for s in carts.values()),
        }
