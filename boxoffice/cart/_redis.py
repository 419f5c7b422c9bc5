from __future__ import annotations
import json
from typing import Dict, List, Optional, Tuple

import redis.asyncio as redis

from ._base import CART_UPDATED, CartStore, Selections


# ---- keys
def k_cart(owner: str) -> str: return f"cart:{owner}"


class RedisCartStore(CartStore):
    """One hash per owner, one field per event. Writes are also published
    on the ``cartUpdated`` channel so other instances can react."""

    def __init__(self, *, r: redis.Redis, ttl_seconds: int) -> None:
        super().__init__(ttl_seconds)
        self.r = r

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Tuple[Selections, float]]:
        if not raw:
            return None
        try:
            doc = json.loads(raw)
            return dict(doc.get("selections") or {}), \
                float(doc.get("updated_at", 0.0))
        except (ValueError, AttributeError):
            return None

    async def _load(self, owner: str,
                    event_id: str) -> Optional[Tuple[Selections, float]]:
        return self._decode(await self.r.hget(k_cart(owner), event_id))

    async def _load_all(self, owner: str
                        ) -> Dict[str, Tuple[Selections, float]]:
        h = await self.r.hgetall(k_cart(owner))
        out = {}
        for event_id, raw in (h or {}).items():
            entry = self._decode(raw)
            if entry is not None:
                out[event_id] = entry
        return out

    async def _save(self, owner: str, event_id: str,
                    selections: Selections, ts: float) -> None:
        doc = json.dumps({"selections": selections, "updated_at": ts})
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_cart(owner), event_id, doc)
        # the whole hash outlives its freshest entry by one ttl
        pipe.expire(k_cart(owner), self.ttl + 60)
        await pipe.execute()

    async def _delete(self, owner: str, event_ids: List[str]) -> None:
        if event_ids:
            await self.r.hdel(k_cart(owner), *event_ids)

    async def _notify(self, owner: str, event_id: str,
                      selections: Selections) -> None:
        await self.r.publish(CART_UPDATED, json.dumps({
            "owner": owner, "event_id": event_id, "selections": selections,
        }))
        await super()._notify(owner, event_id, selections)
