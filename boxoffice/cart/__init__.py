from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import ConfigurationError
from ..infra.sql import Gated
from ._base import CART_UPDATED, CartListener, CartStore, prune
from ._redis import RedisCartStore
from ._sql import SqlCartStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *,
              sessions: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 24 * 3600) -> CartStore:
    if backend == "redis":
        if r is None:
            raise ConfigurationError("CartStore(redis) requires r=redis.Redis")
        return RedisCartStore(r=r, ttl_seconds=ttl_seconds)
    if backend == "sql":
        if sessions is None or gated is None:
            raise ConfigurationError(
                "CartStore(sql) requires sessions= and gated="
            )
        return SqlCartStore(sessions=sessions, gated=gated,
                            ttl_seconds=ttl_seconds)
    raise ConfigurationError(
        f"CART_BACKEND must be sql|redis, got {backend!r}"
    )


__all__ = ["CART_UPDATED", "CartListener", "CartStore", "RedisCartStore",
           "SqlCartStore", "new_store", "prune"]
