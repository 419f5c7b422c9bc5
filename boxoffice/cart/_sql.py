from __future__ import annotations
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..infra.sql import Gated
from ..model.db import CartEntry
from ._base import CartStore, Selections


class SqlCartStore(CartStore):
    def __init__(self, *, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated, ttl_seconds: int) -> None:
        super().__init__(ttl_seconds)
        self.sessions = sessions
        self.gated = gated

    async def _load(self, owner: str,
                    event_id: str) -> Optional[Tuple[Selections, float]]:
        async with self.sessions() as db:
            async with self.gated():
                row = await db.get(CartEntry, (owner, event_id))
        if row is None:
            return None
        return dict(row.selections or {}), float(row.updated_at)

    async def _load_all(self, owner: str
                        ) -> Dict[str, Tuple[Selections, float]]:
        async with self.sessions() as db:
            async with self.gated():
                rows = (await db.execute(
                    select(CartEntry).where(CartEntry.owner == owner)
                )).scalars().all()
        return {
            r.event_id: (dict(r.selections or {}), float(r.updated_at))
            for r in rows
        }

    async def _save(self, owner: str, event_id: str,
                    selections: Selections, ts: float) -> None:
        async with self.sessions() as db:
            async with self.gated():
                await db.merge(CartEntry(owner=owner, event_id=event_id,
                                         selections=selections,
                                         updated_at=ts))
                await db.commit()

    async def _delete(self, owner: str, event_ids: List[str]) -> None:
        async with self.sessions() as db:
            async with self.gated():
                await db.execute(delete(CartEntry).where(
                    CartEntry.owner == owner,
                    CartEntry.event_id.in_(event_ids),
                ))
                await db.commit()
