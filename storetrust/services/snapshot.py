"""Snapshot cache for composite store detail views.

The cache takes an injected store (Postgres or in-memory) and an injected
clock, so expiry is testable without sleeping.

Rules:
- get() never returns an entry whose expires_at has passed
- expired entries are purged on read (best-effort: failures only log)
- put() stamps created_at = now and expires_at = now + ttl
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from storetrust.settings import get_settings

logger = logging.getLogger("uvicorn.error")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass
class SnapshotEntry:
    store_id: int
    payload: dict[str, Any]
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return _as_utc(self.expires_at) <= _as_utc(now)


class SnapshotStore(Protocol):
    async def load(self, store_id: int) -> SnapshotEntry | None: ...

    async def save(self, entry: SnapshotEntry) -> None: ...

    async def delete(self, store_id: int) -> None: ...


class InMemorySnapshotStore:
    def __init__(self) -> None:
        self.entries: dict[int, SnapshotEntry] = {}

    async def load(self, store_id: int) -> SnapshotEntry | None:
        return self.entries.get(store_id)

    async def save(self, entry: SnapshotEntry) -> None:
        self.entries[entry.store_id] = entry

    async def delete(self, store_id: int) -> None:
        self.entries.pop(store_id, None)


class PostgresSnapshotStore:
    """store_detail_snapshots rows through a StoreRepository."""

    def __init__(self, repo):
        self.repo = repo

    async def load(self, store_id: int) -> SnapshotEntry | None:
        row = await self.repo.get_snapshot(store_id)
        if row is None:
            return None
        try:
            payload = json.loads(row.snapshot_json)
        except json.JSONDecodeError:
            logger.warning(f"[snapshot] corrupt payload for store {store_id}")
            return None
        return SnapshotEntry(
            store_id=store_id,
            payload=payload,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )

    async def save(self, entry: SnapshotEntry) -> None:
        await self.repo.put_snapshot(entry.store_id, entry.payload, entry.created_at, entry.expires_at)

    async def delete(self, store_id: int) -> None:
        await self.repo.delete_snapshot(store_id)


class SnapshotCache:
    def __init__(
        self,
        store: SnapshotStore,
        clock: Clock = utc_now,
        ttl: timedelta | None = None,
    ):
        self.store = store
        self.clock = clock
        self.ttl = ttl or timedelta(days=get_settings().snapshot_ttl_days)

    async def get(self, store_id: int) -> SnapshotEntry | None:
        entry = await self.store.load(store_id)
        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            logger.info(f"[snapshot] expired for store {store_id}")
            try:
                await self.store.delete(store_id)
            except Exception as e:
                logger.warning(f"[snapshot] purge failed for store {store_id}: {e}")
            return None
        return entry

    async def put(self, store_id: int, payload: dict[str, Any]) -> SnapshotEntry:
        now = self.clock()
        entry = SnapshotEntry(store_id=store_id, payload=payload, created_at=now, expires_at=now + self.ttl)
        await self.store.save(entry)
        return entry

