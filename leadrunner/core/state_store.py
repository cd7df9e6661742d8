"""
Durable key/value store.

SQLite persistence with async support. Every in-memory structure of the
orchestrator is a cache over this store: writes are awaited before the caller
reaches its next suspension point, so a restart never loses a transition.
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)

FINISHED_JOBS_KEY = "finishedJobIds"
DRIVER_LOCK_KEY = "activeDriver"


class StateStore:
    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_schema(self, db: aiosqlite.Connection):
        if self._initialized:
            return
        await db.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        await db.commit()
        self._initialized = True

    async def initialize(self):
        """Create the database file and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await self._ensure_schema(db)

    async def get(self, key: str, default: Any = None) -> Any:
        values = await self.get_many([key])
        return values.get(key, default)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        if not self._initialized:
            await self.initialize()
        placeholders = ",".join("?" for _ in keys)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT key, value FROM kv_store WHERE key IN ({placeholders})", keys
            ) as cursor:
                rows = await cursor.fetchall()
        return {key: json.loads(value) for key, value in rows}

    async def set(self, key: str, value: Any):
        await self.set_many({key: value})

    async def set_many(self, items: Dict[str, Any]):
        """Write several keys in one transaction."""
        if not self._initialized:
            await self.initialize()
        now = time.time()
        rows = [(key, json.dumps(value), now) for key, value in items.items()]
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executemany("""
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """, rows)
                await db.commit()

    async def remove(self, *keys: str):
        if not keys:
            return
        if not self._initialized:
            await self.initialize()
        placeholders = ",".join("?" for _ in keys)
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(f"DELETE FROM kv_store WHERE key IN ({placeholders})", list(keys))
                await db.commit()


class FinishedJobIds:
    """
    Persisted, bounded record of jobs resolved locally.

    Guards against re-claiming a job whose remote status update did not land.
    Insertion order is kept so eviction drops the oldest id first.
    """

    def __init__(self, store: StateStore, limit: int = 100):
        self.store = store
        self.limit = limit
        self._ids: "OrderedDict[str, None]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def load(self):
        stored = await self.store.get(FINISHED_JOBS_KEY, [])
        self._ids = OrderedDict((str(job_id), None) for job_id in stored[-self.limit:])
        logger.info(f"Loaded {len(self._ids)} finished job ids")

    def __contains__(self, job_id: object) -> bool:
        return str(job_id) in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def ids(self) -> List[str]:
        return list(self._ids)

    async def add(self, job_id: str):
        async with self._lock:
            job_id = str(job_id)
            if job_id in self._ids:
                return
            self._ids[job_id] = None
            while len(self._ids) > self.limit:
                self._ids.popitem(last=False)
            await self.store.set(FINISHED_JOBS_KEY, list(self._ids))


class DriverLock:
    """
    Single "active driver" record shared by the executor and the navigators.

    Whoever holds it is the only component allowed to open or drive rendering
    surfaces. Acquisition is re-entrant for the current owner.
    """

    def __init__(self, store: StateStore, enabled: bool = True):
        self.store = store
        self.enabled = enabled
        self._lock = asyncio.Lock()

    async def owner(self) -> Optional[str]:
        record = await self.store.get(DRIVER_LOCK_KEY)
        return record.get("owner") if record else None

    async def acquire(self, owner: str) -> bool:
        if not self.enabled:
            return True
        async with self._lock:
            record = await self.store.get(DRIVER_LOCK_KEY)
            if record and record.get("owner") != owner:
                logger.info(f"Driver lock held by {record.get('owner')}, refused for {owner}")
                return False
            await self.store.set(DRIVER_LOCK_KEY, {"owner": owner, "acquiredAt": time.time()})
            return True

    async def release(self, owner: str):
        if not self.enabled:
            return
        async with self._lock:
            record = await self.store.get(DRIVER_LOCK_KEY)
            if record and record.get("owner") == owner:
                await self.store.remove(DRIVER_LOCK_KEY)

    async def reset_stale(self, keep_owner: Optional[str] = None):
        """Drop a record left by a previous process unless it belongs to ``keep_owner``."""
        async with self._lock:
            record = await self.store.get(DRIVER_LOCK_KEY)
            if record and record.get("owner") != keep_owner:
                logger.info(f"Releasing stale driver lock held by {record.get('owner')}")
                await self.store.remove(DRIVER_LOCK_KEY)
