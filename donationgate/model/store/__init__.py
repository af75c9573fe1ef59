import asyncio
import logging
import os
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ...errors import StorageUnavailable
from ...infra.sql import Gated
from ._base import BaseRecordStore

logger = logging.getLogger(__name__)

# 'redis' | 'pg' | 'memory'
BACKEND = os.getenv("RECORD_BACKEND", "redis").lower()

if BACKEND == "pg":
    from ._postgres import RecordStore as _RecordStore
elif BACKEND == "memory":
    from ._memory import RecordStore as _RecordStore
else:
    from ._redis import RecordStore as _RecordStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Optional[Gated] = None) -> BaseRecordStore:
    if BACKEND == "pg":
        if db is None or gated is None:
            raise RuntimeError(
                "RecordStore(pg) requires db=AsyncSession and gated=Gated"
            )
        return _RecordStore(db=db, gated=gated)
    elif BACKEND == "memory":
        return _RecordStore()
    else:
        if r is None:
            raise RuntimeError("RecordStore(redis) requires r=redis.Redis")
        return _RecordStore(r=r)


async def verify_written(
    store: BaseRecordStore,
    key: str,
    attempts: int = 3,
    backoff: float = 0.05,
) -> bool:
    """Re-read `key` until it is visible; False if it never shows up.

    The store may not offer read-your-writes, so a miss right after a
    write is retried with a doubling delay before giving up.
    """
    delay = backoff
    for attempt in range(1, attempts + 1):
        try:
            if await store.get(key) is not None:
                return True
        except StorageUnavailable as e:
            logger.warning("verify %s attempt %d failed: %s", key, attempt, e)
        if attempt < attempts:
            await asyncio.sleep(delay)
            delay *= 2
    logger.warning("write to %s not visible after %d reads", key, attempts)
    return False


RecordStore = _RecordStore
__all__ = [
    "BaseRecordStore", "RecordStore", "new_store", "verify_written",
    "BACKEND",
]
