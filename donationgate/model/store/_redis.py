from __future__ import annotations
import re
from typing import List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ._base import BaseRecordStore, Doc, dumps, loads

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _glob_escape(prefix: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", prefix)


class RecordStore(BaseRecordStore):
    """One hash per key: {data: <json>, version: <int>}.

    Expects a client created with decode_responses=True.
    """
    backend_errors = (RedisError, OSError)

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def get(self, key: str) -> Optional[Doc]:
        async with self._op("get"):
            raw = await self.r.hget(key, "data")
        return loads(raw)

    async def get_versioned(self, key: str) -> Tuple[Optional[Doc], int]:
        async with self._op("get_versioned"):
            raw, version = await self.r.hmget(key, ["data", "version"])
        if raw is None:
            return None, 0
        return loads(raw), int(version or 0)

    async def put(self, key: str, doc: Doc) -> None:
        async with self._op("put"):
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(key, "data", dumps(doc))
            pipe.hincrby(key, "version", 1)
            await pipe.execute()

    async def compare_and_set(
        self, key: str, doc: Doc, expected_version: int
    ) -> bool:
        async with self._op("cas"):
            async with self.r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    current = await pipe.hget(key, "version")
                    if int(current or 0) != expected_version:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.hset(key, mapping={
                        "data": dumps(doc),
                        "version": expected_version + 1,
                    })
                    await pipe.execute()
                except WatchError:
                    # someone wrote between WATCH and EXEC
                    return False
            return True

    async def delete(self, key: str) -> None:
        async with self._op("delete"):
            await self.r.delete(key)

    async def list(self, prefix: str) -> List[str]:
        async with self._op("list"):
            keys = [
                k async for k in self.r.scan_iter(
                    match=f"{_glob_escape(prefix)}*", count=500
                )
            ]
        return sorted(keys)
