from __future__ import annotations
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple

import orjson

from ...errors import StorageUnavailable
from ...infra.timings import timeit

Doc = Dict[str, Any]


def dumps(doc: Doc) -> str:
    return orjson.dumps(doc).decode()


def loads(raw) -> Optional[Doc]:
    if raw is None:
        return None
    return orjson.loads(raw)


class BaseRecordStore(ABC):
    """Key -> JSON document store with per-key versions.

    Versions start at 1 on first write and grow by one per write; an
    absent key has version 0. Backends raise StorageUnavailable for any
    failure of the underlying service.
    """
    # exception types of the backend that mean "store unavailable"
    backend_errors: Tuple[type, ...] = ()

    @asynccontextmanager
    async def _op(self, name: str):
        async with timeit(f"store.{name}"):
            try:
                yield
            except self.backend_errors as e:
                raise StorageUnavailable(f"store.{name}: {e}") from e

    @abstractmethod
    async def get(self, key: str) -> Optional[Doc]: ...

    @abstractmethod
    async def get_versioned(self, key: str) -> Tuple[Optional[Doc], int]: ...

    @abstractmethod
    async def put(self, key: str, doc: Doc) -> None: ...

    @abstractmethod
    async def compare_and_set(
        self, key: str, doc: Doc, expected_version: int
    ) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def list(self, prefix: str) -> List[str]: ...

    async def create(self, key: str, doc: Doc) -> bool:
        return await self.compare_and_set(key, doc, 0)
