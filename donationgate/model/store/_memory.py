from __future__ import annotations
from typing import Dict, List, Optional, Tuple

from ._base import BaseRecordStore, Doc, dumps, loads


class RecordStore(BaseRecordStore):
    """In-process backend for development and tests.

    Documents are kept serialized so callers never share mutable state
    with the store.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[int, str]] = {}

    async def get(self, key: str) -> Optional[Doc]:
        async with self._op("get"):
            entry = self._data.get(key)
        return loads(entry[1]) if entry else None

    async def get_versioned(self, key: str) -> Tuple[Optional[Doc], int]:
        async with self._op("get_versioned"):
            entry = self._data.get(key)
        if entry is None:
            return None, 0
        return loads(entry[1]), entry[0]

    async def put(self, key: str, doc: Doc) -> None:
        async with self._op("put"):
            version = self._data.get(key, (0, ""))[0]
            self._data[key] = (version + 1, dumps(doc))

    async def compare_and_set(
        self, key: str, doc: Doc, expected_version: int
    ) -> bool:
        async with self._op("cas"):
            version = self._data.get(key, (0, ""))[0]
            if version != expected_version:
                return False
            self._data[key] = (version + 1, dumps(doc))
            return True

    async def delete(self, key: str) -> None:
        async with self._op("delete"):
            self._data.pop(key, None)

    async def list(self, prefix: str) -> List[str]:
        async with self._op("list"):
            return sorted(k for k in self._data if k.startswith(prefix))
