from __future__ import annotations
from typing import List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...infra.sql import Gated
from ._base import BaseRecordStore, Doc, dumps, loads


# ------------------------------------------------------------------------------
# DDL (idempotent), valid for PostgreSQL and SQLite
# ------------------------------------------------------------------------------
SQL_CREATE_RECORDS = r"""
CREATE TABLE IF NOT EXISTS records (
  key      TEXT PRIMARY KEY,
  data     TEXT NOT NULL,
  version  INTEGER NOT NULL
);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    await db_or_conn.execute(text(SQL_CREATE_RECORDS))


def _like_escape(prefix: str) -> str:
    return (
        prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )


class RecordStore(BaseRecordStore):
    backend_errors = (SQLAlchemyError, OSError)

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get(self, key: str) -> Optional[Doc]:
        doc, _ = await self.get_versioned(key)
        return doc

    async def get_versioned(self, key: str) -> Tuple[Optional[Doc], int]:
        async with self._op("get_versioned"):
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(text("""
                      SELECT data, version FROM records WHERE key = :k
                    """), {"k": key})).first()
        if row is None:
            return None, 0
        return loads(row[0]), int(row[1])

    async def put(self, key: str, doc: Doc) -> None:
        async with self._op("put"):
            async with self.gated():
                async with self.db.begin():
                    await self.db.execute(text("""
                      INSERT INTO records(key, data, version)
                      VALUES (:k, :d, 1)
                      ON CONFLICT (key) DO UPDATE SET
                        data = EXCLUDED.data,
                        version = records.version + 1
                    """), {"k": key, "d": dumps(doc)})

    async def compare_and_set(
        self, key: str, doc: Doc, expected_version: int
    ) -> bool:
        async with self._op("cas"):
            async with self.gated():
                async with self.db.begin():
                    if expected_version == 0:
                        row = (await self.db.execute(text("""
                          INSERT INTO records(key, data, version)
                          VALUES (:k, :d, 1)
                          ON CONFLICT (key) DO NOTHING
                          RETURNING key
                        """), {"k": key, "d": dumps(doc)})).first()
                        return row is not None
                    result = await self.db.execute(text("""
                      UPDATE records SET data = :d, version = :nv
                      WHERE key = :k AND version = :v
                    """), {
                        "k": key,
                        "d": dumps(doc),
                        "v": expected_version,
                        "nv": expected_version + 1,
                    })
                    return result.rowcount == 1

    async def delete(self, key: str) -> None:
        async with self._op("delete"):
            async with self.gated():
                async with self.db.begin():
                    await self.db.execute(text("""
                      DELETE FROM records WHERE key = :k
                    """), {"k": key})

    async def list(self, prefix: str) -> List[str]:
        async with self._op("list"):
            async with self.gated():
                async with self.db.begin():
                    rows = (await self.db.execute(text(r"""
                      SELECT key FROM records
                      WHERE key LIKE :p ESCAPE '\'
                      ORDER BY key
                    """), {"p": _like_escape(prefix) + "%"})).all()
        return [r[0] for r in rows]
