import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import StorageUnavailable
from .helpers import from_iso
from .model.records import (
    DONATION_PREFIX, INDEX_PREFIX, DonationRecord, PaymentStatus,
    can_advance, k_index_entry,
)
from .model.store import BaseRecordStore

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 8
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _sort_newest_first(entries: List[Dict[str, Any]]) -> None:
    entries.sort(
        key=lambda e: from_iso(e.get("timestamp")) or _EPOCH,
        reverse=True,
    )


class DonationIndex:
    """Admin listing, one ``index:donations:{reference}`` entry per donation.

    Donations with different references never write the same key. Writers
    of the same reference go through a compare-and-set, and an entry only
    takes a status its stored status can advance to, so a late AUTHORIZED
    never hides a CAPTURED.
    """

    def __init__(self, store: BaseRecordStore,
                 max_attempts: int = MAX_CAS_ATTEMPTS) -> None:
        self.store = store
        self.max_attempts = max_attempts

    async def _update(self, entry: Dict[str, Any]) -> bool:
        key = k_index_entry(entry["reference"])
        new = PaymentStatus.parse(entry["status"])
        for _ in range(self.max_attempts):
            doc, version = await self.store.get_versioned(key)
            if doc is not None:
                old = PaymentStatus.parse(doc.get("status"))
                if old != new and not can_advance(old, new):
                    logger.debug("index %s stays %s, not %s",
                                 entry["reference"], old.value, new.value)
                    return True
            if await self.store.compare_and_set(
                key, {**(doc or {}), **entry}, version
            ):
                return True
            logger.debug("index entry %s version %d moved, retrying",
                         entry["reference"], version)
        logger.error("index update for %s lost %d races, giving up",
                     entry["reference"], self.max_attempts)
        return False

    async def upsert(self, record: DonationRecord) -> bool:
        """Add or refresh the entry for `record`; best effort, never raises."""
        try:
            return await self._update(record.index_entry())
        except StorageUnavailable as e:
            logger.error("index update for %s failed: %s",
                         record.reference, e)
            return False

    async def entries(self, limit: Optional[int] = None) -> List[Dict]:
        donations = []
        for key in await self.store.list(INDEX_PREFIX):
            doc = await self.store.get(key)
            if doc is not None:
                donations.append(doc)
        _sort_newest_first(donations)
        return donations if limit is None else donations[:limit]

    async def rebuild(self) -> int:
        """Recreate the index from every stored donation record.

        Entries whose donation record is gone are removed.
        """
        entries: Dict[str, Dict[str, Any]] = {}
        for key in await self.store.list(DONATION_PREFIX):
            doc = await self.store.get(key)
            if doc is None:
                continue
            try:
                entry = DonationRecord.from_doc(doc).index_entry()
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("skipping unreadable record %s: %s", key, e)
                continue
            entries[entry["reference"]] = entry

        for reference, entry in entries.items():
            await self.store.put(k_index_entry(reference), entry)
        stale = [
            key for key in await self.store.list(INDEX_PREFIX)
            if key[len(INDEX_PREFIX):] not in entries
        ]
        for key in stale:
            await self.store.delete(key)

        logger.info("donation index rebuilt with %d entries, %d stale removed",
                    len(entries), len(stale))
        return len(entries)
