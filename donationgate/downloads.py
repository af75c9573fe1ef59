import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from .errors import (
    Expired, NoPaymentRecord, NotFound, PaymentNotCompleted,
    StorageUnavailable,
)
from .helpers import now_utc
from .model.records import (
    ELIGIBLE, DonationRecord, DownloadGrant, k_donation, k_grant
)
from .model.store import BaseRecordStore

logger = logging.getLogger(__name__)

DEFAULT_ASSET = "default"


@dataclass(frozen=True)
class DownloadAuthorization:
    download_id: str
    asset: str
    grant: DownloadGrant
    donation: DonationRecord

    @property
    def authorized(self) -> bool:
        return True


class DownloadAuthorizer:
    """Decide whether a presented download id may release the asset.

    Grants stay usable until they expire; each successful check records
    ``used``/``lastUsedAt`` on the grant without ever denying on it.
    """

    def __init__(self, store: BaseRecordStore, *,
                 clock: Callable[[], datetime] = now_utc) -> None:
        self.store = store
        self.clock = clock

    async def check(self, download_id: str) -> DownloadAuthorization:
        """Validate without recording usage. Raises a DownloadDenied."""
        doc = await self.store.get(k_grant(download_id))
        if doc is None:
            raise NotFound(f"no grant {download_id}")
        grant = DownloadGrant.from_doc(doc)

        if grant.is_expired(self.clock()):
            raise Expired(f"grant {download_id} expired")

        doc = await self.store.get(k_donation(grant.reference, download_id))
        if doc is None:
            raise NoPaymentRecord(
                f"no donation for grant {download_id}"
            )
        donation = DonationRecord.from_doc(doc)

        if donation.status not in ELIGIBLE:
            raise PaymentNotCompleted(
                f"payment {donation.reference} is {donation.status.value}"
            )
        return DownloadAuthorization(
            download_id=download_id,
            asset=grant.asset or DEFAULT_ASSET,
            grant=grant,
            donation=donation,
        )

    async def authorize(self, download_id: str) -> DownloadAuthorization:
        auth = await self.check(download_id)
        await self._mark_used(auth.grant)
        return auth

    async def _mark_used(self, grant: DownloadGrant) -> Optional[bool]:
        key = k_grant(grant.download_id)
        try:
            doc, version = await self.store.get_versioned(key)
            if doc is None:
                return False
            current = DownloadGrant.from_doc(doc)
            used = replace(current, used=True, last_used_at=self.clock())
            # a lost race means someone else just recorded a use
            return await self.store.compare_and_set(
                key, used.to_doc(), version
            )
        except StorageUnavailable as e:
            logger.warning("could not record use of grant %s: %s",
                           grant.download_id, e)
            return None
