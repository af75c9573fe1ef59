"""Payment reconciliation: from a normalized event to donation + grant.

Per payment reference the stored status follows
``CREATED -> AUTHORIZED -> CAPTURED`` with ``CANCELLED``/``FAILED`` as
terminal exits, and never moves backwards. Deliveries may repeat or
arrive out of order; each one only ever advances what is stored.

Grant issuance is idempotent per reference. The first delivery claims
``payment:{reference}`` with a create-if-absent write and mints the
download id inside that claim. Every later delivery finds the claim,
re-uses its download id, repairs a grant or record a crashed earlier
attempt did not finish, and then advances the status.

A CANCELLED or FAILED event that finds no record leaves its status on the
claim (creating one without a download id if needed), so an AUTHORIZED
event arriving after it issues nothing.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, NamedTuple, Optional, Tuple

from .capture import CaptureController
from .errors import CaptureNotAllowed, DonationNotFound, StorageUnavailable
from .helpers import (
    days, from_iso, major_to_minor, new_download_id, now_utc, to_iso
)
from .index import DonationIndex
from .model.records import (
    ELIGIBLE, TERMINAL, Amount, DonationRecord, DownloadGrant,
    PaymentEvent, PaymentStatus, UserProfile, can_advance, k_donation,
    k_donations_of, k_grant, k_payment,
)
from .model.store import BaseRecordStore, verify_written

logger = logging.getLogger(__name__)

MAX_ADVANCE_ATTEMPTS = 5


class ProcessingResult(NamedTuple):
    # created | duplicate | advanced | ignored
    outcome: str
    reference: str
    status: PaymentStatus
    download_id: Optional[str] = None


class DonationService:
    def __init__(
        self,
        store: BaseRecordStore,
        capture: CaptureController,
        index: Optional[DonationIndex] = None,
        *,
        clock: Callable[[], datetime] = now_utc,
        grant_ttl: timedelta = days(7),
        verify_writes: bool = True,
    ) -> None:
        self.store = store
        self.capture = capture
        self.index = index if index is not None else DonationIndex(store)
        self.clock = clock
        self.grant_ttl = grant_ttl
        self.verify_writes = verify_writes

    # ----------------------------
    # inbound events
    # ----------------------------
    async def handle_event(self, event: PaymentEvent) -> ProcessingResult:
        if event.status not in ELIGIBLE:
            return await self._handle_non_eligible(event)

        claim = {
            "reference": event.reference,
            "downloadId": new_download_id(),
            "createdAt": to_iso(self.clock()),
        }
        if not await self.store.create(k_payment(event.reference), claim):
            return await self._handle_redelivery(event)

        status = await self.capture.auto_capture(event)
        record, grant = self._build(event.with_status(status), claim)
        # grant first: a grant without its record is denied, not served
        await self.store.create(k_grant(grant.download_id), grant.to_doc())
        if not await self._persist_record(record):
            # a concurrent redelivery wrote the record from the claim
            key = k_donation(record.reference, record.download_id)
            doc, version = await self.store.get_versioned(key)
            if doc is None:
                raise StorageUnavailable(f"{key} not readable")
            return await self._advance(key, doc, version, record.status,
                                       unchanged="duplicate")
        logger.info("donation %s recorded as %s, grant %s expires %s",
                    record.reference, record.status.value,
                    grant.download_id, to_iso(grant.expires_at))
        status = await self._apply_claim_status(record)
        return ProcessingResult(
            "created", record.reference, status, record.download_id
        )

    async def _handle_redelivery(
        self, event: PaymentEvent
    ) -> ProcessingResult:
        """An eligible event for a reference that is already claimed.

        A claim without a download id was left by a payment that ended
        (CANCELLED or FAILED) before any eligible event arrived; nothing
        is issued for it. Otherwise the grant and record are repaired if
        an earlier attempt died halfway. A repaired record keeps the
        redelivered status and is not auto-captured, since the claiming
        delivery may still be capturing; an admin capture or a later
        CAPTURED event moves it on.
        """
        claim = await self.store.get(k_payment(event.reference))
        if claim is None:
            # create() saw the claim but the read does not (yet)
            raise StorageUnavailable(
                f"claim for {event.reference} not readable"
            )
        download_id = claim.get("downloadId")
        if not download_id:
            ended = PaymentStatus.parse(claim.get("status"))
            logger.info("payment %s already ended as %s, %s ignored",
                        event.reference, ended.value, event.status.value)
            return ProcessingResult("ignored", event.reference, ended)
        key = k_donation(event.reference, download_id)

        record, grant = self._build(event, claim)
        await self.store.create(k_grant(download_id), grant.to_doc())

        doc, version = await self.store.get_versioned(key)
        if doc is None:
            if await self._persist_record(record):
                logger.warning("donation %s repaired from its claim",
                               event.reference)
                status = await self._apply_claim_status(record)
                return ProcessingResult(
                    "created", event.reference, status, download_id
                )
            doc, version = await self.store.get_versioned(key)
            if doc is None:
                raise StorageUnavailable(f"{key} not readable")
        return await self._advance(key, doc, version, event.status,
                                   unchanged="duplicate")

    async def _handle_non_eligible(
        self, event: PaymentEvent
    ) -> ProcessingResult:
        found = await self._find(event.reference)
        if found is None and event.status in TERMINAL:
            await self._end_claim(event.reference, event.status)
            # the claiming delivery may have written its record meanwhile
            found = await self._find(event.reference)
        if found is None:
            logger.info("payment %s is %s, nothing to record",
                        event.reference, event.status.value)
            return ProcessingResult("ignored", event.reference, event.status)
        key, doc, version = found
        return await self._advance(key, doc, version, event.status,
                                   unchanged="ignored")

    # ----------------------------
    # admin capture
    # ----------------------------
    async def capture_donation(self, reference: str) -> ProcessingResult:
        """Capture an AUTHORIZED donation on the provider, then record it.

        Already captured donations succeed without calling the provider.
        Provider errors propagate.
        """
        found = await self._find(reference)
        if found is None:
            raise DonationNotFound(f"no donation for reference {reference}")
        key, doc, version = found
        record = DonationRecord.from_doc(doc)
        if record.status == PaymentStatus.CAPTURED:
            return ProcessingResult(
                "duplicate", reference, record.status, record.download_id
            )
        if record.status != PaymentStatus.AUTHORIZED:
            raise CaptureNotAllowed(
                f"payment {reference} is {record.status.value}, "
                "cannot capture"
            )
        amount = Amount(major_to_minor(record.amount), record.currency)
        await self.capture.capture(reference, amount)
        return await self._advance(key, doc, version, PaymentStatus.CAPTURED,
                                   unchanged="duplicate")

    async def get_donation(self, reference: str) -> Optional[DonationRecord]:
        found = await self._find(reference)
        return DonationRecord.from_doc(found[1]) if found else None

    # ----------------------------
    # internals
    # ----------------------------
    def _build(self, event: PaymentEvent,
               claim: Dict) -> Tuple[DonationRecord, DownloadGrant]:
        created_at = from_iso(claim["createdAt"])
        download_id = claim["downloadId"]
        record = DonationRecord(
            reference=event.reference,
            amount=event.amount.major,
            currency=event.amount.currency,
            status=event.status,
            timestamp=created_at,
            download_id=download_id,
            user_profile=event.user_profile or UserProfile(),
        )
        grant = DownloadGrant.issue(
            download_id, event.reference, created_at, self.grant_ttl
        )
        return record, grant

    async def _persist_record(self, record: DonationRecord) -> bool:
        key = k_donation(record.reference, record.download_id)
        if not await self.store.create(key, record.to_doc()):
            return False
        if self.verify_writes:
            await verify_written(self.store, key)
        await self.index.upsert(record)
        return True

    async def _find(
        self, reference: str
    ) -> Optional[Tuple[str, Dict, int]]:
        claim = await self.store.get(k_payment(reference))
        if claim is None:
            # records written without a claim
            keys = await self.store.list(k_donations_of(reference))
        elif claim.get("downloadId"):
            keys = [k_donation(reference, claim["downloadId"])]
        else:
            keys = []
        for key in keys:
            doc, version = await self.store.get_versioned(key)
            if doc is not None:
                return key, doc, version
        return None

    async def _end_claim(self, reference: str,
                         status: PaymentStatus) -> None:
        """Mark the claim of `reference` as ended, creating it if absent.

        A claim created here has no download id, so a later eligible event
        for the same reference issues nothing.
        """
        key = k_payment(reference)
        for _ in range(MAX_ADVANCE_ATTEMPTS):
            claim, version = await self.store.get_versioned(key)
            if claim is None:
                claim = {"reference": reference,
                         "createdAt": to_iso(self.clock())}
            elif PaymentStatus.parse(claim.get("status")) in TERMINAL:
                return
            if await self.store.compare_and_set(
                key, {**claim, "status": status.value}, version
            ):
                logger.info("payment %s ended as %s before any record",
                            reference, status.value)
                return
        raise StorageUnavailable(f"{key} kept changing under update")

    async def _apply_claim_status(
        self, record: DonationRecord
    ) -> PaymentStatus:
        """Apply an end status that reached the claim before `record` did."""
        claim = await self.store.get(k_payment(record.reference))
        ended = PaymentStatus.parse((claim or {}).get("status"))
        if ended not in TERMINAL or not can_advance(record.status, ended):
            return record.status
        key = k_donation(record.reference, record.download_id)
        doc, version = await self.store.get_versioned(key)
        if doc is None:
            raise StorageUnavailable(f"{key} not readable")
        result = await self._advance(key, doc, version, ended,
                                     unchanged="duplicate")
        return result.status

    async def _advance(self, key: str, doc: Dict, version: int,
                       new_status: PaymentStatus,
                       unchanged: str) -> ProcessingResult:
        for _ in range(MAX_ADVANCE_ATTEMPTS):
            record = DonationRecord.from_doc(doc)
            old = record.status
            if not can_advance(old, new_status):
                logger.info("donation %s stays %s (event %s)",
                            record.reference, old.value, new_status.value)
                return ProcessingResult(
                    unchanged, record.reference, old, record.download_id
                )
            record.status = new_status
            if await self.store.compare_and_set(key, record.to_doc(),
                                                version):
                logger.info("donation %s %s -> %s", record.reference,
                            old.value, new_status.value)
                await self.index.upsert(record)
                return ProcessingResult(
                    "advanced", record.reference, new_status,
                    record.download_id,
                )
            doc, version = await self.store.get_versioned(key)
            if doc is None:
                raise StorageUnavailable(f"{key} disappeared")
        raise StorageUnavailable(f"{key} kept changing under update")
