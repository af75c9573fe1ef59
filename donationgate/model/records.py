from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from ..helpers import from_iso, minor_to_major, parse_major, to_iso


class PaymentStatus(str, Enum):
    CREATED = "CREATED"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PaymentStatus":
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.UNKNOWN


# statuses that unlock a download and that mint a grant
ELIGIBLE = frozenset({PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED})
TERMINAL = frozenset({PaymentStatus.CANCELLED, PaymentStatus.FAILED})

# position on the happy path CREATED -> AUTHORIZED -> CAPTURED
_RANK = {
    PaymentStatus.CREATED: 1,
    PaymentStatus.AUTHORIZED: 2,
    PaymentStatus.CAPTURED: 3,
}


def can_advance(current: PaymentStatus, new: PaymentStatus) -> bool:
    """True if a stored `current` may be replaced by `new`.

    Statuses only move forward along CREATED -> AUTHORIZED -> CAPTURED.
    CANCELLED and FAILED can end a payment that was not captured yet, and
    nothing leaves them. UNKNOWN never changes anything.
    """
    if new == PaymentStatus.UNKNOWN or new == current:
        return False
    if current in TERMINAL:
        return False
    if current == PaymentStatus.UNKNOWN:
        return True
    if new in TERMINAL:
        return current != PaymentStatus.CAPTURED
    return _RANK[new] > _RANK[current]


# ----------------------------
# Inbound (ephemeral)
# ----------------------------
@dataclass(frozen=True)
class Amount:
    value: int = 0                 # minor units (øre)
    currency: str = "NOK"

    @property
    def major(self) -> Decimal:
        return minor_to_major(self.value)


@dataclass(frozen=True)
class UserProfile:
    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None

    def to_doc(self) -> Dict[str, Optional[str]]:
        return {
            "name": self.name,
            "email": self.email,
            "phoneNumber": self.phone_number,
        }

    @classmethod
    def from_doc(cls, doc: Optional[Dict[str, Any]]) -> "UserProfile":
        doc = doc or {}
        return cls(
            name=doc.get("name"),
            email=doc.get("email"),
            phone_number=doc.get("phoneNumber"),
        )


@dataclass(frozen=True)
class PaymentEvent:
    reference: str
    event_type: str
    status: PaymentStatus
    amount: Amount = field(default_factory=Amount)
    user_profile: Optional[UserProfile] = None
    schema: str = "unknown"

    def with_status(self, status: PaymentStatus) -> "PaymentEvent":
        return replace(self, status=status)


# ----------------------------
# Persisted documents
# ----------------------------
@dataclass
class DonationRecord:
    reference: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    timestamp: datetime
    download_id: str
    user_profile: UserProfile = field(default_factory=UserProfile)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            # string keeps 250.00 exact across JSON
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "timestamp": to_iso(self.timestamp),
            "userProfile": self.user_profile.to_doc(),
            "downloadId": self.download_id,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "DonationRecord":
        return cls(
            reference=doc["reference"],
            amount=parse_major(doc.get("amount", "0")),
            currency=doc.get("currency") or "NOK",
            status=PaymentStatus.parse(doc.get("status")),
            timestamp=from_iso(doc.get("timestamp")),
            download_id=doc["downloadId"],
            user_profile=UserProfile.from_doc(doc.get("userProfile")),
        )

    def index_entry(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "amount": str(self.amount),
            "currency": self.currency,
            "timestamp": to_iso(self.timestamp),
            "status": self.status.value,
            "name": self.user_profile.name,
            "email": self.user_profile.email,
            "phoneNumber": self.user_profile.phone_number,
            "downloadId": self.download_id,
        }


@dataclass
class DownloadGrant:
    download_id: str
    reference: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    last_used_at: Optional[datetime] = None
    # None -> the deployment's default asset
    asset: Optional[str] = None

    @classmethod
    def issue(cls, download_id: str, reference: str, created_at: datetime,
              ttl: timedelta) -> "DownloadGrant":
        return cls(
            download_id=download_id,
            reference=reference,
            created_at=created_at,
            expires_at=created_at + ttl,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_doc(self) -> Dict[str, Any]:
        return {
            "downloadId": self.download_id,
            "reference": self.reference,
            "createdAt": to_iso(self.created_at),
            "expiresAt": to_iso(self.expires_at),
            "used": self.used,
            "lastUsedAt": to_iso(self.last_used_at),
            "asset": self.asset,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "DownloadGrant":
        return cls(
            download_id=doc["downloadId"],
            reference=doc["reference"],
            created_at=from_iso(doc["createdAt"]),
            expires_at=from_iso(doc["expiresAt"]),
            used=bool(doc.get("used", False)),
            last_used_at=from_iso(doc.get("lastUsedAt")),
            asset=doc.get("asset"),
        )


# ---- keys
def k_donation(reference: str, download_id: str) -> str:
    return f"donation:{reference}:{download_id}"


def k_donations_of(reference: str) -> str:
    return f"donation:{reference}:"


def k_grant(download_id: str) -> str:
    return f"grant:{download_id}"


def k_payment(reference: str) -> str:
    return f"payment:{reference}"


def k_index_entry(reference: str) -> str:
    return f"{INDEX_PREFIX}{reference}"


DONATION_PREFIX = "donation:"
INDEX_PREFIX = "index:donations:"
