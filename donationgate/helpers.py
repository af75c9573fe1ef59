import hmac
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
# URL-safe alphabet, same as nanoid's default
DOWNLOAD_ID_ALPHABET = (
    "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz-_"
)
DOWNLOAD_ID_LENGTH = 21

# payment references: the provider accepts letters, digits and "-"
REFERENCE_ALPHABET = (
    "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz-"
)

# NOK, EUR, SEK, DKK all have two decimals
MINOR_UNIT_EXPONENT = 2


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def days(n: int) -> timedelta:
    return timedelta(days=n)


def new_download_id(size: int = DOWNLOAD_ID_LENGTH) -> str:
    # 21 chars * 6 bits = 126 bits of entropy
    return "".join(
        secrets.choice(DOWNLOAD_ID_ALPHABET) for _ in range(size)
    )


def new_reference(size: int = DOWNLOAD_ID_LENGTH) -> str:
    return "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(size))


def minor_to_major(value: int) -> Decimal:
    return Decimal(int(value)).scaleb(-MINOR_UNIT_EXPONENT)


def major_to_minor(amount: Decimal) -> int:
    return int(Decimal(amount).scaleb(MINOR_UNIT_EXPONENT).to_integral_value())


def parse_major(value) -> Decimal:
    # floats from older documents go through str() to avoid binary drift
    if isinstance(value, float):
        value = str(value)
    quantum = Decimal(1).scaleb(-MINOR_UNIT_EXPONENT)
    return Decimal(value).quantize(quantum)


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
