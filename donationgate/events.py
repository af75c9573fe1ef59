"""Normalize inbound payment notifications into :class:`PaymentEvent`.

The provider has sent at least three payload shapes over time:

``epayment.callback``
    ePayment callback: ``{"reference", "status", "amount": {"value",
    "currency"}, "userInfo"}``.
``epayment.webhook``
    Webhooks API: ``{"reference", "name": "AUTHORIZED", "amount",
    "pspReference", ...}`` or an ``eventType`` such as
    ``epayments.payment.authorized.v1``.
``ecom.v2``
    Legacy eCom callback: ``{"orderId", "transactionInfo": {"status":
    "RESERVED", "amount": 10000}, "userDetails"}``.

Each shape has its own parser; the first whose ``detect`` accepts the
payload wins. Payloads no parser accepts are rejected as
:class:`InvalidEvent`. Status words no parser knows become
``UNKNOWN`` and are passed on.
"""
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .errors import InvalidEvent
from .model.records import Amount, PaymentEvent, PaymentStatus, UserProfile

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "NOK"

_STATUS_WORDS = {
    "CREATED": PaymentStatus.CREATED,
    "INITIATED": PaymentStatus.CREATED,
    "INITIATE": PaymentStatus.CREATED,
    "AUTHORIZED": PaymentStatus.AUTHORIZED,
    "AUTHORISED": PaymentStatus.AUTHORIZED,
    "RESERVED": PaymentStatus.AUTHORIZED,
    "RESERVE": PaymentStatus.AUTHORIZED,
    "CAPTURED": PaymentStatus.CAPTURED,
    "CAPTURE": PaymentStatus.CAPTURED,
    "SALE": PaymentStatus.CAPTURED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "CANCELED": PaymentStatus.CANCELLED,
    "CANCEL": PaymentStatus.CANCELLED,
    "ABORTED": PaymentStatus.CANCELLED,
    "EXPIRED": PaymentStatus.CANCELLED,
    "TERMINATED": PaymentStatus.CANCELLED,
    "VOID": PaymentStatus.CANCELLED,
    "FAILED": PaymentStatus.FAILED,
    "REJECTED": PaymentStatus.FAILED,
    "RESERVE_FAILED": PaymentStatus.FAILED,
    "SALE_FAILED": PaymentStatus.FAILED,
}


def status_from_word(word: str) -> PaymentStatus:
    """Map a provider status word or event type to a canonical status.

    ``epayments.payment.captured.v1`` is reduced to ``CAPTURED`` first.
    Anything unrecognized is UNKNOWN, never an error.
    """
    token = str(word).strip()
    if "." in token:
        parts = [p for p in token.split(".") if p]
        # drop a trailing version tag like "v1"
        if len(parts) > 1 and parts[-1].lower().startswith("v") \
                and parts[-1][1:].isdigit():
            parts = parts[:-1]
        token = parts[-1] if parts else ""
    status = _STATUS_WORDS.get(token.upper().replace("-", "_"))
    if status is None:
        logger.warning("unrecognized payment status %r -> UNKNOWN", word)
        return PaymentStatus.UNKNOWN
    return status


# ----------------------------
# field extraction
# ----------------------------
def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _amount_from(obj: Any, currency: Optional[str] = None) -> Optional[Amount]:
    # {"value": 10000, "currency": "NOK"} or a bare integer
    if isinstance(obj, dict):
        value = _as_int(obj.get("value"))
        if value is None:
            return None
        return Amount(value, obj.get("currency") or currency
                      or DEFAULT_CURRENCY)
    value = _as_int(obj)
    if value is None:
        return None
    return Amount(value, currency or DEFAULT_CURRENCY)


def extract_amount(payload: Dict[str, Any]) -> Amount:
    """Try every known location of the amount; default to 0 NOK."""
    currency = payload.get("currency")
    tx = payload.get("transactionInfo")
    candidates = [
        (payload.get("amount"), currency),
        (payload.get("modificationAmount"), currency),
        ((payload.get("aggregate") or {}).get("authorizedAmount"), currency),
    ]
    if isinstance(tx, dict):
        candidates.append((tx.get("amount"), tx.get("currency") or currency))
    for obj, cur in candidates:
        amount = _amount_from(obj, cur)
        if amount is not None:
            return amount
    logger.info("no amount in payload, defaulting to 0 %s", DEFAULT_CURRENCY)
    return Amount(0, DEFAULT_CURRENCY)


def extract_profile(payload: Dict[str, Any]) -> Optional[UserProfile]:
    for key in ("userInfo", "userDetails", "userProfile", "profile"):
        raw = payload.get(key)
        if isinstance(raw, dict):
            break
    else:
        return None
    name = raw.get("name")
    if not name:
        first, last = raw.get("firstName"), raw.get("lastName")
        name = " ".join(p for p in (first, last) if p) or None
    return UserProfile(
        name=name,
        email=raw.get("email"),
        phone_number=(
            raw.get("phoneNumber") or raw.get("mobileNumber")
            or raw.get("phone_number")
        ),
    )


def _require_reference(value: Any, schema: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidEvent(f"{schema}: missing reference")
    return value.strip()


# ----------------------------
# one parser per schema
# ----------------------------
class Schema(NamedTuple):
    name: str
    detect: Callable[[Dict[str, Any]], bool]
    parse: Callable[[Dict[str, Any]], PaymentEvent]


def _parse_ecom_v2(payload: Dict[str, Any]) -> PaymentEvent:
    tx = payload["transactionInfo"]
    word = tx.get("status")
    if not word:
        raise InvalidEvent("ecom.v2: missing transactionInfo.status")
    return PaymentEvent(
        reference=_require_reference(payload.get("orderId"), "ecom.v2"),
        event_type=str(word),
        status=status_from_word(word),
        amount=extract_amount(payload),
        user_profile=extract_profile(payload),
        schema="ecom.v2",
    )


def _parse_webhook(payload: Dict[str, Any]) -> PaymentEvent:
    word = payload.get("eventType") or payload.get("name")
    return PaymentEvent(
        reference=_require_reference(
            payload.get("reference"), "epayment.webhook"),
        event_type=str(word),
        status=status_from_word(word),
        amount=extract_amount(payload),
        user_profile=extract_profile(payload),
        schema="epayment.webhook",
    )


def _parse_callback(payload: Dict[str, Any]) -> PaymentEvent:
    word = payload.get("status")
    return PaymentEvent(
        reference=_require_reference(
            payload.get("reference"), "epayment.callback"),
        event_type=str(word),
        status=status_from_word(word),
        amount=extract_amount(payload),
        user_profile=extract_profile(payload),
        schema="epayment.callback",
    )


SCHEMAS: List[Schema] = [
    Schema(
        "ecom.v2",
        lambda p: isinstance(p.get("transactionInfo"), dict),
        _parse_ecom_v2,
    ),
    Schema(
        "epayment.webhook",
        lambda p: bool(p.get("eventType") or p.get("name")),
        _parse_webhook,
    ),
    Schema(
        "epayment.callback",
        lambda p: bool(p.get("status")),
        _parse_callback,
    ),
]


def normalize(payload: Any) -> PaymentEvent:
    if not isinstance(payload, dict):
        raise InvalidEvent("payload is not a JSON object")
    for schema in SCHEMAS:
        if schema.detect(payload):
            event = schema.parse(payload)
            logger.debug("parsed %s event %s -> %s", schema.name,
                         event.reference, event.status.value)
            return event
    # unrecognized shape: without a status-bearing field there is nothing
    # to reconcile
    raise InvalidEvent("unrecognized payload: no status or event type")
