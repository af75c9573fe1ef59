"""Payment initiation: validate the donation form and start the payment.

The payer is sent to the provider's redirect URL and comes back to the
return page, which polls ``/api/payments/{reference}`` until the webhook
has recorded the donation.
"""
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, NamedTuple

from .errors import InvalidRequest
from .helpers import major_to_minor, new_reference
from .model.records import Amount
from .payments import CreatePaymentResult, PaymentProvider

logger = logging.getLogger(__name__)

COUNTRY_CODE = "47"
# eight digit Norwegian number, country code optional
_PHONE = re.compile(r"(?:\+?47)?(\d{8})")
_PHONE_SEPARATORS = re.compile(r"[\s-]")


class PaymentRequest(NamedTuple):
    amount: Amount
    phone_number: str        # with country code, e.g. 4791234567


def _parse_amount(raw: Any, currency: str) -> Amount:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise InvalidRequest("Invalid amount provided")
    try:
        major = Decimal(str(raw).strip())
    except InvalidOperation:
        raise InvalidRequest("Invalid amount provided")
    if not major.is_finite() or major <= 0:
        raise InvalidRequest("Invalid amount provided")
    value = major_to_minor(major)
    if value <= 0:
        raise InvalidRequest("Amount is below the smallest unit")
    return Amount(value, currency)


def _parse_phone(raw: Any) -> str:
    if not isinstance(raw, str):
        raise InvalidRequest("Invalid phone number")
    m = _PHONE.fullmatch(_PHONE_SEPARATORS.sub("", raw))
    if m is None:
        raise InvalidRequest("Invalid phone number")
    return COUNTRY_CODE + m.group(1)


def parse_payment_request(payload: Any,
                          currency: str = "NOK") -> PaymentRequest:
    """Validate ``{"amount": ..., "phoneNumber": ...}`` from the form."""
    if not isinstance(payload, dict):
        raise InvalidRequest("expected a JSON object")
    return PaymentRequest(
        amount=_parse_amount(payload.get("amount"), currency),
        phone_number=_parse_phone(payload.get("phoneNumber")),
    )


async def start_payment(
    provider: PaymentProvider,
    request: PaymentRequest,
    *,
    return_url_for,
    description: str,
) -> CreatePaymentResult:
    reference = new_reference()
    result = await provider.create_payment(
        reference,
        request.amount,
        request.phone_number,
        return_url_for(reference),
        f"{description} - {request.amount.major} {request.amount.currency}",
    )
    logger.info("payment %s started for %s %s", reference,
                request.amount.major, request.amount.currency)
    return result
