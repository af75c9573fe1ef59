import base64
import binascii
import hashlib
import hmac
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Type, TypedDict

import httpx
import orjson

from .errors import (
    CaptureFailed, InvalidEvent, PaymentInitFailed, ProviderError,
    SignatureError, UpstreamAuthError,
)
from .infra.timings import timeit
from .model.records import Amount

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-signature"
# refresh this long before the provider's stated expiry
TOKEN_REFRESH_MARGIN = 5 * 60


# ----------------------------
# Webhook verification
# ----------------------------
def _signature_matches(secret: str, payload: bytes, sig: str) -> bool:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    sig = sig.strip()
    if sig.lower().startswith("sha256="):
        sig = sig[7:]
    try:
        if hmac.compare_digest(mac, bytes.fromhex(sig)):
            return True
    except ValueError:
        pass
    try:
        return hmac.compare_digest(mac, base64.b64decode(sig, validate=True))
    except (binascii.Error, ValueError):
        return False


def verify_signature(
    payload: bytes, headers: Dict[str, str], secret: Optional[str]
) -> None:
    """HMAC-SHA256 over the raw body, base64 or hex, in X-Signature.

    With no secret configured the check is skipped.
    """
    if not secret:
        return
    lowered = {k.lower(): v for k, v in headers.items()}
    sig = lowered.get(SIGNATURE_HEADER)
    if not sig:
        raise SignatureError("missing signature")
    if not _signature_matches(secret, payload, sig):
        raise SignatureError("signature mismatch")


def sign(payload: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def parse_json(payload: bytes):
    try:
        return orjson.loads(payload)
    except orjson.JSONDecodeError:
        raise InvalidEvent("invalid JSON")


# ----------------------------
# Access token
# ----------------------------
class CredentialProvider:
    """Client-credentials token exchange with an expiry-aware cache."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        token_url: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        subscription_key: Optional[str],
        refresh_margin: float = TOKEN_REFRESH_MARGIN,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.http = http
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.subscription_key = subscription_key
        self.refresh_margin = refresh_margin
        self.clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_token(self) -> str:
        now = self.clock()
        if self._token and self._expires_at > now + self.refresh_margin:
            return self._token

        if not (self.client_id and self.client_secret
                and self.subscription_key):
            raise UpstreamAuthError("missing provider credentials")

        basic = base64.b64encode(
            f"{self.client_id}:{self.client_secret}".encode()
        ).decode()
        try:
            async with timeit("provider.token"):
                r = await self.http.post(self.token_url, headers={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "Ocp-Apim-Subscription-Key": self.subscription_key,
                    "Authorization": f"Basic {basic}",
                })
        except httpx.HTTPError as e:
            raise UpstreamAuthError(f"token request failed: {e!r}") from e
        if r.status_code != 200:
            raise UpstreamAuthError(
                f"token request failed: HTTP {r.status_code}"
            )
        try:
            data = r.json()
            token = data["access_token"]
            expires_in = float(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamAuthError("malformed token response") from e

        self._token = f"Bearer {token}"
        self._expires_at = now + expires_in
        logger.info("provider token refreshed, expires in %ds",
                    int(expires_in))
        return self._token


# ----------------------------
# Payment Provider Interface
# ----------------------------
class CreatePaymentResult(TypedDict):
    reference: str
    redirect_url: str


class PaymentProvider(ABC):
    def __init__(self, webhook_secret: Optional[str] = None) -> None:
        self.webhook_secret = webhook_secret
        if not webhook_secret:
            logger.warning(
                "WEBHOOK_SECRET not set: webhook signatures are not checked"
            )

    def verify_webhook(self, payload: bytes, headers: Dict[str, str]):
        verify_signature(payload, headers, self.webhook_secret)
        return parse_json(payload)

    @abstractmethod
    async def create_payment(
        self,
        reference: str,
        amount: Amount,
        phone_number: str,
        return_url: str,
        description: str,
    ) -> CreatePaymentResult:
        """Start a payment and return where to send the payer.

        Raises PaymentInitFailed or UpstreamAuthError.
        """

    @abstractmethod
    async def capture(self, reference: str, amount: Amount) -> dict:
        """Capture `amount` of an authorized payment.

        Raises CaptureFailed or UpstreamAuthError.
        """


def new_idempotency_key(reference: str, action: str = "capture") -> str:
    # unique per attempt, never reused on retry
    return f"{action}-{reference}-{uuid.uuid4().hex}"


class VippsProvider(PaymentProvider):
    def __init__(
        self,
        http: httpx.AsyncClient,
        credentials: CredentialProvider,
        *,
        api_base: str,
        subscription_key: Optional[str],
        merchant_serial_number: Optional[str],
        webhook_secret: Optional[str] = None,
    ) -> None:
        super().__init__(webhook_secret)
        self.http = http
        self.credentials = credentials
        self.api_base = api_base.rstrip("/")
        self.subscription_key = subscription_key or ""
        self.merchant_serial_number = merchant_serial_number or ""

    def payments_url(self) -> str:
        return f"{self.api_base}/epayment/v1/payments"

    def capture_url(self, reference: str) -> str:
        return f"{self.payments_url()}/{reference}/capture"

    async def _post(
        self, action: str, reference: str, url: str, body: dict,
        failure: Type[ProviderError],
    ) -> httpx.Response:
        token = await self.credentials.get_token()
        try:
            async with timeit(f"provider.{action}"):
                return await self.http.post(
                    url,
                    headers={
                        "Authorization": token,
                        "Ocp-Apim-Subscription-Key": self.subscription_key,
                        "Merchant-Serial-Number":
                            self.merchant_serial_number,
                        "Content-Type": "application/json",
                        "Idempotency-Key":
                            new_idempotency_key(reference, action),
                    },
                    content=orjson.dumps(body),
                )
        except httpx.TimeoutException as e:
            raise failure(f"{action} {reference} timed out") from e
        except httpx.HTTPError as e:
            raise failure(f"{action} {reference}: {e!r}") from e

    async def _call(
        self, action: str, reference: str, url: str, body: dict,
        failure: Type[ProviderError],
    ) -> dict:
        r = await self._post(action, reference, url, body, failure)
        if r.status_code == 401:
            # stale token: one refresh-and-retry
            logger.info("%s %s got 401, refreshing token", action, reference)
            self.credentials.invalidate()
            r = await self._post(action, reference, url, body, failure)
            if r.status_code == 401:
                raise UpstreamAuthError(
                    f"{action} {reference} rejected credentials twice"
                )
        if not r.is_success:
            raise failure(
                f"{action} {reference}: HTTP {r.status_code} {r.text[:200]}",
                status_code=r.status_code,
            )
        try:
            result = r.json()
        except ValueError as e:
            raise failure(
                f"{action} {reference}: malformed response",
                status_code=r.status_code,
            ) from e
        if not isinstance(result, dict):
            raise failure(
                f"{action} {reference}: malformed response",
                status_code=r.status_code,
            )
        return result

    async def create_payment(
        self,
        reference: str,
        amount: Amount,
        phone_number: str,
        return_url: str,
        description: str,
    ) -> CreatePaymentResult:
        result = await self._call("create", reference, self.payments_url(), {
            "reference": reference,
            "amount": {"currency": amount.currency, "value": amount.value},
            "customer": {"phoneNumber": phone_number},
            "paymentMethod": {"type": "WALLET"},
            "profile": {"scope": "name phoneNumber email"},
            "customerInteraction": "CUSTOMER_PRESENT",
            "userFlow": "WEB_REDIRECT",
            "returnUrl": return_url,
            "paymentDescription": description,
        }, PaymentInitFailed)
        redirect_url = result.get("redirectUrl") or result.get("url")
        if not isinstance(redirect_url, str) or not redirect_url:
            raise PaymentInitFailed(f"create {reference}: no redirect URL")
        logger.info("payment %s created (%d %s)", reference, amount.value,
                    amount.currency)
        return {"reference": reference, "redirect_url": redirect_url}

    async def capture(self, reference: str, amount: Amount) -> dict:
        result = await self._call(
            "capture", reference, self.capture_url(reference),
            {"modificationAmount": {
                "currency": amount.currency, "value": amount.value,
            }},
            CaptureFailed,
        )
        logger.info("captured %s (%d %s)", reference, amount.value,
                    amount.currency)
        return result


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentProvider):
    """Local development provider: every payment starts and captures."""

    def __init__(self, webhook_secret: Optional[str] = None) -> None:
        super().__init__(webhook_secret)
        self.idempotency_keys: List[str] = []

    async def create_payment(
        self,
        reference: str,
        amount: Amount,
        phone_number: str,
        return_url: str,
        description: str,
    ) -> CreatePaymentResult:
        self.idempotency_keys.append(new_idempotency_key(reference, "create"))
        # the payer would land on a mock checkout page, then on return_url
        return {
            "reference": reference,
            "redirect_url": f"/mockpay/{reference}",
        }

    async def capture(self, reference: str, amount: Amount) -> dict:
        key = new_idempotency_key(reference)
        self.idempotency_keys.append(key)
        return {
            "reference": reference,
            "amount": {"currency": amount.currency, "value": amount.value},
            "state": "AUTHORIZED",
            "pspReference": f"mock_{uuid.uuid4().hex[:12]}",
        }
