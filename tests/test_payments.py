"""Provider adapter tests against httpx.MockTransport."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json

import httpx
import pytest

from donationgate.errors import (
    CaptureFailed, InvalidEvent, PaymentInitFailed, SignatureError,
    UpstreamAuthError,
)
from donationgate.model.records import Amount
from donationgate.payments import (
    CredentialProvider, MockPay, VippsProvider, sign, verify_signature,
)

API = "https://apitest.vipps.no"
SECRET = "whsec_test"


class Clock:
    def __init__(self) -> None:
        self.t = 1_000_000.0

    def __call__(self) -> float:
        return self.t


class FakeVipps:
    """Scripted provider: token endpoint plus queued payment API replies."""

    def __init__(self, capture_replies=None, token_status: int = 200):
        self.capture_replies = list(capture_replies or [])
        self.token_status = token_status
        self.token_calls = 0
        self.captures: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/accesstoken/get":
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={})
            return httpx.Response(200, json={
                "token_type": "Bearer",
                "expires_in": 3600,
                "access_token": f"tok{self.token_calls}",
            })
        self.captures.append(request)
        reply = self.capture_replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def build(fake: FakeVipps, clock: Clock | None = None, **creds):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    credentials = CredentialProvider(
        http,
        token_url=f"{API}/accesstoken/get",
        client_id=creds.get("client_id", "cid"),
        client_secret=creds.get("client_secret", "csecret"),
        subscription_key=creds.get("subscription_key", "subkey"),
        clock=clock or Clock(),
    )
    provider = VippsProvider(
        http, credentials,
        api_base=API,
        subscription_key="subkey",
        merchant_serial_number="123456",
    )
    return http, credentials, provider


def ok_capture() -> httpx.Response:
    return httpx.Response(200, json={
        "amount": {"currency": "NOK", "value": 10000},
        "state": "AUTHORIZED",
        "pspReference": "psp-1",
    })


AMOUNT = Amount(10000, "NOK")


class TestSignature:
    body = b'{"reference":"abc12345","status":"AUTHORIZED"}'

    def test_no_secret_skips_check(self) -> None:
        verify_signature(self.body, {}, None)

    def test_missing_header(self) -> None:
        with pytest.raises(SignatureError, match="missing"):
            verify_signature(self.body, {}, SECRET)

    def test_mismatch(self) -> None:
        with pytest.raises(SignatureError, match="mismatch"):
            verify_signature(self.body, {"X-Signature": sign(b"{}", SECRET)},
                             SECRET)

    def test_base64_signature(self) -> None:
        verify_signature(self.body, {"X-Signature": sign(self.body, SECRET)},
                         SECRET)

    def test_hex_signature(self) -> None:
        hexsig = hmac.new(SECRET.encode(), self.body,
                          hashlib.sha256).hexdigest()
        verify_signature(self.body, {"x-signature": f"sha256={hexsig}"},
                         SECRET)

    def test_verify_webhook_rejects_bad_json(self) -> None:
        with pytest.raises(InvalidEvent):
            MockPay().verify_webhook(b"{not json", {})


class TestCredentials:
    def test_token_is_cached(self) -> None:
        async def scenario():
            fake = FakeVipps()
            http, credentials, _ = build(fake)
            async with http:
                first = await credentials.get_token()
                second = await credentials.get_token()
            return fake, first, second
        fake, first, second = asyncio.run(scenario())
        assert first == second == "Bearer tok1"
        assert fake.token_calls == 1

    def test_refreshed_before_expiry(self) -> None:
        async def scenario():
            fake, clock = FakeVipps(), Clock()
            http, credentials, _ = build(fake, clock)
            async with http:
                await credentials.get_token()
                # 56 minutes in: inside the 5 minute margin
                clock.t += 56 * 60
                token = await credentials.get_token()
            return fake, token
        fake, token = asyncio.run(scenario())
        assert token == "Bearer tok2"
        assert fake.token_calls == 2

    def test_missing_credentials(self) -> None:
        async def scenario():
            http, credentials, _ = build(FakeVipps(), client_secret=None)
            async with http:
                await credentials.get_token()
        with pytest.raises(UpstreamAuthError, match="missing"):
            asyncio.run(scenario())

    def test_token_endpoint_failure(self) -> None:
        async def scenario():
            http, credentials, _ = build(FakeVipps(token_status=401))
            async with http:
                await credentials.get_token()
        with pytest.raises(UpstreamAuthError):
            asyncio.run(scenario())


class TestCreatePayment:
    def _create(self, replies):
        async def scenario():
            fake = FakeVipps(replies)
            http, _, provider = build(fake)
            async with http:
                result = await provider.create_payment(
                    "R3f-abc123", AMOUNT, "4791234567",
                    "https://gate.example/thank-you?reference=R3f-abc123",
                    "Donation - 100.00 NOK",
                )
            return fake, result
        return asyncio.run(scenario())

    def test_request_shape(self) -> None:
        fake, result = self._create([httpx.Response(201, json={
            "reference": "R3f-abc123",
            "redirectUrl": "https://pay.vipps.no/checkout/xyz",
        })])
        assert result == {
            "reference": "R3f-abc123",
            "redirect_url": "https://pay.vipps.no/checkout/xyz",
        }
        (req,) = fake.captures
        assert req.method == "POST"
        assert req.url.path == "/epayment/v1/payments"
        assert req.headers["Authorization"] == "Bearer tok1"
        assert req.headers["Merchant-Serial-Number"] == "123456"
        assert req.headers["Idempotency-Key"].startswith("create-R3f-abc123-")
        body = json.loads(req.content)
        assert body["amount"] == {"currency": "NOK", "value": 10000}
        assert body["customer"] == {"phoneNumber": "4791234567"}
        assert body["paymentMethod"] == {"type": "WALLET"}
        assert body["userFlow"] == "WEB_REDIRECT"
        assert body["returnUrl"].endswith("?reference=R3f-abc123")
        assert body["profile"] == {"scope": "name phoneNumber email"}

    def test_401_refreshes_once(self) -> None:
        fake, result = self._create([
            httpx.Response(401, json={}),
            httpx.Response(201, json={"redirectUrl": "https://pay/x"}),
        ])
        assert fake.token_calls == 2
        assert result["redirect_url"] == "https://pay/x"

    def test_rejected(self) -> None:
        with pytest.raises(PaymentInitFailed) as exc_info:
            self._create([httpx.Response(400, json={"title": "bad phone"})])
        assert exc_info.value.status_code == 400

    def test_no_redirect_url(self) -> None:
        with pytest.raises(PaymentInitFailed, match="redirect"):
            self._create([httpx.Response(201, json={"reference": "x"})])

    def test_timeout(self) -> None:
        with pytest.raises(PaymentInitFailed, match="timed out"):
            self._create([httpx.ReadTimeout("slow")])


class TestCapture:
    def test_success_request_shape(self) -> None:
        async def scenario():
            fake = FakeVipps([ok_capture()])
            http, _, provider = build(fake)
            async with http:
                await provider.capture("abc12345", AMOUNT)
            return fake
        fake = asyncio.run(scenario())
        (req,) = fake.captures
        assert req.url.path == "/epayment/v1/payments/abc12345/capture"
        assert req.headers["Authorization"] == "Bearer tok1"
        assert req.headers["Ocp-Apim-Subscription-Key"] == "subkey"
        assert req.headers["Merchant-Serial-Number"] == "123456"
        assert req.headers["Idempotency-Key"].startswith("capture-abc12345-")
        assert json.loads(req.content) == {
            "modificationAmount": {"currency": "NOK", "value": 10000}
        }

    def test_401_refreshes_once_with_new_key(self) -> None:
        async def scenario():
            fake = FakeVipps([httpx.Response(401, json={}), ok_capture()])
            http, _, provider = build(fake)
            async with http:
                await provider.capture("abc12345", AMOUNT)
            return fake
        fake = asyncio.run(scenario())
        assert fake.token_calls == 2
        first, second = fake.captures
        assert second.headers["Authorization"] == "Bearer tok2"
        assert first.headers["Idempotency-Key"] != \
            second.headers["Idempotency-Key"]

    def test_401_twice_is_auth_error(self) -> None:
        async def scenario():
            fake = FakeVipps([httpx.Response(401), httpx.Response(401)])
            http, _, provider = build(fake)
            async with http:
                await provider.capture("abc12345", AMOUNT)
        with pytest.raises(UpstreamAuthError):
            asyncio.run(scenario())

    def test_server_error(self) -> None:
        async def scenario():
            fake = FakeVipps([httpx.Response(500, text="boom")])
            http, _, provider = build(fake)
            async with http:
                await provider.capture("abc12345", AMOUNT)
        with pytest.raises(CaptureFailed) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.status_code == 500

    def test_timeout(self) -> None:
        async def scenario():
            fake = FakeVipps([httpx.ReadTimeout("slow")])
            http, _, provider = build(fake)
            async with http:
                await provider.capture("abc12345", AMOUNT)
        with pytest.raises(CaptureFailed, match="timed out"):
            asyncio.run(scenario())

    def test_malformed_reply(self) -> None:
        async def scenario():
            fake = FakeVipps([httpx.Response(200, text="<html>")])
            http, _, provider = build(fake)
            async with http:
                await provider.capture("abc12345", AMOUNT)
        with pytest.raises(CaptureFailed, match="malformed"):
            asyncio.run(scenario())


def test_mockpay_uses_fresh_idempotency_keys() -> None:
    async def scenario():
        mock = MockPay()
        await mock.capture("r1", AMOUNT)
        await mock.capture("r1", AMOUNT)
        return mock
    mock = asyncio.run(scenario())
    assert len(set(mock.idempotency_keys)) == 2


def test_mockpay_redirects_to_mock_checkout() -> None:
    result = asyncio.run(MockPay().create_payment(
        "r1", AMOUNT, "4791234567", "https://gate.example/thank-you", "d",
    ))
    assert result == {"reference": "r1", "redirect_url": "/mockpay/r1"}
