"""
Shared pytest fixtures for DonationGate tests.

Provides:
- an in-memory record store (plain, and one that yields to the event
  loop on every call so concurrent coroutines really interleave)
- a controllable clock
- a fake payment provider recording payment and capture calls
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from donationgate.capture import CaptureController
from donationgate.donations import DonationService
from donationgate.model.records import Amount, PaymentEvent, PaymentStatus
from donationgate.model.store._memory import RecordStore as MemoryStore
from donationgate.payments import PaymentProvider


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


class YieldingStore(MemoryStore):
    """Memory store that suspends before every operation, like real I/O."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def get_versioned(self, key):
        await asyncio.sleep(0)
        return await super().get_versioned(key)

    async def put(self, key, doc):
        await asyncio.sleep(0)
        return await super().put(key, doc)

    async def compare_and_set(self, key, doc, expected_version):
        await asyncio.sleep(0)
        return await super().compare_and_set(key, doc, expected_version)

    async def list(self, prefix):
        await asyncio.sleep(0)
        return await super().list(prefix)


class FakeProvider(PaymentProvider):
    def __init__(self, fail_with: Optional[Exception] = None,
                 webhook_secret: Optional[str] = None) -> None:
        super().__init__(webhook_secret)
        self.fail_with = fail_with
        self.calls: list[tuple[str, Amount]] = []
        self.payments: list[dict] = []

    async def create_payment(self, reference, amount, phone_number,
                             return_url, description):
        self.payments.append({
            "reference": reference, "amount": amount,
            "phone_number": phone_number, "return_url": return_url,
            "description": description,
        })
        if self.fail_with is not None:
            raise self.fail_with
        return {"reference": reference,
                "redirect_url": f"https://pay.example/{reference}"}

    async def capture(self, reference: str, amount: Amount) -> dict:
        self.calls.append((reference, amount))
        if self.fail_with is not None:
            raise self.fail_with
        return {"reference": reference, "state": "AUTHORIZED"}


START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_event(reference: str = "abc12345",
               status: PaymentStatus = PaymentStatus.AUTHORIZED,
               value: int = 10000, currency: str = "NOK") -> PaymentEvent:
    return PaymentEvent(
        reference=reference,
        event_type=status.value,
        status=status,
        amount=Amount(value, currency),
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def service(store: MemoryStore, provider: FakeProvider,
            clock: FakeClock) -> DonationService:
    return DonationService(store, CaptureController(provider), clock=clock)
