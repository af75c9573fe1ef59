import logging

from .errors import ProviderError
from .model.records import Amount, PaymentEvent, PaymentStatus
from .payments import PaymentProvider

logger = logging.getLogger(__name__)


class CaptureController:
    def __init__(self, provider: PaymentProvider) -> None:
        self.provider = provider

    async def capture(self, reference: str, amount: Amount) -> None:
        """Capture or raise CaptureFailed / UpstreamAuthError."""
        await self.provider.capture(reference, amount)

    async def auto_capture(self, event: PaymentEvent) -> PaymentStatus:
        """Capture an AUTHORIZED event; the resulting status, never raises.

        A failed capture leaves the payment AUTHORIZED so the donation is
        still recorded and an admin can capture it later.
        """
        if event.status != PaymentStatus.AUTHORIZED:
            return event.status
        try:
            await self.capture(event.reference, event.amount)
        except ProviderError as e:
            logger.error("auto-capture of %s failed, left AUTHORIZED: %s",
                         event.reference, e)
            return PaymentStatus.AUTHORIZED
        return PaymentStatus.CAPTURED
