from typing import Optional


class DonationGateError(Exception):
    reason = "error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.reason)
        self.message = message or self.reason

    def as_detail(self) -> dict:
        return {"error": self.reason, "message": self.message}


# ----------------------------
# Inbound events
# ----------------------------
class InvalidEvent(DonationGateError):
    """Payment notification that cannot be processed at all."""
    reason = "invalid_event"


class SignatureError(DonationGateError):
    reason = "invalid_signature"


class InvalidRequest(DonationGateError):
    """Malformed body on a browser or admin API call."""
    reason = "invalid_request"


# ----------------------------
# Payment provider
# ----------------------------
class ProviderError(DonationGateError):
    reason = "provider_error"

    def __init__(self, message: Optional[str] = None,
                 status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(ProviderError):
    reason = "upstream_auth"


class CaptureFailed(ProviderError):
    reason = "capture_failed"


class PaymentInitFailed(ProviderError):
    reason = "payment_init_failed"


# ----------------------------
# Record store
# ----------------------------
class StorageUnavailable(DonationGateError):
    reason = "storage_unavailable"


# ----------------------------
# Admin capture
# ----------------------------
class DonationNotFound(DonationGateError):
    reason = "donation_not_found"


class CaptureNotAllowed(DonationGateError):
    reason = "capture_not_allowed"


# ----------------------------
# Download denials
# ----------------------------
class DownloadDenied(DonationGateError):
    reason = "denied"


class NotFound(DownloadDenied):
    reason = "not_found"


class Expired(DownloadDenied):
    reason = "expired"


class NoPaymentRecord(DownloadDenied):
    reason = "no_payment_record"


class PaymentNotCompleted(DownloadDenied):
    reason = "payment_not_completed"
