from __future__ import annotations
import logging
import os
from datetime import datetime
from typing import Callable, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import FileResponse, ORJSONResponse

from .capture import CaptureController
from .checkout import parse_payment_request, start_payment
from .config import Settings, load_settings
from .donations import DonationService
from .downloads import DEFAULT_ASSET, DownloadAuthorizer
from .errors import (
    CaptureNotAllowed, DonationGateError, DonationNotFound, Expired,
    InvalidEvent, InvalidRequest, NoPaymentRecord, NotFound,
    PaymentNotCompleted, ProviderError, SignatureError, StorageUnavailable,
)
from .events import normalize
from .helpers import ct_equal, days, now_utc, to_iso
from .index import DonationIndex
from .infra import timings
from .infra.log import configure_logging
from .infra.sql import make_async_engine
from .infra.timings import timeit
from .model.store import BaseRecordStore, new_store, BACKEND as STORE_BACKEND
from .payments import CredentialProvider, MockPay, PaymentProvider
from .payments import VippsProvider

logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
settings = load_settings()
configure_logging(settings.log_level)

app = FastAPI(
    title="DonationGate",
    default_response_class=ORJSONResponse,
)
app.state.settings = settings

# most specific class first
_HTTP_STATUS = [
    (InvalidEvent, 400),
    (InvalidRequest, 400),
    (SignatureError, 401),
    (PaymentNotCompleted, 403),
    (NotFound, 404),
    (Expired, 404),
    (NoPaymentRecord, 404),
    (DonationNotFound, 404),
    (CaptureNotAllowed, 409),
    (ProviderError, 502),
    (StorageUnavailable, 503),
]


def http_status_for(exc: DonationGateError) -> int:
    for cls, status in _HTTP_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@app.exception_handler(DonationGateError)
async def _donationgate_error(request: Request, exc: DonationGateError):
    status = http_status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path,
                     exc)
    return ORJSONResponse({"detail": exc.as_detail()}, status_code=status)


# ----------------------------
# Dependencies
# ----------------------------
def get_settings() -> Settings:
    return app.state.settings


def get_clock() -> Callable[[], datetime]:
    return now_utc


async def records() -> BaseRecordStore:
    if STORE_BACKEND == "pg":
        async with app.state.sessions() as session:
            yield new_store(db=session, gated=app.state.gated)
    elif STORE_BACKEND == "memory":
        yield app.state.records
    else:
        yield new_store(r=app.state.redis)


def payment_provider() -> PaymentProvider:
    provider = getattr(app.state, "provider", None)
    if provider is None:
        raise RuntimeError("payment provider not initialized")
    return provider


def donation_service(
    store: BaseRecordStore = Depends(records),
    provider: PaymentProvider = Depends(payment_provider),
    clock: Callable[[], datetime] = Depends(get_clock),
    cfg: Settings = Depends(get_settings),
) -> DonationService:
    return DonationService(
        store,
        CaptureController(provider),
        DonationIndex(store),
        clock=clock,
        grant_ttl=days(cfg.grant_ttl_days),
    )


def download_authorizer(
    store: BaseRecordStore = Depends(records),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> DownloadAuthorizer:
    return DownloadAuthorizer(store, clock=clock)


def require_admin(
    x_admin_secret: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
) -> None:
    if not cfg.admin_secret:
        raise HTTPException(403, detail={
            "error": "admin_disabled",
            "message": "ADMIN_SECRET is not configured",
        })
    if not x_admin_secret or not ct_equal(x_admin_secret, cfg.admin_secret):
        raise HTTPException(403, detail={
            "error": "forbidden", "message": "invalid admin secret",
        })


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    cfg = app.state.settings
    logger.info("DonationGate is starting up...")
    logger.info("   - Record store backend: %s", STORE_BACKEND)
    logger.info("   - Payment provider: %s", cfg.payment_provider)
    logger.info("   - Callback URL: %s", cfg.callback_url)
    logger.info("   - Webhook signatures: %s",
                "checked" if cfg.webhook_secret else "NOT CHECKED")


@app.on_event("startup")
async def _store_start():
    cfg = app.state.settings
    if STORE_BACKEND == "pg":
        if not cfg.database_url:
            raise RuntimeError("RECORD_BACKEND=pg needs DATABASE_URL")
        from .model.store._postgres import create_schema
        engine, sessions, gated = make_async_engine(
            cfg.database_url,
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_timeout=cfg.db_pool_timeout,
            gate_limit=cfg.db_gate_limit,
        )
        async with engine.begin() as conn:
            await create_schema(conn)
        app.state.engine = engine
        app.state.sessions = sessions
        app.state.gated = gated
    elif STORE_BACKEND == "memory":
        app.state.records = new_store()
    else:
        app.state.redis = redis.from_url(
            cfg.redis_url,
            password=cfg.store_token,
            decode_responses=True,
            max_connections=cfg.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _provider_start():
    cfg = app.state.settings
    # bounded: a hanging provider counts as a failed capture
    app.state.http = httpx.AsyncClient(
        timeout=cfg.provider_timeout,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
    )
    if cfg.payment_provider == "mock":
        app.state.provider = MockPay(webhook_secret=cfg.webhook_secret)
        return
    credentials = CredentialProvider(
        app.state.http,
        token_url=f"{cfg.vipps_api_base}/accesstoken/get",
        client_id=cfg.vipps_client_id,
        client_secret=cfg.vipps_client_secret,
        subscription_key=cfg.vipps_subscription_key,
    )
    app.state.provider = VippsProvider(
        app.state.http,
        credentials,
        api_base=cfg.vipps_api_base,
        subscription_key=cfg.vipps_subscription_key,
        merchant_serial_number=cfg.vipps_merchant_serial_number,
        webhook_secret=cfg.webhook_secret,
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _store_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


# ----------------------------
# Webhook endpoint (payment status notifications)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    provider: PaymentProvider = Depends(payment_provider),
    svc: DonationService = Depends(donation_service),
):
    payload = await request.body()
    raw = provider.verify_webhook(payload, dict(request.headers))
    event = normalize(raw)

    async with timeit("webhook.handle"):
        result = await svc.handle_event(event)
    return {
        "ok": True,
        "reference": result.reference,
        "outcome": result.outcome,
        "status": result.status.value,
    }


# ----------------------------
# API: start a payment (donation form)
# ----------------------------
@app.post("/api/payments")
async def initiate_payment(
    payload: dict,
    provider: PaymentProvider = Depends(payment_provider),
    cfg: Settings = Depends(get_settings),
):
    request = parse_payment_request(payload)
    async with timeit("payment.start"):
        result = await start_payment(
            provider,
            request,
            return_url_for=cfg.return_url,
            description=cfg.payment_description,
        )
    return {
        "success": True,
        "reference": result["reference"],
        "redirectUrl": result["redirect_url"],
    }


# ----------------------------
# API: payment status (polled by the return page)
# ----------------------------
@app.get("/api/payments/{reference}")
async def get_payment(
    reference: str,
    svc: DonationService = Depends(donation_service),
    cfg: Settings = Depends(get_settings),
):
    donation = await svc.get_donation(reference)
    if donation is None:
        # not created yet (webhook still on its way) -> keep polling
        raise HTTPException(404, detail={
            "error": "pending", "message": "payment not confirmed yet",
        })
    base = cfg.public_base_url.rstrip("/")
    return {
        "reference": donation.reference,
        "status": donation.status.value,
        "amount": str(donation.amount),
        "currency": donation.currency,
        "downloadId": donation.download_id,
        "downloadUrl": f"{base}/download/{donation.download_id}",
    }


# ----------------------------
# Downloads
# ----------------------------
@app.get("/api/downloads/{download_id}")
async def get_download_status(
    download_id: str,
    authorizer: DownloadAuthorizer = Depends(download_authorizer),
):
    auth = await authorizer.check(download_id)
    return {
        "authorized": auth.authorized,
        "reference": auth.donation.reference,
        "status": auth.donation.status.value,
        "amount": str(auth.donation.amount),
        "currency": auth.donation.currency,
        "expiresAt": to_iso(auth.grant.expires_at),
        "name": auth.donation.user_profile.name,
    }


def resolve_asset(selector: str, cfg: Settings) -> str:
    if selector != DEFAULT_ASSET:
        raise HTTPException(500, detail={
            "error": "asset_unavailable",
            "message": f"unknown asset {selector}",
        })
    if not os.path.isfile(cfg.asset_path):
        logger.error("asset file %s is missing", cfg.asset_path)
        raise HTTPException(500, detail={
            "error": "asset_unavailable", "message": "asset missing",
        })
    return cfg.asset_path


@app.get("/download/{download_id}")
async def download(
    download_id: str,
    authorizer: DownloadAuthorizer = Depends(download_authorizer),
    cfg: Settings = Depends(get_settings),
):
    auth = await authorizer.authorize(download_id)
    path = resolve_asset(auth.asset, cfg)
    logger.info("releasing %s for %s", auth.asset, auth.donation.reference)
    return FileResponse(
        path,
        media_type=cfg.asset_media_type,
        filename=cfg.asset_filename,
    )


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/capture-payment", dependencies=[Depends(require_admin)])
async def admin_capture_payment(
    payload: dict,
    svc: DonationService = Depends(donation_service),
):
    reference = payload.get("reference")
    if not isinstance(reference, str) or not reference.strip():
        raise InvalidRequest("reference must be a non-empty string")
    reference = reference.strip()
    async with timeit("admin.capture"):
        result = await svc.capture_donation(reference)
    already = result.outcome == "duplicate"
    return {
        "success": True,
        "reference": reference,
        "status": result.status.value,
        "message": (
            "Payment was already captured" if already
            else "Payment captured successfully"
        ),
    }


@app.get("/api/admin/donations", dependencies=[Depends(require_admin)])
async def admin_donations(
    limit: int = 200,
    store: BaseRecordStore = Depends(records),
):
    limit = max(1, min(limit, 1000))
    items = await DonationIndex(store).entries(limit=limit)
    return {"donations": items, "limit": limit}


@app.post("/api/admin/donations/rebuild",
          dependencies=[Depends(require_admin)])
async def admin_rebuild_index(store: BaseRecordStore = Depends(records)):
    count = await DonationIndex(store).rebuild()
    return {"ok": True, "count": count}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings():
    return timings.summary()


@app.delete("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings_reset():
    timings.reset()
    return {"ok": True}
