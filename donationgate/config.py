import os
from dataclasses import dataclass
from typing import Mapping, Optional


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    # payment provider
    payment_provider: str = "vipps"          # 'vipps' | 'mock'
    vipps_api_base: str = "https://apitest.vipps.no"
    vipps_client_id: Optional[str] = None
    vipps_client_secret: Optional[str] = None
    vipps_subscription_key: Optional[str] = None
    vipps_merchant_serial_number: Optional[str] = None
    provider_timeout: float = 5.0

    # inbound webhook / admin
    webhook_secret: Optional[str] = None
    admin_secret: Optional[str] = None
    public_base_url: str = "http://localhost:8000"

    # payment initiation
    return_path: str = "/thank-you"   # polls /api/payments/{reference}
    payment_description: str = "Donation"

    # record store (backend picked by RECORD_BACKEND in model.store)
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64
    database_url: Optional[str] = None
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None
    store_token: Optional[str] = None

    # protected asset
    asset_path: str = "assets/artwork.pdf"
    asset_filename: str = "artwork.pdf"
    asset_media_type: str = "application/pdf"
    grant_ttl_days: int = 7

    log_level: str = "INFO"

    @property
    def callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/payments/webhook"

    def return_url(self, reference: str) -> str:
        base = self.public_base_url.rstrip("/")
        return f"{base}{self.return_path}?reference={reference}"


def _opt(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name, "").strip()
    return value or None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    gate = _opt(env, "DB_GATE_LIMIT")
    return Settings(
        payment_provider=env.get("PAYMENT_PROVIDER", "vipps").lower(),
        vipps_api_base=env.get(
            "VIPPS_API_BASE", "https://apitest.vipps.no"
        ).rstrip("/"),
        vipps_client_id=_opt(env, "VIPPS_CLIENT_ID"),
        vipps_client_secret=_opt(env, "VIPPS_CLIENT_SECRET"),
        vipps_subscription_key=_opt(env, "VIPPS_SUBSCRIPTION_KEY"),
        vipps_merchant_serial_number=_opt(
            env, "VIPPS_MERCHANT_SERIAL_NUMBER"
        ),
        provider_timeout=float(env.get("PROVIDER_TIMEOUT", "5.0")),
        webhook_secret=_opt(env, "WEBHOOK_SECRET"),
        admin_secret=_opt(env, "ADMIN_SECRET"),
        public_base_url=env.get("PUBLIC_BASE_URL", "http://localhost:8000"),
        return_path=env.get("RETURN_PATH", "/thank-you"),
        payment_description=env.get("PAYMENT_DESCRIPTION", "Donation"),
        redis_url=env.get("REDIS_URL", "redis://127.0.0.1:6379"),
        redis_max_conn=int(env.get("REDIS_MAX_CONN", "64")),
        database_url=_opt(env, "DATABASE_URL"),
        db_pool_size=int(env.get("DB_POOL_SIZE", "10")),
        db_max_overflow=int(env.get("DB_MAX_OVERFLOW", "10")),
        db_pool_timeout=int(env.get("DB_POOL_TIMEOUT", "30")),
        db_gate_limit=int(gate) if gate else None,
        store_token=_opt(env, "STORE_TOKEN"),
        asset_path=env.get("ASSET_PATH", "assets/artwork.pdf"),
        asset_filename=env.get("ASSET_FILENAME", "artwork.pdf"),
        asset_media_type=env.get("ASSET_MEDIA_TYPE", "application/pdf"),
        grant_ttl_days=int(env.get("GRANT_TTL_DAYS", "7")),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
