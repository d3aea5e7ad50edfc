"""Runtime configuration loaded from environment (and backend/.env).

All knobs for the provisioning pipeline live here so services can be built
from a single Settings object instead of reading os.environ ad hoc.
"""
import os
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, model_validator

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _int_set(raw: Optional[str], default: FrozenSet[int]) -> FrozenSet[int]:
    if not raw or not raw.strip():
        return default
    return frozenset(int(p.strip()) for p in raw.split(",") if p.strip())


def _str_set(raw: Optional[str], default: FrozenSet[str]) -> FrozenSet[str]:
    if not raw or not raw.strip():
        return default
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


DEFAULT_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})
DEFAULT_PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 409, 422})
DEFAULT_PERMANENT_ERROR_CODES = frozenset({"INVALID_SNAPSHOT", "SNAPSHOT_NOT_FOUND", "QUOTA_EXCEEDED"})


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    environment: str = "development"
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "snapshot_saas"
    cors_origins: str = "*"
    public_app_url: str = "http://localhost:3000"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # GoHighLevel
    ghl_api_base: str = "https://services.leadconnectorhq.com"
    ghl_api_key: str = ""
    ghl_company_id: str = ""
    ghl_api_version: str = "2021-07-28"
    ghl_timeout_seconds: float = 30.0
    crm_transient_status_codes: FrozenSet[int] = DEFAULT_TRANSIENT_STATUS_CODES
    crm_permanent_status_codes: FrozenSet[int] = DEFAULT_PERMANENT_STATUS_CODES
    crm_permanent_error_codes: FrozenSet[str] = DEFAULT_PERMANENT_ERROR_CODES

    # Provisioning engine
    max_attempts: int = 5
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 3600.0
    # Must outlast one CRM call, or a slow create can be taken over and repeated
    lease_seconds: int = 300
    poll_interval_seconds: int = 60
    worker_id: Optional[str] = None

    # Admin auth
    jwt_secret: str = "your-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"

    @model_validator(mode="after")
    def _lease_outlasts_crm_timeout(self) -> "Settings":
        if self.lease_seconds <= self.ghl_timeout_seconds:
            raise ValueError(
                f"PROVISIONING_LEASE_SECONDS ({self.lease_seconds}) must be greater than "
                f"GHL_TIMEOUT_SECONDS ({self.ghl_timeout_seconds})"
            )
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            environment=env.get("ENVIRONMENT", "development"),
            mongo_url=env.get("MONGO_URL", "mongodb://localhost:27017"),
            db_name=env.get("DB_NAME", "snapshot_saas"),
            cors_origins=env.get("CORS_ORIGINS", "*"),
            public_app_url=(env.get("PUBLIC_APP_URL") or "http://localhost:3000").rstrip("/"),
            # Prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY
            stripe_secret_key=(env.get("STRIPE_SECRET_KEY") or env.get("STRIPE_API_KEY") or "").strip(),
            stripe_webhook_secret=(env.get("STRIPE_WEBHOOK_SECRET") or "").strip(),
            ghl_api_base=(env.get("GHL_API_BASE") or "https://services.leadconnectorhq.com").rstrip("/"),
            ghl_api_key=(env.get("GHL_API_KEY") or "").strip(),
            ghl_company_id=(env.get("GHL_COMPANY_ID") or "").strip(),
            ghl_api_version=env.get("GHL_API_VERSION", "2021-07-28"),
            ghl_timeout_seconds=float(env.get("GHL_TIMEOUT_SECONDS", "30")),
            crm_transient_status_codes=_int_set(env.get("CRM_TRANSIENT_STATUS_CODES"), DEFAULT_TRANSIENT_STATUS_CODES),
            crm_permanent_status_codes=_int_set(env.get("CRM_PERMANENT_STATUS_CODES"), DEFAULT_PERMANENT_STATUS_CODES),
            crm_permanent_error_codes=_str_set(env.get("CRM_PERMANENT_ERROR_CODES"), DEFAULT_PERMANENT_ERROR_CODES),
            max_attempts=int(env.get("PROVISIONING_MAX_ATTEMPTS", "5")),
            backoff_base_seconds=float(env.get("PROVISIONING_BACKOFF_BASE_SECONDS", "30")),
            backoff_max_seconds=float(env.get("PROVISIONING_BACKOFF_MAX_SECONDS", "3600")),
            lease_seconds=int(env.get("PROVISIONING_LEASE_SECONDS", "300")),
            poll_interval_seconds=int(env.get("PROVISIONING_POLL_INTERVAL_SECONDS", "60")),
            worker_id=(env.get("PROVISIONING_WORKER_ID") or "").strip() or None,
            jwt_secret=env.get("JWT_SECRET", "your-secret-key-change-in-production"),
            jwt_algorithm=env.get("JWT_ALGORITHM", "HS256"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
