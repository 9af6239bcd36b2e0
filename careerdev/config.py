from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
logger = logging.getLogger("careerdev.backend")


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY_ENV_VALUES


def env_text(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


DEFAULT_CORS_ORIGINS = [
    "https://career-dev-platform.netlify.app",
    "http://localhost:3000",
    "http://localhost:8888",
    "http://127.0.0.1:3000",
]


def parse_cors_origins(value: str | None) -> list[str]:
    if not value:
        return DEFAULT_CORS_ORIGINS
    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    return origins or DEFAULT_CORS_ORIGINS


def resolve_db_path() -> str:
    explicit = env_text("DB_PATH")
    if explicit:
        return explicit
    if os.path.isdir("/var/data"):
        return "/var/data/careerdev.db"
    return os.path.join(os.path.dirname(__file__), "data", "careerdev.db")


def normalize_database_url(value: str | None) -> str:
    raw = (value or "").strip()
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    return raw


CORS_ALLOW_ORIGINS = parse_cors_origins(os.getenv("CORS_ALLOW_ORIGINS"))
CORS_ALLOW_ORIGIN_REGEX = os.getenv("CORS_ALLOW_ORIGIN_REGEX")

DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL") or os.getenv("RENDER_POSTGRESQL_URL"))
DB_BACKEND = "postgres" if DATABASE_URL.startswith("postgresql://") else "sqlite"
DB_PATH = resolve_db_path()

AUTH_TOKEN_SECRET = env_text("AUTH_TOKEN_SECRET", "replace-this-in-production")
AUTH_TOKEN_TTL_HOURS = int(env_text("AUTH_TOKEN_TTL_HOURS", "720"))

USAGE_RESET_DAYS = max(1, int(env_text("USAGE_RESET_DAYS", "30")))
BYPASS_PLAN_LIMITS = env_flag("BYPASS_PLAN_LIMITS", False)

PLATFORM_TAG = "career-dev"
TRANSACTION_PREFIX = "CAREER"
PUBLIC_BASE_URL = env_text("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
FRONTEND_BASE_URL = env_text("FRONTEND_BASE_URL", "http://localhost:8888").rstrip("/")

PAYMENT_GATEWAY = env_text("PAYMENT_GATEWAY", "auto").lower()
PAYU_KEY = env_text("PAYU_KEY")
PAYU_SALT = env_text("PAYU_SALT")
PAYU_BASE_URL = env_text("PAYU_BASE_URL", "https://secure.payu.in/_payment")
PHONEPE_MERCHANT_ID = env_text("PHONEPE_MERCHANT_ID")
PHONEPE_SALT_KEY = env_text("PHONEPE_SALT_KEY")
PHONEPE_SALT_INDEX = env_text("PHONEPE_SALT_INDEX", "1")
PHONEPE_BASE_URL = env_text("PHONEPE_BASE_URL", "https://api.phonepe.com/apis/hermes").rstrip("/")
PHONEPE_HTTP_TIMEOUT_SECONDS = max(5, min(30, int(env_text("PHONEPE_HTTP_TIMEOUT_SECONDS", "20"))))

OPENAI_API_KEY = env_text("OPENAI_API_KEY")
OPENAI_MODEL = env_text("OPENAI_MODEL", "gpt-4o-mini")
configured_fallback_models = [model.strip() for model in (os.getenv("OPENAI_FALLBACK_MODELS") or "").split(",") if model.strip()]
if configured_fallback_models:
    OPENAI_FALLBACK_MODELS = configured_fallback_models
else:
    OPENAI_FALLBACK_MODELS = [model for model in ["gpt-4.1-mini", "gpt-4o-mini"] if model != OPENAI_MODEL]

if AUTH_TOKEN_SECRET == "replace-this-in-production":
    logger.warning("AUTH_TOKEN_SECRET is using a default value. Set AUTH_TOKEN_SECRET in production.")
if DB_BACKEND == "sqlite" and DB_PATH.startswith("/tmp/"):
    logger.warning("DB_PATH is using temporary storage (%s). Use persistent storage in production.", DB_PATH)
if BYPASS_PLAN_LIMITS:
    logger.warning("BYPASS_PLAN_LIMITS is enabled. Usage quotas are not enforced.")
