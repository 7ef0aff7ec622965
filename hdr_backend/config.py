#  HDR Backend - Configuration
#
#  Loads config.json (optional) and environment variables.
#  Dot-notation path lookup: cfg("provider.timeout")
#  Environment variables win over config.json for deployment inputs.
#
#  Depends on: config.json (optional), environment
#  Used by:    all hdr_backend modules

import json
import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.json"
DATA_DIR = PROJECT_ROOT / "data"

# ---------------------------------------------------------------------------
# Load config
# ---------------------------------------------------------------------------

_config: dict = {}


def _load_config(path: Path | None = None):
    """Load configuration from JSON file (internal, called once at import time).

    Module-level constants below are snapshots from _config.
    """
    global _config
    config_path = path or CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}. "
            "Copy config.example.json to config.json."
        )
    with open(config_path) as f:
        _config = json.load(f)


if CONFIG_PATH.exists():
    _load_config()


def cfg(path: str, default=None):
    """Get a config value by dot-notation path.

    Example: cfg("provider.timeout") -> 30.0
    """
    keys = path.split(".")
    val = _config
    for key in keys:
        if isinstance(val, dict) and key in val:
            val = val[key]
        else:
            return default
    return val


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _resolve_db_path(url: str) -> Path:
    """Accept a bare path or a sqlite:/// URL."""
    if url.startswith("sqlite:///"):
        url = url[len("sqlite:///"):]
    path = Path(url)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return path


# ---------------------------------------------------------------------------
# Convenience constants
# ---------------------------------------------------------------------------

ENVIRONMENT = os.environ.get("ENVIRONMENT", cfg("server.environment", "development"))
HOST = cfg("server.host", "0.0.0.0")
PORT = _env_int("PORT", cfg("server.port", 8080))
BASE_URL = os.environ.get("BASE_URL", cfg("server.base_url", f"http://localhost:{PORT}"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", cfg("server.log_level", "INFO"))
LOG_FORMAT = os.environ.get("LOG_FORMAT", cfg("server.log_format", "json"))
CORS_ORIGINS = cfg("server.cors_origins", ["*"])
RATE_LIMIT_DEFAULT = cfg("server.rate_limit", "120/minute")
MAX_UPLOAD_BYTES = cfg("server.max_upload_bytes", 32 << 20)
SHUTDOWN_GRACE_SECONDS = cfg("server.shutdown_grace_seconds", 30)

# Database
DATABASE_URL = os.environ.get("DATABASE_URL", cfg("database.url", "data/hdr.db"))
DB_PATH = _resolve_db_path(DATABASE_URL)

# Enhancement provider (AutoEnhance)
AUTOENHANCE_API_KEY = os.environ.get("AUTOENHANCE_API_KEY", "")
AUTOENHANCE_API_BASE_URL = os.environ.get(
    "AUTOENHANCE_API_BASE_URL",
    cfg("provider.base_url", "https://api.autoenhance.ai"),
).rstrip("/")
AUTOENHANCE_WEBHOOK_TOKEN = os.environ.get("AUTOENHANCE_WEBHOOK_TOKEN", "")
# Public URL the provider dashboard is configured to call back
WEBHOOK_CALLBACK_URL = os.environ.get("WEBHOOK_CALLBACK_URL", cfg("provider.webhook_callback_url", ""))
PROVIDER_TIMEOUT = cfg("provider.timeout", 30.0)
RETRY_BACKOFF_SECONDS: list[float] = cfg("provider.retry_backoff_seconds", [1, 2, 4])
RETRY_ATTEMPTS = cfg("provider.retry_attempts", 3)
VERIFY_ATTEMPTS = cfg("provider.verify_attempts", 3)
VERIFY_INTERVAL = cfg("provider.verify_interval_sec", 0.5)
CLEANUP_BRACKETS = cfg("provider.cleanup_brackets_after_completion", True)

# Supabase (object store, realtime broadcast, auth)
SUPABASE_URL = os.environ.get("SUPABASE_URL", cfg("supabase.url", "")).rstrip("/")
SUPABASE_PUBLISHABLE_KEY = os.environ.get("SUPABASE_PUBLISHABLE_KEY", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
SUPABASE_USE_RLS = _env_bool("SUPABASE_USE_RLS", cfg("supabase.use_rls", True))
SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET", "")
SUPABASE_STORAGE_BUCKET = os.environ.get(
    "SUPABASE_STORAGE_BUCKET", cfg("supabase.storage_bucket", "hdr-images"),
)
STORAGE_TIMEOUT = cfg("supabase.storage_timeout", 30.0)
BROADCAST_TIMEOUT = cfg("supabase.broadcast_timeout", 10.0)

# Auth
AUTH_ALGORITHM = cfg("auth.algorithm", "HS256")

# Processing defaults
DEFAULT_BRACKETS_PER_IMAGE = cfg("processing.brackets_per_image", 3)


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------

def validate_config():
    """Validate critical config values. Call during app startup (not at import time).

    Raises ConfigError for fatal issues, logs warnings for non-fatal ones.
    """
    import logging
    _logger = logging.getLogger("hdr.config")

    production = ENVIRONMENT == "production"

    # Fatal: production needs a JWT secret and a provider key
    if production and not SUPABASE_JWT_SECRET:
        raise ConfigError("FATAL: SUPABASE_JWT_SECRET is required in production")
    if production and not AUTOENHANCE_API_KEY:
        raise ConfigError("FATAL: AUTOENHANCE_API_KEY is required in production")

    if not isinstance(PORT, int) or not (1 <= PORT <= 65535):
        raise ConfigError(f"PORT must be 1-65535, got {PORT}")

    for label, val in [("provider.timeout", PROVIDER_TIMEOUT),
                       ("supabase.storage_timeout", STORAGE_TIMEOUT),
                       ("supabase.broadcast_timeout", BROADCAST_TIMEOUT)]:
        if not isinstance(val, (int, float)) or val <= 0:
            raise ConfigError(f"{label} must be > 0, got {val}")

    if not RETRY_BACKOFF_SECONDS:
        raise ConfigError("provider.retry_backoff_seconds must not be empty")

    if not isinstance(DEFAULT_BRACKETS_PER_IMAGE, int) or DEFAULT_BRACKETS_PER_IMAGE < 1:
        raise ConfigError(
            f"processing.brackets_per_image must be >= 1, got {DEFAULT_BRACKETS_PER_IMAGE}"
        )

    for origin in CORS_ORIGINS:
        if not isinstance(origin, str):
            raise ConfigError(f"CORS origin must be a string, got {type(origin).__name__}")
        if origin == "*":
            if production:
                _logger.warning("CORS origin '*' allows all origins in production")
        elif not origin.startswith(("http://", "https://")):
            raise ConfigError(
                f"CORS origin must start with http:// or https://, got '{origin}'"
            )

    if not SUPABASE_JWT_SECRET:
        _logger.warning("SUPABASE_JWT_SECRET is not set. Every authenticated request will fail.")

    if WEBHOOK_CALLBACK_URL and not WEBHOOK_CALLBACK_URL.startswith(("http://", "https://")):
        raise ConfigError(
            f"WEBHOOK_CALLBACK_URL must start with http:// or https://, got '{WEBHOOK_CALLBACK_URL}'"
        )

    if not AUTOENHANCE_WEBHOOK_TOKEN:
        _logger.warning(
            "AUTOENHANCE_WEBHOOK_TOKEN is not set. Provider callbacks will be rejected."
        )

    if not SUPABASE_SERVICE_ROLE_KEY:
        _logger.warning(
            "SUPABASE_SERVICE_ROLE_KEY is not set. Realtime broadcasts will be skipped."
        )

    if SUPABASE_USE_RLS and not SUPABASE_PUBLISHABLE_KEY:
        _logger.warning(
            "SUPABASE_USE_RLS is enabled but SUPABASE_PUBLISHABLE_KEY is empty. "
            "Storage uploads will fail."
        )


class ConfigError(Exception):
    """Raised when critical configuration is invalid."""
