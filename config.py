import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            lines = handle.readlines()
    except OSError:
        return
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        current_value = str(os.environ.get(key, "") or "").strip()
        # Empty values inherited from the shell do not win over the file.
        if key in existing_env and current_value:
            continue
        if current_value and not allow_override:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ[key] = value


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

# Secrets are never read from config.yaml.
_ENV_ONLY_KEYS = {
    "PAYMENT_WEBHOOK_SECRET",
    "RECHARGE_PRIVATE_KEY_PEM",
    "RECHARGE_PRIVATE_KEY_PATH",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if not isinstance(data, dict):
        return {}
    section = data.get(env)
    if isinstance(section, dict):
        return dict(section)
    return dict(data)


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    for key in (name, name.lower()):
        if key in _CONFIG:
            return _CONFIG[key]
    return default


def _parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


def _parse_int_list(value: Any, default: list[int]) -> list[int]:
    if isinstance(value, (list, tuple)):
        return [int(item) for item in value]
    raw = str(value or "").strip()
    if not raw:
        return list(default)
    return [int(part) for part in raw.split(",") if part.strip()]


APP_VERSION = str(_get("APP_VERSION", "0.1.0"))
API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8020"))
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"
DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.fulfillment', 'fulfillment.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"))
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)
SCHEDULER_ENABLED = _parse_bool(_get("SCHEDULER_ENABLED", "true"), True)

PAYMENT_WEBHOOK_SECRET = str(_get("PAYMENT_WEBHOOK_SECRET", "")).strip()
PAYMENT_PROVIDER = str(_get("PAYMENT_PROVIDER", "bravive")).strip().lower() or "bravive"
ORDER_PAYMENT_TIMEOUT_SECONDS = max(60, int(_get("ORDER_PAYMENT_TIMEOUT_SECONDS", "1800")))

RECHARGE_API_BASE_URL = str(_get("RECHARGE_API_BASE_URL", "")).strip().rstrip("/")
RECHARGE_API_BACKUP_URL = str(_get("RECHARGE_API_BACKUP_URL", "")).strip().rstrip("/")
RECHARGE_ENDPOINT = str(_get("RECHARGE_ENDPOINT", "/sign/agent/rs_recharge")).strip()
RECHARGE_CLIENT_ID = str(_get("RECHARGE_CLIENT_ID", "")).strip()
RECHARGE_CLIENT_VERSION = str(_get("RECHARGE_CLIENT_VERSION", "0")).strip() or "0"
RECHARGE_PRIVATE_KEY_PEM = str(_get("RECHARGE_PRIVATE_KEY_PEM", "")).strip()
RECHARGE_PRIVATE_KEY_PATH = str(_get("RECHARGE_PRIVATE_KEY_PATH", "")).strip()
RECHARGE_TIMEOUT_SECONDS = float(_get("RECHARGE_TIMEOUT_SECONDS", "10"))
RECHARGE_CURRENCY = str(_get("RECHARGE_CURRENCY", "BRL")).strip().upper() or "BRL"
CREDITS_PER_USD = float(_get("CREDITS_PER_USD", "62.5"))
USD_TO_LOCAL_RATE = float(_get("USD_TO_LOCAL_RATE", "5.5"))

RETRY_MAX_ATTEMPTS = max(1, int(_get("RETRY_MAX_ATTEMPTS", "3")))
RETRY_RATE_LIMIT_STEP_SECONDS = int(_get("RETRY_RATE_LIMIT_STEP_SECONDS", "30"))
RETRY_RATE_LIMIT_CAP_SECONDS = int(_get("RETRY_RATE_LIMIT_CAP_SECONDS", "120"))
RETRY_INTERNAL_SCHEDULE_MINUTES = _parse_int_list(_get("RETRY_INTERNAL_SCHEDULE_MINUTES", ""), [3, 13, 28])
RETRY_INTERNAL_FALLBACK_MINUTES = int(_get("RETRY_INTERNAL_FALLBACK_MINUTES", "30"))
RETRY_SWEEP_INTERVAL_SECONDS = max(60, int(_get("RETRY_SWEEP_INTERVAL_SECONDS", "3600")))
RETRY_SWEEP_REARM_DELAY_SECONDS = max(0, int(_get("RETRY_SWEEP_REARM_DELAY_SECONDS", "5")))

METRICS_TIMEZONE = str(_get("METRICS_TIMEZONE", "UTC")).strip() or "UTC"
METRICS_CRON_HOUR_UTC = int(_get("METRICS_CRON_HOUR_UTC", "11")) % 24
METRICS_GAP_WINDOW_DAYS = max(1, int(_get("METRICS_GAP_WINDOW_DAYS", "5")))
METRICS_MAX_RETRIES = max(1, int(_get("METRICS_MAX_RETRIES", "3")))

CORS_ORIGINS = [
    origin.strip()
    for origin in str(_get("CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")).split(",")
    if origin.strip()
]
