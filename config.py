import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from app.core.exceptions import ConfigurationError

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation through key prefixes
# ====================================================================================
# Every variable is read with the environment prefix:
#   - PROD: PROD_BOT_TOKEN, PROD_DATABASE_URL, PROD_BOT_LINK_SECRET
#   - STAGE: STAGE_BOT_TOKEN, STAGE_DATABASE_URL, STAGE_BOT_LINK_SECRET
#   - LOCAL: LOCAL_BOT_TOKEN, LOCAL_DATABASE_URL, LOCAL_BOT_LINK_SECRET
#
# A STAGE process can never pick up PROD_* values by accident.
# Settings are loaded once at startup and passed to components explicitly.
# ====================================================================================

APP_ENVS = ("prod", "stage", "local")

SIGNATURE_MODE_STRICT = "strict"
SIGNATURE_MODE_LENIENT = "lenient"

# Tariffs of the pay form: label -> period and pay form URL
# Price is taken from the end of the label ("1 МЕС • 1299 ₽" -> 1299)
DEFAULT_TARIFFS = (
    {
        "label": "1 МЕС • 1299 ₽",
        "days": 30,
        "url": "https://soulway.payform.ru/4e9isVQ/",
        "product_name": "Услуги доступа к клубу Путь Души срок 1 месяц",
    },
    {
        "label": "3 МЕС • 3599 ₽",
        "days": 90,
        "url": "https://soulway.payform.ru/en9it1j/",
        "product_name": "Услуги доступа к клубу Путь Души срок 3 месяца",
    },
    {
        "label": "12 МЕС • 12900 ₽",
        "days": 365,
        "url": "https://soulway.payform.ru/kr9it4z/",
        "product_name": "Услуги доступа к клубу Путь Души срок 12 месяцев",
    },
)

DEFAULT_PRICE_DAYS = "1299:30,3599:90,12900:365"

# Unit prefixes matched in product names ("3 месяца" -> 3 * 30); a prefix
# matches a whole word with at most three letters of inflection
DEFAULT_NAME_UNIT_DAYS = (
    "месяц:30,мес:30,month:30,mon:30,"
    "год:365,лет:365,year:365,"
    "недел:7,week:7,"
    "день:1,дня:1,дней:1,day:1"
)

# Signature may be carried in any of these headers (first non-empty wins)
SIGNATURE_HEADERS = ("Sign", "Signature", "X-Signature", "X-Webhook-Signature")

# Cleanup interval is clamped to [1 minute, 1 day]
MIN_CLEANUP_INTERVAL_SECONDS = 60
MAX_CLEANUP_INTERVAL_SECONDS = 86400


def get_app_env(environ: Optional[Mapping[str, str]] = None) -> str:
    """Return validated APP_ENV (default "prod")."""
    environ = os.environ if environ is None else environ
    app_env = environ.get("APP_ENV", "prod").strip().lower()
    if app_env not in APP_ENVS:
        raise ConfigurationError(f"Invalid APP_ENV={app_env}. Must be one of: prod, stage, local")
    return app_env


def env(key: str, default: str = "", environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Get environment variable with the environment prefix.

    Args:
        key: Variable name without prefix (e.g. "BOT_TOKEN")
        default: Value returned when the variable is not set
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Value of the prefixed variable (e.g. "STAGE_BOT_TOKEN")

    Example:
        env("BOT_TOKEN") -> value of "STAGE_BOT_TOKEN" (if APP_ENV=stage)
    """
    environ = os.environ if environ is None else environ
    env_key = f"{get_app_env(environ).upper()}_{key}"
    return environ.get(env_key, default)


def parse_int_map(raw: str, name: str) -> Dict[int, int]:
    """Parse "1299:30,3599:90" into {1299: 30, 3599: 90}."""
    result: Dict[int, int] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        left, sep, right = chunk.partition(":")
        try:
            if not sep:
                raise ValueError(chunk)
            key, value = int(left.strip()), int(right.strip())
        except ValueError:
            raise ConfigurationError(f"{name} has invalid entry '{chunk}', expected <int>:<int>")
        if key <= 0 or value <= 0:
            raise ConfigurationError(f"{name} entries must be positive, got '{chunk}'")
        result[key] = value
    return result


def parse_unit_map(raw: str, name: str) -> Dict[str, int]:
    """Parse "месяц:30,year:365" into {"месяц": 30, "year": 365} (keys lowercased)."""
    result: Dict[str, int] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        unit, sep, days = chunk.rpartition(":")
        unit = unit.strip().lower()
        try:
            if not sep or not unit:
                raise ValueError(chunk)
            days_value = int(days.strip())
        except ValueError:
            raise ConfigurationError(f"{name} has invalid entry '{chunk}', expected <unit>:<int>")
        if days_value <= 0:
            raise ConfigurationError(f"{name} entries must be positive, got '{chunk}'")
        result[unit] = days_value
    return result


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_number(raw: str, name: str, cast):
    try:
        return cast(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got: {raw}")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration. Built once by load_settings() and passed explicitly."""
    app_env: str
    bot_token: str
    database_url: str
    link_secret: str
    provider_secret: str = ""
    allow_insecure_webhooks: bool = False
    signature_mode: str = SIGNATURE_MODE_STRICT
    success_status: str = "success"
    price_days: Dict[int, int] = field(default_factory=dict)
    name_unit_days: Dict[str, int] = field(default_factory=dict)
    group_id: str = ""
    group_invite_url: str = ""
    pay_base_url: str = "https://soulway.payform.ru/"
    redis_url: str = ""
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080
    cleanup_interval_seconds: int = 1800
    eviction_ban_seconds: int = 60
    eviction_delay_seconds: float = 0.08
    telegram_timeout_seconds: float = 10.0
    shutdown_timeout_seconds: float = 30.0
    signature_headers: Tuple[str, ...] = SIGNATURE_HEADERS
    tariffs: Tuple[dict, ...] = DEFAULT_TARIFFS

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"

    @property
    def signature_check_enabled(self) -> bool:
        """False only in explicit insecure mode (empty provider secret)."""
        return bool(self.provider_secret)

    @property
    def strict_signatures(self) -> bool:
        return self.signature_mode == SIGNATURE_MODE_STRICT

    @property
    def eviction_enabled(self) -> bool:
        return bool(self.group_id)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load and validate settings from the environment.

    Raises:
        ConfigurationError: required secret missing or a value is invalid
    """
    environ = os.environ if environ is None else environ
    app_env = get_app_env(environ)

    def _get(key: str, default: str = "") -> str:
        return env(key, default, environ=environ).strip()

    bot_token = _get("BOT_TOKEN")
    if not bot_token:
        raise ConfigurationError(f"{app_env.upper()}_BOT_TOKEN environment variable is not set")

    database_url = _get("DATABASE_URL")
    if not database_url:
        raise ConfigurationError(f"{app_env.upper()}_DATABASE_URL environment variable is not set")

    # Without the link secret order tokens could be forged by anyone
    link_secret = _get("BOT_LINK_SECRET")
    if not link_secret:
        raise ConfigurationError(f"{app_env.upper()}_BOT_LINK_SECRET environment variable is not set")

    provider_secret = _get("PRODAMUS_SECRET")
    allow_insecure = _parse_bool(_get("ALLOW_INSECURE_WEBHOOKS", "false"))
    if not provider_secret and app_env == "prod" and not allow_insecure:
        raise ConfigurationError(
            "PROD_PRODAMUS_SECRET is not set. Set it, or set PROD_ALLOW_INSECURE_WEBHOOKS=true "
            "to accept unsigned webhooks deliberately"
        )

    signature_mode = _get("SIGNATURE_MODE", SIGNATURE_MODE_STRICT).lower()
    if signature_mode not in (SIGNATURE_MODE_STRICT, SIGNATURE_MODE_LENIENT):
        raise ConfigurationError(f"SIGNATURE_MODE must be 'strict' or 'lenient', got: {signature_mode}")

    success_status = _get("PAYMENT_SUCCESS_STATUS", "success")
    if not success_status:
        raise ConfigurationError("PAYMENT_SUCCESS_STATUS must not be empty")

    cleanup_interval = _parse_number(_get("CLEANUP_INTERVAL_SECONDS", "1800"), "CLEANUP_INTERVAL_SECONDS", int)
    cleanup_interval = max(MIN_CLEANUP_INTERVAL_SECONDS, min(MAX_CLEANUP_INTERVAL_SECONDS, cleanup_interval))

    port_raw = environ.get("PORT") or _get("WEBHOOK_PORT") or "8080"

    return Settings(
        app_env=app_env,
        bot_token=bot_token,
        database_url=database_url,
        link_secret=link_secret,
        provider_secret=provider_secret,
        allow_insecure_webhooks=allow_insecure,
        signature_mode=signature_mode,
        success_status=success_status,
        price_days=parse_int_map(_get("PRICE_DAYS", DEFAULT_PRICE_DAYS), "PRICE_DAYS"),
        name_unit_days=parse_unit_map(_get("NAME_UNIT_DAYS", DEFAULT_NAME_UNIT_DAYS), "NAME_UNIT_DAYS"),
        group_id=_get("GROUP_ID"),
        group_invite_url=_get("GROUP_INVITE_URL"),
        pay_base_url=_get("PAY_BASE_URL", "https://soulway.payform.ru/"),
        redis_url=_get("REDIS_URL"),
        webhook_host=_get("WEBHOOK_HOST", "0.0.0.0"),
        webhook_port=_parse_number(port_raw, "WEBHOOK_PORT", int),
        cleanup_interval_seconds=cleanup_interval,
        eviction_ban_seconds=_parse_number(_get("EVICTION_BAN_SECONDS", "60"), "EVICTION_BAN_SECONDS", int),
        eviction_delay_seconds=_parse_number(_get("EVICTION_DELAY_SECONDS", "0.08"), "EVICTION_DELAY_SECONDS", float),
        telegram_timeout_seconds=_parse_number(
            _get("TELEGRAM_TIMEOUT_SECONDS", "10"), "TELEGRAM_TIMEOUT_SECONDS", float
        ),
        shutdown_timeout_seconds=_parse_number(
            _get("SHUTDOWN_TIMEOUT_SECONDS", "30"), "SHUTDOWN_TIMEOUT_SECONDS", float
        ),
    )
