from __future__ import annotations

"""Application configuration.

Everything is read from the environment once at import time. Defaults are
tuned for local development; production injects real values through env.
"""

import os


def _env_flag(name: str, default: bool = True) -> bool:
    """Read a boolean-like flag from environment.

    Accepted falsy values: "0", "false", "off", "no" (case-insensitive).
    Anything else (or unset) falls back to `default`.
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"0", "false", "off", "no"}:
        return False
    if value in {"1", "true", "on", "yes"}:
        return True
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


# Application constants
APP_NAME = "Rentals Booking Core"
APP_VERSION = "1.0.0"

# Payment processor
STRIPE_API_KEY = os.environ.get("STRIPE_API_KEY", "")
PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "usd").lower()
PAYMENT_GATEWAY_TIMEOUT_SECONDS = _env_float("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 15.0)
EXTENDED_HOLD_DAYS = _env_int("EXTENDED_HOLD_DAYS", 30)
DEFAULT_HOLD_DAYS = _env_int("DEFAULT_HOLD_DAYS", 7)

# Guest bootstrapping
AUTO_LOGIN_TTL_HOURS = _env_int("AUTO_LOGIN_TTL_HOURS", 72)
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "").rstrip("/")
GUEST_SESSION_MINUTES = _env_int("GUEST_SESSION_MINUTES", 60 * 24)

# Pricing
SERVICE_FEE_PERCENT = _env_float("SERVICE_FEE_PERCENT", 0.15)
TAX_RATE = _env_float("TAX_RATE", 0.084)

# Notifications
NOTIFICATION_MAX_ATTEMPTS = _env_int("NOTIFICATION_MAX_ATTEMPTS", 5)
ENABLE_NOTIFICATION_WORKER: bool = _env_flag("ENABLE_NOTIFICATION_WORKER", default=True)
