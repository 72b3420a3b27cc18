"""Environment-driven settings for the registration and payment workflows."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .db.utils import resolve_sqlite_url

# Project root directory (repo root)
ROOT_DIR = Path(__file__).resolve().parents[1]

PAYHERE_CHECKOUT_URLS = {
    "sandbox": "https://sandbox.payhere.lk/pay/checkout",
    "live": "https://www.payhere.lk/pay/checkout",
}
PAYHERE_API_BASE_URLS = {
    "sandbox": "https://sandbox.payhere.lk",
    "live": "https://www.payhere.lk",
}


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Environment variable '{name}' must be an integer") from e


@dataclass(frozen=True)
class PayHereConfig:
    """Merchant credentials and callback URLs for the PayHere gateway.

    ``merchant_secret`` and ``app_secret`` are only used server-side to sign
    and verify messages and must never be sent to the browser.
    """

    merchant_id: str = ""
    merchant_secret: str = field(default="", repr=False)
    mode: str = "sandbox"
    currency: str = "LKR"
    return_url: str = ""
    cancel_url: str = ""
    notify_url: str = ""
    app_id: Optional[str] = None
    app_secret: Optional[str] = field(default=None, repr=False)

    @property
    def checkout_url(self) -> str:
        return PAYHERE_CHECKOUT_URLS.get(self.mode, PAYHERE_CHECKOUT_URLS["sandbox"])

    @property
    def api_base_url(self) -> str:
        return PAYHERE_API_BASE_URLS.get(self.mode, PAYHERE_API_BASE_URLS["sandbox"])

    @classmethod
    def from_env(cls) -> "PayHereConfig":
        load_dotenv()
        mode = os.getenv("PAYHERE_MODE", "sandbox").strip().lower()
        if mode not in PAYHERE_CHECKOUT_URLS:
            raise ValueError(f"PAYHERE_MODE must be 'sandbox' or 'live', got {mode!r}")
        return cls(
            merchant_id=os.getenv("PAYHERE_MERCHANT_ID", ""),
            merchant_secret=os.getenv("PAYHERE_MERCHANT_SECRET", ""),
            mode=mode,
            currency=os.getenv("PAYHERE_CURRENCY", "LKR"),
            return_url=os.getenv("PAYHERE_RETURN_URL", ""),
            cancel_url=os.getenv("PAYHERE_CANCEL_URL", ""),
            notify_url=os.getenv("PAYHERE_NOTIFY_URL", ""),
            app_id=os.getenv("PAYHERE_APP_ID") or None,
            app_secret=os.getenv("PAYHERE_APP_SECRET") or None,
        )


@dataclass(frozen=True)
class Settings:
    """Top level settings consumed by workflows, scripts and the HTTP app."""

    db_url: str = "sqlite:///./dev.db"
    db_statement_timeout_ms: int = 5000
    cart_expiry_minutes: int = 30
    cart_expiry_disabled: bool = False
    materialization_timeout_seconds: float = 10.0
    reconcile_min_age_minutes: int = 15
    payment_expire_after_days: int = 30
    payhere: PayHereConfig = field(default_factory=PayHereConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            db_url=resolve_sqlite_url(os.getenv("DB_URL", "sqlite:///./dev.db"), ROOT_DIR),
            db_statement_timeout_ms=_env_int("DB_STATEMENT_TIMEOUT_MS", 5000),
            cart_expiry_minutes=_env_int("CART_EXPIRY_MINUTES", 30),
            cart_expiry_disabled=_env_bool("CART_EXPIRY_DISABLED"),
            materialization_timeout_seconds=float(
                _env_int("MATERIALIZATION_TIMEOUT_SECONDS", 10)
            ),
            reconcile_min_age_minutes=_env_int("PAYMENT_RECONCILE_MIN_AGE_MINUTES", 15),
            payment_expire_after_days=_env_int("PAYMENT_EXPIRE_AFTER_DAYS", 30),
            payhere=PayHereConfig.from_env(),
        )
