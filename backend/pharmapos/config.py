# backend/pharmapos/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pharmapos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///pharmapos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Credit accounts
    CREDIT_DEFAULT_TERM_DAYS = int(os.environ.get("CREDIT_DEFAULT_TERM_DAYS", "30"))
    OVERDUE_SWEEP_INTERVAL_SECONDS = int(os.environ.get("OVERDUE_SWEEP_INTERVAL_SECONDS", "0"))  # 0 disables the timer

    # Returns go straight to PROCESSED unless a manager must approve them first
    RETURNS_REQUIRE_APPROVAL = _env_bool("RETURNS_REQUIRE_APPROVAL", False)

    # Basis points of per-line profit (1500 = 15%)
    CASHIER_COMMISSION_RATE_BPS = int(os.environ.get("CASHIER_COMMISSION_RATE_BPS", "1500"))

    # M-Pesa Daraja (STK push)
    MPESA_BASE_URL = os.environ.get("MPESA_BASE_URL", "https://sandbox.safaricom.co.ke")
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
    MPESA_SHORTCODE = os.environ.get("MPESA_SHORTCODE", "174379")
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
    MPESA_TRANSACTION_TYPE = os.environ.get("MPESA_TRANSACTION_TYPE", "CustomerBuyGoodsOnline")
    MPESA_CALLBACK_URL = os.environ.get("MPESA_CALLBACK_URL", "http://localhost:5000/api/mpesa/callback")
    MPESA_TIMEOUT_SECONDS = float(os.environ.get("MPESA_TIMEOUT_SECONDS", "30"))
    # PENDING pushes with no callback after this long are failed by `flask mpesa expire-pending`
    MPESA_PENDING_TIMEOUT_SECONDS = int(os.environ.get("MPESA_PENDING_TIMEOUT_SECONDS", "600"))
