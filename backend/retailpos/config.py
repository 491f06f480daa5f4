# backend/retailpos/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, "true" if default else "false").lower() in ("1", "true", "yes")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/retailpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///retailpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Business rules (all money in minor units)
    LOW_STOCK_THRESHOLD = _env_int("LOW_STOCK_THRESHOLD", 5)
    HIGH_VALUE_SALE_THRESHOLD_CENTS = _env_int("HIGH_VALUE_SALE_THRESHOLD_CENTS", 5_000_000)
    POINTS_EARN_UNIT_CENTS = _env_int("POINTS_EARN_UNIT_CENTS", 2000)  # 1 point per 20.00 spent
    POINT_VALUE_CENTS = _env_int("POINT_VALUE_CENTS", 100)  # 1 point = 1.00 off

    # Locking / retry
    LOCK_TIMEOUT_SECONDS = _env_float("LOCK_TIMEOUT_SECONDS", 5.0)
    COMMIT_RETRY_ATTEMPTS = _env_int("COMMIT_RETRY_ATTEMPTS", 3)

    # Payment collaborator: "simulated" or "http"
    PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "simulated")
    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "http://127.0.0.1:8088")
    PAYMENT_TIMEOUT_SECONDS = _env_float("PAYMENT_TIMEOUT_SECONDS", 15.0)

    # Notification sink
    EVENTS_ASYNC = _env_bool("EVENTS_ASYNC", True)
    EVENT_WORKERS = _env_int("EVENT_WORKERS", 2)

