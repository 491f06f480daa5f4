# Overview: Locking, transaction-boundary and retry helpers shared by the write services.

from __future__ import annotations

import logging
import time

from flask import current_app, has_app_context
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import LockTimeoutError
from ..extensions import db

logger = logging.getLogger("retailpos.concurrency")


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() takes the
    database write lock there instead.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Start a write transaction that serializes with other writers.

    On SQLite this is BEGIN IMMEDIATE: the write lock is taken before the
    first read, so "read stock, validate, decrement" cannot interleave with
    another commit. Waiting is bounded by the connection busy timeout.
    Other dialects rely on lock_for_update() row locks.
    """
    if db.session().in_transaction():
        db.session.rollback()
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def _default_attempts() -> int:
    if has_app_context():
        return int(current_app.config.get("COMMIT_RETRY_ATTEMPTS", 3))
    return 3


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, busy/locked database) and
    StaleDataError (optimistic locking conflicts). When attempts run out the
    failure surfaces as LockTimeoutError, which callers may retry later.
    """
    if attempts is None:
        attempts = _default_attempts()
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                logger.warning("Giving up after %d attempts: %s", attempts, exc)
                raise LockTimeoutError(
                    "Could not acquire a consistent lock in time; retry the request",
                    details={"attempts": attempts},
                ) from exc
            logger.info("Concurrency conflict (attempt %d/%d): %s", attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
