from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import get_sessionmaker
from server.creditmeter.ledger.errors import LedgerWriteConflict

log = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "deadlock detected",
    "could not serialize access",
    "lock wait timeout",
)
_TRANSIENT_PGCODES = {"40001", "40P01", "55P03"}


def is_write_conflict(exc: BaseException) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False
    pgcode = getattr(getattr(exc, "orig", None), "pgcode", None)
    if pgcode in _TRANSIENT_PGCODES:
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def backoff_sleep(settings: Settings, attempt: int) -> None:
    # exponential backoff with jitter, capped at one second
    base = settings.write_retry_base_seconds
    if base <= 0:
        return
    delay = min(1.0, base * (2**attempt))
    time.sleep(delay * (0.5 + random.random()))


def run_atomic(settings: Settings, fn: Callable[[Session], T], *, label: str) -> T:
    """Run ``fn`` in its own database transaction, retrying lost write races.

    ``fn`` must be safe to re-run from scratch: every attempt starts with a fresh
    session, and nothing from a failed attempt is committed.
    """
    SessionLocal = get_sessionmaker(settings)
    attempts = max(1, settings.write_retry_attempts)
    last_err: Exception | None = None
    for attempt in range(attempts):
        db = SessionLocal()
        try:
            result = fn(db)
            db.commit()
            return result
        except Exception as e:
            db.rollback()
            if not is_write_conflict(e):
                raise
            last_err = e
            log.warning("Write conflict in %s (attempt %s/%s): %s", label, attempt + 1, attempts, e)
        finally:
            db.close()
        if attempt + 1 < attempts:
            backoff_sleep(settings, attempt)
    raise LedgerWriteConflict(f"{label} kept conflicting after {attempts} attempts") from last_err
