from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from opsdb.errors import ConcurrencyConflict, ConfigurationError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = int(os.getenv("LEDGER_TX_MAX_ATTEMPTS", "5"))
BASE_BACKOFF_MS = int(os.getenv("LEDGER_TX_BACKOFF_MS", "25"))

T = TypeVar("T")

_CONTENTION_MARKERS = (
    "could not serialize",
    "deadlock",
    "database is locked",
    "lock not available",
)


def _is_contention(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc) or "").lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


def _compute_backoff_seconds(attempt: int, base_ms: int) -> float:
    return (base_ms * (2 ** max(attempt - 1, 0))) / 1000.0


def run_in_transaction(
    session_factory: sessionmaker,
    body: Callable[[Session], T],
    *,
    max_attempts: Optional[int] = None,
    backoff_ms: Optional[int] = None,
    operation: str = "transaction",
) -> T:
    """
    Run `body` in its own session and commit, re-running it from scratch on an
    optimistic-concurrency failure.

    The body must do all of its reads before its writes and must not cache
    anything between attempts: each attempt gets a brand-new session, so every
    read and every validation is repeated. Non-retryable exceptions roll back
    and propagate unchanged.
    """
    attempts = max(1, max_attempts if max_attempts is not None else MAX_ATTEMPTS)
    base_ms = BASE_BACKOFF_MS if backoff_ms is None else backoff_ms
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        db = session_factory()
        try:
            result = body(db)
            db.commit()
            return result
        except (StaleDataError, IntegrityError, OperationalError) as exc:
            db.rollback()
            if isinstance(exc, OperationalError) and not _is_contention(exc):
                raise ConfigurationError(
                    "Backing store unreachable or misconfigured.",
                    code="store_unavailable",
                    detail=[{"operation": operation, "error": str(getattr(exc, "orig", exc))}],
                ) from exc
            last_error = exc
            logger.warning(
                "Transaction conflict, retrying",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error": type(exc).__name__,
                },
            )
            if attempt < attempts:
                time.sleep(_compute_backoff_seconds(attempt, base_ms))
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    raise ConcurrencyConflict(
        f"{operation} could not be committed after {attempts} attempts; please retry.",
        detail=[{"operation": operation, "attempts": attempts, "error": type(last_error).__name__}],
    ) from last_error
