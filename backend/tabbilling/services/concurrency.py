# Overview: Transaction helpers shared by the mutating services.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def atomic(func):
    """
    Run func as one unit of work: commit is func's job, any exception rolls
    the whole session back before propagating.
    """
    try:
        return func()
    except Exception:
        db.session.rollback()
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation atomically, retrying on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Every other exception is rolled back
    and re-raised on the first attempt.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return atomic(func)
        except (OperationalError, StaleDataError) as exc:
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
