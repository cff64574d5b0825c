# Overview: Service-layer operations for concurrency; row locking, retries and the unit of work.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import DomainError, InvariantViolationError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the whole write is
    serialized by BEGIN IMMEDIATE instead (see begin_write).
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Take the database write lock up front on SQLite.

    pysqlite defers BEGIN until the first DML statement, which lets two
    writers read the same batch quantity before either one writes. BEGIN
    IMMEDIATE closes that window. Other dialects rely on lock_for_update.
    """
    if db.engine.dialect.name != "sqlite":
        return
    dbapi_conn = db.session.connection().connection.dbapi_connection
    if not dbapi_conn.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Concurrent update detected, retrying (attempt %s/%s): %s",
                attempt + 1, attempts, exc.__class__.__name__,
            )
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


class UnitOfWork:
    """
    One atomic business operation.

    Commits on clean exit, rolls back everything on any exception and
    re-raises it. Code running inside must not commit; helpers named
    *_locked follow that rule so they can be composed.

        with UnitOfWork():
            _adjust_locked(...)
            _open_locked(...)
    """

    def __init__(self, *, write_lock: bool = True, label: str | None = None):
        self.write_lock = write_lock
        self.label = label

    def __enter__(self):
        if self.write_lock:
            begin_write()
        return db.session

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            return False

        db.session.rollback()
        logger = current_app.logger
        label = self.label or "unit of work"
        if isinstance(exc, InvariantViolationError):
            logger.critical("%s aborted by invariant violation: %s details=%s", label, exc, exc.details)
        elif isinstance(exc, DomainError):
            logger.info("%s rejected (%s): %s", label, exc.error_type, exc)
        elif isinstance(exc, (OperationalError, StaleDataError)):
            logger.warning("%s rolled back on concurrent update: %s", label, exc.__class__.__name__)
        else:
            logger.error("%s rolled back on unexpected error", label, exc_info=(exc_type, exc, tb))
        return False


def run_in_unit_of_work(func, *, label: str | None = None, write_lock: bool = True, attempts: int = 3):
    """Run func inside a UnitOfWork, retrying the whole unit on lock/version conflicts."""
    def _op():
        with UnitOfWork(write_lock=write_lock, label=label):
            return func()
    return run_with_retry(_op, attempts=attempts)
