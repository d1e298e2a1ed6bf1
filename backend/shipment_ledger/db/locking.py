"""
Transaction boundary and row-lock helpers

Every ledger write follows lock -> read -> mutate -> commit inside atomic().
A failure anywhere rolls the whole unit back, so partial allocations or
settlements are never visible.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from shipment_ledger.core.settings import get_settings
from shipment_ledger.exceptions import ConcurrencyError, LockTimeoutError
from shipment_ledger.logging_config import get_logger

logger = get_logger(__name__)

# Driver messages that mean "could not get the lock", not a broken connection
_LOCK_MESSAGES = (
    "lock timeout",
    "lock_timeout",
    "canceling statement due to lock timeout",
    "could not obtain lock",
    "database is locked",
    "deadlock detected",
)


def _is_lock_failure(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(fragment in message for fragment in _LOCK_MESSAGES)


def apply_lock_timeout(db: Session, timeout_ms: Optional[int] = None) -> None:
    """Bound row-lock waits for the current transaction (PostgreSQL only)."""
    if db.get_bind().dialect.name != "postgresql":
        return
    timeout_ms = timeout_ms or get_settings().LOCK_TIMEOUT_MS
    db.execute(text(f"SET LOCAL lock_timeout = '{int(timeout_ms)}ms'"))


@contextmanager
def atomic(db: Session, operation: str = "ledger write") -> Iterator[Session]:
    """
    Run one ledger operation as a single transaction.

    Commits on success. On any exception the session is rolled back and the
    error re-raised; lock waits and optimistic version conflicts surface as
    retryable ConcurrencyError subclasses.
    """
    try:
        apply_lock_timeout(db)
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(
            f"{operation} lost a concurrent update race",
            extra={"operation": operation},
        )
        raise ConcurrencyError(details={"operation": operation}) from e
    except OperationalError as e:
        db.rollback()
        if _is_lock_failure(e):
            logger.warning(
                f"{operation} timed out waiting for a row lock",
                extra={"operation": operation},
            )
            raise LockTimeoutError(details={"operation": operation}) from e
        raise
    except Exception:
        db.rollback()
        raise
