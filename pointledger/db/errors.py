"""
Database Error Translation - maps driver exceptions onto the typed hierarchy.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from structlog import get_logger

from pointledger.exceptions import ConcurrentModificationError, DatabaseUnavailableError

logger = get_logger(__name__)

# PostgreSQL SQLSTATE codes for serialization_failure and deadlock_detected
SERIALIZATION_SQLSTATES = frozenset({"40001", "40P01"})


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def translate_db_error(exc: Exception, resource: str) -> Exception:
    """Return the typed exception for a driver error, or the error itself."""
    if isinstance(exc, DBAPIError):
        if _sqlstate(exc) in SERIALIZATION_SQLSTATES:
            return ConcurrentModificationError(resource)
        if exc.connection_invalidated or isinstance(exc, (OperationalError, InterfaceError)):
            return DatabaseUnavailableError(str(exc.orig))
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return DatabaseUnavailableError(str(exc))
    return exc


@asynccontextmanager
async def translate_db_errors(resource: str) -> AsyncIterator[None]:
    """
    Re-raise driver errors as ConcurrentModificationError / DatabaseUnavailableError.

    Usage:
        async with translate_db_errors(f"points:{user_id}"):
            ...
    """
    try:
        yield
    except (DBAPIError, ConnectionError, TimeoutError) as exc:
        translated = translate_db_error(exc, resource)
        if translated is exc:
            raise
        logger.warning(
            "database_error_translated",
            resource=resource,
            error_type=type(translated).__name__,
            error=str(exc),
        )
        raise translated from exc
