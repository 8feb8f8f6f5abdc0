"""
Store unit-of-work helper.

Each store call opens one session, commits it, and translates SQLAlchemy
failures into domain errors. Nothing here spans more than one call.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deed_integrity.core.errors import (
    DeedIntegrityError,
    InvalidReferenceError,
    PersistenceError,
    ValidationError,
)
from deed_integrity.services.retry import is_transient_error

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
CHECK_VIOLATION = "23514"


def _integrity_kind(exc: IntegrityError) -> str:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig).lower()
    if code == UNIQUE_VIOLATION or "unique constraint" in message or "duplicate key" in message:
        return "unique"
    if code == FOREIGN_KEY_VIOLATION or "foreign key constraint" in message:
        return "foreign_key"
    if code == CHECK_VIOLATION or "check constraint" in message:
        return "check"
    return "other"


def translate_db_error(
    exc: SQLAlchemyError,
    operation: str,
    on_unique: Optional[Callable[[], DeedIntegrityError]] = None,
) -> DeedIntegrityError:
    """Map a SQLAlchemy error to the domain error callers handle."""
    if isinstance(exc, IntegrityError):
        kind = _integrity_kind(exc)
        if kind == "unique" and on_unique is not None:
            return on_unique()
        if kind == "foreign_key":
            return InvalidReferenceError(f"{operation}: referenced document does not exist")
        if kind == "check":
            return ValidationError(f"{operation}: record violates a table constraint")
    return PersistenceError(operation, str(exc), transient=is_transient_error(exc))


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str,
    on_unique: Optional[Callable[[], DeedIntegrityError]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    One session, one commit. The session is rolled back and closed on error.

    Usage:
        async with unit_of_work(self._session_factory, "append hash") as session:
            session.add(record)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation, on_unique) from e
