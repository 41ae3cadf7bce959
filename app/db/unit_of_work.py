import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.exceptions import ConflictError

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}

def is_retryable(exc: DBAPIError) -> bool:
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return code in RETRYABLE_SQLSTATES

@asynccontextmanager
async def unit_of_work(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Wraps one core operation: every write inside the block commits together
    or not at all. Balance updates and their ledger entry share this commit.

    Optimistic-lock failures, uniqueness races and database-reported
    deadlocks or serialization failures surface as ConflictError; every
    other exception is re-raised after rollback.
    """
    try:
        yield db
        await db.commit()
    except StaleDataError as exc:
        await db.rollback()
        logger.warning(f"Optimistic lock failed: {exc}")
        raise ConflictError() from exc
    except IntegrityError as exc:
        await db.rollback()
        logger.warning(f"Integrity violation rolled back: {exc.orig}")
        raise ConflictError() from exc
    except DBAPIError as exc:
        await db.rollback()
        if not is_retryable(exc):
            raise
        logger.warning(f"Transaction aborted by the database: {exc.orig}")
        raise ConflictError() from exc
    except Exception:
        await db.rollback()
        raise
