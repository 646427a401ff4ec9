"""Scoped sessions for CLI commands and the pause batch.

Nothing is committed on exit: services decide where their commit boundaries
are (the batch commits per window). On error the session is rolled back.

    with db_session() as db:
        PauseSchedulingService(db).cancel_pause(12)

    async with async_db_session() as db:
        summary = await PauseLifecycleService(db, gateway).run_daily_batch()
"""

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

from sqlalchemy.orm import Session

from memberbill.storage.database import base
from memberbill.utils.logging import get_logger

logger = get_logger(__name__)


def _discard(db: Session, error: BaseException) -> None:
    logger.warning("db_session_rolled_back", error_type=type(error).__name__, error=str(error))
    db.rollback()


@contextmanager
def db_session() -> Iterator[Session]:
    db = base.get_session()
    try:
        yield db
    except Exception as e:
        _discard(db, e)
        raise
    finally:
        db.close()


@asynccontextmanager
async def async_db_session() -> AsyncIterator[Session]:
    """Same as :func:`db_session` for use inside ``async`` commands.

    The session itself stays synchronous; only the gateway calls made while
    it is open await.
    """
    db = base.get_session()
    try:
        yield db
    except Exception as e:
        _discard(db, e)
        raise
    finally:
        db.close()
