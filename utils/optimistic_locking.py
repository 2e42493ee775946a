"""
Optimistic Locking Infrastructure
Version-based concurrency control for conversations, wallets, payments and applications
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Dict, Optional, Type

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from config import Config
from models import Base
from utils.datetime_helpers import utc_now
from utils.error_handler import ConcurrentModification

logger = logging.getLogger(__name__)


class OptimisticLockingError(Exception):
    """Raised when optimistic locking fails due to version conflict"""
    pass


async def versioned_update(
    session: AsyncSession,
    model_class: Type[Base],
    entity_id: Any,
    current_version: int,
    updates: Dict[str, Any],
) -> int:
    """
    Perform a version-controlled update.

    Writes `updates` only if the row still has `current_version`, bumping the
    version by one. Returns the new version.

    Raises:
        OptimisticLockingError: the row was modified since it was read
    """
    update_values = {
        **updates,
        'version': current_version + 1,
        'updated_at': utc_now(),
    }

    stmt = update(model_class).where(
        model_class.id == entity_id,
        model_class.version == current_version
    ).values(update_values).execution_options(synchronize_session=False)

    result = await session.execute(stmt)

    if result.rowcount == 0:
        logger.warning(
            f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
            f"expected_version={current_version}"
        )
        raise OptimisticLockingError(
            f"Version conflict for {model_class.__name__} id={entity_id}. "
            f"Expected version {current_version} but entity was modified by another process."
        )

    logger.debug(
        f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
        f"v{current_version} → v{current_version + 1}"
    )
    return current_version + 1


async def apply_versioned(session: AsyncSession, entity: Base, **updates) -> None:
    """versioned_update against a loaded entity, keeping the in-memory copy in step"""
    new_version = await versioned_update(
        session, type(entity), entity.id, entity.version, updates
    )
    for key, value in updates.items():
        set_committed_value(entity, key, value)
    set_committed_value(entity, "version", new_version)


def with_async_optimistic_locking(
    max_retries: Optional[int] = None,
    retry_delay: Optional[float] = None,
    backoff_factor: float = 2.0
):
    """
    Retry a whole unit of work on version conflicts.

    The wrapped coroutine must open (and so roll back) its own transaction.
    Non-locking errors are never retried. Exhausted retries surface as
    ConcurrentModification.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            retries = Config.OPTIMISTIC_LOCK_MAX_RETRIES if max_retries is None else max_retries
            current_delay = Config.OPTIMISTIC_LOCK_RETRY_DELAY if retry_delay is None else retry_delay

            for attempt in range(retries + 1):
                try:
                    return await func(*args, **kwargs)

                except OptimisticLockingError as e:
                    if attempt < retries:
                        logger.info(
                            f"🔄 Async optimistic lock retry {attempt + 1}/{retries} "
                            f"for {func.__name__}: {e}"
                        )
                        await asyncio.sleep(current_delay)
                        current_delay *= backoff_factor
                    else:
                        logger.error(
                            f"❌ Async optimistic lock failed after {retries} retries "
                            f"for {func.__name__}: {e}"
                        )
                        raise ConcurrentModification(
                            f"{func.__name__} lost {retries + 1} version races", attempts=retries + 1
                        ) from e

        return wrapper
    return decorator
