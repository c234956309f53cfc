"""
Optimistic concurrency helpers for version-tracked rows.

Every job table carries an integer ``version`` column registered as the
mapper's ``version_id_col``. SQLAlchemy then emits
``UPDATE ... WHERE id = :id AND version = :expected`` for each flush and bumps
the column; when no row matches, the flush raises ``StaleDataError``. That
compare-and-swap is the only coordination between processor instances.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from voice_api.config.logging import get_logger

logger = get_logger(__name__)


class VersionConflictError(Exception):
    """Raised when a write presents a version token that is no longer current."""

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} was modified concurrently")


async def flush_versioned(session: AsyncSession, entity: str, entity_id: object) -> None:
    """
    Flush pending writes, translating a stale version token into ``VersionConflictError``.

    Used when further statements must run in the same transaction after the
    guarded row write, so the conflict surfaces before they do.
    """
    try:
        await session.flush()
    except StaleDataError as exc:
        await session.rollback()
        raise VersionConflictError(entity, entity_id) from exc


async def commit_versioned(session: AsyncSession, entity: str, entity_id: object) -> None:
    """
    Commit the session, translating a stale version token into ``VersionConflictError``.

    The session is rolled back on conflict so it can be discarded or reused.
    """
    try:
        await session.commit()
    except StaleDataError as exc:
        await session.rollback()
        raise VersionConflictError(entity, entity_id) from exc


async def try_commit_versioned(session: AsyncSession, entity: str, entity_id: object) -> bool:
    """
    Commit and report whether this writer won the race.

    Losing is the expected outcome when several instances poll the same rows,
    so it is logged at debug level and never retried here.
    """
    try:
        await commit_versioned(session, entity, entity_id)
    except VersionConflictError:
        logger.debug(
            "Version conflict, another instance claimed the row",
            entity=entity,
            entity_id=str(entity_id),
        )
        return False
    return True
