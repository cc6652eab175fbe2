"""Database utility functions for cross-database compatibility."""

import logging
from typing import Any, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def upsert(
    session: AsyncSession,
    model: type,
    values: dict[str, Any],
    conflict_columns: list[str],
    update_columns: Optional[list[str]] = None,
    update_where=None,
) -> int:
    """
    INSERT ... ON CONFLICT DO UPDATE for PostgreSQL and SQLite.

    Args:
        session: AsyncSession instance
        model: SQLModel table class
        values: Column values to insert/update
        conflict_columns: Columns of the unique constraint
        update_columns: Columns to update on conflict (defaults to all non-conflict columns)
        update_where: Optional condition; the existing row is only updated when it holds

    Returns:
        Number of rows inserted or updated (0 when update_where rejected the update).

    Example:
        await upsert(
            session,
            ScheduledJob,
            {"fixture_id": 12, "kind": "data_refresh", "run_at": run_at, ...},
            conflict_columns=["fixture_id", "kind"],
            update_where=ScheduledJob.status == "pending",
        )
    """
    if update_columns is None:
        update_columns = [k for k in values.keys() if k not in conflict_columns]

    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    insert = sqlite_insert if dialect == "sqlite" else pg_insert

    stmt = insert(model).values(**values)
    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
            where=update_where,
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)

    result = await session.execute(stmt)
    if result.rowcount == 0:
        logger.debug(f"[DB] Upsert into {model.__tablename__} left the existing row unchanged")
    return result.rowcount
