# crud.py
# Shared database operations (lookups and dialect-aware upserts).

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.dialects import postgresql, sqlite

import models


async def get_user_by_email(db: AsyncSession, email: str):
    result = await db.execute(select(models.User).filter(models.User.email == email))
    return result.scalar_one_or_none()

async def get_community(db: AsyncSession, community_id: str):
    result = await db.execute(select(models.Community).filter(models.Community.id == community_id))
    return result.scalar_one_or_none()


def upsert_statement(
    db: AsyncSession,
    model,
    values: Dict[str, Any],
    index_elements: Iterable[str],
    update_columns: Optional[Iterable[str]] = None,
):
    """
    INSERT ... ON CONFLICT (index_elements) DO UPDATE for the session's dialect.
    With no update_columns the statement becomes ON CONFLICT DO NOTHING.
    """
    dialect = db.bind.dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")

    index_elements = list(index_elements)
    if not update_columns:
        return stmt.on_conflict_do_nothing(index_elements=index_elements)
    return stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: stmt.excluded[col] for col in update_columns},
    )


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column in this schema is naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
