"""
Database Dependencies for FastAPI Routes

Routes declare the session they need and FastAPI provides it:

    @router.get("/media/{item_id}/status")
    async def media_status(item_id: str, db: DBSession):
        ...

Each request gets its own session. Services commit explicitly; an
exception rolls the session back before it is closed.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.db.session import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that provides a database session."""
    async for session in get_session():
        yield session


# Shorter route signatures: `db: DBSession`
DBSession = Annotated[AsyncSession, Depends(get_db)]


__all__ = [
    "get_db",
    "DBSession",
]
