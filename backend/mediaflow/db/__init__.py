"""Database utilities and session management."""

from mediaflow.db.base import (
    Base,
    BaseModel,
    JSONType,
    String36,
    String50,
    String255,
    String1000,
    ensure_utc,
    new_uuid,
    utcnow,
)
from mediaflow.db.deps import DBSession, get_db
from mediaflow.db.session import (
    AsyncSessionLocal,
    check_db_health,
    close_db,
    engine,
    get_session,
    init_db,
)

__all__ = [
    # Base classes
    "Base",
    "BaseModel",
    # Column types / helpers
    "JSONType",
    "String36",
    "String50",
    "String255",
    "String1000",
    "ensure_utc",
    "new_uuid",
    "utcnow",
    # Session management
    "engine",
    "AsyncSessionLocal",
    "get_session",
    "init_db",
    "close_db",
    "check_db_health",
    # Dependencies
    "get_db",
    "DBSession",
]
