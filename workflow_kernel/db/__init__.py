"""Database layer - engine, base classes and column types."""

from workflow_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from workflow_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "UTCDateTime",
    "UUIDString",
    "UUID",
]
