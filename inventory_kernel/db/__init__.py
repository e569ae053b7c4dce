"""Database layer - engine, base classes, unit of work, immutability."""

from inventory_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString
from inventory_kernel.db.engine import create_tables, get_engine, get_session

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UTCDateTime",
]
