"""
Module: inventory_kernel.selectors.base
Responsibility: Base class for read-only query selectors, the query side of
    the kernel next to the write-side services.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    domain/dtos.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: selectors never add, delete, flush or commit.
    - Selectors return frozen dataclasses, never ORM instances.
    - The caller owns the session and its transaction.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from inventory_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """Read-only query helper bound to a caller-owned session."""

    def __init__(self, session: Session):
        self.session = session
