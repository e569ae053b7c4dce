"""
BaseService -- common constructor for kernel services.

Responsibility:
    Every write-side service receives the unit of work's ``Session`` and a
    ``Clock``.  Services call ``session.flush()`` and never
    ``session.commit()``: the UnitOfWork owns the transaction so that a
    multi-step operation (post = append + status change) is atomic.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
"""

from abc import ABC

from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Guarantees:
        - The service never commits or rolls back.
        - ``clock`` is always set; SystemClock when none is injected.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
