"""Sequence counter table backing SequenceService."""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base


class SequenceCounter(Base):
    """
    Named counter row.

    Each row is one sequence (ledger order per tenant, adjustment numbers per
    tenant and year).  Row-level locking keeps allocation monotonic.
    """

    __tablename__ = "sequence_counters"

    # e.g. "stock_ledger:<tenant>" or "adjustment:<tenant>:2025"
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
