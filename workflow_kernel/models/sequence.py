"""
Module: workflow_kernel.models.sequence
Responsibility: Named counter rows backing SequenceService.

Architecture position: Kernel > Models.  May import from db/base.py only.

Counters in use:
    - ``workflow_action`` -- global ledger ordering of workflow actions.
    - ``WF-<TAG>-<yyyymm>`` -- one per document-type tag and month, feeding
      the numeric suffix of workflow codes.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from workflow_kernel.db.base import Base


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.name}={self.current_value}>"
