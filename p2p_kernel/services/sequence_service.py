"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for audit events and
    human-readable requisition numbers.  Uses a dedicated counter table
    with row-level locking (``SELECT ... FOR UPDATE``) so uniqueness and
    ordering hold under concurrent access.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by AuditorService (audit sequence) and RequisitionService
    (through RequisitionNumberAllocator).

Invariants enforced:
    - The locked counter row is the sole source of truth for the next value.
      Aggregate max-plus-one over the owning table is never used.
    - The increment joins the caller's transaction: it becomes visible on
      commit and is returned on rollback.
    - Requisition numbers are scoped per calendar year: one counter row per
      year, so numbering restarts at 1 each January.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and retry).

Audit relevance:
    Allocation is logged at DEBUG with sequence_name and value.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from p2p_kernel.db.base import Base
from p2p_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    # e.g. "audit_event", "requisition_number:2026"
    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Contract:
        Accepts a sequence name and returns the next strictly increasing
        integer value within the caller's transaction.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    AUDIT_EVENT = "audit_event"
    REQUISITION_NUMBER = "requisition_number"

    def __init__(self, session: Session):
        self._session = session

    def _lock_counter(self, sequence_name: str) -> SequenceCounter | None:
        # populate_existing refreshes a counter cached by an earlier transaction
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Get the next value for a named sequence.

        Preconditions:
            - ``sequence_name`` is a non-empty string.
            - The caller is within an active database transaction.

        Postconditions:
            - Returns an integer > 0 strictly greater than any previously
              committed value for this sequence name.
            - The counter row stays locked until the transaction completes.
        """
        counter = self._lock_counter(sequence_name)

        if counter is None:
            # First use.  Another transaction may create the row at the same
            # time, so insert under a savepoint and fall back to locking it.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._lock_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if never allocated."""
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None

    def reset(self, sequence_name: str, value: int = 0) -> None:
        """
        Reset a sequence to a specific value.

        WARNING: tests and migration scripts only.
        """
        counter = self._lock_counter(sequence_name)

        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=value)
            self._session.add(counter)
        else:
            counter.current_value = value

        self._session.flush()


def format_request_number(prefix: str, year: int, value: int, width: int = 3) -> str:
    """``REQ-2026-007``.  Values wider than ``width`` are never truncated."""
    return f"{prefix}-{year:04d}-{value:0{width}d}"


class RequisitionNumberAllocator:
    """
    Allocates ``<prefix>-<YYYY>-<NNN>`` requisition numbers.

    Contract:
        One counter row per calendar year.  Strictly increasing within a
        year; the first number of every year is 1.
    """

    def __init__(self, session: Session, prefix: str = "REQ", width: int = 3):
        self._sequences = SequenceService(session)
        self._prefix = prefix
        self._width = width

    @staticmethod
    def counter_name(year: int) -> str:
        return f"{SequenceService.REQUISITION_NUMBER}:{year:04d}"

    def allocate(self, year: int) -> str:
        value = self._sequences.next_value(self.counter_name(year))
        number = format_request_number(self._prefix, year, value, self._width)
        logger.info(
            "request_number_allocated",
            extra={"year": year, "value": value, "request_number": number},
        )
        return number
