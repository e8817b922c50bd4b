from sqlalchemy import Column, Date, DateTime, Index, Integer, String, UniqueConstraint

from booking_engine.models.base import Base


class AvailabilityCell(Base):
    """
    One day of one resource.

    Rows are created lazily on the first hold for that day and flipped back to
    ``available`` on release, never deleted. A cell that is not ``available``
    always references its owning booking.
    """

    __tablename__ = "availability_cells"
    __table_args__ = (
        UniqueConstraint("resource_kind", "resource_id", "day", name="uq_availability_cell"),
        Index("ix_availability_cells_booking_id", "booking_id"),
        Index("ix_availability_cells_status_updated", "status", "updated_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_kind = Column(String(16), nullable=False)
    resource_id = Column(String(64), nullable=False)
    day = Column(Date, nullable=False)
    status = Column(String(16), nullable=False, default="available")
    booking_id = Column(String(36), nullable=True)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class SlotHold(Base):
    """
    An exact time span on a resource (24-hour stays and service slots).

    ``end_at`` already includes the host buffer. Overlap, not equality, decides
    conflicts.
    """

    __tablename__ = "slot_holds"
    __table_args__ = (
        Index("ix_slot_holds_resource_span", "resource_kind", "resource_id", "start_at", "end_at"),
        Index("ix_slot_holds_booking_id", "booking_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_kind = Column(String(16), nullable=False)
    resource_id = Column(String(64), nullable=False)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False)
    booking_id = Column(String(36), nullable=True)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ResourceLock(Base):
    """
    Per-resource serialisation row.

    Every hold upserts this row first (bumping ``version``), which takes a row
    lock on PostgreSQL and the write lock on SQLite until the hold commits.
    """

    __tablename__ = "resource_locks"

    resource_kind = Column(String(16), primary_key=True)
    resource_id = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False, default=1)
