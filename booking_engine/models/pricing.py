from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Numeric, String

from booking_engine.models.base import Base


class PricingConfig(Base):
    """
    Append-only history of the platform fee rate.

    Exactly one row is active at a time. A rate change closes the active row
    (``effective_to``) and appends the next version.
    """

    __tablename__ = "pricing_configs"
    __table_args__ = (Index("ix_pricing_configs_active", "is_active", "effective_from"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform_fee_rate = Column(Numeric(5, 4), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    effective_from = Column(DateTime(timezone=True), nullable=False)
    effective_to = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(64), nullable=False)
    change_reason = Column(String(500), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
