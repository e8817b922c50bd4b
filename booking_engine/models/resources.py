from sqlalchemy import Boolean, Column, DateTime, Index, String
from sqlalchemy.sql import func

from booking_engine.models.base import Base, JSONType


class Resource(Base):
    """
    ORM model for bookable resources (listings and services).

    The catalog is owned by the CRUD side of the marketplace; the engine only
    reads it. ``payload`` holds the tariff, cancellation policy, stay rules and
    host identity as a JSON document validated by ``schemas.resources.Resource``.
    """

    __tablename__ = "resources"
    __table_args__ = (Index("ix_resources_host_id", "host_id"),)

    kind = Column(String(16), primary_key=True)  # listing | service
    id = Column(String(64), primary_key=True)
    host_id = Column(String(64), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    payload = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
