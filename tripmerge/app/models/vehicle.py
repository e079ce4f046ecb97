"""
Vehicle database model.

Only the attributes the merge engine reads: type, capacity and the last
known position used as the route start.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime
from sqlalchemy.sql import func
from tripmerge.app.db.session import Base


class Vehicle(Base):
    """Vehicle model."""
    __tablename__ = "vehicles"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Identification
    registration = Column(String(50), unique=True, nullable=False, index=True)
    vehicle_type = Column(String(50), nullable=True)  # e.g., "Sedan", "Van", "Bus"

    # Passenger capacity
    capacity = Column(Integer, nullable=False)

    # Last known position
    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)

    # Status
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Vehicle(id={self.id}, registration='{self.registration}', capacity={self.capacity})>"
