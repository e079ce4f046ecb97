"""
System configuration database model.

Stores operator-tunable merge thresholds as string values; the type of
each key is fixed by its default in services/config_service.py.
"""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from tripmerge.app.db.session import Base


class SystemConfig(Base):
    """System configuration entry."""
    __tablename__ = "system_config"

    key = Column(String(100), primary_key=True)
    value = Column(String(500), nullable=False)
    group = Column(String(50), nullable=False, default="general")
    data_type = Column(String(20), nullable=False)  # bool, int, float
    description = Column(String(500), nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<SystemConfig(key='{self.key}', value='{self.value}')>"
