"""
Configuration and scheduler schemas.
"""

from pydantic import BaseModel
from typing import List, Union

ConfigValue = Union[bool, int, float, str]


class ConfigEntry(BaseModel):
    """One merge threshold with its effective value."""
    key: str
    value: Union[bool, int, float]
    default: Union[bool, int, float]
    data_type: str
    description: str


class ConfigUpdate(BaseModel):
    """New value for a key; coerced to the key's type server-side."""
    value: ConfigValue


class SchedulerTickResponse(BaseModel):
    enabled: bool
    marked_ids: List[int]
    merged_trips: List[dict]
    failures: int

    class Config:
        from_attributes = True
