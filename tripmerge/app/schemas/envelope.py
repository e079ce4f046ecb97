"""
Response envelope shared by every endpoint.

Successful responses are {success: true, message, data}; error responses
are produced by the exception handlers in core/exceptions.py.
"""

from pydantic import BaseModel
from typing import Generic, Optional, TypeVar

DataT = TypeVar("DataT")


class ApiResponse(BaseModel, Generic[DataT]):
    """Standard success envelope."""
    success: bool = True
    message: str
    data: Optional[DataT] = None
