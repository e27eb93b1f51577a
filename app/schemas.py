"""
Pydantic schemas for API responses.

Every endpoint answers with the same envelope:
- success: whether the request succeeded
- data: the payload (omitted on failure)
- error: a description of the failure (omitted on success)
"""

from datetime import datetime
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from app.models import StoredMessage
from app.modem import ModemIdentity

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Success/error envelope returned by all endpoints."""
    success: bool = Field(..., description="Whether the request succeeded")
    data: Optional[T] = Field(None, description="Response payload")
    error: Optional[str] = Field(None, description="Error description")

    @classmethod
    def ok(cls, data: T) -> "ApiResponse[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ApiResponse[T]":
        return cls(success=False, error=error)


class MessageResponse(BaseModel):
    """
    A stored SMS message.
    The device identity is part of the request path, so it is not repeated.
    """
    id: int = Field(..., description="Store-assigned message id")
    sender: str = Field(..., description="Sender phone number")
    text: str = Field(..., description="Message body")
    timestamp: datetime = Field(..., description="Message timestamp (UTC)")

    @classmethod
    def from_stored(cls, message: StoredMessage) -> "MessageResponse":
        return cls(
            id=message.id,
            sender=message.sender,
            text=message.text,
            timestamp=message.timestamp,
        )


class ModemResponse(BaseModel):
    """A modem currently visible to the modem manager."""
    path: str = Field(..., description="Modem connection path")
    imei: str = Field(..., description="Modem equipment identifier")

    @classmethod
    def from_identity(cls, modem: ModemIdentity) -> "ModemResponse":
        return cls(path=modem.connection_path, imei=modem.imei)
