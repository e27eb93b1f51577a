"""
SQLAlchemy ORM models and the plain message values passed between
the poller and the store.

For Pydantic request/response schemas, see schemas.py.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class Message(Base):
    """
    SQLAlchemy model for stored SMS messages.

    Table: messages
    Rows are append-only. (device_identity, sender, text, timestamp) is the
    dedup key; it is enforced by the poller, not by a constraint.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_identity = Column(String, nullable=False, index=True)  # modem IMEI
    sender = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False, index=True)  # canonical UTC string


@dataclass(frozen=True)
class MessageCandidate:
    """A message about to be checked against, or written to, the store."""
    device_identity: str
    sender: str
    text: str
    timestamp: datetime


@dataclass(frozen=True)
class StoredMessage:
    """A message read back from the store."""
    id: int
    device_identity: str
    sender: str
    text: str
    timestamp: datetime
