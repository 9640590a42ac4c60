"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, String, Text

from sms_relay.storage import Base


class DeliveryStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


def _new_id() -> str:
    return uuid.uuid4().hex


class DeliveryRecord(Base):
    """
    One requested send and its lifecycle status.

    Table: delivery_records
    Status moves forward only, except the caller-initiated retry
    FAILED -> PENDING. A SENT record is never overwritten.
    """
    __tablename__ = "delivery_records"

    id = Column(String, primary_key=True, default=_new_id)
    destination = Column(String, nullable=False, index=True)
    payload = Column(Text, nullable=False)  # truncated to the modem limit
    original_payload = Column(Text, nullable=True)  # as submitted, for audit
    status = Column(
        Enum(DeliveryStatus, native_enum=False, length=16),
        nullable=False,
        default=DeliveryStatus.QUEUED,
        index=True,
    )
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    owner_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)


class IncomingMessage(Base):
    """
    SMS received by the modem and reported over the incoming topic.

    Table: incoming_messages
    """
    __tablename__ = "incoming_messages"

    id = Column(String, primary_key=True, default=_new_id)
    destination = Column(String, nullable=False, index=True)  # sender address
    text = Column(Text, nullable=False)
    device_timestamp = Column(String, nullable=True)  # raw value, not trusted
    received_at = Column(DateTime(timezone=True), nullable=False, index=True)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
