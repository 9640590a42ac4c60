"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for send, bulk send
- Response models for API responses
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from sms_relay.models import DeliveryStatus


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Single SMS request. The destination is validated by the intake gate so
    that a bad number is reported the same way for single and bulk sends.
    """
    phone_number: str = Field(
        ...,
        alias="phoneNumber",
        description="Recipient phone number, international format"
    )
    message: str = Field(
        ...,
        description="Message text; truncated to the modem limit before sending"
    )

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [{"phoneNumber": "+15550001", "message": "Hello from the relay!"}]
        }
    }


class BulkSendRequest(BaseModel):
    recipients: list[str] = Field(..., description="Recipient phone numbers")
    message: str = Field(..., description="Message text sent to every recipient")

    model_config = {
        "json_schema_extra": {
            "examples": [{"recipients": ["+15550001", "+15550002"], "message": "Bulk message!"}]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; they were stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    code: str = Field(..., description="Machine-readable error code")


class SendResponse(BaseModel):
    sms_id: str = Field(..., serialization_alias="smsId")
    status: str
    queue_position: int = Field(..., serialization_alias="queuePosition")
    eta_seconds: float = Field(..., serialization_alias="etaSeconds")


class BulkItemResponse(BaseModel):
    phone_number: str = Field(..., serialization_alias="phoneNumber")
    status: str
    sms_id: Optional[str] = Field(None, serialization_alias="smsId")
    error: Optional[str] = None


class BulkSummary(BaseModel):
    total: int
    queued: int
    rejected: int
    queue_position: int = Field(..., serialization_alias="queuePosition")
    eta_seconds: float = Field(..., serialization_alias="etaSeconds")


class BulkSendResponse(BaseModel):
    summary: BulkSummary
    results: list[BulkItemResponse] = Field(default_factory=list)


class RetryResponse(BaseModel):
    sms_id: str = Field(..., serialization_alias="smsId")
    status: str
    retry_count: int = Field(..., serialization_alias="retryCount")


class DeliveryRecordResponse(BaseModel):
    """A Delivery Record as shown to API callers."""
    id: str
    destination: str
    payload: str
    status: DeliveryStatus
    retry_count: int = Field(..., serialization_alias="retryCount")
    error_message: Optional[str] = Field(None, serialization_alias="errorMessage")
    owner_id: Optional[str] = Field(None, serialization_alias="ownerId")
    created_at: datetime = Field(..., serialization_alias="createdAt")
    updated_at: datetime = Field(..., serialization_alias="updatedAt")
    sent_at: Optional[datetime] = Field(None, serialization_alias="sentAt")

    @field_validator("created_at", "updated_at", "sent_at")
    @classmethod
    def timestamps_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    model_config = {
        "from_attributes": True,  # Allow creating from ORM objects
    }


class IncomingMessageResponse(BaseModel):
    id: str
    destination: str
    text: str
    device_timestamp: Optional[str] = Field(None, serialization_alias="deviceTimestamp")
    received_at: datetime = Field(..., serialization_alias="receivedAt")
    processed: bool

    @field_validator("received_at")
    @classmethod
    def received_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    model_config = {"from_attributes": True}


class QueueInfo(BaseModel):
    size: int = Field(..., ge=0)
    is_processing: bool = Field(..., serialization_alias="isProcessing")
    eta_seconds: float = Field(..., serialization_alias="etaSeconds")
    inter_send_delay: float = Field(..., serialization_alias="interSendDelay")


class QueueStatusResponse(BaseModel):
    queue: QueueInfo
    your_queued_sms: list[DeliveryRecordResponse] = Field(
        default_factory=list,
        serialization_alias="yourQueuedSms",
        description="Caller's QUEUED and PENDING records, oldest first"
    )


class StatusSummary(BaseModel):
    total: int = 0
    queued: int = 0
    pending: int = 0
    sent: int = 0
    failed: int = 0


class BulkStatusResponse(BaseModel):
    timeframe: str
    summary: StatusSummary
    recent_sms: list[DeliveryRecordResponse] = Field(default_factory=list, serialization_alias="recentSms")


class Pagination(BaseModel):
    current_page: int = Field(..., ge=1, serialization_alias="currentPage")
    total_pages: int = Field(..., ge=0, serialization_alias="totalPages")
    total_records: int = Field(..., ge=0, serialization_alias="totalRecords")
    has_next: bool = Field(..., serialization_alias="hasNext")
    has_prev: bool = Field(..., serialization_alias="hasPrev")

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_records=total,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class RecordListResponse(BaseModel):
    logs: list[DeliveryRecordResponse] = Field(default_factory=list)
    pagination: Pagination


class IncomingListResponse(BaseModel):
    logs: list[IncomingMessageResponse] = Field(default_factory=list)
    pagination: Pagination


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
