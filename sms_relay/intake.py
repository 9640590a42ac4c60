"""
Admission of new send requests.

Validates destinations, truncates text to the modem limit, creates the
Delivery Record and enqueues it. Never waits on the transport.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sms_relay.errors import BatchTooLarge, ValidationError
from sms_relay.metrics import record_submission
from sms_relay.relay import QueueEntry, RelayService
from sms_relay.storage import DeliveryRecordStore
from sms_relay.utils import is_valid_destination, normalize_destination, truncate_payload

logger = logging.getLogger(__name__)

QUEUED = "QUEUED"
REJECTED = "REJECTED"


@dataclass
class SubmitResult:
    record_id: str
    status: str
    queue_position: int
    eta_seconds: float


@dataclass
class BatchItemResult:
    destination: str
    status: str
    record_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    total: int
    queued: int
    rejected: int
    queue_position: int
    eta_seconds: float
    results: list = field(default_factory=list)


@dataclass
class QueueStatus:
    size: int
    is_processing: bool
    eta_seconds: float
    inter_send_delay: float


class IntakeGate:
    def __init__(
        self,
        store: DeliveryRecordStore,
        relay: RelayService,
        max_payload_length: int = 140,
        max_batch_size: int = 1000,
    ):
        self.store = store
        self.relay = relay
        self.max_payload_length = max_payload_length
        self.max_batch_size = max_batch_size

    def _check_destination(self, destination: str) -> str:
        normalized = normalize_destination(destination)
        if not is_valid_destination(normalized):
            raise ValidationError("Invalid phone number format", details={"destination": destination})
        return normalized

    def _check_payload(self, payload: str) -> None:
        if not payload or not payload.strip():
            raise ValidationError("Message is required")

    def _admit(self, destination: str, payload: str, owner_id: Optional[str]):
        record = self.store.create(
            destination,
            truncate_payload(payload, self.max_payload_length),
            owner_id=owner_id,
            original_payload=payload,
        )
        position = self.relay.enqueue(QueueEntry.for_record(record))
        return record, position

    def submit(self, destination: str, payload: str, owner_id: Optional[str] = None) -> SubmitResult:
        """
        Admit one SMS.

        Raises:
            ValidationError: bad destination or empty payload; nothing is persisted
        """
        try:
            self._check_payload(payload)
            normalized = self._check_destination(destination)
        except ValidationError:
            record_submission(REJECTED)
            raise

        record, position = self._admit(normalized, payload, owner_id)
        record_submission(QUEUED)
        logger.info(f"SMS added to queue: {normalized} (record {record.id}, position {position})")
        return SubmitResult(
            record_id=record.id,
            status=QUEUED,
            queue_position=position,
            eta_seconds=self.queue_status().eta_seconds,
        )

    def submit_batch(self, destinations: Sequence[str], payload: str,
                     owner_id: Optional[str] = None) -> BatchResult:
        """
        Admit the same SMS for many destinations.

        Each destination is validated on its own; invalid ones are reported
        as REJECTED without blocking the rest.

        Raises:
            BatchTooLarge: more than max_batch_size destinations
            ValidationError: no destinations or empty payload
        """
        if len(destinations) > self.max_batch_size:
            raise BatchTooLarge(len(destinations), self.max_batch_size)
        if not destinations:
            raise ValidationError("Recipients array is required and must not be empty")
        self._check_payload(payload)

        position_before = len(self.relay.queue)
        results = []
        for destination in destinations:
            try:
                normalized = self._check_destination(destination)
            except ValidationError as e:
                results.append(BatchItemResult(destination=destination, status=REJECTED, error=e.message))
                continue
            record, _ = self._admit(normalized, payload, owner_id)
            results.append(BatchItemResult(destination=normalized, status=QUEUED, record_id=record.id))

        queued = sum(1 for r in results if r.status == QUEUED)
        rejected = len(results) - queued
        record_submission(QUEUED, queued)
        record_submission(REJECTED, rejected)
        logger.info(f"Bulk SMS added to queue: {queued} messages, {rejected} rejected")

        return BatchResult(
            total=len(destinations),
            queued=queued,
            rejected=rejected,
            queue_position=position_before,
            eta_seconds=self.queue_status().eta_seconds,
            results=results,
        )

    def retry(self, record_id: str):
        record, _ = self.relay.retry(record_id)
        return record

    def queue_status(self) -> QueueStatus:
        status = self.relay.status()
        return QueueStatus(
            size=status["size"],
            is_processing=status["is_processing"],
            eta_seconds=status["eta_seconds"],
            inter_send_delay=self.relay.inter_send_delay,
        )
