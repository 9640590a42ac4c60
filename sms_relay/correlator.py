"""Match identifier-less device reports back to Delivery Records.

Status frames only name the destination, so a report is applied to the
newest PENDING record for that destination, or to the newest QUEUED one
when nothing is PENDING. Two PENDING records to the same destination can
be confused with each other; the frames carry nothing that would tell
them apart.
"""

import logging
from datetime import datetime, timezone
from typing import Callable

from sms_relay.errors import CorrelationMiss, DeviceError, WireFormatError
from sms_relay.logging_utils import bind_record
from sms_relay.metrics import record_correlation_miss, record_status_event
from sms_relay.models import DeliveryStatus
from sms_relay.storage import DeliveryRecordStore
from sms_relay.wire import normalize_device_timestamp, parse_incoming_event, parse_status_event

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConfirmationCorrelator:
    def __init__(self, store: DeliveryRecordStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock

    def handle_status(self, frame: str):
        """
        Apply a ``destination|status|reason`` report.

        Returns:
            The updated record, or None when nothing was changed
        """
        try:
            event = parse_status_event(frame)
        except WireFormatError as e:
            logger.warning(f"Discarding status frame: {e.message} ({frame!r})")
            return None

        record_status_event(event.status)
        logger.info(
            f"Received SMS status update for {event.destination}: {event.status}"
            + (f" ({event.reason})" if event.reason else "")
        )

        record = self.store.find_most_recent_pending_by_destination(event.destination)
        if record is None:
            miss = CorrelationMiss(event.destination, event.status)
            record_correlation_miss()
            logger.warning(f"{miss.message} - may have already been processed")
            return None

        with bind_record(record.id):
            return self._apply(event, record)

    def _apply(self, event, record):
        if event.status == "SENDING":
            logger.debug(f"Device is sending record {record.id}")
            return None

        if event.status == "SENT":
            updated, applied = self.store.update_status(record.id, DeliveryStatus.SENT)
        else:
            failure = DeviceError(event.destination, event.reason or "SMS delivery failed")
            updated, applied = self.store.update_status(record.id, DeliveryStatus.FAILED, failure.message)

        if not applied:
            return None
        logger.info(f"Updated SMS status for {event.destination}: {event.status} (SMS ID: {record.id})")
        return updated

    def handle_incoming(self, frame: str):
        """
        Store a ``destination|text|deviceTimestamp`` report as an IncomingMessage.

        Returns:
            The stored message, or None for a malformed frame
        """
        try:
            event = parse_incoming_event(frame)
        except WireFormatError as e:
            logger.warning(f"Discarding incoming frame: {e.message} ({frame!r})")
            return None

        received_at = normalize_device_timestamp(event.device_timestamp, self._clock())
        return self.store.create_incoming(
            event.destination,
            event.text,
            received_at,
            device_timestamp=event.device_timestamp,
        )
