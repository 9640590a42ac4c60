"""
Tests for matching device reports to Delivery Records.

Tests cover:
- SENT / FAILED reports on the newest pending record
- No downgrade of a SENT record
- Correlation misses
- Incoming SMS storage with relay receipt time
"""

from datetime import datetime, timezone

import pytest

from sms_relay.correlator import ConfirmationCorrelator
from sms_relay.models import DeliveryStatus


@pytest.fixture
def pending_record(intake, relay, store):
    """A record that has been dequeued and published."""
    result = intake.submit("+15550001", "hello", "owner-1")
    relay.queue.pop()
    store.update_status(result.record_id, DeliveryStatus.PENDING)
    return store.get(result.record_id)


class TestStatusReports:

    def test_sent_report(self, correlator, store, pending_record):
        updated = correlator.handle_status("+15550001|SENT|")

        assert updated.id == pending_record.id
        record = store.get(pending_record.id)
        assert record.status == DeliveryStatus.SENT
        assert record.sent_at is not None
        assert record.error_message is None

    def test_failed_report_keeps_device_reason(self, correlator, store, pending_record):
        correlator.handle_status("+15550001|FAILED|NO CARRIER")

        record = store.get(pending_record.id)
        assert record.status == DeliveryStatus.FAILED
        assert record.error_message == "NO CARRIER"
        assert record.retry_count == 0

    def test_failed_report_without_reason(self, correlator, store, pending_record):
        correlator.handle_status("+15550001|FAILED|")
        assert store.get(pending_record.id).error_message == "SMS delivery failed"

    def test_lowercase_status(self, correlator, store, pending_record):
        correlator.handle_status("+15550001|sent")
        assert store.get(pending_record.id).status == DeliveryStatus.SENT

    def test_sending_report_changes_nothing(self, correlator, store, pending_record):
        assert correlator.handle_status("+15550001|SENDING|") is None
        assert store.get(pending_record.id).status == DeliveryStatus.PENDING

    def test_queued_record_can_be_confirmed(self, correlator, intake, store):
        result = intake.submit("+15550001", "hello", "owner-1")
        correlator.handle_status("+15550001|SENT|")
        assert store.get(result.record_id).status == DeliveryStatus.SENT

    def test_newest_pending_record_wins(self, correlator, store):
        older = store.create("+15550001", "first")
        store.update_status(older.id, DeliveryStatus.PENDING)
        newer = store.create("+15550001", "second")
        store.update_status(newer.id, DeliveryStatus.PENDING)

        correlator.handle_status("+15550001|SENT|")

        assert store.get(newer.id).status == DeliveryStatus.SENT
        assert store.get(older.id).status == DeliveryStatus.PENDING

    def test_sent_is_never_downgraded(self, correlator, store, pending_record):
        correlator.handle_status("+15550001|SENT|")

        assert correlator.handle_status("+15550001|FAILED|late report") is None

        record = store.get(pending_record.id)
        assert record.status == DeliveryStatus.SENT
        assert record.error_message is None

    def test_correlation_miss_is_harmless(self, correlator, store, pending_record):
        before = store.get(pending_record.id)

        assert correlator.handle_status("+15559999|SENT|") is None

        records, total = store.list()
        assert total == 1
        after = store.get(pending_record.id)
        assert after.status == before.status
        assert after.updated_at == before.updated_at

    def test_malformed_frame_is_discarded(self, correlator, store, pending_record):
        assert correlator.handle_status("garbage") is None
        assert store.get(pending_record.id).status == DeliveryStatus.PENDING


class TestIncomingReports:

    def test_incoming_uses_receipt_time(self, store):
        received = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
        correlator = ConfirmationCorrelator(store, clock=lambda: received)

        message = correlator.handle_incoming("+15550001|hi there|4821")

        assert message.destination == "+15550001"
        assert message.text == "hi there"
        assert message.device_timestamp == "4821"
        assert message.received_at == received
        assert message.processed is False

        messages, total = store.list_incoming()
        assert total == 1

    def test_incoming_does_not_touch_records(self, correlator, store, pending_record):
        correlator.handle_incoming("+15550001|reply|1")
        assert store.get(pending_record.id).status == DeliveryStatus.PENDING

    def test_malformed_incoming_is_discarded(self, correlator, store):
        assert correlator.handle_incoming("+15550001") is None
        assert store.list_incoming()[1] == 0


class TestSameDestinationInFlight:

    def test_pending_record_preferred_over_newer_queued(self, correlator, store):
        in_flight = store.create("+15550001", "first")
        store.update_status(in_flight.id, DeliveryStatus.PENDING)
        waiting = store.create("+15550001", "second")

        correlator.handle_status("+15550001|SENT|")

        assert store.get(in_flight.id).status == DeliveryStatus.SENT
        assert store.get(waiting.id).status == DeliveryStatus.QUEUED

    @pytest.mark.asyncio
    async def test_queued_follow_up_is_still_published(self, intake, relay, correlator, store, transport):
        first = intake.submit("+15550001", "first", "owner-1")
        await relay.process_next()
        second = intake.submit("+15550001", "second", "owner-1")

        correlator.handle_status("+15550001|SENT|")
        await relay.process_next()

        assert [p[2] for p in transport.published] == ["+15550001|first", "+15550001|second"]
        assert store.get(first.record_id).status == DeliveryStatus.SENT
        assert store.get(second.record_id).status == DeliveryStatus.PENDING


def test_incoming_with_empty_device_timestamp(correlator):
    message = correlator.handle_incoming("+15550001|hello|")

    assert message.text == "hello"
    assert message.device_timestamp is None
