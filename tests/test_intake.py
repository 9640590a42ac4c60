"""
Tests for the intake gate.

Tests cover:
- Admission creates a QUEUED record and a queue entry
- Validation failures persist nothing
- Payload truncation keeps the original for audit
- Batch caps and per-destination rejection
- Queue status and ETA
"""

import pytest

from sms_relay.errors import BatchTooLarge, ValidationError
from sms_relay.models import DeliveryStatus


class TestSubmit:

    def test_submit_queues_record(self, intake, store, relay):
        result = intake.submit("+15550001", "hello", "owner-1")

        assert result.status == "QUEUED"
        assert result.queue_position == 1
        assert result.eta_seconds == 45.0

        record = store.get(result.record_id)
        assert record.status == DeliveryStatus.QUEUED
        assert record.destination == "+15550001"
        assert record.owner_id == "owner-1"
        assert record.retry_count == 0
        assert len(relay.queue) == 1

    def test_submit_normalizes_destination(self, intake, store):
        result = intake.submit("+1 (555) 000-1", "hello", "owner-1")
        assert store.get(result.record_id).destination == "+15550001"

    def test_invalid_destination_creates_nothing(self, intake, store, relay):
        with pytest.raises(ValidationError):
            intake.submit("not-a-number", "hi", "owner-1")

        records, total = store.list()
        assert total == 0
        assert len(relay.queue) == 0

    @pytest.mark.parametrize("payload", ["", "   "])
    def test_empty_payload_rejected(self, intake, store, payload):
        with pytest.raises(ValidationError):
            intake.submit("+15550001", payload, "owner-1")
        assert store.list()[1] == 0

    def test_long_payload_truncated(self, intake, store, relay):
        text = "a" * 200
        result = intake.submit("+15550001", text, "owner-1")

        record = store.get(result.record_id)
        assert record.payload == "a" * 140
        assert record.original_payload == text
        assert relay.queue.pop().payload == "a" * 140

    def test_queue_positions_grow(self, intake):
        positions = [intake.submit(f"+1555000{i}", "hi", "o").queue_position for i in range(3)]
        assert positions == [1, 2, 3]


class TestSubmitBatch:

    def test_partial_failures_do_not_block_valid(self, intake, relay):
        result = intake.submit_batch(["+15550001", "bogus", "+15550002"], "hello", "owner-1")

        assert result.total == 3
        assert result.queued == 2
        assert result.rejected == 1
        assert result.queue_position == 0
        assert [item.status for item in result.results] == ["QUEUED", "REJECTED", "QUEUED"]
        assert result.results[1].error == "Invalid phone number format"
        assert result.results[1].record_id is None
        assert len(relay.queue) == 2

    def test_batch_too_large_rejected_whole(self, store):
        from sms_relay.intake import IntakeGate
        from sms_relay.relay import RelayService

        class Idle:
            is_connected = True

        gate = IntakeGate(store, RelayService(store, Idle()), max_batch_size=2)
        with pytest.raises(BatchTooLarge):
            gate.submit_batch(["+15550001", "+15550002", "+15550003"], "hi", "o")
        assert store.list()[1] == 0

    def test_empty_batch_rejected(self, intake):
        with pytest.raises(ValidationError):
            intake.submit_batch([], "hi", "o")


def test_queue_status_eta(intake):
    intake.submit("+15550001", "one", "o")
    intake.submit("+15550002", "two", "o")

    status = intake.queue_status()
    assert status.size == 2
    assert status.is_processing is False
    assert status.eta_seconds == 90.0
    assert status.inter_send_delay == 45.0
