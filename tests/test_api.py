"""
Tests for the HTTP API.

Tests cover:
- POST /sms/send, /sms/bulk and /sms/retry/{id}
- GET /sms/status/{id}, /sms/queue-status and /sms/bulk-status
- Log listings with page-based pagination
- Health probes and metrics
- A full send: queue, publish, device confirmation
"""

from datetime import datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from sms_relay import main
from sms_relay.errors import TransportFatalError
from sms_relay.main import create_app
from sms_relay.models import DeliveryStatus
from sms_relay.schemas import DeliveryRecordResponse
from sms_relay.storage import Base, engine

from tests.conftest import FakeTransport


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database and an idle relay for each test."""
    Base.metadata.create_all(bind=engine)

    app = create_app(transport=FakeTransport(), autostart=False)
    with TestClient(app) as test_client:
        test_client.app.state.relay.inter_send_delay = 0
        yield test_client

    Base.metadata.drop_all(bind=engine)


def send(client, phone_number="+15550001", message="hello", owner="owner-1"):
    response = client.post(
        "/sms/send",
        json={"phoneNumber": phone_number, "message": message},
        headers={"X-Owner-Id": owner},
    )
    return response


class TestSend:

    def test_send_queues_sms(self, client):
        client.app.state.relay.inter_send_delay = 45.0
        response = send(client)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "QUEUED"
        assert data["queuePosition"] == 1
        assert data["etaSeconds"] == 45.0
        assert data["smsId"]
        assert "X-Request-ID" in response.headers

    def test_invalid_number(self, client):
        response = send(client, phone_number="12ab")

        assert response.status_code == 422
        data = response.json()
        assert data["code"] == "VALIDATION_ERROR"
        assert data["detail"] == "Invalid phone number format"
        assert client.get("/logs/sms").json()["pagination"]["totalRecords"] == 0

    def test_missing_message(self, client):
        response = client.post("/sms/send", json={"phoneNumber": "+15550001"})
        assert response.status_code == 422

    def test_status_of_queued_sms(self, client):
        sms_id = send(client, message="x" * 200).json()["smsId"]

        response = client.get(f"/sms/status/{sms_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == sms_id
        assert data["status"] == "QUEUED"
        assert data["payload"] == "x" * 140
        assert data["retryCount"] == 0
        assert data["ownerId"] == "owner-1"
        assert data["sentAt"] is None

    def test_status_of_unknown_sms(self, client):
        response = client.get("/sms/status/nope")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestBulk:

    def test_partial_rejection(self, client):
        response = client.post(
            "/sms/bulk",
            json={"recipients": ["+15550001", "invalid", "+15550002"], "message": "hi all"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["summary"]["total"] == 3
        assert data["summary"]["queued"] == 2
        assert data["summary"]["rejected"] == 1
        assert [item["status"] for item in data["results"]] == ["QUEUED", "REJECTED", "QUEUED"]
        assert data["results"][1]["error"] == "Invalid phone number format"

    def test_too_many_recipients(self, client):
        recipients = [f"+1555{i:07d}" for i in range(1001)]
        response = client.post("/sms/bulk", json={"recipients": recipients, "message": "hi"})

        assert response.status_code == 413
        assert response.json()["code"] == "BATCH_TOO_LARGE"
        assert client.get("/logs/sms").json()["pagination"]["totalRecords"] == 0

    def test_no_recipients(self, client):
        response = client.post("/sms/bulk", json={"recipients": [], "message": "hi"})
        assert response.status_code == 422


class TestRetry:

    def test_retry_unknown(self, client):
        response = client.post("/sms/retry/nope")
        assert response.status_code == 404

    def test_retry_queued_sms(self, client):
        sms_id = send(client).json()["smsId"]

        response = client.post(f"/sms/retry/{sms_id}")

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATE"

    def test_retry_failed_sms(self, client):
        sms_id = send(client).json()["smsId"]
        client.app.state.store.update_status(sms_id, DeliveryStatus.FAILED, "NO CARRIER")

        response = client.post(f"/sms/retry/{sms_id}")

        assert response.status_code == 200
        assert response.json() == {"smsId": sms_id, "status": "PENDING", "retryCount": 1}


class TestQueueViews:

    def test_queue_status(self, client):
        send(client, owner="alice")
        send(client, phone_number="+15550002", owner="bob")

        response = client.get("/sms/queue-status", headers={"X-Owner-Id": "alice"})

        assert response.status_code == 200
        data = response.json()
        assert data["queue"]["size"] == 2
        assert data["queue"]["isProcessing"] is False
        assert len(data["yourQueuedSms"]) == 1
        assert data["yourQueuedSms"][0]["ownerId"] == "alice"

    def test_bulk_status(self, client):
        first = send(client, owner="alice").json()["smsId"]
        send(client, phone_number="+15550002", owner="alice")
        client.app.state.store.update_status(first, DeliveryStatus.SENT)

        response = client.get("/sms/bulk-status?timeframe=24h", headers={"X-Owner-Id": "alice"})

        assert response.status_code == 200
        data = response.json()
        assert data["timeframe"] == "24h"
        assert data["summary"] == {"total": 2, "queued": 1, "pending": 0, "sent": 1, "failed": 0}
        assert len(data["recentSms"]) == 2

    def test_bulk_status_unknown_timeframe(self, client):
        response = client.get("/sms/bulk-status?timeframe=1y")
        assert response.json()["timeframe"] == "1h"


class TestLogs:

    def test_sms_log_pagination(self, client):
        for i in range(5):
            send(client, phone_number=f"+1555000{i}")

        response = client.get("/logs/sms?page=2&limit=2")

        data = response.json()
        assert len(data["logs"]) == 2
        assert data["pagination"] == {
            "currentPage": 2,
            "totalPages": 3,
            "totalRecords": 5,
            "hasNext": True,
            "hasPrev": True,
        }

    def test_sms_log_filters(self, client):
        send(client, phone_number="+15550001", owner="alice")
        send(client, phone_number="+15550002", owner="bob")

        data = client.get("/logs/sms?userId=bob").json()
        assert [log["destination"] for log in data["logs"]] == ["+15550002"]

        data = client.get("/logs/sms?status=SENT").json()
        assert data["logs"] == []

    def test_incoming_log(self, client):
        client.app.state.correlator.handle_incoming("+15550009|are you there?|1234")

        data = client.get("/logs/incoming").json()

        assert data["pagination"]["totalRecords"] == 1
        assert data["logs"][0]["text"] == "are you there?"
        assert data["logs"][0]["deviceTimestamp"] == "1234"
        assert data["logs"][0]["processed"] is False


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_broker(self, client):
        client.app.state.transport.connected = False

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "Relay broker not connected"

    def test_metrics(self, client):
        send(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "sms_submissions_total" in response.text
        assert "http_requests_total" in response.text


def test_send_and_confirm(client):
    """Queue an SMS, let the worker publish it, then confirm it from the device."""
    sms_id = send(client, phone_number="+1 555 000 1").json()["smsId"]
    relay = client.app.state.relay

    assert client.portal.call(relay.process_next) is True

    transport = client.app.state.transport
    assert transport.published == [(None, "sms/send", "+15550001|hello")]
    assert client.get(f"/sms/status/{sms_id}").json()["status"] == "PENDING"

    client.app.state.correlator.handle_status("+15550001|SENT|")

    data = client.get(f"/sms/status/{sms_id}").json()
    assert data["status"] == "SENT"
    assert data["sentAt"] is not None


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TestTimestamps:

    def test_stored_timestamps_keep_utc_offset(self, client):
        sms_id = send(client).json()["smsId"]
        client.app.state.store.update_status(sms_id, DeliveryStatus.SENT)

        data = client.get(f"/sms/status/{sms_id}").json()

        for key in ("createdAt", "updatedAt", "sentAt"):
            assert parse_timestamp(data[key]).utcoffset().total_seconds() == 0

    def test_naive_datetime_read_as_utc(self):
        naive = datetime(2025, 1, 15, 10, 0)
        record = SimpleNamespace(
            id="r1", destination="+15550001", payload="hi", status=DeliveryStatus.QUEUED,
            retry_count=0, error_message=None, owner_id=None,
            created_at=naive, updated_at=naive, sent_at=None,
        )

        response = DeliveryRecordResponse.model_validate(record)

        assert response.created_at.utcoffset().total_seconds() == 0
        assert response.created_at.hour == 10
        assert response.sent_at is None


class CrashingTransport:

    def __init__(self, error):
        self.error = error

    async def run(self):
        raise self.error


class TestTransportSupervision:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [TransportFatalError(5), RuntimeError("listener bug")])
    async def test_loop_death_escalates(self, monkeypatch, error):
        escalations = []
        monkeypatch.setattr(main, "escalate_to_supervisor", lambda: escalations.append(True))

        await main.supervise_transport(CrashingTransport(error))

        assert escalations == [True]
