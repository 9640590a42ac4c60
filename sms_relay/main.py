import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response, status
from sqlalchemy.orm import Session

from sms_relay.config import settings
from sms_relay.correlator import ConfirmationCorrelator
from sms_relay.errors import NotFound, TransportFatalError, add_exception_handlers
from sms_relay.intake import IntakeGate
from sms_relay.logging_utils import RequestLoggingMiddleware, setup_logging
from sms_relay.metrics import get_metrics, get_metrics_content_type
from sms_relay.models import DeliveryStatus
from sms_relay.relay import RelayService
from sms_relay.schemas import (
    BulkItemResponse,
    BulkSendRequest,
    BulkSendResponse,
    BulkStatusResponse,
    BulkSummary,
    DeliveryRecordResponse,
    ErrorResponse,
    HealthResponse,
    IncomingListResponse,
    IncomingMessageResponse,
    Pagination,
    QueueInfo,
    QueueStatusResponse,
    RecordListResponse,
    RetryResponse,
    SendRequest,
    SendResponse,
    StatusSummary,
)
from sms_relay.storage import (
    DeliveryRecordStore,
    SessionLocal,
    check_db_health,
    get_db,
    get_record,
    init_db,
    list_incoming,
    list_records,
    status_summary,
)
from sms_relay.transport import MqttTransport, Transport


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

TIMEFRAMES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}


def escalate_to_supervisor() -> None:
    """Terminate so the process supervisor (systemd, Docker) restarts the relay."""
    logger.critical("Relay cannot make progress without its broker, requesting restart")
    os.kill(os.getpid(), signal.SIGTERM)


async def supervise_transport(transport: MqttTransport) -> None:
    """Run the transport loop; any way it dies other than cancellation ends the process."""
    try:
        await transport.run()
    except TransportFatalError as e:
        logger.critical(e.message)
        escalate_to_supervisor()
    except Exception:
        logger.critical("Relay transport loop crashed", exc_info=True)
        escalate_to_supervisor()


def create_app(transport: Optional[Transport] = None, autostart: Optional[bool] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        transport: Relay transport; an MqttTransport from settings when omitted
        autostart: Start the transport loop and queue processor with the app
            (defaults to RELAY_AUTOSTART)
    """
    if autostart is None:
        autostart = settings.RELAY_AUTOSTART

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create tables, wire the relay components, start the worker
        - Shutdown: stop the worker and close the broker connection
        """
        init_db()
        store = DeliveryRecordStore(SessionLocal)
        correlator = ConfirmationCorrelator(store)
        relay_transport = transport
        if relay_transport is None:
            relay_transport = MqttTransport.from_settings(
                settings,
                on_status=correlator.handle_status,
                on_incoming=correlator.handle_incoming,
            )
        relay = RelayService.from_settings(settings, store, relay_transport)

        app.state.store = store
        app.state.correlator = correlator
        app.state.transport = relay_transport
        app.state.relay = relay
        app.state.intake = IntakeGate(
            store,
            relay,
            max_payload_length=settings.MAX_PAYLOAD_LENGTH,
            max_batch_size=settings.MAX_BATCH_SIZE,
        )

        transport_task = None
        if autostart:
            if isinstance(relay_transport, MqttTransport):
                transport_task = asyncio.create_task(supervise_transport(relay_transport))
            await relay.start()
        yield
        await relay.stop()
        if isinstance(relay_transport, MqttTransport):
            await relay_transport.disconnect()
        if transport_task is not None and not transport_task.done():
            transport_task.cancel()

    app = FastAPI(
        title="SMS Relay",
        description="Queues SMS requests and relays them one at a time to a modem over MQTT",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    add_exception_handlers(app)
    register_routes(app)
    return app


def get_intake(request: Request) -> IntakeGate:
    return request.app.state.intake


def _paging(page: int, limit: int) -> int:
    return (page - 1) * limit


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(request: Request, response: Response) -> HealthResponse:
        """
        Readiness probe - returns 200 only if:
        1. DB is reachable and schema is applied
        2. The relay broker is connected

        Otherwise returns 503 (Service Unavailable).
        """
        if not check_db_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

        transport = getattr(request.app.state, "transport", None)
        if transport is None or getattr(transport, "fatal", False) or not transport.is_connected:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Relay broker not connected")

        return HealthResponse(status="ready")

    # =========================================================================
    # SMS Routes
    # =========================================================================

    @app.post(
        "/sms/send",
        response_model=SendResponse,
        responses={422: {"model": ErrorResponse, "description": "Invalid phone number or message"}},
    )
    async def send_sms(
        body: SendRequest,
        intake: IntakeGate = Depends(get_intake),
        x_owner_id: Annotated[str | None, Header(alias="X-Owner-Id")] = None,
    ) -> SendResponse:
        """
        Queue one SMS. Returns immediately; delivery progress is visible
        through /sms/status/{id}.
        """
        result = intake.submit(body.phone_number, body.message, x_owner_id)
        return SendResponse(
            sms_id=result.record_id,
            status=result.status,
            queue_position=result.queue_position,
            eta_seconds=result.eta_seconds,
        )

    @app.post(
        "/sms/bulk",
        response_model=BulkSendResponse,
        responses={
            413: {"model": ErrorResponse, "description": "Too many recipients"},
            422: {"model": ErrorResponse, "description": "No recipients or empty message"},
        },
    )
    async def send_bulk(
        body: BulkSendRequest,
        intake: IntakeGate = Depends(get_intake),
        x_owner_id: Annotated[str | None, Header(alias="X-Owner-Id")] = None,
    ) -> BulkSendResponse:
        """Queue the same SMS for many recipients; invalid numbers are reported per item."""
        result = intake.submit_batch(body.recipients, body.message, x_owner_id)
        return BulkSendResponse(
            summary=BulkSummary(
                total=result.total,
                queued=result.queued,
                rejected=result.rejected,
                queue_position=result.queue_position,
                eta_seconds=result.eta_seconds,
            ),
            results=[
                BulkItemResponse(
                    phone_number=item.destination,
                    status=item.status,
                    sms_id=item.record_id,
                    error=item.error,
                )
                for item in result.results
            ],
        )

    @app.post(
        "/sms/retry/{sms_id}",
        response_model=RetryResponse,
        responses={
            404: {"model": ErrorResponse, "description": "SMS not found"},
            409: {"model": ErrorResponse, "description": "Already sent, not failed, or retry limit reached"},
        },
    )
    async def retry_sms(sms_id: str, intake: IntakeGate = Depends(get_intake)) -> RetryResponse:
        """Re-queue a FAILED SMS. Status goes back to PENDING until the device reports."""
        record = intake.retry(sms_id)
        return RetryResponse(sms_id=record.id, status=record.status.value, retry_count=record.retry_count)

    @app.get(
        "/sms/status/{sms_id}",
        response_model=DeliveryRecordResponse,
        responses={404: {"model": ErrorResponse, "description": "SMS not found"}},
    )
    async def sms_status(sms_id: str, db: Session = Depends(get_db)) -> DeliveryRecordResponse:
        record = get_record(db, sms_id)
        if record is None:
            raise NotFound(details={"id": sms_id})
        return DeliveryRecordResponse.model_validate(record)

    @app.get("/sms/queue-status", response_model=QueueStatusResponse)
    async def queue_status(
        intake: IntakeGate = Depends(get_intake),
        db: Session = Depends(get_db),
        x_owner_id: Annotated[str | None, Header(alias="X-Owner-Id")] = None,
    ) -> QueueStatusResponse:
        """Queue size, whether a send is in flight, and the caller's unfinished SMS."""
        queue = intake.queue_status()
        queued = []
        if x_owner_id:
            queued, _ = list_records(
                db,
                limit=20,
                statuses=[DeliveryStatus.QUEUED, DeliveryStatus.PENDING],
                owner_id=x_owner_id,
                oldest_first=True,
            )
        return QueueStatusResponse(
            queue=QueueInfo(
                size=queue.size,
                is_processing=queue.is_processing,
                eta_seconds=queue.eta_seconds,
                inter_send_delay=queue.inter_send_delay,
            ),
            your_queued_sms=[DeliveryRecordResponse.model_validate(r) for r in queued],
        )

    @app.get("/sms/bulk-status", response_model=BulkStatusResponse)
    async def bulk_status(
        timeframe: Annotated[str, Query(description="1h, 24h or 7d")] = "1h",
        db: Session = Depends(get_db),
        x_owner_id: Annotated[str | None, Header(alias="X-Owner-Id")] = None,
    ) -> BulkStatusResponse:
        """Per-status counts and the 50 most recent SMS for the caller within a timeframe."""
        since = datetime.now(timezone.utc) - TIMEFRAMES.get(timeframe, TIMEFRAMES["1h"])
        summary = status_summary(db, owner_id=x_owner_id, since=since)
        recent, _ = list_records(db, limit=50, owner_id=x_owner_id, since=since)
        return BulkStatusResponse(
            timeframe=timeframe if timeframe in TIMEFRAMES else "1h",
            summary=StatusSummary(**summary),
            recent_sms=[DeliveryRecordResponse.model_validate(r) for r in recent],
        )

    # =========================================================================
    # Log Routes
    # =========================================================================

    @app.get("/logs/sms", response_model=RecordListResponse)
    async def sms_logs(
        page: Annotated[int, Query(ge=1)] = 1,
        limit: Annotated[int, Query(ge=1, le=100)] = 20,
        status_filter: Annotated[DeliveryStatus | None, Query(alias="status")] = None,
        phone_number: Annotated[str | None, Query(alias="phoneNumber")] = None,
        start_date: Annotated[datetime | None, Query(alias="startDate")] = None,
        end_date: Annotated[datetime | None, Query(alias="endDate")] = None,
        user_id: Annotated[str | None, Query(alias="userId")] = None,
        db: Session = Depends(get_db),
    ) -> RecordListResponse:
        """Delivery records newest first, filterable and paginated."""
        records, total = list_records(
            db,
            limit=limit,
            offset=_paging(page, limit),
            statuses=[status_filter] if status_filter else None,
            destination=phone_number,
            owner_id=user_id,
            since=start_date,
            until=end_date,
        )
        logger.info(f"GET /logs/sms: returned {len(records)} of {total} records")
        return RecordListResponse(
            logs=[DeliveryRecordResponse.model_validate(r) for r in records],
            pagination=Pagination.build(page, limit, total),
        )

    @app.get("/logs/incoming", response_model=IncomingListResponse)
    async def incoming_logs(
        page: Annotated[int, Query(ge=1)] = 1,
        limit: Annotated[int, Query(ge=1, le=100)] = 20,
        phone_number: Annotated[str | None, Query(alias="phoneNumber")] = None,
        processed: Annotated[bool | None, Query()] = None,
        start_date: Annotated[datetime | None, Query(alias="startDate")] = None,
        end_date: Annotated[datetime | None, Query(alias="endDate")] = None,
        db: Session = Depends(get_db),
    ) -> IncomingListResponse:
        """SMS received by the modem, newest first."""
        messages, total = list_incoming(
            db,
            limit=limit,
            offset=_paging(page, limit),
            destination=phone_number,
            processed=processed,
            since=start_date,
            until=end_date,
        )
        return IncomingListResponse(
            logs=[IncomingMessageResponse.model_validate(m) for m in messages],
            pagination=Pagination.build(page, limit, total),
        )

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


app = create_app()
