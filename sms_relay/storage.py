import logging
from datetime import datetime, timezone
from typing import Callable, Generator, Iterable, Optional, Tuple

from sqlalchemy import case, create_engine, func, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from sms_relay.config import settings
from sms_relay.errors import AlreadyDelivered, InvalidState, NotFound, RetryLimitExceeded

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("delivery_records", "incoming_messages")
DEFAULT_FAILURE_REASON = "SMS delivery failed"


def make_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine.
    check_same_thread=False is required for SQLite to be shared between
    FastAPI's threadpool and the relay's event loop.
    """
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, echo=False)


def make_session_factory(bind: Engine) -> sessionmaker:
    # Records are handed to the relay after the session closes
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(settings.DATABASE_URL)

# Create SessionLocal class for creating database sessions
SessionLocal = make_session_factory(engine)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def init_db(bind: Optional[Engine] = None) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    bind = bind or engine
    logger.debug(f"Initializing database with URL: {bind.url}")
    try:
        # Import models to register them with Base.metadata
        from sms_relay.models import DeliveryRecord, IncomingMessage  # noqa: F401

        Base.metadata.create_all(bind=bind)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health(bind: Optional[Engine] = None) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    bind = bind or engine
    try:
        with bind.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Delivery Record Repository Functions
# =============================================================================

def _allowed_transitions():
    from sms_relay.models import DeliveryStatus

    # FAILED -> PENDING is only reachable through retry_record()
    return {
        DeliveryStatus.QUEUED: {DeliveryStatus.PENDING, DeliveryStatus.SENT, DeliveryStatus.FAILED},
        DeliveryStatus.PENDING: {DeliveryStatus.PENDING, DeliveryStatus.SENT, DeliveryStatus.FAILED},
        DeliveryStatus.FAILED: set(),
        DeliveryStatus.SENT: set(),
    }


def create_record(
    db: Session,
    destination: str,
    payload: str,
    owner_id: Optional[str] = None,
    original_payload: Optional[str] = None,
):
    """
    Create a new Delivery Record in QUEUED status.

    Args:
        db: Database session
        destination: Normalized recipient address
        payload: Text as it will be transmitted (already truncated)
        owner_id: Requesting principal
        original_payload: Untruncated text, kept for audit

    Returns:
        The persisted DeliveryRecord
    """
    from sms_relay.models import DeliveryRecord, DeliveryStatus

    now = _utcnow()
    record = DeliveryRecord(
        destination=destination,
        payload=payload,
        original_payload=original_payload if original_payload is not None else payload,
        status=DeliveryStatus.QUEUED,
        retry_count=0,
        owner_id=owner_id,
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    db.commit()
    logger.debug(f"Delivery record created: id={record.id}, destination={destination}")
    return record


def get_record(db: Session, record_id: str):
    from sms_relay.models import DeliveryRecord

    return db.query(DeliveryRecord).filter(DeliveryRecord.id == record_id).first()


def update_record_status(
    db: Session,
    record_id: str,
    status,
    error_message: Optional[str] = None,
) -> Tuple[Optional[object], bool]:
    """
    Apply a status transition if the transition table allows it.

    SENT stamps sent_at and clears error_message. FAILED stores the given
    reason (or a default). A SENT record is never overwritten.

    Returns:
        Tuple of (record or None if missing, applied: bool)
    """
    record = get_record(db, record_id)
    if record is None:
        logger.warning(f"Status update for unknown record: {record_id}")
        return None, False

    from sms_relay.models import DeliveryStatus

    status = DeliveryStatus(status)
    current = DeliveryStatus(record.status)
    if status not in _allowed_transitions()[current]:
        logger.warning(f"Refused status change {current.value} -> {status.value} for record {record_id}")
        return record, False

    now = _utcnow()
    record.status = status
    record.updated_at = now
    if status == DeliveryStatus.SENT:
        record.sent_at = now
        record.error_message = None
    elif status == DeliveryStatus.FAILED:
        record.error_message = error_message or DEFAULT_FAILURE_REASON
    db.commit()
    logger.info(f"Record {record_id}: {current.value} -> {status.value}")
    return record, True


def retry_record(db: Session, record_id: str, max_retries: int):
    """
    Move a FAILED record back to PENDING for another attempt.

    Raises:
        NotFound, AlreadyDelivered, InvalidState, RetryLimitExceeded
    """
    from sms_relay.models import DeliveryStatus

    record = get_record(db, record_id)
    if record is None:
        raise NotFound(details={"id": record_id})
    current = DeliveryStatus(record.status)
    if current == DeliveryStatus.SENT:
        raise AlreadyDelivered(record_id)
    if current != DeliveryStatus.FAILED:
        raise InvalidState(record_id, current.value)
    if record.retry_count >= max_retries:
        raise RetryLimitExceeded(record_id, max_retries)

    record.status = DeliveryStatus.PENDING
    record.retry_count = record.retry_count + 1
    record.error_message = None
    record.updated_at = _utcnow()
    db.commit()
    logger.info(f"Record {record_id} queued for retry {record.retry_count}/{max_retries}")
    return record


def find_most_recent_pending(db: Session, destination: str):
    """
    Newest PENDING record for a destination; the newest QUEUED one only
    when nothing is PENDING. A report never skips the SMS in flight to land
    on one still waiting in the queue.
    """
    from sms_relay.models import DeliveryRecord, DeliveryStatus

    return (
        db.query(DeliveryRecord)
        .filter(
            DeliveryRecord.destination == destination,
            DeliveryRecord.status.in_([DeliveryStatus.PENDING, DeliveryStatus.QUEUED]),
        )
        .order_by(
            case((DeliveryRecord.status == DeliveryStatus.PENDING, 0), else_=1),
            DeliveryRecord.created_at.desc(),
        )
        .first()
    )


def list_records(
    db: Session,
    limit: int = 20,
    offset: int = 0,
    statuses: Optional[Iterable] = None,
    destination: Optional[str] = None,
    owner_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    oldest_first: bool = False,
) -> Tuple[list, int]:
    """
    Retrieve delivery records with pagination and filtering.

    Args:
        db: Database session
        limit: Maximum number of records to return
        offset: Number of records to skip
        statuses: Keep only these statuses
        destination: Substring match on the destination
        owner_id: Exact match on the requesting principal
        since/until: created_at bounds (inclusive)
        oldest_first: Order by created_at ASC instead of DESC

    Returns:
        Tuple of (records list, total count matching filters)
    """
    from sms_relay.models import DeliveryRecord

    query = db.query(DeliveryRecord)

    if statuses:
        query = query.filter(DeliveryRecord.status.in_(list(statuses)))
    if destination:
        query = query.filter(DeliveryRecord.destination.contains(destination))
    if owner_id:
        query = query.filter(DeliveryRecord.owner_id == owner_id)
    if since:
        query = query.filter(DeliveryRecord.created_at >= since)
    if until:
        query = query.filter(DeliveryRecord.created_at <= until)

    total = query.count()

    order = DeliveryRecord.created_at.asc() if oldest_first else DeliveryRecord.created_at.desc()
    records = query.order_by(order, DeliveryRecord.id.asc()).offset(offset).limit(limit).all()
    logger.debug(f"Retrieved {len(records)} of {total} delivery records")
    return records, total


def status_summary(db: Session, owner_id: Optional[str] = None, since: Optional[datetime] = None) -> dict:
    """
    Count records per status.

    Returns:
        {"total": n, "queued": n, "pending": n, "sent": n, "failed": n}
    """
    from sms_relay.models import DeliveryRecord, DeliveryStatus

    query = db.query(DeliveryRecord.status, func.count(DeliveryRecord.id))
    if owner_id:
        query = query.filter(DeliveryRecord.owner_id == owner_id)
    if since:
        query = query.filter(DeliveryRecord.created_at >= since)

    summary = {"total": 0}
    summary.update({status.value.lower(): 0 for status in DeliveryStatus})
    for status, count in query.group_by(DeliveryRecord.status).all():
        summary[DeliveryStatus(status).value.lower()] = count
        summary["total"] += count
    return summary


# =============================================================================
# Incoming Message Repository Functions
# =============================================================================

def create_incoming(
    db: Session,
    destination: str,
    text_body: str,
    received_at: datetime,
    device_timestamp: Optional[str] = None,
):
    from sms_relay.models import IncomingMessage

    message = IncomingMessage(
        destination=destination,
        text=text_body,
        device_timestamp=device_timestamp,
        received_at=received_at,
        processed=False,
        created_at=_utcnow(),
    )
    db.add(message)
    db.commit()
    logger.info(f"Stored incoming SMS from {destination}")
    return message


def list_incoming(
    db: Session,
    limit: int = 20,
    offset: int = 0,
    destination: Optional[str] = None,
    processed: Optional[bool] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> Tuple[list, int]:
    """Incoming messages newest first, with the same filters as list_records."""
    from sms_relay.models import IncomingMessage

    query = db.query(IncomingMessage)
    if destination:
        query = query.filter(IncomingMessage.destination.contains(destination))
    if processed is not None:
        query = query.filter(IncomingMessage.processed == processed)
    if since:
        query = query.filter(IncomingMessage.received_at >= since)
    if until:
        query = query.filter(IncomingMessage.received_at <= until)

    total = query.count()
    messages = (
        query.order_by(IncomingMessage.received_at.desc(), IncomingMessage.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return messages, total


# =============================================================================
# Store used by the relay components
# =============================================================================

class DeliveryRecordStore:
    """
    Narrow persistence interface shared by the intake gate, the queue
    processor and the correlator. Each call runs in its own session.

    The transition table in update_record_status() is the only thing
    keeping the processor (QUEUED -> PENDING) and the correlator
    (PENDING -> SENT/FAILED) from clobbering each other.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def create(self, destination: str, payload: str, owner_id: Optional[str] = None,
               original_payload: Optional[str] = None):
        with self._session_factory() as db:
            return create_record(db, destination, payload, owner_id, original_payload)

    def get(self, record_id: str):
        with self._session_factory() as db:
            return get_record(db, record_id)

    def update_status(self, record_id: str, status, error_message: Optional[str] = None):
        with self._session_factory() as db:
            return update_record_status(db, record_id, status, error_message)

    def mark_retry(self, record_id: str, max_retries: int):
        with self._session_factory() as db:
            return retry_record(db, record_id, max_retries)

    def find_most_recent_pending_by_destination(self, destination: str):
        with self._session_factory() as db:
            return find_most_recent_pending(db, destination)

    def list(self, **filters) -> Tuple[list, int]:
        with self._session_factory() as db:
            return list_records(db, **filters)

    def status_summary(self, owner_id: Optional[str] = None, since: Optional[datetime] = None) -> dict:
        with self._session_factory() as db:
            return status_summary(db, owner_id, since)

    def create_incoming(self, destination: str, text_body: str, received_at: datetime,
                        device_timestamp: Optional[str] = None):
        with self._session_factory() as db:
            return create_incoming(db, destination, text_body, received_at, device_timestamp)

    def list_incoming(self, **filters) -> Tuple[list, int]:
        with self._session_factory() as db:
            return list_incoming(db, **filters)
