"""Single-flight delivery queue and its worker.

The modem behind the Device Agent handles one send at a time, so the
worker publishes one entry, then holds the in-flight flag for
``inter_send_delay`` seconds before the next entry can be dequeued. The
delay is a pacing floor, not a confirmation that the previous SMS went out;
confirmations arrive separately through the correlator.

Records move QUEUED -> PENDING when dequeued and stay PENDING after a
successful publish. Exhausted publish attempts mark the record FAILED with
``RELAY_UNAVAILABLE`` without touching its retry_count.
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple

from sms_relay.config import Settings
from sms_relay.logging_utils import bind_record
from sms_relay.metrics import record_publish, set_queue_size
from sms_relay.models import DeliveryStatus
from sms_relay.storage import DeliveryRecordStore
from sms_relay.transport import Transport
from sms_relay.wire import encode_control

logger = logging.getLogger(__name__)

RELAY_UNAVAILABLE = "relay unavailable"


@dataclass(frozen=True)
class QueueEntry:
    record_id: str
    destination: str
    payload: str
    enqueued_at: float = field(default_factory=time.time)

    @classmethod
    def for_record(cls, record) -> "QueueEntry":
        return cls(record_id=record.id, destination=record.destination, payload=record.payload)


class DeliveryQueue:
    """FIFO of pending sends. Owned and drained by one RelayService."""

    def __init__(self):
        self._entries = deque()

    def put(self, entry: QueueEntry) -> int:
        """Append an entry and return its 1-based position."""
        self._entries.append(entry)
        return len(self._entries)

    def pop(self) -> Optional[QueueEntry]:
        return self._entries.popleft() if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)


class RelayService:
    def __init__(
        self,
        store: DeliveryRecordStore,
        transport: Transport,
        queue: Optional[DeliveryQueue] = None,
        *,
        control_topic: str = "sms/send",
        inter_send_delay: float = 45.0,
        tick_interval: float = 5.0,
        publish_attempts: int = 3,
        publish_retry_delay: float = 3.0,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.transport = transport
        self.queue = queue if queue is not None else DeliveryQueue()
        self.control_topic = control_topic
        self.inter_send_delay = inter_send_delay
        self.tick_interval = tick_interval
        self.publish_attempts = publish_attempts
        self.publish_retry_delay = publish_retry_delay
        self.max_retries = max_retries
        self._sleep = sleep

        self._in_flight = False
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, store: DeliveryRecordStore, transport: Transport,
                      queue: Optional[DeliveryQueue] = None) -> "RelayService":
        return cls(
            store,
            transport,
            queue,
            control_topic=settings.MQTT_CONTROL_TOPIC,
            inter_send_delay=settings.INTER_SEND_DELAY,
            tick_interval=settings.QUEUE_TICK_INTERVAL,
            publish_attempts=settings.PUBLISH_MAX_ATTEMPTS,
            publish_retry_delay=settings.PUBLISH_RETRY_DELAY,
            max_retries=settings.MAX_RETRIES,
        )

    @property
    def is_processing(self) -> bool:
        return self._in_flight

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict:
        size = len(self.queue)
        return {
            "size": size,
            "is_processing": self._in_flight,
            "eta_seconds": size * self.inter_send_delay,
        }

    def enqueue(self, entry: QueueEntry) -> int:
        position = self.queue.put(entry)
        set_queue_size(len(self.queue))
        logger.info(f"Added SMS to queue for {entry.destination} (queue size: {len(self.queue)})")
        self._wakeup.set()
        return position

    def retry(self, record_id: str) -> Tuple[object, int]:
        """
        Re-enqueue a FAILED record without creating a new one.

        The record goes to PENDING with retry_count incremented before it
        is published again.

        Returns:
            Tuple of (record, queue position)

        Raises:
            NotFound, AlreadyDelivered, InvalidState, RetryLimitExceeded
        """
        record = self.store.mark_retry(record_id, self.max_retries)
        position = self.enqueue(QueueEntry.for_record(record))
        return record, position

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        logger.info(
            f"Starting queue processor (delay {self.inter_send_delay}s, tick {self.tick_interval}s)"
        )
        self._task = asyncio.create_task(self._run(), name="relay-queue-processor")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info(f"Queue processor stopped ({len(self.queue)} entries left in memory)")

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            if await self.process_next():
                continue
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.tick_interval)

    async def process_next(self) -> bool:
        """
        Run one processing cycle.

        Returns:
            True if an entry was taken off the queue
        """
        if self._in_flight or not len(self.queue):
            return False
        if not self.transport.is_connected:
            logger.warning(f"Relay broker not connected, {len(self.queue)} SMS waiting in queue")
            return False

        self._in_flight = True
        entry = self.queue.pop()
        set_queue_size(len(self.queue))
        try:
            with bind_record(entry.record_id):
                await self._deliver(entry)
            return True
        finally:
            self._in_flight = False

    async def _deliver(self, entry: QueueEntry) -> None:
        try:
            logger.info(f"Processing queued SMS {entry.destination} ({len(self.queue)} remaining in queue)")
            _, applied = self.store.update_status(entry.record_id, DeliveryStatus.PENDING)
            if not applied:
                logger.warning(f"Dropping queue entry for record {entry.record_id}: no longer deliverable")
                return

            if not await self._publish(entry):
                self.store.update_status(entry.record_id, DeliveryStatus.FAILED, RELAY_UNAVAILABLE)
                logger.error(f"SMS failed for {entry.destination} after {self.publish_attempts} attempts")
                return

            logger.info(
                f"SMS handed to device for {entry.destination} - waiting "
                f"{self.inter_send_delay}s before next SMS"
            )
            await self._sleep(self.inter_send_delay)
        except Exception as e:
            logger.exception(f"Error processing queued SMS for {entry.destination}")
            self._fail_quietly(entry, f"processing error: {e}")

    async def _publish(self, entry: QueueEntry) -> bool:
        frame = encode_control(entry.destination, entry.payload)
        for attempt in range(1, self.publish_attempts + 1):
            if await self.transport.publish(self.control_topic, frame):
                record_publish("ok")
                return True
            if attempt < self.publish_attempts:
                record_publish("retry")
                logger.warning(
                    f"Publish failed, attempt {attempt}/{self.publish_attempts} for {entry.destination}"
                )
                await self._sleep(self.publish_retry_delay)
        record_publish("failed")
        return False

    def _fail_quietly(self, entry: QueueEntry, reason: str) -> None:
        try:
            self.store.update_status(entry.record_id, DeliveryStatus.FAILED, reason)
        except Exception as db_error:
            logger.error(f"Database update error for {entry.destination}: {db_error}")
