"""
Pipe-delimited text frames exchanged with the Device Agent.

- control (outbound):   ``<destination>|<payload>``
- status (inbound):     ``<destination>|<SENDING|SENT|FAILED>|<reason?>``
- incoming (inbound):   ``<destination>|<text>|<deviceTimestamp>``

None of the frames carry a request identifier; the device only knows
messages by destination.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sms_relay.errors import WireFormatError

SEPARATOR = "|"
STATUS_VALUES = ("SENDING", "SENT", "FAILED")


@dataclass(frozen=True)
class StatusEvent:
    destination: str
    status: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class IncomingEvent:
    destination: str
    text: str
    device_timestamp: Optional[str] = None


def encode_control(destination: str, payload: str) -> str:
    return f"{destination}{SEPARATOR}{payload}"


def parse_status_event(frame: str) -> StatusEvent:
    """
    Parse a status report. The status is matched case-insensitively and the
    reason is optional (an empty trailing field counts as no reason).

    Raises:
        WireFormatError: missing fields or unknown status
    """
    parts = frame.strip().split(SEPARATOR, 2)
    if len(parts) < 2 or not parts[0]:
        raise WireFormatError("Status frame needs destination and status", frame)

    status = parts[1].strip().upper()
    if status not in STATUS_VALUES:
        raise WireFormatError(f"Unknown device status {parts[1]!r}", frame)

    reason = parts[2].strip() if len(parts) > 2 else ""
    return StatusEvent(destination=parts[0].strip(), status=status, reason=reason or None)


def parse_incoming_event(frame: str) -> IncomingEvent:
    """
    Parse a received-SMS report.

    With three or more fields the last one is the device timestamp (empty
    means none) and the fields between are the text, which may itself
    contain the separator.

    Raises:
        WireFormatError: missing destination or text
    """
    parts = frame.split(SEPARATOR)
    if len(parts) < 2 or not parts[0].strip():
        raise WireFormatError("Incoming frame needs destination and text", frame)

    device_timestamp = None
    body = parts[1:]
    if len(body) > 1:
        device_timestamp = body[-1].strip() or None
        body = body[:-1]

    return IncomingEvent(
        destination=parts[0].strip(),
        text=SEPARATOR.join(body),
        device_timestamp=device_timestamp,
    )


def normalize_device_timestamp(raw: Optional[str], received_at: datetime) -> datetime:
    """
    Decide the wall-clock time of an incoming SMS.

    The modem sometimes reports milliseconds since its own boot and
    sometimes an epoch value, with nothing in the frame saying which.
    Until the device protocol states its clock explicitly the value is not
    used for ordering or display and the relay's receipt time wins. The raw
    value is still stored alongside the message.
    """
    return received_at
