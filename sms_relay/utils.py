"""
Utility functions for destination addresses and message text.
"""

import logging
import re

logger = logging.getLogger(__name__)

# Conservative E.164-style pattern: optional +, no leading zero, 2-15 digits
DESTINATION_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
_SEPARATORS = re.compile(r"[\s\-\.\(\)]")


def normalize_destination(destination: str) -> str:
    """Strip the spacing and punctuation people type into phone numbers."""
    return _SEPARATORS.sub("", destination or "")


def is_valid_destination(destination: str) -> bool:
    """
    Check a normalized destination against DESTINATION_PATTERN.

    Args:
        destination: Output of normalize_destination()

    Returns:
        True if the address looks like an international number
    """
    is_valid = bool(DESTINATION_PATTERN.match(destination))
    if not is_valid:
        logger.debug(f"Rejected destination: {destination!r}")
    return is_valid


def truncate_payload(payload: str, max_length: int) -> str:
    """Cut the text down to what the modem can hold."""
    if len(payload) <= max_length:
        return payload
    logger.info(f"Truncating message from {len(payload)} to {max_length} characters")
    return payload[:max_length]
