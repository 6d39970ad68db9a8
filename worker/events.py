"""
Structured disposition events.

Every claim the worker loop finishes with produces exactly one JSON line on
the `media_engine.events` logger, so operators can tell acknowledged,
retried, dead-lettered, released and abandoned jobs apart without parsing free text.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from config import ERROR_DETAIL_MAX_LENGTH

EVENT_LOGGER_NAME = "media_engine.events"


class Disposition(str, Enum):
    """What happened to a claimed entry."""

    ACKNOWLEDGED = "acknowledged"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    RELEASED = "released"
    MALFORMED = "malformed"
    ACK_FAILED = "ack_failed"
    LEASE_LOST = "lease_lost"


def truncate_string(value: Optional[str], max_length: int) -> Optional[str]:
    """Shorten a string to max_length, marking the cut with '...'."""
    if value is None or len(value) <= max_length:
        return value
    return value[: max(max_length - 3, 0)] + "..."


class EventLogger:
    """JSON-lines logger for disposition events."""

    def __init__(self, name: str = EVENT_LOGGER_NAME):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)
        # Raw JSON lines, kept out of the human-readable root log
        self.logger.propagate = False

        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(handler)

    def emit(
        self,
        disposition: Disposition,
        job_id: Optional[str] = None,
        message_id: Optional[str] = None,
        stream: Optional[str] = None,
        consumer: Optional[str] = None,
        delivery_count: Optional[int] = None,
        max_redeliveries: Optional[int] = None,
        artifacts: Optional[List[str]] = None,
        error: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Log one disposition event.

        Returns:
            The event dict that was logged, or None if serialisation failed
        """
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": disposition.value,
        }
        if job_id is not None:
            entry["job_id"] = job_id
        if message_id is not None:
            entry["message_id"] = message_id
        if stream is not None:
            entry["stream"] = stream
        if consumer is not None:
            entry["consumer"] = consumer
        if delivery_count is not None:
            entry["delivery_count"] = delivery_count
        if max_redeliveries is not None:
            entry["max_redeliveries"] = max_redeliveries
        if artifacts is not None:
            entry["artifacts"] = artifacts
        if error:
            entry["error"] = truncate_string(error, ERROR_DETAIL_MAX_LENGTH)
        if duration_seconds is not None:
            entry["duration_seconds"] = round(duration_seconds, 3)
        if details:
            entry["details"] = details

        try:
            self.logger.info(json.dumps(entry, default=str))
        except Exception:
            # Never let event logging break the worker loop
            return None
        return entry


# Singleton instance for use across the worker
event_logger = EventLogger()


def emit_event(disposition: Disposition, **fields: Any) -> Optional[Dict[str, Any]]:
    """
    Convenience wrapper around the shared EventLogger.

    Example usage:
        emit_event(
            Disposition.ACKNOWLEDGED,
            job_id="abc123",
            message_id="1700000000000-0",
            artifacts=["abc123.m3u8", "abc123_000.ts"],
        )
    """
    return event_logger.emit(disposition, **fields)
