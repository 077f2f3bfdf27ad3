"""
Local audit trail for the FREEGHOST identity core.

Security-relevant events (key generation, rotation and backup, enrollment,
verification outcomes with their structured rejection reasons) are kept in
a bounded in-memory trail and mirrored to the structured log. The trail is
local: rejection reasons recorded here are never returned to the service
that submitted a proof.
"""

import threading
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import structlog

from .constants import AUDIT_TRAIL_SIZE

# Initialize structured logger
logger = structlog.get_logger(__name__)


class AuditEventType(Enum):
    KEY_GENERATION = "key_generation"
    KEY_ROTATION = "key_rotation"
    KEY_BACKUP = "key_backup"
    KEY_RESTORE = "key_restore"
    TEMPLATE_GENERATION = "template_generation"
    TEMPLATE_REVOCATION = "template_revocation"
    VERIFICATION = "verification"
    ANOMALY_DETECTED = "anomaly_detected"
    SYSTEM_STARTUP = "system_startup"


class AnomalySeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AuditEvent:
    """A single audit record."""

    event_id: str
    event_type: AuditEventType
    timestamp: float
    session_id: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "details": dict(self.details),
        }


class AuditTrail:
    """
    Bounded, thread-safe trail of audit events.

    Parameters
    ----------
    max_events : int, default=AUDIT_TRAIL_SIZE
        Oldest events are discarded beyond this size.
    clock : Clock, optional
        Time source. Defaults to `time.time`.
    """

    def __init__(self, max_events: int = AUDIT_TRAIL_SIZE, clock: Any = None) -> None:
        self.max_events = max_events
        self.clock = clock
        self.session_id = uuid.uuid4().hex
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def _now(self) -> float:
        return self.clock.now() if self.clock is not None else time.time()

    def record(self, event_type: AuditEventType, **details: Any) -> str:
        """Append an event and return its id."""
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            event_type=event_type,
            timestamp=self._now(),
            session_id=self.session_id,
            details=details,
        )
        with self._lock:
            self._events.append(event)

        log = logger.warning if event_type is AuditEventType.ANOMALY_DETECTED else logger.info
        log("Audit event recorded", audit_event=event_type.value, **details)
        return event.event_id

    def anomaly(self, severity: AnomalySeverity, description: str, **details: Any) -> str:
        return self.record(
            AuditEventType.ANOMALY_DETECTED,
            severity=severity.value,
            description=description,
            **details,
        )

    def events(
        self,
        event_type: Optional[AuditEventType] = None,
        since: Optional[float] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            snapshot = list(self._events)
        return [
            e
            for e in snapshot
            if (event_type is None or e.event_type is event_type)
            and (since is None or e.timestamp >= since)
        ]

    def summary(self, since: Optional[float] = None) -> Dict[str, Any]:
        """
        Summarize the trail.

        Returns
        -------
        dict
            Total events, counts by type, anomaly count and rejection counts
            by reason.
        """
        events = self.events(since=since)
        by_type = Counter(e.event_type.value for e in events)
        rejections = Counter(
            e.details.get("reason")
            for e in events
            if e.event_type is AuditEventType.VERIFICATION and not e.details.get("accepted")
        )
        return {
            "session_id": self.session_id,
            "total_events": len(events),
            "events_by_type": dict(by_type),
            "anomalies_detected": by_type.get(AuditEventType.ANOMALY_DETECTED.value, 0),
            "rejections_by_reason": dict(rejections),
        }
