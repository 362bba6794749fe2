"""
Security event log and suspicious-client tracking.

Every pipeline stage reports through ``SecurityEventLog.record``. Each event
is written to the durable sink (security or audit category) and kept in a
bounded per-client buffer. Alert and threat events feed a trailing-window
counter; a client whose count reaches the threshold joins the suspicious set
and stays there until an administrative clear or a restart.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from config import settings
from models.security import (
    ClientIdentity,
    EventSeverity,
    RequestContext,
    SecurityEvent,
    SecurityEventType,
    SecurityStats,
)
from monitoring.logger import LogSink

logger = logging.getLogger(__name__)

# Severities that count toward suspicion scoring.
SCORED_SEVERITIES = (EventSeverity.ALERT, EventSeverity.THREAT)

_SINK_LEVELS = {
    EventSeverity.INFO: (logging.INFO, "Security Event"),
    EventSeverity.ALERT: (logging.WARNING, "Security Alert"),
    EventSeverity.THREAT: (logging.ERROR, "Security Threat"),
}


ClientRef = Union[ClientIdentity, str, None]


class SecurityEventLog:
    """
    Append-only security event sink with per-client aggregation.

    State (buffers, scoring windows, suspicious set) is owned by the instance;
    compose one per application and pass it to the pipeline.
    """

    def __init__(
        self,
        sink: Optional[LogSink] = None,
        threshold: Optional[int] = None,
        window_seconds: Optional[int] = None,
        buffer_size: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sink = sink or LogSink()
        self.threshold = threshold or settings.suspicious_event_threshold
        self.window_seconds = window_seconds or settings.suspicious_window_seconds
        self.buffer_size = buffer_size or settings.event_buffer_size
        self._clock = clock

        self._lock = threading.Lock()
        self._events: Dict[str, Deque[SecurityEvent]] = defaultdict(lambda: deque(maxlen=self.buffer_size))
        # Holding `threshold` timestamps is enough to decide the window count.
        self._scored: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=self.threshold))
        self._suspicious: set = set()
        self._last_prune = clock()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        event_type: Union[SecurityEventType, str],
        severity: EventSeverity,
        details: Optional[Dict[str, Any]] = None,
        client: ClientRef = None,
        request: Optional[RequestContext] = None,
        _score: bool = True,
    ) -> Optional[SecurityEvent]:
        """
        Record a security event.

        Never raises: a failure to build or persist the event is logged and
        the caller continues.
        """
        try:
            event = self._build_event(event_type, severity, details, client, request)
        except Exception as e:
            logger.error(f"❌ [SECURITY-LOG] Failed to build security event {event_type!r}: {e}")
            return None

        self._write_durable(event)

        if severity == EventSeverity.AUDIT:
            return event

        became_suspicious = False
        count = 0
        with self._lock:
            self._prune()
            self._events[event.client].append(event)
            if _score and severity in SCORED_SEVERITIES:
                count, became_suspicious = self._score(event.client)

        if became_suspicious:
            logger.warning(f"⚠️ [SECURITY-LOG] Client {event.client} flagged as suspicious ({count} events)")
            self.record(
                SecurityEventType.SUSPICIOUS_CLIENT_DETECTED,
                EventSeverity.ALERT,
                {"ip": event.client, "eventCount": count, "timeWindow": self._window_description()},
                client=event.client,
                _score=False,
            )

        return event

    def _build_event(self, event_type, severity, details, client, request) -> SecurityEvent:
        type_value = event_type.value if isinstance(event_type, SecurityEventType) else str(event_type or "")
        context = request or RequestContext()
        return SecurityEvent(
            event_type=type_value,
            severity=EventSeverity(severity),
            timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            client=self._client_key(client),
            method=context.method,
            url=context.url,
            user_agent=context.user_agent,
            user_id=context.user_id,
            details=dict(details or {}),
        )

    def _score(self, client: str):
        """Update the trailing window for ``client``. Caller holds the lock."""
        now = self._clock()
        window = self._scored[client]
        window.append(now)
        cutoff = now - self.window_seconds
        while window and window[0] < cutoff:
            window.popleft()

        count = len(window)
        if count >= self.threshold and client not in self._suspicious:
            self._suspicious.add(client)
            return count, True
        return count, False

    def _prune(self) -> None:
        """
        Drop idle clients once per scoring window. Caller holds the lock.

        Flagged clients keep their buffers until ``clear``.
        """
        now = self._clock()
        if now - self._last_prune < self.window_seconds:
            return
        self._last_prune = now
        cutoff = now - self.window_seconds

        for client in list(self._scored):
            window = self._scored[client]
            while window and window[0] < cutoff:
                window.popleft()
            if not window:
                del self._scored[client]

        for client in list(self._events):
            if client in self._suspicious:
                continue
            buffer = self._events[client]
            if not buffer or buffer[-1].timestamp.timestamp() < cutoff:
                del self._events[client]

    def _write_durable(self, event: SecurityEvent) -> None:
        # Core fields take precedence over event details.
        payload = {
            **event.details,
            "eventType": event.event_type,
            "severity": event.severity.value,
            "eventId": event.event_id,
            "ip": event.client,
            "method": event.method,
            "url": event.url,
            "userAgent": event.user_agent,
            "userId": event.user_id,
            "eventTimestamp": event.timestamp.isoformat(),
        }
        try:
            if event.severity == EventSeverity.AUDIT:
                self.sink.audit("Audit Event", action=event.event_type, **{k: v for k, v in payload.items() if k not in ("eventType", "action")})
            else:
                level, message = _SINK_LEVELS[event.severity]
                self.sink.security(level, message, **payload)
        except Exception as e:
            logger.error(f"❌ [SECURITY-LOG] Durable write failed for {event.event_type}: {e}")

    # ------------------------------------------------------------------
    # Convenience recorders
    # ------------------------------------------------------------------

    def security_event(self, event_type, details=None, client: ClientRef = None, request=None):
        return self.record(event_type, EventSeverity.INFO, details, client, request)

    def alert(self, event_type, details=None, client: ClientRef = None, request=None):
        return self.record(event_type, EventSeverity.ALERT, details, client, request)

    def threat(self, event_type, details=None, client: ClientRef = None, request=None):
        return self.record(event_type, EventSeverity.THREAT, details, client, request)

    def audit(self, action, details=None, client: ClientRef = None, request=None):
        return self.record(action, EventSeverity.AUDIT, details, client, request)

    def auth_event(self, event_type: str, details=None, client: ClientRef = None, request=None):
        """Authentication activity; failures and blocks are alerts."""
        name = str(getattr(event_type, "value", event_type))
        severity = EventSeverity.ALERT if ("failed" in name or "blocked" in name) else EventSeverity.INFO
        return self.record(event_type, severity, details, client, request)

    # ------------------------------------------------------------------
    # Queries and administration
    # ------------------------------------------------------------------

    def is_suspicious(self, client: ClientRef) -> bool:
        with self._lock:
            return self._client_key(client) in self._suspicious

    def suspicious_clients(self) -> List[str]:
        with self._lock:
            return sorted(self._suspicious)

    def recent_events(self, client: ClientRef, limit: int = 100) -> List[SecurityEvent]:
        with self._lock:
            events = list(self._events.get(self._client_key(client), ()))
        return events[-limit:]

    def stats(self) -> SecurityStats:
        """Aggregate counts over the in-memory buffers."""
        with self._lock:
            suspicious = sorted(self._suspicious)
            buffers = [list(events) for events in self._events.values()]

        events_by_type: Dict[str, int] = {}
        total = 0
        for events in buffers:
            total += len(events)
            for event in events:
                events_by_type[event.event_type] = events_by_type.get(event.event_type, 0) + 1

        return SecurityStats(
            totalSuspiciousIPs=len(suspicious),
            suspiciousIPs=suspicious,
            totalEvents=total,
            eventsByType=events_by_type,
        )

    def clear(self) -> None:
        """Wipe in-memory buffers and the suspicious set. Durable logs are untouched."""
        with self._lock:
            self._events.clear()
            self._scored.clear()
            self._suspicious.clear()
        logger.info("🧹 [SECURITY-LOG] In-memory security state cleared")

    def close(self) -> None:
        self.sink.close()

    # ------------------------------------------------------------------

    @staticmethod
    def _client_key(client: ClientRef) -> str:
        if client is None:
            return "unknown"
        if isinstance(client, ClientIdentity):
            return client.key
        return str(client) or "unknown"

    def _window_description(self) -> str:
        minutes = self.window_seconds // 60
        if minutes and self.window_seconds % 60 == 0:
            return f"{minutes} minutes"
        return f"{self.window_seconds} seconds"
