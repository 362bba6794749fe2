"""
Security pipeline data model.
Client identities, security events, URL validation results, rate-limit
policies and the admin API response models.
"""
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class ClientIdentity:
    """Key used to scope rate limits and suspicion tracking."""
    address: str
    subject: Optional[str] = None

    @property
    def key(self) -> str:
        if self.subject:
            return f"{self.address}|{self.subject}"
        return self.address

    def __str__(self) -> str:
        return self.key


class RequestContext:
    """Request attributes attached to an event."""

    __slots__ = ("method", "url", "user_agent", "user_id")

    def __init__(self, method: str = "unknown", url: str = "unknown",
                 user_agent: str = "unknown", user_id: Optional[str] = None):
        self.method = method or "unknown"
        self.url = url or "unknown"
        self.user_agent = user_agent or "unknown"
        self.user_id = user_id or "anonymous"


@dataclass
class SecurityRequest:
    """
    Framework-neutral view of an inbound request.

    Header names are case-insensitive. ``url`` is the raw path plus query
    string as received; ``subject`` is an already-authenticated user id, if any.
    """
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    path_params: Dict[str, Any] = field(default_factory=dict)
    client_address: str = "unknown"
    subject: Optional[str] = None
    url: str = ""

    def __post_init__(self):
        self.method = (self.method or "GET").upper()
        self.headers = {str(k).lower(): v for k, v in (self.headers or {}).items()}
        if not self.url:
            self.url = self.path

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    @property
    def identity(self) -> ClientIdentity:
        return ClientIdentity(self.client_address or "unknown", self.subject)

    @property
    def content_length(self) -> int:
        try:
            return int(self.header("content-length") or 0)
        except ValueError:
            return 0

    def context(self) -> RequestContext:
        return RequestContext(self.method, self.url, self.header("user-agent"), self.subject)


class EventSeverity(str, Enum):
    """Security event severity categories."""
    INFO = "info"
    ALERT = "alert"
    THREAT = "threat"
    AUDIT = "audit"


class SecurityEventType(str, Enum):
    """Security event types for categorization."""
    INJECTION_ATTEMPT = "injection_attempt"
    NOSQL_INJECTION_ATTEMPT = "nosql_injection_attempt"
    NOSQL_OPERATOR_KEY = "nosql_operator_key_blocked"
    BLOCKED_QUERY_PARAMETER = "blocked_query_parameter"
    SANITIZATION_ERROR = "sanitization_error"
    SUSPICIOUS_PATTERN = "suspicious_pattern_detected"
    SUSPICIOUS_REQUEST = "suspicious_request"
    SUSPICIOUS_ORIGIN = "suspicious_origin"
    SUSPICIOUS_CLIENT_DETECTED = "suspicious_ip_detected"
    SUSPICIOUS_CLIENT_BLOCKED = "suspicious_client_blocked"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    URL_VALIDATED = "url_validated"
    SSRF_ATTEMPT = "ssrf_attempt_blocked"
    ORIGIN_VALIDATED = "origin_validated"
    ORIGIN_REJECTED = "origin_rejected"
    SENSITIVE_ENDPOINT_ACCESS = "sensitive_endpoint_access"
    SENSITIVE_ENDPOINT_RESPONSE = "sensitive_endpoint_response"
    ERROR_RESPONSE = "error_response"
    SECURITY_STATS_ACCESSED = "security_stats_accessed"
    SECURITY_LOGS_CLEARED = "security_logs_cleared"


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable security event record."""
    event_type: str
    severity: EventSeverity
    timestamp: datetime
    client: str = "unknown"
    method: str = "unknown"
    url: str = "unknown"
    user_agent: str = "unknown"
    user_id: str = "anonymous"
    details: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not self.event_type:
            raise ValueError("Security events require a non-empty event type")
        if self.timestamp is None:
            raise ValueError("Security events require a timestamp")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['severity'] = self.severity.value
        data['timestamp'] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class URLValidationResult:
    """Outcome of validating one URL against the outbound policy."""
    valid: bool
    reason: Optional[str] = None
    sanitized: Optional[str] = None

    @classmethod
    def ok(cls, url: str) -> "URLValidationResult":
        return cls(valid=True, sanitized=url)

    @classmethod
    def rejected(cls, reason: str) -> "URLValidationResult":
        return cls(valid=False, reason=reason)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Rate limit configuration for one endpoint class."""
    name: str
    window_seconds: int
    max_requests: int
    message: str
    category: str
    skip_successful_requests: bool = False
    context: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitDecision:
    """Allow/deny verdict for one request against one policy."""
    allowed: bool
    limit: int
    remaining: int
    retry_after: int
    reset_at: float
    guidance: Optional[str] = None


# Admin API response models

class SecurityStats(BaseModel):
    """Aggregate in-memory security statistics."""
    totalSuspiciousIPs: int = Field(..., description="Number of identities flagged as suspicious")
    suspiciousIPs: List[str] = Field(default_factory=list, description="Flagged identity keys")
    totalEvents: int = Field(..., description="Events currently held in the per-client buffers")
    eventsByType: Dict[str, int] = Field(default_factory=dict, description="Buffered event counts by type")


class SecurityStatsResponse(BaseModel):
    success: bool = True
    stats: SecurityStats


class ClearLogsResponse(BaseModel):
    success: bool = True
    message: str = "Security logs cleared"
