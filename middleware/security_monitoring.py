"""
Security Monitoring
Advisory request analysis and response telemetry for the security pipeline.

Nothing in this module rejects a request. Suspicious patterns, anomalies and
unexpected origins are logged as alerts (and so feed suspicion scoring);
blocking decisions belong to the validation and rate-limit stages.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from fastapi import Request

from middleware.utils import get_client_ip
from middleware.validation import PatternMatcher
from models.security import (
    ClientIdentity,
    EventSeverity,
    RequestContext,
    SecurityEventType,
    SecurityRequest,
)

logger = logging.getLogger(__name__)

SENSITIVE_ENDPOINTS = (
    '/api/user/login', '/api/user/register', '/api/auth0-user',
    '/api/seller/login', '/api/seller/register',
    '/api/user/profile', '/api/seller/profile',
    '/api/order', '/api/cart', '/api/address',
)

SCANNER_USER_AGENTS = ('sqlmap', 'nikto', 'nmap', 'masscan', 'zmap', 'gobuster', 'dirb')

MAX_REQUEST_BYTES = 50 * 1024 * 1024

SKIP_PATHS = frozenset({'/health', '/favicon.ico', '/robots.txt'})


def is_sensitive_endpoint(path: str) -> bool:
    return any(path.startswith(endpoint) for endpoint in SENSITIVE_ENDPOINTS)


def detect_anomalies(request: SecurityRequest) -> List[str]:
    anomalies = []
    if request.content_length > MAX_REQUEST_BYTES:
        anomalies.append("Large request size")

    user_agent = (request.header("user-agent") or "").lower()
    if any(agent in user_agent for agent in SCANNER_USER_AGENTS):
        anomalies.append("Suspicious user agent")

    return anomalies


def _request_details(request: SecurityRequest) -> Dict[str, Any]:
    return {
        "headers": {
            "contentType": request.header("content-type"),
            "authorization": "present" if request.header("authorization") else "absent",
            "origin": request.header("origin"),
            "referer": request.header("referer"),
        }
    }


class SecurityMonitor:
    """Advisory stage run first for every request, plus response telemetry."""

    def __init__(self, event_log, allowed_origins: Iterable[str] = (), matcher: Optional[PatternMatcher] = None):
        self.event_log = event_log
        self.allowed_origins = tuple(o.rstrip('/') for o in allowed_origins if o)
        self.matcher = matcher or PatternMatcher.suspicious()

    def should_skip(self, path: str) -> bool:
        return path in SKIP_PATHS

    def inspect(self, request: SecurityRequest, identity: ClientIdentity, context: RequestContext) -> None:
        """Log suspicious patterns, anomalies, sensitive access and foreign POST origins."""
        details = _request_details(request)

        if is_sensitive_endpoint(request.path):
            self.event_log.record(
                SecurityEventType.SENSITIVE_ENDPOINT_ACCESS, EventSeverity.INFO,
                {**details, "endpoint": request.url}, client=identity, request=context,
            )

        for match in self.matcher.all_matches(self._request_string(request)):
            logger.warning(f"⚠️ [SECURITY-MONITOR] Suspicious pattern '{match.signature}' from {identity}")
            self.event_log.record(
                SecurityEventType.SUSPICIOUS_PATTERN, EventSeverity.ALERT,
                {**details, "pattern": match.signature, "matchedContent": match.matched[:200]},
                client=identity, request=context,
            )

        anomalies = detect_anomalies(request)
        if anomalies:
            logger.warning(f"⚠️ [SECURITY-MONITOR] Request anomalies from {identity}: {anomalies}")
            self.event_log.record(
                SecurityEventType.SUSPICIOUS_REQUEST, EventSeverity.ALERT,
                {"anomalies": anomalies}, client=identity, request=context,
            )

        origin = request.header("origin")
        if request.method == "POST" and origin and not self._origin_allowed(origin):
            self.event_log.record(
                SecurityEventType.SUSPICIOUS_ORIGIN, EventSeverity.ALERT,
                {"reason": "Suspicious origin detected", "origin": origin},
                client=identity, request=context,
            )

    def observe_response(self, request: SecurityRequest, identity: ClientIdentity, context: RequestContext,
                         status_code: int, response_size: int, response_time_ms: float) -> None:
        if is_sensitive_endpoint(request.path):
            self.event_log.record(
                SecurityEventType.SENSITIVE_ENDPOINT_RESPONSE, EventSeverity.INFO,
                {"statusCode": status_code, "responseTime": round(response_time_ms, 2), "responseSize": response_size},
                client=identity, request=context,
            )

        if status_code >= 400:
            server_error = status_code >= 500
            self.event_log.record(
                SecurityEventType.ERROR_RESPONSE,
                EventSeverity.THREAT if server_error else EventSeverity.ALERT,
                {
                    "statusCode": status_code,
                    "responseTime": round(response_time_ms, 2),
                    "errorType": "server_error" if server_error else "client_error",
                },
                client=identity, request=context,
            )

    def record_user_actions(self, actions: List[Dict[str, Any]], identity: ClientIdentity,
                            context: RequestContext, status_code: int) -> None:
        """Write queued audit actions; only successful responses are audited."""
        if not (200 <= status_code < 300):
            return
        for entry in actions:
            self.event_log.audit(entry["action"], {**entry.get("details", {}), "statusCode": status_code},
                                 client=identity, request=context)

    def _origin_allowed(self, origin: str) -> bool:
        return origin.rstrip('/') in self.allowed_origins

    @staticmethod
    def _request_string(request: SecurityRequest) -> str:
        try:
            return json.dumps({"url": request.url, "query": request.query, "body": request.body}, default=str)
        except (TypeError, ValueError):
            return request.url


def request_identity(request: Request) -> ClientIdentity:
    identity = getattr(request.state, "security_identity", None)
    if isinstance(identity, ClientIdentity):
        return identity
    return ClientIdentity(get_client_ip(request), getattr(request.state, "user_id", None))


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        request.method,
        str(request.url.path) + (f"?{request.url.query}" if request.url.query else ""),
        request.headers.get("user-agent"),
        getattr(request.state, "user_id", None),
    )


def log_user_action(action: str, **details: Any):
    """
    Dependency factory that audits ``action`` once the response is known.

    The entry is queued on ``request.state`` and written by the pipeline's
    post-response hook, and only for 2xx responses::

        @router.put("/profile", dependencies=[Depends(log_user_action("profile_update"))])
    """
    async def dependency(request: Request) -> None:
        actions = getattr(request.state, "audit_actions", None)
        if actions is None:
            actions = []
            request.state.audit_actions = actions
        actions.append({"action": action, "details": details})

    return dependency


def log_auth_activity(event_type: str, **details: Any):
    """Dependency factory that records an authentication event immediately."""
    async def dependency(request: Request) -> None:
        event_log = getattr(request.app.state, "event_log", None)
        if event_log is None:
            return
        event_log.auth_event(event_type, details, client=request_identity(request), request=request_context(request))

    return dependency
