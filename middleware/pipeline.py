"""
Defensive request pipeline.

``RequestPipeline`` owns the composed security components and runs them in
a fixed order for each inbound request:

1. monitoring (advisory: patterns, anomalies, sensitive access, origin)
2. sanitization (operator keys dropped, operator tokens redacted, markup stripped)
3. injection validation of the request URL (400)
4. suspicious-client block (403)
5. rate limit (429) and speed throttle (delay only)
6. Origin header check on payment/callback routes (400)
7. sensitive URL parameters (400)

The first rejecting stage wins. ``after_response`` is the explicit
post-response hook the host must call with the final status and size.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from middleware.rate_limiting import RateLimitRegistry
from middleware.security_monitoring import SecurityMonitor
from middleware.ssrf_protection import URLGuard
from middleware.validation import RequestValidator, SanitizedPayload, Sanitizer
from models.security import (
    ClientIdentity,
    EventSeverity,
    RateLimitDecision,
    RequestContext,
    SecurityEventType,
    SecurityRequest,
)
from utils.exceptions import (
    InjectionDetectedError,
    PipelineError,
    SuspiciousClientError,
    URLRejectedError,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineDecision:
    """Continue, or reject with a status code, JSON body and headers."""
    allowed: bool
    status_code: int = 200
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[PipelineError] = None

    @classmethod
    def proceed(cls) -> "PipelineDecision":
        return cls(allowed=True)

    @classmethod
    def reject(cls, error: PipelineError, verbose: bool = False) -> "PipelineDecision":
        return cls(
            allowed=False,
            status_code=error.status_code,
            body=error.to_response(verbose),
            headers=dict(error.headers),
            error=error,
        )


@dataclass
class PipelineResult:
    decision: PipelineDecision
    sanitized: SanitizedPayload
    identity: ClientIdentity
    context: RequestContext
    delay: float = 0.0
    policy: Optional[str] = None
    rate_limit: Optional[RateLimitDecision] = None
    throttle_window: Optional[float] = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def allowed(self) -> bool:
        return self.decision.allowed


class RequestPipeline:
    """Composed at startup; one instance serves every request."""

    def __init__(
        self,
        event_log,
        url_guard: URLGuard,
        rate_limits: Optional[RateLimitRegistry] = None,
        sanitizer: Optional[Sanitizer] = None,
        validator: Optional[RequestValidator] = None,
        monitor: Optional[SecurityMonitor] = None,
        block_suspicious: bool = True,
        verbose_errors: bool = False,
    ):
        self.event_log = event_log
        self.url_guard = url_guard
        self.rate_limits = rate_limits or RateLimitRegistry(event_log)
        self.sanitizer = sanitizer or Sanitizer(event_log)
        self.validator = validator or RequestValidator(event_log)
        self.monitor = monitor or SecurityMonitor(event_log)
        self.block_suspicious = block_suspicious
        self.verbose_errors = verbose_errors

    @classmethod
    def from_settings(cls, app_settings, event_log) -> "RequestPipeline":
        allowed_origins: List[str] = list(app_settings.cors_origins)
        if app_settings.frontend_url not in allowed_origins:
            allowed_origins.append(app_settings.frontend_url)

        return cls(
            event_log=event_log,
            url_guard=URLGuard.from_settings(app_settings, event_log),
            rate_limits=RateLimitRegistry(event_log, trusted_addresses=app_settings.trusted_ips),
            monitor=SecurityMonitor(event_log, allowed_origins),
            block_suspicious=app_settings.block_suspicious_clients,
            verbose_errors=app_settings.show_error_details(),
        )

    def process(self, request: SecurityRequest) -> PipelineResult:
        identity = request.identity
        context = request.context()

        self.monitor.inspect(request, identity, context)

        sanitized = self.sanitizer.sanitize_request(
            request.body, request.query, request.path_params, client=identity, request=context,
        )
        result = PipelineResult(
            decision=PipelineDecision.proceed(),
            sanitized=sanitized,
            identity=identity,
            context=context,
        )

        try:
            self._validate(request, identity, context)
            self._check_suspicious(identity, context)
            self._check_rate_limits(request, result)
            self._check_origin(request, identity, context)
            self._check_parameters(sanitized, identity, context)
        except PipelineError as e:
            logger.warning(f"🚫 [PIPELINE] {request.method} {request.path} rejected for {identity}: {e.message}")
            result.decision = PipelineDecision.reject(e, self.verbose_errors)

        return result

    def after_response(self, request: SecurityRequest, result: PipelineResult,
                       status_code: int, response_size: int = 0,
                       audit_actions: Optional[List[Dict[str, Any]]] = None) -> None:
        """
        Post-response accounting: rate-limit success handling, response
        telemetry and queued audit actions. Never raises.
        """
        try:
            if result.policy and result.rate_limit is not None:
                self.rate_limits.limiter(result.policy).record_outcome(result.identity, status_code, result.rate_limit)
            if result.throttle_window is not None:
                self.rate_limits.throttle.record_outcome(result.identity, status_code, result.throttle_window)

            elapsed_ms = (time.monotonic() - result.started_at) * 1000
            self.monitor.observe_response(request, result.identity, result.context, status_code, response_size, elapsed_ms)

            if audit_actions:
                self.monitor.record_user_actions(audit_actions, result.identity, result.context, status_code)
        except Exception as e:
            logger.error(f"❌ [PIPELINE] Post-response accounting failed: {e}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _validate(self, request: SecurityRequest, identity, context) -> None:
        match = self.validator.check_url(request.url, client=identity, request=context)
        if match:
            raise InjectionDetectedError(match.signature)

    def _check_suspicious(self, identity: ClientIdentity, context) -> None:
        if not self.block_suspicious or not self.event_log.is_suspicious(identity):
            return
        self.event_log.record(
            SecurityEventType.SUSPICIOUS_CLIENT_BLOCKED, EventSeverity.ALERT,
            {"ip": identity.key}, client=identity, request=context, _score=False,
        )
        raise SuspiciousClientError(identity.key)

    def _check_rate_limits(self, request: SecurityRequest, result: PipelineResult) -> None:
        identity = result.identity
        if self.rate_limits.is_trusted(identity):
            return

        policy = self.rate_limits.resolve_policy(request.path)
        limiter = self.rate_limits.limiter(policy)
        decision = limiter.check(identity, result.context)
        result.policy = policy
        result.rate_limit = decision
        if not decision.allowed:
            raise limiter.rejection(decision)

        result.delay, result.throttle_window = self.rate_limits.throttle.delay_for(identity)
        if result.delay:
            logger.info(f"🐢 [PIPELINE] Delaying {identity} by {result.delay:.1f}s")

    def _check_origin(self, request: SecurityRequest, identity, context) -> None:
        origin = request.header("origin")
        if not origin or not self.url_guard.requires_origin_check(request.path):
            return
        validation = self.url_guard.validate_origin(origin, "origin-header", client=identity, request=context)
        if not validation.valid:
            raise URLRejectedError(validation.reason, user_message="Invalid origin", error_code=validation.reason)

    def _check_parameters(self, sanitized: SanitizedPayload, identity, context) -> None:
        violation = self.url_guard.check_parameters(sanitized.query, sanitized.body, client=identity, request=context)
        if violation:
            raise URLRejectedError(violation.reason, parameter=violation.parameter)
