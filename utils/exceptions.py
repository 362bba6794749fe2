"""
Custom exceptions for the storefront security pipeline.
Every defensive failure resolves to one of these, and each knows how to
render itself as a well-formed JSON rejection.
"""
import uuid
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categorization for better handling and monitoring."""
    VALIDATION = "validation"
    SECURITY = "security"
    RATE_LIMIT = "rate_limit"
    SYSTEM = "system"


class PipelineError(Exception):
    """Base exception for all request-pipeline errors with response context."""

    status_code: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        user_message: Optional[str] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.error_code = error_code
        self.severity = severity
        self.category = category
        self.user_message = user_message or message
        self.headers = headers or {}
        self.correlation_id = str(uuid.uuid4())
        self.timestamp = datetime.now(timezone.utc)
        if status_code is not None:
            self.status_code = status_code

    def to_response(self, verbose: bool = False) -> Dict[str, Any]:
        """Render the JSON body returned to the requester."""
        body: Dict[str, Any] = {"success": False, "message": self.user_message}
        if self.error_code:
            body["error"] = self.error_code
        if self.details:
            body["details"] = self.details
        if verbose and self.message != self.user_message:
            body["debug"] = self.message
        return body

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "category": self.category.value,
            "status_code": self.status_code,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__,
        }


class MalformedInputError(PipelineError):
    """Unparseable input such as an invalid JSON body."""

    status_code = 400

    def __init__(self, message: str = "Malformed request", **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("user_message", "Invalid request format")
        super().__init__(message, **kwargs)


class PolicyViolationError(PipelineError):
    """Base class for requests rejected by a security policy."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.SECURITY)
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, **kwargs)


class InjectionDetectedError(PolicyViolationError):
    """An injection signature matched in the validation stage."""

    status_code = 400

    def __init__(self, pattern: str, **kwargs):
        kwargs.setdefault("user_message", "Invalid request detected")
        super().__init__(f"Injection pattern matched: {pattern}", **kwargs)
        self.pattern = pattern


class URLRejectedError(PolicyViolationError):
    """An outbound URL or Origin header failed SSRF validation."""

    status_code = 400

    def __init__(self, reason: str, parameter: Optional[str] = None, user_message: str = "Invalid URL parameter", **kwargs):
        super().__init__(f"URL rejected: {reason}", user_message=user_message, **kwargs)
        self.reason = reason
        self.parameter = parameter

    def to_response(self, verbose: bool = False) -> Dict[str, Any]:
        body = super().to_response(verbose)
        if self.parameter:
            body["parameter"] = self.parameter
        if verbose:
            body["reason"] = self.reason
        return body


class SuspiciousClientError(PolicyViolationError):
    """The client identity is in the suspicious set."""

    status_code = 403

    def __init__(self, identity: str, **kwargs):
        kwargs.setdefault("user_message", "Access blocked due to suspicious activity")
        super().__init__(f"Blocked suspicious client {identity}", **kwargs)
        self.identity = identity


class RateLimitExceededError(PolicyViolationError):
    """A rate-limit policy denied the request."""

    status_code = 429

    def __init__(self, policy: str, message: str, details: Dict[str, Any], retry_after: int, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RATE_LIMIT)
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        super().__init__(
            f"Rate limit exceeded for policy {policy}",
            details=details,
            error_code="RATE_LIMIT_EXCEEDED",
            user_message=message,
            **kwargs,
        )
        self.policy = policy
        self.retry_after = retry_after
