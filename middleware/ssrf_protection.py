"""
Server-Side Request Forgery (SSRF) protection.

``URLGuard`` validates URLs and Origin headers against the outbound policy
before they are used to build an outbound call or a trusted redirect target:

1. parse (``malformed``)
2. scheme is http/https (``scheme not allowed``)
3. effective port is not a blocked service port (``port not allowed``)
4. hostname is an allow-listed domain or a subdomain of one
   (``domain not whitelisted``)
5. unless the profile permits it, hostname is not a private, loopback or
   link-local literal (``private network access not allowed``)
6. in strict mode, hostname is a name and not an IP literal
   (``ip address host not allowed``)

Backslashes and userinfo (``user@``) are rejected as ``malformed``: browsers
read a backslash as ``/``, so such URLs name a different host than ``urlsplit`` sees.

Validation is pure with respect to its result; every call reports one event
and no call raises.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from config import settings as default_settings
from models.security import EventSeverity, SecurityEventType, URLValidationResult

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})

DEFAULT_PORTS = {"http": 80, "https": 443}

BLOCKED_PORTS = frozenset({
    22,     # SSH
    23,     # Telnet
    25,     # SMTP
    53,     # DNS
    110,    # POP3
    143,    # IMAP
    993,    # IMAPS
    995,    # POP3S
    1433,   # SQL Server
    3306,   # MySQL
    3389,   # RDP
    5432,   # PostgreSQL
    6379,   # Redis
    27017,  # MongoDB
})

PRIVATE_NETWORKS = [
    ipaddress.IPv4Network('10.0.0.0/8'),       # Private Class A
    ipaddress.IPv4Network('172.16.0.0/12'),    # Private Class B
    ipaddress.IPv4Network('192.168.0.0/16'),   # Private Class C
    ipaddress.IPv4Network('127.0.0.0/8'),      # Loopback
    ipaddress.IPv4Network('169.254.0.0/16'),   # Link-local
    ipaddress.IPv6Network('::1/128'),          # IPv6 loopback
    ipaddress.IPv6Network('fc00::/7'),         # IPv6 unique local
    ipaddress.IPv6Network('fe80::/10'),        # IPv6 link-local
]

# Parameters that commonly carry outbound or redirect URLs.
SENSITIVE_PARAMETERS = (
    'url', 'callback', 'redirect', 'endpoint', 'webhook',
    'return_url', 'success_url', 'cancel_url',
)

# Routes whose Origin header is used to build payment callback URLs.
ORIGIN_CHECKED_SEGMENTS = ('/stripe', '/payment', '/callback')


class Reason:
    MALFORMED = "malformed"
    SCHEME = "scheme not allowed"
    PORT = "port not allowed"
    DOMAIN = "domain not whitelisted"
    PRIVATE_NETWORK = "private network access not allowed"
    IP_LITERAL = "ip address host not allowed"
    MISSING = "missing"
    INTERNAL = "validation error"


@dataclass(frozen=True)
class ParameterViolation:
    """First sensitive parameter that failed URL validation."""
    parameter: str
    source: str
    reason: str


def is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname.split('%', 1)[0])
    except ValueError:
        return False
    return True


def is_private_host(hostname: str) -> bool:
    """Classify a hostname literal against private/loopback/link-local ranges."""
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(hostname.split('%', 1)[0])
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return any(address.version == network.version and address in network for network in PRIVATE_NETWORKS)


def host_matches(hostname: str, allowed_domains: Iterable[str]) -> bool:
    """Exact allow-list match, or a subdomain of an allow-listed domain."""
    for domain in allowed_domains:
        domain = domain.lower().strip().rstrip('.')
        if not domain:
            continue
        if hostname == domain or hostname.endswith('.' + domain):
            return True
    return False


class URLGuard:
    """Outbound URL and Origin validation engine."""

    def __init__(
        self,
        allowed_domains: Iterable[str],
        allow_private_networks: bool = False,
        default_origin: str = "http://localhost:5173",
        event_log=None,
        strict_mode: bool = True,
    ):
        self.allowed_domains: Tuple[str, ...] = tuple(d.lower() for d in allowed_domains)
        self.allow_private_networks = allow_private_networks
        self.default_origin = default_origin
        self.strict_mode = strict_mode
        self.event_log = event_log

    @classmethod
    def from_settings(cls, app_settings=None, event_log=None) -> "URLGuard":
        app_settings = app_settings or default_settings
        ssrf = app_settings.get_ssrf_config()
        return cls(
            allowed_domains=ssrf["allowed_domains"],
            allow_private_networks=ssrf["allow_private_networks"],
            strict_mode=ssrf["strict_mode"],
            default_origin=app_settings.default_origin,
            event_log=event_log,
        )

    # ------------------------------------------------------------------

    def _evaluate(self, url: Any, origin: bool = False) -> Tuple[URLValidationResult, Dict[str, Any]]:
        """Run the ordered checks. Returns the result and event context.

        With ``origin`` set, the value must be a bare origin: no path, query
        or fragment.
        """
        context: Dict[str, Any] = {"url": url if isinstance(url, str) else repr(url)[:200]}

        if not isinstance(url, str) or not url.strip():
            return URLValidationResult.rejected(Reason.MALFORMED), context

        if "\\" in url:
            return URLValidationResult.rejected(Reason.MALFORMED), context

        try:
            parts = urlsplit(url.strip())
        except ValueError:
            return URLValidationResult.rejected(Reason.MALFORMED), context

        scheme = parts.scheme.lower()
        context["scheme"] = scheme
        if not scheme:
            return URLValidationResult.rejected(Reason.MALFORMED), context

        if scheme not in ALLOWED_SCHEMES:
            return URLValidationResult.rejected(Reason.SCHEME), context

        if "@" in parts.netloc:
            context["userinfo"] = True
            return URLValidationResult.rejected(Reason.MALFORMED), context

        if origin and (parts.path or parts.query or parts.fragment):
            return URLValidationResult.rejected(Reason.MALFORMED), context

        hostname = (parts.hostname or "").rstrip('.')
        if not hostname:
            return URLValidationResult.rejected(Reason.MALFORMED), context
        context["hostname"] = hostname

        try:
            port = parts.port or DEFAULT_PORTS[scheme]
        except ValueError:
            return URLValidationResult.rejected(Reason.MALFORMED), context
        context["port"] = port

        if port in BLOCKED_PORTS:
            return URLValidationResult.rejected(Reason.PORT), context

        if not host_matches(hostname, self.allowed_domains):
            context["allowedDomains"] = list(self.allowed_domains)
            return URLValidationResult.rejected(Reason.DOMAIN), context

        if not self.allow_private_networks and is_private_host(hostname):
            return URLValidationResult.rejected(Reason.PRIVATE_NETWORK), context

        if self.strict_mode and is_ip_literal(hostname):
            return URLValidationResult.rejected(Reason.IP_LITERAL), context

        return URLValidationResult.ok(url), context

    def _safe_evaluate(self, url: Any, origin: bool = False) -> Tuple[URLValidationResult, Dict[str, Any]]:
        try:
            return self._evaluate(url, origin)
        except Exception as e:
            logger.error(f"❌ [SSRF-PROTECTION] URL validation error: {e}")
            return URLValidationResult.rejected(Reason.INTERNAL), {"url": str(url)[:200], "error": str(e)}

    def validate(self, url: Any, context: str = "unknown", client=None, request=None) -> URLValidationResult:
        """Validate ``url`` for use as an outbound or redirect target."""
        result, details = self._safe_evaluate(url)
        details["context"] = context

        if result.valid:
            self._report(SecurityEventType.URL_VALIDATED, EventSeverity.INFO, details, client, request)
        else:
            details["reason"] = result.reason
            logger.warning(f"🚫 [SSRF-PROTECTION] Blocked URL ({result.reason}) in {context}")
            self._report(SecurityEventType.SSRF_ATTEMPT, EventSeverity.ALERT, details, client, request)

        return result

    def validate_origin(self, origin: Optional[str], context: str = "origin-header", client=None, request=None) -> URLValidationResult:
        """Validate an Origin header; a missing header is invalid."""
        if not origin:
            self._report(SecurityEventType.ORIGIN_REJECTED, EventSeverity.ALERT,
                         {"reason": Reason.MISSING, "context": context}, client, request)
            return URLValidationResult.rejected(Reason.MISSING)

        result, details = self._safe_evaluate(origin, origin=True)
        details["context"] = context
        details["origin"] = origin

        if result.valid:
            self._report(SecurityEventType.ORIGIN_VALIDATED, EventSeverity.INFO, details, client, request)
        else:
            details["reason"] = result.reason
            logger.warning(f"🚫 [SSRF-PROTECTION] Invalid origin header ({result.reason})")
            self._report(SecurityEventType.ORIGIN_REJECTED, EventSeverity.ALERT, details, client, request)

        return result

    def safe_origin(self, origin: Optional[str], client=None, request=None) -> str:
        """Origin to build callback URLs from: the validated header or the configured default."""
        result = self.validate_origin(origin, "safe-origin", client, request)
        if result.valid and result.sanitized:
            return result.sanitized
        return self.default_origin

    def check_parameters(self, query: Optional[Dict[str, Any]] = None, body: Any = None,
                         client=None, request=None) -> Optional[ParameterViolation]:
        """Validate sensitive URL-bearing parameters; first failure wins."""
        sources: List[Tuple[str, Dict[str, Any]]] = [("query", query or {})]
        if isinstance(body, dict):
            sources.append(("body", body))

        for source, values in sources:
            for param in SENSITIVE_PARAMETERS:
                value = values.get(param)
                if not value:
                    continue
                result = self.validate(value, f"{source}-param-{param}", client, request)
                if not result.valid:
                    return ParameterViolation(parameter=param, source=source, reason=result.reason)
        return None

    @staticmethod
    def requires_origin_check(path: str) -> bool:
        return any(segment in path for segment in ORIGIN_CHECKED_SEGMENTS)

    def _report(self, event_type, severity, details, client, request) -> None:
        if self.event_log is not None:
            self.event_log.record(event_type, severity, details, client=client, request=request)
