"""
Input validation and sanitization for inbound requests.

``PatternMatcher`` classifies strings against ordered attack signatures.
``Sanitizer`` walks body/query/path parameters and returns a cleaned copy:
MongoDB operator tokens are redacted, ``$``-prefixed keys are dropped and all
markup is stripped with bleach.
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple
from urllib.parse import unquote

import bleach

from models.security import EventSeverity, SecurityEventType

logger = logging.getLogger(__name__)

REDACTION_MARKER = "_BLOCKED_"
OPERATOR_PREFIX = "$"


class ValidationConfig:
    """Signature lists used by the matchers."""

    # MongoDB query operators. Longest first so that e.g. $gte is not
    # consumed as $gt.
    NOSQL_OPERATORS = [
        "ne", "gt", "gte", "lt", "lte", "in", "nin", "and", "or", "not", "nor",
        "exists", "type", "mod", "regex", "text", "where", "expr", "jsonSchema",
        "all", "elemMatch", "size", "slice", "meta", "comment",
    ]

    # Advisory patterns, logged by the monitoring stage without rejecting.
    SUSPICIOUS_PATTERNS = [
        ("directory_traversal", r"\.\./"),
        ("xss_attempt", r"<script"),
        ("sql_injection", r"union.*select"),
        ("nosql_injection", r"\$where"),
        ("code_injection", r"eval\("),
        ("javascript_protocol", r"javascript:"),
        ("data_uri", r"data:.*base64"),
    ]

    # Rejecting patterns, applied to the request URL by the validation stage.
    INJECTION_PATTERNS = [
        ("directory_traversal", r"\.\./"),
        ("xss_attempt", r"<script"),
        ("sql_injection", r"union.*select"),
        ("javascript_protocol", r"javascript:"),
        ("vbscript_protocol", r"vbscript:"),
        ("event_handler", r"onload="),
        ("code_injection", r"eval\("),
        ("command_injection", r"exec\("),
        ("system_command", r"system\("),
    ]

    # Script and style bodies are removed, not just their tags.
    DROPPED_BLOCKS = re.compile(r"<\s*(script|style)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class Signature:
    name: str
    category: str
    regex: Pattern


@dataclass(frozen=True)
class PatternMatch:
    signature: str
    category: str
    matched: str
    path: str = ""


def _compile(entries: Iterable[Tuple[str, str]], category: str) -> List[Signature]:
    return [Signature(name, category, re.compile(pattern, re.IGNORECASE)) for name, pattern in entries]


def _nosql_signatures() -> List[Signature]:
    operators = sorted(ValidationConfig.NOSQL_OPERATORS, key=len, reverse=True)
    return [
        Signature(f"${op}", "nosql_operator", re.compile(re.escape(OPERATOR_PREFIX + op), re.IGNORECASE))
        for op in operators
    ]


class PatternMatcher:
    """
    Stateless classifier over an ordered signature list.

    Only strings are scanned; every other scalar is "not a match".
    """

    def __init__(self, signatures: List[Signature]):
        self.signatures = list(signatures)

    @classmethod
    def nosql(cls) -> "PatternMatcher":
        return cls(_nosql_signatures())

    @classmethod
    def suspicious(cls) -> "PatternMatcher":
        return cls(_compile(ValidationConfig.SUSPICIOUS_PATTERNS, "suspicious"))

    @classmethod
    def injection(cls) -> "PatternMatcher":
        return cls(_compile(ValidationConfig.INJECTION_PATTERNS, "injection"))

    @classmethod
    def combined(cls) -> "PatternMatcher":
        """NoSQL operators followed by the injection signatures."""
        return cls(_nosql_signatures() + _compile(ValidationConfig.INJECTION_PATTERNS, "injection"))

    def first_match(self, value: Any) -> Optional[PatternMatch]:
        if not isinstance(value, str):
            return None
        for signature in self.signatures:
            found = signature.regex.search(value)
            if found:
                return PatternMatch(signature.name, signature.category, found.group(0))
        return None

    def all_matches(self, value: Any) -> List[PatternMatch]:
        if not isinstance(value, str):
            return []
        matches = []
        for signature in self.signatures:
            found = signature.regex.search(value)
            if found:
                matches.append(PatternMatch(signature.name, signature.category, found.group(0)))
        return matches

    def match_nosql_operator(self, value: Any) -> Optional[PatternMatch]:
        """First NoSQL operator token in ``value``; other signatures are ignored."""
        if not isinstance(value, str):
            return None
        for signature in self.signatures:
            if signature.category != "nosql_operator":
                continue
            found = signature.regex.search(value)
            if found:
                return PatternMatch(signature.name, signature.category, found.group(0))
        return None

    def matches(self, value: Any) -> bool:
        return self.first_match(value) is not None

    def find_in(self, payload: Any, path: str = "") -> List[PatternMatch]:
        """Recursively collect first matches from every string leaf (and key)."""
        results: List[PatternMatch] = []
        if isinstance(payload, dict):
            for key, value in payload.items():
                current = f"{path}.{key}" if path else str(key)
                key_match = self.first_match(key)
                if key_match:
                    results.append(PatternMatch(key_match.signature, key_match.category, key_match.matched, current))
                results.extend(self.find_in(value, current))
        elif isinstance(payload, (list, tuple)):
            for index, item in enumerate(payload):
                results.extend(self.find_in(item, f"{path}[{index}]"))
        else:
            found = self.first_match(payload)
            if found:
                results.append(PatternMatch(found.signature, found.category, found.matched, path))
        return results

    def redact(self, value: str, marker: str = REDACTION_MARKER) -> Tuple[str, List[str]]:
        """Replace every occurrence of every signature with ``marker``."""
        hits = []
        for signature in self.signatures:
            value, count = signature.regex.subn(marker, value)
            if count:
                hits.append(signature.name)
        return value, hits


# Stands in for "&" while bleach runs so typed entities stay literal text.
_AMPERSAND_PLACEHOLDER = "\ue000"


def strip_markup(value: str) -> str:
    """Remove all HTML; the result contains no live tags."""
    if "<" not in value:
        return value
    without_blocks = ValidationConfig.DROPPED_BLOCKS.sub("", value)
    shielded = without_blocks.replace(_AMPERSAND_PLACEHOLDER, "").replace("&", _AMPERSAND_PLACEHOLDER)
    cleaned = bleach.clean(shielded, tags=[], attributes={}, strip=True, strip_comments=True)
    return cleaned.replace(_AMPERSAND_PLACEHOLDER, "&")


@dataclass
class SanitizedPayload:
    body: Any = None
    query: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    fallback: bool = False


class Sanitizer:
    """
    Recursive request payload sanitizer.

    Reports to a ``SecurityEventLog``-like object exposing ``record``.
    A failure while walking never aborts the request: the original payload
    is returned unchanged and the fault is logged as an alert. Availability
    is favored over strictness here; the validation and rate-limit stages
    still apply to the unsanitized payload.
    """

    def __init__(self, event_log=None, matcher: Optional[PatternMatcher] = None):
        self.event_log = event_log
        self.matcher = matcher or PatternMatcher.nosql()

    def sanitize_request(self, body: Any = None, query: Optional[Dict[str, Any]] = None,
                         params: Optional[Dict[str, Any]] = None, client=None, request=None) -> SanitizedPayload:
        query = query or {}
        params = params or {}
        try:
            return SanitizedPayload(
                body=self.sanitize_payload(body, client, request) if isinstance(body, (dict, list)) else body,
                query=self.sanitize_query(query, client, request),
                params=self.sanitize_params(params, client, request),
            )
        except Exception as e:
            logger.error(f"❌ [SANITIZER] Sanitization failed, passing payload through: {e}")
            self._report(SecurityEventType.SANITIZATION_ERROR, EventSeverity.ALERT,
                         {"error": type(e).__name__, "message": str(e)}, client, request)
            return SanitizedPayload(body=body, query=query, params=params, fallback=True)

    def sanitize_value(self, value: Any, client=None, request=None, path: str = "") -> Any:
        if not isinstance(value, str):
            return value

        redacted, hits = self.matcher.redact(value)
        if hits:
            logger.warning(f"⚠️ [SANITIZER] NoSQL operator token(s) {hits} redacted at '{path or 'value'}'")
            self._report(SecurityEventType.NOSQL_INJECTION_ATTEMPT, EventSeverity.THREAT,
                         {"field": path or None, "operators": hits, "value": value[:200]}, client, request)

        return strip_markup(redacted)

    def sanitize_payload(self, payload: Any, client=None, request=None, path: str = "") -> Any:
        if isinstance(payload, dict):
            cleaned = {}
            for key, value in payload.items():
                current = f"{path}.{key}" if path else str(key)
                if isinstance(key, str) and key.startswith(OPERATOR_PREFIX):
                    logger.warning(f"⚠️ [SANITIZER] Dropped operator key '{key}' at '{current}'")
                    self._report(SecurityEventType.NOSQL_OPERATOR_KEY, EventSeverity.ALERT,
                                 {"key": key, "field": current}, client, request)
                    continue
                cleaned[key] = self.sanitize_payload(value, client, request, current)
            return cleaned

        if isinstance(payload, list):
            return [self.sanitize_payload(item, client, request, f"{path}[{index}]") for index, item in enumerate(payload)]

        return self.sanitize_value(payload, client, request, path)

    def sanitize_query(self, query: Dict[str, Any], client=None, request=None) -> Dict[str, Any]:
        """Drop operator keys outright (``$ne`` or ``user[$ne]``), then sanitize the values."""
        cleaned = {}
        for key, value in query.items():
            if key.startswith(OPERATOR_PREFIX) or f"[{OPERATOR_PREFIX}" in key:
                logger.warning(f"⚠️ [SANITIZER] Blocked query parameter '{key}'")
                self._report(SecurityEventType.BLOCKED_QUERY_PARAMETER, EventSeverity.ALERT,
                             {"key": key}, client, request)
                continue
            cleaned[key] = self.sanitize_payload(value, client, request, f"query.{key}")
        return cleaned

    def sanitize_params(self, params: Dict[str, Any], client=None, request=None) -> Dict[str, Any]:
        return {
            key: self.sanitize_value(value, client, request, f"params.{key}") if isinstance(value, str) else value
            for key, value in params.items()
        }

    def _report(self, event_type, severity, details, client, request) -> None:
        if self.event_log is not None:
            self.event_log.record(event_type, severity, details, client=client, request=request)


class RequestValidator:
    """
    Rejecting validation stage: injection signatures in the request URL.

    Distinct from the advisory suspicious-pattern scan in the monitoring
    stage, which only logs.
    """

    def __init__(self, event_log=None, matcher: Optional[PatternMatcher] = None):
        self.event_log = event_log
        self.matcher = matcher or PatternMatcher.injection()

    def check_url(self, raw_url: str, client=None, request=None) -> Optional[PatternMatch]:
        candidates = [raw_url.lower()]
        decoded = unquote(raw_url).lower()
        if decoded != candidates[0]:
            candidates.append(decoded)

        for candidate in candidates:
            found = self.matcher.first_match(candidate)
            if found:
                if self.event_log is not None:
                    self.event_log.record(
                        SecurityEventType.INJECTION_ATTEMPT, EventSeverity.THREAT,
                        {"pattern": found.signature, "matched": found.matched, "url": raw_url, "severity": "high"},
                        client=client, request=request,
                    )
                return found
        return None
