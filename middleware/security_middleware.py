"""
Security pipeline middleware for the FastAPI application.

Adapts Starlette requests to ``SecurityRequest``, runs the
``RequestPipeline``, and either short-circuits with the rejection or forwards
the sanitized request downstream:

- the sanitized JSON body is replayed to the route handler
- the sanitized query string replaces the original one
- ``request.state`` carries ``security_identity``, ``sanitized_body`` and
  ``sanitized_query``

After the handler returns, the pipeline's post-response hook is called with
the final status and response size.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from middleware.pipeline import PipelineDecision, RequestPipeline
from middleware.utils import encode_query, get_client_ip, query_to_dict
from models.security import SecurityRequest
from utils.exceptions import MalformedInputError

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class SecurityPipelineMiddleware(BaseHTTPMiddleware):
    """Runs every request through the defensive pipeline."""

    def __init__(self, app, pipeline: RequestPipeline, security_headers: Optional[Dict[str, str]] = None):
        super().__init__(app)
        self.pipeline = pipeline
        self.security_headers = security_headers or {}
        logger.info("🛡️ [SECURITY-MIDDLEWARE] Security pipeline middleware initialized")

    async def dispatch(self, request: Request, call_next) -> Response:
        if self.pipeline.monitor.should_skip(request.url.path):
            return self._apply_headers(await call_next(request))

        try:
            body = await self._read_json_body(request)
        except MalformedInputError as e:
            logger.warning(f"⚠️ [SECURITY-MIDDLEWARE] {e.message} on {request.method} {request.url.path}")
            return self._reject(PipelineDecision.reject(e, self.pipeline.verbose_errors))

        security_request = self._adapt(request, body)
        result = self.pipeline.process(security_request)

        if not result.allowed:
            response = self._reject(result.decision)
            self.pipeline.after_response(security_request, result, response.status_code, len(response.body))
            return response

        if result.delay:
            await asyncio.sleep(result.delay)

        self._forward_sanitized(request, body, result.sanitized)
        request.state.security_identity = result.identity
        request.state.sanitized_body = result.sanitized.body
        request.state.sanitized_query = result.sanitized.query
        audit_actions = []
        request.state.audit_actions = audit_actions

        try:
            response = await call_next(request)
        except Exception:
            self.pipeline.after_response(security_request, result, 500, 0)
            raise

        self.pipeline.after_response(
            security_request, result, response.status_code,
            self._response_size(response), audit_actions,
        )
        return self._apply_headers(response)

    async def _read_json_body(self, request: Request) -> Any:
        if request.method not in BODY_METHODS:
            return None
        content_type = request.headers.get("content-type", "")
        if "json" not in content_type:
            return None

        raw = await request.body()
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedInputError("Invalid JSON body", user_message="Invalid JSON in request body") from e

    @staticmethod
    def _adapt(request: Request, body: Any) -> SecurityRequest:
        path = request.url.path
        query_string = request.url.query
        return SecurityRequest(
            method=request.method,
            path=path,
            headers=dict(request.headers),
            query=query_to_dict(request),
            body=body,
            path_params=dict(request.path_params),
            client_address=get_client_ip(request),
            subject=getattr(request.state, "user_id", None),
            url=f"{path}?{query_string}" if query_string else path,
        )

    @staticmethod
    def _forward_sanitized(request: Request, body: Any, sanitized) -> None:
        if sanitized.fallback:
            return

        if isinstance(body, (dict, list)) and sanitized.body != body:
            payload = json.dumps(sanitized.body).encode("utf-8")
            # The cached body is what BaseHTTPMiddleware replays downstream.
            request._body = payload
            headers = [(k, v) for k, v in request.scope["headers"] if k != b"content-length"]
            headers.append((b"content-length", str(len(payload)).encode("latin-1")))
            request.scope["headers"] = headers

        if sanitized.query != query_to_dict(request):
            request.scope["query_string"] = encode_query(sanitized.query)

    def _reject(self, decision: PipelineDecision) -> JSONResponse:
        response = JSONResponse(decision.body, status_code=decision.status_code, headers=decision.headers)
        return self._apply_headers(response)

    def _apply_headers(self, response: Response) -> Response:
        for name, value in self.security_headers.items():
            if name not in response.headers:
                response.headers[name] = value
        return response

    @staticmethod
    def _response_size(response: Response) -> int:
        try:
            return int(response.headers.get("content-length", 0))
        except ValueError:
            return 0
