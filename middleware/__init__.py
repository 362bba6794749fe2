"""
Middleware package for FastAPI application.
"""
from .pipeline import RequestPipeline, PipelineDecision, PipelineResult
from .security_middleware import SecurityPipelineMiddleware
from .security_monitoring import log_auth_activity, log_user_action

__all__ = [
    "RequestPipeline",
    "PipelineDecision",
    "PipelineResult",
    "SecurityPipelineMiddleware",
    "log_auth_activity",
    "log_user_action",
]
