"""
Logging infrastructure for the storefront security pipeline.
Structured JSON logs split into app, security and audit categories.
"""

from .logger import (
    LogSink,
    StructuredFormatter,
    configure_logging,
)

__all__ = [
    "LogSink",
    "StructuredFormatter",
    "configure_logging",
]
