"""
API endpoints and request handling.
"""

from . import security_dashboard

__all__ = [
    "security_dashboard",
]
