"""
Middleware utility functions.
Client address extraction and request adaptation helpers shared by the
security middleware and its FastAPI dependencies.
"""
import logging
from typing import Any, Dict, List, Union
from urllib.parse import urlencode

from fastapi import Request

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Client address of the peer connection.

    Forwarded headers are never read here. Behind a reverse proxy,
    ``ProxyHeadersMiddleware`` rewrites the connection address from
    ``X-Forwarded-For`` only when the peer is a configured trusted proxy.
    """
    return getattr(request.client, 'host', None) or 'unknown'


def query_to_dict(request: Request) -> Dict[str, Union[str, List[str]]]:
    """Query parameters as a dict; repeated keys become lists."""
    query: Dict[str, Union[str, List[str]]] = {}
    for key, value in request.query_params.multi_items():
        if key in query:
            existing = query[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                query[key] = [existing, value]
        else:
            query[key] = value
    return query


def encode_query(query: Dict[str, Any]) -> bytes:
    """Inverse of ``query_to_dict`` for rewriting the ASGI query string."""
    pairs = []
    for key, value in query.items():
        if isinstance(value, list):
            pairs.extend((key, str(item)) for item in value)
        elif value is not None:
            pairs.append((key, str(value)))
    return urlencode(pairs).encode("latin-1")
