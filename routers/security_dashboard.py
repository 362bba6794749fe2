"""
Security Dashboard API Router
Operator endpoints over the in-memory security state: aggregate statistics
and an administrative clear. Both calls are written to the audit trail.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from middleware.security_monitoring import request_context, request_identity
from models.security import ClearLogsResponse, SecurityEventType, SecurityStatsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/security", tags=["Security Dashboard"])


def get_event_log(request: Request):
    return request.app.state.event_log


async def require_security_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> str:
    """Operator check: ``X-Admin-Token`` must equal ``SECURITY_ADMIN_TOKEN``."""
    expected = request.app.state.settings.security_admin_token
    if not expected:
        logger.warning("⚠️ [SECURITY-DASHBOARD] Admin endpoint called but SECURITY_ADMIN_TOKEN is not configured")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Security administration is disabled")

    if not x_admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin authentication required")

    if not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("🚫 [SECURITY-DASHBOARD] Invalid admin token presented")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token")

    return getattr(request.state, "user_id", None) or "operator"


@router.get("/stats", response_model=SecurityStatsResponse)
async def get_security_stats(
    request: Request,
    admin_id: str = Depends(require_security_admin),
    event_log=Depends(get_event_log),
):
    """Suspicious identities and buffered event counts by type."""
    stats = event_log.stats()
    event_log.audit(
        SecurityEventType.SECURITY_STATS_ACCESSED,
        {"adminId": admin_id},
        client=request_identity(request),
        request=request_context(request),
    )
    return SecurityStatsResponse(stats=stats)


@router.post("/clear-logs", response_model=ClearLogsResponse)
async def clear_security_logs(
    request: Request,
    admin_id: str = Depends(require_security_admin),
    event_log=Depends(get_event_log),
):
    """Reset in-memory buffers and the suspicious set. Log files are kept."""
    event_log.clear()
    event_log.audit(
        SecurityEventType.SECURITY_LOGS_CLEARED,
        {"adminId": admin_id},
        client=request_identity(request),
        request=request_context(request),
    )
    logger.info(f"🧹 [SECURITY-DASHBOARD] Security state cleared by {admin_id}")
    return ClearLogsResponse()
