"""
api/routes/v1/compliance.py -- Compliance and security posture report.

GET /api/v1/compliance

Public and rate limited. The compliance block is a fixed statement of the
frameworks CloudBoard is operated under; the security block reflects how this
process is actually configured.
"""

from fastapi import APIRouter, Request

from api.limiter import compliance_limit, limiter
from api.models import ComplianceResponse, SecurityControls
from auth.dependencies import client_ip
from core.config import get_settings

# Auth policy:
# - GET /api/v1/compliance: public
router = APIRouter()


@router.get("/compliance", response_model=ComplianceResponse)
@limiter.limit(compliance_limit)
async def get_compliance(request: Request) -> ComplianceResponse:
    """Report compliance posture and the security controls in effect."""
    settings = get_settings()
    await request.app.state.audit.record_async("compliance_check", {}, ip=client_ip(request))
    return ComplianceResponse(
        security=SecurityControls(
            https=not settings.debug,
            rate_limit=limiter.enabled,
            cors=bool(settings.origins),
            trusted_hosts=bool(settings.hosts) and "*" not in settings.hosts,
            audit_logging=bool(settings.audit_log_path),
        )
    )
