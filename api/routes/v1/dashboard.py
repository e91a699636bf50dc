"""
api/routes/v1/dashboard.py -- Multi-cloud dashboard summary.

POST /api/v1/dashboard  {"providers": ["aws", "azure", "gcp"]}

Authentication is optional: anonymous callers get environment/instance
credentials (or sample data), authenticated callers get their own resolved
credentials. Signed-in callers additionally need view_dashboard.
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import dashboard_limit, limiter
from api.models import DashboardRequest, DashboardResponse
from auth.dependencies import client_ip, get_optional_principal
from auth.models import Permission, Principal
from core.errors import AuthorizationError
from providers.aggregator import ResourceAggregator

# Auth policy:
# - POST /api/v1/dashboard: optional auth; a signed-in principal must hold view_dashboard
router = APIRouter()


@router.post("/dashboard", response_model=DashboardResponse)
@limiter.limit(dashboard_limit)
async def get_dashboard(
    request: Request,
    body: DashboardRequest,
    principal: Principal | None = Depends(get_optional_principal),
) -> DashboardResponse:
    """Fan out to every requested provider and return one merged summary.

    A provider that cannot be queried contributes sample data; the response
    marks it with live=false in providers[] and lists it in degraded_providers.
    """
    if principal is not None and not request.app.state.permissions.has_permission(principal, Permission.VIEW_DASHBOARD):
        raise AuthorizationError(
            f"You don't have permission: {Permission.VIEW_DASHBOARD.value}",
            code="permission_denied",
            required=[Permission.VIEW_DASHBOARD.value],
        )
    aggregator: ResourceAggregator = request.app.state.aggregator
    summary = await aggregator.aggregate(body.providers, principal, ip=client_ip(request))
    return DashboardResponse.from_summary(summary)
