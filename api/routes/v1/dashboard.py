"""
api/routes/v1/dashboard.py -- Aggregated metrics for one organization.

Routes:
  GET /organizations/{org_id}/dashboard     -- device totals, risk summary, link counts, alerts
  GET /organizations/{org_id}/risk-history  -- daily risk snapshots, oldest first

Read-only aggregates; no mutations here.
"""

from fastapi import APIRouter, Depends, Query, Request

from api.limiter import limiter
from api.models import DashboardResponse, RiskSnapshotResponse
from auth.dependencies import get_current_user
from auth.models import User
from cmdb import orgs
from cmdb.risk import risk_history
from cmdb.store import CMDBStore

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("60/minute")
@router.get("/organizations/{org_id}/dashboard", response_model=DashboardResponse)
def get_dashboard(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> DashboardResponse:
    """Return the organization overview.

    Response:
      organization -- {"id", "name"}
      devices      -- total, on_network, with_phi, with_vulnerabilities
      risk         -- per-level counts, weighted risk score, per-entity breakdown
      links        -- total vulnerability links and a count per status
      alerts       -- alert summary and the ten most severe alerts
    """
    cmdb: CMDBStore = request.app.state.cmdb
    return DashboardResponse(**orgs.dashboard(cmdb, current_user, org_id))


@limiter.limit("60/minute")
@router.get("/organizations/{org_id}/risk-history", response_model=list[RiskSnapshotResponse])
def get_risk_history(
    request: Request,
    org_id: int,
    days: int = Query(default=30, ge=1, le=365),
    current_user: User = Depends(get_current_user),
) -> list[RiskSnapshotResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    return [RiskSnapshotResponse.from_domain(s) for s in risk_history(cmdb, current_user, org_id, days)]
