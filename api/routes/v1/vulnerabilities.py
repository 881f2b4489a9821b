"""
api/routes/v1/vulnerabilities.py -- Vulnerability catalog, sync and matching routes.

Routes:
  GET   /vulnerabilities/stats                                       -- catalog counts by severity
  POST  /vulnerabilities/sync?days_back=N                            -- import from NVD, then re-match (admin)
  GET   /organizations/{org_id}/vulnerabilities                      -- per-entry aggregate over devices
  PATCH /organizations/{org_id}/vulnerabilities/{vuln_id}/status     -- set status on every device
  POST  /organizations/{org_id}/match                                -- re-run the matcher

/vulnerabilities/sync blocks until the import finishes so a feed failure
is reported to the caller (502). The re-match runs inside the import as its
completion step; its failures are logged, not returned.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.limiter import limiter
from api.models import (
    LinkStatusResponse,
    LinkStatusUpdate,
    MatchResponse,
    OrganizationVulnerabilityRow,
    SyncResponse,
    VulnerabilityStatsResponse,
)
from auth.dependencies import get_current_user, require_admin
from auth.models import User
from cmdb import orgs
from cmdb.store import CMDBStore
from cmdb.sync import bulk_update_link_status, get_organization_vulnerabilities, run_match, sync_recent
from core.config import get_settings

router = APIRouter(dependencies=[Depends(get_current_user)])

# NVD rejects publication windows longer than 120 days.
_MAX_DAYS_BACK = 120


@limiter.limit("60/minute")
@router.get("/vulnerabilities/stats", response_model=VulnerabilityStatsResponse)
def vulnerability_stats(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> VulnerabilityStatsResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return VulnerabilityStatsResponse(**orgs.vulnerability_stats(cmdb, current_user))


@limiter.limit("2/minute")
@router.post("/vulnerabilities/sync", response_model=SyncResponse)
def sync_vulnerabilities(
    request: Request,
    days_back: Optional[int] = Query(default=None, ge=1, le=_MAX_DAYS_BACK),
    current_user: User = Depends(require_admin),
) -> SyncResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    days = days_back if days_back is not None else get_settings().manual_sync_days_back
    result = sync_recent(cmdb, days_back=days)
    return SyncResponse(imported=result.imported, days_back=days)


@limiter.limit("60/minute")
@router.get("/organizations/{org_id}/vulnerabilities", response_model=list[OrganizationVulnerabilityRow])
def organization_vulnerabilities(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> list[OrganizationVulnerabilityRow]:
    cmdb: CMDBStore = request.app.state.cmdb
    return [OrganizationVulnerabilityRow(**row) for row in get_organization_vulnerabilities(cmdb, current_user, org_id)]


@limiter.limit("30/minute")
@router.patch(
    "/organizations/{org_id}/vulnerabilities/{vuln_id}/status",
    response_model=LinkStatusResponse,
)
def update_organization_link_status(
    request: Request,
    org_id: int,
    vuln_id: str,
    body: LinkStatusUpdate,
    current_user: User = Depends(get_current_user),
) -> LinkStatusResponse:
    """Set the status of a vulnerability on every affected device in the organization."""
    cmdb: CMDBStore = request.app.state.cmdb
    vuln_id = vuln_id.upper()
    updated = bulk_update_link_status(cmdb, current_user, org_id, vuln_id, body.status.value, body.notes)
    return LinkStatusResponse(vulnerability_id=vuln_id, status=body.status.value, updated=updated)


@limiter.limit("10/minute")
@router.post("/organizations/{org_id}/match", response_model=MatchResponse)
def match_organization(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> MatchResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    result = run_match(cmdb, current_user, org_id)
    return MatchResponse(
        new_links_created=result.new_links_created,
        devices_processed=result.devices_processed,
        devices_skipped=result.devices_skipped,
    )
