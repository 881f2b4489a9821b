"""
api/routes/v1/groups.py -- Saved device group routes.

Routes:
  GET    /organizations/{org_id}/groups                  -- list groups
  POST   /organizations/{org_id}/groups                  -- create a group
  POST   /organizations/{org_id}/groups/risk-summary     -- roll up an unsaved filter
  GET    /groups/{group_id}/devices                      -- devices currently matching the group
  GET    /groups/{group_id}/risk-summary                 -- device count, average score, critical/high counts
  DELETE /groups/{group_id}                              -- delete
"""

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import DeviceResponse, GroupCreate, GroupFilters, GroupResponse, GroupRiskSummaryResponse
from auth.dependencies import get_current_user
from auth.models import User
from cmdb import groups
from cmdb.store import CMDBStore

router = APIRouter(dependencies=[Depends(get_current_user)])


def _filters(body: GroupFilters) -> dict:
    return body.model_dump(mode="json", exclude_none=True)


@limiter.limit("60/minute")
@router.get("/organizations/{org_id}/groups", response_model=list[GroupResponse])
def list_groups(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> list[GroupResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    return [GroupResponse.from_domain(g) for g in groups.list_groups(cmdb, current_user, org_id)]


@limiter.limit("30/minute")
@router.post("/organizations/{org_id}/groups", response_model=GroupResponse, status_code=201)
def create_group(
    request: Request,
    org_id: int,
    body: GroupCreate,
    current_user: User = Depends(get_current_user),
) -> GroupResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    group = groups.create_group(
        cmdb,
        current_user,
        org_id,
        name=body.name,
        filters=_filters(body.filters),
        description=body.description,
        is_smart_group=body.is_smart_group,
    )
    return GroupResponse.from_domain(group)


@limiter.limit("30/minute")
@router.post("/organizations/{org_id}/groups/risk-summary", response_model=GroupRiskSummaryResponse)
def preview_risk_summary(
    request: Request,
    org_id: int,
    body: GroupFilters,
    current_user: User = Depends(get_current_user),
) -> GroupRiskSummaryResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return GroupRiskSummaryResponse(**groups.preview_group_risk_summary(cmdb, current_user, org_id, _filters(body)))


@limiter.limit("60/minute")
@router.get("/groups/{group_id}/devices", response_model=list[DeviceResponse])
def group_devices(
    request: Request,
    group_id: int,
    current_user: User = Depends(get_current_user),
) -> list[DeviceResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    return [DeviceResponse.from_domain(d) for d in groups.get_group_devices(cmdb, current_user, group_id)]


@limiter.limit("60/minute")
@router.get("/groups/{group_id}/risk-summary", response_model=GroupRiskSummaryResponse)
def group_risk_summary(
    request: Request,
    group_id: int,
    current_user: User = Depends(get_current_user),
) -> GroupRiskSummaryResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return GroupRiskSummaryResponse(**groups.get_group_risk_summary(cmdb, current_user, group_id))


@limiter.limit("30/minute")
@router.delete("/groups/{group_id}", status_code=204)
def delete_group(
    request: Request,
    group_id: int,
    current_user: User = Depends(get_current_user),
) -> Response:
    cmdb: CMDBStore = request.app.state.cmdb
    groups.delete_group(cmdb, current_user, group_id)
    return Response(status_code=204)
