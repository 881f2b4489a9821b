"""
api/routes/v1/compliance.py -- HIPAA checklist routes.

Routes:
  GET  /organizations/{org_id}/compliance   -- every control with its status, plus the score
  PUT  /organizations/{org_id}/compliance   -- record the status of one control

Both return the whole checklist so the client can redraw it in one step.
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import ComplianceStatusResponse, ComplianceUpdate
from auth.dependencies import get_current_user
from auth.models import User
from cmdb import compliance
from cmdb.store import CMDBStore

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("60/minute")
@router.get("/organizations/{org_id}/compliance", response_model=ComplianceStatusResponse)
def get_compliance(
    request: Request,
    org_id: int,
    framework: str = compliance.DEFAULT_FRAMEWORK,
    current_user: User = Depends(get_current_user),
) -> ComplianceStatusResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return ComplianceStatusResponse(**compliance.get_compliance_status(cmdb, current_user, org_id, framework))


@limiter.limit("30/minute")
@router.put("/organizations/{org_id}/compliance", response_model=ComplianceStatusResponse)
def update_compliance(
    request: Request,
    org_id: int,
    body: ComplianceUpdate,
    framework: str = compliance.DEFAULT_FRAMEWORK,
    current_user: User = Depends(get_current_user),
) -> ComplianceStatusResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    checklist = compliance.update_compliance_status(
        cmdb,
        current_user,
        org_id,
        body.control_id,
        body.status.value,
        evidence=body.evidence,
        framework_id=framework,
    )
    return ComplianceStatusResponse(**checklist)
