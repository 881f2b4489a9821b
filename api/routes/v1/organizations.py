"""
api/routes/v1/organizations.py -- Organization and membership routes.

Routes:
  POST /organizations                      -- create organization (admin)
  GET  /organizations                      -- organizations visible to the caller
  POST /organizations/{org_id}/members     -- add a user to an organization (admin)

Authorization is enforced by cmdb.orgs; domain errors are mapped to HTTP
statuses by the exception handlers in api/main.py.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import MemberCreate, MemberResponse, OrganizationCreate, OrganizationResponse
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import UserStore
from cmdb import orgs
from cmdb.access import require_admin
from cmdb.models import Organization
from cmdb.store import CMDBStore

router = APIRouter(dependencies=[Depends(get_current_user)])


def _org_response(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        contact_email=org.contact_email,
        type=org.type,
        logo_url=org.logo_url,
        is_active=org.is_active,
        created_at=org.created_at,
    )


@limiter.limit("30/minute")
@router.post("/organizations", response_model=OrganizationResponse, status_code=201)
def create_organization(
    request: Request,
    body: OrganizationCreate,
    current_user: User = Depends(get_current_user),
) -> OrganizationResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    org = orgs.create_organization(
        cmdb,
        current_user,
        name=body.name,
        contact_email=body.contact_email,
        type_=body.type.value,
        logo_url=body.logo_url,
    )
    return _org_response(org)


@limiter.limit("60/minute")
@router.get("/organizations", response_model=list[OrganizationResponse])
def list_organizations(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[OrganizationResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    return [_org_response(o) for o in orgs.list_organizations(cmdb, current_user)]


@limiter.limit("30/minute")
@router.post("/organizations/{org_id}/members", response_model=MemberResponse, status_code=201)
def add_member(
    request: Request,
    org_id: int,
    body: MemberCreate,
    current_user: User = Depends(get_current_user),
) -> MemberResponse:
    """Add an existing user to the organization."""
    require_admin(current_user)
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_id(body.user_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"User {body.user_id} not found."},
        )
    cmdb: CMDBStore = request.app.state.cmdb
    membership = orgs.add_member(cmdb, current_user, org_id, body.user_id, body.member_role.value)
    return MemberResponse(
        id=membership.id,
        user_id=membership.user_id,
        organization_id=membership.organization_id,
        member_role=membership.member_role,
    )
