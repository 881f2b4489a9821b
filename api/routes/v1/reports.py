"""
api/routes/v1/reports.py -- Report schedule routes.

Routes:
  GET    /organizations/{org_id}/report-schedules   -- list schedules
  POST   /organizations/{org_id}/report-schedules   -- create a schedule
  PATCH  /report-schedules/{schedule_id}            -- pause / resume
  DELETE /report-schedules/{schedule_id}            -- delete
  POST   /report-schedules/run-due                  -- run the due-schedule sweep now (admin)

run-due is registered before the {schedule_id} routes so the literal path
is never captured as an id. Sends are handed to app.state.report_dispatcher
and happen after the response.
"""

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import RunDueResponse, ScheduleCreate, SchedulePatch, ScheduleResponse
from auth.dependencies import get_current_user, require_admin
from auth.models import User
from cmdb import reports
from cmdb.store import CMDBStore
from core.config import now_utc

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("60/minute")
@router.get("/organizations/{org_id}/report-schedules", response_model=list[ScheduleResponse])
def list_schedules(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> list[ScheduleResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    return [ScheduleResponse.from_domain(s) for s in reports.list_schedules(cmdb, current_user, org_id)]


@limiter.limit("30/minute")
@router.post("/organizations/{org_id}/report-schedules", response_model=ScheduleResponse, status_code=201)
def create_schedule(
    request: Request,
    org_id: int,
    body: ScheduleCreate,
    current_user: User = Depends(get_current_user),
) -> ScheduleResponse:
    """Create an active schedule. The first report goes out one period from now."""
    cmdb: CMDBStore = request.app.state.cmdb
    schedule = reports.create_schedule(
        cmdb,
        current_user,
        org_id,
        name=body.name,
        frequency=body.frequency.value,
        recipients=body.recipients,
        report_type=body.report_type.value,
    )
    return ScheduleResponse.from_domain(schedule)


@limiter.limit("5/minute")
@router.post("/report-schedules/run-due", response_model=RunDueResponse)
def run_due(
    request: Request,
    current_user: User = Depends(require_admin),
) -> RunDueResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    dispatcher: reports.ReportDispatcher = request.app.state.report_dispatcher
    result = reports.advance_due_schedules(cmdb, now_utc(), dispatcher.enqueue)
    return RunDueResponse(processed=result.processed, skipped=result.skipped)


@limiter.limit("30/minute")
@router.patch("/report-schedules/{schedule_id}", response_model=ScheduleResponse)
def update_schedule(
    request: Request,
    schedule_id: int,
    body: SchedulePatch,
    current_user: User = Depends(get_current_user),
) -> ScheduleResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return ScheduleResponse.from_domain(reports.set_schedule_active(cmdb, current_user, schedule_id, body.is_active))


@limiter.limit("30/minute")
@router.delete("/report-schedules/{schedule_id}", status_code=204)
def delete_schedule(
    request: Request,
    schedule_id: int,
    current_user: User = Depends(get_current_user),
) -> Response:
    cmdb: CMDBStore = request.app.state.cmdb
    reports.delete_schedule(cmdb, current_user, schedule_id)
    return Response(status_code=204)
