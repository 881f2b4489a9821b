"""
api/routes/v1/notifications.py -- The caller's notification inbox.

Routes:
  GET  /notifications                       -- newest first
  POST /notifications/read-all              -- mark every unread notification read
  POST /notifications/{notification_id}/read
"""

from fastapi import APIRouter, Depends, Query, Request

from api.limiter import limiter
from api.models import NotificationResponse, ReadAllResponse
from auth.dependencies import get_current_user
from auth.models import User
from cmdb import alerts
from cmdb.store import CMDBStore

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("60/minute")
@router.get("/notifications", response_model=list[NotificationResponse])
def list_notifications(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
) -> list[NotificationResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    return [NotificationResponse.from_domain(n) for n in alerts.list_notifications(cmdb, current_user, limit)]


@limiter.limit("30/minute")
@router.post("/notifications/read-all", response_model=ReadAllResponse)
def read_all(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> ReadAllResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return ReadAllResponse(updated=alerts.mark_all_as_read(cmdb, current_user))


@limiter.limit("60/minute")
@router.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
def read_one(
    request: Request,
    notification_id: int,
    current_user: User = Depends(get_current_user),
) -> NotificationResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return NotificationResponse.from_domain(alerts.mark_as_read(cmdb, current_user, notification_id))
