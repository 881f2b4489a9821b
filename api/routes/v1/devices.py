"""
api/routes/v1/devices.py -- Device inventory routes.

Routes:
  POST  /organizations/{org_id}/devices/import                 -- replace inventory from CSV (admin)
  GET   /organizations/{org_id}/devices                        -- list devices with risk level
  GET   /organizations/{org_id}/devices/export                 -- CSV download
  GET   /devices/{device_id}                                   -- device detail
  PATCH /devices/{device_id}                                   -- edit owner, last seen and other editable fields
  PUT   /devices/{device_id}/tags                              -- replace the device's tags
  GET   /devices/{device_id}/vulnerabilities                   -- linked vulnerabilities, most severe first
  GET   /devices/{device_id}/history                           -- device log, newest first
  PATCH /devices/{device_id}/vulnerabilities/{vuln_id}/status  -- set one link's status

Import:
  multipart/form-data, capped at 1 MB, .csv only. The import replaces the
  organization's whole inventory. Matching for the new devices is scheduled
  as a background task and runs after the response is sent.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, UploadFile
from fastapi.responses import Response

from api.limiter import limiter
from api.models import (
    DeviceImportResponse,
    DeviceLogResponse,
    DeviceResponse,
    DeviceTagsUpdate,
    DeviceUpdate,
    DeviceVulnerabilitiesResponse,
    ErrorDetail,
    LinkResponse,
    LinkStatusResponse,
    LinkStatusUpdate,
)
from auth.dependencies import get_current_user
from auth.models import User
from cmdb import orgs
from cmdb.access import require_admin, require_org_access
from cmdb.ingest import parse_device_csv, replace_devices
from cmdb.store import CMDBStore
from cmdb.sync import get_device_vulnerabilities, match_all, update_link_status

logger = logging.getLogger("cryptiomt.api")

router = APIRouter(dependencies=[Depends(get_current_user)])

_MAX_UPLOAD_BYTES = 1 * 1024 * 1024  # 1 MB


def _match_after_import(cmdb: CMDBStore, org_id: int) -> None:
    try:
        match_all(cmdb, org_id)
    except Exception:
        logger.exception("Post-import match failed for org %d", org_id)


# ---------------------------------------------------------------------------
# Organization inventory
# ---------------------------------------------------------------------------


@limiter.limit("10/minute")
@router.post("/organizations/{org_id}/devices/import", response_model=DeviceImportResponse)
async def import_devices(
    request: Request,
    org_id: int,
    file: UploadFile,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
) -> DeviceImportResponse:
    """Replace the organization's device inventory with the uploaded CSV.

    Rows missing a required column are skipped and listed in errors. A file
    with no valid rows is rejected and the current inventory is kept.
    """
    cmdb: CMDBStore = request.app.state.cmdb
    require_admin(current_user)
    require_org_access(cmdb, current_user, org_id, write=True)

    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(
            status_code=415,
            detail=ErrorDetail(code="unsupported_format", message="File must have a .csv extension.").model_dump(),
        )
    raw = await file.read(_MAX_UPLOAD_BYTES + 1)
    if len(raw) > _MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=ErrorDetail(code="file_too_large", message="Upload must be 1 MB or smaller.").model_dump(),
        )

    devices, errors = parse_device_csv(raw.decode("utf-8", errors="replace"), org_id)
    if not devices:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(
                code="no_valid_rows",
                message="The file contains no importable devices.",
                detail="; ".join(errors[:20]) or None,
            ).model_dump(),
        )

    result = replace_devices(cmdb, current_user, org_id, devices)
    background_tasks.add_task(_match_after_import, cmdb, org_id)
    return DeviceImportResponse(
        imported=result["imported"],
        removed=result["removed"],
        batch=result["batch"],
        errors=errors,
    )


@limiter.limit("60/minute")
@router.get("/organizations/{org_id}/devices", response_model=list[DeviceResponse])
def list_devices(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> list[DeviceResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    return [DeviceResponse.from_domain(d) for d in orgs.list_devices(cmdb, current_user, org_id)]


@limiter.limit("10/minute")
@router.get("/organizations/{org_id}/devices/export")
def export_devices(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> Response:
    cmdb: CMDBStore = request.app.state.cmdb
    content = orgs.export_devices(cmdb, current_user, org_id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="devices-org-{org_id}.csv"'},
    )


# ---------------------------------------------------------------------------
# Single device
# ---------------------------------------------------------------------------


@limiter.limit("60/minute")
@router.get("/devices/{device_id}", response_model=DeviceResponse)
def get_device(
    request: Request,
    device_id: int,
    current_user: User = Depends(get_current_user),
) -> DeviceResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return DeviceResponse.from_domain(orgs.get_device(cmdb, current_user, device_id))


@limiter.limit("60/minute")
@router.get("/devices/{device_id}/vulnerabilities", response_model=DeviceVulnerabilitiesResponse)
def device_vulnerabilities(
    request: Request,
    device_id: int,
    current_user: User = Depends(get_current_user),
) -> DeviceVulnerabilitiesResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    device, links = get_device_vulnerabilities(cmdb, current_user, device_id)
    return DeviceVulnerabilitiesResponse(
        device=DeviceResponse.from_domain(device),
        vulnerabilities=[LinkResponse.from_domain(item) for item in links],
    )


@limiter.limit("60/minute")
@router.get("/devices/{device_id}/history", response_model=list[DeviceLogResponse])
def device_history(
    request: Request,
    device_id: int,
    limit: int = 100,
    current_user: User = Depends(get_current_user),
) -> list[DeviceLogResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    limit = max(1, min(limit, 500))
    return [DeviceLogResponse.from_domain(log) for log in orgs.device_history(cmdb, current_user, device_id, limit)]


@limiter.limit("30/minute")
@router.patch(
    "/devices/{device_id}/vulnerabilities/{vuln_id}/status",
    response_model=LinkStatusResponse,
)
def update_device_link_status(
    request: Request,
    device_id: int,
    vuln_id: str,
    body: LinkStatusUpdate,
    current_user: User = Depends(get_current_user),
) -> LinkStatusResponse:
    """Set the status of one vulnerability on one device."""
    cmdb: CMDBStore = request.app.state.cmdb
    link = update_link_status(cmdb, current_user, device_id, vuln_id.upper(), body.status.value, body.notes)
    return LinkStatusResponse(
        vulnerability_id=link.vulnerability_id,
        status=link.status,
        updated=1,
        mitigated_at=link.mitigated_at,
    )


@limiter.limit("30/minute")
@router.patch("/devices/{device_id}", response_model=DeviceResponse)
def update_device(
    request: Request,
    device_id: int,
    body: DeviceUpdate,
    current_user: User = Depends(get_current_user),
) -> DeviceResponse:
    """Change editable fields of one device (owner, last seen, network data...).

    Only fields present in the body are written. Manufacturer and model are
    import-only.
    """
    cmdb: CMDBStore = request.app.state.cmdb
    fields = body.model_dump(exclude_unset=True)
    return DeviceResponse.from_domain(orgs.update_device(cmdb, current_user, device_id, **fields))


@limiter.limit("30/minute")
@router.put("/devices/{device_id}/tags", response_model=DeviceResponse)
def update_device_tags(
    request: Request,
    device_id: int,
    body: DeviceTagsUpdate,
    current_user: User = Depends(get_current_user),
) -> DeviceResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    return DeviceResponse.from_domain(orgs.update_device_tags(cmdb, current_user, device_id, body.tags))
