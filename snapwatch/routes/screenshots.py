from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from snapwatch.routes._deps import (
    actor_from_request,
    services_from_request,
    tenant_id_from_request,
    trace_id_from_request,
)
from snapwatch.schemas import ApprovalRequest, ScheduleRequest, ScreenshotRunRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["screenshots"])


@router.get("/screenshots/{screenshot_id}")
def get_screenshot(screenshot_id: str, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.get_screenshot(tenant_id_from_request(request), screenshot_id)
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/screenshots/{screenshot_id}")
def delete_screenshot(screenshot_id: str, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.delete_screenshot(tenant_id_from_request(request), screenshot_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/screenshots/{screenshot_id}/run")
def run_screenshot(screenshot_id: str, request: Request, payload: ScreenshotRunRequest | None = None):
    services = services_from_request(request)
    force = True if payload is None else payload.force
    result = services.lifecycle.request_rerun(tenant_id_from_request(request), screenshot_id, force=force)
    return JSONResponse(
        status_code=202,
        content=success_envelope(result.as_dict(), trace_id_from_request(request)),
    )


@router.put("/screenshots/{screenshot_id}/schedule")
def schedule_screenshot(screenshot_id: str, payload: ScheduleRequest, request: Request):
    services = services_from_request(request)
    schedule = services.lifecycle.schedule_screenshot(tenant_id_from_request(request), screenshot_id, payload.cron)
    data = {
        "screenshot_id": schedule.screenshot_id,
        "cron": schedule.cron,
        "next_run_at": schedule.next_run_at,
    }
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/screenshots/{screenshot_id}/schedule")
def unschedule_screenshot(screenshot_id: str, request: Request):
    services = services_from_request(request)
    removed = services.lifecycle.unschedule_screenshot(tenant_id_from_request(request), screenshot_id)
    return success_envelope({"screenshot_id": screenshot_id, "removed": removed}, trace_id_from_request(request))


@router.post("/screenshots/{screenshot_id}/approval")
def approve_screenshot(screenshot_id: str, payload: ApprovalRequest, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.approve(
        tenant_id_from_request(request),
        screenshot_id,
        payload.action,
        actor_from_request(request),
        payload.reason,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/screenshots/{screenshot_id}/history")
def screenshot_history(screenshot_id: str, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.history(tenant_id_from_request(request), screenshot_id)
    return success_envelope(data, trace_id_from_request(request))
