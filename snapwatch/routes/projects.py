from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from snapwatch.routes._deps import services_from_request, tenant_id_from_request, trace_id_from_request
from snapwatch.schemas import ProjectCreateRequest, ProjectUpdateRequest, ScreenshotCreateRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["projects"])


@router.post("/projects")
def create_project(payload: ProjectCreateRequest, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.create_project(tenant_id_from_request(request), payload)
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/projects")
def list_projects(request: Request):
    services = services_from_request(request)
    items = services.lifecycle.list_projects(tenant_id_from_request(request))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/projects/{project_id}")
def get_project(project_id: str, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.get_project(tenant_id_from_request(request), project_id)
    return success_envelope(data, trace_id_from_request(request))


@router.put("/projects/{project_id}")
def update_project(project_id: str, payload: ProjectUpdateRequest, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.update_project(tenant_id_from_request(request), project_id, payload)
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/projects/{project_id}")
def delete_project(project_id: str, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.delete_project(tenant_id_from_request(request), project_id)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/projects/{project_id}/screenshots")
def list_screenshots(project_id: str, request: Request):
    services = services_from_request(request)
    items = services.lifecycle.list_screenshots(tenant_id_from_request(request), project_id)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/projects/{project_id}/screenshots")
def create_screenshot(project_id: str, payload: ScreenshotCreateRequest, request: Request):
    services = services_from_request(request)
    data = services.lifecycle.create_screenshot(tenant_id_from_request(request), project_id, payload)
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.post("/projects/{project_id}/run")
def run_project(project_id: str, request: Request):
    services = services_from_request(request)
    results = services.lifecycle.run_project(tenant_id_from_request(request), project_id)
    data = {
        "items": [x.as_dict() for x in results],
        "submitted": sum(1 for x in results if x.ok),
        "rejected": sum(1 for x in results if not x.ok),
    }
    return JSONResponse(status_code=202, content=success_envelope(data, trace_id_from_request(request)))
