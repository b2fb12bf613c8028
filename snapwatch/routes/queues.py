from __future__ import annotations

from fastapi import APIRouter, Request

from snapwatch.errors import NotFoundError
from snapwatch.routes._deps import (
    require_admin,
    services_from_request,
    tenant_id_from_request,
    trace_id_from_request,
)
from snapwatch.schemas import ReapRequest, RetryFailedRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["queues"])


@router.get("/queues/{lane}")
def lane_status(lane: str, request: Request):
    require_admin(request)
    services = services_from_request(request)
    return success_envelope(services.orchestrator.get_lane_status(lane), trace_id_from_request(request))


@router.post("/queues/{lane}/retry-failed")
def retry_failed(lane: str, request: Request, payload: RetryFailedRequest | None = None):
    require_admin(request)
    services = services_from_request(request)
    limit = 10 if payload is None else payload.limit
    job_ids = services.orchestrator.retry_failed(lane, limit=limit)
    return success_envelope({"lane": lane, "retried": job_ids}, trace_id_from_request(request))


@router.post("/queues/{lane}/pause")
def pause_lane(lane: str, request: Request):
    require_admin(request)
    services = services_from_request(request)
    services.orchestrator.pause(lane)
    return success_envelope({"lane": lane, "paused": True}, trace_id_from_request(request))


@router.post("/queues/{lane}/resume")
def resume_lane(lane: str, request: Request):
    require_admin(request)
    services = services_from_request(request)
    services.orchestrator.resume(lane)
    return success_envelope({"lane": lane, "paused": False}, trace_id_from_request(request))


@router.post("/queues/{lane}/reap")
def reap_lane(lane: str, request: Request, payload: ReapRequest | None = None):
    require_admin(request)
    services = services_from_request(request)
    grace_ms = ReapRequest().grace_ms if payload is None else payload.grace_ms
    removed = services.orchestrator.reap(lane, grace_ms=grace_ms)
    return success_envelope({"lane": lane, "removed": removed}, trace_id_from_request(request))


@router.get("/jobs/{lane}/{job_id}")
def get_job(lane: str, job_id: str, request: Request):
    services = services_from_request(request)
    job = services.orchestrator.get_job(tenant_id_from_request(request), lane, job_id)
    if job is None:
        raise NotFoundError("job not found", code="JOB_NOT_FOUND")
    return success_envelope(job.as_dict(), trace_id_from_request(request))


@router.post("/jobs/{lane}/{job_id}/cancel")
def cancel_job(lane: str, job_id: str, request: Request):
    services = services_from_request(request)
    data = services.orchestrator.cancel(tenant_id_from_request(request), lane, job_id)
    return success_envelope(data, trace_id_from_request(request))
