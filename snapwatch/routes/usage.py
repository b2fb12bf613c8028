from __future__ import annotations

from fastapi import APIRouter, Request

from snapwatch.routes._deps import services_from_request, tenant_id_from_request, trace_id_from_request
from snapwatch.schemas import success_envelope

router = APIRouter(prefix="/api/v1", tags=["usage"])


@router.get("/usage")
def usage(request: Request):
    services = services_from_request(request)
    quota = services.tenancy.check_quota(tenant_id_from_request(request))
    return success_envelope(quota.as_dict(), trace_id_from_request(request))
