from __future__ import annotations

from fastapi import APIRouter, Header, Request

from snapwatch.routes._deps import services_from_request, trace_id_from_request
from snapwatch.schemas import IdentityWebhookRequest, success_envelope
from snapwatch.security import check_internal_token

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/identity/webhook")
def identity_webhook(
    payload: IdentityWebhookRequest,
    request: Request,
    internal_token: str | None = Header(default=None, alias="X-Internal-Token"),
):
    check_internal_token(presented=internal_token, cfg=request.app.state.security_cfg)
    services = services_from_request(request)
    user = payload.data
    # every identity owns its own tenant unless the provider assigns one
    tenant_id = user.tenant_id or user.id
    if payload.type == "user.deleted":
        deleted = services.tenancy.delete_tenant_user(tenant_id, user.id)
        return success_envelope({"external_id": user.id, "deleted": deleted}, trace_id_from_request(request))
    email = user.email_addresses[0].email_address if user.email_addresses else ""
    data = services.tenancy.upsert_tenant_user(
        tenant_id,
        user.id,
        {
            "email": email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "avatar_url": user.image_url,
        },
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/schedules/fire")
def fire_schedules(
    request: Request,
    internal_token: str | None = Header(default=None, alias="X-Internal-Token"),
):
    check_internal_token(presented=internal_token, cfg=request.app.state.security_cfg)
    services = services_from_request(request)
    fired = services.lifecycle.fire_due_schedules()
    return success_envelope({"fired": [x.as_dict() for x in fired]}, trace_id_from_request(request))
