from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from snapwatch.errors import ApiError
from snapwatch.runtime_profile import as_bool


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _epoch(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    return int(text) if text.isdigit() else None


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def redact_sensitive(value: object) -> object:
    sensitive_keys = {"authorization", "token", "secret", "password", "api_key", "apikey", "x-internal-token"}
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            if str(key).lower() in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str) and len(value) >= 24 and "bearer " in value.lower():
        return "***REDACTED***"
    return value


@dataclass
class AuthContext:
    tenant_id: str
    subject: str
    role: str
    claims: dict[str, Any]

    def is_admin(self, cfg: "JwtSecurityConfig") -> bool:
        return self.role in cfg.admin_roles


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    tenant_claim: str
    role_claim: str
    admin_roles: set[str]
    internal_token: str
    log_redaction_enabled: bool
    trace_id_strict_required: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = env.get("JWT_ISSUER", "").strip()
        audience = env.get("JWT_AUDIENCE", "").strip()
        shared_secret = env.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(env.get("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp")),
            tenant_claim=env.get("JWT_TENANT_CLAIM", "tenant_id").strip() or "tenant_id",
            role_claim=env.get("JWT_ROLE_CLAIM", "role").strip() or "role",
            admin_roles=set(_split_csv(env.get("JWT_ADMIN_ROLES", "admin"))),
            internal_token=env.get("INTERNAL_API_TOKEN", "").strip(),
            log_redaction_enabled=as_bool(env.get("SECURITY_LOG_REDACTION_ENABLED", "true")),
            trace_id_strict_required=as_bool(env.get("TRACE_ID_STRICT_REQUIRED", "false")),
        )


def _decode_segment(raw: str) -> dict[str, Any]:
    try:
        obj = json.loads(_b64url_decode(raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(obj, dict):
        raise _unauthorized("invalid token payload")
    return obj


def _verified_claims(token: str, secret: str) -> dict[str, Any]:
    """Check the HS256 signature and return the claim set."""
    segments = token.split(".")
    if len(segments) != 3:
        raise _unauthorized("invalid token format")
    header = _decode_segment(segments[0])
    claims = _decode_segment(segments[1])
    if str(header.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not secret:
        raise _unauthorized("jwt shared secret not configured")
    signing_input = f"{segments[0]}.{segments[1]}".encode("ascii")
    digest = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    if not hmac.compare_digest(_b64url_encode(digest), segments[2]):
        raise _unauthorized("invalid token signature")
    return claims


def _check_registered_claims(claims: dict[str, Any], cfg: JwtSecurityConfig) -> None:
    now = int(datetime.now(UTC).timestamp())
    expires_at = _epoch(claims.get("exp"))
    if expires_at is None or expires_at <= now:
        raise _unauthorized("token expired")
    not_before = _epoch(claims.get("nbf"))
    if not_before is not None and not_before > now:
        raise _unauthorized("token not yet valid")
    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = claims.get("aud")
        audiences = {str(x) for x in aud} if isinstance(aud, list) else {str(aud or "")}
        if cfg.audience not in audiences:
            raise _unauthorized("jwt audience mismatch")
    missing = [name for name in cfg.required_claims if name not in claims]
    if missing:
        raise _unauthorized(f"missing required claim: {missing[0]}")


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    """Resolve the caller's tenant, subject and role from a bearer token."""
    scheme, _, token = (authorization or "").partition(" ")
    if not scheme:
        raise _unauthorized("missing Authorization bearer token")
    if scheme != "Bearer":
        raise _unauthorized("invalid Authorization header")
    if not token.strip():
        raise _unauthorized("empty bearer token")

    claims = _verified_claims(token.strip(), cfg.shared_secret)
    _check_registered_claims(claims, cfg)

    tenant_id = str(claims.get(cfg.tenant_claim) or "").strip()
    subject = str(claims.get("sub") or "").strip()
    if not tenant_id or not subject:
        raise _unauthorized("missing tenant or subject claim")
    return AuthContext(
        tenant_id=tenant_id,
        subject=subject,
        role=str(claims.get(cfg.role_claim) or ""),
        claims=claims,
    )


def check_internal_token(*, presented: str | None, cfg: JwtSecurityConfig) -> None:
    if not cfg.internal_token:
        return
    if not presented or not hmac.compare_digest(presented.strip(), cfg.internal_token):
        raise _unauthorized("invalid internal token")
