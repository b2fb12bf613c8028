from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from snapwatch.db.memory import InMemoryDatabase
from snapwatch.db.postgres import PostgresTxRunner
from snapwatch.errors import ConflictError, QuotaExceededError, TenantContextError
from snapwatch.repositories import (
    InMemoryApprovalEventsRepository,
    InMemoryDiffsRepository,
    InMemoryProjectsRepository,
    InMemoryScreenshotsRepository,
    InMemoryTenantUsersRepository,
    InMemoryUsageRepository,
    PostgresApprovalEventsRepository,
    PostgresDiffsRepository,
    PostgresProjectsRepository,
    PostgresScreenshotsRepository,
    PostgresTenantUsersRepository,
    PostgresUsageRepository,
)
from snapwatch.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIER_CAPTURE_LIMITS: dict[str, int] = {"free": 100, "pro": 1000, "team": 10000}
# None means unlimited.
TIER_PROJECT_LIMITS: dict[str, int | None] = {"free": 1, "pro": None, "team": None}


def _require_tenant(tenant_id: str | None) -> str:
    tenant = (tenant_id or "").strip()
    if not tenant:
        logger.warning("tenant_scope_rejected reason=empty_tenant_id")
        raise TenantContextError("tenant_id is required for every data operation")
    return tenant


@dataclass(frozen=True)
class QuotaStatus:
    can_create_project: bool
    can_capture: bool
    usage: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class _BoundRepository:
    """Repository proxy that injects the session tenant into every call."""

    def __init__(self, session: "TenantSession", repo: Any) -> None:
        self._session = session
        self._repo = repo

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._repo, name)
        if not callable(attr):
            return attr

        def _call(*args: Any, **kwargs: Any) -> Any:
            self._session.ensure_open()
            kwargs["tenant_id"] = self._session.tenant_id
            return attr(*args, **kwargs)

        return _call


class TenantSession:
    """Tenant-bound handle to the store; valid only inside its scope."""

    def __init__(self, tenant_id: str, repos: Mapping[str, Any]) -> None:
        self.tenant_id = tenant_id
        self._open = True
        self._repos = {name: _BoundRepository(self, repo) for name, repo in repos.items()}

    @property
    def is_open(self) -> bool:
        return self._open

    def ensure_open(self) -> None:
        if not self._open:
            raise TenantContextError("tenant session is closed", code="TENANT_SESSION_CLOSED")

    def close(self) -> None:
        self._open = False

    @property
    def users(self) -> Any:
        return self._repos["users"]

    @property
    def usage(self) -> Any:
        return self._repos["usage"]

    @property
    def projects(self) -> Any:
        return self._repos["projects"]

    @property
    def screenshots(self) -> Any:
        return self._repos["screenshots"]

    @property
    def diffs(self) -> Any:
        return self._repos["diffs"]

    @property
    def approval_events(self) -> Any:
        return self._repos["approval_events"]


class TenantContext:
    """Scoped tenant boundary over the relational store.

    Every operation acquires a fresh session for one tenant, runs inside one
    transaction and releases the session on exit, so nothing tenant-specific
    outlives the call.
    """

    def __init__(
        self,
        *,
        database: InMemoryDatabase | None = None,
        tx_runner: PostgresTxRunner | None = None,
        default_tier: str = "free",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if default_tier not in TIER_CAPTURE_LIMITS:
            raise ValueError(f"unknown subscription tier: {default_tier}")
        self._tx_runner = tx_runner
        self._database = database if database is not None else InMemoryDatabase()
        self._default_tier = default_tier
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def backend_name(self) -> str:
        return "postgres" if self._tx_runner is not None else "memory"

    @property
    def database(self) -> InMemoryDatabase:
        return self._database

    def now(self) -> datetime:
        return self._clock()

    def reset(self) -> None:
        self._database.reset()

    @contextmanager
    def scope(self, tenant_id: str) -> Iterator[TenantSession]:
        tenant = _require_tenant(tenant_id)
        if self._tx_runner is not None:
            with self._tx_runner.transaction(tenant_id=tenant) as conn:
                session = TenantSession(
                    tenant,
                    {
                        "users": PostgresTenantUsersRepository(conn=conn),
                        "usage": PostgresUsageRepository(conn=conn),
                        "projects": PostgresProjectsRepository(conn=conn),
                        "screenshots": PostgresScreenshotsRepository(conn=conn),
                        "diffs": PostgresDiffsRepository(conn=conn),
                        "approval_events": PostgresApprovalEventsRepository(conn=conn),
                    },
                )
                try:
                    yield session
                finally:
                    session.close()
            return

        with self._database.transaction() as tables:
            session = TenantSession(
                tenant,
                {
                    "users": InMemoryTenantUsersRepository(tables["tenant_users"]),
                    "usage": InMemoryUsageRepository(tables["tenant_usage"]),
                    "projects": InMemoryProjectsRepository(tables["projects"]),
                    "screenshots": InMemoryScreenshotsRepository(tables["screenshots"]),
                    "diffs": InMemoryDiffsRepository(tables["diffs"]),
                    "approval_events": InMemoryApprovalEventsRepository(tables["approval_events"]),
                },
            )
            try:
                yield session
            finally:
                session.close()

    def with_tenant(self, tenant_id: str, operation: Callable[[TenantSession], T]) -> T:
        with self.scope(tenant_id) as session:
            return operation(session)

    def _period(self) -> str:
        return self.now().strftime("%Y-%m")

    def _usage_defaults(self) -> dict[str, Any]:
        return {
            "subscription_tier": self._default_tier,
            "monthly_capture_count": 0,
            "monthly_capture_limit": TIER_CAPTURE_LIMITS[self._default_tier],
            "usage_period": self._period(),
            "updated_at": self.now().isoformat(),
        }

    def upsert_tenant_user(self, tenant_id: str, external_id: str, profile: Mapping[str, Any]) -> dict[str, Any]:
        """Create or update the user keyed by external_id; usage counters are never touched."""
        if not str(external_id).strip():
            raise ValueError("external_id must not be empty")
        now = self.now().isoformat()

        def _op(session: TenantSession) -> dict[str, Any]:
            usage = session.usage.ensure(defaults=self._usage_defaults())
            existing = session.users.get_by_external_id(external_id=external_id)
            user = {
                "user_id": existing["user_id"] if existing else f"usr_{uuid.uuid4().hex[:12]}",
                "external_id": external_id,
                "email": str(profile.get("email") or ""),
                "first_name": profile.get("first_name"),
                "last_name": profile.get("last_name"),
                "avatar_url": profile.get("avatar_url"),
                "last_login_at": profile.get("last_login_at"),
                "created_at": existing["created_at"] if existing else now,
                "updated_at": now,
            }
            stored = session.users.upsert(user=user)
            if not stored:
                raise ConflictError(
                    "external identity belongs to another tenant",
                    code="TENANT_USER_CONFLICT",
                )
            return {
                **stored,
                "subscription_tier": usage["subscription_tier"],
                "monthly_capture_count": usage["monthly_capture_count"],
                "monthly_capture_limit": usage["monthly_capture_limit"],
                "usage_period": usage["usage_period"],
            }

        user = self.with_tenant(tenant_id, _op)
        logger.info("tenant_user_upserted tenant_id=%s external_id=%s", tenant_id, external_id)
        return user

    def delete_tenant_user(self, tenant_id: str, external_id: str) -> bool:
        deleted = self.with_tenant(tenant_id, lambda s: s.users.delete(external_id=external_id))
        logger.info("tenant_user_deleted tenant_id=%s external_id=%s deleted=%s", tenant_id, external_id, deleted)
        return bool(deleted)

    def _project_limit(self, usage: Mapping[str, Any]) -> int | None:
        tier = str(usage.get("subscription_tier", self._default_tier))
        return TIER_PROJECT_LIMITS.get(tier, 1)

    def create_project(self, tenant_id: str, project: Mapping[str, Any]) -> dict[str, Any]:
        """Insert ``project`` unless the tier's project limit is reached.

        The usage row is locked before counting, so concurrent creators for
        one tenant are checked one after another inside the same transaction
        as the insert.
        """

        def _op(session: TenantSession) -> dict[str, Any] | None:
            session.usage.ensure(defaults=self._usage_defaults())
            limit = self._project_limit(session.usage.lock() or {})
            if limit is not None and session.projects.count() >= limit:
                return None
            return session.projects.create(project=dict(project))

        created = self.with_tenant(tenant_id, _op)
        if created is None:
            logger.warning("project_limit_reached tenant_id=%s", tenant_id)
            raise QuotaExceededError("project limit reached for the current plan")
        return created

    def check_quota(self, tenant_id: str) -> QuotaStatus:
        """Informational view; reservation happens in increment_capture_usage."""

        def _op(session: TenantSession) -> QuotaStatus:
            session.usage.ensure(defaults=self._usage_defaults())
            usage = session.usage.get(period=self._period())
            projects = session.projects.count()
            tier = str(usage.get("subscription_tier", self._default_tier))
            project_limit = self._project_limit(usage)
            captures = int(usage["monthly_capture_count"])
            limit = int(usage["monthly_capture_limit"])
            return QuotaStatus(
                can_create_project=project_limit is None or projects < project_limit,
                can_capture=captures < limit,
                usage={"captures": captures, "limit": limit, "projects": projects, "tier": tier},
            )

        return self.with_tenant(tenant_id, _op)

    def increment_capture_usage(self, tenant_id: str) -> int:
        """Reserve one capture; raises QuotaExceededError without touching the counter at the limit."""
        period = self._period()
        now = self.now().isoformat()

        def _op(session: TenantSession) -> dict[str, Any] | None:
            session.usage.ensure(defaults=self._usage_defaults())
            return session.usage.reserve_capture(period=period, now=now)

        row = self.with_tenant(tenant_id, _op)
        if row is None:
            logger.warning("capture_quota_exceeded tenant_id=%s period=%s", tenant_id, period)
            raise QuotaExceededError()
        return int(row["monthly_capture_count"])

    def release_capture_usage(self, tenant_id: str) -> None:
        period = self._period()
        now = self.now().isoformat()
        self.with_tenant(tenant_id, lambda s: s.usage.release_capture(period=period, now=now))


def create_tenant_context_from_env(environ: Mapping[str, str] | None = None) -> TenantContext:
    env = os.environ if environ is None else environ
    backend = env.get("SNAPWATCH_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("SNAPWATCH_STORE_BACKEND must be postgres when SNAPWATCH_REQUIRE_TRUESTACK=true")
    default_tier = env.get("SNAPWATCH_DEFAULT_TIER", "free").strip().lower()
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when SNAPWATCH_STORE_BACKEND=postgres")
        return TenantContext(tx_runner=PostgresTxRunner(dsn), default_tier=default_tier)
    if backend == "memory":
        return TenantContext(default_tier=default_tier)
    raise RuntimeError(f"unsupported store backend: {backend}")
