from __future__ import annotations

import threading

import pytest

from snapwatch.errors import ConflictError, QuotaExceededError, TenantContextError
from snapwatch.tenancy import TenantContext, create_tenant_context_from_env


def _project(project_id: str, name: str = "Marketing site") -> dict[str, object]:
    return {
        "project_id": project_id,
        "name": name,
        "base_url": None,
        "diff_threshold": None,
        "created_at": "2026-03-15T10:00:00+00:00",
        "updated_at": "2026-03-15T10:00:00+00:00",
    }


def test_scope_requires_tenant(tenancy):
    with pytest.raises(TenantContextError):
        with tenancy.scope(""):
            pass
    with pytest.raises(TenantContextError):
        tenancy.check_quota(None)


def test_session_cannot_be_used_after_scope_exits(tenancy):
    with tenancy.scope("tenant_a") as session:
        session.projects.create(project=_project("prj_1"))
        assert session.is_open

    assert session.is_open is False
    with pytest.raises(TenantContextError) as exc_info:
        session.projects.list()
    assert exc_info.value.code == "TENANT_SESSION_CLOSED"


def test_scope_rolls_back_when_operation_raises(tenancy):
    with pytest.raises(RuntimeError):
        with tenancy.scope("tenant_a") as session:
            session.projects.create(project=_project("prj_1"))
            raise RuntimeError("boom")

    assert tenancy.with_tenant("tenant_a", lambda s: s.projects.list()) == []


def test_tenants_never_see_each_other(tenancy):
    tenancy.with_tenant("tenant_a", lambda s: s.projects.create(project=_project("prj_a")))
    tenancy.with_tenant("tenant_b", lambda s: s.projects.create(project=_project("prj_b")))

    seen_a = tenancy.with_tenant("tenant_a", lambda s: s.projects.list())
    seen_b = tenancy.with_tenant("tenant_b", lambda s: s.projects.list())
    assert [x["project_id"] for x in seen_a] == ["prj_a"]
    assert [x["project_id"] for x in seen_b] == ["prj_b"]
    assert tenancy.with_tenant("tenant_b", lambda s: s.projects.get(project_id="prj_a")) is None
    assert tenancy.with_tenant("tenant_b", lambda s: s.projects.delete(project_id="prj_a")) is False


def test_repository_calls_cannot_override_the_session_tenant(tenancy):
    tenancy.with_tenant("tenant_a", lambda s: s.projects.create(project=_project("prj_a")))
    leaked = tenancy.with_tenant("tenant_b", lambda s: s.projects.list(tenant_id="tenant_a"))
    assert leaked == []


def test_upsert_tenant_user_is_idempotent_and_keeps_usage(tenancy):
    first = tenancy.upsert_tenant_user("tenant_a", "ext_1", {"email": "a@example.com"})
    tenancy.increment_capture_usage("tenant_a")
    second = tenancy.upsert_tenant_user("tenant_a", "ext_1", {"email": "new@example.com", "first_name": "Ada"})

    assert second["user_id"] == first["user_id"]
    assert second["email"] == "new@example.com"
    assert second["first_name"] == "Ada"
    assert second["monthly_capture_count"] == 1
    assert second["subscription_tier"] == "free"
    assert second["monthly_capture_limit"] == 100


def test_external_identity_cannot_move_between_tenants(tenancy):
    tenancy.upsert_tenant_user("tenant_a", "ext_1", {"email": "a@example.com"})
    with pytest.raises(ConflictError) as exc_info:
        tenancy.upsert_tenant_user("tenant_b", "ext_1", {"email": "a@example.com"})
    assert exc_info.value.code == "TENANT_USER_CONFLICT"
    assert tenancy.delete_tenant_user("tenant_b", "ext_1") is False
    assert tenancy.delete_tenant_user("tenant_a", "ext_1") is True


def test_capture_quota_stops_at_limit(tenancy):
    for expected in range(1, 101):
        assert tenancy.increment_capture_usage("tenant_a") == expected
    with pytest.raises(QuotaExceededError):
        tenancy.increment_capture_usage("tenant_a")

    quota = tenancy.check_quota("tenant_a")
    assert quota.can_capture is False
    assert quota.usage == {"captures": 100, "limit": 100, "projects": 0, "tier": "free"}
    assert tenancy.check_quota("tenant_b").can_capture is True


def test_capture_quota_resets_with_new_period(tenancy, clock):
    for _ in range(100):
        tenancy.increment_capture_usage("tenant_a")
    clock.advance(days=20)

    assert tenancy.check_quota("tenant_a").usage["captures"] == 0
    assert tenancy.increment_capture_usage("tenant_a") == 1


def test_release_returns_a_reservation(tenancy):
    tenancy.increment_capture_usage("tenant_a")
    tenancy.increment_capture_usage("tenant_a")
    tenancy.release_capture_usage("tenant_a")
    assert tenancy.check_quota("tenant_a").usage["captures"] == 1


def test_free_tier_allows_a_single_project(tenancy):
    assert tenancy.check_quota("tenant_a").can_create_project is True
    tenancy.with_tenant("tenant_a", lambda s: s.projects.create(project=_project("prj_1")))
    assert tenancy.check_quota("tenant_a").can_create_project is False


def test_concurrent_project_creation_respects_the_limit(tenancy):
    barrier = threading.Barrier(8)
    outcomes: list[str] = []

    def create(i: int) -> None:
        barrier.wait()
        try:
            tenancy.create_project("tenant_a", _project(f"prj_{i}"))
            outcomes.append("created")
        except QuotaExceededError:
            outcomes.append("rejected")

    threads = [threading.Thread(target=create, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["created"] + ["rejected"] * 7
    assert len(tenancy.with_tenant("tenant_a", lambda s: s.projects.list())) == 1


def test_rollback_restores_updated_deleted_and_inserted_rows(tenancy):
    tenancy.with_tenant("tenant_a", lambda s: s.projects.create(project=_project("prj_keep")))
    tenancy.with_tenant("tenant_a", lambda s: s.projects.create(project=_project("prj_gone")))

    with pytest.raises(RuntimeError):
        with tenancy.scope("tenant_a") as session:
            session.projects.update(project_id="prj_keep", fields={"name": "Renamed"})
            session.projects.delete(project_id="prj_gone")
            session.projects.create(project=_project("prj_new"))
            assert tenancy.database.pending_undo == 3
            raise RuntimeError("boom")

    rows = tenancy.with_tenant("tenant_a", lambda s: s.projects.list())
    assert sorted(x["project_id"] for x in rows) == ["prj_gone", "prj_keep"]
    assert {x["name"] for x in rows} == {"Marketing site"}
    assert tenancy.database.pending_undo == 0


def test_undo_log_tracks_only_touched_rows(tenancy):
    for i in range(50):
        tenancy.with_tenant("tenant_a", lambda s, i=i: s.projects.create(project=_project(f"prj_{i}")))

    with tenancy.scope("tenant_a") as session:
        session.projects.update(project_id="prj_7", fields={"name": "Only me"})
        assert tenancy.database.pending_undo == 1


def test_paid_tiers_have_unlimited_projects(clock):
    tenancy = TenantContext(default_tier="pro", clock=clock)
    for i in range(3):
        tenancy.with_tenant("tenant_a", lambda s, i=i: s.projects.create(project=_project(f"prj_{i}")))
    quota = tenancy.check_quota("tenant_a")
    assert quota.can_create_project is True
    assert quota.usage["limit"] == 1000


def test_factory_reads_backend_and_tier():
    tenancy = create_tenant_context_from_env({"SNAPWATCH_DEFAULT_TIER": "team"})
    assert tenancy.backend_name == "memory"
    assert tenancy.check_quota("tenant_a").usage["limit"] == 10000
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_tenant_context_from_env({"SNAPWATCH_STORE_BACKEND": "postgres"})
    with pytest.raises(RuntimeError, match="must be postgres"):
        create_tenant_context_from_env({"SNAPWATCH_REQUIRE_TRUESTACK": "1"})
    with pytest.raises(ValueError, match="unknown subscription tier"):
        TenantContext(default_tier="enterprise")
