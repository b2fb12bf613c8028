from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from snapwatch.errors import TenantContextError

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS tenant_users (
        user_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        external_id TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL DEFAULT '',
        first_name TEXT,
        last_name TEXT,
        avatar_url TEXT,
        last_login_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant_usage (
        tenant_id TEXT PRIMARY KEY,
        subscription_tier TEXT NOT NULL DEFAULT 'free',
        monthly_capture_count INTEGER NOT NULL DEFAULT 0,
        monthly_capture_limit INTEGER NOT NULL,
        usage_period TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projects (
        project_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        base_url TEXT,
        diff_threshold DOUBLE PRECISION,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS screenshots (
        screenshot_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        selector TEXT,
        viewport JSONB,
        schedule TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        approval_status TEXT NOT NULL DEFAULT 'pending',
        approved_by TEXT,
        approved_at TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        image_ref TEXT,
        last_error TEXT,
        last_captured_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (status IN ('pending', 'captured', 'failed')),
        CHECK (approval_status IN ('pending', 'approved', 'rejected'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS diffs (
        diff_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        screenshot_id TEXT NOT NULL REFERENCES screenshots(screenshot_id) ON DELETE CASCADE,
        previous_image_ref TEXT NOT NULL,
        current_image_ref TEXT NOT NULL,
        pixel_diff BIGINT NOT NULL,
        percentage_diff DOUBLE PRECISION NOT NULL,
        total_pixels BIGINT NOT NULL,
        significant BOOLEAN NOT NULL,
        threshold DOUBLE PRECISION NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_events (
        event_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        screenshot_id TEXT NOT NULL REFERENCES screenshots(screenshot_id) ON DELETE CASCADE,
        diff_id TEXT,
        action TEXT NOT NULL,
        actor TEXT NOT NULL,
        reason TEXT,
        occurred_at TEXT NOT NULL,
        CHECK (action IN ('approved', 'rejected', 'pending'))
    )
    """,
)


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with tenant session injection."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    @contextmanager
    def transaction(self, *, tenant_id: str) -> Iterator[Any]:
        """Yield a connection whose transaction carries app.current_tenant; commit on clean exit."""
        if not tenant_id.strip():
            raise TenantContextError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
            yield conn
            conn.commit()

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        with self.transaction(tenant_id=tenant_id) as conn:
            return fn(conn)

    def apply_schema(self) -> int:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        return len(SCHEMA_STATEMENTS)


def fetch_dicts(cur: Any) -> list[dict[str, Any]]:
    rows = cur.fetchall() or []
    names = [col[0] for col in (cur.description or [])]
    return [dict(zip(names, row)) for row in rows]


def fetch_dict(cur: Any) -> dict[str, Any] | None:
    row = cur.fetchone()
    if row is None:
        return None
    names = [col[0] for col in (cur.description or [])]
    return dict(zip(names, row))
