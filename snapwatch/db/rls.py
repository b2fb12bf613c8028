from __future__ import annotations

from snapwatch.db.postgres import _import_psycopg, validate_identifier

TENANT_SETTING = "app.current_tenant"

# tables keyed by tenant_id already have an index on it
_TENANT_KEYED = frozenset({"tenant_usage"})


def policy_statements(table: str) -> list[str]:
    """SQL that pins every row of ``table`` to the transaction's tenant setting."""
    table = validate_identifier(table)
    policy = f"{table}_tenant_isolation"
    predicate = f"{table}.tenant_id = current_setting('{TENANT_SETTING}', true)"
    statements = [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {policy} ON {table}",
        f"CREATE POLICY {policy} ON {table} USING ({predicate}) WITH CHECK ({predicate})",
    ]
    if table not in _TENANT_KEYED:
        statements.append(f"CREATE INDEX IF NOT EXISTS {table}_tenant_idx ON {table} (tenant_id)")
    return statements


class PostgresRlsManager:
    """Enable row-level isolation on the snapwatch tables."""

    DEFAULT_TABLES: tuple[str, ...] = (
        "tenant_users",
        "tenant_usage",
        "projects",
        "screenshots",
        "diffs",
        "approval_events",
    )

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        selected = list(self.DEFAULT_TABLES if tables is None else tables)
        if not selected:
            raise ValueError("tables must not be empty")
        self._tables = [validate_identifier(name) for name in selected]

    def plan(self) -> dict[str, list[str]]:
        return {table: policy_statements(table) for table in self._tables}

    def apply(self) -> list[str]:
        plan = self.plan()
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statements in plan.values():
                    for statement in statements:
                        cur.execute(statement)
            conn.commit()
        return list(plan)
