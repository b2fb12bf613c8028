from __future__ import annotations

from typing import Any

from snapwatch.db.postgres import fetch_dict, validate_identifier


def _rolled(row: dict[str, Any], period: str) -> dict[str, Any]:
    row = dict(row)
    if row.get("usage_period") != period:
        row["usage_period"] = period
        row["monthly_capture_count"] = 0
    return row


class InMemoryUsageRepository:
    def __init__(self, usage: dict[str, dict[str, Any]]) -> None:
        self._usage = usage

    def ensure(self, *, tenant_id: str, defaults: dict[str, Any]) -> dict[str, Any]:
        row = self._usage.get(tenant_id)
        if row is None:
            row = {**defaults, "tenant_id": tenant_id}
            self._usage[tenant_id] = row
        return dict(row)

    def get(self, *, tenant_id: str, period: str) -> dict[str, Any] | None:
        row = self._usage.get(tenant_id)
        return _rolled(row, period) if row is not None else None

    def reserve_capture(self, *, tenant_id: str, period: str, now: str) -> dict[str, Any] | None:
        """Increment the monthly counter unless the limit is already reached."""
        row = self._usage.get(tenant_id)
        if row is None:
            return None
        current = _rolled(row, period)
        if int(current["monthly_capture_count"]) >= int(current["monthly_capture_limit"]):
            return None
        current["monthly_capture_count"] = int(current["monthly_capture_count"]) + 1
        current["updated_at"] = now
        self._usage[tenant_id] = current
        return dict(current)

    def release_capture(self, *, tenant_id: str, period: str, now: str) -> None:
        row = self._usage.get(tenant_id)
        if row is None or row.get("usage_period") != period:
            return
        self._usage[tenant_id] = {
            **row,
            "monthly_capture_count": max(0, int(row["monthly_capture_count"]) - 1),
            "updated_at": now,
        }

    def lock(self, *, tenant_id: str) -> dict[str, Any] | None:
        """Writers are already serialized by the database lock."""
        row = self._usage.get(tenant_id)
        return dict(row) if row is not None else None


class PostgresUsageRepository:
    def __init__(self, *, conn: Any, table_name: str = "tenant_usage") -> None:
        self._conn = conn
        self._table_name = validate_identifier(table_name)

    def ensure(self, *, tenant_id: str, defaults: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (
                tenant_id, subscription_tier, monthly_capture_count, monthly_capture_limit, usage_period, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT(tenant_id) DO NOTHING
        """
        with self._conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    tenant_id,
                    defaults["subscription_tier"],
                    int(defaults.get("monthly_capture_count", 0)),
                    int(defaults["monthly_capture_limit"]),
                    defaults["usage_period"],
                    defaults["updated_at"],
                ),
            )
            cur.execute(f"SELECT * FROM {self._table_name} WHERE tenant_id = %s", (tenant_id,))
            return fetch_dict(cur) or {}

    def get(self, *, tenant_id: str, period: str) -> dict[str, Any] | None:
        with self._conn.cursor() as cur:
            cur.execute(f"SELECT * FROM {self._table_name} WHERE tenant_id = %s", (tenant_id,))
            row = fetch_dict(cur)
        return _rolled(row, period) if row is not None else None

    def reserve_capture(self, *, tenant_id: str, period: str, now: str) -> dict[str, Any] | None:
        """Single conditional UPDATE; no row back means the limit was already reached."""
        sql = f"""
            UPDATE {self._table_name}
            SET monthly_capture_count = CASE
                    WHEN usage_period = %s THEN monthly_capture_count + 1
                    ELSE 1
                END,
                usage_period = %s,
                updated_at = %s
            WHERE tenant_id = %s
              AND (usage_period <> %s OR monthly_capture_count < monthly_capture_limit)
            RETURNING *
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (period, period, now, tenant_id, period))
            return fetch_dict(cur)

    def release_capture(self, *, tenant_id: str, period: str, now: str) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET monthly_capture_count = GREATEST(monthly_capture_count - 1, 0), updated_at = %s
            WHERE tenant_id = %s AND usage_period = %s
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (now, tenant_id, period))

    def lock(self, *, tenant_id: str) -> dict[str, Any] | None:
        """Row lock on the tenant's usage row; serializes limit checks until commit."""
        with self._conn.cursor() as cur:
            cur.execute(f"SELECT * FROM {self._table_name} WHERE tenant_id = %s FOR UPDATE", (tenant_id,))
            return fetch_dict(cur)
