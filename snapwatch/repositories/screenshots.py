from __future__ import annotations

import json
from typing import Any

from snapwatch.db.postgres import fetch_dict, fetch_dicts, validate_identifier

MUTABLE_FIELDS: tuple[str, ...] = (
    "name",
    "url",
    "selector",
    "viewport",
    "schedule",
    "status",
    "approval_status",
    "approved_by",
    "approved_at",
    "retry_count",
    "image_ref",
    "last_error",
    "last_captured_at",
    "updated_at",
)


def _decode(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    viewport = row.get("viewport")
    if isinstance(viewport, str):
        row["viewport"] = json.loads(viewport)
    return row


class InMemoryScreenshotsRepository:
    def __init__(self, screenshots: dict[str, dict[str, Any]]) -> None:
        self._screenshots = screenshots

    def create(self, *, tenant_id: str, screenshot: dict[str, Any]) -> dict[str, Any]:
        item = dict(screenshot)
        item["tenant_id"] = tenant_id
        self._screenshots[str(item["screenshot_id"])] = item
        return dict(item)

    def get(self, *, tenant_id: str, screenshot_id: str) -> dict[str, Any] | None:
        row = self._screenshots.get(screenshot_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def list_for_project(self, *, tenant_id: str, project_id: str) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._screenshots.values()
            if x.get("tenant_id") == tenant_id and x.get("project_id") == project_id
        ]
        rows.sort(key=lambda x: (str(x.get("created_at", "")), str(x.get("screenshot_id", ""))))
        return rows

    def update(self, *, tenant_id: str, screenshot_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        row = self._screenshots.get(screenshot_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        updated = dict(row)
        for key, value in fields.items():
            if key not in MUTABLE_FIELDS:
                raise ValueError(f"screenshot field is not mutable: {key}")
            updated[key] = value
        self._screenshots[screenshot_id] = updated
        return dict(updated)

    def delete(self, *, tenant_id: str, screenshot_id: str) -> bool:
        row = self._screenshots.get(screenshot_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return False
        del self._screenshots[screenshot_id]
        return True


class PostgresScreenshotsRepository:
    def __init__(self, *, conn: Any, table_name: str = "screenshots") -> None:
        self._conn = conn
        self._table_name = validate_identifier(table_name)

    def create(self, *, tenant_id: str, screenshot: dict[str, Any]) -> dict[str, Any]:
        item = dict(screenshot)
        item["tenant_id"] = tenant_id
        sql = f"""
            INSERT INTO {self._table_name} (
                screenshot_id, tenant_id, project_id, name, url, selector, viewport, schedule,
                status, approval_status, retry_count, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s)
        """
        with self._conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    item["screenshot_id"],
                    tenant_id,
                    item["project_id"],
                    item["name"],
                    item["url"],
                    item.get("selector"),
                    json.dumps(item.get("viewport"), ensure_ascii=True, sort_keys=True),
                    item.get("schedule"),
                    item.get("status", "pending"),
                    item.get("approval_status", "pending"),
                    int(item.get("retry_count", 0)),
                    item["created_at"],
                    item["updated_at"],
                ),
            )
        return item

    def get(self, *, tenant_id: str, screenshot_id: str) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND screenshot_id = %s LIMIT 1"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, screenshot_id))
            return _decode(fetch_dict(cur))

    def list_for_project(self, *, tenant_id: str, project_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE tenant_id = %s AND project_id = %s
            ORDER BY created_at ASC, screenshot_id ASC
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, project_id))
            return [_decode(x) for x in fetch_dicts(cur)]

    def update(self, *, tenant_id: str, screenshot_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        assignments: list[str] = []
        params: list[Any] = []
        for key, value in fields.items():
            if key not in MUTABLE_FIELDS:
                raise ValueError(f"screenshot field is not mutable: {key}")
            if key == "viewport":
                assignments.append("viewport = %s::jsonb")
                params.append(json.dumps(value, ensure_ascii=True, sort_keys=True))
            else:
                assignments.append(f"{key} = %s")
                params.append(value)
        if not assignments:
            return self.get(tenant_id=tenant_id, screenshot_id=screenshot_id)
        sql = f"""
            UPDATE {self._table_name}
            SET {", ".join(assignments)}
            WHERE tenant_id = %s AND screenshot_id = %s
            RETURNING *
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (*params, tenant_id, screenshot_id))
            return _decode(fetch_dict(cur))

    def delete(self, *, tenant_id: str, screenshot_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s AND screenshot_id = %s"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, screenshot_id))
            return cur.rowcount > 0
