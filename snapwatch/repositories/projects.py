from __future__ import annotations

from typing import Any

from snapwatch.db.postgres import fetch_dict, fetch_dicts, validate_identifier

MUTABLE_FIELDS: tuple[str, ...] = ("name", "base_url", "diff_threshold", "updated_at")


class InMemoryProjectsRepository:
    def __init__(self, projects: dict[str, dict[str, Any]]) -> None:
        self._projects = projects

    def create(self, *, tenant_id: str, project: dict[str, Any]) -> dict[str, Any]:
        item = dict(project)
        item["tenant_id"] = tenant_id
        self._projects[str(item["project_id"])] = item
        return dict(item)

    def get(self, *, tenant_id: str, project_id: str) -> dict[str, Any] | None:
        row = self._projects.get(project_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def list(self, *, tenant_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._projects.values() if x.get("tenant_id") == tenant_id]
        rows.sort(key=lambda x: (str(x.get("created_at", "")), str(x.get("project_id", ""))))
        return rows

    def count(self, *, tenant_id: str) -> int:
        return sum(1 for x in self._projects.values() if x.get("tenant_id") == tenant_id)

    def update(self, *, tenant_id: str, project_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        row = self._projects.get(project_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        for key in fields:
            if key not in MUTABLE_FIELDS:
                raise ValueError(f"project field is not mutable: {key}")
        updated = {**row, **fields}
        self._projects[project_id] = updated
        return dict(updated)

    def delete(self, *, tenant_id: str, project_id: str) -> bool:
        row = self._projects.get(project_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return False
        del self._projects[project_id]
        return True


class PostgresProjectsRepository:
    """Projects repository; every statement filters on tenant_id on top of RLS."""

    def __init__(self, *, conn: Any, table_name: str = "projects") -> None:
        self._conn = conn
        self._table_name = validate_identifier(table_name)

    def create(self, *, tenant_id: str, project: dict[str, Any]) -> dict[str, Any]:
        item = dict(project)
        item["tenant_id"] = tenant_id
        sql = f"""
            INSERT INTO {self._table_name} (
                project_id, tenant_id, name, base_url, diff_threshold, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        with self._conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    item["project_id"],
                    tenant_id,
                    item["name"],
                    item.get("base_url"),
                    item.get("diff_threshold"),
                    item["created_at"],
                    item["updated_at"],
                ),
            )
        return item

    def get(self, *, tenant_id: str, project_id: str) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND project_id = %s LIMIT 1"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, project_id))
            return fetch_dict(cur)

    def list(self, *, tenant_id: str) -> list[dict[str, Any]]:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s ORDER BY created_at ASC, project_id ASC"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id,))
            return fetch_dicts(cur)

    def count(self, *, tenant_id: str) -> int:
        with self._conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {self._table_name} WHERE tenant_id = %s", (tenant_id,))
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def delete(self, *, tenant_id: str, project_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s AND project_id = %s"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, project_id))
            return cur.rowcount > 0

    def update(self, *, tenant_id: str, project_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        for key in fields:
            if key not in MUTABLE_FIELDS:
                raise ValueError(f"project field is not mutable: {key}")
        if not fields:
            return self.get(tenant_id=tenant_id, project_id=project_id)
        assignments = ", ".join(f"{key} = %s" for key in fields)
        sql = f"""
            UPDATE {self._table_name}
            SET {assignments}
            WHERE tenant_id = %s AND project_id = %s
            RETURNING *
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (*fields.values(), tenant_id, project_id))
            return fetch_dict(cur)
