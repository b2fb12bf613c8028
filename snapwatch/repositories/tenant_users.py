from __future__ import annotations

from typing import Any

from snapwatch.db.postgres import fetch_dict, validate_identifier

PROFILE_FIELDS: tuple[str, ...] = ("email", "first_name", "last_name", "avatar_url", "last_login_at")


class InMemoryTenantUsersRepository:
    def __init__(self, users: dict[str, dict[str, Any]]) -> None:
        self._users = users

    def _find(self, external_id: str) -> dict[str, Any] | None:
        for row in self._users.values():
            if row.get("external_id") == external_id:
                return row
        return None

    def upsert(self, *, tenant_id: str, user: dict[str, Any]) -> dict[str, Any]:
        existing = self._find(str(user["external_id"]))
        if existing is not None and existing.get("tenant_id") != tenant_id:
            return {}
        if existing is None:
            item = dict(user)
            item["tenant_id"] = tenant_id
        else:
            item = dict(existing)
            for key in PROFILE_FIELDS:
                if key in user:
                    item[key] = user[key]
            item["updated_at"] = user.get("updated_at", item.get("updated_at"))
        self._users[str(item["user_id"])] = item
        return dict(item)

    def get_by_external_id(self, *, tenant_id: str, external_id: str) -> dict[str, Any] | None:
        row = self._find(external_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def delete(self, *, tenant_id: str, external_id: str) -> bool:
        row = self._find(external_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return False
        del self._users[str(row["user_id"])]
        return True


class PostgresTenantUsersRepository:
    def __init__(self, *, conn: Any, table_name: str = "tenant_users") -> None:
        self._conn = conn
        self._table_name = validate_identifier(table_name)

    def upsert(self, *, tenant_id: str, user: dict[str, Any]) -> dict[str, Any]:
        item = dict(user)
        item["tenant_id"] = tenant_id
        sql = f"""
            INSERT INTO {self._table_name} (
                user_id, tenant_id, external_id, email, first_name, last_name, avatar_url,
                last_login_at, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT(external_id) DO UPDATE SET
                email = EXCLUDED.email,
                first_name = EXCLUDED.first_name,
                last_name = EXCLUDED.last_name,
                avatar_url = EXCLUDED.avatar_url,
                last_login_at = EXCLUDED.last_login_at,
                updated_at = EXCLUDED.updated_at
            WHERE {self._table_name}.tenant_id = EXCLUDED.tenant_id
            RETURNING *
        """
        with self._conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    item["user_id"],
                    tenant_id,
                    item["external_id"],
                    item.get("email", ""),
                    item.get("first_name"),
                    item.get("last_name"),
                    item.get("avatar_url"),
                    item.get("last_login_at"),
                    item["created_at"],
                    item["updated_at"],
                ),
            )
            return fetch_dict(cur) or {}

    def get_by_external_id(self, *, tenant_id: str, external_id: str) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND external_id = %s LIMIT 1"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, external_id))
            return fetch_dict(cur)

    def delete(self, *, tenant_id: str, external_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s AND external_id = %s"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, external_id))
            return cur.rowcount > 0
