from __future__ import annotations

from typing import Any

from snapwatch.db.postgres import fetch_dict, fetch_dicts, validate_identifier

class InMemoryDiffsRepository:
    def __init__(self, diffs: dict[str, dict[str, Any]]) -> None:
        self._diffs = diffs

    def append(self, *, tenant_id: str, diff: dict[str, Any]) -> dict[str, Any]:
        item = dict(diff)
        item["tenant_id"] = tenant_id
        self._diffs[str(item["diff_id"])] = item
        return dict(item)

    def list_for_screenshot(self, *, tenant_id: str, screenshot_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._diffs.values()
            if x.get("tenant_id") == tenant_id and x.get("screenshot_id") == screenshot_id
        ]
        rows.sort(key=lambda x: (str(x.get("created_at", "")), str(x.get("diff_id", ""))), reverse=True)
        return rows[: max(1, limit)]

    def latest_for_screenshot(self, *, tenant_id: str, screenshot_id: str) -> dict[str, Any] | None:
        rows = self.list_for_screenshot(tenant_id=tenant_id, screenshot_id=screenshot_id, limit=1)
        return rows[0] if rows else None

    def delete_for_screenshot(self, *, tenant_id: str, screenshot_id: str) -> int:
        doomed = [
            key
            for key, row in self._diffs.items()
            if row.get("tenant_id") == tenant_id and row.get("screenshot_id") == screenshot_id
        ]
        for key in doomed:
            del self._diffs[key]
        return len(doomed)


class PostgresDiffsRepository:
    def __init__(self, *, conn: Any, table_name: str = "diffs") -> None:
        self._conn = conn
        self._table_name = validate_identifier(table_name)

    def append(self, *, tenant_id: str, diff: dict[str, Any]) -> dict[str, Any]:
        item = dict(diff)
        item["tenant_id"] = tenant_id
        sql = f"""
            INSERT INTO {self._table_name} (
                diff_id, tenant_id, screenshot_id, previous_image_ref, current_image_ref,
                pixel_diff, percentage_diff, total_pixels, significant, threshold, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        with self._conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    item["diff_id"],
                    tenant_id,
                    item["screenshot_id"],
                    item["previous_image_ref"],
                    item["current_image_ref"],
                    int(item["pixel_diff"]),
                    float(item["percentage_diff"]),
                    int(item["total_pixels"]),
                    bool(item["significant"]),
                    float(item["threshold"]),
                    item["created_at"],
                ),
            )
        return item

    def list_for_screenshot(self, *, tenant_id: str, screenshot_id: str, limit: int = 50) -> list[dict[str, Any]]:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE tenant_id = %s AND screenshot_id = %s
            ORDER BY created_at DESC, diff_id DESC
            LIMIT %s
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, screenshot_id, max(1, limit)))
            return fetch_dicts(cur)

    def latest_for_screenshot(self, *, tenant_id: str, screenshot_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE tenant_id = %s AND screenshot_id = %s
            ORDER BY created_at DESC, diff_id DESC
            LIMIT 1
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, screenshot_id))
            return fetch_dict(cur)

    def delete_for_screenshot(self, *, tenant_id: str, screenshot_id: str) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s AND screenshot_id = %s"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, screenshot_id))
            return int(cur.rowcount or 0)
