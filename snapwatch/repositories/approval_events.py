from __future__ import annotations

from typing import Any

from snapwatch.db.postgres import fetch_dicts, validate_identifier

class InMemoryApprovalEventsRepository:
    def __init__(self, events: dict[str, dict[str, Any]]) -> None:
        self._events = events

    def append(self, *, tenant_id: str, event: dict[str, Any]) -> dict[str, Any]:
        item = dict(event)
        item["tenant_id"] = tenant_id
        self._events[str(item["event_id"])] = item
        return dict(item)

    def list_for_screenshot(self, *, tenant_id: str, screenshot_id: str) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._events.values()
            if x.get("tenant_id") == tenant_id and x.get("screenshot_id") == screenshot_id
        ]
        rows.sort(key=lambda x: (str(x.get("occurred_at", "")), str(x.get("event_id", ""))))
        return rows

    def delete_for_screenshot(self, *, tenant_id: str, screenshot_id: str) -> int:
        doomed = [
            key
            for key, row in self._events.items()
            if row.get("tenant_id") == tenant_id and row.get("screenshot_id") == screenshot_id
        ]
        for key in doomed:
            del self._events[key]
        return len(doomed)


class PostgresApprovalEventsRepository:
    """Append-only audit of approval decisions."""

    def __init__(self, *, conn: Any, table_name: str = "approval_events") -> None:
        self._conn = conn
        self._table_name = validate_identifier(table_name)

    def append(self, *, tenant_id: str, event: dict[str, Any]) -> dict[str, Any]:
        item = dict(event)
        item["tenant_id"] = tenant_id
        sql = f"""
            INSERT INTO {self._table_name} (
                event_id, tenant_id, screenshot_id, diff_id, action, actor, reason, occurred_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """
        with self._conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    item["event_id"],
                    tenant_id,
                    item["screenshot_id"],
                    item.get("diff_id"),
                    item["action"],
                    item["actor"],
                    item.get("reason"),
                    item["occurred_at"],
                ),
            )
        return item

    def list_for_screenshot(self, *, tenant_id: str, screenshot_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE tenant_id = %s AND screenshot_id = %s
            ORDER BY occurred_at ASC, event_id ASC
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, screenshot_id))
            return fetch_dicts(cur)

    def delete_for_screenshot(self, *, tenant_id: str, screenshot_id: str) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s AND screenshot_id = %s"
        with self._conn.cursor() as cur:
            cur.execute(sql, (tenant_id, screenshot_id))
            return int(cur.rowcount or 0)
