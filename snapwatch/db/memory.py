from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

TABLES: tuple[str, ...] = (
    "tenant_users",
    "tenant_usage",
    "projects",
    "screenshots",
    "diffs",
    "approval_events",
)

_MISSING = object()


class JournaledTable(dict):
    """Row map that records the prior value of every key written inside a transaction.

    Rows are replaced, never mutated in place, so the prior value is the
    whole undo record for that key.
    """

    def __init__(self, database: "InMemoryDatabase") -> None:
        super().__init__()
        self._database = database

    def _record(self, key: Any) -> None:
        undo = self._database._undo
        if undo is not None:
            undo.append((self, key, dict.get(self, key, _MISSING)))

    def __setitem__(self, key: Any, value: Any) -> None:
        self._record(key)
        super().__setitem__(key, value)

    def __delitem__(self, key: Any) -> None:
        self._record(key)
        super().__delitem__(key)

    def pop(self, key: Any, *default: Any) -> Any:
        if key in self:
            self._record(key)
        return super().pop(key, *default)

    def setdefault(self, key: Any, default: Any = None) -> Any:
        if key not in self:
            self[key] = default
        return super().__getitem__(key)

    def _restore(self, key: Any, previous: Any) -> None:
        if previous is _MISSING:
            dict.pop(self, key, None)
        else:
            dict.__setitem__(self, key, previous)


class InMemoryDatabase:
    """Dict-backed tables shared by every tenant; isolation is enforced by the repositories."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._undo: list[tuple[JournaledTable, Any, Any]] | None = None
        self.tables: dict[str, JournaledTable] = {name: JournaledTable(self) for name in TABLES}

    @property
    def pending_undo(self) -> int:
        return len(self._undo or ())

    @contextmanager
    def transaction(self) -> Iterator[dict[str, JournaledTable]]:
        """Serialize writers and undo this block's writes if it raises."""
        with self._lock:
            outermost = self._undo is None
            if outermost:
                self._undo = []
            mark = len(self._undo)
            try:
                yield self.tables
            except BaseException:
                while len(self._undo) > mark:
                    table, key, previous = self._undo.pop()
                    table._restore(key, previous)
                raise
            finally:
                if outermost:
                    self._undo = None

    def reset(self) -> None:
        with self._lock:
            for rows in self.tables.values():
                dict.clear(rows)
