from __future__ import annotations

import json
import os
import sqlite3
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

from snapwatch.errors import TenantContextError
from snapwatch.runtime_profile import true_stack_required

JOB_STATES: tuple[str, ...] = ("waiting", "active", "completed", "failed", "delayed")
PENDING_STATES = frozenset({"waiting", "delayed"})
FINISHED_STATES = frozenset({"completed", "failed"})

T = TypeVar("T")


def parse_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


@dataclass
class Job:
    job_id: str
    lane: str
    tenant_id: str
    payload: dict[str, Any]
    state: str = "waiting"
    seq: int = 0
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_base_ms: int = 5000
    available_at: str | None = None
    failed_reason: str | None = None
    result: dict[str, Any] | None = None
    created_at: str = ""
    updated_at: str = ""
    finished_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        return cls(**{key: data[key] for key in cls.__dataclass_fields__ if key in data})

    def backoff_ms(self) -> int:
        exponent = max(0, self.attempts_made - 1)
        return max(0, int(self.backoff_base_ms)) * (2**exponent)

    def summary(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "tenant_id": self.tenant_id,
            "state": self.state,
            "attempts_made": self.attempts_made,
            "failed_reason": self.failed_reason,
            "created_at": self.created_at,
        }


@dataclass
class Schedule:
    screenshot_id: str
    tenant_id: str
    cron: str
    payload: dict[str, Any]
    next_run_at: str
    created_at: str = ""
    updated_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Schedule":
        return cls(**{key: data[key] for key in cls.__dataclass_fields__ if key in data})


class JobQueueBackend:
    """Lane-oriented job store with BullMQ-like states.

    Subclasses provide storage primitives; state transitions live here so every
    backend shares the same semantics. Each operation runs as one unit through
    ``_atomic`` and may be re-run from the start when a backend detects a
    concurrent writer.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._lock = threading.RLock()
        self._clock = clock or (lambda: datetime.now(UTC))

    # storage primitives -------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def _atomic(self, fn: Callable[[], T]) -> T:
        with self._transaction():
            return fn()

    def _next_seq(self) -> int:
        raise NotImplementedError

    def _load(self, lane: str, job_id: str) -> Job | None:
        raise NotImplementedError

    def _store(self, job: Job) -> None:
        raise NotImplementedError

    def _remove(self, lane: str, job_id: str) -> None:
        raise NotImplementedError

    def _jobs(self, lane: str) -> list[Job]:
        raise NotImplementedError

    def _set_paused(self, lane: str, paused: bool) -> None:
        raise NotImplementedError

    def _get_paused(self, lane: str) -> bool:
        raise NotImplementedError

    def _store_schedule(self, schedule: Schedule) -> None:
        raise NotImplementedError

    def _load_schedule(self, screenshot_id: str) -> Schedule | None:
        raise NotImplementedError

    def _remove_schedule(self, screenshot_id: str) -> None:
        raise NotImplementedError

    def _schedules(self) -> list[Schedule]:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError

    # helpers ------------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def _now_iso(self) -> str:
        return self.now().isoformat()

    def _is_available(self, job: Job) -> bool:
        due = parse_iso(job.available_at)
        return due is None or due <= self.now()

    def _ordered(self, lane: str) -> list[Job]:
        return sorted(self._jobs(lane), key=lambda job: job.seq)

    # job operations -----------------------------------------------------

    def add(self, job: Job, *, replace_pending: bool = True) -> tuple[Job, str]:
        """Insert ``job`` honouring its identity.

        Returns the stored job and one of ``created``, ``replaced`` (payload of a
        waiting job swapped in place) or ``deduplicated`` (existing job kept).
        """

        def _add() -> tuple[Job, str]:
            existing = self._load(job.lane, job.job_id)
            now = self._now_iso()
            if existing is not None:
                if existing.tenant_id != job.tenant_id:
                    raise TenantContextError("tenant mismatch for queue job")
                if existing.state in PENDING_STATES:
                    if not replace_pending:
                        return existing, "deduplicated"
                    existing.payload = dict(job.payload)
                    existing.updated_at = now
                    self._store(existing)
                    return existing, "replaced"
                if existing.state == "active":
                    return existing, "deduplicated"
            fresh = Job.from_dict(job.as_dict())
            fresh.seq = self._next_seq()
            fresh.state = "delayed" if fresh.available_at and not self._is_available(fresh) else "waiting"
            fresh.available_at = fresh.available_at or now
            fresh.created_at = now
            fresh.updated_at = now
            fresh.finished_at = None
            self._store(fresh)
            return fresh, "created"

        return self._atomic(_add)

    def get(self, lane: str, job_id: str) -> Job | None:
        return self._atomic(lambda: self._load(lane, job_id))

    def take(self, lane: str, *, exclude_tenants: frozenset[str] | set[str] = frozenset()) -> Job | None:
        """Claim the oldest available job of ``lane`` and mark it active."""

        def _take() -> Job | None:
            if self._get_paused(lane):
                return None
            for job in self._ordered(lane):
                if job.state not in PENDING_STATES or job.tenant_id in exclude_tenants:
                    continue
                if not self._is_available(job):
                    continue
                job.state = "active"
                job.attempts_made += 1
                job.updated_at = self._now_iso()
                self._store(job)
                return job
            return None

        return self._atomic(_take)

    def complete(self, job: Job, *, result: dict[str, Any] | None = None) -> Job:
        def _complete() -> Job:
            current = self._load(job.lane, job.job_id)
            if current is None or current.state != "active" or current.attempts_made != job.attempts_made:
                return current or job
            now = self._now_iso()
            current.state = "completed"
            current.result = dict(result or {})
            current.failed_reason = None
            current.updated_at = now
            current.finished_at = now
            self._store(current)
            return current

        return self._atomic(_complete)

    def fail(self, job: Job, *, reason: str, retryable: bool) -> tuple[Job, str]:
        """Record a failed attempt; returns ``retrying``, ``failed`` or ``stale``.

        ``stale`` means the job moved on (cancelled, retried or claimed again)
        since ``job`` was taken and nothing was written.
        """

        def _fail() -> tuple[Job, str]:
            current = self._load(job.lane, job.job_id)
            if current is None:
                return job, "failed"
            if current.state != "active" or current.attempts_made != job.attempts_made:
                return current, "stale"
            now = self.now()
            current.failed_reason = reason
            current.updated_at = now.isoformat()
            if retryable and current.attempts_made < current.max_attempts:
                current.state = "delayed"
                current.seq = self._next_seq()
                current.available_at = (now + timedelta(milliseconds=current.backoff_ms())).isoformat()
                self._store(current)
                return current, "retrying"
            current.state = "failed"
            current.finished_at = now.isoformat()
            self._store(current)
            return current, "failed"

        return self._atomic(_fail)

    def remove_pending(self, lane: str, job_id: str, *, tenant_id: str) -> Job | None:
        """Drop a job that has not been picked up yet; active jobs are left alone."""

        def _remove_pending() -> Job | None:
            job = self._load(lane, job_id)
            if job is None:
                return None
            if job.tenant_id != tenant_id:
                raise TenantContextError("tenant mismatch for queue job")
            if job.state not in PENDING_STATES:
                return job
            self._remove(lane, job_id)
            job.state = "removed"
            return job

        return self._atomic(_remove_pending)

    def list_state(self, lane: str, state: str, *, limit: int | None = None) -> list[Job]:
        jobs = self._atomic(lambda: [job for job in self._ordered(lane) if job.state == state])
        return jobs if limit is None else jobs[: max(0, limit)]

    def counts(self, lane: str) -> dict[str, int]:
        def _counts() -> dict[str, int]:
            out = {state: 0 for state in JOB_STATES}
            for job in self._jobs(lane):
                if job.state in out:
                    out[job.state] += 1
            return out

        return self._atomic(_counts)

    def retry_failed(self, lane: str, *, limit: int) -> list[Job]:
        def _retry() -> list[Job]:
            failed = [job for job in self._ordered(lane) if job.state == "failed"][: max(0, limit)]
            now = self._now_iso()
            for job in failed:
                job.state = "waiting"
                job.attempts_made = 0
                job.seq = self._next_seq()
                job.available_at = now
                job.finished_at = None
                job.updated_at = now
                self._store(job)
            return failed

        return self._atomic(_retry)

    def clean(self, lane: str, *, grace_ms: int) -> int:
        """Remove finished jobs older than ``grace_ms``."""

        def _clean() -> int:
            cutoff = self.now() - timedelta(milliseconds=max(0, grace_ms))
            removed = 0
            for job in self._jobs(lane):
                if job.state not in FINISHED_STATES:
                    continue
                finished = parse_iso(job.finished_at)
                if finished is not None and finished <= cutoff:
                    self._remove(lane, job.job_id)
                    removed += 1
            return removed

        return self._atomic(_clean)

    def pause(self, lane: str) -> None:
        self._atomic(lambda: self._set_paused(lane, True))

    def resume(self, lane: str) -> None:
        self._atomic(lambda: self._set_paused(lane, False))

    def is_paused(self, lane: str) -> bool:
        return self._atomic(lambda: self._get_paused(lane))

    def tenants_with_pending(self, lane: str) -> list[str]:
        return self._atomic(
            lambda: sorted({job.tenant_id for job in self._jobs(lane) if job.state in PENDING_STATES})
        )

    # recurring schedules ------------------------------------------------

    def put_schedule(self, schedule: Schedule) -> Schedule:
        def _put() -> Schedule:
            existing = self._load_schedule(schedule.screenshot_id)
            if existing is not None and existing.tenant_id != schedule.tenant_id:
                raise TenantContextError("tenant mismatch for schedule")
            now = self._now_iso()
            stored = Schedule.from_dict(schedule.as_dict())
            stored.created_at = existing.created_at if existing is not None else now
            stored.updated_at = now
            self._store_schedule(stored)
            return stored

        return self._atomic(_put)

    def advance_schedule(self, seen: Schedule, *, next_run_at: str) -> Schedule | None:
        """Move ``seen`` to its next run unless it changed since it was read.

        Returns ``None`` when the registration was removed or replaced in the
        meantime; the caller must then not fire it.
        """

        def _advance() -> Schedule | None:
            current = self._load_schedule(seen.screenshot_id)
            if current is None or current.as_dict() != seen.as_dict():
                return None
            current.next_run_at = next_run_at
            self._store_schedule(current)
            return current

        return self._atomic(_advance)

    def get_schedule(self, screenshot_id: str) -> Schedule | None:
        return self._atomic(lambda: self._load_schedule(screenshot_id))

    def delete_schedule(self, screenshot_id: str, *, tenant_id: str) -> bool:
        def _delete() -> bool:
            existing = self._load_schedule(screenshot_id)
            if existing is None:
                return False
            if existing.tenant_id != tenant_id:
                raise TenantContextError("tenant mismatch for schedule")
            self._remove_schedule(screenshot_id)
            return True

        return self._atomic(_delete)

    def list_schedules(self) -> list[Schedule]:
        return self._atomic(lambda: sorted(self._schedules(), key=lambda item: item.screenshot_id))


class InMemoryQueueBackend(JobQueueBackend):
    """Process-local backend for tests and single-process development."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(clock=clock)
        self._lanes: dict[str, dict[str, dict[str, Any]]] = {}
        self._paused: set[str] = set()
        self._schedule_rows: dict[str, dict[str, Any]] = {}
        self._seq = 0

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _load(self, lane: str, job_id: str) -> Job | None:
        row = self._lanes.get(lane, {}).get(job_id)
        return Job.from_dict(row) if row is not None else None

    def _store(self, job: Job) -> None:
        self._lanes.setdefault(job.lane, {})[job.job_id] = json.loads(json.dumps(job.as_dict()))

    def _remove(self, lane: str, job_id: str) -> None:
        self._lanes.get(lane, {}).pop(job_id, None)

    def _jobs(self, lane: str) -> list[Job]:
        return [Job.from_dict(row) for row in self._lanes.get(lane, {}).values()]

    def _set_paused(self, lane: str, paused: bool) -> None:
        if paused:
            self._paused.add(lane)
        else:
            self._paused.discard(lane)

    def _get_paused(self, lane: str) -> bool:
        return lane in self._paused

    def _store_schedule(self, schedule: Schedule) -> None:
        self._schedule_rows[schedule.screenshot_id] = json.loads(json.dumps(schedule.as_dict()))

    def _load_schedule(self, screenshot_id: str) -> Schedule | None:
        row = self._schedule_rows.get(screenshot_id)
        return Schedule.from_dict(row) if row is not None else None

    def _remove_schedule(self, screenshot_id: str) -> None:
        self._schedule_rows.pop(screenshot_id, None)

    def _schedules(self) -> list[Schedule]:
        return [Schedule.from_dict(row) for row in self._schedule_rows.values()]

    def reset(self) -> None:
        with self._lock:
            self._lanes.clear()
            self._paused.clear()
            self._schedule_rows.clear()
            self._seq = 0


class SqliteQueueBackend(JobQueueBackend):
    """SQLite-backed queue used for local persistence and replay tests."""

    def __init__(self, db_path: str | Path, *, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(clock=clock)
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_jobs (
                    lane TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (lane, job_id)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_jobs_lookup
                ON queue_jobs(lane, state, seq)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_schedules (
                    screenshot_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_lanes (
                    lane TEXT PRIMARY KEY,
                    paused INTEGER NOT NULL DEFAULT 0
                )
                """
            )
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            depth = getattr(self._local, "depth", 0)
            if depth > 0:
                self._local.depth = depth + 1
                try:
                    yield
                finally:
                    self._local.depth -= 1
                return
            conn = self._connect()
            conn.execute("BEGIN IMMEDIATE")
            self._local.conn = conn
            self._local.depth = 1
            try:
                yield
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._local.depth = 0
                self._local.conn = None
                conn.close()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            raise RuntimeError("sqlite queue access outside transaction")
        return conn

    def _next_seq(self) -> int:
        row = self._conn().execute("SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM queue_jobs").fetchone()
        return int(row["next_seq"])

    def _load(self, lane: str, job_id: str) -> Job | None:
        row = self._conn().execute(
            "SELECT data FROM queue_jobs WHERE lane = ? AND job_id = ?",
            (lane, job_id),
        ).fetchone()
        return Job.from_dict(json.loads(row["data"])) if row is not None else None

    def _store(self, job: Job) -> None:
        self._conn().execute(
            """
            INSERT INTO queue_jobs(lane, job_id, tenant_id, state, seq, data)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(lane, job_id) DO UPDATE SET
                tenant_id = excluded.tenant_id,
                state = excluded.state,
                seq = excluded.seq,
                data = excluded.data
            """,
            (
                job.lane,
                job.job_id,
                job.tenant_id,
                job.state,
                job.seq,
                json.dumps(job.as_dict(), ensure_ascii=True, sort_keys=True),
            ),
        )

    def _remove(self, lane: str, job_id: str) -> None:
        self._conn().execute("DELETE FROM queue_jobs WHERE lane = ? AND job_id = ?", (lane, job_id))

    def _jobs(self, lane: str) -> list[Job]:
        rows = self._conn().execute(
            "SELECT data FROM queue_jobs WHERE lane = ? ORDER BY seq ASC",
            (lane,),
        ).fetchall()
        return [Job.from_dict(json.loads(row["data"])) for row in rows]

    def _set_paused(self, lane: str, paused: bool) -> None:
        self._conn().execute(
            """
            INSERT INTO queue_lanes(lane, paused) VALUES (?, ?)
            ON CONFLICT(lane) DO UPDATE SET paused = excluded.paused
            """,
            (lane, 1 if paused else 0),
        )

    def _get_paused(self, lane: str) -> bool:
        row = self._conn().execute("SELECT paused FROM queue_lanes WHERE lane = ?", (lane,)).fetchone()
        return bool(row["paused"]) if row is not None else False

    def _store_schedule(self, schedule: Schedule) -> None:
        self._conn().execute(
            """
            INSERT INTO queue_schedules(screenshot_id, tenant_id, data) VALUES (?, ?, ?)
            ON CONFLICT(screenshot_id) DO UPDATE SET
                tenant_id = excluded.tenant_id,
                data = excluded.data
            """,
            (
                schedule.screenshot_id,
                schedule.tenant_id,
                json.dumps(schedule.as_dict(), ensure_ascii=True, sort_keys=True),
            ),
        )

    def _load_schedule(self, screenshot_id: str) -> Schedule | None:
        row = self._conn().execute(
            "SELECT data FROM queue_schedules WHERE screenshot_id = ?",
            (screenshot_id,),
        ).fetchone()
        return Schedule.from_dict(json.loads(row["data"])) if row is not None else None

    def _remove_schedule(self, screenshot_id: str) -> None:
        self._conn().execute("DELETE FROM queue_schedules WHERE screenshot_id = ?", (screenshot_id,))

    def _schedules(self) -> list[Schedule]:
        rows = self._conn().execute("SELECT data FROM queue_schedules").fetchall()
        return [Schedule.from_dict(json.loads(row["data"])) for row in rows]

    def reset(self) -> None:
        with self._transaction():
            conn = self._conn()
            conn.execute("DELETE FROM queue_jobs")
            conn.execute("DELETE FROM queue_schedules")
            conn.execute("DELETE FROM queue_lanes")


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for SNAPWATCH_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend(JobQueueBackend):
    """Redis-backed queue for production-like message semantics.

    Every operation is an optimistic transaction: it WATCHes a version key,
    reads, buffers its writes and replays them in MULTI/EXEC together with a
    version bump. A concurrent writer aborts the EXEC and the operation is
    re-run against fresh state.
    """

    MAX_TRANSACTION_ATTEMPTS = 16

    def __init__(
        self,
        *,
        dsn: str,
        namespace: str = "snapwatch",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        super().__init__(clock=clock)
        self._dsn = dsn.strip()
        self._namespace = namespace.strip() or "snapwatch"
        self._redis = _import_redis()
        self._client = self._redis.Redis.from_url(self._dsn, decode_responses=True)
        self._writes: list[tuple[str, tuple[Any, ...]]] | None = None

    def _atomic(self, fn: Callable[[], T]) -> T:
        with self._lock:
            if self._writes is not None:
                return fn()
            version_key = self._version_key()
            for _ in range(self.MAX_TRANSACTION_ATTEMPTS):
                with self._client.pipeline() as pipe:
                    pipe.watch(version_key)
                    self._writes = []
                    try:
                        result = fn()
                        writes = self._writes
                    finally:
                        self._writes = None
                    if not writes:
                        return result
                    pipe.multi()
                    for command, args in writes:
                        getattr(pipe, command)(*args)
                    pipe.incr(version_key)
                    try:
                        pipe.execute()
                    except self._redis.WatchError:
                        continue
                    return result
            raise RuntimeError(f"redis queue transaction conflicted {self.MAX_TRANSACTION_ATTEMPTS} times")

    def _write(self, command: str, *args: Any) -> None:
        if self._writes is None:
            getattr(self._client, command)(*args)
        else:
            self._writes.append((command, args))

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _version_key(self) -> str:
        return f"{self._namespace}:queue:version"

    def _jobs_key(self, lane: str) -> str:
        return f"{self._namespace}:queue:{lane}:jobs"

    def _paused_key(self, lane: str) -> str:
        return f"{self._namespace}:queue:{lane}:paused"

    def _schedules_key(self) -> str:
        return f"{self._namespace}:queue:schedules"

    def _seq_key(self) -> str:
        return f"{self._namespace}:queue:seq"

    def _track_keys(self, *keys: str) -> None:
        for key in keys:
            self._write("sadd", self._registry_key(), key)

    @staticmethod
    def _decode(raw: Any) -> dict[str, Any] | None:
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _next_seq(self) -> int:
        self._track_keys(self._seq_key())
        return int(self._client.incr(self._seq_key()))

    def _load(self, lane: str, job_id: str) -> Job | None:
        data = self._decode(self._client.hget(self._jobs_key(lane), job_id))
        return Job.from_dict(data) if data is not None else None

    def _store(self, job: Job) -> None:
        key = self._jobs_key(job.lane)
        self._write(
            "hset",
            key,
            job.job_id,
            json.dumps(job.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )
        self._track_keys(key)

    def _remove(self, lane: str, job_id: str) -> None:
        self._write("hdel", self._jobs_key(lane), job_id)

    def _jobs(self, lane: str) -> list[Job]:
        out: list[Job] = []
        for raw in (self._client.hgetall(self._jobs_key(lane)) or {}).values():
            data = self._decode(raw)
            if data is not None:
                out.append(Job.from_dict(data))
        return out

    def _set_paused(self, lane: str, paused: bool) -> None:
        key = self._paused_key(lane)
        if paused:
            self._write("set", key, "1")
            self._track_keys(key)
        else:
            self._write("delete", key)

    def _get_paused(self, lane: str) -> bool:
        return self._client.get(self._paused_key(lane)) == "1"

    def _store_schedule(self, schedule: Schedule) -> None:
        key = self._schedules_key()
        self._write(
            "hset",
            key,
            schedule.screenshot_id,
            json.dumps(schedule.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )
        self._track_keys(key)

    def _load_schedule(self, screenshot_id: str) -> Schedule | None:
        data = self._decode(self._client.hget(self._schedules_key(), screenshot_id))
        return Schedule.from_dict(data) if data is not None else None

    def _remove_schedule(self, screenshot_id: str) -> None:
        self._write("hdel", self._schedules_key(), screenshot_id)

    def _schedules(self) -> list[Schedule]:
        out: list[Schedule] = []
        for raw in (self._client.hgetall(self._schedules_key()) or {}).values():
            data = self._decode(raw)
            if data is not None:
                out.append(Schedule.from_dict(data))
        return out

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = self._client.smembers(registry)
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(registry, self._version_key())


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("SNAPWATCH_QUEUE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "redis":
        raise RuntimeError("SNAPWATCH_QUEUE_BACKEND must be redis when SNAPWATCH_REQUIRE_TRUESTACK=true")
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "sqlite":
        db_path = env.get("SNAPWATCH_QUEUE_SQLITE_PATH", ".runtime/snapwatch_queue.sqlite3")
        return SqliteQueueBackend(db_path)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when SNAPWATCH_QUEUE_BACKEND=redis")
        namespace = env.get("SNAPWATCH_QUEUE_KEY_PREFIX", "snapwatch")
        return RedisQueueBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported queue backend: {backend}")
