from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from snapwatch.errors import TenantContextError
from snapwatch.queue_backend import (
    InMemoryQueueBackend,
    Job,
    RedisQueueBackend,
    Schedule,
    SqliteQueueBackend,
    create_queue_from_env,
)


class _Clock:
    def __init__(self) -> None:
        self.current = datetime(2026, 3, 15, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current


class FakeWatchError(Exception):
    pass


class FakePipeline:
    """WATCH/MULTI/EXEC over ``FakeRedisClient``: commands queue after ``multi``."""

    def __init__(self, client: "FakeRedisClient") -> None:
        self._client = client
        self._watched: dict[str, int] = {}
        self._queued: list[tuple[str, tuple]] | None = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.reset()

    def watch(self, *keys):
        for key in keys:
            self._watched[key] = self._client.versions.get(key, 0)

    def multi(self):
        self._queued = []

    def execute(self):
        hook, self._client.before_execute = self._client.before_execute, None
        if hook is not None:
            hook()
        try:
            for key, seen in self._watched.items():
                if self._client.versions.get(key, 0) != seen:
                    raise FakeWatchError(key)
            return [getattr(self._client, name)(*args) for name, args in self._queued or []]
        finally:
            self.reset()

    def reset(self):
        self._watched = {}
        self._queued = None

    def __getattr__(self, name):
        def _queue(*args):
            self._queued.append((name, args))

        return _queue


class FakeRedisClient:
    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.versions: dict[str, int] = {}
        self.before_execute = None

    def _touch(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    def pipeline(self):
        return FakePipeline(self)

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hset(self, key, field, value):
        self._touch(key)
        self.hashes.setdefault(key, {})[field] = value
        return 1

    def hdel(self, key, field):
        self._touch(key)
        return 1 if self.hashes.get(key, {}).pop(field, None) is not None else 0

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def incr(self, key):
        self._touch(key)
        value = int(self.values.get(key, "0")) + 1
        self.values[key] = str(value)
        return value

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value):
        self._touch(key)
        self.values[key] = value

    def delete(self, *keys):
        for key in keys:
            self._touch(key)
            self.hashes.pop(key, None)
            self.values.pop(key, None)
            self.sets.pop(key, None)

    def sadd(self, key, member):
        self._touch(key)
        self.sets.setdefault(key, set()).add(member)

    def smembers(self, key):
        return set(self.sets.get(key, set()))


class FakeRedisModule:
    WatchError = FakeWatchError

    def __init__(self) -> None:
        self.client = FakeRedisClient()
        self.urls: list[str] = []
        module = self

        class Redis:
            @staticmethod
            def from_url(url, decode_responses=False):
                module.urls.append(url)
                return module.client

        self.Redis = Redis


def _job(job_id: str, *, tenant_id: str = "tenant_a", lane: str = "capture") -> Job:
    return Job(job_id=job_id, lane=lane, tenant_id=tenant_id, payload={"screenshotId": job_id})


@pytest.fixture(params=["memory", "sqlite", "redis"])
def backend(request, tmp_path: Path, monkeypatch):
    clock = _Clock()
    if request.param == "memory":
        q = InMemoryQueueBackend(clock=clock)
    elif request.param == "sqlite":
        q = SqliteQueueBackend(tmp_path / "queue.sqlite3", clock=clock)
    else:
        fake = FakeRedisModule()
        monkeypatch.setattr("snapwatch.queue_backend._import_redis", lambda: fake)
        q = RedisQueueBackend(dsn="redis://localhost:6379/0", namespace="test", clock=clock)
    q.clock = clock
    return q


def test_add_creates_then_replaces_pending_payload(backend):
    first, outcome = backend.add(_job("capture-s1"))
    assert outcome == "created"
    assert first.state == "waiting"

    newer = _job("capture-s1")
    newer.payload = {"screenshotId": "capture-s1", "url": "https://example.com/v2"}
    stored, outcome = backend.add(newer)
    assert outcome == "replaced"
    assert stored.payload["url"] == "https://example.com/v2"
    assert backend.counts("capture")["waiting"] == 1


def test_add_deduplicates_active_job(backend):
    backend.add(_job("capture-s1"))
    taken = backend.take("capture")
    assert taken is not None and taken.state == "active"

    stored, outcome = backend.add(_job("capture-s1"))
    assert outcome == "deduplicated"
    assert stored.state == "active"
    assert backend.counts("capture")["active"] == 1


def test_add_after_completion_creates_fresh_job(backend):
    backend.add(_job("diff-s1", lane="diff"))
    job = backend.take("diff")
    backend.complete(job, result={"ok": True})

    stored, outcome = backend.add(_job("diff-s1", lane="diff"))
    assert outcome == "created"
    assert stored.attempts_made == 0
    assert stored.state == "waiting"


def test_add_rejects_job_id_owned_by_other_tenant(backend):
    backend.add(_job("capture-s1", tenant_id="tenant_a"))
    with pytest.raises(TenantContextError):
        backend.add(_job("capture-s1", tenant_id="tenant_b"))


def test_take_is_fifo_and_honours_tenant_exclusion(backend):
    backend.add(_job("capture-a1", tenant_id="tenant_a"))
    backend.add(_job("capture-b1", tenant_id="tenant_b"))

    taken = backend.take("capture", exclude_tenants={"tenant_a"})
    assert taken is not None
    assert taken.job_id == "capture-b1"
    assert taken.attempts_made == 1
    assert backend.tenants_with_pending("capture") == ["tenant_a"]


def test_fail_backs_off_exponentially_then_fails_terminally(backend):
    job = _job("capture-s1")
    job.backoff_base_ms = 1000
    backend.add(job)

    first = backend.take("capture")
    current, outcome = backend.fail(first, reason="boom", retryable=True)
    assert outcome == "retrying"
    assert current.state == "delayed"
    assert current.available_at == (backend.clock.current + timedelta(seconds=1)).isoformat()
    assert backend.take("capture") is None

    backend.clock.current += timedelta(seconds=1)
    second = backend.take("capture")
    current, outcome = backend.fail(second, reason="boom", retryable=True)
    assert outcome == "retrying"
    assert current.available_at == (backend.clock.current + timedelta(seconds=2)).isoformat()

    backend.clock.current += timedelta(seconds=2)
    third = backend.take("capture")
    current, outcome = backend.fail(third, reason="boom", retryable=True)
    assert outcome == "failed"
    assert current.attempts_made == 3
    assert current.failed_reason == "boom"


def test_non_retryable_failure_is_terminal_on_first_attempt(backend):
    backend.add(_job("capture-s1"))
    job = backend.take("capture")
    current, outcome = backend.fail(job, reason="bad page", retryable=False)
    assert outcome == "failed"
    assert current.attempts_made == 1


def test_pause_blocks_take_until_resume(backend):
    backend.add(_job("notify-s1-1", lane="notify"))
    backend.pause("notify")
    assert backend.is_paused("notify") is True
    assert backend.take("notify") is None

    backend.resume("notify")
    assert backend.take("notify") is not None


def test_retry_failed_and_clean(backend):
    backend.add(_job("capture-s1"))
    job = backend.take("capture")
    backend.fail(job, reason="bad", retryable=False)

    retried = backend.retry_failed("capture", limit=10)
    assert [x.job_id for x in retried] == ["capture-s1"]
    again = backend.take("capture")
    assert again.attempts_made == 1
    backend.complete(again)

    assert backend.clean("capture", grace_ms=60_000) == 0
    backend.clock.current += timedelta(minutes=2)
    assert backend.clean("capture", grace_ms=60_000) == 1
    assert backend.get("capture", "capture-s1") is None


def test_remove_pending_leaves_active_jobs(backend):
    backend.add(_job("capture-s1"))
    backend.add(_job("capture-s2"))
    backend.take("capture")

    removed = backend.remove_pending("capture", "capture-s2", tenant_id="tenant_a")
    assert removed.state == "removed"
    kept = backend.remove_pending("capture", "capture-s1", tenant_id="tenant_a")
    assert kept.state == "active"
    with pytest.raises(TenantContextError):
        backend.remove_pending("capture", "capture-s1", tenant_id="tenant_b")


def test_schedules_replace_by_screenshot(backend):
    first = Schedule(
        screenshot_id="s1",
        tenant_id="tenant_a",
        cron="0 * * * *",
        payload={"screenshotId": "s1"},
        next_run_at="2026-03-15T11:00:00+00:00",
    )
    backend.put_schedule(first)
    second = Schedule(
        screenshot_id="s1",
        tenant_id="tenant_a",
        cron="*/5 * * * *",
        payload={"screenshotId": "s1"},
        next_run_at="2026-03-15T10:05:00+00:00",
    )
    backend.put_schedule(second)

    schedules = backend.list_schedules()
    assert len(schedules) == 1
    assert schedules[0].cron == "*/5 * * * *"
    with pytest.raises(TenantContextError):
        backend.delete_schedule("s1", tenant_id="tenant_b")
    assert backend.delete_schedule("s1", tenant_id="tenant_a") is True
    assert backend.get_schedule("s1") is None


def test_sqlite_queue_persists_jobs_between_instances(tmp_path: Path):
    env = {
        "SNAPWATCH_QUEUE_BACKEND": "sqlite",
        "SNAPWATCH_QUEUE_SQLITE_PATH": str(tmp_path / "queue.sqlite3"),
    }
    queue1 = create_queue_from_env(env)
    queue1.add(_job("capture-s1"))
    queue1.add(_job("capture-s2"))
    queue1.pause("capture")

    queue2 = create_queue_from_env(env)
    assert isinstance(queue2, SqliteQueueBackend)
    assert queue2.is_paused("capture") is True
    queue2.resume("capture")
    first = queue2.take("capture")
    second = queue2.take("capture")
    assert first.job_id == "capture-s1"
    assert second.job_id == "capture-s2"


def test_queue_factory_defaults_to_memory():
    q = create_queue_from_env({})
    assert isinstance(q, InMemoryQueueBackend)


def test_queue_factory_rejects_unsupported_backend():
    with pytest.raises(RuntimeError, match="unsupported queue backend"):
        create_queue_from_env({"SNAPWATCH_QUEUE_BACKEND": "rabbitmq"})


def test_queue_factory_requires_redis_dsn():
    with pytest.raises(ValueError, match="REDIS_DSN"):
        create_queue_from_env({"SNAPWATCH_QUEUE_BACKEND": "redis"})


def test_queue_factory_refuses_memory_when_true_stack_required():
    with pytest.raises(RuntimeError, match="must be redis"):
        create_queue_from_env({"SNAPWATCH_QUEUE_BACKEND": "memory", "SNAPWATCH_REQUIRE_TRUESTACK": "true"})


def test_redis_queue_uses_namespaced_keys_and_reset(monkeypatch):
    fake = FakeRedisModule()
    monkeypatch.setattr("snapwatch.queue_backend._import_redis", lambda: fake)
    q = create_queue_from_env(
        {
            "SNAPWATCH_QUEUE_BACKEND": "redis",
            "REDIS_DSN": "redis://localhost:6379/2",
            "SNAPWATCH_QUEUE_KEY_PREFIX": "sw_test",
        }
    )
    assert isinstance(q, RedisQueueBackend)
    assert fake.urls == ["redis://localhost:6379/2"]

    q.add(_job("capture-s1"))
    assert "sw_test:queue:capture:jobs" in fake.client.hashes
    q.reset()
    assert q.get("capture", "capture-s1") is None
    assert fake.client.hashes == {}


def test_stale_attempt_cannot_complete_or_fail(backend):
    backend.add(_job("capture-s1"))
    first = backend.take("capture")
    backend.fail(first, reason="timed out", retryable=True)
    backend.clock.current += timedelta(minutes=5)
    second = backend.take("capture")
    assert second.attempts_made == 2

    assert backend.complete(first, result={"late": True}).state == "active"
    current, outcome = backend.fail(first, reason="late crash", retryable=False)
    assert outcome == "stale"
    assert current.attempts_made == 2
    assert backend.get("capture", "capture-s1").state == "active"


def test_advance_schedule_refuses_changed_registration(backend):
    seen = backend.put_schedule(
        Schedule(
            screenshot_id="s1",
            tenant_id="tenant_a",
            cron="0 * * * *",
            payload={"screenshotId": "s1"},
            next_run_at="2026-03-15T10:00:00+00:00",
        )
    )
    advanced = backend.advance_schedule(seen, next_run_at="2026-03-15T11:00:00+00:00")
    assert advanced is not None
    assert backend.get_schedule("s1").next_run_at == "2026-03-15T11:00:00+00:00"

    assert backend.advance_schedule(seen, next_run_at="2026-03-15T12:00:00+00:00") is None
    backend.delete_schedule("s1", tenant_id="tenant_a")
    assert backend.advance_schedule(advanced, next_run_at="2026-03-15T12:00:00+00:00") is None
    assert backend.get_schedule("s1") is None


def _shared_redis(monkeypatch) -> tuple[FakeRedisModule, RedisQueueBackend, RedisQueueBackend]:
    fake = FakeRedisModule()
    monkeypatch.setattr("snapwatch.queue_backend._import_redis", lambda: fake)
    api = RedisQueueBackend(dsn="redis://localhost:6379/0", namespace="shared")
    worker = RedisQueueBackend(dsn="redis://localhost:6379/0", namespace="shared")
    return fake, api, worker


def test_redis_two_workers_cannot_claim_the_same_job(monkeypatch):
    fake, first_worker, second_worker = _shared_redis(monkeypatch)
    first_worker.add(_job("capture-s1"))
    rival_claims: list[Job | None] = []
    fake.client.before_execute = lambda: rival_claims.append(second_worker.take("capture"))

    claimed = first_worker.take("capture")

    assert claimed is None
    assert rival_claims[0] is not None and rival_claims[0].attempts_made == 1
    stored = first_worker.get("capture", "capture-s1")
    assert stored.state == "active"
    assert stored.attempts_made == 1


def test_redis_replace_racing_a_claim_deduplicates(monkeypatch):
    fake, api, worker = _shared_redis(monkeypatch)
    api.add(_job("capture-s1"))
    taken: list[Job | None] = []
    fake.client.before_execute = lambda: taken.append(worker.take("capture"))

    newer = _job("capture-s1")
    newer.payload = {"screenshotId": "capture-s1", "url": "https://example.com/v2"}
    stored, outcome = api.add(newer)

    assert taken[0] is not None
    assert outcome == "deduplicated"
    assert stored.state == "active"
    current = worker.get("capture", "capture-s1")
    assert current.attempts_made == 1
    assert "url" not in current.payload


def test_redis_transaction_gives_up_after_repeated_conflicts(monkeypatch):
    fake, api, worker = _shared_redis(monkeypatch)
    api.MAX_TRANSACTION_ATTEMPTS = 2

    def rival_write():
        fake.client.incr("shared:queue:version")
        fake.client.before_execute = rival_write

    fake.client.before_execute = rival_write
    with pytest.raises(RuntimeError, match="conflicted 2 times"):
        api.pause("capture")
    assert worker.is_paused("capture") is False
