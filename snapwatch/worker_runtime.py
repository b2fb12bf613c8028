from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields

from snapwatch.errors import ApiError
from snapwatch.lifecycle import CaptureLifecycle
from snapwatch.orchestrator import JobOrchestrator
from snapwatch.queue_backend import Job
from snapwatch.schemas import Lane

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    timed_out: int = 0
    schedules_fired: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: int(getattr(self, f.name)) for f in fields(self)}

    def add(self, other: Mapping[str, int]) -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + int(other.get(f.name, 0)))


class TenantPermits:
    """Counting permits per tenant; a tenant at its ceiling is skipped when claiming jobs."""

    def __init__(self, limit: int) -> None:
        self._limit = max(1, int(limit))
        self._held: dict[str, int] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def held(self, tenant_id: str) -> int:
        return self._held.get(tenant_id, 0)

    def try_acquire(self, tenant_id: str) -> bool:
        if self.held(tenant_id) >= self._limit:
            return False
        self._held[tenant_id] = self.held(tenant_id) + 1
        return True

    def release(self, tenant_id: str) -> None:
        remaining = self.held(tenant_id) - 1
        if remaining > 0:
            self._held[tenant_id] = remaining
        else:
            self._held.pop(tenant_id, None)

    def saturated(self) -> frozenset[str]:
        return frozenset(tenant for tenant, count in self._held.items() if count >= self._limit)


class WorkerRuntime:
    """Resident asyncio worker pool draining the capture, diff and notify lanes.

    Each claimed job runs in its own task; the blocking handler is pushed to
    a thread and bounded by a hard timeout. Terminal failures are routed back
    to the lifecycle so screenshot state and notifications follow.
    """

    def __init__(
        self,
        *,
        orchestrator: JobOrchestrator,
        lifecycle: CaptureLifecycle,
        concurrency: Mapping[str, int] | None = None,
        tenant_permits: int = 2,
        poll_interval_ms: int = 200,
        capture_timeout_s: float | None = None,
        job_timeout_s: float = 60.0,
    ) -> None:
        self.orchestrator = orchestrator
        self.lifecycle = lifecycle
        self.lanes = [lane.value for lane in Lane]
        configured = dict(concurrency or {})
        self.concurrency = {lane: max(1, int(configured.get(lane, 2))) for lane in self.lanes}
        self.permits = TenantPermits(tenant_permits)
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        capture_timeout = lifecycle.settings.capture_timeout_s if capture_timeout_s is None else capture_timeout_s
        self.timeouts = {
            Lane.CAPTURE.value: float(capture_timeout),
            Lane.DIFF.value: float(job_timeout_s),
            Lane.NOTIFY.value: float(job_timeout_s),
        }
        self._handlers = lifecycle.handlers()
        self._stopping = False

    def stop(self) -> None:
        self._stopping = True

    def _release_when_done(self, task: asyncio.Future, job: Job) -> None:
        def _done(finished: asyncio.Future) -> None:
            self.permits.release(job.tenant_id)
            if not finished.cancelled() and finished.exception() is not None:
                logger.info("abandoned_job_raised lane=%s job_id=%s error=%s", job.lane, job.job_id, finished.exception())

        task.add_done_callback(_done)

    async def _run_job(self, job: Job, stats: WorkerRunStats) -> None:
        handler = self._handlers[job.lane]
        timeout_s = self.timeouts[job.lane]
        task = asyncio.ensure_future(asyncio.to_thread(handler, job))
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=timeout_s)
        except TimeoutError:
            # the thread keeps running; its tenant permit is held until it returns
            self._release_when_done(task, job)
            stats.timed_out += 1
            reason = f"timed out after {timeout_s:g}s"
            retryable = True
        except ApiError as exc:
            self.permits.release(job.tenant_id)
            reason = f"{exc.code}: {exc.message}"
            retryable = exc.retryable
        except Exception as exc:
            self.permits.release(job.tenant_id)
            logger.exception("job_handler_crashed lane=%s job_id=%s", job.lane, job.job_id)
            reason = f"{type(exc).__name__}: {exc}"
            retryable = True
        else:
            self.permits.release(job.tenant_id)
            self.orchestrator.complete(job, result=result)
            stats.succeeded += 1
            return

        current, outcome = self.orchestrator.fail(job, reason=reason, retryable=retryable)
        if outcome == "stale":
            return
        if outcome == "retrying":
            stats.retrying += 1
            return
        stats.failed += 1
        try:
            await asyncio.to_thread(self.lifecycle.record_job_failure, current, reason)
        except Exception:
            # the queue job is already terminal here
            logger.exception("job_failure_bookkeeping_failed lane=%s job_id=%s", job.lane, job.job_id)

    def _claim(self, lane: str) -> Job | None:
        job = self.orchestrator.take(lane, exclude_tenants=self.permits.saturated())
        if job is not None and not self.permits.try_acquire(job.tenant_id):
            raise RuntimeError(f"claimed job for saturated tenant {job.tenant_id}")
        return job

    async def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        fired = await asyncio.to_thread(self.lifecycle.fire_due_schedules)
        stats.schedules_fired = len(fired)

        tasks: list[asyncio.Task[None]] = []
        for lane in self.lanes:
            for _ in range(self.concurrency[lane]):
                job = self._claim(lane)
                if job is None:
                    break
                stats.processed += 1
                tasks.append(asyncio.create_task(self._run_job(job, stats)))
        if tasks:
            await asyncio.gather(*tasks)
        return stats.as_dict()

    async def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        self._stopping = False
        while not self._stopping:
            current = await self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                await asyncio.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_worker_runtime_from_env(
    *,
    orchestrator: JobOrchestrator,
    lifecycle: CaptureLifecycle,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    concurrency = {
        Lane.CAPTURE.value: _env_int(env, "WORKER_CONCURRENCY_CAPTURE", default=2, minimum=1),
        Lane.DIFF.value: _env_int(env, "WORKER_CONCURRENCY_DIFF", default=2, minimum=1),
        Lane.NOTIFY.value: _env_int(env, "WORKER_CONCURRENCY_NOTIFY", default=4, minimum=1),
    }
    return WorkerRuntime(
        orchestrator=orchestrator,
        lifecycle=lifecycle,
        concurrency=concurrency,
        tenant_permits=_env_int(env, "WORKER_TENANT_PERMITS", default=2, minimum=1),
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
        job_timeout_s=float(_env_int(env, "JOB_TIMEOUT_S", default=60, minimum=1)),
    )
