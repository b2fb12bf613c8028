from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from snapwatch.errors import ApiError, NotFoundError, QuotaExceededError, TenantContextError, ValidationError
from snapwatch.queue_backend import Job, JobQueueBackend, Schedule, parse_iso
from snapwatch.schemas import CapturePayload, DiffPayload, Lane, NotifyPayload, is_valid_cron, next_fire_time

logger = logging.getLogger(__name__)

DEFAULT_REAP_GRACE_MS = 24 * 60 * 60 * 1000


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


class SubmitMode(str, Enum):
    ADHOC = "adhoc"
    DEDUPLICATING = "deduplicating"


@dataclass(frozen=True)
class OrchestratorSettings:
    max_attempts: int = 3
    backoff_base_ms: int = 5000
    sample_size: int = 10

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "OrchestratorSettings":
        env = os.environ if environ is None else environ
        max_attempts = _env_int(env, "JOB_MAX_ATTEMPTS", 3)
        backoff_base_ms = _env_int(env, "JOB_BACKOFF_BASE_MS", 5000)
        if max_attempts < 1:
            raise ValueError("JOB_MAX_ATTEMPTS must be >= 1")
        if backoff_base_ms < 0:
            raise ValueError("JOB_BACKOFF_BASE_MS must be >= 0")
        return cls(max_attempts=max_attempts, backoff_base_ms=backoff_base_ms)


@dataclass(frozen=True)
class SubmitResult:
    job: Job
    outcome: str

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def created(self) -> bool:
        return self.outcome == "created"

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job.job_id,
            "lane": self.job.lane,
            "state": self.job.state,
            "outcome": self.outcome,
        }


@dataclass(frozen=True)
class BulkItemResult:
    index: int
    screenshot_id: str | None
    ok: bool
    job_id: str | None = None
    outcome: str | None = None
    error: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "screenshot_id": self.screenshot_id,
            "ok": self.ok,
            "job_id": self.job_id,
            "outcome": self.outcome,
            "error": self.error,
        }


def _screenshot_id_of(payload: Any) -> str | None:
    if isinstance(payload, Mapping):
        raw = payload.get("screenshot_id") or payload.get("screenshotId")
    else:
        raw = getattr(payload, "screenshot_id", None)
    return str(raw) if raw else None


def normalize_lane(lane: Lane | str) -> str:
    try:
        return Lane(lane).value
    except ValueError as exc:
        raise ValidationError(f"unknown lane: {lane}", code="LANE_UNKNOWN") from exc


class JobOrchestrator:
    """Durable three-lane job queue with identity, retry and admin controls.

    Payloads are validated once here; anything that reaches the backend is
    well-formed. Job identity decides whether a submission creates a new job,
    refreshes a waiting one, or returns the job already in flight.
    """

    def __init__(self, backend: JobQueueBackend, *, settings: OrchestratorSettings | None = None) -> None:
        self._backend = backend
        self._settings = settings or OrchestratorSettings()

    @property
    def backend(self) -> JobQueueBackend:
        return self._backend

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    def now(self) -> datetime:
        return self._backend.now()

    # submission ---------------------------------------------------------

    @staticmethod
    def _validate(model: type[BaseModel], payload: BaseModel | Mapping[str, Any]) -> Any:
        if isinstance(payload, model):
            return payload
        data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"invalid {model.__name__} payload",
                details=exc.errors(include_url=False, include_context=False),
            ) from exc

    @staticmethod
    def _require_tenant(tenant_id: str) -> str:
        tenant = (tenant_id or "").strip()
        if not tenant:
            raise TenantContextError("tenant_id is required to submit jobs")
        return tenant

    def _timestamped_id(self, prefix: str, lane: str) -> str:
        ms = int(self.now().timestamp() * 1000)
        job_id = f"{prefix}-{ms}"
        while self._backend.get(lane, job_id) is not None:
            ms += 1
            job_id = f"{prefix}-{ms}"
        return job_id

    def _enqueue(self, tenant_id: str, lane: str, job_id: str, payload: BaseModel) -> SubmitResult:
        job = Job(
            job_id=job_id,
            lane=lane,
            tenant_id=tenant_id,
            payload=payload.model_dump(mode="json", by_alias=True, exclude_none=True),
            max_attempts=self._settings.max_attempts,
            backoff_base_ms=self._settings.backoff_base_ms,
        )
        stored, outcome = self._backend.add(job)
        logger.info("job_submitted lane=%s job_id=%s tenant_id=%s outcome=%s", lane, job_id, tenant_id, outcome)
        return SubmitResult(job=stored, outcome=outcome)

    def submit_capture(
        self,
        tenant_id: str,
        payload: CapturePayload | Mapping[str, Any],
        *,
        mode: SubmitMode = SubmitMode.DEDUPLICATING,
        force: bool = False,
    ) -> SubmitResult:
        tenant = self._require_tenant(tenant_id)
        model = self._validate(CapturePayload, payload)
        lane = Lane.CAPTURE.value
        prefix = f"capture-{model.screenshot_id}"
        if force or SubmitMode(mode) is SubmitMode.ADHOC:
            job_id = self._timestamped_id(prefix, lane)
        else:
            job_id = prefix
        return self._enqueue(tenant, lane, job_id, model)

    def submit_bulk_capture(
        self,
        tenant_id: str,
        payloads: Iterable[CapturePayload | Mapping[str, Any]],
    ) -> list[BulkItemResult]:
        """Enqueue each payload on its own; a bad item is reported, never fatal to the batch."""
        tenant = self._require_tenant(tenant_id)
        results: list[BulkItemResult] = []
        for index, payload in enumerate(payloads):
            raw_id = _screenshot_id_of(payload)
            try:
                submitted = self.submit_capture(tenant, payload, mode=SubmitMode.DEDUPLICATING)
            except ApiError as exc:
                logger.warning("bulk_capture_item_rejected index=%s code=%s", index, exc.code)
                results.append(
                    BulkItemResult(
                        index=index,
                        screenshot_id=raw_id,
                        ok=False,
                        error={"code": exc.code, "message": exc.message},
                    )
                )
                continue
            results.append(
                BulkItemResult(
                    index=index,
                    screenshot_id=raw_id,
                    ok=True,
                    job_id=submitted.job_id,
                    outcome=submitted.outcome,
                )
            )
        return results

    def submit_diff(self, tenant_id: str, payload: DiffPayload | Mapping[str, Any]) -> SubmitResult:
        tenant = self._require_tenant(tenant_id)
        model = self._validate(DiffPayload, payload)
        return self._enqueue(tenant, Lane.DIFF.value, f"diff-{model.screenshot_id}", model)

    def submit_notify(self, tenant_id: str, payload: NotifyPayload | Mapping[str, Any]) -> SubmitResult:
        tenant = self._require_tenant(tenant_id)
        model = self._validate(NotifyPayload, payload)
        lane = Lane.NOTIFY.value
        return self._enqueue(tenant, lane, self._timestamped_id(f"notify-{model.screenshot_id}", lane), model)

    # recurring schedules ------------------------------------------------

    def schedule_recurring(
        self,
        tenant_id: str,
        screenshot_id: str,
        cron_expression: str,
        payload: CapturePayload | Mapping[str, Any],
    ) -> Schedule:
        """Register (or replace) the single recurring capture of a screenshot."""
        tenant = self._require_tenant(tenant_id)
        if not is_valid_cron(cron_expression):
            raise ValidationError(f"invalid cron expression: {cron_expression}", code="CRON_INVALID")
        model = self._validate(CapturePayload, payload)
        if model.screenshot_id != screenshot_id:
            raise ValidationError("payload screenshotId does not match the scheduled screenshot")
        schedule = Schedule(
            screenshot_id=screenshot_id,
            tenant_id=tenant,
            cron=cron_expression,
            payload=model.model_dump(mode="json", by_alias=True, exclude_none=True),
            next_run_at=next_fire_time(cron_expression, self.now()).isoformat(),
        )
        stored = self._backend.put_schedule(schedule)
        logger.info(
            "schedule_registered screenshot_id=%s tenant_id=%s cron=%s next_run_at=%s",
            screenshot_id,
            tenant,
            cron_expression,
            stored.next_run_at,
        )
        return stored

    def unschedule(self, tenant_id: str, screenshot_id: str) -> bool:
        tenant = self._require_tenant(tenant_id)
        removed = self._backend.delete_schedule(screenshot_id, tenant_id=tenant)
        logger.info("schedule_removed screenshot_id=%s tenant_id=%s removed=%s", screenshot_id, tenant, removed)
        return removed

    def get_schedule(self, tenant_id: str, screenshot_id: str) -> Schedule | None:
        tenant = self._require_tenant(tenant_id)
        schedule = self._backend.get_schedule(screenshot_id)
        if schedule is None or schedule.tenant_id != tenant:
            return None
        return schedule

    def enqueue_due_schedules(
        self,
        now: datetime | None = None,
        *,
        fire: Callable[[Schedule], SubmitResult | None] | None = None,
    ) -> list[SubmitResult]:
        """Advance every registration whose next run is due, then fire it.

        Missed fires collapse into one. A registration removed or replaced
        while this runs is left as the other writer stored it and not fired.
        ``fire`` replaces the default action (a deduplicating capture
        submission) so callers can wrap admission.
        """
        current = now or self.now()
        fire = fire or (lambda item: self.submit_capture(item.tenant_id, item.payload))
        fired: list[SubmitResult] = []
        for schedule in self._backend.list_schedules():
            due = parse_iso(schedule.next_run_at)
            if due is None or due > current:
                continue
            advanced = self._backend.advance_schedule(
                schedule,
                next_run_at=next_fire_time(schedule.cron, current).isoformat(),
            )
            if advanced is None:
                logger.info("scheduled_capture_skipped screenshot_id=%s reason=schedule_changed", schedule.screenshot_id)
                continue
            schedule = advanced
            try:
                result = fire(schedule)
            except QuotaExceededError:
                logger.warning(
                    "scheduled_capture_skipped screenshot_id=%s tenant_id=%s reason=quota_exceeded",
                    schedule.screenshot_id,
                    schedule.tenant_id,
                )
                continue
            except (NotFoundError, ValidationError) as exc:
                logger.warning(
                    "scheduled_capture_skipped screenshot_id=%s tenant_id=%s reason=%s",
                    schedule.screenshot_id,
                    schedule.tenant_id,
                    exc.code,
                )
                continue
            if result is not None:
                fired.append(result)
        return fired

    # status and admin ---------------------------------------------------

    def get_lane_status(self, lane: Lane | str) -> dict[str, Any]:
        name = normalize_lane(lane)
        limit = self._settings.sample_size
        return {
            "lane": name,
            "paused": self._backend.is_paused(name),
            "counts": self._backend.counts(name),
            "sample": {
                state: [job.summary() for job in self._backend.list_state(name, state, limit=limit)]
                for state in ("waiting", "active", "failed")
            },
        }

    def get_job(self, tenant_id: str, lane: Lane | str, job_id: str) -> Job | None:
        tenant = self._require_tenant(tenant_id)
        job = self._backend.get(normalize_lane(lane), job_id)
        if job is None or job.tenant_id != tenant:
            return None
        return job

    def retry_failed(self, lane: Lane | str, *, limit: int = 10) -> list[str]:
        name = normalize_lane(lane)
        retried = self._backend.retry_failed(name, limit=limit)
        logger.info("failed_jobs_retried lane=%s count=%s", name, len(retried))
        return [job.job_id for job in retried]

    def cancel(self, tenant_id: str, lane: Lane | str, job_id: str) -> dict[str, Any]:
        """Remove a job that has not started; a running job is left to finish."""
        tenant = self._require_tenant(tenant_id)
        name = normalize_lane(lane)
        if self.get_job(tenant, name, job_id) is None:
            raise NotFoundError("job not found", code="JOB_NOT_FOUND")
        job = self._backend.remove_pending(name, job_id, tenant_id=tenant)
        if job is None:
            raise NotFoundError("job not found", code="JOB_NOT_FOUND")
        cancelled = job.state == "removed"
        logger.info("job_cancel lane=%s job_id=%s cancelled=%s state=%s", name, job_id, cancelled, job.state)
        return {"job_id": job_id, "lane": name, "cancelled": cancelled, "state": job.state}

    def pause(self, lane: Lane | str) -> None:
        name = normalize_lane(lane)
        self._backend.pause(name)
        logger.info("lane_paused lane=%s", name)

    def resume(self, lane: Lane | str) -> None:
        name = normalize_lane(lane)
        self._backend.resume(name)
        logger.info("lane_resumed lane=%s", name)

    def reap(self, lane: Lane | str, *, grace_ms: int = DEFAULT_REAP_GRACE_MS) -> int:
        name = normalize_lane(lane)
        removed = self._backend.clean(name, grace_ms=grace_ms)
        logger.info("finished_jobs_reaped lane=%s removed=%s", name, removed)
        return removed

    # worker-facing ------------------------------------------------------

    def take(self, lane: Lane | str, *, exclude_tenants: frozenset[str] | set[str] = frozenset()) -> Job | None:
        return self._backend.take(normalize_lane(lane), exclude_tenants=exclude_tenants)

    def complete(self, job: Job, *, result: dict[str, Any] | None = None) -> Job:
        done = self._backend.complete(job, result=result)
        logger.info("job_completed lane=%s job_id=%s attempts=%s", job.lane, job.job_id, done.attempts_made)
        return done

    def fail(self, job: Job, *, reason: str, retryable: bool) -> tuple[Job, str]:
        current, outcome = self._backend.fail(job, reason=reason, retryable=retryable)
        if outcome == "stale":
            logger.info("job_failure_ignored lane=%s job_id=%s state=%s", job.lane, job.job_id, current.state)
        elif outcome == "retrying":
            logger.warning(
                "job_retry_scheduled lane=%s job_id=%s attempt=%s available_at=%s reason=%s",
                job.lane,
                job.job_id,
                current.attempts_made,
                current.available_at,
                reason,
            )
        else:
            logger.error(
                "job_failed lane=%s job_id=%s attempts=%s reason=%s",
                job.lane,
                job.job_id,
                current.attempts_made,
                reason,
            )
        return current, outcome

    def is_current_attempt(self, job: Job) -> bool:
        """True while ``job`` is still the active attempt recorded by the backend."""
        current = self._backend.get(job.lane, job.job_id)
        return (
            current is not None
            and current.state == "active"
            and current.attempts_made == job.attempts_made
            and current.created_at == job.created_at
        )
