from __future__ import annotations

import dataclasses
import logging
import os
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from snapwatch.blob_store import BlobStore
from snapwatch.collaborators import BrowserEngine, DiffService
from snapwatch.errors import (
    NotFoundError,
    PermanentCaptureError,
    QuotaExceededError,
    TransientCaptureError,
    ValidationError,
)
from snapwatch.notifications import NotificationSink, deliver_all
from snapwatch.orchestrator import BulkItemResult, JobOrchestrator, SubmitMode, SubmitResult
from snapwatch.queue_backend import Job, Schedule
from snapwatch.runtime_profile import as_bool
from snapwatch.schemas import (
    CapturePayload,
    DiffPayload,
    Lane,
    NotifyPayload,
    NotifyType,
    ProjectCreateRequest,
    ProjectUpdateRequest,
    ScreenshotCreateRequest,
    decode_payload,
)
from snapwatch.significance import DEFAULT_DIFF_THRESHOLD, evaluate
from snapwatch.tenancy import TenantContext, TenantSession

logger = logging.getLogger(__name__)

APPROVAL_ACTIONS = frozenset({"approved", "rejected", "pending"})


@dataclass(frozen=True)
class LifecycleSettings:
    capture_timeout_s: float = 30.0
    default_threshold: float = DEFAULT_DIFF_THRESHOLD
    notify_on_capture: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "LifecycleSettings":
        env = os.environ if environ is None else environ
        try:
            timeout_s = float(env.get("CAPTURE_TIMEOUT_S", "30"))
            threshold = float(env.get("DIFF_DEFAULT_THRESHOLD", str(DEFAULT_DIFF_THRESHOLD)))
        except ValueError as exc:
            raise ValueError("CAPTURE_TIMEOUT_S and DIFF_DEFAULT_THRESHOLD must be numbers") from exc
        if timeout_s <= 0:
            raise ValueError("CAPTURE_TIMEOUT_S must be > 0")
        return cls(
            capture_timeout_s=timeout_s,
            default_threshold=threshold,
            notify_on_capture=as_bool(env.get("NOTIFY_ON_CAPTURE", "false")),
        )


def _capture_payload(screenshot: Mapping[str, Any]) -> CapturePayload:
    return CapturePayload(
        project_id=str(screenshot["project_id"]),
        screenshot_id=str(screenshot["screenshot_id"]),
        url=str(screenshot["url"]),
        selector=screenshot.get("selector"),
        viewport=screenshot.get("viewport"),
    )


class CaptureLifecycle:
    """Screenshot status and approval state machines.

    The lifecycle is the only writer of a screenshot's capture status,
    image ref, last error and retry count. Status and approval are
    independent axes: re-capturing never touches approval and approving
    never touches status.
    """

    def __init__(
        self,
        *,
        tenancy: TenantContext,
        orchestrator: JobOrchestrator,
        blob_store: BlobStore,
        browser: BrowserEngine | None = None,
        diff_service: DiffService | None = None,
        sinks: Sequence[NotificationSink] = (),
        settings: LifecycleSettings | None = None,
    ) -> None:
        self._tenancy = tenancy
        self._orchestrator = orchestrator
        self._blob_store = blob_store
        self._browser = browser
        self._diff_service = diff_service
        self._sinks = list(sinks)
        self._settings = settings or LifecycleSettings()

    @property
    def settings(self) -> LifecycleSettings:
        return self._settings

    def _now_iso(self) -> str:
        return self._tenancy.now().isoformat()

    # projects and screenshots -------------------------------------------

    def create_project(self, tenant_id: str, request: ProjectCreateRequest) -> dict[str, Any]:
        now = self._now_iso()
        project = {
            "project_id": f"prj_{uuid.uuid4().hex[:12]}",
            "name": request.name,
            "base_url": request.base_url,
            "diff_threshold": request.diff_threshold,
            "created_at": now,
            "updated_at": now,
        }
        return self._tenancy.create_project(tenant_id, project)

    def list_projects(self, tenant_id: str) -> list[dict[str, Any]]:
        return self._tenancy.with_tenant(tenant_id, lambda s: s.projects.list())

    def get_project(self, tenant_id: str, project_id: str) -> dict[str, Any]:
        return self._tenancy.with_tenant(tenant_id, lambda s: self._require_project(s, project_id))

    def update_project(self, tenant_id: str, project_id: str, request: ProjectUpdateRequest) -> dict[str, Any]:
        """Replace the editable fields of a project; its screenshots are untouched."""

        def _op(session: TenantSession) -> dict[str, Any]:
            self._require_project(session, project_id)
            return session.projects.update(
                project_id=project_id,
                fields={
                    "name": request.name,
                    "base_url": request.base_url,
                    "diff_threshold": request.diff_threshold,
                    "updated_at": self._now_iso(),
                },
            )

        updated = self._tenancy.with_tenant(tenant_id, _op)
        logger.info("project_updated tenant_id=%s project_id=%s", tenant_id, project_id)
        return updated

    def _delete_screenshot_rows(self, session: TenantSession, screenshot_id: str) -> None:
        session.diffs.delete_for_screenshot(screenshot_id=screenshot_id)
        session.approval_events.delete_for_screenshot(screenshot_id=screenshot_id)
        session.screenshots.delete(screenshot_id=screenshot_id)

    def _drop_schedules(self, tenant_id: str, screenshot_ids: Sequence[str]) -> None:
        for screenshot_id in screenshot_ids:
            self._orchestrator.unschedule(tenant_id, screenshot_id)

    def delete_project(self, tenant_id: str, project_id: str) -> dict[str, Any]:
        """Delete a project with its screenshots, their history and their schedules.

        Jobs already queued for the removed screenshots fail as not found.
        """

        def _op(session: TenantSession) -> list[str]:
            self._require_project(session, project_id)
            screenshot_ids = [
                str(x["screenshot_id"]) for x in session.screenshots.list_for_project(project_id=project_id)
            ]
            for screenshot_id in screenshot_ids:
                self._delete_screenshot_rows(session, screenshot_id)
            session.projects.delete(project_id=project_id)
            return screenshot_ids

        screenshot_ids = self._tenancy.with_tenant(tenant_id, _op)
        self._drop_schedules(tenant_id, screenshot_ids)
        logger.info(
            "project_deleted tenant_id=%s project_id=%s screenshots=%s",
            tenant_id,
            project_id,
            len(screenshot_ids),
        )
        return {"project_id": project_id, "deleted": True, "screenshot_ids": screenshot_ids}

    def _require_project(self, session: TenantSession, project_id: str) -> dict[str, Any]:
        project = session.projects.get(project_id=project_id)
        if project is None:
            raise NotFoundError("project not found", code="PROJECT_NOT_FOUND")
        return project

    def _require_screenshot(self, session: TenantSession, screenshot_id: str) -> dict[str, Any]:
        screenshot = session.screenshots.get(screenshot_id=screenshot_id)
        if screenshot is None:
            raise NotFoundError("screenshot not found", code="SCREENSHOT_NOT_FOUND")
        return screenshot

    def create_screenshot(self, tenant_id: str, project_id: str, request: ScreenshotCreateRequest) -> dict[str, Any]:
        now = self._now_iso()
        screenshot = {
            "screenshot_id": f"shot_{uuid.uuid4().hex[:12]}",
            "project_id": project_id,
            "name": request.name,
            "url": request.url,
            "selector": request.selector,
            "viewport": request.viewport.model_dump() if request.viewport is not None else None,
            "schedule": None,
            "status": "pending",
            "approval_status": "pending",
            "retry_count": 0,
            "created_at": now,
            "updated_at": now,
        }

        def _op(session: TenantSession) -> dict[str, Any]:
            self._require_project(session, project_id)
            return session.screenshots.create(screenshot=screenshot)

        created = self._tenancy.with_tenant(tenant_id, _op)
        if request.schedule:
            self.schedule_screenshot(tenant_id, created["screenshot_id"], request.schedule)
            created["schedule"] = request.schedule
        return created

    def list_screenshots(self, tenant_id: str, project_id: str) -> list[dict[str, Any]]:
        def _op(session: TenantSession) -> list[dict[str, Any]]:
            self._require_project(session, project_id)
            return session.screenshots.list_for_project(project_id=project_id)

        return self._tenancy.with_tenant(tenant_id, _op)

    def get_screenshot(self, tenant_id: str, screenshot_id: str) -> dict[str, Any]:
        return self._tenancy.with_tenant(tenant_id, lambda s: self._require_screenshot(s, screenshot_id))

    def delete_screenshot(self, tenant_id: str, screenshot_id: str) -> dict[str, Any]:
        def _op(session: TenantSession) -> None:
            self._require_screenshot(session, screenshot_id)
            self._delete_screenshot_rows(session, screenshot_id)

        self._tenancy.with_tenant(tenant_id, _op)
        self._drop_schedules(tenant_id, [screenshot_id])
        logger.info("screenshot_deleted tenant_id=%s screenshot_id=%s", tenant_id, screenshot_id)
        return {"screenshot_id": screenshot_id, "deleted": True}

    # submissions --------------------------------------------------------

    def _mark_pending(self, tenant_id: str, screenshot_id: str) -> tuple[dict[str, Any], str]:
        def _op(session: TenantSession) -> tuple[dict[str, Any], str]:
            screenshot = self._require_screenshot(session, screenshot_id)
            previous = str(screenshot.get("status") or "pending")
            updated = session.screenshots.update(
                screenshot_id=screenshot_id,
                fields={"status": "pending", "updated_at": self._now_iso()},
            )
            return updated, previous

        return self._tenancy.with_tenant(tenant_id, _op)

    def _restore_status(self, tenant_id: str, screenshot_id: str, status: str) -> None:
        self._tenancy.with_tenant(
            tenant_id,
            lambda s: s.screenshots.update(screenshot_id=screenshot_id, fields={"status": status}),
        )

    def _admit_capture(self, tenant_id: str, screenshot_id: str, *, mode: SubmitMode) -> SubmitResult:
        """Reserve quota, move the screenshot to pending and enqueue its capture.

        The reservation is returned when the submission created no new work
        or could not be enqueued at all.
        """
        self.get_screenshot(tenant_id, screenshot_id)
        self._tenancy.increment_capture_usage(tenant_id)
        try:
            screenshot, previous = self._mark_pending(tenant_id, screenshot_id)
        except Exception:
            self._tenancy.release_capture_usage(tenant_id)
            raise
        try:
            result = self._orchestrator.submit_capture(tenant_id, _capture_payload(screenshot), mode=mode)
        except Exception:
            self._tenancy.release_capture_usage(tenant_id)
            self._restore_status(tenant_id, screenshot_id, previous)
            raise
        if not result.created:
            self._tenancy.release_capture_usage(tenant_id)
        return result

    def request_rerun(self, tenant_id: str, screenshot_id: str, *, force: bool = True) -> SubmitResult:
        mode = SubmitMode.ADHOC if force else SubmitMode.DEDUPLICATING
        result = self._admit_capture(tenant_id, screenshot_id, mode=mode)
        logger.info(
            "capture_rerun_requested tenant_id=%s screenshot_id=%s job_id=%s outcome=%s",
            tenant_id,
            screenshot_id,
            result.job_id,
            result.outcome,
        )
        return result

    def run_project(self, tenant_id: str, project_id: str) -> list[BulkItemResult]:
        """Bulk deduplicating run of every screenshot in a project."""
        screenshots = self.list_screenshots(tenant_id, project_id)
        results: dict[int, BulkItemResult] = {}
        admitted: list[tuple[int, dict[str, Any], str]] = []
        for index, screenshot in enumerate(screenshots):
            screenshot_id = str(screenshot["screenshot_id"])
            try:
                self._tenancy.increment_capture_usage(tenant_id)
            except QuotaExceededError as exc:
                results[index] = BulkItemResult(
                    index=index,
                    screenshot_id=screenshot_id,
                    ok=False,
                    error={"code": exc.code, "message": exc.message},
                )
                continue
            updated, previous = self._mark_pending(tenant_id, screenshot_id)
            admitted.append((index, updated, previous))

        submitted = self._orchestrator.submit_bulk_capture(tenant_id, [x[1] for x in admitted])
        for (index, screenshot, previous), item in zip(admitted, submitted):
            if not item.ok or item.outcome != "created":
                self._tenancy.release_capture_usage(tenant_id)
            if not item.ok:
                self._restore_status(tenant_id, str(screenshot["screenshot_id"]), previous)
            results[index] = dataclasses.replace(item, index=index)
        logger.info(
            "project_run_submitted tenant_id=%s project_id=%s total=%s admitted=%s",
            tenant_id,
            project_id,
            len(screenshots),
            len(admitted),
        )
        return [results[i] for i in sorted(results)]

    def schedule_screenshot(self, tenant_id: str, screenshot_id: str, cron: str) -> Schedule:
        screenshot = self.get_screenshot(tenant_id, screenshot_id)
        schedule = self._orchestrator.schedule_recurring(tenant_id, screenshot_id, cron, _capture_payload(screenshot))
        try:
            self._tenancy.with_tenant(
                tenant_id,
                lambda s: s.screenshots.update(
                    screenshot_id=screenshot_id,
                    fields={"schedule": cron, "updated_at": self._now_iso()},
                ),
            )
        except Exception:
            self._orchestrator.unschedule(tenant_id, screenshot_id)
            raise
        return schedule

    def unschedule_screenshot(self, tenant_id: str, screenshot_id: str) -> bool:
        def _op(session: TenantSession) -> None:
            self._require_screenshot(session, screenshot_id)
            session.screenshots.update(
                screenshot_id=screenshot_id,
                fields={"schedule": None, "updated_at": self._now_iso()},
            )

        self._tenancy.with_tenant(tenant_id, _op)
        return self._orchestrator.unschedule(tenant_id, screenshot_id)

    def _fire_schedule(self, schedule: Schedule) -> SubmitResult | None:
        try:
            return self._admit_capture(schedule.tenant_id, schedule.screenshot_id, mode=SubmitMode.DEDUPLICATING)
        except NotFoundError:
            logger.warning(
                "schedule_orphaned screenshot_id=%s tenant_id=%s",
                schedule.screenshot_id,
                schedule.tenant_id,
            )
            self._orchestrator.unschedule(schedule.tenant_id, schedule.screenshot_id)
            return None

    def fire_due_schedules(self, now: datetime | None = None) -> list[SubmitResult]:
        return self._orchestrator.enqueue_due_schedules(now, fire=self._fire_schedule)

    # approval -----------------------------------------------------------

    def approve(
        self,
        tenant_id: str,
        screenshot_id: str,
        action: str,
        actor: str,
        reason: str = "",
    ) -> dict[str, Any]:
        if action not in APPROVAL_ACTIONS:
            raise ValidationError(f"unknown approval action: {action}", code="APPROVAL_ACTION_INVALID")
        if not actor.strip():
            raise ValidationError("approval actor is required")
        now = self._now_iso()

        def _op(session: TenantSession) -> dict[str, Any]:
            self._require_screenshot(session, screenshot_id)
            latest = session.diffs.latest_for_screenshot(screenshot_id=screenshot_id)
            approved = action == "approved"
            screenshot = session.screenshots.update(
                screenshot_id=screenshot_id,
                fields={
                    "approval_status": action,
                    "approved_by": actor if approved else None,
                    "approved_at": now if approved else None,
                    "updated_at": now,
                },
            )
            event = session.approval_events.append(
                event={
                    "event_id": f"apv_{uuid.uuid4().hex[:12]}",
                    "screenshot_id": screenshot_id,
                    "diff_id": latest["diff_id"] if latest else None,
                    "action": action,
                    "actor": actor,
                    "reason": reason or None,
                    "occurred_at": now,
                }
            )
            return {"screenshot": screenshot, "event": event}

        result = self._tenancy.with_tenant(tenant_id, _op)
        logger.info(
            "screenshot_approval tenant_id=%s screenshot_id=%s action=%s actor=%s",
            tenant_id,
            screenshot_id,
            action,
            actor,
        )
        return result

    def history(self, tenant_id: str, screenshot_id: str) -> dict[str, Any]:
        def _op(session: TenantSession) -> dict[str, Any]:
            screenshot = self._require_screenshot(session, screenshot_id)
            return {
                "screenshot": screenshot,
                "approval_events": session.approval_events.list_for_screenshot(screenshot_id=screenshot_id),
                "diffs": session.diffs.list_for_screenshot(screenshot_id=screenshot_id),
            }

        return self._tenancy.with_tenant(tenant_id, _op)

    # job processing -----------------------------------------------------

    def handlers(self) -> dict[str, Callable[[Job], dict[str, Any]]]:
        return {
            Lane.CAPTURE.value: self.process_capture_job,
            Lane.DIFF.value: self.process_diff_job,
            Lane.NOTIFY.value: self.process_notify_job,
        }

    def process_capture_job(self, job: Job) -> dict[str, Any]:
        if self._browser is None:
            raise PermanentCaptureError("no browser engine configured", code="CAPTURE_ENGINE_MISSING")
        payload = decode_payload(job.lane, job.payload)
        tenant_id = job.tenant_id
        self.get_screenshot(tenant_id, payload.screenshot_id)

        data = self._browser.capture(
            url=payload.url,
            selector=payload.selector,
            viewport=payload.viewport,
            timeout_s=self._settings.capture_timeout_s,
        )
        if not data:
            raise TransientCaptureError("browser engine returned an empty image")
        image_ref = self._blob_store.put(data, tenant_id=tenant_id, name=payload.screenshot_id)
        now = self._now_iso()

        def _op(session: TenantSession) -> tuple[str | None, str] | None:
            # checked inside the write so a timeout recorded first wins
            if not self._orchestrator.is_current_attempt(job):
                return None
            screenshot = self._require_screenshot(session, payload.screenshot_id)
            session.screenshots.update(
                screenshot_id=payload.screenshot_id,
                fields={
                    "status": "captured",
                    "image_ref": image_ref,
                    "last_error": None,
                    "retry_count": max(0, job.attempts_made - 1),
                    "last_captured_at": now,
                    "updated_at": now,
                },
            )
            return screenshot.get("image_ref"), str(screenshot["project_id"])

        recorded = self._tenancy.with_tenant(tenant_id, _op)
        if recorded is None:
            logger.warning("capture_result_discarded job_id=%s attempt=%s", job.job_id, job.attempts_made)
            return {"discarded": True, "image_ref": image_ref}
        previous_ref, project_id = recorded
        result: dict[str, Any] = {"image_ref": image_ref, "previous_image_ref": previous_ref}
        if previous_ref:
            diff = self._orchestrator.submit_diff(
                tenant_id,
                DiffPayload(
                    screenshot_id=payload.screenshot_id,
                    current_image_ref=image_ref,
                    previous_image_ref=previous_ref,
                ),
            )
            result["diff_job_id"] = diff.job_id
        if self._settings.notify_on_capture:
            self._orchestrator.submit_notify(
                tenant_id,
                NotifyPayload(
                    type=NotifyType.CAPTURE_COMPLETED,
                    project_id=project_id,
                    screenshot_id=payload.screenshot_id,
                    message=f"Screenshot captured successfully: {payload.url}",
                ),
            )
        logger.info(
            "capture_recorded tenant_id=%s screenshot_id=%s image_ref=%s baseline=%s",
            tenant_id,
            payload.screenshot_id,
            image_ref,
            bool(previous_ref),
        )
        return result

    def process_diff_job(self, job: Job) -> dict[str, Any]:
        if self._diff_service is None:
            raise PermanentCaptureError("no diff service configured", code="DIFF_SERVICE_MISSING")
        payload = decode_payload(job.lane, job.payload)
        tenant_id = job.tenant_id
        metrics = self._diff_service.compare(
            previous_ref=payload.previous_image_ref,
            current_ref=payload.current_image_ref,
        )
        now = self._now_iso()

        def _op(session: TenantSession) -> tuple[dict[str, Any], str]:
            screenshot = self._require_screenshot(session, payload.screenshot_id)
            project = self._require_project(session, str(screenshot["project_id"]))
            configured = project.get("diff_threshold")
            threshold = float(configured) if configured is not None else self._settings.default_threshold
            diff = session.diffs.append(
                diff={
                    "diff_id": f"diff_{uuid.uuid4().hex[:12]}",
                    "screenshot_id": payload.screenshot_id,
                    "previous_image_ref": payload.previous_image_ref,
                    "current_image_ref": payload.current_image_ref,
                    "pixel_diff": metrics.pixel_diff,
                    "percentage_diff": metrics.percentage_diff,
                    "total_pixels": metrics.total_pixels,
                    "significant": evaluate(metrics.percentage_diff, threshold),
                    "threshold": threshold,
                    "created_at": now,
                }
            )
            return diff, str(screenshot["project_id"])

        diff, project_id = self._tenancy.with_tenant(tenant_id, _op)
        result: dict[str, Any] = {
            "diff_id": diff["diff_id"],
            "percentage_diff": diff["percentage_diff"],
            "significant": diff["significant"],
        }
        if diff["significant"]:
            notify = self._orchestrator.submit_notify(
                tenant_id,
                NotifyPayload(
                    type=NotifyType.DIFF_DETECTED,
                    project_id=project_id,
                    screenshot_id=payload.screenshot_id,
                    message=f"Visual difference detected: {metrics.percentage_diff:.2f}% of pixels changed",
                    diff_ref=diff["diff_id"],
                    diff_metrics=metrics,
                ),
            )
            result["notify_job_id"] = notify.job_id
        logger.info(
            "diff_recorded tenant_id=%s screenshot_id=%s percentage=%.4f threshold=%s significant=%s",
            tenant_id,
            payload.screenshot_id,
            metrics.percentage_diff,
            diff["threshold"],
            diff["significant"],
        )
        return result

    def process_notify_job(self, job: Job) -> dict[str, Any]:
        payload = decode_payload(job.lane, job.payload)
        if not self._sinks:
            logger.info("notification_skipped job_id=%s reason=no_sinks", job.job_id)
            return {"delivered": []}
        return {"delivered": deliver_all(self._sinks, payload, tenant_id=job.tenant_id)}

    def record_capture_failure(self, job: Job, reason: str) -> dict[str, Any] | None:
        """Terminal capture failure: persist the error and raise a capture_failed notification."""
        payload = decode_payload(job.lane, job.payload)
        now = self._now_iso()

        def _op(session: TenantSession) -> dict[str, Any] | None:
            return session.screenshots.update(
                screenshot_id=payload.screenshot_id,
                fields={
                    "status": "failed",
                    "last_error": reason,
                    "retry_count": job.attempts_made,
                    "updated_at": now,
                },
            )

        screenshot = self._tenancy.with_tenant(job.tenant_id, _op)
        if screenshot is None:
            logger.warning("capture_failure_unrecorded job_id=%s reason=screenshot_missing", job.job_id)
            return None
        self._orchestrator.submit_notify(
            job.tenant_id,
            NotifyPayload(
                type=NotifyType.CAPTURE_FAILED,
                project_id=payload.project_id,
                screenshot_id=payload.screenshot_id,
                message=reason,
            ),
        )
        return screenshot

    def record_job_failure(self, job: Job, reason: str) -> None:
        """Route an exhausted or permanent job failure to its lane's bookkeeping."""
        if job.lane == Lane.CAPTURE.value:
            self.record_capture_failure(job, reason)
            return
        if job.lane == Lane.DIFF.value:
            payload = decode_payload(job.lane, job.payload)

            def _project_of(session: TenantSession) -> str | None:
                screenshot = session.screenshots.get(screenshot_id=payload.screenshot_id)
                return str(screenshot["project_id"]) if screenshot else None

            project_id = self._tenancy.with_tenant(job.tenant_id, _project_of)
            if project_id is None:
                return
            self._orchestrator.submit_notify(
                job.tenant_id,
                NotifyPayload(
                    type=NotifyType.CAPTURE_FAILED,
                    project_id=project_id,
                    screenshot_id=payload.screenshot_id,
                    message=f"Failed to process visual diff: {reason}",
                ),
            )
            return
        logger.error("notification_dropped job_id=%s reason=%s", job.job_id, reason)
