from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from apscheduler.triggers.cron import CronTrigger
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


def cron_trigger(expression: str) -> CronTrigger:
    """Five-field crontab evaluated in UTC; raises ValueError when malformed."""
    return CronTrigger.from_crontab(expression.strip(), timezone=UTC)


def is_valid_cron(expression: str) -> bool:
    try:
        trigger = cron_trigger(expression)
    except ValueError:
        return False
    return trigger.get_next_fire_time(None, datetime.now(UTC)) is not None


def next_fire_time(expression: str, after: datetime) -> datetime:
    # strictly after: a schedule registered on a boundary waits for the next one
    return cron_trigger(expression).get_next_fire_time(None, after + timedelta(microseconds=1))


class Lane(str, Enum):
    CAPTURE = "capture"
    DIFF = "diff"
    NOTIFY = "notify"


class NotifyType(str, Enum):
    CAPTURE_COMPLETED = "capture_completed"
    DIFF_DETECTED = "diff_detected"
    CAPTURE_FAILED = "capture_failed"
    PROJECT_SUMMARY = "project_summary"
    BULK_CHANGES = "bulk_changes"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Viewport(WireModel):
    width: int = Field(ge=320, le=3840)
    height: int = Field(ge=240, le=2160)


class DiffMetrics(WireModel):
    pixel_diff: int = Field(ge=0)
    percentage_diff: float = Field(ge=0, le=100)
    total_pixels: int = Field(ge=0)


def _check_url(value: str) -> str:
    parsed = urlparse(value.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("url must be an absolute http(s) URL")
    return value.strip()


HttpUrlStr = Annotated[str, AfterValidator(_check_url)]


class CapturePayload(WireModel):
    lane: Literal["capture"] = "capture"
    project_id: str = Field(min_length=1)
    screenshot_id: str = Field(min_length=1)
    url: HttpUrlStr
    selector: str | None = None
    viewport: Viewport | None = None


class DiffPayload(WireModel):
    lane: Literal["diff"] = "diff"
    screenshot_id: str = Field(min_length=1)
    current_image_ref: str = Field(min_length=1)
    previous_image_ref: str = Field(min_length=1)


class SummaryCounts(WireModel):
    total_screenshots: int = Field(ge=0)
    changes_detected: int = Field(ge=0)
    pending_approval: int = Field(ge=0)
    failed: int = Field(ge=0)


class ChangeEntry(WireModel):
    screenshot_name: str
    percentage_diff: float
    url: str | None = None


class NotifyPayload(WireModel):
    lane: Literal["notify"] = "notify"
    type: NotifyType
    project_id: str = Field(min_length=1)
    screenshot_id: str = Field(min_length=1)
    message: str
    diff_ref: str | None = None
    diff_metrics: DiffMetrics | None = None
    summary: SummaryCounts | None = None
    changes: list[ChangeEntry] | None = None
    period: str | None = None


JobPayload = Annotated[Union[CapturePayload, DiffPayload, NotifyPayload], Field(discriminator="lane")]
JOB_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(JobPayload)


def decode_payload(lane: str, data: dict[str, Any]) -> CapturePayload | DiffPayload | NotifyPayload:
    """Rehydrate a payload that was validated at submission and stored as JSON."""
    return JOB_PAYLOAD_ADAPTER.validate_python({**data, "lane": lane})


class ProjectCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    base_url: str | None = None
    diff_threshold: float | None = Field(default=None, ge=0, le=100)


class ProjectUpdateRequest(ProjectCreateRequest):
    """Full replacement of a project's editable fields."""


class ScreenshotCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    url: HttpUrlStr
    selector: str | None = None
    viewport: Viewport | None = None
    schedule: str | None = None

    @field_validator("schedule")
    @classmethod
    def _valid_cron(cls, value: str | None) -> str | None:
        if value is not None and not is_valid_cron(value):
            raise ValueError("schedule must be a valid cron expression")
        return value


class ScreenshotRunRequest(BaseModel):
    force: bool = True


class ScheduleRequest(BaseModel):
    cron: str = Field(min_length=1)

    @field_validator("cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not is_valid_cron(value):
            raise ValueError("cron must be a valid cron expression")
        return value


class ApprovalRequest(BaseModel):
    action: Literal["approved", "rejected", "pending"]
    reason: str = ""


class RetryFailedRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=1000)


class ReapRequest(BaseModel):
    grace_ms: int = Field(default=24 * 60 * 60 * 1000, ge=0)


class IdentityEmail(BaseModel):
    email_address: str


class IdentityUserData(BaseModel):
    id: str = Field(min_length=1)
    tenant_id: str = ""
    email_addresses: list[IdentityEmail] = Field(default_factory=list)
    first_name: str | None = None
    last_name: str | None = None
    image_url: str | None = None


class IdentityWebhookRequest(BaseModel):
    type: Literal["user.created", "user.updated", "user.deleted"]
    data: IdentityUserData


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
