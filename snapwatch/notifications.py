from __future__ import annotations

import logging
import os
from collections.abc import Mapping, Sequence
from urllib.error import HTTPError, URLError

from snapwatch.collaborators import post_json
from snapwatch.errors import PermanentCaptureError, TransientCaptureError
from snapwatch.schemas import NotifyPayload

logger = logging.getLogger(__name__)


class NotificationSink:
    """Delivery channel for notify jobs; raising marks the attempt as failed."""

    name = "base"

    def deliver(self, payload: NotifyPayload, *, tenant_id: str) -> None:
        raise NotImplementedError


class LogSink(NotificationSink):
    name = "log"

    def deliver(self, payload: NotifyPayload, *, tenant_id: str) -> None:
        logger.info(
            "notification type=%s tenant_id=%s project_id=%s screenshot_id=%s message=%s",
            payload.type.value,
            tenant_id,
            payload.project_id,
            payload.screenshot_id,
            payload.message,
        )


class WebhookSink(NotificationSink):
    name = "webhook"

    def __init__(self, *, url: str, timeout_s: float = 10.0) -> None:
        if not url.strip():
            raise ValueError("NOTIFY_WEBHOOK_URL must be set for the webhook sink")
        self._url = url.strip()
        self._timeout_s = timeout_s

    def deliver(self, payload: NotifyPayload, *, tenant_id: str) -> None:
        body = {"tenantId": tenant_id, **payload.to_wire()}
        try:
            post_json(endpoint=self._url, payload=body, timeout_s=self._timeout_s)
        except HTTPError as exc:
            if 400 <= exc.code < 500 and exc.code not in {408, 429}:
                raise PermanentCaptureError(
                    f"webhook rejected notification: HTTP {exc.code}",
                    code="NOTIFY_REJECTED",
                ) from exc
            raise TransientCaptureError(f"webhook unavailable: HTTP {exc.code}", code="NOTIFY_UNAVAILABLE") from exc
        except (TimeoutError, URLError, OSError) as exc:
            raise TransientCaptureError(f"webhook unavailable: {exc}", code="NOTIFY_UNAVAILABLE") from exc


def build_sinks_from_env(environ: Mapping[str, str] | None = None) -> list[NotificationSink]:
    env = os.environ if environ is None else environ
    names = [x.strip().lower() for x in env.get("NOTIFY_SINKS", "log").split(",") if x.strip()]
    sinks: list[NotificationSink] = []
    for name in names:
        if name == "log":
            sinks.append(LogSink())
        elif name == "webhook":
            sinks.append(WebhookSink(url=env.get("NOTIFY_WEBHOOK_URL", "")))
        else:
            raise ValueError(f"unsupported notification sink: {name}")
    return sinks


def deliver_all(sinks: Sequence[NotificationSink], payload: NotifyPayload, *, tenant_id: str) -> list[str]:
    """Deliver to every sink; the first failure propagates after logging."""
    delivered: list[str] = []
    for sink in sinks:
        try:
            sink.deliver(payload, tenant_id=tenant_id)
        except (TransientCaptureError, PermanentCaptureError) as exc:
            logger.warning("notification_delivery_failed sink=%s code=%s message=%s", sink.name, exc.code, exc.message)
            raise
        delivered.append(sink.name)
    return delivered
