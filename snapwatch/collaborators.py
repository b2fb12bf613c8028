from __future__ import annotations

import base64
import json
import os
from collections.abc import Mapping
from urllib import request
from urllib.error import HTTPError, URLError

from pydantic import ValidationError as PydanticValidationError

from snapwatch.blob_store import BlobStore
from snapwatch.errors import PermanentCaptureError, TransientCaptureError
from snapwatch.schemas import DiffMetrics, Viewport


def post_json(*, endpoint: str, payload: dict[str, object], timeout_s: float) -> bytes:
    body = json.dumps(payload, ensure_ascii=True, sort_keys=True).encode("utf-8")
    req = request.Request(
        endpoint,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    with request.urlopen(req, timeout=timeout_s) as resp:
        return resp.read()


def _classify(exc: Exception, *, what: str) -> Exception:
    if isinstance(exc, HTTPError) and 400 <= exc.code < 500 and exc.code not in {408, 429}:
        return PermanentCaptureError(f"{what} rejected: HTTP {exc.code}")
    return TransientCaptureError(f"{what} unavailable: {exc}")


class BrowserEngine:
    """Renders a page and returns the image bytes.

    Implementations raise ``TransientCaptureError`` for failures worth
    retrying (timeouts, navigation errors) and ``PermanentCaptureError``
    for ones that will not heal (invalid page, selector never matches).
    """

    def capture(self, *, url: str, selector: str | None, viewport: Viewport | None, timeout_s: float) -> bytes:
        raise NotImplementedError


class DiffService:
    def compare(self, *, previous_ref: str, current_ref: str) -> DiffMetrics:
        raise NotImplementedError


class HttpBrowserEngine(BrowserEngine):
    """Delegates rendering to a remote capture service."""

    def __init__(self, *, endpoint: str) -> None:
        if not endpoint.strip():
            raise ValueError("CAPTURE_ENDPOINT must not be empty")
        self._endpoint = endpoint.strip()

    def capture(self, *, url: str, selector: str | None, viewport: Viewport | None, timeout_s: float) -> bytes:
        payload: dict[str, object] = {"url": url}
        if selector:
            payload["selector"] = selector
        if viewport is not None:
            payload["viewport"] = viewport.to_wire()
        try:
            data = post_json(endpoint=self._endpoint, payload=payload, timeout_s=timeout_s)
        except (TimeoutError, URLError, OSError) as exc:
            raise _classify(exc, what="capture endpoint") from exc
        if not data:
            raise TransientCaptureError("capture endpoint returned an empty image")
        return data


class HttpDiffService(DiffService):
    """Sends both images to a remote comparison service."""

    def __init__(self, *, endpoint: str, blob_store: BlobStore, timeout_s: float = 30.0) -> None:
        if not endpoint.strip():
            raise ValueError("DIFF_ENDPOINT must not be empty")
        self._endpoint = endpoint.strip()
        self._blob_store = blob_store
        self._timeout_s = timeout_s

    def compare(self, *, previous_ref: str, current_ref: str) -> DiffMetrics:
        payload: dict[str, object] = {
            "previous": base64.b64encode(self._blob_store.get(previous_ref)).decode("ascii"),
            "current": base64.b64encode(self._blob_store.get(current_ref)).decode("ascii"),
        }
        try:
            raw = post_json(endpoint=self._endpoint, payload=payload, timeout_s=self._timeout_s)
        except (TimeoutError, URLError, OSError) as exc:
            raise _classify(exc, what="diff endpoint") from exc
        try:
            return DiffMetrics.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise PermanentCaptureError("diff endpoint response schema invalid", code="DIFF_SCHEMA_INVALID") from exc


def create_browser_engine_from_env(environ: Mapping[str, str] | None = None) -> BrowserEngine:
    env = os.environ if environ is None else environ
    return HttpBrowserEngine(endpoint=env.get("CAPTURE_ENDPOINT", ""))


def create_diff_service_from_env(blob_store: BlobStore, environ: Mapping[str, str] | None = None) -> DiffService:
    env = os.environ if environ is None else environ
    return HttpDiffService(endpoint=env.get("DIFF_ENDPOINT", ""), blob_store=blob_store)
