import pathlib
import sys
import time
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from snapwatch.blob_store import InMemoryBlobStore
from snapwatch.collaborators import BrowserEngine, DiffService
from snapwatch.lifecycle import CaptureLifecycle, LifecycleSettings
from snapwatch.main import create_app
from snapwatch.notifications import NotificationSink
from snapwatch.orchestrator import JobOrchestrator, OrchestratorSettings
from snapwatch.queue_backend import InMemoryQueueBackend
from snapwatch.schemas import DiffMetrics
from snapwatch.services import Services
from snapwatch.tenancy import TenantContext

JWT_SECRET = "jwt_test_secret"
API_ENV = {
    "JWT_SHARED_SECRET": JWT_SECRET,
    "JWT_ISSUER": "test-issuer",
    "JWT_AUDIENCE": "test-audience",
    "JWT_REQUIRED_CLAIMS": "tenant_id,sub,exp",
    "JWT_ADMIN_ROLES": "admin",
    "CORS_ALLOW_ORIGINS": "",
}


class FixedClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeBrowser(BrowserEngine):
    """Returns queued images in order; an exception instance in the queue is raised instead."""

    def __init__(self, *images: object) -> None:
        self.images = list(images)
        self.calls: list[dict[str, object]] = []
        self.delay_s = 0.0

    def capture(self, *, url, selector, viewport, timeout_s):
        if self.delay_s:
            time.sleep(self.delay_s)
        self.calls.append({"url": url, "selector": selector, "viewport": viewport, "timeout_s": timeout_s})
        item = self.images.pop(0) if len(self.images) > 1 else self.images[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeDiffService(DiffService):
    def __init__(self, percentage: float = 5.0) -> None:
        self.percentage = percentage
        self.calls: list[tuple[str, str]] = []

    def compare(self, *, previous_ref, current_ref):
        self.calls.append((previous_ref, current_ref))
        total = 10000
        return DiffMetrics(
            pixel_diff=int(total * self.percentage / 100),
            percentage_diff=self.percentage,
            total_pixels=total,
        )


class RecordingSink(NotificationSink):
    name = "recording"

    def __init__(self) -> None:
        self.delivered: list[tuple[str, object]] = []

    def deliver(self, payload, *, tenant_id):
        self.delivered.append((tenant_id, payload))


def issue_token(*, tenant_id: str, role: str = "", secret: str = JWT_SECRET) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": f"user_{tenant_id}",
        "tenant_id": tenant_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    if role:
        payload["role"] = role
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient):
        self._client = client

    def request(self, method: str, url: str, *, tenant_id: str = "tenant_a", role: str = "", **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                headers["Authorization"] = f"Bearer {issue_token(tenant_id=tenant_id, role=role)}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 15, 10, 0, tzinfo=UTC))


@pytest.fixture
def queue(clock: FixedClock) -> InMemoryQueueBackend:
    return InMemoryQueueBackend(clock=clock)


@pytest.fixture
def orchestrator(queue: InMemoryQueueBackend) -> JobOrchestrator:
    return JobOrchestrator(queue, settings=OrchestratorSettings(max_attempts=3, backoff_base_ms=0))


@pytest.fixture
def tenancy(clock: FixedClock) -> TenantContext:
    return TenantContext(clock=clock)


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser(b"png-v1", b"png-v2")


@pytest.fixture
def diff_service() -> FakeDiffService:
    return FakeDiffService()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def services(
    tenancy: TenantContext,
    queue: InMemoryQueueBackend,
    orchestrator: JobOrchestrator,
    browser: FakeBrowser,
    diff_service: FakeDiffService,
    sink: RecordingSink,
) -> Services:
    blob_store = InMemoryBlobStore()
    lifecycle = CaptureLifecycle(
        tenancy=tenancy,
        orchestrator=orchestrator,
        blob_store=blob_store,
        browser=browser,
        diff_service=diff_service,
        sinks=[sink],
        settings=LifecycleSettings(capture_timeout_s=5.0),
    )
    return Services(
        tenancy=tenancy,
        queue_backend=queue,
        orchestrator=orchestrator,
        blob_store=blob_store,
        lifecycle=lifecycle,
    )


@pytest.fixture
def client(services: Services) -> AuthenticatedClient:
    app = create_app(services=services, environ=API_ENV)
    return AuthenticatedClient(TestClient(app))
