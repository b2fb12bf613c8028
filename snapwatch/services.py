from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from snapwatch.blob_store import BlobStore, create_blob_store_from_env
from snapwatch.collaborators import create_browser_engine_from_env, create_diff_service_from_env
from snapwatch.lifecycle import CaptureLifecycle, LifecycleSettings
from snapwatch.notifications import build_sinks_from_env
from snapwatch.orchestrator import JobOrchestrator, OrchestratorSettings
from snapwatch.queue_backend import InMemoryQueueBackend, JobQueueBackend, create_queue_from_env
from snapwatch.runtime_profile import true_stack_required
from snapwatch.tenancy import TenantContext, create_tenant_context_from_env

logger = logging.getLogger(__name__)


@dataclass
class Services:
    tenancy: TenantContext
    queue_backend: JobQueueBackend
    orchestrator: JobOrchestrator
    blob_store: BlobStore
    lifecycle: CaptureLifecycle


def _create_queue_backend_for_runtime(environ: Mapping[str, str]) -> JobQueueBackend:
    try:
        return create_queue_from_env(environ)
    except RuntimeError:
        if true_stack_required(environ):
            raise
        logger.warning("queue_backend_fallback backend=memory")
        return InMemoryQueueBackend()


def build_services(environ: Mapping[str, str] | None = None, *, with_workers: bool = False) -> Services:
    """Wire the store, queue and lifecycle from the environment.

    Capture and diff collaborators are only required by worker processes.
    """
    env = os.environ if environ is None else environ
    tenancy = create_tenant_context_from_env(env)
    queue_backend = _create_queue_backend_for_runtime(env)
    orchestrator = JobOrchestrator(queue_backend, settings=OrchestratorSettings.from_env(env))
    blob_store = create_blob_store_from_env(env)
    browser = create_browser_engine_from_env(env) if with_workers else None
    diff_service = create_diff_service_from_env(blob_store, env) if with_workers else None
    lifecycle = CaptureLifecycle(
        tenancy=tenancy,
        orchestrator=orchestrator,
        blob_store=blob_store,
        browser=browser,
        diff_service=diff_service,
        sinks=build_sinks_from_env(env),
        settings=LifecycleSettings.from_env(env),
    )
    return Services(
        tenancy=tenancy,
        queue_backend=queue_backend,
        orchestrator=orchestrator,
        blob_store=blob_store,
        lifecycle=lifecycle,
    )
