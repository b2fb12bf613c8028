from __future__ import annotations

import os
import re
import threading
from collections.abc import Mapping
from hashlib import sha256
from pathlib import Path

from snapwatch.errors import StorageError


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def _build_key(*, tenant_id: str, name: str, data: bytes) -> str:
    digest = sha256(data).hexdigest()[:16]
    return f"tenants/{_clean_segment(tenant_id)}/screenshots/{_clean_segment(name)}/{digest}.png"


def _parse_ref(ref: str) -> tuple[str, str]:
    if not ref.startswith("blob://"):
        raise StorageError(f"invalid blob ref: {ref}", code="BLOB_REF_INVALID")
    backend, _, key = ref[len("blob://") :].partition("/")
    if not backend or not key:
        raise StorageError(f"invalid blob ref: {ref}", code="BLOB_REF_INVALID")
    return backend, key


class BlobStore:
    """Opaque image storage; callers only ever see refs."""

    backend_name = "base"

    def put(self, data: bytes, *, tenant_id: str, name: str) -> str:
        raise NotImplementedError

    def get(self, ref: str) -> bytes:
        raise NotImplementedError

    def _key_for(self, ref: str) -> str:
        backend, key = _parse_ref(ref)
        if backend != self.backend_name:
            raise StorageError("blob backend mismatch", code="BLOB_REF_INVALID")
        return key


class InMemoryBlobStore(BlobStore):
    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, bytes] = {}

    def put(self, data: bytes, *, tenant_id: str, name: str) -> str:
        key = _build_key(tenant_id=tenant_id, name=name, data=data)
        with self._lock:
            self._objects[key] = bytes(data)
        return f"blob://{self.backend_name}/{key}"

    def get(self, ref: str) -> bytes:
        key = self._key_for(ref)
        with self._lock:
            data = self._objects.get(key)
        if data is None:
            raise StorageError(f"blob not found: {ref}", code="BLOB_NOT_FOUND")
        return data

    def reset(self) -> None:
        with self._lock:
            self._objects.clear()


class LocalBlobStore(BlobStore):
    backend_name = "local"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)

    def put(self, data: bytes, *, tenant_id: str, name: str) -> str:
        key = _build_key(tenant_id=tenant_id, name=name, data=data)
        path = self._root / key
        # content addressed: identical bytes map to the same file
        if not path.exists():
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)
            except OSError as exc:
                raise StorageError(f"blob write failed: {exc}") from exc
        return f"blob://{self.backend_name}/{key}"

    def get(self, ref: str) -> bytes:
        path = self._root / self._key_for(ref)
        if not path.exists():
            raise StorageError(f"blob not found: {ref}", code="BLOB_NOT_FOUND")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"blob read failed: {exc}") from exc


def create_blob_store_from_env(environ: Mapping[str, str] | None = None) -> BlobStore:
    env = os.environ if environ is None else environ
    backend = env.get("BLOB_STORE_BACKEND", "local").strip().lower() or "local"
    if backend == "memory":
        return InMemoryBlobStore()
    if backend == "local":
        root = env.get("BLOB_STORE_ROOT", "/tmp/snapwatch-blobs").strip() or "/tmp/snapwatch-blobs"
        return LocalBlobStore(root)
    raise RuntimeError(f"unsupported blob store backend: {backend}")
