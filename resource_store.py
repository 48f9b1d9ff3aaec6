"""Time-boxed storage for the full datasets behind dual responses.

A tool that would otherwise return a large payload stores the full data here
and hands the caller a bounded preview plus a resource URI. Every resource
lives for exactly ``RESOURCE_TTL_SECONDS``; after that it is indistinguishable
from one that never existed. Expiry is always re-checked on read, so the
background eviction is an optimisation only.
"""
import asyncio
import heapq
import json
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from errors import ResourceNotFound, StorageUnavailable
from utils import iso_timestamp, logger, safe_dumps

RESOURCE_TTL_SECONDS = 3600
INLINE_MAX_BYTES = 400 * 1024
RESOURCE_API_BASE_URL = os.environ.get("RESOURCE_API_BASE_URL", "http://localhost:8000")
RESOURCE_STORE_DIR = os.environ.get("RESOURCE_STORE_DIR")
RESOURCE_ENC_KEY = os.environ.get("RESOURCE_ENC_KEY")

RESOURCE_KINDS = ("report", "list", "export")
TIER_INLINE = "inline"
TIER_BLOB = "blob"


@dataclass(frozen=True)
class ResourceMetadata:
    resource_id: str
    kind: str
    owner_user_id: str
    tenant_id: Optional[str]
    created_at: float
    expires_at: float
    size_bytes: int
    storage_tier: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resourceId": self.resource_id,
            "kind": self.kind,
            "ownerUserId": self.owner_user_id,
            "tenantId": self.tenant_id,
            "createdAt": iso_timestamp(self.created_at),
            "expiresAt": iso_timestamp(self.expires_at),
            "sizeBytes": self.size_bytes,
            "storageTier": self.storage_tier,
        }


@dataclass(frozen=True)
class StoredResource:
    data: Any
    metadata: ResourceMetadata


@dataclass
class DualResponse:
    preview: List[Any]
    uri: str
    total_count: int
    executed_at: float
    expires_at: float
    mime_type: str = "application/json"
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        metadata = {
            "totalCount": self.total_count,
            "executedAt": iso_timestamp(self.executed_at),
            "expiresAt": iso_timestamp(self.expires_at),
        }
        metadata.update(self.extra)
        return {
            "preview": self.preview,
            "resource": {"uri": self.uri, "mimeType": self.mime_type},
            "metadata": metadata,
        }


def resource_uri(resource_id: str, base_url: str | None = None) -> str:
    return f"{(base_url or RESOURCE_API_BASE_URL).rstrip('/')}/resources/{resource_id}"


def resource_id_from_uri(uri: str) -> Optional[str]:
    marker = "/resources/"
    if marker not in (uri or ""):
        return None
    tail = uri.rsplit(marker, 1)[1].strip("/")
    return tail.split("/", 1)[0] or None


def storage_tier_for(size_bytes: int) -> str:
    return TIER_INLINE if size_bytes < INLINE_MAX_BYTES else TIER_BLOB


class ResourceStore(ABC):
    def __init__(self, clock: Callable[[], float] = time.time, base_url: str | None = None):
        self._clock = clock
        self.base_url = base_url or RESOURCE_API_BASE_URL

    @abstractmethod
    async def store(self, data: Any, kind: str, owner_user_id: str, tenant_id: Optional[str]) -> ResourceMetadata:
        ...

    @abstractmethod
    async def retrieve(self, resource_id: str, owner_user_id: Optional[str] = None) -> StoredResource:
        """Return the resource or raise ResourceNotFound (missing, expired, or not the owner's)."""

    @abstractmethod
    async def delete(self, resource_id: str) -> None:
        ...

    @abstractmethod
    async def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""

    def _new_metadata(self, serialized: bytes, kind: str, owner_user_id: str, tenant_id: Optional[str]) -> ResourceMetadata:
        if kind not in RESOURCE_KINDS:
            raise ValueError(f"unknown resource kind {kind!r}")
        now = self._clock()
        size = len(serialized)
        return ResourceMetadata(
            resource_id=str(uuid.uuid4()),
            kind=kind,
            owner_user_id=owner_user_id,
            tenant_id=tenant_id,
            created_at=now,
            expires_at=now + RESOURCE_TTL_SECONDS,
            size_bytes=size,
            storage_tier=storage_tier_for(size),
        )

    def _log_stored(self, meta: ResourceMetadata) -> None:
        logger.info(safe_dumps({
            "type": "resource_stored",
            "resourceId": meta.resource_id,
            "storageTier": meta.storage_tier,
            "sizeBytes": meta.size_bytes,
            "expiresAt": iso_timestamp(meta.expires_at),
        }))

    async def create_dual_response(
        self,
        full_data: List[Any],
        preview_size: int,
        kind: str,
        owner_user_id: str,
        tenant_id: Optional[str],
        extra_metadata: Dict[str, Any] | None = None,
    ) -> DualResponse:
        if preview_size < 0:
            raise ValueError("preview_size must be >= 0")
        rows = list(full_data)
        meta = await self.store(rows, kind, owner_user_id, tenant_id)
        return DualResponse(
            preview=rows[:preview_size],
            uri=resource_uri(meta.resource_id, self.base_url),
            total_count=len(rows),
            executed_at=meta.created_at,
            expires_at=meta.expires_at,
            extra=dict(extra_metadata or {}),
        )


class InMemoryResourceStore(ResourceStore):
    """Single-process store: entry arena plus a min-heap of (expires_at, id)."""

    def __init__(self, clock: Callable[[], float] = time.time, base_url: str | None = None,
                 schedule_eviction: bool = True):
        super().__init__(clock, base_url)
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[ResourceMetadata, str]] = {}
        self._blobs: Dict[str, str] = {}
        self._expiry_index: List[Tuple[float, str]] = []
        self._schedule_eviction = schedule_eviction

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def store(self, data, kind, owner_user_id, tenant_id):
        text = safe_dumps(data)
        meta = self._new_metadata(text.encode("utf-8"), kind, owner_user_id, tenant_id)
        with self._lock:
            self._sweep_locked(self._clock())
            if meta.storage_tier == TIER_BLOB:
                self._blobs[meta.resource_id] = text
                self._entries[meta.resource_id] = (meta, "")
            else:
                self._entries[meta.resource_id] = (meta, text)
            heapq.heappush(self._expiry_index, (meta.expires_at, meta.resource_id))
        self._arm_eviction(meta)
        self._log_stored(meta)
        return meta

    async def retrieve(self, resource_id, owner_user_id=None):
        with self._lock:
            entry = self._entries.get(resource_id)
            if entry is None:
                raise ResourceNotFound(resource_id)
            meta, text = entry
            if self._clock() >= meta.expires_at:
                self._drop_locked(resource_id)
                raise ResourceNotFound(resource_id)
            if meta.storage_tier == TIER_BLOB:
                text = self._blobs[resource_id]
        if owner_user_id is not None and owner_user_id != meta.owner_user_id:
            raise ResourceNotFound(resource_id)
        return StoredResource(data=json.loads(text), metadata=meta)

    async def delete(self, resource_id):
        with self._lock:
            self._drop_locked(resource_id)

    async def sweep(self):
        with self._lock:
            return self._sweep_locked(self._clock())

    def _drop_locked(self, resource_id: str) -> None:
        self._entries.pop(resource_id, None)
        self._blobs.pop(resource_id, None)

    def _sweep_locked(self, now: float) -> int:
        removed = 0
        while self._expiry_index and self._expiry_index[0][0] <= now:
            _, resource_id = heapq.heappop(self._expiry_index)
            if resource_id in self._entries:
                self._drop_locked(resource_id)
                removed += 1
        return removed

    def _arm_eviction(self, meta: ResourceMetadata) -> None:
        if not self._schedule_eviction:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(RESOURCE_TTL_SECONDS, self._evict_if_expired, meta.resource_id)

    def _evict_if_expired(self, resource_id: str) -> None:
        with self._lock:
            entry = self._entries.get(resource_id)
            if entry and self._clock() >= entry[0].expires_at:
                self._drop_locked(resource_id)


class FileResourceStore(ResourceStore):
    """Persistent store shared by several worker processes through a directory.

    ``<id>.meta.json`` holds the metadata (and the data itself for the inline
    tier); blob-tier data sits in ``<id>.blob``, Fernet-encrypted when
    ``RESOURCE_ENC_KEY`` is configured.
    """

    def __init__(self, directory: str, clock: Callable[[], float] = time.time, base_url: str | None = None,
                 encryption_key: str | bytes | None = None):
        super().__init__(clock, base_url)
        self.directory = directory
        key = encryption_key if encryption_key is not None else RESOURCE_ENC_KEY
        self._fernet = Fernet(key) if key else None
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"cannot create {directory}: {exc}")

    def _meta_path(self, resource_id: str) -> str:
        return os.path.join(self.directory, f"{resource_id}.meta.json")

    def _blob_path(self, resource_id: str) -> str:
        return os.path.join(self.directory, f"{resource_id}.blob")

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except OSError as exc:
            logger.error("Resource store I/O failed: %s", exc)
            raise StorageUnavailable(str(exc))

    async def store(self, data, kind, owner_user_id, tenant_id):
        text = safe_dumps(data)
        meta = self._new_metadata(text.encode("utf-8"), kind, owner_user_id, tenant_id)
        await self._run(self._write, meta, text)
        self._log_stored(meta)
        return meta

    def _write(self, meta: ResourceMetadata, text: str) -> None:
        record = {"metadata": asdict(meta)}
        if meta.storage_tier == TIER_BLOB:
            raw = text.encode("utf-8")
            if self._fernet:
                raw = self._fernet.encrypt(raw)
            _atomic_write(self._blob_path(meta.resource_id), raw)
        else:
            record["data"] = text
        # Metadata goes last so readers never see a resource without its blob
        _atomic_write(self._meta_path(meta.resource_id), json.dumps(record).encode("utf-8"))

    async def retrieve(self, resource_id, owner_user_id=None):
        if not _looks_like_id(resource_id):
            raise ResourceNotFound(resource_id)
        found = await self._run(self._read, resource_id)
        if found is None:
            raise ResourceNotFound(resource_id)
        meta, text = found
        if owner_user_id is not None and owner_user_id != meta.owner_user_id:
            raise ResourceNotFound(resource_id)
        return StoredResource(data=json.loads(text), metadata=meta)

    def _read(self, resource_id: str):
        path = self._meta_path(resource_id)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            raw_record = f.read()
        try:
            record = json.loads(raw_record)
            meta = ResourceMetadata(**record["metadata"])
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Resource %s has unreadable metadata: %s", resource_id, exc)
            raise StorageUnavailable(f"resource {resource_id} metadata is corrupt")
        if self._clock() >= meta.expires_at:
            self._remove(resource_id)
            return None
        if meta.storage_tier == TIER_BLOB:
            with open(self._blob_path(resource_id), "rb") as f:
                raw = f.read()
            if self._fernet:
                try:
                    raw = self._fernet.decrypt(raw)
                except InvalidToken:
                    raise StorageUnavailable("blob could not be decrypted with the configured key")
            return meta, raw.decode("utf-8")
        if "data" not in record:
            raise StorageUnavailable(f"resource {resource_id} metadata is corrupt")
        return meta, record["data"]

    async def delete(self, resource_id):
        if _looks_like_id(resource_id):
            await self._run(self._remove, resource_id)

    def _remove(self, resource_id: str) -> None:
        for path in (self._meta_path(resource_id), self._blob_path(resource_id)):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    async def sweep(self):
        return await self._run(self._sweep_files)

    def _sweep_files(self) -> int:
        removed = 0
        now = self._clock()
        for name in os.listdir(self.directory):
            if not name.endswith(".meta.json"):
                continue
            resource_id = name[: -len(".meta.json")]
            try:
                with open(os.path.join(self.directory, name), "rb") as f:
                    expires_at = json.loads(f.read())["metadata"]["expires_at"]
            except (OSError, ValueError, KeyError):
                continue
            if now >= expires_at:
                self._remove(resource_id)
                removed += 1
        return removed


def _atomic_write(path: str, raw: bytes) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "wb") as f:
        f.write(raw)
    os.replace(tmp, path)


def _looks_like_id(resource_id: str) -> bool:
    try:
        uuid.UUID(str(resource_id))
        return True
    except ValueError:
        return False


def create_resource_store(clock: Callable[[], float] = time.time) -> ResourceStore:
    if RESOURCE_STORE_DIR:
        logger.info("Using file resource store at %s", RESOURCE_STORE_DIR)
        return FileResourceStore(RESOURCE_STORE_DIR, clock=clock)
    return InMemoryResourceStore(clock=clock)
