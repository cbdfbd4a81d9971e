from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field
from vercel.cache import AsyncRuntimeCache

from specpilot import config
from specpilot.errors import ProjectNotFoundError


VMStatus = Literal["none", "creating", "warming_up", "ready", "failed"]


class ProjectRecord(BaseModel):
    """Durable state of one project. Blob fields hold JSON text."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    name: str
    vfs: str
    chat_history: str = "[]"
    agent_events: str = "[]"
    is_processing: bool = False
    vm_id: str | None = None
    vm_status: VMStatus = "none"
    app_running: bool = False
    created_at: float = Field(default_factory=time.time)


class ProjectStore(Protocol):
    async def create(self, record: ProjectRecord) -> ProjectRecord: ...

    async def get(self, project_id: str) -> ProjectRecord | None: ...

    async def update(self, project_id: str, **fields: Any) -> ProjectRecord: ...

    async def list_for_user(self, user_id: str) -> list[ProjectRecord]: ...

    async def try_start_processing(self, project_id: str) -> bool:
        """Atomically flip ``is_processing`` false -> true; False if already set."""
        ...

    async def finish_processing(self, project_id: str) -> None: ...


class InMemoryProjectStore:
    """Process-local store; the lock makes the processing claim atomic."""

    def __init__(self) -> None:
        self._records: dict[str, ProjectRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: ProjectRecord) -> ProjectRecord:
        async with self._lock:
            self._records[record.id] = record.model_copy()
        return record

    async def get(self, project_id: str) -> ProjectRecord | None:
        record = self._records.get(project_id)
        return record.model_copy() if record else None

    async def update(self, project_id: str, **fields: Any) -> ProjectRecord:
        async with self._lock:
            record = self._records.get(project_id)
            if record is None:
                raise ProjectNotFoundError(project_id)
            updated = record.model_copy(update=fields)
            self._records[project_id] = updated
        return updated.model_copy()

    async def list_for_user(self, user_id: str) -> list[ProjectRecord]:
        records = [r.model_copy() for r in self._records.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def try_start_processing(self, project_id: str) -> bool:
        async with self._lock:
            record = self._records.get(project_id)
            if record is None:
                raise ProjectNotFoundError(project_id)
            if record.is_processing:
                return False
            self._records[project_id] = record.model_copy(update={"is_processing": True})
            return True

    async def finish_processing(self, project_id: str) -> None:
        await self.update(project_id, is_processing=False)


def _project_key(project_id: str) -> str:
    return f"project:{project_id}"


def _user_key(user_id: str) -> str:
    return f"user:{user_id}:projects"


class RuntimeCacheProjectStore:
    """Project records kept in Vercel Runtime Cache.

    The cache has no compare-and-set, so the processing claim is serialised
    with a lock local to this process.
    """

    def __init__(
        self,
        namespace: str = config.PROJECT_STORE_NAMESPACE,
        ttl_seconds: int = config.PROJECT_STORE_TTL_SECONDS,
        cache: AsyncRuntimeCache | None = None,
    ) -> None:
        self.cache = cache or AsyncRuntimeCache(namespace=namespace)
        self.ttl_seconds = ttl_seconds
        self._lock = asyncio.Lock()

    async def _put(self, key: str, value: Any, tag: str) -> None:
        await self.cache.set(key, value, {"ttl": self.ttl_seconds, "tags": [tag]})

    async def _save(self, record: ProjectRecord) -> None:
        await self._put(_project_key(record.id), record.model_dump(), _project_key(record.id))

    async def create(self, record: ProjectRecord) -> ProjectRecord:
        async with self._lock:
            await self._save(record)
            ids = await self.cache.get(_user_key(record.user_id))
            ids = list(ids) if isinstance(ids, list) else []
            ids.append(record.id)
            await self._put(_user_key(record.user_id), ids, _user_key(record.user_id))
        return record

    async def get(self, project_id: str) -> ProjectRecord | None:
        val = await self.cache.get(_project_key(project_id))
        return ProjectRecord.model_validate(val) if isinstance(val, dict) else None

    async def update(self, project_id: str, **fields: Any) -> ProjectRecord:
        async with self._lock:
            return await self._update_locked(project_id, **fields)

    async def _update_locked(self, project_id: str, **fields: Any) -> ProjectRecord:
        record = await self.get(project_id)
        if record is None:
            raise ProjectNotFoundError(project_id)
        updated = record.model_copy(update=fields)
        await self._save(updated)
        return updated

    async def list_for_user(self, user_id: str) -> list[ProjectRecord]:
        ids = await self.cache.get(_user_key(user_id))
        records: list[ProjectRecord] = []
        for project_id in ids if isinstance(ids, list) else []:
            record = await self.get(project_id)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def try_start_processing(self, project_id: str) -> bool:
        async with self._lock:
            record = await self.get(project_id)
            if record is None:
                raise ProjectNotFoundError(project_id)
            if record.is_processing:
                return False
            await self._update_locked(project_id, is_processing=True)
            return True

    async def finish_processing(self, project_id: str) -> None:
        await self.update(project_id, is_processing=False)


def create_store(kind: str = config.PROJECT_STORE) -> ProjectStore:
    if kind == "runtime-cache":
        return RuntimeCacheProjectStore()
    return InMemoryProjectStore()
