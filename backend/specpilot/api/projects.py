import base64
import io
import logging
import zipfile
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from specpilot.agent.events import load_events
from specpilot.coordinator import ProcessingCoordinator
from specpilot.errors import ProjectNotFoundError
from specpilot.sse import SSE_HEADERS, project_event_stream
from specpilot.store import ProjectRecord, ProjectStore
from specpilot.vfs import VirtualFileSystem


logger = logging.getLogger("specpilot.api.projects")


router = APIRouter(prefix="/api/projects", tags=["projects"])


class CreateProjectRequest(BaseModel):
    user_id: str
    name: str = Field(..., min_length=1, max_length=100)


class ChatRequest(BaseModel):
    user_id: str
    message: str = Field(..., min_length=1)


class CreateFileRequest(BaseModel):
    user_id: str
    file_path: str = Field(..., min_length=1)
    content: str = ""


def get_coordinator(request: Request) -> ProcessingCoordinator:
    return request.app.state.coordinator


def get_store(request: Request) -> ProjectStore:
    return request.app.state.coordinator.store


def project_summary(record: ProjectRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "user_id": record.user_id,
        "is_processing": record.is_processing,
        "vm_status": record.vm_status,
        "app_running": record.app_running,
        "created_at": record.created_at,
    }


async def _load_project(store: ProjectStore, project_id: str, user_id: str) -> ProjectRecord:
    record = await store.get(project_id)
    if record is None or record.user_id != user_id:
        raise HTTPException(status_code=404, detail="Project not found")
    return record


def _load_vfs(record: ProjectRecord) -> VirtualFileSystem:
    vfs = VirtualFileSystem.deserialize(record.vfs)
    if vfs is None:
        raise HTTPException(status_code=500, detail="Invalid VFS data")
    return vfs


def build_file_tree(file_paths: list[str]) -> list[dict[str, Any]]:
    """Nest flat paths into folder/file nodes, folders inferred from prefixes."""
    root: list[dict[str, Any]] = []
    nodes: dict[str, dict[str, Any]] = {}
    for file_path in sorted(file_paths):
        parts = [p for p in file_path.split("/") if p]
        siblings = root
        current = ""
        for i, part in enumerate(parts):
            current = f"{current}/{part}" if current else part
            is_file = i == len(parts) - 1
            node = nodes.get(current)
            if node is None:
                node = {"name": part, "path": current, "type": "file" if is_file else "folder"}
                if not is_file:
                    node["children"] = []
                nodes[current] = node
                siblings.append(node)
            if not is_file:
                siblings = node.setdefault("children", [])
    return root


@router.post("")
async def create_project(
    req: CreateProjectRequest, coordinator: ProcessingCoordinator = Depends(get_coordinator)
) -> dict[str, Any]:
    record = await coordinator.create_project(req.user_id, req.name)
    return project_summary(record)


@router.get("")
async def list_projects(user_id: str, store: ProjectStore = Depends(get_store)) -> dict[str, Any]:
    records = await store.list_for_user(user_id)
    return {"projects": [project_summary(r) for r in records]}


@router.get("/{project_id}")
async def get_project(
    project_id: str, user_id: str, store: ProjectStore = Depends(get_store)
) -> dict[str, Any]:
    return project_summary(await _load_project(store, project_id, user_id))


@router.post("/{project_id}/chat", status_code=202)
async def send_chat_message(
    project_id: str,
    req: ChatRequest,
    coordinator: ProcessingCoordinator = Depends(get_coordinator),
):
    await _load_project(coordinator.store, project_id, req.user_id)
    try:
        started = await coordinator.start_chat_run(project_id, req.message)
    except ProjectNotFoundError:
        raise HTTPException(status_code=404, detail="Project not found")
    if not started:
        return JSONResponse(
            status_code=409,
            content={"ok": False, "error": "Project is already processing a message"},
        )
    logger.info("send_chat_message[%s] message_len=%d", project_id, len(req.message))
    return {"ok": True, "status": "processing_started"}


@router.get("/{project_id}/chat")
async def get_chat_history(
    project_id: str, user_id: str, store: ProjectStore = Depends(get_store)
) -> dict[str, Any]:
    record = await _load_project(store, project_id, user_id)
    try:
        events = load_events(record.agent_events)
    except ValueError:
        logger.error("get_chat_history[%s] unreadable events", project_id)
        events = []
    return {
        "events": [e.model_dump(by_alias=True) for e in events],
        "is_processing": record.is_processing,
    }


@router.delete("/{project_id}/chat")
async def clear_chat_history(
    project_id: str, user_id: str, store: ProjectStore = Depends(get_store)
) -> dict[str, Any]:
    record = await _load_project(store, project_id, user_id)
    if record.is_processing:
        raise HTTPException(status_code=409, detail="Project is processing a message")
    await store.update(project_id, chat_history="[]", agent_events="[]")
    return {"ok": True}


@router.get("/{project_id}/events")
async def stream_events(
    project_id: str, user_id: str, since: int = 0, store: ProjectStore = Depends(get_store)
):
    await _load_project(store, project_id, user_id)
    return StreamingResponse(
        project_event_stream(store, project_id, start_index=since), headers=SSE_HEADERS
    )


@router.get("/{project_id}/files")
async def list_files(
    project_id: str, user_id: str, store: ProjectStore = Depends(get_store)
) -> dict[str, Any]:
    vfs = _load_vfs(await _load_project(store, project_id, user_id))
    files = vfs.list_files()
    return {"files": files, "file_tree": build_file_tree(files)}


@router.get("/{project_id}/files/content")
async def get_file_content(
    project_id: str, user_id: str, path: str, store: ProjectStore = Depends(get_store)
) -> dict[str, Any]:
    vfs = _load_vfs(await _load_project(store, project_id, user_id))
    content = vfs.read_file(path)
    if content is None:
        raise HTTPException(status_code=404, detail="File not found")
    return {"file_path": path, "content": content}


@router.post("/{project_id}/files")
async def create_file(
    project_id: str, req: CreateFileRequest, store: ProjectStore = Depends(get_store)
) -> dict[str, Any]:
    record = await _load_project(store, project_id, req.user_id)
    if record.is_processing:
        raise HTTPException(status_code=409, detail="Project is processing a message")
    vfs = _load_vfs(record)
    if vfs.file_exists(req.file_path):
        raise HTTPException(status_code=409, detail="File already exists")
    vfs.write_file(req.file_path, req.content)
    await store.update(project_id, vfs=vfs.serialize())
    return {"ok": True, "file_path": req.file_path}


@router.get("/{project_id}/download")
async def download_zip(
    project_id: str, user_id: str, store: ProjectStore = Depends(get_store)
) -> dict[str, Any]:
    record = await _load_project(store, project_id, user_id)
    vfs = _load_vfs(record)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(vfs.list_files()):
            zf.writestr(path, vfs.read_file(path) or "")
    return {
        "base64": base64.b64encode(buf.getvalue()).decode("ascii"),
        "project_name": record.name,
    }


@router.get("/{project_id}/vm")
async def get_vm_url(
    project_id: str,
    user_id: str,
    coordinator: ProcessingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    record = await _load_project(coordinator.store, project_id, user_id)
    vm_url = None
    if record.vm_id and record.app_running:
        try:
            vm_url = await coordinator.vm.public_url(record.vm_id)
        except Exception as e:
            logger.warning("get_vm_url[%s] %s", project_id, e)
    return {
        "vm_url": vm_url,
        "app_running": record.app_running,
        "has_deployed": bool(record.vm_id),
        "vm_status": record.vm_status,
    }
