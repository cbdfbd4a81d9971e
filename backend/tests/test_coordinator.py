"""Tests for the processing coordinator's admission and chain behaviour."""

import httpx
import pytest

from conftest import FakeModel, FakeVM, tool_call
from specpilot.agent.chat import ChatAgent
from specpilot.agent.code_generator import CodeGeneratorAgent
from specpilot.agent.events import load_events
from specpilot.agent.messages import load_history
from specpilot.agent.model import ModelResponse
from specpilot.coordinator import ProcessingCoordinator
from specpilot.deploy.pipeline import DeploymentPipeline
from specpilot.errors import ProjectNotFoundError, VMUnavailableError
from specpilot.store import InMemoryProjectStore, ProjectRecord
from specpilot.vfs import VirtualFileSystem


def _ok_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))


def _coordinator(
    store: InMemoryProjectStore,
    vm: FakeVM,
    settings,
    chat_responses: list[ModelResponse] | None = None,
    codegen_responses: list[ModelResponse] | None = None,
) -> ProcessingCoordinator:
    chat = ChatAgent(FakeModel(chat_responses or [ModelResponse(text="ok")]))
    codegen = CodeGeneratorAgent(FakeModel(codegen_responses or [ModelResponse(text="done")]))
    pipeline = DeploymentPipeline(
        vm, code_generator=codegen, settings=settings, http_client=_ok_client()
    )
    return ProcessingCoordinator(
        store, chat, codegen, pipeline, vm, vm_ready_timeout=0.2, vm_ready_poll=0.02
    )


async def _ready_project(store: InMemoryProjectStore, vfs: VirtualFileSystem, **fields) -> ProjectRecord:
    defaults = {"vm_id": "vm-1", "vm_status": "ready", "app_running": True}
    defaults.update(fields)
    return await store.create(
        ProjectRecord(user_id="u1", name="demo", vfs=vfs.serialize(), **defaults)
    )


def _spec_edit() -> list[ModelResponse]:
    return [
        ModelResponse(
            tool_calls=[
                tool_call("c1", "writeFile", '{"path": "spec/index.md", "content": "# Todo"}')
            ]
        ),
        ModelResponse(text="Spec updated"),
    ]


class TestAdmission:
    @pytest.mark.asyncio
    async def test_unknown_project(self, store, fake_vm, fast_settings):
        coordinator = _coordinator(store, fake_vm, fast_settings)
        with pytest.raises(ProjectNotFoundError):
            await coordinator.start_chat_run("missing", "hi")

    @pytest.mark.asyncio
    async def test_rejected_while_processing_without_mutation(
        self, store, fake_vm, fast_settings, vfs
    ):
        record = await _ready_project(store, vfs, is_processing=True)
        before = await store.get(record.id)
        coordinator = _coordinator(store, fake_vm, fast_settings)

        assert await coordinator.start_chat_run(record.id, "hello") is False
        await coordinator.wait_idle()

        assert await store.get(record.id) == before
        assert fake_vm.commands == []


class TestChain:
    @pytest.mark.asyncio
    async def test_chat_without_spec_change_skips_deploy(self, store, fake_vm, fast_settings, vfs):
        record = await _ready_project(store, vfs)
        coordinator = _coordinator(store, fake_vm, fast_settings)

        assert await coordinator.start_chat_run(record.id, "just a question") is True
        await coordinator.wait_idle()

        after = await store.get(record.id)
        assert after.is_processing is False
        assert fake_vm.commands == []
        assert [m.role for m in load_history(after.chat_history)] == ["system", "user", "assistant"]
        events = load_events(after.agent_events)
        assert events[0].event_type == "userMessage"
        assert events[0].markdown == "just a question"

    @pytest.mark.asyncio
    async def test_spec_change_runs_codegen_and_deploys(self, store, fake_vm, fast_settings, vfs):
        record = await _ready_project(store, vfs)
        coordinator = _coordinator(
            store,
            fake_vm,
            fast_settings,
            chat_responses=_spec_edit(),
            codegen_responses=[
                ModelResponse(
                    tool_calls=[
                        tool_call("g1", "writeFile", '{"path": "code/src/App.tsx", "content": "todo"}')
                    ]
                ),
                ModelResponse(text="Code updated"),
            ],
        )

        await coordinator.start_chat_run(record.id, "make a todo app")
        await coordinator.wait_idle()

        after = await store.get(record.id)
        stored = VirtualFileSystem.deserialize(after.vfs)
        assert stored.read_file("spec/index.md") == "# Todo"
        assert stored.read_file("code/src/App.tsx") == "todo"
        assert after.is_processing is False
        assert after.app_running is True
        assert after.vm_status == "ready"
        assert fake_vm.count("screen -dmS") == 1

        events = load_events(after.agent_events)
        agents = [e.agent for e in events]
        assert "codeGenerator" in agents
        assert agents.index("codeGenerator") > agents.index("chat")
        assert any("Uploaded" in e.markdown for e in events)

    @pytest.mark.asyncio
    async def test_flag_cleared_and_error_recorded_on_failure(
        self, store, fake_vm, fast_settings, vfs
    ):
        record = await _ready_project(store, vfs)
        coordinator = _coordinator(store, fake_vm, fast_settings)

        async def boom(*args, **kwargs):
            raise RuntimeError("model unavailable")

        coordinator.chat_agent.run = boom

        await coordinator.start_chat_run(record.id, "hi")
        await coordinator.wait_idle()

        after = await store.get(record.id)
        assert after.is_processing is False
        events = load_events(after.agent_events)
        assert events[-1].event_type == "toolResult"
        assert "RuntimeError: model unavailable" in events[-1].markdown

    @pytest.mark.asyncio
    async def test_invalid_vfs_stops_run(self, store, fake_vm, fast_settings):
        record = await store.create(
            ProjectRecord(user_id="u1", name="broken", vfs="{not json", vm_status="ready", vm_id="vm-1")
        )
        coordinator = _coordinator(store, fake_vm, fast_settings, chat_responses=_spec_edit())

        await coordinator.start_chat_run(record.id, "hi")
        await coordinator.wait_idle()

        after = await store.get(record.id)
        assert after.is_processing is False
        assert after.vfs == "{not json"
        assert "InvalidVFSError" in load_events(after.agent_events)[-1].markdown
        assert fake_vm.commands == []


class TestVMLifecycle:
    @pytest.mark.asyncio
    async def test_create_project_provisions_and_warms_vm(self, store, fake_vm, fast_settings):
        coordinator = _coordinator(store, fake_vm, fast_settings)

        record = await coordinator.create_project("u1", "demo")
        assert record.vm_status == "creating"
        await coordinator.wait_idle()

        after = await store.get(record.id)
        assert after.vm_id == "vm-1"
        assert after.vm_status == "ready"
        assert after.app_running is True
        assert fake_vm.count("pnpm install") == 1
        assert VirtualFileSystem.deserialize(after.vfs).file_exists("spec/index.md")

    @pytest.mark.asyncio
    async def test_failed_warm_up_marks_vm_failed(self, store, fast_settings):
        vm = FakeVM()

        async def broken_create() -> str:
            raise RuntimeError("quota exceeded")

        vm.create = broken_create
        coordinator = _coordinator(store, vm, fast_settings)

        record = await coordinator.create_project("u1", "demo")
        await coordinator.wait_idle()

        assert (await store.get(record.id)).vm_status == "failed"

    @pytest.mark.asyncio
    async def test_wait_for_vm_replaces_failed_vm(self, store, fake_vm, fast_settings, vfs):
        record = await _ready_project(store, vfs, vm_id=None, vm_status="failed")
        coordinator = _coordinator(store, fake_vm, fast_settings)
        lines: list[str] = []

        async def emit(line: str) -> None:
            lines.append(line)

        vm_id = await coordinator.wait_for_vm(record.id, emit)

        assert vm_id == "vm-1"
        assert lines == ["Creating a new VM"]
        assert (await store.get(record.id)).vm_status == "ready"

    @pytest.mark.asyncio
    async def test_wait_for_vm_times_out_while_warming(self, store, fake_vm, fast_settings, vfs):
        record = await _ready_project(store, vfs, vm_status="warming_up")
        coordinator = _coordinator(store, fake_vm, fast_settings)

        with pytest.raises(VMUnavailableError):
            await coordinator.wait_for_vm(record.id)
