import asyncio
import logging
from typing import Any, Coroutine

from specpilot import config
from specpilot.agent.chat import ChatAgent
from specpilot.agent.code_generator import CodeGeneratorAgent
from specpilot.agent.events import AgentName, ChatEvent, EventLog, system_notice
from specpilot.agent.messages import Message, dump_history, load_history
from specpilot.deploy.pipeline import DeploymentPipeline
from specpilot.errors import InvalidVFSError, ProjectNotFoundError, VMUnavailableError
from specpilot.sandbox.vm import VMClient
from specpilot.store import ProjectRecord, ProjectStore
from specpilot.templates import default_template
from specpilot.vfs import VirtualFileSystem


logger = logging.getLogger("specpilot.coordinator")


class StateRecorder:
    """Persists a run's incremental state after every step.

    Each call overwrites the relevant record fields in full; readers polling
    the store see the latest snapshot.
    """

    def __init__(
        self,
        store: ProjectStore,
        project_id: str,
        events: EventLog,
        vfs: VirtualFileSystem | None = None,
        messages: list[Message] | None = None,
    ) -> None:
        self.store = store
        self.project_id = project_id
        self.events = events
        self.vfs = vfs
        self.messages = messages

    async def on_events(self, events: list[ChatEvent]) -> None:
        self.events.extend(events)
        await self.store.update(self.project_id, agent_events=self.events.to_json())

    async def on_state_update(self) -> None:
        fields: dict[str, Any] = {}
        if self.vfs is not None:
            fields["vfs"] = self.vfs.serialize()
        if self.messages is not None:
            fields["chat_history"] = dump_history(self.messages)
        if fields:
            await self.store.update(self.project_id, **fields)

    async def notice(self, title: str, body: str, agent: AgentName = "codeGenerator") -> None:
        await self.on_events([system_notice(title, body, agent)])


class ProcessingCoordinator:
    """Runs chat -> code generation -> deployment for one project at a time.

    Admission is a compare-and-set on the project's processing flag; the
    chain itself runs as a detached task and always releases the flag.
    """

    def __init__(
        self,
        store: ProjectStore,
        chat_agent: ChatAgent,
        code_generator: CodeGeneratorAgent,
        pipeline: DeploymentPipeline,
        vm: VMClient,
        vm_ready_timeout: float = config.VM_READY_TIMEOUT_SECONDS,
        vm_ready_poll: float = config.VM_READY_POLL_SECONDS,
    ) -> None:
        self.store = store
        self.chat_agent = chat_agent
        self.code_generator = code_generator
        self.pipeline = pipeline
        self.vm = vm
        self.vm_ready_timeout = vm_ready_timeout
        self.vm_ready_poll = vm_ready_poll
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background task started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------
    # Project creation
    # -------------------------

    async def create_project(
        self, user_id: str, name: str, template: dict[str, str] | None = None
    ) -> ProjectRecord:
        vfs = VirtualFileSystem.from_template(
            template if template is not None else default_template(self.pipeline.settings)
        )
        record = await self.store.create(
            ProjectRecord(user_id=user_id, name=name, vfs=vfs.serialize(), vm_status="creating")
        )
        logger.info("project[%s] created user=%s files=%d", record.id, user_id, len(vfs.list_files()))
        self._spawn(self._provision_vm(record.id, vfs), name=f"provision:{record.id}")
        return record

    async def _provision_vm(self, project_id: str, vfs: VirtualFileSystem) -> None:
        async def emit(line: str) -> None:
            logger.info("warmup[%s] %s", project_id, line)

        try:
            vm_id = await self.vm.create()
            await self.store.update(project_id, vm_id=vm_id, vm_status="warming_up")
            await self.pipeline.warm_up(vm_id, vfs, emit)
            await self.store.update(project_id, vm_status="ready", app_running=True)
        except Exception:
            logger.exception("warmup[%s] failed", project_id)
            await self.store.update(project_id, vm_status="failed")

    async def wait_for_vm(self, project_id: str, emit=None) -> str:
        """Return a VM id ready for deployment.

        Waits while the VM is still being created or warmed up. A project
        whose VM failed (or never got one) gets a fresh VM.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.vm_ready_timeout
        announced = False
        while True:
            record = await self.store.get(project_id)
            if record is None:
                raise ProjectNotFoundError(project_id)
            if record.vm_status == "ready" and record.vm_id:
                return record.vm_id
            if record.vm_status in ("failed", "none") or (
                record.vm_status == "ready" and not record.vm_id
            ):
                if emit:
                    await emit("Creating a new VM")
                vm_id = await self.vm.create()
                await self.store.update(project_id, vm_id=vm_id, vm_status="ready")
                return vm_id
            if loop.time() >= deadline:
                raise VMUnavailableError(
                    f"VM for project {project_id} not ready after {self.vm_ready_timeout:.0f}s"
                )
            if emit and not announced:
                await emit("Waiting for VM to finish warming up")
                announced = True
            await asyncio.sleep(self.vm_ready_poll)

    # -------------------------
    # Chat-triggered runs
    # -------------------------

    async def start_chat_run(self, project_id: str, message: str) -> bool:
        """Claim the project and start the chain in the background.

        Returns False, without touching any project state, when another run
        already holds the processing flag.
        """
        if await self.store.get(project_id) is None:
            raise ProjectNotFoundError(project_id)
        if not await self.store.try_start_processing(project_id):
            logger.info("chat[%s] rejected: already processing", project_id)
            return False
        self._spawn(self._run_chain(project_id, message), name=f"chat:{project_id}")
        return True

    async def _run_chain(self, project_id: str, message: str) -> None:
        recorder: StateRecorder | None = None
        try:
            record = await self.store.get(project_id)
            if record is None:
                raise ProjectNotFoundError(project_id)
            recorder = StateRecorder(self.store, project_id, EventLog.from_json(record.agent_events))
            vfs = VirtualFileSystem.deserialize(record.vfs)
            if vfs is None:
                raise InvalidVFSError(project_id)
            messages = load_history(record.chat_history)
            recorder.vfs = vfs
            recorder.messages = messages

            result = await self.chat_agent.run(message, vfs, messages, observer=recorder)
            logger.info("chat[%s] done spec_modified=%s", project_id, result.spec_modified)
            if not result.spec_modified:
                return

            await self.code_generator.run(vfs, observer=recorder)
            await recorder.on_state_update()

            async def emit(line: str) -> None:
                logger.info("deploy[%s] %s", project_id, line)
                await recorder.notice("Deployment", line)

            vm_id = await self.wait_for_vm(project_id, emit)
            await self.store.update(project_id, app_running=False)
            url = await self.pipeline.deploy(vm_id, vfs, emit, observer=recorder)
            await recorder.on_state_update()
            await self.store.update(project_id, app_running=True, vm_status="ready")
            logger.info("deploy[%s] finished url=%s", project_id, url)
        except Exception as e:
            logger.exception("chat[%s] chain failed", project_id)
            if recorder is not None:
                try:
                    await recorder.notice("Error", f"{type(e).__name__}: {e}", "chat")
                except Exception:
                    logger.exception("chat[%s] could not record failure", project_id)
        finally:
            try:
                await self.store.finish_processing(project_id)
            except Exception:
                logger.exception("chat[%s] could not clear processing flag", project_id)
