import logging
from typing import Protocol

from pydantic import BaseModel
from vercel.sandbox import AsyncSandbox as Sandbox

from specpilot import config


logger = logging.getLogger("specpilot.sandbox.vm")


class ExecResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    status_code: int = 0

    @property
    def ok(self) -> bool:
        return self.status_code == 0

    def output(self) -> str:
        return "\n".join(s for s in (self.stdout.strip(), self.stderr.strip()) if s)


class VMClient(Protocol):
    """Remote VM rental capability. Every deployment action is a shell command."""

    async def create(self) -> str: ...

    async def exec(self, vm_id: str, command: str, sudo: bool = False) -> ExecResult: ...

    async def public_url(self, vm_id: str) -> str: ...


# sandbox_id -> live handle, shared across runs in this process
SANDBOX_CACHE: dict[str, Sandbox] = {}


class SandboxVMClient:
    """VM capability backed by Vercel Sandbox.

    The public port is exposed at creation time; its domain is what users
    open and what the readiness probe polls.
    """

    def __init__(
        self,
        public_port: int = 3000,
        runtime: str = config.SANDBOX_RUNTIME,
        timeout_ms: int = config.SANDBOX_TIMEOUT_MS,
    ) -> None:
        self.public_port = public_port
        self.runtime = runtime
        self.timeout_ms = timeout_ms
        self._domains: dict[str, str] = {}

    async def create(self) -> str:
        sandbox = await Sandbox.create(
            timeout=self.timeout_ms, runtime=self.runtime, ports=[self.public_port]
        )
        SANDBOX_CACHE[sandbox.sandbox_id] = sandbox
        self._remember_domain(sandbox)
        logger.info("created sandbox %s", sandbox.sandbox_id)
        return sandbox.sandbox_id

    async def _get(self, vm_id: str) -> Sandbox:
        if vm_id in SANDBOX_CACHE:
            return SANDBOX_CACHE[vm_id]
        fetched = await Sandbox.get(sandbox_id=vm_id)
        SANDBOX_CACHE[vm_id] = fetched
        self._remember_domain(fetched)
        return fetched

    def _remember_domain(self, sandbox: Sandbox) -> None:
        try:
            self._domains[sandbox.sandbox_id] = sandbox.domain(self.public_port)
        except Exception as e:
            logger.warning("no domain for sandbox %s: %s", sandbox.sandbox_id, e)

    async def exec(self, vm_id: str, command: str, sudo: bool = False) -> ExecResult:
        sandbox = await self._get(vm_id)
        done = await sandbox.run_command("bash", ["-lc", command], sudo=sudo)
        stdout = await done.stdout()
        stderr = await done.stderr()
        return ExecResult(
            stdout=stdout or "",
            stderr=stderr or "",
            status_code=done.exit_code if done.exit_code is not None else 0,
        )

    async def public_url(self, vm_id: str) -> str:
        if vm_id not in self._domains:
            await self._get(vm_id)
        domain = self._domains.get(vm_id)
        if not domain:
            raise KeyError(f"No public domain for sandbox: {vm_id}")
        return domain if domain.startswith("http") else f"https://{domain}"
